from unittest.mock import MagicMock, patch

import pytest
import requests

import automations
from automations import validate_automation_request


@pytest.fixture
def runs_table(fake_table):
    table = fake_table([
        {'run_id': 'run-old', 'automation_type': 'ledger', 'created_at': '2024-01-01T00:00:00'},
        {'run_id': 'run-new', 'automation_type': 'pin-checker', 'created_at': '2024-02-01T00:00:00'},
    ])
    with patch.object(automations, 'automations_table', table):
        yield table


@pytest.fixture
def webhook_url():
    with patch.object(automations, 'AUTOMATION_WEBHOOK_URL', 'https://automation.example.com/webhook'):
        yield


class TestValidation:
    def test_valid(self):
        assert validate_automation_request('pin-checker', {}) == []
        assert validate_automation_request('ledger', {'run_option': 'selected', 'selected_ids': ['c1']}) == []

    def test_invalid(self):
        errors = validate_automation_request('payroll', {'run_option': 'selected', 'selected_ids': []})
        assert errors == [
            "Invalid automation type: payroll",
            "selected_ids must be a non-empty array when run_option is 'selected'",
        ]

    def test_bad_run_option(self):
        assert validate_automation_request('ledger', {'run_option': 'some'}) == [
            "run_option must be one of all, selected"
        ]


@pytest.mark.usefixtures('webhook_url')
class TestTrigger:
    def test_success(self, runs_table):
        response = MagicMock(status_code=200)
        response.json.return_value = {"accepted": True}

        with patch('automations.requests.post', return_value=response) as post:
            result = automations.trigger_automation(
                'password-checker', {'run_option': 'selected', 'selected_ids': ['c1']}, {'username': 'jane'}
            )

        assert result["success"] is True
        assert result["status"] == "running"
        assert result["run_id"].startswith("run_password-checker_")
        assert result["webhook_response"] == {"accepted": True}

        body = post.call_args.kwargs['json']
        assert body["automation"] == 'password-checker'
        assert body["selected_ids"] == ['c1']
        assert body["triggered_by"] == 'jane'
        assert post.call_args.kwargs['timeout'] == automations.WEBHOOK_TIMEOUT

        stored = runs_table.put_item.call_args.kwargs['Item']
        assert stored['status'] == 'running'
        assert stored['run_id'] == result["run_id"]

    def test_webhook_error_marks_run(self, runs_table):
        with patch('automations.requests.post', return_value=MagicMock(status_code=502, text='Bad Gateway')):
            result = automations.trigger_automation('ledger')

        assert result["success"] is False
        assert result["error"] == "Webhook failed with status 502"
        values = runs_table.update_item.call_args.kwargs['ExpressionAttributeValues']
        assert values[':status'] == 'error'
        assert values[':logs'] == ["Webhook failed with status 502"]

    def test_network_error(self, runs_table):
        with patch('automations.requests.post', side_effect=requests.exceptions.ConnectionError("refused")):
            result = automations.trigger_automation('tax-checklist')

        assert result["success"] is False
        assert result["error"].startswith("Automation request failed")

    def test_validation_error_creates_no_run(self, runs_table):
        result = automations.trigger_automation('unknown')
        assert result == {"success": False, "error": "Invalid automation type: unknown"}
        runs_table.put_item.assert_not_called()


def test_trigger_without_webhook(runs_table):
    with patch.object(automations, 'AUTOMATION_WEBHOOK_URL', ''):
        result = automations.trigger_automation('ledger')
    assert result == {"success": False, "error": "AUTOMATION_WEBHOOK_URL is not configured"}


class TestRuns:
    def test_update_status(self, runs_table):
        result = automations.update_automation_status('run-new', 'completed', ['Done: 12 companies'])

        assert result == {"success": True, "run_id": "run-new", "status": "completed"}
        kwargs = runs_table.update_item.call_args.kwargs
        assert kwargs['Key'] == {'run_id': 'run-new'}
        assert 'list_append' in kwargs['UpdateExpression']

    def test_update_without_logs(self, runs_table):
        automations.update_automation_status('run-new', 'stopped')
        assert 'list_append' not in runs_table.update_item.call_args.kwargs['UpdateExpression']

    def test_invalid_status(self, runs_table):
        assert automations.update_automation_status('run-new', 'paused') == {
            "success": False, "error": "Invalid status: paused"
        }
        runs_table.update_item.assert_not_called()

    def test_list_newest_first(self, runs_table):
        result = automations.list_automation_runs()
        assert [r['run_id'] for r in result["runs"]] == ['run-new', 'run-old']
        assert automations.list_automation_runs('ledger')["total_count"] == 1

    def test_get_run(self, runs_table):
        runs_table.get_item.return_value = {}
        assert automations.get_automation_run('missing') == {"success": False, "error": "Automation run not found"}

        runs_table.get_item.return_value = {'Item': {'run_id': 'run-new'}}
        assert automations.get_automation_run('run-new') == {"success": True, "run": {'run_id': 'run-new'}}
