# automations.py
import os
import uuid
import logging
from datetime import datetime
from typing import Dict, List, Optional

import requests
from botocore.exceptions import ClientError

from storage import dynamodb, scan_all, convert_decimal

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

automations_table = dynamodb.Table(os.getenv('AUTOMATIONS_TABLE', 'automation_runs'))

AUTOMATION_WEBHOOK_URL = os.getenv('AUTOMATION_WEBHOOK_URL', '')
WEBHOOK_TIMEOUT = 60  # seconds

AUTOMATION_TYPES = {
    'pin-checker': 'PIN Checker',
    'password-checker': 'Password Checker',
    'manufacturer-details': 'Manufacturers Details',
    'ledger': 'Ledger Extraction',
    'tax-checklist': 'Tax Checklist',
}
RUN_OPTIONS = ('all', 'selected')
RUN_STATUSES = ('running', 'completed', 'stopped', 'error')


def validate_automation_request(automation_type: str, payload: Dict) -> List[str]:
    errors = []

    if automation_type not in AUTOMATION_TYPES:
        errors.append(f"Invalid automation type: {automation_type}")

    run_option = payload.get('run_option', 'all')
    if run_option not in RUN_OPTIONS:
        errors.append(f"run_option must be one of {', '.join(RUN_OPTIONS)}")

    selected_ids = payload.get('selected_ids')
    if run_option == 'selected' and (not isinstance(selected_ids, list) or not selected_ids):
        errors.append("selected_ids must be a non-empty array when run_option is 'selected'")

    return errors


def create_automation_run(automation_type: str, payload: Dict, user: Optional[Dict] = None) -> Dict:
    now = datetime.utcnow().isoformat()
    run = {
        'run_id': f"run_{automation_type}_{uuid.uuid4().hex[:12]}",
        'automation_type': automation_type,
        'run_option': payload.get('run_option', 'all'),
        'selected_ids': payload.get('selected_ids') or [],
        'triggered_by': (user or {}).get('username', 'system'),
        'status': 'running',
        'logs': [f"{AUTOMATION_TYPES.get(automation_type, automation_type)} automation started"],
        'created_at': now,
        'updated_at': now
    }
    automations_table.put_item(Item=run)
    return run


def update_automation_status(run_id: str, status: str, logs: Optional[List[str]] = None) -> Dict:
    """Set a run's status and append log lines"""
    if status not in RUN_STATUSES:
        return {"success": False, "error": f"Invalid status: {status}"}

    try:
        update_expression = 'SET #status = :status, updated_at = :updated'
        expression_values = {
            ':status': status,
            ':updated': datetime.utcnow().isoformat()
        }

        if logs:
            update_expression += ', logs = list_append(if_not_exists(logs, :empty), :logs)'
            expression_values[':logs'] = list(logs)
            expression_values[':empty'] = []

        automations_table.update_item(
            Key={'run_id': run_id},
            UpdateExpression=update_expression,
            ExpressionAttributeNames={'#status': 'status'},
            ExpressionAttributeValues=expression_values
        )

        print(f"🔄 Automation run {run_id} status updated to: {status}")
        return {"success": True, "run_id": run_id, "status": status}

    except ClientError as e:
        print(f"❌ Error updating automation run {run_id}: {e}")
        return {"success": False, "error": "Database error occurred"}


def trigger_automation(automation_type: str, payload: Optional[Dict] = None, user: Optional[Dict] = None) -> Dict:
    """
    Record a run and hand it to the automation webhook. The webhook is
    expected to report back through update_automation_status.
    """
    payload = payload or {}

    errors = validate_automation_request(automation_type, payload)
    if errors:
        return {"success": False, "error": "; ".join(errors)}

    if not AUTOMATION_WEBHOOK_URL:
        return {"success": False, "error": "AUTOMATION_WEBHOOK_URL is not configured"}

    try:
        run = create_automation_run(automation_type, payload, user)
    except ClientError as e:
        print(f"❌ Error creating automation run: {e}")
        return {"success": False, "error": "Database error occurred"}

    run_id = run['run_id']

    try:
        response = requests.post(
            AUTOMATION_WEBHOOK_URL,
            json={
                "automation": automation_type,
                "run_id": run_id,
                "run_option": run['run_option'],
                "selected_ids": run['selected_ids'],
                "triggered_by": run['triggered_by']
            },
            timeout=WEBHOOK_TIMEOUT,
        )
    except requests.exceptions.RequestException as e:
        error_msg = f"Automation request failed: {e}"
        update_automation_status(run_id, 'error', [error_msg])
        return {"success": False, "run_id": run_id, "error": error_msg}

    if response.status_code != 200:
        error_msg = f"Webhook failed with status {response.status_code}"
        update_automation_status(run_id, 'error', [error_msg])
        return {
            "success": False,
            "run_id": run_id,
            "error": error_msg,
            "webhook_response": response.text
        }

    try:
        webhook_response = response.json()
    except ValueError:
        webhook_response = response.text

    print(f"✅ {AUTOMATION_TYPES[automation_type]} automation started: {run_id}")

    return {
        "success": True,
        "run_id": run_id,
        "status": "running",
        "webhook_response": webhook_response
    }


def get_automation_run(run_id: str) -> Dict:
    try:
        response = automations_table.get_item(Key={'run_id': run_id})
        item = response.get('Item')
        if not item:
            return {"success": False, "error": "Automation run not found"}
        return {"success": True, "run": convert_decimal(item)}

    except ClientError as e:
        print(f"❌ Error loading automation run {run_id}: {e}")
        return {"success": False, "error": "Database error occurred"}


def list_automation_runs(automation_type: Optional[str] = None) -> Dict:
    """Runs newest first, optionally for one automation type"""
    try:
        runs = scan_all(automations_table)
        if automation_type:
            runs = [r for r in runs if r.get('automation_type') == automation_type]

        runs.sort(key=lambda r: r.get('created_at', ''), reverse=True)

        return {"success": True, "runs": runs, "total_count": len(runs)}

    except ClientError as e:
        print(f"❌ Error listing automation runs: {e}")
        return {"success": False, "error": "Database error occurred"}
