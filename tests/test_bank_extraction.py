import json
from unittest.mock import patch

import pytest

import bank_extraction
from bank_extraction import (
    create_virtual_chunks, get_chunk_prompt, normalize_chunk_data, process_chunk,
    perform_bank_statement_extraction, merge_chunk_results
)


def no_sleep(seconds):
    pass


def chunk_json(**overrides):
    data = {
        "bank_name": "Equity Bank",
        "account_number": "1234567890",
        "currency": "Kenya Shillings",
        "company_name": "Acme Ltd",
        "statement_period": "01/01/2024 - 31/01/2024",
        "opening_balance": "1,000.00",
        "closing_balance": 1500,
        "monthly_balances": [
            {"month": 1, "year": 2024, "opening_balance": 1000, "closing_balance": 1500, "statement_page": 1}
        ],
    }
    data.update(overrides)
    return json.dumps(data)


def chunk_result(data, success=True):
    return {"success": success, "extracted_data": data, "chunk": {"start_page": 1, "end_page": 5}}


class TestChunks:
    def test_virtual_chunks(self):
        assert create_virtual_chunks(12) == [
            {"start_page": 1, "end_page": 5, "page_count": 5},
            {"start_page": 6, "end_page": 10, "page_count": 5},
            {"start_page": 11, "end_page": 12, "page_count": 2},
        ]
        assert len(create_virtual_chunks()) == 4

    def test_prompt_names_page_range(self):
        prompt = get_chunk_prompt({"start_page": 6, "end_page": 10})
        assert "pages 6 to 10" in prompt
        assert "FOCUS ONLY ON PAGES 6 to 10" in prompt

    def test_normalize_chunk_data(self):
        normalized = normalize_chunk_data(json.loads(chunk_json()), {"start_page": 1, "end_page": 5})

        assert normalized["currency"] == "KES"
        assert normalized["opening_balance"] == 1000.0
        assert normalized["monthly_balances"][0]["is_verified"] is False
        assert normalized["monthly_balances"][0]["opening_date"] is None


class TestProcessChunk:
    def test_success(self, fake_client):
        client = fake_client('```json\n' + chunk_json() + '\n```')
        result = process_chunk(b'%PDF', 'application/pdf', {"start_page": 1, "end_page": 5}, client, sleep=no_sleep)

        assert result["success"] is True
        assert result["extracted_data"]["bank_name"] == "Equity Bank"

    def test_retries_then_succeeds(self, fake_client):
        client = fake_client({"success": False, "error": "overloaded"}, "not json at all", chunk_json())
        result = process_chunk(b'%PDF', 'application/pdf', {"start_page": 1, "end_page": 5}, client, sleep=no_sleep)

        assert result["success"] is True
        assert client.complete.call_count == 3

    def test_gives_up_after_three_attempts(self, fake_client):
        failure = {"success": False, "error": "overloaded"}
        client = fake_client(failure, failure, failure)
        result = process_chunk(b'%PDF', 'application/pdf', {"start_page": 6, "end_page": 10}, client, sleep=no_sleep)

        assert result["success"] is False
        assert result["message"] == "Extraction failed after 3 attempts for pages 6-10."
        assert result["extracted_data"]["monthly_balances"] == []


class TestMerge:
    def test_longest_text_and_last_number_win(self):
        first = normalize_chunk_data(json.loads(chunk_json(bank_name="Equity")), {"start_page": 1, "end_page": 5})
        second = normalize_chunk_data(json.loads(chunk_json(
            bank_name="Equity Bank Kenya",
            opening_balance=None,
            closing_balance=2500,
            monthly_balances=[]
        )), {"start_page": 6, "end_page": 10})

        merged = merge_chunk_results([chunk_result(first), chunk_result(second)], {"month": 1, "year": 2024})

        assert merged["bank_name"] == "Equity Bank Kenya"
        assert merged["opening_balance"] == 1000.0
        assert merged["closing_balance"] == 2500
        assert len(merged["monthly_balances"]) == 1

    def test_monthly_balances_keep_most_complete(self):
        sparse = {"month": 1, "year": 2024, "opening_balance": 100, "closing_balance": None}
        complete = {
            "month": 1, "year": 2024, "opening_balance": 100, "closing_balance": 150,
            "opening_date": "2024-01-01", "closing_date": "2024-01-31", "statement_page": 2
        }
        february = {"month": 2, "year": 2024, "opening_balance": 150, "closing_balance": 175}

        merged = merge_chunk_results(
            [
                chunk_result({"monthly_balances": [february, sparse]}),
                chunk_result({"monthly_balances": [complete, {"month": "1", "year": 2024}]}),
            ],
            {"month": 1, "year": 2024}
        )

        assert merged["monthly_balances"] == [complete, february]
        assert merged["statement_period"] == "01/01/2024 - 29/02/2024"

    def test_failed_chunks_are_ignored(self):
        merged = merge_chunk_results(
            [chunk_result({"bank_name": "Ghost"}, success=False)],
            {"month": 2, "year": 2024}
        )
        assert merged["bank_name"] is None
        assert merged["statement_period"] == "01/02/2024 - 29/02/2024"

    def test_requested_month_added_from_totals(self):
        merged = merge_chunk_results(
            [chunk_result({"opening_balance": 10, "closing_balance": None, "monthly_balances": []})],
            {"month": 3, "year": 2024}
        )

        assert merged["monthly_balances"][0]["month"] == 3
        assert merged["monthly_balances"][0]["opening_balance"] == 10
        assert merged["monthly_balances"][0]["closing_balance"] == 0
        assert merged["statement_period"] == "01/03/2024 - 31/03/2024"

    def test_out_of_range_months_are_dropped(self):
        bad = {"month": 13, "year": 2024, "opening_balance": 1, "closing_balance": 2}
        zero = {"month": 0, "year": 2024, "opening_balance": 1, "closing_balance": 2}
        good = {"month": 2, "year": 2024, "opening_balance": 150, "closing_balance": 175}

        merged = merge_chunk_results(
            [chunk_result({"monthly_balances": [bad, zero, good]})],
            {"month": 2, "year": 2024}
        )

        assert merged["monthly_balances"] == [good]
        assert merged["statement_period"] == "01/02/2024 - 29/02/2024"


class TestPerformExtraction:
    def test_all_chunks_merged(self, fake_client):
        client = fake_client(chunk_json(), chunk_json(monthly_balances=[]))
        progress = []

        result = perform_bank_statement_extraction(
            b'%PDF', {"month": 1, "year": 2024}, client=client,
            on_progress=progress.append, sleep=no_sleep, estimated_pages=10
        )

        assert result["success"] is True
        assert result["failed_chunks"] == []
        assert result["extracted_data"]["currency"] == "KES"
        assert "Breaking extraction into 2 chunks to increase accuracy..." in progress

    def test_bad_month_keeps_other_data(self, fake_client):
        client = fake_client(chunk_json(
            statement_period=None,
            monthly_balances=[{"month": 13, "year": 2024, "opening_balance": 1, "closing_balance": 2}]
        ))

        result = perform_bank_statement_extraction(
            b'%PDF', {"month": 1, "year": 2024}, client=client, sleep=no_sleep, estimated_pages=5
        )

        assert result["success"] is True
        assert result["extracted_data"]["bank_name"] == "Equity Bank"
        assert [b["month"] for b in result["extracted_data"]["monthly_balances"]] == [1]

    def test_failed_chunks_reported(self, fake_client):
        failure = {"success": False, "error": "overloaded"}
        client = fake_client(failure, failure, failure)

        result = perform_bank_statement_extraction(
            b'%PDF', {"month": 1, "year": 2024}, client=client, sleep=no_sleep, estimated_pages=5
        )

        assert result["success"] is True
        assert result["failed_chunks"] == ["Extraction failed after 3 attempts for pages 1-5."]


class TestMain:
    def test_missing_fields(self):
        assert bank_extraction.main({"s3_key": "a.pdf"}) == {
            "success": False,
            "error": "Missing required fields: month, year"
        }

    @pytest.mark.parametrize("month", [0, 13, "x"])
    def test_invalid_month(self, month):
        result = bank_extraction.main({"s3_key": "a.pdf", "month": month, "year": 2024})
        assert result["success"] is False

    def test_unsupported_file(self):
        result = bank_extraction.main({"s3_key": "a.docx", "month": 1, "year": 2024})
        assert result == {"success": False, "error": "Unsupported file type: docx"}

    def test_locked_pdf_without_password(self, encrypted_pdf_bytes):
        with patch('bank_extraction.download_from_s3', return_value=encrypted_pdf_bytes):
            result = bank_extraction.main({"s3_key": "statements/locked.pdf", "month": 1, "year": 2024})

        assert result["success"] is False
        assert result["requires_password"] is True

    def test_extracts_validates_and_saves(self, pdf_bytes, sample_bank):
        extraction = {
            "success": True,
            "extracted_data": {**json.loads(chunk_json()), "currency": "KES"},
            "failed_chunks": []
        }

        with patch('bank_extraction.download_from_s3', return_value=pdf_bytes), \
                patch('bank_extraction.perform_bank_statement_extraction', return_value=extraction), \
                patch('bank_extraction.bank_statements') as statements:
            statements.get_bank.return_value = sample_bank
            statements.get_or_create_statement_cycle.return_value = 'cycle-1'
            statements.save_statement.return_value = {"success": True, "statement_ids": ["st-1"], "skipped": []}

            result = bank_extraction.main({
                "s3_key": "statements/acme/jan.pdf", "month": "1", "year": "2024", "bank_id": "bank-1"
            })

        assert result["success"] is True
        assert result["password_protected"] is False
        assert result["metadata"]["file_name"] == "jan.pdf"
        assert result["storage"]["statement_ids"] == ["st-1"]
        statements.get_or_create_statement_cycle.assert_called_once_with(2024, 1)

    def test_unknown_bank(self):
        with patch('bank_extraction.bank_statements') as statements:
            statements.get_bank.return_value = None
            result = bank_extraction.main({"s3_key": "a.pdf", "month": 1, "year": 2024, "bank_id": "nope"})

        assert result == {"success": False, "error": "Bank not found: nope"}


def test_health_check():
    health = bank_extraction.health_check()
    assert health["service"] == "bank-statement-extraction"
    assert health["healthy"] is True
    assert len(health["api_keys"]) == 2
