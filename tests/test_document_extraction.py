import json
from unittest.mock import patch

import pytest
from botocore.exceptions import ClientError

import document_extraction
from document_extraction import (
    ExtractionError, format_field_prompts, create_example_output, format_extracted_value,
    validate_field, clean_extracted_data, validate_extracted_types, map_fields,
    parse_extraction_response, perform_extraction, perform_batch_extraction, retry_extraction
)

FIELDS = [
    {"id": "f1", "name": "amount", "type": "number", "required": True},
    {"id": "f2", "name": "payment_date", "type": "date"},
]

ITEMS_FIELD = {
    "id": "f3",
    "name": "items",
    "type": "array",
    "array_config": {
        "fields": [{"name": "description", "type": "text"}, {"name": "amount", "type": "number"}],
        "max_items": 2,
    },
}


def no_sleep(seconds):
    pass


class TestPrompts:
    def test_field_prompts(self):
        prompt = format_field_prompts(FIELDS + [ITEMS_FIELD])
        assert "- payment_date (in DD/MM/YYYY format)" in prompt
        assert "- items (multiple entries possible) with fields:\n  * description\n  * amount" in prompt
        assert format_field_prompts("amount") == ''

    def test_example_output(self):
        assert create_example_output(FIELDS + [ITEMS_FIELD]) == {
            "amount": "example_number",
            "payment_date": "example_date",
            "items": [{"description": "example_text", "amount": "example_number"}],
        }


class TestValues:
    @pytest.mark.parametrize("value,field_type,expected", [
        ("09/02/2024", "date", "2024-02-09"),
        ("not a date", "date", None),
        ("KES 1,500", "number", 1500.0),
        ("yes", "boolean", True),
        ("maybe", "boolean", None),
        ("single", "array", []),
        ("  text ", "text", "text"),
        (None, "text", None),
    ])
    def test_format(self, value, field_type, expected):
        assert format_extracted_value(value, field_type) == expected

    def test_validate_field(self):
        assert validate_field(None, FIELDS[0]) == {"is_valid": False, "error": "amount is required"}
        assert validate_field(None, FIELDS[1]) == {"is_valid": True, "error": None}
        assert validate_field("1,000", FIELDS[0])["error"] == "Invalid number format for amount"
        assert validate_field("tomorrow", FIELDS[1])["error"] == "Invalid date format for payment_date"
        assert not validate_field("nope", {"name": "email", "type": "email"})["is_valid"]
        assert validate_field("+254 700 000000", {"name": "phone", "type": "phone"})["is_valid"]

    def test_clean(self):
        cleaned = clean_extracted_data(
            {"amount": "250", "payment_date": "09/02/2024", "extra": "dropped",
             "items": [{"description": "Rent", "amount": "100"}]},
            FIELDS + [ITEMS_FIELD]
        )
        assert cleaned == {
            "amount": 250.0,
            "payment_date": "2024-02-09",
            "items": [{"description": "Rent", "amount": 100.0}],
        }

    def test_validate_types(self):
        assert validate_extracted_types({"amount": "12", "payment_date": "09/02/2024"}, FIELDS)
        assert not validate_extracted_types({"payment_date": "someday"}, FIELDS)
        assert not validate_extracted_types({"items": "Rent"}, [ITEMS_FIELD])


class TestMapFields:
    def test_name_variants(self):
        mapped = map_fields({"AMOUNT": 5, "amount": 10, "payment": {"date": "09/02/2024"}}, FIELDS)
        assert mapped == {"amount": 10, "payment_date": "09/02/2024"}

    def test_flat_array_keys(self):
        mapped = map_fields({
            "items_1_description": "Rent",
            "items_1_amount": "100",
            "items[1].description": "Water",
        }, [ITEMS_FIELD])

        assert mapped == {"items": [{"description": "Rent", "amount": "100"}, {"description": "Water"}]}

    def test_array_drops_empty_items(self):
        mapped = map_fields({"items": [{"description": "", "amount": None}, {"description": "Rent"}]}, [ITEMS_FIELD])
        assert mapped == {"items": [{"description": "Rent"}]}

    def test_parse_response_falls_back_to_lines(self):
        assert parse_extraction_response('```json\n{"amount": 5}\n```') == {"amount": 5}
        assert parse_extraction_response("amount: 5")["amount"] == 5


class TestPerformExtraction:
    def test_success_with_validation_issues(self, fake_client):
        client = fake_client(json.dumps({"amount": "1,000", "payment_date": "09/02/2024"}))
        result = perform_extraction(b'%PDF', "slip.pdf", FIELDS, "Payment Slip", client=client, sleep=no_sleep)

        assert result["success"] is True
        assert result["extracted_data"] == {"amount": "1,000", "payment_date": "09/02/2024"}
        assert result["validation_errors"] == [{"field": "amount", "error": "Invalid number format for amount"}]
        assert result["message"] == document_extraction.VALIDATION_ISSUES_MESSAGE

    def test_clean_success(self, fake_client):
        client = fake_client(json.dumps({"amount": "1000"}))
        result = perform_extraction(b'\x89PNG', "slip.png", FIELDS, "Payment Slip", client=client, sleep=no_sleep)

        assert result["message"] == document_extraction.SUCCESS_MESSAGE
        assert result["validation_errors"] is None

    def test_all_attempts_fail(self, fake_client):
        failure = {"success": False, "error": "overloaded"}
        client = fake_client(failure, failure, failure)
        result = perform_extraction(b'%PDF', "slip.pdf", FIELDS, "Payment Slip", client=client, sleep=no_sleep)

        assert result["success"] is False
        assert result["message"] == "Extraction failed after 3 attempts. Please enter the data manually."
        assert result["failed_fields"] == FIELDS

    def test_unsupported_file(self, fake_client):
        client = fake_client()
        result = perform_extraction(b'x', "slip.docx", FIELDS, "Payment Slip", client=client, sleep=no_sleep)

        assert result["success"] is False
        client.complete.assert_not_called()


class TestBatchExtraction:
    def test_results_keyed_by_type(self, fake_client):
        documents = [
            {"content": b'%PDF', "file_name": "paye.pdf", "type": "paye_slip", "label": "PAYE"},
            {"content": b'%PDF', "file_name": "nssf.pdf", "type": "nssf_slip", "label": "NSSF"},
        ]
        client = fake_client(json.dumps({"paye_slip": {"amount": "1000", "payment_date": "09/02/2024"}}))

        result = perform_batch_extraction(documents, FIELDS, "Payment Slip", client=client, sleep=no_sleep)

        paye = result["extracted_data"]["paye_slip"]
        nssf = result["extracted_data"]["nssf_slip"]
        assert paye["extracted_data"] == {"amount": 1000.0, "payment_date": "2024-02-09"}
        assert paye["validation_errors"] is None
        assert nssf["validation_errors"] == [{"field": "amount", "error": "amount is required"}]

        prompt = client.complete.call_args.args[0]
        assert "Document 2: NSSF (nssf_slip)" in prompt
        assert len(client.complete.call_args.args[1]) == 2

    def test_no_documents(self):
        assert perform_batch_extraction([], FIELDS, "Payment Slip")["message"] == "No documents provided"


class TestRetryExtraction:
    def test_raises_after_retries(self):
        failed = {"success": False, "message": "Extraction failed after 3 attempts."}
        delays = []

        with patch('document_extraction.perform_extraction', return_value=failed) as perform:
            with pytest.raises(ExtractionError):
                retry_extraction(b'%PDF', "slip.pdf", FIELDS, "Payment Slip", sleep=delays.append)

        assert perform.call_count == 3
        assert delays == [1, 2]

    def test_returns_first_success(self):
        results = [{"success": False, "message": "nope"}, {"success": True, "extracted_data": {"amount": 1}}]

        with patch('document_extraction.perform_extraction', side_effect=results):
            result = retry_extraction(b'%PDF', "slip.pdf", FIELDS, "Payment Slip", sleep=no_sleep)

        assert result["extracted_data"] == {"amount": 1}


class TestSaveExtractedData:
    def test_updates_both_records(self, fake_table):
        uploads, documents = fake_table(), fake_table()
        uploads.update_item.return_value = {'Attributes': {'id': 'up-1'}}
        documents.update_item.return_value = {'Attributes': {'id': 'doc-1'}}

        with patch.object(document_extraction, 'kyc_uploads_table', uploads), \
                patch.object(document_extraction, 'kyc_documents_table', documents):
            result = document_extraction.save_extracted_data('up-1', 'doc-1', {"amount": 1.5})

        assert result == {"success": True, "upload": {'id': 'up-1'}, "document": {'id': 'doc-1'}}
        values = uploads.update_item.call_args.kwargs['ExpressionAttributeValues']
        assert str(values[':data']['amount']) == '1.5'

    def test_database_error(self, fake_table):
        uploads = fake_table()
        uploads.update_item.side_effect = ClientError({'Error': {'Code': 'x', 'Message': 'y'}}, 'UpdateItem')

        with patch.object(document_extraction, 'kyc_uploads_table', uploads):
            result = document_extraction.save_extracted_data('up-1', 'doc-1', {})

        assert result == {"success": False, "error": "Failed to save extracted data"}
