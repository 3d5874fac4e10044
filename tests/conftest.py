"""
Shared fixtures. Environment defaults are set before any project module is
imported so the module-level boto3 resources and key pool never reach AWS or
the model API.
"""
import os
import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

os.environ.setdefault('AWS_REGION', 'eu-north-1')
os.environ.setdefault('AWS_ACCESS_KEY_ID', 'testing')
os.environ.setdefault('AWS_SECRET_ACCESS_KEY', 'testing')
os.environ.setdefault('AWS_DEFAULT_REGION', 'eu-north-1')
os.environ.setdefault('ANTHROPIC_API_KEYS', 'test-key-1,test-key-2')
os.environ.setdefault('JWT_SECRET', 'test-secret')
os.environ.setdefault('AUTOMATION_WEBHOOK_URL', 'https://automation.example.com/webhook')

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import fitz  # noqa: E402


def make_table(items=None, pages=None):
    """MagicMock DynamoDB table; `pages` yields several scan pages"""
    table = MagicMock()
    if pages is not None:
        responses = []
        for i, page in enumerate(pages):
            response = {'Items': page}
            if i < len(pages) - 1:
                response['LastEvaluatedKey'] = {'id': f'page-{i}'}
            responses.append(response)
        table.scan.side_effect = responses
    else:
        table.scan.return_value = {'Items': list(items or [])}
    return table


def make_client(*responses):
    """Fake ExtractionClient whose complete() returns each response in turn"""
    client = MagicMock()
    client.complete.side_effect = [
        r if isinstance(r, dict) else {"success": True, "text": r} for r in responses
    ]
    return client


@pytest.fixture
def fake_table():
    return make_table


@pytest.fixture
def fake_client():
    return make_client


@pytest.fixture
def sample_bank():
    return {
        'id': 'bank-1',
        'company_id': 'company-1',
        'company_name': 'Acme Ltd',
        'bank_name': 'Equity Bank',
        'account_number': '1234567890',
        'bank_currency': 'KES',
        'acc_password': '5678',
    }


@pytest.fixture
def sample_statements():
    documents = {'statement_pdf': 'statements/acme/jan.pdf', 'statement_excel': None, 'document_size': 1024}
    range_documents = {'statement_pdf': 'statements/acme/q1.pdf', 'statement_excel': 'statements/acme/q1.xlsx'}
    return [
        {
            'id': 'st-1',
            'bank_id': 'bank-1',
            'statement_month': 1,
            'statement_year': 2024,
            'statement_type': 'monthly',
            'statement_document': documents,
            'statement_extractions': {'statement_period': '01/01/2024 - 31/01/2024'},
        },
        {
            'id': 'st-2',
            'bank_id': 'bank-1',
            'statement_month': 2,
            'statement_year': 2024,
            'statement_type': 'range',
            'statement_document': range_documents,
            'statement_extractions': {'statement_period': '01/02/2024 - 30/04/2024'},
        },
        {
            'id': 'st-3',
            'bank_id': 'bank-1',
            'statement_month': 3,
            'statement_year': 2024,
            'statement_type': 'range',
            'statement_document': range_documents,
            'statement_extractions': {'statement_period': '01/02/2024 - 30/04/2024'},
        },
    ]


def _pdf_bytes(page_texts, **save_options):
    doc = fitz.open()
    for text in page_texts:
        page = doc.new_page()
        page.insert_text((72, 72), text)
    content = doc.tobytes(**save_options)
    doc.close()
    return content


@pytest.fixture
def pdf_bytes():
    return _pdf_bytes(['Statement page one', 'Statement page two', 'Statement page three'])


@pytest.fixture
def encrypted_pdf_bytes():
    return _pdf_bytes(
        ['Locked statement'],
        encryption=fitz.PDF_ENCRYPT_AES_256,
        owner_pw='owner-secret',
        user_pw='5678',
    )
