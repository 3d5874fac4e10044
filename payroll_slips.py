# payroll_slips.py
import os
import logging
from typing import Callable, Dict, List, Optional

from botocore.exceptions import ClientError

from storage import dynamodb, scan_all

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

payroll_records_table = dynamodb.Table(os.getenv('PAYROLL_RECORDS_TABLE', 'company_payroll_records'))

TAX_TYPES = [
    {"id": "paye", "label": "PAYE"},
    {"id": "housing_levy", "label": "Hs. Levy"},
    {"id": "nita", "label": "NITA"},
    {"id": "shif", "label": "SHIF"},
    {"id": "nssf", "label": "NSSF"},
]

# Returns documents counted towards completion; all_csv is a derived bundle
EXCLUDED_DOCUMENTS = {'all_csv'}


def format_amount(amount) -> str:
    """Slip amounts are stored in cents without separators: '1,234,500' -> '12,345.00'"""
    if not amount:
        return '-'

    clean_amount = str(amount).replace(',', '').replace('.', '')
    try:
        return f"{float(clean_amount) / 100:,.2f}"
    except ValueError:
        return '-'


def _company_name(record: Dict) -> str:
    return (record.get('company') or {}).get('company_name') or record.get('company_name') or 'Unknown'


def extract_document_data(record: Dict, on_progress: Optional[Callable[[Dict], None]] = None) -> List[Dict]:
    """One summary per tax type from the slip documents and their stored extractions"""
    results = []
    documents = record.get('payment_slips_documents') or {}
    extractions = record.get('payment_slips_extractions') or {}

    for tax_type in TAX_TYPES:
        slip_key = f"{tax_type['id']}_slip"
        result = {
            "company_name": _company_name(record),
            "tax_type": tax_type['id'],
            "amount": None,
            "payment_mode": None,
            "payment_date": None,
            "document_path": None,
            "status": "processing",
            "error": None
        }

        document_path = documents.get(slip_key)
        if not document_path:
            result["status"] = "error"
            result["error"] = "Document not found"
        else:
            extracted = extractions.get(slip_key) or {}
            result["amount"] = extracted.get('amount') or None
            result["payment_mode"] = extracted.get('payment_mode') or None
            result["payment_date"] = extracted.get('payment_date') or None
            result["document_path"] = document_path
            result["status"] = "success"

        results.append(result)
        if on_progress:
            on_progress(result)

    return results


def process_all_documents(records: List[Dict], on_progress: Optional[Callable[[List[Dict]], None]] = None) -> List[Dict]:
    all_results = []

    for record in records:
        for result in extract_document_data(record):
            all_results.append(result)
            if on_progress:
                on_progress(list(all_results))

    return all_results


def _counted_documents(record: Dict) -> Dict:
    return {k: v for k, v in (record.get('documents') or {}).items() if k not in EXCLUDED_DOCUMENTS}


def get_document_count(record: Dict) -> str:
    """'uploaded/total' over the returns documents"""
    documents = _counted_documents(record)
    uploaded = sum(1 for value in documents.values() if value is not None)
    return f"{uploaded}/{len(documents)}"


def get_document_status(record: Dict) -> str:
    """completed, all_uploaded, partial or pending"""
    if (record.get('status') or {}).get('finalization_date'):
        return 'completed'

    documents = _counted_documents(record)
    uploaded = sum(1 for value in documents.values() if value is not None)

    if documents and uploaded == len(documents):
        return 'all_uploaded'
    if uploaded:
        return 'partial'
    return 'pending'


def list_payroll_records(payroll_cycle_id=None) -> Dict:
    try:
        records = scan_all(payroll_records_table)
        if payroll_cycle_id is not None:
            records = [r for r in records if r.get('payroll_cycle_id') == payroll_cycle_id]
        records.sort(key=lambda r: _company_name(r).lower())
        return {"success": True, "records": records, "total_count": len(records)}

    except ClientError as e:
        print(f"❌ Error listing payroll records: {e}")
        return {"success": False, "error": "Database error occurred"}


def get_slip_summaries(payroll_cycle_id=None) -> Dict:
    listing = list_payroll_records(payroll_cycle_id)
    if not listing["success"]:
        return listing

    records = listing["records"]
    summaries = process_all_documents(records)

    return {
        "success": True,
        "summaries": [
            {**s, "formatted_amount": format_amount(s["amount"])} for s in summaries
        ],
        "document_status": {
            r.get('id'): {"status": get_document_status(r), "count": get_document_count(r)}
            for r in records
        },
        "total_count": len(summaries)
    }
