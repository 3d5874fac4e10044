# bulk_download.py
import os
import io
import re
import zipfile
import logging
from datetime import datetime
from typing import Callable, Dict, List

import requests
from botocore.exceptions import ClientError

from storage import dynamodb, scan_all

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

payroll_reports_table = dynamodb.Table(os.getenv('PAYROLL_REPORTS_TABLE', 'payroll_reports_external'))

DOWNLOAD_TIMEOUT = 30  # seconds

# document type -> (report link column, file name template, is spreadsheet)
DOCUMENT_MAP = {
    'PAYE_PDF': ('PAYE_Link', 'PAYE Returns.pdf', False),
    'NSSF_PDF': ('NSSF_Link', 'NSSF Returns.pdf', False),
    'NHIF_PDF': ('NHIF_Link', 'NHIF Returns.pdf', False),
    'SHIF_PDF': ('SHIF_Link', 'SHIF Returns.pdf', False),
    'Housing_Levy_PDF': ('Housing_Levy_Link', 'Housing Levy Returns.pdf', False),
    'NITA_PDF': ('NITA_List', 'NITA Returns.pdf', False),
    'PAYE_CSV': ('PAYE_CSV_Link', '{company}_PAYE.csv', True),
    'Housing_Levy_CSV': ('Housing_Levy_CSV_Link', '{company}_Housing_Levy.csv', True),
    'NSSF_Excel': ('NSSF_Excel_Link', '{company}_NSSF.xlsx', True),
    'NHIF_Excel': ('NHIF_Excel_Link', '{company}_NHIF.xlsx', True),
    'SHIF_Excel': ('SHIF_Excel_Link', '{company}_SHIF.xlsx', True),
    'Payroll_Summary_Excel': ('Payroll_Summary_Excel_Link', '{company}_Payroll_Summary.xlsx', True),
}


def sanitize_company_name(name: str) -> str:
    return re.sub(r'[<>:"/\\|?*]', '', name or '')


def download_file(url: str) -> bytes:
    if not url:
        raise ValueError('URL is empty or undefined')

    try:
        response = requests.get(url, timeout=DOWNLOAD_TIMEOUT, allow_redirects=True)
    except requests.exceptions.Timeout:
        raise Exception(f"Request timed out: {url}")
    except requests.exceptions.RequestException as e:
        raise Exception(f"Network error: {e}")

    if response.status_code == 404:
        raise Exception(f"File not found (404): {url}")
    if response.status_code != 200:
        raise Exception(f"HTTP error {response.status_code}: {url}")

    return response.content


def load_report_records(member_id=None) -> List[Dict]:
    records = scan_all(payroll_reports_table)
    if member_id is not None:
        records = [r for r in records if str(r.get('MemberID')) == str(member_id)]
    return records


def create_bulk_download(records: List[Dict], selected_docs: Dict[str, bool],
                         fetch: Callable[[str], bytes] = download_file) -> Dict:
    """
    Zip the selected payroll documents of every company. PDFs go under
    PDFs/<company>/, spreadsheets under Excel_CSV/.
    """
    logs = ['Starting bulk download process...', f"Found {len(records)} companies to process"]
    errors = []
    total_files = 0
    successful_files = 0

    output = io.BytesIO()
    with zipfile.ZipFile(output, 'w', zipfile.ZIP_DEFLATED, compresslevel=5) as archive:
        for report in records:
            company = sanitize_company_name(report.get('CompanyName'))
            logs.append(f"Processing company: {company}")

            for doc_type, selected in selected_docs.items():
                if not selected or doc_type not in DOCUMENT_MAP:
                    continue

                link_column, name_template, is_spreadsheet = DOCUMENT_MAP[doc_type]
                url = report.get(link_column)
                if not url:
                    continue

                name = name_template.format(company=company)
                total_files += 1

                try:
                    logs.append(f"Downloading {name}...")
                    data = fetch(url)

                    path = f"Excel_CSV/{name}" if is_spreadsheet else f"PDFs/{company}/{name}"
                    archive.writestr(path, data)

                    successful_files += 1
                    logs.append(f"[SUCCESS] Downloaded {name}")

                except Exception as e:
                    message = f"[ERROR] Failed to download {name}: {e}"
                    errors.append(message)
                    logs.append(message)

    logs.append(f"Download summary: {successful_files}/{total_files} files downloaded successfully")
    logs.append('Process completed')

    return {
        "content": output.getvalue(),
        "filename": f"bulk_download_{datetime.now().strftime('%Y-%m-%d')}.zip",
        "logs": logs,
        "errors": errors,
        "status": f"{successful_files}/{total_files}"
    }


def bulk_download(selected_docs: Dict[str, bool], member_id=None):
    """(result, None) on success, (None, error_dict) otherwise"""
    try:
        records = load_report_records(member_id)
        return create_bulk_download(records, selected_docs), None

    except ClientError as e:
        print(f"❌ Error loading payroll reports: {e}")
        return None, {"success": False, "error": "Database error occurred"}
