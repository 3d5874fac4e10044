# export_utils.py
import os
import re
import io
import zipfile
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

import pandas as pd
import requests
from openpyxl.styles import Font, Alignment, PatternFill, Border, Side
from openpyxl.utils import get_column_letter

from statement_periods import parse_statement_period, get_month_abbr
from storage import download_from_s3

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

STATEMENTS_BUCKET = os.getenv('STATEMENTS_BUCKET_NAME', os.getenv('S3_BUCKET_NAME', 'company-documents-2025'))

HEADER_FILL = PatternFill(start_color='4472C4', end_color='4472C4', fill_type='solid')
HEADER_FONT = Font(bold=True, color='FFFFFF')
THIN_BORDER = Border(
    left=Side(style='thin'),
    right=Side(style='thin'),
    top=Side(style='thin'),
    bottom=Side(style='thin')
)
MAX_COLUMN_WIDTH = 60


def _document(statement: Dict) -> Dict:
    return statement.get('statement_document') or {}


def _file_key(statement: Dict) -> str:
    document = _document(statement)
    return f"{document.get('statement_pdf') or 'no-pdf'}_{document.get('statement_excel') or 'no-excel'}"


def _period_part(statement: Dict) -> str:
    month = statement.get('statement_month')
    year = statement.get('statement_year')

    if statement.get('statement_type') != 'range':
        return f"{get_month_abbr(month)}.{year}"

    period = parse_statement_period((statement.get('statement_extractions') or {}).get('statement_period') or '')
    if not period:
        return f"{get_month_abbr(month)}.{year}-RANGE"

    start = get_month_abbr(period.start_month)
    end = get_month_abbr(period.end_month)
    if period.start_year == period.end_year:
        return f"{start}-{end}.{period.start_year}"
    return f"{start}.{period.start_year}-{end}.{period.end_year}"


def generate_file_name(statement: Dict, company: Dict, bank: Dict, include_password: bool = False) -> str:
    """COMPANY-BANK-ACCOUNTDIGITS-CURRENCY-PERIOD[-PWxxx]"""
    company_part = re.sub(r'[^A-Z0-9]', '', (company.get('company_name') or '').upper())
    bank_part = re.sub(r'[^A-Z0-9]', '', (bank.get('bank_name') or '').upper())
    account_part = re.sub(r'[^0-9]', '', str(bank.get('account_number') or ''))
    currency_part = (bank.get('bank_currency') or '').upper()

    name = f"{company_part}-{bank_part}-{account_part}-{currency_part}-{_period_part(statement)}"

    password = _document(statement).get('password') or bank.get('acc_password')
    if include_password and password:
        name += f"-PW{str(password).upper()}"

    return name


def deduplicate_statements(statements: List[Dict]) -> List[Dict]:
    """Range statements share their files across months; keep one per file pair"""
    seen = set()
    unique = []

    for statement in statements:
        key = _file_key(statement)
        if key in seen:
            logger.info(f"Skipped duplicate {statement.get('statement_type')} statement for "
                        f"{statement.get('statement_month')}/{statement.get('statement_year')}")
            continue
        seen.add(key)
        unique.append(statement)

    logger.info(f"Deduplication summary: {len(statements)} selected -> {len(unique)} unique files")
    return unique


def analyze_statements_for_export(statements: List[Dict]) -> Dict:
    monthly = [s for s in statements if s.get('statement_type') != 'range']
    range_statements = [s for s in statements if s.get('statement_type') == 'range']

    by_file: Dict[str, List[Dict]] = {}
    for statement in range_statements:
        by_file.setdefault(_file_key(statement), []).append(statement)

    duplicate_range_groups = [group for group in by_file.values() if len(group) > 1]

    return {
        "monthly_count": len(monthly),
        "range_count": len(range_statements),
        "total": len(statements),
        "has_range": bool(range_statements),
        "has_monthly": bool(monthly),
        "duplicate_range_groups": [
            {
                "months": [f"{s.get('statement_month')}/{s.get('statement_year')}" for s in group],
                "period": (group[0].get('statement_extractions') or {}).get('statement_period') or 'Unknown period'
            }
            for group in duplicate_range_groups
        ],
        "unique_files": len(deduplicate_statements(statements)),
        "examples": [
            {
                "type": s.get('statement_type'),
                "month": s.get('statement_month'),
                "year": s.get('statement_year'),
                "period": (s.get('statement_extractions') or {}).get('statement_period')
            }
            for s in statements[:3]
        ]
    }


def fetch_statement_file(path: str) -> bytes:
    """Full URLs are fetched over HTTP, anything else is an S3 key"""
    if path.startswith('http://') or path.startswith('https://'):
        response = requests.get(path, timeout=30)
        response.raise_for_status()
        return response.content
    return download_from_s3(path, STATEMENTS_BUCKET)


def _safe_name(value: str) -> str:
    return re.sub(r'[^a-zA-Z0-9]', '', value or '')


def create_zip_export(statements: List[Dict], company: Dict, bank: Dict, options: Optional[Dict] = None,
                      fetch: Callable[[str], bytes] = fetch_statement_file) -> Tuple[bytes, str]:
    """
    Zip the PDF / Excel files of the selected statements.

    options: {"include_password": bool, "rename_files": bool (default True)}
    Files that fail to download are replaced by an ERROR_*.txt note.
    """
    options = options or {}
    include_password = options.get('include_password', False)
    rename_files = options.get('rename_files', True)

    unique_statements = deduplicate_statements(statements)
    success_count = 0
    error_count = 0

    output = io.BytesIO()
    with zipfile.ZipFile(output, 'w', zipfile.ZIP_DEFLATED) as archive:
        for statement in unique_statements:
            if rename_files:
                base_name = generate_file_name(statement, company, bank, include_password)
            else:
                base_name = f"statement_{statement.get('id')}"

            document = _document(statement)

            for path_key, extension, error_name, label in (
                ('statement_pdf', 'pdf', f"ERROR_{base_name}.txt", 'PDF'),
                ('statement_excel', 'xlsx', f"ERROR_{base_name}_Excel.txt", 'Excel'),
            ):
                path = document.get(path_key)
                if not path:
                    continue

                try:
                    archive.writestr(f"{base_name}.{extension}", fetch(path))
                    success_count += 1
                except Exception as e:
                    error_count += 1
                    print(f"❌ Failed to download {label} for {statement.get('id')}: {e}")
                    archive.writestr(
                        error_name,
                        f"Failed to download {label}: {e}\n"
                        f"Statement Type: {statement.get('statement_type')}\n"
                        f"Original Path: {path}"
                    )

    print(f"✅ Export zip built: {success_count} files, {error_count} errors")

    timestamp = datetime.now().strftime('%Y-%m-%d')
    zip_name = f"{_safe_name(company.get('company_name'))}_{_safe_name(bank.get('bank_name'))}_statements_{timestamp}.zip"

    return output.getvalue(), zip_name


def _style_sheet(ws, df: pd.DataFrame):
    for col in range(1, len(df.columns) + 1):
        cell = ws.cell(row=1, column=col)
        cell.fill = HEADER_FILL
        cell.font = HEADER_FONT
        cell.alignment = Alignment(horizontal='center', vertical='center')
        cell.border = THIN_BORDER

    for idx, column in enumerate(df.columns, start=1):
        values = [str(column)] + [str(v) for v in df[column].tolist() if v is not None]
        width = min(max(len(v) for v in values) + 2, MAX_COLUMN_WIDTH)
        ws.column_dimensions[get_column_letter(idx)].width = width

    ws.freeze_panes = 'A2'


def build_excel_workbook(sheets: Dict[str, List[Dict]], title: Optional[str] = None) -> bytes:
    """
    One worksheet per entry of `sheets` ({sheet name: rows}). Sheet names are
    cut to Excel's 31 character limit; a sheet with no rows still gets written.
    """
    output = io.BytesIO()

    with pd.ExcelWriter(output, engine='openpyxl') as writer:
        if not sheets:
            sheets = {title or 'Sheet1': []}

        for sheet_name, rows in sheets.items():
            name = (sheet_name or 'Sheet1')[:31]
            df = pd.DataFrame(rows)
            if df.empty and not len(df.columns):
                df = pd.DataFrame({'No data': []})

            df.to_excel(writer, sheet_name=name, index=False)
            _style_sheet(writer.sheets[name], df)

        if title:
            writer.book.properties.title = title

    return output.getvalue()
