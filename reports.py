import os
import re
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Any

from botocore.exceptions import ClientError

from export_utils import build_excel_workbook
from storage import dynamodb, scan_all

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

EXCEL_EPOCH = datetime(1900, 1, 1)
DATE_FORMATS = ['%d/%m/%Y', '%d-%m-%Y', '%Y-%m-%d', '%m/%d/%Y', '%d-%m-%y', '%Y/%m/%d']

REPORT_SOURCES = {
    'password_checker': {
        'title': 'Password Checker',
        'table': os.getenv('PASSWORD_CHECKER_TABLE', 'PasswordChecker'),
        'columns': ['company_name', 'kra_pin', 'kra_password', 'status', 'category', 'last_checked'],
        'search_fields': ['company_name', 'kra_pin'],
        'date_fields': ['last_checked'],
        'flatten_fields': [],
    },
    'manufacturers_details': {
        'title': 'Manufacturers Details',
        'table': os.getenv('MANUFACTURERS_DETAILS_TABLE', 'ManufacturersDetails'),
        'columns': ['company_name', 'kra_pin', 'manufacturer_name', 'itax_mobile_number',
                    'itax_main_email_address', 'itax_business_reg_cert_no', 'category', 'last_checked_at'],
        'search_fields': ['company_name', 'kra_pin', 'manufacturer_name'],
        'date_fields': ['last_checked_at'],
        'flatten_fields': [],
    },
    'pin_checker_details': {
        'title': 'PIN Checker Details',
        'table': os.getenv('PIN_CHECKER_DETAILS_TABLE', 'PinCheckerDetails'),
        'columns': ['company_name', 'kra_pin', 'income_tax_company_status', 'vat_status', 'paye_status',
                    'rental_income_status', 'turnover_tax_status', 'category', 'last_checked_at'],
        'search_fields': ['company_name', 'kra_pin'],
        'date_fields': ['last_checked_at'],
        'flatten_fields': [],
    },
    'ledgers': {
        'title': 'Ledger Extractions',
        'table': os.getenv('LEDGER_EXTRACTIONS_TABLE', 'ledger_extractions'),
        'columns': ['company_name', 'kra_pin', 'status', 'category', 'extraction_date', 'ledger_data'],
        'search_fields': ['company_name', 'kra_pin'],
        'date_fields': ['extraction_date'],
        'flatten_fields': ['ledger_data'],
    },
    'tax_checklist': {
        'title': 'Tax Checklist',
        'table': os.getenv('TAX_CHECKLIST_TABLE', 'checklist'),
        'columns': ['company_name', 'kra_pin', 'category', 'status', 'taxes'],
        'search_fields': ['company_name', 'kra_pin'],
        'date_fields': [],
        'flatten_fields': ['taxes'],
    },
}

STATUS_COLORS = {
    'valid': 'bg-green-100 text-green-800',
    'invalid': 'bg-red-100 text-red-800',
    'error': 'bg-red-100 text-red-800',
    'locked': 'bg-yellow-100 text-yellow-800',
    'pending': 'bg-yellow-100 text-yellow-800',
    'password expired': 'bg-yellow-100 text-yellow-800',
}
DEFAULT_STATUS_COLOR = 'bg-gray-100 text-gray-800'


# =============================================================================
# FORMATTING
# =============================================================================

def parse_date(value) -> Optional[datetime]:
    """Excel serial numbers (day 1 = 1900-01-01) or one of DATE_FORMATS"""
    if value is None or value == '':
        return None

    if isinstance(value, datetime):
        return value

    text = str(value).strip()
    try:
        serial = float(text)
        return EXCEL_EPOCH + timedelta(days=serial - 1)
    except ValueError:
        pass

    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue

    # ISO timestamps such as 2024-03-01T10:00:00Z
    try:
        return datetime.fromisoformat(text.replace('Z', '+00:00'))
    except ValueError:
        return None


def format_date(value) -> str:
    if value is None or value == '':
        return 'N/A'
    parsed = parse_date(value)
    if not parsed:
        return 'Invalid Date'
    return parsed.strftime('%d/%m/%Y')


def get_status_color(status: Optional[str]) -> str:
    if not status:
        return DEFAULT_STATUS_COLOR
    return STATUS_COLORS.get(status.lower(), DEFAULT_STATUS_COLOR)


def extract_table_schema(rows: List[Dict]) -> Dict[str, str]:
    """Column types inferred from the first row"""
    if not rows:
        return {}

    schema = {}
    for key, value in rows[0].items():
        if value is None:
            schema[key] = 'string'
        elif isinstance(value, bool):
            schema[key] = 'boolean'
        elif isinstance(value, (int, float)):
            schema[key] = 'number'
        elif isinstance(value, datetime):
            schema[key] = 'date'
        elif isinstance(value, str):
            if re.match(r'^\d{4}-\d{2}-\d{2}', value) or ('T' in value and 'Z' in value):
                schema[key] = 'datetime'
            else:
                schema[key] = 'string'
        elif isinstance(value, (dict, list)):
            schema[key] = 'object'
        else:
            schema[key] = 'string'

    return schema


def flatten_nested_data(rows: List[Dict], flatten_fields: List[str]) -> List[Dict]:
    """
    One output row per nested item. Nested values shaped as
    {"status": ..., "data": [...]} or as plain lists are expanded into
    `<field>_<key>` columns with a 1-based `<field>_index`.
    """
    if not flatten_fields:
        return rows

    flattened = []

    for record in rows:
        base = {k: v for k, v in record.items() if k not in flatten_fields}
        has_nested = False

        for field in flatten_fields:
            nested = record.get(field)

            if isinstance(nested, dict) and isinstance(nested.get('data'), list):
                items = nested['data']
                extra = {f"{field}_status": nested.get('status') or 'unknown'}
            elif isinstance(nested, list):
                items = nested
                extra = {}
            else:
                continue

            for index, item in enumerate(items, start=1):
                flat = {**base, f"{field}_index": index, **extra}
                if isinstance(item, dict):
                    for key, value in item.items():
                        flat[f"{field}_{key}"] = value
                else:
                    flat[f"{field}_value"] = item
                flattened.append(flat)
                has_nested = True

        if not has_nested:
            flattened.append(base)

    return flattened


# =============================================================================
# REPORTS
# =============================================================================

def _matches(row: Dict, source: Dict, filters: Dict) -> bool:
    category = filters.get('category')
    if category and category != 'all' and str(row.get('category') or '').lower() != category.lower():
        return False

    status = filters.get('status')
    if status and status != 'all' and str(row.get('status') or '').lower() != status.lower():
        return False

    search = (filters.get('search') or '').strip().lower()
    if search and not any(search in str(row.get(f) or '').lower() for f in source['search_fields']):
        return False

    return True


def list_report(report: str, filters: Optional[Dict] = None) -> Dict[str, Any]:
    """Rows of a report source with optional category / status / search filters"""
    source = REPORT_SOURCES.get(report)
    if not source:
        return {'success': False, 'error': f"Unknown report: {report}"}

    filters = filters or {}

    try:
        table = dynamodb.Table(source['table'])
        rows = [row for row in scan_all(table) if _matches(row, source, filters)]
        rows.sort(key=lambda r: str(r.get('company_name') or '').lower())

        for row in rows:
            if 'status' in row:
                row['status_color'] = get_status_color(row.get('status'))

        return {
            'success': True,
            'report': report,
            'title': source['title'],
            'rows': rows,
            'schema': extract_table_schema(rows),
            'total_count': len(rows)
        }

    except ClientError as e:
        logger.error(f"Error loading report {report}: {e}")
        return {'success': False, 'error': 'Database error occurred'}


def _export_rows(report: str, filters: Optional[Dict]) -> Dict[str, Any]:
    result = list_report(report, filters)
    if not result.get('success'):
        return result

    source = REPORT_SOURCES[report]
    rows = [{col: row.get(col) for col in source['columns']} for row in result['rows']]
    rows = flatten_nested_data(rows, source['flatten_fields'])

    for row in rows:
        for field in source['date_fields']:
            if field in row:
                row[field] = format_date(row[field])

    return {'success': True, 'title': source['title'], 'rows': rows}


def download_report_excel(report: str, filters: Optional[Dict] = None) -> tuple:
    """Generate a report as an Excel workbook"""
    try:
        result = _export_rows(report, filters)
        if not result.get('success'):
            return None, result

        content = build_excel_workbook({result['title']: result['rows']}, title=result['title'])
        filename = f"{report}_{datetime.now().strftime('%Y-%m-%d')}.xlsx"
        return content, filename

    except Exception as e:
        logger.error(f"Error generating {report} Excel: {str(e)}")
        return None, {'success': False, 'error': str(e)}


def download_report_csv(report: str, filters: Optional[Dict] = None) -> tuple:
    """Generate a report as CSV"""
    try:
        from io import StringIO
        import csv

        result = _export_rows(report, filters)
        if not result.get('success'):
            return None, result

        rows = result['rows']
        columns = []
        for row in rows:
            for key in row:
                if key not in columns:
                    columns.append(key)

        output = StringIO()
        writer = csv.writer(output)

        writer.writerow([result['title']])
        writer.writerow(['Generated:', datetime.now().strftime('%d/%m/%Y %H:%M')])
        writer.writerow([])

        writer.writerow(columns)
        for row in rows:
            writer.writerow(['' if row.get(col) is None else row.get(col) for col in columns])

        filename = f"{report}_{datetime.now().strftime('%Y-%m-%d')}.csv"
        return output.getvalue(), filename

    except Exception as e:
        logger.error(f"Error generating {report} CSV: {str(e)}")
        return None, {'success': False, 'error': str(e)}
