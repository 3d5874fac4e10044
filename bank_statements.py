# bank_statements.py
import os
import uuid
import logging
from datetime import datetime
from typing import Dict, List, Optional

from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError

from storage import dynamodb, convert_decimal, convert_to_decimal, scan_all
from statement_periods import (
    parse_statement_period, generate_month_range, is_multi_month_period
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

banks_table = dynamodb.Table(os.getenv('BANKS_TABLE', 'acc_portal_banks'))
statements_table = dynamodb.Table(os.getenv('BANK_STATEMENTS_TABLE', 'acc_cycle_bank_statements'))
cycles_table = dynamodb.Table(os.getenv('STATEMENT_CYCLES_TABLE', 'statement_cycles'))


def cycle_key(year, month) -> str:
    """YYYY-MM key of a statement cycle (1-based month)"""
    return f"{int(year)}-{int(month):02d}"


def get_or_create_statement_cycle(year, month) -> Optional[str]:
    """Return the id of the cycle for month/year, creating it when missing"""
    month_year = cycle_key(year, month)

    try:
        existing = scan_all(cycles_table, FilterExpression=Attr('month_year').eq(month_year))
        if existing:
            return existing[0]['id']

        cycle_id = str(uuid.uuid4())
        cycles_table.put_item(Item={
            'id': cycle_id,
            'month_year': month_year,
            'status': 'active',
            'created_at': datetime.utcnow().isoformat()
        })
        print(f"✅ Created statement cycle {month_year}")
        return cycle_id

    except ClientError as e:
        logger.error(f"Error getting statement cycle {month_year}: {e}")
        return None


def get_bank(bank_id) -> Optional[Dict]:
    try:
        response = banks_table.get_item(Key={'id': bank_id})
        if 'Item' not in response:
            return None
        return convert_decimal(response['Item'])
    except ClientError as e:
        logger.error(f"Error getting bank {bank_id}: {e}")
        return None


def list_banks(company_id=None) -> Dict:
    try:
        scan_kwargs = {}
        if company_id is not None:
            scan_kwargs['FilterExpression'] = Attr('company_id').eq(company_id)

        banks = scan_all(banks_table, **scan_kwargs)
        banks.sort(key=lambda b: (str(b.get('company_name') or ''), str(b.get('bank_name') or '')))

        return {"success": True, "banks": banks, "total_count": len(banks)}

    except ClientError as e:
        print(f"❌ Error listing banks: {e}")
        return {"success": False, "error": "Database error occurred"}


def find_statement(bank_id, month, year) -> Optional[Dict]:
    """Existing statement of a bank for month/year, if any"""
    statements = scan_all(
        statements_table,
        FilterExpression=(
            Attr('bank_id').eq(bank_id)
            & Attr('statement_month').eq(int(month))
            & Attr('statement_year').eq(int(year))
        )
    )
    return statements[0] if statements else None


def list_statements(bank_id=None, cycle_id=None) -> Dict:
    try:
        condition = None
        if bank_id is not None:
            condition = Attr('bank_id').eq(bank_id)
        if cycle_id is not None:
            cycle_condition = Attr('statement_cycle_id').eq(cycle_id)
            condition = cycle_condition if condition is None else condition & cycle_condition

        scan_kwargs = {'FilterExpression': condition} if condition is not None else {}
        statements = scan_all(statements_table, **scan_kwargs)
        statements.sort(key=lambda s: (s.get('statement_year') or 0, s.get('statement_month') or 0))

        return {"success": True, "statements": statements, "total_count": len(statements)}

    except ClientError as e:
        print(f"❌ Error listing statements: {e}")
        return {"success": False, "error": "Database error occurred"}


def _statement_item(bank, cycle_id, month, year, extracted, documents, statement_type,
                    validation=None, has_soft_copy=True, has_hard_copy=False) -> Dict:
    return {
        'id': str(uuid.uuid4()),
        'bank_id': bank['id'],
        'company_id': bank.get('company_id'),
        'statement_cycle_id': cycle_id,
        'statement_month': int(month),
        'statement_year': int(year),
        'statement_type': statement_type,
        'has_soft_copy': has_soft_copy,
        'has_hard_copy': has_hard_copy,
        'statement_document': documents or {
            'statement_pdf': None,
            'statement_excel': None,
            'document_size': 0
        },
        'statement_extractions': extracted or {},
        'validation_status': {
            'is_validated': bool(validation and validation.get('is_valid')),
            'validation_date': None,
            'validated_by': None,
            'mismatches': (validation or {}).get('mismatches', [])
        },
        'status': {
            'status': 'pending_validation',
            'assigned_to': None,
            'verification_date': None
        },
        'created_at': datetime.utcnow().isoformat()
    }


def save_statement(bank: Dict, cycle_id, month, year, extracted: Dict, documents: Optional[Dict] = None,
                   statement_type: Optional[str] = None, validation: Optional[Dict] = None) -> Dict:
    """
    Store an extracted statement. Statements whose period spans several
    months are stored once per month via save_range_statement.
    """
    if statement_type is None:
        period = (extracted or {}).get('statement_period')
        statement_type = 'range' if is_multi_month_period(period) else 'monthly'

    if statement_type == 'range':
        return save_range_statement(bank, extracted, documents, validation)

    try:
        if find_statement(bank['id'], month, year):
            return {
                "success": False,
                "error": f"Statement already exists for bank {bank['id']} in {month}/{year}"
            }

        item = _statement_item(bank, cycle_id, month, year, extracted, documents, 'monthly', validation)
        statements_table.put_item(Item=convert_to_decimal(item))
        print(f"✅ Saved statement {item['id']} for {cycle_key(year, month)}")

        return {"success": True, "statement_ids": [item['id']], "skipped": []}

    except ClientError as e:
        print(f"❌ Error saving statement: {e}")
        return {"success": False, "error": "Database error occurred"}


def save_range_statement(bank: Dict, extracted: Dict, documents: Optional[Dict] = None,
                         validation: Optional[Dict] = None) -> Dict:
    """One statement row per month of the period, all pointing at the same documents"""
    period = parse_statement_period((extracted or {}).get('statement_period'))
    if not period:
        return {"success": False, "error": "Could not parse statement period"}

    months = generate_month_range(period.start_month, period.start_year, period.end_month, period.end_year)
    statement_ids: List[str] = []
    skipped: List[str] = []

    try:
        for entry in months:
            month, year = entry['month'], entry['year']

            if find_statement(bank['id'], month, year):
                logger.info(f"Statement already exists for bank {bank['id']} in {month}/{year}")
                skipped.append(cycle_key(year, month))
                continue

            cycle_id = get_or_create_statement_cycle(year, month)
            if not cycle_id:
                return {
                    "success": False,
                    "error": f"Failed to get or create statement cycle for {month}/{year}",
                    "statement_ids": statement_ids
                }

            item = _statement_item(bank, cycle_id, month, year, extracted, documents, 'range', validation)
            statements_table.put_item(Item=convert_to_decimal(item))
            statement_ids.append(item['id'])

        print(f"✅ Saved range statement across {len(statement_ids)} months ({len(skipped)} skipped)")
        return {"success": True, "statement_ids": statement_ids, "skipped": skipped}

    except ClientError as e:
        print(f"❌ Error saving range statement: {e}")
        return {"success": False, "error": "Database error occurred", "statement_ids": statement_ids}
