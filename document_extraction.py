"""
Generic field extraction for uploaded documents (KYC documents, payment
slips and similar).

Callers describe the fields they want as dicts:

    {"id": "f1", "name": "amount", "type": "number", "required": True}
    {"id": "f2", "name": "items", "type": "array",
     "array_config": {"fields": [{"name": "description", "type": "text"}], "max_items": 5}}

Supported types: text, date, number, array, boolean, email, phone.
"""
import os
import re
import json
import time
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from botocore.exceptions import ClientError

from extraction_client import ExtractionClient, document_block, guess_media_type
from json_repair import extract_json_object, parse_key_value_lines
from storage import dynamodb, convert_to_decimal, convert_decimal

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

kyc_uploads_table = dynamodb.Table(os.getenv('KYC_UPLOADS_TABLE', 'acc_portal_kyc_uploads'))
kyc_documents_table = dynamodb.Table(os.getenv('KYC_DOCUMENTS_TABLE', 'acc_portal_kyc'))

MAX_ATTEMPTS = 3
MAX_RETRIES = 3

DATE_FORMATS = ['%Y-%m-%d', '%d/%m/%Y', '%m/%d/%Y', '%d-%m-%Y', '%d.%m.%Y', '%Y/%m/%d']
EMAIL_PATTERN = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')
PHONE_PATTERN = re.compile(r'^\+?[\d\s-]{10,}$')

SUCCESS_MESSAGE = 'Data extracted successfully'
VALIDATION_ISSUES_MESSAGE = 'Data extracted with some validation issues. Please review and correct if needed.'

BANKS = [
    'African Banking Corp', 'Bank of Africa Kenya', 'Bank of India', 'Bank of Baroda',
    'Barclays Bank of Kenya', 'ABSA', 'CfC Stanbic Bank', 'Chase Bank', 'Citibank N.A.',
    'Commercial Bank of Africa', 'Consolidated Bank of Kenya', 'Co-operative Bank of Kenya',
    'Credit Bank', 'Development Bank', 'Diamond Trust Bank', 'Dubai Bank', 'Ecobank',
    'Equatorial Commercial Bank', 'Equity Bank', 'Family Bank', 'Faulu Bank',
    'Fidelity Commercial Bank', 'Fina Bank', 'First Community Bank', 'Giro Commercial Bank',
    'Guardian Bank', 'Gulf African Bank', 'Habib Bank A.G. Zurich', 'Habib Bank',
    'Housing Finance Company of Kenya', 'Imperial Bank', 'I & M Bank', 'Jamii Bora Bank',
    'K-Rep Bank', 'Kenya Commercial Bank', 'Kenya Women Microfinance Bank', 'Middle East Bank',
    'National Bank of Kenya', 'NIC Bank', 'Oriental Bank', 'Paramount Universal Bank',
    'Prime Bank', 'Postbank', 'Standard Chartered Bank', 'Transnational Bank',
    'UBA Kenya Bank', 'Victoria Commercial Bank'
]

MPESA_PATTERNS = ['M-PESA', 'MPESA', 'Pay Bill', 'Transaction ID', 'REF', 'Safaricom', 'KCB-MPESA', 'COOP-MPESA']

BANK_PATTERNS = [
    'bank', 'transfer', 'RTGS', 'EFT', 'transaction ref', 'KCB', 'EQUITY', 'COOPERATIVE',
    'STANDARD CHARTERED', 'ABSA'
]


class ExtractionError(Exception):
    """Raised when extraction keeps failing after all retries"""
    pass


def _sub_fields(field: Dict) -> List[Dict]:
    return (field.get('array_config') or {}).get('fields') or []


def _is_array_field(field: Dict) -> bool:
    return field.get('type') == 'array' and bool(_sub_fields(field))


# =============================================================================
# PROMPTS
# =============================================================================

def format_field_prompts(fields: List[Dict]) -> str:
    if not isinstance(fields, list):
        logger.warning(f"Invalid fields parameter: {fields}")
        return ''

    prompts = []
    for field in fields:
        prompt = f"- {field['name']}"
        if _is_array_field(field):
            prompt += ' (multiple entries possible) with fields:'
            for sub_field in _sub_fields(field):
                prompt += f"\n  * {sub_field['name']}"
        elif field.get('type') == 'date':
            prompt += ' (in DD/MM/YYYY format)'
        prompts.append(prompt)

    return '\n'.join(prompts)


def create_example_output(fields: List[Dict]) -> Dict[str, Any]:
    example = {}
    for field in fields:
        if _is_array_field(field):
            example[field['name']] = [{
                sub_field['name']: f"example_{sub_field.get('type', 'text')}"
                for sub_field in _sub_fields(field)
            }]
        else:
            example[field['name']] = f"example_{field.get('type', 'text')}"
    return example


def build_extraction_prompt(fields: List[Dict], document_type: str) -> str:
    return f"""Extract the following information from this {document_type}:
{format_field_prompts(fields)}

Mpesa patterns: {', '.join(MPESA_PATTERNS)}

Bank Transfer Patterns: {', '.join(BANK_PATTERNS)}

Identify logos and try to determine the bank from Kenyan Banks: {', '.join(BANKS)}

Amounts must have commas and no decimals.

Payment mode is strictly "Mpesa" or "Bank Transfer".

Check the amount written in words for confirmation (if available).

Return the extracted data in this JSON format:
{json.dumps(create_example_output(fields), indent=2)}

Only return the JSON data, no other text."""


def build_batch_prompt(documents: List[Dict], fields: List[Dict], document_type: str) -> str:
    example = json.dumps(create_example_output(fields), indent=2)
    listing = '\n'.join(
        f"Document {i}: {doc.get('label') or doc.get('file_name')} ({doc['type']})"
        for i, doc in enumerate(documents, start=1)
    )
    keys = ',\n'.join(f'  "{doc["type"]}": {example}' for doc in documents)

    return f"""Extract information from multiple {document_type} documents. For each document, extract:
{format_field_prompts(fields)}

Mpesa patterns: {', '.join(MPESA_PATTERNS)}
Bank Transfer Patterns: {', '.join(BANK_PATTERNS)}
Identify logos and try to determine the bank from Kenyan Banks: {', '.join(BANKS)}

Amounts must have commas and no decimals.
Payment mode should be strictly "Mpesa" or "Bank Transfer".
Dates in DD/MM/YYYY format.

Process the following documents:
{listing}

Return the extracted data as a JSON object with document types as keys:
{{
{keys}
}}

Only return the JSON data, no other text."""


# =============================================================================
# VALUES
# =============================================================================

def parse_date_value(value) -> Optional[datetime]:
    text = str(value).strip()
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def _to_number(value) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    try:
        return float(re.sub(r'[^\d.-]', '', str(value)))
    except ValueError:
        return None


def format_extracted_value(value, field_type: str):
    if value is None:
        return None

    if field_type == 'date':
        parsed = parse_date_value(value)
        return parsed.strftime('%Y-%m-%d') if parsed else None

    if field_type == 'number':
        return _to_number(value)

    if field_type == 'array':
        return value if isinstance(value, list) else []

    if field_type == 'boolean':
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            lowered = value.lower().strip()
            if lowered in ('true', 'yes', '1'):
                return True
            if lowered in ('false', 'no', '0'):
                return False
        return None

    return str(value).strip()


def _is_number(value) -> bool:
    if isinstance(value, bool):
        return False
    try:
        float(value)
        return True
    except (TypeError, ValueError):
        return False


def validate_field(value, field: Dict) -> Dict[str, Any]:
    """{"is_valid": bool, "error": str | None}"""
    name = field['name']

    if not value:
        if field.get('required'):
            return {"is_valid": False, "error": f"{name} is required"}
        return {"is_valid": True, "error": None}

    field_type = field.get('type')

    if field_type == 'date' and not parse_date_value(value):
        return {"is_valid": False, "error": f"Invalid date format for {name}"}

    if field_type == 'number' and not _is_number(value):
        return {"is_valid": False, "error": f"Invalid number format for {name}"}

    if field_type == 'email' and not EMAIL_PATTERN.match(str(value)):
        return {"is_valid": False, "error": f"Invalid email format for {name}"}

    if field_type == 'phone' and not PHONE_PATTERN.match(str(value)):
        return {"is_valid": False, "error": f"Invalid phone format for {name}"}

    return {"is_valid": True, "error": None}


def transform_field_value(field: Dict, value):
    if not value:
        return value

    if field.get('type') == 'date':
        parsed = parse_date_value(value)
        return parsed.strftime('%Y-%m-%d') if parsed else value

    if field.get('type') == 'number':
        return float(value) if _is_number(value) else value

    return value


def clean_extracted_data(data: Dict, fields: List[Dict]) -> Dict[str, Any]:
    """Keep only the requested fields, normalizing dates and numbers"""
    cleaned = {}

    for field in fields:
        name = field['name']
        value = data.get(name)

        if value is None:
            cleaned[name] = None
        elif _is_array_field(field):
            if not isinstance(value, list):
                cleaned[name] = []
                continue
            cleaned[name] = [
                {
                    sub['name']: transform_field_value(sub, item.get(sub['name']) if isinstance(item, dict) else None)
                    for sub in _sub_fields(field)
                }
                for item in value
            ]
        else:
            cleaned[name] = transform_field_value(field, value)

    return cleaned


def validate_extracted_types(data: Dict, fields: List[Dict]) -> bool:
    for field in fields:
        value = data.get(field['name'])
        if value is None:
            continue

        field_type = field.get('type')
        if field_type == 'date' and value and not parse_date_value(value):
            logger.warning(f"Invalid date value for field {field['name']}: {value}")
            return False

        if field_type == 'number' and value and not _is_number(value):
            logger.warning(f"Invalid number value for field {field['name']}: {value}")
            return False

        if field_type == 'array':
            if value and not isinstance(value, list):
                logger.warning(f"Invalid array value for field {field['name']}: {value}")
                return False
            for item in value or []:
                for sub in _sub_fields(field):
                    sub_value = item.get(sub['name']) if isinstance(item, dict) else None
                    if sub_value is not None and format_extracted_value(sub_value, sub.get('type')) is None:
                        logger.warning(f"Invalid array item value for field {field['name']}.{sub['name']}: {sub_value}")
                        return False

    return True


# =============================================================================
# FIELD MAPPING
# =============================================================================

_MISSING = object()


def _lookup(data: Dict, key: str):
    if key in data:
        return data[key]

    current = data
    for part in key.split('.'):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return _MISSING
    return current


def _first_value(data: Dict, keys: List[str]):
    for key in keys:
        value = _lookup(data, key)
        if value is not _MISSING:
            return value
    return _MISSING


def _has_content(item) -> bool:
    return isinstance(item, dict) and any(v not in (None, '') for v in item.values())


def map_fields(extracted: Dict, fields: List[Dict]) -> Dict[str, Any]:
    """
    Map loosely-shaped model output onto the requested fields. Array fields
    are rebuilt from flat keys such as `items_1_amount`, `items[0].amount`,
    `items.0.amount` or `items[0][amount]` when the model did not return a list.
    """
    mapped = {}

    for field in fields:
        name = field['name'].strip()

        if _is_array_field(field):
            sub_names = [sub['name'].strip() for sub in _sub_fields(field)]
            array_data = extracted.get(name)

            if not isinstance(array_data, list):
                constructed = []

                if isinstance(array_data, dict):
                    item = {sub: array_data[sub] for sub in sub_names if sub in array_data}
                    if item:
                        constructed.append(item)

                if not constructed:
                    max_items = (field.get('array_config') or {}).get('max_items') or 1
                    for i in range(max_items):
                        item = {}
                        for sub in sub_names:
                            value = _first_value(extracted, [
                                f"{name}_{i + 1}_{sub}",
                                f"{name}[{i}].{sub}",
                                f"{name}.{i}.{sub}",
                                f"{name}[{i}][{sub}]",
                                sub,
                                sub.lower(),
                                f"{name}.{sub}",
                                f"{name}_{sub}",
                            ])
                            if value is not _MISSING:
                                item[sub] = value
                        if item:
                            constructed.append(item)

                array_data = constructed

            array_data = [item for item in array_data if _has_content(item)]
            if array_data:
                mapped[field['name']] = array_data

        else:
            value = _first_value(extracted, [
                name,
                name.lower(),
                re.sub(r'[_\s]', '', name),
                re.sub(r'[_\s]', '.', name),
            ])
            if value is not _MISSING:
                mapped[field['name']] = value

    return mapped


def parse_extraction_response(text: str) -> Dict[str, Any]:
    """JSON object if there is one, otherwise `key: value` lines"""
    parsed = extract_json_object(text)
    if parsed is not None:
        return parsed
    return parse_key_value_lines(text)


def _validation_errors(data: Dict, fields: List[Dict]) -> List[Dict[str, str]]:
    errors = []
    for field in fields:
        validation = validate_field(data.get(field['name']), field)
        if not validation["is_valid"]:
            errors.append({"field": field['name'], "error": validation["error"]})
    return errors


# =============================================================================
# EXTRACTION
# =============================================================================

def perform_extraction(content: bytes, file_name: str, fields: List[Dict], document_type: str,
                       client: Optional[ExtractionClient] = None,
                       on_progress: Optional[Callable[[str], None]] = None,
                       sleep=time.sleep) -> Dict[str, Any]:
    """
    Extract `fields` from one document. Validation problems do not fail the
    extraction; the data is returned for manual review with the errors listed.
    """
    on_progress = on_progress or logger.info
    client = client or ExtractionClient(max_attempts=1, temperature=1.0)

    for attempt in range(1, MAX_ATTEMPTS + 1):
        try:
            on_progress(f"Attempt {attempt}/{MAX_ATTEMPTS}: Processing document...")

            block = document_block(content, guess_media_type(file_name))
            response = client.complete(build_extraction_prompt(fields, document_type), [block])
            if not response["success"]:
                raise RuntimeError(response["error"])

            on_progress('Parsing extracted data...')
            mapped = map_fields(parse_extraction_response(response["text"]), fields)
            validation_errors = _validation_errors(mapped, fields)

            return {
                "extracted_data": mapped,
                "success": True,
                "message": VALIDATION_ISSUES_MESSAGE if validation_errors else SUCCESS_MESSAGE,
                "validation_errors": validation_errors or None,
                "failed_image": file_name,
                "failed_fields": fields
            }

        except Exception as e:
            logger.error(f"Extraction attempt {attempt} failed: {e}")
            if attempt < MAX_ATTEMPTS:
                on_progress(f"Extraction failed. Trying with backup API key (Attempt {attempt + 1}/{MAX_ATTEMPTS})...")
                sleep(1)

    return {
        "extracted_data": {},
        "success": False,
        "message": f"Extraction failed after {MAX_ATTEMPTS} attempts. Please enter the data manually.",
        "failed_image": file_name,
        "failed_fields": fields
    }


def perform_batch_extraction(documents: List[Dict], fields: List[Dict], document_type: str,
                             client: Optional[ExtractionClient] = None,
                             on_progress: Optional[Callable[[str], None]] = None,
                             sleep=time.sleep) -> Dict[str, Any]:
    """
    Extract several documents in one request.

    documents: [{"content": bytes, "file_name": str, "type": str, "label": str}]
    Results are keyed by each document's type.
    """
    on_progress = on_progress or logger.info
    client = client or ExtractionClient(max_attempts=1, temperature=1.0)

    if not documents:
        return {"extracted_data": {}, "success": False, "message": "No documents provided"}

    for attempt in range(1, MAX_ATTEMPTS + 1):
        try:
            on_progress(f"Attempt {attempt}/{MAX_ATTEMPTS}: Processing {len(documents)} documents...")

            blocks = [document_block(doc['content'], guess_media_type(doc['file_name'])) for doc in documents]
            response = client.complete(build_batch_prompt(documents, fields, document_type), blocks)
            if not response["success"]:
                raise RuntimeError(response["error"])

            on_progress('Parsing extracted data...')
            parsed = parse_extraction_response(response["text"])

            results = {}
            for doc in documents:
                doc_data = parsed.get(doc['type']) or {}
                cleaned = clean_extracted_data(doc_data if isinstance(doc_data, dict) else {}, fields)
                validation_errors = _validation_errors(cleaned, fields)

                results[doc['type']] = {
                    "extracted_data": cleaned,
                    "success": True,
                    "message": 'Data extracted with validation issues' if validation_errors else SUCCESS_MESSAGE,
                    "validation_errors": validation_errors or None,
                    "file_name": doc['file_name']
                }

            return {
                "extracted_data": results,
                "success": True,
                "message": 'Batch extraction completed successfully'
            }

        except Exception as e:
            logger.error(f"Batch extraction attempt {attempt} failed: {e}")
            if attempt < MAX_ATTEMPTS:
                on_progress(f"Extraction failed. Retrying with backup API key (Attempt {attempt + 1}/{MAX_ATTEMPTS})...")
                sleep(1)

    return {
        "extracted_data": {},
        "success": False,
        "message": f"Batch extraction failed after {MAX_ATTEMPTS} attempts"
    }


def retry_extraction(content: bytes, file_name: str, fields: List[Dict], document_type: str,
                     max_retries: int = MAX_RETRIES,
                     on_progress: Optional[Callable[[str], None]] = None,
                     sleep=time.sleep, **kwargs) -> Dict[str, Any]:
    """perform_extraction with exponential backoff between whole attempts"""
    on_progress = on_progress or logger.info
    last_error = None

    for attempt in range(1, max_retries + 1):
        try:
            result = perform_extraction(content, file_name, fields, document_type,
                                        on_progress=on_progress, sleep=sleep, **kwargs)
            if result["success"]:
                return result
            raise ExtractionError(result["message"])

        except Exception as e:
            last_error = e
            if attempt < max_retries:
                backoff = 2 ** (attempt - 1)
                on_progress(f"Retrying in {backoff} seconds...")
                sleep(backoff)

    raise ExtractionError(f"Extraction failed after {max_retries} attempts: {last_error}")


def save_extracted_data(upload_id, document_id, extracted_data: Dict) -> Dict[str, Any]:
    """Store extracted fields on both the upload and the KYC document record"""
    try:
        now = datetime.utcnow().isoformat()
        values = convert_to_decimal(extracted_data)

        upload = kyc_uploads_table.update_item(
            Key={'id': upload_id},
            UpdateExpression=(
                'SET extracted_details = :data, extraction_date = :date, '
                'extraction_status = :status, fields_extracted = :extracted'
            ),
            ExpressionAttributeValues={
                ':data': values,
                ':date': now,
                ':status': 'success',
                ':extracted': True
            },
            ReturnValues='ALL_NEW'
        )

        document = kyc_documents_table.update_item(
            Key={'id': document_id},
            UpdateExpression='SET extracted_fields = :data, extraction_date = :date',
            ExpressionAttributeValues={':data': values, ':date': now},
            ReturnValues='ALL_NEW'
        )

        return {
            "success": True,
            "upload": convert_decimal(upload.get('Attributes', {})),
            "document": convert_decimal(document.get('Attributes', {}))
        }

    except ClientError as e:
        print(f"❌ Error saving extracted data: {e}")
        return {"success": False, "error": "Failed to save extracted data"}
