"""
Bank statement extraction.

A statement is read in virtual page chunks: the whole document is sent with
each request, but each prompt asks only about its own page range. Chunk
results are then merged into a single statement record.
"""
import os
import time
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional

from api_keys import key_pool
from extraction_client import ExtractionClient, document_block, guess_media_type
from json_repair import extract_json_object
from bank_validation import normalize_currency_code, parse_currency_amount, validate_extracted_data
from file_detection import detect_password
from pdf_extractor import PDFExtractor
from statement_periods import last_day_of_month, month_period_string
from storage import download_from_s3
import bank_statements

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

CHUNK_SIZE = 5
ESTIMATED_PAGES = 20
MAX_CONCURRENT_REQUESTS = 3
BATCH_PAUSE_SECONDS = 2
MAX_ATTEMPTS = 3
RETRY_PAUSE_SECONDS = 1

TEXT_FIELDS = ['bank_name', 'company_name', 'account_number', 'currency', 'statement_period']
NUMERIC_FIELDS = ['opening_balance', 'closing_balance']

ProgressCallback = Callable[[str], None]


def _log_progress(message: str):
    logger.info(message)


def empty_extraction() -> Dict[str, Any]:
    return {
        "bank_name": None,
        "company_name": None,
        "account_number": None,
        "currency": None,
        "statement_period": None,
        "opening_balance": None,
        "closing_balance": None,
        "monthly_balances": []
    }


def create_virtual_chunks(estimated_pages: int = ESTIMATED_PAGES) -> List[Dict[str, int]]:
    chunks = []
    for start_page in range(1, estimated_pages + 1, CHUNK_SIZE):
        end_page = min(start_page + CHUNK_SIZE - 1, estimated_pages)
        chunks.append({
            "start_page": start_page,
            "end_page": end_page,
            "page_count": end_page - start_page + 1
        })
    return chunks


def get_chunk_prompt(chunk: Dict[str, int]) -> str:
    start_page, end_page = chunk["start_page"], chunk["end_page"]

    return f"""
Analyze pages {start_page} to {end_page} of this bank statement and extract the following key financial information:

1. Bank Details:
   - Bank Name: The official bank name (e.g. "Prime Bank", "Equity Bank"). Use the logo and compare with Kenyan banks to write the full name
   - Account Number: The complete account number, including any formatting characters
   - Currency: The currency used (e.g. KES, USD, EUR)

2. Statement Period:
   - The exact date range stated on the document (format: DD/MM/YYYY - DD/MM/YYYY)
   - Any specific month/year labels in the document

3. Account Holder:
   - Company Name: The full, official name of the account holder

4. Balance Information:
   - Opening Balance: The balance at the beginning of the statement period
   - Closing Balance: The balance at the end of the statement period

5. Monthly Breakdown (find EVERY month mentioned in these pages):
   - Month and Year of each distinct month covered
   - Monthly Opening Balance: First balance shown for that month, or balance brought forward
   - Monthly Closing Balance: Last balance shown for that month, or balance carried forward
   - Page Location: The actual page number where this information appears

FOCUS ONLY ON PAGES {start_page} to {end_page} of the document.
If these pages do not exist, return null values and an empty monthly_balances list.

Return ONLY valid JSON in this exact format:
{{
  "bank_name": "Bank Name",
  "account_number": "Account Number",
  "currency": "Currency Code",
  "company_name": "Company Name",
  "statement_period": "Start Date - End Date",
  "opening_balance": number,
  "closing_balance": number,
  "monthly_balances": [
    {{
      "month": month_number,
      "year": year_number,
      "opening_balance": number,
      "closing_balance": number,
      "statement_page": page_number,
      "opening_date": "YYYY-MM-DD",
      "closing_date": "YYYY-MM-DD"
    }}
  ]
}}"""


def _amount(value):
    if isinstance(value, str):
        return parse_currency_amount(value)
    return value


def normalize_chunk_data(raw: Dict, chunk: Dict[str, int]) -> Dict[str, Any]:
    """Normalize one chunk's model output to the statement shape"""
    monthly_balances = []
    for balance in raw.get('monthly_balances') or []:
        if not isinstance(balance, dict):
            continue
        monthly_balances.append({
            "month": balance.get('month'),
            "year": balance.get('year'),
            "opening_balance": _amount(balance.get('opening_balance')),
            "closing_balance": _amount(balance.get('closing_balance')),
            "statement_page": balance.get('statement_page') or chunk["start_page"],
            "highlight_coordinates": None,
            "is_verified": False,
            "verified_by": None,
            "verified_at": None,
            "opening_date": balance.get('opening_date') or None,
            "closing_date": balance.get('closing_date') or None
        })

    return {
        "bank_name": raw.get('bank_name') or None,
        "company_name": raw.get('company_name') or None,
        "account_number": raw.get('account_number') or None,
        "currency": normalize_currency_code(raw['currency']) if raw.get('currency') else None,
        "statement_period": raw.get('statement_period') or None,
        "opening_balance": _amount(raw.get('opening_balance')),
        "closing_balance": _amount(raw.get('closing_balance')),
        "monthly_balances": monthly_balances
    }


def process_chunk(content: bytes, media_type: str, chunk: Dict[str, int],
                  client: Optional[ExtractionClient] = None,
                  on_progress: Optional[ProgressCallback] = None,
                  sleep=time.sleep) -> Dict[str, Any]:
    """Extract one page range, retrying up to MAX_ATTEMPTS times"""
    on_progress = on_progress or _log_progress
    client = client or ExtractionClient(max_attempts=1)
    pages = f"{chunk['start_page']}-{chunk['end_page']}"

    for attempt in range(1, MAX_ATTEMPTS + 1):
        try:
            on_progress(f"Processing pages {chunk['start_page']} to {chunk['end_page']}...")

            response = client.complete(get_chunk_prompt(chunk), [document_block(content, media_type)])
            if not response["success"]:
                raise RuntimeError(response["error"])

            raw = extract_json_object(response["text"])
            if raw is None:
                raise ValueError("Failed to parse JSON from model response")

            return {
                "success": True,
                "extracted_data": normalize_chunk_data(raw, chunk),
                "chunk": chunk
            }

        except Exception as e:
            logger.error(f"Extraction attempt {attempt} failed for pages {pages}: {e}")
            if attempt < MAX_ATTEMPTS:
                on_progress(f"Extraction failed. Retrying chunk (attempt {attempt + 1}/{MAX_ATTEMPTS})...")
                sleep(RETRY_PAUSE_SECONDS)

    return {
        "success": False,
        "extracted_data": empty_extraction(),
        "chunk": chunk,
        "message": f"Extraction failed after {MAX_ATTEMPTS} attempts for pages {pages}."
    }


def perform_bank_statement_extraction(content: bytes, params: Dict, media_type: str = 'application/pdf',
                                      client: Optional[ExtractionClient] = None,
                                      on_progress: Optional[ProgressCallback] = None,
                                      sleep=time.sleep,
                                      estimated_pages: int = ESTIMATED_PAGES) -> Dict[str, Any]:
    """
    Run every chunk, MAX_CONCURRENT_REQUESTS at a time with a short pause
    between batches, and merge the results.

    params: {"month": int (1-12), "year": int}
    """
    on_progress = on_progress or _log_progress

    try:
        on_progress("Starting bank statement extraction...")
        chunks = create_virtual_chunks(estimated_pages)
        on_progress(f"Breaking extraction into {len(chunks)} chunks to increase accuracy...")

        total_batches = (len(chunks) + MAX_CONCURRENT_REQUESTS - 1) // MAX_CONCURRENT_REQUESTS
        chunk_results = []

        with ThreadPoolExecutor(max_workers=MAX_CONCURRENT_REQUESTS) as executor:
            for batch_number, i in enumerate(range(0, len(chunks), MAX_CONCURRENT_REQUESTS), start=1):
                batch = chunks[i:i + MAX_CONCURRENT_REQUESTS]
                on_progress(f"Processing batch {batch_number} of {total_batches}...")

                chunk_results.extend(executor.map(
                    lambda chunk: process_chunk(content, media_type, chunk, client, on_progress, sleep),
                    batch
                ))

                if i + MAX_CONCURRENT_REQUESTS < len(chunks):
                    on_progress("Pausing briefly before processing next batch...")
                    sleep(BATCH_PAUSE_SECONDS)

        on_progress(f"Completed extraction of {len(chunk_results)} chunks. Merging results...")
        merged = merge_chunk_results(chunk_results, params, on_progress)
        on_progress("Results merged successfully.")

        return {
            "success": True,
            "extracted_data": merged,
            "failed_chunks": [r["message"] for r in chunk_results if not r["success"]]
        }

    except Exception as e:
        logger.error(f"Error in extraction process: {e}")
        on_progress(f"Error encountered: {e}. Returning partial results if available.")
        return {
            "success": False,
            "extracted_data": empty_extraction(),
            "message": f"Extraction failed: {e}"
        }


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _balance_confidence(balance: Dict) -> int:
    return (
        (1 if balance.get('opening_balance') is not None else 0)
        + (1 if balance.get('closing_balance') is not None else 0)
        + (1 if balance.get('opening_date') else 0)
        + (1 if balance.get('closing_date') else 0)
        + (1 if balance.get('statement_page') else 0)
    )


def _merge_balances(existing: Dict, balance: Dict) -> Dict:
    merged = dict(existing)
    for field in ('opening_balance', 'closing_balance'):
        if balance.get(field) is not None:
            merged[field] = balance[field]
    for field in ('opening_date', 'closing_date', 'statement_page'):
        if balance.get(field):
            merged[field] = balance[field]
    return merged


def merge_chunk_results(chunk_results: List[Dict], params: Dict,
                        on_progress: Optional[ProgressCallback] = None) -> Dict[str, Any]:
    """
    Combine chunk results. Longest text value wins, the last non-null number
    wins, and monthly balances are deduplicated per year-month keeping the
    most complete entry.
    """
    on_progress = on_progress or _log_progress
    on_progress("Merging extracted data from all chunks...")

    successful = [r for r in chunk_results if r.get("success") and r.get("extracted_data")]
    on_progress(f"Processing {len(successful)} successful chunks out of {len(chunk_results)} total chunks.")

    merged = empty_extraction()
    text_confidence = {field: 0 for field in TEXT_FIELDS}
    all_balances = []

    for result in successful:
        data = result["extracted_data"]

        for field in TEXT_FIELDS:
            value = data.get(field)
            if value and len(str(value)) > text_confidence[field]:
                merged[field] = value
                text_confidence[field] = len(str(value))

        for field in NUMERIC_FIELDS:
            if data.get(field) is not None:
                merged[field] = data[field]

        all_balances.extend(
            b for b in data.get('monthly_balances') or []
            if isinstance(b, dict) and _is_int(b.get('month')) and _is_int(b.get('year'))
            and 1 <= int(b['month']) <= 12
        )

    on_progress(f"Total valid monthly balances found across all chunks: {len(all_balances)}")

    if merged["currency"]:
        merged["currency"] = normalize_currency_code(merged["currency"])

    best = {}
    for balance in all_balances:
        if not balance['month'] or not balance['year']:
            continue
        key = f"{balance['year']}-{balance['month']}"
        confidence = _balance_confidence(balance)

        if key not in best or confidence > best[key][1]:
            best[key] = (balance, confidence)
        elif confidence == best[key][1]:
            best[key] = (_merge_balances(best[key][0], balance), confidence)

    merged["monthly_balances"] = sorted(
        (entry[0] for entry in best.values()),
        key=lambda b: (b['year'], b['month'])
    )
    on_progress(f"After deduplication: {len(merged['monthly_balances'])} unique monthly balances")

    month, year = params.get('month'), params.get('year')
    has_requested_month = any(
        b['month'] == month and b['year'] == year for b in merged["monthly_balances"]
    )

    if month and year and not has_requested_month and \
            (merged["opening_balance"] is not None or merged["closing_balance"] is not None):
        on_progress(f"Adding requested month ({month}/{year}) that wasn't found in extractions")
        merged["monthly_balances"].append({
            "month": month,
            "year": year,
            "opening_balance": merged["opening_balance"] or 0,
            "closing_balance": merged["closing_balance"] or 0,
            "statement_page": 1,
            "highlight_coordinates": None,
            "is_verified": False,
            "verified_by": None,
            "verified_at": None
        })

    if not merged["statement_period"] and merged["monthly_balances"]:
        first = merged["monthly_balances"][0]
        last = merged["monthly_balances"][-1]
        merged["statement_period"] = (
            f"01/{first['month']:02d}/{first['year']} - "
            f"{last_day_of_month(last['year'], last['month'])}/{last['month']:02d}/{last['year']}"
        )
        on_progress(f"Generated statement period from monthly balances: {merged['statement_period']}")

    if not merged["statement_period"] and month and year:
        merged["statement_period"] = month_period_string(year, month)
        on_progress(f"Generated statement period for requested month: {merged['statement_period']}")

    return merged


def _prepare_pdf(content: bytes, candidates: List[Optional[str]]) -> Dict[str, Any]:
    """Unlock an encrypted PDF with the first working candidate password"""
    extractor = PDFExtractor()
    opened = extractor.open_document(content, candidates)
    if not opened["success"]:
        return opened

    opened["document"].close()
    password = opened["password_used"]
    if password:
        return {"success": True, "content": extractor.decrypt(content, password), "password_used": password}
    return {"success": True, "content": content, "password_used": None}


def main(data):
    """
    Extract a bank statement stored in S3

    Args:
        data (dict): Request data containing:
            - s3_key (str): S3 key of the statement
            - month (int): Statement cycle month (1-12)
            - year (int): Statement cycle year
            - bucket_name (str, optional): S3 bucket name
            - password (str, optional): PDF password
            - file_name (str, optional): Original file name, defaults to the key's basename
            - bank_id (str, optional): Bank to validate against and store the statement under

    Returns:
        dict: Extraction result with merged statement data
    """
    try:
        required_fields = ['s3_key', 'month', 'year']
        missing_fields = [field for field in required_fields if not data.get(field)]

        if missing_fields:
            return {
                "success": False,
                "error": f"Missing required fields: {', '.join(missing_fields)}"
            }

        try:
            month = int(data['month'])
            year = int(data['year'])
        except (TypeError, ValueError):
            return {"success": False, "error": "month and year must be integers"}

        if not 1 <= month <= 12:
            return {"success": False, "error": "month must be between 1 and 12"}

        s3_key = data['s3_key']
        file_name = data.get('file_name') or os.path.basename(s3_key)

        try:
            media_type = guess_media_type(file_name)
        except ValueError as e:
            return {"success": False, "error": str(e)}

        bank = None
        if data.get('bank_id'):
            bank = bank_statements.get_bank(data['bank_id'])
            if not bank:
                return {"success": False, "error": f"Bank not found: {data['bank_id']}"}

        content = download_from_s3(s3_key, data.get('bucket_name'))
        print(f"Downloaded statement, size: {len(content)} bytes")

        password_used = None
        if media_type == 'application/pdf':
            candidates = [detect_password(file_name), data.get('password')]
            if bank:
                candidates.append(bank.get('acc_password'))

            prepared = _prepare_pdf(content, candidates)
            if not prepared["success"]:
                return {
                    "success": False,
                    "requires_password": True,
                    "error": prepared["error"]
                }
            content = prepared["content"]
            password_used = prepared["password_used"]

        params = {"month": month, "year": year}
        extraction = perform_bank_statement_extraction(content, params, media_type)

        if not extraction["success"]:
            return {"success": False, "error": extraction["message"]}

        extracted = extraction["extracted_data"]
        result = {
            "success": True,
            "extracted_data": extracted,
            "failed_chunks": extraction["failed_chunks"],
            "password_protected": password_used is not None,
            "metadata": {
                "s3_key": s3_key,
                "file_name": file_name,
                "month": month,
                "year": year
            }
        }

        if bank:
            validation = validate_extracted_data(extracted, bank, month, year)
            result["validation"] = validation

            cycle_id = bank_statements.get_or_create_statement_cycle(year, month)
            documents = {
                "statement_pdf": s3_key,
                "statement_excel": None,
                "document_size": len(content)
            }
            result["storage"] = bank_statements.save_statement(
                bank, cycle_id, month, year, extracted, documents, validation=validation
            )

        return result

    except Exception as e:
        print(f"❌ Bank statement extraction error: {str(e)}")
        return {
            "success": False,
            "error": f"Internal processing error: {str(e)}"
        }


def health_check():
    """Health check for the bank statement extraction service"""
    return {
        "healthy": len(key_pool) > 0,
        "service": "bank-statement-extraction",
        "version": "1.0",
        "capabilities": [
            "virtual_page_chunking",
            "api_key_rotation",
            "json_repair",
            "password_protected_pdfs",
            "statement_period_parsing",
            "bank_validation",
            "range_statements"
        ],
        "anthropic_configured": len(key_pool) > 0,
        "api_keys": key_pool.status(),
        "aws_configured": bool(os.getenv('AWS_ACCESS_KEY_ID') and os.getenv('AWS_SECRET_ACCESS_KEY')),
        "s3_bucket": os.getenv('S3_BUCKET_NAME', 'company-documents-2025'),
        "chunk_size": CHUNK_SIZE,
        "max_concurrent_requests": MAX_CONCURRENT_REQUESTS
    }
