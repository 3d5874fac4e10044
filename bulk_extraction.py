# bulk_extraction.py
import logging
from typing import Any, Callable, Dict, List, Optional

from extraction_client import ExtractionClient
from json_repair import find_document_objects
from bank_validation import normalize_currency_code, parse_currency_amount
from file_detection import detect_password
from pdf_extractor import PDFExtractor
from storage import download_from_s3

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

MAX_CHUNK_SIZE = 8000  # characters per request

BULK_EXTRACTION_PROMPT = """
You are analyzing multiple bank statements (indexed from 0). For each document:
1. Identify the document index you're analyzing
2. Extract these details:
   - Bank Name: The official name of the bank
   - Account Number: The full account number
   - Company Name: The name of the account holder
   - Currency: The currency code used
   - Statement Period: The date range covered, strictly in DD/MM/YYYY - DD/MM/YYYY format
   - Monthly Balances: Opening and closing balances for each month

FORMAT YOUR RESPONSE as valid JSON objects, ONE OBJECT PER DOCUMENT:

{
  "document_index": 0,
  "bank_name": "Example Bank",
  "company_name": "Example Company",
  "account_number": "123456789",
  "currency": "KES",
  "statement_period": "01/01/2024 - 31/01/2024",
  "monthly_balances": [
    {"month": 1, "year": 2024, "opening_balance": 1000.00, "closing_balance": 1500.00, "statement_page": 1}
  ]
}

IMPORTANT: Each JSON object must be complete and valid. Do not include any text outside of the JSON objects.
If a document is password protected or has errors, still include its index with null values.
"""


def build_document_text(index, file_name, pages_text: Dict[int, str], total_pages, month, year,
                        password: Optional[str] = None) -> str:
    pages = "\n".join(f"--- PAGE {page} ---\n{text}\n" for page, text in pages_text.items())

    return (
        f"----- DOCUMENT INDEX: {index} -----\n"
        f"FILENAME: {file_name}\n"
        f"PAGES EXAMINED: {', '.join(str(p) for p in pages_text)} of {total_pages}\n"
        f"EXPECTED MONTH/YEAR: {month}/{year}\n"
        f"PASSWORD USED: {password or 'None'}\n\n"
        f"{pages}\n"
        f"----- END OF DOCUMENT {index} -----"
    )


def password_protected_text(index) -> str:
    return f"----- DOCUMENT INDEX: {index} -----\nPASSWORD PROTECTED\n----- END OF DOCUMENT {index} -----"


def error_text(index, message) -> str:
    return f"----- DOCUMENT INDEX: {index} -----\nERROR: {message}\n----- END OF DOCUMENT {index} -----"


def chunk_document_texts(texts: List[str], max_size: int = MAX_CHUNK_SIZE) -> List[str]:
    """Greedy packing; a single document larger than max_size gets its own chunk"""
    chunks = []
    current = ""

    for text in texts:
        if current and len(current) + len(text) + 2 > max_size:
            chunks.append(current)
            current = text
        else:
            current = f"{current}\n\n{text}" if current else text

    if current:
        chunks.append(current)

    return chunks


def _to_int(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def normalize_document_data(data: Dict) -> Dict[str, Any]:
    balances = []
    for balance in data.get('monthly_balances') or []:
        if not isinstance(balance, dict):
            continue
        month, year = _to_int(balance.get('month')), _to_int(balance.get('year'))
        if month is None or year is None:
            continue
        balances.append({
            "month": month,
            "year": year,
            "opening_balance": parse_currency_amount(balance.get('opening_balance')),
            "closing_balance": parse_currency_amount(balance.get('closing_balance')),
            "statement_page": balance.get('statement_page') or 1
        })

    return {
        "bank_name": data.get('bank_name') or None,
        "company_name": data.get('company_name') or None,
        "account_number": data.get('account_number') or None,
        "currency": normalize_currency_code(data['currency']) if data.get('currency') else None,
        "statement_period": data.get('statement_period') or None,
        "monthly_balances": balances
    }


def parse_extraction_results(response_text: str, batch_files: List[Dict]) -> List[Dict]:
    """One result per batch file, in batch order"""
    files_by_index = {file['index']: file for file in batch_files}
    results = {}

    for found in find_document_objects(response_text):
        index = found["index"]
        if index not in files_by_index or results.get(index, {}).get("success"):
            continue

        file = files_by_index[index]
        if "data" in found:
            results[index] = {
                "index": index,
                "file_name": file.get('file_name'),
                "success": True,
                "extracted_data": normalize_document_data(found["data"])
            }
        else:
            results[index] = {
                "index": index,
                "file_name": file.get('file_name'),
                "success": False,
                "error": found["error"]
            }

    return [
        results.get(file['index']) or {
            "index": file['index'],
            "file_name": file.get('file_name'),
            "success": False,
            "error": "No extraction result found"
        }
        for file in batch_files
    ]


def _file_content(file: Dict) -> bytes:
    if file.get('content') is not None:
        return file['content']
    return download_from_s3(file['s3_key'], file.get('bucket_name'))


def process_bulk_extraction(batch_files: List[Dict], params: Dict,
                            client: Optional[ExtractionClient] = None,
                            on_progress: Optional[Callable[[str], None]] = None) -> Dict[str, Any]:
    """
    Extract headline details of many statements in few requests.

    Each batch file is {"index", "file_name", "content" | "s3_key", "password"?}.
    Only the first and last page of each PDF are read.
    """
    on_progress = on_progress or logger.info
    client = client or ExtractionClient()
    extractor = PDFExtractor()

    password_protected_files = []
    document_texts = []

    for position, file in enumerate(batch_files, start=1):
        index = file['index']
        file_name = file.get('file_name') or f"document_{index}.pdf"

        try:
            password = file.get('password') or detect_password(file_name)
            content = _file_content(file)

            opened = extractor.open_document(content, [password])
            if not opened["success"]:
                password_protected_files.append({
                    "index": index,
                    "file_name": file_name,
                    "detected_password": password
                })
                document_texts.append(password_protected_text(index))
                continue

            doc = opened["document"]
            total_pages = doc.page_count
            doc.close()

            pages = [1] if total_pages <= 1 else [1, total_pages]
            pages_text = extractor.extract_text_by_page(content, pages, opened["password_used"])

            document_texts.append(build_document_text(
                index, file_name, pages_text, total_pages,
                params.get('month'), params.get('year'), opened["password_used"]
            ))

        except Exception as e:
            logger.error(f"Error processing document {index}: {e}")
            document_texts.append(error_text(index, str(e)))

        on_progress(f"Prepared {position}/{len(batch_files)} documents")

    responses = []
    chunks = chunk_document_texts(document_texts)

    for i, chunk in enumerate(chunks, start=1):
        response = client.complete(f"{BULK_EXTRACTION_PROMPT}\n\n{chunk}")

        if response["success"]:
            responses.append(response["text"])
        else:
            print(f"❌ Bulk extraction chunk {i} failed: {response['error']}")

        on_progress(f"Extracted chunk {i}/{len(chunks)}")

    results = parse_extraction_results("\n".join(responses), batch_files)
    print(f"✅ Bulk extraction finished: {sum(1 for r in results if r['success'])}/{len(results)} documents")

    return {
        "results": results,
        "password_protected_files": password_protected_files
    }
