# bank_validation.py
import re
import logging
from datetime import datetime
from typing import Dict, List, Optional

from file_detection import detect_file_info, detect_bank_name, detect_account_number
from statement_periods import is_period_contained

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

CURRENCY_MAP = {
    'EURO': 'EUR',
    'EUROS': 'EUR',
    'US DOLLAR': 'USD',
    'US DOLLARS': 'USD',
    'USDOLLAR': 'USD',
    'DOLLAR': 'USD',
    'DOLLARS': 'USD',
    'UNITED STATES DOLLAR': 'USD',
    'POUND': 'GBP',
    'POUNDS': 'GBP',
    'STERLING': 'GBP',
    'BRITISH POUND': 'GBP',
    'POUND STERLING': 'GBP',
    'KENYA SHILLING': 'KES',
    'KENYA SHILLINGS': 'KES',
    'KENYAN SHILLING': 'KES',
    'KENYAN SHILLINGS': 'KES',
    'KSH': 'KES',
    'K.SH': 'KES',
    'KSHS': 'KES',
    'K.SHS': 'KES',
    'SH': 'KES',
    'SHILLING': 'KES',
    'SHILLINGS': 'KES',
}

# Placeholders the model returns when a field is not on the page
UNAVAILABLE_VALUES = {'not available', 'not available in text', 'n/a', 'unknown'}

# Scores for fuzzy_match_bank_with_file_info
FILENAME_ACCOUNT_SCORE = 40
FILENAME_BANK_SCORE = 30
PASSWORD_SCORE = 20
EXTRACTED_ACCOUNT_SCORE = 25
EXTRACTED_BANK_SCORE = 15
COMPANY_SCORE = 10
MATCH_THRESHOLD = 15


def normalize_currency_code(code) -> str:
    if not code:
        return 'USD'
    upper_code = str(code).upper().strip()
    return CURRENCY_MAP.get(upper_code, upper_code)


def parse_currency_amount(amount) -> Optional[float]:
    """'KES 1,234.50' -> 1234.5; None when nothing numeric is left"""
    if amount is None or amount == '':
        return None
    if isinstance(amount, (int, float)) and not isinstance(amount, bool):
        return float(amount)

    cleaned = re.sub(r'[^\d.-]', '', str(amount))
    try:
        return float(cleaned)
    except ValueError:
        return None


def _is_available(value) -> bool:
    return bool(value) and str(value).strip().lower() not in UNAVAILABLE_VALUES


def _contains_either_way(a, b) -> bool:
    a = str(a).lower().strip()
    b = str(b).lower().strip()
    return bool(a) and bool(b) and (a in b or b in a)


def _clean_account(value) -> str:
    return re.sub(r'[\s\-.]', '', str(value or ''))


def fuzzy_match_bank(filename: str, all_banks: List[Dict]) -> Optional[Dict]:
    """Match a bank record from filename hints alone"""
    if not filename or not all_banks:
        return None

    lower_filename = filename.lower()
    detected_bank_name = detect_bank_name(filename)
    detected_account_number = detect_account_number(filename)

    if detected_account_number:
        normalized_detected = re.sub(r'[-\s]', '', detected_account_number)

        for bank in all_banks:
            if re.sub(r'[-\s]', '', bank.get('account_number') or '') == normalized_detected:
                return bank

        for bank in all_banks:
            normalized_bank = re.sub(r'[-\s]', '', bank.get('account_number') or '')
            if normalized_bank and (normalized_detected in normalized_bank or normalized_bank in normalized_detected):
                return bank

    if detected_bank_name:
        for bank in all_banks:
            if bank.get('bank_name') and _contains_either_way(bank['bank_name'], detected_bank_name):
                return bank

    for bank in all_banks:
        bank_name = (bank.get('bank_name') or '').lower()
        company_name = (bank.get('company_name') or '').lower()

        if bank_name and bank_name in lower_filename:
            return bank
        if company_name and company_name in lower_filename:
            return bank

    logger.info(f"No bank match found for file: {filename}")
    return None


def fuzzy_match_bank_with_file_info(filename: str, extracted_data: Optional[Dict], all_banks: List[Dict]) -> Optional[Dict]:
    """
    Score every bank against filename hints (strong) and extracted fields
    (weaker). The best bank wins if it reaches MATCH_THRESHOLD.
    """
    if not all_banks:
        return None

    file_info = detect_file_info(filename or '')
    extracted_data = extracted_data or {}

    best_match = None
    best_score = 0

    for bank in all_banks:
        score = 0
        reasons = []

        if file_info["account_number"] and bank.get('account_number'):
            if _contains_either_way(bank['account_number'], file_info["account_number"]):
                score += FILENAME_ACCOUNT_SCORE
                reasons.append("Filename account match")

        if file_info["bank_name"] and bank.get('bank_name'):
            if _contains_either_way(bank['bank_name'], file_info["bank_name"]):
                score += FILENAME_BANK_SCORE
                reasons.append("Filename bank match")

        if file_info["password"] and bank.get('acc_password'):
            if file_info["password"] == str(bank['acc_password']):
                score += PASSWORD_SCORE
                reasons.append("Password match")

        if extracted_data.get('account_number') and bank.get('account_number'):
            if _contains_either_way(bank['account_number'], extracted_data['account_number']):
                score += EXTRACTED_ACCOUNT_SCORE
                reasons.append("Extracted account match")

        if _is_available(extracted_data.get('bank_name')) and bank.get('bank_name'):
            if _contains_either_way(bank['bank_name'], extracted_data['bank_name']):
                score += EXTRACTED_BANK_SCORE
                reasons.append("Extracted bank match")

        if extracted_data.get('company_name') and bank.get('company_name'):
            if _contains_either_way(bank['company_name'], extracted_data['company_name']):
                score += COMPANY_SCORE
                reasons.append("Company match")

        if score > best_score:
            best_score = score
            best_match = {"bank": bank, "score": score, "reasons": reasons}

    if best_match and best_score >= MATCH_THRESHOLD:
        logger.info(f"Bank match with score {best_score}: {best_match['reasons']}")
        return best_match["bank"]

    logger.info("No bank match with sufficient confidence")
    return None


def validate_extracted_data(extracted_data: Optional[Dict], bank: Optional[Dict],
                            month: Optional[int] = None, year: Optional[int] = None) -> Dict:
    """
    Cross-check extracted statement fields against the bank record.

    `month` / `year` (1-based) identify the statement cycle; they default to
    the statement_month / statement_year on the extracted data, then today.
    """
    if not extracted_data or not bank:
        return {
            "is_valid": False,
            "mismatches": ["No extracted data or bank match"],
            "extracted_data": extracted_data or {}
        }

    mismatches = []

    # Missing fields
    if not _is_available(extracted_data.get('bank_name')):
        mismatches.append("Bank name not found in statement")
    if not extracted_data.get('account_number'):
        mismatches.append("Account number not found in statement")
    if not extracted_data.get('currency'):
        mismatches.append("Currency not found in statement")
    if not extracted_data.get('statement_period'):
        mismatches.append("Statement period not found")

    if bank.get('company_name') and extracted_data.get('company_name'):
        if bank['company_name'].lower() not in extracted_data['company_name'].lower():
            mismatches.append(
                f"Company name mismatch: expected \"{bank['company_name']}\", "
                f"found \"{extracted_data['company_name']}\""
            )

    if bank.get('bank_name') and _is_available(extracted_data.get('bank_name')):
        if not _contains_either_way(bank['bank_name'], extracted_data['bank_name']):
            mismatches.append(
                f"Bank name mismatch: expected \"{bank['bank_name']}\", "
                f"found \"{extracted_data['bank_name']}\""
            )

    if bank.get('account_number') and extracted_data.get('account_number'):
        expected = _clean_account(bank['account_number'])
        found = _clean_account(extracted_data['account_number'])
        if expected not in found and found not in expected:
            mismatches.append(
                f"Account number mismatch: expected \"{bank['account_number']}\", "
                f"found \"{extracted_data['account_number']}\""
            )

    if bank.get('bank_currency') and extracted_data.get('currency'):
        expected_currency = normalize_currency_code(bank['bank_currency'])
        found_currency = normalize_currency_code(extracted_data['currency'])
        if expected_currency != found_currency:
            mismatches.append(
                f"Currency mismatch: expected \"{expected_currency}\", found \"{found_currency}\""
            )

    if extracted_data.get('statement_period'):
        now = datetime.now()
        cycle_month = month or extracted_data.get('statement_month') or now.month
        cycle_year = year or extracted_data.get('statement_year') or now.year

        if not is_period_contained(extracted_data['statement_period'], cycle_month, cycle_year):
            mismatches.append(
                f"Statement period mismatch: \"{extracted_data['statement_period']}\" "
                f"does not cover {cycle_month:02d}/{cycle_year}"
            )

    return {
        "is_valid": len(mismatches) == 0,
        "mismatches": mismatches,
        "extracted_data": extracted_data
    }
