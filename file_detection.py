# file_detection.py
import re
import math
from typing import Dict, Optional

# Order matters: the first pattern that captures something wins
PASSWORD_PATTERNS = [
    re.compile(r'pass(?:word)?[_\-\s]*[:=]?\s*(\w+)', re.IGNORECASE),
    re.compile(r'pwd[_\-\s]*[:=]?\s*(\w+)', re.IGNORECASE),
    re.compile(r'p[_\-\s]*[:=]?\s*(\d{4,})', re.IGNORECASE),
    re.compile(r'pw[_\-\s]*[:=]?\s*(\w+)', re.IGNORECASE),
    re.compile(r'\b(\d{4})\b'),
]

ACCOUNT_PATTERNS = [
    re.compile(r'acc(?:ount)?[_\-\s]*[:=]?\s*(\d{5,})', re.IGNORECASE),
    re.compile(r'acct[_\-\s]*[:=]?\s*(\d{5,})', re.IGNORECASE),
    re.compile(r'\b(\d{10,})\b'),
    re.compile(r'[_\-](\d{5,})[_\-]'),
]

BANK_PATTERNS = [
    (re.compile(r'equity', re.IGNORECASE), "Equity Bank"),
    (re.compile(r'kcb', re.IGNORECASE), "KCB Bank"),
    (re.compile(r'cooperative|coop', re.IGNORECASE), "Cooperative Bank"),
    (re.compile(r'stanchart|standard[\s\-_]?chartered', re.IGNORECASE), "Standard Chartered"),
    (re.compile(r'absa', re.IGNORECASE), "ABSA Bank"),
    (re.compile(r'dtb|diamond[\s\-_]?trust', re.IGNORECASE), "Diamond Trust Bank"),
    (re.compile(r'ncba', re.IGNORECASE), "NCBA Bank"),
    (re.compile(r'family', re.IGNORECASE), "Family Bank"),
    (re.compile(r'stanbic', re.IGNORECASE), "Stanbic Bank"),
    # "im" only as a standalone token, otherwise it matches inside "prime", "time"...
    (re.compile(r'i&m|(?<![a-z])im(?![a-z])', re.IGNORECASE), "I&M Bank"),
    (re.compile(r'gulf', re.IGNORECASE), "Gulf African Bank"),
    (re.compile(r'uob', re.IGNORECASE), "UOB Bank"),
    (re.compile(r'prime', re.IGNORECASE), "Prime Bank"),
    (re.compile(r'bank[\s_\-]*of[\s_\-]*africa|boa', re.IGNORECASE), "Bank of Africa"),
    (re.compile(r'credit[\s_\-]*bank', re.IGNORECASE), "Credit Bank"),
    (re.compile(r'eco[\s_\-]*bank', re.IGNORECASE), "Ecobank"),
]


def detect_password(filename: str) -> Optional[str]:
    if not filename:
        return None
    for pattern in PASSWORD_PATTERNS:
        match = pattern.search(filename)
        if match and match.group(1):
            return match.group(1)
    return None


def detect_account_number(filename: str) -> Optional[str]:
    if not filename:
        return None
    for pattern in ACCOUNT_PATTERNS:
        match = pattern.search(filename)
        if match and match.group(1):
            return match.group(1)
    return None


def detect_bank_name(filename: str) -> Optional[str]:
    if not filename:
        return None
    for pattern, name in BANK_PATTERNS:
        if pattern.search(filename):
            return name
    return None


def detect_file_info(filename: str) -> Dict[str, Optional[str]]:
    """Password, account number and bank name hinted at by a statement filename"""
    return {
        "password": detect_password(filename),
        "account_number": detect_account_number(filename),
        "bank_name": detect_bank_name(filename)
    }


def validate_account_number(detected_account_number, bank_account_number) -> bool:
    """Direct match, containment either way, or the same on digits only"""
    if not detected_account_number or not bank_account_number:
        return False

    detected = str(detected_account_number)
    bank_number = str(bank_account_number)

    if detected == bank_number:
        return True

    if detected in bank_number or bank_number in detected:
        return True

    clean_detected = re.sub(r'[^0-9]', '', detected)
    clean_bank = re.sub(r'[^0-9]', '', bank_number)

    if not clean_detected or not clean_bank:
        return False

    return clean_detected in clean_bank or clean_bank in clean_detected


def validate_password(detected_password, bank_password) -> bool:
    if not detected_password or not bank_password:
        return False
    return str(detected_password) == str(bank_password)


def validate_detected_info(detected_account_number, detected_password, bank: Dict) -> Dict[str, bool]:
    return {
        "account_match": validate_account_number(detected_account_number, bank.get('account_number')),
        "password_match": validate_password(detected_password, bank.get('acc_password'))
    }


def parse_filename_advanced(filename: str) -> Dict:
    """detect_file_info plus a 0-100 confidence score"""
    info = detect_file_info(filename)

    confidence = 0
    detected_patterns = []
    if info["password"]:
        confidence += 30
        detected_patterns.append("password")
    if info["account_number"]:
        confidence += 40
        detected_patterns.append("account_number")
    if info["bank_name"]:
        confidence += 30
        detected_patterns.append("bank_name")

    return {
        **info,
        "detected_patterns": detected_patterns,
        "confidence": confidence
    }


def format_file_name(name: str) -> Dict[str, str]:
    if not name:
        return {"short_name": "Unknown file", "full_name": "Unknown file", "extension": ""}

    base_name, dot, extension = name.rpartition('.')
    if not dot:
        base_name, extension = name, ''

    short_name = base_name[:27] + '...' if len(base_name) > 30 else base_name

    return {"short_name": short_name, "full_name": name, "extension": extension}


def format_file_size(size_bytes: int) -> str:
    if not size_bytes:
        return '0 Bytes'

    sizes = ['Bytes', 'KB', 'MB', 'GB']
    i = min(int(math.floor(math.log(size_bytes, 1024))), len(sizes) - 1)
    value = round(size_bytes / (1024 ** i), 2)

    return f"{value:g} {sizes[i]}"
