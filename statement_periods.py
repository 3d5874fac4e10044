"""
Statement period heuristics.

Bank statements describe their coverage in many ways ("01/01/2024 - 31/03/2024",
"Jan - Mar 2024", "Q1 2024", "March 2024"...). Everything here normalizes those
strings to 1-based (month, year) ranges.
"""
import re
import calendar
import logging
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

FULL_MONTHS = [
    'january', 'february', 'march', 'april', 'may', 'june',
    'july', 'august', 'september', 'october', 'november', 'december'
]
ABBREV_MONTHS = [m[:3] for m in FULL_MONTHS]

MAX_RANGE_MONTHS = 120

_MONTH = r'(jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)[a-z]*'
_DASH = r'\s*(?:[-–—]|\bto\b)\s*'
_DATE = r'(\d{1,2})[/.\-](\d{1,2})[/.\-](\d{4})'
_DAY = r'(?:\d{1,2}(?:st|nd|rd|th)?\s+)?'

DATE_RANGE_PATTERN = re.compile(_DATE + _DASH + _DATE, re.IGNORECASE)
SAME_YEAR_PATTERN = re.compile(_MONTH + _DASH + _DAY + _MONTH + r'\s+(\d{4})', re.IGNORECASE)
DIFF_YEAR_PATTERN = re.compile(_MONTH + r'\s+(\d{4})' + _DASH + _DAY + _MONTH + r'\s+(\d{4})', re.IGNORECASE)
MONTH_YEAR_NUMERIC_PATTERN = re.compile(r'\b(\d{1,2})[/.\-](\d{4})\b')
SINGLE_MONTH_PATTERN = re.compile(_MONTH + r'\s+(\d{4})', re.IGNORECASE)
QUARTER_PATTERN = re.compile(r'\bq(?:uarter)?\s*([1-4])\s+(\d{4})', re.IGNORECASE)
SINGLE_DATE_PATTERN = re.compile(_DATE)


@dataclass
class Period:
    start_month: int
    start_year: int
    end_month: int
    end_year: int

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)

    @property
    def is_single_month(self) -> bool:
        return self.start_month == self.end_month and self.start_year == self.end_year


def get_month_number(month_name: str) -> Optional[int]:
    """Full name, 3-letter abbreviation, or a prefix of at least 3 letters"""
    if not month_name:
        return None

    month_lower = month_name.lower().strip().rstrip('.')

    if month_lower in FULL_MONTHS:
        return FULL_MONTHS.index(month_lower) + 1

    if month_lower in ABBREV_MONTHS:
        return ABBREV_MONTHS.index(month_lower) + 1

    if len(month_lower) >= 3:
        for i, full in enumerate(FULL_MONTHS):
            if full.startswith(month_lower):
                return i + 1

    return None


def get_month_name(month: int) -> str:
    if not month or month < 1 or month > 12:
        return 'Unknown'
    return FULL_MONTHS[month - 1].capitalize()


def get_month_abbr(month: int) -> str:
    """JAN..DEC for 1..12, UNK otherwise"""
    if not month or month < 1 or month > 12:
        return 'UNK'
    return ABBREV_MONTHS[month - 1].upper()


def last_day_of_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def month_period_string(year: int, month: int) -> str:
    """`01/MM/YYYY - DD/MM/YYYY` covering one calendar month"""
    return f"01/{month:02d}/{year} - {last_day_of_month(year, month)}/{month:02d}/{year}"


def _month_from_date_parts(first: str, second: str) -> Optional[int]:
    # DD/MM first; fall back to MM/DD when the DD/MM reading is impossible
    day, month = int(first), int(second)
    if 1 <= day <= 31 and 1 <= month <= 12:
        return month
    if 1 <= month <= 31 and 1 <= day <= 12:
        return day
    return None


def parse_statement_period(period_string: str) -> Optional[Period]:
    """Parse a statement period string into a Period, or None"""
    if not period_string:
        return None

    text = re.sub(r'\s+', ' ', str(period_string).strip())

    # 1. DD/MM/YYYY - DD/MM/YYYY
    match = DATE_RANGE_PATTERN.search(text)
    if match:
        start_month = _month_from_date_parts(match.group(1), match.group(2))
        end_month = _month_from_date_parts(match.group(4), match.group(5))
        if start_month and end_month:
            return Period(start_month, int(match.group(3)), end_month, int(match.group(6)))

    # 2. Jan - Jul 2024
    match = SAME_YEAR_PATTERN.search(text)
    if match:
        start_month = get_month_number(match.group(1))
        end_month = get_month_number(match.group(2))
        year = int(match.group(3))
        if start_month and end_month:
            return Period(start_month, year, end_month, year)

    # 3. January 2023 - February 2024
    match = DIFF_YEAR_PATTERN.search(text)
    if match:
        start_month = get_month_number(match.group(1))
        end_month = get_month_number(match.group(3))
        if start_month and end_month:
            return Period(start_month, int(match.group(2)), end_month, int(match.group(4)))

    # 4. MM/YYYY
    match = MONTH_YEAR_NUMERIC_PATTERN.search(text)
    if match:
        month = int(match.group(1))
        if 1 <= month <= 12:
            year = int(match.group(2))
            return Period(month, year, month, year)

    # 5. January 2024
    match = SINGLE_MONTH_PATTERN.search(text)
    if match:
        month = get_month_number(match.group(1))
        if month:
            year = int(match.group(2))
            return Period(month, year, month, year)

    # 6. Q1 2024 / Quarter 1 2024
    match = QUARTER_PATTERN.search(text)
    if match:
        quarter = int(match.group(1))
        year = int(match.group(2))
        return Period((quarter - 1) * 3 + 1, year, quarter * 3, year)

    # 7. Last resort: any 4-digit year plus a number that could be a month
    numbers = re.findall(r'\d+', text)
    if len(numbers) >= 2:
        possible_year = next((n for n in numbers if len(n) == 4), None)
        possible_month = next((n for n in numbers if 1 <= int(n) <= 12), None)
        if possible_year and possible_month:
            month = int(possible_month)
            year = int(possible_year)
            logger.info(f"Last resort period parsing: {month}/{year} from '{period_string}'")
            return Period(month, year, month, year)

    logger.warning(f"Failed to parse period format: {period_string}")
    return None


def generate_month_range(start_month, start_year, end_month, end_year) -> List[Dict[str, int]]:
    """Inclusive list of {month, year}; reversed bounds are swapped"""
    if not start_month or not start_year or not end_month or not end_year:
        logger.warning(f"Invalid inputs to generate_month_range: "
                       f"{start_month}/{start_year} - {end_month}/{end_year}")
        return []

    start_month, start_year = int(start_month), int(start_year)
    end_month, end_year = int(end_month), int(end_year)

    if (end_year, end_month) < (start_year, start_month):
        start_month, start_year, end_month, end_year = end_month, end_year, start_month, start_year

    months = []
    month, year = start_month, start_year

    while (year, month) <= (end_year, end_month) and len(months) < MAX_RANGE_MONTHS:
        months.append({"month": month, "year": year})
        month += 1
        if month > 12:
            month = 1
            year += 1

    return months


def _within(period: Period, month: int, year: int) -> bool:
    start = (period.start_year, period.start_month)
    end = (period.end_year, period.end_month)
    if end < start:
        start, end = end, start
    return start <= (year, month) <= end


def is_period_contained(statement_period: str, month: int, year: int) -> bool:
    """Does the statement period cover the given (1-based) month of year?"""
    if not statement_period or not month or not year:
        return False

    dates = SINGLE_DATE_PATTERN.findall(statement_period)
    if len(dates) >= 2:
        start_month = _month_from_date_parts(dates[0][0], dates[0][1])
        end_month = _month_from_date_parts(dates[-1][0], dates[-1][1])
        if not start_month or not end_month:
            return False
        period = Period(start_month, int(dates[0][2]), end_month, int(dates[-1][2]))
        return _within(period, int(month), int(year))

    period = parse_statement_period(statement_period)
    if not period:
        return False
    return _within(period, int(month), int(year))


def validate_statement_period_range(extracted_period: str, selected_month: int, selected_year: int) -> Dict:
    if not extracted_period:
        return {"is_valid": False, "message": "No statement period found", "months_in_range": []}

    period = parse_statement_period(extracted_period)
    if not period:
        return {"is_valid": False, "message": "Could not parse statement period", "months_in_range": []}

    months_in_range = generate_month_range(
        period.start_month, period.start_year, period.end_month, period.end_year
    )
    is_included = any(
        m["month"] == int(selected_month) and m["year"] == int(selected_year)
        for m in months_in_range
    )

    return {
        "is_valid": is_included,
        "message": (
            f"Statement period covers {len(months_in_range)} months including selected month"
            if is_included else "Statement period does not include selected month"
        ),
        "months_in_range": months_in_range
    }


def is_multi_month_period(period_string: str) -> bool:
    period = parse_statement_period(period_string)
    return bool(period) and not period.is_single_month


def format_period_display(period: Optional[Period]) -> str:
    if not period:
        return 'Unknown period'

    if period.is_single_month:
        return f"{get_month_name(period.start_month)} {period.start_year}"

    if period.start_year == period.end_year:
        return f"{get_month_name(period.start_month)} - {get_month_name(period.end_month)} {period.end_year}"

    return (f"{get_month_name(period.start_month)[:3]} {period.start_year} - "
            f"{get_month_name(period.end_month)[:3]} {period.end_year}")
