"""
Lenient date parsing for free-text timeline posts.

Accepted forms (UK convention, day first):
- 19/12/2016, 19-12-16, 19.12.2016
- 19 December 2016, 19 Dec 2016
- December 19, 2016

Anything outside [2010-01-01, today + 30 days] is treated as unparsed;
that catches swapped day/month and garbage digits.
"""

import re
from datetime import date, timedelta
from typing import Optional


MIN_REASONABLE_DATE = date(2010, 1, 1)
MAX_FUTURE_DAYS = 30

MONTHS = {
    'jan': 1, 'january': 1,
    'feb': 2, 'february': 2,
    'mar': 3, 'march': 3,
    'apr': 4, 'april': 4,
    'may': 5,
    'jun': 6, 'june': 6,
    'jul': 7, 'july': 7,
    'aug': 8, 'august': 8,
    'sep': 9, 'sept': 9, 'september': 9,
    'oct': 10, 'october': 10,
    'nov': 11, 'november': 11,
    'dec': 12, 'december': 12,
}

_NUMERIC_RE = re.compile(r'(\d{1,2})[\s/\-.]+(\d{1,2})[\s/\-.]+(\d{2,4})')
_DAY_MONTH_YEAR_RE = re.compile(r'(\d{1,2})(?:st|nd|rd|th)?[\s\-.]+([A-Za-z]+)\.?[\s\-.,]+(\d{4})')
_MONTH_DAY_YEAR_RE = re.compile(r'([A-Za-z]+)\.?\s+(\d{1,2})(?:st|nd|rd|th)?,?\s+(\d{4})')


def month_number(name: str) -> Optional[int]:
    key = name.lower()
    return MONTHS.get(key) or MONTHS.get(key[:3])


def is_reasonable_date(value: date, today: Optional[date] = None) -> bool:
    today = today or date.today()
    return MIN_REASONABLE_DATE <= value <= today + timedelta(days=MAX_FUTURE_DAYS)


def _build(year: int, month: Optional[int], day: int, today: Optional[date]) -> Optional[date]:
    if month is None:
        return None
    try:
        value = date(year, month, day)
    except ValueError:
        return None
    return value if is_reasonable_date(value, today) else None


def parse_flexible_date(text: str, today: Optional[date] = None) -> Optional[date]:
    """
    Parse a date written in any of the accepted forms.

    Args:
        text: Captured date text (may carry surrounding noise)
        today: Reference date for the future bound (default: today)

    Returns:
        The date, or None when nothing parses into the reasonable range
    """
    if not text:
        return None
    text = text.strip()

    match = _NUMERIC_RE.search(text)
    if match:
        day, month, year = (int(g) for g in match.groups())
        if year < 100:
            year += 2000
        parsed = _build(year, month, day, today)
        if parsed:
            return parsed

    match = _DAY_MONTH_YEAR_RE.search(text)
    if match:
        day, month_name, year = match.groups()
        parsed = _build(int(year), month_number(month_name), int(day), today)
        if parsed:
            return parsed

    match = _MONTH_DAY_YEAR_RE.search(text)
    if match:
        month_name, day, year = match.groups()
        parsed = _build(int(year), month_number(month_name), int(day), today)
        if parsed:
            return parsed

    return None
