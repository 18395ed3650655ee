"""
Date hint extraction for trip requests.

Understands ISO dates, "March 10" / "10 March" style dates, ranges
("December 20 to December 27", "June 3-9") and relative phrases
("tomorrow", "this weekend", "next week", "next month", "in 3 weeks",
"in March"). Everything is computed against an injectable `today` so the
parser stays deterministic.
"""

import re
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional, Tuple


MONTHS = {
    "january": 1, "jan": 1,
    "february": 2, "feb": 2,
    "march": 3, "mar": 3,
    "april": 4, "apr": 4,
    "may": 5,
    "june": 6, "jun": 6,
    "july": 7, "jul": 7,
    "august": 8, "aug": 8,
    "september": 9, "sep": 9, "sept": 9,
    "october": 10, "oct": 10,
    "november": 11, "nov": 11,
    "december": 12, "dec": 12,
}

_MONTH = r"(?:" + "|".join(sorted(MONTHS, key=len, reverse=True)) + r")\.?"
_DAY = r"(\d{1,2})(?:st|nd|rd|th)?"
_YEAR = r"(?:,?\s*(\d{4}))?"

ISO_DATE = re.compile(r"\b(\d{4})-(\d{1,2})-(\d{1,2})\b")
RANGE_MONTH_FIRST = re.compile(
    rf"\b({_MONTH})\s+{_DAY}{_YEAR}\s*(?:-|–|to|until|till|through)\s*(?:({_MONTH})\s+)?{_DAY}{_YEAR}",
    re.IGNORECASE,
)
RANGE_DAY_FIRST = re.compile(
    rf"\b{_DAY}\s*(?:-|–|to|until|till)\s*{_DAY}\s+({_MONTH}){_YEAR}",
    re.IGNORECASE,
)
MONTH_DAY = re.compile(rf"\b({_MONTH})\s+{_DAY}{_YEAR}\b", re.IGNORECASE)
DAY_MONTH = re.compile(rf"\b{_DAY}\s+(?:of\s+)?({_MONTH}){_YEAR}\b", re.IGNORECASE)
IN_N_UNITS = re.compile(r"\bin\s+(\d+|a|one|two|three|four)\s+(days?|weeks?|months?)\b", re.IGNORECASE)
IN_MONTH = re.compile(rf"\b(?:in|during|for|early|late|mid)\s+({_MONTH})(?:\s+(\d{{4}}))?\b", re.IGNORECASE)

_SMALL_NUMBERS = {"a": 1, "one": 1, "two": 2, "three": 3, "four": 4}


@dataclass
class DateHints:
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    hint: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return self.start_date is None and self.end_date is None and self.hint is None


def _month_number(token: str) -> int:
    return MONTHS[token.lower().rstrip(".")]


def _safe_date(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _roll_forward(value: date, today: date, explicit_year: bool) -> date:
    """Dates without a year that already passed refer to next year."""
    if explicit_year or value >= today:
        return value
    rolled = _safe_date(value.year + 1, value.month, value.day)
    return rolled or value


def _resolve(month_token: str, day: str, year: Optional[str], today: date) -> Optional[date]:
    month = _month_number(month_token)
    resolved = _safe_date(int(year) if year else today.year, month, int(day))
    if resolved is None:
        return None
    return _roll_forward(resolved, today, explicit_year=bool(year))


def _explicit_range(text: str, today: date) -> Optional[Tuple[date, date]]:
    match = RANGE_MONTH_FIRST.search(text)
    if match:
        m1, d1, y1, m2, d2, y2 = match.groups()
        start = _resolve(m1, d1, y1 or y2, today)
        end = _resolve(m2 or m1, d2, y2 or y1, today)
        if start and end:
            if end < start:
                end = _safe_date(end.year + 1, end.month, end.day) or end
            return start, end

    match = RANGE_DAY_FIRST.search(text)
    if match:
        d1, d2, month_token, year = match.groups()
        start = _resolve(month_token, d1, year, today)
        end = _resolve(month_token, d2, year, today)
        if start and end and end >= start:
            return start, end
    return None


def _iso_dates(text: str) -> Tuple[Optional[date], Optional[date]]:
    found = []
    for match in ISO_DATE.finditer(text):
        value = _safe_date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
        if value:
            found.append(value)
    start = found[0] if found else None
    end = found[1] if len(found) > 1 else None
    return start, end


def _single_date(text: str, today: date) -> Optional[date]:
    for pattern, month_first in ((MONTH_DAY, True), (DAY_MONTH, False)):
        for match in pattern.finditer(text):
            if month_first:
                month_token, day, year = match.groups()
            else:
                day, month_token, year = match.groups()
            # "may 5" is usually the month, "may" alone is usually a verb
            if month_token.lower() == "may" and not month_token[0].isupper():
                continue
            resolved = _resolve(month_token, day, year, today)
            if resolved:
                return resolved
    return None


def _next_weekday(today: date, weekday: int) -> date:
    """Next occurrence of weekday (Mon=0), strictly after today."""
    days_ahead = (weekday - today.weekday()) % 7
    return today + timedelta(days=days_ahead or 7)


def _relative(text: str, today: date) -> Tuple[Optional[date], Optional[str]]:
    lower = text.lower()

    if re.search(r"\btomorrow\b", lower):
        return today + timedelta(days=1), "tomorrow"

    if re.search(r"\bthis weekend\b", lower):
        start = today if today.weekday() == 5 else _next_weekday(today, 5)
        return start, "this weekend"

    if re.search(r"\bnext weekend\b", lower):
        this_saturday = today if today.weekday() == 5 else _next_weekday(today, 5)
        return this_saturday + timedelta(days=7), "next weekend"

    if re.search(r"\bnext week\b", lower):
        return _next_weekday(today, 0), "next week"

    if re.search(r"\bnext month\b", lower):
        if today.month == 12:
            return date(today.year + 1, 1, 1), "next month"
        return date(today.year, today.month + 1, 1), "next month"

    match = IN_N_UNITS.search(text)
    if match:
        raw, unit = match.group(1).lower(), match.group(2).lower()
        amount = _SMALL_NUMBERS.get(raw) or int(raw)
        if unit.startswith("day"):
            offset = amount
        elif unit.startswith("week"):
            offset = amount * 7
        else:
            offset = amount * 30
        return today + timedelta(days=offset), match.group(0).strip()

    for match in IN_MONTH.finditer(text):
        month_token, year = match.group(1), match.group(2)
        if month_token.lower() == "may" and not month_token[0].isupper():
            continue
        month = _month_number(month_token)
        candidate = date(int(year) if year else today.year, month, 1)
        if not year and (candidate.year, candidate.month) < (today.year, today.month):
            candidate = date(today.year + 1, month, 1)
        return candidate, match.group(0).strip()

    return None, None


def extract_dates(text: str, today: Optional[date] = None) -> DateHints:
    """
    Extract start/end dates or a relative hint from free text.

    Explicit dates win over relative phrases. When only one explicit date
    is present it is taken as the start date.
    """
    today = today or date.today()
    if not text:
        return DateHints()

    date_range = _explicit_range(text, today)
    if date_range:
        return DateHints(start_date=date_range[0], end_date=date_range[1])

    iso_start, iso_end = _iso_dates(text)
    if iso_start:
        return DateHints(start_date=iso_start, end_date=iso_end)

    single = _single_date(text, today)
    if single:
        return DateHints(start_date=single)

    start, hint = _relative(text, today)
    return DateHints(start_date=start, hint=hint)
