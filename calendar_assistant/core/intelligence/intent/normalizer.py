"""
Parameter normalization.

Turns loosely formatted values (from the language model or straight from
the user's reply to a follow-up question) into the typed values that
MeetingParams accepts. Every function returns None for input it cannot
make sense of; nothing here raises on bad input.
"""

import re
from datetime import date, timedelta
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

TIME_24H = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")
TIME_12H = re.compile(r"^(\d{1,2})(?::(\d{2}))?\s*(am|pm)?$")
TIME_IN_TEXT_12H = re.compile(r"\b(\d{1,2})(?::(\d{2}))?\s*(am|pm)\b", re.IGNORECASE)
TIME_IN_TEXT_24H = re.compile(r"\b([01]?\d|2[0-3]):[0-5]\d\b")

DATE_ISO = re.compile(r"(\d{4}-\d{2}-\d{2})")
DATE_DMY = re.compile(r"\b(\d{1,2})[/-](\d{1,2})[/-](\d{2,4})\b")
DAY_OF_MONTH = re.compile(r"\b(\d{1,2})(?:st|nd|rd|th)?\b")
YEAR = re.compile(r"\b(20\d{2})\b")

EMAIL = re.compile(r"[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}", re.IGNORECASE)

MONTHS = [
    "january", "february", "march", "april", "may", "june",
    "july", "august", "september", "october", "november", "december",
]
MONTH_NAME = re.compile(r"\b(" + "|".join(MONTHS) + r")\b", re.IGNORECASE)

WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
RELATIVE_DAY = re.compile(r"\b(today|tomorrow|" + "|".join(WEEKDAYS) + r")\b", re.IGNORECASE)

MAX_DURATION_MINUTES = 24 * 60


def to_24_hour(value: str) -> Optional[str]:
    """Normalize '14:30', '9:05', '2pm', '2:30 pm' to zero-padded 'HH:MM'."""
    text = str(value).strip().lower()

    match = TIME_24H.match(text)
    if match:
        return f"{int(match.group(1)):02d}:{match.group(2)}"

    match = TIME_12H.match(text)
    if not match:
        return None

    hour = int(match.group(1))
    minute = int(match.group(2)) if match.group(2) else 0
    suffix = match.group(3)

    if suffix:
        if hour < 1 or hour > 12:
            return None
        if suffix == "pm" and hour < 12:
            hour += 12
        if suffix == "am" and hour == 12:
            hour = 0

    if hour > 23 or minute > 59:
        return None
    return f"{hour:02d}:{minute:02d}"


def find_time(text: str) -> Optional[str]:
    """Find the first time expression inside free text."""
    match = TIME_IN_TEXT_12H.search(text) or TIME_IN_TEXT_24H.search(text)
    if not match:
        return None
    return to_24_hour(match.group(0))


def _safe_date(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _relative_day(word: str, today: date) -> date:
    word = word.lower()
    if word == "today":
        return today
    if word == "tomorrow":
        return today + timedelta(days=1)
    diff = (WEEKDAYS.index(word) - today.weekday()) % 7 or 7
    return today + timedelta(days=diff)


def parse_date(value: Any, today: date) -> Optional[date]:
    """
    Parse a date expression relative to today.

    Understands 'today', 'tomorrow', weekday names (next occurrence, never
    today), ISO dates, D/M/YYYY and 'Month D[, YYYY]'.
    """
    if isinstance(value, date):
        return value
    if not value:
        return None

    text = str(value).strip()

    match = RELATIVE_DAY.fullmatch(text)
    if match:
        return _relative_day(match.group(1), today)

    match = DATE_ISO.search(text)
    if match:
        try:
            return date.fromisoformat(match.group(1))
        except ValueError:
            return None

    match = DATE_DMY.search(text)
    if match:
        day, month, year = match.groups()
        if len(year) == 2:
            year = "20" + year
        return _safe_date(int(year), int(month), int(day))

    match = MONTH_NAME.search(text)
    if match:
        month = MONTHS.index(match.group(1).lower()) + 1
        # Look for the day after the month name first ("March 10"), then anywhere
        day_match = DAY_OF_MONTH.search(text, match.end()) or DAY_OF_MONTH.search(text)
        if day_match:
            year_match = YEAR.search(text)
            year = int(year_match.group(1)) if year_match else today.year
            return _safe_date(year, month, int(day_match.group(1)))

    # "tomorrow at 3pm", "next friday"
    match = RELATIVE_DAY.search(text)
    if match:
        return _relative_day(match.group(1), today)

    return None


def extract_emails(value: Any) -> list[str]:
    """Lower-cased, de-duplicated e-mail addresses in order of appearance."""
    if isinstance(value, (list, tuple, set)):
        text = " ".join(str(v) for v in value)
    elif value:
        text = str(value)
    else:
        return []

    seen: list[str] = []
    for email in EMAIL.findall(text):
        email = email.lower()
        if email not in seen:
            seen.append(email)
    return seen


def normalize_duration(value: Any) -> Optional[int]:
    """Whole minutes strictly between 0 and 24h."""
    if isinstance(value, bool) or value is None:
        return None
    try:
        minutes = int(str(value).strip().split()[0])
    except (ValueError, IndexError):
        return None
    if 0 < minutes < MAX_DURATION_MINUTES:
        return minutes
    return None


PROVIDERS = {"google", "microsoft"}
TIME_RANGES = {"morning", "afternoon", "evening"}


def normalize_params(raw: dict[str, Any], today: date) -> dict[str, Any]:
    """Keep only the values that normalize cleanly; drop the rest."""
    params: dict[str, Any] = {}

    title = raw.get("title")
    if isinstance(title, str) and title.strip():
        params["title"] = title.strip()

    description = raw.get("description")
    if isinstance(description, str) and description.strip():
        params["description"] = description.strip()

    if raw.get("date"):
        parsed = parse_date(raw["date"], today)
        if parsed:
            params["date"] = parsed

    if raw.get("time"):
        normalized = to_24_hour(raw["time"])
        if normalized:
            params["time"] = normalized

    duration = normalize_duration(raw.get("duration", raw.get("duration_minutes")))
    if duration:
        params["duration_minutes"] = duration

    attendees = extract_emails(raw.get("attendees"))
    if attendees:
        params["attendees"] = attendees

    provider = str(raw.get("provider") or "").strip().lower()
    if provider in PROVIDERS:
        params["provider"] = provider

    time_range = str(raw.get("time_range") or "").strip().lower()
    if time_range in TIME_RANGES:
        params["time_range"] = time_range

    return params


def interpret_field(field_name: str, raw: str, today: date) -> dict[str, Any]:
    """
    Read a raw follow-up answer as the value of the field that was asked for.

    Returns a partial params dict (possibly empty).
    """
    value = raw.strip()
    if not value:
        return {}

    if field_name == "title":
        return {"title": value}

    if field_name == "date":
        parsed = parse_date(value, today)
        out: dict[str, Any] = {"date": parsed} if parsed else {}
        # "tomorrow at 3pm" answers two questions at once
        found = find_time(value)
        if found:
            out["time"] = found
        return out

    if field_name == "time":
        found = to_24_hour(value) or find_time(value)
        return {"time": found} if found else {}

    if field_name == "attendees":
        emails = extract_emails(value)
        return {"attendees": emails} if emails else {}

    return {}


def get_zone(name: Optional[str], default: str = "UTC") -> ZoneInfo:
    """ZoneInfo for an IANA name, falling back to default for unknown names."""
    for candidate in (name, default):
        if not candidate:
            continue
        try:
            return ZoneInfo(candidate)
        except (ZoneInfoNotFoundError, ValueError):
            continue
    return ZoneInfo("UTC")
