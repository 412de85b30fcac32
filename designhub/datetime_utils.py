"""
DateTime utility functions for the application.
"""
from datetime import date, datetime, timezone


def parse_date(value):
    """
    Coerce a date, datetime or ISO string into a date.

    Returns None for empty values and raises ValueError for strings that are
    not ISO formatted.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    value = str(value).strip()
    if not value:
        return None
    if "T" in value:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
    return date.fromisoformat(value)


def to_trello_timestamp(value):
    """
    Format a date/datetime as the millisecond UTC timestamp Trello expects.

    Dates map to midnight UTC: date(2025, 6, 1) -> "2025-06-01T00:00:00.000Z".
    Naive datetimes are assumed to be UTC.
    """
    if value is None:
        return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if "T" in text:
            value = datetime.fromisoformat(text.replace("Z", "+00:00"))
        else:
            value = date.fromisoformat(text)
    if not isinstance(value, datetime):
        value = datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    elif value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def isoformat_or_none(dt):
    """Return dt.isoformat() or None."""
    return dt.isoformat() if dt else None


def parse_iso_datetime(value):
    """
    Parse an ISO-8601 query parameter into a naive UTC datetime.

    Returns None for empty input; raises ValueError for malformed input.
    """
    if not value:
        return None
    dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt
