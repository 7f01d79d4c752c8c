"""Shared utility functions for services and blueprints.

utcnow / as_utc:   timezone handling (SQLite hands back naive datetimes)
parse_date:        lenient date parsing, returns None on bad input
parse_date_param:  query-string date parsing that raises ValueError
hours_between:     elapsed hours as a rounded float
"""
from datetime import date, datetime, time, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value):
    """Normalise a datetime to UTC-aware regardless of input tz-awareness."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def hours_between(start, end) -> float:
    """Return the hours elapsed between two datetimes, rounded to 2 places."""
    return round((as_utc(end) - as_utc(start)).total_seconds() / 3600.0, 2)


def parse_date(value):
    """Parse a date string (ISO or DD.MM.YYYY) to a date object.

    Returns None for empty/invalid input. Supports:
    - YYYY-MM-DD (ISO format)
    - YYYY-MM-DDTHH:MM:SS (datetime ISO → .date())
    - DD.MM.YYYY (European format)
    """
    if not value:
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.fromisoformat(str(value)).date()
    except (ValueError, TypeError):
        pass
    try:
        return datetime.strptime(str(value), "%d.%m.%Y").date()
    except (ValueError, TypeError):
        return None


def parse_date_param(value, *, end_of_day: bool = False):
    """Parse a report window bound into a UTC datetime.

    Same formats as parse_date() but raises ValueError on bad input, so
    blueprints can turn it into a 400. ``end_of_day`` makes a bare date
    inclusive of the whole day.
    """
    if not value:
        return None
    parsed = parse_date(value)
    if parsed is None:
        raise ValueError("Invalid date format. Use YYYY-MM-DD or DD.MM.YYYY.")
    bound = time.max if end_of_day else time.min
    return datetime.combine(parsed, bound, tzinfo=timezone.utc)
