"""Shared utility functions.

parse_date:     lenient date parsing for request payloads (None on bad input)
parse_date_strict: same, but raises ValidationError on bad input
as_utc:         normalise DB datetimes (SQLite drops tzinfo) to aware UTC
round_half_up:  integer rounding used for every progress figure
inclusive_days: day count for a start..end span
"""
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from tracker.core.exceptions import ValidationError


def parse_date(value):
    """Parse a date string (ISO or DD.MM.YYYY) to a date object.

    Returns None for empty/invalid input. Supports:
    - YYYY-MM-DD (ISO format)
    - YYYY-MM-DDTHH:MM:SS (datetime ISO → .date())
    - DD.MM.YYYY (European format)
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
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


def parse_date_strict(value, field="date"):
    """Parse a date, raising ValidationError when a non-empty value is unparseable."""
    if value in (None, ""):
        return None
    parsed = parse_date(value)
    if parsed is None:
        raise ValidationError(f"Invalid {field}: {value!r}", details={field: "expected YYYY-MM-DD"})
    return parsed


def as_utc(value):
    """Return ``value`` as an aware UTC datetime (naive values are assumed UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def round_half_up(value) -> int:
    """Round to the nearest integer, halves away from zero (0.5 → 1)."""
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def inclusive_days(start, end):
    """Days covered by start..end inclusive, or None when either end is open."""
    if not start or not end:
        return None
    return (end - start).days + 1
