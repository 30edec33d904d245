"""Shared utility functions for services and blueprints.

as_utc:         SQLite returns naive datetimes; normalise before comparing
parse_date:     returns None on bad input
require_date:   raises ValidationError on bad input, for service arguments
"""
from datetime import date, datetime, timezone

from compliance_engine.core.exceptions import ValidationError


def as_utc(dt: datetime | None) -> datetime | None:
    """Normalise a datetime to UTC-aware regardless of whether SQLite stored it naive.

    SQLite's DateTime columns return naive datetimes; PostgreSQL returns tz-aware.
    Comparisons against the current time must go through this helper so the same
    code works in both environments.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_date(value):
    """Parse an ISO date (or datetime) string to a date object.

    Returns None for empty/invalid input.
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
        return None


def require_date(value, field: str) -> date:
    """Same as parse_date() but raises ValidationError instead of returning None."""
    parsed = parse_date(value)
    if parsed is None:
        raise ValidationError(
            f"{field} must be an ISO date (YYYY-MM-DD)",
            details={field: value},
        )
    return parsed
