"""
Timezone-aware datetime utilities.

Access codes, grants and signatures are all compared against stored
timestamps, so every comparison goes through these helpers.
"""
from datetime import datetime, timezone, timedelta
from typing import Optional, Union


def utc_now() -> datetime:
    """
    Get current UTC time as timezone-aware datetime.

    Use this instead of datetime.utcnow() which returns naive datetime.
    """
    return datetime.now(timezone.utc)


def expires_in(seconds: int, now: Optional[datetime] = None) -> datetime:
    """Absolute expiry `seconds` from now (or from the given instant)."""
    return (now or utc_now()) + timedelta(seconds=seconds)


def parse_db_timestamp(value: Optional[Union[str, datetime]]) -> Optional[datetime]:
    """
    Parse timestamp from database, ensuring timezone-aware UTC.

    Handles ISO strings with a Z suffix or an explicit offset, naive
    datetimes (assumed UTC) and aware datetimes.

    Returns:
        Timezone-aware datetime in UTC, or None if input is None/empty/unparseable
    """
    if value is None:
        return None

    if isinstance(value, str):
        if not value:
            return None
        # PostgREST returns Z-suffixed timestamps
        value = value.replace("Z", "+00:00")
        try:
            dt = datetime.fromisoformat(value)
        except ValueError:
            return None
    elif isinstance(value, datetime):
        dt = value
    else:
        return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)

    return dt


def is_past(deadline: Optional[Union[str, datetime]]) -> bool:
    """
    True when the deadline has passed.

    A missing or unparseable deadline counts as passed, so an expiry that
    cannot be read never grants access.
    """
    dt = parse_db_timestamp(deadline)
    if dt is None:
        return True
    return utc_now() >= dt


def seconds_until(deadline: Optional[Union[str, datetime]]) -> int:
    """Whole seconds left until the deadline, never negative."""
    dt = parse_db_timestamp(deadline)
    if dt is None:
        return 0
    return max(0, int((dt - utc_now()).total_seconds()))
