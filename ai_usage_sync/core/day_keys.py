"""
UTC day key helpers.

A day key is an ISO-8601 calendar date in UTC: ``YYYY-MM-DD``.
"""

import re
from datetime import date, datetime, timedelta, timezone
from typing import List

from .constants import MAX_QUERY_DAYS
from .errors import ValidationError

_DAY_KEY_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def to_day_key(moment: datetime) -> str:
    """Return the UTC day key for a datetime (naive values are taken as UTC)."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).date().isoformat()


def day_key_from_timestamp(timestamp: float) -> str:
    """Return the UTC day key for a POSIX timestamp in seconds."""
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).date().isoformat()


def is_valid_day_key(value: object) -> bool:
    if not isinstance(value, str) or not _DAY_KEY_PATTERN.match(value):
        return False
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


def add_days(day_key: str, days: int) -> str:
    return (date.fromisoformat(day_key) + timedelta(days=days)).isoformat()


def day_keys_inclusive(start_day: str, end_day: str, max_days: int = MAX_QUERY_DAYS) -> List[str]:
    """Expand an inclusive date range into its day keys.

    Raises:
        ValidationError: If either bound is malformed, the range is
            reversed, or it spans more than ``max_days`` days
    """
    if not is_valid_day_key(start_day):
        raise ValidationError(f"Invalid start date: {start_day!r} (expected YYYY-MM-DD)")
    if not is_valid_day_key(end_day):
        raise ValidationError(f"Invalid end date: {end_day!r} (expected YYYY-MM-DD)")

    start = date.fromisoformat(start_day)
    end = date.fromisoformat(end_day)
    if start > end:
        raise ValidationError(f"Invalid date range: start {start_day} is after end {end_day}")

    span = (end - start).days + 1
    if span > max_days:
        raise ValidationError(f"Date range too large: {span} days (max {max_days})")

    return [(start + timedelta(days=offset)).isoformat() for offset in range(span)]


def lookback_start(now: datetime, lookback_days: int) -> datetime:
    """Start of the first UTC day inside a lookback window ending at ``now``."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    today = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    return today - timedelta(days=lookback_days - 1)
