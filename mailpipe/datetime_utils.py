"""
DateTime utility functions for the application.

All timestamps are stored as naive UTC datetimes.
"""
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo


# Recipients are addressed in GMT+7 (Asia/Bangkok has no DST)
RECIPIENT_TIMEZONE = "Asia/Bangkok"


def utcnow():
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(dt):
    """
    Normalize a datetime or ISO string to naive UTC.

    Args:
        dt: datetime object, ISO string, or None

    Returns:
        datetime: naive UTC datetime, or None if dt is None

    Raises:
        ValueError: If a string cannot be parsed as ISO 8601
    """
    if dt is None:
        return None

    if isinstance(dt, str):
        dt = datetime.fromisoformat(dt.replace('Z', '+00:00'))

    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def isoformat_utc(dt):
    """ISO 8601 string with an explicit UTC offset, or None."""
    if not dt:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def next_local_time(hour, tz_name=RECIPIENT_TIMEZONE, now=None, days_ahead=0):
    """
    Next occurrence of `hour`:00 in the given timezone, as naive UTC.

    With days_ahead=0 this is today's slot if it is still ahead, otherwise
    tomorrow's. With days_ahead=N the slot is N local days from today.

    Args:
        hour: Local hour of day (0-23)
        tz_name: IANA timezone name
        now: Reference time (naive UTC); defaults to utcnow()
        days_ahead: Force the slot this many local days ahead

    Returns:
        datetime: naive UTC datetime
    """
    tz = ZoneInfo(tz_name)
    now = now or utcnow()
    local_now = now.replace(tzinfo=timezone.utc).astimezone(tz)

    target = local_now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if days_ahead:
        target = target + timedelta(days=days_ahead)
    elif target <= local_now:
        target = target + timedelta(days=1)

    return target.astimezone(timezone.utc).replace(tzinfo=None)


def format_display_date(dt):
    """
    Format a date for email copy, e.g. "October 15, 2025".

    Args:
        dt: datetime object, ISO string, or None

    Returns:
        str: Formatted date, or empty string if dt is None
    """
    if not dt:
        return ""
    if isinstance(dt, str):
        dt = to_naive_utc(dt)
    return dt.strftime("%B %d, %Y").replace(" 0", " ")
