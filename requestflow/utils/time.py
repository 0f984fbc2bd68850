"""Time Utilities - UTC timestamps and formatting"""
from datetime import datetime, timezone, timedelta
from typing import Optional
from dateutil import parser as date_parser


def utc_now() -> datetime:
    """Get current UTC datetime"""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Attach UTC to naive datetimes, convert aware ones"""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_iso(dt: datetime) -> str:
    """
    Format datetime to ISO 8601 string

    Args:
        dt: Datetime object

    Returns:
        ISO formatted string with Z suffix for UTC
    """
    return ensure_utc(dt).isoformat().replace("+00:00", "Z")


def parse_iso(iso_string: str) -> datetime:
    """
    Parse ISO 8601 string to datetime

    Args:
        iso_string: ISO formatted datetime string

    Returns:
        Datetime object in UTC
    """
    return ensure_utc(date_parser.isoparse(iso_string))


def coerce_datetime(value: Optional[object]) -> Optional[datetime]:
    """Accept a datetime or ISO string (as stored by document databases)"""
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    return parse_iso(str(value))


def add_minutes(dt: datetime, minutes: int) -> datetime:
    """Add minutes to datetime"""
    return dt + timedelta(minutes=minutes)


def is_overdue(due_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """
    Check if due datetime has passed

    Args:
        due_at: Due datetime or None
        now: Reference time, defaults to the current UTC time

    Returns:
        True if overdue, False otherwise
    """
    if due_at is None:
        return False
    return ensure_utc(now or utc_now()) > ensure_utc(due_at)
