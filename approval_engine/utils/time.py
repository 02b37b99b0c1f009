"""Time Utilities - UTC timestamps and formatting"""
from datetime import datetime, timezone, timedelta
from typing import Optional
from dateutil import parser as date_parser


def utc_now() -> datetime:
    """Get current UTC datetime"""
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to timezone-aware UTC
    
    MongoDB hands back naive datetimes unless the client is tz-aware,
    so every value read from the store passes through here.
    """
    if dt is None:
        return None
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


def parse_datetime(value) -> Optional[datetime]:
    """Parse a datetime, date string or epoch milliseconds; None when unparseable"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str):
        try:
            return ensure_utc(date_parser.parse(value))
        except (ValueError, OverflowError):
            return None
    return None


def add_minutes(dt: datetime, minutes: int) -> datetime:
    """Add minutes to datetime"""
    return dt + timedelta(minutes=minutes)


def calculate_due_at(start_time: datetime, due_minutes: int) -> datetime:
    """
    Calculate due datetime from start time and duration
    
    Args:
        start_time: Start datetime
        due_minutes: Minutes until due
        
    Returns:
        Due datetime
    """
    return add_minutes(start_time, due_minutes)


def millis_until(dt: datetime, now: Optional[datetime] = None) -> int:
    """Milliseconds from now until ``dt`` (negative when in the past)"""
    now = now or utc_now()
    return int((ensure_utc(dt) - now).total_seconds() * 1000)


def epoch_millis(dt: Optional[datetime] = None) -> int:
    """Epoch milliseconds for ``dt`` (defaults to now)"""
    return int(ensure_utc(dt or utc_now()).timestamp() * 1000)

