"""Time Utilities - UTC timestamps and formatting"""
import time
from datetime import datetime, timezone, timedelta
from typing import Any, Optional
from dateutil import parser as date_parser


def utc_now() -> datetime:
    """Get current UTC datetime"""
    return datetime.now(timezone.utc)


def now_ms() -> int:
    """Current epoch milliseconds"""
    return int(time.time() * 1000)


def format_iso(dt: datetime) -> str:
    """
    Format datetime to ISO 8601 string

    Args:
        dt: Datetime object

    Returns:
        ISO formatted string with millisecond precision and Z suffix
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def iso_from_ms(ms: int) -> str:
    """Epoch milliseconds to ISO 8601"""
    return format_iso(datetime.fromtimestamp(ms / 1000, tz=timezone.utc))


def parse_iso(iso_string: str) -> datetime:
    """
    Parse ISO 8601 string to datetime

    Args:
        iso_string: ISO formatted datetime string

    Returns:
        Datetime object in UTC
    """
    dt = date_parser.isoparse(iso_string)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def to_epoch_ms(value: Any) -> Optional[int]:
    """
    Coerce a stored timestamp into epoch milliseconds.

    Accepts epoch seconds, epoch milliseconds (numbers or numeric strings)
    and ISO 8601 strings. Returns None when the value cannot be read.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        n = float(value)
    else:
        text = str(value).strip()
        if not text:
            return None
        try:
            n = float(text)
        except ValueError:
            try:
                return int(parse_iso(text).timestamp() * 1000)
            except (ValueError, OverflowError):
                return None
    if n != n:  # NaN
        return None
    # values below 1e12 are epoch seconds
    return int(n * 1000) if n < 1e12 else int(n)


def add_hours(dt: datetime, hours: int) -> datetime:
    """Add hours to datetime"""
    return dt + timedelta(hours=hours)


def is_expired(expires_at: Optional[str], now: Optional[datetime] = None) -> bool:
    """
    Check if an ISO expiry timestamp has passed

    Unparseable or missing values never expire.
    """
    if not expires_at:
        return False
    try:
        deadline = parse_iso(expires_at)
    except (ValueError, OverflowError):
        return False
    return (now or utc_now()) > deadline
