# supportchat/core/timezone.py
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from supportchat.core.config import DEFAULT_TIMEZONE

EPOCH = datetime(1970, 1, 1)


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (storage format)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Normalize an aware datetime to naive UTC; naive values are assumed UTC already"""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def to_tenant_local(utc_time: datetime, tz_name: Optional[str] = None) -> datetime:
    """Convert a (naive or aware) UTC time to the tenant's local wall-clock time"""
    if utc_time.tzinfo is None:
        utc_time = utc_time.replace(tzinfo=timezone.utc)
    return utc_time.astimezone(ZoneInfo(tz_name or DEFAULT_TIMEZONE))


def isoformat(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None
