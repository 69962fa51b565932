from __future__ import annotations
from datetime import datetime, timedelta, timezone
from typing import Optional

__all__ = ["utc_now", "utc_iso", "to_naive_utc", "utc_midnight"]


def utc_now() -> datetime:
    """Timezone-aware current UTC time (replaces datetime.utcnow)."""
    return datetime.now(timezone.utc)


def utc_iso(ts: Optional[datetime] = None) -> str:
    """Return RFC3339/ISO8601 string with a trailing Z for UTC."""
    d = ts or utc_now()
    if d.tzinfo is None:
        d = d.replace(tzinfo=timezone.utc)
    return d.isoformat().replace("+00:00", "Z")


def to_naive_utc(dt: datetime) -> datetime:
    """Convert any datetime to UTC and drop tzinfo (storage columns are naive UTC)."""
    if dt.tzinfo is None:
        # Assume naive input already represents UTC
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def utc_midnight(dt: datetime, days: int = 0) -> datetime:
    """Naive UTC midnight of ``dt``'s calendar day, shifted by ``days``."""
    d = to_naive_utc(dt)
    return datetime(d.year, d.month, d.day) + timedelta(days=days)
