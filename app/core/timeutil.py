"""AdPulse — Time helpers.

Timestamps are stored as naive UTC in plain ``DateTime`` columns so that
SQLite and PostgreSQL round-trip them identically.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def sync_window(lookback_days: int, today: Optional[datetime] = None) -> tuple[str, str]:
    """Resolve the metrics window as (start, stop) YYYY-MM-DD strings, inclusive of today."""
    today_date = (today or utcnow()).date()
    start = today_date - timedelta(days=max(lookback_days - 1, 0))
    return start.strftime("%Y-%m-%d"), today_date.strftime("%Y-%m-%d")
