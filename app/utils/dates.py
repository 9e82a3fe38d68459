from datetime import datetime, timezone
from typing import Optional


def make_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """Ensure datetime is timezone-aware (UTC)"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def get_utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime"""
    return datetime.now(timezone.utc)


def seconds_remaining(deadline: Optional[datetime], now: datetime) -> Optional[int]:
    """Display countdown derived from a stored deadline. Never negative."""
    if deadline is None:
        return None
    delta = (make_aware(deadline) - make_aware(now)).total_seconds()
    return max(0, int(delta))


def elapsed_seconds(start: Optional[datetime], end: Optional[datetime]) -> Optional[int]:
    if start is None or end is None:
        return None
    return max(0, int((make_aware(end) - make_aware(start)).total_seconds()))
