"""UTC time helpers. Stored timestamps are timezone-aware UTC."""
import time
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Aware UTC; naive values (SQLite reads, query strings without offset) are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def epoch_millis() -> int:
    return time.time_ns() // 1_000_000
