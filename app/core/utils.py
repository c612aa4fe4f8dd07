"""
Utility functions for the application.
"""
from datetime import datetime, timezone
from typing import Any, Iterator, Sequence


def utcnow() -> datetime:
    """Timezone-aware current UTC time. All sync timestamps go through here."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """
    Normalise a datetime read back from the database.

    SQLite drops tzinfo on the way out, PostgreSQL keeps it; comparisons in
    Python need both sides aware.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def chunked(items: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    """Yield successive slices of ``items`` of at most ``size`` elements."""
    if size <= 0:
        raise ValueError("chunk size must be positive")
    for start in range(0, len(items), size):
        yield items[start:start + size]

