"""
Datetime helpers.

Timestamps are written as naive UTC (``datetime.utcnow()``). Some backends
hand them back timezone-aware, so comparisons go through ``as_utc``.
"""

from datetime import datetime, timezone
from typing import Optional


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Timezone-aware UTC view of a naive-UTC or aware datetime."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive UTC form used when writing timestamps."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
