"""
Datetime helper utilities to ensure consistent timezone handling across the application.

All persisted timestamps are timezone-naive UTC (DateTime(timezone=False)).
These helpers keep aware datetimes out of the order and ledger tables and
make the injected clocks used by the services interchangeable.
"""

from datetime import datetime, timezone
from typing import Callable, Optional
import logging

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def ensure_naive_datetime(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Convert timezone-aware datetime to naive UTC datetime.

    Args:
        dt: Datetime that may be timezone-aware or naive

    Returns:
        Naive datetime in UTC, or None if input is None

    Example:
        >>> aware_dt = datetime.now(timezone.utc)
        >>> naive_dt = ensure_naive_datetime(aware_dt)
        >>> assert naive_dt.tzinfo is None
    """
    if dt is None:
        return None

    if dt.tzinfo is not None:
        utc_dt = dt.astimezone(timezone.utc)
        return utc_dt.replace(tzinfo=None)

    return dt


def get_naive_utc_now() -> datetime:
    """
    Get current UTC time as naive datetime.

    This is the default clock for every service in the core.

    Example:
        >>> now = get_naive_utc_now()
        >>> assert now.tzinfo is None
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def now_from(clock: Optional[Clock] = None) -> datetime:
    """Read an injected clock, normalising its result to naive UTC"""
    current = (clock or get_naive_utc_now)()
    return ensure_naive_datetime(current)


def epoch_millis(dt: Optional[datetime] = None) -> int:
    """Milliseconds since the Unix epoch for a naive UTC datetime"""
    dt = ensure_naive_datetime(dt) or get_naive_utc_now()
    return int(dt.replace(tzinfo=timezone.utc).timestamp() * 1000)
