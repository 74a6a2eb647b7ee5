"""
Date window helpers for the sync jobs.

Transactions are synced per booking date, so windows here are whole days
in the service's timezone rather than UTC timestamps.
"""

import logging
from datetime import UTC, date, datetime, timedelta
from zoneinfo import ZoneInfo

from flowqi.config.loader import cfg

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


def local_today() -> date:
    """Today's date in the configured timezone (global.timezone)."""
    return datetime.now(ZoneInfo(cfg("global.timezone", "Europe/Amsterdam"))).date()


def compute_date_window(lookback_days: int = 31, today: date | None = None) -> tuple[date, date]:
    """
    Compute the inclusive (start, end) window ending today.

    Examples:
        >>> compute_date_window(7, today=date(2024, 3, 10))
        (datetime.date(2024, 3, 3), datetime.date(2024, 3, 10))
    """
    end = today or local_today()
    start = end - timedelta(days=lookback_days)
    logger.debug(f"Computed date window: {start} to {end}")
    return start, end


def validate_date_range(start_date: date, end_date: date) -> None:
    """
    Raises:
        ValueError: If start_date lies after end_date
    """
    if start_date > end_date:
        raise ValueError(f"Start date {start_date} is after end date {end_date}")


def format_duration(duration: timedelta) -> str:
    """Format timedelta as human-readable string."""
    total_seconds = int(duration.total_seconds())

    if total_seconds < 60:
        return f"{total_seconds}s"
    elif total_seconds < 3600:
        return f"{total_seconds // 60}m{total_seconds % 60}s"
    else:
        hours = total_seconds // 3600
        minutes = (total_seconds % 3600) // 60
        return f"{hours}h{minutes}m"
