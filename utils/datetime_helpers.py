"""
Datetime helper utilities to ensure consistent timezone handling across the settlement core.

All persisted timestamps are naive UTC (DateTime(timezone=False)). Cycle keys
used for settlement runs, vault months and daily taps are derived here so every
module agrees on UTC calendar boundaries.
"""

from datetime import datetime, date, timedelta, timezone
import logging

logger = logging.getLogger(__name__)


def get_naive_utc_now() -> datetime:
    """Current UTC time without timezone info"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def month_key(moment: datetime) -> str:
    """Vault month key, e.g. '2026-10'"""
    return moment.strftime("%Y-%m")


def period_key(day: date) -> str:
    """Daily settlement period key, e.g. '2026-10-18'"""
    return day.strftime("%Y-%m-%d")


def previous_period_key(now: datetime) -> str:
    """Key of the UTC day before `now`"""
    return period_key((now - timedelta(days=1)).date())
