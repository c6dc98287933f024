"""
Time windows and bucket arithmetic for analytics rollups.

Buckets are UTC and half-open: an hourly bucket labelled ``2025-03-01 10:00``
covers ``[10:00, 11:00)``. Because every hourly bucket sits wholly inside one
daily bucket, additive counts for a day always equal the sum of its 24 hours.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from shared.datetime_utils import ensure_utc, utc_now


class AnalyticsWindow(str, Enum):
    """Trailing windows accepted by the dashboard endpoints."""

    LAST_24H = "24h"
    LAST_7D = "7d"
    LAST_30D = "30d"
    LAST_90D = "90d"

    @property
    def span(self) -> timedelta:
        return _WINDOW_SPANS[self]


_WINDOW_SPANS = {
    AnalyticsWindow.LAST_24H: timedelta(hours=24),
    AnalyticsWindow.LAST_7D: timedelta(days=7),
    AnalyticsWindow.LAST_30D: timedelta(days=30),
    AnalyticsWindow.LAST_90D: timedelta(days=90),
}


class TimeBucketStrategy(Enum):
    """Enumeration of available time bucketing strategies"""

    HOURLY = "hour"
    DAILY = "day"
    WEEKLY = "week"


class TimeBucketConfig:
    """Configuration for time bucket aggregation"""

    def __init__(
        self,
        strategy: TimeBucketStrategy,
        label_format: str,
        interval: timedelta,
    ):
        self.strategy = strategy
        self.label_format = label_format
        self.interval = interval


BUCKET_CONFIGS = {
    TimeBucketStrategy.HOURLY: TimeBucketConfig(
        strategy=TimeBucketStrategy.HOURLY,
        label_format="%Y-%m-%d %H:00",
        interval=timedelta(hours=1),
    ),
    TimeBucketStrategy.DAILY: TimeBucketConfig(
        strategy=TimeBucketStrategy.DAILY,
        label_format="%Y-%m-%d",
        interval=timedelta(days=1),
    ),
    TimeBucketStrategy.WEEKLY: TimeBucketConfig(
        strategy=TimeBucketStrategy.WEEKLY,
        label_format="%G-W%V",  # ISO year-week
        interval=timedelta(weeks=1),
    ),
}


def get_bucket_config(strategy: TimeBucketStrategy) -> TimeBucketConfig:
    """Get the bucket configuration for a given strategy"""
    return BUCKET_CONFIGS[strategy]


def window_bounds(
    window: AnalyticsWindow, now: Optional[datetime] = None
) -> Tuple[datetime, datetime]:
    """Return ``(start, end)`` for a trailing window ending at *now*."""
    end = ensure_utc(now) if now is not None else utc_now()
    return end - window.span, end


def bucket_start(value: datetime, config: TimeBucketConfig) -> datetime:
    """Floor *value* to the start of its bucket."""
    value = ensure_utc(value)
    if config.strategy == TimeBucketStrategy.HOURLY:
        return value.replace(minute=0, second=0, microsecond=0)

    day = value.replace(hour=0, minute=0, second=0, microsecond=0)
    if config.strategy == TimeBucketStrategy.WEEKLY:
        # ISO weeks start on Monday
        return day - timedelta(days=day.weekday())
    return day


def bucket_label(value: datetime, config: TimeBucketConfig) -> str:
    """Display label of the bucket containing *value*."""
    return bucket_start(value, config).strftime(config.label_format)


def generate_complete_time_buckets(
    start_date: datetime, end_date: datetime, bucket_config: TimeBucketConfig
) -> List[str]:
    """
    Generate every bucket label touched by ``[start_date, end_date)``.

    This ensures that all time periods are represented in the response,
    even if there are no events during those periods.
    """
    buckets: List[str] = []
    current = bucket_start(start_date, bucket_config)
    end_date = ensure_utc(end_date)

    while current < end_date:
        buckets.append(current.strftime(bucket_config.label_format))
        current += bucket_config.interval

    return buckets


def fill_missing_buckets(
    actual_results: List[Dict[str, Any]],
    start_date: datetime,
    end_date: datetime,
    bucket_config: TimeBucketConfig,
    zero_factory: Callable[[str], Dict[str, Any]],
) -> List[Dict[str, Any]]:
    """
    Fill in missing time buckets with zero values.

    ``actual_results`` rows are matched on their ``bucket`` key; rows outside
    the generated range are dropped.
    """
    actual_map = {row.get("bucket", ""): row for row in actual_results or []}

    return [
        actual_map[bucket] if bucket in actual_map else zero_factory(bucket)
        for bucket in generate_complete_time_buckets(
            start_date, end_date, bucket_config
        )
    ]
