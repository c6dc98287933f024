"""
Aggregation strategies over the event log.

Each strategy folds a list of AnalyticsEvent (already scoped to one tenant
and one time range) into plain result rows. Distinct counts are taken over
sets, so a duplicated delivery inflates raw counts but never
``unique_sessions`` / ``unique_ips``.
"""

from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from schemas.models.event import AnalyticsEvent, EventAction
from shared.time_bucket_utils import (
    TimeBucketConfig,
    bucket_label,
    bucket_start,
    fill_missing_buckets,
)

DAY_NAMES = [
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
    "Sunday",
]


class _Tally:
    """Running counts for one group of events."""

    __slots__ = ("events", "by_action", "sessions", "ips")

    def __init__(self) -> None:
        self.events = 0
        self.by_action: Dict[str, int] = defaultdict(int)
        self.sessions: set = set()
        self.ips: set = set()

    def add(self, event: AnalyticsEvent) -> None:
        self.events += 1
        self.by_action[event.action.value] += 1
        self.sessions.add(event.session_id)
        if event.ip_address:
            self.ips.add(event.ip_address)


class AggregationStrategy(ABC):
    """Abstract base class for aggregation strategies"""

    @abstractmethod
    def aggregate(self, events: Iterable[AnalyticsEvent]) -> List[Dict[str, Any]]:
        """Fold *events* into result rows"""
        pass

    @property
    @abstractmethod
    def dimension_name(self) -> str:
        """Get the dimension name for this strategy"""
        pass


class TimeAggregationStrategy(AggregationStrategy):
    """Per-bucket totals over ``[start_date, end_date)`` with zero-filling."""

    def __init__(
        self,
        start_date: datetime,
        end_date: datetime,
        bucket_config: TimeBucketConfig,
    ):
        self.start_date = start_date
        self.end_date = end_date
        self.bucket_config = bucket_config

    def aggregate(self, events: Iterable[AnalyticsEvent]) -> List[Dict[str, Any]]:
        tallies: Dict[str, _Tally] = defaultdict(_Tally)
        for event in events:
            if not (self.start_date <= event.occurred_at < self.end_date):
                continue
            tallies[bucket_label(event.occurred_at, self.bucket_config)].add(event)

        actual = [
            {
                "bucket": label,
                "total_events": tally.events,
                "by_action": dict(tally.by_action),
                "unique_sessions": len(tally.sessions),
                "unique_ips": len(tally.ips),
            }
            for label, tally in tallies.items()
        ]
        return fill_missing_buckets(
            actual,
            self.start_date,
            self.end_date,
            self.bucket_config,
            zero_factory=lambda label: {
                "bucket": label,
                "total_events": 0,
                "by_action": {},
                "unique_sessions": 0,
                "unique_ips": 0,
            },
        )

    @property
    def dimension_name(self) -> str:
        return "time"

    def get_bucket_info(self) -> Dict[str, Any]:
        return {
            "strategy": self.bucket_config.strategy.value,
            "label_format": self.bucket_config.label_format,
            "first_bucket_start": bucket_start(
                self.start_date, self.bucket_config
            ).isoformat(),
            "timezone": "UTC",
        }


class HourOfDayAggregationStrategy(AggregationStrategy):
    """Activity by UTC hour of day (0-23), all hours present."""

    def aggregate(self, events: Iterable[AnalyticsEvent]) -> List[Dict[str, Any]]:
        tallies = [_Tally() for _ in range(24)]
        for event in events:
            tallies[event.occurred_at.hour].add(event)
        return [
            {
                "hour": hour,
                "events": tally.events,
                "unique_sessions": len(tally.sessions),
            }
            for hour, tally in enumerate(tallies)
        ]

    @property
    def dimension_name(self) -> str:
        return "hour_of_day"


class DayOfWeekAggregationStrategy(AggregationStrategy):
    """Activity by weekday, Monday first, all seven days present."""

    def aggregate(self, events: Iterable[AnalyticsEvent]) -> List[Dict[str, Any]]:
        tallies = [_Tally() for _ in range(7)]
        for event in events:
            tallies[event.occurred_at.weekday()].add(event)
        return [
            {
                "day": day,
                "day_name": DAY_NAMES[day],
                "events": tally.events,
                "unique_sessions": len(tally.sessions),
            }
            for day, tally in enumerate(tallies)
        ]

    @property
    def dimension_name(self) -> str:
        return "day_of_week"


class TagAggregationStrategy(AggregationStrategy):
    """Tag-scan leaderboard, busiest tag first."""

    def __init__(self, now: datetime, limit: int = 10):
        self.now = now
        self.limit = limit

    def aggregate(self, events: Iterable[AnalyticsEvent]) -> List[Dict[str, Any]]:
        tallies: Dict[str, _Tally] = defaultdict(_Tally)
        last_scan: Dict[str, datetime] = {}
        recent: Dict[str, int] = defaultdict(int)
        day_ago = self.now - timedelta(hours=24)

        for event in events:
            if event.action != EventAction.TAG_SCAN or not event.tag_id:
                continue
            tag_id = event.tag_id
            tallies[tag_id].add(event)
            if tag_id not in last_scan or event.occurred_at > last_scan[tag_id]:
                last_scan[tag_id] = event.occurred_at
            if event.occurred_at >= day_ago:
                recent[tag_id] += 1

        rows = [
            {
                "tag_id": tag_id,
                "scans": tally.events,
                "unique_sessions": len(tally.sessions),
                "unique_ips": len(tally.ips),
                "scans_24h": recent[tag_id],
                "last_scan": last_scan[tag_id],
            }
            for tag_id, tally in tallies.items()
        ]
        rows.sort(key=lambda r: (-r["scans"], r["tag_id"]))
        return rows[: self.limit]

    @property
    def dimension_name(self) -> str:
        return "tag"


class ReferrerAggregationStrategy(AggregationStrategy):
    """Events per sanitised referrer domain."""

    def __init__(self, limit: Optional[int] = 10):
        self.limit = limit

    def aggregate(self, events: Iterable[AnalyticsEvent]) -> List[Dict[str, Any]]:
        tallies: Dict[str, _Tally] = defaultdict(_Tally)
        for event in events:
            tallies[event.referrer or "direct"].add(event)
        rows = [
            {
                "referrer": referrer,
                "events": tally.events,
                "unique_sessions": len(tally.sessions),
            }
            for referrer, tally in tallies.items()
        ]
        rows.sort(key=lambda r: (-r["events"], r["referrer"]))
        return rows[: self.limit] if self.limit else rows

    @property
    def dimension_name(self) -> str:
        return "referrer"


class AggregationStrategyFactory:
    """Factory for creating aggregation strategies"""

    _strategies = {
        "time": TimeAggregationStrategy,
        "hour_of_day": HourOfDayAggregationStrategy,
        "day_of_week": DayOfWeekAggregationStrategy,
        "tag": TagAggregationStrategy,
        "referrer": ReferrerAggregationStrategy,
    }

    @classmethod
    def get(cls, strategy_name: str, **kwargs) -> AggregationStrategy:
        strategy_class = cls._strategies.get(strategy_name)
        if not strategy_class:
            raise ValueError(f"Unknown aggregation strategy: {strategy_name}")
        return strategy_class(**kwargs)

    @classmethod
    def get_available_strategies(cls) -> List[str]:
        return list(cls._strategies.keys())
