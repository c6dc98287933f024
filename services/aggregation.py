"""
Windowed aggregation over the append-only event log.

Every query covers a trailing window ending "now" and is scoped to one
tenant, except the platform views, which read across all tenants when no
tenant is given.
Rollups are derived data: they are recomputed from the log on each read
(behind the Redis dual-cache when one is configured) and never stored.

Reads are best-effort. When the log cannot be read the service logs a
``<query>_read_failed`` warning and returns an empty result flagged
``degraded`` instead of raising.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from typing import Awaitable, Callable, Optional, Sequence, Type, TypeVar

from pydantic import BaseModel
from pymongo.errors import PyMongoError

from errors import StorageUnavailableError, ValidationError
from infrastructure.cache.dual_cache import DualCache
from repositories.protocol import EventRepository, SessionRepository
from schemas.dto.responses.analytics import (
    ActivityPatterns,
    AnalyticsSummary,
    FunnelResult,
    FunnelStage,
    GeoBucket,
    GeoBuckets,
    PlatformInteraction,
    RollupSeries,
    TagDetails,
    TopTags,
    VisitorDetails,
    VisitorRetention,
)
from schemas.models.event import (
    COMMUNITY_ACTIONS,
    INSIGHT_ACTIONS,
    PRAISE_ACTIONS,
    PRAYER_ACTIONS,
    AnalyticsEvent,
    EventAction,
)
from services.aggregation_strategies import AggregationStrategyFactory
from shared.datetime_utils import utc_now
from shared.logging import get_logger, should_sample
from shared.time_bucket_utils import (
    AnalyticsWindow,
    TimeBucketStrategy,
    get_bucket_config,
    window_bounds,
)

log = get_logger(__name__)

ResultT = TypeVar("ResultT", bound=BaseModel)

# Named funnel stages; any EventAction value is also accepted as a stage
STAGE_ACTIONS: dict[str, frozenset] = {
    "scan": frozenset({EventAction.TAG_SCAN}),
    "prayer": PRAYER_ACTIONS,
    "praise": PRAISE_ACTIONS,
    "insight": INSIGHT_ACTIONS,
    "community_action": COMMUNITY_ACTIONS,
    "engagement": frozenset(
        {
            EventAction.HEART,
            EventAction.FAVORITE,
            EventAction.SHARE,
            EventAction.DOWNLOAD,
        }
    ),
}

DEFAULT_FUNNEL = ("scan", "heart", "community_action")

READ_ERRORS = (PyMongoError, StorageUnavailableError)

# Cache-key scope for reads that span every tenant
ALL_TENANTS = "*"

MAX_DRILLDOWN_ROWS = 500


def resolve_stage(stage: str) -> frozenset:
    """Map a funnel stage name to the actions that pass it."""
    key = stage.strip().lower()
    if key in STAGE_ACTIONS:
        return STAGE_ACTIONS[key]
    action = EventAction.parse(key)
    if action is None:
        raise ValidationError(f"Unknown funnel stage: {stage!r}", field="stages")
    return frozenset({action})


def _pct(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


class AnalyticsAggregationService:
    def __init__(
        self,
        events: EventRepository,
        sessions: SessionRepository,
        cache: Optional[DualCache] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._events = events
        self._sessions = sessions
        self._cache = cache
        self._clock = clock

    # ── Rollups ─────────────────────────────────────────────────────────────

    async def rollup(
        self,
        tenant_id: str,
        window: AnalyticsWindow,
        granularity: TimeBucketStrategy = TimeBucketStrategy.DAILY,
    ) -> RollupSeries:
        start, end = window_bounds(window, self._clock())
        return await self._cached(
            ("rollup", tenant_id, window.value, granularity.value),
            RollupSeries,
            lambda: self.rollup_range(
                tenant_id, start, end, granularity, window_label=window.value
            ),
        )

    async def rollup_range(
        self,
        tenant_id: str,
        start: datetime,
        end: datetime,
        granularity: TimeBucketStrategy,
        window_label: str = "custom",
    ) -> RollupSeries:
        """Bucketed totals over ``[start, end)``; not cached."""
        base = dict(
            tenant_id=tenant_id,
            window=window_label,
            start=start,
            end=end,
            granularity=granularity.value,
        )
        events = await self._read("rollup", tenant_id, start, end)
        if events is None:
            return RollupSeries(**base, degraded=True)

        strategy = AggregationStrategyFactory.get(
            "time",
            start_date=start,
            end_date=end,
            bucket_config=get_bucket_config(granularity),
        )
        buckets = strategy.aggregate(events)

        totals: dict[str, int] = defaultdict(int)
        for bucket in buckets:
            totals["total_events"] += bucket["total_events"]
            for action, count in bucket["by_action"].items():
                totals[action] += count

        if should_sample("rollup_query"):
            log.info(
                "rollup_computed",
                tenant_id=tenant_id,
                window=window_label,
                granularity=granularity.value,
                buckets=len(buckets),
                events=len(events),
            )
        return RollupSeries(
            **base,
            buckets=buckets,
            totals=dict(totals),
            bucket_info=strategy.get_bucket_info(),
        )

    # ── Funnel ──────────────────────────────────────────────────────────────

    async def funnel(
        self,
        tenant_id: str,
        window: AnalyticsWindow,
        stages: Optional[Sequence[str]] = None,
    ) -> FunnelResult:
        """Distinct sessions per stage.

        Stages are evaluated independently over the whole window: a session
        passes a stage when it has any event of that stage's actions.
        """
        stage_names = list(stages) if stages else list(DEFAULT_FUNNEL)
        stage_actions = [(name, resolve_stage(name)) for name in stage_names]

        start, end = window_bounds(window, self._clock())
        key = ("funnel", tenant_id, window.value, ",".join(stage_names))

        async def compute() -> FunnelResult:
            base = dict(tenant_id=tenant_id, window=window.value, start=start, end=end)
            events = await self._read("funnel", tenant_id, start, end)
            if events is None:
                return FunnelResult(**base, degraded=True)

            sessions_by_action: dict[EventAction, set] = defaultdict(set)
            for event in events:
                sessions_by_action[event.action].add(event.session_id)

            rows: list[FunnelStage] = []
            first = previous = None
            for name, actions in stage_actions:
                passed: set = set()
                for action in actions:
                    passed |= sessions_by_action.get(action, set())
                count = len(passed)
                rows.append(
                    FunnelStage(
                        stage=name,
                        actions=sorted(a.value for a in actions),
                        sessions=count,
                        conversion_from_previous=(
                            None if previous is None else _pct(count, previous)
                        ),
                        conversion_from_first=(
                            None if first is None else _pct(count, first)
                        ),
                    )
                )
                if first is None:
                    first = count
                previous = count
            return FunnelResult(**base, stages=rows)

        return await self._cached(key, FunnelResult, compute)

    # ── Geography ───────────────────────────────────────────────────────────

    async def geo_buckets(
        self, tenant_id: Optional[str], window: AnalyticsWindow
    ) -> GeoBuckets:
        """Sessions active in the window, grouped by (country, city).

        ``tenant_id=None`` maps every tenant's sessions.

        Sessions without a resolved location are counted but not bucketed.
        """
        start, end = window_bounds(window, self._clock())

        async def compute() -> GeoBuckets:
            base = dict(tenant_id=tenant_id, window=window.value, start=start, end=end)
            events = await self._read("geo", tenant_id, start, end)
            if events is None:
                return GeoBuckets(**base, degraded=True)

            events_per_session: dict[str, int] = defaultdict(int)
            for event in events:
                events_per_session[event.session_id] += 1

            try:
                sessions = await self._sessions.get_many(events_per_session)
            except READ_ERRORS as e:
                self._log_read_failure("geo", tenant_id, e)
                return GeoBuckets(**base, degraded=True)

            groups: dict[tuple, dict] = {}
            located = 0
            for session in sessions:
                location = session.location
                if location is None or not location.is_known:
                    continue
                located += 1
                group = groups.setdefault(
                    (location.country, location.city),
                    {"sessions": 0, "events": 0, "lat": [], "lon": []},
                )
                group["sessions"] += 1
                group["events"] += events_per_session[session.session_id]
                if location.latitude is not None and location.longitude is not None:
                    group["lat"].append(location.latitude)
                    group["lon"].append(location.longitude)

            buckets = [
                GeoBucket(
                    country=country,
                    city=city,
                    sessions=g["sessions"],
                    events=g["events"],
                    latitude=(sum(g["lat"]) / len(g["lat"])) if g["lat"] else None,
                    longitude=(sum(g["lon"]) / len(g["lon"])) if g["lon"] else None,
                )
                for (country, city), g in groups.items()
            ]
            buckets.sort(key=lambda b: (-b.sessions, b.country, b.city or ""))
            return GeoBuckets(
                **base,
                buckets=buckets,
                located_sessions=located,
                unlocated_sessions=len(events_per_session) - located,
            )

        return await self._cached(
            ("geo", tenant_id or ALL_TENANTS, window.value), GeoBuckets, compute
        )

    # ── Leaderboards and patterns ───────────────────────────────────────────

    async def top_tags(
        self, tenant_id: str, window: AnalyticsWindow, limit: int = 10
    ) -> TopTags:
        now = self._clock()
        start, end = window_bounds(window, now)

        async def compute() -> TopTags:
            base = dict(tenant_id=tenant_id, window=window.value, start=start, end=end)
            events = await self._read(
                "top_tags", tenant_id, start, end, actions=[EventAction.TAG_SCAN]
            )
            if events is None:
                return TopTags(**base, degraded=True)
            rows = AggregationStrategyFactory.get("tag", now=now, limit=limit).aggregate(
                events
            )
            return TopTags(**base, tags=rows)

        return await self._cached(
            ("top_tags", tenant_id, window.value, limit), TopTags, compute
        )

    async def patterns(self, tenant_id: str, window: AnalyticsWindow) -> ActivityPatterns:
        """Hour-of-day and day-of-week activity profiles (UTC)."""
        start, end = window_bounds(window, self._clock())

        async def compute() -> ActivityPatterns:
            base = dict(tenant_id=tenant_id, window=window.value, start=start, end=end)
            events = await self._read("patterns", tenant_id, start, end)
            if events is None:
                return ActivityPatterns(**base, degraded=True)
            return ActivityPatterns(
                **base,
                hourly=AggregationStrategyFactory.get("hour_of_day").aggregate(events),
                weekly=AggregationStrategyFactory.get("day_of_week").aggregate(events),
            )

        return await self._cached(
            ("patterns", tenant_id, window.value), ActivityPatterns, compute
        )

    async def summary(
        self, tenant_id: Optional[str], window: AnalyticsWindow
    ) -> AnalyticsSummary:
        start, end = window_bounds(window, self._clock())

        async def compute() -> AnalyticsSummary:
            base = dict(tenant_id=tenant_id, window=window.value, start=start, end=end)
            events = await self._read("summary", tenant_id, start, end)
            if events is None:
                return AnalyticsSummary(**base, degraded=True)

            by_action: dict[str, int] = defaultdict(int)
            session_ids: set = set()
            ips: set = set()
            tags: set = set()
            for event in events:
                by_action[event.action.value] += 1
                session_ids.add(event.session_id)
                if event.ip_address:
                    ips.add(event.ip_address)
                if event.tag_id:
                    tags.add(event.tag_id)

            countries = 0
            degraded = False
            try:
                sessions = await self._sessions.get_many(session_ids)
                countries = len(
                    {
                        s.location.country
                        for s in sessions
                        if s.location is not None and s.location.is_known
                    }
                )
            except READ_ERRORS as e:
                self._log_read_failure("summary", tenant_id, e)
                degraded = True

            return AnalyticsSummary(
                **base,
                degraded=degraded,
                total_events=len(events),
                unique_sessions=len(session_ids),
                unique_ips=len(ips),
                unique_tags=len(tags),
                tag_scans=by_action.get(EventAction.TAG_SCAN.value, 0),
                countries=countries,
                by_action=dict(by_action),
                top_referrers=AggregationStrategyFactory.get(
                    "referrer", limit=5
                ).aggregate(events),
            )

        return await self._cached(
            ("summary", tenant_id or ALL_TENANTS, window.value), AnalyticsSummary, compute
        )

    async def visitor_retention(
        self, tenant_id: str, window: AnalyticsWindow
    ) -> VisitorRetention:
        """Visitor-level metrics, a visitor being one client IP.

        A returning visitor was active on more than one UTC day; a multi-tag
        visitor scanned more than one distinct tag.
        """
        start, end = window_bounds(window, self._clock())

        async def compute() -> VisitorRetention:
            base = dict(tenant_id=tenant_id, window=window.value, start=start, end=end)
            events = await self._read("retention", tenant_id, start, end)
            if events is None:
                return VisitorRetention(**base, degraded=True)

            sessions: dict[str, set] = defaultdict(set)
            days: dict[str, set] = defaultdict(set)
            scanned_tags: dict[str, set] = defaultdict(set)
            all_sessions: set = set()
            for event in events:
                all_sessions.add(event.session_id)
                if not event.ip_address:
                    continue
                visitor = event.ip_address
                sessions[visitor].add(event.session_id)
                days[visitor].add(event.occurred_at.date())
                if event.action == EventAction.TAG_SCAN and event.tag_id:
                    scanned_tags[visitor].add(event.tag_id)

            visitors = len(sessions)
            returning = sum(1 for d in days.values() if len(d) > 1)
            return VisitorRetention(
                **base,
                unique_visitors=visitors,
                total_sessions=len(all_sessions),
                sessions_per_visitor=(
                    round(sum(len(s) for s in sessions.values()) / visitors, 2)
                    if visitors
                    else 0.0
                ),
                multi_tag_visitors=sum(1 for t in scanned_tags.values() if len(t) > 1),
                return_visitors=returning,
                return_rate=_pct(returning, visitors),
            )

        return await self._cached(
            ("retention", tenant_id, window.value), VisitorRetention, compute
        )

    # ── Platform drilldowns ─────────────────────────────────────────────────

    async def tag_details(
        self,
        tag_id: str,
        window: AnalyticsWindow = AnalyticsWindow.LAST_7D,
        limit: int = 100,
    ) -> TagDetails:
        """Every interaction carrying *tag_id*, whichever tenant recorded it."""
        start, end = window_bounds(window, self._clock())
        events = await self._read("tag_details", None, start, end, tag_id=tag_id)
        base = dict(tenant_id=None, window=window.value, start=start, end=end)
        if events is None:
            return TagDetails(**base, tag_id=tag_id, degraded=True)
        return await self._drilldown(
            TagDetails, "tag_details", events, limit, base, tag_id=tag_id
        )

    async def visitor_details(
        self,
        ip_address: str,
        window: AnalyticsWindow = AnalyticsWindow.LAST_30D,
        limit: int = 100,
    ) -> VisitorDetails:
        """Every interaction from one client IP across tenants."""
        start, end = window_bounds(window, self._clock())
        events = await self._read(
            "visitor_details", None, start, end, ip_address=ip_address
        )
        base = dict(tenant_id=None, window=window.value, start=start, end=end)
        if events is None:
            return VisitorDetails(**base, ip_address=ip_address, degraded=True)
        return await self._drilldown(
            VisitorDetails, "visitor_details", events, limit, base, ip_address=ip_address
        )

    async def _drilldown(
        self,
        model: Type[ResultT],
        query: str,
        events: list[AnalyticsEvent],
        limit: int,
        base: dict,
        **fields: str,
    ) -> ResultT:
        # rows are capped; totals still count the whole window
        limit = max(1, min(limit, MAX_DRILLDOWN_ROWS))
        newest = sorted(events, key=lambda e: e.occurred_at, reverse=True)[:limit]
        session_ids = {e.session_id for e in events}

        locations: dict = {}
        degraded = False
        try:
            for session in await self._sessions.get_many({e.session_id for e in newest}):
                if session.location is not None and session.location.is_known:
                    locations[session.session_id] = session.location
        except READ_ERRORS as e:
            self._log_read_failure(query, None, e)
            degraded = True

        rows = []
        for event in newest:
            location = locations.get(event.session_id)
            rows.append(
                PlatformInteraction(
                    occurred_at=event.occurred_at,
                    action=event.action.value,
                    tenant_id=event.tenant_id,
                    session_id=event.session_id,
                    tag_id=event.tag_id,
                    ip_address=event.ip_address,
                    country=location.country if location else None,
                    city=location.city if location else None,
                )
            )
        return model(
            **base,
            **fields,
            degraded=degraded,
            interactions=rows,
            total=len(events),
            tenants=sorted({e.tenant_id for e in events if e.tenant_id}),
            sessions=len(session_ids),
        )

    # ── Internals ───────────────────────────────────────────────────────────

    async def _read(
        self,
        query: str,
        tenant_id: Optional[str],
        start: datetime,
        end: datetime,
        actions: Optional[Sequence[EventAction]] = None,
        **filters: str,
    ) -> Optional[list[AnalyticsEvent]]:
        try:
            return await self._events.find(
                tenant_id=tenant_id, start=start, end=end, actions=actions, **filters
            )
        except READ_ERRORS as e:
            self._log_read_failure(query, tenant_id, e)
            return None

    @staticmethod
    def _log_read_failure(query: str, tenant_id: Optional[str], exc: Exception) -> None:
        log.warning(
            f"{query}_read_failed",
            tenant_id=tenant_id,
            error=str(exc),
            error_type=type(exc).__name__,
        )

    async def _cached(
        self,
        key_parts: tuple,
        model: Type[ResultT],
        compute: Callable[[], Awaitable[ResultT]],
    ) -> ResultT:
        if self._cache is None:
            return await compute()

        async def query_fn() -> ResultT:
            result = await compute()
            if getattr(result, "degraded", False):
                # keep degraded placeholders out of the cache
                raise _DegradedResult(result)
            return result

        try:
            return await self._cache.get_or_set(
                DualCache.build_key(*key_parts),
                query_fn,
                serializer_fn=lambda r: r.model_dump(mode="json"),
                loader_fn=model.model_validate,
            )
        except _DegradedResult as degraded:
            return degraded.result


class _DegradedResult(Exception):
    def __init__(self, result: BaseModel) -> None:
        super().__init__("degraded analytics result")
        self.result = result
