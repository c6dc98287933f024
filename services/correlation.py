"""
Tag-activity correlation: what did a scan lead to?

A downstream event counts toward a scan when it belongs to the same tenant,
carries the scanned tag, and happened within
``[scan.occurred_at, scan.occurred_at + window]``. Both ends are inclusive.

Windows of two scans of the same tag may overlap; an event inside both is
counted for both. No deduplication is done.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional

from repositories.protocol import EventRepository, SessionRepository
from schemas.dto.responses.analytics import (
    CorrelatedActivity,
    JourneyStep,
    SessionJourney,
    TagActivityPage,
    TagActivityStats,
)
from schemas.models.event import (
    COMMUNITY_ACTIONS,
    CORRELATED_ACTIONS,
    INSIGHT_ACTIONS,
    PRAISE_ACTIONS,
    PRAYER_ACTIONS,
    AnalyticsEvent,
    EventAction,
)
from services.aggregation import READ_ERRORS
from shared.datetime_utils import utc_now
from shared.logging import get_logger
from shared.time_bucket_utils import AnalyticsWindow, window_bounds

log = get_logger(__name__)


def count_activity(
    scan: AnalyticsEvent, candidates: list[AnalyticsEvent], window: timedelta
) -> CorrelatedActivity:
    """Correlate *scan* against already-fetched *candidates*."""
    window_end = scan.occurred_at + window
    activity = CorrelatedActivity(
        scan_id=str(scan.id) if scan.id is not None else None,
        tenant_id=scan.tenant_id,
        tag_id=scan.tag_id,
        session_id=scan.session_id,
        scanned_at=scan.occurred_at,
        window_end=window_end,
    )
    for event in candidates:
        if event.tenant_id != scan.tenant_id or event.tag_id != scan.tag_id:
            continue
        if not (scan.occurred_at <= event.occurred_at <= window_end):
            continue
        if event.action in PRAYER_ACTIONS:
            activity.prayer_count += 1
        elif event.action in PRAISE_ACTIONS:
            activity.praise_count += 1
        elif event.action in INSIGHT_ACTIONS:
            activity.insight_count += 1
    return activity


class TagActivityCorrelator:
    def __init__(
        self,
        events: EventRepository,
        sessions: Optional[SessionRepository] = None,
        *,
        window: timedelta = timedelta(minutes=30),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._events = events
        self._sessions = sessions
        self.window = window
        self._clock = clock

    async def correlate(self, scan: AnalyticsEvent) -> CorrelatedActivity:
        if scan.action != EventAction.TAG_SCAN or not scan.tag_id or not scan.tenant_id:
            raise ValueError("correlate() expects an attributed tag_scan event")

        try:
            candidates = await self._events.find(
                tenant_id=scan.tenant_id,
                start=scan.occurred_at,
                end=scan.occurred_at + self.window,
                actions=CORRELATED_ACTIONS,
                tag_id=scan.tag_id,
                inclusive_end=True,
            )
        except READ_ERRORS as e:
            log.warning(
                "correlation_read_failed",
                tenant_id=scan.tenant_id,
                tag_id=scan.tag_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            candidates = []
        return count_activity(scan, candidates, self.window)

    async def tag_activity(
        self,
        tenant_id: str,
        window: AnalyticsWindow,
        tag_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> TagActivityPage:
        """Scans in the window, newest first, each with its follow-up counts."""
        start, end = window_bounds(window, self._clock())
        base = dict(
            tenant_id=tenant_id,
            window=window.value,
            start=start,
            end=end,
            tag_id=tag_id,
            limit=limit,
            offset=offset,
        )
        loaded = await self._load(tenant_id, start, end, tag_id)
        if loaded is None:
            return TagActivityPage(**base, degraded=True)
        scans, candidates = loaded

        scans.sort(key=lambda e: e.occurred_at, reverse=True)
        page = scans[offset : offset + limit]
        by_tag = _group_by_tag(candidates)
        activities = [
            count_activity(scan, by_tag.get(scan.tag_id, []), self.window)
            for scan in page
        ]
        return TagActivityPage(
            **base,
            activities=activities,
            total=len(scans),
            has_more=offset + len(page) < len(scans),
        )

    async def tag_activity_stats(
        self, tenant_id: str, window: AnalyticsWindow
    ) -> TagActivityStats:
        """Scan totals plus the share of scanning sessions that engaged.

        A scanning session is engaged when at least one of its scans was
        followed by a community submission from the same session within
        the correlation window.
        """
        start, end = window_bounds(window, self._clock())
        base = dict(tenant_id=tenant_id, window=window.value, start=start, end=end)
        loaded = await self._load(tenant_id, start, end, None)
        if loaded is None:
            return TagActivityStats(**base, degraded=True)
        scans, candidates = loaded

        community = [e for e in candidates if e.action in COMMUNITY_ACTIONS]
        engaged_scans = 0
        engaged_sessions: set = set()
        for scan in scans:
            window_end = scan.occurred_at + self.window
            if any(
                e.session_id == scan.session_id
                and e.tag_id == scan.tag_id
                and scan.occurred_at <= e.occurred_at <= window_end
                for e in community
            ):
                engaged_scans += 1
                engaged_sessions.add(scan.session_id)

        scanning_sessions = {s.session_id for s in scans}
        return TagActivityStats(
            **base,
            total_scans=len(scans),
            unique_tags=len({s.tag_id for s in scans}),
            unique_sessions=len(scanning_sessions),
            engaged_scans=engaged_scans,
            engagement_rate=(
                round(len(engaged_sessions) / len(scanning_sessions) * 100, 2)
                if scanning_sessions
                else 0.0
            ),
        )

    async def session_journey(
        self, tenant_id: str, session_id: str
    ) -> Optional[SessionJourney]:
        """Chronological events of one session, limited to *tenant_id*.

        Returns None when the session is unknown or has nothing under the
        tenant.
        """
        try:
            session = (
                await self._sessions.get(session_id) if self._sessions else None
            )
            events = await self._events.find_by_session(session_id)
        except READ_ERRORS as e:
            log.warning(
                "session_journey_read_failed",
                session_id=session_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return SessionJourney(
                session_id=session_id, tenant_id=tenant_id, degraded=True
            )

        steps = [
            JourneyStep(
                occurred_at=e.occurred_at,
                action=e.action.value,
                tag_id=e.tag_id,
                subject_id=e.subject_id,
                page_url=e.page_url,
            )
            for e in events
            if e.tenant_id == tenant_id
        ]
        if session is None and not steps:
            return None
        if session is not None and not steps and session.tenant_id != tenant_id:
            return None

        journey = SessionJourney(session_id=session_id, tenant_id=tenant_id, steps=steps)
        if session is not None:
            journey.first_seen_at = session.first_seen_at
            journey.last_seen_at = session.last_seen_at
            journey.total_interactions = session.total_interactions
            journey.is_active = session.is_active
            journey.originating_tag_id = session.originating_tag_id
            if session.location is not None:
                journey.country = session.location.country
                journey.city = session.location.city
        return journey

    # ── Internals ───────────────────────────────────────────────────────────

    async def _load(
        self,
        tenant_id: str,
        start: datetime,
        end: datetime,
        tag_id: Optional[str],
    ) -> Optional[tuple[list[AnalyticsEvent], list[AnalyticsEvent]]]:
        """Scans in ``[start, end)`` and candidate follow-ups up to the last
        scan's window end."""
        try:
            scans = await self._events.find(
                tenant_id=tenant_id,
                start=start,
                end=end,
                actions=[EventAction.TAG_SCAN],
                tag_id=tag_id,
            )
            scans = [s for s in scans if s.tag_id]
            if not scans:
                return [], []
            candidates = await self._events.find(
                tenant_id=tenant_id,
                start=start,
                end=max(s.occurred_at for s in scans) + self.window,
                actions=CORRELATED_ACTIONS,
                tag_id=tag_id,
                inclusive_end=True,
            )
        except READ_ERRORS as e:
            log.warning(
                "tag_activity_read_failed",
                tenant_id=tenant_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None
        return scans, candidates


def _group_by_tag(events: list[AnalyticsEvent]) -> dict[str, list[AnalyticsEvent]]:
    grouped: dict[str, list[AnalyticsEvent]] = {}
    for event in events:
        if event.tag_id:
            grouped.setdefault(event.tag_id, []).append(event)
    return grouped
