"""
Response DTOs for the dashboard endpoints.

RollupSeries          — GET /analytics/rollup
FunnelResult          — GET /analytics/funnel
GeoBuckets            — GET /analytics/geo
TopTags               — GET /analytics/top-tags
ActivityPatterns      — GET /analytics/patterns
AnalyticsSummary      — GET /analytics/summary
VisitorRetention      — GET /analytics/retention
TagActivityPage       — GET /analytics/tag-activity
TagActivityStats      — GET /analytics/tag-activity/stats
SessionJourney        — GET /analytics/sessions/{session_id}
TagDetails            — GET /analytics/platform/tags/{tag_id}
VisitorDetails        — GET /analytics/platform/visitors/{ip}

The platform views reuse GeoBuckets and AnalyticsSummary with
``tenant_id=None`` when they span every tenant.

Every result carries ``degraded``: True when the event log could not be read
and the payload is an empty stand-in rather than real data.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class _AnalyticsResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tenant_id: Optional[str]  # None on platform-wide results
    window: str
    start: datetime
    end: datetime
    degraded: bool = False


class RollupBucket(BaseModel):
    bucket: str
    total_events: int = 0
    by_action: dict[str, int] = Field(default_factory=dict)
    unique_sessions: int = 0
    unique_ips: int = 0


class RollupSeries(_AnalyticsResult):
    granularity: str
    buckets: list[RollupBucket] = Field(default_factory=list)
    totals: dict[str, int] = Field(default_factory=dict)
    bucket_info: Optional[dict[str, Any]] = None


class FunnelStage(BaseModel):
    stage: str
    actions: list[str]
    sessions: int
    conversion_from_previous: Optional[float] = None  # percent
    conversion_from_first: Optional[float] = None  # percent


class FunnelResult(_AnalyticsResult):
    stages: list[FunnelStage] = Field(default_factory=list)


class GeoBucket(BaseModel):
    country: str
    city: Optional[str] = None
    sessions: int
    events: int
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class GeoBuckets(_AnalyticsResult):
    buckets: list[GeoBucket] = Field(default_factory=list)
    located_sessions: int = 0
    unlocated_sessions: int = 0


class TopTag(BaseModel):
    tag_id: str
    scans: int
    unique_sessions: int
    unique_ips: int
    scans_24h: int
    last_scan: Optional[datetime] = None


class TopTags(_AnalyticsResult):
    tags: list[TopTag] = Field(default_factory=list)


class HourPattern(BaseModel):
    hour: int
    events: int
    unique_sessions: int


class DayPattern(BaseModel):
    day: int
    day_name: str
    events: int
    unique_sessions: int


class ActivityPatterns(_AnalyticsResult):
    hourly: list[HourPattern] = Field(default_factory=list)
    weekly: list[DayPattern] = Field(default_factory=list)


class ReferrerCount(BaseModel):
    referrer: str
    events: int
    unique_sessions: int


class AnalyticsSummary(_AnalyticsResult):
    total_events: int = 0
    unique_sessions: int = 0
    unique_ips: int = 0
    unique_tags: int = 0
    tag_scans: int = 0
    countries: int = 0
    by_action: dict[str, int] = Field(default_factory=dict)
    top_referrers: list[ReferrerCount] = Field(default_factory=list)


class VisitorRetention(_AnalyticsResult):
    unique_visitors: int = 0
    total_sessions: int = 0
    sessions_per_visitor: float = 0.0
    multi_tag_visitors: int = 0
    return_visitors: int = 0
    return_rate: float = 0.0  # percent


class CorrelatedActivity(BaseModel):
    """Downstream community activity attributed to one tag scan."""

    scan_id: Optional[str] = None
    tenant_id: str
    tag_id: str
    session_id: str
    scanned_at: datetime
    window_end: datetime
    prayer_count: int = 0
    praise_count: int = 0
    insight_count: int = 0

    @property
    def total(self) -> int:
        return self.prayer_count + self.praise_count + self.insight_count


class TagActivityPage(_AnalyticsResult):
    tag_id: Optional[str] = None
    activities: list[CorrelatedActivity] = Field(default_factory=list)
    total: int = 0
    limit: int
    offset: int
    has_more: bool = False


class TagActivityStats(_AnalyticsResult):
    total_scans: int = 0
    unique_tags: int = 0
    unique_sessions: int = 0
    engaged_scans: int = 0
    engagement_rate: float = 0.0  # percent of scanning sessions with follow-up


class JourneyStep(BaseModel):
    occurred_at: datetime
    action: str
    tag_id: Optional[str] = None
    subject_id: Optional[str] = None
    page_url: Optional[str] = None


class SessionJourney(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str
    tenant_id: str
    first_seen_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None
    total_interactions: int = 0
    is_active: bool = False
    originating_tag_id: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None
    steps: list[JourneyStep] = Field(default_factory=list)
    degraded: bool = False


class PlatformInteraction(BaseModel):
    """One event in a cross-tenant drilldown, joined to its session's location."""

    occurred_at: datetime
    action: str
    tenant_id: Optional[str] = None
    session_id: str
    tag_id: Optional[str] = None
    ip_address: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None


class _Drilldown(_AnalyticsResult):
    interactions: list[PlatformInteraction] = Field(default_factory=list)  # newest first
    total: int = 0
    tenants: list[str] = Field(default_factory=list)
    sessions: int = 0


class TagDetails(_Drilldown):
    tag_id: str


class VisitorDetails(_Drilldown):
    ip_address: str
