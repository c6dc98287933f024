"""
Dashboard read endpoints under /analytics.

Every endpoint takes ``tenant`` (tenant id or subdomain) and, where it
applies, ``window`` (24h | 7d | 30d | 90d, default 7d). An unknown tenant is
a 404; a storage problem is not an error here and shows up as
``degraded: true`` on an empty result.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from dependencies import get_aggregation_service, get_correlator, get_tenant_directory
from errors import NotFoundError, TenantUnresolvedError, ValidationError
from schemas.dto.requests.analytics import (
    GRANULARITIES,
    MAX_FUNNEL_STAGES,
    parse_comma_separated,
)
from schemas.dto.responses.analytics import (
    ActivityPatterns,
    AnalyticsSummary,
    FunnelResult,
    GeoBuckets,
    RollupSeries,
    SessionJourney,
    TagActivityPage,
    TagActivityStats,
    TopTags,
    VisitorRetention,
)
from schemas.dto.responses.common import ErrorResponse
from services.aggregation import AnalyticsAggregationService
from services.correlation import TagActivityCorrelator
from services.tenant_directory import TenantDirectory
from shared.time_bucket_utils import AnalyticsWindow

router = APIRouter(
    prefix="/analytics",
    tags=["analytics"],
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
    },
)

WINDOW_QUERY = Query(default=AnalyticsWindow.LAST_7D)


async def resolve_tenant_param(
    tenant: str = Query(..., min_length=1, max_length=128),
    directory: TenantDirectory = Depends(get_tenant_directory),
) -> str:
    resolved = await directory.resolve_tenant(query_hint=tenant)
    if resolved is None:
        raise TenantUnresolvedError(f"Unknown tenant: {tenant}", field="tenant")
    return resolved.tenant_id


@router.get("/rollup", response_model=RollupSeries)
async def rollup(
    tenant_id: str = Depends(resolve_tenant_param),
    window: AnalyticsWindow = WINDOW_QUERY,
    granularity: str = Query(default="day"),
    service: AnalyticsAggregationService = Depends(get_aggregation_service),
) -> RollupSeries:
    strategy = GRANULARITIES.get(granularity.lower())
    if strategy is None:
        raise ValidationError(
            f"granularity must be one of {sorted(GRANULARITIES)}",
            field="granularity",
        )
    return await service.rollup(tenant_id, window, strategy)


@router.get("/funnel", response_model=FunnelResult)
async def funnel(
    tenant_id: str = Depends(resolve_tenant_param),
    window: AnalyticsWindow = WINDOW_QUERY,
    stages: Optional[str] = Query(default=None),
    service: AnalyticsAggregationService = Depends(get_aggregation_service),
) -> FunnelResult:
    stage_list = parse_comma_separated(stages)
    if len(stage_list) > MAX_FUNNEL_STAGES:
        raise ValidationError(
            f"At most {MAX_FUNNEL_STAGES} stages are allowed", field="stages"
        )
    return await service.funnel(tenant_id, window, stage_list or None)


@router.get("/tag-activity", response_model=TagActivityPage)
async def tag_activity(
    tenant_id: str = Depends(resolve_tenant_param),
    window: AnalyticsWindow = WINDOW_QUERY,
    tag_id: Optional[str] = Query(default=None, alias="tagId", max_length=128),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    correlator: TagActivityCorrelator = Depends(get_correlator),
) -> TagActivityPage:
    return await correlator.tag_activity(
        tenant_id, window, tag_id=tag_id, limit=limit, offset=offset
    )


@router.get("/tag-activity/stats", response_model=TagActivityStats)
async def tag_activity_stats(
    tenant_id: str = Depends(resolve_tenant_param),
    window: AnalyticsWindow = WINDOW_QUERY,
    correlator: TagActivityCorrelator = Depends(get_correlator),
) -> TagActivityStats:
    return await correlator.tag_activity_stats(tenant_id, window)


@router.get("/geo", response_model=GeoBuckets)
async def geo(
    tenant_id: str = Depends(resolve_tenant_param),
    window: AnalyticsWindow = WINDOW_QUERY,
    service: AnalyticsAggregationService = Depends(get_aggregation_service),
) -> GeoBuckets:
    return await service.geo_buckets(tenant_id, window)


@router.get("/top-tags", response_model=TopTags)
async def top_tags(
    tenant_id: str = Depends(resolve_tenant_param),
    window: AnalyticsWindow = WINDOW_QUERY,
    limit: int = Query(default=10, ge=1, le=100),
    service: AnalyticsAggregationService = Depends(get_aggregation_service),
) -> TopTags:
    return await service.top_tags(tenant_id, window, limit=limit)


@router.get("/patterns", response_model=ActivityPatterns)
async def patterns(
    tenant_id: str = Depends(resolve_tenant_param),
    window: AnalyticsWindow = WINDOW_QUERY,
    service: AnalyticsAggregationService = Depends(get_aggregation_service),
) -> ActivityPatterns:
    return await service.patterns(tenant_id, window)


@router.get("/summary", response_model=AnalyticsSummary)
async def summary(
    tenant_id: str = Depends(resolve_tenant_param),
    window: AnalyticsWindow = WINDOW_QUERY,
    service: AnalyticsAggregationService = Depends(get_aggregation_service),
) -> AnalyticsSummary:
    return await service.summary(tenant_id, window)


@router.get("/retention", response_model=VisitorRetention)
async def retention(
    tenant_id: str = Depends(resolve_tenant_param),
    window: AnalyticsWindow = WINDOW_QUERY,
    service: AnalyticsAggregationService = Depends(get_aggregation_service),
) -> VisitorRetention:
    return await service.visitor_retention(tenant_id, window)


@router.get("/sessions/{session_id}", response_model=SessionJourney)
async def session_journey(
    session_id: str,
    tenant_id: str = Depends(resolve_tenant_param),
    correlator: TagActivityCorrelator = Depends(get_correlator),
) -> SessionJourney:
    journey = await correlator.session_journey(tenant_id, session_id)
    if journey is None:
        raise NotFoundError("Session not found", field="session_id")
    return journey
