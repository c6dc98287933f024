"""
Operator views under /analytics/platform.

GET /analytics/platform/geo              — session map, all tenants or one
GET /analytics/platform/summary          — headline counts, all tenants or one
GET /analytics/platform/tags/{tag_id}    — one tag's interactions across tenants
GET /analytics/platform/visitors/{ip}    — one client IP's interactions

``tenant`` is optional here; without it the result spans every tenant and
carries ``tenant_id: null``.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from dependencies import get_aggregation_service, get_tenant_directory
from errors import TenantUnresolvedError, ValidationError
from schemas.dto.responses.analytics import (
    AnalyticsSummary,
    GeoBuckets,
    TagDetails,
    VisitorDetails,
)
from schemas.dto.responses.common import ErrorResponse
from services.aggregation import MAX_DRILLDOWN_ROWS, AnalyticsAggregationService
from services.tenant_directory import TenantDirectory
from shared.time_bucket_utils import AnalyticsWindow
from shared.validators import is_valid_identifier, is_valid_ip

router = APIRouter(
    prefix="/analytics/platform",
    tags=["platform"],
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
    },
)

LIMIT_QUERY = Query(default=100, ge=1, le=MAX_DRILLDOWN_ROWS)


async def optional_tenant_param(
    tenant: Optional[str] = Query(default=None, min_length=1, max_length=128),
    directory: TenantDirectory = Depends(get_tenant_directory),
) -> Optional[str]:
    if tenant is None:
        return None
    resolved = await directory.resolve_tenant(query_hint=tenant)
    if resolved is None:
        raise TenantUnresolvedError(f"Unknown tenant: {tenant}", field="tenant")
    return resolved.tenant_id


@router.get("/geo", response_model=GeoBuckets)
async def platform_geo(
    tenant_id: Optional[str] = Depends(optional_tenant_param),
    window: AnalyticsWindow = Query(default=AnalyticsWindow.LAST_30D),
    service: AnalyticsAggregationService = Depends(get_aggregation_service),
) -> GeoBuckets:
    return await service.geo_buckets(tenant_id, window)


@router.get("/summary", response_model=AnalyticsSummary)
async def platform_summary(
    tenant_id: Optional[str] = Depends(optional_tenant_param),
    window: AnalyticsWindow = Query(default=AnalyticsWindow.LAST_30D),
    service: AnalyticsAggregationService = Depends(get_aggregation_service),
) -> AnalyticsSummary:
    return await service.summary(tenant_id, window)


@router.get("/tags/{tag_id}", response_model=TagDetails)
async def tag_details(
    tag_id: str,
    window: AnalyticsWindow = Query(default=AnalyticsWindow.LAST_7D),
    limit: int = LIMIT_QUERY,
    service: AnalyticsAggregationService = Depends(get_aggregation_service),
) -> TagDetails:
    if not is_valid_identifier(tag_id):
        raise ValidationError("Invalid tag id", field="tag_id")
    return await service.tag_details(tag_id, window, limit=limit)


@router.get("/visitors/{ip}", response_model=VisitorDetails)
async def visitor_details(
    ip: str,
    window: AnalyticsWindow = Query(default=AnalyticsWindow.LAST_30D),
    limit: int = LIMIT_QUERY,
    service: AnalyticsAggregationService = Depends(get_aggregation_service),
) -> VisitorDetails:
    if not is_valid_ip(ip):
        raise ValidationError("Invalid IP address", field="ip")
    return await service.visitor_details(ip, window, limit=limit)
