"""
Ingestion and session endpoints.

POST /events               — record one action (202)
POST /events/batch         — replay a queued batch (service-worker sync)
POST /tags/{tag_id}/scan   — physical tap: bind the tag, record the scan
GET  /session/status       — current session and live attribution
POST /session/extend       — slide the attribution TTL
POST /session/end          — advisory "tab closed" signal

Session transport: the ``tracking_session`` cookie carries the session token
and ``originating_tag`` mirrors the live binding. Both use a sliding max-age
equal to the attribution TTL and are re-issued on every call. A token sent in
the request body wins over the cookie.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response

from config import AppSettings
from dependencies import (
    get_attribution_resolver,
    get_ingestion_pipeline,
    get_session_store,
    get_settings,
    get_tenant_directory,
)
from schemas.dto.requests.events import (
    BatchIngestRequest,
    IngestEventRequest,
    TagScanRequest,
)
from schemas.dto.responses.common import ErrorResponse
from schemas.dto.responses.events import (
    AttributionInfo,
    BatchIngestResponse,
    IngestEventResponse,
    SessionEndResponse,
    SessionExtendResponse,
    SessionStatus,
    TagScanResponse,
)
from schemas.models.session import AnonymousSession, TagAttribution
from services.attribution import TagAttributionResolver
from services.ingestion import EventIngestionPipeline, RawEvent
from services.session_store import SessionStore
from services.tenant_directory import TenantDirectory
from shared.ip_utils import get_client_ip

router = APIRouter(
    tags=["events"],
    responses={
        400: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)

SESSION_COOKIE = "tracking_session"
TAG_COOKIE = "originating_tag"
TENANT_HINT_HEADER = "X-Org-Subdomain"


# ── Cookie helpers ──────────────────────────────────────────────────────────


def _set_session_cookies(
    response: Response,
    settings: AppSettings,
    session: AnonymousSession,
    attribution: Optional[TagAttribution],
) -> None:
    max_age = settings.attribution.attribution_ttl_seconds
    options = dict(
        max_age=max_age,
        httponly=True,
        secure=settings.attribution.cookie_secure,
        samesite="lax",
    )
    response.set_cookie(SESSION_COOKIE, session.session_id, **options)
    if attribution is not None:
        response.set_cookie(TAG_COOKIE, attribution.tag_id, **options)
    else:
        response.delete_cookie(TAG_COOKIE)


def _clear_session_cookies(response: Response) -> None:
    response.delete_cookie(SESSION_COOKIE)
    response.delete_cookie(TAG_COOKIE)


def _request_host(request: Request) -> Optional[str]:
    return request.headers.get("x-forwarded-host") or request.headers.get("host")


def _attribution_info(
    attribution: Optional[TagAttribution], ttl: timedelta
) -> Optional[AttributionInfo]:
    if attribution is None:
        return None
    return AttributionInfo(
        tag_id=attribution.tag_id,
        tenant_id=attribution.tenant_id,
        bound_at=attribution.bound_at,
        refreshed_at=attribution.refreshed_at,
        expires_at=attribution.refreshed_at + ttl,
        sequence=attribution.sequence,
    )


# ── Ingestion ───────────────────────────────────────────────────────────────


@router.post("/events", status_code=202, response_model=IngestEventResponse)
async def ingest_event(
    body: IngestEventRequest,
    request: Request,
    response: Response,
    pipeline: EventIngestionPipeline = Depends(get_ingestion_pipeline),
    settings: AppSettings = Depends(get_settings),
) -> IngestEventResponse:
    raw = RawEvent.from_request(
        body,
        host=_request_host(request),
        ip=get_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        session_token=request.cookies.get(SESSION_COOKIE),
    )
    if raw.tenant_hint is None:
        raw.tenant_hint = request.headers.get(TENANT_HINT_HEADER)

    outcome = await pipeline.ingest(raw)
    _set_session_cookies(response, settings, outcome.session, outcome.attribution)
    return IngestEventResponse(
        status=outcome.status.value, session_token=outcome.session.session_id
    )


@router.post("/events/batch", response_model=BatchIngestResponse)
async def ingest_batch(
    body: BatchIngestRequest,
    request: Request,
    response: Response,
    pipeline: EventIngestionPipeline = Depends(get_ingestion_pipeline),
    resolver: TagAttributionResolver = Depends(get_attribution_resolver),
    settings: AppSettings = Depends(get_settings),
) -> BatchIngestResponse:
    result = await pipeline.ingest_batch(
        body.events,
        host=_request_host(request),
        ip=get_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        session_token=body.session_token or request.cookies.get(SESSION_COOKIE),
    )
    if result.session is not None:
        _set_session_cookies(
            response,
            settings,
            result.session,
            resolver.current_attribution(result.session),
        )
    return BatchIngestResponse(
        processed=result.processed,
        dropped=result.dropped,
        failed=result.failed,
        errors=result.errors,
        session_token=result.session.session_id if result.session else None,
    )


@router.post("/tags/{tag_id}/scan", response_model=TagScanResponse)
async def scan_tag(
    tag_id: str,
    request: Request,
    response: Response,
    body: Optional[TagScanRequest] = None,
    pipeline: EventIngestionPipeline = Depends(get_ingestion_pipeline),
    directory: TenantDirectory = Depends(get_tenant_directory),
    resolver: TagAttributionResolver = Depends(get_attribution_resolver),
    settings: AppSettings = Depends(get_settings),
) -> TagScanResponse:
    body = body or TagScanRequest()
    outcome = await pipeline.record_tag_scan(
        tag_id,
        session_token=body.session_token or request.cookies.get(SESSION_COOKIE),
        ip=get_client_ip(request),
        user_agent=body.client_meta.user_agent or request.headers.get("user-agent"),
        page_url=body.client_meta.page_url,
        referrer=body.client_meta.referrer or request.headers.get("referer"),
    )

    subdomain = None
    if outcome.claimed:
        tenant = await directory.get(outcome.attribution.tenant_id)
        subdomain = tenant.subdomain if tenant else None

    _set_session_cookies(
        response,
        settings,
        outcome.session,
        outcome.attribution or resolver.current_attribution(outcome.session),
    )
    return TagScanResponse(
        tag_id=tag_id,
        status="claimed" if outcome.claimed else "unclaimed",
        tenant_id=outcome.attribution.tenant_id if outcome.claimed else None,
        subdomain=subdomain,
        session_token=outcome.session.session_id,
    )


# ── Session lifecycle ───────────────────────────────────────────────────────


@router.get("/session/status", response_model=SessionStatus)
async def session_status(
    request: Request,
    response: Response,
    store: SessionStore = Depends(get_session_store),
    resolver: TagAttributionResolver = Depends(get_attribution_resolver),
    settings: AppSettings = Depends(get_settings),
) -> SessionStatus:
    token = request.cookies.get(SESSION_COOKIE)
    session = await store.get(token) if token else None
    if session is None or not session.is_active:
        _clear_session_cookies(response)
        return SessionStatus(active=False)

    attribution = resolver.current_attribution(session)
    _set_session_cookies(response, settings, session, attribution)
    return SessionStatus(
        active=True,
        session_token=session.session_id,
        started_at=session.first_seen_at,
        last_seen_at=session.last_seen_at,
        total_interactions=session.total_interactions,
        attribution=_attribution_info(attribution, resolver.ttl),
    )


@router.post("/session/extend", response_model=SessionExtendResponse)
async def extend_session(
    request: Request,
    response: Response,
    store: SessionStore = Depends(get_session_store),
    resolver: TagAttributionResolver = Depends(get_attribution_resolver),
    settings: AppSettings = Depends(get_settings),
) -> SessionExtendResponse:
    token = request.cookies.get(SESSION_COOKIE)
    session = await store.get(token) if token else None
    if session is None or not session.is_active:
        _clear_session_cookies(response)
        return SessionExtendResponse(extended=False)

    attribution = resolver.current_attribution(session)
    extended = await resolver.extend(attribution) if attribution else None
    store.touch(session)
    _set_session_cookies(response, settings, session, extended)
    return SessionExtendResponse(
        extended=extended is not None,
        attribution=_attribution_info(extended, resolver.ttl),
    )


@router.post("/session/end", response_model=SessionEndResponse)
async def end_session(
    request: Request,
    response: Response,
    store: SessionStore = Depends(get_session_store),
) -> SessionEndResponse:
    token = request.cookies.get(SESSION_COOKIE)
    session = await store.get(token) if token else None
    ended = False
    if session is not None:
        ended = await store.expire(session, reason="client_end")
    _clear_session_cookies(response)
    return SessionEndResponse(ended=ended)
