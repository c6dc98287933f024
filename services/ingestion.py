"""
EventIngestionPipeline — turns raw client actions into canonical events.

For every event, in order:
  1. resolve the tenant through TenantResolutionChain
  2. append the event to the log
  3. schedule a session touch (never awaited by the caller)

Failure policy:
- unknown action or malformed fields → MalformedEventError
- no tenant after every fallback → the event is dropped silently
- the log rejects the write → StorageUnavailableError reaches the caller

``ingest_batch`` applies the same rules per entry; malformed entries are
counted and skipped, a storage outage still aborts the batch.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Sequence

from pydantic import ValidationError as PydanticValidationError
from pymongo.errors import PyMongoError

from errors import MalformedEventError
from repositories.protocol import EventRepository, TenantRepository
from schemas.dto.requests.events import IngestEventRequest
from schemas.models.event import (
    SYSTEM_ACTIONS,
    AnalyticsEvent,
    EventAction,
    EventMeta,
)
from schemas.models.session import AnonymousSession, TagAttribution
from services.attribution import (
    TagAttributionResolver,
    ResolutionSource,
    TenantResolution,
    TenantResolutionChain,
)
from services.session_store import SessionStore
from services.tenant_directory import TenantDirectory
from shared.datetime_utils import ensure_utc, utc_now
from shared.logging import get_logger, hash_ip, should_sample
from shared.validators import (
    is_valid_identifier,
    normalize_page_url,
    normalize_user_agent,
    sanitize_referrer,
)

log = get_logger(__name__)

# Replayed events older than this are stamped with the receive time
MAX_REPLAY_AGE = timedelta(days=7)


@dataclass
class RawEvent:
    """An action as received, before normalisation."""

    action: Any
    tenant_hint: Optional[str] = None
    tag_hint: Optional[str] = None
    session_token: Optional[str] = None
    subject_id: Optional[str] = None
    host: Optional[str] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    page_url: Optional[str] = None
    referrer: Optional[str] = None
    occurred_at: Optional[datetime] = None

    @classmethod
    def from_request(
        cls,
        request: IngestEventRequest,
        *,
        host: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        session_token: Optional[str] = None,
    ) -> "RawEvent":
        meta = request.client_meta
        return cls(
            action=request.action,
            tenant_hint=request.tenant_hint,
            tag_hint=request.tag_hint,
            # an explicit token in the body wins over the transport's
            session_token=request.session_token or session_token,
            subject_id=request.subject_id,
            host=host,
            ip=ip,
            user_agent=meta.user_agent or user_agent,
            page_url=meta.page_url,
            referrer=meta.referrer,
            occurred_at=meta.occurred_at,
        )

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], **transport) -> "RawEvent":
        """Validate a raw JSON object; MalformedEventError when it doesn't fit."""
        if not isinstance(payload, Mapping):
            raise MalformedEventError("Event must be a JSON object")
        try:
            request = IngestEventRequest.model_validate(payload)
        except PydanticValidationError as exc:
            first = exc.errors()[0]
            raise MalformedEventError(
                first.get("msg", "Invalid event"),
                field=".".join(str(p) for p in first.get("loc", ())) or None,
            ) from exc
        return cls.from_request(request, **transport)


class IngestStatus(str, Enum):
    RECORDED = "recorded"
    DROPPED = "dropped"


@dataclass
class IngestOutcome:
    status: IngestStatus
    session: AnonymousSession
    resolution: Optional[TenantResolution] = None
    event: Optional[AnalyticsEvent] = None

    @property
    def attribution(self) -> Optional[TagAttribution]:
        return self.resolution.attribution if self.resolution else None


@dataclass
class BatchIngestResult:
    processed: int = 0
    dropped: int = 0
    failed: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)
    session: Optional[AnonymousSession] = None


@dataclass
class TagScanOutcome:
    session: AnonymousSession
    tag_id: str
    attribution: Optional[TagAttribution]
    tenant_id: Optional[str]
    event: Optional[AnalyticsEvent]

    @property
    def claimed(self) -> bool:
        return self.attribution is not None


class EventIngestionPipeline:
    def __init__(
        self,
        *,
        events: EventRepository,
        sessions: SessionStore,
        directory: TenantDirectory,
        resolver: TagAttributionResolver,
        tenants: TenantRepository,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._events = events
        self._sessions = sessions
        self._directory = directory
        self._resolver = resolver
        self._chain = TenantResolutionChain(directory, resolver)
        self._tenants = tenants
        self._clock = clock

    async def ingest(self, raw: RawEvent) -> IngestOutcome:
        action = self._validate(raw)
        session = await self._sessions.get_or_create(
            raw.session_token, raw.ip, raw.user_agent
        )
        return await self._ingest_for_session(raw, action, session)

    async def ingest_batch(
        self, payloads: Sequence[Any], **transport
    ) -> BatchIngestResult:
        """Ingest entries independently; one bad entry never sinks the rest.

        Entries presenting the same token (or none at all) share one session,
        so a replayed queue stays on one visitor even if its token expired.
        """
        result = BatchIngestResult()
        session: Optional[AnonymousSession] = None
        sessions_by_token: dict[Optional[str], AnonymousSession] = {}

        for index, payload in enumerate(payloads):
            try:
                raw = RawEvent.from_payload(payload, **transport)
                action = self._validate(raw)
            except MalformedEventError as exc:
                result.failed += 1
                result.errors.append({"index": index, **exc.to_dict()})
                continue

            entry_session = sessions_by_token.get(raw.session_token)
            if entry_session is None:
                entry_session = await self._sessions.get_or_create(
                    raw.session_token, raw.ip, raw.user_agent
                )
                sessions_by_token[raw.session_token] = entry_session
            if session is None:
                session = entry_session

            outcome = await self._ingest_for_session(raw, action, entry_session)
            if outcome.status == IngestStatus.RECORDED:
                result.processed += 1
            else:
                result.dropped += 1

        result.session = session
        log.info(
            "batch_ingested",
            action="background-sync",
            processed=result.processed,
            dropped=result.dropped,
            failed=result.failed,
        )
        return result

    async def record_tag_scan(
        self,
        tag_id: str,
        *,
        session_token: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        page_url: Optional[str] = None,
        referrer: Optional[str] = None,
    ) -> TagScanOutcome:
        """Bind the scanned tag to the visitor's session and log the scan.

        A tag nobody has claimed leaves the current binding alone; the scan is
        still recorded, against the default tenant.
        """
        if not is_valid_identifier(tag_id):
            raise MalformedEventError("Invalid tag id", field="tag_id")

        session = await self._sessions.get_or_create(session_token, ip, user_agent)
        attribution = await self._resolver.bind_tag(session, tag_id)
        tenant_id = (
            attribution.tenant_id
            if attribution is not None
            else (self._directory.default_tenant_id or None)
        )

        now = self._clock()
        event: Optional[AnalyticsEvent] = None
        if tenant_id is not None:
            event = await self._append(
                tenant_id=tenant_id,
                session=session,
                tag_id=tag_id,
                action=EventAction.TAG_SCAN,
                raw=RawEvent(
                    action=EventAction.TAG_SCAN,
                    ip=ip,
                    user_agent=user_agent,
                    page_url=page_url,
                    referrer=referrer,
                ),
                occurred_at=now,
            )
        else:
            log.info("event_dropped", action="tag_scan", reason="tenant_unresolved")

        if attribution is not None:
            self._count_scan(tag_id, now)
        self._sessions.touch(session)
        return TagScanOutcome(
            session=session,
            tag_id=tag_id,
            attribution=attribution,
            tenant_id=tenant_id,
            event=event,
        )

    # ── Internals ───────────────────────────────────────────────────────────

    def _validate(self, raw: RawEvent) -> EventAction:
        action = EventAction.parse(raw.action)
        if action is None:
            raise MalformedEventError(
                f"Unknown action: {raw.action!r}", field="action"
            )
        if raw.tag_hint and not is_valid_identifier(raw.tag_hint):
            raise MalformedEventError("Invalid tag id", field="tagHint")
        if raw.subject_id and not is_valid_identifier(raw.subject_id):
            raise MalformedEventError("Invalid subject id", field="subjectId")
        return action

    async def _ingest_for_session(
        self, raw: RawEvent, action: EventAction, session: AnonymousSession
    ) -> IngestOutcome:
        context_tenant_id: Optional[str] = None
        if raw.tenant_hint or raw.host:
            tenant = await self._directory.resolve_tenant(
                host_hint=raw.host, query_hint=raw.tenant_hint
            )
            if tenant is not None:
                context_tenant_id = tenant.tenant_id

        if action == EventAction.TAG_SCAN and raw.tag_hint:
            resolution = await self._resolve_scan(
                context_tenant_id, raw.tag_hint, session
            )
        else:
            resolution = await self._chain.resolve(
                context_tenant_id, raw.tag_hint, session
            )

        if resolution.tenant_id is None and action not in SYSTEM_ACTIONS:
            log.info(
                "event_dropped",
                action=action.value,
                session_id=session.session_id,
                reason="tenant_unresolved",
            )
            self._sessions.touch(session)
            return IngestOutcome(IngestStatus.DROPPED, session, resolution)

        event = await self._append(
            tenant_id=resolution.tenant_id,
            session=session,
            tag_id=resolution.tag_id,
            action=action,
            raw=raw,
            occurred_at=self._occurred_at(raw.occurred_at),
        )

        if resolution.attribution is not None:
            await self._extend(resolution.attribution)
        self._sessions.touch(session)
        return IngestOutcome(IngestStatus.RECORDED, session, resolution, event)

    async def _append(
        self,
        *,
        tenant_id: Optional[str],
        session: AnonymousSession,
        tag_id: Optional[str],
        action: EventAction,
        raw: RawEvent,
        occurred_at: datetime,
    ) -> AnalyticsEvent:
        event = AnalyticsEvent(
            occurred_at=occurred_at,
            meta=EventMeta(
                tenant_id=tenant_id,
                session_id=session.session_id,
                tag_id=tag_id,
                action=action,
            ),
            subject_id=raw.subject_id,
            ip_address=raw.ip or None,
            user_agent=normalize_user_agent(raw.user_agent),
            page_url=normalize_page_url(raw.page_url),
            referrer=sanitize_referrer(raw.referrer),
        )
        event = await self._events.append(event)
        if should_sample("event_ingest"):
            log.info(
                "event_recorded",
                action=action.value,
                tenant_id=tenant_id,
                tag_id=tag_id,
                session_id=session.session_id,
                ip=hash_ip(raw.ip),
            )
        return event

    async def _resolve_scan(
        self,
        context_tenant_id: Optional[str],
        tag_id: str,
        session: AnonymousSession,
    ) -> TenantResolution:
        """A scan binds first; its tag's owner then wins over the request context.

        An unclaimed tag leaves the binding alone and the scan goes through the
        regular chain, keeping the raw tag id.
        """
        attribution = await self._resolver.bind_tag(session, tag_id)
        if attribution is not None:
            self._count_scan(tag_id, self._clock())
            return TenantResolution(
                attribution.tenant_id,
                tag_id,
                ResolutionSource.PAYLOAD_TAG,
                attribution,
            )
        resolution = await self._chain.resolve(context_tenant_id, None, session)
        return replace(resolution, tag_id=tag_id)

    def _count_scan(self, tag_id: str, scanned_at: datetime) -> None:
        self._sessions.background.spawn(
            self._tenants.record_tag_scan(tag_id, scanned_at),
            "tag_scan_counter_failed",
            tag_id=tag_id,
        )

    async def _extend(self, attribution: TagAttribution) -> None:
        try:
            await self._resolver.extend(attribution)
        except PyMongoError as e:
            log.warning(
                "attribution_extend_failed",
                session_id=attribution.session_id,
                error=str(e),
                error_type=type(e).__name__,
            )

    def _occurred_at(self, claimed: Optional[datetime]) -> datetime:
        now = self._clock()
        if claimed is None:
            return now
        claimed = ensure_utc(claimed)
        if claimed > now or now - claimed > MAX_REPLAY_AGE:
            return now
        return claimed
