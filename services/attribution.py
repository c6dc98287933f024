"""
Tag attribution: binding sessions to the tag they scanned, and the tenant
resolution chain every event goes through.

A session carries at most one binding. Binding again replaces it, and the
repository assigns each bind the next per-session sequence number in the same
atomic write, so of two racing scans the one acknowledged last is the one
subsequent reads see.

Bindings expire lazily: ``current_attribution`` compares ``refreshed_at``
against the TTL on every read. There is no eager sweep.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from repositories.protocol import SessionRepository
from schemas.models.session import AnonymousSession, TagAttribution
from services.tenant_directory import TenantDirectory
from shared.datetime_utils import utc_now
from shared.logging import get_logger

log = get_logger(__name__)


class TagAttributionResolver:
    def __init__(
        self,
        sessions: SessionRepository,
        directory: TenantDirectory,
        *,
        ttl: timedelta = timedelta(minutes=30),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._sessions = sessions
        self._directory = directory
        self.ttl = ttl
        self._clock = clock

    async def bind_tag(
        self, session: AnonymousSession, tag_id: str
    ) -> Optional[TagAttribution]:
        """Bind *session* to *tag_id*'s tenant, replacing any prior binding.

        Returns None (and leaves the session untouched) for unknown or
        unclaimed tags.
        """
        tenant = await self._directory.lookup_by_tag(tag_id)
        if tenant is None:
            log.info("unknown_tag", tag_id=tag_id, session_id=session.session_id)
            return None

        attribution = await self._sessions.bind_attribution(
            session.session_id, tag_id, tenant.tenant_id, self._clock()
        )
        if attribution is None:
            log.warning("attribution_session_missing", session_id=session.session_id)
            return None

        session.attribution = attribution
        session.tenant_id = attribution.tenant_id
        session.originating_tag_id = tag_id
        log.info(
            "tag_bound",
            session_id=session.session_id,
            tag_id=tag_id,
            tenant_id=attribution.tenant_id,
            sequence=attribution.sequence,
        )
        return attribution

    async def extend(self, attribution: TagAttribution) -> Optional[TagAttribution]:
        """Slide the TTL of a live binding.

        A lapsed or superseded binding is left as is and None is returned.
        """
        now = self._clock()
        if not attribution.is_live(now, self.ttl):
            return None
        refreshed = await self._sessions.refresh_attribution(
            attribution.session_id, attribution.sequence, now
        )
        if not refreshed:
            return None
        return attribution.model_copy(update={"refreshed_at": now})

    def current_attribution(
        self, session: AnonymousSession
    ) -> Optional[TagAttribution]:
        attribution = session.attribution
        if attribution is None:
            return None
        if not attribution.is_live(self._clock(), self.ttl):
            return None
        return attribution


class ResolutionSource(str, Enum):
    CONTEXT = "context"
    PAYLOAD_TAG = "payload_tag"
    SESSION_BINDING = "session_binding"
    DEFAULT = "default"


@dataclass(frozen=True)
class TenantResolution:
    tenant_id: Optional[str]
    tag_id: Optional[str]
    source: ResolutionSource
    attribution: Optional[TagAttribution] = None


class TenantResolutionChain:
    """Ordered fallback used to stamp every event with a tenant.

    1. tenant already known on the request context
    2. tenant owning an explicit tag id in the payload
    3. tenant of the session's live binding
    4. the default tenant, even with no signal at all
    """

    def __init__(
        self,
        directory: TenantDirectory,
        resolver: TagAttributionResolver,
    ) -> None:
        self._directory = directory
        self._resolver = resolver

    async def resolve(
        self,
        context_tenant_id: Optional[str],
        tag_id: Optional[str],
        session: Optional[AnonymousSession],
    ) -> TenantResolution:
        attribution = (
            self._resolver.current_attribution(session) if session else None
        )

        if context_tenant_id:
            # tags, explicit or bound, only stick when they belong to the same tenant
            payload_tag = None
            if tag_id:
                owner = await self._directory.lookup_by_tag(tag_id)
                if owner is not None and owner.tenant_id == context_tenant_id:
                    payload_tag = tag_id
            bound_tag = (
                attribution.tag_id
                if attribution and attribution.tenant_id == context_tenant_id
                else None
            )
            return TenantResolution(
                context_tenant_id,
                payload_tag or bound_tag,
                ResolutionSource.CONTEXT,
                attribution,
            )

        if tag_id:
            tenant = await self._directory.lookup_by_tag(tag_id)
            if tenant is not None:
                return TenantResolution(
                    tenant.tenant_id, tag_id, ResolutionSource.PAYLOAD_TAG, attribution
                )
            log.info("unknown_tag", tag_id=tag_id)

        if attribution is not None:
            return TenantResolution(
                attribution.tenant_id,
                attribution.tag_id,
                ResolutionSource.SESSION_BINDING,
                attribution,
            )

        # an empty default disables the fallback; callers drop the event
        return TenantResolution(
            self._directory.default_tenant_id or None,
            None,
            ResolutionSource.DEFAULT,
            None,
        )
