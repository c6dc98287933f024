"""
In-process repositories.

Used for single-process deployments (``SESSION_BACKEND=memory``) and as the
storage behind service tests. None of the methods await between reading and
writing shared state, so each call is atomic with respect to the event loop.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, List, Optional

from bson import ObjectId

from schemas.models.event import AnalyticsEvent, EventAction
from schemas.models.session import AnonymousSession, GeoLocation, TagAttribution
from schemas.models.tenant import (
    BraceletMembershipDoc,
    MembershipStatus,
    TagDoc,
    Tenant,
)


class InMemoryTenantRepository:
    def __init__(
        self,
        tenants: Iterable[Tenant] = (),
        tags: Iterable[TagDoc] = (),
        memberships: Iterable[BraceletMembershipDoc] = (),
    ) -> None:
        self.tenants: Dict[str, Tenant] = {t.tenant_id: t for t in tenants}
        self.tags: Dict[str, TagDoc] = {t.tag_id: t for t in tags}
        self.memberships: List[BraceletMembershipDoc] = list(memberships)

    def add_tenant(self, tenant: Tenant) -> None:
        self.tenants[tenant.tenant_id] = tenant

    def add_tag(self, tag: TagDoc) -> None:
        self.tags[tag.tag_id] = tag

    async def get_by_id(self, tenant_id: str) -> Optional[Tenant]:
        return self.tenants.get(tenant_id)

    async def lookup_by_subdomain(self, subdomain: str) -> Optional[Tenant]:
        wanted = subdomain.lower()
        for tenant in self.tenants.values():
            if tenant.is_active and tenant.subdomain == wanted:
                return tenant
        return None

    async def lookup_by_custom_domain(self, host: str) -> Optional[Tenant]:
        wanted = host.lower()
        for tenant in self.tenants.values():
            if tenant.is_active and tenant.custom_domain == wanted:
                return tenant
        return None

    async def lookup_by_tag_id(self, tag_id: str) -> Optional[Tenant]:
        approved = [
            m
            for m in self.memberships
            if m.tag_id == tag_id and m.status == MembershipStatus.APPROVED
        ]
        if approved:
            tenant_id = approved[-1].tenant_id
        else:
            tag = self.tags.get(tag_id)
            if tag is None or tag.tenant_id is None:
                return None
            tenant_id = tag.tenant_id

        tenant = self.tenants.get(tenant_id)
        return tenant if tenant is not None and tenant.is_active else None

    async def record_tag_scan(self, tag_id: str, scanned_at: datetime) -> None:
        tag = self.tags.get(tag_id)
        if tag is not None:
            tag.scan_count += 1
            tag.last_scanned_at = scanned_at


class InMemorySessionRepository:
    def __init__(self) -> None:
        self.sessions: Dict[str, AnonymousSession] = {}

    async def get(self, session_id: str) -> Optional[AnonymousSession]:
        session = self.sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def get_many(self, session_ids: Iterable[str]) -> list[AnonymousSession]:
        return [
            self.sessions[sid].model_copy(deep=True)
            for sid in set(session_ids)
            if sid in self.sessions
        ]

    async def insert(self, session: AnonymousSession) -> AnonymousSession:
        if session.id is None:
            session.id = ObjectId()
        self.sessions[session.session_id] = session.model_copy(deep=True)
        return session

    async def touch(self, session_id: str, seen_at: datetime) -> None:
        session = self.sessions.get(session_id)
        if session is not None:
            session.last_seen_at = seen_at
            session.total_interactions += 1

    async def bind_attribution(
        self, session_id: str, tag_id: str, tenant_id: str, bound_at: datetime
    ) -> Optional[TagAttribution]:
        session = self.sessions.get(session_id)
        if session is None:
            return None
        session.attribution_sequence += 1
        attribution = TagAttribution(
            session_id=session_id,
            tag_id=tag_id,
            tenant_id=tenant_id,
            bound_at=bound_at,
            refreshed_at=bound_at,
            sequence=session.attribution_sequence,
        )
        session.attribution = attribution
        session.tenant_id = tenant_id
        session.originating_tag_id = tag_id
        return attribution.model_copy()

    async def refresh_attribution(
        self, session_id: str, sequence: int, refreshed_at: datetime
    ) -> bool:
        session = self.sessions.get(session_id)
        if session is None or session.attribution is None:
            return False
        if session.attribution.sequence != sequence:
            return False
        session.attribution.refreshed_at = refreshed_at
        return True

    async def end(self, session_id: str, reason: str, ended_at: datetime) -> bool:
        session = self.sessions.get(session_id)
        if session is None or not session.is_active:
            return False
        session.is_active = False
        session.ended_at = ended_at
        session.end_reason = reason
        return True

    async def expire_inactive(self, cutoff: datetime, ended_at: datetime) -> int:
        count = 0
        for session in self.sessions.values():
            if session.is_active and session.last_seen_at < cutoff:
                session.is_active = False
                session.ended_at = ended_at
                session.end_reason = "inactive"
                count += 1
        return count

    async def find_missing_location(self, limit: int) -> list[AnonymousSession]:
        pending = [
            s
            for s in self.sessions.values()
            if s.location is None and s.geo_resolved_at is None and s.ip_address
        ]
        pending.sort(key=lambda s: s.first_seen_at, reverse=True)
        return [s.model_copy(deep=True) for s in pending[:limit]]

    async def set_location(
        self,
        session_id: str,
        location: Optional[GeoLocation],
        resolved_at: datetime,
    ) -> None:
        session = self.sessions.get(session_id)
        if session is not None:
            session.location = location
            session.geo_resolved_at = resolved_at


class InMemoryEventRepository:
    def __init__(self) -> None:
        self.events: List[AnalyticsEvent] = []

    async def append(self, event: AnalyticsEvent) -> AnalyticsEvent:
        if event.id is None:
            event.id = ObjectId()
        self.events.append(event)
        return event

    async def find(
        self,
        *,
        tenant_id: Optional[str],
        start: datetime,
        end: datetime,
        actions: Optional[Iterable[EventAction]] = None,
        tag_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        inclusive_end: bool = False,
    ) -> list[AnalyticsEvent]:
        wanted = set(actions) if actions is not None else None
        matched = []
        for event in self.events:
            if tenant_id is not None and event.tenant_id != tenant_id:
                continue
            if event.occurred_at < start:
                continue
            if event.occurred_at > end or (
                not inclusive_end and event.occurred_at == end
            ):
                continue
            if wanted is not None and event.action not in wanted:
                continue
            if tag_id is not None and event.tag_id != tag_id:
                continue
            if ip_address is not None and event.ip_address != ip_address:
                continue
            matched.append(event)
        matched.sort(key=lambda e: e.occurred_at)
        return matched

    async def find_by_session(
        self, session_id: str, limit: int = 500
    ) -> list[AnalyticsEvent]:
        matched = [e for e in self.events if e.session_id == session_id]
        matched.sort(key=lambda e: e.occurred_at)
        return matched[:limit]
