"""
Storage contracts consumed by the analytics services.

Services depend on these Protocols only. Two families implement them:
the MongoDB repositories (shared state, horizontally scalable) and the
in-memory ones in ``repositories.memory`` (single process and tests).

Conventions shared by every implementation:
- time ranges are half-open ``[start, end)`` unless ``inclusive_end`` is set
- write failures raise ``StorageUnavailableError``
- read failures propagate; the services decide whether to degrade
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional, Protocol

from schemas.models.event import AnalyticsEvent, EventAction
from schemas.models.session import AnonymousSession, GeoLocation, TagAttribution
from schemas.models.tenant import Tenant


class TenantRepository(Protocol):
    async def get_by_id(self, tenant_id: str) -> Optional[Tenant]: ...

    async def lookup_by_subdomain(self, subdomain: str) -> Optional[Tenant]: ...

    async def lookup_by_custom_domain(self, host: str) -> Optional[Tenant]: ...

    async def lookup_by_tag_id(self, tag_id: str) -> Optional[Tenant]:
        """Approved bracelet membership first, then the tag registry claim."""
        ...

    async def record_tag_scan(self, tag_id: str, scanned_at: datetime) -> None: ...


class SessionRepository(Protocol):
    async def get(self, session_id: str) -> Optional[AnonymousSession]: ...

    async def get_many(self, session_ids: Iterable[str]) -> list[AnonymousSession]: ...

    async def insert(self, session: AnonymousSession) -> AnonymousSession: ...

    async def touch(self, session_id: str, seen_at: datetime) -> None: ...

    async def bind_attribution(
        self, session_id: str, tag_id: str, tenant_id: str, bound_at: datetime
    ) -> Optional[TagAttribution]:
        """Atomically replace the binding, bumping the per-session sequence."""
        ...

    async def refresh_attribution(
        self, session_id: str, sequence: int, refreshed_at: datetime
    ) -> bool:
        """Slide the TTL only if binding *sequence* is still the current one."""
        ...

    async def end(self, session_id: str, reason: str, ended_at: datetime) -> bool: ...

    async def expire_inactive(self, cutoff: datetime, ended_at: datetime) -> int: ...

    async def find_missing_location(self, limit: int) -> list[AnonymousSession]: ...

    async def set_location(
        self,
        session_id: str,
        location: Optional[GeoLocation],
        resolved_at: datetime,
    ) -> None: ...


class EventRepository(Protocol):
    async def append(self, event: AnalyticsEvent) -> AnalyticsEvent: ...

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
        """Events ordered by ``occurred_at`` ascending.

        ``tenant_id=None`` reads across every tenant (platform views).
        """
        ...

    async def find_by_session(
        self, session_id: str, limit: int = 500
    ) -> list[AnalyticsEvent]: ...
