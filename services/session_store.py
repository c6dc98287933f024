"""
SessionStore — anonymous visitor sessions keyed by an opaque token.

Sessions are independent of tenants. The store hands out a session for every
request (minting one when the presented token is missing, unknown or already
expired) and keeps ``last_seen_at`` current through fire-and-forget touches
that never hold up the response.

Explicit ends are advisory: most visitors never send one, so sessions also
age out through ``cleanup_inactive``.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Optional

from repositories.protocol import SessionRepository
from schemas.models.session import AnonymousSession
from shared.background import BackgroundTasks
from shared.datetime_utils import utc_now
from shared.generators import generate_session_token
from shared.logging import get_logger, hash_ip, should_sample

if TYPE_CHECKING:
    from services.geo_enrichment import GeoEnrichmentService

log = get_logger(__name__)


class SessionStore:
    def __init__(
        self,
        repository: SessionRepository,
        *,
        inactivity: timedelta = timedelta(hours=24),
        geo_enricher: Optional["GeoEnrichmentService"] = None,
        background: Optional[BackgroundTasks] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._repo = repository
        self._inactivity = inactivity
        self._geo = geo_enricher
        self._clock = clock
        self.background = background if background is not None else BackgroundTasks()

    @property
    def repository(self) -> SessionRepository:
        return self._repo

    async def get(self, session_id: str) -> Optional[AnonymousSession]:
        return await self._repo.get(session_id)

    async def get_or_create(
        self,
        token: Optional[str],
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AnonymousSession:
        if token:
            session = await self._repo.get(token)
            if session is not None and session.is_active:
                return session
            if session is not None:
                log.info("session_expired_reissued", session_id=token)

        now = self._clock()
        session = AnonymousSession(
            session_id=generate_session_token(),
            ip_address=ip or None,
            user_agent=user_agent or None,
            first_seen_at=now,
            last_seen_at=now,
        )
        session = await self._repo.insert(session)
        log.info(
            "session_created",
            session_id=session.session_id,
            ip=hash_ip(ip),
        )

        if self._geo is not None and ip:
            self.background.spawn(
                self._geo.enrich(session),
                "session_geo_enrich_failed",
                session_id=session.session_id,
            )
        return session

    def touch(self, session: AnonymousSession) -> None:
        """Schedule a last-seen bump; returns immediately."""
        self.background.spawn(
            self._touch(session.session_id),
            "session_touch_failed",
            session_id=session.session_id,
        )

    async def _touch(self, session_id: str) -> None:
        await self._repo.touch(session_id, self._clock())
        if should_sample("session_touch"):
            log.debug("session_touched", session_id=session_id)

    async def expire(self, session: AnonymousSession, reason: str) -> bool:
        ended = await self._repo.end(session.session_id, reason, self._clock())
        if ended:
            log.info("session_ended", session_id=session.session_id, reason=reason)
        return ended

    async def cleanup_inactive(self, cutoff: Optional[datetime] = None) -> int:
        """Soft-expire sessions idle since before *cutoff*; returns the count."""
        now = self._clock()
        if cutoff is None:
            cutoff = now - self._inactivity
        count = await self._repo.expire_inactive(cutoff, now)
        log.info("sessions_cleaned_up", expired=count, cutoff=cutoff.isoformat())
        return count

    async def drain(self) -> None:
        """Wait for every scheduled background task to finish."""
        await self.background.drain()
