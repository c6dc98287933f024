"""
Session geolocation: first-sight enrichment and the rate-limited backfill.

Every attempt stamps ``geo_resolved_at`` (even when nothing was found) so a
session is looked up at most once.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Callable, Optional

from infrastructure.geoip import GeoIPService
from repositories.protocol import SessionRepository
from schemas.models.session import AnonymousSession, GeoLocation
from shared.datetime_utils import utc_now
from shared.ip_utils import is_public_ip
from shared.logging import get_logger, hash_ip

log = get_logger(__name__)


class GeoEnrichmentService:
    def __init__(
        self,
        geoip: GeoIPService,
        sessions: SessionRepository,
        *,
        lookup_interval: float = 1.0,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], object] = asyncio.sleep,
    ) -> None:
        self._geoip = geoip
        self._sessions = sessions
        self._interval = lookup_interval
        self._clock = clock
        self._sleep = sleep

    async def enrich(self, session: AnonymousSession) -> Optional[GeoLocation]:
        if session.location is not None:
            return session.location
        location = await self._geoip.resolve(session.ip_address)
        await self._sessions.set_location(session.session_id, location, self._clock())
        session.location = location
        if location is not None:
            log.debug(
                "session_geolocated",
                session_id=session.session_id,
                country=location.country,
                city=location.city,
            )
        return location

    async def backfill(self, limit: int = 100) -> dict:
        """Resolve sessions that have no location yet.

        Private addresses are marked without a lookup; real lookups are spaced
        ``lookup_interval`` seconds apart.
        """
        pending = await self._sessions.find_missing_location(limit)
        processed = updated = errors = 0
        looked_up = False

        for session in pending:
            processed += 1
            if not is_public_ip(session.ip_address):
                await self._sessions.set_location(
                    session.session_id, None, self._clock()
                )
                continue

            if looked_up and self._interval > 0:
                await self._sleep(self._interval)
            looked_up = True
            try:
                location = await self.enrich(session)
            except Exception as e:
                errors += 1
                log.warning(
                    "geo_backfill_lookup_failed",
                    session_id=session.session_id,
                    ip=hash_ip(session.ip_address),
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue
            if location is not None:
                updated += 1

        result = {"processed": processed, "updated": updated, "errors": errors}
        log.info("geo_backfill_completed", **result)
        return result
