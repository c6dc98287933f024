"""Async geolocation lookups over a local MaxMind city database.

geoip2 reads from a local .mmdb file and is synchronous, so lookups run in
asyncio.to_thread() to keep the event loop free.

Best-effort throughout:
- Private, loopback and otherwise non-routable addresses are never looked up.
- A missing or corrupt database yields None for every lookup, with a single
  warning when the reader is first loaded (double-checked locking).
"""

import asyncio
from typing import Optional

import geoip2.database
import geoip2.errors
import maxminddb

from schemas.models.session import GeoLocation
from shared.ip_utils import is_public_ip
from shared.logging import get_logger, hash_ip

log = get_logger(__name__)


class GeoIPService:
    def __init__(self, city_db_path: str) -> None:
        self._city_db_path = city_db_path
        self._city_reader: Optional[geoip2.database.Reader] = None
        self._city_loaded = False
        self._lock = asyncio.Lock()

    async def _get_city_reader(self) -> Optional[geoip2.database.Reader]:
        if not self._city_loaded:
            async with self._lock:
                if not self._city_loaded:
                    try:
                        self._city_reader = await asyncio.to_thread(
                            geoip2.database.Reader, self._city_db_path
                        )
                    except (OSError, maxminddb.InvalidDatabaseError) as e:
                        log.warning(
                            "geoip_city_db_unavailable",
                            path=self._city_db_path,
                            error=str(e),
                            error_type=type(e).__name__,
                        )
                        self._city_reader = None
                    self._city_loaded = True
        return self._city_reader

    async def resolve(self, ip_address: Optional[str]) -> Optional[GeoLocation]:
        """Return the location for *ip_address*, or None when unknown."""
        if not is_public_ip(ip_address):
            return None

        reader = await self._get_city_reader()
        if reader is None:
            return None
        try:
            result = await asyncio.to_thread(reader.city, ip_address)
        except (
            geoip2.errors.AddressNotFoundError,
            ValueError,
            maxminddb.InvalidDatabaseError,
        ):
            log.debug("geoip_lookup_miss", ip=hash_ip(ip_address))
            return None

        location = GeoLocation(
            country=result.country.name,
            region=result.subdivisions.most_specific.name,
            city=result.city.name,
            latitude=result.location.latitude,
            longitude=result.location.longitude,
        )
        return location if location.is_known else None

    def close(self) -> None:
        if self._city_reader is not None:
            self._city_reader.close()
            self._city_reader = None
            self._city_loaded = False
