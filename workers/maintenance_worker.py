"""
Periodic maintenance: soft-expire idle sessions and backfill session
geolocation.

Runs as its own process (see start_worker.py) against the same MongoDB as
the API. Each pass is independent; a failing pass is logged and the loop
carries on after the interval.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Optional

from pymongo.asynchronous.mongo_client import AsyncMongoClient
from pymongo.errors import PyMongoError

from config import AppSettings
from infrastructure.geoip import GeoIPService
from repositories.session_repository import MongoSessionRepository
from services.geo_enrichment import GeoEnrichmentService
from services.session_store import SessionStore
from shared.logging import get_logger

log = get_logger(__name__)


class MaintenanceWorker:
    def __init__(
        self,
        store: SessionStore,
        geo: Optional[GeoEnrichmentService],
        *,
        interval_seconds: float = 900,
        backfill_batch_size: int = 100,
    ) -> None:
        self._store = store
        self._geo = geo
        self._interval = interval_seconds
        self._batch_size = backfill_batch_size
        self._stopped = asyncio.Event()

    async def run_once(self) -> dict:
        expired = await self._store.cleanup_inactive()
        backfill = {"processed": 0, "updated": 0, "errors": 0}
        if self._geo is not None:
            backfill = await self._geo.backfill(self._batch_size)
        return {"expired_sessions": expired, "geo": backfill}

    async def run_forever(self) -> None:
        log.info("maintenance_worker_started", interval_seconds=self._interval)
        while not self._stopped.is_set():
            try:
                result = await self.run_once()
                log.info("maintenance_pass_completed", **result)
            except PyMongoError as e:
                log.error(
                    "maintenance_pass_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                )
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
        log.info("maintenance_worker_stopped")

    def stop(self) -> None:
        self._stopped.set()


async def run_maintenance_worker(settings: Optional[AppSettings] = None) -> None:
    if settings is None:
        settings = AppSettings()

    client: AsyncMongoClient = AsyncMongoClient(settings.db.mongodb_uri, tz_aware=True)
    db = client[settings.db.db_name]
    sessions = MongoSessionRepository(db)
    geoip = GeoIPService(settings.geo.geoip_city_db)
    geo = GeoEnrichmentService(
        geoip, sessions, lookup_interval=settings.geo.geo_lookup_interval_seconds
    )
    store = SessionStore(
        sessions,
        inactivity=timedelta(hours=settings.attribution.session_inactivity_hours),
    )
    worker = MaintenanceWorker(
        store,
        geo,
        interval_seconds=settings.worker.maintenance_interval_seconds,
        backfill_batch_size=settings.geo.geo_backfill_batch_size,
    )
    try:
        await worker.run_forever()
    finally:
        geoip.close()
        await client.close()
