"""Unit tests for GeoIPService and GeoEnrichmentService."""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import geoip2.errors
import pytest

from infrastructure.geoip import GeoIPService
from schemas.models.session import AnonymousSession, GeoLocation
from services.geo_enrichment import GeoEnrichmentService

NAIROBI = GeoLocation(country="Kenya", city="Nairobi", latitude=-1.28, longitude=36.8)


def _city_result(country="Kenya", city="Nairobi"):
    result = MagicMock()
    result.country.name = country
    result.subdivisions.most_specific.name = "Nairobi County"
    result.city.name = city
    result.location.latitude = -1.28
    result.location.longitude = 36.8
    return result


def _loaded_service(reader) -> GeoIPService:
    svc = GeoIPService("nonexistent.mmdb")
    svc._city_reader = reader
    svc._city_loaded = True
    return svc


# ── GeoIPService ──────────────────────────────────────────────────────────────


class TestGeoIPService:
    async def test_missing_database_yields_none(self):
        svc = GeoIPService("nonexistent.mmdb")
        assert await svc.resolve("8.8.8.8") is None

    async def test_private_ip_never_looked_up(self):
        reader = MagicMock()
        svc = _loaded_service(reader)
        assert await svc.resolve("192.168.1.5") is None
        reader.city.assert_not_called()

    async def test_resolves_location(self):
        reader = MagicMock()
        reader.city.return_value = _city_result()
        location = await _loaded_service(reader).resolve("41.90.0.1")
        assert location.country == "Kenya"
        assert location.city == "Nairobi"
        assert location.region == "Nairobi County"

    async def test_lookup_miss_returns_none(self):
        reader = MagicMock()
        reader.city.side_effect = geoip2.errors.AddressNotFoundError("not found")
        assert await _loaded_service(reader).resolve("41.90.0.1") is None

    async def test_unknown_country_returns_none(self):
        reader = MagicMock()
        reader.city.return_value = _city_result(country=None, city=None)
        assert await _loaded_service(reader).resolve("41.90.0.1") is None

    def test_close_releases_reader(self):
        reader = MagicMock()
        svc = _loaded_service(reader)
        svc.close()
        reader.close.assert_called_once()


# ── GeoEnrichmentService ─────────────────────────────────────────────────────


def _session(sid, ip, clock, age_minutes=0):
    seen = clock.now - timedelta(minutes=age_minutes)
    return AnonymousSession(session_id=sid, ip_address=ip, first_seen_at=seen, last_seen_at=seen)


@pytest.fixture
def geoip():
    svc = MagicMock(spec=GeoIPService)
    svc.resolve = AsyncMock(return_value=NAIROBI)
    return svc


@pytest.fixture
def sleep():
    return AsyncMock()


@pytest.fixture
def enricher(geoip, session_repo, clock, sleep):
    return GeoEnrichmentService(
        geoip, session_repo, lookup_interval=1.0, clock=clock, sleep=sleep
    )


class TestEnrich:
    async def test_sets_location_and_stamp(self, enricher, session_repo, clock):
        session = _session("s1", "41.90.0.1", clock)
        await session_repo.insert(session)
        assert await enricher.enrich(session) == NAIROBI
        stored = session_repo.sessions["s1"]
        assert stored.location == NAIROBI
        assert stored.geo_resolved_at == clock.now

    async def test_miss_still_stamped(self, enricher, geoip, session_repo, clock):
        geoip.resolve.return_value = None
        session = _session("s1", "41.90.0.1", clock)
        await session_repo.insert(session)
        assert await enricher.enrich(session) is None
        assert session_repo.sessions["s1"].geo_resolved_at == clock.now

    async def test_known_location_not_looked_up_again(self, enricher, geoip, clock):
        session = _session("s1", "41.90.0.1", clock)
        session.location = NAIROBI
        await enricher.enrich(session)
        geoip.resolve.assert_not_called()


class TestBackfill:
    async def test_counts_and_rate_limit(self, enricher, geoip, session_repo, sleep, clock):
        for sid, ip, age in [("a", "41.90.0.1", 1), ("b", "10.0.0.7", 2), ("c", "41.90.0.2", 3)]:
            await session_repo.insert(_session(sid, ip, clock, age))
        geoip.resolve.side_effect = [NAIROBI, None]

        result = await enricher.backfill(limit=10)
        assert result == {"processed": 3, "updated": 1, "errors": 0}
        # the private address is marked without a provider call
        assert geoip.resolve.await_count == 2
        assert sleep.await_count == 1
        assert session_repo.sessions["b"].geo_resolved_at == clock.now
        assert await session_repo.find_missing_location(10) == []

    async def test_lookup_errors_counted(self, enricher, geoip, session_repo, clock):
        await session_repo.insert(_session("a", "41.90.0.1", clock))
        geoip.resolve.side_effect = RuntimeError("provider down")
        result = await enricher.backfill()
        assert result["errors"] == 1
        assert result["updated"] == 0

    async def test_respects_limit(self, enricher, session_repo, clock):
        for i in range(5):
            await session_repo.insert(_session(f"s{i}", "41.90.0.1", clock, i))
        result = await enricher.backfill(limit=2)
        assert result["processed"] == 2
