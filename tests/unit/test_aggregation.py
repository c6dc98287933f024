"""Unit tests for AnalyticsAggregationService."""

import json
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from pymongo.errors import ConnectionFailure

from errors import ValidationError
from infrastructure.cache.dual_cache import DualCache
from schemas.models.event import EventAction
from schemas.models.session import AnonymousSession, GeoLocation
from services.aggregation import AnalyticsAggregationService, resolve_stage
from shared.time_bucket_utils import AnalyticsWindow, TimeBucketStrategy

W7 = AnalyticsWindow.LAST_7D


@pytest.fixture
def service(event_repo, session_repo, clock):
    return AnalyticsAggregationService(event_repo, session_repo, clock=clock)


@pytest.fixture
def seeded(event_repo, make_event, clock):
    """Three sessions of org-a plus noise from org-b, all in the last day."""
    t = clock.now - timedelta(hours=5)
    event_repo.events.extend(
        [
            make_event("tag_scan", t, session_id="s1", tag_id="T1", ip="1.1.1.1"),
            make_event("heart", t + timedelta(minutes=2), session_id="s1", tag_id="T1", ip="1.1.1.1"),
            make_event("prayer_submit", t + timedelta(minutes=5), session_id="s1", tag_id="T1", ip="1.1.1.1"),
            make_event("tag_scan", t + timedelta(hours=1), session_id="s2", tag_id="T1", ip="2.2.2.2"),
            make_event("heart", t + timedelta(hours=1, minutes=1), session_id="s2", ip="2.2.2.2",
                       referrer="google.com"),
            make_event("tag_scan", t + timedelta(hours=2), session_id="s3", tag_id="T3", ip="2.2.2.2"),
            make_event("view", t, tenant_id="org-b", session_id="s9", ip="9.9.9.9"),
        ]
    )
    return event_repo


class TestRollup:
    async def test_tenant_scoped_totals(self, service, seeded):
        result = await service.rollup("org-a", W7)
        assert result.granularity == "day"
        assert result.totals["total_events"] == 6
        assert result.totals["tag_scan"] == 3
        assert result.totals["heart"] == 2
        assert len(result.buckets) == 8  # partial leading day + seven
        assert result.degraded is False

    async def test_day_equals_sum_of_hours(self, service, seeded, clock):
        day_start = clock.now.replace(hour=0, minute=0)
        day_end = day_start + timedelta(days=1)
        hourly = await service.rollup_range("org-a", day_start, day_end, TimeBucketStrategy.HOURLY)
        daily = await service.rollup_range("org-a", day_start, day_end, TimeBucketStrategy.DAILY)
        assert len(hourly.buckets) == 24
        assert len(daily.buckets) == 1
        assert daily.buckets[0].total_events == sum(b.total_events for b in hourly.buckets)
        for action, count in daily.buckets[0].by_action.items():
            assert count == sum(b.by_action.get(action, 0) for b in hourly.buckets)

    async def test_duplicate_delivery_keeps_unique_sessions(self, service, event_repo, make_event, clock):
        event = make_event("heart", clock.now - timedelta(hours=1))
        event_repo.events.extend([event, event.model_copy()])
        result = await service.rollup("org-a", AnalyticsWindow.LAST_24H, TimeBucketStrategy.DAILY)
        assert result.totals["total_events"] == 2
        assert sum(b.unique_sessions for b in result.buckets) == 1

    async def test_read_failure_degrades(self, service, event_repo):
        event_repo.find = AsyncMock(side_effect=ConnectionFailure("down"))
        result = await service.rollup("org-a", W7)
        assert result.degraded is True
        assert result.buckets == []


class TestFunnel:
    async def test_default_funnel(self, service, seeded):
        result = await service.funnel("org-a", W7)
        stages = {s.stage: s for s in result.stages}
        assert [s.stage for s in result.stages] == ["scan", "heart", "community_action"]
        assert stages["scan"].sessions == 3
        assert stages["heart"].sessions == 2
        assert stages["community_action"].sessions == 1
        assert stages["scan"].conversion_from_previous is None
        assert stages["heart"].conversion_from_previous == 66.67
        assert stages["community_action"].conversion_from_previous == 50.0
        assert stages["community_action"].conversion_from_first == 33.33

    async def test_custom_stages(self, service, seeded):
        result = await service.funnel("org-a", W7, ["scan", "prayer"])
        assert [s.sessions for s in result.stages] == [3, 1]

    def test_resolve_stage(self):
        assert resolve_stage("Heart") == frozenset({EventAction.HEART})
        assert EventAction.PRAYER_SUBMIT in resolve_stage("prayer")
        with pytest.raises(ValidationError):
            resolve_stage("teleport")


class TestGeo:
    async def test_groups_sessions_by_location(self, service, seeded, session_repo, clock):
        for sid, location in [
            ("s1", GeoLocation(country="Kenya", city="Nairobi", latitude=-1.0, longitude=36.0)),
            ("s2", GeoLocation(country="Kenya", city="Nairobi", latitude=-1.2, longitude=36.2)),
            ("s3", None),
        ]:
            session_repo.sessions[sid] = AnonymousSession(
                session_id=sid, first_seen_at=clock.now, last_seen_at=clock.now, location=location
            )

        result = await service.geo_buckets("org-a", W7)
        assert result.located_sessions == 2
        assert result.unlocated_sessions == 1
        bucket = result.buckets[0]
        assert (bucket.country, bucket.city, bucket.sessions, bucket.events) == (
            "Kenya", "Nairobi", 2, 5
        )
        assert bucket.latitude == pytest.approx(-1.1)


class TestSummaryAndLeaderboards:
    async def test_summary(self, service, seeded, session_repo, clock):
        session_repo.sessions["s1"] = AnonymousSession(
            session_id="s1",
            first_seen_at=clock.now,
            last_seen_at=clock.now,
            location=GeoLocation(country="Ghana"),
        )
        result = await service.summary("org-a", W7)
        assert result.total_events == 6
        assert result.unique_sessions == 3
        assert result.unique_ips == 2
        assert result.unique_tags == 2
        assert result.tag_scans == 3
        assert result.countries == 1
        assert result.top_referrers[0].referrer == "direct"

    async def test_top_tags(self, service, seeded):
        result = await service.top_tags("org-a", W7, limit=1)
        assert [t.tag_id for t in result.tags] == ["T1"]
        assert result.tags[0].scans == 2
        assert result.tags[0].scans_24h == 2

    async def test_patterns(self, service, seeded):
        result = await service.patterns("org-a", W7)
        assert len(result.hourly) == 24
        assert len(result.weekly) == 7
        assert sum(h.events for h in result.hourly) == 6

    async def test_retention(self, service, event_repo, make_event, clock):
        day = timedelta(days=1)
        event_repo.events.extend(
            [
                make_event("tag_scan", clock.now - 2 * day, session_id="a1", tag_id="T1", ip="1.1.1.1"),
                make_event("tag_scan", clock.now - day, session_id="a2", tag_id="T3", ip="1.1.1.1"),
                make_event("view", clock.now - day, session_id="b1", ip="2.2.2.2"),
            ]
        )
        result = await service.visitor_retention("org-a", W7)
        assert result.unique_visitors == 2
        assert result.total_sessions == 3
        assert result.sessions_per_visitor == 1.5
        assert result.multi_tag_visitors == 1
        assert result.return_visitors == 1
        assert result.return_rate == 50.0


class TestPlatformScope:
    async def test_summary_spans_every_tenant(self, service, seeded):
        result = await service.summary(None, W7)
        assert result.tenant_id is None
        assert result.total_events == 7
        assert result.unique_sessions == 4
        assert result.unique_ips == 3

    async def test_geo_spans_every_tenant(self, service, seeded, session_repo, clock):
        for sid, country in [("s1", "Kenya"), ("s9", "Ghana")]:
            session_repo.sessions[sid] = AnonymousSession(
                session_id=sid,
                first_seen_at=clock.now,
                last_seen_at=clock.now,
                location=GeoLocation(country=country),
            )
        everywhere = await service.geo_buckets(None, W7)
        assert {b.country for b in everywhere.buckets} == {"Kenya", "Ghana"}
        assert everywhere.unlocated_sessions == 2

        org_b = await service.geo_buckets("org-b", W7)
        assert [b.country for b in org_b.buckets] == ["Ghana"]


class TestDrilldowns:
    async def test_tag_details_cross_tenant_newest_first(
        self, service, seeded, make_event, session_repo, clock
    ):
        seeded.events.append(
            make_event("view", clock.now - timedelta(hours=1), tenant_id="org-b",
                       session_id="s9", tag_id="T1", ip="9.9.9.9")
        )
        session_repo.sessions["s1"] = AnonymousSession(
            session_id="s1",
            first_seen_at=clock.now,
            last_seen_at=clock.now,
            location=GeoLocation(country="Kenya", city="Nairobi"),
        )

        result = await service.tag_details("T1")
        assert result.window == "7d"
        assert result.tenant_id is None
        assert result.total == 5
        assert result.sessions == 3
        assert result.tenants == ["org-a", "org-b"]
        times = [i.occurred_at for i in result.interactions]
        assert times == sorted(times, reverse=True)
        assert result.interactions[0].tenant_id == "org-b"
        s1_rows = [i for i in result.interactions if i.session_id == "s1"]
        assert {(i.country, i.city) for i in s1_rows} == {("Kenya", "Nairobi")}

    async def test_limit_caps_rows_not_totals(self, service, seeded):
        result = await service.tag_details("T1", limit=2)
        assert len(result.interactions) == 2
        assert result.total == 4

    async def test_visitor_details(self, service, seeded, make_event, clock):
        seeded.events.append(
            make_event("heart", clock.now - timedelta(days=10), tenant_id="org-b",
                       session_id="s8", ip="2.2.2.2")
        )
        result = await service.visitor_details("2.2.2.2")
        assert result.window == "30d"
        assert result.ip_address == "2.2.2.2"
        assert result.total == 4
        assert result.tenants == ["org-a", "org-b"]
        assert {i.ip_address for i in result.interactions} == {"2.2.2.2"}

    async def test_visitor_details_respects_window(self, service, seeded, make_event, clock):
        seeded.events.append(
            make_event("heart", clock.now - timedelta(days=10), session_id="s8", ip="2.2.2.2")
        )
        result = await service.visitor_details("2.2.2.2", W7)
        assert result.total == 3

    async def test_read_failure_degrades(self, service, event_repo):
        event_repo.find = AsyncMock(side_effect=ConnectionFailure("down"))
        result = await service.tag_details("T1")
        assert result.degraded is True
        assert result.interactions == []

    async def test_location_failure_keeps_rows(self, service, seeded, session_repo):
        session_repo.get_many = AsyncMock(side_effect=ConnectionFailure("down"))
        result = await service.visitor_details("1.1.1.1")
        assert result.degraded is True
        assert result.total == 3
        assert all(i.country is None for i in result.interactions)


class TestCaching:
    def _redis(self, live=None):
        r = AsyncMock()
        r.get = AsyncMock(side_effect=[live, None] if live else [None, None])
        r.set = AsyncMock(return_value=True)
        r.setex = AsyncMock()
        r.delete = AsyncMock()
        return r

    async def test_primary_hit_skips_the_log(self, event_repo, session_repo, clock):
        cached = {
            "tenant_id": "org-a",
            "window": "7d",
            "start": "2026-02-23T10:00:00Z",
            "end": "2026-03-02T10:00:00Z",
            "granularity": "day",
            "totals": {"total_events": 41},
        }
        redis = self._redis(live=json.dumps(cached))
        event_repo.find = AsyncMock()
        service = AnalyticsAggregationService(
            event_repo, session_repo, cache=DualCache(redis), clock=clock
        )
        result = await service.rollup("org-a", W7)
        assert result.totals == {"total_events": 41}
        event_repo.find.assert_not_called()

    async def test_miss_populates_cache(self, seeded, session_repo, clock):
        redis = self._redis()
        service = AnalyticsAggregationService(
            seeded, session_repo, cache=DualCache(redis), clock=clock
        )
        result = await service.summary("org-a", W7)
        assert result.total_events == 6
        assert redis.setex.await_count == 2
        key = redis.setex.await_args_list[0].args[0]
        assert key == "analytics:summary:org-a:7d:live"

    async def test_degraded_result_not_cached(self, event_repo, session_repo, clock):
        redis = self._redis()
        event_repo.find = AsyncMock(side_effect=ConnectionFailure("down"))
        service = AnalyticsAggregationService(
            event_repo, session_repo, cache=DualCache(redis), clock=clock
        )
        result = await service.summary("org-a", W7)
        assert result.degraded is True
        redis.setex.assert_not_called()

    async def test_platform_scope_has_its_own_key(self, seeded, session_repo, clock):
        redis = self._redis()
        service = AnalyticsAggregationService(
            seeded, session_repo, cache=DualCache(redis), clock=clock
        )
        await service.summary(None, W7)
        key = redis.setex.await_args_list[0].args[0]
        assert key == "analytics:summary:*:7d:live"
