"""Unit tests for EventIngestionPipeline."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from errors import MalformedEventError, StorageUnavailableError
from schemas.models.event import EventAction
from services.ingestion import IngestStatus, RawEvent


async def _scan(pipeline, tag_id, token=None):
    return await pipeline.record_tag_scan(tag_id, session_token=token, ip="8.8.8.8")


class TestTenantStamping:
    async def test_scan_then_prayer_attributed_to_tag_owner(self, pipeline, event_repo, clock):
        scan = await _scan(pipeline, "T1")
        clock.at(10, 15)
        outcome = await pipeline.ingest(
            RawEvent(action="prayer_submit", session_token=scan.session.session_id)
        )
        assert outcome.status == IngestStatus.RECORDED
        assert outcome.event.tenant_id == "org-a"
        assert outcome.event.tag_id == "T1"
        assert [e.action for e in event_repo.events] == [
            EventAction.TAG_SCAN,
            EventAction.PRAYER_SUBMIT,
        ]

    async def test_rescan_moves_later_events(self, pipeline, clock):
        first = await _scan(pipeline, "T1")
        clock.at(10, 10)
        await _scan(pipeline, "T2", first.session.session_id)
        clock.at(10, 12)
        outcome = await pipeline.ingest(
            RawEvent(action="heart", session_token=first.session.session_id)
        )
        assert (outcome.event.tenant_id, outcome.event.tag_id) == ("org-b", "T2")

    async def test_host_subdomain(self, pipeline):
        outcome = await pipeline.ingest(RawEvent(action="view", host="hope.churchtap.app"))
        assert outcome.event.tenant_id == "org-b"

    async def test_tenant_hint(self, pipeline):
        outcome = await pipeline.ingest(RawEvent(action="view", tenant_hint="grace"))
        assert outcome.event.tenant_id == "org-a"

    async def test_payload_tag(self, pipeline):
        outcome = await pipeline.ingest(RawEvent(action="share", tag_hint="T3"))
        assert (outcome.event.tenant_id, outcome.event.tag_id) == ("org-b", "T3")

    async def test_no_signal_recorded_against_default(self, pipeline):
        outcome = await pipeline.ingest(RawEvent(action="view", host="localhost:3000"))
        assert outcome.status == IngestStatus.RECORDED
        assert outcome.event.tenant_id == "1"
        assert outcome.event.tag_id is None

    async def test_lapsed_binding_is_unattributed(self, pipeline, clock):
        scan = await _scan(pipeline, "T1")
        clock.at(10, 31)
        outcome = await pipeline.ingest(
            RawEvent(action="heart", session_token=scan.session.session_id)
        )
        assert outcome.event.tenant_id == "1"
        assert outcome.event.tag_id is None

    async def test_activity_extends_binding(self, pipeline, session_repo, clock):
        scan = await _scan(pipeline, "T1")
        token = scan.session.session_id
        clock.at(10, 25)
        await pipeline.ingest(RawEvent(action="view", session_token=token))
        clock.at(10, 50)
        outcome = await pipeline.ingest(RawEvent(action="heart", session_token=token))
        assert outcome.event.tenant_id == "org-a"
        assert session_repo.sessions[token].attribution.refreshed_at == clock.now


class TestDropsAndFailures:
    async def test_unattributable_event_dropped_without_default(self, pipeline, directory, event_repo):
        directory.default_tenant_id = ""
        outcome = await pipeline.ingest(RawEvent(action="view"))
        assert outcome.status == IngestStatus.DROPPED
        assert outcome.event is None
        assert event_repo.events == []

    async def test_system_action_stored_without_tenant(self, pipeline, directory, event_repo):
        directory.default_tenant_id = ""
        outcome = await pipeline.ingest(RawEvent(action="background-sync"))
        assert outcome.status == IngestStatus.RECORDED
        assert event_repo.events[0].tenant_id is None

    @pytest.mark.parametrize(
        "raw, field",
        [
            (RawEvent(action="levitate"), "action"),
            (RawEvent(action=""), "action"),
            (RawEvent(action="view", tag_hint="bad tag!"), "tagHint"),
            (RawEvent(action="view", subject_id="<x>"), "subjectId"),
        ],
        ids=["unknown_action", "empty_action", "bad_tag", "bad_subject"],
    )
    async def test_malformed(self, pipeline, event_repo, raw, field):
        with pytest.raises(MalformedEventError) as excinfo:
            await pipeline.ingest(raw)
        assert excinfo.value.field == field
        assert event_repo.events == []

    async def test_storage_failure_surfaces(self, pipeline, event_repo):
        event_repo.append = AsyncMock(side_effect=StorageUnavailableError("down"))
        with pytest.raises(StorageUnavailableError):
            await pipeline.ingest(RawEvent(action="view"))


class TestMetadata:
    async def test_metadata_normalised(self, pipeline):
        outcome = await pipeline.ingest(
            RawEvent(
                action="VIEW",
                ip="8.8.8.8",
                user_agent="Mozilla/5.0\x00",
                page_url="/prayers/1",
                referrer="https://m.facebook.com/story",
            )
        )
        event = outcome.event
        assert event.action == EventAction.VIEW
        assert event.user_agent == "Mozilla/5.0"
        assert event.page_url == "/prayers/1"
        assert event.referrer == "facebook.com"
        assert event.ip_address == "8.8.8.8"

    @pytest.mark.parametrize(
        "offset, accepted",
        [
            (timedelta(minutes=-10), True),
            (timedelta(days=-6), True),
            (timedelta(days=-8), False),
            (timedelta(minutes=5), False),
        ],
        ids=["recent", "six_days", "too_old", "future"],
    )
    async def test_client_timestamp_window(self, pipeline, clock, offset, accepted):
        claimed = clock.now + offset
        outcome = await pipeline.ingest(RawEvent(action="view", occurred_at=claimed))
        assert outcome.event.occurred_at == (claimed if accepted else clock.now)


class TestBatch:
    async def test_malformed_entry_does_not_abort(self, pipeline, event_repo):
        result = await pipeline.ingest_batch(
            [
                {"action": "heart", "tagHint": "T1"},
                {"action": "levitate"},
                "not-an-object",
                {"action": "view"},
            ]
        )
        assert result.processed == 2
        assert result.failed == 2
        assert [e["index"] for e in result.errors] == [1, 2]
        assert result.errors[0]["code"] == "malformed_event"
        assert len(event_repo.events) == 2

    async def test_entries_share_one_session(self, pipeline, event_repo):
        result = await pipeline.ingest_batch(
            [{"action": "view"}, {"action": "heart"}, {"action": "share"}],
            ip="8.8.8.8",
        )
        assert {e.session_id for e in event_repo.events} == {result.session.session_id}

    async def test_stale_token_reissued_once(self, pipeline, event_repo):
        result = await pipeline.ingest_batch(
            [{"action": "view", "sessionToken": "sess_gone"}] * 3
        )
        assert result.processed == 3
        assert len({e.session_id for e in event_repo.events}) == 1

    async def test_drops_counted(self, pipeline, directory):
        directory.default_tenant_id = ""
        result = await pipeline.ingest_batch(
            [{"action": "view"}, {"action": "background_sync"}]
        )
        assert (result.processed, result.dropped) == (1, 1)

    async def test_storage_outage_aborts_batch(self, pipeline, event_repo):
        event_repo.append = AsyncMock(side_effect=StorageUnavailableError("down"))
        with pytest.raises(StorageUnavailableError):
            await pipeline.ingest_batch([{"action": "view"}])


class TestTagScan:
    async def test_claimed_scan(self, pipeline, event_repo, tenant_repo, session_store, clock):
        outcome = await _scan(pipeline, "T1")
        assert outcome.claimed
        assert outcome.tenant_id == "org-a"
        assert outcome.event.action == EventAction.TAG_SCAN
        assert outcome.event.occurred_at == clock.now

        await session_store.drain()
        assert tenant_repo.tags["T1"].scan_count == 1
        assert tenant_repo.tags["T1"].last_scanned_at == clock.now

    async def test_unknown_tag_recorded_against_default(self, pipeline, tenant_repo, session_store):
        first = await _scan(pipeline, "T1")
        outcome = await _scan(pipeline, "T-orphan", first.session.session_id)
        assert not outcome.claimed
        assert outcome.tenant_id == "1"
        assert outcome.event.tag_id == "T-orphan"
        assert outcome.session.attribution.tag_id == "T1"

        await session_store.drain()
        assert tenant_repo.tags["T-orphan"].scan_count == 0

    async def test_scan_action_through_ingest_binds_session(
        self, pipeline, tenant_repo, session_store, clock
    ):
        scan = await pipeline.ingest(RawEvent(action="tag_scan", tag_hint="T1"))
        assert scan.status == IngestStatus.RECORDED
        assert (scan.event.tenant_id, scan.event.tag_id) == ("org-a", "T1")
        assert scan.attribution.tag_id == "T1"

        clock.at(10, 20)
        prayer = await pipeline.ingest(
            RawEvent(action="prayer_submit", session_token=scan.session.session_id)
        )
        assert (prayer.event.tenant_id, prayer.event.tag_id) == ("org-a", "T1")

        await session_store.drain()
        assert tenant_repo.tags["T1"].scan_count == 1

    async def test_scan_action_owner_beats_request_host(self, pipeline):
        outcome = await pipeline.ingest(
            RawEvent(action="tag_scan", tag_hint="T2", host="grace.churchtap.app")
        )
        assert (outcome.event.tenant_id, outcome.event.tag_id) == ("org-b", "T2")

    async def test_unclaimed_scan_action_keeps_binding(self, pipeline):
        first = await _scan(pipeline, "T1")
        outcome = await pipeline.ingest(
            RawEvent(
                action="tag_scan",
                tag_hint="T-orphan",
                session_token=first.session.session_id,
            )
        )
        assert outcome.status == IngestStatus.RECORDED
        assert outcome.event.tag_id == "T-orphan"
        assert outcome.session.attribution.tag_id == "T1"

    async def test_invalid_tag_id(self, pipeline):
        with pytest.raises(MalformedEventError):
            await _scan(pipeline, "../../etc")
