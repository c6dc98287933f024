"""Unit tests for the MongoDB repositories against mocked collections."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import AutoReconnect, CollectionInvalid, ServerSelectionTimeoutError

from errors import StorageUnavailableError
from repositories.event_repository import MongoEventRepository
from repositories.indexes import ensure_indexes
from repositories.session_repository import MongoSessionRepository
from repositories.tenant_repository import MongoTenantRepository
from schemas.models.event import AnalyticsEvent, EventAction, EventMeta
from schemas.models.session import AnonymousSession, GeoLocation

NOW = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


class _Cursor:
    """Async-iterable stand-in for a pymongo cursor."""

    def __init__(self, docs):
        self._docs = list(docs)
        self.sort_args = None
        self.limit_arg = None

    def sort(self, *args):
        self.sort_args = args
        return self

    def limit(self, n):
        self.limit_arg = n
        return self

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for doc in self._docs:
            yield doc


def _collection():
    coll = MagicMock()
    coll.find_one = AsyncMock(return_value=None)
    coll.insert_one = AsyncMock(return_value=MagicMock(inserted_id=ObjectId()))
    coll.update_one = AsyncMock(return_value=MagicMock(modified_count=1))
    coll.update_many = AsyncMock(return_value=MagicMock(modified_count=0))
    coll.find_one_and_update = AsyncMock(return_value=None)
    coll.create_index = AsyncMock()
    coll.find = MagicMock(return_value=_Cursor([]))
    return coll


@pytest.fixture
def collections():
    return {}


@pytest.fixture
def db(collections):
    database = MagicMock()
    database.__getitem__.side_effect = lambda name: collections.setdefault(
        name, _collection()
    )
    database.create_collection = AsyncMock()
    return database


def _event(action="heart"):
    return AnalyticsEvent(
        occurred_at=NOW,
        meta=EventMeta(tenant_id="org-a", session_id="s1", tag_id="T1", action=action),
        ip_address="8.8.8.8",
    )


def _event_doc(action="heart"):
    return {
        "_id": ObjectId(),
        "occurred_at": NOW,
        "meta": {"tenant_id": "org-a", "session_id": "s1", "tag_id": "T1", "action": action},
    }


# ── Events ───────────────────────────────────────────────────────────────────


class TestMongoEventRepository:
    async def test_append_serializes_meta(self, db, collections):
        repo = MongoEventRepository(db)
        event = await repo.append(_event())
        doc = collections["analytics_events"].insert_one.await_args.args[0]
        assert doc["meta"]["action"] == "heart"
        assert doc["occurred_at"] == NOW
        assert "_id" not in doc
        assert event.id is not None

    async def test_append_failure_is_storage_unavailable(self, db, collections):
        repo = MongoEventRepository(db)
        collections["analytics_events"].insert_one.side_effect = AutoReconnect("gone")
        with pytest.raises(StorageUnavailableError):
            await repo.append(_event())

    @pytest.mark.parametrize(
        "inclusive_end, op", [(False, "$lt"), (True, "$lte")], ids=["half_open", "closed"]
    )
    async def test_find_query(self, db, collections, inclusive_end, op):
        repo = MongoEventRepository(db)
        collections["analytics_events"].find.return_value = _Cursor([_event_doc()])
        start = NOW - timedelta(days=1)
        events = await repo.find(
            tenant_id="org-a",
            start=start,
            end=NOW,
            actions=[EventAction.HEART],
            tag_id="T1",
            inclusive_end=inclusive_end,
        )
        query = collections["analytics_events"].find.call_args.args[0]
        assert query == {
            "meta.tenant_id": "org-a",
            "occurred_at": {"$gte": start, op: NOW},
            "meta.action": {"$in": ["heart"]},
            "meta.tag_id": "T1",
        }
        assert events[0].action == EventAction.HEART

    async def test_find_across_tenants_by_ip(self, db, collections):
        repo = MongoEventRepository(db)
        start = NOW - timedelta(days=30)
        await repo.find(tenant_id=None, start=start, end=NOW, ip_address="8.8.8.8")
        query = collections["analytics_events"].find.call_args.args[0]
        assert query == {
            "occurred_at": {"$gte": start, "$lt": NOW},
            "ip_address": "8.8.8.8",
        }

    async def test_find_by_session(self, db, collections):
        cursor = _Cursor([_event_doc("view"), _event_doc("heart")])
        collections.setdefault("analytics_events", _collection()).find.return_value = cursor
        events = await MongoEventRepository(db).find_by_session("s1", limit=10)
        assert [e.action.value for e in events] == ["view", "heart"]
        assert cursor.limit_arg == 10

    async def test_naive_timestamps_load_as_utc(self, db, collections):
        doc = _event_doc()
        doc["occurred_at"] = NOW.replace(tzinfo=None)
        collections.setdefault("analytics_events", _collection()).find.return_value = _Cursor([doc])
        (event,) = await MongoEventRepository(db).find_by_session("s1")
        assert event.occurred_at == NOW
        assert event.occurred_at.tzinfo is not None


# ── Sessions ─────────────────────────────────────────────────────────────────


class TestMongoSessionRepository:
    async def test_get_missing(self, db):
        assert await MongoSessionRepository(db).get("nope") is None

    async def test_insert_failure(self, db, collections):
        repo = MongoSessionRepository(db)
        collections["anonymous_sessions"].insert_one.side_effect = ServerSelectionTimeoutError("x")
        with pytest.raises(StorageUnavailableError):
            await repo.insert(
                AnonymousSession(session_id="s1", first_seen_at=NOW, last_seen_at=NOW)
            )

    async def test_bind_is_single_atomic_pipeline(self, db, collections):
        repo = MongoSessionRepository(db)
        coll = collections["anonymous_sessions"]
        coll.find_one_and_update.return_value = {
            "session_id": "s1",
            "attribution": {
                "session_id": "s1",
                "tag_id": "T1",
                "tenant_id": "org-a",
                "bound_at": NOW,
                "refreshed_at": NOW,
                "sequence": 4,
            },
        }
        attribution = await repo.bind_attribution("s1", "T1", "org-a", NOW)
        assert attribution.sequence == 4

        coll.find_one_and_update.assert_awaited_once()
        call = coll.find_one_and_update.await_args
        assert call.args[0] == {"session_id": "s1"}
        pipeline = call.args[1]
        assert isinstance(pipeline, list)
        assert pipeline[1]["$set"]["attribution"]["sequence"] == "$attribution_sequence"
        assert call.kwargs["return_document"] == ReturnDocument.AFTER

    async def test_bind_missing_session(self, db):
        assert await MongoSessionRepository(db).bind_attribution("s1", "T1", "org-a", NOW) is None

    async def test_bind_failure(self, db, collections):
        repo = MongoSessionRepository(db)
        collections["anonymous_sessions"].find_one_and_update.side_effect = AutoReconnect("x")
        with pytest.raises(StorageUnavailableError):
            await repo.bind_attribution("s1", "T1", "org-a", NOW)

    @pytest.mark.parametrize("modified, expected", [(1, True), (0, False)], ids=["current", "superseded"])
    async def test_refresh_guarded_by_sequence(self, db, collections, modified, expected):
        repo = MongoSessionRepository(db)
        coll = collections["anonymous_sessions"]
        coll.update_one.return_value = MagicMock(modified_count=modified)
        assert await repo.refresh_attribution("s1", 3, NOW) is expected
        assert coll.update_one.await_args.args[0] == {
            "session_id": "s1",
            "attribution.sequence": 3,
        }

    async def test_expire_inactive(self, db, collections):
        repo = MongoSessionRepository(db)
        coll = collections["anonymous_sessions"]
        coll.update_many.return_value = MagicMock(modified_count=7)
        cutoff = NOW - timedelta(hours=24)
        assert await repo.expire_inactive(cutoff, NOW) == 7
        query, update = coll.update_many.await_args.args
        assert query == {"is_active": True, "last_seen_at": {"$lt": cutoff}}
        assert update["$set"]["end_reason"] == "inactive"

    async def test_set_location(self, db, collections):
        repo = MongoSessionRepository(db)
        await repo.set_location("s1", GeoLocation(country="Kenya"), NOW)
        update = collections["anonymous_sessions"].update_one.await_args.args[1]
        assert update["$set"]["location"]["country"] == "Kenya"
        assert update["$set"]["geo_resolved_at"] == NOW

    async def test_find_missing_location(self, db, collections):
        cursor = _Cursor(
            [{"session_id": "s1", "ip_address": "8.8.8.8", "first_seen_at": NOW, "last_seen_at": NOW}]
        )
        collections.setdefault("anonymous_sessions", _collection()).find.return_value = cursor
        sessions = await MongoSessionRepository(db).find_missing_location(25)
        assert [s.session_id for s in sessions] == ["s1"]
        assert cursor.sort_args == ("first_seen_at", -1)
        assert cursor.limit_arg == 25


# ── Tenants ──────────────────────────────────────────────────────────────────


class TestMongoTenantRepository:
    async def test_approved_membership_wins(self, db, collections):
        repo = MongoTenantRepository(db)
        collections["bracelet_memberships"].find_one.return_value = {
            "tag_id": "T3",
            "tenant_id": 7,
            "status": "approved",
        }
        collections["tenants"].find_one.return_value = {"tenant_id": 7, "name": "Hope"}
        tenant = await repo.lookup_by_tag_id("T3")
        assert tenant.tenant_id == "7"
        collections["tags"].find_one.assert_not_called()
        assert collections["tenants"].find_one.await_args.args[0] == {
            "tenant_id": "7",
            "is_active": True,
        }

    async def test_unclaimed_tag(self, db, collections):
        repo = MongoTenantRepository(db)
        collections["tags"].find_one.return_value = {"tag_id": "T9", "tenant_id": None}
        assert await repo.lookup_by_tag_id("T9") is None

    async def test_scan_counter_failure_logged(self, db, collections):
        repo = MongoTenantRepository(db)
        collections["tags"].update_one.side_effect = AutoReconnect("x")
        await repo.record_tag_scan("T1", NOW)


# ── Indexes ──────────────────────────────────────────────────────────────────


class TestEnsureIndexes:
    async def test_creates_time_series_collection(self, db, collections):
        await ensure_indexes(db)
        kwargs = db.create_collection.await_args.kwargs
        assert kwargs["timeseries"]["timeField"] == "occurred_at"
        assert kwargs["timeseries"]["metaField"] == "meta"
        assert collections["anonymous_sessions"].create_index.await_count == 3

    async def test_existing_collection_tolerated(self, db, collections):
        db.create_collection.side_effect = CollectionInvalid("exists")
        await ensure_indexes(db)
        assert collections["analytics_events"].create_index.await_count == 5
