"""
MongoDB session store backend (`anonymous_sessions` collection).

Every mutation is a single-document update, so concurrent requests for the
same session never observe a half-applied change. The attribution bind uses
an update pipeline so that the sequence bump and the new binding land in one
atomic write.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

from pymongo import ReturnDocument
from pymongo.asynchronous.database import AsyncDatabase
from pymongo.errors import PyMongoError

from errors import StorageUnavailableError
from schemas.models.session import AnonymousSession, GeoLocation, TagAttribution


class MongoSessionRepository:
    def __init__(self, db: AsyncDatabase) -> None:
        self._collection = db["anonymous_sessions"]

    async def get(self, session_id: str) -> Optional[AnonymousSession]:
        doc = await self._collection.find_one({"session_id": session_id})
        return AnonymousSession.from_mongo(doc)

    async def get_many(self, session_ids: Iterable[str]) -> list[AnonymousSession]:
        ids = list(set(session_ids))
        if not ids:
            return []
        cursor = self._collection.find({"session_id": {"$in": ids}})
        return [AnonymousSession.from_mongo(doc) async for doc in cursor]

    async def insert(self, session: AnonymousSession) -> AnonymousSession:
        try:
            result = await self._collection.insert_one(session.to_mongo())
        except PyMongoError as exc:
            raise StorageUnavailableError(
                "Session store is unavailable", details=str(exc)
            ) from exc
        session.id = result.inserted_id
        return session

    async def touch(self, session_id: str, seen_at: datetime) -> None:
        await self._collection.update_one(
            {"session_id": session_id},
            {
                "$set": {"last_seen_at": seen_at},
                "$inc": {"total_interactions": 1},
            },
        )

    async def bind_attribution(
        self, session_id: str, tag_id: str, tenant_id: str, bound_at: datetime
    ) -> Optional[TagAttribution]:
        next_sequence = {"$add": [{"$ifNull": ["$attribution_sequence", 0]}, 1]}
        pipeline = [
            {"$set": {"attribution_sequence": next_sequence}},
            {
                "$set": {
                    "tenant_id": {"$literal": tenant_id},
                    "originating_tag_id": {"$literal": tag_id},
                    "attribution": {
                        "session_id": {"$literal": session_id},
                        "tag_id": {"$literal": tag_id},
                        "tenant_id": {"$literal": tenant_id},
                        "bound_at": bound_at,
                        "refreshed_at": bound_at,
                        "sequence": "$attribution_sequence",
                    },
                }
            },
        ]
        try:
            doc = await self._collection.find_one_and_update(
                {"session_id": session_id},
                pipeline,
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as exc:
            raise StorageUnavailableError(
                "Session store is unavailable", details=str(exc)
            ) from exc
        if doc is None:
            return None
        return TagAttribution.model_validate(doc["attribution"])

    async def refresh_attribution(
        self, session_id: str, sequence: int, refreshed_at: datetime
    ) -> bool:
        result = await self._collection.update_one(
            {"session_id": session_id, "attribution.sequence": sequence},
            {"$set": {"attribution.refreshed_at": refreshed_at}},
        )
        return result.modified_count == 1

    async def end(self, session_id: str, reason: str, ended_at: datetime) -> bool:
        result = await self._collection.update_one(
            {"session_id": session_id, "is_active": True},
            {
                "$set": {
                    "is_active": False,
                    "ended_at": ended_at,
                    "end_reason": reason,
                }
            },
        )
        return result.modified_count == 1

    async def expire_inactive(self, cutoff: datetime, ended_at: datetime) -> int:
        result = await self._collection.update_many(
            {"is_active": True, "last_seen_at": {"$lt": cutoff}},
            {
                "$set": {
                    "is_active": False,
                    "ended_at": ended_at,
                    "end_reason": "inactive",
                }
            },
        )
        return result.modified_count

    async def find_missing_location(self, limit: int) -> list[AnonymousSession]:
        cursor = (
            self._collection.find(
                {
                    "location": None,
                    "geo_resolved_at": None,
                    "ip_address": {"$nin": [None, ""]},
                }
            )
            .sort("first_seen_at", -1)
            .limit(limit)
        )
        return [AnonymousSession.from_mongo(doc) async for doc in cursor]

    async def set_location(
        self,
        session_id: str,
        location: Optional[GeoLocation],
        resolved_at: datetime,
    ) -> None:
        await self._collection.update_one(
            {"session_id": session_id},
            {
                "$set": {
                    "location": location.model_dump() if location else None,
                    "geo_resolved_at": resolved_at,
                }
            },
        )
