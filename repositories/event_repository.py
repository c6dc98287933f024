"""
MongoDB append-only event log (`analytics_events` time-series collection).

Appends are plain inserts: a retried delivery produces a duplicate document,
which distinct-session counts tolerate. Reads never lock writers.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

from pymongo.asynchronous.database import AsyncDatabase
from pymongo.errors import PyMongoError

from errors import StorageUnavailableError
from schemas.models.event import AnalyticsEvent, EventAction

EVENTS_COLLECTION = "analytics_events"


class MongoEventRepository:
    def __init__(self, db: AsyncDatabase) -> None:
        self._collection = db[EVENTS_COLLECTION]

    async def append(self, event: AnalyticsEvent) -> AnalyticsEvent:
        try:
            result = await self._collection.insert_one(event.to_mongo())
        except PyMongoError as exc:
            raise StorageUnavailableError(
                "Event log is unavailable", details=str(exc)
            ) from exc
        event.id = result.inserted_id
        return event

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
        query: dict = {
            "occurred_at": {"$gte": start, ("$lte" if inclusive_end else "$lt"): end},
        }
        if tenant_id is not None:
            query["meta.tenant_id"] = tenant_id
        if actions is not None:
            query["meta.action"] = {"$in": [a.value for a in actions]}
        if tag_id is not None:
            query["meta.tag_id"] = tag_id
        if ip_address is not None:
            query["ip_address"] = ip_address

        cursor = self._collection.find(query).sort("occurred_at", 1)
        return [AnalyticsEvent.from_mongo(doc) async for doc in cursor]

    async def find_by_session(
        self, session_id: str, limit: int = 500
    ) -> list[AnalyticsEvent]:
        cursor = (
            self._collection.find({"meta.session_id": session_id})
            .sort("occurred_at", 1)
            .limit(limit)
        )
        return [AnalyticsEvent.from_mongo(doc) async for doc in cursor]
