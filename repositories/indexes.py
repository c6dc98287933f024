"""
Collection and index bootstrap, run once at application startup.
"""

from __future__ import annotations

from pymongo import ASCENDING, DESCENDING
from pymongo.asynchronous.database import AsyncDatabase
from pymongo.errors import CollectionInvalid, PyMongoError

from repositories.event_repository import EVENTS_COLLECTION
from shared.logging import get_logger

log = get_logger(__name__)


async def ensure_indexes(db: AsyncDatabase) -> None:
    try:
        await db["tenants"].create_index([("tenant_id", ASCENDING)], unique=True)
        await db["tenants"].create_index(
            [("subdomain", ASCENDING)], unique=True, sparse=True
        )
        await db["tenants"].create_index(
            [("custom_domain", ASCENDING)], unique=True, sparse=True
        )

        await db["tags"].create_index([("tag_id", ASCENDING)], unique=True)
        await db["bracelet_memberships"].create_index(
            [("tag_id", ASCENDING), ("status", ASCENDING)]
        )

        sessions = db["anonymous_sessions"]
        await sessions.create_index([("session_id", ASCENDING)], unique=True)
        await sessions.create_index(
            [("is_active", ASCENDING), ("last_seen_at", ASCENDING)]
        )
        await sessions.create_index(
            [("geo_resolved_at", ASCENDING), ("first_seen_at", DESCENDING)]
        )

        # Time-series collection for the event log
        try:
            await db.create_collection(
                EVENTS_COLLECTION,
                timeseries={
                    "timeField": "occurred_at",
                    "metaField": "meta",
                    "granularity": "seconds",
                },
            )
        except CollectionInvalid:
            # already exists
            pass

        events = db[EVENTS_COLLECTION]
        await events.create_index(
            [("meta.tenant_id", ASCENDING), ("occurred_at", DESCENDING)]
        )
        await events.create_index(
            [
                ("meta.tenant_id", ASCENDING),
                ("meta.tag_id", ASCENDING),
                ("occurred_at", ASCENDING),
            ]
        )
        await events.create_index(
            [("meta.session_id", ASCENDING), ("occurred_at", ASCENDING)]
        )
        # platform drilldowns by tag or visitor, across tenants
        await events.create_index(
            [("meta.tag_id", ASCENDING), ("occurred_at", DESCENDING)]
        )
        await events.create_index(
            [("ip_address", ASCENDING), ("occurred_at", DESCENDING)]
        )
        log.info("indexes_ensured")
    except PyMongoError as exc:
        log.error("index_creation_failed", error=str(exc), error_type=type(exc).__name__)
