"""
MongoDB tenant directory.

Reads `tenants`, `tags` and `bracelet_memberships`. The directory is owned by
an external provisioning workflow; the only write issued from here is the
scan counter bump on `tags`.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pymongo.asynchronous.database import AsyncDatabase
from pymongo.errors import PyMongoError

from schemas.models.tenant import MembershipStatus, Tenant
from shared.logging import get_logger

log = get_logger(__name__)


class MongoTenantRepository:
    def __init__(self, db: AsyncDatabase) -> None:
        self._tenants = db["tenants"]
        self._tags = db["tags"]
        self._memberships = db["bracelet_memberships"]

    async def get_by_id(self, tenant_id: str) -> Optional[Tenant]:
        doc = await self._tenants.find_one({"tenant_id": tenant_id})
        return Tenant.from_mongo(doc)

    async def lookup_by_subdomain(self, subdomain: str) -> Optional[Tenant]:
        doc = await self._tenants.find_one(
            {"subdomain": subdomain.lower(), "is_active": True}
        )
        return Tenant.from_mongo(doc)

    async def lookup_by_custom_domain(self, host: str) -> Optional[Tenant]:
        doc = await self._tenants.find_one(
            {"custom_domain": host.lower(), "is_active": True}
        )
        return Tenant.from_mongo(doc)

    async def lookup_by_tag_id(self, tag_id: str) -> Optional[Tenant]:
        membership = await self._memberships.find_one(
            {"tag_id": tag_id, "status": MembershipStatus.APPROVED.value},
            sort=[("approved_at", -1)],
        )
        if membership is not None:
            tenant_id = str(membership["tenant_id"])
        else:
            tag = await self._tags.find_one({"tag_id": tag_id})
            if tag is None or tag.get("tenant_id") is None:
                return None
            tenant_id = str(tag["tenant_id"])

        doc = await self._tenants.find_one({"tenant_id": tenant_id, "is_active": True})
        return Tenant.from_mongo(doc)

    async def record_tag_scan(self, tag_id: str, scanned_at: datetime) -> None:
        try:
            await self._tags.update_one(
                {"tag_id": tag_id},
                {"$inc": {"scan_count": 1}, "$set": {"last_scanned_at": scanned_at}},
            )
        except PyMongoError as exc:
            log.warning("tag_scan_counter_failed", tag_id=tag_id, error=str(exc))
