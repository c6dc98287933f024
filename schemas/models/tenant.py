"""
Tenant directory document models.

Tenant                — `tenants` collection; one church/organization account
TagDoc                — `tags` collection; the registry of physical NFC tags
BraceletMembershipDoc — `bracelet_memberships`; a tenant's claim on a tag

All three are provisioned outside this service and are read-only here, with
the single exception of the scan counter on TagDoc.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import field_serializer, field_validator

from schemas.models.base import MongoBaseModel


class Tenant(MongoBaseModel):
    """An organization. Owns every session/event attributed to it."""

    tenant_id: str
    name: str = ""
    subdomain: Optional[str] = None
    custom_domain: Optional[str] = None
    is_active: bool = True

    @field_validator("tenant_id", mode="before")
    @classmethod
    def _coerce_tenant_id(cls, v):
        # provisioning historically used integer org ids
        return str(v) if isinstance(v, int) else v

    @field_validator("subdomain", "custom_domain", mode="after")
    @classmethod
    def _lowercase(cls, v: Optional[str]) -> Optional[str]:
        return v.lower() if v else v


class TagDoc(MongoBaseModel):
    """Registry entry for a physical tag. ``tenant_id`` is None when unclaimed."""

    tag_id: str
    tenant_id: Optional[str] = None
    label: Optional[str] = None
    scan_count: int = 0
    last_scanned_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @field_validator("tenant_id", mode="before")
    @classmethod
    def _coerce_tenant_id(cls, v):
        return str(v) if isinstance(v, int) else v


class MembershipStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class BraceletMembershipDoc(MongoBaseModel):
    """A tenant's request to adopt a tag; only APPROVED rows route scans."""

    tag_id: str
    tenant_id: str
    status: MembershipStatus = MembershipStatus.PENDING
    requested_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None

    @field_serializer("status")
    def _serialize_status(self, status: MembershipStatus) -> str:
        return status.value

    @field_validator("tenant_id", mode="before")
    @classmethod
    def _coerce_tenant_id(cls, v):
        return str(v) if isinstance(v, int) else v
