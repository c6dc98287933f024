"""
Anonymous session document model.

Maps to the `anonymous_sessions` collection, keyed by the opaque
``session_id`` token. Sessions are never hard-deleted: the cleanup job only
flips ``is_active`` off once ``last_seen_at`` falls behind the inactivity
cutoff.

The current tag binding lives on the session itself (``attribution``) so that
replacing it is a single-document atomic update. ``attribution_sequence`` is
incremented on every bind and copied into the binding, which gives each
session a monotonic order of acknowledged scans.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel, ConfigDict

from schemas.models.base import MongoBaseModel


class GeoLocation(BaseModel):
    """Best-effort location resolved from the session's first IP."""

    model_config = ConfigDict(populate_by_name=True)

    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @property
    def is_known(self) -> bool:
        return bool(self.country)


class TagAttribution(BaseModel):
    """Binding of a session to the tag (and its tenant) it most recently scanned."""

    model_config = ConfigDict(populate_by_name=True)

    session_id: str
    tag_id: str
    tenant_id: str
    bound_at: datetime
    # Sliding TTL anchor; equals bound_at until the binding is extended
    refreshed_at: datetime
    sequence: int = 0

    def is_live(self, now: datetime, ttl: timedelta) -> bool:
        return now - self.refreshed_at <= ttl


class AnonymousSession(MongoBaseModel):
    """Document model for the `anonymous_sessions` collection."""

    session_id: str
    tenant_id: Optional[str] = None

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    first_seen_at: datetime
    last_seen_at: datetime
    total_interactions: int = 0

    is_active: bool = True
    ended_at: Optional[datetime] = None
    end_reason: Optional[str] = None

    originating_tag_id: Optional[str] = None
    attribution: Optional[TagAttribution] = None
    attribution_sequence: int = 0

    location: Optional[GeoLocation] = None
    geo_resolved_at: Optional[datetime] = None
