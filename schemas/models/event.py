"""
Analytics event document model.

Maps to the `analytics_events` MongoDB time-series collection.

Time-series schema:
  timeField   = "occurred_at"
  metaField   = "meta"
  granularity = "seconds"

Events are write-once. Every event except ``background_sync`` carries a
``meta.tenant_id``; unattributable user events are dropped before they get
here.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, field_serializer

from schemas.models.base import MongoBaseModel


class EventAction(str, Enum):
    """Closed set of actions the ingestion pipeline accepts."""

    VIEW = "view"
    HEART = "heart"
    FAVORITE = "favorite"
    SHARE = "share"
    DOWNLOAD = "download"
    PRAYER_SUBMIT = "prayer_submit"
    PRAYER_INTERACTION = "prayer_interaction"
    PRAISE_SUBMIT = "praise_submit"
    PRAISE_INTERACTION = "praise_interaction"
    INSIGHT_SUBMIT = "insight_submit"
    TAG_SCAN = "tag_scan"
    BACKGROUND_SYNC = "background_sync"

    @classmethod
    def parse(cls, value: object) -> Optional["EventAction"]:
        """Case/dash-tolerant lookup; None for anything outside the set."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        normalised = value.strip().lower().replace("-", "_")
        try:
            return cls(normalised)
        except ValueError:
            return None


# Actions that may be stored without a tenant
SYSTEM_ACTIONS = frozenset({EventAction.BACKGROUND_SYNC})

PRAYER_ACTIONS = frozenset({EventAction.PRAYER_SUBMIT, EventAction.PRAYER_INTERACTION})
PRAISE_ACTIONS = frozenset({EventAction.PRAISE_SUBMIT, EventAction.PRAISE_INTERACTION})
INSIGHT_ACTIONS = frozenset(
    {
        EventAction.INSIGHT_SUBMIT,
        EventAction.HEART,
        EventAction.FAVORITE,
        EventAction.SHARE,
        EventAction.DOWNLOAD,
    }
)
CORRELATED_ACTIONS = PRAYER_ACTIONS | PRAISE_ACTIONS | INSIGHT_ACTIONS

# Submissions counted by the "community_action" funnel stage
COMMUNITY_ACTIONS = frozenset(
    {
        EventAction.PRAYER_SUBMIT,
        EventAction.PRAISE_SUBMIT,
        EventAction.INSIGHT_SUBMIT,
    }
)


class EventMeta(BaseModel):
    """The metaField subdocument for the time-series collection."""

    tenant_id: Optional[str] = None  # None only for SYSTEM_ACTIONS
    session_id: str
    tag_id: Optional[str] = None
    action: EventAction

    @field_serializer("action")
    def _serialize_action(self, action: EventAction) -> str:
        return action.value


class AnalyticsEvent(MongoBaseModel):
    """Document model for the `analytics_events` time-series collection."""

    # Time-series timeField
    occurred_at: datetime

    # Time-series metaField
    meta: EventMeta

    subject_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    page_url: Optional[str] = None
    referrer: Optional[str] = None  # sanitised referrer domain, nullable

    # Convenience accessors used by the aggregation code

    @property
    def tenant_id(self) -> Optional[str]:
        return self.meta.tenant_id

    @property
    def session_id(self) -> str:
        return self.meta.session_id

    @property
    def tag_id(self) -> Optional[str]:
        return self.meta.tag_id

    @property
    def action(self) -> EventAction:
        return self.meta.action
