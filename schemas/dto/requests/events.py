"""
Request DTOs for the ingestion endpoints.

IngestEventRequest — POST /events and each entry of POST /events/batch
BatchIngestRequest — POST /events/batch
TagScanRequest     — POST /tags/{tag_id}/scan (optional body)

Field names are camelCase on the wire (``tenantHint``, ``sessionToken``...)
and snake_case in Python. ``action`` is kept as a plain string here so that
an unknown action surfaces as a MalformedEventError from the pipeline rather
than a 422 for the whole request.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from shared.datetime_utils import parse_datetime

MAX_BATCH_SIZE = 500


class ClientMeta(BaseModel):
    """Client-side context attached to an event."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    page_url: Optional[str] = Field(default=None, alias="pageUrl")
    referrer: Optional[str] = None
    user_agent: Optional[str] = Field(default=None, alias="userAgent")
    # Set by clients replaying queued events (service-worker background sync)
    occurred_at: Optional[datetime] = Field(default=None, alias="occurredAt")

    @field_validator("occurred_at", mode="before")
    @classmethod
    def _parse_occurred_at(cls, v: Any) -> Optional[datetime]:
        # epoch seconds or ISO 8601; anything else falls back to receive time
        return parse_datetime(v)


class IngestEventRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    action: str = Field(min_length=1, max_length=64)
    tenant_hint: Optional[str] = Field(default=None, alias="tenantHint", max_length=128)
    tag_hint: Optional[str] = Field(default=None, alias="tagHint", max_length=128)
    session_token: Optional[str] = Field(
        default=None, alias="sessionToken", max_length=256
    )
    subject_id: Optional[str] = Field(default=None, alias="subjectId", max_length=128)
    client_meta: ClientMeta = Field(default_factory=ClientMeta, alias="clientMeta")


class BatchIngestRequest(BaseModel):
    """Entries stay raw, even non-objects, so that each one is validated on its own."""

    model_config = ConfigDict(populate_by_name=True)

    events: list[Any] = Field(max_length=MAX_BATCH_SIZE)
    session_token: Optional[str] = Field(
        default=None, alias="sessionToken", max_length=256
    )


class TagScanRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    session_token: Optional[str] = Field(
        default=None, alias="sessionToken", max_length=256
    )
    client_meta: ClientMeta = Field(default_factory=ClientMeta, alias="clientMeta")
