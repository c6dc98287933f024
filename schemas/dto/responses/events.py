"""
Response DTOs for the ingestion and session endpoints.

IngestEventResponse — POST /events (202)
BatchIngestResponse — POST /events/batch
TagScanResponse     — POST /tags/{tag_id}/scan
SessionStatus       — GET /session/status
SessionExtendResponse / SessionEndResponse — POST /session/extend, /session/end
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class IngestEventResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    status: str  # "recorded" | "dropped"
    session_token: str


class BatchIngestResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    processed: int
    dropped: int
    failed: int
    errors: list[dict[str, Any]] = Field(default_factory=list)
    session_token: Optional[str] = None


class TagScanResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    tag_id: str
    status: str  # "claimed" | "unclaimed"
    tenant_id: Optional[str] = None
    subdomain: Optional[str] = None
    session_token: str


class AttributionInfo(BaseModel):
    tag_id: str
    tenant_id: str
    bound_at: datetime
    refreshed_at: datetime
    expires_at: datetime
    sequence: int


class SessionStatus(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    active: bool
    session_token: Optional[str] = None
    started_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None
    total_interactions: int = 0
    attribution: Optional[AttributionInfo] = None


class SessionExtendResponse(BaseModel):
    success: bool = True
    extended: bool
    attribution: Optional[AttributionInfo] = None


class SessionEndResponse(BaseModel):
    success: bool = True
    ended: bool
