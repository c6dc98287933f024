"""
Shared plumbing for the MongoDB document models.

Documents keep their business keys (tenant_id, tag_id, session_id) in their
own fields; ``_id`` is storage identity only. Timestamps are always UTC-aware
once loaded, whatever client wrote them.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from bson import ObjectId
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    GetCoreSchemaHandler,
    model_validator,
)
from pydantic_core import core_schema

from shared.datetime_utils import ensure_utc


class PyObjectId(ObjectId):
    """ObjectId accepted from BSON or its hex string, serialised as hex."""

    @classmethod
    def __get_pydantic_core_schema__(
        cls, source_type: Any, handler: GetCoreSchemaHandler
    ) -> core_schema.CoreSchema:
        return core_schema.no_info_plain_validator_function(
            cls._validate,
            serialization=core_schema.to_string_ser_schema(),
        )

    @classmethod
    def _validate(cls, v: Any) -> ObjectId:
        if isinstance(v, ObjectId):
            return v
        if isinstance(v, str) and ObjectId.is_valid(v):
            return ObjectId(v)
        raise ValueError(f"Invalid ObjectId: {v!r}")


def _utc_values(value: Any) -> Any:
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, dict):
        return {k: _utc_values(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_utc_values(v) for v in value]
    return value


class MongoBaseModel(BaseModel):
    model_config = ConfigDict(
        populate_by_name=True,
        arbitrary_types_allowed=True,
    )

    id: Optional[PyObjectId] = Field(default=None, alias="_id")

    @model_validator(mode="before")
    @classmethod
    def _naive_datetimes_are_utc(cls, data: Any) -> Any:
        # a client opened without tz_aware hands back naive UTC datetimes
        if isinstance(data, dict):
            return _utc_values(data)
        return data

    def to_mongo(self) -> dict:
        """Dict for insert_one; a None ``_id`` is left out for the server to fill."""
        data = self.model_dump(by_alias=True, exclude_none=False)
        if data.get("_id") is None:
            data.pop("_id", None)
        return data

    @classmethod
    def from_mongo(cls, data: Optional[dict]):
        if data is None:
            return None
        return cls.model_validate(data)
