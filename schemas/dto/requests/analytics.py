"""
Query-parameter parsing for the dashboard endpoints.

Single-value parameters (``window``, ``granularity``, ``limit``...) are
validated by FastAPI directly; this module covers the multi-value ones.
"""

from __future__ import annotations

from typing import Any

from shared.time_bucket_utils import TimeBucketStrategy

MAX_FUNNEL_STAGES = 8

GRANULARITIES = {strategy.value: strategy for strategy in TimeBucketStrategy}


def parse_comma_separated(value: Any) -> list[str]:
    """Split a comma-separated string or pass-through a list."""
    if value is None:
        return []
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]
    return [item.strip() for item in str(value).split(",") if item.strip()]
