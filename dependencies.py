"""
FastAPI dependency providers.

All injectable dependencies are plain functions used with FastAPI's
Depends() system. Services are built once in the app lifespan and stored on
app.state; these providers only hand them out.
"""

from __future__ import annotations

from fastapi import Request

from config import AppSettings
from services.aggregation import AnalyticsAggregationService
from services.attribution import TagAttributionResolver
from services.correlation import TagActivityCorrelator
from services.ingestion import EventIngestionPipeline
from services.session_store import SessionStore
from services.tenant_directory import TenantDirectory


def get_settings(request: Request) -> AppSettings:
    """Return the AppSettings instance stored on app.state."""
    return request.app.state.settings


def get_tenant_directory(request: Request) -> TenantDirectory:
    return request.app.state.tenant_directory


def get_session_store(request: Request) -> SessionStore:
    return request.app.state.session_store


def get_attribution_resolver(request: Request) -> TagAttributionResolver:
    return request.app.state.attribution_resolver


def get_ingestion_pipeline(request: Request) -> EventIngestionPipeline:
    return request.app.state.ingestion_pipeline


def get_aggregation_service(request: Request) -> AnalyticsAggregationService:
    return request.app.state.aggregation_service


def get_correlator(request: Request) -> TagActivityCorrelator:
    return request.app.state.correlator
