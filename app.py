"""
FastAPI application factory.
create_app() is the single entry point for building the app.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncIterator, Optional

import redis.asyncio as aioredis
import sentry_sdk
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from pymongo.asynchronous.mongo_client import AsyncMongoClient

from config import AppSettings
from errors import register_error_handlers
from infrastructure.cache.dual_cache import DualCache
from infrastructure.cache.redis_client import create_redis_client
from infrastructure.geoip import GeoIPService
from repositories.event_repository import MongoEventRepository
from repositories.indexes import ensure_indexes
from repositories.memory import InMemorySessionRepository
from repositories.protocol import EventRepository, SessionRepository, TenantRepository
from repositories.session_repository import MongoSessionRepository
from repositories.tenant_repository import MongoTenantRepository
from routes.analytics_routes import router as analytics_router
from routes.event_routes import router as event_router
from routes.health_routes import router as health_router
from routes.platform_routes import router as platform_router
from services.aggregation import AnalyticsAggregationService
from services.attribution import TagAttributionResolver
from services.correlation import TagActivityCorrelator
from services.geo_enrichment import GeoEnrichmentService
from services.ingestion import EventIngestionPipeline
from services.session_store import SessionStore
from services.tenant_directory import TenantDirectory
from shared.logging import get_logger, setup_logging

log = get_logger(__name__)


def install_services(
    app: FastAPI,
    settings: AppSettings,
    *,
    tenants: TenantRepository,
    sessions: SessionRepository,
    events: EventRepository,
    redis_client: Optional[aioredis.Redis] = None,
    geoip: Optional[GeoIPService] = None,
) -> None:
    """Build the service graph over the given repositories onto app.state."""
    attribution = settings.attribution

    directory = TenantDirectory(
        tenants,
        default_tenant_id=attribution.default_tenant_id,
        apex_domain=attribution.apex_domain,
        reserved_subdomains=attribution.reserved_subdomains,
    )
    geo_enricher = (
        GeoEnrichmentService(
            geoip,
            sessions,
            lookup_interval=settings.geo.geo_lookup_interval_seconds,
        )
        if geoip is not None
        else None
    )
    session_store = SessionStore(
        sessions,
        inactivity=timedelta(hours=attribution.session_inactivity_hours),
        geo_enricher=geo_enricher,
    )
    resolver = TagAttributionResolver(
        sessions,
        directory,
        ttl=timedelta(seconds=attribution.attribution_ttl_seconds),
    )
    cache = DualCache(
        redis_client,
        primary_ttl=settings.redis.analytics_cache_primary_ttl,
        stale_ttl=settings.redis.analytics_cache_stale_ttl,
    )

    app.state.settings = settings
    app.state.tenant_directory = directory
    app.state.session_store = session_store
    app.state.attribution_resolver = resolver
    app.state.geo_enricher = geo_enricher
    app.state.analytics_cache = cache
    app.state.ingestion_pipeline = EventIngestionPipeline(
        events=events,
        sessions=session_store,
        directory=directory,
        resolver=resolver,
        tenants=tenants,
    )
    app.state.aggregation_service = AnalyticsAggregationService(
        events, sessions, cache=cache
    )
    app.state.correlator = TagActivityCorrelator(
        events,
        sessions,
        window=timedelta(seconds=attribution.correlation_window_seconds),
    )


def create_app(settings: Optional[AppSettings] = None) -> FastAPI:
    """Create and return a fully configured FastAPI application."""
    if settings is None:
        settings = AppSettings()

    setup_logging(settings.logging)

    # Initialise Sentry before anything else so it captures startup errors
    if settings.sentry.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry.sentry_dsn,
            send_default_pii=settings.sentry.sentry_send_pii,
            traces_sample_rate=settings.sentry.sentry_traces_sample_rate,
            profiles_sample_rate=settings.sentry.sentry_profile_sample_rate,
            environment=settings.env,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # ── Startup ──────────────────────────────────────────────────────────
        mongo_client: AsyncMongoClient = AsyncMongoClient(
            settings.db.mongodb_uri, tz_aware=True
        )
        app.state.mongo_client = mongo_client
        app.state.db = mongo_client[settings.db.db_name]

        # Redis is optional; without it dashboard reads run uncached
        redis_client = await create_redis_client(settings.redis.redis_uri)
        app.state.redis = redis_client

        await ensure_indexes(app.state.db)

        if settings.attribution.session_backend == "memory":
            sessions: SessionRepository = InMemorySessionRepository()
        else:
            sessions = MongoSessionRepository(app.state.db)
        geoip = GeoIPService(settings.geo.geoip_city_db)

        install_services(
            app,
            settings,
            tenants=MongoTenantRepository(app.state.db),
            sessions=sessions,
            events=MongoEventRepository(app.state.db),
            redis_client=redis_client,
            geoip=geoip,
        )
        log.info(
            "app_started",
            env=settings.env,
            session_backend=settings.attribution.session_backend,
        )

        yield

        # ── Shutdown ─────────────────────────────────────────────────────────
        await app.state.session_store.drain()
        await app.state.analytics_cache.drain()
        geoip.close()
        await mongo_client.close()
        if redis_client is not None:
            await redis_client.aclose()

    app = FastAPI(
        title=settings.app_name,
        version="1.0.0",
        docs_url=settings.docs_url,
        redoc_url=None,
        lifespan=lifespan,
    )

    # the service worker and tenant sites post from many origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)
    app.include_router(health_router)
    app.include_router(event_router)
    app.include_router(analytics_router)
    app.include_router(platform_router)

    return app
