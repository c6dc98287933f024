"""
Integration fixtures: the real routers over in-memory storage.

The app is assembled with install_services() exactly as the production
lifespan does, only with in-memory repositories and no Redis or GeoIP.
"""

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app import install_services
from config import AppSettings, AttributionSettings
from errors import register_error_handlers
from routes.analytics_routes import router as analytics_router
from routes.event_routes import router as event_router
from routes.health_routes import router as health_router
from routes.platform_routes import router as platform_router


@pytest.fixture
def settings():
    return AppSettings(attribution=AttributionSettings(cookie_secure=False))


@pytest.fixture
def app(settings, tenant_repo, session_repo, event_repo):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        mock_db = MagicMock()
        mock_db.client.admin.command = AsyncMock(return_value={"ok": 1})
        app.state.db = mock_db
        app.state.redis = None
        install_services(
            app,
            settings,
            tenants=tenant_repo,
            sessions=session_repo,
            events=event_repo,
        )
        yield
        await app.state.session_store.drain()

    app = FastAPI(lifespan=lifespan)
    register_error_handlers(app)
    app.include_router(health_router)
    app.include_router(event_router)
    app.include_router(analytics_router)
    app.include_router(platform_router)
    return app


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client
