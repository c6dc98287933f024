"""
Shared fixtures: a controllable clock and in-memory storage seeded with a
small tenant directory.

Tenants:
  "1"      default tenant (subdomain "main")
  "org-a"  subdomain "grace", owns tag T1
  "org-b"  subdomain "hope", custom domain hopechurch.org, owns T2 and
           adopted T3 through an approved membership
  "org-x"  inactive, owns T-closed
T-orphan is registered but unclaimed.
"""

import os
from datetime import datetime, timedelta, timezone

import pytest

from repositories.memory import (
    InMemoryEventRepository,
    InMemorySessionRepository,
    InMemoryTenantRepository,
)
from schemas.models.event import AnalyticsEvent, EventMeta
from schemas.models.tenant import (
    BraceletMembershipDoc,
    MembershipStatus,
    TagDoc,
    Tenant,
)
from services.attribution import TagAttributionResolver
from services.ingestion import EventIngestionPipeline
from services.session_store import SessionStore
from services.tenant_directory import TenantDirectory

os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017/")

# A Monday, so day-of-week assertions stay readable
T0 = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def at(self, hour: int, minute: int = 0, second: int = 0) -> datetime:
        self.now = self.now.replace(hour=hour, minute=minute, second=second)
        return self.now


@pytest.fixture(autouse=True)
def ignore_dotenv(monkeypatch):
    """Settings built in tests come from defaults and monkeypatch.setenv() only."""
    import pydantic_settings.sources.providers.dotenv as ps_dotenv

    monkeypatch.setattr(ps_dotenv, "dotenv_values", lambda *a, **kw: {})


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tenant_repo():
    return InMemoryTenantRepository(
        tenants=[
            Tenant(tenant_id="1", name="Default", subdomain="main"),
            Tenant(tenant_id="org-a", name="Grace Chapel", subdomain="grace"),
            Tenant(
                tenant_id="org-b",
                name="Hope Church",
                subdomain="hope",
                custom_domain="HopeChurch.org",
            ),
            Tenant(tenant_id="org-x", name="Closed", subdomain="closed", is_active=False),
        ],
        tags=[
            TagDoc(tag_id="T1", tenant_id="org-a"),
            TagDoc(tag_id="T2", tenant_id="org-b"),
            TagDoc(tag_id="T3", tenant_id="org-a"),
            TagDoc(tag_id="T-orphan"),
            TagDoc(tag_id="T-closed", tenant_id="org-x"),
        ],
        memberships=[
            BraceletMembershipDoc(
                tag_id="T3", tenant_id="org-b", status=MembershipStatus.APPROVED
            ),
            BraceletMembershipDoc(
                tag_id="T1", tenant_id="org-b", status=MembershipStatus.PENDING
            ),
        ],
    )


@pytest.fixture
def session_repo():
    return InMemorySessionRepository()


@pytest.fixture
def event_repo():
    return InMemoryEventRepository()


@pytest.fixture
def directory(tenant_repo):
    return TenantDirectory(
        tenant_repo,
        default_tenant_id="1",
        apex_domain="churchtap.app",
        reserved_subdomains=["www", "api", "admin"],
    )


@pytest.fixture
def session_store(session_repo, clock):
    return SessionStore(session_repo, clock=clock)


@pytest.fixture
def resolver(session_repo, directory, clock):
    return TagAttributionResolver(
        session_repo, directory, ttl=timedelta(minutes=30), clock=clock
    )


@pytest.fixture
def pipeline(event_repo, session_store, directory, resolver, tenant_repo, clock):
    return EventIngestionPipeline(
        events=event_repo,
        sessions=session_store,
        directory=directory,
        resolver=resolver,
        tenants=tenant_repo,
        clock=clock,
    )


@pytest.fixture
def make_event():
    """Factory for AnalyticsEvent rows that skip the pipeline."""

    def _make(
        action,
        occurred_at: datetime,
        *,
        tenant_id="org-a",
        session_id="s1",
        tag_id=None,
        ip="8.8.8.8",
        referrer=None,
    ) -> AnalyticsEvent:
        return AnalyticsEvent(
            occurred_at=occurred_at,
            meta=EventMeta(
                tenant_id=tenant_id,
                session_id=session_id,
                tag_id=tag_id,
                action=action,
            ),
            ip_address=ip,
            referrer=referrer,
        )

    return _make
