"""Shared fixtures: stores (memory and SQLite-backed SQL), seeded users and
events, a deterministic clock, and an HTTP client bound to the app."""

import os
import time
from datetime import datetime, timezone
from decimal import Decimal

os.environ.setdefault("STORE_BACKEND", "memory")
# calendar weeks are server-local; pin the zone
os.environ["TZ"] = "UTC"
time.tzset()

import pytest
from httpx import ASGITransport, AsyncClient

from harrystix.infra.sql import make_async_engine
from harrystix.model.rungate import MemoryRunGate
from harrystix.model.store._memory import PreOrderStore as MemoryStore
from harrystix.model.store._postgres import (
    PreOrderStore as SqlStore, create_schema,
)
from harrystix.model.types import Event, UserProfile
from harrystix.notify import LogNotifier
from harrystix.payments import MockPay

# Tuesday 2026-10-20 12:00 UTC; its week runs Sun 18th .. Sun 25th
NOW = datetime(2026, 10, 20, 12, 0, tzinfo=timezone.utc)

MEMBER = UserProfile(id="u-member", email="ada@example.com", name="Ada",
                     is_member=True)
OTHER_MEMBER = UserProfile(id="u-member-2", email="bo@example.com",
                           name="Bo", is_member=True)
GUEST = UserProfile(id="u-guest", email="cy@example.com", name="Cy")
ADMIN = UserProfile(id="u-admin", email="admin@example.com", name="Admin",
                    is_member=True, is_admin=True)

EVENT = Event(id="e-cindies", title="Cindies Friday", venue="Cindies",
              public_price=Decimal("15.00"), member_price=Decimal("12.00"))
EVENT_2 = Event(id="e-revs", title="Revs Saturday", venue="Revs",
                public_price=Decimal("10.00"), member_price=Decimal("7.50"))


async def _seed(store):
    for u in (MEMBER, OTHER_MEMBER, GUEST, ADMIN):
        await store.add_user_profile(u)
    for e in (EVENT, EVENT_2):
        await store.add_event(e)
    return store


@pytest.fixture
async def memory_store():
    return await _seed(MemoryStore())


@pytest.fixture(params=["memory", "sql"])
async def store(request, tmp_path):
    """Runs the test once per storage backend."""
    if request.param == "memory":
        yield await _seed(MemoryStore())
        return
    engine, sessions, gated = make_async_engine(
        f"sqlite:///{tmp_path / 'harrystix.db'}"
    )
    async with engine.begin() as conn:
        await create_schema(conn)
    yield await _seed(SqlStore(sessions=sessions, gated=gated))
    await engine.dispose()


@pytest.fixture
def gateway():
    return MockPay(secret="test-secret")


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def local_tz(monkeypatch):
    """Switch the process time zone for one test."""
    def _use(name):
        monkeypatch.setenv("TZ", name)
        time.tzset()

    yield _use
    monkeypatch.undo()
    time.tzset()


@pytest.fixture
async def client(memory_store, gateway):
    from harrystix import server

    app = server.app
    app.state.store = memory_store
    app.state.gateway = gateway
    app.state.notifier = LogNotifier()
    app.state.run_gate = MemoryRunGate()
    app.dependency_overrides[server.get_clock] = lambda: (lambda: NOW)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        # mock webhooks are delivered straight back into the app
        app.state.http = c
        yield c

    app.dependency_overrides.clear()
    app.state.http = None


@pytest.fixture
def login_as():
    from harrystix import server

    def _login(user):
        server.app.dependency_overrides[server.current_user] = lambda: user
        return user

    return _login
