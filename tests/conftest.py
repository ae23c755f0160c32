# Copyright (c) 2026 Flowkeeper Contributors. All Rights Reserved.

"""
Shared test fixtures for all Flowkeeper tests.

Unit tests run the core against in-memory stores and fake pools; the
storage and API tests use an in-memory SQLite control plane.
"""

import asyncio
import itertools
from datetime import datetime, timezone

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from flowkeeper.core.config import KeeperSettings, override_settings_for_test
from flowkeeper.core.context import KeeperContext
from flowkeeper.core.identity import Instance, Membership, User
from flowkeeper.core.metrics import keeper_metrics
from flowkeeper.pool.tenant_settings import TenantConnectionSettings
from flowkeeper.storage.database import Base, close_db, override_engine_for_test
from flowkeeper.storage.repositories import InstanceRepository

import flowkeeper.storage.models  # noqa: F401  (register tables)

TEST_ENCRYPTION_KEY = "test-master-key-0123456789abcdef-0123456789"


# ── In-memory stores ────────────────────────────────────────


class FakeDirectory:
    """Identity, membership and settings stores backed by dicts."""

    def __init__(self):
        self.users = {}
        self.memberships = {}
        self.instances = []
        self.connection_settings = {}
        self.count_calls = 0
        self.settings_calls = 0
        self.fail_with = None
        self._ids = itertools.count(1)

    def add_user(self, email, is_superadmin=False, name=None):
        user = User(
            id=f"u{next(self._ids)}",
            name=name or email.split("@")[0],
            email=email,
            is_superadmin=is_superadmin,
        )
        self.users[email] = user
        return user

    def add_instance(self, instance_id, name=None):
        inst = Instance(
            id=instance_id,
            name=name or instance_id.title(),
            slug=instance_id,
            created_at=datetime.now(timezone.utc),
        )
        self.instances.append(inst)
        return inst

    def grant(self, user, instance_id, role):
        self.memberships[(user.id, instance_id)] = Membership(
            user_id=user.id, instance_id=instance_id, role=role,
        )

    def configure(self, instance_id, **overrides):
        values = {
            "host": f"{instance_id}.db.internal",
            "port": 5432,
            "database": "n8n",
            "user": "n8n",
            "password": "secret",
        }
        values.update(overrides)
        conn = TenantConnectionSettings(**values)
        self.connection_settings[instance_id] = conn
        return conn

    def _check(self):
        if self.fail_with is not None:
            raise self.fail_with

    async def find_user_by_identity(self, token):
        self._check()
        return self.users.get(token)

    async def count_users(self):
        self._check()
        self.count_calls += 1
        return len(self.users)

    async def find_membership(self, user_id, instance_id):
        self._check()
        return self.memberships.get((user_id, instance_id))

    async def list_memberships_for_user(self, user_id):
        self._check()
        order = {inst.id: i for i, inst in enumerate(self.instances)}
        found = [m for (uid, _), m in self.memberships.items() if uid == user_id]
        return sorted(found, key=lambda m: order.get(m.instance_id, len(order)))

    async def list_instances_for_user(self, user_id):
        self._check()
        return [
            (inst, self.memberships[(user_id, inst.id)].role)
            for inst in self.instances
            if (user_id, inst.id) in self.memberships
        ]

    async def list_instances(self):
        self._check()
        return list(self.instances)

    async def get_connection_settings(self, instance_id):
        self._check()
        self.settings_calls += 1
        return self.connection_settings.get(instance_id, TenantConnectionSettings())


# ── Fake pools ──────────────────────────────────────────────


class _FakeResult:
    def scalar(self):
        return 1


class _FakeConnection:
    def __init__(self, pool):
        self._pool = pool

    async def __aenter__(self):
        if self._pool.broken:
            raise ConnectionError("connection refused")
        return self

    async def __aexit__(self, *exc):
        return False

    async def execute(self, statement):
        self._pool.queries += 1
        return _FakeResult()


class FakePool:
    def __init__(self, settings):
        self.settings = settings
        self.dispose_calls = 0
        self.queries = 0
        self.broken = False

    def connect(self):
        return _FakeConnection(self)

    async def dispose(self):
        self.dispose_calls += 1


class FakePoolFactory:
    """Records every pool it builds; can be told to fail or to wait."""

    def __init__(self):
        self.built = []
        self.fail_with = None
        self.release = None

    @property
    def calls(self):
        return len(self.built)

    async def __call__(self, settings):
        if self.release is not None:
            await self.release.wait()
        if self.fail_with is not None:
            raise self.fail_with
        pool = FakePool(settings)
        self.built.append(pool)
        return pool

    def hold(self):
        """Make builds block until the returned event is set."""
        self.release = asyncio.Event()
        return self.release


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        self.now += 1.0
        return self.now


# ── Fixtures ────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def reset_metrics():
    keeper_metrics.reset()
    yield


@pytest.fixture
def directory():
    return FakeDirectory()


@pytest.fixture
def pool_factory():
    return FakePoolFactory()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def keeper_settings():
    """Test settings pinned for the duration of a test."""
    settings = KeeperSettings(
        _env_file=None,
        ENCRYPTION_KEY=TEST_ENCRYPTION_KEY,
        MAX_TENANT_POOLS=3,
    )
    override_settings_for_test(settings)
    yield settings
    override_settings_for_test(None)


@pytest.fixture
async def sqlite_db(keeper_settings):
    """In-memory SQLite control plane; yields a session factory."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    override_engine_for_test(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    yield factory

    await close_db()


@pytest.fixture
async def keeper(sqlite_db, keeper_settings, pool_factory):
    """KeeperContext wired to the SQLite control plane and fake pools."""
    async with sqlite_db() as db:
        await InstanceRepository(db, keeper_settings.DEFAULT_INSTANCE_ID).ensure_default()
        await db.commit()
    ctx = KeeperContext(keeper_settings, pool_factory=pool_factory)
    yield ctx
    await ctx.close()


@pytest.fixture
async def client(keeper):
    """HTTP client against a fresh app instance."""
    from flowkeeper.main import create_app

    app = create_app()
    app.state.keeper = keeper
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


def bearer(email):
    return {"Authorization": f"Bearer {email}"}


@pytest.fixture
def as_user():
    return bearer
