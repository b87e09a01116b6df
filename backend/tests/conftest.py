"""
Test Configuration — Fixtures for a file-backed async SQLite store, run
contexts with a controllable clock, and the API test client.

Each test gets its own database file so commits inside the code under test
behave exactly as they do against PostgreSQL.
"""

import uuid
from datetime import datetime, timedelta

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from api.deps import Caller, get_caller, get_computation_services, get_db
from api.main import app
from core.context import RunContext
from db.models import Tenant
from db.session import Base

TENANT_ID = "00000000-0000-0000-0000-000000000001"
OTHER_TENANT_ID = "00000000-0000-0000-0000-000000000002"


def _enable_sqlite_savepoints(engine, foreign_keys: bool = False) -> None:
    """pysqlite defers BEGIN; take over transaction control so SAVEPOINT works."""

    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        if foreign_keys:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")


class FixedClock:
    """Wall clock that only moves when a test moves it."""

    def __init__(self, now: datetime):
        self.current = now

    def __call__(self) -> datetime:
        return self.current

    def set(self, now: datetime) -> None:
        self.current = now

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class FakeServices:
    """In-memory ComputationServices; fails the facts call for the given 1-based chunk numbers."""

    def __init__(self, fail_chunks=(), link_batches=(), fail_aggregates=False):
        self.fail_chunks = set(fail_chunks)
        self.link_batches = list(link_batches)
        self.fail_aggregates = fail_aggregates
        self.fact_calls = []
        self.link_calls = 0
        self.aggregate_calls = []

    async def link_batch(self, tenant_id, batch_size):
        self.link_calls += 1
        return self.link_batches.pop(0) if self.link_batches else 0

    async def compute_facts(self, tenant_id, start_date, end_date):
        self.fact_calls.append((start_date, end_date))
        if len(self.fact_calls) in self.fail_chunks:
            raise RuntimeError(f"fact computation failed for {start_date}")
        return {"rows": (end_date - start_date).days + 1}

    async def build_daily_aggregates(self, tenant_id, as_of):
        self.aggregate_calls.append(as_of)
        if self.fail_aggregates:
            raise RuntimeError("aggregate build failed")
        return {"customers": 3}

    async def summary_counts(self, tenant_id, start_date, end_date):
        return {"orders": 42}


async def _create_engine(path, foreign_keys: bool = False):
    engine = create_async_engine(f"sqlite+aiosqlite:///{path}", echo=False)
    _enable_sqlite_savepoints(engine, foreign_keys)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine


@pytest.fixture
async def test_engine(tmp_path):
    """A fresh SQLite database file with every table created."""
    engine = await _create_engine(tmp_path / "pipeline.db")
    yield engine
    await engine.dispose()


@pytest.fixture
async def fk_db(tmp_path):
    """Session on a database that enforces foreign keys like PostgreSQL does."""
    engine = await _create_engine(tmp_path / "pipeline_fk.db", foreign_keys=True)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        yield session
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def test_db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def tenant(test_db):
    """Seed the primary tenant and return its id as a string."""
    test_db.add(Tenant(tenant_id=uuid.UUID(TENANT_ID), name="Test Retail Co", status="active"))
    await test_db.commit()
    return TENANT_ID


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 5, 1, 9, 0, 0))


@pytest.fixture
def make_ctx(test_db, tenant, clock):
    def _make(**overrides) -> RunContext:
        params = {"db": test_db, "tenant_id": tenant, "clock": clock}
        params.update(overrides)
        return RunContext(**params)

    return _make


@pytest.fixture
def ctx(make_ctx):
    return make_ctx()


@pytest.fixture
def make_services():
    return FakeServices


@pytest.fixture
def fake_services():
    return FakeServices()


@pytest.fixture
def caller():
    """Dashboard user bound to the primary tenant."""
    return Caller(subject="auth|test-user", tenant_id=TENANT_ID)


@pytest.fixture
async def client(session_factory, tenant, caller, fake_services):
    """Create an async test client with dependency overrides."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_caller] = lambda: caller
    app.dependency_overrides[get_computation_services] = lambda: fake_services

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
