"""
Tests for the tenant-scoped Celery tasks, run in-process with ``.run()``.
"""

import asyncio
import uuid

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from core.config import get_settings
from db import session as session_module
from db.models import MonitoredObject, Tenant, ThresholdConfig
from db.session import Base
from workers.pipeline import evaluate_decision_outcomes, generate_decision_cards, run_alert_detection

TENANT_ID = "00000000-0000-0000-0000-000000000201"


def _savepoint_session_factory(database_url):
    """build_session_factory with SQLite transaction control handed to SQLAlchemy."""
    engine = create_async_engine(database_url)

    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine, async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def worker_db(tmp_path, monkeypatch):
    """A seeded SQLite file the tasks connect to through settings.database_url."""
    db_url = f"sqlite+aiosqlite:///{tmp_path / 'workers.db'}"

    async def _seed() -> None:
        engine = create_async_engine(db_url, echo=False)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)() as db:
            db.add(Tenant(tenant_id=TENANT_ID, name="Worker Tenant", status="active"))
            db.add(
                MonitoredObject(
                    id=uuid.uuid4(),
                    tenant_id=TENANT_ID,
                    object_type="product",
                    object_name="Fish Sauce 500ml",
                    external_id="SKU-FISH",
                    current_metrics={"total_stock": 1, "sales_last_30_days": 30},
                )
            )
            db.add(
                ThresholdConfig(
                    id=uuid.uuid4(),
                    tenant_id=TENANT_ID,
                    alert_type="low_days_of_stock",
                    title="Low days of stock",
                    metric="days_of_stock",
                    operator="<",
                    threshold_value=5,
                    severity="critical",
                )
            )
            await db.commit()
        await engine.dispose()

    asyncio.run(_seed())
    settings = get_settings().model_copy(update={"database_url": db_url})
    monkeypatch.setattr("core.config.get_settings", lambda: settings)
    monkeypatch.setattr(session_module, "build_session_factory", _savepoint_session_factory)
    return db_url


def test_alert_detection_publishes_new_alerts(worker_db, monkeypatch):
    published = []

    async def _fake_publish(alerts, redis_url=None):
        published.extend(alerts)
        return len(alerts)

    monkeypatch.setattr("alerts.engine.publish_alerts", _fake_publish)

    first = run_alert_detection.run(tenant_id=TENANT_ID, detection_date="2024-05-01")
    second = run_alert_detection.run(tenant_id=TENANT_ID, detection_date="2024-05-01")

    assert first["status"] == "completed"
    assert first["result"]["triggered"] == 1
    assert first["published"] == 1
    assert second["result"]["triggered"] == 0
    assert second["published"] == 0
    assert len(published) == 1


def test_publish_failure_does_not_fail_detection(worker_db, monkeypatch):
    async def _broken_publish(alerts, redis_url=None):
        raise ConnectionError("redis unavailable")

    monkeypatch.setattr("alerts.engine.publish_alerts", _broken_publish)

    result = run_alert_detection.run(tenant_id=TENANT_ID, detection_date="2024-05-01")

    assert result["status"] == "completed"
    assert result["published"] == 0


def test_cards_follow_detected_alerts(worker_db, monkeypatch):
    async def _fake_publish(alerts, redis_url=None):
        return len(alerts)

    monkeypatch.setattr("alerts.engine.publish_alerts", _fake_publish)
    run_alert_detection.run(tenant_id=TENANT_ID, detection_date="2024-05-01")

    generated = generate_decision_cards.run(tenant_id=TENANT_ID)

    assert generated["created"] == 1
    assert generate_decision_cards.run(tenant_id=TENANT_ID)["created"] == 0


def test_outcome_evaluation_with_nothing_due(worker_db):
    result = evaluate_decision_outcomes.run(tenant_id=TENANT_ID, evaluation_window_days=30)

    assert result["status"] == "completed"
    assert result["result"]["evaluated"] == 0
    assert result["lock_key"].startswith(f"evaluate-outcomes:{TENANT_ID}:")
