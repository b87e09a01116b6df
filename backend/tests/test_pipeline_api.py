"""
Tests for the pipeline, alerts and jobs API endpoints.

Covers:
  - Tenant resolution and cross-tenant rejection
  - 409 for a run that already holds the job lock
  - Alert detection and the alert lifecycle over HTTP
  - The job registry view
"""

import uuid
from datetime import date

import pytest
from sqlalchemy import select

from api.deps import Caller, get_caller
from api.main import app
from db.models import AlertInstance, JobRun, MonitoredObject, ThresholdConfig
from jobs.registry import acquire_lock


TENANT_ID = "00000000-0000-0000-0000-000000000001"
OTHER_TENANT_ID = "00000000-0000-0000-0000-000000000002"
RUN_BODY = {"start_date": "2024-01-01", "end_date": "2024-01-30", "skip_alerts": True}


async def _seed_low_stock(db, tenant):
    db.add(
        MonitoredObject(
            id=uuid.uuid4(),
            tenant_id=tenant,
            object_type="product",
            object_name="Jasmine Rice 5kg",
            external_id="SKU-RICE",
            current_metrics={"total_stock": 2, "sales_last_30_days": 30},
        )
    )
    db.add(
        ThresholdConfig(
            id=uuid.uuid4(),
            tenant_id=tenant,
            alert_type="low_days_of_stock",
            title="Low days of stock",
            metric="days_of_stock",
            operator="<",
            threshold_value=5,
            severity="critical",
        )
    )
    await db.commit()


@pytest.mark.asyncio
class TestPipelineRun:
    async def test_run_for_own_tenant(self, client, fake_services):
        response = await client.post("/api/v1/pipeline/run", json=RUN_BODY)

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["tenant_id"] == TENANT_ID
        assert data["stages"]["facts"]["total_chunks"] == 3
        assert data["job_id"]
        assert len(fake_services.fact_calls) == 3

    async def test_chunk_failure_reported_with_200(self, client, fake_services):
        fake_services.fail_chunks = {3}

        response = await client.post("/api/v1/pipeline/run", json=RUN_BODY)

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is False
        assert data["errors"][0]["chunk"] == 3

    async def test_running_lock_returns_409(self, client, test_db, tenant, fake_services):
        held = await acquire_lock(test_db, "daily-pipeline", tenant, date(2024, 1, 30))

        response = await client.post("/api/v1/pipeline/run", json=RUN_BODY)

        assert response.status_code == 409
        data = response.json()
        assert data["success"] is False
        assert data["code"] == "conflict"
        assert data["job_id"] == held.job_id
        assert fake_services.fact_calls == []

    async def test_missing_tenant_is_400(self, client):
        app.dependency_overrides[get_caller] = lambda: Caller(subject="auth|no-tenant")

        response = await client.post("/api/v1/pipeline/run", json=RUN_BODY)

        assert response.status_code == 400
        assert response.json() == {"success": False, "error": "tenant_id is required", "code": "validation_error"}

    async def test_malformed_tenant_is_400(self, client):
        response = await client.post("/api/v1/pipeline/run", json={**RUN_BODY, "tenant_id": "tenant-A"})

        assert response.status_code == 400
        assert response.json()["code"] == "validation_error"

    async def test_other_tenant_is_403(self, client, fake_services):
        response = await client.post("/api/v1/pipeline/run", json={**RUN_BODY, "tenant_id": OTHER_TENANT_ID})

        assert response.status_code == 403
        assert response.json()["code"] == "access_denied"
        assert fake_services.fact_calls == []

    async def test_service_role_may_name_any_tenant(self, client):
        app.dependency_overrides[get_caller] = lambda: Caller(subject="service_role", is_service_role=True)

        response = await client.post("/api/v1/pipeline/run", json={**RUN_BODY, "tenant_id": TENANT_ID})

        assert response.status_code == 200
        assert response.json()["tenant_id"] == TENANT_ID

    async def test_start_after_end_is_400(self, client):
        body = {**RUN_BODY, "start_date": "2024-02-01"}

        response = await client.post("/api/v1/pipeline/run", json=body)

        assert response.status_code == 400


@pytest.mark.asyncio
class TestAlertsApi:
    async def test_detect_then_list_and_resolve(self, client, test_db, tenant):
        await _seed_low_stock(test_db, tenant)

        detected = await client.post("/api/v1/alerts/detect", json={"detection_date": "2024-05-01"})
        assert detected.status_code == 200
        assert detected.json()["success"] is True
        assert detected.json()["triggered"] == 1

        listed = await client.get("/api/v1/alerts/", params={"severity": "critical"})
        assert listed.status_code == 200
        alerts = listed.json()
        assert len(alerts) == 1
        alert_id = alerts[0]["id"]

        acknowledged = await client.patch(f"/api/v1/alerts/{alert_id}/acknowledge")
        assert acknowledged.status_code == 200
        assert acknowledged.json()["status"] == "acknowledged"

        resolved = await client.patch(f"/api/v1/alerts/{alert_id}/resolve")
        assert resolved.json()["status"] == "resolved"

        again = await client.patch(f"/api/v1/alerts/{alert_id}/acknowledge")
        assert again.status_code == 400
        assert again.json()["code"] == "invalid_transition"

    async def test_detection_rerun_same_day_creates_nothing(self, client, test_db, tenant):
        await _seed_low_stock(test_db, tenant)

        await client.post("/api/v1/alerts/detect", json={"detection_date": "2024-05-01"})
        rerun = await client.post("/api/v1/alerts/detect", json={"detection_date": "2024-05-01"})

        assert rerun.json()["triggered"] == 0
        count = len((await test_db.execute(select(AlertInstance))).scalars().all())
        assert count == 1

    async def test_unknown_alert_is_404(self, client):
        response = await client.patch(f"/api/v1/alerts/{uuid.uuid4()}/resolve")
        assert response.status_code == 404


@pytest.mark.asyncio
class TestJobsApi:
    async def test_lists_tenant_jobs(self, client, test_db):
        await client.post("/api/v1/pipeline/run", json=RUN_BODY)

        response = await client.get("/api/v1/jobs/")

        assert response.status_code == 200
        jobs = response.json()
        assert len(jobs) == 1
        assert jobs[0]["function_name"] == "daily-pipeline"
        assert jobs[0]["status"] == "completed"
        assert jobs[0]["lock_key"] == f"daily-pipeline:{TENANT_ID}:2024-01-30"

        stored = (await test_db.execute(select(JobRun))).scalars().all()
        assert len(stored) == 1
