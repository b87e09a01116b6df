"""
Alerts Router — detection entry point and alert lifecycle.
"""

from datetime import date, datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from alerts.engine import acknowledge_alert, run_detection, resolve_alert
from api.deps import Caller, get_caller, get_db, get_tenant_context, lock_conflict_response, tenant_context
from core.context import RunContext
from db.models import AlertInstance
from jobs.registry import with_idempotency

router = APIRouter(prefix="/api/v1/alerts", tags=["alerts"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class AlertResponse(BaseModel):
    id: UUID
    tenant_id: UUID
    source_type: str
    object_id: UUID | None
    alert_type: str
    category: str | None
    severity: str
    status: str
    title: str
    message: str
    metric_name: str | None
    current_value: float | None
    threshold_value: float | None
    impact_amount: float | None
    deadline_at: datetime | None
    suggested_action: str | None
    calculation_details: dict | None
    detection_date: date
    created_at: datetime
    acknowledged_at: datetime | None
    resolved_at: datetime | None

    model_config = {"from_attributes": True}


class DetectRequest(BaseModel):
    tenant_id: str | None = None
    detection_date: date | None = None


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.post("/detect")
async def detect_alerts(
    body: DetectRequest,
    db: AsyncSession = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    """Run the rule engine for one tenant and detection date."""
    ctx = await tenant_context(db, caller, body.tenant_id)
    detection_date = body.detection_date or ctx.today()

    async def _detect(job_id: str) -> dict:
        return (await run_detection(ctx, detection_date)).to_dict()

    run = await with_idempotency(db, "detect-alerts", ctx.tenant_id, _detect, grain_date=detection_date)
    if run.status != "completed":
        return lock_conflict_response(run)
    return {"success": not run.result["errors"], "job_id": run.job_id, **run.result}


@router.get("/", response_model=list[AlertResponse])
async def list_alerts(
    status: str | None = None,
    severity: str | None = None,
    alert_type: str | None = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    ctx: RunContext = Depends(get_tenant_context),
):
    """List alerts with filters."""
    query = select(AlertInstance).where(AlertInstance.tenant_id == ctx.tenant_id)
    if status:
        query = query.where(AlertInstance.status == status)
    if severity:
        query = query.where(AlertInstance.severity == severity)
    if alert_type:
        query = query.where(AlertInstance.alert_type == alert_type)
    query = query.order_by(AlertInstance.created_at.desc()).offset(skip).limit(limit)
    result = await ctx.db.execute(query)
    return result.scalars().all()


@router.patch("/{alert_id}/acknowledge", response_model=AlertResponse)
async def acknowledge(alert_id: UUID, ctx: RunContext = Depends(get_tenant_context)):
    """active → acknowledged."""
    return await acknowledge_alert(ctx, str(alert_id))


@router.patch("/{alert_id}/resolve", response_model=AlertResponse)
async def resolve(alert_id: UUID, ctx: RunContext = Depends(get_tenant_context)):
    """active/acknowledged → resolved."""
    return await resolve_alert(ctx, str(alert_id))
