"""
Decision Outcomes Router — evaluation of decided cards and the outcome ledger.

Endpoints:
  POST /api/v1/outcomes/evaluate — Evaluate decisions past the evaluation window
  GET  /api/v1/outcomes          — Ledger records, newest first
  GET  /api/v1/outcomes/stats    — Success rate, accuracy and trends
"""

from datetime import date, datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import Caller, get_caller, get_db, get_tenant_context, lock_conflict_response, tenant_context
from core.context import RunContext
from jobs.registry import with_idempotency
from outcomes.evaluator import evaluate_outcomes, list_outcome_records
from outcomes.stats import outcome_trends

router = APIRouter(prefix="/api/v1/outcomes", tags=["outcomes"])


# ── Request/Response Models ─────────────────────────────────────────────────


class EvaluateRequest(BaseModel):
    tenant_id: str | None = None
    evaluation_window_days: int | None = Field(None, ge=0, le=365)


class OutcomeRecordResponse(BaseModel):
    id: UUID
    decision_id: UUID
    decision_type: str | None
    evaluation_date: date
    predicted_impact: float | None
    actual_impact: float | None
    variance: float | None
    accuracy_score: float
    outcome_status: str
    baseline_metrics: dict | None
    current_metrics: dict | None
    is_auto_measured: bool
    created_at: datetime

    model_config = {"from_attributes": True}


# ── Endpoints ───────────────────────────────────────────────────────────────


@router.post("/evaluate")
async def evaluate(
    body: EvaluateRequest,
    db: AsyncSession = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    """Evaluate every due decision once, under a per-day job lock."""
    ctx = await tenant_context(db, caller, body.tenant_id)

    async def _evaluate(job_id: str) -> dict:
        return await evaluate_outcomes(ctx, body.evaluation_window_days)

    run = await with_idempotency(
        db,
        "evaluate-outcomes",
        ctx.tenant_id,
        _evaluate,
        grain_date=ctx.today(),
        input_params={"evaluation_window_days": body.evaluation_window_days},
    )
    if run.status != "completed":
        return lock_conflict_response(run)
    return {"success": not run.result["errors"], "job_id": run.job_id, **run.result}


@router.get("/", response_model=list[OutcomeRecordResponse])
async def list_outcomes(
    limit: int = Query(100, ge=1, le=500),
    ctx: RunContext = Depends(get_tenant_context),
):
    return await list_outcome_records(ctx, limit=limit)


@router.get("/stats")
async def outcome_stats(ctx: RunContext = Depends(get_tenant_context)):
    """Aggregates computed from stored outcome records only."""
    return await outcome_trends(ctx)
