"""
Pipeline Router — daily pipeline entry point.

POST /api/v1/pipeline/run
  200  ran (``success`` false when chunks failed)
  400  missing/invalid tenant_id or dates
  409  a run for the same tenant and end date is in progress
"""

from datetime import date

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import Caller, get_caller, get_computation_services, get_db, lock_conflict_response, tenant_context
from pipeline.orchestrator import PipelineRequest, run_daily_pipeline
from pipeline.services import ComputationServices

router = APIRouter(prefix="/api/v1/pipeline", tags=["pipeline"])


class PipelineRunRequest(BaseModel):
    tenant_id: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    link_customers: bool = False
    skip_cdp: bool = False
    skip_alerts: bool = False


@router.post("/run")
async def run_pipeline(
    body: PipelineRunRequest,
    db: AsyncSession = Depends(get_db),
    caller: Caller = Depends(get_caller),
    services: ComputationServices = Depends(get_computation_services),
):
    """Run linking, fact chunks, aggregates, detection and summary for one tenant."""
    ctx = await tenant_context(db, caller, body.tenant_id)
    request = PipelineRequest(
        tenant_id=ctx.tenant_id,
        start_date=body.start_date,
        end_date=body.end_date,
        link_customers=body.link_customers,
        skip_cdp=body.skip_cdp,
        skip_alerts=body.skip_alerts,
    )
    run, _ = await run_daily_pipeline(ctx, request, services)
    if run.status != "completed":
        return lock_conflict_response(run)
    return run.result
