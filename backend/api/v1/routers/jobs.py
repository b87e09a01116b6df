"""
Jobs Router — read-only view of the job registry.
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from api.deps import get_tenant_context
from core.context import RunContext
from jobs.registry import list_job_runs

router = APIRouter(prefix="/api/v1/jobs", tags=["jobs"])


class JobRunResponse(BaseModel):
    id: UUID
    function_name: str
    lock_key: str
    status: str
    started_at: datetime
    completed_at: datetime | None
    input_params: dict | None
    result: dict | None
    error_message: str | None
    retry_count: int

    model_config = {"from_attributes": True}


@router.get("/", response_model=list[JobRunResponse])
async def list_jobs(
    limit: int = Query(50, ge=1, le=200),
    ctx: RunContext = Depends(get_tenant_context),
):
    """Most recent job attempts for the tenant."""
    return await list_job_runs(ctx.db, ctx.tenant_id, limit=limit)
