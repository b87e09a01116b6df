"""
Daily Pipeline Orchestrator

Stages run strictly in sequence:
  1. Linking        — bounded loop of link batches (optional)
  2. Facts          — chunked fact computation, chronological, failure-tolerant
  3. Aggregates     — daily aggregate build for end_date (skip_cdp)
  4. Alerts         — rule detection for end_date (skip_alerts)
  5. Summary        — fresh counts re-queried from the store

``success`` is true iff no chunk failed. Stage-level failures are recorded in
their stage entry and do not flip it. Partial progress is committed as each
unit finishes, so the next invocation resumes from wherever this one stopped.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, timedelta

from sqlalchemy import func, select

from alerts.engine import run_detection
from core.context import RunContext
from core.errors import PersistenceError, ValidationError
from db.models import UNDECIDED_CARD_STATUSES, AlertInstance, DecisionCard
from jobs.registry import IdempotentRun, with_idempotency
from pipeline.budget import BudgetedLoop
from pipeline.chunking import chunk_date_range
from pipeline.services import ComputationServices, SqlComputationServices

PIPELINE_FUNCTION_NAME = "daily-pipeline"


@dataclass
class PipelineRequest:
    tenant_id: str
    start_date: date | None = None
    end_date: date | None = None
    link_customers: bool = False
    skip_cdp: bool = False
    skip_alerts: bool = False

    def resolve_window(self, today: date, lookback_days: int = 7) -> tuple[date, date]:
        """Default window is the trailing ``lookback_days`` ending today, inclusive."""
        end = self.end_date or today
        start = self.start_date or end - timedelta(days=lookback_days - 1)
        if start > end:
            raise ValidationError(f"start_date {start} is after end_date {end}")
        return start, end

    def to_params(self) -> dict:
        return {
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "link_customers": self.link_customers,
            "skip_cdp": self.skip_cdp,
            "skip_alerts": self.skip_alerts,
        }


@dataclass
class PipelineResult:
    tenant_id: str
    start_date: date
    end_date: date
    stages: dict = field(default_factory=dict)
    errors: list[dict] = field(default_factory=list)
    duration_ms: int = 0
    alerts: list = field(default_factory=list, repr=False)

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "tenant_id": str(self.tenant_id),
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "stages": self.stages,
            "errors": self.errors,
            "duration_ms": self.duration_ms,
        }


def _skipped() -> dict:
    return {"status": "skipped"}


async def _run_linking(ctx: RunContext, services: ComputationServices) -> dict:
    settings = ctx.settings
    loop = BudgetedLoop(
        max_iterations=settings.link_max_iterations,
        max_seconds=settings.link_time_budget_seconds,
        stop_on_zero_progress=True,
        monotonic=ctx.monotonic,
    )
    try:
        while loop.next():
            linked = await services.link_batch(ctx.tenant_id, settings.link_batch_size)
            loop.record(linked)
    except PersistenceError:
        raise
    except Exception as exc:  # noqa: BLE001
        await ctx.db.rollback()
        ctx.logger.warning("pipeline.linking_failed", error=str(exc), iterations=loop.iterations)
        return {"status": "failed", "error": str(exc), "rows_linked": loop.progress_total, **loop.summary()}

    ctx.logger.info("pipeline.linking_complete", **loop.summary())
    return {"status": "completed", "rows_linked": loop.progress_total, **loop.summary()}


async def _run_facts(
    ctx: RunContext,
    services: ComputationServices,
    start: date,
    end: date,
    errors: list[dict],
) -> dict:
    settings = ctx.settings
    chunks = chunk_date_range(start, end, settings.pipeline_chunk_days)
    loop = BudgetedLoop(
        max_iterations=settings.pipeline_max_chunks,
        max_seconds=settings.pipeline_chunk_time_budget_seconds,
        monotonic=ctx.monotonic,
    )

    completed: list[dict] = []
    attempted = 0
    for chunk in chunks:
        if not loop.next():
            break
        attempted += 1
        try:
            output = await services.compute_facts(ctx.tenant_id, chunk.start_date, chunk.end_date)
        except PersistenceError:
            raise
        except Exception as exc:  # noqa: BLE001
            await ctx.db.rollback()
            errors.append({**chunk.to_dict(), "error": str(exc)})
            ctx.logger.warning("pipeline.chunk_failed", chunk=chunk.index, error=str(exc))
            loop.record(0)
            continue
        completed.append({**chunk.to_dict(), "result": output})
        loop.record(1)

    if attempted == len(chunks):
        loop.finish()
    deferred = [chunk.to_dict() for chunk in chunks[attempted:]]
    if deferred:
        ctx.logger.warning("pipeline.chunks_deferred", deferred=len(deferred), reason=loop.stopped_reason)

    return {
        "status": "completed" if attempted == len(chunks) else "partial",
        "total_chunks": len(chunks),
        "completed_chunks": completed,
        "failed_chunks": attempted - len(completed),
        "deferred_chunks": deferred,
        "stopped_reason": loop.stopped_reason,
    }


async def _run_aggregates(ctx: RunContext, services: ComputationServices, end: date) -> dict:
    try:
        output = await services.build_daily_aggregates(ctx.tenant_id, end)
    except PersistenceError:
        raise
    except Exception as exc:  # noqa: BLE001
        await ctx.db.rollback()
        ctx.logger.warning("pipeline.aggregates_failed", error=str(exc))
        return {"status": "failed", "error": str(exc)}
    return {"status": "completed", "result": output}


async def _run_summary(ctx: RunContext, services: ComputationServices, start: date, end: date) -> dict:
    try:
        counts = await services.summary_counts(ctx.tenant_id, start, end)
    except PersistenceError:
        raise
    except Exception as exc:  # noqa: BLE001
        await ctx.db.rollback()
        ctx.logger.warning("pipeline.summary_failed", error=str(exc))
        counts = {"error": str(exc)}

    active_alerts = await ctx.db.scalar(
        select(func.count(AlertInstance.id)).where(
            AlertInstance.tenant_id == ctx.tenant_id, AlertInstance.status == "active"
        )
    )
    open_cards = await ctx.db.scalar(
        select(func.count(DecisionCard.id)).where(
            DecisionCard.tenant_id == ctx.tenant_id, DecisionCard.status.in_(UNDECIDED_CARD_STATUSES)
        )
    )
    return {**counts, "active_alerts": active_alerts or 0, "open_decision_cards": open_cards or 0}


async def run_pipeline(
    ctx: RunContext,
    request: PipelineRequest,
    services: ComputationServices | None = None,
) -> PipelineResult:
    """Run every stage for one tenant. Does not take the job lock; see run_daily_pipeline."""
    services = services or SqlComputationServices(ctx.db)
    started = ctx.monotonic()
    start, end = request.resolve_window(ctx.today(), ctx.settings.pipeline_default_lookback_days)
    result = PipelineResult(tenant_id=ctx.tenant_id, start_date=start, end_date=end)
    log = ctx.logger.bind(start_date=start.isoformat(), end_date=end.isoformat())
    log.info("pipeline.started")

    result.stages["linking"] = await _run_linking(ctx, services) if request.link_customers else _skipped()
    result.stages["facts"] = await _run_facts(ctx, services, start, end, result.errors)
    result.stages["aggregates"] = _skipped() if request.skip_cdp else await _run_aggregates(ctx, services, end)

    if request.skip_alerts:
        result.stages["alerts"] = _skipped()
    else:
        try:
            detection = await run_detection(ctx, end)
        except PersistenceError:
            raise
        except Exception as exc:  # noqa: BLE001
            await ctx.db.rollback()
            log.warning("pipeline.alerts_failed", error=str(exc))
            result.stages["alerts"] = {"status": "failed", "error": str(exc)}
        else:
            result.alerts = detection.alerts
            result.stages["alerts"] = {"status": "completed", **detection.to_dict()}

    result.stages["summary"] = await _run_summary(ctx, services, start, end)
    result.duration_ms = round((ctx.monotonic() - started) * 1000)

    log.info(
        "pipeline.completed",
        success=result.success,
        chunk_errors=len(result.errors),
        duration_ms=result.duration_ms,
    )
    return result


async def run_daily_pipeline(
    ctx: RunContext,
    request: PipelineRequest,
    services: ComputationServices | None = None,
) -> tuple[IdempotentRun, PipelineResult | None]:
    """
    Run the pipeline under the ``daily-pipeline:{tenant}:{end_date}`` lock.

    Returns the lock outcome and, when this call did the work, the full
    result (including created alerts for publishing).
    """
    _, end = request.resolve_window(ctx.today(), ctx.settings.pipeline_default_lookback_days)
    holder: dict[str, PipelineResult] = {}

    async def _work(job_id: str) -> dict:
        outcome = await run_pipeline(ctx, request, services)
        holder["result"] = outcome
        return {**outcome.to_dict(), "job_id": job_id}

    run = await with_idempotency(
        ctx.db,
        PIPELINE_FUNCTION_NAME,
        ctx.tenant_id,
        _work,
        grain_date=end,
        input_params=request.to_params(),
    )
    return run, holder.get("result")
