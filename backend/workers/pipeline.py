"""
Pipeline Workers — scheduled, tenant-scoped entry points.

  1. run_daily_pipeline: linking → facts → aggregates → alerts → summary
  2. run_alert_detection: rule engine pass, new alerts published to Redis
  3. generate_decision_cards: cards for active critical/warning alerts
  4. reopen_snoozed_cards: snooze expiry sweep
  5. evaluate_decision_outcomes: outcome ledger for decisions past their window

Each task opens its own engine, runs one tenant, and disposes the engine.
Job-locked tasks return the lock outcome instead of retrying on conflict.

Schedule: See celery_app.py beat_schedule
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import date
from typing import Any

import structlog

from workers.celery_app import celery_app

logger = structlog.get_logger()


async def _with_tenant_context(tenant_id: str, work: Callable[[Any], Awaitable[dict]]) -> dict:
    from core.config import get_settings
    from core.context import RunContext
    from db.session import apply_tenant_scope, build_session_factory

    settings = get_settings()
    engine, session_factory = build_session_factory(settings.database_url)
    try:
        async with session_factory() as db:
            apply_tenant_scope(db, tenant_id)
            return await work(RunContext(db=db, tenant_id=tenant_id, settings=settings))
    finally:
        await engine.dispose()


async def _publish(alerts: list, log) -> int:
    """Fan-out is best effort; the alerts are already committed."""
    from alerts.engine import publish_alerts

    try:
        return await publish_alerts(alerts)
    except Exception as exc:  # noqa: BLE001
        log.warning("alerts.publish_failed", count=len(alerts), error=str(exc))
        return 0


@celery_app.task(
    name="workers.pipeline.run_daily_pipeline",
    bind=True,
    max_retries=2,
    default_retry_delay=300,
    acks_late=True,
)
def run_daily_pipeline(
    self,
    tenant_id: str,
    start_date: str | None = None,
    end_date: str | None = None,
    link_customers: bool = False,
    skip_cdp: bool = False,
    skip_alerts: bool = False,
):
    """
    Daily job: recompute facts and aggregates for the trailing window.

    Locked on ``daily-pipeline:{tenant}:{end_date}``; a second invocation for
    the same day returns ``conflict`` without doing any work.
    """
    run_id = self.request.id or "manual"
    log = logger.bind(tenant_id=tenant_id, run_id=run_id)
    log.info("pipeline.task_started")

    async def _run(ctx):
        from pipeline.orchestrator import PipelineRequest
        from pipeline.orchestrator import run_daily_pipeline as run_locked

        request = PipelineRequest(
            tenant_id=tenant_id,
            start_date=date.fromisoformat(start_date) if start_date else None,
            end_date=date.fromisoformat(end_date) if end_date else None,
            link_customers=link_customers,
            skip_cdp=skip_cdp,
            skip_alerts=skip_alerts,
        )
        run, result = await run_locked(ctx, request)
        if result is not None:
            await _publish(result.alerts, log)
        return run.to_dict()

    try:
        summary = asyncio.run(_with_tenant_context(tenant_id, _run))
        log.info("pipeline.task_complete", status=summary["status"])
        return summary
    except Exception as exc:
        log.error("pipeline.task_failed", error=str(exc), exc_info=True)
        raise self.retry(exc=exc)


@celery_app.task(
    name="workers.pipeline.run_alert_detection",
    bind=True,
    max_retries=1,
    default_retry_delay=60,
    acks_late=True,
)
def run_alert_detection(self, tenant_id: str, detection_date: str | None = None):
    """Hourly job: evaluate rules, thresholds and correlations; publish new alerts."""
    log = logger.bind(tenant_id=tenant_id, run_id=self.request.id or "manual")

    async def _run(ctx):
        from alerts.engine import run_detection
        from jobs.registry import with_idempotency

        day = date.fromisoformat(detection_date) if detection_date else ctx.today()
        created: list = []

        async def _detect(job_id: str) -> dict:
            detection = await run_detection(ctx, day)
            created.extend(detection.alerts)
            return detection.to_dict()

        run = await with_idempotency(ctx.db, "detect-alerts", ctx.tenant_id, _detect, grain_date=day)
        published = await _publish(created, log)
        return {**run.to_dict(), "published": published}

    try:
        return asyncio.run(_with_tenant_context(tenant_id, _run))
    except Exception as exc:
        log.error("alerts.task_failed", error=str(exc), exc_info=True)
        raise self.retry(exc=exc)


@celery_app.task(
    name="workers.pipeline.generate_decision_cards",
    bind=True,
    max_retries=1,
    default_retry_delay=60,
    acks_late=True,
)
def generate_decision_cards(self, tenant_id: str):
    """Open decision cards for alerts that need a human call."""

    async def _run(ctx):
        from decisions.service import generate_cards_from_alerts

        return await generate_cards_from_alerts(ctx)

    try:
        return asyncio.run(_with_tenant_context(tenant_id, _run))
    except Exception as exc:
        logger.error("decisions.generate_failed", tenant_id=tenant_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)


@celery_app.task(
    name="workers.pipeline.reopen_snoozed_cards",
    bind=True,
    max_retries=1,
    default_retry_delay=60,
)
def reopen_snoozed_cards(self, tenant_id: str):

    async def _run(ctx):
        from decisions.service import sweep_snoozed_cards

        return {"reopened": await sweep_snoozed_cards(ctx)}

    try:
        return asyncio.run(_with_tenant_context(tenant_id, _run))
    except Exception as exc:
        logger.error("decisions.sweep_failed", tenant_id=tenant_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)


@celery_app.task(
    name="workers.pipeline.evaluate_decision_outcomes",
    bind=True,
    max_retries=2,
    default_retry_delay=300,
    acks_late=True,
)
def evaluate_decision_outcomes(self, tenant_id: str, evaluation_window_days: int | None = None):
    """
    Daily job: measure decisions whose evaluation window has elapsed.

    Safe to re-run; decisions already in the ledger are not eligible.
    """

    async def _run(ctx):
        from jobs.registry import with_idempotency
        from outcomes.evaluator import evaluate_outcomes

        async def _evaluate(job_id: str) -> dict:
            return await evaluate_outcomes(ctx, evaluation_window_days)

        run = await with_idempotency(
            ctx.db,
            "evaluate-outcomes",
            ctx.tenant_id,
            _evaluate,
            grain_date=ctx.today(),
            input_params={"evaluation_window_days": evaluation_window_days},
        )
        return run.to_dict()

    try:
        return asyncio.run(_with_tenant_context(tenant_id, _run))
    except Exception as exc:
        logger.error("outcomes.task_failed", tenant_id=tenant_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)
