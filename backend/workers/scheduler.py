"""Tenant-aware scheduler helpers for Celery beat fan-out."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import structlog
from sqlalchemy import select

from workers.celery_app import celery_app

logger = structlog.get_logger()

DEFAULT_ACTIVE_STATUSES = ("active", "trial")


@celery_app.task(
    name="workers.scheduler.dispatch_active_tenants",
    bind=True,
    max_retries=2,
    default_retry_delay=60,
    acks_late=True,
)
def dispatch_active_tenants(
    self,
    task_name: str,
    task_kwargs: dict | None = None,
    statuses: list[str] | None = None,
):
    """
    Dispatch a tenant-scoped task once per active tenant.
    """
    from core.config import get_settings
    from db.models import Tenant
    from db.session import build_session_factory

    run_id = self.request.id or "manual"
    payload = dict(task_kwargs or {})
    selected_statuses = tuple(statuses or DEFAULT_ACTIVE_STATUSES)

    if not task_name.startswith("workers."):
        return {"status": "failed", "reason": "invalid_task_name", "task_name": task_name}

    async def _dispatch():
        engine, session_factory = build_session_factory(get_settings().database_url)
        try:
            async with session_factory() as db:
                result = await db.execute(
                    select(Tenant.tenant_id).where(Tenant.status.in_(selected_statuses)).order_by(Tenant.created_at)
                )
                tenants = [str(row.tenant_id) for row in result.all()]

            for tenant_id in tenants:
                celery_app.send_task(task_name, kwargs={**payload, "tenant_id": tenant_id})

            summary = {
                "status": "success",
                "task_name": task_name,
                "tenant_count": len(tenants),
                "dispatched_count": len(tenants),
                "statuses": list(selected_statuses),
                "triggered_at": datetime.now(timezone.utc).isoformat(),
                "run_id": run_id,
            }
            logger.info("scheduler.dispatch_complete", **summary)
            return summary
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_dispatch())
    except Exception as exc:  # noqa: BLE001
        logger.error("scheduler.dispatch_failed", task_name=task_name, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)
