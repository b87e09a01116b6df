"""
Lock & Job Registry — durable record of job attempts.

Single-writer execution per logical job key:
  1. Fast path: look for a running row with the same lock_key
  2. Insert a running row inside a SAVEPOINT
  3. The partial unique index on (lock_key WHERE status='running') decides races

Terminal transitions are conditional updates (WHERE status = 'running'), so a
completed/failed/cancelled row is never rewritten.
"""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import date
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.context import utcnow
from core.errors import PersistenceError, ValidationError
from db.models import JobRun

logger = structlog.get_logger()

GRAIN_PLACEHOLDER = "_"


@dataclass(frozen=True)
class LockAcquired:
    job_id: str
    lock_key: str
    already_running: bool


@dataclass(frozen=True)
class LockFailure:
    lock_key: str
    reason: str


@dataclass(frozen=True)
class IdempotentRun:
    status: str  # completed | conflict | lock_failed
    job_id: str | None
    lock_key: str
    result: dict | None = None

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "job_id": self.job_id,
            "lock_key": self.lock_key,
            "result": self.result,
        }


def build_lock_key(
    function_name: str,
    tenant_id: str,
    grain_date: date | str | None = None,
    entity_hash: str | None = None,
) -> str:
    """
    ``function_name:tenant_id[:grain_date][:entity_hash]``.

    The grain slot holds ``_`` when only an entity hash is given, so two
    different inputs can never format to the same key.
    """
    grain = grain_date.isoformat() if isinstance(grain_date, date) else grain_date
    parts = [function_name, str(tenant_id)]
    if grain is not None:
        parts.append(grain)
    if entity_hash is not None:
        if grain is None:
            parts.append(GRAIN_PLACEHOLDER)
        parts.append(entity_hash)

    for part in parts:
        if not part:
            raise ValueError("lock key components must be non-empty")
        if ":" in part:
            raise ValueError(f"lock key component contains ':': {part!r}")
    return ":".join(parts)


async def _find_running(db: AsyncSession, lock_key: str) -> JobRun | None:
    result = await db.execute(select(JobRun).where(JobRun.lock_key == lock_key, JobRun.status == "running"))
    return result.scalars().first()


async def acquire_lock(
    db: AsyncSession,
    function_name: str,
    tenant_id: str,
    grain_date: date | str | None = None,
    entity_hash: str | None = None,
    input_params: dict | None = None,
) -> LockAcquired | LockFailure:
    """Acquire the running slot for a lock key, or report who holds it."""
    lock_key = build_lock_key(function_name, tenant_id, grain_date, entity_hash)

    try:
        existing = await _find_running(db, lock_key)
        if existing is not None:
            logger.info("jobs.already_running", lock_key=lock_key, job_id=str(existing.id))
            return LockAcquired(job_id=str(existing.id), lock_key=lock_key, already_running=True)

        job = JobRun(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            function_name=function_name,
            lock_key=lock_key,
            status="running",
            started_at=utcnow(),
            input_params=input_params or {},
        )
        try:
            async with db.begin_nested():
                db.add(job)
                await db.flush()
        except IntegrityError as exc:
            # Only a concurrent running row for the same key is a lost race
            holder = await db.scalar(
                select(JobRun.id).where(JobRun.lock_key == lock_key, JobRun.status == "running").limit(1)
            )
            if holder is None:
                logger.warning("jobs.insert_rejected", lock_key=lock_key, error=str(exc.orig))
                raise ValidationError(f"job for {lock_key} rejected: {exc.orig}") from exc
            logger.warning("jobs.lock_race_lost", lock_key=lock_key, holder=str(holder))
            return LockFailure(lock_key=lock_key, reason="lock_acquisition_race")

        await db.commit()
    except DBAPIError as exc:
        raise PersistenceError(f"lock acquisition failed for {lock_key}: {exc}") from exc

    logger.info("jobs.lock_acquired", lock_key=lock_key, job_id=str(job.id))
    return LockAcquired(job_id=str(job.id), lock_key=lock_key, already_running=False)


async def _finish(db: AsyncSession, job_id: str, status: str, **values: Any) -> bool:
    try:
        result = await db.execute(
            update(JobRun)
            .where(JobRun.id == job_id, JobRun.status == "running")
            .values(status=status, completed_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except DBAPIError as exc:
        raise PersistenceError(f"could not mark job {job_id} {status}: {exc}") from exc

    if result.rowcount == 0:
        logger.warning("jobs.transition_ignored", job_id=str(job_id), target_status=status)
        return False
    return True


async def complete_job(db: AsyncSession, job_id: str, result: dict | None = None) -> bool:
    """running → completed. Returns False when the job is not running."""
    return await _finish(db, job_id, "completed", result=result or {})


async def fail_job(
    db: AsyncSession,
    job_id: str,
    error_message: str,
    retry_count: int | None = None,
) -> bool:
    """running → failed."""
    values: dict[str, Any] = {"error_message": error_message}
    if retry_count is not None:
        values["retry_count"] = retry_count
    return await _finish(db, job_id, "failed", **values)


async def cancel_job(db: AsyncSession, job_id: str, reason: str) -> bool:
    """running → cancelled."""
    return await _finish(db, job_id, "cancelled", error_message=reason)


async def with_idempotency(
    db: AsyncSession,
    function_name: str,
    tenant_id: str,
    fn: Callable[[str], Awaitable[dict]],
    *,
    grain_date: date | str | None = None,
    entity_hash: str | None = None,
    input_params: dict | None = None,
) -> IdempotentRun:
    """
    Run ``fn(job_id)`` at most once per lock key at a time.

    A conflicting or racing invocation gets a typed result and ``fn`` is not
    called. If ``fn`` raises, the session is rolled back, the job is marked
    failed and the exception propagates.
    """
    lock = await acquire_lock(db, function_name, tenant_id, grain_date, entity_hash, input_params)

    if isinstance(lock, LockFailure):
        return IdempotentRun(status="lock_failed", job_id=None, lock_key=lock.lock_key)
    if lock.already_running:
        return IdempotentRun(status="conflict", job_id=lock.job_id, lock_key=lock.lock_key)

    log = logger.bind(job_id=lock.job_id, lock_key=lock.lock_key)
    try:
        result = await fn(lock.job_id)
    except Exception as exc:
        log.error("jobs.failed", error=str(exc), exc_info=True)
        await db.rollback()
        await fail_job(db, lock.job_id, str(exc))
        raise

    await complete_job(db, lock.job_id, result)
    log.info("jobs.completed")
    return IdempotentRun(status="completed", job_id=lock.job_id, lock_key=lock.lock_key, result=result)


async def list_job_runs(db: AsyncSession, tenant_id: str, limit: int = 50) -> list[JobRun]:
    result = await db.execute(
        select(JobRun).where(JobRun.tenant_id == tenant_id).order_by(JobRun.started_at.desc()).limit(limit)
    )
    return list(result.scalars().all())
