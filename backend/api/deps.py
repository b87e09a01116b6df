"""
Decision Pipeline API Dependencies

Dependency injection for DB sessions, caller identity, and tenant context.
"""

import uuid
from collections.abc import AsyncGenerator
from dataclasses import dataclass

from fastapi import Depends, Query, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from core.context import RunContext
from core.errors import AccessDenied, Unauthorized, ValidationError
from core.security import decode_access_token, is_service_role_token
from db.session import AsyncSessionLocal, apply_tenant_scope
from jobs.registry import IdempotentRun
from pipeline.services import ComputationServices, SqlComputationServices

security = HTTPBearer(auto_error=False)

DEV_TENANT_ID = "00000000-0000-0000-0000-000000000001"


@dataclass(frozen=True)
class Caller:
    """Who is calling: a dashboard user bound to one tenant, or the scheduler."""

    subject: str
    tenant_id: str | None = None
    is_service_role: bool = False


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def get_caller(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> Caller:
    """Service-role key or a JWT carrying tenant_id. Bypassed in debug mode."""
    if get_settings().debug:
        return Caller(subject="dev-user", tenant_id=DEV_TENANT_ID)

    if credentials is None:
        raise Unauthorized("Not authenticated")

    token = credentials.credentials
    if is_service_role_token(token):
        return Caller(subject="service_role", is_service_role=True)

    payload = decode_access_token(token)
    if payload is None:
        raise Unauthorized("Invalid or expired token")
    tenant_id = payload.get("tenant_id")
    return Caller(subject=str(payload.get("sub", "unknown")), tenant_id=str(tenant_id) if tenant_id else None)


def resolve_tenant(caller: Caller, requested: str | None) -> str:
    """
    The tenant a request acts on. The scheduler may name any tenant; a user
    may only act on their own.
    """
    tenant_id = requested or caller.tenant_id
    if not tenant_id:
        raise ValidationError("tenant_id is required")
    try:
        tenant_id = str(uuid.UUID(str(tenant_id)))
    except ValueError as exc:
        raise ValidationError(f"tenant_id is not a valid UUID: {tenant_id}") from exc

    if not caller.is_service_role and tenant_id != str(caller.tenant_id):
        raise AccessDenied("Caller has no access to this tenant")
    return tenant_id


async def tenant_context(db: AsyncSession, caller: Caller, requested: str | None) -> RunContext:
    """
    Build the run context and set the PostgreSQL RLS variable for the tenant.
    """
    tenant_id = resolve_tenant(caller, requested)
    apply_tenant_scope(db, tenant_id)
    return RunContext(db=db, tenant_id=tenant_id)


async def get_tenant_context(
    tenant_id: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
    caller: Caller = Depends(get_caller),
) -> RunContext:
    """Tenant from ?tenant_id= or, for dashboard users, from the token."""
    return await tenant_context(db, caller, tenant_id)


def get_computation_services(db: AsyncSession = Depends(get_db)) -> ComputationServices:
    return SqlComputationServices(db)


def lock_conflict_response(run: IdempotentRun) -> JSONResponse:
    """409 for a job that is already running or lost the lock race."""
    message = "Job already running" if run.status == "conflict" else "Could not acquire job lock"
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"success": False, "error": message, "code": run.status, **run.to_dict()},
    )
