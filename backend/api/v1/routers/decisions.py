"""
Decision Cards Router — the actionable queue and its lifecycle.

OPEN → IN_PROGRESS → DECIDED | DISMISSED, with SNOOZED as a detour back to OPEN.
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from api.deps import Caller, get_caller, get_tenant_context
from core.context import RunContext
from decisions.service import (
    decide_card,
    dismiss_card,
    generate_cards_from_alerts,
    list_actionable_cards,
    snooze_card,
    start_card,
    sweep_snoozed_cards,
)
from decisions.state_machine import MAX_SNOOZE_HOURS

router = APIRouter(prefix="/api/v1/decisions", tags=["decisions"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class CardFact(BaseModel):
    fact_key: str
    label: str
    value: str
    trend: str | None = None


class CardAction(BaseModel):
    action_type: str
    label: str
    is_recommended: bool = False


class DecisionCardResponse(BaseModel):
    id: UUID
    tenant_id: UUID
    card_type: str
    title: str
    question: str | None
    priority: str
    status: str
    deadline_at: datetime | None
    impact_amount: float | None
    impact_currency: str
    impact_metric: str | None
    entity_type: str | None
    entity_id: UUID | None
    entity_label: str | None
    source_type: str | None
    source_id: str | None
    confidence: str
    owner_role: str | None
    facts: list[CardFact]
    actions: list[CardAction]
    snoozed_until: datetime | None
    snooze_count: int
    predicted_impact: float | None
    decision_action_type: str | None
    decided_by: str | None
    decided_at: datetime | None
    dismiss_reason: str | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class DecideRequest(BaseModel):
    action_type: str = Field(..., min_length=1, max_length=40)
    comment: str | None = None


class DismissRequest(BaseModel):
    reason_code: str
    comment: str | None = None


class SnoozeRequest(BaseModel):
    hours: float = Field(..., gt=0, le=MAX_SNOOZE_HOURS)
    reason: str | None = None


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("/", response_model=list[DecisionCardResponse])
async def list_cards(
    limit: int = Query(50, ge=1, le=200),
    ctx: RunContext = Depends(get_tenant_context),
):
    """Actionable cards ordered by priority, then deadline."""
    return await list_actionable_cards(ctx, limit=limit)


@router.post("/generate")
async def generate_cards(ctx: RunContext = Depends(get_tenant_context)):
    """Open cards for active critical/warning alerts that have none."""
    return await generate_cards_from_alerts(ctx)


@router.post("/sweep-snoozed")
async def sweep_snoozed(ctx: RunContext = Depends(get_tenant_context)):
    return {"reopened": await sweep_snoozed_cards(ctx)}


@router.post("/{card_id}/start", response_model=DecisionCardResponse)
async def start(card_id: UUID, ctx: RunContext = Depends(get_tenant_context)):
    return await start_card(ctx, str(card_id))


@router.post("/{card_id}/decide", response_model=DecisionCardResponse)
async def decide(
    card_id: UUID,
    body: DecideRequest,
    ctx: RunContext = Depends(get_tenant_context),
    caller: Caller = Depends(get_caller),
):
    """Record the decision; predicted impact and baseline metrics are frozen here."""
    return await decide_card(ctx, str(card_id), body.action_type, body.comment, decided_by=caller.subject)


@router.post("/{card_id}/dismiss", response_model=DecisionCardResponse)
async def dismiss(card_id: UUID, body: DismissRequest, ctx: RunContext = Depends(get_tenant_context)):
    return await dismiss_card(ctx, str(card_id), body.reason_code, body.comment)


@router.post("/{card_id}/snooze", response_model=DecisionCardResponse)
async def snooze(card_id: UUID, body: SnoozeRequest, ctx: RunContext = Depends(get_tenant_context)):
    return await snooze_card(ctx, str(card_id), body.hours, body.reason)
