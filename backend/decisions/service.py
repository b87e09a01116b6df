"""
Decision card service — persistence around the lifecycle in ``state_machine``.

One undecided card per trigger: a check-then-insert fast path, backed by the
partial unique index on (tenant_id, source_type, source_id).
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import String, and_, cast, exists, select
from sqlalchemy.exc import DBAPIError, IntegrityError

from core.context import RunContext
from core.errors import NotFound, PersistenceError
from alerts.engine import normalize_suggested_actions
from db.models import UNDECIDED_CARD_STATUSES, AlertInstance, DecisionCard, IntelligentRule, MonitoredObject
from decisions import state_machine


ALERT_CARD_PRIORITY = {"critical": "P1", "warning": "P2"}
ALERT_CARD_DEADLINE_DAYS = {"P1": 1, "P2": 3}
CONFIDENCE_LEVELS = ("HIGH", "MEDIUM", "LOW")
SOURCE_CONFIDENCE = {"threshold_config": "HIGH", "intelligent_rule": "HIGH", "correlation": "MEDIUM"}
OWNER_ROLES = {
    "inventory": "OPERATIONS",
    "fulfillment": "OPERATIONS",
    "supplier": "PURCHASING",
    "revenue": "SALES",
    "store": "SALES",
    "marketing": "MARKETING",
}
DEFAULT_ACTION_TYPES = {
    "inventory": "REORDER",
    "supplier": "CONTACT_SUPPLIER",
    "marketing": "ADJUST_BUDGET",
}
MAX_CARD_FACTS = 6


# ─── Card content ──────────────────────────────────────────────────────────


def _format_value(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:,.2f}".rstrip("0").rstrip(".")
    return str(value)


def card_confidence(alert: AlertInstance) -> str:
    """Source confidence, one level lower when the impact could not be estimated."""
    level = SOURCE_CONFIDENCE.get(alert.source_type, "MEDIUM")
    if alert.impact_amount is None:
        level = CONFIDENCE_LEVELS[min(CONFIDENCE_LEVELS.index(level) + 1, len(CONFIDENCE_LEVELS) - 1)]
    return level


def card_facts(alert: AlertInstance, obj: MonitoredObject | None = None) -> list[dict]:
    """The numbers behind the card: breached metric, threshold, impact, then scalar calculation details."""
    facts: list[dict] = []
    if alert.current_value is not None:
        facts.append(
            {
                "fact_key": alert.metric_name or "value",
                "label": (alert.metric_name or "value").replace("_", " ").capitalize(),
                "value": _format_value(alert.current_value),
                "trend": obj.trend_direction if obj is not None else None,
            }
        )
    if alert.threshold_value is not None:
        facts.append({"fact_key": "threshold", "label": "Threshold", "value": _format_value(alert.threshold_value)})
    if alert.impact_amount is not None:
        facts.append({"fact_key": "impact", "label": "Estimated impact", "value": _format_value(alert.impact_amount)})

    seen = {fact["fact_key"] for fact in facts}
    for key, value in (alert.calculation_details or {}).items():
        if len(facts) >= MAX_CARD_FACTS:
            break
        if key in seen or isinstance(value, (dict, list)) or value is None:
            continue
        facts.append({"fact_key": key, "label": key.replace("_", " ").capitalize(), "value": _format_value(value)})
    return facts


def card_actions(alert: AlertInstance, rule: IntelligentRule | None = None) -> list[dict]:
    """Recommended action first, alternatives from the rule, dismiss last."""
    default_type = DEFAULT_ACTION_TYPES.get(alert.category or "", "REVIEW")
    actions: list[dict] = []
    for item in normalize_suggested_actions(rule.suggested_actions if rule is not None else None):
        label = str(item.get("label") or item.get("action") or "").strip()
        if label:
            action_type = str(item.get("action_type") or default_type).upper()
            actions.append({"action_type": action_type, "label": label, "is_recommended": not actions})
    if not actions and alert.suggested_action:
        actions.append({"action_type": default_type, "label": alert.suggested_action, "is_recommended": True})
    actions.append({"action_type": "DISMISS", "label": "Dismiss", "is_recommended": False})
    return actions


async def _find_undecided(ctx: RunContext, source_type: str, source_id: str) -> DecisionCard | None:
    result = await ctx.db.execute(
        select(DecisionCard).where(
            DecisionCard.tenant_id == ctx.tenant_id,
            DecisionCard.source_type == source_type,
            DecisionCard.source_id == source_id,
            DecisionCard.status.in_(UNDECIDED_CARD_STATUSES),
        )
    )
    return result.scalars().first()


async def create_card_for_trigger(
    ctx: RunContext,
    *,
    source_type: str,
    source_id: str,
    card_type: str,
    title: str,
    priority: str = "P2",
    question: str | None = None,
    deadline_at: datetime | None = None,
    impact_amount: float | None = None,
    impact_metric: str | None = None,
    entity_type: str | None = None,
    entity_id: uuid.UUID | str | None = None,
    entity_label: str | None = None,
    confidence: str = "MEDIUM",
    owner_role: str | None = None,
    facts: list[dict] | None = None,
    actions: list[dict] | None = None,
) -> tuple[DecisionCard, bool]:
    """Returns (card, created). An existing undecided card for the trigger is returned as-is."""
    existing = await _find_undecided(ctx, source_type, source_id)
    if existing is not None:
        return existing, False

    now = ctx.now()
    card = DecisionCard(
        id=uuid.uuid4(),
        tenant_id=ctx.tenant_id,
        card_type=card_type,
        title=title,
        question=question,
        priority=priority,
        status="OPEN",
        deadline_at=deadline_at,
        impact_amount=impact_amount,
        impact_metric=impact_metric,
        entity_type=entity_type,
        entity_id=entity_id,
        entity_label=entity_label,
        source_type=source_type,
        source_id=source_id,
        confidence=confidence,
        owner_role=owner_role,
        facts=facts or [],
        actions=actions or [],
        snooze_count=0,
        created_at=now,
        updated_at=now,
    )
    try:
        async with ctx.db.begin_nested():
            ctx.db.add(card)
            await ctx.db.flush()
    except IntegrityError:
        existing = await _find_undecided(ctx, source_type, source_id)
        if existing is None:
            raise
        return existing, False
    return card, True


async def generate_cards_from_alerts(ctx: RunContext) -> dict:
    """Open a P1/P2 card for every active critical/warning alert that has never had one."""
    has_card = exists().where(
        DecisionCard.tenant_id == ctx.tenant_id,
        DecisionCard.source_type == "alert",
        DecisionCard.source_id == cast(AlertInstance.id, String),
    )
    try:
        result = await ctx.db.execute(
            select(AlertInstance, MonitoredObject, IntelligentRule)
            .outerjoin(
                MonitoredObject,
                and_(MonitoredObject.id == AlertInstance.object_id, MonitoredObject.tenant_id == ctx.tenant_id),
            )
            .outerjoin(
                IntelligentRule,
                and_(IntelligentRule.id == AlertInstance.rule_id, IntelligentRule.tenant_id == ctx.tenant_id),
            )
            .where(
                AlertInstance.tenant_id == ctx.tenant_id,
                AlertInstance.status == "active",
                AlertInstance.severity.in_(tuple(ALERT_CARD_PRIORITY)),
                ~has_card,
            )
            .order_by(AlertInstance.created_at)
        )
        rows = result.all()

        created: list[DecisionCard] = []
        for alert, obj, rule in rows:
            priority = ALERT_CARD_PRIORITY[alert.severity]
            card, is_new = await create_card_for_trigger(
                ctx,
                source_type="alert",
                source_id=str(alert.id),
                card_type=alert.category or alert.alert_type,
                title=alert.title,
                priority=priority,
                question=alert.suggested_action or f"How should we respond to: {alert.title}?",
                deadline_at=ctx.now() + timedelta(days=ALERT_CARD_DEADLINE_DAYS[priority]),
                impact_amount=alert.impact_amount,
                impact_metric=alert.metric_name,
                entity_type=obj.object_type if obj else None,
                entity_id=obj.id if obj else None,
                entity_label=obj.object_name if obj else None,
                confidence=card_confidence(alert),
                owner_role=OWNER_ROLES.get(alert.category or "", "MANAGER"),
                facts=card_facts(alert, obj),
                actions=card_actions(alert, rule),
            )
            if is_new:
                created.append(card)
        await ctx.db.commit()
    except DBAPIError as exc:
        raise PersistenceError(f"card generation failed: {exc}") from exc

    ctx.logger.info("decisions.cards_generated", candidates=len(rows), created=len(created))
    return {"candidates": len(rows), "created": len(created), "card_ids": [str(c.id) for c in created]}


async def get_card(ctx: RunContext, card_id: str) -> DecisionCard:
    result = await ctx.db.execute(
        select(DecisionCard).where(DecisionCard.id == card_id, DecisionCard.tenant_id == ctx.tenant_id)
    )
    card = result.scalar_one_or_none()
    if card is None:
        raise NotFound(f"Decision card {card_id} not found")
    return card


async def start_card(ctx: RunContext, card_id: str) -> DecisionCard:
    card = await get_card(ctx, card_id)
    state_machine.start(card, ctx.now())
    await ctx.db.commit()
    ctx.logger.info("decisions.started", card_id=str(card_id))
    return card


async def decide_card(
    ctx: RunContext,
    card_id: str,
    action_type: str,
    comment: str | None = None,
    decided_by: str | None = None,
) -> DecisionCard:
    """Decide a card and snapshot its entity's metrics as the outcome baseline."""
    card = await get_card(ctx, card_id)
    baseline = None
    if card.entity_id is not None:
        entity = await ctx.db.execute(
            select(MonitoredObject.current_metrics).where(
                MonitoredObject.id == card.entity_id, MonitoredObject.tenant_id == ctx.tenant_id
            )
        )
        baseline = entity.scalar_one_or_none()

    state_machine.decide(card, ctx.now(), action_type, comment, decided_by)
    card.baseline_metrics = dict(baseline) if baseline else None
    await ctx.db.commit()
    ctx.logger.info("decisions.decided", card_id=str(card_id), action_type=action_type)
    return card


async def dismiss_card(ctx: RunContext, card_id: str, reason_code: str, comment: str | None = None) -> DecisionCard:
    card = await get_card(ctx, card_id)
    state_machine.dismiss(card, ctx.now(), reason_code, comment)
    await ctx.db.commit()
    ctx.logger.info("decisions.dismissed", card_id=str(card_id), reason=reason_code)
    return card


async def snooze_card(ctx: RunContext, card_id: str, hours: float, reason: str | None = None) -> DecisionCard:
    card = await get_card(ctx, card_id)
    state_machine.snooze(card, ctx.now(), hours, reason)
    await ctx.db.commit()
    ctx.logger.info("decisions.snoozed", card_id=str(card_id), until=card.snoozed_until.isoformat())
    return card


async def sweep_snoozed_cards(ctx: RunContext) -> int:
    """Reopen every snoozed card whose snooze has expired."""
    now = ctx.now()
    result = await ctx.db.execute(
        select(DecisionCard).where(
            DecisionCard.tenant_id == ctx.tenant_id,
            DecisionCard.status == "SNOOZED",
            DecisionCard.snoozed_until <= now,
        )
    )
    reopened = sum(1 for card in result.scalars().all() if state_machine.reopen_if_due(card, now))
    await ctx.db.commit()
    if reopened:
        ctx.logger.info("decisions.snoozes_expired", reopened=reopened)
    return reopened


async def list_actionable_cards(ctx: RunContext, limit: int = 50) -> list[DecisionCard]:
    result = await ctx.db.execute(
        select(DecisionCard).where(
            DecisionCard.tenant_id == ctx.tenant_id,
            DecisionCard.status.in_(state_machine.ACTIONABLE_STATUSES),
        )
    )
    return state_machine.order_cards(list(result.scalars().all()))[:limit]
