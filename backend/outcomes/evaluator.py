"""
Outcome Evaluator — did the decision deliver the impact it predicted?

Scheduled per tenant. Picks DECIDED cards older than the evaluation window
that have no ledger record yet (NOT EXISTS against the ledger, the card itself
is never marked), measures the actual impact and appends one immutable
DecisionOutcomeRecord per decision.

Status rules (predicted > 0):
  exceeded  actual / predicted >= 1.10
  success   actual / predicted >= 0.95
  failed    actual <= 0 or actual / predicted < 0.25
  partial   anything in between
"""

from __future__ import annotations

import math
import uuid
from datetime import timedelta
from typing import Any, Protocol

from sqlalchemy import exists, select
from sqlalchemy.exc import DBAPIError, IntegrityError

from core.context import RunContext
from core.errors import PersistenceError
from db.models import DecisionCard, DecisionOutcomeRecord, MonitoredObject

EXCEEDED_RATIO = 1.10
SUCCESS_RATIO = 0.95
FAILED_RATIO = 0.25
NEUTRAL_ACCURACY = 0.5
RATIO_TOLERANCE = 1e-9


class ImpactMeasurer(Protocol):
    async def measure(self, ctx: RunContext, card: DecisionCard) -> tuple[float | None, dict | None]:
        """(actual impact or None when not yet measurable, current metrics snapshot)."""
        ...


class MetricDeltaMeasurer:
    """Actual impact = change in the card's impact metric on its entity since the decision."""

    async def measure(self, ctx: RunContext, card: DecisionCard) -> tuple[float | None, dict | None]:
        if card.entity_id is None or not card.impact_metric:
            return None, None
        result = await ctx.db.execute(
            select(MonitoredObject.current_metrics).where(
                MonitoredObject.id == card.entity_id, MonitoredObject.tenant_id == ctx.tenant_id
            )
        )
        current = result.scalar_one_or_none()
        if current is None:
            return None, None
        baseline = card.baseline_metrics or {}
        now_value = current.get(card.impact_metric)
        then_value = baseline.get(card.impact_metric)
        if now_value is None or then_value is None:
            return None, dict(current)
        return float(now_value) - float(then_value), dict(current)


def compute_accuracy(predicted: float | None, actual: float) -> float:
    if predicted is None or predicted <= 0:
        return NEUTRAL_ACCURACY
    return min(1.0, actual / predicted)


def _at_least(ratio: float, bound: float) -> bool:
    return ratio >= bound or math.isclose(ratio, bound, rel_tol=RATIO_TOLERANCE)


def classify_outcome(predicted: float | None, actual: float | None) -> str:
    if actual is None:
        return "pending"
    predicted = predicted or 0.0
    if predicted <= 0:
        if actual > 0:
            return "exceeded"
        return "success" if actual == 0 else "failed"
    ratio = actual / predicted
    if _at_least(ratio, EXCEEDED_RATIO):
        return "exceeded"
    if _at_least(ratio, SUCCESS_RATIO):
        return "success"
    if actual <= 0 or not _at_least(ratio, FAILED_RATIO):
        return "failed"
    return "partial"


def _eligible_decisions(ctx: RunContext, window_days: int):
    cutoff = ctx.now() - timedelta(days=window_days)
    already_measured = exists().where(DecisionOutcomeRecord.decision_id == DecisionCard.id)
    return (
        select(DecisionCard)
        .where(
            DecisionCard.tenant_id == ctx.tenant_id,
            DecisionCard.status == "DECIDED",
            DecisionCard.decided_at.is_not(None),
            DecisionCard.decided_at <= cutoff,
            ~already_measured,
        )
        .order_by(DecisionCard.decided_at, DecisionCard.id)
    )


async def evaluate_outcomes(
    ctx: RunContext,
    evaluation_window_days: int | None = None,
    measurer: ImpactMeasurer | None = None,
) -> dict[str, Any]:
    """Evaluate every due decision once. Re-running never duplicates a ledger record."""
    window = evaluation_window_days if evaluation_window_days is not None else ctx.settings.evaluation_window_days
    measurer = measurer or MetricDeltaMeasurer()
    log = ctx.logger.bind(evaluation_window_days=window)

    summary: dict[str, Any] = {"evaluated": 0, "pending": 0, "skipped": 0, "errors": [], "outcomes": []}
    try:
        result = await ctx.db.execute(_eligible_decisions(ctx, window))
        cards = result.scalars().all()

        for card in cards:
            decision_id = str(card.id)
            try:
                actual, current = await measurer.measure(ctx, card)
            except PersistenceError:
                raise
            except Exception as exc:  # noqa: BLE001
                summary["errors"].append({"decision_id": decision_id, "error": str(exc)})
                log.warning("outcomes.measure_failed", decision_id=decision_id, error=str(exc))
                continue

            predicted = card.predicted_impact
            status = classify_outcome(predicted, actual)
            outcome = {
                "decision_id": decision_id,
                "predicted_impact": predicted,
                "actual_impact": actual,
                "outcome_status": status,
            }
            if status == "pending":
                summary["pending"] += 1
                summary["outcomes"].append(outcome)
                continue

            accuracy = compute_accuracy(predicted, actual)
            variance = actual - predicted if predicted is not None else None
            record = DecisionOutcomeRecord(
                id=uuid.uuid4(),
                tenant_id=ctx.tenant_id,
                decision_id=card.id,
                decision_type=card.decision_action_type,
                evaluation_date=ctx.today(),
                predicted_impact=predicted,
                actual_impact=actual,
                variance=variance,
                accuracy_score=accuracy,
                outcome_status=status,
                baseline_metrics=card.baseline_metrics,
                current_metrics=current,
                is_auto_measured=True,
                created_at=ctx.now(),
            )
            try:
                async with ctx.db.begin_nested():
                    ctx.db.add(record)
                    await ctx.db.flush()
            except IntegrityError:
                # Another run got there first
                summary["skipped"] += 1
                continue
            await ctx.db.commit()

            summary["evaluated"] += 1
            summary["outcomes"].append({**outcome, "accuracy_score": accuracy, "variance": variance})
    except DBAPIError as exc:
        raise PersistenceError(f"outcome evaluation failed: {exc}") from exc

    log.info(
        "outcomes.evaluation_complete",
        evaluated=summary["evaluated"],
        pending=summary["pending"],
        skipped=summary["skipped"],
        errors=len(summary["errors"]),
    )
    return summary


async def list_outcome_records(ctx: RunContext, limit: int = 100) -> list[DecisionOutcomeRecord]:
    result = await ctx.db.execute(
        select(DecisionOutcomeRecord)
        .where(DecisionOutcomeRecord.tenant_id == ctx.tenant_id)
        .order_by(DecisionOutcomeRecord.evaluation_date.desc(), DecisionOutcomeRecord.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
