"""
Decision card lifecycle.

    OPEN ──start──▶ IN_PROGRESS
    OPEN | IN_PROGRESS ──decide──▶ DECIDED      (terminal)
    OPEN | IN_PROGRESS ──dismiss─▶ DISMISSED    (terminal)
    OPEN | IN_PROGRESS ──snooze──▶ SNOOZED ──(now >= snoozed_until)──▶ OPEN

Transitions mutate the card in place and take ``now`` from the caller; none of
them touch the session.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Any

from core.errors import InvalidCardTransition, ValidationError

PRIORITY_ORDER = {"P1": 0, "P2": 1, "P3": 2}
ACTIONABLE_STATUSES = ("OPEN", "IN_PROGRESS")
TERMINAL_STATUSES = ("DECIDED", "DISMISSED")
DISMISS_REASONS = ("NOT_RELEVANT", "ALREADY_HANDLED", "FALSE_POSITIVE", "AWAITING_DATA", "OTHER")
MAX_SNOOZE_HOURS = 24 * 365


def _require_status(card: Any, allowed: tuple[str, ...], action: str) -> None:
    if card.status in TERMINAL_STATUSES:
        raise InvalidCardTransition(f"Card {card.id} is {card.status}; cannot {action}")
    if card.status not in allowed:
        raise InvalidCardTransition(f"Cannot {action} a card in status {card.status}")


def start(card: Any, now: datetime) -> Any:
    _require_status(card, ("OPEN",), "start")
    card.status = "IN_PROGRESS"
    card.updated_at = now
    return card


def decide(
    card: Any,
    now: datetime,
    action_type: str,
    comment: str | None = None,
    decided_by: str | None = None,
) -> Any:
    _require_status(card, ACTIONABLE_STATUSES, "decide")
    if not action_type:
        raise ValidationError("action_type is required")
    card.status = "DECIDED"
    card.decision_action_type = action_type
    card.decision_comment = comment
    card.decided_by = decided_by
    card.decided_at = now
    card.predicted_impact = card.impact_amount
    card.updated_at = now
    return card


def dismiss(card: Any, now: datetime, reason_code: str, comment: str | None = None) -> Any:
    _require_status(card, ACTIONABLE_STATUSES, "dismiss")
    if reason_code not in DISMISS_REASONS:
        raise ValidationError(f"Unknown dismiss reason: {reason_code}. Allowed: {list(DISMISS_REASONS)}")
    card.status = "DISMISSED"
    card.dismiss_reason = reason_code
    card.dismiss_comment = comment
    card.updated_at = now
    return card


def snooze(card: Any, now: datetime, hours: float, reason: str | None = None) -> Any:
    _require_status(card, ACTIONABLE_STATUSES, "snooze")
    if hours is None or not math.isfinite(hours) or not 0 < hours <= MAX_SNOOZE_HOURS:
        raise ValidationError(f"snooze hours must be > 0 and at most {MAX_SNOOZE_HOURS}")
    card.status = "SNOOZED"
    card.snoozed_until = now + timedelta(hours=hours)
    card.snooze_count = (card.snooze_count or 0) + 1
    card.snooze_reason = reason
    card.updated_at = now
    return card


def reopen_if_due(card: Any, now: datetime) -> bool:
    """SNOOZED → OPEN once ``snoozed_until`` has passed. True when reopened."""
    if card.status in TERMINAL_STATUSES:
        raise InvalidCardTransition(f"Card {card.id} is {card.status}; cannot reopen")
    if card.status != "SNOOZED" or card.snoozed_until is None or now < card.snoozed_until:
        return False
    card.status = "OPEN"
    card.snoozed_until = None
    card.updated_at = now
    return True


def _order_key(card: Any) -> tuple:
    return (
        PRIORITY_ORDER.get(card.priority, len(PRIORITY_ORDER)),
        card.deadline_at is None,
        card.deadline_at or datetime.max,
        card.created_at or datetime.max,
        str(card.id),
    )


def order_cards(cards: list[Any]) -> list[Any]:
    """Actionable cards by priority, then deadline (missing last), then age, then id."""
    return sorted((c for c in cards if c.status in ACTIONABLE_STATUSES), key=_order_key)
