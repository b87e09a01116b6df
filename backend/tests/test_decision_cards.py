"""
Tests for decision cards.

Covers:
  - Lifecycle transitions and terminal states
  - Snooze expiry
  - Queue ordering
  - One undecided card per trigger
  - Card generation from alerts
"""

import uuid
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy import func, select

from core.errors import InvalidCardTransition, NotFound, ValidationError
from db.models import AlertInstance, DecisionCard, IntelligentRule, MonitoredObject
from decisions import state_machine
from decisions.service import (
    create_card_for_trigger,
    decide_card,
    dismiss_card,
    generate_cards_from_alerts,
    list_actionable_cards,
    snooze_card,
    start_card,
    sweep_snoozed_cards,
)

NOW = datetime(2024, 5, 1, 9, 0, 0)


def _card(**kwargs):
    params = {
        "id": uuid.uuid4(),
        "status": "OPEN",
        "priority": "P2",
        "deadline_at": None,
        "created_at": NOW,
        "impact_amount": 100.0,
        "snooze_count": 0,
        "snoozed_until": None,
    }
    params.update(kwargs)
    return SimpleNamespace(**params)


# ── State Machine ──────────────────────────────────────────────────────


class TestStateMachine:
    def test_start(self):
        card = state_machine.start(_card(), NOW)
        assert card.status == "IN_PROGRESS"

    def test_decide_freezes_predicted_impact(self):
        card = state_machine.decide(_card(status="IN_PROGRESS"), NOW, "REORDER", "ordering 200 units", "lan")
        assert card.status == "DECIDED"
        assert card.decided_at == NOW
        assert card.predicted_impact == 100.0
        assert card.decision_action_type == "REORDER"
        assert card.decided_by == "lan"

    def test_decide_requires_action_type(self):
        with pytest.raises(ValidationError):
            state_machine.decide(_card(), NOW, "")

    def test_terminal_cards_reject_every_transition(self):
        for status in ("DECIDED", "DISMISSED"):
            card = _card(status=status)
            with pytest.raises(InvalidCardTransition):
                state_machine.start(card, NOW)
            with pytest.raises(InvalidCardTransition):
                state_machine.decide(card, NOW, "REORDER")
            with pytest.raises(InvalidCardTransition):
                state_machine.dismiss(card, NOW, "OTHER")
            with pytest.raises(InvalidCardTransition):
                state_machine.snooze(card, NOW, 4)
            with pytest.raises(InvalidCardTransition):
                state_machine.reopen_if_due(card, NOW)

    def test_cannot_start_twice(self):
        with pytest.raises(InvalidCardTransition):
            state_machine.start(_card(status="IN_PROGRESS"), NOW)

    def test_dismiss_reason_must_be_known(self):
        with pytest.raises(ValidationError, match="Unknown dismiss reason"):
            state_machine.dismiss(_card(), NOW, "BORED")

        card = state_machine.dismiss(_card(), NOW, "FALSE_POSITIVE", "sensor glitch")
        assert card.status == "DISMISSED"
        assert card.dismiss_reason == "FALSE_POSITIVE"

    def test_snooze_and_reopen(self):
        card = state_machine.snooze(_card(), NOW, 4, "waiting for supplier")
        assert card.status == "SNOOZED"
        assert card.snoozed_until == NOW + timedelta(hours=4)
        assert card.snooze_count == 1

        assert state_machine.reopen_if_due(card, NOW + timedelta(hours=3)) is False
        assert card.status == "SNOOZED"
        assert state_machine.reopen_if_due(card, NOW + timedelta(hours=4)) is True
        assert card.status == "OPEN"
        assert card.snoozed_until is None

    def test_snooze_hours_must_be_positive(self):
        with pytest.raises(ValidationError):
            state_machine.snooze(_card(), NOW, 0)

    @pytest.mark.parametrize("hours", [1e12, float("nan"), float("inf"), state_machine.MAX_SNOOZE_HOURS + 1])
    def test_snooze_hours_must_be_finite_and_bounded(self, hours):
        card = _card()
        with pytest.raises(ValidationError):
            state_machine.snooze(card, NOW, hours)
        assert card.status == "OPEN"

    def test_snooze_for_a_full_year(self):
        card = state_machine.snooze(_card(), NOW, state_machine.MAX_SNOOZE_HOURS)
        assert card.snoozed_until == NOW + timedelta(days=365)

    def test_snoozed_card_cannot_be_decided(self):
        card = state_machine.snooze(_card(), NOW, 1)
        with pytest.raises(InvalidCardTransition):
            state_machine.decide(card, NOW, "REORDER")

    def test_order_cards(self):
        late_p1 = _card(priority="P1", deadline_at=NOW + timedelta(days=2))
        early_p1 = _card(priority="P1", deadline_at=NOW + timedelta(days=1))
        no_deadline_p1 = _card(priority="P1")
        p2 = _card(priority="P2", deadline_at=NOW)
        p3 = _card(priority="P3", deadline_at=NOW - timedelta(days=1))
        decided = _card(priority="P1", status="DECIDED", deadline_at=NOW)
        snoozed = _card(priority="P1", status="SNOOZED", deadline_at=NOW)

        ordered = state_machine.order_cards([p3, no_deadline_p1, p2, decided, late_p1, snoozed, early_p1])

        assert ordered == [early_p1, late_p1, no_deadline_p1, p2, p3]


# ── Service ────────────────────────────────────────────────────────────


async def _trigger_card(ctx, source_id="alert-1", **kwargs):
    params = {
        "source_type": "alert",
        "source_id": source_id,
        "card_type": "inventory",
        "title": "Reorder noodles",
        "priority": "P1",
        "impact_amount": 250.0,
        "impact_metric": "total_stock",
    }
    params.update(kwargs)
    return await create_card_for_trigger(ctx, **params)


@pytest.mark.asyncio
class TestCardService:
    async def test_one_undecided_card_per_trigger(self, ctx, tenant, test_db):
        first, created = await _trigger_card(ctx)
        again, created_again = await _trigger_card(ctx)
        await test_db.commit()

        assert created is True
        assert created_again is False
        assert again.id == first.id
        count = await test_db.scalar(select(func.count(DecisionCard.id)))
        assert count == 1

    async def test_uniqueness_index_backs_the_check(self, ctx, tenant, test_db, monkeypatch):
        first, _ = await _trigger_card(ctx)
        await test_db.commit()

        from decisions import service

        real_find = service._find_undecided
        calls = []

        async def _stale_then_real(ctx_, source_type, source_id):
            calls.append(source_id)
            if len(calls) == 1:
                return None
            return await real_find(ctx_, source_type, source_id)

        monkeypatch.setattr(service, "_find_undecided", _stale_then_real)
        card, created = await _trigger_card(ctx)

        assert created is False
        assert card.id == first.id

    async def test_new_card_allowed_after_decision(self, ctx, tenant, test_db):
        first, _ = await _trigger_card(ctx)
        await test_db.commit()
        await decide_card(ctx, str(first.id), "REORDER")

        second, created = await _trigger_card(ctx)
        assert created is True
        assert second.id != first.id

    async def test_lifecycle_through_service(self, ctx, tenant, test_db, clock):
        card, _ = await _trigger_card(ctx)
        await test_db.commit()

        await start_card(ctx, str(card.id))
        clock.advance(hours=2)
        decided = await decide_card(ctx, str(card.id), "REORDER", "200 units", decided_by="lan")

        assert decided.status == "DECIDED"
        assert decided.decided_at == datetime(2024, 5, 1, 11, 0, 0)
        assert decided.predicted_impact == 250.0

        with pytest.raises(InvalidCardTransition):
            await dismiss_card(ctx, str(card.id), "OTHER")

    async def test_decide_snapshots_entity_baseline(self, ctx, tenant, test_db):
        entity = MonitoredObject(
            id=uuid.uuid4(),
            tenant_id=tenant,
            object_type="product",
            object_name="Noodles",
            external_id="SKU-NOODLES",
            current_metrics={"total_stock": 12},
        )
        test_db.add(entity)
        await test_db.commit()
        card, _ = await _trigger_card(ctx, entity_type="product", entity_id=entity.id)
        await test_db.commit()

        decided = await decide_card(ctx, str(card.id), "REORDER")

        assert decided.baseline_metrics == {"total_stock": 12}

    async def test_unknown_card(self, ctx, tenant):
        with pytest.raises(NotFound):
            await start_card(ctx, str(uuid.uuid4()))

    async def test_snooze_sweep_reopens_due_cards(self, ctx, tenant, test_db, clock):
        short, _ = await _trigger_card(ctx, source_id="alert-short")
        long, _ = await _trigger_card(ctx, source_id="alert-long")
        await test_db.commit()
        await snooze_card(ctx, str(short.id), 1)
        await snooze_card(ctx, str(long.id), 48)

        clock.advance(hours=2)
        reopened = await sweep_snoozed_cards(ctx)

        assert reopened == 1
        assert short.status == "OPEN"
        assert long.status == "SNOOZED"

    async def test_actionable_queue(self, ctx, tenant, test_db):
        p2, _ = await _trigger_card(ctx, source_id="a", priority="P2", deadline_at=NOW)
        p1, _ = await _trigger_card(ctx, source_id="b", priority="P1", deadline_at=NOW + timedelta(days=1))
        dismissed, _ = await _trigger_card(ctx, source_id="c", priority="P1")
        await test_db.commit()
        await dismiss_card(ctx, str(dismissed.id), "NOT_RELEVANT")

        queue = await list_actionable_cards(ctx)

        assert [c.id for c in queue] == [p1.id, p2.id]


# ── Generation from Alerts ─────────────────────────────────────────────


def _alert(tenant, severity, title, **kwargs):
    params = {
        "id": uuid.uuid4(),
        "tenant_id": tenant,
        "source_type": "threshold_config",
        "alert_type": "low_days_of_stock",
        "category": "inventory",
        "severity": severity,
        "status": "active",
        "title": title,
        "message": title,
        "metric_name": "days_of_stock",
        "impact_amount": 90.0,
        "detection_date": NOW.date(),
        "dedup_key": f"threshold_config:x:{uuid.uuid4()}:2024-05-01",
        "created_at": NOW,
    }
    params.update(kwargs)
    return AlertInstance(**params)


@pytest.mark.asyncio
class TestGenerateCards:
    async def test_cards_for_critical_and_warning_only(self, ctx, tenant, test_db):
        critical = _alert(tenant, "critical", "Critical stockout")
        warning = _alert(tenant, "warning", "Slow mover")
        info = _alert(tenant, "info", "FYI")
        resolved = _alert(tenant, "critical", "Already fixed", status="resolved")
        test_db.add_all([critical, warning, info, resolved])
        await test_db.commit()

        summary = await generate_cards_from_alerts(ctx)

        assert summary["candidates"] == 2
        assert summary["created"] == 2
        cards = (await test_db.execute(select(DecisionCard))).scalars().all()
        by_source = {c.source_id: c for c in cards}
        assert by_source[str(critical.id)].priority == "P1"
        assert by_source[str(critical.id)].deadline_at == ctx.now() + timedelta(days=1)
        assert by_source[str(warning.id)].priority == "P2"
        assert by_source[str(warning.id)].deadline_at == ctx.now() + timedelta(days=3)
        assert by_source[str(critical.id)].impact_amount == 90.0

    async def test_generation_is_idempotent(self, ctx, tenant, test_db):
        test_db.add(_alert(tenant, "critical", "Critical stockout"))
        await test_db.commit()

        await generate_cards_from_alerts(ctx)
        second = await generate_cards_from_alerts(ctx)

        assert second == {"candidates": 0, "created": 0, "card_ids": []}

    async def test_decided_alert_does_not_get_a_second_card(self, ctx, tenant, test_db):
        test_db.add(_alert(tenant, "critical", "Critical stockout"))
        await test_db.commit()
        first = await generate_cards_from_alerts(ctx)
        await decide_card(ctx, first["card_ids"][0], "REORDER")

        again = await generate_cards_from_alerts(ctx)

        assert again["created"] == 0

    async def test_card_links_alert_object(self, ctx, tenant, test_db):
        entity = MonitoredObject(
            id=uuid.uuid4(),
            tenant_id=tenant,
            object_type="product",
            object_name="Fish Sauce",
            external_id="SKU-FISH",
            current_metrics={},
        )
        test_db.add(entity)
        await test_db.commit()
        test_db.add(_alert(tenant, "warning", "Low stock", object_id=entity.id))
        await test_db.commit()

        summary = await generate_cards_from_alerts(ctx)

        card = await test_db.get(DecisionCard, uuid.UUID(summary["card_ids"][0]))
        assert card.entity_id == entity.id
        assert card.entity_type == "product"
        assert card.entity_label == "Fish Sauce"

    async def test_card_carries_facts_and_rule_actions(self, ctx, tenant, test_db):
        entity = MonitoredObject(
            id=uuid.uuid4(),
            tenant_id=tenant,
            object_type="product",
            object_name="Fish Sauce",
            external_id="SKU-FISH",
            current_metrics={},
            trend_direction="down",
        )
        rule = IntelligentRule(
            id=uuid.uuid4(),
            tenant_id=tenant,
            rule_code="low_stock",
            rule_name="Low stock",
            suggested_actions=[
                {"action_type": "reorder", "label": "Raise a purchase order"},
                "Transfer stock from another store",
            ],
        )
        test_db.add_all([entity, rule])
        await test_db.commit()
        alert = _alert(
            tenant,
            "critical",
            "Low Stock: Fish Sauce",
            source_type="intelligent_rule",
            rule_id=rule.id,
            object_id=entity.id,
            current_value=2.0,
            threshold_value=3.0,
            calculation_details={"operator": "less_than", "inputs": {"days_of_stock": 2.0}, "result": 2.0},
        )
        test_db.add(alert)
        await test_db.commit()

        summary = await generate_cards_from_alerts(ctx)

        card = await test_db.get(DecisionCard, uuid.UUID(summary["card_ids"][0]))
        assert card.confidence == "HIGH"
        assert card.owner_role == "OPERATIONS"
        assert card.facts == [
            {"fact_key": "days_of_stock", "label": "Days of stock", "value": "2", "trend": "down"},
            {"fact_key": "threshold", "label": "Threshold", "value": "3"},
            {"fact_key": "impact", "label": "Estimated impact", "value": "90"},
            {"fact_key": "operator", "label": "Operator", "value": "less_than"},
            {"fact_key": "result", "label": "Result", "value": "2"},
        ]
        assert card.actions == [
            {"action_type": "REORDER", "label": "Raise a purchase order", "is_recommended": True},
            {"action_type": "REORDER", "label": "Transfer stock from another store", "is_recommended": False},
            {"action_type": "DISMISS", "label": "Dismiss", "is_recommended": False},
        ]

    async def test_correlation_card_without_impact_has_low_confidence(self, ctx, tenant, test_db):
        test_db.add(
            _alert(
                tenant,
                "critical",
                "2 products from Saigon Foods near stockout",
                source_type="correlation",
                alert_type="supplier_cascade_risk",
                category="supplier",
                impact_amount=None,
                suggested_action="Confirm open orders with Saigon Foods",
            )
        )
        await test_db.commit()

        summary = await generate_cards_from_alerts(ctx)

        card = await test_db.get(DecisionCard, uuid.UUID(summary["card_ids"][0]))
        assert card.confidence == "LOW"
        assert card.owner_role == "PURCHASING"
        assert card.actions[0] == {
            "action_type": "CONTACT_SUPPLIER",
            "label": "Confirm open orders with Saigon Foods",
            "is_recommended": True,
        }
        assert card.actions[-1]["action_type"] == "DISMISS"
