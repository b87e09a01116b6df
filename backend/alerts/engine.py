"""
Alert Engine — Rule evaluation over monitored objects, alert lifecycle.

Detection order:
  1. Refresh derived metrics for products and stores (committed first)
  2. Intelligent rules by ascending priority, ties by rule_code
  3. Threshold configs
  4. Cross-object correlations

Every rule, config and correlation is isolated: a failure is recorded in the
result and evaluation moves on. Alerts are deduplicated on
``source_type:source_id:object_id:detection_date`` both in memory and by the
unique (tenant_id, dedup_key) constraint.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any

import redis.asyncio as aioredis
import structlog
from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError

from alerts.correlation import iter_correlations
from alerts.formulas import SeverityThresholds, compare, formula_for_rule, normalize_operator
from alerts.objects import refresh_derived_metrics, snapshot
from core.config import get_settings
from core.context import RunContext
from core.errors import FormulaError, InvalidTransition, NotFound, PersistenceError
from db.models import AlertInstance, IntelligentRule, MonitoredObject, ThresholdConfig

logger = structlog.get_logger()

DEADLINE_HOURS = {"critical": 24, "warning": 72}

# Rules without an explicit target type pick objects by category
CATEGORY_TARGETS = {
    "inventory": "product",
    "revenue": "store",
    "store": "store",
    "marketing": "campaign",
    "fulfillment": "order",
    "supplier": "supplier",
}

ALERT_TRANSITIONS = {
    "acknowledged": {"active"},
    "resolved": {"active", "acknowledged"},
}


@dataclass
class DetectionResult:
    detection_date: date
    checked: int = 0
    triggered: int = 0
    refreshed_objects: int = 0
    errors: list[dict] = field(default_factory=list)
    calculations: list[dict] = field(default_factory=list)
    alerts: list[AlertInstance] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "detection_date": self.detection_date.isoformat(),
            "checked": self.checked,
            "triggered": self.triggered,
            "refreshed_objects": self.refreshed_objects,
            "errors": self.errors,
            "calculations": self.calculations,
        }


def dedup_key(source_type: str, source_id: str, object_id: str | None, detection_date: date) -> str:
    return f"{source_type}:{source_id}:{object_id or '_'}:{detection_date.isoformat()}"


def _risk_sort_key(snap: dict[str, Any]) -> tuple:
    risk = snap["metrics"].get("stockout_risk_days")
    return (999.0 if risk is None else float(risk), snap["object_name"], snap["id"])


def target_objects(rule: IntelligentRule, snapshots: list[dict[str, Any]], limit: int) -> list[dict[str, Any]]:
    """Objects a rule applies to, most at-risk first, capped at ``limit``."""
    object_type = rule.target_object_type or CATEGORY_TARGETS.get(rule.rule_category)
    selected = [s for s in snapshots if object_type is None or s["object_type"] == object_type]
    return sorted(selected, key=_risk_sort_key)[:limit]


def estimate_impact(snap: dict[str, Any]) -> float | None:
    """Lost sales over one replenishment cycle (products) or gap to target (stores)."""
    metrics = snap["metrics"]
    if snap["object_type"] == "product":
        price = metrics.get("unit_price")
        daily = metrics.get("avg_daily_sales")
        if price is None or daily is None:
            return None
        lead_time = snap.get("lead_time_days") or 7
        return round(float(daily) * float(price) * lead_time, 2)
    if snap["object_type"] == "store" and metrics.get("target_revenue"):
        return max(0.0, float(metrics["target_revenue"]) - float(metrics.get("daily_revenue") or 0))
    return None


def normalize_suggested_actions(raw: Any) -> list[dict]:
    """A rule's stored suggested_actions as a list of dicts. Accepts a single object or a bare string."""
    if not raw:
        return []
    if isinstance(raw, (dict, str)):
        raw = [raw]
    if not isinstance(raw, list):
        return []
    return [item if isinstance(item, dict) else {"action": str(item)} for item in raw]


def _suggested_action(rule: IntelligentRule, severity: str) -> str:
    actions = normalize_suggested_actions(rule.suggested_actions)
    if actions:
        first = actions[0]
        return str(first.get("action") or first.get("label") or first)
    verb = "Act today on" if severity == "critical" else "Review"
    return f"{verb} {rule.rule_name.lower()}"


def evaluate_rule(
    rule: IntelligentRule,
    snapshots: list[dict[str, Any]],
    today: date,
    max_objects: int,
    max_alerts: int,
) -> tuple[int, list[dict]]:
    """Pure evaluation of one intelligent rule. Returns (objects checked, alert candidates)."""
    formula = formula_for_rule(rule.formula, rule.calculation_formula)
    thresholds = SeverityThresholds.from_config(rule.threshold_config)

    checked = 0
    candidates: list[dict] = []
    for snap in target_objects(rule, snapshots, max_objects):
        if len(candidates) >= max_alerts:
            break
        value = formula.evaluate(snap["metrics"], today)
        checked += 1
        if value is None:
            continue
        breach = thresholds.classify(value)
        if breach is None:
            continue
        severity, threshold = breach
        candidates.append(
            {
                "source_type": "intelligent_rule",
                "source_id": str(rule.id),
                "rule_id": rule.id,
                "object_id": snap["id"],
                "alert_type": rule.rule_code,
                "category": rule.rule_category,
                "severity": severity,
                "title": f"{rule.rule_name}: {snap['object_name']}",
                "message": (
                    f"{snap['object_name']} {formula.kind} value {value:,.2f} "
                    f"breached the {severity} threshold ({thresholds.operator} {threshold:g})"
                ),
                "metric_name": formula.inputs()[0] if len(formula.inputs()) == 1 else rule.rule_code,
                "current_value": value,
                "threshold_value": threshold,
                "impact_amount": estimate_impact(snap),
                "suggested_action": _suggested_action(rule, severity),
                "calculation_details": {
                    "formula": rule.formula or rule.calculation_formula,
                    "operator": thresholds.operator,
                    "inputs": {name: snap["metrics"].get(name) for name in formula.inputs()},
                    "result": value,
                    "threshold": threshold,
                },
            }
        )
    return checked, candidates


def evaluate_threshold_config(config: ThresholdConfig, snapshots: list[dict[str, Any]]) -> tuple[int, list[dict]]:
    """Literal comparison ``metric operator threshold_value`` over matching objects."""
    op = normalize_operator(config.operator)
    checked = 0
    candidates: list[dict] = []
    for snap in snapshots:
        if config.object_type and snap["object_type"] != config.object_type:
            continue
        raw = snap["metrics"].get(config.metric)
        if raw is None:
            continue
        checked += 1
        value = float(raw)
        if not compare(value, op, config.threshold_value):
            continue
        unit = f" {config.unit}" if config.unit else ""
        candidates.append(
            {
                "source_type": "threshold_config",
                "source_id": str(config.id),
                "config_id": config.id,
                "object_id": snap["id"],
                "alert_type": config.alert_type,
                "category": config.category,
                "severity": config.severity,
                "title": f"{config.title}: {snap['object_name']}",
                "message": (
                    f"{snap['object_name']}: {config.metric} is {value:g}{unit} "
                    f"({op} {config.threshold_value:g}{unit})"
                ),
                "metric_name": config.metric,
                "current_value": value,
                "threshold_value": config.threshold_value,
                "impact_amount": estimate_impact(snap),
                "calculation_details": {"metric": config.metric, "operator": op, "value": value},
            }
        )
    return checked, candidates


async def _persist_alert(
    ctx: RunContext,
    candidate: dict,
    detection_date: date,
    seen: set[str],
) -> AlertInstance | None:
    """Insert one alert unless its dedup key was already seen or stored."""
    key = dedup_key(candidate["source_type"], candidate["source_id"], candidate.get("object_id"), detection_date)
    if key in seen:
        return None
    seen.add(key)

    severity = candidate["severity"]
    hours = DEADLINE_HOURS.get(severity)
    object_id = candidate.get("object_id")
    alert = AlertInstance(
        id=uuid.uuid4(),
        tenant_id=ctx.tenant_id,
        source_type=candidate["source_type"],
        rule_id=candidate.get("rule_id"),
        config_id=candidate.get("config_id"),
        object_id=object_id if candidate["source_type"] != "correlation" else None,
        alert_type=candidate["alert_type"],
        category=candidate.get("category"),
        severity=severity,
        status="active",
        title=candidate["title"],
        message=candidate["message"],
        metric_name=candidate.get("metric_name"),
        current_value=candidate.get("current_value"),
        threshold_value=candidate.get("threshold_value"),
        impact_amount=candidate.get("impact_amount"),
        deadline_at=ctx.now() + timedelta(hours=hours) if hours else None,
        suggested_action=candidate.get("suggested_action"),
        calculation_details=candidate.get("calculation_details") or {},
        detection_date=detection_date,
        dedup_key=key,
        created_at=ctx.now(),
    )
    try:
        async with ctx.db.begin_nested():
            ctx.db.add(alert)
            await ctx.db.flush()
    except IntegrityError:
        logger.debug("alerts.duplicate_skipped", dedup_key=key)
        return None
    return alert


async def _persist_all(ctx: RunContext, candidates: list[dict], detection_date: date, seen: set[str]) -> list[AlertInstance]:
    created = []
    for candidate in candidates:
        alert = await _persist_alert(ctx, candidate, detection_date, seen)
        if alert is not None:
            created.append(alert)
    return created


def _record_error(result: DetectionResult, source: str, source_id: str, exc: Exception) -> None:
    code = "formula_error" if isinstance(exc, FormulaError) else "evaluation_error"
    result.errors.append({"source": source, "id": source_id, "code": code, "error": str(exc)})
    logger.warning("alerts.source_failed", source=source, id=source_id, code=code, error=str(exc))


async def run_detection(ctx: RunContext, detection_date: date | None = None) -> DetectionResult:
    """Full detection pass for one tenant. Alerts are committed per rule."""
    detection_date = detection_date or ctx.today()
    result = DetectionResult(detection_date=detection_date)
    settings = ctx.settings
    log = ctx.logger.bind(detection_date=detection_date.isoformat())
    seen: set[str] = set()

    try:
        result.refreshed_objects = await refresh_derived_metrics(ctx)

        objects = await ctx.db.execute(
            select(MonitoredObject)
            .where(MonitoredObject.tenant_id == ctx.tenant_id, MonitoredObject.is_monitored.is_(True))
            .order_by(MonitoredObject.object_type, MonitoredObject.object_name)
        )
        snapshots = [snapshot(obj) for obj in objects.scalars().all()]

        rules = await ctx.db.execute(
            select(IntelligentRule)
            .where(IntelligentRule.tenant_id == ctx.tenant_id, IntelligentRule.is_enabled.is_(True))
            .order_by(IntelligentRule.priority.asc(), IntelligentRule.rule_code.asc())
        )
        config_rows = await ctx.db.execute(
            select(ThresholdConfig)
            .where(ThresholdConfig.tenant_id == ctx.tenant_id, ThresholdConfig.enabled.is_(True))
            .order_by(ThresholdConfig.alert_type, ThresholdConfig.created_at)
        )
        configs = config_rows.scalars().all()

        for rule in rules.scalars().all():
            try:
                checked, candidates = evaluate_rule(
                    rule,
                    snapshots,
                    detection_date,
                    settings.max_objects_per_rule,
                    settings.max_alerts_per_rule,
                )
            except (DBAPIError, PersistenceError):
                raise
            except Exception as exc:
                _record_error(result, "intelligent_rule", rule.rule_code, exc)
                continue
            created = await _persist_all(ctx, candidates, detection_date, seen)
            await ctx.db.commit()
            result.checked += checked
            result.triggered += len(created)
            result.alerts.extend(created)
            result.calculations.append(
                {"source": "intelligent_rule", "code": rule.rule_code, "checked": checked, "alerts_created": len(created)}
            )

        for config in configs:
            try:
                checked, candidates = evaluate_threshold_config(config, snapshots)
            except (DBAPIError, PersistenceError):
                raise
            except Exception as exc:
                _record_error(result, "threshold_config", str(config.id), exc)
                continue
            created = await _persist_all(ctx, candidates, detection_date, seen)
            await ctx.db.commit()
            result.checked += checked
            result.triggered += len(created)
            result.alerts.extend(created)
            result.calculations.append(
                {"source": "threshold_config", "code": config.alert_type, "checked": checked, "alerts_created": len(created)}
            )

        for code, check in iter_correlations():
            try:
                findings = check(snapshots)
            except Exception as exc:
                _record_error(result, "correlation", code, exc)
                continue
            created = []
            for finding in findings:
                candidate = {**finding, "source_type": "correlation", "source_id": code, "object_id": finding["scope"]}
                alert = await _persist_alert(ctx, candidate, detection_date, seen)
                if alert is not None:
                    created.append(alert)
            await ctx.db.commit()
            result.checked += 1
            result.triggered += len(created)
            result.alerts.extend(created)
            if findings:
                result.calculations.append({"source": "correlation", "code": code, "alerts_created": len(created)})
    except DBAPIError as exc:
        raise PersistenceError(f"alert detection failed: {exc}") from exc

    log.info(
        "alerts.detection_complete",
        checked=result.checked,
        triggered=result.triggered,
        errors=len(result.errors),
    )
    return result


# ──────────────────────────────────────────────────────────────────────────
# Alert lifecycle
# ──────────────────────────────────────────────────────────────────────────


async def _transition_alert(ctx: RunContext, alert_id: str, target: str) -> AlertInstance:
    alert = (
        await ctx.db.execute(
            select(AlertInstance).where(AlertInstance.id == alert_id, AlertInstance.tenant_id == ctx.tenant_id)
        )
    ).scalar_one_or_none()
    if alert is None:
        raise NotFound(f"Alert {alert_id} not found")
    if alert.status not in ALERT_TRANSITIONS[target]:
        raise InvalidTransition(f"Cannot move alert from {alert.status} to {target}")

    alert.status = target
    if target == "acknowledged":
        alert.acknowledged_at = ctx.now()
    else:
        alert.resolved_at = ctx.now()
    await ctx.db.commit()
    ctx.logger.info("alerts.transitioned", alert_id=str(alert_id), status=target)
    return alert


async def acknowledge_alert(ctx: RunContext, alert_id: str) -> AlertInstance:
    return await _transition_alert(ctx, alert_id, "acknowledged")


async def resolve_alert(ctx: RunContext, alert_id: str) -> AlertInstance:
    return await _transition_alert(ctx, alert_id, "resolved")


# ──────────────────────────────────────────────────────────────────────────
# Publishing
# ──────────────────────────────────────────────────────────────────────────


def alert_payload(alert: AlertInstance) -> dict:
    return {
        "type": "alert",
        "payload": {
            "alert_id": str(alert.id),
            "alert_type": alert.alert_type,
            "severity": alert.severity,
            "title": alert.title,
            "message": alert.message,
            "object_id": str(alert.object_id) if alert.object_id else None,
            "impact_amount": alert.impact_amount,
            "deadline_at": alert.deadline_at.isoformat() if alert.deadline_at else None,
            "created_at": alert.created_at.isoformat() if alert.created_at else None,
        },
    }


async def publish_alerts(alerts: list[AlertInstance], redis_url: str | None = None) -> int:
    """
    Publish new alerts to Redis channel ``alerts:{tenant_id}`` for the
    notification dispatcher. Returns number of subscribers notified.
    """
    if not alerts:
        return 0

    redis = aioredis.from_url(redis_url or get_settings().redis_url)
    try:
        total_subs = 0
        for alert in alerts:
            subs = await redis.publish(f"alerts:{alert.tenant_id}", json.dumps(alert_payload(alert)))
            total_subs += subs
        return total_subs
    finally:
        await redis.aclose()
