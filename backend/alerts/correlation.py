"""
Cross-object correlation checks.

Each check looks at the whole set of object snapshots and returns zero or more
findings. A finding is a dict of alert fields plus ``scope`` (the object slot
of the dedup key, e.g. a supplier id for per-supplier findings).
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from typing import Any

AT_RISK_DAYS = 3
MULTI_PRODUCT_MIN = 3
SUPPLIER_CASCADE_MIN = 2
STORE_TARGET_FLOOR_PERCENT = 60
DEAD_STOCK_DAYS = 30
DEAD_STOCK_MIN = 5

Finding = dict[str, Any]
CorrelationCheck = Callable[[list[dict[str, Any]]], list[Finding]]

_CORRELATION_REGISTRY: dict[str, CorrelationCheck] = {}


def register_correlation(code: str):
    """Decorator to register a cross-object check."""

    def decorator(fn: CorrelationCheck) -> CorrelationCheck:
        _CORRELATION_REGISTRY[code] = fn
        return fn

    return decorator


def correlation_codes() -> list[str]:
    return list(_CORRELATION_REGISTRY)


def iter_correlations() -> list[tuple[str, CorrelationCheck]]:
    """Registered checks in registration order."""
    return list(_CORRELATION_REGISTRY.items())


def get_correlation(code: str) -> CorrelationCheck:
    if code not in _CORRELATION_REGISTRY:
        raise ValueError(f"Unknown correlation: {code}. Available: {correlation_codes()}")
    return _CORRELATION_REGISTRY[code]


def _stock(snap: dict[str, Any]) -> float:
    return float(snap["metrics"].get("total_stock") or 0)


def _at_risk(snap: dict[str, Any]) -> bool:
    risk = snap["metrics"].get("stockout_risk_days")
    return snap["object_type"] == "product" and risk is not None and risk <= AT_RISK_DAYS and _stock(snap) > 0


def _target_progress(snap: dict[str, Any]) -> float:
    progress = snap["metrics"].get("target_progress")
    return 100.0 if progress is None else float(progress)


def _names(snaps: list[dict[str, Any]], limit: int = 5) -> str:
    names = ", ".join(s["object_name"] for s in snaps[:limit])
    return names + ("..." if len(snaps) > limit else "")


@register_correlation("multi_product_stockout_risk")
def multi_product_stockout_risk(snapshots: list[dict[str, Any]]) -> list[Finding]:
    at_risk = [s for s in snapshots if _at_risk(s)]
    if len(at_risk) < MULTI_PRODUCT_MIN:
        return []
    return [
        {
            "alert_type": "multi_product_stockout_risk",
            "category": "inventory",
            "severity": "critical",
            "title": f"{len(at_risk)} products at risk of stockout within {AT_RISK_DAYS} days",
            "message": f"Products: {_names(at_risk)}",
            "suggested_action": "Raise urgent purchase orders for these products",
            "metric_name": "products_at_risk",
            "current_value": float(len(at_risk)),
            "threshold_value": float(MULTI_PRODUCT_MIN),
            "calculation_details": {
                "products": [
                    {
                        "name": s["object_name"],
                        "days_of_stock": s["metrics"].get("days_of_stock"),
                        "stock": _stock(s),
                    }
                    for s in at_risk
                ]
            },
            "scope": "_",
        }
    ]


@register_correlation("supplier_cascade_risk")
def supplier_cascade_risk(snapshots: list[dict[str, Any]]) -> list[Finding]:
    by_supplier: dict[str, list[dict[str, Any]]] = defaultdict(list)
    for snap in snapshots:
        supplier_id = snap["metrics"].get("supplier_id")
        if supplier_id and _at_risk(snap):
            by_supplier[str(supplier_id)].append(snap)

    findings = []
    for supplier_id in sorted(by_supplier):
        products = by_supplier[supplier_id]
        if len(products) < SUPPLIER_CASCADE_MIN:
            continue
        supplier_name = products[0]["metrics"].get("supplier_name") or supplier_id
        findings.append(
            {
                "alert_type": "supplier_cascade_risk",
                "category": "supplier",
                "severity": "critical" if len(products) >= MULTI_PRODUCT_MIN else "warning",
                "title": f"{len(products)} products from {supplier_name} near stockout",
                "message": f"A single supplier delay would hit: {_names(products)}",
                "suggested_action": f"Confirm open orders with {supplier_name} or source alternates",
                "metric_name": "supplier_products_at_risk",
                "current_value": float(len(products)),
                "threshold_value": float(SUPPLIER_CASCADE_MIN),
                "calculation_details": {
                    "supplier_id": supplier_id,
                    "products": [s["object_name"] for s in products],
                },
                "scope": supplier_id,
            }
        )
    return findings


@register_correlation("store_performance_drop")
def store_performance_drop(snapshots: list[dict[str, Any]]) -> list[Finding]:
    stores = [s for s in snapshots if s["object_type"] == "store"]
    if not stores:
        return []
    under = [s for s in stores if _target_progress(s) < STORE_TARGET_FLOOR_PERCENT]
    if len(under) <= len(stores) / 2:
        return []
    gap = sum(
        max(0.0, float(s["metrics"].get("target_revenue") or 0) - float(s["metrics"].get("daily_revenue") or 0))
        for s in under
    )
    return [
        {
            "alert_type": "store_performance_drop",
            "category": "revenue",
            "severity": "critical",
            "title": f"{len(under)}/{len(stores)} stores below {STORE_TARGET_FLOOR_PERCENT}% of target",
            "message": "Likely a systemic cause: supply, pricing, competition or seasonality",
            "suggested_action": "Review promotions, competitor activity and supply chain issues",
            "metric_name": "underperforming_ratio",
            "current_value": len(under) / len(stores) * 100,
            "threshold_value": 50.0,
            "impact_amount": gap,
            "calculation_details": {
                "underperforming_stores": [s["object_name"] for s in under],
                "total_stores": len(stores),
            },
            "scope": "_",
        }
    ]


@register_correlation("dead_stock_accumulation")
def dead_stock_accumulation(snapshots: list[dict[str, Any]]) -> list[Finding]:
    dead = [
        s
        for s in snapshots
        if s["object_type"] == "product"
        and (s["metrics"].get("days_since_last_sale") or 0) >= DEAD_STOCK_DAYS
        and _stock(s) > 0
    ]
    if len(dead) < DEAD_STOCK_MIN:
        return []
    total_value = sum(_stock(s) * float(s["metrics"].get("unit_cost") or 0) for s in dead)
    return [
        {
            "alert_type": "dead_stock_accumulation",
            "category": "inventory",
            "severity": "warning",
            "title": f"{len(dead)} SKUs unsold for {DEAD_STOCK_DAYS}+ days",
            "message": f"Stock value tied up: {total_value:,.0f}. Consider promotion or clearance.",
            "suggested_action": "Create a promotion, bundle or clearance for these SKUs",
            "metric_name": "dead_stock_count",
            "current_value": float(len(dead)),
            "threshold_value": float(DEAD_STOCK_MIN),
            "impact_amount": total_value,
            "calculation_details": {
                "products": [
                    {
                        "name": s["object_name"],
                        "days_without_sale": s["metrics"].get("days_since_last_sale"),
                        "stock": _stock(s),
                    }
                    for s in dead[:10]
                ],
                "total_value": total_value,
            },
            "scope": "_",
        }
    ]
