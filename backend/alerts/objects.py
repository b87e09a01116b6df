"""
Monitored-object derived metrics.

Refreshed for every monitored product and store before any rule reads them:

  avg_daily_sales     = sales_last_30_days / 30
  days_of_stock       = total_stock / avg_daily_sales   (999 when no sales)
  reorder_point       = ceil(lead_time_days * avg_daily_sales + safety_stock)
  stockout_risk_days  = max(0, floor(days_of_stock - lead_time_days))
  trend_percent       = (last 30d - previous 30d) / previous 30d * 100
  days_since_last_sale = today - last_sale_date          (999 when never sold)
  target_progress     = daily_revenue / target_revenue * 100   (stores)
"""

from __future__ import annotations

import math
from datetime import date
from typing import Any

from sqlalchemy import select

from core.context import RunContext
from db.models import MonitoredObject

DEFAULT_SALES_LAST_30_DAYS = 10.0
DEFAULT_LEAD_TIME_DAYS = 7
DEFAULT_SAFETY_STOCK = 5.0
NO_SALES_DAYS_OF_STOCK = 999.0
NEVER_SOLD_DAYS = 999
TREND_BAND_PERCENT = 5.0

DERIVED_FIELDS = (
    "sales_velocity",
    "avg_daily_sales",
    "days_of_stock",
    "trend_direction",
    "trend_percent",
    "reorder_point",
    "stockout_risk_days",
)


def derive_product_metrics(
    metrics: dict[str, Any],
    lead_time_days: int | None,
    safety_stock: float | None,
) -> dict[str, Any]:
    total_stock = float(metrics.get("total_stock") or 0)
    sales_last_30 = metrics.get("sales_last_30_days")
    sales_last_30 = DEFAULT_SALES_LAST_30_DAYS if sales_last_30 is None else float(sales_last_30)
    avg_daily_sales = sales_last_30 / 30
    days_of_stock = total_stock / avg_daily_sales if avg_daily_sales > 0 else NO_SALES_DAYS_OF_STOCK

    lead_time = DEFAULT_LEAD_TIME_DAYS if lead_time_days is None else lead_time_days
    safety = DEFAULT_SAFETY_STOCK if safety_stock is None else safety_stock

    previous = metrics.get("sales_previous_30_days")
    previous = sales_last_30 * 0.9 if previous is None else float(previous)
    trend_percent = (sales_last_30 - previous) / previous * 100 if previous > 0 else 0.0
    if trend_percent > TREND_BAND_PERCENT:
        trend_direction = "up"
    elif trend_percent < -TREND_BAND_PERCENT:
        trend_direction = "down"
    else:
        trend_direction = "stable"

    return {
        "sales_velocity": avg_daily_sales,
        "avg_daily_sales": avg_daily_sales,
        "days_of_stock": days_of_stock,
        "reorder_point": float(math.ceil(lead_time * avg_daily_sales + safety)),
        "stockout_risk_days": float(max(0, math.floor(days_of_stock - lead_time))),
        "trend_percent": trend_percent,
        "trend_direction": trend_direction,
    }


def derive_store_metrics(metrics: dict[str, Any]) -> dict[str, Any]:
    target = float(metrics.get("target_revenue") or 0)
    actual = float(metrics.get("daily_revenue") or 0)
    progress = actual / target * 100 if target > 0 else 100.0
    return {"target_progress": progress, "variance_percent": progress - 100}


def days_since(when: date | None, today: date) -> int | None:
    if when is None:
        return None
    return (today - when).days


async def refresh_derived_metrics(ctx: RunContext) -> int:
    """Recompute derived fields for the tenant's monitored products and stores, then commit."""
    result = await ctx.db.execute(
        select(MonitoredObject).where(
            MonitoredObject.tenant_id == ctx.tenant_id,
            MonitoredObject.is_monitored.is_(True),
            MonitoredObject.object_type.in_(("product", "store")),
        )
    )
    objects = result.scalars().all()
    now = ctx.now()
    today = now.date()

    for obj in objects:
        metrics = dict(obj.current_metrics or {})
        if obj.object_type == "product":
            for name, value in derive_product_metrics(metrics, obj.lead_time_days, obj.safety_stock).items():
                setattr(obj, name, value)
            since = days_since(obj.last_sale_date, today)
            metrics["days_since_last_sale"] = NEVER_SOLD_DAYS if since is None else since
        else:
            metrics.update(derive_store_metrics(metrics))
        obj.current_metrics = metrics
        obj.metrics_refreshed_at = now

    await ctx.db.commit()
    ctx.logger.info("alerts.metrics_refreshed", objects=len(objects))
    return len(objects)


def snapshot(obj: MonitoredObject) -> dict[str, Any]:
    """Plain-dict view of an object: raw metrics overlaid with derived fields."""
    metrics = dict(obj.current_metrics or {})
    for name in DERIVED_FIELDS:
        value = getattr(obj, name)
        if value is not None:
            metrics[name] = value
    if obj.last_sale_date is not None:
        metrics.setdefault("last_sale_date", obj.last_sale_date.isoformat())
    return {
        "id": str(obj.id),
        "object_type": obj.object_type,
        "object_name": obj.object_name,
        "external_id": obj.external_id,
        "lead_time_days": obj.lead_time_days,
        "metrics": metrics,
    }
