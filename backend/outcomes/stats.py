"""
Outcome trend statistics — pure read-side aggregation over the ledger.

Everything here is reproducible from stored DecisionOutcomeRecords alone.
"""

from __future__ import annotations

from typing import Any

import pandas as pd
from sqlalchemy import select

from core.context import RunContext
from db.models import DecisionOutcomeRecord

OUTCOME_STATUSES = ["pending", "success", "partial", "failed", "exceeded"]
TREND_COLUMNS = ["decision_type", "outcome_status", "variance", "accuracy_score", "evaluation_date"]


def _rate(hits: int, total: int) -> float | None:
    return round(hits / total, 4) if total else None


def _mean(series: pd.Series) -> float | None:
    values = series.dropna()
    return round(float(values.mean()), 4) if not values.empty else None


def compute_outcome_trends(records: list[dict[str, Any]]) -> dict[str, Any]:
    """
    Success rate, average variance and accuracy, with breakdowns by decision
    type and by evaluation month. Success rate = (success + exceeded) / evaluated.
    """
    df = pd.DataFrame(records, columns=TREND_COLUMNS)
    counts = {status: 0 for status in OUTCOME_STATUSES}
    if df.empty:
        return {
            "total": 0,
            "evaluated": 0,
            "by_status": counts,
            "success_rate": None,
            "avg_variance": None,
            "avg_accuracy": None,
            "by_decision_type": [],
            "monthly": [],
        }

    df["decision_type"] = df["decision_type"].fillna("UNKNOWN")
    df["variance"] = pd.to_numeric(df["variance"], errors="coerce")
    df["accuracy_score"] = pd.to_numeric(df["accuracy_score"], errors="coerce")
    df["is_success"] = df["outcome_status"].isin(["success", "exceeded"])
    df["is_evaluated"] = df["outcome_status"] != "pending"

    for status, count in df["outcome_status"].value_counts().items():
        counts[status] = int(count)
    evaluated = int(df["is_evaluated"].sum())

    by_type = []
    for decision_type, group in df.groupby("decision_type", sort=True):
        group_evaluated = int(group["is_evaluated"].sum())
        by_type.append(
            {
                "decision_type": decision_type,
                "total": int(len(group)),
                "success_rate": _rate(int(group["is_success"].sum()), group_evaluated),
                "avg_variance": _mean(group["variance"]),
                "avg_accuracy": _mean(group["accuracy_score"]),
            }
        )

    df["month"] = pd.to_datetime(df["evaluation_date"]).dt.to_period("M").astype(str)
    monthly = []
    for month, group in df.groupby("month", sort=True):
        group_evaluated = int(group["is_evaluated"].sum())
        monthly.append(
            {
                "month": month,
                "total": int(len(group)),
                "success_rate": _rate(int(group["is_success"].sum()), group_evaluated),
                "avg_accuracy": _mean(group["accuracy_score"]),
            }
        )

    return {
        "total": int(len(df)),
        "evaluated": evaluated,
        "by_status": counts,
        "success_rate": _rate(int(df["is_success"].sum()), evaluated),
        "avg_variance": _mean(df["variance"]),
        "avg_accuracy": _mean(df["accuracy_score"]),
        "by_decision_type": by_type,
        "monthly": monthly,
    }


async def outcome_trends(ctx: RunContext) -> dict[str, Any]:
    result = await ctx.db.execute(
        select(
            DecisionOutcomeRecord.decision_type,
            DecisionOutcomeRecord.outcome_status,
            DecisionOutcomeRecord.variance,
            DecisionOutcomeRecord.accuracy_score,
            DecisionOutcomeRecord.evaluation_date,
        ).where(DecisionOutcomeRecord.tenant_id == ctx.tenant_id)
    )
    return compute_outcome_trends([dict(row._mapping) for row in result.all()])
