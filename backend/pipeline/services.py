"""
Computation services consumed by the orchestrator.

The aggregation formulas live in the store's stored procedures; this module
only calls them. Tests inject an in-memory implementation of the protocol.
"""

from __future__ import annotations

from datetime import date
from typing import Protocol

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession


class ComputationServices(Protocol):
    async def link_batch(self, tenant_id: str, batch_size: int) -> int:
        """Link one batch of orders to customers. Returns rows linked."""
        ...

    async def compute_facts(self, tenant_id: str, start_date: date, end_date: date) -> dict:
        ...

    async def build_daily_aggregates(self, tenant_id: str, as_of: date) -> dict:
        ...

    async def summary_counts(self, tenant_id: str, start_date: date, end_date: date) -> dict:
        ...


def _first_value(row) -> object:
    return row[0] if row is not None else None


class SqlComputationServices:
    """Calls the store's SQL functions through ``sqlalchemy.text``."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def link_batch(self, tenant_id: str, batch_size: int) -> int:
        result = await self.db.execute(
            text("SELECT link_orders_to_customers_batch(:tenant_id, :batch_size)"),
            {"tenant_id": str(tenant_id), "batch_size": batch_size},
        )
        linked = _first_value(result.first())
        await self.db.commit()
        return int(linked or 0)

    async def compute_facts(self, tenant_id: str, start_date: date, end_date: date) -> dict:
        result = await self.db.execute(
            text("SELECT compute_kpi_facts_range(:tenant_id, :start_date, :end_date)"),
            {"tenant_id": str(tenant_id), "start_date": start_date, "end_date": end_date},
        )
        payload = _first_value(result.first())
        await self.db.commit()
        return payload if isinstance(payload, dict) else {"rows": payload}

    async def build_daily_aggregates(self, tenant_id: str, as_of: date) -> dict:
        result = await self.db.execute(
            text("SELECT build_cdp_daily_aggregates(:tenant_id, :as_of)"),
            {"tenant_id": str(tenant_id), "as_of": as_of},
        )
        payload = _first_value(result.first())
        await self.db.commit()
        return payload if isinstance(payload, dict) else {"rows": payload}

    async def summary_counts(self, tenant_id: str, start_date: date, end_date: date) -> dict:
        result = await self.db.execute(
            text("SELECT get_pipeline_summary_counts(:tenant_id, :start_date, :end_date)"),
            {"tenant_id": str(tenant_id), "start_date": start_date, "end_date": end_date},
        )
        payload = _first_value(result.first())
        return payload if isinstance(payload, dict) else {}
