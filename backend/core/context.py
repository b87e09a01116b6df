"""Per-invocation run context threaded through every pipeline call."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import Settings, get_settings


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class RunContext:
    """
    Everything a stage needs: the store session, the tenant it is scoped to,
    and the clocks. Tests swap the clocks for deterministic ones.
    """

    db: AsyncSession
    tenant_id: str
    settings: Settings = field(default_factory=get_settings)
    clock: Callable[[], datetime] = utcnow
    monotonic: Callable[[], float] = time.monotonic

    def now(self) -> datetime:
        return self.clock()

    def today(self) -> date:
        return self.clock().date()

    @property
    def logger(self) -> Any:
        return structlog.get_logger().bind(tenant_id=self.tenant_id)
