"""Bounded loop helper: iteration cap + wall-clock budget + optional zero-progress stop."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field

EXHAUSTED = "exhausted"
MAX_ITERATIONS = "max_iterations"
TIME_BUDGET = "time_budget"


@dataclass
class BudgetedLoop:
    """
    Drives a loop body until it reports no more work or a budget runs out.

    Usage::

        loop = BudgetedLoop(max_iterations=20, max_seconds=50)
        while loop.next():
            progress = await step()
            loop.record(progress)
        loop.stopped_reason  # exhausted | max_iterations | time_budget
    """

    max_iterations: int
    max_seconds: float
    stop_on_zero_progress: bool = False
    monotonic: Callable[[], float] = time.monotonic

    iterations: int = field(default=0, init=False)
    progress_total: int = field(default=0, init=False)
    stopped_reason: str | None = field(default=None, init=False)
    _started_at: float | None = field(default=None, init=False, repr=False)

    def next(self) -> bool:
        """True when another iteration may run."""
        if self.stopped_reason is not None:
            return False
        if self._started_at is None:
            self._started_at = self.monotonic()
        if self.iterations >= self.max_iterations:
            self.stopped_reason = MAX_ITERATIONS
            return False
        if self.elapsed() >= self.max_seconds:
            self.stopped_reason = TIME_BUDGET
            return False
        self.iterations += 1
        return True

    def record(self, progress: int) -> None:
        self.progress_total += progress
        if self.stop_on_zero_progress and progress <= 0:
            self.stopped_reason = EXHAUSTED

    def finish(self) -> None:
        """Mark the loop as having run out of work."""
        if self.stopped_reason is None:
            self.stopped_reason = EXHAUSTED

    def elapsed(self) -> float:
        if self._started_at is None:
            return 0.0
        return self.monotonic() - self._started_at

    def summary(self) -> dict:
        return {
            "iterations": self.iterations,
            "progress": self.progress_total,
            "stopped_reason": self.stopped_reason,
            "elapsed_ms": round(self.elapsed() * 1000),
        }
