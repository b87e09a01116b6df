"""
Tests for BudgetedLoop — iteration cap, wall-clock budget, zero-progress stop.
"""

from pipeline.budget import EXHAUSTED, MAX_ITERATIONS, TIME_BUDGET, BudgetedLoop


class SteppingClock:
    def __init__(self, step: float):
        self.step = step
        self.now = 0.0

    def __call__(self) -> float:
        value = self.now
        self.now += self.step
        return value


def _drive(loop: BudgetedLoop, progress: list[int]) -> int:
    ran = 0
    feed = iter(progress)
    while loop.next():
        loop.record(next(feed, 0))
        ran += 1
    return ran


class TestBudgetedLoop:
    def test_stops_at_max_iterations(self):
        loop = BudgetedLoop(max_iterations=3, max_seconds=1000, monotonic=SteppingClock(0.0))
        assert _drive(loop, [10, 10, 10, 10, 10]) == 3
        assert loop.stopped_reason == MAX_ITERATIONS
        assert loop.progress_total == 30

    def test_stops_on_zero_progress(self):
        loop = BudgetedLoop(max_iterations=20, max_seconds=1000, stop_on_zero_progress=True)
        assert _drive(loop, [500, 500, 120, 0, 999]) == 4
        assert loop.stopped_reason == EXHAUSTED
        assert loop.progress_total == 1120

    def test_zero_progress_ignored_by_default(self):
        loop = BudgetedLoop(max_iterations=4, max_seconds=1000)
        assert _drive(loop, [0, 0, 0, 0]) == 4
        assert loop.stopped_reason == MAX_ITERATIONS

    def test_stops_when_time_budget_spent(self):
        # Each monotonic() read advances 10s; the first read starts the clock
        loop = BudgetedLoop(max_iterations=100, max_seconds=25, monotonic=SteppingClock(10.0))
        ran = _drive(loop, [1] * 100)
        assert ran == 2
        assert loop.stopped_reason == TIME_BUDGET

    def test_finish_marks_exhausted_once(self):
        loop = BudgetedLoop(max_iterations=2, max_seconds=10)
        _drive(loop, [1, 1, 1])
        loop.finish()
        assert loop.stopped_reason == MAX_ITERATIONS

        fresh = BudgetedLoop(max_iterations=2, max_seconds=10)
        fresh.finish()
        assert fresh.stopped_reason == EXHAUSTED
        assert fresh.next() is False

    def test_summary(self):
        loop = BudgetedLoop(max_iterations=2, max_seconds=10, monotonic=SteppingClock(0.0))
        _drive(loop, [7, 3])
        assert loop.summary() == {
            "iterations": 2,
            "progress": 10,
            "stopped_reason": MAX_ITERATIONS,
            "elapsed_ms": 0,
        }
