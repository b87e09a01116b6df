"""
Tests for outcome trend statistics.
"""

from datetime import date

import pytest

from outcomes.stats import compute_outcome_trends


def _record(decision_type, status, variance, accuracy, evaluated_on):
    return {
        "decision_type": decision_type,
        "outcome_status": status,
        "variance": variance,
        "accuracy_score": accuracy,
        "evaluation_date": evaluated_on,
    }


class TestOutcomeTrends:
    def test_empty_ledger(self):
        trends = compute_outcome_trends([])

        assert trends["total"] == 0
        assert trends["success_rate"] is None
        assert trends["by_status"] == {"pending": 0, "success": 0, "partial": 0, "failed": 0, "exceeded": 0}
        assert trends["by_decision_type"] == []
        assert trends["monthly"] == []

    def test_rates_and_breakdowns(self):
        records = [
            _record("REORDER", "success", -2.0, 0.98, date(2024, 1, 15)),
            _record("REORDER", "exceeded", 20.0, 1.0, date(2024, 1, 20)),
            _record("REORDER", "failed", -90.0, 0.1, date(2024, 2, 3)),
            _record("MARKDOWN", "partial", -40.0, 0.6, date(2024, 2, 10)),
        ]

        trends = compute_outcome_trends(records)

        assert trends["total"] == 4
        assert trends["evaluated"] == 4
        assert trends["success_rate"] == 0.5
        assert trends["avg_variance"] == pytest.approx(-28.0)
        assert trends["avg_accuracy"] == pytest.approx(0.67)
        assert trends["by_status"]["failed"] == 1

        by_type = {row["decision_type"]: row for row in trends["by_decision_type"]}
        assert by_type["REORDER"]["total"] == 3
        assert by_type["REORDER"]["success_rate"] == pytest.approx(0.6667)
        assert by_type["MARKDOWN"]["success_rate"] == 0.0

        assert [row["month"] for row in trends["monthly"]] == ["2024-01", "2024-02"]
        assert trends["monthly"][0]["success_rate"] == 1.0
        assert trends["monthly"][1]["success_rate"] == 0.0

    def test_missing_decision_type_grouped_as_unknown(self):
        trends = compute_outcome_trends([_record(None, "success", 0.0, 1.0, date(2024, 3, 1))])

        assert trends["by_decision_type"][0]["decision_type"] == "UNKNOWN"

    def test_pending_rows_do_not_count_as_evaluated(self):
        records = [
            _record("REORDER", "pending", None, None, date(2024, 3, 1)),
            _record("REORDER", "success", 0.0, 1.0, date(2024, 3, 2)),
        ]

        trends = compute_outcome_trends(records)

        assert trends["total"] == 2
        assert trends["evaluated"] == 1
        assert trends["success_rate"] == 1.0
        assert trends["avg_accuracy"] == 1.0
