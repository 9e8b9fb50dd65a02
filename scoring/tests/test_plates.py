"""
Unit Tests for Plate Danger Scores

Tests cover:
1. Plate normalization and format checks
2. Score accumulation from report and severity weights
3. Compensation for deleted reports
4. Ranking, search and plate history
"""

from datetime import datetime, timedelta, timezone

import pytest

from scoring.errors import DuplicateEntryError, InvalidEventError, RecordNotFoundError
from scoring.models import Severity
from scoring.plates import DangerScoreAggregator, normalize_plate, replay_score, validate_plate_format

NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)
PLATE = "ABC-1234"


def _report(aggregator, plate, severity, hours_ago=0, type="dangerous_driving", report_id=None):
    return aggregator.record_report(
        plate, type, severity, NOW - timedelta(hours=hours_ago), report_id=report_id,
    )


class TestPlateNormalization:
    """Tests for plate normalization."""

    @pytest.mark.parametrize("raw", ["ABC-1234", "abc 1234", " a.b.c-12 34 "])
    def test_variants_normalize_together(self, raw):
        assert normalize_plate(raw) == "ABC1234"

    def test_empty_plate_rejected(self):
        with pytest.raises(InvalidEventError):
            normalize_plate(" -- ")

    def test_format_check(self):
        assert validate_plate_format("ABC-1234")
        assert not validate_plate_format("AB1")
        assert validate_plate_format("AB12", region="EU")


class TestDangerScore:
    """Tests for accumulating danger scores."""

    def test_severity_weights_without_report_weight(self):
        """Two medium and one critical report score 5 + 5 + 25."""
        aggregator = DangerScoreAggregator(report_weight=0)
        _report(aggregator, PLATE, Severity.MEDIUM, hours_ago=3)
        _report(aggregator, PLATE, Severity.MEDIUM, hours_ago=2)
        aggregate = _report(aggregator, PLATE, Severity.CRITICAL, hours_ago=1)

        assert aggregate.danger_score == 35
        assert aggregate.report_count == 3

    def test_default_report_weight_added_per_report(self):
        aggregator = DangerScoreAggregator()
        _report(aggregator, PLATE, Severity.MEDIUM, hours_ago=3)
        _report(aggregator, PLATE, Severity.MEDIUM, hours_ago=2)
        aggregate = _report(aggregator, PLATE, Severity.CRITICAL, hours_ago=1)

        assert aggregate.danger_score == 65

    def test_scores_never_decrease_from_new_reports(self):
        aggregator = DangerScoreAggregator()
        previous = 0
        for severity in (Severity.LOW, Severity.HIGH, Severity.LOW, Severity.CRITICAL):
            score = _report(aggregator, PLATE, severity).danger_score
            assert score >= previous
            previous = score

    def test_spellings_share_one_aggregate(self):
        aggregator = DangerScoreAggregator()
        _report(aggregator, "abc-1234", Severity.LOW)
        _report(aggregator, "ABC 1234", Severity.LOW)

        assert aggregator.get("ABC1234").report_count == 2

    def test_duplicate_report_counted_once(self):
        aggregator = DangerScoreAggregator()
        _report(aggregator, PLATE, Severity.HIGH, report_id="inc-1")

        with pytest.raises(DuplicateEntryError):
            _report(aggregator, PLATE, Severity.HIGH, report_id="inc-1")

        assert aggregator.get(PLATE).danger_score == 25

    def test_recent_incidents_capped_newest_first(self):
        aggregator = DangerScoreAggregator(recent_limit=3)
        for hours_ago in (5, 1, 4, 2, 3):
            _report(aggregator, PLATE, Severity.LOW, hours_ago=hours_ago, report_id=f"inc-{hours_ago}")

        recent = aggregator.get(PLATE).recent_incidents

        assert [i.report_id for i in recent] == ["inc-1", "inc-2", "inc-3"]

    def test_types_and_seen_bounds(self):
        aggregator = DangerScoreAggregator()
        _report(aggregator, PLATE, Severity.LOW, hours_ago=1, type="speeding")
        aggregate = _report(aggregator, PLATE, Severity.LOW, hours_ago=6, type="tailgating")

        assert aggregate.types == {"speeding", "tailgating"}
        assert aggregate.first_seen == NOW - timedelta(hours=6)
        assert aggregate.last_seen == NOW - timedelta(hours=1)


class TestReportRemoval:
    """Tests for compensating deleted reports."""

    def test_removal_subtracts_original_contribution(self):
        aggregator = DangerScoreAggregator()
        _report(aggregator, PLATE, Severity.MEDIUM, report_id="inc-1")
        _report(aggregator, PLATE, Severity.CRITICAL, report_id="inc-2")

        adjustment = aggregator.remove_report(PLATE, "inc-2", reason="false report")

        assert adjustment.delta == -35
        aggregate = aggregator.get(PLATE)
        assert aggregate.danger_score == 15
        assert aggregate.report_count == 1
        assert [i.report_id for i in aggregate.recent_incidents] == ["inc-1"]

    def test_removal_refills_recent_window_and_seen_bounds(self):
        """An incident pushed out of the capped window comes back once a newer one is removed."""
        aggregator = DangerScoreAggregator(recent_limit=3)
        for hours_ago in (4, 3, 2, 1):
            _report(aggregator, PLATE, Severity.LOW, hours_ago=hours_ago, report_id=f"inc-{hours_ago}")
        assert [i.report_id for i in aggregator.get(PLATE).recent_incidents] == ["inc-1", "inc-2", "inc-3"]

        aggregator.remove_report(PLATE, "inc-1")
        aggregator.remove_report(PLATE, "inc-4")

        aggregate = aggregator.get(PLATE)
        assert [i.report_id for i in aggregate.recent_incidents] == ["inc-2", "inc-3"]
        assert aggregate.last_seen == NOW - timedelta(hours=2)
        assert aggregate.first_seen == NOW - timedelta(hours=3)

    def test_removal_brings_back_incident_beyond_limit(self):
        aggregator = DangerScoreAggregator(recent_limit=3)
        for hours_ago in (4, 3, 2, 1):
            _report(aggregator, PLATE, Severity.LOW, hours_ago=hours_ago, report_id=f"inc-{hours_ago}")

        aggregator.remove_report(PLATE, "inc-1")

        recent = aggregator.get(PLATE).recent_incidents
        assert [i.report_id for i in recent] == ["inc-2", "inc-3", "inc-4"]

    def test_score_equals_replayed_adjustments(self):
        aggregator = DangerScoreAggregator()
        _report(aggregator, PLATE, Severity.HIGH, report_id="inc-1")
        _report(aggregator, PLATE, Severity.LOW, report_id="inc-2")
        aggregator.remove_report(PLATE, "inc-1")

        assert replay_score(aggregator.adjustments(PLATE)) == aggregator.get(PLATE).danger_score == 10

    def test_removing_twice_rejected(self):
        aggregator = DangerScoreAggregator()
        _report(aggregator, PLATE, Severity.LOW, report_id="inc-1")
        aggregator.remove_report(PLATE, "inc-1")

        with pytest.raises(DuplicateEntryError):
            aggregator.remove_report(PLATE, "inc-1")
        assert aggregator.get(PLATE).danger_score == 0

    def test_unknown_report_rejected(self):
        aggregator = DangerScoreAggregator()
        _report(aggregator, PLATE, Severity.LOW, report_id="inc-1")

        with pytest.raises(RecordNotFoundError):
            aggregator.remove_report(PLATE, "inc-404")
        with pytest.raises(RecordNotFoundError):
            aggregator.remove_report("ZZZ999", "inc-1")


class TestFlaggedPlates:
    """Tests for ranking and searching plates."""

    def test_rank_by_score_then_report_count_then_first_seen(self):
        aggregator = DangerScoreAggregator()
        # 35 from a single critical report
        _report(aggregator, "SINGLE1", Severity.CRITICAL, hours_ago=10)
        # 35 from two reports
        _report(aggregator, "DOUBLE1", Severity.HIGH, hours_ago=1)
        _report(aggregator, "DOUBLE1", Severity.LOW, hours_ago=1)
        # 15 each; older plate first
        _report(aggregator, "NEWER11", Severity.MEDIUM, hours_ago=1)
        _report(aggregator, "OLDER11", Severity.MEDIUM, hours_ago=8)

        ranked = aggregator.rank()

        assert [a.plate for a in ranked] == ["DOUBLE1", "SINGLE1", "OLDER11", "NEWER11"]
        assert [a.rank for a in ranked] == [1, 2, 3, 4]

    def test_rank_filtered_by_type(self):
        aggregator = DangerScoreAggregator()
        _report(aggregator, "SPEED11", Severity.HIGH, type="speeding")
        _report(aggregator, "DRUNK11", Severity.CRITICAL, type="impaired")

        assert [a.plate for a in aggregator.rank(filter_type="speeding")] == ["SPEED11"]

    def test_fully_removed_plates_not_ranked(self):
        aggregator = DangerScoreAggregator()
        _report(aggregator, PLATE, Severity.LOW, report_id="inc-1")
        aggregator.remove_report(PLATE, "inc-1")

        assert aggregator.rank() == []

    def test_search_by_partial_plate(self):
        aggregator = DangerScoreAggregator()
        _report(aggregator, "ABC-1234", Severity.LOW)
        _report(aggregator, "XYZ-9876", Severity.LOW)

        assert [a.plate for a in aggregator.search("bc1")] == ["ABC1234"]

    def test_search_needs_three_characters(self):
        with pytest.raises(InvalidEventError):
            DangerScoreAggregator().search("ab")


class TestPlateHistory:
    """Tests for per-plate history and statistics."""

    def test_repeat_offender_after_three_reports(self):
        aggregator = DangerScoreAggregator()
        for n in range(3):
            _report(aggregator, PLATE, Severity.LOW, hours_ago=n, report_id=f"inc-{n}")

        history = aggregator.history(PLATE)

        assert history.found
        assert history.count == 3
        assert history.is_repeat_offender
        assert [i.report_id for i in history.incidents] == ["inc-0", "inc-1", "inc-2"]

    def test_unknown_plate_not_found(self):
        history = DangerScoreAggregator().history("NOPE123")

        assert not history.found
        assert history.count == 0

    def test_stats(self):
        aggregator = DangerScoreAggregator()
        _report(aggregator, "AAA111", Severity.LOW, type="speeding")
        _report(aggregator, "AAA111", Severity.LOW, type="tailgating")
        _report(aggregator, "BBB222", Severity.LOW, type="speeding")

        stats = aggregator.stats()

        assert stats.total_reports == 3
        assert stats.unique_plates == 2
        assert stats.type_breakdown == {"speeding": 2, "tailgating": 1}


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
