"""
Unit Tests for Reporting Streaks

Tests cover:
1. Consecutive-day increments, same-day reports and resets
2. Rejection of out-of-order reports
3. Calendar days in the user's time zone
4. Milestone detection
"""

from datetime import datetime, timedelta, timezone

import pytest

from scoring.errors import InvalidEventError, StaleStreakUpdateError
from scoring.streaks import StreakTracker

DAY_ONE = datetime(2024, 6, 10, 9, 0, tzinfo=timezone.utc)
USER_ID = "user-streak-1"


class TestStreakProgression:
    """Tests for how reports move a streak."""

    def test_first_report_starts_streak(self):
        update = StreakTracker().record_report(USER_ID, DAY_ONE)

        assert update.changed
        assert update.record.current_daily_streak == 1
        assert update.record.longest_daily_streak == 1
        assert update.record.last_report_date == DAY_ONE.date()

    def test_next_day_extends_streak(self):
        tracker = StreakTracker()
        tracker.record_report(USER_ID, DAY_ONE)

        update = tracker.record_report(USER_ID, DAY_ONE + timedelta(days=1))

        assert update.record.current_daily_streak == 2
        assert update.record.longest_daily_streak == 2

    def test_same_day_report_leaves_streak_unchanged(self):
        tracker = StreakTracker()
        tracker.record_report(USER_ID, DAY_ONE)

        update = tracker.record_report(USER_ID, DAY_ONE + timedelta(hours=8))

        assert not update.changed
        assert update.record.current_daily_streak == 1

    def test_gap_resets_current_but_keeps_longest(self):
        tracker = StreakTracker()
        for offset in range(3):
            tracker.record_report(USER_ID, DAY_ONE + timedelta(days=offset))

        update = tracker.record_report(USER_ID, DAY_ONE + timedelta(days=5))

        assert update.record.current_daily_streak == 1
        assert update.record.longest_daily_streak == 3

    def test_longest_never_below_current(self):
        tracker = StreakTracker()
        offsets = [0, 1, 2, 4, 5, 6, 7, 8, 10]
        for offset in offsets:
            record = tracker.record_report(USER_ID, DAY_ONE + timedelta(days=offset)).record
            assert record.longest_daily_streak >= record.current_daily_streak

        assert tracker.get(USER_ID).longest_daily_streak == 5


class TestStaleReports:
    """Tests for reports that arrive out of order."""

    def test_earlier_day_rejected_without_mutation(self):
        tracker = StreakTracker()
        tracker.record_report(USER_ID, DAY_ONE)
        tracker.record_report(USER_ID, DAY_ONE + timedelta(days=1))
        before = tracker.get(USER_ID)

        with pytest.raises(StaleStreakUpdateError):
            tracker.record_report(USER_ID, DAY_ONE - timedelta(days=1))

        assert tracker.get(USER_ID) == before


class TestTimeZones:
    """Tests for calendar-day boundaries."""

    def test_days_follow_user_time_zone(self):
        """Two reports on the same UTC day can fall on consecutive local days."""
        late_evening_pacific = datetime(2024, 6, 11, 6, 0, tzinfo=timezone.utc)
        next_afternoon_pacific = datetime(2024, 6, 11, 20, 0, tzinfo=timezone.utc)

        utc_tracker = StreakTracker()
        utc_tracker.record_report(USER_ID, late_evening_pacific)
        assert utc_tracker.record_report(USER_ID, next_afternoon_pacific).record.current_daily_streak == 1

        local_tracker = StreakTracker()
        local_tracker.set_time_zone(USER_ID, "America/Los_Angeles")
        local_tracker.record_report(USER_ID, late_evening_pacific)
        assert local_tracker.record_report(USER_ID, next_afternoon_pacific).record.current_daily_streak == 2

    def test_unknown_time_zone_rejected(self):
        with pytest.raises(InvalidEventError):
            StreakTracker().set_time_zone(USER_ID, "Mars/Olympus_Mons")


class TestStreakReads:
    """Tests for reading streaks."""

    def test_unknown_user_has_empty_streak(self):
        record = StreakTracker().get("nobody")

        assert record.current_daily_streak == 0
        assert record.last_report_date is None

    def test_lapsed_streak_reads_as_broken(self):
        tracker = StreakTracker()
        tracker.record_report(USER_ID, DAY_ONE)
        tracker.record_report(USER_ID, DAY_ONE + timedelta(days=1))

        assert tracker.get(USER_ID, as_of=DAY_ONE + timedelta(days=2)).current_daily_streak == 2
        lapsed = tracker.get(USER_ID, as_of=DAY_ONE + timedelta(days=4))
        assert lapsed.current_daily_streak == 0
        assert lapsed.longest_daily_streak == 2


class TestStreakMilestones:
    """Tests for milestone detection."""

    def test_seventh_day_is_a_milestone(self):
        tracker = StreakTracker()
        updates = [tracker.record_report(USER_ID, DAY_ONE + timedelta(days=d)) for d in range(7)]

        assert [u.milestone for u in updates[:6]] == [None] * 6
        assert updates[6].milestone == 7
        assert updates[6].streak_started_on == DAY_ONE.date()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
