import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import InvalidEventError, StaleStreakUpdateError
from .models import StreakRecord, ensure_aware
from .store import KeyedLocks

logger = logging.getLogger(__name__)

# Consecutive-day milestones and the credits they pay.
STREAK_MILESTONES: dict[int, int] = {
    7: 50,
    14: 150,
    30: 500,
    60: 1500,
    90: 3000,
}


@dataclass(frozen=True)
class StreakUpdate:
    record: StreakRecord
    changed: bool
    milestone: Optional[int] = None

    @property
    def streak_started_on(self) -> Optional[date]:
        if self.record.last_report_date is None:
            return None
        return self.record.last_report_date - timedelta(days=self.record.current_daily_streak - 1)


class StreakTracker:
    """Tracks consecutive-day reporting streaks per user.

    Reports must be applied in submission order. A report dated before the
    user's last report day is rejected rather than reordered.
    """

    def __init__(self, default_time_zone: str = "UTC", locks: Optional[KeyedLocks] = None):
        self.default_time_zone = self._zone(default_time_zone)
        self.locks = locks or KeyedLocks()
        self._records: dict[str, StreakRecord] = {}
        self._time_zones: dict[str, ZoneInfo] = {}

    def set_time_zone(self, user_id: str, time_zone: str) -> None:
        self._time_zones[user_id] = self._zone(time_zone)

    def calendar_day(self, user_id: str, moment: datetime) -> date:
        zone = self._time_zones.get(user_id, self.default_time_zone)
        return ensure_aware(moment).astimezone(zone).date()

    def record_report(self, user_id: str, reported_at: datetime) -> StreakUpdate:
        day = self.calendar_day(user_id, reported_at)
        with self.locks.hold(user_id):
            record = self._records.get(user_id) or StreakRecord(user_id=user_id)
            last = record.last_report_date

            if last is not None and day < last:
                logger.warning(
                    "Stale streak update for user %s: report day %s precedes last report day %s",
                    user_id, day, last,
                )
                raise StaleStreakUpdateError(
                    f"Report day {day} for user {user_id} precedes last report day {last}"
                )
            if last == day:
                return StreakUpdate(record=record, changed=False)

            current = record.current_daily_streak + 1 if last == day - timedelta(days=1) else 1
            updated = record.model_copy(update={
                "current_daily_streak": current,
                "longest_daily_streak": max(record.longest_daily_streak, current),
                "last_report_date": day,
            })
            self._records[user_id] = updated

        milestone = current if current in STREAK_MILESTONES else None
        if milestone:
            logger.info("User %s reached a %d-day reporting streak", user_id, milestone)
        return StreakUpdate(record=updated, changed=True, milestone=milestone)

    def get(self, user_id: str, as_of: Optional[datetime] = None) -> StreakRecord:
        """Current streak for a user.

        With ``as_of``, a streak whose last report is more than a day old
        reads as broken (0) without touching the stored record.
        """
        record = self._records.get(user_id) or StreakRecord(user_id=user_id)
        if as_of is None or record.last_report_date is None:
            return record
        today = self.calendar_day(user_id, as_of)
        if today - record.last_report_date > timedelta(days=1):
            return record.model_copy(update={"current_daily_streak": 0})
        return record

    @staticmethod
    def _zone(name: str) -> ZoneInfo:
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise InvalidEventError(f"Unknown time zone {name!r}") from exc
