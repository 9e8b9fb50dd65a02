from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from .errors import InvalidEventError
from .models import LeaderboardEntry, LeaderboardPeriod, TransactionKind, ensure_aware, utcnow
from .store import LedgerStore
from .tiers import TierClassifier

PERIOD_WINDOWS: dict[LeaderboardPeriod, Optional[timedelta]] = {
    LeaderboardPeriod.WEEKLY: timedelta(days=7),
    LeaderboardPeriod.MONTHLY: timedelta(days=30),
    LeaderboardPeriod.ALL_TIME: None,
}


@dataclass
class _Standing:
    user_id: str
    total: int
    first_activity: datetime
    reports: int = 0
    referrals: int = 0

    def sort_key(self) -> tuple:
        # Higher totals first; ties go to whoever earned first in the window.
        return (-self.total, self.first_activity, self.user_id)


class LeaderboardAggregator:
    """Windowed rankings over earned credits.

    Rankings are recomputed from a ledger snapshot on every call and returned
    whole; nothing is persisted.
    """

    def __init__(self, store: LedgerStore, classifier: TierClassifier):
        self.store = store
        self.classifier = classifier

    def rank(
        self,
        period: LeaderboardPeriod = LeaderboardPeriod.MONTHLY,
        limit: int = 50,
        as_of: Optional[datetime] = None,
    ) -> list[LeaderboardEntry]:
        if limit < 1:
            raise InvalidEventError("Leaderboard limit must be at least 1")
        as_of = ensure_aware(as_of) if as_of else utcnow()
        ordering = self._ordering(period, as_of)
        return [self._entry(position, standing, as_of) for position, standing in enumerate(ordering[:limit], 1)]

    def rank_for(
        self,
        user_id: str,
        period: LeaderboardPeriod = LeaderboardPeriod.MONTHLY,
        as_of: Optional[datetime] = None,
    ) -> Optional[LeaderboardEntry]:
        """Locate one user in the full ordering. Costs a full sort."""
        as_of = ensure_aware(as_of) if as_of else utcnow()
        for position, standing in enumerate(self._ordering(period, as_of), 1):
            if standing.user_id == user_id:
                return self._entry(position, standing, as_of)
        return None

    def _ordering(self, period: LeaderboardPeriod, as_of: datetime) -> list[_Standing]:
        window = PERIOD_WINDOWS[LeaderboardPeriod(period)]
        start = as_of - window if window else None

        standings: dict[str, _Standing] = {}
        # Ascending by created_at, so the first entry seen per user is their earliest.
        for transaction in self.store.query(start=start, end=as_of):
            if not transaction.is_earning:
                continue
            standing = standings.get(transaction.user_id)
            if standing is None:
                standing = standings[transaction.user_id] = _Standing(
                    user_id=transaction.user_id, total=0, first_activity=transaction.created_at,
                )
            standing.total += transaction.amount
            if transaction.kind == TransactionKind.REPORT_REWARD:
                standing.reports += 1
            elif transaction.kind == TransactionKind.REFERRAL_BONUS:
                standing.referrals += 1

        return sorted(standings.values(), key=_Standing.sort_key)

    def _entry(self, position: int, standing: _Standing, as_of: datetime) -> LeaderboardEntry:
        return LeaderboardEntry(
            user_id=standing.user_id,
            rank=position,
            total_credits=standing.total,
            tier=self.classifier.classify(standing.user_id, as_of).tier,
            report_count=standing.reports,
            referral_count=standing.referrals,
        )
