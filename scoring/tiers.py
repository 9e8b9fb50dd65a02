from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Sequence

from .models import Tier, TierAssignment, TransactionKind, ensure_aware, utcnow
from .store import LedgerStore

TIER_WINDOW = timedelta(days=30)


@dataclass(frozen=True)
class TierDefinition:
    tier: Tier
    display_name: str
    min_monthly_credits: int
    min_monthly_reports: int
    multiplier: Decimal
    min_payout: int
    monthly_bonus: int

    def is_met_by(self, credits: int, reports: int) -> bool:
        return credits >= self.min_monthly_credits and reports >= self.min_monthly_reports


# Ordered lowest to highest.
TIER_TABLE: tuple[TierDefinition, ...] = (
    TierDefinition(Tier.BRONZE, "Bronze Contributor", 0, 0, Decimal("1.0"), 5000, 0),
    TierDefinition(Tier.SILVER, "Silver Contributor", 500, 1, Decimal("1.1"), 4000, 50),
    TierDefinition(Tier.GOLD, "Gold Contributor", 2000, 1, Decimal("1.25"), 2500, 200),
    TierDefinition(Tier.PLATINUM, "Platinum Contributor", 5000, 1, Decimal("1.5"), 1000, 500),
    TierDefinition(Tier.DIAMOND, "Diamond Contributor", 10000, 1, Decimal("2.0"), 500, 1000),
)


def tier_for(credits: int, reports: int, table: Sequence[TierDefinition] = TIER_TABLE) -> TierDefinition:
    for definition in reversed(table):
        if definition.is_met_by(credits, reports):
            return definition
    return table[0]


class TierClassifier:
    """Assigns reputation tiers from trailing 30-day ledger activity.

    Classification only reads the ledger. Callers apply the multiplier when
    they credit report rewards.
    """

    def __init__(self, store: LedgerStore, table: Sequence[TierDefinition] = TIER_TABLE):
        self.store = store
        self.table = tuple(table)
        self._by_tier = {definition.tier: definition for definition in self.table}

    def definition(self, tier: Tier) -> TierDefinition:
        return self._by_tier[tier]

    def monthly_activity(self, user_id: str, as_of: datetime) -> tuple[int, int]:
        credits = 0
        reports = 0
        for transaction in self.store.query(user_id, start=as_of - TIER_WINDOW, end=as_of):
            if not transaction.is_earning:
                continue
            credits += transaction.amount
            if transaction.kind == TransactionKind.REPORT_REWARD:
                reports += 1
        return credits, reports

    def classify(self, user_id: str, as_of: Optional[datetime] = None) -> TierAssignment:
        as_of = ensure_aware(as_of) if as_of else utcnow()
        credits, reports = self.monthly_activity(user_id, as_of)
        current = tier_for(credits, reports, self.table)

        position = self.table.index(current)
        upcoming = self.table[position + 1] if position + 1 < len(self.table) else None

        return TierAssignment(
            user_id=user_id,
            tier=current.tier,
            multiplier=current.multiplier,
            monthly_credits=credits,
            monthly_reports=reports,
            as_of=as_of,
            min_payout=current.min_payout,
            monthly_bonus=current.monthly_bonus,
            next_tier=upcoming.tier if upcoming else None,
            credits_to_next_tier=max(upcoming.min_monthly_credits - credits, 0) if upcoming else None,
        )

    @staticmethod
    def apply_multiplier(base_credits: int, assignment: TierAssignment) -> int:
        scaled = Decimal(base_credits) * assignment.multiplier
        return int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
