"""
Scoring & Ledger Engine for crowdsourced road-incident reports

This package provides:
- An append-only credit ledger with an idempotency guard
- Balance, tier, streak and leaderboard projections folded from the ledger
- Referral qualification and milestone bonuses
- Per-plate danger scores with auditable compensations
- Tier-aware payout authorization with reversal as the only correction path
"""

from .errors import (
    BelowMinimumError,
    DuplicateEntryError,
    InsufficientBalanceError,
    InvariantViolationError,
    ScoringEngineError,
    StaleStreakUpdateError,
)
from .models import (
    Balance,
    CreditTransaction,
    FlaggedPlateAggregate,
    LeaderboardEntry,
    LeaderboardPeriod,
    ReferralRecord,
    StreakRecord,
    Tier,
    TierAssignment,
    TransactionKind,
)
from .service import ScoringEngine
from .store import LedgerStore

__all__ = [
    "Balance",
    "BelowMinimumError",
    "CreditTransaction",
    "DuplicateEntryError",
    "FlaggedPlateAggregate",
    "InsufficientBalanceError",
    "InvariantViolationError",
    "LeaderboardEntry",
    "LeaderboardPeriod",
    "LedgerStore",
    "ReferralRecord",
    "ScoringEngine",
    "ScoringEngineError",
    "StaleStreakUpdateError",
    "StreakRecord",
    "Tier",
    "TierAssignment",
    "TransactionKind",
]
