"""
Unit Tests for Tier Classification

Tests cover:
1. Tier thresholds over the trailing 30-day window
2. Credit multipliers and rounding
3. Progress toward the next tier
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from scoring.models import CreditTransaction, Tier, TransactionKind
from scoring.tiers import TierClassifier, tier_for

NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)
USER_ID = "user-tier-1"


class TestTierClassification:
    """Tests for classifying users from ledger activity."""

    def test_new_user_is_bronze(self, store):
        assignment = TierClassifier(store).classify(USER_ID, NOW)

        assert assignment.tier == Tier.BRONZE
        assert assignment.multiplier == Decimal("1.0")
        assert assignment.next_tier == Tier.SILVER
        assert assignment.credits_to_next_tier == 500

    def test_gold_from_monthly_credits_and_reports(self, store, credit):
        """2500 credits across 3 reports in the window lands in gold at 1.25x."""
        credit(USER_ID, 1000, at=NOW - timedelta(days=1))
        credit(USER_ID, 1000, at=NOW - timedelta(days=2))
        credit(USER_ID, 500, at=NOW - timedelta(days=3))

        assignment = TierClassifier(store).classify(USER_ID, NOW)

        assert assignment.tier == Tier.GOLD
        assert assignment.multiplier == Decimal("1.25")
        assert assignment.monthly_credits == 2500
        assert assignment.monthly_reports == 3
        assert assignment.next_tier == Tier.PLATINUM
        assert assignment.credits_to_next_tier == 2500

    def test_credits_without_reports_stay_bronze(self, store, credit):
        """Paid tiers require at least one report in the window."""
        credit(USER_ID, 600, kind=TransactionKind.MARKETPLACE_SHARE, at=NOW - timedelta(days=1))

        assert TierClassifier(store).classify(USER_ID, NOW).tier == Tier.BRONZE

    def test_activity_outside_window_ignored(self, store, credit):
        credit(USER_ID, 20000, at=NOW - timedelta(days=31))

        assignment = TierClassifier(store).classify(USER_ID, NOW)

        assert assignment.tier == Tier.BRONZE
        assert assignment.monthly_credits == 0

    def test_future_activity_ignored(self, store, credit):
        """Entries after ``as_of`` do not count toward it."""
        credit(USER_ID, 20000, at=NOW + timedelta(hours=1))

        assert TierClassifier(store).classify(USER_ID, NOW).tier == Tier.BRONZE

    def test_diamond_has_no_next_tier(self, store, credit):
        credit(USER_ID, 10000, at=NOW)

        assignment = TierClassifier(store).classify(USER_ID, NOW)

        assert assignment.tier == Tier.DIAMOND
        assert assignment.multiplier == Decimal("2.0")
        assert assignment.next_tier is None
        assert assignment.credits_to_next_tier is None

    def test_payout_debits_do_not_lower_tier(self, store, credit):
        """Tiers track earning, not spending."""
        credit(USER_ID, 2000, at=NOW - timedelta(days=1))
        store.append(CreditTransaction(
            user_id=USER_ID, amount=-1500, kind=TransactionKind.WITHDRAWAL_DEBIT,
            related_entity="payout-1", created_at=NOW,
        ))

        assert TierClassifier(store).classify(USER_ID, NOW).tier == Tier.GOLD

    def test_classification_is_repeatable(self, store, credit):
        credit(USER_ID, 700, at=NOW)
        classifier = TierClassifier(store)

        assert classifier.classify(USER_ID, NOW) == classifier.classify(USER_ID, NOW)


class TestTierThresholds:
    """Tests for the tier table itself."""

    @pytest.mark.parametrize("credits,reports,expected", [
        (0, 0, Tier.BRONZE),
        (499, 5, Tier.BRONZE),
        (500, 1, Tier.SILVER),
        (1999, 1, Tier.SILVER),
        (2000, 1, Tier.GOLD),
        (5000, 1, Tier.PLATINUM),
        (10000, 1, Tier.DIAMOND),
        (10000, 0, Tier.BRONZE),
    ])
    def test_tier_boundaries(self, credits, reports, expected):
        assert tier_for(credits, reports).tier == expected


class TestMultiplier:
    """Tests for applying tier multipliers to base credits."""

    def test_multiplier_rounds_half_up(self, store, credit):
        credit(USER_ID, 2500, at=NOW)
        assignment = TierClassifier(store).classify(USER_ID, NOW)

        # 10 * 1.25 = 12.5
        assert TierClassifier.apply_multiplier(10, assignment) == 13

    def test_bronze_multiplier_is_identity(self, store):
        assignment = TierClassifier(store).classify(USER_ID, NOW)

        assert TierClassifier.apply_multiplier(10, assignment) == 10


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
