import logging
import re
from datetime import datetime
from typing import Mapping, Optional, Sequence
from uuid import UUID

from pydantic import TypeAdapter, ValidationError

from .balance import BalanceProjector
from .config import EngineSettings, get_settings
from .errors import DuplicateEntryError, InvalidEventError, RecordNotFoundError, StaleStreakUpdateError
from .leaderboard import LeaderboardAggregator
from .models import (
    Balance,
    CreditTransaction,
    EngineEvent,
    FlaggedPlateAggregate,
    LeaderboardEntry,
    LeaderboardPeriod,
    LedgerHistoryResponse,
    MarketplaceShare,
    PayoutMethod,
    PayoutRequest,
    PlateHistory,
    ReferralCreated,
    ReferralRecord,
    ReferralStats,
    ReferralStatus,
    ReportDeleted,
    ReportOutcome,
    ReportSubmitted,
    ScoreAdjustment,
    StreakRecord,
    Tier,
    TierAssignment,
    TransactionKind,
    WithdrawalRequested,
    ensure_aware,
    utcnow,
)
from .payouts import PayoutAuthorizer
from .plates import DangerScoreAggregator, normalize_plate
from .referrals import ReferralEngine
from .rewards import report_base_credits
from .store import LedgerStore
from .streaks import STREAK_MILESTONES, StreakTracker
from .tiers import TIER_TABLE, TierClassifier, TierDefinition

logger = logging.getLogger(__name__)

_EVENT_ADAPTER = TypeAdapter(EngineEvent)
_PERIOD_FORMAT = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


class ScoringEngine:
    """Entry point used by API handlers.

    Wires the ledger to its projections and turns collaborator events into
    ledger entries, streak updates, plate scores and referral progress.
    """

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        store: Optional[LedgerStore] = None,
        tier_table: Sequence[TierDefinition] = TIER_TABLE,
        payout_minimums: Optional[Mapping[Tier, int]] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store or LedgerStore()
        self.balances = BalanceProjector(self.store)
        self.tiers = TierClassifier(self.store, tier_table)
        self.streaks = StreakTracker(self.settings.default_time_zone, locks=self.store.user_locks)
        self.referrals = ReferralEngine(
            self.store,
            required_incidents=self.settings.referral_required_incidents,
            referrer_bonus=self.settings.referrer_bonus,
            referee_welcome_bonus=self.settings.referee_welcome_bonus,
        )
        self.leaderboard = LeaderboardAggregator(self.store, self.tiers)
        self.plates = DangerScoreAggregator(
            report_weight=self.settings.danger_report_weight,
            recent_limit=self.settings.recent_incident_limit,
        )
        self.payouts = PayoutAuthorizer(
            self.store, self.balances, self.tiers,
            fee_rate=self.settings.payout_fee_rate,
            minimums=payout_minimums,
        )
        self.event_handlers = {
            ReportSubmitted: self.submit_report,
            ReportDeleted: self.delete_report,
            ReferralCreated: self.create_referral,
            MarketplaceShare: self.record_marketplace_share,
            WithdrawalRequested: self.request_withdrawal,
        }

    # ------------------------------------------------------------------
    # Event intake
    # ------------------------------------------------------------------

    def apply(self, event):
        handler = self.event_handlers.get(type(event))
        if handler is None:
            raise InvalidEventError(f"Unsupported event {type(event).__name__}")
        return handler(event)

    def apply_payload(self, payload: dict):
        """Validate a raw collaborator payload against the tagged event variants, then apply it."""
        try:
            event = _EVENT_ADAPTER.validate_python(payload)
        except ValidationError as exc:
            raise InvalidEventError(f"Invalid event payload: {exc.error_count()} error(s)") from exc
        return self.apply(event)

    def submit_report(self, event: ReportSubmitted) -> ReportOutcome:
        if event.plate:
            normalize_plate(event.plate)

        with self.store.user_locks.hold(event.user_id):
            tier = self.tiers.classify(event.user_id, event.occurred_at)
            base = report_base_credits(
                event.type, event.has_video, event.has_gps, default=self.settings.default_report_credits,
            )
            transaction = self.store.append(CreditTransaction(
                user_id=event.user_id,
                amount=self.tiers.apply_multiplier(base, tier),
                kind=TransactionKind.REPORT_REWARD,
                related_entity=event.report_id,
                created_at=event.occurred_at,
                description=f"Reward for reporting {event.type.replace('_', ' ')} incident",
                metadata={
                    "base_credits": base,
                    "tier": tier.tier.value,
                    "multiplier": str(tier.multiplier),
                    "severity": event.severity.value,
                    "plate": event.plate,
                },
            ))
            streak, streak_bonus = self._advance_streak(event)

        plate = None
        if event.plate:
            plate = self.plates.record_report(
                event.plate, event.type, event.severity, event.occurred_at,
                location_label=event.location_label, report_id=event.report_id,
            )

        referral = self._advance_referral(event.user_id, event.occurred_at)

        return ReportOutcome(
            transaction=transaction,
            tier=tier,
            streak=streak,
            streak_bonus=streak_bonus,
            plate=plate,
            referral=referral,
            message=f"Report credited with {transaction.amount} credits",
        )

    def delete_report(self, event: ReportDeleted) -> Optional[ScoreAdjustment]:
        """Take a deleted report back out of its plate's danger score.

        Credits already earned stay in the ledger; only the plate score is
        compensated. Only the user who submitted the report may delete it.
        """
        reward = self.store.find(event.report_id, TransactionKind.REPORT_REWARD)
        if reward is None:
            raise RecordNotFoundError(f"Report {event.report_id} was never recorded")
        if reward.user_id != event.user_id:
            logger.warning(
                "User %s tried to delete report %s owned by %s", event.user_id, event.report_id, reward.user_id,
            )
            raise InvalidEventError(f"Report {event.report_id} does not belong to user {event.user_id}")

        plate = event.plate or reward.metadata.get("plate")
        if not plate:
            logger.info("Deleted report %s carried no plate; nothing to compensate", event.report_id)
            return None
        return self.plates.remove_report(plate, event.report_id, reason=event.reason)

    def create_referral(self, event: ReferralCreated) -> ReferralRecord:
        return self.referrals.create_referral(
            event.referrer_id, event.referee_id,
            required_incidents=event.required_incidents,
            created_at=event.created_at,
        )

    def record_referee_activity(self, referral_id: UUID, incident_count: int) -> ReferralRecord:
        record = self.referrals.record_referee_activity(referral_id, incident_count)
        if record.status == ReferralStatus.PAID:
            self.referrals.evaluate_milestones(record.referrer_id)
        return record

    def record_marketplace_share(self, event: MarketplaceShare) -> CreditTransaction:
        return self.store.append(CreditTransaction(
            user_id=event.user_id,
            amount=event.amount,
            kind=TransactionKind.MARKETPLACE_SHARE,
            related_entity=f"sale:{event.sale_id}:{event.user_id}",
            created_at=event.occurred_at,
            description=f"Revenue share from {event.dataset_name or 'dataset'} sale",
            metadata={"sale_id": event.sale_id, "dataset_name": event.dataset_name},
        ))

    def grant_tier_bonuses(self, period: Optional[str] = None, as_of: Optional[datetime] = None) -> list[CreditTransaction]:
        """Pay each user's monthly tier maintenance bonus, at most once per month."""
        as_of = ensure_aware(as_of) if as_of else utcnow()
        period = period or as_of.strftime("%Y-%m")
        if not _PERIOD_FORMAT.match(period):
            raise InvalidEventError(f"Bonus period must look like YYYY-MM, got {period!r}")

        granted = []
        for user_id in self.store.users():
            assignment = self.tiers.classify(user_id, as_of)
            if assignment.monthly_bonus <= 0:
                continue
            try:
                granted.append(self.store.append(CreditTransaction(
                    user_id=user_id,
                    amount=assignment.monthly_bonus,
                    kind=TransactionKind.TIER_MONTHLY_BONUS,
                    related_entity=f"tier-bonus:{user_id}:{period}",
                    created_at=as_of,
                    description=f"{assignment.tier.value.title()} tier bonus for {period}",
                    metadata={"tier": assignment.tier.value, "period": period},
                )))
            except DuplicateEntryError:
                continue
        logger.info("Granted %d tier bonuses for %s", len(granted), period)
        return granted

    def request_withdrawal(self, event: WithdrawalRequested) -> PayoutRequest:
        return self.authorize_payout(event.user_id, event.amount, event.method, requested_at=event.requested_at)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_balance(self, user_id: str) -> Balance:
        return self.balances.project(user_id)

    def get_tier(self, user_id: str, as_of: Optional[datetime] = None) -> TierAssignment:
        return self.tiers.classify(user_id, as_of)

    def get_streak(self, user_id: str, as_of: Optional[datetime] = None) -> StreakRecord:
        return self.streaks.get(user_id, as_of)

    def get_leaderboard(
        self,
        period: LeaderboardPeriod = LeaderboardPeriod.MONTHLY,
        limit: Optional[int] = None,
        as_of: Optional[datetime] = None,
    ) -> list[LeaderboardEntry]:
        return self.leaderboard.rank(period, limit or self.settings.leaderboard_default_limit, as_of)

    def get_rank(
        self,
        user_id: str,
        period: LeaderboardPeriod = LeaderboardPeriod.MONTHLY,
        as_of: Optional[datetime] = None,
    ) -> LeaderboardEntry:
        entry = self.leaderboard.rank_for(user_id, period, as_of)
        if entry is None:
            raise RecordNotFoundError(f"User {user_id} has no ranked activity for the {LeaderboardPeriod(period).value} period")
        return entry

    def get_flagged_plates(self, filter_type: Optional[str] = None, limit: Optional[int] = None) -> list[FlaggedPlateAggregate]:
        return self.plates.rank(filter_type, limit)

    def search_plate(self, query: str) -> list[FlaggedPlateAggregate]:
        return self.plates.search(query)

    def get_plate_history(self, plate: str) -> PlateHistory:
        return self.plates.history(plate)

    def get_referral_stats(self, referrer_id: str) -> ReferralStats:
        return self.referrals.stats(referrer_id)

    def get_history(self, user_id: str, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        entries = list(self.store.query(user_id))
        entries.reverse()
        return LedgerHistoryResponse(
            user_id=user_id,
            entries=entries[offset:offset + limit],
            total_count=len(entries),
            balance=self.balances.project(user_id),
        )

    # ------------------------------------------------------------------
    # Payouts
    # ------------------------------------------------------------------

    def authorize_payout(
        self,
        user_id: str,
        amount: int,
        method: PayoutMethod,
        requested_at: Optional[datetime] = None,
    ) -> PayoutRequest:
        return self.payouts.authorize(user_id, amount, method, requested_at)

    def reverse_payout(self, payout_id: UUID, reason: str = "payment failed") -> PayoutRequest:
        return self.payouts.reverse(payout_id, reason)

    def complete_payout(self, payout_id: UUID, transaction_ref: Optional[str] = None) -> PayoutRequest:
        return self.payouts.complete(payout_id, transaction_ref)

    # ------------------------------------------------------------------

    def _advance_streak(self, event: ReportSubmitted) -> tuple[StreakRecord, Optional[CreditTransaction]]:
        try:
            update = self.streaks.record_report(event.user_id, event.occurred_at)
        except StaleStreakUpdateError:
            return self.streaks.get(event.user_id), None

        if not update.milestone:
            return update.record, None

        try:
            bonus = self.store.append(CreditTransaction(
                user_id=event.user_id,
                amount=STREAK_MILESTONES[update.milestone],
                kind=TransactionKind.STREAK_BONUS,
                related_entity=f"streak:{event.user_id}:{update.streak_started_on}:{update.milestone}",
                created_at=event.occurred_at,
                description=f"{update.milestone}-day reporting streak bonus",
                metadata={"streak_days": update.milestone},
            ))
        except DuplicateEntryError:
            bonus = None
        return update.record, bonus

    def _advance_referral(self, referee_id: str, occurred_at: datetime) -> Optional[ReferralRecord]:
        referral = self.referrals.for_referee(referee_id)
        if referral is None or referral.status != ReferralStatus.PENDING:
            return referral

        incidents = self.store.query(referee_id, kind=TransactionKind.REPORT_REWARD).count()
        referral = self.referrals.record_referee_activity(referral.id, incidents, occurred_at)
        if referral.status == ReferralStatus.PAID:
            self.referrals.evaluate_milestones(referral.referrer_id, occurred_at)
        return referral
