"""
Referral tracking and milestone bonuses.

A referral moves pending -> qualified once the referee has submitted enough
incidents, and qualified -> paid when the referrer bonus lands in the ledger.
Every bonus is keyed on the referral (or milestone) it pays for, so the
ledger's duplicate guard makes retries harmless.
"""

import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from .errors import (
    DuplicateEntryError,
    InvalidEventError,
    InvalidStateTransitionError,
    RecordNotFoundError,
)
from .models import (
    CreditTransaction,
    ReferralRecord,
    ReferralStats,
    ReferralStatus,
    TransactionKind,
    ensure_aware,
    utcnow,
)
from .store import LedgerStore

logger = logging.getLogger(__name__)

# Qualified referrals needed -> bonus credits for the referrer.
REFERRAL_MILESTONES: dict[int, int] = {
    5: 1000,
    10: 2500,
    25: 7500,
    50: 20000,
    100: 50000,
}


def milestone_key(referrer_id: str, threshold: int) -> str:
    return f"referral-milestone:{referrer_id}:{threshold}"


class ReferralEngine:
    def __init__(
        self,
        store: LedgerStore,
        required_incidents: int = 3,
        referrer_bonus: int = 500,
        referee_welcome_bonus: int = 250,
        milestones: Optional[dict[int, int]] = None,
    ):
        self.store = store
        self.required_incidents = required_incidents
        self.referrer_bonus = referrer_bonus
        self.referee_welcome_bonus = referee_welcome_bonus
        self.milestones = dict(sorted((milestones or REFERRAL_MILESTONES).items()))
        self._referrals: dict[UUID, ReferralRecord] = {}
        self._by_referee: dict[str, UUID] = {}
        self._milestones_paid: dict[str, set[int]] = {}

    def create_referral(
        self,
        referrer_id: str,
        referee_id: str,
        required_incidents: Optional[int] = None,
        created_at: Optional[datetime] = None,
    ) -> ReferralRecord:
        if referrer_id == referee_id:
            raise InvalidEventError("Users cannot refer themselves")

        with self.store.user_locks.hold(referrer_id):
            if referee_id in self._by_referee:
                raise DuplicateEntryError(
                    f"User {referee_id} was already referred",
                    existing_id=str(self._by_referee[referee_id]),
                )
            record = ReferralRecord(
                referrer_id=referrer_id,
                referee_id=referee_id,
                required_incidents=required_incidents or self.required_incidents,
                created_at=ensure_aware(created_at) if created_at else utcnow(),
            )
            self._referrals[record.id] = record
            self._by_referee[referee_id] = record.id

        logger.info("Referral %s created: %s referred %s", record.id, referrer_id, referee_id)
        return record

    def get(self, referral_id: UUID) -> ReferralRecord:
        record = self._referrals.get(referral_id)
        if record is None:
            raise RecordNotFoundError(f"Referral {referral_id} not found")
        return record

    def for_referee(self, referee_id: str) -> Optional[ReferralRecord]:
        referral_id = self._by_referee.get(referee_id)
        return self._referrals.get(referral_id) if referral_id else None

    def list_for_referrer(self, referrer_id: str) -> list[ReferralRecord]:
        records = [r for r in self._referrals.values() if r.referrer_id == referrer_id]
        records.sort(key=lambda r: r.created_at)
        return records

    def record_referee_activity(
        self,
        referral_id: UUID,
        incident_count: int,
        occurred_at: Optional[datetime] = None,
    ) -> ReferralRecord:
        if incident_count < 0:
            raise InvalidEventError("Incident count cannot be negative")
        record = self.get(referral_id)
        now = ensure_aware(occurred_at) if occurred_at else utcnow()

        # Bonuses land on both users; take both locks in a fixed order.
        with self.store.user_locks.hold_many(record.referrer_id, record.referee_id):
            record = self._referrals[referral_id]
            if record.status == ReferralStatus.CANCELLED:
                raise InvalidStateTransitionError(f"Referral {referral_id} was cancelled")

            if incident_count > record.progress:
                record = record.model_copy(update={"progress": incident_count})

            if record.status == ReferralStatus.PENDING and record.progress >= record.required_incidents:
                record = record.model_copy(update={"status": ReferralStatus.QUALIFIED, "qualified_at": now})
                logger.info("Referral %s qualified with %d incidents", referral_id, record.progress)

            if record.status == ReferralStatus.QUALIFIED:
                self._pay_bonuses(record, now)
                record = record.model_copy(update={"status": ReferralStatus.PAID, "paid_at": now})

            self._referrals[referral_id] = record
        return record

    def cancel_referral(self, referral_id: UUID, reason: str) -> ReferralRecord:
        record = self.get(referral_id)
        with self.store.user_locks.hold(record.referrer_id):
            record = self._referrals[referral_id]
            if record.status != ReferralStatus.PENDING:
                raise InvalidStateTransitionError(
                    f"Cannot cancel referral in {record.status.value} state. Only pending referrals can be cancelled."
                )
            record = record.model_copy(update={
                "status": ReferralStatus.CANCELLED,
                "cancelled_at": utcnow(),
                "cancellation_reason": reason,
            })
            self._referrals[referral_id] = record
        logger.info("Referral %s cancelled: %s", referral_id, reason)
        return record

    def evaluate_milestones(self, referrer_id: str, as_of: Optional[datetime] = None) -> list[CreditTransaction]:
        """Pay every milestone the referrer has crossed but not yet been paid for."""
        now = ensure_aware(as_of) if as_of else utcnow()
        emitted: list[CreditTransaction] = []

        with self.store.user_locks.hold(referrer_id):
            qualified = sum(1 for r in self.list_for_referrer(referrer_id) if r.counts_toward_milestones())
            paid = self._milestones_paid.setdefault(referrer_id, set())

            for threshold, bonus in self.milestones.items():
                if qualified < threshold or threshold in paid:
                    continue
                try:
                    emitted.append(self.store.append(CreditTransaction(
                        user_id=referrer_id,
                        amount=bonus,
                        kind=TransactionKind.REFERRAL_MILESTONE,
                        related_entity=milestone_key(referrer_id, threshold),
                        created_at=now,
                        description=f"Milestone bonus for {threshold} qualified referrals",
                        metadata={"threshold": threshold, "qualified_referrals": qualified},
                    )))
                except DuplicateEntryError:
                    logger.info("Milestone %d for %s already paid", threshold, referrer_id)
                paid.add(threshold)

        return emitted

    def stats(self, referrer_id: str) -> ReferralStats:
        counts = {status: 0 for status in ReferralStatus}
        records = self.list_for_referrer(referrer_id)
        for record in records:
            counts[record.status] += 1

        qualified = counts[ReferralStatus.QUALIFIED] + counts[ReferralStatus.PAID]
        upcoming = [t for t in self.milestones if t > qualified]
        return ReferralStats(
            referrer_id=referrer_id,
            total=len(records) - counts[ReferralStatus.CANCELLED],
            pending=counts[ReferralStatus.PENDING],
            qualified=counts[ReferralStatus.QUALIFIED],
            paid=counts[ReferralStatus.PAID],
            cancelled=counts[ReferralStatus.CANCELLED],
            milestones_paid=sorted(self._milestones_paid.get(referrer_id, set())),
            next_milestone=upcoming[0] if upcoming else None,
        )

    def _pay_bonuses(self, record: ReferralRecord, now: datetime) -> None:
        related = str(record.id)
        payments = (
            (record.referrer_id, self.referrer_bonus, TransactionKind.REFERRAL_BONUS,
             f"Referral bonus for inviting {record.referee_id}"),
            (record.referee_id, self.referee_welcome_bonus, TransactionKind.REFERRAL_WELCOME,
             "Welcome bonus for joining through a referral"),
        )
        for user_id, amount, kind, description in payments:
            try:
                self.store.append(CreditTransaction(
                    user_id=user_id,
                    amount=amount,
                    kind=kind,
                    related_entity=related,
                    created_at=now,
                    description=description,
                    metadata={"referrer_id": record.referrer_id, "referee_id": record.referee_id},
                ))
            except DuplicateEntryError:
                logger.info("%s for referral %s already paid", kind.value, related)
