import logging
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Mapping, Optional
from uuid import UUID

from .balance import BalanceProjector
from .errors import (
    BelowMinimumError,
    InsufficientBalanceError,
    InvalidEventError,
    InvalidStateTransitionError,
    RecordNotFoundError,
)
from .models import (
    CreditTransaction,
    PayoutMethod,
    PayoutRequest,
    PayoutStatus,
    Tier,
    TransactionKind,
    ensure_aware,
    utcnow,
)
from .store import LedgerStore
from .tiers import TierClassifier

logger = logging.getLogger(__name__)


class PayoutAuthorizer:
    """Turns withdrawal requests into pending ledger debits.

    Money movement belongs to the external payment collaborator. It reports
    back through ``complete`` (payment sent) or ``reverse`` (payment failed);
    a debit is never edited, only settled or offset.
    """

    def __init__(
        self,
        store: LedgerStore,
        projector: BalanceProjector,
        classifier: TierClassifier,
        fee_rate: Decimal = Decimal("0.02"),
        minimums: Optional[Mapping[Tier, int]] = None,
    ):
        self.store = store
        self.projector = projector
        self.classifier = classifier
        self.fee_rate = Decimal(fee_rate)
        self.minimums = dict(minimums or {})
        self._requests: dict[UUID, PayoutRequest] = {}

    def minimum_for(self, tier: Tier) -> int:
        if tier in self.minimums:
            return self.minimums[tier]
        return self.classifier.definition(tier).min_payout

    def authorize(
        self,
        user_id: str,
        amount: int,
        method: PayoutMethod,
        requested_at: Optional[datetime] = None,
    ) -> PayoutRequest:
        if amount <= 0:
            raise InvalidEventError("Payout amount must be positive")
        method = PayoutMethod(method)
        requested_at = ensure_aware(requested_at) if requested_at else None

        with self.store.user_locks.hold(user_id):
            # Debits sort after every entry that funds them; requested_at is only recorded.
            latest = self.store.latest(user_id)
            now = max(utcnow(), latest) if latest else utcnow()
            assignment = self.classifier.classify(user_id, now)
            minimum = self.minimum_for(assignment.tier)
            if amount < minimum:
                logger.info("Payout of %d for %s rejected: %s minimum is %d", amount, user_id, assignment.tier.value, minimum)
                raise BelowMinimumError(amount, minimum, assignment.tier.value)

            balance = self.projector.project(user_id)
            if amount > balance.available:
                logger.info("Payout of %d for %s rejected: %d available", amount, user_id, balance.available)
                raise InsufficientBalanceError(amount, balance.available)

            fee = int((Decimal(amount) * self.fee_rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
            request = PayoutRequest(
                user_id=user_id,
                amount=amount,
                method=method,
                processing_fee=fee,
                net_amount=amount - fee,
                tier=assignment.tier,
                created_at=now,
            )
            self.store.append(CreditTransaction(
                user_id=user_id,
                amount=-amount,
                kind=TransactionKind.WITHDRAWAL_DEBIT,
                related_entity=str(request.id),
                created_at=now,
                description=f"Payout of {amount} credits via {method.value}",
                metadata={
                    "method": method.value,
                    "processing_fee": fee,
                    "net_amount": amount - fee,
                    "requested_at": requested_at.isoformat() if requested_at else None,
                },
            ))
            self._requests[request.id] = request

        logger.info("Payout %s authorized for %s: %d credits via %s", request.id, user_id, amount, method.value)
        return request

    def complete(self, payout_id: UUID, transaction_ref: Optional[str] = None) -> PayoutRequest:
        request = self.get(payout_id)
        with self.store.user_locks.hold(request.user_id):
            request = self._requests[payout_id]
            if not request.can_complete():
                raise InvalidStateTransitionError(f"Cannot complete payout in {request.status.value} state")
            now = utcnow()
            self.store.append(CreditTransaction(
                user_id=request.user_id,
                amount=0,
                kind=TransactionKind.WITHDRAWAL_SETTLEMENT,
                related_entity=str(payout_id),
                created_at=max(now, request.created_at),
                description="Payout settled by payment provider",
                metadata={"transaction_ref": transaction_ref} if transaction_ref else {},
            ))
            request = request.model_copy(update={
                "status": PayoutStatus.PAID, "paid_at": now, "transaction_ref": transaction_ref,
            })
            self._requests[payout_id] = request
        logger.info("Payout %s settled (%s)", payout_id, transaction_ref)
        return request

    def reverse(self, payout_id: UUID, reason: str = "payment failed") -> PayoutRequest:
        request = self.get(payout_id)
        with self.store.user_locks.hold(request.user_id):
            request = self._requests[payout_id]
            if not request.can_reverse():
                raise InvalidStateTransitionError(
                    f"Cannot reverse payout in {request.status.value} state. Only pending payouts can be reversed."
                )
            now = utcnow()
            self.store.append(CreditTransaction(
                user_id=request.user_id,
                amount=request.amount,
                kind=TransactionKind.WITHDRAWAL_REVERSAL,
                related_entity=str(payout_id),
                created_at=max(now, request.created_at),
                description=f"Reversal: {reason}",
                metadata={"reversal_reason": reason, "original_amount": request.amount},
            ))
            request = request.model_copy(update={
                "status": PayoutStatus.REVERSED, "reversed_at": now, "failure_reason": reason,
            })
            self._requests[payout_id] = request
        logger.warning("Payout %s reversed: %s", payout_id, reason)
        return request

    def get(self, payout_id: UUID) -> PayoutRequest:
        request = self._requests.get(payout_id)
        if request is None:
            raise RecordNotFoundError(f"Payout {payout_id} not found")
        return request

    def list_for_user(self, user_id: str) -> list[PayoutRequest]:
        requests = [r for r in self._requests.values() if r.user_id == user_id]
        requests.sort(key=lambda r: r.created_at, reverse=True)
        return requests
