import logging
import threading
from typing import Iterable, Iterator

from .errors import InvariantViolationError
from .models import Balance, CreditTransaction, TransactionKind
from .store import LedgerStore

logger = logging.getLogger(__name__)


def fold_balance(user_id: str, transactions: Iterable[CreditTransaction]) -> Balance:
    """Fold a user's transactions into a balance.

    Withdrawal debits are grouped by the payout they belong to: a debit whose
    payout has been reversed no longer counts, a settled one counts as
    redeemed and anything else is still pending. Reversals restore credits
    rather than earn them, so they never add to ``lifetime``.
    """
    lifetime = 0
    total_entries = 0
    last_transaction_at = None
    debits: dict[str, int] = {}
    settled: set[str] = set()
    reversed_payouts: set[str] = set()

    for transaction in transactions:
        total_entries += 1
        last_transaction_at = transaction.created_at
        if transaction.is_earning:
            lifetime += transaction.amount
        elif transaction.kind == TransactionKind.WITHDRAWAL_DEBIT:
            debits[transaction.related_entity] = debits.get(transaction.related_entity, 0) + abs(transaction.amount)
        elif transaction.kind == TransactionKind.WITHDRAWAL_SETTLEMENT:
            settled.add(transaction.related_entity)
        elif transaction.kind == TransactionKind.WITHDRAWAL_REVERSAL:
            reversed_payouts.add(transaction.related_entity)

    redeemed = 0
    pending = 0
    for payout_id, amount in debits.items():
        if payout_id in reversed_payouts:
            continue
        if payout_id in settled:
            redeemed += amount
        else:
            pending += amount

    available = lifetime - redeemed - pending
    if available < 0:
        logger.error(
            "Ledger for user %s folds to a negative balance (lifetime=%d redeemed=%d pending=%d)",
            user_id, lifetime, redeemed, pending,
        )
        raise InvariantViolationError(f"Balance for user {user_id} would be negative ({available})")

    return Balance(
        user_id=user_id,
        available=available,
        pending=pending,
        lifetime=lifetime,
        redeemed=redeemed,
        total_entries=total_entries,
        last_transaction_at=last_transaction_at,
    )


def replay(user_id: str, transactions: Iterable[CreditTransaction]) -> Iterator[Balance]:
    """Yield the balance as it stood after each transaction in the history."""
    history: list[CreditTransaction] = []
    for transaction in transactions:
        history.append(transaction)
        yield fold_balance(user_id, history)


class BalanceProjector:
    """Serves balances folded from the ledger.

    Results are cached per user against the ledger version they were folded
    from; the ledger remains the only source of truth.
    """

    def __init__(self, store: LedgerStore):
        self.store = store
        self._cache: dict[str, tuple[int, Balance]] = {}
        self._cache_lock = threading.Lock()

    def project(self, user_id: str) -> Balance:
        version = self.store.version(user_id)
        with self._cache_lock:
            cached = self._cache.get(user_id)
        if cached and cached[0] == version:
            return cached[1]

        transactions = list(self.store.query(user_id))
        balance = fold_balance(user_id, transactions)
        with self._cache_lock:
            self._cache[user_id] = (len(transactions), balance)
        return balance

    def invalidate(self, user_id: str) -> None:
        with self._cache_lock:
            self._cache.pop(user_id, None)
