"""
Append-only credit ledger.

Entries are immutable once appended. Corrections are new offsetting entries,
never edits. The store enforces the ``(related_entity, kind)`` idempotency
guard and hands out per-key locks; it never computes balances.
"""

import logging
import threading
from bisect import insort
from collections import defaultdict
from contextlib import ExitStack, contextmanager
from datetime import datetime
from typing import Callable, Iterator, Optional
from uuid import UUID

from .errors import DuplicateEntryError
from .models import CreditTransaction, TransactionKind, ensure_aware

logger = logging.getLogger(__name__)


def _created_at(transaction: CreditTransaction) -> datetime:
    return transaction.created_at


class KeyedLocks:
    """One re-entrant lock per key, created on first use."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def lock_for(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self.lock_for(key):
            yield

    @contextmanager
    def hold_many(self, *keys: str) -> Iterator[None]:
        """Hold several keys at once, always acquired in sorted order."""
        with ExitStack() as stack:
            for key in sorted(set(keys)):
                stack.enter_context(self.lock_for(key))
            yield


class LedgerQuery:
    """Lazy, restartable view over the ledger.

    Nothing is read until iteration starts, and every iteration works from a
    fresh snapshot, so entries appended later show up on the next pass while
    a pass already in progress is never affected.
    """

    def __init__(
        self,
        source: Callable[[], list[CreditTransaction]],
        kind: Optional[TransactionKind] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ):
        self._source = source
        self.kind = kind
        self.start = ensure_aware(start) if start else None
        self.end = ensure_aware(end) if end else None

    def __iter__(self) -> Iterator[CreditTransaction]:
        for transaction in self._source():
            if self.end is not None and transaction.created_at > self.end:
                break
            if self.start is not None and transaction.created_at < self.start:
                continue
            if self.kind is not None and transaction.kind != self.kind:
                continue
            yield transaction

    def count(self) -> int:
        return sum(1 for _ in self)


class LedgerStore:
    def __init__(self):
        self._all: list[CreditTransaction] = []
        self._by_user: dict[str, list[CreditTransaction]] = defaultdict(list)
        self._by_id: dict[UUID, CreditTransaction] = {}
        self._idempotency_index: dict[tuple[str, TransactionKind], UUID] = {}
        self._write_lock = threading.Lock()
        self.user_locks = KeyedLocks()

    def append(self, transaction: CreditTransaction) -> CreditTransaction:
        with self.user_locks.hold(transaction.user_id):
            with self._write_lock:
                key = self._idempotency_key(transaction)
                if key is not None and key in self._idempotency_index:
                    existing_id = self._idempotency_index[key]
                    logger.info(
                        "Duplicate %s for %s ignored (existing entry %s)",
                        transaction.kind.value, transaction.related_entity, existing_id,
                    )
                    raise DuplicateEntryError(
                        f"{transaction.kind.value} for {transaction.related_entity} already recorded",
                        existing_id=str(existing_id),
                    )
                if transaction.id in self._by_id:
                    raise DuplicateEntryError(
                        f"Transaction {transaction.id} already recorded", existing_id=str(transaction.id)
                    )

                insort(self._by_user[transaction.user_id], transaction, key=_created_at)
                insort(self._all, transaction, key=_created_at)
                self._by_id[transaction.id] = transaction
                if key is not None:
                    self._idempotency_index[key] = transaction.id

        logger.info(
            "Appended %s of %d credits for user %s (%s)",
            transaction.kind.value, transaction.amount, transaction.user_id, transaction.related_entity,
        )
        return transaction

    def query(
        self,
        user_id: Optional[str] = None,
        kind: Optional[TransactionKind] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> LedgerQuery:
        if user_id is None:
            return LedgerQuery(self._snapshot_all, kind=kind, start=start, end=end)
        return LedgerQuery(lambda: self._snapshot_user(user_id), kind=kind, start=start, end=end)

    def get(self, transaction_id: UUID) -> Optional[CreditTransaction]:
        with self._write_lock:
            return self._by_id.get(transaction_id)

    def find(self, related_entity: str, kind: TransactionKind) -> Optional[CreditTransaction]:
        with self._write_lock:
            transaction_id = self._idempotency_index.get((related_entity, kind))
            return self._by_id.get(transaction_id) if transaction_id else None

    def latest(self, user_id: str) -> Optional[datetime]:
        """Timestamp of the user's most recent entry."""
        with self._write_lock:
            entries = self._by_user.get(user_id)
            return entries[-1].created_at if entries else None

    def users(self) -> list[str]:
        with self._write_lock:
            return sorted(self._by_user)

    def version(self, user_id: str) -> int:
        """Number of entries recorded for a user; changes on every append."""
        with self._write_lock:
            return len(self._by_user.get(user_id, ()))

    def _snapshot_all(self) -> list[CreditTransaction]:
        with self._write_lock:
            return list(self._all)

    def _snapshot_user(self, user_id: str) -> list[CreditTransaction]:
        with self._write_lock:
            return list(self._by_user.get(user_id, ()))

    @staticmethod
    def _idempotency_key(transaction: CreditTransaction) -> Optional[tuple[str, TransactionKind]]:
        if not transaction.related_entity:
            return None
        return (transaction.related_entity, transaction.kind)
