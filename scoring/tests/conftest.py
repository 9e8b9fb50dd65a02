from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

import pytest

from scoring.config import EngineSettings
from scoring.models import CreditTransaction, TransactionKind
from scoring.service import ScoringEngine
from scoring.store import LedgerStore

NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store():
    return LedgerStore()


@pytest.fixture
def settings():
    return EngineSettings()


@pytest.fixture
def engine(settings):
    return ScoringEngine(settings)


@pytest.fixture
def credit(store):
    """Append an earning entry to the ``store`` fixture."""

    def _credit(
        user_id: str,
        amount: int,
        kind: TransactionKind = TransactionKind.REPORT_REWARD,
        at: datetime = NOW,
        related: Optional[str] = None,
    ) -> CreditTransaction:
        return store.append(CreditTransaction(
            user_id=user_id,
            amount=amount,
            kind=kind,
            related_entity=related or str(uuid4()),
            created_at=at,
        ))

    return _credit
