from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Literal, Optional, Union
from uuid import UUID, uuid4

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so every comparison is between aware values."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


UtcDatetime = Annotated[datetime, AfterValidator(ensure_aware)]


class TransactionKind(str, Enum):
    REPORT_REWARD = "report_reward"
    REFERRAL_BONUS = "referral_bonus"
    REFERRAL_WELCOME = "referral_welcome"
    REFERRAL_MILESTONE = "referral_milestone"
    STREAK_BONUS = "streak_bonus"
    TIER_MONTHLY_BONUS = "tier_monthly_bonus"
    MARKETPLACE_SHARE = "marketplace_share"
    WITHDRAWAL_DEBIT = "withdrawal_debit"
    WITHDRAWAL_REVERSAL = "withdrawal_reversal"
    WITHDRAWAL_SETTLEMENT = "withdrawal_settlement"


EARNING_KINDS = frozenset({
    TransactionKind.REPORT_REWARD,
    TransactionKind.REFERRAL_BONUS,
    TransactionKind.REFERRAL_WELCOME,
    TransactionKind.REFERRAL_MILESTONE,
    TransactionKind.STREAK_BONUS,
    TransactionKind.TIER_MONTHLY_BONUS,
    TransactionKind.MARKETPLACE_SHARE,
})

PAYOUT_KINDS = frozenset({
    TransactionKind.WITHDRAWAL_DEBIT,
    TransactionKind.WITHDRAWAL_REVERSAL,
    TransactionKind.WITHDRAWAL_SETTLEMENT,
})


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Tier(str, Enum):
    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"
    PLATINUM = "platinum"
    DIAMOND = "diamond"


class ReferralStatus(str, Enum):
    PENDING = "pending"
    QUALIFIED = "qualified"
    PAID = "paid"
    CANCELLED = "cancelled"


class LeaderboardPeriod(str, Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    ALL_TIME = "all_time"


class PayoutMethod(str, Enum):
    PAYPAL = "paypal"
    BANK = "bank"
    CRYPTO = "crypto"
    GIFT_CARD = "gift_card"


class PayoutStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    REVERSED = "reversed"


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

class CreditTransaction(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    user_id: str = Field(..., min_length=1)
    amount: int
    kind: TransactionKind
    related_entity: Optional[str] = None
    created_at: UtcDatetime = Field(default_factory=utcnow)
    description: str = ""
    metadata: dict = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True, from_attributes=True)

    @model_validator(mode="after")
    def _check_sign(self) -> "CreditTransaction":
        if self.kind in EARNING_KINDS and self.amount <= 0:
            raise ValueError(f"{self.kind.value} entries must credit a positive amount")
        if self.kind == TransactionKind.WITHDRAWAL_DEBIT and self.amount >= 0:
            raise ValueError("withdrawal_debit entries must carry a negative amount")
        if self.kind == TransactionKind.WITHDRAWAL_REVERSAL and self.amount <= 0:
            raise ValueError("withdrawal_reversal entries must restore a positive amount")
        if self.kind == TransactionKind.WITHDRAWAL_SETTLEMENT and self.amount != 0:
            raise ValueError("withdrawal_settlement entries carry no amount")
        if self.kind in PAYOUT_KINDS and not self.related_entity:
            raise ValueError(f"{self.kind.value} entries must reference a payout")
        return self

    @property
    def is_earning(self) -> bool:
        return self.kind in EARNING_KINDS


class Balance(BaseModel):
    user_id: str
    available: int = 0
    pending: int = 0
    lifetime: int = 0
    redeemed: int = 0
    total_entries: int = 0
    last_transaction_at: Optional[datetime] = None


class LedgerHistoryResponse(BaseModel):
    user_id: str
    entries: list[CreditTransaction]
    total_count: int
    balance: Balance


# ---------------------------------------------------------------------------
# Derived read models
# ---------------------------------------------------------------------------

class TierAssignment(BaseModel):
    user_id: str
    tier: Tier
    multiplier: Decimal
    monthly_credits: int
    monthly_reports: int
    as_of: datetime
    min_payout: int
    monthly_bonus: int
    next_tier: Optional[Tier] = None
    credits_to_next_tier: Optional[int] = None


class StreakRecord(BaseModel):
    user_id: str
    current_daily_streak: int = 0
    longest_daily_streak: int = 0
    last_report_date: Optional[date] = None

    model_config = ConfigDict(frozen=True)


class ReferralRecord(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    referrer_id: str
    referee_id: str
    status: ReferralStatus = ReferralStatus.PENDING
    progress: int = 0
    required_incidents: int = Field(3, ge=1)
    created_at: UtcDatetime = Field(default_factory=utcnow)
    qualified_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None

    def counts_toward_milestones(self) -> bool:
        return self.status in (ReferralStatus.QUALIFIED, ReferralStatus.PAID)


class ReferralStats(BaseModel):
    referrer_id: str
    total: int = 0
    pending: int = 0
    qualified: int = 0
    paid: int = 0
    cancelled: int = 0
    milestones_paid: list[int] = Field(default_factory=list)
    next_milestone: Optional[int] = None


class PlateIncident(BaseModel):
    report_id: str
    type: str
    severity: Severity
    occurred_at: UtcDatetime
    location_label: Optional[str] = None


class FlaggedPlateAggregate(BaseModel):
    plate: str
    report_count: int
    danger_score: int
    types: set[str]
    first_seen: datetime
    last_seen: datetime
    recent_incidents: list[PlateIncident]
    rank: Optional[int] = None


class ScoreAdjustment(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    plate: str
    report_id: str
    delta: int
    reason: str
    created_at: UtcDatetime = Field(default_factory=utcnow)

    model_config = ConfigDict(frozen=True)


class PlateHistory(BaseModel):
    plate: str
    found: bool
    count: int = 0
    incidents: list[PlateIncident] = Field(default_factory=list)
    is_repeat_offender: bool = False


class PlateStats(BaseModel):
    total_reports: int
    unique_plates: int
    type_breakdown: dict[str, int]


class LeaderboardEntry(BaseModel):
    user_id: str
    rank: int
    total_credits: int
    tier: Tier
    report_count: int = 0
    referral_count: int = 0


class PayoutRequest(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    user_id: str
    amount: int
    method: PayoutMethod
    status: PayoutStatus = PayoutStatus.PENDING
    processing_fee: int = 0
    net_amount: int = 0
    tier: Tier
    created_at: UtcDatetime = Field(default_factory=utcnow)
    paid_at: Optional[datetime] = None
    reversed_at: Optional[datetime] = None
    transaction_ref: Optional[str] = None
    failure_reason: Optional[str] = None

    def can_reverse(self) -> bool:
        return self.status == PayoutStatus.PENDING

    def can_complete(self) -> bool:
        return self.status == PayoutStatus.PENDING


# ---------------------------------------------------------------------------
# Inbound events
# ---------------------------------------------------------------------------

class _Event(BaseModel):
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)


class ReportSubmitted(_Event):
    event: Literal["report_submitted"] = "report_submitted"
    report_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    severity: Severity = Severity.MEDIUM
    occurred_at: UtcDatetime = Field(default_factory=utcnow)
    plate: Optional[str] = None
    location_label: Optional[str] = None
    has_video: bool = False
    has_gps: bool = False

    model_config = ConfigDict(
        frozen=True,
        str_strip_whitespace=True,
        json_schema_extra={
            "example": {
                "event": "report_submitted",
                "report_id": "inc-20240611-0042",
                "user_id": "user-123",
                "type": "dangerous_driving",
                "severity": "critical",
                "occurred_at": "2024-06-11T08:15:00Z",
                "plate": "ABC-1234",
                "location_label": "I-95 N exit 12",
                "has_video": True,
                "has_gps": True,
            }
        },
    )


class ReportDeleted(_Event):
    event: Literal["report_deleted"] = "report_deleted"
    report_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    plate: Optional[str] = None
    reason: str = "report deleted"


class ReferralCreated(_Event):
    event: Literal["referral_created"] = "referral_created"
    referrer_id: str = Field(..., min_length=1)
    referee_id: str = Field(..., min_length=1)
    required_incidents: Optional[int] = Field(None, ge=1)
    created_at: UtcDatetime = Field(default_factory=utcnow)


class MarketplaceShare(_Event):
    event: Literal["marketplace_share"] = "marketplace_share"
    sale_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    amount: int = Field(..., gt=0)
    dataset_name: Optional[str] = None
    occurred_at: UtcDatetime = Field(default_factory=utcnow)


class WithdrawalRequested(_Event):
    event: Literal["withdrawal_requested"] = "withdrawal_requested"
    user_id: str = Field(..., min_length=1)
    amount: int = Field(..., gt=0)
    method: PayoutMethod
    requested_at: UtcDatetime = Field(default_factory=utcnow)


EngineEvent = Annotated[
    Union[ReportSubmitted, ReportDeleted, ReferralCreated, MarketplaceShare, WithdrawalRequested],
    Field(discriminator="event"),
]


# ---------------------------------------------------------------------------
# Request / response bodies
# ---------------------------------------------------------------------------

class RefereeActivityRequest(BaseModel):
    incident_count: int = Field(..., ge=0)


class CancelReferralRequest(BaseModel):
    reason: str = Field(..., description="Reason for cancellation")


class ReversePayoutRequest(BaseModel):
    reason: str = Field(..., description="Why the external payment failed")


class CompletePayoutRequest(BaseModel):
    transaction_ref: Optional[str] = None


class ReportOutcome(BaseModel):
    transaction: CreditTransaction
    tier: TierAssignment
    streak: StreakRecord
    streak_bonus: Optional[CreditTransaction] = None
    plate: Optional[FlaggedPlateAggregate] = None
    referral: Optional[ReferralRecord] = None
    message: str
