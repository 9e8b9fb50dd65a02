import logging
from typing import Optional
from uuid import UUID

from fastapi import FastAPI, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware

from .config import configure_logging, get_settings
from .errors import (
    BelowMinimumError,
    DuplicateEntryError,
    InsufficientBalanceError,
    InvalidEventError,
    InvalidStateTransitionError,
    RecordNotFoundError,
    ScoringEngineError,
)
from .models import (
    Balance,
    CancelReferralRequest,
    CompletePayoutRequest,
    CreditTransaction,
    FlaggedPlateAggregate,
    LeaderboardEntry,
    LeaderboardPeriod,
    LedgerHistoryResponse,
    MarketplaceShare,
    PayoutRequest,
    PlateHistory,
    PlateStats,
    RefereeActivityRequest,
    ReferralCreated,
    ReferralRecord,
    ReferralStats,
    ReportDeleted,
    ReportOutcome,
    ReportSubmitted,
    ReversePayoutRequest,
    ScoreAdjustment,
    StreakRecord,
    TierAssignment,
    WithdrawalRequested,
)
from .service import ScoringEngine

logger = logging.getLogger(__name__)

settings = get_settings()
configure_logging(settings)

app = FastAPI(
    title="Road Credits Scoring API",
    description="Credit ledger, tiers, leaderboards and plate danger scores for incident reporting",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

engine = ScoringEngine(settings)

_STATUS_BY_ERROR = (
    (DuplicateEntryError, status.HTTP_409_CONFLICT),
    (InsufficientBalanceError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (BelowMinimumError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (RecordNotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidStateTransitionError, status.HTTP_400_BAD_REQUEST),
    (InvalidEventError, status.HTTP_400_BAD_REQUEST),
)


def _http_error(error: ScoringEngineError) -> HTTPException:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=error.user_message)
    logger.error("Internal scoring error: %s", error)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=error.user_message)


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "road-credits-scoring"}


@app.post("/reports", response_model=ReportOutcome, status_code=status.HTTP_201_CREATED, tags=["Reports"])
def submit_report(event: ReportSubmitted) -> ReportOutcome:
    try:
        return engine.submit_report(event)
    except ScoringEngineError as e:
        raise _http_error(e)


@app.post("/reports/{report_id}/delete", response_model=Optional[ScoreAdjustment], tags=["Reports"])
def delete_report(report_id: str, user_id: str, plate: Optional[str] = None) -> Optional[ScoreAdjustment]:
    try:
        return engine.delete_report(ReportDeleted(report_id=report_id, user_id=user_id, plate=plate))
    except ScoringEngineError as e:
        raise _http_error(e)


@app.post("/referrals", response_model=ReferralRecord, status_code=status.HTTP_201_CREATED, tags=["Referrals"])
def create_referral(event: ReferralCreated) -> ReferralRecord:
    try:
        return engine.create_referral(event)
    except ScoringEngineError as e:
        raise _http_error(e)


@app.post("/referrals/{referral_id}/activity", response_model=ReferralRecord, tags=["Referrals"])
def record_referee_activity(referral_id: UUID, request: RefereeActivityRequest) -> ReferralRecord:
    try:
        return engine.record_referee_activity(referral_id, request.incident_count)
    except ScoringEngineError as e:
        raise _http_error(e)


@app.post("/referrals/{referral_id}/cancel", response_model=ReferralRecord, tags=["Referrals"])
def cancel_referral(referral_id: UUID, request: CancelReferralRequest) -> ReferralRecord:
    try:
        return engine.referrals.cancel_referral(referral_id, request.reason)
    except ScoringEngineError as e:
        raise _http_error(e)


@app.post("/marketplace/shares", response_model=CreditTransaction, status_code=status.HTTP_201_CREATED, tags=["Marketplace"])
def record_marketplace_share(event: MarketplaceShare) -> CreditTransaction:
    try:
        return engine.record_marketplace_share(event)
    except ScoringEngineError as e:
        raise _http_error(e)


@app.get("/users/{user_id}/balance", response_model=Balance, tags=["Users"])
def get_balance(user_id: str) -> Balance:
    try:
        return engine.get_balance(user_id)
    except ScoringEngineError as e:
        raise _http_error(e)


@app.get("/users/{user_id}/tier", response_model=TierAssignment, tags=["Users"])
def get_tier(user_id: str) -> TierAssignment:
    return engine.get_tier(user_id)


@app.get("/users/{user_id}/streak", response_model=StreakRecord, tags=["Users"])
def get_streak(user_id: str) -> StreakRecord:
    return engine.get_streak(user_id)


@app.get("/users/{user_id}/history", response_model=LedgerHistoryResponse, tags=["Users"])
def get_history(
    user_id: str,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
) -> LedgerHistoryResponse:
    try:
        return engine.get_history(user_id, limit, offset)
    except ScoringEngineError as e:
        raise _http_error(e)


@app.get("/users/{user_id}/referrals", response_model=ReferralStats, tags=["Users"])
def get_referral_stats(user_id: str) -> ReferralStats:
    return engine.get_referral_stats(user_id)


@app.get("/users/{user_id}/rank", response_model=LeaderboardEntry, tags=["Leaderboard"])
def get_rank(user_id: str, period: LeaderboardPeriod = LeaderboardPeriod.MONTHLY) -> LeaderboardEntry:
    try:
        return engine.get_rank(user_id, period)
    except ScoringEngineError as e:
        raise _http_error(e)


@app.get("/leaderboard", response_model=list[LeaderboardEntry], tags=["Leaderboard"])
def get_leaderboard(
    period: LeaderboardPeriod = LeaderboardPeriod.MONTHLY,
    limit: int = Query(50, ge=1, le=500),
) -> list[LeaderboardEntry]:
    return engine.get_leaderboard(period, limit)


@app.get("/plates/flagged", response_model=list[FlaggedPlateAggregate], tags=["Plates"])
def get_flagged_plates(
    type: Optional[str] = None,
    limit: int = Query(20, ge=1, le=500),
) -> list[FlaggedPlateAggregate]:
    return engine.get_flagged_plates(type, limit)


@app.get("/plates/search", response_model=list[FlaggedPlateAggregate], tags=["Plates"])
def search_plate(q: str) -> list[FlaggedPlateAggregate]:
    try:
        return engine.search_plate(q)
    except ScoringEngineError as e:
        raise _http_error(e)


@app.get("/plates/stats", response_model=PlateStats, tags=["Plates"])
def get_plate_stats() -> PlateStats:
    return engine.plates.stats()


@app.get("/plates/{plate}", response_model=PlateHistory, tags=["Plates"])
def get_plate_history(plate: str) -> PlateHistory:
    try:
        return engine.get_plate_history(plate)
    except ScoringEngineError as e:
        raise _http_error(e)


@app.post("/payouts", response_model=PayoutRequest, status_code=status.HTTP_201_CREATED, tags=["Payouts"])
def authorize_payout(event: WithdrawalRequested) -> PayoutRequest:
    try:
        return engine.request_withdrawal(event)
    except ScoringEngineError as e:
        raise _http_error(e)


@app.post("/payouts/{payout_id}/reverse", response_model=PayoutRequest, tags=["Payouts"])
def reverse_payout(payout_id: UUID, request: ReversePayoutRequest) -> PayoutRequest:
    try:
        return engine.reverse_payout(payout_id, request.reason)
    except ScoringEngineError as e:
        raise _http_error(e)


@app.post("/payouts/{payout_id}/complete", response_model=PayoutRequest, tags=["Payouts"])
def complete_payout(payout_id: UUID, request: CompletePayoutRequest) -> PayoutRequest:
    try:
        return engine.complete_payout(payout_id, request.transaction_ref)
    except ScoringEngineError as e:
        raise _http_error(e)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
