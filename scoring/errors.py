from typing import Optional


class ScoringEngineError(Exception):
    """Base class for every failure the engine reports to its callers.

    ``user_facing`` errors carry a message that can be shown to end users
    as-is; the rest are for operators and should be logged, not displayed.
    """

    user_facing = False
    default_user_message = "The request could not be processed"

    def __init__(self, message: str, user_message: Optional[str] = None):
        super().__init__(message)
        self.user_message = user_message or (message if self.user_facing else self.default_user_message)


class DuplicateEntryError(ScoringEngineError):
    """The event was already applied. Safe to treat as "already processed"."""

    user_facing = True

    def __init__(self, message: str, existing_id: Optional[str] = None):
        super().__init__(message, user_message="This request was already processed")
        self.existing_id = existing_id


class InsufficientBalanceError(ScoringEngineError):
    user_facing = True

    def __init__(self, requested: int, available: int):
        super().__init__(
            f"Requested {requested} credits but only {available} available",
            user_message="Insufficient balance",
        )
        self.requested = requested
        self.available = available


class BelowMinimumError(ScoringEngineError):
    user_facing = True

    def __init__(self, requested: int, minimum: int, tier: str):
        super().__init__(
            f"Payout of {requested} credits is below the {tier} minimum of {minimum}",
            user_message=f"Minimum payout is ${minimum / 100:.2f} for your tier",
        )
        self.requested = requested
        self.minimum = minimum
        self.tier = tier


class StaleStreakUpdateError(ScoringEngineError):
    pass


class InvariantViolationError(ScoringEngineError):
    pass


class RecordNotFoundError(ScoringEngineError):
    user_facing = True


class InvalidStateTransitionError(ScoringEngineError):
    user_facing = True


class InvalidEventError(ScoringEngineError):
    user_facing = True
