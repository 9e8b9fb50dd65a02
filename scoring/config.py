"""
Engine configuration.

Values come from ``SCORING_*`` environment variables or a local ``.env`` file.
"""

import logging
from decimal import Decimal
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


class EngineSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="SCORING_", env_file=".env", extra="ignore")

    environment: str = "development"
    log_level: str = "INFO"
    cors_allow_origins: list[str] = Field(default_factory=lambda: ["*"])

    default_time_zone: str = "UTC"

    # Danger scores
    danger_report_weight: int = Field(10, ge=0)
    recent_incident_limit: int = Field(10, ge=1)

    # Report rewards
    default_report_credits: int = Field(5, ge=1)

    # Referrals
    referral_required_incidents: int = Field(3, ge=1)
    referrer_bonus: int = Field(500, gt=0)
    referee_welcome_bonus: int = Field(250, gt=0)

    # Payouts
    payout_fee_rate: Decimal = Field(Decimal("0.02"), ge=0, lt=1)

    leaderboard_default_limit: int = Field(50, ge=1)

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        return value.upper()


@lru_cache
def get_settings() -> EngineSettings:
    return EngineSettings()


def configure_logging(settings: EngineSettings) -> None:
    root = logging.getLogger("scoring")
    root.setLevel(settings.log_level)
    if not root.handlers:
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(console)
