"""Application configuration via pydantic-settings.

Reads from .env file or environment variables. All settings are validated
at startup — if a setting is malformed, the engine fails fast with a
clear error message.

Usage:
    from spaza_escrow.config import get_settings
    settings = get_settings()
    print(settings.database_url)
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration for the escrow engine and its adapters."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    app_env: Literal["development", "staging", "production"] = "development"
    app_log_level: str = "INFO"

    # --- Database (SQLAlchemy async) ---
    database_url: str = "sqlite+aiosqlite:///./spaza_escrow.db"
    db_echo_sql: bool = False

    # --- Escrow Defaults ---
    default_currency: str = "ZAR"
    default_duration_days: int = Field(default=30, gt=0)
    release_pin_length: int = Field(default=6, ge=4, le=12)
    # HMAC key for stored PIN digests; set per deployment
    release_pin_secret: SecretStr = SecretStr("")

    # --- Trust Ledger ---
    trust_score_min: Decimal = Decimal("0")
    trust_score_max: Decimal = Decimal("100")
    trust_score_default: Decimal = Decimal("50")
    trust_success_delta: Decimal = Decimal("2")
    trust_dispute_penalty: Decimal = Decimal("10")
    trust_penalty_expiry_days: int = Field(default=90, gt=0)

    # --- Dispute Arbitration ---
    # Comma-separated arbitrator identifiers used by the fixed roster policy.
    arbitrator_roster: str = ""
    dispute_panel_size: int | None = Field(default=None, gt=0)
    dispute_quorum: int | None = Field(default=None, gt=0)
    dispute_grace_period_hours: int = Field(default=0, ge=0)

    # --- Concurrency ---
    record_lock_timeout_seconds: float = Field(default=5.0, gt=0)

    @model_validator(mode="after")
    def _check_trust_bounds(self) -> Settings:
        if self.trust_score_min >= self.trust_score_max:
            raise ValueError("trust_score_min must be lower than trust_score_max")
        if not self.trust_score_min <= self.trust_score_default <= self.trust_score_max:
            raise ValueError("trust_score_default must lie within the trust score bounds")
        return self

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def arbitrator_roster_list(self) -> list[str]:
        """Parse the comma-separated roster into a list."""
        if not self.arbitrator_roster:
            return []
        return [a.strip() for a in self.arbitrator_roster.split(",") if a.strip()]

    @property
    def dispute_grace_period(self) -> timedelta:
        return timedelta(hours=self.dispute_grace_period_hours)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached singleton of the application settings."""
    return Settings()
