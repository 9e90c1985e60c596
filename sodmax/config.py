"""
Configuration management using Pydantic Settings.

Values come from SODMAX_* environment variables or a local .env file.
"""

import logging
from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Ledger settings: backend wiring plus the reward economics."""

    model_config = SettingsConfigDict(env_prefix="SODMAX_", env_file=".env", extra="ignore")

    # Backend
    backend: Literal["memory", "supabase"] = "memory"
    supabase_url: Optional[str] = None
    # Service-role key: the ledger functions are not executable by anon users.
    supabase_key: Optional[str] = None
    store_timeout_seconds: float = Field(default=10.0, gt=0)

    # Economics (SOD units, micro-USDT units)
    conversion_threshold: int = 10_000_000
    reward_per_threshold: int = 10_000
    redemption_rate: int = Field(default=1_000, gt=0)
    signup_bonus: int = Field(default=1_000_000, ge=0)
    signup_progress: int = Field(default=1_000_000, ge=0)
    initial_mining_power: int = 10

    # Retry on concurrent-update conflicts
    conflict_retries: int = Field(default=3, ge=1)
    retry_backoff_seconds: float = Field(default=0.05, ge=0)

    transaction_page_size: int = Field(default=20, gt=0)

    # Logging
    log_level: str = "INFO"

    @field_validator("conversion_threshold")
    @classmethod
    def _positive_threshold(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("conversion_threshold must be positive")
        return value

    @field_validator("reward_per_threshold")
    @classmethod
    def _non_negative_reward(cls, value: int) -> int:
        if value < 0:
            raise ValueError("reward_per_threshold must not be negative")
        return value

    @model_validator(mode="after")
    def _consistent(self) -> "Settings":
        if self.backend == "supabase" and not (self.supabase_url and self.supabase_key):
            raise ValueError("supabase backend requires SODMAX_SUPABASE_URL and SODMAX_SUPABASE_KEY")
        if self.signup_progress >= self.conversion_threshold:
            raise ValueError("signup_progress must stay below conversion_threshold")
        return self


@lru_cache()
def get_settings() -> Settings:
    return Settings()


def setup_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=(level or get_settings().log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
