"""
Configuration settings for the zen mode engine.

Uses Pydantic Settings for type-safe configuration with environment variable
loading (prefix ``ZEN_``). The scheduler's tick interval and the policy's
minimum window are independent values.
"""
from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import FatalConfigurationError


class Settings(BaseSettings):
    """
    Engine settings loaded from environment variables.

    Attributes:
        tick_interval_seconds: How often the monitoring scheduler wakes up
        policy_window_seconds: Minimum time since last order before acting again
        order_ttl_seconds: Expiration horizon applied to every new order
        fee_numerator: Numerator of the integer spread applied to making amount
        fee_denominator: Denominator of the integer spread
        signer_secret: Key material for the HMAC order signer
    """

    model_config = SettingsConfigDict(
        env_prefix="ZEN_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    tick_interval_seconds: float = Field(default=30.0, gt=0, description="Scheduler cadence")
    policy_window_seconds: float = Field(default=300.0, ge=0, description="Minimum interval between orders")
    order_ttl_seconds: int = Field(default=86_400, description="Order expiration horizon")

    fee_numerator: int = Field(default=100, description="takingAmount = making * num // den")
    fee_denominator: int = Field(default=99)
    chain_id: int = Field(default=8453, description="Chain the orders are signed for")

    max_concurrent_enrollments: int = Field(default=16, ge=1)

    oracle_timeout_seconds: float = Field(default=10.0, gt=0)
    signer_timeout_seconds: float = Field(default=5.0, gt=0)
    repository_timeout_seconds: float = Field(default=5.0, gt=0)
    submit_timeout_seconds: float = Field(default=60.0, gt=0)

    breaker_fail_threshold: int = Field(default=5, ge=1)
    breaker_cooldown_seconds: float = Field(default=60.0, ge=0)

    signer_secret: str = Field(default="", description="HMAC key for signing orders")
    signer_address: str = Field(default="", description="Address of the engine wallet")

    storage_backend: Literal["memory", "sqlite"] = "sqlite"
    db_path: str = Field(default="./data/zen_trader.db")

    oracle_url: Optional[str] = Field(default=None, description="HTTP market/balance oracle")
    venue_url: Optional[str] = Field(default=None, description="HTTP execution venue")

    log_level: str = Field(default="INFO")
    journal_dir: Optional[str] = Field(default="./logs/zen_trader")
    service_port: int = Field(default=8001)

    @field_validator("order_ttl_seconds", "fee_numerator", "fee_denominator")
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    def require_signer(self) -> str:
        """Return the signer secret or fail before monitoring starts."""
        if not self.signer_secret:
            raise FatalConfigurationError(
                "ZEN_SIGNER_SECRET is not set; refusing to start zen mode monitoring"
            )
        return self.signer_secret


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
