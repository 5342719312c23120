"""Central configuration for the FlashRoute engine and its HTTP service."""

from __future__ import annotations

from decimal import Decimal
from pathlib import Path

from pydantic import (
    BaseModel,
    Field,
    NonNegativeInt,
    PositiveFloat,
    PositiveInt,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from execution.rate_limit import RateLimitPolicy
from execution.risk import RiskParameters

__all__ = [
    "CircuitBreakerSettings",
    "EngineSettings",
    "RateLimitSettings",
    "RiskSettings",
]


class RiskSettings(BaseModel):
    """Global risk limits applied at admission and settlement."""

    max_exposure_per_token: Decimal = Field(
        Decimal("1000"), ge=0, description="Cap on cumulative borrowed amount per base token."
    )
    max_exposure_per_strategy: Decimal = Field(
        Decimal("5000"), ge=0, description="Cap on cumulative borrowed amount per strategy."
    )
    min_profit_threshold: Decimal = Field(
        Decimal("0.1"), ge=0, description="Minimum realised profit in base-token units."
    )
    max_gas_price_wei: NonNegativeInt = Field(
        100 * 10**9, description="Network gas price ceiling in wei."
    )
    max_slippage_bps: NonNegativeInt = Field(
        200, le=10_000, description="Realised slippage ceiling per hop and in aggregate."
    )
    max_block_delay: NonNegativeInt = Field(
        3, description="Oldest acceptable quote, in blocks behind the chain head."
    )
    max_volatility_score: NonNegativeInt = Field(
        10_000, le=10_000, description="Highest token volatility score a route may touch."
    )

    def to_parameters(self) -> RiskParameters:
        return RiskParameters(
            max_exposure_per_token=self.max_exposure_per_token,
            max_exposure_per_strategy=self.max_exposure_per_strategy,
            min_profit_threshold=self.min_profit_threshold,
            max_gas_price_wei=self.max_gas_price_wei,
            max_slippage_bps=self.max_slippage_bps,
            max_block_delay=self.max_block_delay,
            max_volatility_score=self.max_volatility_score,
        )


class CircuitBreakerSettings(BaseModel):
    failure_threshold: PositiveInt = Field(
        5, description="Failures within the window that open the breaker."
    )
    window_seconds: PositiveFloat = Field(
        300.0, description="Length of the sliding failure window."
    )
    recovery_timeout_seconds: PositiveFloat = Field(
        60.0, description="Time an open breaker waits before admitting a trial attempt."
    )
    state_path: Path | None = Field(
        default=None,
        description=(
            "Optional SQLite file persisting the emergency pause so it survives restarts."
        ),
    )


class RateLimitSettings(BaseModel):
    """Sliding window request budgets; a zero maximum disables the limit."""

    per_caller_max_requests: NonNegativeInt = 30
    per_caller_window_seconds: PositiveFloat = 60.0
    global_max_requests: NonNegativeInt = 240
    global_window_seconds: PositiveFloat = 60.0

    def caller_policy(self) -> RateLimitPolicy:
        return RateLimitPolicy(self.per_caller_max_requests, self.per_caller_window_seconds)

    def global_policy(self) -> RateLimitPolicy:
        return RateLimitPolicy(self.global_max_requests, self.global_window_seconds)


class EngineSettings(BaseSettings):
    """Top-level settings, read from ``FLASHROUTE_*`` environment variables.

    Nested sections use a double underscore, e.g.
    ``FLASHROUTE_RISK__MAX_SLIPPAGE_BPS=150``.
    """

    risk: RiskSettings = Field(default_factory=RiskSettings)
    circuit_breaker: CircuitBreakerSettings = Field(default_factory=CircuitBreakerSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)

    audit_path: Path = Field(
        Path("observability/audit/flashroute.jsonl"),
        description="Append-only JSONL audit trail.",
    )
    access_policy_path: Path | None = Field(
        default=None,
        description="YAML file with role definitions and subject grants.",
    )
    admin_subjects: list[str] = Field(
        default_factory=lambda: ["treasury-admin"],
        description="Subjects granted the admin role at start-up.",
    )
    engine_account: str = Field("engine", min_length=1)
    treasury_account: str = Field("treasury", min_length=1)
    max_batch_size: PositiveInt = Field(10, le=100)
    token_whitelist: list[str] | None = Field(
        default=None,
        description="When set, only these tokens may appear on a route.",
    )
    log_level: str = Field("INFO", description="Root log level.")
    log_json: bool = Field(True, description="Emit JSON log lines.")
    metrics_port: PositiveInt | None = Field(
        default=None,
        description="Expose Prometheus metrics on this port when set.",
    )

    model_config = SettingsConfigDict(
        env_prefix="FLASHROUTE_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        candidate = value.strip().upper()
        if candidate not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unsupported log level: {value}")
        return candidate

    @model_validator(mode="after")
    def _validate_accounts(self) -> "EngineSettings":
        if self.engine_account == self.treasury_account:
            raise ValueError("engine_account and treasury_account must differ")
        return self
