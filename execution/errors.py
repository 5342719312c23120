# SPDX-License-Identifier: MIT
"""Exception hierarchy for arbitrage admission, execution and settlement.

Every error carries a ``details`` mapping (hop index, limit name, expected vs.
actual values) so operators can adjust and resubmit without digging through
logs.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Mapping

__all__ = [
    "AccessDenied",
    "AdmissionRejected",
    "ArbitrageError",
    "ChainStateUnavailable",
    "CircuitOpen",
    "ExecutionFailed",
    "ExposureLimitExceeded",
    "GasLimitExceeded",
    "GasPriceTooHigh",
    "InvalidRequest",
    "InvalidStrategy",
    "ProfitInsufficient",
    "RateLimited",
    "ReentrantCall",
    "RepaymentShortfall",
    "SlippageExceeded",
    "StaleQuote",
    "StrategyAlreadyExists",
    "StrategyCooldown",
    "StrategyInactive",
    "SwapFailed",
    "TokenNotAllowed",
    "UnknownStrategy",
    "UnknownVenue",
    "VolatilityTooHigh",
]


class ArbitrageError(RuntimeError):
    """Base exception for any attempt that did not commit."""

    kind = "arbitrage_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.details: Mapping[str, Any] = details


class AdmissionRejected(ArbitrageError):
    """Raised before any funds move; the caller may retry later."""

    kind = "admission_rejected"


class InvalidRequest(AdmissionRejected):
    """The request can never settle as submitted (empty route, currency mismatch...)."""

    kind = "invalid_request"


class CircuitOpen(AdmissionRejected):
    """The circuit breaker is open or an emergency stop is in force."""

    kind = "circuit_open"


class ExposureLimitExceeded(AdmissionRejected):
    """Token or strategy exposure would exceed its configured cap."""

    kind = "exposure_limit"


class GasPriceTooHigh(AdmissionRejected):
    """Network gas price is above the configured ceiling."""

    kind = "gas_price"


class StaleQuote(AdmissionRejected):
    """The route was priced against a block older than the allowed delay."""

    kind = "stale_quote"


class ChainStateUnavailable(AdmissionRejected):
    """Gas price or block height could not be read; nothing was reserved."""

    kind = "chain_state_unavailable"


class VolatilityTooHigh(AdmissionRejected):
    """A token on the route is flagged as too volatile to trade right now."""

    kind = "volatility"


class RateLimited(AdmissionRejected):
    """The caller (or the engine as a whole) exceeded its request budget."""

    kind = "rate_limited"


class TokenNotAllowed(AdmissionRejected):
    """A token on the route is blacklisted or missing from the whitelist."""

    kind = "token_not_allowed"


class StrategyInactive(AdmissionRejected):
    """The proposing strategy has been deactivated."""

    kind = "strategy_inactive"


class StrategyCooldown(AdmissionRejected):
    """The proposing strategy is still inside its cooldown period."""

    kind = "strategy_cooldown"


class ReentrantCall(AdmissionRejected):
    """An attempt tried to start while another was running on the same thread."""

    kind = "reentrant_call"


class ExecutionFailed(ArbitrageError):
    """A hop's external call failed; the attempt is discarded."""

    kind = "execution_failed"


class SwapFailed(ExecutionFailed):
    """Normalised venue failure for a single hop."""

    kind = "swap_failed"

    def __init__(self, step_index: int, venue: str, reason: str) -> None:
        super().__init__(
            f"Swap failed at hop {step_index} on {venue}: {reason}",
            step_index=step_index,
            venue=venue,
            reason=reason,
        )
        self.step_index = step_index
        self.venue = venue


class UnknownVenue(ExecutionFailed):
    """No adapter is registered for a hop's venue."""

    kind = "unknown_venue"


class GasLimitExceeded(ExecutionFailed):
    """Cumulative gas used by the route exceeded the strategy's gas limit."""

    kind = "gas_limit"


class SlippageExceeded(ArbitrageError):
    """A hop (or the route in aggregate) produced less than its floor allows."""

    kind = "slippage_exceeded"

    def __init__(
        self,
        step_index: int | None,
        expected_minimum: Decimal,
        actual: Decimal,
        *,
        message: str | None = None,
        **details: Any,
    ) -> None:
        location = "route aggregate" if step_index is None else f"hop {step_index}"
        super().__init__(
            message
            or f"Slippage floor missed at {location}: expected >= {expected_minimum}, got {actual}",
            step_index=step_index,
            expected_minimum=expected_minimum,
            actual=actual,
            **details,
        )
        self.step_index = step_index
        self.expected_minimum = expected_minimum
        self.actual = actual


class ProfitInsufficient(ArbitrageError):
    """Every hop succeeded but the realised profit is below the threshold."""

    kind = "profit_insufficient"


class RepaymentShortfall(ArbitrageError):
    """The flash loan could not be repaid exactly; indicates a logic or venue bug."""

    kind = "repayment_shortfall"


class AccessDenied(PermissionError):
    """The caller lacks the role required for an operation."""

    def __init__(self, subject: str, action: str, required_roles: tuple[str, ...]) -> None:
        roles = ", ".join(required_roles) or "none"
        super().__init__(f"{subject} may not {action}; requires one of: {roles}")
        self.subject = subject
        self.action = action
        self.required_roles = required_roles


class StrategyAlreadyExists(ValueError):
    """A strategy with the same identifier is already registered."""


class UnknownStrategy(KeyError):
    """No strategy is registered under the given identifier."""


class InvalidStrategy(TypeError):
    """The decision module does not implement the strategy contract."""
