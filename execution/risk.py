# SPDX-License-Identifier: MIT
"""Admission and settlement risk controls for flash-loan arbitrage.

:class:`RiskManager` gates every attempt twice. Before any funds move it checks
the circuit breaker, token allow/deny lists, network gas price, quote staleness
and exposure caps, and reserves the requested exposure in the same critical
section. After the route has run it verifies realised profit and slippage
against the strictest applicable thresholds.

Every decision is logged, counted and written to the execution audit trail.
"""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Any, Callable, Iterable, Mapping, MutableMapping

from core.utils.logging import get_logger
from core.utils.metrics import MetricsCollector, get_metrics_collector
from domain.arbitrage import ArbitrageRequest, GlobalMetrics, RouteOutcome, to_decimal
from interfaces.execution import ChainState

from .audit import ExecutionAuditLogger, get_execution_audit_logger
from .circuit_breaker import CircuitBreaker
from .errors import (
    AdmissionRejected,
    ChainStateUnavailable,
    ExposureLimitExceeded,
    GasPriceTooHigh,
    InvalidRequest,
    ProfitInsufficient,
    SlippageExceeded,
    StaleQuote,
    TokenNotAllowed,
    VolatilityTooHigh,
)

__all__ = [
    "ExposureReservation",
    "RiskManager",
    "RiskParameters",
    "RiskState",
    "TokenRiskProfile",
]

_ZERO = Decimal("0")
_BPS = Decimal("10000")
_GWEI = 10**9


@dataclass(slots=True, frozen=True)
class RiskParameters:
    """Global risk limits, replaced only as a whole.

    Attributes:
        max_exposure_per_token: Cap on cumulative borrowed amount per base token.
        max_exposure_per_strategy: Cap on cumulative borrowed amount per strategy.
        min_profit_threshold: Floor on realised profit, in base-token units.
        max_gas_price_wei: Network gas price ceiling for admission.
        max_slippage_bps: Realised slippage ceiling per hop and in aggregate.
        max_block_delay: Oldest acceptable quote, in blocks behind the head.
        max_volatility_score: Highest token volatility score a route may touch;
            ``10000`` admits every token.
    """

    max_exposure_per_token: Decimal = Decimal("1000")
    max_exposure_per_strategy: Decimal = Decimal("5000")
    min_profit_threshold: Decimal = Decimal("0.1")
    max_gas_price_wei: int = 100 * _GWEI
    max_slippage_bps: int = 200
    max_block_delay: int = 3
    max_volatility_score: int = 10_000

    def __post_init__(self) -> None:
        for name in ("max_exposure_per_token", "max_exposure_per_strategy", "min_profit_threshold"):
            value = to_decimal(getattr(self, name), name=name)
            if value < _ZERO:
                raise ValueError(f"{name} must be non-negative")
            object.__setattr__(self, name, value)
        for name in (
            "max_gas_price_wei",
            "max_slippage_bps",
            "max_block_delay",
            "max_volatility_score",
        ):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise TypeError(f"{name} must be an integer")
            if value < 0:
                raise ValueError(f"{name} must be non-negative")
        if self.max_slippage_bps > 10_000:
            raise ValueError("max_slippage_bps must not exceed 10000")
        if self.max_volatility_score > 10_000:
            raise ValueError("max_volatility_score must not exceed 10000")

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "RiskParameters":
        known = {name for name in cls.__dataclass_fields__}
        unknown = set(payload) - known
        if unknown:
            raise ValueError(f"Unknown risk parameters: {', '.join(sorted(unknown))}")
        return cls(**dict(payload))

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_exposure_per_token": str(self.max_exposure_per_token),
            "max_exposure_per_strategy": str(self.max_exposure_per_strategy),
            "min_profit_threshold": str(self.min_profit_threshold),
            "max_gas_price_wei": self.max_gas_price_wei,
            "max_slippage_bps": self.max_slippage_bps,
            "max_block_delay": self.max_block_delay,
            "max_volatility_score": self.max_volatility_score,
        }


@dataclass(slots=True, frozen=True)
class TokenRiskProfile:
    """Per-token overrides; ``None`` fields fall back to :class:`RiskParameters`."""

    max_exposure: Decimal | None = None
    max_slippage_bps: int | None = None
    blacklisted: bool = False
    volatility_score: int = 0

    def __post_init__(self) -> None:
        if self.max_exposure is not None:
            exposure = to_decimal(self.max_exposure, name="max_exposure")
            if exposure < _ZERO:
                raise ValueError("max_exposure must be non-negative")
            object.__setattr__(self, "max_exposure", exposure)
        if self.max_slippage_bps is not None and not 0 <= self.max_slippage_bps <= 10_000:
            raise ValueError("max_slippage_bps must be within [0, 10000]")
        if not 0 <= self.volatility_score <= 10_000:
            raise ValueError("volatility_score must be within [0, 10000]")

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        if self.max_exposure is not None:
            payload["max_exposure"] = str(self.max_exposure)
        return payload


@dataclass(slots=True, frozen=True)
class ExposureReservation:
    """Exposure held for an in-flight attempt until it commits or is released."""

    request_id: str
    token: str
    amount: Decimal
    strategy_id: str | None = None


@dataclass(slots=True)
class _Counters:
    total_profit: Decimal = _ZERO
    total_gas_used: int = 0
    successful_arbitrages: int = 0
    failed_arbitrages: int = 0


class RiskState:
    """Mutable exposure totals and global counters behind a single lock."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._token_committed: MutableMapping[str, Decimal] = {}
        self._strategy_committed: MutableMapping[str, Decimal] = {}
        self._reservations: dict[str, ExposureReservation] = {}
        self._counters = _Counters()

    def token_exposure(self, token: str) -> Decimal:
        """Committed plus reserved exposure for ``token``."""

        with self._lock:
            reserved = sum(
                (r.amount for r in self._reservations.values() if r.token == token), _ZERO
            )
            return self._token_committed.get(token, _ZERO) + reserved

    def strategy_exposure(self, strategy_id: str) -> Decimal:
        with self._lock:
            reserved = sum(
                (r.amount for r in self._reservations.values() if r.strategy_id == strategy_id),
                _ZERO,
            )
            return self._strategy_committed.get(strategy_id, _ZERO) + reserved

    def reserve(
        self,
        reservation: ExposureReservation,
        *,
        token_cap: Decimal,
        strategy_cap: Decimal,
    ) -> None:
        """Check both caps and hold ``reservation`` atomically."""

        with self._lock:
            if reservation.request_id in self._reservations:
                raise InvalidRequest(
                    f"Request {reservation.request_id} is already in flight",
                    request_id=reservation.request_id,
                )
            projected = self.token_exposure(reservation.token) + reservation.amount
            if projected > token_cap:
                raise ExposureLimitExceeded(
                    f"Exposure cap exceeded for {reservation.token}: {projected} > {token_cap}",
                    scope="token",
                    token=reservation.token,
                    projected=projected,
                    limit=token_cap,
                )
            if reservation.strategy_id is not None:
                projected_strategy = (
                    self.strategy_exposure(reservation.strategy_id) + reservation.amount
                )
                if projected_strategy > strategy_cap:
                    raise ExposureLimitExceeded(
                        f"Exposure cap exceeded for strategy {reservation.strategy_id}: "
                        f"{projected_strategy} > {strategy_cap}",
                        scope="strategy",
                        strategy_id=reservation.strategy_id,
                        projected=projected_strategy,
                        limit=strategy_cap,
                    )
            self._reservations[reservation.request_id] = reservation

    def commit(self, reservation: ExposureReservation) -> bool:
        with self._lock:
            if self._reservations.pop(reservation.request_id, None) is None:
                return False
            token = reservation.token
            self._token_committed[token] = self._token_committed.get(token, _ZERO) + reservation.amount
            if reservation.strategy_id is not None:
                sid = reservation.strategy_id
                self._strategy_committed[sid] = (
                    self._strategy_committed.get(sid, _ZERO) + reservation.amount
                )
            return True

    def release(self, reservation: ExposureReservation) -> bool:
        with self._lock:
            return self._reservations.pop(reservation.request_id, None) is not None

    def reset(self, token: str | None = None) -> None:
        """Drop committed exposure for ``token`` (or everything); reservations stay."""

        with self._lock:
            if token is None:
                self._token_committed.clear()
                self._strategy_committed.clear()
            else:
                self._token_committed.pop(token, None)

    def exposures(self) -> dict[str, Decimal]:
        with self._lock:
            tokens = set(self._token_committed) | {r.token for r in self._reservations.values()}
            return {token: self.token_exposure(token) for token in sorted(tokens)}

    def record_success(self, profit: Decimal, gas_used: int) -> None:
        with self._lock:
            self._counters.successful_arbitrages += 1
            self._counters.total_profit += profit
            self._counters.total_gas_used += int(gas_used)

    def record_failure(self) -> None:
        with self._lock:
            self._counters.failed_arbitrages += 1

    def snapshot(self) -> GlobalMetrics:
        with self._lock:
            return GlobalMetrics(
                total_profit=self._counters.total_profit,
                total_gas_used=self._counters.total_gas_used,
                successful_arbitrages=self._counters.successful_arbitrages,
                failed_arbitrages=self._counters.failed_arbitrages,
            )


@dataclass(slots=True)
class _StrategyLimits:
    min_profit: Decimal = _ZERO
    max_slippage_bps: int | None = None


def _strategy_limits(config: Any | None) -> _StrategyLimits:
    if config is None:
        return _StrategyLimits()
    return _StrategyLimits(
        min_profit=getattr(config, "min_profit", _ZERO),
        max_slippage_bps=getattr(config, "max_slippage_bps", None),
    )


class RiskManager:
    """Gate arbitrage attempts against :class:`RiskParameters`.

    ``strategy_config`` arguments accept any object exposing ``min_profit``
    and ``max_slippage_bps`` (normally a
    :class:`strategies.registry.StrategyConfig` snapshot).
    """

    def __init__(
        self,
        params: RiskParameters | None = None,
        *,
        chain_state: ChainState,
        circuit_breaker: CircuitBreaker,
        state: RiskState | None = None,
        token_profiles: Mapping[str, TokenRiskProfile] | None = None,
        token_whitelist: Iterable[str] | None = None,
        metrics: MetricsCollector | None = None,
        audit_logger: ExecutionAuditLogger | None = None,
    ) -> None:
        self._params = params or RiskParameters()
        self._chain = chain_state
        self._breaker = circuit_breaker
        self._state = state or RiskState()
        self._profiles: dict[str, TokenRiskProfile] = dict(token_profiles or {})
        self._whitelist: frozenset[str] | None = (
            frozenset(token_whitelist) if token_whitelist is not None else None
        )
        self._lock = threading.RLock()
        self._logger = get_logger(__name__)
        self._metrics = metrics or get_metrics_collector()
        self._audit = audit_logger or get_execution_audit_logger()

    # -- configuration ------------------------------------------------------
    @property
    def params(self) -> RiskParameters:
        with self._lock:
            return self._params

    @property
    def state(self) -> RiskState:
        return self._state

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._breaker

    def update_risk_params(self, params: RiskParameters) -> RiskParameters:
        """Replace every limit in one step; applying the same value twice is a no-op."""

        if not isinstance(params, RiskParameters):
            raise TypeError("params must be a RiskParameters instance")
        with self._lock:
            previous = self._params
            if previous == params:
                return previous
            self._params = params
        self._logger.info("Risk parameters updated", **params.to_dict())
        self._audit.emit(
            {
                "event": "risk_params_updated",
                "previous": previous.to_dict(),
                "current": params.to_dict(),
            }
        )
        return params

    def set_token_profile(self, token: str, profile: TokenRiskProfile | None) -> None:
        with self._lock:
            if profile is None:
                self._profiles.pop(token, None)
            else:
                self._profiles[token] = profile
        self._audit.emit(
            {
                "event": "token_profile_updated",
                "token": token,
                "profile": None if profile is None else profile.to_dict(),
            }
        )

    def token_profile(self, token: str) -> TokenRiskProfile | None:
        with self._lock:
            return self._profiles.get(token)

    def set_token_whitelist(self, tokens: Iterable[str] | None) -> frozenset[str] | None:
        """Restrict routes to ``tokens``; ``None`` lifts the restriction."""

        with self._lock:
            self._whitelist = frozenset(tokens) if tokens is not None else None
            whitelist = self._whitelist
        self._audit.emit(
            {
                "event": "token_whitelist_updated",
                "tokens": None if whitelist is None else sorted(whitelist),
            }
        )
        return whitelist

    @property
    def token_whitelist(self) -> frozenset[str] | None:
        with self._lock:
            return self._whitelist

    # -- exposure -----------------------------------------------------------
    def commit_exposure(self, reservation: ExposureReservation) -> None:
        if self._state.commit(reservation):
            self._publish_exposure(reservation.token)

    def release_exposure(self, reservation: ExposureReservation) -> None:
        if self._state.release(reservation):
            self._publish_exposure(reservation.token)

    def reset_exposure(self, token: str | None = None) -> dict[str, Decimal]:
        """Start a new exposure period for ``token`` or for every token."""

        affected = [token] if token is not None else list(self._state.exposures())
        self._state.reset(token)
        for name in affected:
            self._publish_exposure(name)
        exposures = self._state.exposures()
        self._logger.warning("Exposure reset", token=token or "*")
        self._audit.emit({"event": "exposure_reset", "token": token})
        return exposures

    def _publish_exposure(self, token: str) -> None:
        self._metrics.set_token_exposure(token, self._state.token_exposure(token))

    def _token_cap(self, token: str, params: RiskParameters) -> Decimal:
        profile = self._profiles.get(token)
        if profile is not None and profile.max_exposure is not None:
            return profile.max_exposure
        return params.max_exposure_per_token

    # -- admission ----------------------------------------------------------
    def validate_before_execution(
        self,
        request: ArbitrageRequest,
        *,
        strategy_config: Any | None = None,
    ) -> ExposureReservation:
        """Admit ``request`` and reserve its exposure, or raise.

        Raises:
            InvalidRequest: The request is structurally unsound.
            CircuitOpen: The breaker is open or an emergency stop is in force.
            TokenNotAllowed: A routed token is blacklisted or not whitelisted.
            VolatilityTooHigh: A routed token's volatility score is above the limit.
            ChainStateUnavailable: Gas price or block height could not be read.
            GasPriceTooHigh: The network gas price is above the ceiling.
            StaleQuote: The quote is older than ``max_block_delay`` blocks.
            ExposureLimitExceeded: A token or strategy cap would be exceeded.
        """

        try:
            problems = request.structural_violations()
            if problems:
                raise InvalidRequest("; ".join(problems), problems=problems)
            self._breaker.before_attempt()
        except AdmissionRejected as exc:
            self._reject(request, exc)
            raise

        try:
            with self._lock:
                params = self._params
                self._check_tokens(request, params)
                token_cap = self._token_cap(request.base_token, params)
            self._check_gas_price(params)
            self._check_staleness(request, params)
            reservation = ExposureReservation(
                request_id=request.request_id,
                token=request.base_token,
                amount=request.borrow_amount,
                strategy_id=request.strategy_id,
            )
            self._state.reserve(
                reservation,
                token_cap=token_cap,
                strategy_cap=params.max_exposure_per_strategy,
            )
        except AdmissionRejected as exc:
            self._breaker.abandon_attempt()
            self._reject(request, exc)
            raise
        except Exception:
            self._breaker.abandon_attempt()
            raise

        self._publish_exposure(reservation.token)
        self._audit.emit(
            {
                "event": "risk_admission",
                "status": "accepted",
                "request_id": request.request_id,
                "base_token": request.base_token,
                "borrow_amount": request.borrow_amount,
                "strategy_id": request.strategy_id,
            }
        )
        return reservation

    def _check_tokens(self, request: ArbitrageRequest, params: RiskParameters) -> None:
        for token in sorted(request.tokens):
            profile = self._profiles.get(token)
            if profile is not None and profile.blacklisted:
                raise TokenNotAllowed(f"Token {token} is blacklisted", token=token)
            if self._whitelist is not None and token not in self._whitelist:
                raise TokenNotAllowed(f"Token {token} is not whitelisted", token=token)
            if profile is not None and profile.volatility_score > params.max_volatility_score:
                raise VolatilityTooHigh(
                    f"Token {token} volatility {profile.volatility_score} exceeds "
                    f"{params.max_volatility_score}",
                    token=token,
                    volatility_score=profile.volatility_score,
                    limit=params.max_volatility_score,
                )

    def _read_chain(self, what: str, read: Callable[[], Any]) -> int:
        try:
            return int(read())
        except Exception as exc:
            raise ChainStateUnavailable(
                f"Could not read {what}: {type(exc).__name__}: {exc}",
                source=what,
                error_type=type(exc).__name__,
            ) from exc

    def _check_gas_price(self, params: RiskParameters) -> None:
        gas_price = self._read_chain("gas price", self._chain.gas_price_wei)
        if gas_price > params.max_gas_price_wei:
            raise GasPriceTooHigh(
                f"Gas price {gas_price} wei exceeds ceiling {params.max_gas_price_wei}",
                gas_price_wei=gas_price,
                limit=params.max_gas_price_wei,
            )

    def _check_staleness(self, request: ArbitrageRequest, params: RiskParameters) -> None:
        if request.quoted_block is None:
            return
        current = self._read_chain("block number", self._chain.block_number)
        delay = current - request.quoted_block
        if delay > params.max_block_delay:
            raise StaleQuote(
                f"Quote from block {request.quoted_block} is {delay} blocks old",
                quoted_block=request.quoted_block,
                current_block=current,
                max_block_delay=params.max_block_delay,
            )

    def _reject(self, request: ArbitrageRequest, exc: AdmissionRejected) -> None:
        self._metrics.record_admission_rejection(exc.kind)
        self._logger.warning(
            "Arbitrage rejected at admission",
            request_id=request.request_id,
            reason=exc.kind,
            error=str(exc),
        )
        self._audit.emit(
            {
                "event": "risk_admission",
                "status": "rejected",
                "request_id": request.request_id,
                "base_token": request.base_token,
                "strategy_id": request.strategy_id,
                "violation_type": exc.kind,
                "reason": str(exc),
            }
        )

    # -- settlement ---------------------------------------------------------
    def profit_threshold(
        self, request: ArbitrageRequest, *, strategy_config: Any | None = None
    ) -> Decimal:
        limits = _strategy_limits(strategy_config)
        return max(request.min_profit, self.params.min_profit_threshold, limits.min_profit)

    def slippage_limit(self, token: str, *, strategy_config: Any | None = None) -> int:
        """Strictest of the global, token and strategy slippage ceilings."""

        candidates = [self.params.max_slippage_bps]
        profile = self.token_profile(token)
        if profile is not None and profile.max_slippage_bps is not None:
            candidates.append(profile.max_slippage_bps)
        limits = _strategy_limits(strategy_config)
        if limits.max_slippage_bps is not None:
            candidates.append(limits.max_slippage_bps)
        return min(candidates)

    def validate_after_execution(
        self,
        request: ArbitrageRequest,
        outcome: RouteOutcome,
        profit: Decimal,
        *,
        strategy_config: Any | None = None,
    ) -> None:
        """Raise unless ``profit`` and realised slippage are within limits."""

        threshold = self.profit_threshold(request, strategy_config=strategy_config)
        if profit < threshold:
            raise ProfitInsufficient(
                f"Profit {profit} is below the required {threshold}",
                profit=profit,
                threshold=threshold,
                final_amount=outcome.final_amount,
            )

        for fill in outcome.fills:
            slippage = fill.slippage_bps
            if slippage is None or fill.expected_amount_out is None:
                continue
            limit = self.slippage_limit(fill.token_out, strategy_config=strategy_config)
            if slippage > limit:
                floor = fill.expected_amount_out * (_BPS - limit) / _BPS
                raise SlippageExceeded(
                    fill.step_index,
                    floor,
                    fill.amount_out,
                    venue=fill.venue,
                    slippage_bps=slippage,
                    limit_bps=limit,
                )

        aggregate = outcome.aggregate_slippage_bps
        if aggregate is not None and outcome.expected_final_amount is not None:
            limit = self.slippage_limit(request.base_token, strategy_config=strategy_config)
            if aggregate > limit:
                floor = outcome.expected_final_amount * (_BPS - limit) / _BPS
                raise SlippageExceeded(
                    None,
                    floor,
                    outcome.final_amount,
                    slippage_bps=aggregate,
                    limit_bps=limit,
                )

    # -- counters -----------------------------------------------------------
    def global_metrics(self) -> GlobalMetrics:
        return self._state.snapshot()
