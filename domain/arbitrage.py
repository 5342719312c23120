"""Value objects describing flash-loan arbitrage requests and their outcomes."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Context, Decimal, DefaultContext, InvalidOperation, getcontext
from enum import Enum
from typing import Any, Iterable, Mapping
from uuid import uuid4

# Token amounts routinely carry 18 decimals.
AMOUNT_PRECISION = 36

# Decimal contexts are per thread; threads that have not touched decimal yet
# start from DefaultContext.
DefaultContext.prec = AMOUNT_PRECISION
getcontext().prec = AMOUNT_PRECISION


def amount_context() -> Context:
    """Fresh arithmetic context for token amounts, independent of the caller's thread."""

    return Context(prec=AMOUNT_PRECISION)

_ZERO = Decimal("0")
_BPS = Decimal("10000")


def to_decimal(value: Any, *, name: str) -> Decimal:
    """Coerce ``value`` into a finite :class:`Decimal`.

    Floats are converted through their string representation so that ``0.1``
    becomes ``Decimal("0.1")`` rather than its binary approximation.
    """

    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool):
        raise TypeError(f"{name} must be numeric, not bool")
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(value)
        except InvalidOperation as exc:
            raise ValueError(f"{name} is not a valid decimal: {value!r}") from exc
    elif isinstance(value, float):
        result = Decimal(repr(value))
    else:
        raise TypeError(f"{name} must be numeric, got {type(value).__name__}")
    if not result.is_finite():
        raise ValueError(f"{name} must be finite")
    return result


def _normalise_token(value: str, *, name: str) -> str:
    candidate = (value or "").strip()
    if not candidate:
        raise ValueError(f"{name} must be provided")
    return candidate


class BatchPolicy(str, Enum):
    """How a batch reacts to an individual request failing."""

    FAIL_SOFT = "fail_soft"
    FAIL_FAST = "fail_fast"


@dataclass(slots=True, frozen=True)
class RouteStep:
    """One swap instruction against a single venue.

    ``amount_in`` of zero means "spend whatever the previous hop produced";
    the first hop falls back to the borrowed amount. ``min_amount_out`` is the
    caller's slippage floor for this hop.
    """

    venue: str
    token_in: str
    token_out: str
    amount_in: Decimal = _ZERO
    min_amount_out: Decimal = _ZERO
    path: str = ""
    fee_tier: int = 0
    expected_amount_out: Decimal | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "venue", _normalise_token(self.venue, name="venue"))
        object.__setattr__(self, "token_in", _normalise_token(self.token_in, name="token_in"))
        object.__setattr__(self, "token_out", _normalise_token(self.token_out, name="token_out"))
        amount_in = to_decimal(self.amount_in, name="amount_in")
        min_amount_out = to_decimal(self.min_amount_out, name="min_amount_out")
        if amount_in < _ZERO:
            raise ValueError("amount_in must be non-negative")
        if min_amount_out < _ZERO:
            raise ValueError("min_amount_out must be non-negative")
        if self.token_in == self.token_out:
            raise ValueError("token_in and token_out must differ")
        if self.fee_tier < 0:
            raise ValueError("fee_tier must be non-negative")
        object.__setattr__(self, "amount_in", amount_in)
        object.__setattr__(self, "min_amount_out", min_amount_out)
        if self.expected_amount_out is not None:
            expected = to_decimal(self.expected_amount_out, name="expected_amount_out")
            if expected < _ZERO:
                raise ValueError("expected_amount_out must be non-negative")
            object.__setattr__(self, "expected_amount_out", expected)

    @property
    def uses_prior_output(self) -> bool:
        return self.amount_in == _ZERO

    def to_dict(self) -> dict[str, Any]:
        return {
            "venue": self.venue,
            "token_in": self.token_in,
            "token_out": self.token_out,
            "amount_in": str(self.amount_in),
            "min_amount_out": str(self.min_amount_out),
            "path": self.path,
            "fee_tier": self.fee_tier,
            "expected_amount_out": (
                None if self.expected_amount_out is None else str(self.expected_amount_out)
            ),
        }


@dataclass(slots=True, frozen=True)
class ArbitrageRequest:
    """Borrow ``borrow_amount`` of ``base_token`` and run it through ``routes``."""

    base_token: str
    borrow_amount: Decimal
    routes: tuple[RouteStep, ...]
    min_profit: Decimal = _ZERO
    strategy_id: str | None = None
    quoted_block: int | None = None
    request_id: str = field(default_factory=lambda: uuid4().hex)

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "base_token", _normalise_token(self.base_token, name="base_token")
        )
        borrow_amount = to_decimal(self.borrow_amount, name="borrow_amount")
        min_profit = to_decimal(self.min_profit, name="min_profit")
        if borrow_amount < _ZERO:
            raise ValueError("borrow_amount must be non-negative")
        if min_profit < _ZERO:
            raise ValueError("min_profit must be non-negative")
        if self.quoted_block is not None and self.quoted_block < 0:
            raise ValueError("quoted_block must be non-negative")
        object.__setattr__(self, "borrow_amount", borrow_amount)
        object.__setattr__(self, "min_profit", min_profit)
        object.__setattr__(self, "routes", tuple(self.routes))
        if not self.request_id:
            raise ValueError("request_id must be provided")

    def structural_violations(self) -> list[str]:
        """Return human readable reasons why the request can never settle.

        An empty list means the request is structurally sound; limits and
        market conditions are checked separately at admission time.
        """

        problems: list[str] = []
        if self.borrow_amount <= _ZERO:
            problems.append("borrow_amount must be positive")
        if not self.routes:
            problems.append("route must contain at least one step")
            return problems
        first = self.routes[0]
        if first.token_in != self.base_token:
            problems.append(
                f"first hop spends {first.token_in} but the loan is in {self.base_token}"
            )
        for index in range(1, len(self.routes)):
            previous, current = self.routes[index - 1], self.routes[index]
            if current.token_in != previous.token_out:
                problems.append(
                    f"hop {index} spends {current.token_in} but hop {index - 1} "
                    f"produces {previous.token_out}"
                )
        last = self.routes[-1]
        if last.token_out != self.base_token:
            problems.append(
                f"final hop produces {last.token_out}; loan must be repaid in {self.base_token}"
            )
        return problems

    @property
    def tokens(self) -> frozenset[str]:
        collected = {self.base_token}
        for step in self.routes:
            collected.add(step.token_in)
            collected.add(step.token_out)
        return frozenset(collected)

    @property
    def venues(self) -> tuple[str, ...]:
        return tuple(step.venue for step in self.routes)

    def with_strategy(self, strategy_id: str) -> "ArbitrageRequest":
        """Return a copy attributed to ``strategy_id``."""

        return ArbitrageRequest(
            base_token=self.base_token,
            borrow_amount=self.borrow_amount,
            routes=self.routes,
            min_profit=self.min_profit,
            strategy_id=strategy_id,
            quoted_block=self.quoted_block,
            request_id=self.request_id,
        )

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "ArbitrageRequest":
        """Build a request from a plain mapping such as a parsed YAML document."""

        raw_routes = payload.get("routes") or ()
        routes = tuple(
            step if isinstance(step, RouteStep) else RouteStep(**dict(step))
            for step in raw_routes
        )
        kwargs: dict[str, Any] = {
            "base_token": payload.get("base_token", ""),
            "borrow_amount": payload.get("borrow_amount", _ZERO),
            "routes": routes,
            "min_profit": payload.get("min_profit", _ZERO),
            "strategy_id": payload.get("strategy_id"),
            "quoted_block": payload.get("quoted_block"),
        }
        if payload.get("request_id"):
            kwargs["request_id"] = str(payload["request_id"])
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "base_token": self.base_token,
            "borrow_amount": str(self.borrow_amount),
            "min_profit": str(self.min_profit),
            "strategy_id": self.strategy_id,
            "quoted_block": self.quoted_block,
            "routes": [step.to_dict() for step in self.routes],
        }


@dataclass(slots=True, frozen=True)
class HopFill:
    """Realised execution of a single :class:`RouteStep`.

    ``expected_amount_out`` is the hop quote rescaled to the amount that was
    actually spent, so slippage of earlier hops is not charged to this one.
    """

    step_index: int
    venue: str
    token_in: str
    token_out: str
    amount_in: Decimal
    amount_out: Decimal
    min_amount_out: Decimal
    gas_used: int
    expected_amount_out: Decimal | None = None

    @property
    def slippage_bps(self) -> Decimal | None:
        """Shortfall against the quoted output in basis points, if quoted."""

        if self.expected_amount_out is None or self.expected_amount_out <= _ZERO:
            return None
        shortfall = self.expected_amount_out - self.amount_out
        if shortfall <= _ZERO:
            return _ZERO
        return shortfall * _BPS / self.expected_amount_out

    def to_dict(self) -> dict[str, Any]:
        slippage = self.slippage_bps
        return {
            "step_index": self.step_index,
            "venue": self.venue,
            "token_in": self.token_in,
            "token_out": self.token_out,
            "amount_in": str(self.amount_in),
            "amount_out": str(self.amount_out),
            "min_amount_out": str(self.min_amount_out),
            "gas_used": self.gas_used,
            "slippage_bps": None if slippage is None else str(slippage),
        }


@dataclass(slots=True, frozen=True)
class RouteOutcome:
    """Aggregate of every hop executed for one request."""

    fills: tuple[HopFill, ...]
    final_amount: Decimal
    gas_used: int
    expected_final_amount: Decimal | None = None

    @property
    def aggregate_slippage_bps(self) -> Decimal | None:
        """Shortfall of the final output against the route quote, if quoted."""

        expected = self.expected_final_amount
        if expected is None or expected <= _ZERO:
            return None
        shortfall = expected - self.final_amount
        if shortfall <= _ZERO:
            return _ZERO
        return shortfall * _BPS / expected


@dataclass(slots=True, frozen=True)
class ArbitrageResult:
    """Outcome reported to the caller for one request."""

    request_id: str
    base_token: str
    success: bool
    profit: Decimal = _ZERO
    gas_used: int = 0
    fee: Decimal = _ZERO
    strategy_id: str | None = None
    hops: tuple[HopFill, ...] = ()
    error_type: str | None = None
    error: str | None = None
    details: Mapping[str, Any] = field(default_factory=dict)
    skipped: bool = False

    @classmethod
    def failure(
        cls,
        request: ArbitrageRequest,
        exc: Exception,
        *,
        details: Mapping[str, Any] | None = None,
    ) -> "ArbitrageResult":
        return cls(
            request_id=request.request_id,
            base_token=request.base_token,
            success=False,
            strategy_id=request.strategy_id,
            error_type=type(exc).__name__,
            error=str(exc),
            details=dict(details or {}),
        )

    @classmethod
    def skipped_request(cls, request: ArbitrageRequest, reason: str) -> "ArbitrageResult":
        return cls(
            request_id=request.request_id,
            base_token=request.base_token,
            success=False,
            strategy_id=request.strategy_id,
            error=reason,
            skipped=True,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "base_token": self.base_token,
            "success": self.success,
            "profit": str(self.profit),
            "gas_used": self.gas_used,
            "fee": str(self.fee),
            "strategy_id": self.strategy_id,
            "hops": [hop.to_dict() for hop in self.hops],
            "error_type": self.error_type,
            "error": self.error,
            "details": {key: _jsonable(value) for key, value in self.details.items()},
            "skipped": self.skipped,
        }


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    if isinstance(value, Mapping):
        return {str(key): _jsonable(item) for key, item in value.items()}
    return value


@dataclass(slots=True, frozen=True)
class BatchResult:
    """Per-request results of a batch plus aggregated totals."""

    results: tuple[ArbitrageResult, ...]
    policy: BatchPolicy = BatchPolicy.FAIL_SOFT

    @property
    def succeeded(self) -> int:
        return sum(1 for result in self.results if result.success)

    @property
    def failed(self) -> int:
        return sum(1 for result in self.results if not result.success and not result.skipped)

    @property
    def skipped(self) -> int:
        return sum(1 for result in self.results if result.skipped)

    @property
    def total_profit(self) -> Decimal:
        return sum((result.profit for result in self.results if result.success), _ZERO)

    @property
    def total_gas_used(self) -> int:
        return sum(result.gas_used for result in self.results if result.success)

    def to_dict(self) -> dict[str, Any]:
        return {
            "policy": self.policy.value,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "total_profit": str(self.total_profit),
            "total_gas_used": self.total_gas_used,
            "results": [result.to_dict() for result in self.results],
        }


@dataclass(slots=True, frozen=True)
class GlobalMetrics:
    """Process-wide counters; every field only ever increases."""

    total_profit: Decimal = _ZERO
    total_gas_used: int = 0
    successful_arbitrages: int = 0
    failed_arbitrages: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_profit": str(self.total_profit),
            "total_gas_used": self.total_gas_used,
            "successful_arbitrages": self.successful_arbitrages,
            "failed_arbitrages": self.failed_arbitrages,
        }


def ensure_requests(requests: Iterable[ArbitrageRequest]) -> tuple[ArbitrageRequest, ...]:
    materialised = tuple(requests)
    for request in materialised:
        if not isinstance(request, ArbitrageRequest):
            raise TypeError("batch entries must be ArbitrageRequest instances")
    return materialised
