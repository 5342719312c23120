# SPDX-License-Identifier: MIT
"""In-memory venue, lending pool and chain state used for dry runs and tests."""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass
from decimal import Decimal
from typing import Deque, Mapping, MutableMapping

from domain.arbitrage import to_decimal
from interfaces.execution import FlashLoanReceiver, SwapFill

from ..errors import ExecutionFailed, RepaymentShortfall

__all__ = [
    "InMemoryFlashLoanProvider",
    "LoanRecord",
    "SimulatedExchangeAdapter",
    "StaticChainState",
    "SwapRecord",
]

_BPS = Decimal("10000")


class VenueUnavailable(RuntimeError):
    """Injected venue failure raised by :class:`SimulatedExchangeAdapter`."""


@dataclass(slots=True, frozen=True)
class SwapRecord:
    token_in: str
    token_out: str
    amount_in: Decimal
    min_amount_out: Decimal
    amount_out: Decimal | None


class SimulatedExchangeAdapter:
    """Constant-rate venue with optional fee and failure injection.

    Rates are quoted as ``token_out`` received per unit of ``token_in``. The
    adapter does not enforce ``min_amount_out``; the route executor does.
    """

    def __init__(
        self,
        rates: Mapping[tuple[str, str], Decimal | str | int | float] | None = None,
        *,
        fee_bps: int = 0,
        gas_per_swap: int = 120_000,
    ) -> None:
        if not 0 <= fee_bps < 10_000:
            raise ValueError("fee_bps must be within [0, 10000)")
        if gas_per_swap < 0:
            raise ValueError("gas_per_swap must be non-negative")
        self._rates: MutableMapping[tuple[str, str], Decimal] = {}
        self._fee_bps = Decimal(fee_bps)
        self.gas_per_swap = gas_per_swap
        self._failures: Deque[Exception] = deque()
        self._fail_always: Exception | None = None
        self._lock = threading.Lock()
        self.calls: list[SwapRecord] = []
        for (token_in, token_out), rate in (rates or {}).items():
            self.set_rate(token_in, token_out, rate)

    def set_rate(self, token_in: str, token_out: str, rate: Decimal | str | int | float) -> None:
        value = to_decimal(rate, name="rate")
        if value < 0:
            raise ValueError("rate must be non-negative")
        with self._lock:
            self._rates[(token_in, token_out)] = value

    def fail_next(self, error: Exception | str = "venue unavailable") -> None:
        """Make the next swap raise ``error``."""

        exc = VenueUnavailable(error) if isinstance(error, str) else error
        with self._lock:
            self._failures.append(exc)

    def fail_always(self, error: Exception | str | None = "venue unavailable") -> None:
        """Make every swap raise ``error``; ``None`` restores normal behaviour."""

        with self._lock:
            if error is None:
                self._fail_always = None
            else:
                self._fail_always = VenueUnavailable(error) if isinstance(error, str) else error

    def quote(self, token_in: str, token_out: str, amount_in: Decimal) -> Decimal:
        with self._lock:
            rate = self._rates.get((token_in, token_out))
        if rate is None:
            raise VenueUnavailable(f"no liquidity for {token_in}->{token_out}")
        gross = amount_in * rate
        return gross * (_BPS - self._fee_bps) / _BPS

    def swap(
        self,
        token_in: str,
        token_out: str,
        amount_in: Decimal,
        min_amount_out: Decimal,
        *,
        path: str = "",
        fee_tier: int = 0,
    ) -> SwapFill:
        with self._lock:
            injected = self._failures.popleft() if self._failures else self._fail_always
        if injected is not None:
            self.calls.append(SwapRecord(token_in, token_out, amount_in, min_amount_out, None))
            raise injected
        amount_out = self.quote(token_in, token_out, amount_in)
        self.calls.append(SwapRecord(token_in, token_out, amount_in, min_amount_out, amount_out))
        return SwapFill(amount_out=amount_out, gas_used=self.gas_per_swap)


@dataclass(slots=True, frozen=True)
class LoanRecord:
    asset: str
    amount: Decimal
    fee: Decimal
    repaid: Decimal | None


class InMemoryFlashLoanProvider:
    """Lending pool charging ``fee_bps`` and insisting on exact repayment."""

    def __init__(
        self,
        name: str = "lender",
        *,
        fee_bps: Decimal | str | int = 9,
        liquidity: Mapping[str, Decimal | str | int] | None = None,
    ) -> None:
        self._name = name
        self._fee_bps = to_decimal(fee_bps, name="fee_bps")
        if not 0 <= self._fee_bps < _BPS:
            raise ValueError("fee_bps must be within [0, 10000)")
        self._liquidity: dict[str, Decimal] | None = (
            None
            if liquidity is None
            else {asset: to_decimal(value, name="liquidity") for asset, value in liquidity.items()}
        )
        self._lock = threading.Lock()
        self.loans: list[LoanRecord] = []

    @property
    def name(self) -> str:
        return self._name

    def available(self, asset: str) -> Decimal | None:
        with self._lock:
            if self._liquidity is None:
                return None
            return self._liquidity.get(asset, Decimal("0"))

    def fee_for(self, asset: str, amount: Decimal) -> Decimal:
        return amount * self._fee_bps / _BPS

    def flash_loan(self, asset: str, amount: Decimal, receiver: FlashLoanReceiver) -> Decimal:
        fee = self.fee_for(asset, amount)
        with self._lock:
            if self._liquidity is not None:
                available = self._liquidity.get(asset, Decimal("0"))
                if available < amount:
                    raise ExecutionFailed(
                        f"Lender {self._name} cannot advance {amount} {asset}",
                        lender=self._name,
                        available=available,
                        requested=amount,
                    )
                self._liquidity[asset] = available - amount
        try:
            repaid = receiver.on_flash_loan(asset, amount, fee)
        except Exception:
            self._restore(asset, amount)
            self.loans.append(LoanRecord(asset, amount, fee, None))
            raise
        owed = amount + fee
        if repaid != owed:
            self._restore(asset, amount)
            self.loans.append(LoanRecord(asset, amount, fee, repaid))
            raise RepaymentShortfall(
                f"Flash loan of {amount} {asset} expected repayment {owed}, received {repaid}",
                lender=self._name,
                owed=owed,
                repaid=repaid,
            )
        self._restore(asset, owed)
        self.loans.append(LoanRecord(asset, amount, fee, repaid))
        return fee

    def _restore(self, asset: str, amount: Decimal) -> None:
        with self._lock:
            if self._liquidity is not None:
                self._liquidity[asset] = self._liquidity.get(asset, Decimal("0")) + amount


class StaticChainState:
    """Chain view whose gas price and head block are set by the caller."""

    def __init__(self, gas_price_wei: int = 30 * 10**9, block_number: int = 0) -> None:
        self._gas_price_wei = int(gas_price_wei)
        self._block_number = int(block_number)
        self._lock = threading.Lock()

    def gas_price_wei(self) -> int:
        with self._lock:
            return self._gas_price_wei

    def block_number(self) -> int:
        with self._lock:
            return self._block_number

    def set_gas_price(self, gas_price_wei: int) -> None:
        with self._lock:
            self._gas_price_wei = int(gas_price_wei)

    def advance(self, blocks: int = 1) -> int:
        with self._lock:
            self._block_number += int(blocks)
            return self._block_number
