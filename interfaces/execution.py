"""Contracts for the external collaborators of the arbitrage engine.

Venues, the lending pool, the chain state reader and strategy decision modules
live outside this repository; the engine only ever talks to them through these
protocols.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Mapping, Protocol, runtime_checkable

if TYPE_CHECKING:
    from domain.arbitrage import ArbitrageRequest

__all__ = [
    "ChainState",
    "ExchangeAdapter",
    "FlashLoanProvider",
    "FlashLoanReceiver",
    "StrategyContext",
    "StrategyDecision",
    "SwapFill",
]


@dataclass(slots=True, frozen=True)
class SwapFill:
    """Amount received from a venue and the gas the swap consumed."""

    amount_out: Decimal
    gas_used: int = 0

    def __post_init__(self) -> None:
        if self.amount_out < 0:
            raise ValueError("amount_out must be non-negative")
        if self.gas_used < 0:
            raise ValueError("gas_used must be non-negative")


@runtime_checkable
class ExchangeAdapter(Protocol):
    """Executes a single swap against one venue."""

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
        """Perform the swap or raise a venue specific exception."""


@runtime_checkable
class FlashLoanReceiver(Protocol):
    """Callback target invoked by the lending pool while the loan is outstanding."""

    def on_flash_loan(self, asset: str, amount: Decimal, fee: Decimal) -> Decimal:
        """Use the borrowed funds and return the amount being repaid."""


@runtime_checkable
class FlashLoanProvider(Protocol):
    """Lending pool that advances funds for the duration of one callback."""

    @property
    def name(self) -> str:
        """Identifier of the lending pool, used as ledger counterparty."""

    def fee_for(self, asset: str, amount: Decimal) -> Decimal:
        """Return the fee charged for borrowing ``amount`` of ``asset``."""

    def flash_loan(self, asset: str, amount: Decimal, receiver: FlashLoanReceiver) -> Decimal:
        """Advance ``amount`` to ``receiver`` and return the fee collected.

        Implementations must raise when the receiver does not repay exactly
        ``amount + fee``.
        """


@runtime_checkable
class ChainState(Protocol):
    """Read-only view of network conditions used for admission checks."""

    def gas_price_wei(self) -> int:
        """Current network gas price in wei."""

    def block_number(self) -> int:
        """Current block height."""


@dataclass(slots=True, frozen=True)
class StrategyContext:
    """Inputs handed to a strategy when it is asked for a proposal."""

    block_number: int
    gas_price_wei: int
    timestamp: datetime
    market_data: Mapping[str, Any] = field(default_factory=dict)


@runtime_checkable
class StrategyDecision(Protocol):
    """Pluggable decision module proposing routes for the engine to execute."""

    def propose(self, context: StrategyContext) -> "ArbitrageRequest | None":
        """Return a request to execute, or ``None`` when nothing is worth doing."""
