"""Interface definitions for FlashRoute collaborators."""

from interfaces.execution import (
    ChainState,
    ExchangeAdapter,
    FlashLoanProvider,
    FlashLoanReceiver,
    StrategyContext,
    StrategyDecision,
    SwapFill,
)

__all__ = [
    "ChainState",
    "ExchangeAdapter",
    "FlashLoanProvider",
    "FlashLoanReceiver",
    "StrategyContext",
    "StrategyDecision",
    "SwapFill",
]
