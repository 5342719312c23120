"""Registry of pluggable arbitrage strategies."""

from strategies.registry import StrategyConfig, StrategyRegistry

__all__ = [
    "StrategyConfig",
    "StrategyRegistry",
]
