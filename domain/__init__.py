"""Domain layer containing the arbitrage value objects."""

from .arbitrage import (
    ArbitrageRequest,
    ArbitrageResult,
    BatchPolicy,
    BatchResult,
    GlobalMetrics,
    HopFill,
    RouteOutcome,
    RouteStep,
    to_decimal,
)

__all__ = [
    "ArbitrageRequest",
    "ArbitrageResult",
    "BatchPolicy",
    "BatchResult",
    "GlobalMetrics",
    "HopFill",
    "RouteOutcome",
    "RouteStep",
    "to_decimal",
]
