"""Application layer exposing the arbitrage engine to operators."""

from .settings import EngineSettings
from .system import ArbitrageSystem, build_system

__all__ = [
    "ArbitrageSystem",
    "EngineSettings",
    "build_system",
]
