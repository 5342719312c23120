# SPDX-License-Identifier: MIT
"""Venue registry and in-memory reference collaborators."""

from __future__ import annotations

from .registry import VenueRegistry
from .simulated import (
    InMemoryFlashLoanProvider,
    LoanRecord,
    SimulatedExchangeAdapter,
    StaticChainState,
    SwapRecord,
)

__all__ = [
    "InMemoryFlashLoanProvider",
    "LoanRecord",
    "SimulatedExchangeAdapter",
    "StaticChainState",
    "SwapRecord",
    "VenueRegistry",
]
