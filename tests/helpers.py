# SPDX-License-Identifier: MIT
"""Builders shared by the unit, integration and API suites."""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from domain.arbitrage import ArbitrageRequest, RouteStep
from execution.adapters.simulated import SimulatedExchangeAdapter

ADMIN = "treasury-admin"
OPERATOR = "desk-operator"
STRATEGIST = "quant-team"
ON_CALL = "on-call"
OUTSIDER = "mallory"


class FakeClock:
    """Monotonic clock advanced manually by tests."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


def default_venues() -> dict[str, SimulatedExchangeAdapter]:
    # 1 WETH -> 2000 USDC -> 1.02 WETH
    return {
        "uni": SimulatedExchangeAdapter({("WETH", "USDC"): "2000"}),
        "sushi": SimulatedExchangeAdapter({("USDC", "WETH"): "0.00051"}),
    }


def round_trip(
    borrow: Decimal | str = "1",
    *,
    min_out: Decimal | str = "0",
    min_profit: Decimal | str = "0",
    strategy_id: str | None = None,
    quoted_block: int | None = None,
    request_id: str | None = None,
) -> ArbitrageRequest:
    """WETH -> USDC on ``uni``, USDC -> WETH on ``sushi``."""

    kwargs: dict[str, Any] = {}
    if request_id is not None:
        kwargs["request_id"] = request_id
    return ArbitrageRequest(
        base_token="WETH",
        borrow_amount=Decimal(borrow),
        routes=(
            RouteStep("uni", "WETH", "USDC"),
            RouteStep("sushi", "USDC", "WETH", min_amount_out=Decimal(min_out)),
        ),
        min_profit=Decimal(min_profit),
        strategy_id=strategy_id,
        quoted_block=quoted_block,
        **kwargs,
    )


def round_trip_payload(borrow: str = "1", **overrides: Any) -> dict[str, Any]:
    """JSON/YAML shaped equivalent of :func:`round_trip`."""

    payload: dict[str, Any] = {
        "base_token": "WETH",
        "borrow_amount": borrow,
        "routes": [
            {"venue": "uni", "token_in": "WETH", "token_out": "USDC"},
            {"venue": "sushi", "token_in": "USDC", "token_out": "WETH"},
        ],
    }
    payload.update(overrides)
    return payload


class FixedProposal:
    """Strategy decision module that always proposes the same request."""

    def __init__(self, request: ArbitrageRequest | None) -> None:
        self.request = request
        self.contexts: list[Any] = []

    def propose(self, context: Any) -> ArbitrageRequest | None:
        self.contexts.append(context)
        return self.request
