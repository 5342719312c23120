# SPDX-License-Identifier: MIT
"""End-to-end flows across the orchestrator, risk manager and breaker."""

from __future__ import annotations

from decimal import Decimal

import pytest

from execution.circuit_breaker import CircuitState
from execution.errors import (
    CircuitOpen,
    ExposureLimitExceeded,
    SlippageExceeded,
    SwapFailed,
)
from execution.risk import RiskParameters
from tests.helpers import round_trip

pytestmark = pytest.mark.integration


def test_slippage_on_second_hop_leaves_no_trace(engine) -> None:
    before = engine.ledger.snapshot()

    with pytest.raises(SlippageExceeded) as excinfo:
        engine.orchestrator.execute_arbitrage(round_trip(min_out="1.05"))

    assert excinfo.value.details["step_index"] == 1
    assert engine.ledger.snapshot() == before
    assert engine.risk.state.exposures() == {}
    totals = engine.risk.global_metrics()
    assert totals.failed_arbitrages == 1
    assert totals.successful_arbitrages == 0


def test_profitable_round_trip_pays_treasury(engine) -> None:
    result = engine.orchestrator.execute_arbitrage(round_trip())

    assert result.success
    assert result.profit == Decimal("0.019")
    assert result.fee == Decimal("0.001")
    assert engine.ledger.balance("treasury", "WETH") == Decimal("0.019")
    assert engine.ledger.balance("engine", "WETH") == Decimal("0")
    assert engine.ledger.balance("engine", "USDC") == Decimal("0")
    totals = engine.risk.global_metrics()
    assert totals.successful_arbitrages == 1
    assert totals.total_profit == Decimal("0.019")
    assert totals.total_gas_used == 240_000
    assert engine.provider.loans[-1].repaid == Decimal("1.001")

    succeeded = engine.audit.read_events("arbitrage_succeeded")
    assert [event["request_id"] for event in succeeded] == [result.request_id]


def test_exposure_cap_blocks_second_request_before_funds_move(make_engine) -> None:
    engine = make_engine(
        params=RiskParameters(
            max_exposure_per_token=Decimal("100"), min_profit_threshold=Decimal("0.01")
        )
    )
    engine.orchestrator.execute_arbitrage(round_trip("60"))
    calls = {name: len(venue.calls) for name, venue in engine.venues.items()}
    loans = len(engine.provider.loans)
    before = engine.ledger.snapshot()

    with pytest.raises(ExposureLimitExceeded):
        engine.orchestrator.execute_arbitrage(round_trip("60"))

    assert {name: len(venue.calls) for name, venue in engine.venues.items()} == calls
    assert len(engine.provider.loans) == loans
    assert engine.ledger.snapshot() == before
    assert engine.risk.state.exposures() == {"WETH": Decimal("60")}
    assert engine.sample("flashroute_admission_rejections_total", reason="exposure_limit") == 1.0


def test_repeated_venue_failures_open_the_breaker(engine) -> None:
    engine.venues["uni"].fail_always("router reverted")

    for _ in range(5):
        with pytest.raises(SwapFailed):
            engine.orchestrator.execute_arbitrage(round_trip())

    assert engine.breaker.snapshot().state is CircuitState.OPEN
    calls = len(engine.venues["uni"].calls)

    with pytest.raises(CircuitOpen):
        engine.orchestrator.execute_arbitrage(round_trip())

    assert len(engine.venues["uni"].calls) == calls == 5
    assert engine.risk.global_metrics().failed_arbitrages == 5


def test_breaker_recovers_through_a_successful_trial(engine) -> None:
    engine.venues["uni"].fail_always("router reverted")
    for _ in range(5):
        with pytest.raises(SwapFailed):
            engine.orchestrator.execute_arbitrage(round_trip())
    engine.venues["uni"].fail_always(None)

    engine.clock.advance(61)
    result = engine.orchestrator.execute_arbitrage(round_trip())

    assert result.success
    assert engine.breaker.snapshot().state is CircuitState.CLOSED


def test_batch_requests_settle_independently(engine) -> None:
    batch = engine.orchestrator.execute_batch_arbitrage(
        [round_trip(request_id="a"), round_trip(min_out="5", request_id="b"), round_trip(request_id="c")]
    )

    assert [entry.success for entry in batch.results] == [True, False, True]
    assert batch.total_profit == Decimal("0.038")
    assert engine.ledger.balance("treasury", "WETH") == Decimal("0.038")
    assert engine.risk.state.exposures() == {"WETH": Decimal("2")}
