# SPDX-License-Identifier: MIT
"""Property-based checks for atomic settlement and exposure limits."""

from __future__ import annotations

from decimal import Decimal
from pathlib import Path

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from prometheus_client import CollectorRegistry

from core.utils.metrics import MetricsCollector
from domain.arbitrage import ArbitrageRequest, RouteStep
from execution.adapters.registry import VenueRegistry
from execution.adapters.simulated import (
    InMemoryFlashLoanProvider,
    SimulatedExchangeAdapter,
    StaticChainState,
)
from execution.audit import ExecutionAuditLogger
from execution.circuit_breaker import CircuitBreaker
from execution.errors import ArbitrageError, ExposureLimitExceeded, SlippageExceeded
from execution.flash_loan import FlashLoanOrchestrator
from execution.ledger import BalanceLedger
from execution.risk import RiskManager, RiskParameters
from execution.routing import RouteExecutor
from tests.helpers import FakeClock, round_trip

pytestmark = pytest.mark.property

borrow_amounts = st.decimals(
    min_value=Decimal("0.01"), max_value=Decimal("50"), places=2, allow_nan=False, allow_infinity=False
)
return_rates = st.decimals(
    min_value=Decimal("0.00045"), max_value=Decimal("0.00056"), places=6, allow_nan=False, allow_infinity=False
)


def _orchestrator(
    audit_dir: Path,
    return_rate: Decimal,
    params: RiskParameters,
    first_rate: Decimal = Decimal("2000"),
) -> tuple[FlashLoanOrchestrator, BalanceLedger]:
    metrics = MetricsCollector(CollectorRegistry())
    audit = ExecutionAuditLogger(audit_dir / "audit.jsonl")
    chain = StaticChainState(block_number=100)
    breaker = CircuitBreaker(
        1_000, 300.0, 60.0, time_source=FakeClock(), metrics=metrics, audit_logger=audit
    )
    risk = RiskManager(
        params, chain_state=chain, circuit_breaker=breaker, metrics=metrics, audit_logger=audit
    )
    venues = VenueRegistry(
        {
            "uni": SimulatedExchangeAdapter({("WETH", "USDC"): first_rate}),
            "sushi": SimulatedExchangeAdapter({("USDC", "WETH"): return_rate}),
        }
    )
    ledger = BalanceLedger()
    orchestrator = FlashLoanOrchestrator(
        ledger=ledger,
        provider=InMemoryFlashLoanProvider("aave", fee_bps=10),
        route_executor=RouteExecutor(venues, metrics=metrics),
        risk_manager=risk,
        metrics=metrics,
        audit_logger=audit,
    )
    return orchestrator, ledger


@settings(max_examples=60, deadline=None)
@given(borrow=borrow_amounts, rate=return_rates, min_profit=st.sampled_from(["0", "0.01", "0.5"]))
def test_attempts_either_settle_exactly_or_leave_no_trace(
    tmp_path_factory: pytest.TempPathFactory, borrow: Decimal, rate: Decimal, min_profit: str
) -> None:
    orchestrator, ledger = _orchestrator(
        tmp_path_factory.mktemp("atomic"), rate, RiskParameters(min_profit_threshold=Decimal("0"))
    )
    before = ledger.snapshot()
    treasury_before = ledger.balance("treasury", "WETH")
    fee = borrow * Decimal("10") / Decimal("10000")
    expected = borrow * Decimal("2000") * rate - borrow - fee

    try:
        result = orchestrator.execute_arbitrage(round_trip(borrow, min_profit=min_profit))
    except ArbitrageError:
        assert expected < Decimal(min_profit)
        assert ledger.snapshot() == before
        assert orchestrator.risk_manager.state.exposures() == {}
        return

    assert result.profit == expected
    assert result.profit >= Decimal(min_profit)
    assert ledger.balance("treasury", "WETH") - treasury_before == result.profit
    assert ledger.balance("engine", "WETH") == Decimal("0")
    assert ledger.balance("engine", "USDC") == Decimal("0")


@settings(max_examples=40, deadline=None)
@given(amounts=st.lists(borrow_amounts, min_size=1, max_size=12))
def test_committed_exposure_never_exceeds_the_cap(
    tmp_path_factory: pytest.TempPathFactory, amounts: list[Decimal]
) -> None:
    cap = Decimal("100")
    orchestrator, ledger = _orchestrator(
        tmp_path_factory.mktemp("exposure"),
        Decimal("0.00051"),
        RiskParameters(max_exposure_per_token=cap, min_profit_threshold=Decimal("0")),
    )
    admitted = Decimal("0")

    for amount in amounts:
        try:
            orchestrator.execute_arbitrage(round_trip(amount))
        except ExposureLimitExceeded:
            assert admitted + amount > cap
        else:
            admitted += amount
        exposure = orchestrator.risk_manager.state.exposures().get("WETH", Decimal("0"))
        assert exposure == admitted
        assert exposure <= cap

    assert ledger.balance("treasury", "WETH") == admitted * Decimal("0.019")


floor_factors = st.sampled_from(
    [Decimal("0"), Decimal("0.5"), Decimal("0.99"), Decimal("1.01"), Decimal("1.5")]
)


@settings(max_examples=80, deadline=None)
@given(
    borrow=borrow_amounts,
    first_rate=st.decimals(
        min_value=Decimal("1500"), max_value=Decimal("2500"), places=0, allow_nan=False, allow_infinity=False
    ),
    return_rate=return_rates,
    first_floor=floor_factors,
    second_floor=floor_factors,
)
def test_hop_floors_are_never_breached(
    tmp_path_factory: pytest.TempPathFactory,
    borrow: Decimal,
    first_rate: Decimal,
    return_rate: Decimal,
    first_floor: Decimal,
    second_floor: Decimal,
) -> None:
    orchestrator, ledger = _orchestrator(
        tmp_path_factory.mktemp("floors"),
        return_rate,
        RiskParameters(min_profit_threshold=Decimal("0")),
        first_rate=first_rate,
    )
    first_out = borrow * first_rate
    floors = (first_out * first_floor, first_out * return_rate * second_floor)
    request = ArbitrageRequest(
        "WETH",
        borrow,
        (
            RouteStep("uni", "WETH", "USDC", min_amount_out=floors[0]),
            RouteStep("sushi", "USDC", "WETH", min_amount_out=floors[1]),
        ),
    )
    breached = 0 if first_floor > 1 else (1 if second_floor > 1 else None)
    before = ledger.snapshot()

    try:
        result = orchestrator.execute_arbitrage(request)
    except SlippageExceeded as exc:
        assert exc.step_index == breached
        assert exc.actual < exc.expected_minimum
        assert ledger.snapshot() == before
        assert orchestrator.risk_manager.state.exposures() == {}
        return
    except ArbitrageError:
        assert breached is None
        assert ledger.snapshot() == before
        return

    assert breached is None
    assert len(result.hops) == 2
    for hop, floor in zip(result.hops, floors):
        assert hop.amount_out >= floor
