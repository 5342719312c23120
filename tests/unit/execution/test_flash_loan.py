# SPDX-License-Identifier: MIT
from __future__ import annotations

import logging
import threading
from decimal import Decimal, getcontext

import pytest

from domain.arbitrage import AMOUNT_PRECISION, ArbitrageRequest, BatchPolicy, RouteStep
from execution.adapters.simulated import SimulatedExchangeAdapter
from execution.circuit_breaker import CircuitState
from execution.errors import (
    ChainStateUnavailable,
    ExecutionFailed,
    GasLimitExceeded,
    InvalidRequest,
    ProfitInsufficient,
    ReentrantCall,
    RepaymentShortfall,
    SlippageExceeded,
    StrategyInactive,
)
from execution.risk import RiskParameters
from interfaces.execution import SwapFill
from strategies.registry import StrategyConfig
from tests.helpers import FixedProposal, round_trip


class _MisreportingLender:
    """Runs the callback correctly but reports a different fee."""

    name = "shady"

    def fee_for(self, asset, amount):
        return amount / 1000

    def flash_loan(self, asset, amount, receiver):
        fee = self.fee_for(asset, amount)
        receiver.on_flash_loan(asset, amount, fee)
        return fee * 2


class _SilentLender:
    name = "silent"

    def fee_for(self, asset, amount):
        return Decimal("0")

    def flash_loan(self, asset, amount, receiver):
        return Decimal("0")


class _SkimmingLender:
    name = "skim"

    def fee_for(self, asset, amount):
        return Decimal("0")

    def flash_loan(self, asset, amount, receiver):
        return receiver.on_flash_loan(asset, amount / 2, Decimal("0"))


class _DoubleCallLender:
    name = "double"

    def fee_for(self, asset, amount):
        return Decimal("0")

    def flash_loan(self, asset, amount, receiver):
        receiver.on_flash_loan(asset, amount, Decimal("0"))
        receiver.on_flash_loan(asset, amount, Decimal("0"))
        return Decimal("0")


class _OfflineLender:
    name = "offline"

    def fee_for(self, asset, amount):
        return Decimal("0")

    def flash_loan(self, asset, amount, receiver):
        raise ConnectionError("rpc timeout")


class _ReentrantVenue:
    """Venue that tries to start a second attempt from inside a swap."""

    def __init__(self) -> None:
        self.orchestrator = None

    def swap(self, token_in, token_out, amount_in, min_amount_out, *, path="", fee_tier=0):
        self.orchestrator.execute_arbitrage(round_trip())
        return SwapFill(amount_out=amount_in * 2000, gas_used=1)


def _attempts(engine, outcome: str) -> float:
    return engine.sample(
        "flashroute_arbitrage_attempts_total", base_token="WETH", outcome=outcome
    )


class TestSettlement:
    def test_profit_is_forwarded_to_treasury(self, engine) -> None:
        result = engine.orchestrator.execute_arbitrage(round_trip(), caller="desk")

        assert result.success
        assert result.profit == Decimal("0.019")
        assert result.fee == Decimal("0.001")
        assert result.gas_used == 240_000
        assert [hop.venue for hop in result.hops] == ["uni", "sushi"]
        assert engine.ledger.balance("treasury", "WETH") == Decimal("0.019")
        assert engine.ledger.balance("engine", "WETH") == Decimal("0")
        assert engine.ledger.balance("lender:aave", "WETH") == Decimal("0.001")
        assert engine.provider.loans[-1].repaid == Decimal("1.001")

    def test_success_updates_side_channel(self, engine) -> None:
        engine.orchestrator.execute_arbitrage(round_trip())

        metrics = engine.risk.global_metrics()
        assert metrics.successful_arbitrages == 1
        assert metrics.total_profit == Decimal("0.019")
        assert metrics.total_gas_used == 240_000
        assert engine.risk.state.exposures() == {"WETH": Decimal("1")}
        assert _attempts(engine, "succeeded") == 1.0
        settled = engine.audit.read_events("arbitrage_succeeded")[0]
        assert Decimal(settled["profit"]) == Decimal("0.019")

    def test_profit_below_request_floor_rolls_back(self, engine) -> None:
        with pytest.raises(ProfitInsufficient) as excinfo:
            engine.orchestrator.execute_arbitrage(round_trip(min_profit="0.05"))

        assert excinfo.value.details["threshold"] == Decimal("0.05")
        assert engine.ledger.snapshot() == {}
        assert engine.risk.state.exposures() == {}
        assert engine.risk.global_metrics().failed_arbitrages == 1
        assert _attempts(engine, "profit_insufficient") == 1.0
        failure = engine.audit.read_events("arbitrage_failed")[0]
        assert failure["error_type"] == "ProfitInsufficient"

    def test_global_threshold_applies_when_stricter(self, make_engine) -> None:
        engine = make_engine(params=RiskParameters(min_profit_threshold=Decimal("0.02")))

        with pytest.raises(ProfitInsufficient):
            engine.orchestrator.execute_arbitrage(round_trip(min_profit="0"))

    def test_unexpected_lender_error_is_wrapped(self, make_engine) -> None:
        engine = make_engine(provider=_OfflineLender())

        with pytest.raises(ExecutionFailed) as excinfo:
            engine.orchestrator.execute_arbitrage(round_trip())

        assert excinfo.value.details["error_type"] == "ConnectionError"
        assert engine.ledger.snapshot() == {}
        assert engine.breaker.snapshot().failure_count == 1


class TestRepayment:
    @pytest.mark.parametrize(
        "lender, message",
        [
            (_MisreportingLender(), "reported fee"),
            (_SilentLender(), "without completing the callback"),
            (_SkimmingLender(), "different loan"),
            (_DoubleCallLender(), "more than once"),
        ],
    )
    def test_lender_contract_violations(self, make_engine, caplog, lender, message) -> None:
        engine = make_engine(provider=lender, params=RiskParameters(min_profit_threshold=0))
        caplog.set_level(logging.WARNING)

        with pytest.raises(RepaymentShortfall, match=message):
            engine.orchestrator.execute_arbitrage(round_trip())

        assert engine.ledger.snapshot() == {}
        assert engine.risk.global_metrics().failed_arbitrages == 1
        assert any(
            record.levelno == logging.CRITICAL and record.getMessage() == "Arbitrage rolled back"
            for record in caplog.records
        )


class TestAdmission:
    def test_unknown_venue_is_rejected_before_borrowing(self, engine) -> None:
        request = ArbitrageRequest(
            "WETH",
            Decimal("1"),
            (RouteStep("curve", "WETH", "USDC"), RouteStep("sushi", "USDC", "WETH")),
        )

        with pytest.raises(InvalidRequest, match="curve"):
            engine.orchestrator.execute_arbitrage(request)

        assert engine.provider.loans == []
        assert engine.risk.global_metrics().failed_arbitrages == 0
        assert engine.breaker.snapshot().failure_count == 0
        assert _attempts(engine, "rejected") == 1.0
        assert engine.sample(
            "flashroute_admission_rejections_total", reason="invalid_request"
        ) == 1.0

    def test_unknown_strategy_is_rejected(self, engine) -> None:
        with pytest.raises(InvalidRequest, match="Unknown strategy"):
            engine.orchestrator.execute_arbitrage(round_trip(strategy_id="ghost"))

    def test_inactive_strategy_is_rejected(self, engine) -> None:
        engine.strategies.add_strategy("arb", FixedProposal(None))
        engine.strategies.remove_strategy("arb")

        with pytest.raises(StrategyInactive):
            engine.orchestrator.execute_arbitrage(round_trip(strategy_id="arb"))

        assert engine.provider.loans == []

    def test_structurally_invalid_request(self, engine) -> None:
        request = ArbitrageRequest("WETH", Decimal("1"), (RouteStep("uni", "WETH", "USDC"),))

        with pytest.raises(InvalidRequest, match="final hop produces USDC"):
            engine.orchestrator.execute_arbitrage(request)

        assert engine.provider.loans == []

    def test_breaker_recovers_after_chain_read_failure_while_half_open(
        self, engine, monkeypatch
    ) -> None:
        for _ in range(5):
            engine.breaker.before_attempt()
            engine.breaker.record_failure("swap_failed")
        engine.clock.advance(61)
        reads: list[int] = []
        healthy = engine.chain.gas_price_wei

        def _flaky() -> int:
            reads.append(1)
            if len(reads) == 1:
                raise ConnectionError("rpc unreachable")
            return healthy()

        monkeypatch.setattr(engine.chain, "gas_price_wei", _flaky)

        with pytest.raises(ChainStateUnavailable):
            engine.orchestrator.execute_arbitrage(round_trip())
        result = engine.orchestrator.execute_arbitrage(round_trip())

        assert result.success
        assert engine.breaker.state is CircuitState.CLOSED
        assert len(engine.provider.loans) == 1

    def test_reentrant_attempt_is_refused(self, make_engine) -> None:
        venue = _ReentrantVenue()
        venues = {
            "uni": venue,
            "sushi": SimulatedExchangeAdapter({("USDC", "WETH"): "0.00051"}),
        }
        engine = make_engine(venues=venues)
        venue.orchestrator = engine.orchestrator

        with pytest.raises(ReentrantCall):
            engine.orchestrator.execute_arbitrage(round_trip())

        assert engine.ledger.snapshot() == {}
        assert engine.audit.read_events("arbitrage_rejected")[0]["error_type"] == "ReentrantCall"

        engine.orchestrator.route_executor.venues.register(
            "uni", SimulatedExchangeAdapter({("WETH", "USDC"): "2000"}), override=True
        )
        assert engine.orchestrator.execute_arbitrage(round_trip()).success


class TestStrategyLimits:
    def test_strategy_profit_floor(self, engine) -> None:
        engine.strategies.add_strategy(
            "arb", FixedProposal(None), StrategyConfig(min_profit=Decimal("0.05"))
        )

        with pytest.raises(ProfitInsufficient):
            engine.orchestrator.execute_arbitrage(round_trip(strategy_id="arb"))

        config = engine.strategies.get_config("arb")
        assert (config.execution_count, config.success_count) == (1, 0)

    def test_strategy_gas_limit(self, engine) -> None:
        engine.strategies.add_strategy("arb", FixedProposal(None), StrategyConfig(gas_limit=200_000))

        with pytest.raises(GasLimitExceeded):
            engine.orchestrator.execute_arbitrage(round_trip(strategy_id="arb"))

    def test_successful_strategy_execution_is_recorded(self, engine) -> None:
        engine.strategies.add_strategy("arb", FixedProposal(None))

        engine.orchestrator.execute_arbitrage(round_trip(strategy_id="arb"))

        config = engine.strategies.get_config("arb")
        assert config.success_count == 1
        assert config.cumulative_profit == Decimal("0.019")
        assert engine.risk.state.strategy_exposure("arb") == Decimal("1")


class TestBatch:
    def test_fail_soft_continues_after_failure(self, engine) -> None:
        batch = engine.orchestrator.execute_batch_arbitrage(
            [round_trip(), round_trip(min_out="5"), round_trip()]
        )

        assert (batch.succeeded, batch.failed, batch.skipped) == (2, 1, 0)
        assert batch.results[1].error_type == "SlippageExceeded"
        assert batch.results[1].details["step_index"] == 1
        assert batch.total_profit == Decimal("0.038")
        assert engine.ledger.balance("treasury", "WETH") == Decimal("0.038")

    def test_fail_fast_skips_the_rest(self, engine) -> None:
        batch = engine.orchestrator.execute_batch_arbitrage(
            [round_trip(), round_trip(min_out="5"), round_trip()],
            policy=BatchPolicy.FAIL_FAST,
        )

        assert (batch.succeeded, batch.failed, batch.skipped) == (1, 1, 1)
        assert batch.results[2].skipped
        assert engine.ledger.balance("treasury", "WETH") == Decimal("0.019")
        assert engine.audit.read_events("batch_executed")[0]["policy"] == "fail_fast"

    def test_policy_accepts_strings(self, engine) -> None:
        batch = engine.orchestrator.execute_batch_arbitrage([round_trip()], policy="fail_fast")

        assert batch.policy is BatchPolicy.FAIL_FAST

    def test_empty_batch_is_invalid(self, engine) -> None:
        with pytest.raises(InvalidRequest):
            engine.orchestrator.execute_batch_arbitrage([])

    def test_oversized_batch_is_invalid(self, engine) -> None:
        with pytest.raises(InvalidRequest, match="Too many operations in batch"):
            engine.orchestrator.execute_batch_arbitrage([round_trip() for _ in range(11)])

        assert engine.provider.loans == []

    def test_batch_entries_must_be_requests(self, engine) -> None:
        with pytest.raises(TypeError):
            engine.orchestrator.execute_batch_arbitrage([round_trip(), "nope"])

    def test_unexpected_admission_error_does_not_abort_fail_soft(
        self, engine, monkeypatch
    ) -> None:
        state = engine.risk.state
        healthy = state.reserve
        calls: list[int] = []

        def _broken_once(reservation, **caps):
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("state store unavailable")
            return healthy(reservation, **caps)

        monkeypatch.setattr(state, "reserve", _broken_once)

        batch = engine.orchestrator.execute_batch_arbitrage([round_trip(), round_trip()])

        assert [result.success for result in batch.results] == [False, True]
        assert batch.results[0].error_type == "AdmissionRejected"
        assert batch.results[0].details["error_type"] == "RuntimeError"
        assert len(engine.provider.loans) == 1
        assert _attempts(engine, "rejected") == 1.0
        rejected = engine.audit.read_events("arbitrage_rejected")[0]
        assert "RuntimeError" in rejected["reason"]

    def test_chain_read_failure_fails_only_its_entry(self, engine, monkeypatch) -> None:
        reads: list[int] = []
        healthy = engine.chain.gas_price_wei

        def _flaky() -> int:
            reads.append(1)
            if len(reads) == 1:
                raise ConnectionError("rpc unreachable")
            return healthy()

        monkeypatch.setattr(engine.chain, "gas_price_wei", _flaky)

        batch = engine.orchestrator.execute_batch_arbitrage([round_trip(), round_trip()])

        assert [result.success for result in batch.results] == [False, True]
        assert batch.results[0].error_type == "ChainStateUnavailable"
        assert engine.ledger.balance("treasury", "WETH") == Decimal("0.019")

    def test_failures_are_independent(self, engine) -> None:
        engine.venues["sushi"].fail_next()

        batch = engine.orchestrator.execute_batch_arbitrage([round_trip(), round_trip()])

        assert batch.results[0].error_type == "SwapFailed"
        assert batch.results[1].success
        assert isinstance(batch.results[0].details["step_index"], int)


class TestTreasury:
    def test_set_treasury_redirects_profit(self, engine) -> None:
        engine.orchestrator.set_treasury("cold-wallet")

        engine.orchestrator.execute_arbitrage(round_trip())

        assert engine.ledger.balance("cold-wallet", "WETH") == Decimal("0.019")
        assert engine.ledger.balance("treasury", "WETH") == Decimal("0")
        assert engine.audit.read_events("treasury_updated")[0]["current"] == "cold-wallet"

    @pytest.mark.parametrize("account", ["", "   ", "engine"])
    def test_invalid_treasury(self, engine, account: str) -> None:
        with pytest.raises(ValueError):
            engine.orchestrator.set_treasury(account)


def test_slippage_against_quote_fails_after_route(make_engine) -> None:
    engine = make_engine()
    request = ArbitrageRequest(
        "WETH",
        Decimal("1"),
        (
            RouteStep("uni", "WETH", "USDC", expected_amount_out=Decimal("2100")),
            RouteStep("sushi", "USDC", "WETH"),
        ),
    )

    with pytest.raises(SlippageExceeded) as excinfo:
        engine.orchestrator.execute_arbitrage(request)

    assert excinfo.value.step_index == 0
    assert engine.ledger.snapshot() == {}


def test_amount_precision_does_not_depend_on_the_calling_thread(engine) -> None:
    request = round_trip("1.000000000000000001")
    results: list = []

    def _worker() -> None:
        getcontext().prec = 10
        results.append(engine.orchestrator.execute_arbitrage(request))

    worker = threading.Thread(target=_worker)
    worker.start()
    worker.join(timeout=10)

    assert results[0].profit == Decimal("0.019000000000000000019")
    assert engine.ledger.balance("treasury", "WETH") == Decimal("0.019000000000000000019")


def test_new_threads_start_with_amount_precision() -> None:
    seen: list[int] = []
    worker = threading.Thread(target=lambda: seen.append(getcontext().prec))
    worker.start()
    worker.join(timeout=10)

    assert seen == [AMOUNT_PRECISION]
