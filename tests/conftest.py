# SPDX-License-Identifier: MIT
"""Shared fixtures wiring the engine against in-memory collaborators."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Callable

import pytest
from prometheus_client import CollectorRegistry

from application.settings import EngineSettings, RateLimitSettings, RiskSettings
from application.system import ArbitrageSystem, build_system
from core.utils.metrics import MetricsCollector
from execution.adapters.registry import VenueRegistry
from execution.adapters.simulated import (
    InMemoryFlashLoanProvider,
    SimulatedExchangeAdapter,
    StaticChainState,
)
from execution.audit import ExecutionAuditLogger
from execution.circuit_breaker import CircuitBreaker
from execution.flash_loan import FlashLoanOrchestrator
from execution.ledger import BalanceLedger
from execution.risk import RiskManager, RiskParameters
from execution.routing import RouteExecutor
from strategies.registry import StrategyRegistry
from tests.helpers import ADMIN, ON_CALL, OPERATOR, STRATEGIST, FakeClock, default_venues


@dataclass
class Engine:
    ledger: BalanceLedger
    provider: InMemoryFlashLoanProvider
    venues: dict[str, SimulatedExchangeAdapter]
    chain: StaticChainState
    breaker: CircuitBreaker
    risk: RiskManager
    strategies: StrategyRegistry
    orchestrator: FlashLoanOrchestrator
    metrics: MetricsCollector
    audit: ExecutionAuditLogger
    clock: FakeClock

    def sample(self, name: str, **labels: str) -> float:
        value = self.metrics.registry.get_sample_value(name, labels)
        return 0.0 if value is None else value


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector(CollectorRegistry())


@pytest.fixture
def audit_logger(tmp_path: Path) -> ExecutionAuditLogger:
    return ExecutionAuditLogger(tmp_path / "audit.jsonl")


@pytest.fixture
def make_engine(
    metrics: MetricsCollector, audit_logger: ExecutionAuditLogger, clock: FakeClock
) -> Callable[..., Engine]:
    def _factory(
        *,
        params: RiskParameters | None = None,
        venues: dict[str, SimulatedExchangeAdapter] | None = None,
        provider: InMemoryFlashLoanProvider | None = None,
        failure_threshold: int = 5,
        **risk_kwargs,
    ) -> Engine:
        ledger = BalanceLedger()
        lender = provider or InMemoryFlashLoanProvider("aave", fee_bps=10)
        adapters = venues if venues is not None else default_venues()
        chain = StaticChainState(gas_price_wei=30 * 10**9, block_number=100)
        breaker = CircuitBreaker(
            failure_threshold,
            300.0,
            60.0,
            time_source=clock,
            metrics=metrics,
            audit_logger=audit_logger,
        )
        risk = RiskManager(
            params or RiskParameters(min_profit_threshold=Decimal("0.01")),
            chain_state=chain,
            circuit_breaker=breaker,
            metrics=metrics,
            audit_logger=audit_logger,
            **risk_kwargs,
        )
        strategies = StrategyRegistry(time_source=clock, metrics=metrics)
        orchestrator = FlashLoanOrchestrator(
            ledger=ledger,
            provider=lender,
            route_executor=RouteExecutor(VenueRegistry(adapters), metrics=metrics),
            risk_manager=risk,
            strategies=strategies,
            metrics=metrics,
            audit_logger=audit_logger,
        )
        return Engine(
            ledger=ledger,
            provider=lender,
            venues=adapters,
            chain=chain,
            breaker=breaker,
            risk=risk,
            strategies=strategies,
            orchestrator=orchestrator,
            metrics=metrics,
            audit=audit_logger,
            clock=clock,
        )

    return _factory


@pytest.fixture
def engine(make_engine: Callable[..., Engine]) -> Engine:
    return make_engine()


@pytest.fixture
def system(
    tmp_path: Path, metrics: MetricsCollector, clock: FakeClock
) -> ArbitrageSystem:
    settings = EngineSettings(
        risk=RiskSettings(min_profit_threshold=Decimal("0.01")),
        rate_limit=RateLimitSettings(per_caller_max_requests=5, global_max_requests=0),
        audit_path=tmp_path / "audit.jsonl",
        admin_subjects=[ADMIN],
    )
    built = build_system(
        settings,
        provider=InMemoryFlashLoanProvider("aave", fee_bps=10),
        chain_state=StaticChainState(block_number=100),
        venues=default_venues(),
        metrics=metrics,
        time_source=clock,
    )
    built.grant_role(ADMIN, OPERATOR, "operator")
    built.grant_role(ADMIN, STRATEGIST, "strategist")
    built.grant_role(ADMIN, ON_CALL, "emergency")
    return built
