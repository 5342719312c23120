"""Service facade wiring the arbitrage engine and applying role checks."""

from __future__ import annotations

import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Iterable, Mapping

from core.utils.logging import configure_logging, get_logger
from core.utils.metrics import MetricsCollector, get_metrics_collector, start_metrics_server
from domain.arbitrage import ArbitrageRequest, ArbitrageResult, BatchPolicy, BatchResult, GlobalMetrics
from execution.adapters.registry import VenueRegistry
from execution.adapters.simulated import InMemoryFlashLoanProvider, StaticChainState
from execution.audit import ExecutionAuditLogger
from execution.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerState,
    SQLiteCircuitBreakerStateStore,
)
from execution.errors import RateLimited
from execution.flash_loan import FlashLoanOrchestrator
from execution.ledger import BalanceLedger
from execution.rate_limit import CallerRateLimiter
from execution.risk import RiskManager, RiskParameters, TokenRiskProfile
from execution.routing import RouteExecutor
from interfaces.execution import (
    ChainState,
    ExchangeAdapter,
    FlashLoanProvider,
    StrategyContext,
    StrategyDecision,
)
from strategies.registry import StrategyConfig, StrategyRegistry

from .security.rbac import AccessController, build_access_controller
from .settings import EngineSettings

__all__ = ["ArbitrageSystem", "bootstrap_observability", "build_system"]


class ArbitrageSystem:
    """Upward operation surface of the engine.

    Every mutating or executing call takes the acting ``caller`` first and is
    checked against :class:`AccessController` before anything else happens.
    Read-only getters require no role.
    """

    def __init__(
        self,
        *,
        orchestrator: FlashLoanOrchestrator,
        access: AccessController,
        rate_limiter: CallerRateLimiter,
        chain_state: ChainState,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._access = access
        self._rate_limiter = rate_limiter
        self._chain = chain_state
        self._metrics = metrics or get_metrics_collector()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Accessors
    @property
    def orchestrator(self) -> FlashLoanOrchestrator:
        return self._orchestrator

    @property
    def access(self) -> AccessController:
        return self._access

    @property
    def risk_manager(self) -> RiskManager:
        return self._orchestrator.risk_manager

    @property
    def strategies(self) -> StrategyRegistry:
        assert self._orchestrator.strategies is not None
        return self._orchestrator.strategies

    @property
    def venues(self) -> VenueRegistry:
        return self._orchestrator.route_executor.venues

    @property
    def ledger(self) -> BalanceLedger:
        return self._orchestrator.ledger

    @property
    def chain_state(self) -> ChainState:
        return self._chain

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics

    def _authorize(self, caller: str, action: str, *, rate_limited: bool = False) -> None:
        self._access.enforce(caller, action)
        if rate_limited:
            try:
                self._rate_limiter.check(caller)
            except RateLimited as exc:
                self._metrics.record_admission_rejection(exc.kind)
                raise

    # ------------------------------------------------------------------
    # Execution
    def execute_arbitrage(self, caller: str, request: ArbitrageRequest) -> ArbitrageResult:
        self._authorize(caller, "execute_arbitrage", rate_limited=True)
        return self._orchestrator.execute_arbitrage(request, caller=caller)

    def execute_batch_arbitrage(
        self,
        caller: str,
        requests: Iterable[ArbitrageRequest],
        *,
        policy: BatchPolicy | str = BatchPolicy.FAIL_SOFT,
    ) -> BatchResult:
        self._authorize(caller, "execute_batch_arbitrage", rate_limited=True)
        return self._orchestrator.execute_batch_arbitrage(requests, caller=caller, policy=policy)

    def strategy_context(self, market_data: Mapping[str, Any] | None = None) -> StrategyContext:
        return StrategyContext(
            block_number=self._chain.block_number(),
            gas_price_wei=self._chain.gas_price_wei(),
            timestamp=self._clock(),
            market_data=dict(market_data or {}),
        )

    def execute_strategy(
        self,
        caller: str,
        strategy_id: str,
        *,
        market_data: Mapping[str, Any] | None = None,
    ) -> ArbitrageResult | None:
        """Ask ``strategy_id`` for a proposal and execute it; ``None`` if it declines."""

        self._authorize(caller, "execute_strategy", rate_limited=True)
        request = self.strategies.propose(strategy_id, self.strategy_context(market_data))
        if request is None:
            return None
        return self._orchestrator.execute_arbitrage(request, caller=caller)

    # ------------------------------------------------------------------
    # Risk configuration
    def update_risk_params(
        self, caller: str, params: RiskParameters | Mapping[str, Any]
    ) -> RiskParameters:
        self._authorize(caller, "update_risk_params")
        if not isinstance(params, RiskParameters):
            params = RiskParameters.from_mapping(params)
        return self.risk_manager.update_risk_params(params)

    def set_token_profile(
        self, caller: str, token: str, profile: TokenRiskProfile | None
    ) -> TokenRiskProfile | None:
        self._authorize(caller, "set_token_profile")
        self.risk_manager.set_token_profile(token, profile)
        return profile

    def set_token_whitelist(
        self, caller: str, tokens: Iterable[str] | None
    ) -> frozenset[str] | None:
        self._authorize(caller, "set_token_whitelist")
        return self.risk_manager.set_token_whitelist(tokens)

    def reset_exposure(self, caller: str, token: str | None = None) -> dict[str, Decimal]:
        self._authorize(caller, "reset_exposure")
        return self.risk_manager.reset_exposure(token)

    # ------------------------------------------------------------------
    # Strategies
    def add_strategy(
        self,
        caller: str,
        strategy_id: str,
        decision: StrategyDecision,
        config: StrategyConfig | None = None,
    ) -> StrategyConfig:
        self._authorize(caller, "add_strategy")
        return self.strategies.add_strategy(strategy_id, decision, config)

    def remove_strategy(self, caller: str, strategy_id: str) -> StrategyConfig:
        self._authorize(caller, "remove_strategy")
        return self.strategies.remove_strategy(strategy_id)

    def activate_strategy(self, caller: str, strategy_id: str) -> StrategyConfig:
        self._authorize(caller, "activate_strategy")
        return self.strategies.activate_strategy(strategy_id)

    # ------------------------------------------------------------------
    # Venues and treasury
    def register_venue(
        self, caller: str, venue: str, adapter: ExchangeAdapter, *, override: bool = False
    ) -> None:
        self._authorize(caller, "register_venue")
        self.venues.register(venue, adapter, override=override)

    def remove_venue(self, caller: str, venue: str) -> bool:
        self._authorize(caller, "remove_venue")
        return self.venues.unregister(venue)

    def set_treasury(self, caller: str, account: str) -> str:
        self._authorize(caller, "set_treasury")
        return self._orchestrator.set_treasury(account)

    # ------------------------------------------------------------------
    # Circuit breaker
    def emergency_stop(self, caller: str, reason: str) -> CircuitBreakerState:
        self._authorize(caller, "emergency_stop")
        self._logger.critical("Emergency stop requested", caller=caller, reason=reason)
        return self.risk_manager.circuit_breaker.emergency_stop(reason)

    def resume(self, caller: str) -> CircuitBreakerState:
        self._authorize(caller, "resume")
        self._logger.warning("Resume requested", caller=caller)
        return self.risk_manager.circuit_breaker.resume()

    def trip_circuit_breaker(self, caller: str, reason: str) -> CircuitBreakerState:
        self._authorize(caller, "trip_circuit_breaker")
        return self.risk_manager.circuit_breaker.trip(reason)

    def reset_circuit_breaker(self, caller: str) -> CircuitBreakerState:
        self._authorize(caller, "reset_circuit_breaker")
        return self.risk_manager.circuit_breaker.reset()

    # ------------------------------------------------------------------
    # Roles
    def grant_role(self, caller: str, subject: str, role: str) -> bool:
        self._authorize(caller, "grant_role")
        return self._access.grant_role(subject, role, granted_by=caller)

    def revoke_role(self, caller: str, subject: str, role: str) -> bool:
        self._authorize(caller, "revoke_role")
        return self._access.revoke_role(subject, role, revoked_by=caller)

    # ------------------------------------------------------------------
    # Read-only views
    def get_risk_params(self) -> RiskParameters:
        return self.risk_manager.params

    def get_global_metrics(self) -> GlobalMetrics:
        return self.risk_manager.global_metrics()

    def get_strategy_config(self, strategy_id: str) -> StrategyConfig:
        return self.strategies.get_config(strategy_id)

    def get_circuit_breaker_state(self) -> CircuitBreakerState:
        return self.risk_manager.circuit_breaker.snapshot()

    def get_token_profile(self, token: str) -> TokenRiskProfile | None:
        return self.risk_manager.token_profile(token)

    def get_exposures(self) -> dict[str, Decimal]:
        return self.risk_manager.state.exposures()

    def get_treasury(self) -> str:
        return self._orchestrator.treasury_account

    def balance(self, account: str, token: str) -> Decimal:
        return self.ledger.balance(account, token)


def build_system(
    settings: EngineSettings | None = None,
    *,
    provider: FlashLoanProvider | None = None,
    chain_state: ChainState | None = None,
    venues: Mapping[str, ExchangeAdapter] | None = None,
    ledger: BalanceLedger | None = None,
    metrics: MetricsCollector | None = None,
    audit_logger: ExecutionAuditLogger | None = None,
    time_source: Callable[[], float] | None = None,
) -> ArbitrageSystem:
    """Assemble an :class:`ArbitrageSystem` from ``settings``.

    Collaborators default to the in-memory reference implementations, which
    is what the CLI dry-run and the test-suite use.
    """

    settings = settings or EngineSettings()
    metrics = metrics or get_metrics_collector()
    audit = audit_logger or ExecutionAuditLogger(settings.audit_path)
    chain = chain_state or StaticChainState()
    clock = time_source or time.monotonic

    store = None
    if settings.circuit_breaker.state_path is not None:
        store = SQLiteCircuitBreakerStateStore(settings.circuit_breaker.state_path)
    breaker = CircuitBreaker(
        settings.circuit_breaker.failure_threshold,
        settings.circuit_breaker.window_seconds,
        settings.circuit_breaker.recovery_timeout_seconds,
        time_source=clock,
        store=store,
        metrics=metrics,
        audit_logger=audit,
    )
    risk = RiskManager(
        settings.risk.to_parameters(),
        chain_state=chain,
        circuit_breaker=breaker,
        token_whitelist=settings.token_whitelist,
        metrics=metrics,
        audit_logger=audit,
    )
    registry = VenueRegistry(venues)
    orchestrator = FlashLoanOrchestrator(
        ledger=ledger or BalanceLedger(),
        provider=provider or InMemoryFlashLoanProvider(),
        route_executor=RouteExecutor(registry, metrics=metrics),
        risk_manager=risk,
        strategies=StrategyRegistry(metrics=metrics),
        engine_account=settings.engine_account,
        treasury_account=settings.treasury_account,
        max_batch_size=settings.max_batch_size,
        metrics=metrics,
        audit_logger=audit,
    )
    access = build_access_controller(
        policy_path=settings.access_policy_path,
        admins=settings.admin_subjects,
        audit_logger=audit,
    )
    limiter = CallerRateLimiter(
        settings.rate_limit.caller_policy(),
        settings.rate_limit.global_policy(),
        time_source=clock,
    )
    return ArbitrageSystem(
        orchestrator=orchestrator,
        access=access,
        rate_limiter=limiter,
        chain_state=chain,
        metrics=metrics,
    )


def bootstrap_observability(settings: EngineSettings, *, stream: Any = None) -> None:
    """Configure logging and, when ``metrics_port`` is set, the metrics endpoint."""

    configure_logging(level=settings.log_level, use_json=settings.log_json, stream=stream)
    logger = get_logger(__name__)
    if settings.metrics_port is None:
        return
    try:
        start_metrics_server(port=settings.metrics_port)
    except (OSError, RuntimeError) as exc:
        logger.warning(
            "Prometheus metrics requested but unavailable",
            port=settings.metrics_port,
            error=str(exc),
        )
        return
    logger.info("Prometheus metrics server started", port=settings.metrics_port)
