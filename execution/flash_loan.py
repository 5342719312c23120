# SPDX-License-Identifier: MIT
"""Atomic flash-loan arbitrage orchestration.

One attempt borrows ``borrow_amount`` of the base token, runs the route inside
the lender's callback, verifies profit, repays ``borrow + fee`` and forwards
the profit to the treasury. Every balance movement is staged on a
:class:`~execution.ledger.PendingChangeset` that is applied only once the loan
has been repaid; any failure discards it, leaving balances exactly as they were.

Failure bookkeeping (metrics, audit trail, circuit breaker, strategy
statistics) is written outside the changeset and therefore survives the
discard.
"""

from __future__ import annotations

import threading
from decimal import Decimal, localcontext
from typing import TYPE_CHECKING, Iterable

from core.utils.logging import get_logger
from core.utils.metrics import MetricsCollector, get_metrics_collector
from domain.arbitrage import (
    ArbitrageRequest,
    ArbitrageResult,
    BatchPolicy,
    BatchResult,
    RouteOutcome,
    amount_context,
    ensure_requests,
)
from interfaces.execution import FlashLoanProvider

from .audit import ExecutionAuditLogger, get_execution_audit_logger
from .errors import (
    AdmissionRejected,
    ArbitrageError,
    ExecutionFailed,
    InvalidRequest,
    ReentrantCall,
    RepaymentShortfall,
)
from .ledger import BalanceLedger, PendingChangeset
from .risk import ExposureReservation, RiskManager
from .routing import RouteExecutor

if TYPE_CHECKING:
    from strategies.registry import StrategyConfig, StrategyRegistry

__all__ = ["FlashLoanOrchestrator"]

_ZERO = Decimal("0")
DEFAULT_MAX_BATCH_SIZE = 10


class _LoanCallback:
    """Receiver handed to the lender for a single attempt."""

    def __init__(
        self,
        orchestrator: "FlashLoanOrchestrator",
        request: ArbitrageRequest,
        changeset: PendingChangeset,
        strategy_config: StrategyConfig | None,
    ) -> None:
        self._orchestrator = orchestrator
        self._request = request
        self._changeset = changeset
        self._strategy_config = strategy_config
        self.invoked = False
        self.fee: Decimal | None = None
        self.outcome: RouteOutcome | None = None
        self.profit: Decimal | None = None

    def on_flash_loan(self, asset: str, amount: Decimal, fee: Decimal) -> Decimal:
        if self.invoked:
            raise RepaymentShortfall("Lender invoked the callback more than once", asset=asset)
        self.invoked = True
        request = self._request
        if asset != request.base_token or amount != request.borrow_amount:
            raise RepaymentShortfall(
                "Lender advanced a different loan than requested",
                asset=asset,
                amount=amount,
                expected_asset=request.base_token,
                expected_amount=request.borrow_amount,
            )
        orchestrator = self._orchestrator
        engine = orchestrator.engine_account
        lender = orchestrator.lender_account
        changeset = self._changeset

        opening_balance = changeset.balance(engine, asset)
        changeset.transfer(lender, engine, asset, amount, memo="flash loan")
        gas_limit = self._strategy_config.gas_limit if self._strategy_config else None
        outcome = orchestrator.route_executor.execute(
            request.routes,
            amount,
            changeset=changeset,
            account=engine,
            gas_limit=gas_limit,
        )
        final_balance = changeset.balance(engine, asset) - opening_balance
        profit = final_balance - (amount + fee)
        orchestrator.risk_manager.validate_after_execution(
            request, outcome, profit, strategy_config=self._strategy_config
        )
        repayment = amount + fee
        changeset.transfer(engine, lender, asset, repayment, memo="flash loan repayment")
        self.fee = fee
        self.outcome = outcome
        self.profit = profit
        return repayment


class FlashLoanOrchestrator:
    """Run arbitrage requests as all-or-nothing flash-loan attempts."""

    def __init__(
        self,
        *,
        ledger: BalanceLedger,
        provider: FlashLoanProvider,
        route_executor: RouteExecutor,
        risk_manager: RiskManager,
        strategies: StrategyRegistry | None = None,
        engine_account: str = "engine",
        treasury_account: str = "treasury",
        max_batch_size: int = DEFAULT_MAX_BATCH_SIZE,
        metrics: MetricsCollector | None = None,
        audit_logger: ExecutionAuditLogger | None = None,
    ) -> None:
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be at least 1")
        self.ledger = ledger
        self.provider = provider
        self.route_executor = route_executor
        self.risk_manager = risk_manager
        self.strategies = strategies
        self.engine_account = engine_account
        self.max_batch_size = int(max_batch_size)
        self._treasury = treasury_account
        self._treasury_lock = threading.Lock()
        self._guard = threading.local()
        self._logger = get_logger(__name__)
        self._metrics = metrics or get_metrics_collector()
        self._audit = audit_logger or get_execution_audit_logger()
        ledger.add_internal_account(engine_account)
        ledger.add_internal_account(treasury_account)

    @property
    def lender_account(self) -> str:
        return f"lender:{self.provider.name}"

    @property
    def treasury_account(self) -> str:
        with self._treasury_lock:
            return self._treasury

    def set_treasury(self, account: str) -> str:
        account = (account or "").strip()
        if not account:
            raise ValueError("treasury account must be provided")
        if account == self.engine_account:
            raise ValueError("treasury must differ from the engine account")
        self.ledger.add_internal_account(account)
        with self._treasury_lock:
            previous, self._treasury = self._treasury, account
        self._logger.warning("Treasury updated", previous=previous, current=account)
        self._audit.emit({"event": "treasury_updated", "previous": previous, "current": account})
        return account

    # -- single attempt -----------------------------------------------------
    def execute_arbitrage(
        self,
        request: ArbitrageRequest,
        *,
        caller: str = "system",
        strategy_config: StrategyConfig | None = None,
    ) -> ArbitrageResult:
        """Execute ``request`` atomically.

        Returns:
            A successful :class:`ArbitrageResult`.

        Raises:
            AdmissionRejected: The request was refused before any funds moved.
            ExecutionFailed: A hop failed; nothing was committed.
            SlippageExceeded: A hop or the whole route missed its floor.
            ProfitInsufficient: The route completed but did not pay enough.
            RepaymentShortfall: The loan could not be repaid exactly.
        """

        if getattr(self._guard, "active", False):
            exc = ReentrantCall(
                "An arbitrage attempt is already running on this thread",
                request_id=request.request_id,
            )
            self._reject(request, exc, caller=caller)
            raise exc
        self._guard.active = True
        try:
            with localcontext(amount_context()):
                return self._execute(request, caller=caller, strategy_config=strategy_config)
        finally:
            self._guard.active = False

    def _execute(
        self,
        request: ArbitrageRequest,
        *,
        caller: str,
        strategy_config: StrategyConfig | None,
    ) -> ArbitrageResult:
        with self._logger.operation(
            "execute_arbitrage",
            correlation_id=request.request_id,
            base_token=request.base_token,
            borrow_amount=request.borrow_amount,
            strategy_id=request.strategy_id,
            caller=caller,
        ) as op, self._metrics.measure_arbitrage(request.base_token) as measured:
            try:
                config = self._admit_strategy_and_venues(request, strategy_config, caller=caller)
                reservation = self.risk_manager.validate_before_execution(
                    request, strategy_config=config
                )
            except AdmissionRejected:
                measured["outcome"] = "rejected"
                op["status"] = "rejected"
                raise
            except Exception as exc:
                rejection = AdmissionRejected(
                    f"Admission failed: {type(exc).__name__}: {exc}",
                    error_type=type(exc).__name__,
                )
                self._reject(request, rejection, caller=caller)
                measured["outcome"] = "rejected"
                op["status"] = "rejected"
                raise rejection from exc

            changeset = self.ledger.begin()
            callback = _LoanCallback(self, request, changeset, config)
            try:
                returned_fee = self.provider.flash_loan(
                    request.base_token, request.borrow_amount, callback
                )
                fee, outcome, profit = self._settle(request, callback, returned_fee, changeset)
            except Exception as exc:
                changeset.discard()
                failure = exc if isinstance(exc, ArbitrageError) else ExecutionFailed(
                    f"Unexpected {type(exc).__name__}: {exc}",
                    error_type=type(exc).__name__,
                )
                self._record_failure(request, reservation, failure, caller=caller)
                measured["outcome"] = failure.kind
                op["status"] = "failure"
                if failure is exc:
                    raise
                raise failure from exc

            result = self._record_success(
                request, reservation, fee=fee, outcome=outcome, profit=profit, caller=caller
            )
            op.update(profit=profit, gas_used=outcome.gas_used, fee=fee)
            return result

    def _admit_strategy_and_venues(
        self,
        request: ArbitrageRequest,
        strategy_config: StrategyConfig | None,
        *,
        caller: str,
    ) -> StrategyConfig | None:
        try:
            config = strategy_config
            if request.strategy_id is not None and config is None:
                if self.strategies is None or request.strategy_id not in self.strategies:
                    raise InvalidRequest(
                        f"Unknown strategy {request.strategy_id}",
                        strategy_id=request.strategy_id,
                    )
                config = self.strategies.ensure_ready(request.strategy_id)
            missing = self.route_executor.venues.missing(request.venues)
            if missing:
                raise InvalidRequest(
                    f"Route uses unregistered venues: {', '.join(missing)}",
                    venues=list(missing),
                )
            return config
        except AdmissionRejected as exc:
            self._reject(request, exc, caller=caller)
            raise

    def _settle(
        self,
        request: ArbitrageRequest,
        callback: _LoanCallback,
        returned_fee: Decimal,
        changeset: PendingChangeset,
    ) -> tuple[Decimal, RouteOutcome, Decimal]:
        if not callback.invoked or callback.outcome is None or callback.profit is None:
            raise RepaymentShortfall(
                "Lender returned without completing the callback",
                lender=self.provider.name,
            )
        if returned_fee != callback.fee:
            raise RepaymentShortfall(
                f"Lender reported fee {returned_fee} but charged {callback.fee}",
                lender=self.provider.name,
                reported_fee=returned_fee,
                charged_fee=callback.fee,
            )
        profit = callback.profit
        if profit > _ZERO:
            changeset.transfer(
                self.engine_account,
                self.treasury_account,
                request.base_token,
                profit,
                memo="profit",
            )
        self.ledger.apply(changeset)
        return returned_fee, callback.outcome, profit

    # -- bookkeeping --------------------------------------------------------
    def _reject(self, request: ArbitrageRequest, exc: AdmissionRejected, *, caller: str) -> None:
        self._metrics.record_admission_rejection(exc.kind)
        self._logger.warning(
            "Arbitrage rejected",
            request_id=request.request_id,
            reason=exc.kind,
            error=str(exc),
            caller=caller,
        )
        self._audit.emit(
            {
                "event": "arbitrage_rejected",
                "request_id": request.request_id,
                "caller": caller,
                "error_type": type(exc).__name__,
                "reason": str(exc),
                "details": dict(exc.details),
            }
        )

    def _record_success(
        self,
        request: ArbitrageRequest,
        reservation: ExposureReservation,
        *,
        fee: Decimal,
        outcome: RouteOutcome,
        profit: Decimal,
        caller: str,
    ) -> ArbitrageResult:
        self.risk_manager.commit_exposure(reservation)
        self.risk_manager.state.record_success(profit, outcome.gas_used)
        self.risk_manager.circuit_breaker.record_success()
        if request.strategy_id is not None and self.strategies is not None:
            self.strategies.record_execution_result(
                request.strategy_id, True, profit, outcome.gas_used
            )
        self._metrics.record_settlement(request.base_token, profit, outcome.gas_used)
        self._logger.info(
            "Arbitrage settled",
            request_id=request.request_id,
            profit=profit,
            fee=fee,
            gas_used=outcome.gas_used,
            treasury=self.treasury_account,
        )
        self._audit.emit(
            {
                "event": "arbitrage_succeeded",
                "request_id": request.request_id,
                "caller": caller,
                "base_token": request.base_token,
                "borrow_amount": request.borrow_amount,
                "fee": fee,
                "profit": profit,
                "gas_used": outcome.gas_used,
                "strategy_id": request.strategy_id,
                "hops": [fill.to_dict() for fill in outcome.fills],
            }
        )
        return ArbitrageResult(
            request_id=request.request_id,
            base_token=request.base_token,
            success=True,
            profit=profit,
            gas_used=outcome.gas_used,
            fee=fee,
            strategy_id=request.strategy_id,
            hops=outcome.fills,
        )

    def _record_failure(
        self,
        request: ArbitrageRequest,
        reservation: ExposureReservation,
        exc: ArbitrageError,
        *,
        caller: str,
    ) -> None:
        self.risk_manager.release_exposure(reservation)
        self.risk_manager.state.record_failure()
        self.risk_manager.circuit_breaker.record_failure(exc.kind)
        if request.strategy_id is not None and self.strategies is not None:
            self.strategies.record_execution_result(request.strategy_id, False)
        log = self._logger.critical if isinstance(exc, RepaymentShortfall) else self._logger.warning
        log(
            "Arbitrage rolled back",
            request_id=request.request_id,
            error_type=type(exc).__name__,
            error=str(exc),
            **{f"detail_{key}": value for key, value in exc.details.items()},
        )
        self._audit.emit(
            {
                "event": "arbitrage_failed",
                "request_id": request.request_id,
                "caller": caller,
                "base_token": request.base_token,
                "borrow_amount": request.borrow_amount,
                "strategy_id": request.strategy_id,
                "error_type": type(exc).__name__,
                "kind": exc.kind,
                "reason": str(exc),
                "details": dict(exc.details),
            }
        )

    # -- batches ------------------------------------------------------------
    def execute_batch_arbitrage(
        self,
        requests: Iterable[ArbitrageRequest],
        *,
        caller: str = "system",
        policy: BatchPolicy | str = BatchPolicy.FAIL_SOFT,
    ) -> BatchResult:
        """Execute each request as its own atomic unit.

        ``FAIL_SOFT`` records failures and carries on. ``FAIL_FAST`` stops at
        the first failure and marks the remaining requests as skipped; requests
        that already committed stay committed.
        """

        items = ensure_requests(requests)
        if not items:
            raise InvalidRequest("Batch must contain at least one request")
        if len(items) > self.max_batch_size:
            raise InvalidRequest(
                f"Too many operations in batch: {len(items)} > {self.max_batch_size}",
                size=len(items),
                limit=self.max_batch_size,
            )
        mode = BatchPolicy(policy)
        results: list[ArbitrageResult] = []
        for index, request in enumerate(items):
            try:
                results.append(self.execute_arbitrage(request, caller=caller))
            except ArbitrageError as exc:
                results.append(ArbitrageResult.failure(request, exc, details=exc.details))
                if mode is BatchPolicy.FAIL_FAST:
                    reason = f"skipped after request {request.request_id} failed"
                    results.extend(
                        ArbitrageResult.skipped_request(pending, reason)
                        for pending in items[index + 1 :]
                    )
                    break
        batch = BatchResult(results=tuple(results), policy=mode)
        with localcontext(amount_context()):
            total_profit = batch.total_profit
        self._audit.emit(
            {
                "event": "batch_executed",
                "caller": caller,
                "policy": mode.value,
                "succeeded": batch.succeeded,
                "failed": batch.failed,
                "skipped": batch.skipped,
                "total_profit": total_profit,
            }
        )
        return batch
