# SPDX-License-Identifier: MIT
"""Registry of pluggable strategy decision modules.

Strategies are never deleted: removing one flips ``is_active`` so that its
execution history stays available for reporting.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Any, Callable, Dict

from core.utils.logging import get_logger
from core.utils.metrics import MetricsCollector, get_metrics_collector
from domain.arbitrage import ArbitrageRequest, to_decimal
from execution.errors import (
    InvalidStrategy,
    StrategyAlreadyExists,
    StrategyCooldown,
    StrategyInactive,
    UnknownStrategy,
)
from interfaces.execution import StrategyContext, StrategyDecision

__all__ = ["StrategyConfig", "StrategyRegistry"]

_ZERO = Decimal("0")


@dataclass(slots=True)
class StrategyConfig:
    """Execution limits and running statistics for one strategy.

    Attributes:
        is_active: Inactive strategies are rejected at admission.
        min_profit: Strategy specific profit floor applied on top of the
            global threshold.
        max_slippage_bps: Strategy slippage ceiling; ``None`` defers to the
            global and token limits.
        gas_limit: Ceiling on cumulative route gas; ``None`` disables it.
        cooldown_seconds: Minimum spacing between executions.
        last_execution_at: Epoch seconds of the last recorded execution.
    """

    is_active: bool = True
    min_profit: Decimal = _ZERO
    max_slippage_bps: int | None = None
    gas_limit: int | None = None
    cooldown_seconds: float = 0.0
    last_execution_at: float | None = None
    success_count: int = 0
    execution_count: int = 0
    cumulative_profit: Decimal = _ZERO
    cumulative_gas_used: int = 0

    def __post_init__(self) -> None:
        self.min_profit = to_decimal(self.min_profit, name="min_profit")
        if self.min_profit < _ZERO:
            raise ValueError("min_profit must be non-negative")
        if self.max_slippage_bps is not None and not 0 <= self.max_slippage_bps <= 10_000:
            raise ValueError("max_slippage_bps must be within [0, 10000]")
        if self.gas_limit is not None and self.gas_limit <= 0:
            raise ValueError("gas_limit must be positive")
        if self.cooldown_seconds < 0:
            raise ValueError("cooldown_seconds must be non-negative")

    @property
    def success_rate(self) -> float:
        if self.execution_count == 0:
            return 0.0
        return self.success_count / self.execution_count

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_active": self.is_active,
            "min_profit": str(self.min_profit),
            "max_slippage_bps": self.max_slippage_bps,
            "gas_limit": self.gas_limit,
            "cooldown_seconds": self.cooldown_seconds,
            "last_execution_at": self.last_execution_at,
            "success_count": self.success_count,
            "execution_count": self.execution_count,
            "cumulative_profit": str(self.cumulative_profit),
            "cumulative_gas_used": self.cumulative_gas_used,
            "success_rate": self.success_rate,
        }


class StrategyRegistry:
    """Thread-safe store of strategy decision modules and their configs."""

    def __init__(
        self,
        *,
        time_source: Callable[[], float] | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._decisions: Dict[str, StrategyDecision] = {}
        self._configs: Dict[str, StrategyConfig] = {}
        self._lock = threading.RLock()
        self._time = time_source or time.time
        self._metrics = metrics or get_metrics_collector()
        self._logger = get_logger(__name__)

    def _require(self, strategy_id: str) -> StrategyConfig:
        try:
            return self._configs[strategy_id]
        except KeyError as exc:
            raise UnknownStrategy(strategy_id) from exc

    def add_strategy(
        self,
        strategy_id: str,
        decision: StrategyDecision,
        config: StrategyConfig | None = None,
    ) -> StrategyConfig:
        strategy_id = (strategy_id or "").strip()
        if not strategy_id:
            raise ValueError("strategy_id must be provided")
        if not isinstance(decision, StrategyDecision):
            raise InvalidStrategy(
                f"{type(decision).__name__} does not implement propose(context)"
            )
        stored = replace(config) if config is not None else StrategyConfig()
        with self._lock:
            if strategy_id in self._configs:
                raise StrategyAlreadyExists(f"Strategy already exists: {strategy_id}")
            self._decisions[strategy_id] = decision
            self._configs[strategy_id] = stored
        self._logger.info("Strategy registered", strategy_id=strategy_id, **stored.to_dict())
        return replace(stored)

    def deactivate_strategy(self, strategy_id: str) -> StrategyConfig:
        return self._set_active(strategy_id, False)

    def remove_strategy(self, strategy_id: str) -> StrategyConfig:
        """Deactivate ``strategy_id``; its configuration and history are kept."""

        return self.deactivate_strategy(strategy_id)

    def activate_strategy(self, strategy_id: str) -> StrategyConfig:
        return self._set_active(strategy_id, True)

    def _set_active(self, strategy_id: str, active: bool) -> StrategyConfig:
        with self._lock:
            config = self._require(strategy_id)
            config.is_active = active
            snapshot = replace(config)
        self._logger.info(
            "Strategy activated" if active else "Strategy deactivated",
            strategy_id=strategy_id,
        )
        return snapshot

    def get_config(self, strategy_id: str) -> StrategyConfig:
        with self._lock:
            return replace(self._require(strategy_id))

    def active_strategies(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(sid for sid, config in self._configs.items() if config.is_active)

    def __contains__(self, strategy_id: object) -> bool:
        with self._lock:
            return strategy_id in self._configs

    def ensure_ready(self, strategy_id: str, *, now: float | None = None) -> StrategyConfig:
        """Return a config snapshot or raise if the strategy may not run now."""

        moment = self._time() if now is None else now
        with self._lock:
            config = self._require(strategy_id)
            if not config.is_active:
                raise StrategyInactive(
                    f"Strategy {strategy_id} is not active", strategy_id=strategy_id
                )
            if config.cooldown_seconds > 0 and config.last_execution_at is not None:
                elapsed = moment - config.last_execution_at
                if elapsed < config.cooldown_seconds:
                    raise StrategyCooldown(
                        f"Strategy {strategy_id} is cooling down",
                        strategy_id=strategy_id,
                        retry_in_seconds=config.cooldown_seconds - elapsed,
                    )
            return replace(config)

    def propose(
        self,
        strategy_id: str,
        context: StrategyContext,
        *,
        now: float | None = None,
    ) -> ArbitrageRequest | None:
        """Ask the strategy for a request and attribute it to ``strategy_id``."""

        self.ensure_ready(strategy_id, now=now)
        with self._lock:
            decision = self._decisions[strategy_id]
        proposal = decision.propose(context)
        if proposal is None:
            self._logger.debug("Strategy declined to propose", strategy_id=strategy_id)
            return None
        if not isinstance(proposal, ArbitrageRequest):
            raise InvalidStrategy(
                f"Strategy {strategy_id} returned {type(proposal).__name__}, expected ArbitrageRequest"
            )
        return proposal.with_strategy(strategy_id)

    def record_execution_result(
        self,
        strategy_id: str,
        success: bool,
        profit: Decimal = _ZERO,
        gas_used: int = 0,
        *,
        now: float | None = None,
    ) -> StrategyConfig:
        moment = self._time() if now is None else now
        with self._lock:
            config = self._require(strategy_id)
            config.execution_count += 1
            config.last_execution_at = moment
            if success:
                config.success_count += 1
                config.cumulative_profit += profit
                config.cumulative_gas_used += int(gas_used)
            snapshot = replace(config)
        self._metrics.record_strategy_execution(strategy_id, success)
        return snapshot
