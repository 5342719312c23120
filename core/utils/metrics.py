# SPDX-License-Identifier: MIT
"""Prometheus metrics collection for FlashRoute.

Counters here are part of the observability side channel: they are updated for
failed attempts as well as successful ones, independently of whether the
financial effects of an attempt were committed.
"""
from __future__ import annotations

from contextlib import contextmanager
from decimal import Decimal
from typing import Any, Dict, Iterator, Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    start_http_server,
)


class MetricsCollector:
    """Centralized metrics collection for the arbitrage engine."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """Initialize metrics collector.

        Args:
            registry: Prometheus registry (uses the process default if None)
        """

        self.registry = registry
        kwargs: Dict[str, Any] = {}
        if registry is not None:
            kwargs["registry"] = registry

        self.arbitrage_attempts_total = Counter(
            "flashroute_arbitrage_attempts_total",
            "Arbitrage attempts grouped by outcome",
            ["base_token", "outcome"],
            **kwargs,
        )
        self.arbitrage_duration = Histogram(
            "flashroute_arbitrage_duration_seconds",
            "Wall-clock time spent executing an arbitrage attempt",
            ["base_token"],
            **kwargs,
        )
        self.arbitrage_gas_used = Histogram(
            "flashroute_arbitrage_gas_used",
            "Gas consumed by committed arbitrage attempts",
            ["base_token"],
            buckets=(50_000, 100_000, 200_000, 400_000, 800_000, 1_600_000),
            **kwargs,
        )
        self.arbitrage_profit_total = Counter(
            "flashroute_arbitrage_profit_total",
            "Cumulative realised profit forwarded to the treasury",
            ["base_token"],
            **kwargs,
        )
        self.admission_rejections_total = Counter(
            "flashroute_admission_rejections_total",
            "Requests rejected before any funds moved",
            ["reason"],
            **kwargs,
        )
        self.hop_failures_total = Counter(
            "flashroute_hop_failures_total",
            "Route hops that failed or missed their slippage floor",
            ["venue", "reason"],
            **kwargs,
        )
        self.token_exposure = Gauge(
            "flashroute_token_exposure",
            "Committed plus reserved exposure per token",
            ["token"],
            **kwargs,
        )
        self.circuit_breaker_state = Gauge(
            "flashroute_circuit_breaker_state",
            "Circuit breaker state (0=closed, 1=half_open, 2=open)",
            **kwargs,
        )
        self.circuit_breaker_trips_total = Counter(
            "flashroute_circuit_breaker_trips_total",
            "Number of times the circuit breaker opened",
            ["reason"],
            **kwargs,
        )
        self.strategy_executions_total = Counter(
            "flashroute_strategy_executions_total",
            "Strategy-sourced executions grouped by outcome",
            ["strategy", "outcome"],
            **kwargs,
        )

    @contextmanager
    def measure_arbitrage(self, base_token: str) -> Iterator[Dict[str, Any]]:
        """Time an attempt and count it under the outcome stored in the context.

        Callers may set ``ctx["outcome"]``; an exception always records
        ``"failed"`` unless the caller already chose a more specific outcome.
        """

        ctx: Dict[str, Any] = {}
        with self.arbitrage_duration.labels(base_token=base_token).time():
            try:
                yield ctx
            except Exception:
                outcome = ctx.get("outcome") or "failed"
                self.arbitrage_attempts_total.labels(
                    base_token=base_token, outcome=outcome
                ).inc()
                raise
        outcome = ctx.get("outcome") or "succeeded"
        self.arbitrage_attempts_total.labels(base_token=base_token, outcome=outcome).inc()

    def record_settlement(self, base_token: str, profit: Decimal, gas_used: int) -> None:
        """Record profit and gas of a committed attempt."""

        self.arbitrage_gas_used.labels(base_token=base_token).observe(float(gas_used))
        if profit > 0:
            self.arbitrage_profit_total.labels(base_token=base_token).inc(float(profit))

    def record_admission_rejection(self, reason: str) -> None:
        self.admission_rejections_total.labels(reason=reason).inc()

    def record_hop_failure(self, venue: str, reason: str) -> None:
        self.hop_failures_total.labels(venue=venue, reason=reason).inc()

    def set_token_exposure(self, token: str, exposure: Decimal) -> None:
        self.token_exposure.labels(token=token).set(float(exposure))

    def set_circuit_breaker_state(self, state: str) -> None:
        value = {"closed": 0.0, "half_open": 1.0, "open": 2.0}.get(state, 2.0)
        self.circuit_breaker_state.set(value)

    def record_circuit_breaker_trip(self, reason: str) -> None:
        self.circuit_breaker_trips_total.labels(reason=reason).inc()

    def record_strategy_execution(self, strategy_id: str, success: bool) -> None:
        outcome = "succeeded" if success else "failed"
        self.strategy_executions_total.labels(strategy=strategy_id, outcome=outcome).inc()

    def render_prometheus(self) -> str:
        """Render the currently collected metrics in Prometheus text format."""

        payload = generate_latest(self.registry) if self.registry else generate_latest()
        return payload.decode("utf-8")


# Global metrics collector instance
_collector: Optional[MetricsCollector] = None


def get_metrics_collector(registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Return the process-wide collector, creating it on first use."""

    global _collector
    if _collector is None:
        _collector = MetricsCollector(registry)
    return _collector


def start_metrics_server(port: int = 8000, addr: str = "") -> None:
    """Start the Prometheus metrics HTTP server.

    Args:
        port: Port to listen on
        addr: Address to bind to (empty string for all interfaces)
    """

    start_http_server(port, addr)


__all__ = [
    "MetricsCollector",
    "get_metrics_collector",
    "start_metrics_server",
]
