# SPDX-License-Identifier: MIT
from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from execution.circuit_breaker import (
    CircuitBreaker,
    CircuitState,
    PauseStateCorrupted,
    SQLiteCircuitBreakerStateStore,
)
from execution.errors import CircuitOpen
from tests.helpers import FakeClock


@pytest.fixture
def breaker(clock: FakeClock, metrics, audit_logger) -> CircuitBreaker:
    return CircuitBreaker(
        3, 60.0, 30.0, time_source=clock, metrics=metrics, audit_logger=audit_logger
    )


def _fail(breaker: CircuitBreaker, times: int) -> None:
    for _ in range(times):
        breaker.before_attempt()
        breaker.record_failure("swap_failed")


def test_opens_after_threshold_failures(breaker: CircuitBreaker, metrics) -> None:
    _fail(breaker, 3)

    assert breaker.state is CircuitState.OPEN
    with pytest.raises(CircuitOpen) as excinfo:
        breaker.before_attempt()
    assert excinfo.value.details["retry_in_seconds"] == pytest.approx(30.0)
    assert metrics.registry.get_sample_value("flashroute_circuit_breaker_state") == 2.0
    assert (
        metrics.registry.get_sample_value(
            "flashroute_circuit_breaker_trips_total", {"reason": "failures"}
        )
        == 1.0
    )


def test_failures_outside_window_are_forgotten(breaker: CircuitBreaker, clock: FakeClock) -> None:
    _fail(breaker, 2)
    clock.advance(61)
    _fail(breaker, 2)

    assert breaker.state is CircuitState.CLOSED
    assert breaker.snapshot().failure_count == 2


def test_half_open_admits_single_trial(breaker: CircuitBreaker, clock: FakeClock) -> None:
    _fail(breaker, 3)
    clock.advance(30)

    assert breaker.state is CircuitState.HALF_OPEN
    breaker.before_attempt()
    with pytest.raises(CircuitOpen, match="trial attempt is already running"):
        breaker.before_attempt()

    breaker.record_success()

    assert breaker.state is CircuitState.CLOSED
    assert breaker.snapshot().failure_count == 0


def test_failed_trial_reopens(breaker: CircuitBreaker, clock: FakeClock) -> None:
    _fail(breaker, 3)
    clock.advance(30)

    breaker.before_attempt()
    breaker.record_failure("slippage_exceeded")

    snapshot = breaker.snapshot()
    assert snapshot.state is CircuitState.OPEN
    assert "trial failed" in snapshot.last_trip_reason


def test_abandoned_trial_frees_the_slot(breaker: CircuitBreaker, clock: FakeClock) -> None:
    _fail(breaker, 3)
    clock.advance(30)

    breaker.before_attempt()
    breaker.abandon_attempt()

    breaker.before_attempt()


def test_success_in_closed_state_does_not_clear_window(breaker: CircuitBreaker) -> None:
    _fail(breaker, 2)
    breaker.record_success()
    _fail(breaker, 1)

    assert breaker.state is CircuitState.OPEN


def test_manual_trip_and_reset(breaker: CircuitBreaker, audit_logger) -> None:
    snapshot = breaker.trip("oracle drift")

    assert snapshot.state is CircuitState.OPEN
    assert snapshot.last_trip_reason == "oracle drift"
    assert not snapshot.accepting

    snapshot = breaker.reset()

    assert snapshot.state is CircuitState.CLOSED
    breaker.before_attempt()
    events = [event["event"] for event in audit_logger.read_events()]
    assert events == ["circuit_breaker_opened", "circuit_breaker_reset"]


def test_emergency_stop_outlasts_recovery(breaker: CircuitBreaker, clock: FakeClock) -> None:
    breaker.emergency_stop("exploit reported")
    clock.advance(3600)

    with pytest.raises(CircuitOpen, match="exploit reported"):
        breaker.before_attempt()

    breaker.reset()
    with pytest.raises(CircuitOpen):
        breaker.before_attempt()

    snapshot = breaker.resume()
    assert not snapshot.paused
    breaker.before_attempt()


def test_emergency_stop_requires_reason(breaker: CircuitBreaker) -> None:
    with pytest.raises(ValueError):
        breaker.emergency_stop("   ")


def test_snapshot_serialises(breaker: CircuitBreaker) -> None:
    payload = breaker.snapshot().to_dict()

    assert payload["state"] == "closed"
    assert payload["failure_threshold"] == 3
    assert payload["paused"] is False


@pytest.mark.parametrize(
    "kwargs",
    [
        {"failure_threshold": 0},
        {"window_seconds": 0},
        {"recovery_timeout": -1},
    ],
)
def test_constructor_validation(kwargs: dict, metrics) -> None:
    with pytest.raises(ValueError):
        CircuitBreaker(**kwargs, metrics=metrics)


class TestPausePersistence:
    def test_pause_survives_restart(self, tmp_path: Path, clock: FakeClock, metrics) -> None:
        path = tmp_path / "state" / "breaker.db"
        first = CircuitBreaker(
            time_source=clock, store=SQLiteCircuitBreakerStateStore(path), metrics=metrics
        )
        first.emergency_stop("manual halt")

        restarted = CircuitBreaker(
            time_source=clock, store=SQLiteCircuitBreakerStateStore(path), metrics=metrics
        )

        assert restarted.paused
        assert restarted.snapshot().pause_reason == "manual halt"
        restarted.resume()

        again = CircuitBreaker(
            time_source=clock, store=SQLiteCircuitBreakerStateStore(path), metrics=metrics
        )
        assert not again.paused

    def test_empty_store_loads_nothing(self, tmp_path: Path) -> None:
        store = SQLiteCircuitBreakerStateStore(tmp_path / "fresh.db")

        assert store.load() is None

    def test_save_validates_reason(self, tmp_path: Path) -> None:
        store = SQLiteCircuitBreakerStateStore(tmp_path / "breaker.db", max_reason_length=8)

        with pytest.raises(ValueError, match="reason must be supplied"):
            store.save(True, "")
        with pytest.raises(ValueError, match="exceeds allowed length"):
            store.save(True, "much too long")

    def test_corrupted_state_fails_closed(self, tmp_path: Path, metrics) -> None:
        path = tmp_path / "breaker.db"
        SQLiteCircuitBreakerStateStore(path)
        with sqlite3.connect(path) as connection:
            connection.execute(
                "INSERT INTO circuit_breaker_pause (id, paused, reason, updated_at) "
                "VALUES (1, 1, '', 'not-a-timestamp')"
            )

        with pytest.raises(PauseStateCorrupted):
            CircuitBreaker(store=SQLiteCircuitBreakerStateStore(path), metrics=metrics)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"timeout": 0},
            {"max_retries": -1},
            {"retry_interval": 0},
            {"backoff_multiplier": 0.5},
            {"max_reason_length": 0},
        ],
    )
    def test_store_validation(self, tmp_path: Path, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            SQLiteCircuitBreakerStateStore(tmp_path / "breaker.db", **kwargs)
