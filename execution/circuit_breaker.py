# SPDX-License-Identifier: MIT
"""Circuit breaker guarding arbitrage admission.

The breaker combines two independent controls:

* an automatic state machine (closed, open, half-open) driven by execution
  failures counted inside a sliding window, and
* a manual *emergency pause* engaged by operators, which only an explicit
  :meth:`CircuitBreaker.resume` clears. The pause can be persisted through a
  :class:`CircuitBreakerStateStore` so operator intent survives restarts.
"""

from __future__ import annotations

import sqlite3
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Protocol, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from core.utils.logging import get_logger
from core.utils.metrics import MetricsCollector, get_metrics_collector

from .audit import ExecutionAuditLogger
from .errors import CircuitOpen

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerState",
    "CircuitBreakerStateStore",
    "CircuitState",
    "PauseStateCorrupted",
    "SQLiteCircuitBreakerStateStore",
]

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class PauseStateCorrupted(RuntimeError):
    """Persisted pause state failed validation; the breaker fails closed."""


@dataclass(slots=True, frozen=True)
class CircuitBreakerState:
    """Read-only snapshot of the breaker for getters and the HTTP API."""

    state: CircuitState
    paused: bool
    pause_reason: str
    failure_count: int
    failure_threshold: int
    window_started_at: float | None
    last_trip_at: float | None
    last_trip_reason: str

    @property
    def accepting(self) -> bool:
        return not self.paused and self.state is not CircuitState.OPEN

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "paused": self.paused,
            "pause_reason": self.pause_reason,
            "failure_count": self.failure_count,
            "failure_threshold": self.failure_threshold,
            "window_started_at": self.window_started_at,
            "last_trip_at": self.last_trip_at,
            "last_trip_reason": self.last_trip_reason,
        }


class CircuitBreakerStateStore(Protocol):
    """Persistence backend for the manual pause flag."""

    def load(self) -> tuple[bool, str] | None:
        """Return the last persisted ``(paused, reason)``, if any."""

    def save(self, paused: bool, reason: str) -> None:
        """Persist the supplied state atomically."""


class PauseStateRecord(BaseModel):
    """Validated pause payload loaded from persistence."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    paused: bool
    reason: str = Field(default="", max_length=2048)
    updated_at: datetime

    @model_validator(mode="before")
    @classmethod
    def _coerce_payload(cls, data: object) -> dict[str, object]:
        if isinstance(data, dict):
            payload = dict(data)
        elif isinstance(data, tuple):
            if len(data) != 3:
                raise ValueError("expected 3-tuple payload")
            payload = {"paused": data[0], "reason": data[1], "updated_at": data[2]}
        else:
            raise TypeError("unsupported payload shape")

        payload["paused"] = bool(payload.get("paused", False))
        payload["reason"] = payload.get("reason") or ""
        raw_ts = payload.get("updated_at")
        if raw_ts is None:
            raise ValueError("updated_at is required")
        if isinstance(raw_ts, str):
            try:
                raw_ts = datetime.fromisoformat(raw_ts.replace(" ", "T"))
            except ValueError as exc:
                raise ValueError("updated_at is not ISO 8601 compliant") from exc
        if not isinstance(raw_ts, datetime):
            raise TypeError("updated_at must be str or datetime")
        if raw_ts.tzinfo is None:
            raw_ts = raw_ts.replace(tzinfo=timezone.utc)
        payload["updated_at"] = raw_ts.astimezone(timezone.utc)
        return payload

    @model_validator(mode="after")
    def _validate_reason(self) -> "PauseStateRecord":
        if self.paused and not self.reason:
            raise ValueError("reason must be provided when the pause is engaged")
        if any(ord(ch) < 32 and ch not in {"\t", "\n"} for ch in self.reason):
            raise ValueError("reason contains control characters")
        return self


class SQLiteCircuitBreakerStateStore:
    """SQLite-backed store used to persist the emergency pause across restarts."""

    _UPSERT_STATEMENT = """
        INSERT INTO circuit_breaker_pause (id, paused, reason, updated_at)
        VALUES (?, ?, ?, CURRENT_TIMESTAMP)
        ON CONFLICT(id) DO UPDATE SET
            paused = excluded.paused,
            reason = excluded.reason,
            updated_at = CURRENT_TIMESTAMP
    """

    def __init__(
        self,
        path: str | Path,
        *,
        timeout: float = 10.0,
        max_retries: int = 5,
        retry_interval: float = 0.05,
        backoff_multiplier: float = 2.0,
        max_reason_length: int = 512,
    ) -> None:
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        if max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        if retry_interval <= 0:
            raise ValueError("retry_interval must be positive")
        if backoff_multiplier < 1.0:
            raise ValueError("backoff_multiplier must be >= 1.0")
        if max_reason_length <= 0:
            raise ValueError("max_reason_length must be positive")

        self._path = Path(path)
        self._timeout = float(timeout)
        self._max_retries = int(max_retries)
        self._retry_interval = float(retry_interval)
        self._backoff_multiplier = float(backoff_multiplier)
        self._max_reason_length = int(max_reason_length)
        self._lock = threading.Lock()
        self._initialise()

    @property
    def path(self) -> Path:
        return self._path

    def _initialise(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with sqlite3.connect(self._path, timeout=self._timeout) as connection:
            connection.execute("PRAGMA journal_mode=WAL")
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS circuit_breaker_pause (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    paused INTEGER NOT NULL CHECK (paused IN (0, 1)),
                    reason TEXT NOT NULL DEFAULT '',
                    updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
                """
            )

    def _with_retry(
        self, operation: Callable[[sqlite3.Connection], T], *, write: bool = False
    ) -> T:
        delay = self._retry_interval
        attempts_remaining = self._max_retries
        while True:
            try:
                with sqlite3.connect(self._path, timeout=self._timeout) as connection:
                    if write:
                        connection.execute("PRAGMA journal_mode=WAL")
                    return operation(connection)
            except sqlite3.OperationalError as exc:
                if not self._should_retry(exc) or attempts_remaining <= 0:
                    raise
                time.sleep(delay)
                attempts_remaining -= 1
                delay = min(delay * self._backoff_multiplier, self._timeout)

    @staticmethod
    def _should_retry(error: sqlite3.OperationalError) -> bool:
        message = str(error).lower()
        return "locked" in message or "busy" in message

    def load(self) -> tuple[bool, str] | None:
        def _load(connection: sqlite3.Connection) -> tuple[object, ...] | None:
            cursor = connection.execute(
                "SELECT paused, reason, updated_at FROM circuit_breaker_pause WHERE id = 1"
            )
            return cursor.fetchone()

        row = self._with_retry(_load)
        if row is None:
            return None
        try:
            record = PauseStateRecord.model_validate(tuple(row))
        except ValidationError as exc:
            raise PauseStateCorrupted("Persisted pause state failed schema validation") from exc
        if len(record.reason) > self._max_reason_length:
            raise PauseStateCorrupted("Persisted pause reason exceeds allowed length")
        return record.paused, record.reason

    def save(self, paused: bool, reason: str) -> None:
        payload_reason = reason or ""
        if paused and not payload_reason:
            raise ValueError("reason must be supplied when engaging the pause")
        if len(payload_reason) > self._max_reason_length:
            raise ValueError(
                f"reason exceeds allowed length {len(payload_reason)} > {self._max_reason_length}"
            )

        def _save(connection: sqlite3.Connection) -> None:
            connection.execute(self._UPSERT_STATEMENT, (1, int(bool(paused)), payload_reason))

        with self._lock:
            self._with_retry(_save, write=True)


class CircuitBreaker:
    """Failure-driven state machine with a manual emergency pause.

    ``failure_threshold`` failures recorded within ``window_seconds`` open the
    breaker. After ``recovery_timeout`` seconds an open breaker becomes
    half-open and admits exactly one trial attempt; its outcome closes or
    re-opens it. Admission rejections are never reported here, only failures of
    attempts that actually reached a venue or the lender.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        window_seconds: float = 300.0,
        recovery_timeout: float = 60.0,
        *,
        time_source: Callable[[], float] | None = None,
        store: CircuitBreakerStateStore | None = None,
        metrics: MetricsCollector | None = None,
        audit_logger: ExecutionAuditLogger | None = None,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if recovery_timeout < 0:
            raise ValueError("recovery_timeout must be non-negative")
        self.failure_threshold = int(failure_threshold)
        self.window_seconds = float(window_seconds)
        self.recovery_timeout = float(recovery_timeout)
        self._time = time_source or time.monotonic
        self._store = store
        self._metrics = metrics or get_metrics_collector()
        self._audit = audit_logger
        self._logger = get_logger(__name__)
        self._lock = threading.RLock()

        self._state = CircuitState.CLOSED
        self._failures: deque[float] = deque()
        self._opened_at: float | None = None
        self._last_trip_at: float | None = None
        self._last_trip_reason = ""
        self._trial_in_flight = False
        self._paused = False
        self._pause_reason = ""
        if self._store is not None:
            self._restore_pause()
        self._metrics.set_circuit_breaker_state(self._state.value)

    def _restore_pause(self) -> None:
        assert self._store is not None
        try:
            persisted = self._store.load()
        except PauseStateCorrupted as exc:
            self._paused = True
            self._pause_reason = str(exc)
            self._logger.critical("Pause state corrupted; failing closed", error=str(exc))
            raise
        if persisted is None:
            return
        self._paused, self._pause_reason = bool(persisted[0]), persisted[1] or ""
        if self._paused:
            self._logger.warning("Restored emergency pause", reason=self._pause_reason)

    # -- state ------------------------------------------------------------
    def _prune(self, now: float) -> None:
        horizon = now - self.window_seconds
        while self._failures and self._failures[0] <= horizon:
            self._failures.popleft()

    def _advance(self, now: float) -> None:
        if (
            self._state is CircuitState.OPEN
            and self._opened_at is not None
            and now - self._opened_at >= self.recovery_timeout
        ):
            self._transition(CircuitState.HALF_OPEN)
            self._trial_in_flight = False

    def _transition(self, state: CircuitState) -> None:
        if state is self._state:
            return
        previous = self._state
        self._state = state
        self._metrics.set_circuit_breaker_state(state.value)
        self._logger.info(
            "Circuit breaker transition", previous=previous.value, current=state.value
        )

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._advance(self._time())
            return self._state

    @property
    def paused(self) -> bool:
        with self._lock:
            return self._paused

    def snapshot(self) -> CircuitBreakerState:
        with self._lock:
            now = self._time()
            self._advance(now)
            self._prune(now)
            return CircuitBreakerState(
                state=self._state,
                paused=self._paused,
                pause_reason=self._pause_reason,
                failure_count=len(self._failures),
                failure_threshold=self.failure_threshold,
                window_started_at=self._failures[0] if self._failures else None,
                last_trip_at=self._last_trip_at,
                last_trip_reason=self._last_trip_reason,
            )

    # -- admission --------------------------------------------------------
    def before_attempt(self) -> None:
        """Raise :class:`CircuitOpen` unless an attempt may start now.

        In the half-open state the first caller becomes the trial attempt; everyone
        else is rejected until the trial reports back.
        """

        with self._lock:
            if self._paused:
                raise CircuitOpen(
                    f"Emergency stop engaged: {self._pause_reason or 'unspecified reason'}",
                    paused=True,
                    reason=self._pause_reason,
                )
            now = self._time()
            self._advance(now)
            if self._state is CircuitState.OPEN:
                retry_in = None
                if self._opened_at is not None:
                    retry_in = max(self.recovery_timeout - (now - self._opened_at), 0.0)
                raise CircuitOpen(
                    "Circuit breaker is open",
                    state=self._state.value,
                    reason=self._last_trip_reason,
                    retry_in_seconds=retry_in,
                )
            if self._state is CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    raise CircuitOpen(
                        "Circuit breaker is half-open and a trial attempt is already running",
                        state=self._state.value,
                    )
                self._trial_in_flight = True

    def abandon_attempt(self) -> None:
        """Give back a half-open trial slot for an attempt rejected at admission."""

        with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                self._trial_in_flight = False

    def record_success(self) -> None:
        with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                self._failures.clear()
                self._opened_at = None
                self._trial_in_flight = False
                self._transition(CircuitState.CLOSED)

    def record_failure(self, reason: str = "execution_failed") -> None:
        with self._lock:
            now = self._time()
            self._advance(now)
            if self._state is CircuitState.HALF_OPEN:
                self._trial_in_flight = False
                self._open(now, f"trial failed: {reason}", trigger="trial_failed")
                return
            self._prune(now)
            self._failures.append(now)
            if self._state is CircuitState.CLOSED and len(self._failures) >= self.failure_threshold:
                self._open(
                    now,
                    f"{len(self._failures)} failures within {self.window_seconds:g}s (last: {reason})",
                )

    def trip(self, reason: str) -> CircuitBreakerState:
        """Open the breaker immediately regardless of the failure count."""

        with self._lock:
            self._open(self._time(), reason or "manual trip", trigger="manual")
            return self.snapshot()

    def reset(self) -> CircuitBreakerState:
        """Close the breaker and clear recorded failures; the pause is unaffected."""

        with self._lock:
            self._failures.clear()
            self._opened_at = None
            self._trial_in_flight = False
            self._transition(CircuitState.CLOSED)
            self._emit({"event": "circuit_breaker_reset"})
            return self.snapshot()

    def _open(self, now: float, reason: str, *, trigger: str = "failures") -> None:
        self._opened_at = now
        self._last_trip_at = now
        self._last_trip_reason = reason
        self._transition(CircuitState.OPEN)
        self._metrics.record_circuit_breaker_trip(trigger)
        self._logger.critical("Circuit breaker opened", reason=reason)
        self._emit({"event": "circuit_breaker_opened", "reason": reason})

    # -- manual pause -----------------------------------------------------
    def emergency_stop(self, reason: str) -> CircuitBreakerState:
        reason = (reason or "").strip()
        if not reason:
            raise ValueError("reason must be provided for an emergency stop")
        with self._lock:
            if self._store is not None:
                self._store.save(True, reason)
            self._paused = True
            self._pause_reason = reason
            self._metrics.record_circuit_breaker_trip("emergency_stop")
            self._logger.critical("Emergency stop engaged", reason=reason)
            self._emit({"event": "emergency_stop", "reason": reason})
            return self.snapshot()

    def resume(self) -> CircuitBreakerState:
        with self._lock:
            if self._store is not None:
                self._store.save(False, "")
            was_paused = self._paused
            self._paused = False
            self._pause_reason = ""
            if was_paused:
                self._logger.warning("Emergency stop cleared")
                self._emit({"event": "emergency_resume"})
            return self.snapshot()

    def _emit(self, payload: dict[str, Any]) -> None:
        if self._audit is not None:
            self._audit.emit(payload)
