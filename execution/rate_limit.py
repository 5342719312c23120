# SPDX-License-Identifier: MIT
"""Sliding window request limits applied before arbitrage admission."""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable

from core.utils.logging import get_logger

from .errors import RateLimited

__all__ = ["CallerRateLimiter", "RateLimitPolicy", "RateLimiterSnapshot"]

_GLOBAL_KEY = "__global__"


@dataclass(slots=True, frozen=True)
class RateLimitPolicy:
    """At most ``max_requests`` within ``window_seconds``; zero disables the limit."""

    max_requests: int
    window_seconds: float

    def __post_init__(self) -> None:
        if self.max_requests < 0:
            raise ValueError("max_requests must be non-negative")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

    @property
    def enabled(self) -> bool:
        return self.max_requests > 0


@dataclass(slots=True)
class RateLimiterSnapshot:
    """Point-in-time utilisation view of a :class:`CallerRateLimiter`."""

    tracked_callers: int
    global_in_window: int
    saturated_callers: list[str]


class CallerRateLimiter:
    """Per-caller and engine-wide sliding windows.

    A hit is only recorded once both windows have room, so rejected requests
    do not eat into the caller's budget.
    """

    def __init__(
        self,
        per_caller: RateLimitPolicy,
        global_policy: RateLimitPolicy | None = None,
        *,
        time_source: Callable[[], float] | None = None,
        caller_overrides: dict[str, RateLimitPolicy] | None = None,
    ) -> None:
        self._per_caller = per_caller
        self._global = global_policy
        self._overrides = dict(caller_overrides or {})
        self._time = time_source or time.monotonic
        self._records: dict[str, deque[float]] = {}
        self._lock = threading.Lock()
        self._logger = get_logger(__name__)

    def set_caller_policy(self, caller: str, policy: RateLimitPolicy | None) -> None:
        with self._lock:
            if policy is None:
                self._overrides.pop(caller, None)
            else:
                self._overrides[caller] = policy

    def _bucket(self, key: str, window_seconds: float, now: float) -> deque[float]:
        bucket = self._records.setdefault(key, deque())
        threshold = now - window_seconds
        while bucket and bucket[0] <= threshold:
            bucket.popleft()
        return bucket

    def check(self, caller: str) -> None:
        """Record a request from ``caller`` or raise :class:`RateLimited`."""

        policy = self._overrides.get(caller, self._per_caller)
        with self._lock:
            now = self._time()
            caller_bucket = None
            if policy.enabled:
                caller_bucket = self._bucket(caller, policy.window_seconds, now)
                if len(caller_bucket) >= policy.max_requests:
                    self._logger.warning(
                        "Caller rate limit exceeded",
                        caller=caller,
                        limit=policy.max_requests,
                        window_seconds=policy.window_seconds,
                    )
                    raise RateLimited(
                        f"Rate limit exceeded for {caller}: "
                        f"{policy.max_requests} requests per {policy.window_seconds:g}s",
                        caller=caller,
                        scope="caller",
                        limit=policy.max_requests,
                        window_seconds=policy.window_seconds,
                    )
            global_bucket = None
            if self._global is not None and self._global.enabled:
                global_bucket = self._bucket(_GLOBAL_KEY, self._global.window_seconds, now)
                if len(global_bucket) >= self._global.max_requests:
                    self._logger.warning(
                        "Global rate limit exceeded",
                        caller=caller,
                        limit=self._global.max_requests,
                    )
                    raise RateLimited(
                        "Global rate limit exceeded",
                        caller=caller,
                        scope="global",
                        limit=self._global.max_requests,
                        window_seconds=self._global.window_seconds,
                    )
            if caller_bucket is not None:
                caller_bucket.append(now)
            if global_bucket is not None:
                global_bucket.append(now)

    def remaining(self, caller: str) -> int | None:
        """Requests ``caller`` may still issue in the current window (``None`` = unlimited)."""

        policy = self._overrides.get(caller, self._per_caller)
        if not policy.enabled:
            return None
        with self._lock:
            bucket = self._bucket(caller, policy.window_seconds, self._time())
            return max(policy.max_requests - len(bucket), 0)

    def snapshot(self) -> RateLimiterSnapshot:
        with self._lock:
            now = self._time()
            saturated: list[str] = []
            tracked = 0
            for key in list(self._records):
                if key == _GLOBAL_KEY:
                    continue
                policy = self._overrides.get(key, self._per_caller)
                bucket = self._bucket(key, policy.window_seconds, now)
                if not bucket:
                    del self._records[key]
                    continue
                tracked += 1
                if policy.enabled and len(bucket) >= policy.max_requests:
                    saturated.append(key)
            global_count = 0
            if self._global is not None:
                global_count = len(self._bucket(_GLOBAL_KEY, self._global.window_seconds, now))
            return RateLimiterSnapshot(
                tracked_callers=tracked,
                global_in_window=global_count,
                saturated_callers=sorted(saturated),
            )
