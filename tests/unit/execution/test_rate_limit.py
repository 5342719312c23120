# SPDX-License-Identifier: MIT
from __future__ import annotations

import pytest

from execution.errors import RateLimited
from execution.rate_limit import CallerRateLimiter, RateLimitPolicy
from tests.helpers import FakeClock


def test_caller_window_slides(clock: FakeClock) -> None:
    limiter = CallerRateLimiter(RateLimitPolicy(2, 10.0), time_source=clock)

    limiter.check("alice")
    limiter.check("alice")
    with pytest.raises(RateLimited) as excinfo:
        limiter.check("alice")
    assert excinfo.value.details["scope"] == "caller"

    limiter.check("bob")
    clock.advance(10.0)
    limiter.check("alice")
    assert limiter.remaining("alice") == 1


def test_global_budget_is_shared(clock: FakeClock) -> None:
    limiter = CallerRateLimiter(
        RateLimitPolicy(5, 10.0), RateLimitPolicy(2, 10.0), time_source=clock
    )

    limiter.check("alice")
    limiter.check("bob")
    with pytest.raises(RateLimited) as excinfo:
        limiter.check("carol")

    assert excinfo.value.details["scope"] == "global"
    assert limiter.remaining("carol") == 5


def test_rejected_requests_do_not_consume_budget(clock: FakeClock) -> None:
    limiter = CallerRateLimiter(
        RateLimitPolicy(1, 10.0), RateLimitPolicy(10, 10.0), time_source=clock
    )
    limiter.check("alice")
    for _ in range(3):
        with pytest.raises(RateLimited):
            limiter.check("alice")

    assert limiter.snapshot().global_in_window == 1


def test_zero_disables_and_overrides_apply(clock: FakeClock) -> None:
    limiter = CallerRateLimiter(RateLimitPolicy(0, 1.0), time_source=clock)
    for _ in range(50):
        limiter.check("bot")
    assert limiter.remaining("bot") is None

    limiter.set_caller_policy("bot", RateLimitPolicy(1, 1.0))
    limiter.check("bot")
    with pytest.raises(RateLimited):
        limiter.check("bot")

    limiter.set_caller_policy("bot", None)
    limiter.check("bot")


def test_snapshot_reports_saturated_callers(clock: FakeClock) -> None:
    limiter = CallerRateLimiter(RateLimitPolicy(1, 5.0), time_source=clock)
    limiter.check("alice")
    limiter.check("bob")
    clock.advance(6.0)
    limiter.check("carol")

    snapshot = limiter.snapshot()

    assert snapshot.tracked_callers == 1
    assert snapshot.saturated_callers == ["carol"]


@pytest.mark.parametrize(
    "kwargs",
    [{"max_requests": -1, "window_seconds": 1.0}, {"max_requests": 1, "window_seconds": 0}],
)
def test_policy_validation(kwargs: dict) -> None:
    with pytest.raises(ValueError):
        RateLimitPolicy(**kwargs)
