# SPDX-License-Identifier: MIT
"""Sequential multi-hop route execution.

Each hop is executed against the adapter registered for its venue. Output of
hop *i* feeds hop *i + 1* whenever the latter declares ``amount_in == 0``. The
slippage floor is checked after every hop.

Hop quotes (``expected_amount_out``) are assumed to be priced along the quoted
path: the first chained hop against the initial amount, later chained hops
against the previous hop's quote. Each fill carries the quote rescaled to the
amount actually spent.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Sequence

from core.utils.logging import get_logger
from core.utils.metrics import MetricsCollector, get_metrics_collector
from domain.arbitrage import HopFill, RouteOutcome, RouteStep
from interfaces.execution import SwapFill

from .adapters.registry import VenueRegistry
from .errors import ArbitrageError, GasLimitExceeded, SlippageExceeded, SwapFailed
from .ledger import PendingChangeset

__all__ = ["RouteExecutor"]

_ZERO = Decimal("0")


class RouteExecutor:
    """Run an ordered list of :class:`RouteStep` against registered venues."""

    def __init__(
        self,
        venues: VenueRegistry,
        *,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._venues = venues
        self._logger = get_logger(__name__)
        self._metrics = metrics or get_metrics_collector()

    @property
    def venues(self) -> VenueRegistry:
        return self._venues

    def execute(
        self,
        steps: Sequence[RouteStep],
        initial_amount: Decimal,
        *,
        changeset: PendingChangeset,
        account: str,
        gas_limit: int | None = None,
    ) -> RouteOutcome:
        """Execute ``steps`` starting with ``initial_amount``.

        Args:
            steps: Hops in execution order.
            initial_amount: Amount spent by the first hop when it does not
                declare a fixed ``amount_in``.
            changeset: Staged balances; every hop debits ``token_in`` and
                credits ``token_out`` of ``account`` here.
            account: Ledger account holding the in-flight funds.
            gas_limit: Optional ceiling on cumulative gas.

        Raises:
            SwapFailed: An adapter raised or returned a malformed fill.
            SlippageExceeded: A hop produced less than its ``min_amount_out``.
            GasLimitExceeded: Cumulative gas went above ``gas_limit``.
        """

        if not steps:
            raise ValueError("route must contain at least one step")
        if initial_amount <= _ZERO:
            raise ValueError("initial_amount must be positive")

        fills: list[HopFill] = []
        carried = initial_amount
        quoted: Decimal | None = initial_amount
        total_gas = 0
        for index, step in enumerate(steps):
            amount_in = carried if step.uses_prior_output else step.amount_in
            quoted_in = quoted if step.uses_prior_output else step.amount_in
            expected = None
            if step.expected_amount_out is not None and quoted_in:
                expected = step.expected_amount_out * amount_in / quoted_in
            quoted = step.expected_amount_out
            fill = self._execute_hop(index, step, amount_in, changeset=changeset, account=account)
            total_gas += fill.gas_used
            if gas_limit is not None and total_gas > gas_limit:
                self._metrics.record_hop_failure(step.venue, "gas_limit")
                raise GasLimitExceeded(
                    f"Route consumed {total_gas} gas, above the limit of {gas_limit}",
                    step_index=index,
                    gas_used=total_gas,
                    gas_limit=gas_limit,
                )
            fills.append(
                HopFill(
                    step_index=index,
                    venue=step.venue,
                    token_in=step.token_in,
                    token_out=step.token_out,
                    amount_in=amount_in,
                    amount_out=fill.amount_out,
                    min_amount_out=step.min_amount_out,
                    gas_used=fill.gas_used,
                    expected_amount_out=expected,
                )
            )
            carried = fill.amount_out

        return RouteOutcome(
            fills=tuple(fills),
            final_amount=carried,
            gas_used=total_gas,
            expected_final_amount=steps[-1].expected_amount_out,
        )

    def _execute_hop(
        self,
        index: int,
        step: RouteStep,
        amount_in: Decimal,
        *,
        changeset: PendingChangeset,
        account: str,
    ) -> SwapFill:
        adapter = self._venues.get(step.venue)
        venue_account = f"venue:{step.venue}"
        changeset.transfer(account, venue_account, step.token_in, amount_in, memo=f"hop {index} in")
        try:
            fill = adapter.swap(
                step.token_in,
                step.token_out,
                amount_in,
                step.min_amount_out,
                path=step.path,
                fee_tier=step.fee_tier,
            )
        except ArbitrageError:
            raise
        except Exception as exc:
            self._metrics.record_hop_failure(step.venue, "swap_failed")
            raise SwapFailed(index, step.venue, f"{type(exc).__name__}: {exc}") from exc
        if not isinstance(fill, SwapFill):
            self._metrics.record_hop_failure(step.venue, "malformed_fill")
            raise SwapFailed(index, step.venue, f"adapter returned {type(fill).__name__}")

        if fill.amount_out < step.min_amount_out:
            self._metrics.record_hop_failure(step.venue, "slippage")
            raise SlippageExceeded(
                index,
                step.min_amount_out,
                fill.amount_out,
                venue=step.venue,
            )
        changeset.transfer(
            venue_account, account, step.token_out, fill.amount_out, memo=f"hop {index} out"
        )
        self._logger.debug(
            "Hop executed",
            step_index=index,
            venue=step.venue,
            token_in=step.token_in,
            token_out=step.token_out,
            amount_in=amount_in,
            amount_out=fill.amount_out,
            gas_used=fill.gas_used,
        )
        return fill
