# SPDX-License-Identifier: MIT
"""Balance ledger with staged, all-or-nothing changesets.

An arbitrage attempt never touches durable balances directly. Every transfer
(loan draw-down, hop debit/credit, repayment, profit sweep) is recorded on a
:class:`PendingChangeset`; only a fully validated changeset is applied, in a
single critical section, to the :class:`BalanceLedger`. Discarding the
changeset is the rollback.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, Mapping

from .errors import ExecutionFailed

__all__ = [
    "BalanceLedger",
    "ChangesetClosed",
    "InsufficientBalance",
    "PendingChangeset",
    "Transfer",
]

_ZERO = Decimal("0")


class InsufficientBalance(ExecutionFailed):
    """An internal account would be overdrawn by a staged transfer."""

    kind = "insufficient_balance"


class ChangesetClosed(RuntimeError):
    """Raised when a changeset is reused after being applied or discarded."""


@dataclass(slots=True, frozen=True)
class Transfer:
    """Movement of ``amount`` of ``token`` between two ledger accounts."""

    source: str
    destination: str
    token: str
    amount: Decimal
    memo: str = ""


class BalanceLedger:
    """Durable balances keyed by ``(account, token)``.

    Only *internal* accounts (the engine and the treasury by default) are held
    to the non-negative invariant. Venues and lending pools are external
    counterparties whose books live elsewhere; their entries here are a mirror
    for reconciliation.
    """

    def __init__(
        self,
        balances: Mapping[tuple[str, str], Decimal] | None = None,
        *,
        internal_accounts: Iterable[str] = (),
    ) -> None:
        self._balances: Dict[tuple[str, str], Decimal] = defaultdict(lambda: _ZERO)
        self._internal: set[str] = set(internal_accounts)
        self._journal: list[Transfer] = []
        self._lock = threading.RLock()
        for key, amount in (balances or {}).items():
            self._balances[key] = Decimal(amount)

    def add_internal_account(self, account: str) -> None:
        with self._lock:
            self._internal.add(account)

    def is_internal(self, account: str) -> bool:
        with self._lock:
            return account in self._internal

    def balance(self, account: str, token: str) -> Decimal:
        with self._lock:
            return self._balances.get((account, token), _ZERO)

    def deposit(self, account: str, token: str, amount: Decimal) -> None:
        """Credit ``account`` from outside the system (funding, tests)."""

        if amount < _ZERO:
            raise ValueError("deposit amount must be non-negative")
        with self._lock:
            self._balances[(account, token)] += amount

    def snapshot(self) -> dict[tuple[str, str], Decimal]:
        """Return a copy of every non-zero balance."""

        with self._lock:
            return {key: value for key, value in self._balances.items() if value != _ZERO}

    def journal(self) -> tuple[Transfer, ...]:
        with self._lock:
            return tuple(self._journal)

    def begin(self) -> "PendingChangeset":
        """Open a new changeset staged against this ledger."""

        return PendingChangeset(self)

    def apply(self, changeset: "PendingChangeset") -> None:
        """Apply every staged delta atomically or none of them."""

        if changeset.ledger is not self:
            raise ValueError("changeset belongs to a different ledger")
        with self._lock:
            changeset._ensure_open()
            updated: dict[tuple[str, str], Decimal] = {}
            for key, delta in changeset.deltas().items():
                account, token = key
                new_balance = self._balances.get(key, _ZERO) + delta
                if account in self._internal and new_balance < _ZERO:
                    raise InsufficientBalance(
                        f"Applying changeset would overdraw {account} in {token}",
                        account=account,
                        token=token,
                        balance=self._balances.get(key, _ZERO),
                        delta=delta,
                    )
                updated[key] = new_balance
            self._balances.update(updated)
            self._journal.extend(changeset.transfers())
            changeset._close(applied=True)


class PendingChangeset:
    """Transient record of balance deltas for one attempt."""

    def __init__(self, ledger: BalanceLedger) -> None:
        self._ledger = ledger
        self._deltas: Dict[tuple[str, str], Decimal] = defaultdict(lambda: _ZERO)
        self._transfers: list[Transfer] = []
        self._closed = False
        self._applied = False

    @property
    def ledger(self) -> BalanceLedger:
        return self._ledger

    @property
    def applied(self) -> bool:
        return self._applied

    @property
    def closed(self) -> bool:
        return self._closed

    def balance(self, account: str, token: str) -> Decimal:
        """Ledger balance as it would look if this changeset were applied now."""

        return self._ledger.balance(account, token) + self._deltas.get((account, token), _ZERO)

    def transfer(
        self,
        source: str,
        destination: str,
        token: str,
        amount: Decimal,
        *,
        memo: str = "",
    ) -> Transfer:
        self._ensure_open()
        if amount < _ZERO:
            raise ValueError("transfer amount must be non-negative")
        if source == destination:
            raise ValueError("source and destination must differ")
        if self._ledger.is_internal(source):
            available = self.balance(source, token)
            if available < amount:
                raise InsufficientBalance(
                    f"{source} holds {available} {token}, cannot move {amount}",
                    account=source,
                    token=token,
                    available=available,
                    requested=amount,
                )
        self._deltas[(source, token)] -= amount
        self._deltas[(destination, token)] += amount
        record = Transfer(source, destination, token, amount, memo)
        self._transfers.append(record)
        return record

    def deltas(self) -> dict[tuple[str, str], Decimal]:
        return {key: value for key, value in self._deltas.items() if value != _ZERO}

    def transfers(self) -> tuple[Transfer, ...]:
        return tuple(self._transfers)

    def discard(self) -> None:
        """Drop every staged delta; safe to call more than once."""

        if self._closed:
            return
        self._deltas.clear()
        self._transfers.clear()
        self._close(applied=False)

    def _ensure_open(self) -> None:
        if self._closed:
            raise ChangesetClosed("changeset has already been applied or discarded")

    def _close(self, *, applied: bool) -> None:
        self._closed = True
        self._applied = applied
