# SPDX-License-Identifier: MIT
"""Registry of exchange adapters keyed by venue identifier.

Venues are added and removed at runtime by administrators; lookups of an
unregistered venue raise :class:`~execution.errors.UnknownVenue`.
"""

from __future__ import annotations

import logging
import threading
from types import MappingProxyType
from typing import Iterable, Iterator, Mapping, MutableMapping

from interfaces.execution import ExchangeAdapter

from ..errors import UnknownVenue

__all__ = ["VenueRegistry"]

logger = logging.getLogger("flashroute.execution.venues")


def _normalise_venue(venue: str) -> str:
    candidate = (venue or "").strip().lower()
    if not candidate:
        raise ValueError("venue identifier must be non-empty")
    return candidate


class VenueRegistry:
    """Thread-safe mapping of venue identifiers to :class:`ExchangeAdapter`."""

    def __init__(self, adapters: Mapping[str, ExchangeAdapter] | None = None) -> None:
        self._adapters: MutableMapping[str, ExchangeAdapter] = {}
        self._lock = threading.RLock()
        for venue, adapter in (adapters or {}).items():
            self.register(venue, adapter)

    # -- mutation ---------------------------------------------------------
    def register(self, venue: str, adapter: ExchangeAdapter, *, override: bool = False) -> None:
        identifier = _normalise_venue(venue)
        if not isinstance(adapter, ExchangeAdapter):
            raise TypeError(f"Adapter for '{identifier}' does not implement swap()")
        with self._lock:
            if identifier in self._adapters and not override:
                raise ValueError(f"Venue '{identifier}' already registered")
            self._adapters[identifier] = adapter
        logger.info("Venue registered", extra={"venue": identifier})

    def unregister(self, venue: str) -> bool:
        identifier = _normalise_venue(venue)
        with self._lock:
            removed = self._adapters.pop(identifier, None) is not None
        if removed:
            logger.info("Venue removed", extra={"venue": identifier})
        return removed

    # -- lookup -----------------------------------------------------------
    def get(self, venue: str) -> ExchangeAdapter:
        identifier = _normalise_venue(venue)
        with self._lock:
            try:
                return self._adapters[identifier]
            except KeyError as exc:
                raise UnknownVenue(f"Unknown venue '{identifier}'", venue=identifier) from exc

    def missing(self, venues: Iterable[str]) -> tuple[str, ...]:
        """Return the subset of ``venues`` with no registered adapter."""

        with self._lock:
            return tuple(
                venue for venue in venues if _normalise_venue(venue) not in self._adapters
            )

    def __contains__(self, venue: object) -> bool:
        if not isinstance(venue, str):
            return False
        with self._lock:
            return _normalise_venue(venue) in self._adapters

    def __iter__(self) -> Iterator[str]:
        with self._lock:
            return iter(tuple(self._adapters))

    def __len__(self) -> int:
        with self._lock:
            return len(self._adapters)

    def snapshot(self) -> Mapping[str, ExchangeAdapter]:
        with self._lock:
            return MappingProxyType(dict(self._adapters))

