"""HTTP surface for the FlashRoute engine."""

from __future__ import annotations

from typing import Any


def create_app(*args: Any, **kwargs: Any):
    """Proxy to :func:`application.api.service.create_app` with lazy import."""

    from .service import create_app as _create_app

    return _create_app(*args, **kwargs)


__all__ = ["create_app"]
