# SPDX-License-Identifier: MIT
"""Shared utilities for FlashRoute."""

from .logging import (
    JSONFormatter,
    StructuredLogger,
    configure_logging,
    get_logger,
)
from .metrics import (
    MetricsCollector,
    get_metrics_collector,
    start_metrics_server,
)

__all__ = [
    "JSONFormatter",
    "StructuredLogger",
    "configure_logging",
    "get_logger",
    "MetricsCollector",
    "get_metrics_collector",
    "start_metrics_server",
]
