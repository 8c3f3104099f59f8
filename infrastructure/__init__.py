from __future__ import annotations

"""Infrastructure layer for metrics."""

from .metrics import (
    CLAIM_ATTEMPTS_TOTAL,
    NOTIFICATIONS_TOTAL,
    MESSAGES_TOTAL,
    HANDLER_ERRORS_TOTAL,
    NOTIFY_FAILURES_TOTAL,
    MetricsServer,
    start_metrics_server,
)

__all__ = [
    "CLAIM_ATTEMPTS_TOTAL",
    "NOTIFICATIONS_TOTAL",
    "MESSAGES_TOTAL",
    "HANDLER_ERRORS_TOTAL",
    "NOTIFY_FAILURES_TOTAL",
    "MetricsServer",
    "start_metrics_server",
]
