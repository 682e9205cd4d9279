"""Shared observability helpers."""

from __future__ import annotations

from .logging import RequestContextMiddleware, configure_logging, request_id_var
from .metrics import record_billing_event, setup_metrics

__all__ = [
    "RequestContextMiddleware",
    "configure_logging",
    "record_billing_event",
    "request_id_var",
    "setup_metrics",
]
