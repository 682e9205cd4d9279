"""Prometheus metrics shared by the services."""

from __future__ import annotations

import time

from fastapi import FastAPI, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, CollectorRegistry, Counter, Histogram, generate_latest

REQUEST_COUNT = Counter(
    "http_requests_total",
    "HTTP requests handled",
    ["service", "method", "route", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["service", "method", "route"],
)
BILLING_EVENTS = Counter(
    "billing_events_total",
    "Subscription and payment state transitions",
    ["event"],
)


def record_billing_event(event: str) -> None:
    BILLING_EVENTS.labels(event=event).inc()


def _route_template(request: Request) -> str:
    # Templates keep label cardinality bounded; raw paths carry ids.
    route = request.scope.get("route")
    return getattr(route, "path", None) or "unmatched"


def setup_metrics(
    app: FastAPI,
    *,
    service_name: str,
    registry: CollectorRegistry = REGISTRY,
    path: str = "/metrics",
) -> None:
    """Instrument every request of ``app`` and expose the registry at ``path``."""

    @app.middleware("http")
    async def _collect_request_metrics(request: Request, call_next):
        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            route = _route_template(request)
            REQUEST_COUNT.labels(service_name, request.method, route, str(status_code)).inc()
            REQUEST_LATENCY.labels(service_name, request.method, route).observe(time.perf_counter() - started)

    @app.get(path, include_in_schema=False)
    def metrics_endpoint() -> Response:
        return Response(generate_latest(registry), media_type=CONTENT_TYPE_LATEST)


__all__ = ["BILLING_EVENTS", "record_billing_event", "setup_metrics"]
