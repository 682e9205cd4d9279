"""Logging configuration and request context propagation shared by services."""

from __future__ import annotations

import json
import logging
import os
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)

_RESERVED_RECORD_KEYS = set(vars(logging.makeLogRecord({}))) | {"message", "asctime"}

_SERVICE_NAME = "app"


class RequestContextFilter(logging.Filter):
    """Attach the service name and current request id to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service = _SERVICE_NAME
        record.request_id = request_id_var.get() or "-"
        return True


class JsonFormatter(logging.Formatter):
    """Render records as single-line JSON documents."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in vars(record).items():
            if key in _RESERVED_RECORD_KEYS or key.startswith("_") or key in payload:
                continue
            payload[key] = value if isinstance(value, (str, int, float, bool, type(None))) else str(value)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def configure_logging(service_name: str, *, level: str | None = None, json_logs: bool | None = None) -> None:
    """Configure the root logger for ``service_name``.

    ``LOG_LEVEL`` and ``LOG_FORMAT=json`` are read from the environment when the
    corresponding arguments are omitted.
    """

    global _SERVICE_NAME
    _SERVICE_NAME = service_name

    resolved_level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_logs is None:
        json_logs = os.getenv("LOG_FORMAT", "").strip().lower() == "json"

    handler = logging.StreamHandler()
    handler.addFilter(RequestContextFilter())
    if json_logs:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s [%(levelname)s] %(service)s %(name)s [%(request_id)s] %(message)s"
            )
        )
    logging.basicConfig(level=resolved_level, handlers=[handler], force=True)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Propagate ``X-Request-ID`` and log one line per handled request."""

    def __init__(self, app, *, service_name: str) -> None:
        super().__init__(app)
        self._service_name = service_name
        self._logger = logging.getLogger(f"{service_name}.request")

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        token = request_id_var.set(request_id)
        request.state.request_id = request_id
        started = time.perf_counter()
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            self._logger.info(
                "%s %s -> %s",
                request.method,
                request.url.path,
                response.status_code,
                extra={"duration_ms": int((time.perf_counter() - started) * 1000)},
            )
            return response
        finally:
            request_id_var.reset(token)


__all__ = [
    "JsonFormatter",
    "RequestContextFilter",
    "RequestContextMiddleware",
    "configure_logging",
    "request_id_var",
]
