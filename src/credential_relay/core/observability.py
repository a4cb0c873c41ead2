# PUBLIC_INTERFACE
"""
Correlation context and process-local counters.

Context variables (request_id, provider_id, target) follow a control API
request, a credential hand-off or a connection attempt; the logging filter
below copies them onto every record.
"""
from __future__ import annotations

import logging
import threading
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Dict, Iterator, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

request_id_ctx: ContextVar[str] = ContextVar("request_id", default="-")
provider_id_ctx: ContextVar[str] = ContextVar("provider_id", default="-")
target_ctx: ContextVar[str] = ContextVar("target", default="-")

_CONTEXT_VARS: Dict[str, ContextVar[str]] = {
    "request_id": request_id_ctx,
    "provider_id": provider_id_ctx,
    "target": target_ctx,
}

# Counters are bumped from the event loop and from the threadpool serving sync endpoints
_METRICS_LOCK = threading.Lock()
_METRICS: Dict[str, float] = {
    name: 0.0
    for name in (
        "requests_total",
        "requests_errors_total",
        "token_resolutions_total",
        "token_resolution_failures_total",
        "token_refresh_total",
        "token_refresh_failures_total",
        "credential_requests_total",
        "encryption_failures_total",
        "reconnect_attempts_total",
    )
}


def metrics_snapshot() -> Dict[str, float]:
    """Copy of every counter, including ones never incremented."""
    with _METRICS_LOCK:
        return dict(_METRICS)


# PUBLIC_INTERFACE
def increment_metric(name: str, inc: float = 1.0) -> None:
    """Add inc to the named counter, creating it on first use."""
    with _METRICS_LOCK:
        _METRICS[name] = _METRICS.get(name, 0.0) + inc


@contextmanager
def log_context(**values: Optional[str]) -> Iterator[None]:
    """Bind correlation fields for the duration of a block."""
    tokens = [
        (_CONTEXT_VARS[key], _CONTEXT_VARS[key].set(value or "-"))
        for key, value in values.items()
        if key in _CONTEXT_VARS
    ]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def mask_secret_value(value: Optional[str], keep: int = 4) -> Optional[str]:
    """Mask a credential for log lines; short values are fully hidden."""
    if value is None:
        return None
    if len(value) <= keep * 2:
        return "*" * len(value)
    return "*" * (len(value) - keep) + value[-keep:]


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Tags control API calls with X-Request-ID and logs one line per request."""

    def __init__(self, app, logger: Optional[logging.Logger] = None):
        super().__init__(app)
        self.logger = logger or logging.getLogger(__name__)

    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        rid = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        increment_metric("requests_total", 1.0)
        status = 500
        with log_context(request_id=rid):
            try:
                response: Response = await call_next(request)
                status = response.status_code
                response.headers["X-Request-ID"] = rid
                return response
            except Exception as ex:
                self.logger.exception("request_error", extra={"error": type(ex).__name__})
                raise
            finally:
                if status >= 400:
                    increment_metric("requests_errors_total", 1.0)
                self.logger.info(
                    "request",
                    extra={
                        "method": request.method,
                        "path": request.url.path,
                        "status": status,
                        "duration_ms": round((time.perf_counter() - start) * 1000.0, 2),
                    },
                )


# PUBLIC_INTERFACE
def get_structured_logger(name: Optional[str] = None) -> logging.Logger:
    """Logger carrying the correlation filter."""
    logger = logging.getLogger(name or __name__)
    if not any(isinstance(f, _ContextFilter) for f in logger.filters):
        logger.addFilter(_ContextFilter())
    return logger


class _ContextFilter(logging.Filter):
    """Copy request_id, provider_id and target onto the record."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, var in _CONTEXT_VARS.items():
            setattr(record, key, var.get())
        return True
