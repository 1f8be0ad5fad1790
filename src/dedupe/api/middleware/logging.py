"""Structured request logging middleware.

Logs every request with:
- method, path, status_code, duration_ms
- request_id (taken from X-Request-ID or generated, echoed on the response)
- scope (the escaped "owner:connection" key) for scope-addressed routes

Uses structlog for structured JSON logging in production and
human-readable console output in development.
"""

from __future__ import annotations

import logging
import re
import time
import uuid

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.dedupe.config import Environment, get_settings
from src.dedupe.records.schemas import scope_key

logger = structlog.get_logger(__name__)


def configure_structlog() -> None:
    """Configure structlog processors based on environment."""
    settings = get_settings()

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    )
    # CRMGateway logs its own calls; httpx would repeat every request
    logging.getLogger("httpx").setLevel(logging.WARNING)

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if settings.ENVIRONMENT == Environment.production:
        shared_processors.append(structlog.processors.JSONRenderer())
    else:
        shared_processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=shared_processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


_SCOPE_PATH = re.compile(r"/scopes/(?P<owner>[^/]+)/(?P<conn>[^/]+)")
_QUIET_PATHS = frozenset({"/api/v1/health", "/api/v1/health/ready"})


class LoggingMiddleware(BaseHTTPMiddleware):
    """Logs every request with timing and binds request context for the handler.

    The request id comes from an incoming X-Request-ID header or is freshly
    generated, and is echoed on the response. Requests addressed to a scope
    also bind ``scope`` so pipeline and merge log lines can be correlated
    with the call that triggered them. Health probes log at debug level.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        path = request.url.path
        context: dict[str, str] = {"request_id": request_id}
        match = _SCOPE_PATH.search(path)
        if match:
            context["scope"] = scope_key(match["owner"], match["conn"])

        started = time.monotonic()
        structlog.contextvars.bind_contextvars(**context)
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "request_error",
                method=request.method,
                path=path,
                duration_ms=round((time.monotonic() - started) * 1000, 2),
            )
            raise
        finally:
            structlog.contextvars.unbind_contextvars(*context)

        response.headers["X-Request-ID"] = request_id
        if path in _QUIET_PATHS:
            log = logger.debug
        elif response.status_code >= 500:
            log = logger.error
        elif response.status_code >= 400:
            log = logger.warning
        else:
            log = logger.info

        log(
            "request_completed",
            method=request.method,
            path=path,
            status_code=response.status_code,
            duration_ms=round((time.monotonic() - started) * 1000, 2),
            **context,
        )
        return response
