"""Maps dedupe error kinds onto HTTP responses."""

from __future__ import annotations

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from src.dedupe.core.errors import (
    ConflictError,
    DedupeError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)

ERROR_STATUS: dict[type[DedupeError], int] = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ConflictError: status.HTTP_409_CONFLICT,
    UpstreamError: status.HTTP_502_BAD_GATEWAY,
}


async def dedupe_error_handler(request: Request, exc: DedupeError) -> JSONResponse:
    status_code = next(
        (code for kind, code in ERROR_STATUS.items() if isinstance(exc, kind)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    content: dict = {"detail": exc.message, "error": type(exc).__name__}
    if isinstance(exc, UpstreamError) and exc.status_code is not None:
        content["upstream_status"] = exc.status_code
    return JSONResponse(status_code=status_code, content=content)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DedupeError, dedupe_error_handler)
