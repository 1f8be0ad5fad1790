"""API middleware package."""

from src.dedupe.api.middleware.logging import LoggingMiddleware

__all__ = ["LoggingMiddleware"]
