"""Error kinds raised by the dedupe core.

Every failure that crosses a public operation boundary is one of the
classes below. The API layer maps them onto HTTP status codes; background
tasks record them into the owning Job or Merge Record instead of letting
them escape.

- ValidationError: bad credentials, malformed condition input. Never retried.
- ConflictError: duplicate active job, resolving an already-merged group.
- UpstreamError: the external CRM gateway gave up after its last attempt.
- NotFoundError: unknown job, group or record.
"""

from __future__ import annotations


class DedupeError(Exception):
    """Base class for all dedupe core errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(DedupeError):
    """Caller input or credentials were rejected."""


class ConflictError(DedupeError):
    """The operation conflicts with the current state of the scope."""


class NotFoundError(DedupeError):
    """A referenced job, group or record does not exist."""


class UpstreamError(DedupeError):
    """The external CRM failed after all retry attempts.

    Attributes:
        status_code: HTTP status of the last upstream response, or None when
            the request never produced a response (timeout, connection reset).
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
