"""External CRM gateway -- bounded-retry HTTP client for the remote CRM.

Wraps the four remote operations the core consumes (list-page, patch-one,
delete-one, merge-pair), the property definitions used to check custom
field conditions, and an access check built on list-page. The
gateway is stateless apart from its connection pool: every call takes the
caller's bearer token.

Retry policy (tenacity):
- Up to ``max_attempts`` attempts (default 3).
- Exponential backoff starting at ``retry_delay`` seconds, doubling each
  attempt (5s, 10s with the defaults).
- Only transport errors, 429 and 5xx responses are retried. Other 4xx
  responses fail on the first attempt.
- Final failure raises UpstreamError carrying the last upstream message
  and status code.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import httpx
import structlog
from pydantic import BaseModel, Field
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.dedupe.config import Settings
from src.dedupe.core.errors import UpstreamError, ValidationError
from src.dedupe.crm.field_mapping import FETCH_PROPERTIES, from_crm_object, property_group
from src.dedupe.records.schemas import RecordData

logger = structlog.get_logger(__name__)


class CRMPage(BaseModel):
    """One page of records plus the cursor for the next page (None when done)."""

    records: list[RecordData] = Field(default_factory=list)
    next_cursor: str | None = None


class CRMProperty(BaseModel):
    """One property definition of the CRM object type."""

    name: str
    label: str
    description: str | None = None
    type: str | None = None
    field_type: str | None = None
    options: list[dict[str, Any]] = Field(default_factory=list)
    group_name: str


class _RetryableResponse(Exception):
    """Raised inside the retry loop for responses worth another attempt."""

    def __init__(self, response: httpx.Response) -> None:
        super().__init__(f"HTTP {response.status_code}")
        self.response = response


def _error_message(response: httpx.Response) -> str:
    """Extract the upstream error text from a failed response."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return response.text[:500] or response.reason_phrase or f"HTTP {response.status_code}"


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "crm.request_retry",
        attempt=retry_state.attempt_number,
        wait_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
        error=str(exc),
    )


class CRMGateway:
    """HTTP+bearer-token client for the remote CRM objects API.

    Args:
        base_url: CRM API root, e.g. ``https://api.hubapi.com``.
        object_type: CRM object collection to operate on.
        page_size: Default list-page size.
        extra_properties: Property-bag keys requested on top of the fixed
            fields, so custom conditions have values to compare.
        max_attempts: Attempts per outbound call, first one included.
        retry_delay: Initial backoff in seconds; doubles per attempt.
        timeout: Per-request timeout in seconds.
        client: Optional pre-built AsyncClient (tests pass a MockTransport).
    """

    def __init__(
        self,
        base_url: str,
        *,
        object_type: str = "contacts",
        page_size: int = 100,
        extra_properties: Sequence[str] = (),
        max_attempts: int = 3,
        retry_delay: float = 5.0,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._object_type = object_type
        self._page_size = page_size
        self._properties = list(dict.fromkeys([*FETCH_PROPERTIES, *extra_properties]))
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    @classmethod
    def from_settings(cls, settings: Settings) -> CRMGateway:
        return cls(
            settings.CRM_API_BASE_URL,
            page_size=settings.CRM_PAGE_SIZE,
            extra_properties=settings.get_crm_extra_properties(),
            max_attempts=settings.CRM_MAX_ATTEMPTS,
            retry_delay=settings.CRM_RETRY_DELAY_SECONDS,
            timeout=settings.CRM_TIMEOUT_SECONDS,
        )

    async def close(self) -> None:
        await self._client.aclose()

    @property
    def _objects_path(self) -> str:
        return f"/crm/v3/objects/{self._object_type}"

    # ── Core request ────────────────────────────────────────────────────────

    async def request(
        self,
        method: str,
        path: str,
        token: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """Perform one outbound call under the retry policy.

        Raises:
            UpstreamError: The call failed on its last permitted attempt, or
                the CRM rejected it with a non-retryable status.
        """
        attempts = 0
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=self._retry_delay, min=0, max=3600),
            retry=retry_if_exception_type((httpx.TransportError, _RetryableResponse)),
            before_sleep=_log_retry,
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    response = await self._client.request(
                        method, path, headers=headers, params=params, json=json
                    )
                    if response.status_code == 429 or response.status_code >= 500:
                        raise _RetryableResponse(response)
        except _RetryableResponse as exc:
            raise UpstreamError(
                f"API request failed after {attempts} attempts: {_error_message(exc.response)}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.TransportError as exc:
            raise UpstreamError(
                f"API request failed after {attempts} attempts: {str(exc) or type(exc).__name__}"
            ) from exc

        if response.is_error:
            raise UpstreamError(
                f"API request failed after {attempts} attempts: {_error_message(response)}",
                status_code=response.status_code,
            )

        logger.debug(
            "crm.request_completed",
            method=method,
            path=path,
            status_code=response.status_code,
            attempts=attempts,
        )
        return response

    # ── Operations ──────────────────────────────────────────────────────────

    async def list_page(
        self, token: str, cursor: str | None = None, limit: int | None = None
    ) -> CRMPage:
        """Fetch one page of records starting at ``cursor``.

        Args:
            token: Caller's bearer token.
            cursor: Opaque cursor from the previous page, None for the first.
            limit: Page size override.

        Returns:
            CRMPage with mapped records and the next cursor.
        """
        params: dict[str, Any] = {
            "limit": limit or self._page_size,
            "properties": ",".join(self._properties),
        }
        if cursor:
            params["after"] = cursor

        response = await self.request("GET", self._objects_path, token, params=params)
        data = response.json()
        next_cursor = ((data.get("paging") or {}).get("next") or {}).get("after")
        return CRMPage(
            records=[from_crm_object(obj) for obj in data.get("results", [])],
            next_cursor=str(next_cursor) if next_cursor else None,
        )

    async def validate_access(self, token: str) -> None:
        """Check the token with a minimal list-page call.

        Raises:
            ValidationError: The CRM rejected the token (401/403).
            UpstreamError: The CRM could not be reached.
        """
        try:
            await self.list_page(token, limit=1)
        except UpstreamError as exc:
            if exc.status_code in (401, 403):
                raise ValidationError("Invalid or unauthorized CRM access token") from exc
            raise

    async def patch_record(
        self, token: str, external_id: str, properties: dict[str, str]
    ) -> dict[str, Any]:
        response = await self.request(
            "PATCH",
            f"{self._objects_path}/{external_id}",
            token,
            json={"properties": properties},
        )
        return response.json()

    async def delete_record(self, token: str, external_id: str) -> bool:
        """Delete one record. Returns False if the CRM no longer has it."""
        try:
            await self.request("DELETE", f"{self._objects_path}/{external_id}", token)
        except UpstreamError as exc:
            if exc.status_code == 404:
                logger.info("crm.delete_already_gone", external_id=external_id)
                return False
            raise
        return True

    async def merge_pair(self, token: str, primary_id: str, secondary_id: str) -> str:
        """Merge ``secondary_id`` into ``primary_id``.

        Returns:
            The canonical id of the merged record as reported by the CRM,
            falling back to ``primary_id`` when the response omits it.
        """
        response = await self.request(
            "POST",
            f"{self._objects_path}/merge",
            token,
            json={"primaryObjectId": primary_id, "objectIdToMerge": secondary_id},
        )
        try:
            data = response.json()
        except ValueError:
            data = {}
        canonical = data.get("id") if isinstance(data, dict) else None
        return str(canonical) if canonical else primary_id

    async def list_properties(self, token: str) -> list[CRMProperty]:
        """List the visible, non-file property definitions of the object type."""
        response = await self.request(
            "GET", f"/crm/v3/properties/{self._object_type}", token
        )
        properties = []
        for prop in response.json().get("results", []):
            if prop.get("hidden") or prop.get("fieldType") == "file":
                continue
            name = str(prop["name"])
            properties.append(
                CRMProperty(
                    name=name,
                    label=prop.get("label") or name,
                    description=prop.get("description") or None,
                    type=prop.get("type"),
                    field_type=prop.get("fieldType"),
                    options=prop.get("options") or [],
                    group_name=property_group(name),
                )
            )
        return properties
