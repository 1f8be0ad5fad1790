"""Tests for the CRM gateway retry policy and operations.

Uses httpx.MockTransport so no network is touched; retry_delay=0 keeps the
backoff instant.
"""

from __future__ import annotations

import json

import httpx
import pytest

from src.dedupe.core.errors import UpstreamError, ValidationError
from src.dedupe.crm.gateway import CRMGateway


def _gateway(handler, max_attempts: int = 3) -> CRMGateway:
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="https://crm.test"
    )
    return CRMGateway(
        "https://crm.test", max_attempts=max_attempts, retry_delay=0, client=client
    )


def _contact(object_id: str, **properties) -> dict:
    return {"id": object_id, "properties": {"hs_object_id": object_id, **properties}}


# ── list_page ──────────────────────────────────────────────────────────────


class TestListPage:
    async def test_parses_records_and_cursor(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={
                    "results": [
                        _contact(
                            "11",
                            email="ann@x.com",
                            firstname="Ann",
                            company="Acme",
                            createdate="2026-01-05T10:00:00Z",
                            city="Oslo",
                        )
                    ],
                    "paging": {"next": {"after": "11"}},
                },
            )

        gateway = _gateway(handler)
        page = await gateway.list_page("tok", cursor="5", limit=25)

        assert page.next_cursor == "11"
        record = page.records[0]
        assert record.external_id == "11"
        assert record.email == "ann@x.com"
        assert record.first_name == "Ann"
        assert record.organization == "Acme"
        assert record.properties == {"city": "Oslo"}
        assert record.created_at is not None and record.created_at.year == 2026

        request = seen[0]
        assert request.headers["Authorization"] == "Bearer tok"
        assert request.url.path == "/crm/v3/objects/contacts"
        assert request.url.params["after"] == "5"
        assert request.url.params["limit"] == "25"
        await gateway.close()

    async def test_last_page_has_no_cursor(self):
        gateway = _gateway(lambda request: httpx.Response(200, json={"results": []}))
        page = await gateway.list_page("tok")
        assert page.records == []
        assert page.next_cursor is None
        await gateway.close()


# ── Retry policy ───────────────────────────────────────────────────────────


class TestRetryPolicy:
    async def test_retries_server_errors_then_succeeds(self):
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] < 3:
                return httpx.Response(503, json={"message": "busy"})
            return httpx.Response(200, json={"results": []})

        gateway = _gateway(handler)
        await gateway.list_page("tok")
        assert calls["n"] == 3
        await gateway.close()

    async def test_exhausted_attempts_raise_upstream_error(self):
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            return httpx.Response(502, json={"message": "bad gateway"})

        gateway = _gateway(handler)
        with pytest.raises(UpstreamError) as exc_info:
            await gateway.list_page("tok")

        assert calls["n"] == 3
        assert exc_info.value.status_code == 502
        assert exc_info.value.message == "API request failed after 3 attempts: bad gateway"
        await gateway.close()

    async def test_rate_limit_is_retried(self):
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] == 1:
                return httpx.Response(429, text="slow down")
            return httpx.Response(200, json={"results": []})

        gateway = _gateway(handler)
        await gateway.list_page("tok")
        assert calls["n"] == 2
        await gateway.close()

    async def test_client_errors_are_not_retried(self):
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            return httpx.Response(400, json={"message": "Property values were not valid"})

        gateway = _gateway(handler)
        with pytest.raises(UpstreamError) as exc_info:
            await gateway.patch_record("tok", "11", {"email": "x"})

        assert calls["n"] == 1
        assert exc_info.value.status_code == 400
        assert "Property values were not valid" in exc_info.value.message
        await gateway.close()

    async def test_transport_errors_are_retried(self):
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            raise httpx.ConnectError("connection refused", request=request)

        gateway = _gateway(handler, max_attempts=2)
        with pytest.raises(UpstreamError) as exc_info:
            await gateway.list_page("tok")

        assert calls["n"] == 2
        assert exc_info.value.status_code is None
        assert "failed after 2 attempts" in exc_info.value.message
        assert exc_info.value.message.endswith("connection refused")
        await gateway.close()


# ── Operations ─────────────────────────────────────────────────────────────


class TestOperations:
    async def test_validate_access_rejects_unauthorized_token(self):
        gateway = _gateway(lambda request: httpx.Response(401, json={"message": "expired"}))
        with pytest.raises(ValidationError):
            await gateway.validate_access("bad")
        await gateway.close()

    async def test_validate_access_requests_single_record(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"results": []})

        gateway = _gateway(handler)
        await gateway.validate_access("tok")
        assert seen[0].url.params["limit"] == "1"
        await gateway.close()

    async def test_patch_sends_properties_payload(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"id": "11"})

        gateway = _gateway(handler)
        await gateway.patch_record("tok", "11", {"firstname": "Ann"})

        assert seen[0].method == "PATCH"
        assert seen[0].url.path == "/crm/v3/objects/contacts/11"
        assert json.loads(seen[0].content) == {"properties": {"firstname": "Ann"}}
        await gateway.close()

    async def test_merge_returns_canonical_id(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"id": "99"})

        gateway = _gateway(handler)
        canonical = await gateway.merge_pair("tok", "11", "12")

        assert canonical == "99"
        assert seen[0].url.path == "/crm/v3/objects/contacts/merge"
        assert json.loads(seen[0].content) == {"primaryObjectId": "11", "objectIdToMerge": "12"}
        await gateway.close()

    async def test_merge_falls_back_to_primary_id(self):
        gateway = _gateway(lambda request: httpx.Response(200, json={}))
        assert await gateway.merge_pair("tok", "11", "12") == "11"
        await gateway.close()

    async def test_delete_missing_record_returns_false(self):
        gateway = _gateway(lambda request: httpx.Response(404, json={"message": "not found"}))
        assert await gateway.delete_record("tok", "11") is False
        await gateway.close()

    async def test_delete_returns_true(self):
        gateway = _gateway(lambda request: httpx.Response(204))
        assert await gateway.delete_record("tok", "11") is True
        await gateway.close()


# ── Properties ─────────────────────────────────────────────────────────────


class TestProperties:
    async def test_lists_visible_properties_with_groups(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={
                    "results": [
                        {"name": "email", "label": "Email", "type": "string", "fieldType": "text"},
                        {"name": "company", "label": "", "type": "string", "fieldType": "text"},
                        {"name": "hs_lead_status", "label": "Lead status", "fieldType": "select",
                         "options": [{"label": "New", "value": "NEW"}]},
                        {"name": "vat_id", "label": "VAT", "description": "Tax id"},
                        {"name": "internal", "label": "Internal", "hidden": True},
                        {"name": "avatar", "label": "Avatar", "fieldType": "file"},
                    ]
                },
            )

        gateway = _gateway(handler)
        properties = await gateway.list_properties("tok")

        assert seen[0].url.path == "/crm/v3/properties/contacts"
        assert [p.name for p in properties] == ["email", "company", "hs_lead_status", "vat_id"]
        assert [p.group_name for p in properties] == [
            "Contact Information",
            "Company Information",
            "HubSpot System",
            "Custom Fields",
        ]
        assert properties[1].label == "company"
        assert properties[2].options == [{"label": "New", "value": "NEW"}]
        assert properties[3].description == "Tax id"
        await gateway.close()

    async def test_extra_properties_are_requested(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200, json={"results": [_contact("11", email="a@x.com", vat_id="DE-1")]}
            )

        client = httpx.AsyncClient(
            transport=httpx.MockTransport(handler), base_url="https://crm.test"
        )
        gateway = CRMGateway(
            "https://crm.test", extra_properties=["vat_id", "email"], retry_delay=0, client=client
        )
        page = await gateway.list_page("tok")

        requested = seen[0].url.params["properties"].split(",")
        assert requested.count("email") == 1
        assert requested[-1] == "vat_id"
        assert page.records[0].properties == {"vat_id": "DE-1"}
        await gateway.close()
