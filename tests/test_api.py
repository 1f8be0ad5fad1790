"""API tests over ASGITransport with a SQLite database and the fake CRM.

Services are wired with init_services directly; the lifespan (which would
connect to PostgreSQL) is not run.
"""

from __future__ import annotations

import httpx
import pytest_asyncio

from src.dedupe.config import Settings
from src.dedupe.main import create_app, init_services
from src.dedupe.progress import InMemoryProgressStore
from tests.conftest import FakeCRMGateway, make_record

BASE = "/api/v1/scopes/owner-1/conn-a"


@pytest_asyncio.fixture
async def app(session_factory, tmp_path):
    gateway = FakeCRMGateway(
        pages=[
            [make_record("101", email="a@x.com"), make_record("102", email="a@x.com")],
            [make_record("103", phone="555")],
        ]
    )
    application = create_app()
    init_services(
        application,
        Settings(EXPORT_DIR=str(tmp_path / "exports"), MERGE_CHUNK_PAUSE_SECONDS=0),
        session_factory=session_factory,
        gateway=gateway,
        progress_store=InMemoryProgressStore(),
    )
    yield application
    await application.state.task_runner.shutdown()


@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def _sync(client, app) -> dict:
    response = await client.post(
        f"{BASE}/sync", json={"job_name": "import", "access_token": "tok"}
    )
    assert response.status_code == 202
    await app.state.task_runner.drain()
    return response.json()


# ── Sync ───────────────────────────────────────────────────────────────────


class TestSyncEndpoints:
    async def test_start_and_poll(self, client, app):
        job = await _sync(client, app)
        assert job["status"] == "start"
        assert "access_token" not in job

        response = await client.get(f"/api/v1/jobs/{job['id']}")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "finished"
        assert body["stage_label"] == "ready to merge"
        assert body["count"] == 3

        latest = await client.get(f"{BASE}/jobs/latest")
        assert latest.json()["id"] == job["id"]

        progress = await client.get(f"{BASE}/progress")
        assert progress.json()["progress"]["is_complete"] is True

    async def test_second_start_conflicts(self, client, app):
        await _sync(client, app)
        response = await client.post(
            f"{BASE}/sync", json={"job_name": "again", "access_token": "tok"}
        )
        assert response.status_code == 409
        assert response.json()["error"] == "ConflictError"

    async def test_unauthorized_token_is_bad_request(self, client, app):
        app.state.crm_gateway.unauthorized = True
        response = await client.post(
            f"{BASE}/sync", json={"job_name": "import", "access_token": "bad"}
        )
        assert response.status_code == 400

    async def test_missing_fields_are_rejected(self, client):
        response = await client.post(f"{BASE}/sync", json={"job_name": ""})
        assert response.status_code == 422

    async def test_failed_fetch_and_retry(self, client, app):
        job = await _sync(client, app)
        await client.delete(f"/api/v1/jobs/{job['id']}")
        app.state.crm_gateway.fail_on_page = 0

        failed = await _sync(client, app)
        body = (await client.get(f"/api/v1/jobs/{failed['id']}")).json()
        assert body["status"] == "error"
        assert body["count"] == 0

        retry = await client.post(f"/api/v1/jobs/{failed['id']}/retry")
        assert retry.status_code == 202
        await app.state.task_runner.drain()
        body = (await client.get(f"/api/v1/jobs/{failed['id']}")).json()
        assert body["status"] == "error"
        assert "API request failed" in body["error"]

    async def test_unknown_job(self, client):
        response = await client.get("/api/v1/jobs/999")
        assert response.status_code == 404
        assert response.json()["detail"] == "Sync job 999 not found"

    async def test_detect_with_invalid_conditions(self, client, app):
        await _sync(client, app)
        response = await client.post(f"{BASE}/detect", json={"conditions": []})
        assert response.status_code == 400

    async def test_detect_with_default_names(self, client, app):
        await _sync(client, app)
        response = await client.post(f"{BASE}/detect", json={"conditions": ["phone"]})
        assert response.status_code == 202
        await app.state.task_runner.drain()

        page = (await client.get(f"{BASE}/groups")).json()
        assert page["total"] == 0

    async def test_detect_with_unknown_property(self, client, app):
        await _sync(client, app)
        response = await client.post(
            f"{BASE}/detect", json={"conditions": [{"name": "vat", "fields": ["vat_nr"]}]}
        )
        assert response.status_code == 400
        assert "vat_nr" in response.json()["detail"]

    async def test_properties_search_and_validate(self, client, app):
        await _sync(client, app)

        listed = await client.get(f"{BASE}/properties", params={"search": "vat"})
        assert listed.status_code == 200
        assert [p["name"] for p in listed.json()] == ["vat_id"]

        checked = await client.post(
            f"{BASE}/properties/validate", json={"names": ["email", "fax"]}
        )
        assert checked.json() == {"valid": ["email"], "invalid": ["fax"]}

    async def test_progress_unknown_scope(self, client):
        response = await client.get("/api/v1/scopes/nobody/none/progress")
        assert response.status_code == 200
        assert response.json() == {"scope": "nobody:none", "progress": None}


# ── Groups and finish ──────────────────────────────────────────────────────


class TestGroupEndpoints:
    async def test_resolve_finish_and_download(self, client, app):
        job = await _sync(client, app)

        page = (await client.get(f"{BASE}/groups", params={"limit": 5})).json()
        assert page["total"] == 1
        group = page["groups"][0]
        survivor, removed = group["member_ids"]

        response = await client.post(
            f"/api/v1/groups/{group['id']}/resolve",
            json={
                "survivor_id": survivor,
                "field_values": {"first_name": "Ann"},
                "removed_ids": [removed],
            },
        )
        assert response.status_code == 200
        assert response.json()["merged"] is True

        again = await client.post(
            f"/api/v1/groups/{group['id']}/resolve",
            json={"survivor_id": survivor, "removed_ids": [removed]},
        )
        assert again.status_code == 409

        finish = await client.post(f"{BASE}/finish")
        assert finish.status_code == 202
        await app.state.task_runner.drain()

        body = (await client.get(f"/api/v1/jobs/{job['id']}")).json()
        assert body["stage_label"] == "finished"
        download = await client.get(f"/api/v1/exports/{body['export_path']}")
        assert download.status_code == 200
        assert download.headers["content-type"].startswith("text/csv")
        lines = download.text.strip().split("\n")
        assert lines[0].startswith('"ID","External ID","Email"')
        assert len(lines) == 3

    async def test_group_limit_validation(self, client):
        response = await client.get(f"{BASE}/groups", params={"limit": 500})
        assert response.status_code == 422

    async def test_merge_failure_maps_to_bad_gateway(self, client, app):
        await _sync(client, app)
        group = (await client.get(f"{BASE}/groups")).json()["groups"][0]
        app.state.crm_gateway.fail_merges_for = {"102"}

        response = await client.post(
            f"/api/v1/groups/{group['id']}/merge",
            json={"primary_external_id": "101", "secondary_external_id": "102"},
        )

        assert response.status_code == 502
        assert response.json()["upstream_status"] == 400

    async def test_reset_unmerged_group_conflicts(self, client, app):
        await _sync(client, app)
        group = (await client.get(f"{BASE}/groups")).json()["groups"][0]
        response = await client.post(f"/api/v1/groups/{group['id']}/reset")
        assert response.status_code == 409

    async def test_export_path_traversal_is_not_found(self, client):
        response = await client.get("/api/v1/exports/..%2Fdedupe.db")
        assert response.status_code == 404


class TestHealth:
    async def test_liveness(self, client):
        response = await client.get("/api/v1/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
