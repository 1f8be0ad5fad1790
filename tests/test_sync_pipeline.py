"""Tests for the sync pipeline: job status machine, fetch loop and detection hand-off."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from src.dedupe.core.errors import ConflictError, NotFoundError, ValidationError
from src.dedupe.records.schemas import JobStatus, StageLabel
from src.dedupe.sync.pipeline import SyncPipeline
from tests.conftest import make_record

PAGES = [
    [
        make_record("101", email="a@x.com", first_name="Ann"),
        make_record("102", email="a@x.com", first_name="Annie"),
    ],
    [make_record("103", phone="555", first_name="Bob")],
    [make_record("104", phone="555", first_name="Rob"), make_record("105", first_name="Uma")],
]


@pytest.fixture
def paged_gateway(gateway):
    gateway.pages = [list(p) for p in PAGES]
    return gateway


# ── Happy path ─────────────────────────────────────────────────────────────


class TestStartSync:
    async def test_fetches_all_pages_and_detects(
        self, pipeline, paged_gateway, tasks, repository, scope, progress
    ):
        job = await pipeline.start_sync(scope, "import", "tok")
        assert job.status == JobStatus.START

        await tasks.drain()

        job = await pipeline.get_job(job.id)
        assert job.status == JobStatus.FINISHED
        assert job.stage_label == StageLabel.READY_TO_MERGE
        assert job.count == 5
        assert job.error is None
        assert paged_gateway.list_calls == 3
        assert len(await repository.list_groups(scope)) == 2

        entry = await progress.get(scope)
        assert entry is not None and entry.is_complete

    async def test_finished_job_does_not_block_scope_lookup(
        self, pipeline, paged_gateway, tasks, scope
    ):
        job = await pipeline.start_sync(scope, "import", "tok")
        await tasks.drain()

        latest = await pipeline.get_latest_job(scope)
        assert latest.id == job.id
        assert [j.id for j in await pipeline.list_jobs(scope)] == [job.id]

    async def test_rejects_while_job_active(self, pipeline, paged_gateway, tasks, scope):
        await pipeline.start_sync(scope, "import", "tok")
        with pytest.raises(ConflictError):
            await pipeline.start_sync(scope, "again", "tok")
        await tasks.drain()

    async def test_rejects_when_records_remain(self, pipeline, paged_gateway, tasks, scope):
        await pipeline.start_sync(scope, "import", "tok")
        await tasks.drain()

        with pytest.raises(ConflictError, match="Records from a previous sync"):
            await pipeline.start_sync(scope, "again", "tok")

    async def test_unauthorized_token_creates_no_job(self, pipeline, gateway, repository, scope):
        gateway.unauthorized = True

        with pytest.raises(ValidationError):
            await pipeline.start_sync(scope, "import", "bad")

        assert await repository.list_jobs(scope) == []


# ── Failure and retry ──────────────────────────────────────────────────────


class TestFailureAndRetry:
    async def test_page_failure_moves_job_to_error(
        self, pipeline, paged_gateway, tasks, scope, progress
    ):
        paged_gateway.fail_on_page = 1

        job = await pipeline.start_sync(scope, "import", "tok")
        await tasks.drain()

        job = await pipeline.get_job(job.id)
        assert job.status == JobStatus.ERROR
        assert job.count == 2
        assert "API request failed after 3 attempts" in job.error
        entry = await progress.get(scope)
        assert entry.error is not None

    async def test_error_blocks_new_start(self, pipeline, paged_gateway, tasks, scope):
        paged_gateway.fail_on_page = 0
        await pipeline.start_sync(scope, "import", "tok")
        await tasks.drain()

        with pytest.raises(ConflictError):
            await pipeline.start_sync(scope, "again", "tok")

    async def test_retry_refetches_from_first_page(
        self, pipeline, paged_gateway, tasks, scope
    ):
        paged_gateway.fail_on_page = 2
        job = await pipeline.start_sync(scope, "import", "tok")
        await tasks.drain()
        assert (await pipeline.get_job(job.id)).count == 3

        paged_gateway.fail_on_page = None
        calls_before = paged_gateway.list_calls
        retried = await pipeline.retry_job(job.id)
        assert retried.status == JobStatus.RETRYING
        await tasks.drain()

        job = await pipeline.get_job(job.id)
        assert job.status == JobStatus.FINISHED
        assert job.count == 5
        assert job.error is None
        assert paged_gateway.list_calls - calls_before == 3

    async def test_retry_requires_error_status(self, pipeline, paged_gateway, tasks, scope):
        job = await pipeline.start_sync(scope, "import", "tok")
        await tasks.drain()

        with pytest.raises(ConflictError):
            await pipeline.retry_job(job.id)

    async def test_retry_unknown_job(self, pipeline):
        with pytest.raises(NotFoundError):
            await pipeline.retry_job(404)

    async def test_detection_failure_sets_error_label(
        self, repository, paged_gateway, tasks, progress, scope
    ):
        detector = MagicMock()
        detector.detect = AsyncMock(side_effect=RuntimeError("detector crashed"))
        pipeline = SyncPipeline(repository, paged_gateway, detector, tasks, progress)

        job = await pipeline.start_sync(scope, "import", "tok")
        await tasks.drain()

        job = await pipeline.get_job(job.id)
        assert job.status == JobStatus.FINISHED
        assert job.stage_label == StageLabel.ERROR
        assert job.error == "detector crashed"
        assert job.count == 5


# ── Delete and re-detect ───────────────────────────────────────────────────


class TestDeleteAndRedetect:
    async def test_delete_clears_scope(self, pipeline, paged_gateway, tasks, repository, scope):
        job = await pipeline.start_sync(scope, "import", "tok")
        await tasks.drain()

        await pipeline.delete_job(job.id)

        assert await repository.count_records(scope) == 0
        assert await repository.list_groups(scope) == []
        with pytest.raises(NotFoundError):
            await pipeline.get_job(job.id)

        # Scope is free again
        await pipeline.start_sync(scope, "fresh", "tok")
        await tasks.drain()

    async def test_delete_while_fetching_conflicts(self, pipeline, paged_gateway, tasks, scope):
        job = await pipeline.start_sync(scope, "import", "tok")

        with pytest.raises(ConflictError):
            await pipeline.delete_job(job.id)
        await tasks.drain()

    async def test_redetect_with_custom_conditions(
        self, pipeline, paged_gateway, tasks, repository, scope
    ):
        await pipeline.start_sync(scope, "import", "tok")
        await tasks.drain()

        await pipeline.redetect(scope, [{"name": "first", "fields": ["first_name"]}])
        await tasks.drain()

        assert await repository.list_groups(scope) == []
        job = await pipeline.get_latest_job(scope)
        assert job.stage_label == StageLabel.READY_TO_MERGE

    async def test_redetect_rejects_bad_conditions(self, pipeline, paged_gateway, tasks, scope):
        await pipeline.start_sync(scope, "import", "tok")
        await tasks.drain()

        with pytest.raises(ValidationError):
            await pipeline.redetect(scope, [])

    async def test_redetect_requires_finished_job(self, pipeline, paged_gateway, tasks, scope):
        paged_gateway.fail_on_page = 0
        await pipeline.start_sync(scope, "import", "tok")
        await tasks.drain()

        with pytest.raises(ConflictError):
            await pipeline.redetect(scope)

    async def test_redetect_without_job(self, pipeline, scope):
        with pytest.raises(NotFoundError):
            await pipeline.redetect(scope)

    async def test_redetect_with_named_default(
        self, pipeline, paged_gateway, tasks, repository, scope
    ):
        await pipeline.start_sync(scope, "import", "tok")
        await tasks.drain()

        await pipeline.redetect(scope, ["phone"])
        await tasks.drain()

        groups = await repository.list_groups(scope)
        assert len(groups) == 1
        members = await repository.get_records(scope, groups[0].member_ids)
        assert sorted(r.external_id for r in members.values()) == ["103", "104"]
        assert paged_gateway.property_calls == 0

    async def test_redetect_rejects_unknown_property_key(
        self, pipeline, paged_gateway, tasks, repository, scope
    ):
        await pipeline.start_sync(scope, "import", "tok")
        await tasks.drain()
        before = len(await repository.list_groups(scope))

        with pytest.raises(ValidationError, match="vat_idd"):
            await pipeline.redetect(scope, [{"name": "vat", "fields": ["vat_idd"]}])

        assert paged_gateway.property_calls == 1
        assert len(await repository.list_groups(scope)) == before

    async def test_redetect_accepts_known_property_key(
        self, pipeline, paged_gateway, tasks, scope
    ):
        await pipeline.start_sync(scope, "import", "tok")
        await tasks.drain()

        job = await pipeline.redetect(scope, [{"name": "vat", "fields": ["VAT_ID", "email"]}])
        await tasks.drain()

        assert job.status == JobStatus.FINISHED
        assert paged_gateway.property_calls == 1


# ── CRM properties ─────────────────────────────────────────────────────────


class TestProperties:
    async def test_search_filters_by_name_and_label(self, pipeline, paged_gateway, tasks, scope):
        await pipeline.start_sync(scope, "import", "tok")
        await tasks.drain()

        found = await pipeline.list_properties(scope, search="NAME")

        assert [p.name for p in found] == ["firstname", "lastname"]

    async def test_validate_splits_names(self, pipeline, paged_gateway, tasks, scope):
        await pipeline.start_sync(scope, "import", "tok")
        await tasks.drain()

        valid, invalid = await pipeline.validate_properties(scope, ["email", "emial", "vat_id"])

        assert valid == ["email", "vat_id"]
        assert invalid == ["emial"]

    async def test_requires_a_job(self, pipeline, scope):
        with pytest.raises(NotFoundError):
            await pipeline.list_properties(scope)
