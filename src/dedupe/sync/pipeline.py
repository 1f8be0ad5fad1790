"""Sync pipeline -- ingestion of CRM records and the Sync Job status machine.

    START -> FETCHING -> FINISHED | ERROR
    ERROR -> RETRYING -> FETCHING -> ...

start_sync validates and claims the scope, then returns while the fetch
loop runs as a background task. The loop pages through the gateway,
upserts every page and records the running count on the job. When the last
page is in, the job is FINISHED and a separate detection task replaces the
scope's groups; its stage label walks fetching -> detecting duplicates ->
ready to merge.

Failures are recorded by the task runner's error hooks: a fetch failure
moves the job to ERROR (the count already reflects the pages stored before
it), a detection failure sets the stage label to "error". retry_job is the
only way back from ERROR and is shared by the API and the retry sweep.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import structlog

from src.dedupe.core.errors import ConflictError, NotFoundError
from src.dedupe.core.tasks import BackgroundTaskRunner
from src.dedupe.crm.gateway import CRMGateway, CRMProperty
from src.dedupe.dedup.conditions import bag_fields, check_fields, parse_conditions
from src.dedupe.dedup.detector import DuplicateDetector
from src.dedupe.progress import ProgressTracker
from src.dedupe.records.repository import DedupeRepository
from src.dedupe.records.schemas import (
    FieldCondition,
    JobRead,
    JobStatus,
    Scope,
    StageLabel,
)

logger = structlog.get_logger(__name__)


def _scope_of(job: JobRead) -> Scope:
    return Scope(owner_id=job.owner_id, connection_key=job.connection_key)


class SyncPipeline:
    """Drives Sync Jobs from start request to ready-to-merge.

    Args:
        repository: DedupeRepository for jobs and records.
        gateway: CRMGateway used for access checks and paging.
        detector: DuplicateDetector run after a successful fetch.
        tasks: BackgroundTaskRunner owning the fetch and detection tasks.
        progress: ProgressTracker for pollers.
    """

    def __init__(
        self,
        repository: DedupeRepository,
        gateway: CRMGateway,
        detector: DuplicateDetector,
        tasks: BackgroundTaskRunner,
        progress: ProgressTracker,
    ) -> None:
        self._repository = repository
        self._gateway = gateway
        self._detector = detector
        self._tasks = tasks
        self._progress = progress

    # ── Job lifecycle ───────────────────────────────────────────────────────

    async def start_sync(self, scope: Scope, job_name: str, access_token: str) -> JobRead:
        """Start ingesting ``scope`` and return the new job immediately.

        Raises:
            ConflictError: The scope has an active job or still holds records.
            ValidationError: The CRM rejected ``access_token``.
            UpstreamError: The access check could not reach the CRM.
        """
        active = await self._repository.get_active_job(scope)
        if active is not None:
            raise ConflictError(
                f"Sync job {active.id} is still {active.status.value} for this scope"
            )
        if await self._repository.count_records(scope) > 0:
            raise ConflictError(
                "Records from a previous sync still exist for this scope; "
                "finish or delete that job first"
            )

        await self._gateway.validate_access(access_token)

        # Unique active_scope_key closes the window between the check and here
        job = await self._repository.create_job(scope, job_name, access_token)
        logger.info("sync.started", job_id=job.id, scope=scope.key, name=job_name)

        self._spawn_fetch(job.id, scope, access_token)
        return job

    async def retry_job(self, job_id: int) -> JobRead:
        """Re-run a failed job's fetch loop from the first page.

        Raises:
            NotFoundError: Unknown job.
            ConflictError: The job is not in ERROR (or another caller won the retry).
        """
        job = await self.get_job(job_id)
        if job.status != JobStatus.ERROR:
            raise ConflictError(f"Job {job_id} is {job.status.value}, not error")
        if not await self._repository.transition_job(job_id, JobStatus.ERROR, JobStatus.RETRYING):
            raise ConflictError(f"Job {job_id} was retried concurrently")

        token = await self._repository.get_access_token(job_id)
        scope = _scope_of(job)
        logger.info("sync.retrying", job_id=job_id, scope=scope.key, count=job.count)

        self._spawn_fetch(job_id, scope, token or "")
        return await self.get_job(job_id)

    async def get_job(self, job_id: int) -> JobRead:
        job = await self._repository.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Sync job {job_id} not found")
        return job

    async def get_latest_job(self, scope: Scope) -> JobRead:
        job = await self._repository.get_latest_job(scope)
        if job is None:
            raise NotFoundError(f"No sync job found for scope {scope.key}")
        return job

    async def list_jobs(self, scope: Scope) -> list[JobRead]:
        return await self._repository.list_jobs(scope)

    async def delete_job(self, job_id: int) -> dict[str, int]:
        """Delete a job together with all data of its scope.

        Raises:
            NotFoundError: Unknown job.
            ConflictError: The job's fetch loop is still running.
        """
        job = await self.get_job(job_id)
        if self._tasks.is_running(f"sync:{job_id}"):
            raise ConflictError(f"Job {job_id} is still fetching")

        scope = _scope_of(job)
        counts = await self._repository.clear_scope(scope)
        await self._repository.delete_job(job_id)
        await self._progress.clear(scope)
        logger.info("sync.job_deleted", job_id=job_id, scope=scope.key, **counts)
        return counts

    # ── Detection ───────────────────────────────────────────────────────────

    async def redetect(
        self,
        scope: Scope,
        conditions: Sequence[str | dict[str, Any] | FieldCondition] | None = None,
    ) -> JobRead:
        """Re-run detection for a fetched scope, optionally with custom conditions.

        Conditions may name default strategies or define field sets. Field
        keys outside the fixed comparison fields must be CRM properties.

        Raises:
            ValidationError: Malformed field conditions or unknown property keys.
            NotFoundError: The scope has no job.
            ConflictError: The latest job has not finished fetching.
        """
        parsed = parse_conditions(conditions) if conditions is not None else None
        job = await self.get_latest_job(scope)
        if job.status != JobStatus.FINISHED:
            raise ConflictError(f"Job {job.id} has not finished fetching")
        if parsed and bag_fields(parsed):
            token = await self._repository.get_access_token(job.id)
            known = await self._gateway.list_properties(token or "")
            check_fields(parsed, [p.name for p in known])

        self._spawn_detection(job.id, scope, parsed, clear_all=False)
        return job

    # ── CRM properties ──────────────────────────────────────────────────────

    async def list_properties(self, scope: Scope, search: str | None = None) -> list[CRMProperty]:
        """CRM property definitions available as condition keys.

        Args:
            scope: Scope whose latest job supplies the access token.
            search: Case-insensitive filter on name, label and description.
        """
        job = await self.get_latest_job(scope)
        token = await self._repository.get_access_token(job.id)
        properties = await self._gateway.list_properties(token or "")
        if not search:
            return properties
        term = search.strip().casefold()
        return [
            p
            for p in properties
            if term in p.name.casefold()
            or term in p.label.casefold()
            or (p.description and term in p.description.casefold())
        ]

    async def validate_properties(
        self, scope: Scope, names: Sequence[str]
    ) -> tuple[list[str], list[str]]:
        """Split ``names`` into (valid, invalid) CRM property names."""
        known = {p.name for p in await self.list_properties(scope)}
        valid = [n for n in names if n in known]
        invalid = [n for n in names if n not in known]
        return valid, invalid

    # ── Background work ─────────────────────────────────────────────────────

    def _spawn_fetch(self, job_id: int, scope: Scope, token: str) -> None:
        async def on_error(exc: BaseException) -> None:
            await self._record_fetch_failure(job_id, scope, exc)

        self._tasks.spawn(f"sync:{job_id}", self._fetch_all(job_id, scope, token), on_error)

    def _spawn_detection(
        self,
        job_id: int,
        scope: Scope,
        conditions: list[FieldCondition] | None,
        clear_all: bool,
    ) -> None:
        async def on_error(exc: BaseException) -> None:
            await self._record_detection_failure(job_id, scope, exc)

        self._tasks.spawn(
            f"detect:{scope.key}",
            self._detect(job_id, scope, conditions, clear_all),
            on_error,
        )

    async def _fetch_all(self, job_id: int, scope: Scope, token: str) -> int:
        """Page through the CRM until it stops returning a cursor."""
        await self._progress.start(scope, StageLabel.FETCHING.value, message="Fetching records")

        cursor: str | None = None
        pages = 0
        count = 0
        while True:
            page = await self._gateway.list_page(token, cursor)
            await self._repository.upsert_records(scope, page.records)
            pages += 1
            count = await self._repository.count_records(scope)
            await self._repository.update_job(job_id, status=JobStatus.FETCHING, count=count)
            await self._progress.update(
                scope, processed=count, message=f"Fetched {count} records"
            )
            logger.debug(
                "sync.page_persisted",
                job_id=job_id,
                page=pages,
                page_records=len(page.records),
                count=count,
            )
            cursor = page.next_cursor
            if not cursor:
                break

        await self._repository.update_job(
            job_id,
            status=JobStatus.FINISHED,
            stage_label=StageLabel.DETECTING_DUPLICATES,
            count=count,
            clear_error=True,
        )
        await self._progress.complete(scope, message=f"Fetched {count} records")
        logger.info("sync.fetch_completed", job_id=job_id, scope=scope.key, count=count, pages=pages)

        self._spawn_detection(job_id, scope, None, clear_all=True)
        return count

    async def _detect(
        self,
        job_id: int,
        scope: Scope,
        conditions: list[FieldCondition] | None,
        clear_all: bool,
    ) -> int:
        await self._progress.start(
            scope, StageLabel.DETECTING_DUPLICATES.value, message="Detecting duplicates"
        )
        await self._repository.update_job(job_id, stage_label=StageLabel.DETECTING_DUPLICATES)
        if clear_all:
            await self._repository.delete_groups(scope)

        groups = await self._detector.detect(scope, conditions)

        await self._repository.update_job(job_id, stage_label=StageLabel.READY_TO_MERGE)
        await self._progress.complete(scope, message=f"Found {len(groups)} duplicate groups")
        return len(groups)

    async def _record_fetch_failure(self, job_id: int, scope: Scope, exc: BaseException) -> None:
        job = await self._repository.update_job(job_id, status=JobStatus.ERROR, error=str(exc))
        await self._progress.fail(scope, str(exc))
        logger.error(
            "sync.fetch_failed",
            job_id=job_id,
            scope=scope.key,
            count=job.count if job else None,
            error=str(exc),
        )

    async def _record_detection_failure(
        self, job_id: int, scope: Scope, exc: BaseException
    ) -> None:
        await self._repository.update_job(job_id, stage_label=StageLabel.ERROR, error=str(exc))
        await self._progress.fail(scope, str(exc))
        logger.error("sync.detection_failed", job_id=job_id, scope=scope.key, error=str(exc))
