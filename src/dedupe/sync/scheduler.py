"""Retry sweep -- periodic recovery of Sync Jobs stuck in ERROR.

RetrySweeper owns one asyncio ticker task. Every interval it lists the jobs
in ERROR and resubmits each through SyncPipeline.retry_job, the same path
an operator uses, so the retry logic lives in one place. Each job is
isolated: a failure to resubmit one job is logged and the sweep moves on.
A job that left ERROR between the listing and its resubmission is skipped.
"""

from __future__ import annotations

import asyncio

import structlog

from src.dedupe.core.errors import ConflictError, DedupeError
from src.dedupe.records.repository import DedupeRepository
from src.dedupe.records.schemas import JobStatus
from src.dedupe.sync.pipeline import SyncPipeline

logger = structlog.get_logger(__name__)


class RetrySweeper:
    """Periodically retries Sync Jobs in ERROR.

    Args:
        repository: DedupeRepository used to find failed jobs.
        pipeline: SyncPipeline whose retry_job performs the resubmission.
        interval_seconds: Seconds between sweeps (default five minutes).
    """

    def __init__(
        self,
        repository: DedupeRepository,
        pipeline: SyncPipeline,
        interval_seconds: float = 300,
    ) -> None:
        self._repository = repository
        self._pipeline = pipeline
        self._interval = interval_seconds
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def sweep(self) -> list[int]:
        """Resubmit every job currently in ERROR.

        Returns:
            Ids of the jobs that were moved to RETRYING.
        """
        failed = await self._repository.list_jobs_by_status(JobStatus.ERROR)
        retried: list[int] = []

        for job in failed:
            try:
                await self._pipeline.retry_job(job.id)
                retried.append(job.id)
            except ConflictError:
                logger.debug("scheduler.retry_skipped", job_id=job.id)
            except DedupeError as exc:
                logger.warning("scheduler.retry_failed", job_id=job.id, error=exc.message)
            except Exception:
                logger.warning("scheduler.retry_error", job_id=job.id, exc_info=True)

        if failed:
            logger.info("scheduler.sweep_completed", found=len(failed), retried=len(retried))
        return retried

    def start(self) -> None:
        """Start the ticker; the first sweep runs one interval from now."""
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="retry_sweeper")
        logger.info("scheduler.started", interval_seconds=self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("scheduler.stopped")

    async def _loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._interval)
                await self.sweep()
            except asyncio.CancelledError:
                logger.info("scheduler.task_cancelled")
                raise
            except Exception:
                logger.warning("scheduler.task_loop_error", exc_info=True)
