"""REST API endpoints for Sync Jobs, detection and progress polling.

Long-running work (fetch, detection) is started here and answered with
202 plus the job; callers poll the job or the scope's progress entry. The
property routes list the CRM keys usable in custom field conditions.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from src.dedupe.api.deps import get_pipeline, get_progress, get_scope
from src.dedupe.crm.gateway import CRMProperty
from src.dedupe.progress import ProgressEntry
from src.dedupe.records.schemas import JobRead, Scope

router = APIRouter(tags=["sync"])


# ── Request / Response Schemas ───────────────────────────────────────────────


class StartSyncRequest(BaseModel):
    job_name: str = Field(min_length=1, max_length=255)
    access_token: str = Field(min_length=1)


class DetectRequest(BaseModel):
    """Conditions: default strategy names or field sets; omit for all defaults."""

    conditions: list[str | dict[str, Any]] | None = None


class ValidatePropertiesRequest(BaseModel):
    names: list[str] = Field(min_length=1)


class ValidatePropertiesResponse(BaseModel):
    valid: list[str]
    invalid: list[str]


class ProgressResponse(BaseModel):
    scope: str
    progress: ProgressEntry | None = None


class DeleteJobResponse(BaseModel):
    job_id: int
    deleted: dict[str, int]


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.post(
    "/scopes/{owner_id}/{connection_key}/sync",
    response_model=JobRead,
    status_code=status.HTTP_202_ACCEPTED,
)
async def start_sync(
    body: StartSyncRequest,
    scope: Scope = Depends(get_scope),
    pipeline: Any = Depends(get_pipeline),
) -> JobRead:
    """Start ingesting a scope; fetching continues in the background."""
    return await pipeline.start_sync(scope, body.job_name, body.access_token)


@router.get("/scopes/{owner_id}/{connection_key}/jobs", response_model=list[JobRead])
async def list_jobs(
    scope: Scope = Depends(get_scope),
    pipeline: Any = Depends(get_pipeline),
) -> list[JobRead]:
    return await pipeline.list_jobs(scope)


@router.get("/scopes/{owner_id}/{connection_key}/jobs/latest", response_model=JobRead)
async def get_latest_job(
    scope: Scope = Depends(get_scope),
    pipeline: Any = Depends(get_pipeline),
) -> JobRead:
    return await pipeline.get_latest_job(scope)


@router.get("/jobs/{job_id}", response_model=JobRead)
async def get_job(job_id: int, pipeline: Any = Depends(get_pipeline)) -> JobRead:
    return await pipeline.get_job(job_id)


@router.post("/jobs/{job_id}/retry", response_model=JobRead, status_code=status.HTTP_202_ACCEPTED)
async def retry_job(job_id: int, pipeline: Any = Depends(get_pipeline)) -> JobRead:
    """Retry a job in ERROR from the first page."""
    return await pipeline.retry_job(job_id)


@router.delete("/jobs/{job_id}", response_model=DeleteJobResponse)
async def delete_job(job_id: int, pipeline: Any = Depends(get_pipeline)) -> DeleteJobResponse:
    """Delete a job and every record, group and staged change of its scope."""
    counts = await pipeline.delete_job(job_id)
    return DeleteJobResponse(job_id=job_id, deleted=counts)


@router.post(
    "/scopes/{owner_id}/{connection_key}/detect",
    response_model=JobRead,
    status_code=status.HTTP_202_ACCEPTED,
)
async def detect(
    body: DetectRequest,
    scope: Scope = Depends(get_scope),
    pipeline: Any = Depends(get_pipeline),
) -> JobRead:
    """Re-run duplicate detection, optionally with custom field conditions."""
    return await pipeline.redetect(scope, body.conditions)


@router.get("/scopes/{owner_id}/{connection_key}/progress", response_model=ProgressResponse)
async def get_progress_entry(
    scope: Scope = Depends(get_scope),
    tracker: Any = Depends(get_progress),
) -> ProgressResponse:
    """Current progress; ``progress`` is null when nothing is known."""
    return ProgressResponse(scope=scope.key, progress=await tracker.get(scope))


@router.get(
    "/scopes/{owner_id}/{connection_key}/properties", response_model=list[CRMProperty]
)
async def list_properties(
    search: str | None = Query(default=None, max_length=200),
    scope: Scope = Depends(get_scope),
    pipeline: Any = Depends(get_pipeline),
) -> list[CRMProperty]:
    """CRM property definitions, optionally filtered by a search term."""
    return await pipeline.list_properties(scope, search)


@router.post(
    "/scopes/{owner_id}/{connection_key}/properties/validate",
    response_model=ValidatePropertiesResponse,
)
async def validate_properties(
    body: ValidatePropertiesRequest,
    scope: Scope = Depends(get_scope),
    pipeline: Any = Depends(get_pipeline),
) -> ValidatePropertiesResponse:
    valid, invalid = await pipeline.validate_properties(scope, body.names)
    return ValidatePropertiesResponse(valid=valid, invalid=invalid)
