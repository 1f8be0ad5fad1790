"""REST API endpoints for Duplicate Groups, merges and the finish sequence."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from src.dedupe.api.deps import get_orchestrator, get_scope
from src.dedupe.records.schemas import (
    BatchMergeResult,
    GroupPage,
    GroupRead,
    JobRead,
    MergeRecordRead,
    Scope,
    StagedRemovalRead,
)

router = APIRouter(tags=["groups"])


# ── Request / Response Schemas ───────────────────────────────────────────────


class ResolveGroupRequest(BaseModel):
    survivor_id: int
    field_values: dict[str, str | None] = Field(default_factory=dict)
    removed_ids: list[int] = Field(default_factory=list)


class MergePairRequest(BaseModel):
    primary_external_id: str = Field(min_length=1)
    secondary_external_id: str = Field(min_length=1)


class BatchMergeRequest(BaseModel):
    primary_external_id: str = Field(min_length=1)
    secondary_external_ids: list[str] = Field(min_length=1)


class StageRemovalRequest(BaseModel):
    record_id: int


class ResetMergesResponse(BaseModel):
    group_id: int
    reset: int


class RemoveMemberResponse(BaseModel):
    group_id: int
    record_id: int
    group: GroupRead | None = None


class AcceptedResponse(BaseModel):
    scope: str
    status: str = "accepted"


# ── Groups ───────────────────────────────────────────────────────────────────


@router.get("/scopes/{owner_id}/{connection_key}/groups", response_model=GroupPage)
async def list_groups(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    scope: Scope = Depends(get_scope),
    orchestrator: Any = Depends(get_orchestrator),
) -> GroupPage:
    return await orchestrator.list_groups(scope, page=page, limit=limit)


@router.get("/groups/{group_id}", response_model=GroupRead)
async def get_group(group_id: int, orchestrator: Any = Depends(get_orchestrator)) -> GroupRead:
    return await orchestrator.get_group(group_id)


@router.post("/groups/{group_id}/resolve", response_model=GroupRead)
async def resolve_group(
    group_id: int,
    body: ResolveGroupRequest,
    orchestrator: Any = Depends(get_orchestrator),
) -> GroupRead:
    """Stage the survivor's edits and removals; applied by finish."""
    return await orchestrator.resolve_group(
        group_id, body.survivor_id, body.field_values, body.removed_ids
    )


@router.post("/groups/{group_id}/reset", response_model=GroupRead)
async def reset_group(group_id: int, orchestrator: Any = Depends(get_orchestrator)) -> GroupRead:
    return await orchestrator.reset_group(group_id)


@router.post("/groups/{group_id}/reset-merges", response_model=ResetMergesResponse)
async def reset_merges(
    group_id: int, orchestrator: Any = Depends(get_orchestrator)
) -> ResetMergesResponse:
    count = await orchestrator.reset_by_group(group_id)
    return ResetMergesResponse(group_id=group_id, reset=count)


@router.delete("/groups/{group_id}/members/{record_id}", response_model=RemoveMemberResponse)
async def remove_member(
    group_id: int,
    record_id: int,
    orchestrator: Any = Depends(get_orchestrator),
) -> RemoveMemberResponse:
    """Mark a member as not a duplicate; ``group`` is null if the group dissolved."""
    group = await orchestrator.remove_member(group_id, record_id)
    return RemoveMemberResponse(group_id=group_id, record_id=record_id, group=group)


@router.post(
    "/groups/{group_id}/removals",
    response_model=StagedRemovalRead,
    status_code=status.HTTP_201_CREATED,
)
async def stage_removal(
    group_id: int,
    body: StageRemovalRequest,
    orchestrator: Any = Depends(get_orchestrator),
) -> StagedRemovalRead:
    return await orchestrator.stage_removal(group_id, body.record_id)


# ── Merges ───────────────────────────────────────────────────────────────────


@router.post("/groups/{group_id}/merge", response_model=MergeRecordRead)
async def merge_pair(
    group_id: int,
    body: MergePairRequest,
    orchestrator: Any = Depends(get_orchestrator),
) -> MergeRecordRead:
    return await orchestrator.merge_pair(
        group_id, body.primary_external_id, body.secondary_external_id
    )


@router.post("/groups/{group_id}/batch-merge", response_model=BatchMergeResult)
async def batch_merge(
    group_id: int,
    body: BatchMergeRequest,
    orchestrator: Any = Depends(get_orchestrator),
) -> BatchMergeResult:
    return await orchestrator.batch_merge(
        group_id, body.primary_external_id, body.secondary_external_ids
    )


@router.post(
    "/groups/{group_id}/queue-merge",
    response_model=MergeRecordRead,
    status_code=status.HTTP_201_CREATED,
)
async def queue_merge(
    group_id: int,
    body: MergePairRequest,
    orchestrator: Any = Depends(get_orchestrator),
) -> MergeRecordRead:
    """Record a pending merge for the finish sequence to apply."""
    return await orchestrator.queue_merge(
        group_id, body.primary_external_id, body.secondary_external_id
    )


@router.post(
    "/scopes/{owner_id}/{connection_key}/merge-all",
    response_model=AcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def merge_all(
    scope: Scope = Depends(get_scope),
    orchestrator: Any = Depends(get_orchestrator),
) -> AcceptedResponse:
    """Merge every unmerged group in chunks, in the background."""
    await orchestrator.start_merge_all(scope)
    return AcceptedResponse(scope=scope.key)


# ── Finish ───────────────────────────────────────────────────────────────────


@router.post(
    "/scopes/{owner_id}/{connection_key}/finish",
    response_model=JobRead,
    status_code=status.HTTP_202_ACCEPTED,
)
async def finish(
    scope: Scope = Depends(get_scope),
    orchestrator: Any = Depends(get_orchestrator),
) -> JobRead:
    """Apply staged changes, export and reset the scope, in the background."""
    return await orchestrator.start_finish(scope)
