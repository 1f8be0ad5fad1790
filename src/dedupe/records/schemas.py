"""Pydantic schemas for the sync, detection and merge workflow.

Defines all structured types crossing component boundaries:
- Enums: JobStatus, StageLabel, MergeStatus
- Scope: the (owner, connection key) pair isolating one data set
- Records: RecordData (gateway -> store), RecordRead
- Workflow rows: JobRead, GroupRead, StagedEditRead, StagedRemovalRead, MergeRecordRead
- Detection input: FieldCondition
- Operation results: GroupPage, MergeOutcome, BatchMergeResult, FinishResult
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ── Enums ───────────────────────────────────────────────────────────────────


class JobStatus(str, Enum):
    """Sync Job status machine: START -> FETCHING -> FINISHED | ERROR.

    ERROR -> RETRYING -> FETCHING re-enters the fetch loop from the first page.
    """

    START = "start"
    FETCHING = "fetching"
    FINISHED = "finished"
    ERROR = "error"
    RETRYING = "retrying"


# ERROR stays active: the scope is blocked until the job is retried or deleted.
ACTIVE_JOB_STATUSES = frozenset(
    {JobStatus.START, JobStatus.FETCHING, JobStatus.RETRYING, JobStatus.ERROR}
)


class StageLabel(str, Enum):
    """Descriptive workflow stage shown to users. Does not gate the status machine."""

    FETCHING = "fetching"
    DETECTING_DUPLICATES = "detecting duplicates"
    READY_TO_MERGE = "ready to merge"
    APPLYING_UPDATES = "applying updates"
    FINISHED = "finished"
    ERROR = "error"


class MergeStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    RESET = "reset"


# ── Scope ───────────────────────────────────────────────────────────────────


def scope_key(owner_id: str, connection_key: str) -> str:
    """Join a scope pair as "<owner>:<connection>".

    ``%`` and ``:`` inside either part are percent-escaped, so two distinct
    pairs never share a key.
    """
    parts = (p.replace("%", "%25").replace(":", "%3A") for p in (owner_id, connection_key))
    return ":".join(parts)


class Scope(BaseModel):
    """Owner + connection key pair that isolates one customer's data set."""

    model_config = ConfigDict(frozen=True)

    owner_id: str = Field(min_length=1)
    connection_key: str = Field(min_length=1)

    @property
    def key(self) -> str:
        return scope_key(self.owner_id, self.connection_key)


# ── Records ─────────────────────────────────────────────────────────────────


class RecordData(BaseModel):
    """One record as returned by the CRM, before it is persisted."""

    external_id: str
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    organization: str | None = None
    properties: dict[str, str] = Field(default_factory=dict)
    created_at: datetime | None = None
    last_modified: datetime | None = None


class RecordRead(RecordData):
    """Persisted record including its local id and scope."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    owner_id: str
    connection_key: str


# ── Workflow rows ───────────────────────────────────────────────────────────


class JobRead(BaseModel):
    """Public view of a Sync Job. The access token is never exposed."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    owner_id: str
    connection_key: str
    name: str
    status: JobStatus
    stage_label: StageLabel
    count: int = 0
    error: str | None = None
    export_path: str | None = None
    created_at: datetime
    updated_at: datetime


class GroupRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    owner_id: str
    connection_key: str
    member_ids: list[int]
    merged: bool = False
    merged_at: datetime | None = None
    created_at: datetime


class GroupWithMembers(GroupRead):
    """Group hydrated with its member records; vanished members are skipped."""

    members: list[RecordRead] = Field(default_factory=list)


class GroupPage(BaseModel):
    groups: list[GroupWithMembers]
    total: int
    page: int
    limit: int
    total_pages: int


class StagedEditRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    group_id: int
    record_id: int
    field_values: dict[str, str | None]
    merged_count: int
    removed_count: int
    created_at: datetime


class StagedRemovalRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    group_id: int | None = None
    record_id: int
    created_at: datetime


class MergeRecordRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    owner_id: str
    connection_key: str
    group_id: int
    primary_external_id: str
    secondary_external_id: str
    status: MergeStatus
    error: str | None = None
    created_at: datetime
    completed_at: datetime | None = None


# ── Detection input ─────────────────────────────────────────────────────────


class FieldCondition(BaseModel):
    """Named set of field keys used as a custom duplicate-matching rule.

    Keys may name the fixed comparison fields (email, phone, first_name,
    last_name, organization) or any property-bag key.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    fields: tuple[str, ...] = Field(min_length=1)

    @field_validator("fields")
    @classmethod
    def _strip_fields(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        cleaned = tuple(f.strip() for f in value)
        if any(not f for f in cleaned):
            raise ValueError("field keys must be non-empty")
        return cleaned


# ── Operation results ───────────────────────────────────────────────────────


class MergeOutcome(BaseModel):
    """Result of merging one secondary inside a batch."""

    secondary_external_id: str
    success: bool
    primary_external_id: str
    merge_record_id: int | None = None
    error: str | None = None


class BatchMergeResult(BaseModel):
    success: bool
    message: str
    results: list[MergeOutcome] = Field(default_factory=list)

    @property
    def succeeded(self) -> list[MergeOutcome]:
        return [r for r in self.results if r.success]

    @property
    def failed(self) -> list[MergeOutcome]:
        return [r for r in self.results if not r.success]


class MergeAllResult(BaseModel):
    total_groups: int
    merged_groups: int
    failed_groups: int
    errors: list[str] = Field(default_factory=list)


class FinishResult(BaseModel):
    """Outcome of the terminal finish sequence for one scope."""

    job_id: int
    export_path: str
    exported_records: int
    merges_applied: int = 0
    merges_failed: int = 0
    edits_pushed: int = 0
    edits_failed: int = 0
    removals_pushed: int = 0
    removals_failed: int = 0
