"""Persistence models for mirrored CRM records and the merge workflow.

Six SQLAlchemy models, all scoped by (owner_id, connection_key):
- RecordModel: Local mirror of one external CRM entity
- SyncJobModel: One ingestion run with its status machine and stage label
- DuplicateGroupModel: Set of record ids believed to be the same entity
- StagedEditModel: Field values queued for a surviving record
- StagedRemovalModel: Record queued for deletion from the CRM
- MergeRecordModel: One primary <- secondary merge attempt (history)

Ids are integers so that "oldest first" ordering is simply ``ORDER BY id``.
Column types are kept generic (JSON, not JSONB) so the same models run on
PostgreSQL in production and SQLite in tests.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.dedupe.core.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RecordModel(Base):
    """Locally mirrored copy of one external CRM record.

    external_id is unique within a scope; the sync pipeline upserts on it so
    a full re-fetch never duplicates rows.
    """

    __tablename__ = "records"
    __table_args__ = (
        UniqueConstraint(
            "owner_id",
            "connection_key",
            "external_id",
            name="uq_record_scope_external_id",
        ),
        Index("ix_records_scope", "owner_id", "connection_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(255), nullable=False)
    connection_key: Mapped[str] = mapped_column(String(255), nullable=False)
    external_id: Mapped[str] = mapped_column(String(64), nullable=False)
    email: Mapped[str | None] = mapped_column(Text, nullable=True)
    first_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(100), nullable=True)
    organization: Mapped[str | None] = mapped_column(String(255), nullable=True)
    properties: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_modified: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    ingested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )


class SyncJobModel(Base):
    """One ingestion run for a scope.

    active_scope_key holds the escaped scope key while the job is
    non-terminal and NULL otherwise. Its unique constraint is the scope-level
    compare-and-set that admits at most one active job per scope.
    """

    __tablename__ = "sync_jobs"
    __table_args__ = (
        UniqueConstraint("active_scope_key", name="uq_sync_job_active_scope"),
        Index("ix_sync_jobs_scope", "owner_id", "connection_key"),
        Index("ix_sync_jobs_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(255), nullable=False)
    connection_key: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    stage_label: Mapped[str] = mapped_column(String(50), nullable=False)
    count: Mapped[int] = mapped_column(Integer, default=0)
    active_scope_key: Mapped[str | None] = mapped_column(String(1536), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    export_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class DuplicateGroupModel(Base):
    """Set of record ids believed to represent the same real-world entity."""

    __tablename__ = "duplicate_groups"
    __table_args__ = (Index("ix_duplicate_groups_scope", "owner_id", "connection_key"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(255), nullable=False)
    connection_key: Mapped[str] = mapped_column(String(255), nullable=False)
    member_ids: Mapped[list] = mapped_column(JSON, default=list)
    merged: Mapped[bool] = mapped_column(Boolean, default=False)
    merged_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class StagedEditModel(Base):
    """Field values to push for the surviving record of a resolved group.

    merged_count and removed_count carry the provenance of the resolution:
    how many records the group held and how many were staged for removal.
    """

    __tablename__ = "staged_edits"
    __table_args__ = (Index("ix_staged_edits_scope", "owner_id", "connection_key"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(255), nullable=False)
    connection_key: Mapped[str] = mapped_column(String(255), nullable=False)
    group_id: Mapped[int] = mapped_column(Integer, nullable=False)
    record_id: Mapped[int] = mapped_column(Integer, nullable=False)
    field_values: Mapped[dict] = mapped_column(JSON, default=dict)
    merged_count: Mapped[int] = mapped_column(Integer, default=0)
    removed_count: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )


class StagedRemovalModel(Base):
    """Record slated for deletion from the CRM, tied to its source group."""

    __tablename__ = "staged_removals"
    __table_args__ = (Index("ix_staged_removals_scope", "owner_id", "connection_key"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(255), nullable=False)
    connection_key: Mapped[str] = mapped_column(String(255), nullable=False)
    group_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    record_id: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )


class MergeRecordModel(Base):
    """Audit and state row for one primary <- secondary merge.

    Rows are never hard-deleted once they leave ``pending``; a ``reset``
    status returns the owning group to unmerged.
    """

    __tablename__ = "merge_records"
    __table_args__ = (
        Index("ix_merge_records_scope", "owner_id", "connection_key"),
        Index("ix_merge_records_group", "group_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(255), nullable=False)
    connection_key: Mapped[str] = mapped_column(String(255), nullable=False)
    group_id: Mapped[int] = mapped_column(Integer, nullable=False)
    primary_external_id: Mapped[str] = mapped_column(String(64), nullable=False)
    secondary_external_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
