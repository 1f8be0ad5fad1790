"""Dedupe repository -- async data access for records and workflow rows.

Provides DedupeRepository with the session_factory callable pattern. Every
query is filtered by scope (owner_id + connection_key) or by a row id that
was obtained from a scoped query.

Two state changes are compare-and-set writes rather than read-then-write:
- create_job relies on the unique active_scope_key column, so concurrent
  starts for one scope admit exactly one job.
- transition_job / resolve_group only update rows still in the expected
  state and report whether they won.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable, Iterable, Sequence
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.dedupe.core.errors import ConflictError
from src.dedupe.records.models import (
    DuplicateGroupModel,
    MergeRecordModel,
    RecordModel,
    StagedEditModel,
    StagedRemovalModel,
    SyncJobModel,
)
from src.dedupe.records.schemas import (
    ACTIVE_JOB_STATUSES,
    GroupRead,
    JobRead,
    JobStatus,
    MergeRecordRead,
    MergeStatus,
    RecordData,
    RecordRead,
    Scope,
    StageLabel,
    StagedEditRead,
    StagedRemovalRead,
    scope_key,
)

logger = structlog.get_logger(__name__)

# Columns refreshed when an already-mirrored record is fetched again
_UPSERT_COLUMNS = (
    "email",
    "first_name",
    "last_name",
    "phone",
    "organization",
    "properties",
    "created_at",
    "last_modified",
    "ingested_at",
)

_RECORD_FIELDS = frozenset(
    {
        "external_id",
        "email",
        "first_name",
        "last_name",
        "phone",
        "organization",
        "properties",
        "last_modified",
    }
)

_UPSERT_CHUNK = 500


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_record(model: RecordModel) -> RecordRead:
    """Convert RecordModel to RecordRead schema."""
    return RecordRead(
        id=model.id,
        owner_id=model.owner_id,
        connection_key=model.connection_key,
        external_id=model.external_id,
        email=model.email,
        first_name=model.first_name,
        last_name=model.last_name,
        phone=model.phone,
        organization=model.organization,
        properties=model.properties or {},
        created_at=model.created_at,
        last_modified=model.last_modified,
    )


def _model_to_job(model: SyncJobModel) -> JobRead:
    """Convert SyncJobModel to JobRead, leaving the access token behind."""
    return JobRead(
        id=model.id,
        owner_id=model.owner_id,
        connection_key=model.connection_key,
        name=model.name,
        status=JobStatus(model.status),
        stage_label=StageLabel(model.stage_label),
        count=model.count or 0,
        error=model.error,
        export_path=model.export_path,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_group(model: DuplicateGroupModel) -> GroupRead:
    return GroupRead(
        id=model.id,
        owner_id=model.owner_id,
        connection_key=model.connection_key,
        member_ids=list(model.member_ids or []),
        merged=bool(model.merged),
        merged_at=model.merged_at,
        created_at=model.created_at,
    )


def _scoped(model: Any, scope: Scope) -> list:
    return [model.owner_id == scope.owner_id, model.connection_key == scope.connection_key]


def _insert_for(session: AsyncSession) -> Callable:
    """Pick the dialect insert construct that supports ON CONFLICT."""
    if session.bind.dialect.name == "postgresql":
        return pg_insert
    return sqlite_insert


# ── Repository ──────────────────────────────────────────────────────────────


class DedupeRepository:
    """Async persistence for records, jobs, groups, staged changes and merges.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Records ─────────────────────────────────────────────────────────────

    async def upsert_records(self, scope: Scope, records: Sequence[RecordData]) -> int:
        """Insert or refresh a page of records keyed by external id.

        Args:
            scope: Owning scope.
            records: Records as mapped from one gateway page.

        Returns:
            Number of rows written.
        """
        if not records:
            return 0

        now = _utcnow()
        rows = [
            {
                "owner_id": scope.owner_id,
                "connection_key": scope.connection_key,
                "external_id": r.external_id,
                "email": r.email,
                "first_name": r.first_name,
                "last_name": r.last_name,
                "phone": r.phone,
                "organization": r.organization,
                "properties": dict(r.properties),
                "created_at": r.created_at,
                "last_modified": r.last_modified,
                "ingested_at": now,
            }
            for r in records
        ]

        async for session in self._session_factory():
            insert = _insert_for(session)
            for start in range(0, len(rows), _UPSERT_CHUNK):
                stmt = insert(RecordModel).values(rows[start : start + _UPSERT_CHUNK])
                stmt = stmt.on_conflict_do_update(
                    index_elements=["owner_id", "connection_key", "external_id"],
                    set_={col: stmt.excluded[col] for col in _UPSERT_COLUMNS},
                )
                await session.execute(stmt)
            await session.commit()
        return len(rows)

    async def count_records(self, scope: Scope) -> int:
        async for session in self._session_factory():
            stmt = select(func.count()).select_from(RecordModel).where(*_scoped(RecordModel, scope))
            return (await session.execute(stmt)).scalar_one()

    async def list_records(self, scope: Scope) -> list[RecordRead]:
        """List all records of a scope, oldest first."""
        async for session in self._session_factory():
            stmt = (
                select(RecordModel)
                .where(*_scoped(RecordModel, scope))
                .order_by(RecordModel.id)
            )
            result = await session.execute(stmt)
            return [_model_to_record(m) for m in result.scalars().all()]

    async def get_records(self, scope: Scope, record_ids: Iterable[int]) -> dict[int, RecordRead]:
        """Fetch records by local id. Ids that no longer exist are absent."""
        ids = list(set(record_ids))
        if not ids:
            return {}
        async for session in self._session_factory():
            stmt = select(RecordModel).where(
                *_scoped(RecordModel, scope), RecordModel.id.in_(ids)
            )
            result = await session.execute(stmt)
            return {m.id: _model_to_record(m) for m in result.scalars().all()}

    async def get_record(self, scope: Scope, record_id: int) -> RecordRead | None:
        records = await self.get_records(scope, [record_id])
        return records.get(record_id)

    async def get_record_by_external_id(
        self, scope: Scope, external_id: str
    ) -> RecordRead | None:
        async for session in self._session_factory():
            stmt = select(RecordModel).where(
                *_scoped(RecordModel, scope), RecordModel.external_id == external_id
            )
            model = (await session.execute(stmt)).scalar_one_or_none()
            if model is None:
                return None
            return _model_to_record(model)

    async def update_record(self, record_id: int, **fields: Any) -> RecordRead | None:
        """Overwrite selected fields of one record.

        Args:
            record_id: Local record id.
            **fields: Any of external_id, email, first_name, last_name, phone,
                organization, properties, last_modified.

        Returns:
            The updated record, or None if it no longer exists.
        """
        unknown = set(fields) - _RECORD_FIELDS
        if unknown:
            raise ValueError(f"Unknown record fields: {sorted(unknown)}")

        async for session in self._session_factory():
            model = await session.get(RecordModel, record_id)
            if model is None:
                return None
            for key, value in fields.items():
                setattr(model, key, dict(value) if key == "properties" else value)
            await session.commit()
            await session.refresh(model)
            return _model_to_record(model)

    async def delete_record(self, record_id: int) -> bool:
        async for session in self._session_factory():
            result = await session.execute(
                delete(RecordModel).where(RecordModel.id == record_id)
            )
            await session.commit()
            return result.rowcount > 0

    # ── Sync Jobs ───────────────────────────────────────────────────────────

    async def create_job(self, scope: Scope, name: str, access_token: str) -> JobRead:
        """Create a job in START, claiming the scope.

        Raises:
            ConflictError: Another non-terminal job already holds the scope.
        """
        async for session in self._session_factory():
            model = SyncJobModel(
                owner_id=scope.owner_id,
                connection_key=scope.connection_key,
                name=name,
                access_token=access_token,
                status=JobStatus.START.value,
                stage_label=StageLabel.FETCHING.value,
                count=0,
                active_scope_key=scope.key,
            )
            session.add(model)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise ConflictError(
                    "An active sync job already exists for this scope"
                ) from exc
            await session.refresh(model)
            return _model_to_job(model)

    async def get_job(self, job_id: int) -> JobRead | None:
        async for session in self._session_factory():
            model = await session.get(SyncJobModel, job_id)
            return _model_to_job(model) if model else None

    async def get_access_token(self, job_id: int) -> str | None:
        async for session in self._session_factory():
            stmt = select(SyncJobModel.access_token).where(SyncJobModel.id == job_id)
            return (await session.execute(stmt)).scalar_one_or_none()

    async def list_jobs(self, scope: Scope) -> list[JobRead]:
        """List jobs of a scope, newest first."""
        async for session in self._session_factory():
            stmt = (
                select(SyncJobModel)
                .where(*_scoped(SyncJobModel, scope))
                .order_by(SyncJobModel.id.desc())
            )
            result = await session.execute(stmt)
            return [_model_to_job(m) for m in result.scalars().all()]

    async def get_latest_job(self, scope: Scope) -> JobRead | None:
        jobs = await self.list_jobs(scope)
        return jobs[0] if jobs else None

    async def get_active_job(self, scope: Scope) -> JobRead | None:
        async for session in self._session_factory():
            stmt = select(SyncJobModel).where(
                *_scoped(SyncJobModel, scope),
                SyncJobModel.status.in_([s.value for s in ACTIVE_JOB_STATUSES]),
            )
            model = (await session.execute(stmt)).scalars().first()
            return _model_to_job(model) if model else None

    async def list_jobs_by_status(self, status: JobStatus) -> list[JobRead]:
        """List jobs across all scopes in one status, oldest first."""
        async for session in self._session_factory():
            stmt = (
                select(SyncJobModel)
                .where(SyncJobModel.status == status.value)
                .order_by(SyncJobModel.id)
            )
            result = await session.execute(stmt)
            return [_model_to_job(m) for m in result.scalars().all()]

    async def update_job(
        self,
        job_id: int,
        *,
        status: JobStatus | None = None,
        stage_label: StageLabel | None = None,
        count: int | None = None,
        error: str | None = None,
        clear_error: bool = False,
        export_path: str | None = None,
    ) -> JobRead | None:
        """Apply field changes to a job.

        Setting a status also maintains active_scope_key: it is held for
        the active statuses and released otherwise.
        """
        async for session in self._session_factory():
            model = await session.get(SyncJobModel, job_id)
            if model is None:
                return None
            if status is not None:
                model.status = status.value
                model.active_scope_key = (
                    scope_key(model.owner_id, model.connection_key)
                    if status in ACTIVE_JOB_STATUSES
                    else None
                )
            if stage_label is not None:
                model.stage_label = stage_label.value
            if count is not None:
                model.count = count
            if error is not None:
                model.error = error
            elif clear_error:
                model.error = None
            if export_path is not None:
                model.export_path = export_path
            model.updated_at = _utcnow()
            await session.commit()
            await session.refresh(model)
            return _model_to_job(model)

    async def transition_job(
        self, job_id: int, from_status: JobStatus, to_status: JobStatus
    ) -> bool:
        """Move a job between two active statuses only if it is still in ``from_status``.

        The scope claim is left untouched, so this is used for ERROR -> RETRYING.

        Returns:
            True if this call performed the transition.
        """
        async for session in self._session_factory():
            stmt = (
                update(SyncJobModel)
                .where(SyncJobModel.id == job_id, SyncJobModel.status == from_status.value)
                .values(status=to_status.value, error=None, updated_at=_utcnow())
            )
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount == 1

    async def delete_job(self, job_id: int) -> bool:
        async for session in self._session_factory():
            result = await session.execute(
                delete(SyncJobModel).where(SyncJobModel.id == job_id)
            )
            await session.commit()
            return result.rowcount > 0

    # ── Duplicate Groups ────────────────────────────────────────────────────

    async def replace_unmerged_groups(
        self, scope: Scope, groups: Sequence[Sequence[int]], batch_size: int = 50
    ) -> int:
        """Delete the scope's unmerged groups and persist a new set.

        Groups are inserted in batches of ``batch_size``, one commit each.

        Returns:
            Number of groups persisted.
        """
        async for session in self._session_factory():
            await session.execute(
                delete(DuplicateGroupModel).where(
                    *_scoped(DuplicateGroupModel, scope),
                    DuplicateGroupModel.merged.is_(False),
                )
            )
            await session.commit()

            for start in range(0, len(groups), batch_size):
                for members in groups[start : start + batch_size]:
                    session.add(
                        DuplicateGroupModel(
                            owner_id=scope.owner_id,
                            connection_key=scope.connection_key,
                            member_ids=list(members),
                            merged=False,
                        )
                    )
                await session.commit()
        return len(groups)

    async def delete_groups(self, scope: Scope) -> int:
        async for session in self._session_factory():
            result = await session.execute(
                delete(DuplicateGroupModel).where(*_scoped(DuplicateGroupModel, scope))
            )
            await session.commit()
            return result.rowcount

    async def list_groups(self, scope: Scope, merged: bool | None = None) -> list[GroupRead]:
        """List groups of a scope in creation order, optionally by merged flag."""
        async for session in self._session_factory():
            stmt = select(DuplicateGroupModel).where(*_scoped(DuplicateGroupModel, scope))
            if merged is not None:
                stmt = stmt.where(DuplicateGroupModel.merged.is_(merged))
            result = await session.execute(stmt.order_by(DuplicateGroupModel.id))
            return [_model_to_group(m) for m in result.scalars().all()]

    async def page_groups(
        self, scope: Scope, offset: int, limit: int
    ) -> tuple[list[GroupRead], int]:
        """Return one page of groups plus the total group count."""
        async for session in self._session_factory():
            total_stmt = (
                select(func.count())
                .select_from(DuplicateGroupModel)
                .where(*_scoped(DuplicateGroupModel, scope))
            )
            total = (await session.execute(total_stmt)).scalar_one()
            stmt = (
                select(DuplicateGroupModel)
                .where(*_scoped(DuplicateGroupModel, scope))
                .order_by(DuplicateGroupModel.id)
                .offset(offset)
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_model_to_group(m) for m in result.scalars().all()], total

    async def get_group(self, group_id: int) -> GroupRead | None:
        async for session in self._session_factory():
            model = await session.get(DuplicateGroupModel, group_id)
            return _model_to_group(model) if model else None

    async def set_group_merged(self, group_id: int, merged: bool) -> GroupRead | None:
        async for session in self._session_factory():
            model = await session.get(DuplicateGroupModel, group_id)
            if model is None:
                return None
            model.merged = merged
            model.merged_at = _utcnow() if merged else None
            await session.commit()
            await session.refresh(model)
            return _model_to_group(model)

    async def remove_from_groups(
        self, scope: Scope, record_id: int, group_id: int | None = None
    ) -> tuple[int, int]:
        """Drop a record from the scope's groups (or from one group).

        Groups left with fewer than two members are deleted.

        Returns:
            (groups shrunk, groups deleted)
        """
        shrunk = deleted = 0
        async for session in self._session_factory():
            stmt = select(DuplicateGroupModel).where(*_scoped(DuplicateGroupModel, scope))
            if group_id is not None:
                stmt = stmt.where(DuplicateGroupModel.id == group_id)
            for model in (await session.execute(stmt)).scalars().all():
                members = list(model.member_ids or [])
                if record_id not in members:
                    continue
                remaining = [m for m in members if m != record_id]
                if len(remaining) < 2:
                    await session.delete(model)
                    deleted += 1
                else:
                    model.member_ids = remaining
                    shrunk += 1
            await session.commit()
        return shrunk, deleted

    # ── Resolution (staged edits / removals) ────────────────────────────────

    async def resolve_group(
        self,
        scope: Scope,
        group_id: int,
        survivor_id: int,
        field_values: dict[str, str | None],
        removed_ids: Sequence[int],
        merged_count: int,
    ) -> bool:
        """Stage the resolution of a group in one transaction.

        Writes one staged edit for the survivor, one staged removal per
        removed id, and flips the group to merged, but only if the group was
        still unmerged.

        Returns:
            False when the group was already merged (nothing written).
        """
        async for session in self._session_factory():
            flip = (
                update(DuplicateGroupModel)
                .where(
                    DuplicateGroupModel.id == group_id,
                    DuplicateGroupModel.merged.is_(False),
                )
                .values(merged=True, merged_at=_utcnow(), updated_at=_utcnow())
            )
            if (await session.execute(flip)).rowcount != 1:
                await session.rollback()
                return False

            session.add(
                StagedEditModel(
                    owner_id=scope.owner_id,
                    connection_key=scope.connection_key,
                    group_id=group_id,
                    record_id=survivor_id,
                    field_values=dict(field_values),
                    merged_count=merged_count,
                    removed_count=len(removed_ids),
                )
            )
            for record_id in removed_ids:
                session.add(
                    StagedRemovalModel(
                        owner_id=scope.owner_id,
                        connection_key=scope.connection_key,
                        group_id=group_id,
                        record_id=record_id,
                    )
                )
            await session.commit()
        return True

    async def add_staged_removal(
        self, scope: Scope, record_id: int, group_id: int | None = None
    ) -> StagedRemovalRead:
        async for session in self._session_factory():
            model = StagedRemovalModel(
                owner_id=scope.owner_id,
                connection_key=scope.connection_key,
                group_id=group_id,
                record_id=record_id,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return StagedRemovalRead.model_validate(model)

    async def list_staged_edits(self, scope: Scope) -> list[StagedEditRead]:
        async for session in self._session_factory():
            stmt = (
                select(StagedEditModel)
                .where(*_scoped(StagedEditModel, scope))
                .order_by(StagedEditModel.id)
            )
            result = await session.execute(stmt)
            return [StagedEditRead.model_validate(m) for m in result.scalars().all()]

    async def list_staged_removals(self, scope: Scope) -> list[StagedRemovalRead]:
        async for session in self._session_factory():
            stmt = (
                select(StagedRemovalModel)
                .where(*_scoped(StagedRemovalModel, scope))
                .order_by(StagedRemovalModel.id)
            )
            result = await session.execute(stmt)
            return [StagedRemovalRead.model_validate(m) for m in result.scalars().all()]

    async def delete_staged_edit(self, edit_id: int) -> None:
        async for session in self._session_factory():
            await session.execute(delete(StagedEditModel).where(StagedEditModel.id == edit_id))
            await session.commit()

    async def delete_staged_removal(self, removal_id: int) -> None:
        async for session in self._session_factory():
            await session.execute(
                delete(StagedRemovalModel).where(StagedRemovalModel.id == removal_id)
            )
            await session.commit()

    async def reset_group(self, group_id: int) -> dict[str, int]:
        """Undo a group's resolution in one transaction.

        Deletes its staged edits and removals, moves its completed merge
        records to reset and clears the merged flag.

        Returns:
            Counts of edits, removals and merges affected.
        """
        async for session in self._session_factory():
            edits = await session.execute(
                delete(StagedEditModel).where(StagedEditModel.group_id == group_id)
            )
            removals = await session.execute(
                delete(StagedRemovalModel).where(StagedRemovalModel.group_id == group_id)
            )
            merges = await session.execute(
                update(MergeRecordModel)
                .where(
                    MergeRecordModel.group_id == group_id,
                    MergeRecordModel.status == MergeStatus.COMPLETED.value,
                )
                .values(status=MergeStatus.RESET.value)
            )
            await session.execute(
                update(DuplicateGroupModel)
                .where(DuplicateGroupModel.id == group_id)
                .values(merged=False, merged_at=None, updated_at=_utcnow())
            )
            await session.commit()
            return {
                "edits": edits.rowcount,
                "removals": removals.rowcount,
                "merges": merges.rowcount,
            }

    # ── Merge Records ───────────────────────────────────────────────────────

    async def create_merge_record(
        self,
        scope: Scope,
        group_id: int,
        primary_external_id: str,
        secondary_external_id: str,
    ) -> MergeRecordRead:
        """Create a merge record in ``pending``."""
        async for session in self._session_factory():
            model = MergeRecordModel(
                owner_id=scope.owner_id,
                connection_key=scope.connection_key,
                group_id=group_id,
                primary_external_id=primary_external_id,
                secondary_external_id=secondary_external_id,
                status=MergeStatus.PENDING.value,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return MergeRecordRead.model_validate(model)

    async def get_merge_record(self, merge_id: int) -> MergeRecordRead | None:
        async for session in self._session_factory():
            model = await session.get(MergeRecordModel, merge_id)
            return MergeRecordRead.model_validate(model) if model else None

    async def update_merge_record(
        self,
        merge_id: int,
        status: MergeStatus,
        error: str | None = None,
        primary_external_id: str | None = None,
    ) -> MergeRecordRead | None:
        async for session in self._session_factory():
            model = await session.get(MergeRecordModel, merge_id)
            if model is None:
                return None
            model.status = status.value
            model.error = error
            if primary_external_id is not None:
                model.primary_external_id = primary_external_id
            if status == MergeStatus.COMPLETED:
                model.completed_at = _utcnow()
            await session.commit()
            await session.refresh(model)
            return MergeRecordRead.model_validate(model)

    async def list_merge_records(
        self,
        scope: Scope,
        status: MergeStatus | None = None,
        group_id: int | None = None,
    ) -> list[MergeRecordRead]:
        """List merge records of a scope, oldest first."""
        async for session in self._session_factory():
            stmt = select(MergeRecordModel).where(*_scoped(MergeRecordModel, scope))
            if status is not None:
                stmt = stmt.where(MergeRecordModel.status == status.value)
            if group_id is not None:
                stmt = stmt.where(MergeRecordModel.group_id == group_id)
            result = await session.execute(stmt.order_by(MergeRecordModel.id))
            return [MergeRecordRead.model_validate(m) for m in result.scalars().all()]

    async def find_open_merge(
        self, group_id: int, secondary_external_id: str
    ) -> MergeRecordRead | None:
        """Find a pending or completed merge absorbing the same secondary."""
        async for session in self._session_factory():
            stmt = select(MergeRecordModel).where(
                MergeRecordModel.group_id == group_id,
                MergeRecordModel.secondary_external_id == secondary_external_id,
                MergeRecordModel.status.in_(
                    [MergeStatus.PENDING.value, MergeStatus.COMPLETED.value]
                ),
            )
            model = (await session.execute(stmt)).scalars().first()
            return MergeRecordRead.model_validate(model) if model else None

    async def reset_merge_records(self, group_id: int) -> int:
        """Undo a group's direct merges in one transaction.

        Moves its completed merge records to reset, deletes any staged edits
        and removals left on the group, and clears the merged flag.

        Returns:
            Number of merge records reset. Zero means nothing was changed.
        """
        async for session in self._session_factory():
            result = await session.execute(
                update(MergeRecordModel)
                .where(
                    MergeRecordModel.group_id == group_id,
                    MergeRecordModel.status == MergeStatus.COMPLETED.value,
                )
                .values(status=MergeStatus.RESET.value)
            )
            if result.rowcount == 0:
                await session.rollback()
                return 0
            await session.execute(
                delete(StagedEditModel).where(StagedEditModel.group_id == group_id)
            )
            await session.execute(
                delete(StagedRemovalModel).where(StagedRemovalModel.group_id == group_id)
            )
            await session.execute(
                update(DuplicateGroupModel)
                .where(DuplicateGroupModel.id == group_id)
                .values(merged=False, merged_at=None, updated_at=_utcnow())
            )
            await session.commit()
            return result.rowcount

    async def delete_pending_merges(self, scope: Scope) -> int:
        async for session in self._session_factory():
            result = await session.execute(
                delete(MergeRecordModel).where(
                    *_scoped(MergeRecordModel, scope),
                    MergeRecordModel.status == MergeStatus.PENDING.value,
                )
            )
            await session.commit()
            return result.rowcount

    # ── Scope Cleanup ───────────────────────────────────────────────────────

    async def clear_scope(self, scope: Scope) -> dict[str, int]:
        """Delete every record, group, staged change and pending merge of a scope.

        Completed, failed and reset merge records are kept as history.
        """
        counts: dict[str, int] = {}
        async for session in self._session_factory():
            for name, model in (
                ("records", RecordModel),
                ("groups", DuplicateGroupModel),
                ("staged_edits", StagedEditModel),
                ("staged_removals", StagedRemovalModel),
            ):
                result = await session.execute(delete(model).where(*_scoped(model, scope)))
                counts[name] = result.rowcount
            result = await session.execute(
                delete(MergeRecordModel).where(
                    *_scoped(MergeRecordModel, scope),
                    MergeRecordModel.status == MergeStatus.PENDING.value,
                )
            )
            counts["pending_merges"] = result.rowcount
            await session.commit()

        logger.info("repository.scope_cleared", scope=scope.key, **counts)
        return counts
