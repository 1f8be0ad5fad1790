"""Merge orchestrator -- group resolution, CRM merges and the finish sequence.

Two ways to consolidate a Duplicate Group:

- Staged resolution (resolve_group): a human picks a survivor, edits its
  fields and marks the rest for removal. Nothing is sent to the CRM until
  finish pushes the staged edits and removals.
- Direct merges (merge_pair / batch_merge / merge_all_groups): the CRM's
  merge operation absorbs a secondary into a primary right away, tracked by
  a Merge Record (pending -> completed | failed). queue_merge only records
  the pending row; finish applies it.

finish(scope) is the terminal sequence:
    1. apply pending merges (oldest first; failures marked failed, skipped)
    2. clear the pending merges of the scope
    3. push staged edits (per-record failures logged, not fatal)
    4. push staged removals (same)
    5. export the remaining records
    6. clear the scope and mark the job stage "finished"
Any exception before the cleanup step sets the stage label to "error" and
re-raises, so data is only wiped after a successful export.
"""

from __future__ import annotations

import asyncio
import math
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any

import structlog

from src.dedupe.core.errors import (
    ConflictError,
    DedupeError,
    NotFoundError,
    ValidationError,
)
from src.dedupe.core.tasks import BackgroundTaskRunner
from src.dedupe.crm.field_mapping import FIELD_ALIASES, split_emails, to_crm_properties
from src.dedupe.crm.gateway import CRMGateway
from src.dedupe.dedup.conditions import COMPARISON_FIELDS
from src.dedupe.merging.export import ExportStore
from src.dedupe.progress import ProgressTracker
from src.dedupe.records.repository import DedupeRepository
from src.dedupe.records.schemas import (
    BatchMergeResult,
    FinishResult,
    GroupPage,
    GroupRead,
    GroupWithMembers,
    JobRead,
    MergeAllResult,
    MergeOutcome,
    MergeRecordRead,
    MergeStatus,
    RecordRead,
    Scope,
    StageLabel,
    StagedRemovalRead,
)

logger = structlog.get_logger(__name__)

MAX_PAGE_SIZE = 100

_FILL_FIELDS = ("first_name", "last_name", "phone", "organization")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _scope_of(group: GroupRead | MergeRecordRead) -> Scope:
    return Scope(owner_id=group.owner_id, connection_key=group.connection_key)


def _age_key(record: RecordRead) -> tuple:
    # Oldest first; records without a creation date sort last
    created = record.created_at
    return (created is None, created.timestamp() if created else 0.0, record.id)


class MergeOrchestrator:
    """Manages the group and merge lifecycle for all scopes.

    Args:
        repository: DedupeRepository for records, groups and merge rows.
        gateway: CRMGateway for merge, patch and delete calls.
        exports: ExportStore receiving the finish artifact.
        tasks: BackgroundTaskRunner for finish and merge-all passes.
        progress: ProgressTracker for pollers.
        chunk_size: Groups per chunk in merge_all_groups.
        chunk_pause: Seconds to wait between chunks.
    """

    def __init__(
        self,
        repository: DedupeRepository,
        gateway: CRMGateway,
        exports: ExportStore,
        tasks: BackgroundTaskRunner,
        progress: ProgressTracker,
        *,
        chunk_size: int = 10,
        chunk_pause: float = 1.0,
    ) -> None:
        self._repository = repository
        self._gateway = gateway
        self._exports = exports
        self._tasks = tasks
        self._progress = progress
        self._chunk_size = max(1, chunk_size)
        self._chunk_pause = chunk_pause

    # ── Lookups ─────────────────────────────────────────────────────────────

    async def get_group(self, group_id: int) -> GroupRead:
        group = await self._repository.get_group(group_id)
        if group is None:
            raise NotFoundError(f"Duplicate group {group_id} not found")
        return group

    async def list_groups(self, scope: Scope, page: int = 1, limit: int = 10) -> GroupPage:
        """Return one page of groups with their member records.

        Members that no longer exist are skipped rather than failing the page.

        Raises:
            ValidationError: page < 1 or limit outside 1..100.
        """
        if page < 1 or not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"page must be >= 1 and limit within 1..{MAX_PAGE_SIZE}")

        groups, total = await self._repository.page_groups(scope, (page - 1) * limit, limit)
        member_ids = {m for g in groups for m in g.member_ids}
        records = await self._repository.get_records(scope, member_ids)

        hydrated = []
        for group in groups:
            members = [records[m] for m in group.member_ids if m in records]
            if len(members) != len(group.member_ids):
                logger.warning(
                    "merge.group_members_missing",
                    group_id=group.id,
                    missing=[m for m in group.member_ids if m not in records],
                )
            hydrated.append(GroupWithMembers(**group.model_dump(), members=members))

        return GroupPage(
            groups=hydrated,
            total=total,
            page=page,
            limit=limit,
            total_pages=math.ceil(total / limit) if total else 0,
        )

    async def _job_and_token(self, scope: Scope) -> tuple[JobRead, str]:
        job = await self._repository.get_latest_job(scope)
        if job is None:
            raise NotFoundError(f"No sync job found for scope {scope.key}")
        token = await self._repository.get_access_token(job.id)
        return job, token or ""

    # ── Staged resolution ───────────────────────────────────────────────────

    async def resolve_group(
        self,
        group_id: int,
        survivor_id: int,
        field_values: dict[str, str | None],
        removed_ids: Sequence[int] = (),
    ) -> GroupRead:
        """Stage the survivor's edits and the removals, and mark the group merged.

        Args:
            group_id: Group being resolved.
            survivor_id: Local id of the record that stays.
            field_values: Final field values for the survivor.
            removed_ids: Local ids of members to delete from the CRM.

        Raises:
            NotFoundError: Unknown group.
            ConflictError: The group is already merged.
            ValidationError: Survivor or removed ids are not members, or the
                survivor is also listed for removal.
        """
        group = await self.get_group(group_id)
        if group.merged:
            raise ConflictError(f"Duplicate group {group_id} is already merged")

        members = set(group.member_ids)
        if survivor_id not in members:
            raise ValidationError(f"Record {survivor_id} is not a member of group {group_id}")
        removed = list(dict.fromkeys(removed_ids))
        if survivor_id in removed:
            raise ValidationError("The survivor cannot also be removed")
        strays = [r for r in removed if r not in members]
        if strays:
            raise ValidationError(f"Records {strays} are not members of group {group_id}")

        staged = await self._repository.resolve_group(
            _scope_of(group),
            group_id,
            survivor_id,
            field_values,
            removed,
            merged_count=len(group.member_ids),
        )
        if not staged:
            raise ConflictError(f"Duplicate group {group_id} is already merged")

        logger.info(
            "merge.group_resolved",
            group_id=group_id,
            survivor_id=survivor_id,
            removed=len(removed),
        )
        return await self.get_group(group_id)

    async def stage_removal(self, group_id: int, record_id: int) -> StagedRemovalRead:
        """Stage one member for deletion without resolving the whole group."""
        group = await self.get_group(group_id)
        scope = _scope_of(group)
        if await self._repository.get_record(scope, record_id) is None:
            raise NotFoundError(f"Record {record_id} not found")
        return await self._repository.add_staged_removal(scope, record_id, group_id)

    async def remove_member(self, group_id: int, record_id: int) -> GroupRead | None:
        """Take a record out of an unmerged group ("not a duplicate").

        Returns:
            The shrunk group, or None when it fell below two members and was deleted.
        """
        group = await self.get_group(group_id)
        if group.merged:
            raise ConflictError(f"Duplicate group {group_id} is already merged")
        if record_id not in group.member_ids:
            raise NotFoundError(f"Record {record_id} is not a member of group {group_id}")

        await self._repository.remove_from_groups(_scope_of(group), record_id, group_id=group_id)
        return await self._repository.get_group(group_id)

    async def reset_group(self, group_id: int) -> GroupRead:
        """Undo a merge: drop staged rows, reset completed merges, unmerge.

        Raises:
            NotFoundError: Unknown group.
            ConflictError: The group is not merged.
        """
        group = await self.get_group(group_id)
        if not group.merged:
            raise ConflictError(f"Duplicate group {group_id} is not merged")

        counts = await self._repository.reset_group(group_id)
        logger.info("merge.group_reset", group_id=group_id, **counts)
        return await self.get_group(group_id)

    async def reset_by_group(self, group_id: int) -> int:
        """Reset the completed Merge Records of a merged group.

        Staged edits and removals left on the group are dropped with them.

        Returns:
            Number of merge records reset.

        Raises:
            NotFoundError: Unknown group, or no completed merges for it.
            ConflictError: The group is not merged.
        """
        group = await self.get_group(group_id)
        if not group.merged:
            raise ConflictError(f"Duplicate group {group_id} is not merged")

        count = await self._repository.reset_merge_records(group_id)
        if count == 0:
            raise NotFoundError(f"No completed merges found for group {group_id}")
        logger.info("merge.merges_reset", group_id=group_id, count=count)
        return count

    # ── Direct merges ───────────────────────────────────────────────────────

    async def merge_pair(
        self, group_id: int, primary_external_id: str, secondary_external_id: str
    ) -> MergeRecordRead:
        """Merge one secondary into a primary through the CRM now.

        Raises:
            NotFoundError: Unknown group or record.
            ValidationError: Primary and secondary are the same record.
            ConflictError: The secondary already has an open merge in this group.
            UpstreamError: The CRM merge failed; the Merge Record is marked failed.
        """
        group = await self.get_group(group_id)
        scope = _scope_of(group)
        _, token = await self._job_and_token(scope)
        return await self._merge_one(scope, group_id, primary_external_id, secondary_external_id, token)

    async def batch_merge(
        self,
        group_id: int,
        primary_external_id: str,
        secondary_external_ids: Sequence[str],
    ) -> BatchMergeResult:
        """Merge each secondary in turn, chaining the primary id.

        The CRM may answer a merge with a new canonical id; it becomes the
        primary for the next secondary. A failing secondary is reported and
        the batch continues.
        """
        group = await self.get_group(group_id)
        scope = _scope_of(group)
        _, token = await self._job_and_token(scope)

        current = primary_external_id
        results: list[MergeOutcome] = []
        for secondary in secondary_external_ids:
            try:
                merged = await self._merge_one(scope, group_id, current, secondary, token)
            except DedupeError as exc:
                results.append(
                    MergeOutcome(
                        secondary_external_id=secondary,
                        success=False,
                        primary_external_id=current,
                        error=exc.message,
                    )
                )
                continue
            current = merged.primary_external_id
            results.append(
                MergeOutcome(
                    secondary_external_id=secondary,
                    success=True,
                    primary_external_id=current,
                    merge_record_id=merged.id,
                )
            )

        ok = sum(1 for r in results if r.success)
        failed = len(results) - ok
        logger.info("merge.batch_completed", group_id=group_id, successful=ok, failed=failed)
        return BatchMergeResult(
            success=failed == 0,
            message=f"{ok} successful, {failed} failed",
            results=results,
        )

    async def queue_merge(
        self, group_id: int, primary_external_id: str, secondary_external_id: str
    ) -> MergeRecordRead:
        """Record a pending merge for finish to apply."""
        group = await self.get_group(group_id)
        scope = _scope_of(group)
        await self._check_merge(scope, group_id, primary_external_id, secondary_external_id)
        merge = await self._repository.create_merge_record(
            scope, group_id, primary_external_id, secondary_external_id
        )
        logger.info("merge.queued", merge_id=merge.id, group_id=group_id)
        return merge

    async def _check_merge(
        self, scope: Scope, group_id: int, primary_id: str, secondary_id: str
    ) -> tuple[RecordRead, RecordRead]:
        if primary_id == secondary_id:
            raise ValidationError("Primary and secondary must be different records")
        primary = await self._repository.get_record_by_external_id(scope, primary_id)
        if primary is None:
            raise NotFoundError(f"Primary record {primary_id} not found")
        secondary = await self._repository.get_record_by_external_id(scope, secondary_id)
        if secondary is None:
            raise NotFoundError(f"Secondary record {secondary_id} not found")
        if await self._repository.find_open_merge(group_id, secondary_id) is not None:
            raise ConflictError(
                f"Record {secondary_id} already has an open merge in group {group_id}"
            )
        return primary, secondary

    async def _merge_one(
        self,
        scope: Scope,
        group_id: int,
        primary_id: str,
        secondary_id: str,
        token: str,
    ) -> MergeRecordRead:
        await self._check_merge(scope, group_id, primary_id, secondary_id)
        merge = await self._repository.create_merge_record(scope, group_id, primary_id, secondary_id)
        return await self._execute_merge(merge, scope, token)

    async def _execute_merge(
        self, merge: MergeRecordRead, scope: Scope, token: str
    ) -> MergeRecordRead:
        """Run one pending Merge Record against the CRM and reconcile locally."""
        primary = await self._repository.get_record_by_external_id(scope, merge.primary_external_id)
        secondary = await self._repository.get_record_by_external_id(
            scope, merge.secondary_external_id
        )
        if primary is None or secondary is None:
            missing = merge.primary_external_id if primary is None else merge.secondary_external_id
            error = f"Record {missing} not found"
            await self._repository.update_merge_record(merge.id, MergeStatus.FAILED, error=error)
            raise NotFoundError(error)

        try:
            canonical = await self._gateway.merge_pair(
                token, primary.external_id, secondary.external_id
            )
        except DedupeError as exc:
            await self._repository.update_merge_record(merge.id, MergeStatus.FAILED, error=exc.message)
            logger.error(
                "merge.pair_failed",
                merge_id=merge.id,
                group_id=merge.group_id,
                primary=primary.external_id,
                secondary=secondary.external_id,
                error=exc.message,
            )
            raise

        canonical = await self._reconcile(scope, primary, secondary, canonical)
        await self._repository.remove_from_groups(scope, secondary.id)
        completed = await self._repository.update_merge_record(
            merge.id, MergeStatus.COMPLETED, primary_external_id=canonical
        )
        # The owning group may have collapsed below two members and been deleted
        await self._repository.set_group_merged(merge.group_id, True)

        logger.info(
            "merge.pair_completed",
            merge_id=merge.id,
            group_id=merge.group_id,
            primary=canonical,
            secondary=secondary.external_id,
        )
        return completed

    async def _reconcile(
        self,
        scope: Scope,
        primary: RecordRead,
        secondary: RecordRead,
        canonical: str,
    ) -> str:
        """Fold the secondary's data into the primary's local mirror.

        Emails are concatenated (deduplicated, primary first); other fixed
        fields and property-bag keys are only filled where the primary is empty.

        Returns:
            The external id the primary carries afterwards.
        """
        emails = split_emails(primary.email)
        seen = {e.casefold() for e in emails}
        for email in split_emails(secondary.email):
            if email.casefold() not in seen:
                emails.append(email)
                seen.add(email.casefold())

        changes: dict[str, Any] = {"email": ", ".join(emails) or None, "last_modified": _utcnow()}
        for field in _FILL_FIELDS:
            if not getattr(primary, field) and getattr(secondary, field):
                changes[field] = getattr(secondary, field)

        properties = dict(primary.properties)
        for key, value in secondary.properties.items():
            if not properties.get(key):
                properties[key] = value
        changes["properties"] = properties

        if canonical != primary.external_id:
            holder = await self._repository.get_record_by_external_id(scope, canonical)
            if holder is None:
                changes["external_id"] = canonical
            else:
                logger.warning(
                    "merge.canonical_id_taken",
                    primary=primary.external_id,
                    canonical=canonical,
                    holder=holder.id,
                )
                canonical = primary.external_id

        await self._repository.update_record(primary.id, **changes)
        return canonical

    # ── Bulk merge pass ─────────────────────────────────────────────────────

    async def start_merge_all(self, scope: Scope) -> None:
        """Run merge_all_groups for ``scope`` in the background."""
        await self._job_and_token(scope)

        async def on_error(exc: BaseException) -> None:
            await self._progress.fail(scope, str(exc))

        self._tasks.spawn(f"merge-all:{scope.key}", self.merge_all_groups(scope), on_error)

    async def merge_all_groups(self, scope: Scope) -> MergeAllResult:
        """Merge every unmerged group, oldest member as primary.

        Groups are processed in chunks of ``chunk_size`` with ``chunk_pause``
        seconds between chunks. A failing group is logged and skipped.
        """
        _, token = await self._job_and_token(scope)
        groups = await self._repository.list_groups(scope, merged=False)
        chunks = [
            groups[i : i + self._chunk_size] for i in range(0, len(groups), self._chunk_size)
        ]
        await self._progress.start(
            scope,
            "merging",
            total=len(groups),
            processed=0,
            total_batches=len(chunks),
            message=f"Merging {len(groups)} groups",
        )

        merged = failed = processed = 0
        errors: list[str] = []
        for index, chunk in enumerate(chunks, start=1):
            for group in chunk:
                try:
                    await self._merge_group(scope, group, token)
                    merged += 1
                except DedupeError as exc:
                    failed += 1
                    errors.append(f"group {group.id}: {exc.message}")
                    logger.warning("merge.group_failed", group_id=group.id, error=exc.message)
                processed += 1

            await self._progress.update(
                scope,
                processed=processed,
                current_batch=index,
                percent=int(processed * 100 / len(groups)),
                message=f"Processed batch {index}/{len(chunks)}",
            )
            if index < len(chunks) and self._chunk_pause > 0:
                await asyncio.sleep(self._chunk_pause)

        await self._progress.complete(scope, message=f"{merged} merged, {failed} failed")
        logger.info("merge.all_completed", scope=scope.key, merged=merged, failed=failed)
        return MergeAllResult(
            total_groups=len(groups),
            merged_groups=merged,
            failed_groups=failed,
            errors=errors,
        )

    async def _merge_group(self, scope: Scope, group: GroupRead, token: str) -> None:
        records = await self._repository.get_records(scope, group.member_ids)
        members = sorted(records.values(), key=_age_key)
        if len(members) < 2:
            raise NotFoundError(f"Group {group.id} has fewer than two existing records")

        primary = members[0].external_id
        first_error: DedupeError | None = None
        for secondary in members[1:]:
            try:
                merged = await self._merge_one(scope, group.id, primary, secondary.external_id, token)
                primary = merged.primary_external_id
            except DedupeError as exc:
                first_error = first_error or exc
        if first_error is not None:
            raise first_error

    # ── Finish ──────────────────────────────────────────────────────────────

    async def _check_finish(self, scope: Scope) -> JobRead:
        job = await self._repository.get_latest_job(scope)
        if job is None:
            raise NotFoundError(f"No sync job found for scope {scope.key}")
        active = await self._repository.get_active_job(scope)
        if active is not None:
            raise ConflictError(
                f"Sync job {active.id} is still {active.status.value} for this scope"
            )
        for name in (f"detect:{scope.key}", f"merge-all:{scope.key}"):
            if self._tasks.is_running(name):
                raise ConflictError(f"{name.split(':')[0]} is still running for this scope")
        return job

    async def start_finish(self, scope: Scope) -> JobRead:
        """Check preconditions and run finish in the background.

        Raises:
            NotFoundError: The scope has no job.
            ConflictError: A job is active, detection or a merge pass is
                running, or finish is already running for the scope.
        """
        job = await self._check_finish(scope)
        self._tasks.spawn(f"finish:{scope.key}", self.finish(scope))
        return job

    async def finish(self, scope: Scope) -> FinishResult:
        """Run the terminal sequence for ``scope``; see the module docstring."""
        job = await self._check_finish(scope)
        token = await self._repository.get_access_token(job.id) or ""
        result = FinishResult(job_id=job.id, export_path="", exported_records=0)

        await self._progress.start(scope, "finishing", percent=0, message="Starting finish")
        await self._repository.update_job(job.id, stage_label=StageLabel.APPLYING_UPDATES)
        logger.info("finish.started", job_id=job.id, scope=scope.key)

        try:
            await self._apply_pending_merges(scope, token, result)

            cleared = await self._repository.delete_pending_merges(scope)
            await self._progress.update(scope, percent=30, message="Cleared pending merges")
            logger.debug("finish.pending_cleared", scope=scope.key, count=cleared)

            await self._push_edits(scope, token, result)
            await self._progress.update(scope, percent=50, message="Updated records")

            await self._push_removals(scope, token, result)
            await self._progress.update(scope, percent=70, message="Removed records")

            records = await self._repository.list_records(scope)
            name = await self._exports.write(scope, job.id, records)
            result.export_path = name
            result.exported_records = len(records)
            await self._repository.update_job(job.id, export_path=name)
            await self._progress.update(scope, percent=85, message="Exported records")

            await self._repository.clear_scope(scope)
            await self._progress.update(scope, percent=95, message="Cleaned up")
        except Exception as exc:
            await self._repository.update_job(job.id, stage_label=StageLabel.ERROR, error=str(exc))
            await self._progress.fail(scope, str(exc))
            logger.error("finish.failed", job_id=job.id, scope=scope.key, error=str(exc))
            raise

        await self._repository.update_job(job.id, stage_label=StageLabel.FINISHED)
        await self._progress.complete(scope, message="Finished")
        logger.info("finish.completed", scope=scope.key, **result.model_dump())
        return result

    async def _apply_pending_merges(self, scope: Scope, token: str, result: FinishResult) -> None:
        pending = await self._repository.list_merge_records(scope, MergeStatus.PENDING)
        await self._progress.update(
            scope,
            percent=5,
            total=len(pending),
            processed=0,
            message=f"Applying {len(pending)} pending merges",
        )
        for processed, merge in enumerate(pending, start=1):
            try:
                await self._execute_merge(merge, scope, token)
                result.merges_applied += 1
            except DedupeError as exc:
                result.merges_failed += 1
                logger.warning("finish.merge_skipped", merge_id=merge.id, error=exc.message)
            await self._progress.update(scope, processed=processed)
        await self._progress.update(scope, percent=10)

    async def _push_edits(self, scope: Scope, token: str, result: FinishResult) -> None:
        edits = await self._repository.list_staged_edits(scope)
        records = await self._repository.get_records(scope, [e.record_id for e in edits])

        for edit in edits:
            record = records.get(edit.record_id)
            if record is None:
                result.edits_failed += 1
                logger.warning("finish.edit_record_missing", edit_id=edit.id, record_id=edit.record_id)
                await self._repository.delete_staged_edit(edit.id)
                continue

            try:
                await self._gateway.patch_record(
                    token, record.external_id, to_crm_properties(edit.field_values)
                )
                result.edits_pushed += 1
            except DedupeError as exc:
                result.edits_failed += 1
                logger.warning(
                    "finish.edit_push_failed",
                    edit_id=edit.id,
                    external_id=record.external_id,
                    error=exc.message,
                )

            records[record.id] = await self._apply_edit_locally(record, edit.field_values)
            await self._repository.delete_staged_edit(edit.id)

    async def _apply_edit_locally(
        self, record: RecordRead, field_values: dict[str, str | None]
    ) -> RecordRead:
        changes: dict[str, Any] = {"last_modified": _utcnow()}
        properties = dict(record.properties)
        for key, value in field_values.items():
            name = FIELD_ALIASES.get(key.strip().lower(), key.strip())
            if name in COMPARISON_FIELDS:
                changes[name] = value
            elif value is None:
                properties.pop(name, None)
            else:
                properties[name] = value
        changes["properties"] = properties
        updated = await self._repository.update_record(record.id, **changes)
        return updated or record

    async def _push_removals(self, scope: Scope, token: str, result: FinishResult) -> None:
        removals = await self._repository.list_staged_removals(scope)
        records = await self._repository.get_records(scope, [r.record_id for r in removals])

        for removal in removals:
            record = records.pop(removal.record_id, None)
            if record is not None:
                try:
                    await self._gateway.delete_record(token, record.external_id)
                    result.removals_pushed += 1
                except DedupeError as exc:
                    result.removals_failed += 1
                    logger.warning(
                        "finish.removal_push_failed",
                        removal_id=removal.id,
                        external_id=record.external_id,
                        error=exc.message,
                    )
                await self._repository.delete_record(record.id)
            await self._repository.delete_staged_removal(removal.id)
