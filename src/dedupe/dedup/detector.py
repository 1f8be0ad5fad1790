"""Duplicate detector -- exact-match grouping over a scope's records.

Conditions are evaluated in order over the same record set. Claim-then-merge
policy, per match bucket (records sharing one condition key):
- If two or more members are still unclaimed they form a new group, even
  when other members of the bucket were claimed by an earlier condition.
- If exactly one member is unclaimed and the rest already belong to a
  group, that member joins the earliest such group.
- Otherwise the bucket is dropped.

A record therefore lands in at most one group, and every group holds at
least two records. Records are visited in id order so the result is
deterministic for unchanged input.
"""

from __future__ import annotations

from collections.abc import Sequence

import structlog

from src.dedupe.dedup.conditions import DEFAULT_CONDITIONS, PropertyBag
from src.dedupe.records.repository import DedupeRepository
from src.dedupe.records.schemas import FieldCondition, RecordRead, Scope

logger = structlog.get_logger(__name__)


def group_records(
    records: Sequence[RecordRead], conditions: Sequence[FieldCondition]
) -> list[list[int]]:
    """Group record ids by the given conditions.

    Args:
        records: Candidate records; any order.
        conditions: Conditions in priority order.

    Returns:
        Groups of record ids, each sorted, in order of creation.
    """
    ordered = sorted(records, key=lambda r: r.id)
    bags = {r.id: PropertyBag.from_record(r) for r in ordered}
    groups: list[list[int]] = []
    claimed: dict[int, int] = {}  # record id -> index into groups

    for condition in conditions:
        buckets: dict[tuple[str, ...], list[int]] = {}
        for record in ordered:
            key = bags[record.id].match_key(condition)
            if key is not None:
                buckets.setdefault(key, []).append(record.id)

        for members in buckets.values():
            if len(members) < 2:
                continue
            unclaimed = [m for m in members if m not in claimed]
            if len(unclaimed) >= 2:
                groups.append(unclaimed)
                for m in unclaimed:
                    claimed[m] = len(groups) - 1
            elif len(unclaimed) == 1:
                target = min(claimed[m] for m in members if m in claimed)
                groups[target].append(unclaimed[0])
                claimed[unclaimed[0]] = target

    return [sorted(g) for g in groups if len(g) >= 2]


class DuplicateDetector:
    """Runs grouping for a scope and replaces its unmerged groups.

    Records that already sit in a merged group are left out, so a
    re-detection never pulls them into a second group.

    Args:
        repository: DedupeRepository for records and groups.
        batch_size: Groups persisted per commit.
    """

    def __init__(self, repository: DedupeRepository, batch_size: int = 50) -> None:
        self._repository = repository
        self._batch_size = batch_size

    async def detect(
        self, scope: Scope, conditions: Sequence[FieldCondition] | None = None
    ) -> list[list[int]]:
        """Detect duplicates in ``scope`` and persist the resulting groups.

        Args:
            scope: Scope to scan.
            conditions: Custom field conditions; the default strategies when None.

        Returns:
            The persisted groups as lists of record ids.
        """
        conditions = list(conditions) if conditions else list(DEFAULT_CONDITIONS)

        records = await self._repository.list_records(scope)
        merged = await self._repository.list_groups(scope, merged=True)
        locked = {member for group in merged for member in group.member_ids}
        candidates = [r for r in records if r.id not in locked]

        groups = group_records(candidates, conditions)
        await self._repository.replace_unmerged_groups(scope, groups, self._batch_size)

        logger.info(
            "detect.completed",
            scope=scope.key,
            records=len(candidates),
            groups=len(groups),
            conditions=[c.name for c in conditions],
        )
        return groups
