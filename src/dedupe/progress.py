"""Progress tracking for long-running stages.

ProgressTracker is the only writer/reader of per-scope progress entries.
Storage is injected:
- InMemoryProgressStore: dict with monotonic-clock expiry (single process)
- RedisProgressStore: JSON values with a Redis TTL (shared across workers)

Entries are created when a stage starts, updated by the background task
that owns the stage, marked complete or failed at the end, and expire
``ttl`` seconds after their last write. Progress is not durable: callers
must read "no entry" as "unknown" (never started, expired or restarted).
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

import redis.asyncio as aioredis
import structlog
from pydantic import BaseModel, Field

from src.dedupe.records.schemas import Scope

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProgressEntry(BaseModel):
    """Snapshot of one scope's active stage."""

    scope_key: str
    stage: str
    percent: int = Field(default=0, ge=0, le=100)
    message: str | None = None
    is_complete: bool = False
    error: str | None = None
    total: int | None = None
    processed: int | None = None
    current_batch: int | None = None
    total_batches: int | None = None
    started_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


# ── Stores ──────────────────────────────────────────────────────────────────


class ProgressStore(ABC):
    """Storage backend for progress entries keyed by scope key."""

    @abstractmethod
    async def get(self, key: str) -> ProgressEntry | None: ...

    @abstractmethod
    async def set(self, key: str, entry: ProgressEntry, ttl: int) -> None: ...

    @abstractmethod
    async def delete(self, key: str) -> None: ...


class InMemoryProgressStore(ProgressStore):
    """Process-local store. Expired entries are dropped lazily on read."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[ProgressEntry, float]] = {}

    async def get(self, key: str) -> ProgressEntry | None:
        item = self._entries.get(key)
        if item is None:
            return None
        entry, expires_at = item
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return entry

    async def set(self, key: str, entry: ProgressEntry, ttl: int) -> None:
        self._entries[key] = (entry, self._clock() + ttl)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)


class RedisProgressStore(ProgressStore):
    """Redis-backed store; entries are JSON strings under a key prefix."""

    def __init__(self, redis_client: aioredis.Redis, prefix: str = "dedupe:progress:") -> None:
        self._redis = redis_client
        self._prefix = prefix

    async def get(self, key: str) -> ProgressEntry | None:
        raw = await self._redis.get(self._prefix + key)
        if raw is None:
            return None
        return ProgressEntry.model_validate_json(raw)

    async def set(self, key: str, entry: ProgressEntry, ttl: int) -> None:
        await self._redis.set(self._prefix + key, entry.model_dump_json(), ex=ttl)

    async def delete(self, key: str) -> None:
        await self._redis.delete(self._prefix + key)


# ── Tracker ─────────────────────────────────────────────────────────────────


class ProgressTracker:
    """Writes and reads per-scope progress through an injected store.

    Args:
        store: ProgressStore backend.
        ttl: Seconds an entry lives after its last write.
    """

    def __init__(self, store: ProgressStore, ttl: int = 3600) -> None:
        self._store = store
        self._ttl = ttl

    async def start(self, scope: Scope, stage: str, **fields: Any) -> ProgressEntry:
        """Create a fresh entry for ``stage``, replacing any previous one."""
        entry = ProgressEntry(scope_key=scope.key, stage=stage, **fields)
        await self._store.set(scope.key, entry, self._ttl)
        logger.debug("progress.started", scope=scope.key, stage=stage)
        return entry

    async def update(self, scope: Scope, **changes: Any) -> ProgressEntry:
        """Merge ``changes`` into the current entry (creating one if absent)."""
        current = await self._store.get(scope.key)
        if current is None:
            stage = changes.pop("stage", "unknown")
            current = ProgressEntry(scope_key=scope.key, stage=stage)
        entry = current.model_copy(update={**changes, "updated_at": _utcnow()})
        await self._store.set(scope.key, entry, self._ttl)
        return entry

    async def complete(self, scope: Scope, message: str | None = None) -> ProgressEntry:
        return await self.update(scope, percent=100, is_complete=True, message=message)

    async def fail(self, scope: Scope, error: str) -> ProgressEntry:
        """Mark the stage finished with an error; percent is left where it stopped."""
        logger.warning("progress.failed", scope=scope.key, error=error)
        return await self.update(
            scope, is_complete=True, error=error, message=f"Error: {error}"
        )

    async def get(self, scope: Scope) -> ProgressEntry | None:
        return await self._store.get(scope.key)

    async def clear(self, scope: Scope) -> None:
        await self._store.delete(scope.key)
