"""Tests for progress tracking and its stores."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

from src.dedupe.progress import (
    InMemoryProgressStore,
    ProgressEntry,
    ProgressTracker,
    RedisProgressStore,
)
from src.dedupe.records.schemas import Scope

SCOPE = Scope(owner_id="owner-1", connection_key="conn-a")


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestProgressTracker:
    async def test_lifecycle(self):
        tracker = ProgressTracker(InMemoryProgressStore(), ttl=60)

        await tracker.start(SCOPE, "fetching", total=10)
        await tracker.update(SCOPE, processed=4, percent=40)
        entry = await tracker.complete(SCOPE, message="done")

        assert entry.stage == "fetching"
        assert entry.total == 10
        assert entry.processed == 4
        assert entry.percent == 100
        assert entry.is_complete
        assert entry.message == "done"

    async def test_fail_keeps_percent(self):
        tracker = ProgressTracker(InMemoryProgressStore(), ttl=60)
        await tracker.start(SCOPE, "finishing")
        await tracker.update(SCOPE, percent=50)

        entry = await tracker.fail(SCOPE, "disk full")

        assert entry.percent == 50
        assert entry.error == "disk full"
        assert entry.is_complete

    async def test_update_without_entry_creates_one(self):
        tracker = ProgressTracker(InMemoryProgressStore(), ttl=60)
        entry = await tracker.update(SCOPE, stage="merging", processed=1)
        assert entry.stage == "merging"
        assert entry.processed == 1

    async def test_unknown_scope_is_none(self):
        tracker = ProgressTracker(InMemoryProgressStore(), ttl=60)
        assert await tracker.get(SCOPE) is None

    async def test_clear(self):
        tracker = ProgressTracker(InMemoryProgressStore(), ttl=60)
        await tracker.start(SCOPE, "fetching")
        await tracker.clear(SCOPE)
        assert await tracker.get(SCOPE) is None


class TestInMemoryStore:
    async def test_entries_expire(self):
        clock = FakeClock()
        tracker = ProgressTracker(InMemoryProgressStore(clock=clock), ttl=30)
        await tracker.start(SCOPE, "fetching")

        clock.now += 29
        assert await tracker.get(SCOPE) is not None
        clock.now += 1
        assert await tracker.get(SCOPE) is None

    async def test_writes_extend_lifetime(self):
        clock = FakeClock()
        tracker = ProgressTracker(InMemoryProgressStore(clock=clock), ttl=30)
        await tracker.start(SCOPE, "fetching")

        clock.now += 20
        await tracker.update(SCOPE, processed=1)
        clock.now += 20
        assert await tracker.get(SCOPE) is not None


class TestRedisStore:
    async def test_set_uses_ttl_and_prefix(self):
        redis = MagicMock()
        redis.set = AsyncMock()
        store = RedisProgressStore(redis)
        entry = ProgressEntry(scope_key=SCOPE.key, stage="fetching", percent=10)

        await store.set(SCOPE.key, entry, 120)

        redis.set.assert_awaited_once()
        args, kwargs = redis.set.call_args
        assert args[0] == "dedupe:progress:owner-1:conn-a"
        assert kwargs == {"ex": 120}
        assert ProgressEntry.model_validate_json(args[1]).percent == 10

    async def test_get_round_trips_json(self):
        entry = ProgressEntry(scope_key=SCOPE.key, stage="merging", total=3)
        redis = MagicMock()
        redis.get = AsyncMock(return_value=entry.model_dump_json())
        store = RedisProgressStore(redis, prefix="p:")

        loaded = await store.get(SCOPE.key)

        redis.get.assert_awaited_once_with("p:owner-1:conn-a")
        assert loaded == entry

    async def test_missing_key(self):
        redis = MagicMock()
        redis.get = AsyncMock(return_value=None)
        redis.delete = AsyncMock()
        store = RedisProgressStore(redis)

        assert await store.get("x") is None
        await store.delete("x")
        redis.delete.assert_awaited_once_with("dedupe:progress:x")
