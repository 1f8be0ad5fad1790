"""Shared fixtures for dedupe tests.

Provides:
- A file-backed SQLite database (aiosqlite) with all tables created
- DedupeRepository bound to that database
- FakeCRMGateway: in-memory stand-in for the remote CRM
- Wired SyncPipeline / MergeOrchestrator with an in-memory progress store
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

import src.dedupe.records.models  # noqa: F401
from src.dedupe.core.database import Base
from src.dedupe.core.errors import UpstreamError, ValidationError
from src.dedupe.core.tasks import BackgroundTaskRunner
from src.dedupe.crm.gateway import CRMPage, CRMProperty
from src.dedupe.dedup.detector import DuplicateDetector
from src.dedupe.merging.export import ExportStore
from src.dedupe.merging.orchestrator import MergeOrchestrator
from src.dedupe.progress import InMemoryProgressStore, ProgressTracker
from src.dedupe.records.repository import DedupeRepository
from src.dedupe.records.schemas import RecordData, Scope
from src.dedupe.sync.pipeline import SyncPipeline


# ── Helpers ────────────────────────────────────────────────────────────────


def make_record(external_id: str, **fields) -> RecordData:
    """Create RecordData with a creation date derived from the external id."""
    defaults = {
        "created_at": datetime(2026, 1, 1, tzinfo=timezone.utc),
        "last_modified": datetime(2026, 1, 2, tzinfo=timezone.utc),
    }
    defaults.update(fields)
    return RecordData(external_id=external_id, **defaults)


class FakeCRMGateway:
    """In-memory CRM double with switchable failures.

    ``pages`` is served through list_page with cursors "1", "2", ...
    """

    def __init__(self, pages: list[list[RecordData]] | None = None) -> None:
        self.pages: list[list[RecordData]] = pages or []
        self.unauthorized = False
        self.fail_on_page: int | None = None
        self.fail_merges_for: set[str] = set()
        self.fail_patches_for: set[str] = set()
        self.canonical_ids: dict[str, str] = {}
        self.list_calls = 0
        self.merged: list[tuple[str, str]] = []
        self.patched: list[tuple[str, dict[str, str]]] = []
        self.deleted: list[str] = []
        self.property_names: list[str] = ["email", "firstname", "lastname", "vat_id"]
        self.property_calls = 0

    async def validate_access(self, token: str) -> None:
        if self.unauthorized:
            raise ValidationError("Invalid or unauthorized CRM access token")

    async def list_page(
        self, token: str, cursor: str | None = None, limit: int | None = None
    ) -> CRMPage:
        self.list_calls += 1
        index = int(cursor) if cursor else 0
        if self.fail_on_page == index:
            raise UpstreamError("API request failed after 3 attempts: unavailable", 503)
        records = self.pages[index] if index < len(self.pages) else []
        next_cursor = str(index + 1) if index + 1 < len(self.pages) else None
        return CRMPage(records=records, next_cursor=next_cursor)

    async def patch_record(self, token: str, external_id: str, properties: dict[str, str]) -> dict:
        if external_id in self.fail_patches_for:
            raise UpstreamError("API request failed after 3 attempts: patch rejected", 500)
        self.patched.append((external_id, properties))
        return {"id": external_id, "properties": properties}

    async def delete_record(self, token: str, external_id: str) -> bool:
        self.deleted.append(external_id)
        return True

    async def merge_pair(self, token: str, primary_id: str, secondary_id: str) -> str:
        if secondary_id in self.fail_merges_for:
            raise UpstreamError("API request failed after 3 attempts: merge rejected", 400)
        self.merged.append((primary_id, secondary_id))
        return self.canonical_ids.get(secondary_id, primary_id)

    async def list_properties(self, token: str) -> list[CRMProperty]:
        self.property_calls += 1
        return [
            CRMProperty(name=name, label=name.title(), group_name="Custom Fields")
            for name in self.property_names
        ]

    async def close(self) -> None:
        return None


# ── Database ───────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def engine(tmp_path):
    """SQLite database file with all dedupe tables."""
    db_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'dedupe.db'}")
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def session_factory(engine):
    async def _get_session() -> AsyncGenerator[AsyncSession, None]:
        async with AsyncSession(engine, expire_on_commit=False) as session:
            yield session

    return _get_session


@pytest.fixture
def repository(session_factory) -> DedupeRepository:
    return DedupeRepository(session_factory)


# ── Services ───────────────────────────────────────────────────────────────


@pytest.fixture
def scope() -> Scope:
    return Scope(owner_id="owner-1", connection_key="conn-a")


@pytest.fixture
def gateway() -> FakeCRMGateway:
    return FakeCRMGateway()


@pytest.fixture
def progress() -> ProgressTracker:
    return ProgressTracker(InMemoryProgressStore(), ttl=600)


@pytest_asyncio.fixture
async def tasks():
    runner = BackgroundTaskRunner()
    yield runner
    await runner.shutdown()


@pytest.fixture
def exports(tmp_path) -> ExportStore:
    return ExportStore(tmp_path / "exports")


@pytest.fixture
def pipeline(repository, gateway, tasks, progress) -> SyncPipeline:
    return SyncPipeline(repository, gateway, DuplicateDetector(repository), tasks, progress)


@pytest.fixture
def orchestrator(repository, gateway, exports, tasks, progress) -> MergeOrchestrator:
    return MergeOrchestrator(
        repository, gateway, exports, tasks, progress, chunk_size=2, chunk_pause=0
    )


@pytest_asyncio.fixture
async def synced_scope(scope, gateway, pipeline, tasks, repository):
    """Run a full sync over ``gateway.pages`` and return the finished job.

    Tests set gateway.pages before requesting this fixture.
    """
    job = await pipeline.start_sync(scope, "initial import", "token-123")
    await tasks.drain()
    return await repository.get_job(job.id)


def ids_by_external(records) -> dict[str, int]:
    return {r.external_id: r.id for r in records}
