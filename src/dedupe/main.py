"""FastAPI application factory.

Creates the app with logging middleware, CORS, dedupe error handlers,
lifespan events for database and service initialization, and the v1 API
router. All services are built once per process and stored on app.state;
the retry sweeper runs for the lifetime of the app.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession

from src.dedupe.api.errors import register_error_handlers
from src.dedupe.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.dedupe.api.v1.router import router as v1_router
from src.dedupe.config import ProgressBackend, Settings, get_settings
from src.dedupe.core.database import close_db, get_session, init_db
from src.dedupe.core.redis import close_redis, get_redis_pool
from src.dedupe.core.tasks import BackgroundTaskRunner
from src.dedupe.crm.gateway import CRMGateway
from src.dedupe.dedup.detector import DuplicateDetector
from src.dedupe.merging.export import ExportStore
from src.dedupe.merging.orchestrator import MergeOrchestrator
from src.dedupe.progress import (
    InMemoryProgressStore,
    ProgressStore,
    ProgressTracker,
    RedisProgressStore,
)
from src.dedupe.records.repository import DedupeRepository
from src.dedupe.sync.pipeline import SyncPipeline
from src.dedupe.sync.scheduler import RetrySweeper

logger = structlog.get_logger(__name__)


def init_services(
    app: FastAPI,
    settings: Settings,
    *,
    session_factory: Callable[..., AsyncGenerator[AsyncSession, None]] = get_session,
    gateway: CRMGateway | None = None,
    progress_store: ProgressStore | None = None,
) -> None:
    """Build the core services and attach them to ``app.state``."""
    if progress_store is None:
        if settings.PROGRESS_BACKEND == ProgressBackend.redis:
            progress_store = RedisProgressStore(get_redis_pool())
        else:
            progress_store = InMemoryProgressStore()

    repository = DedupeRepository(session_factory)
    gateway = gateway or CRMGateway.from_settings(settings)
    tasks = BackgroundTaskRunner()
    progress = ProgressTracker(progress_store, ttl=settings.PROGRESS_TTL_SECONDS)
    exports = ExportStore(settings.EXPORT_DIR)
    detector = DuplicateDetector(repository, batch_size=settings.GROUP_SAVE_BATCH_SIZE)

    pipeline = SyncPipeline(repository, gateway, detector, tasks, progress)
    orchestrator = MergeOrchestrator(
        repository,
        gateway,
        exports,
        tasks,
        progress,
        chunk_size=settings.MERGE_CHUNK_SIZE,
        chunk_pause=settings.MERGE_CHUNK_PAUSE_SECONDS,
    )

    app.state.repository = repository
    app.state.crm_gateway = gateway
    app.state.task_runner = tasks
    app.state.progress_tracker = progress
    app.state.export_store = exports
    app.state.sync_pipeline = pipeline
    app.state.merge_orchestrator = orchestrator
    app.state.retry_sweeper = RetrySweeper(
        repository, pipeline, interval_seconds=settings.RETRY_SWEEP_INTERVAL_SECONDS
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB and services on startup, close on shutdown."""
    settings = get_settings()
    configure_structlog()
    await init_db()

    init_services(app, settings)
    app.state.retry_sweeper.start()
    logger.info("app.started", environment=settings.ENVIRONMENT.value)

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    await app.state.retry_sweeper.stop()
    await app.state.task_runner.shutdown()
    await app.state.crm_gateway.close()

    await close_db()
    if settings.PROGRESS_BACKEND == ProgressBackend.redis:
        await close_redis()
    logger.info("app.stopped")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="CRM Dedupe API",
        version="0.1.0",
        description="CRM record ingestion, duplicate detection and merge workflow",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)
    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(LoggingMiddleware)

    register_error_handlers(app)
    app.include_router(v1_router)

    return app


# Module-level app for uvicorn
app = create_app()
