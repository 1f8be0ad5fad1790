"""Request-scoped access to the services wired onto app.state."""

from __future__ import annotations

from typing import Any

from fastapi import HTTPException, Request, status

from src.dedupe.records.schemas import Scope


def _get_state(request: Request, name: str, label: str) -> Any:
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} not initialized",
        )
    return service


def get_pipeline(request: Request) -> Any:
    """Retrieve SyncPipeline from app.state, 503 if not available."""
    return _get_state(request, "sync_pipeline", "Sync pipeline")


def get_orchestrator(request: Request) -> Any:
    """Retrieve MergeOrchestrator from app.state, 503 if not available."""
    return _get_state(request, "merge_orchestrator", "Merge orchestrator")


def get_progress(request: Request) -> Any:
    return _get_state(request, "progress_tracker", "Progress tracker")


def get_exports(request: Request) -> Any:
    return _get_state(request, "export_store", "Export store")


def get_scope(owner_id: str, connection_key: str) -> Scope:
    """Build the Scope addressed by the path parameters."""
    return Scope(owner_id=owner_id, connection_key=connection_key)
