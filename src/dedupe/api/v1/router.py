"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.dedupe.api.v1 import exports, groups, health, sync

router = APIRouter(prefix="/api/v1")

router.include_router(health.router)
router.include_router(sync.router)
router.include_router(groups.router)
router.include_router(exports.router)
