"""Download endpoint for finish export artifacts."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from fastapi.responses import Response

from src.dedupe.api.deps import get_exports

router = APIRouter(tags=["exports"])


@router.get("/exports/{name}")
async def download_export(name: str, exports: Any = Depends(get_exports)) -> Response:
    content = await exports.read(name)
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{name}"'},
    )
