"""CSV export of a scope's surviving records.

The artifact is header-first with one row per record and a fixed column
order. Every field is quoted and timestamps are ISO-8601. Files are
written under the configured export directory and read back by file name;
blocking file I/O runs in a worker thread.
"""

from __future__ import annotations

import asyncio
import csv
import io
from collections.abc import Sequence
from datetime import datetime, timezone
from pathlib import Path

import structlog

from src.dedupe.core.errors import NotFoundError
from src.dedupe.records.schemas import RecordRead, Scope

logger = structlog.get_logger(__name__)

EXPORT_COLUMNS: tuple[str, ...] = (
    "ID",
    "External ID",
    "Email",
    "First Name",
    "Last Name",
    "Phone",
    "Organization",
    "Created At",
    "Last Modified At",
)


def _iso(value: datetime | None) -> str:
    return value.isoformat() if value else ""


def render_csv(records: Sequence[RecordRead]) -> str:
    """Render records as CSV text with the fixed export columns."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(EXPORT_COLUMNS)
    for r in records:
        writer.writerow(
            [
                r.id,
                r.external_id,
                r.email or "",
                r.first_name or "",
                r.last_name or "",
                r.phone or "",
                r.organization or "",
                _iso(r.created_at),
                _iso(r.last_modified),
            ]
        )
    return buffer.getvalue()


def _safe_part(value: str) -> str:
    return "".join(c if c.isalnum() or c in "-_" else "_" for c in value)


class ExportStore:
    """Writes export artifacts to a directory and serves them back by name.

    Args:
        directory: Target directory, created on first write.
    """

    def __init__(self, directory: str | Path) -> None:
        self._directory = Path(directory)

    async def write(self, scope: Scope, job_id: int, records: Sequence[RecordRead]) -> str:
        """Write the CSV for ``records`` and return its file name."""
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        name = f"records_{_safe_part(scope.owner_id)}_{job_id}_{timestamp}.csv"
        content = render_csv(records)

        def _write() -> None:
            self._directory.mkdir(parents=True, exist_ok=True)
            (self._directory / name).write_text(content, encoding="utf-8")

        await asyncio.to_thread(_write)
        logger.info("export.written", scope=scope.key, file=name, records=len(records))
        return name

    def path_for(self, name: str) -> Path:
        """Resolve an artifact name inside the export directory.

        Raises:
            NotFoundError: The name escapes the directory or does not exist.
        """
        root = self._directory.resolve()
        path = (root / name).resolve()
        if path.parent != root or not path.is_file():
            raise NotFoundError(f"Export {name} not found")
        return path

    async def read(self, name: str) -> bytes:
        """Return the raw bytes of an export artifact."""
        path = self.path_for(name)
        return await asyncio.to_thread(path.read_bytes)
