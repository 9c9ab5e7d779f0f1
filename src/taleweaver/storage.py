"""Preview storage: rendered PDFs kept for a limited time."""

import asyncio
import logging
import time
import uuid
from pathlib import Path
from typing import Callable

from .config import settings
from .models import PreviewRecord

logger = logging.getLogger(__name__)


class PreviewStore:
    """In-memory map from preview id to file, swept on a fixed interval.

    Entries older than ``retention_seconds`` (by file mtime, falling back to
    the registration time) are deleted together with their file. ``get``
    never raises: unknown, expired or vanished previews return ``None``.
    """

    def __init__(
        self,
        directory: Path | str | None = None,
        retention_seconds: float | None = None,
        sweep_interval: float | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.directory = Path(directory or settings.preview_dir)
        self.retention_seconds = (
            retention_seconds if retention_seconds is not None else settings.preview_retention_seconds
        )
        self.sweep_interval = (
            sweep_interval if sweep_interval is not None else settings.preview_sweep_interval
        )
        self.clock = clock
        self._records: dict[str, PreviewRecord] = {}
        self._sweep_lock = asyncio.Lock()
        self._task: asyncio.Task | None = None

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, preview_id: str) -> bool:
        return preview_id in self._records

    def ids(self) -> list[str]:
        return list(self._records)

    @staticmethod
    def new_id() -> str:
        return uuid.uuid4().hex

    def put(self, preview_id: str, path: Path | str) -> PreviewRecord:
        record = PreviewRecord(id=preview_id, file_path=Path(path), created_at=self.clock())
        self._records[preview_id] = record
        logger.debug(f"Preview registered: {preview_id} -> {record.file_path}")
        return record

    def get(self, preview_id: str) -> Path | None:
        record = self._records.get(preview_id)
        if record is None:
            return None
        if self._is_expired(record) or not record.file_path.exists():
            return None
        return record.file_path

    def save(self, pdf_bytes: bytes) -> PreviewRecord:
        """Write a rendered PDF under a fresh id and register it."""
        self.directory.mkdir(parents=True, exist_ok=True)
        preview_id = self.new_id()
        path = self.directory / f"{preview_id}.pdf"
        path.write_bytes(pdf_bytes)
        return self.put(preview_id, path)

    def _age(self, record: PreviewRecord) -> float:
        try:
            modified = record.file_path.stat().st_mtime
        except FileNotFoundError:
            modified = record.created_at
        return self.clock() - modified

    def _is_expired(self, record: PreviewRecord) -> bool:
        return self._age(record) > self.retention_seconds

    async def sweep(self) -> int:
        """Delete expired previews. Returns the number of entries removed."""
        async with self._sweep_lock:
            removed = 0
            for preview_id, record in list(self._records.items()):
                if not self._is_expired(record):
                    continue
                try:
                    record.file_path.unlink()
                except FileNotFoundError:
                    pass
                except OSError as e:
                    logger.warning(f"Could not delete preview file {record.file_path}: {e}")
                self._records.pop(preview_id, None)
                removed += 1
            if removed:
                logger.info(f"Preview sweep removed {removed} expired entries")
            return removed

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Preview sweep failed: {e}", exc_info=True)

    def start(self) -> None:
        """Start the periodic sweep on the running event loop."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="preview-sweep")
            logger.info(f"Preview sweep scheduled every {self.sweep_interval:.0f}s")

    async def stop(self) -> None:
        """Cancel the periodic sweep."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
