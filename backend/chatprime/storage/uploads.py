"""
Upload Store + Deferred File Reaper
════════════════════════════════════

UploadStore
  Writes accepted uploads to a local directory under a server-generated,
  collision-free name and hands back an UploadedFile record. The same
  directory is served read-only at /uploads so the upstream provider can
  fetch image references.

FileReaper
  Deletes a request's uploads some time after the request completes.
  A bare timer could delete a file while a slow extraction or a retrying
  upstream call is still reading it, so the reaper keeps a reference count
  per file id:

    hold(files)        → acquire one reference per file for the block
    schedule(files)    → after `delay`, wait until the count drops to zero,
                         then delete. Re-scheduling a file cancels its
                         previous timer.
    shutdown()         → cancel every pending timer

  A background sweep additionally purges anything older than max_age, which
  catches files orphaned by a crash between upload and scheduling.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, Iterator

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------

class IngestionStatus(str, Enum):
    PENDING   = "pending"
    EXTRACTED = "extracted"
    FAILED    = "failed"


@dataclass
class UploadedFile:
    """
    One stored upload.

    id               : server-generated identifier (also the reaper key)
    original_name    : client-supplied filename, used only for display
    mimetype         : declared content type
    byte_size        : size of the stored bytes
    storage_location : absolute path on local disk
    status           : ingestion state, updated by the DocumentExtractor
    """
    id:               str
    original_name:    str
    mimetype:         str
    byte_size:        int
    storage_location: Path
    status:           IngestionStatus = IngestionStatus.PENDING

    @property
    def stored_name(self) -> str:
        return self.storage_location.name

    @property
    def is_image(self) -> bool:
        return self.mimetype.startswith("image/")


def _sanitize_filename(filename: str) -> str:
    """
    Strip path components and replace unsafe characters.
    Returns only the basename with OS-safe characters.
    """
    basename = filename.replace("\\", "/").rsplit("/", 1)[-1]
    safe = re.sub(r"[^a-zA-Z0-9._\-]", "_", basename)
    return safe[:200] or "upload"


# ---------------------------------------------------------------------------
# UploadStore
# ---------------------------------------------------------------------------

class UploadStore:
    """Local-disk storage for request uploads."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    async def save(self, data: bytes, original_name: str, mimetype: str) -> UploadedFile:
        file_id = uuid.uuid4().hex
        name    = f"{int(time.time() * 1000)}-{file_id[:12]}-{_sanitize_filename(original_name)}"
        path    = self._root / name

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, path.write_bytes, data)

        logger.debug("UploadStore | saved id=%s name=%s bytes=%d", file_id, name, len(data))
        return UploadedFile(
            id=file_id,
            original_name=original_name,
            mimetype=mimetype,
            byte_size=len(data),
            storage_location=path,
        )

    async def read(self, file: UploadedFile) -> bytes:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, file.storage_location.read_bytes)

    async def delete(self, file: UploadedFile) -> bool:
        """Remove the stored bytes. Returns False if the file was already gone."""
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, file.storage_location.unlink)
        except FileNotFoundError:
            return False
        logger.info("UploadStore | deleted id=%s name=%s", file.id, file.stored_name)
        return True

    def public_url(self, file: UploadedFile, base_url: str) -> str:
        return f"{base_url.rstrip('/')}/uploads/{file.stored_name}"

    def count(self) -> int:
        return sum(1 for p in self._root.iterdir() if p.is_file())

    def sweep(self, max_age_seconds: float, keep: Iterable[str] = ()) -> int:
        """Delete stored files older than max_age_seconds. Returns the count removed."""
        now     = time.time()
        keep    = set(keep)
        removed = 0
        for path in self._root.iterdir():
            if not path.is_file() or path.name in keep:
                continue
            try:
                if now - path.stat().st_mtime > max_age_seconds:
                    path.unlink()
                    removed += 1
                    logger.info("UploadStore | swept stale upload name=%s", path.name)
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.error("UploadStore | failed to sweep %s: %s", path.name, exc)
        return removed


# ---------------------------------------------------------------------------
# FileReaper
# ---------------------------------------------------------------------------

class FileReaper:
    """Reference-counted, cancellable deferred deletion of uploads."""

    def __init__(self, store: UploadStore, delay_seconds: float = 60.0) -> None:
        self._store  = store
        self._delay  = delay_seconds
        self._refs:   dict[str, int]            = {}
        self._idle:   dict[str, asyncio.Event]  = {}
        self._files:  dict[str, UploadedFile]   = {}
        self._timers: dict[str, asyncio.Task]   = {}

    # -----------------------------------------------------------------------
    # Reference counting
    # -----------------------------------------------------------------------

    def acquire(self, file: UploadedFile) -> None:
        self._files[file.id] = file
        self._refs[file.id]  = self._refs.get(file.id, 0) + 1
        self._idle.setdefault(file.id, asyncio.Event()).clear()

    def release(self, file: UploadedFile) -> None:
        count = self._refs.get(file.id, 0) - 1
        if count > 0:
            self._refs[file.id] = count
            return
        self._refs.pop(file.id, None)
        event = self._idle.get(file.id)
        if event is not None:
            event.set()

    def readers(self, file_id: str) -> int:
        return self._refs.get(file_id, 0)

    @contextlib.contextmanager
    def hold(self, files: Iterable[UploadedFile]) -> Iterator[None]:
        """Keep `files` alive for the duration of the block."""
        held = list(files)
        for f in held:
            self.acquire(f)
        try:
            yield
        finally:
            for f in held:
                self.release(f)

    # -----------------------------------------------------------------------
    # Scheduling
    # -----------------------------------------------------------------------

    @property
    def pending(self) -> int:
        return len(self._timers)

    def schedule(self, files: Iterable[UploadedFile], delay: float | None = None) -> None:
        wait = self._delay if delay is None else delay
        for f in files:
            self._files[f.id] = f
            self.cancel(f.id)
            task = asyncio.create_task(self._reap(f, wait), name=f"reap-{f.id}")
            self._timers[f.id] = task

    def cancel(self, file_id: str) -> bool:
        task = self._timers.pop(file_id, None)
        if task is None:
            return False
        task.cancel()
        return True

    async def _reap(self, file: UploadedFile, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
            while self._refs.get(file.id, 0) > 0:
                logger.debug(
                    "FileReaper | deferring id=%s readers=%d", file.id, self._refs[file.id],
                )
                await self._idle.setdefault(file.id, asyncio.Event()).wait()
            await self._store.delete(file)
        except OSError as exc:
            logger.error("FileReaper | failed to delete id=%s: %s", file.id, exc)
        finally:
            if self._timers.get(file.id) is asyncio.current_task():
                self._timers.pop(file.id, None)
                self._files.pop(file.id, None)
                if file.id not in self._refs:
                    self._idle.pop(file.id, None)

    async def sweep_forever(self, max_age_seconds: float, interval_seconds: float) -> None:
        """Periodic purge of stale uploads; run as a background task."""
        loop = asyncio.get_running_loop()
        while True:
            await asyncio.sleep(interval_seconds)
            keep = {f.stored_name for fid, f in self._files.items() if fid in self._refs}
            removed = await loop.run_in_executor(None, self._store.sweep, max_age_seconds, keep)
            if removed:
                logger.info("FileReaper | sweep removed=%d", removed)

    async def shutdown(self) -> None:
        tasks = list(self._timers.values())
        self._timers.clear()
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
