"""
Unit Tests — UploadStore + FileReaper + boundary validation
════════════════════════════════════════════════════════════
Coverage targets:
  ✅ Stored names are server-generated and path-safe
  ✅ Deferred deletion happens after the delay
  ✅ Deletion waits while a reader holds the file
  ✅ Re-scheduling replaces the previous timer
  ✅ shutdown() cancels pending deletions
  ✅ sweep() removes only stale, unheld files
  ✅ check_upload() enforces size and type limits
"""

from __future__ import annotations

import asyncio
import os
import time

import pytest

from chatprime.core.errors import FileTooLargeError, UnsupportedFileTypeError
from chatprime.schemas.uploads import check_upload, resolve_content_type
from chatprime.storage.uploads import FileReaper, UploadStore


@pytest.fixture
def store(tmp_path) -> UploadStore:
    return UploadStore(tmp_path / "uploads")


# ─────────────────────────────────────────────────────────────────────────────
# UploadStore
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestUploadStore:

    async def test_save_writes_bytes_under_generated_name(self, store):
        f = await store.save(b"hello", "../../etc/passwd", "text/plain")

        assert f.storage_location.parent == store.root
        assert f.storage_location.read_bytes() == b"hello"
        assert f.stored_name.endswith("-passwd")
        assert f.byte_size == 5
        assert f.original_name == "../../etc/passwd"

    async def test_two_saves_never_collide(self, store):
        a = await store.save(b"a", "same.txt", "text/plain")
        b = await store.save(b"b", "same.txt", "text/plain")
        assert a.stored_name != b.stored_name
        assert store.count() == 2

    async def test_delete_is_idempotent(self, store):
        f = await store.save(b"x", "x.txt", "text/plain")
        assert await store.delete(f) is True
        assert await store.delete(f) is False

    def test_public_url(self, store):
        from chatprime.storage.uploads import UploadedFile

        f = UploadedFile("id", "a.png", "image/png", 1, store.root / "123-abc-a.png")
        assert store.public_url(f, "https://gw.example.com/") == "https://gw.example.com/uploads/123-abc-a.png"
        assert f.is_image

    async def test_sweep_removes_only_stale_unkept_files(self, store):
        old  = await store.save(b"old", "old.txt", "text/plain")
        kept = await store.save(b"kept", "kept.txt", "text/plain")
        new  = await store.save(b"new", "new.txt", "text/plain")

        stale = time.time() - 7200
        os.utime(old.storage_location, (stale, stale))
        os.utime(kept.storage_location, (stale, stale))

        removed = store.sweep(3600, keep={kept.stored_name})

        assert removed == 1
        assert not old.storage_location.exists()
        assert kept.storage_location.exists()
        assert new.storage_location.exists()


# ─────────────────────────────────────────────────────────────────────────────
# FileReaper
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestFileReaper:

    async def test_deletes_after_delay(self, store):
        reaper = FileReaper(store, delay_seconds=0.01)
        f = await store.save(b"x", "x.txt", "text/plain")

        reaper.schedule([f])
        assert reaper.pending == 1
        await asyncio.sleep(0.1)

        assert not f.storage_location.exists()
        assert reaper.pending == 0

    async def test_waits_for_readers(self, store):
        reaper = FileReaper(store, delay_seconds=0.01)
        f = await store.save(b"x", "x.txt", "text/plain")

        reaper.acquire(f)
        reaper.schedule([f])
        await asyncio.sleep(0.05)
        assert f.storage_location.exists()
        assert reaper.readers(f.id) == 1

        reaper.release(f)
        await asyncio.sleep(0.05)
        assert not f.storage_location.exists()

    async def test_hold_context_releases(self, store):
        reaper = FileReaper(store)
        f = await store.save(b"x", "x.txt", "text/plain")

        with reaper.hold([f]):
            assert reaper.readers(f.id) == 1
        assert reaper.readers(f.id) == 0

    async def test_reschedule_replaces_timer(self, store):
        reaper = FileReaper(store, delay_seconds=0.01)
        f = await store.save(b"x", "x.txt", "text/plain")

        reaper.schedule([f])
        reaper.schedule([f], delay=10.0)
        await asyncio.sleep(0.05)

        assert f.storage_location.exists()
        assert reaper.pending == 1
        await reaper.shutdown()

    async def test_shutdown_cancels_pending(self, store):
        reaper = FileReaper(store, delay_seconds=10.0)
        f = await store.save(b"x", "x.txt", "text/plain")

        reaper.schedule([f])
        await reaper.shutdown()

        assert reaper.pending == 0
        assert f.storage_location.exists()

    async def test_already_deleted_file_is_not_an_error(self, store):
        reaper = FileReaper(store, delay_seconds=0.0)
        f = await store.save(b"x", "x.txt", "text/plain")
        await store.delete(f)

        reaper.schedule([f])
        await asyncio.sleep(0.02)
        assert reaper.pending == 0


# ─────────────────────────────────────────────────────────────────────────────
# Boundary validation
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestCheckUpload:

    def test_allowed_type_passes(self):
        assert check_upload("a.pdf", "application/pdf", 10, 1024) == "application/pdf"

    def test_too_large(self):
        with pytest.raises(FileTooLargeError) as exc_info:
            check_upload("a.pdf", "application/pdf", 2048, 1024)
        assert exc_info.value.status_code == 400
        assert exc_info.value.error_code == "FILE_TOO_LARGE"

    def test_unsupported_type(self):
        with pytest.raises(UnsupportedFileTypeError):
            check_upload("setup.exe", "application/x-msdownload", 10, 1024)

    def test_octet_stream_falls_back_to_extension(self):
        assert resolve_content_type("notes.md", "application/octet-stream") == "text/markdown"
        assert resolve_content_type("sheet.xlsx", None).endswith("spreadsheetml.sheet")

    def test_declared_parameters_are_stripped(self):
        assert resolve_content_type("a.txt", "text/plain; charset=utf-8") == "text/plain"
