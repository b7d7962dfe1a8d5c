"""Tests for the aiosqlite-backed SyncRecordStore."""

from __future__ import annotations

import pytest

from memorybook.models import SyncRecord, SyncStatus
from memorybook.sync.records import SyncRecordStore


@pytest.fixture
async def records(tmp_path):
    async with SyncRecordStore(tmp_path / "state" / "records.db") as store:
        yield store


class TestSyncRecordStore:
    """Upsert/load/delete keyed by (book_id, part_number)."""

    @pytest.mark.asyncio
    async def test_save_and_load(self, records):
        record = SyncRecord(
            part_number=1,
            status=SyncStatus.SYNCED,
            last_synced_fingerprint="abc",
            remote_object_id="obj-1",
        )
        await records.save("book-1", record)

        assert await records.load("book-1") == (record,)

    @pytest.mark.asyncio
    async def test_save_upserts(self, records):
        await records.save("book-1", SyncRecord(part_number=1))
        await records.save(
            "book-1",
            SyncRecord(part_number=1, status=SyncStatus.DIRTY, error_message="boom"),
        )

        (loaded,) = await records.load("book-1")
        assert loaded.status is SyncStatus.DIRTY
        assert loaded.error_message == "boom"

    @pytest.mark.asyncio
    async def test_load_orders_by_part_and_isolates_books(self, records):
        await records.save("book-1", SyncRecord(part_number=2))
        await records.save("book-1", SyncRecord(part_number=1))
        await records.save("book-2", SyncRecord(part_number=7))

        assert [r.part_number for r in await records.load("book-1")] == [1, 2]
        assert [r.part_number for r in await records.load("book-2")] == [7]
        assert await records.load("missing") == ()

    @pytest.mark.asyncio
    async def test_delete(self, records):
        await records.save("book-1", SyncRecord(part_number=1))
        await records.save("book-1", SyncRecord(part_number=2))
        await records.delete("book-1", 1)

        assert [r.part_number for r in await records.load("book-1")] == [2]

    @pytest.mark.asyncio
    async def test_interrupted_upload_restored_as_dirty(self, records):
        await records.save(
            "book-1",
            SyncRecord(part_number=1, status=SyncStatus.UPLOADING, last_synced_fingerprint="old"),
        )

        (loaded,) = await records.load("book-1")
        assert loaded.status is SyncStatus.DIRTY
        assert loaded.error_message == "interrupted"
        assert loaded.last_synced_fingerprint == "old"

    @pytest.mark.asyncio
    async def test_records_survive_reconnect(self, tmp_path):
        path = tmp_path / "records.db"
        async with SyncRecordStore(path) as first:
            await first.save("book-1", SyncRecord(part_number=3, status=SyncStatus.SYNCED))
        async with SyncRecordStore(path) as second:
            (loaded,) = await second.load("book-1")
        assert loaded.part_number == 3
        assert loaded.status is SyncStatus.SYNCED

    @pytest.mark.asyncio
    async def test_requires_connection(self, tmp_path):
        store = SyncRecordStore(tmp_path / "x.db")
        with pytest.raises(RuntimeError, match="Not connected"):
            await store.load("book-1")
