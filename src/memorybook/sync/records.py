"""Async SQLite persistence for chunk sync records.

Records are keyed by ``(book_id, part_number)``. Each write commits
immediately; no transaction is held across an ``await`` boundary.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

from memorybook.models import SyncRecord, SyncStatus

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS sync_records (
    book_id TEXT NOT NULL,
    part_number INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'waiting'
        CHECK(status IN ('waiting', 'uploading', 'synced', 'dirty')),
    last_synced_fingerprint TEXT,
    remote_object_id TEXT,
    error_message TEXT,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (book_id, part_number)
);
"""


class SyncRecordStore:
    """Async SQLite store for :class:`SyncRecord` values.

    Usage::

        async with SyncRecordStore("data/memorybook.db") as records:
            restored = await records.load(book.book_id)
            await records.save(book.book_id, record)
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = str(db_path)
        self._db: aiosqlite.Connection | None = None

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the connection in WAL mode and create the table."""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA synchronous=NORMAL")
        await self._db.executescript(SCHEMA)
        await self._db.commit()

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> SyncRecordStore:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    def _ensure_connected(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Not connected -- use 'async with' or call connect()")
        return self._db

    @staticmethod
    def _now_iso() -> str:
        return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def load(self, book_id: str) -> tuple[SyncRecord, ...]:
        """Return the persisted records for *book_id*, ordered by part number.

        A record left ``uploading`` by an interrupted run is restored as
        ``dirty`` so the slot is retried.
        """
        db = self._ensure_connected()
        cursor = await db.execute(
            """SELECT part_number, status, last_synced_fingerprint,
                      remote_object_id, error_message
               FROM sync_records
               WHERE book_id = ?
               ORDER BY part_number""",
            (book_id,),
        )
        rows = await cursor.fetchall()

        records = []
        for row in rows:
            status = SyncStatus(row["status"])
            error = row["error_message"]
            if status is SyncStatus.UPLOADING:
                logger.warning(
                    "Part %d of %s was uploading when the last run stopped; marking dirty",
                    row["part_number"],
                    book_id,
                )
                status = SyncStatus.DIRTY
                error = error or "interrupted"
            records.append(
                SyncRecord(
                    part_number=row["part_number"],
                    status=status,
                    last_synced_fingerprint=row["last_synced_fingerprint"],
                    remote_object_id=row["remote_object_id"],
                    error_message=error,
                )
            )
        return tuple(records)

    # ------------------------------------------------------------------
    # Writes (each commits immediately)
    # ------------------------------------------------------------------

    async def save(self, book_id: str, record: SyncRecord) -> None:
        db = self._ensure_connected()
        await db.execute(
            """INSERT INTO sync_records
                   (book_id, part_number, status, last_synced_fingerprint,
                    remote_object_id, error_message, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(book_id, part_number) DO UPDATE SET
                   status = excluded.status,
                   last_synced_fingerprint = excluded.last_synced_fingerprint,
                   remote_object_id = excluded.remote_object_id,
                   error_message = excluded.error_message,
                   updated_at = excluded.updated_at""",
            (
                book_id,
                record.part_number,
                record.status.value,
                record.last_synced_fingerprint,
                record.remote_object_id,
                record.error_message,
                self._now_iso(),
            ),
        )
        await db.commit()

    async def delete(self, book_id: str, part_number: int) -> None:
        db = self._ensure_connected()
        await db.execute(
            "DELETE FROM sync_records WHERE book_id = ? AND part_number = ?",
            (book_id, part_number),
        )
        await db.commit()
