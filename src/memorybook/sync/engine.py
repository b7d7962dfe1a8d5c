"""Sync engine: reconciles the chunk plan against the remote store.

Each tick uploads at most one chunk: the first one in part order whose
content fingerprint differs from the fingerprint last synced for its
slot. Slots move through the :mod:`memorybook.sync.fsm` lifecycle and
every status change replaces the slot's record in the shared store (and
in the SQLite record store when one is attached). A failed upload only
touches the slot's record, never items or chunks.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import replace
from typing import Any

from memorybook._loop import sleep_or_stop
from memorybook.encoding.gateway import EncodingGateway
from memorybook.exceptions import (
    PermanentUploadError,
    RateLimitError,
    TransientEncodingError,
    TransientUploadError,
)
from memorybook.models import (
    BookState,
    Chunk,
    ChunkPlan,
    Item,
    SyncConfig,
    SyncRecord,
    SyncStatus,
)
from memorybook.progress import SessionProgressTracker
from memorybook.remote.base import RemoteStore, SupportsDelete
from memorybook.remote.circuit_breaker import RollingWindowCircuitBreaker
from memorybook.store import BookStore
from memorybook.sync.fsm import advance, events_to_upload
from memorybook.sync.records import SyncRecordStore

logger = logging.getLogger(__name__)

_UNSAFE_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


def bundle_filename(title: str) -> str:
    """Deterministic remote filename for a chunk title."""
    name = _UNSAFE_FILENAME_CHARS.sub("_", title)
    name = " ".join(name.split()).strip(" .")
    return f"{name or 'bundle'}.pdf"


class SyncEngine:
    """Uploads changed chunks one at a time.

    Usage::

        engine = SyncEngine(store, gateway, remote, SyncConfig(remote_folder_id="abc"))
        await engine.restore()
        record = await engine.tick()

    Args:
        store: Shared book state (plan and sync records).
        gateway: Encoder producing the bundle bytes.
        remote: Upload destination.
        config: Folder id, oversized and orphan policies, tick interval.
        records: Optional persistent record store.
        progress: Optional Rich progress tracker.
        circuit_breaker: Breaker shared with the remote adapter; ticks are
            skipped while it is open.
    """

    def __init__(
        self,
        store: BookStore,
        gateway: EncodingGateway,
        remote: RemoteStore,
        config: SyncConfig | None = None,
        records: SyncRecordStore | None = None,
        progress: SessionProgressTracker | None = None,
        circuit_breaker: RollingWindowCircuitBreaker | None = None,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._remote = remote
        self._config = config or SyncConfig()
        self._records = records
        self._progress = progress
        self._circuit_breaker = circuit_breaker

        # Tracking
        self.uploads = 0
        self.failures = 0

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def status_view(self) -> list[dict[str, Any]]:
        return [record.view() for record in self._store.state.sync_records]

    def folder_id(self, state: BookState | None = None) -> str | None:
        state = state or self._store.state
        return self._config.remote_folder_id or state.book.remote_folder_id

    def eligible_chunks(self, plan: ChunkPlan) -> tuple[Chunk, ...]:
        """Chunks this engine uploads; oversized ones only when configured to."""
        if self._config.upload_oversized:
            return plan.chunks
        return tuple(c for c in plan.chunks if not c.oversized)

    def is_settled(self, state: BookState | None = None) -> bool:
        """True when every eligible chunk of the current plan is synced."""
        state = state or self._store.state
        if state.plan is None:
            return False
        for chunk in self.eligible_chunks(state.plan):
            record = state.record_for(chunk.part_number)
            if (
                not chunk.fully_optimized
                or record.status is not SyncStatus.SYNCED
                or record.last_synced_fingerprint != chunk.content_fingerprint
            ):
                return False
        return True

    # ------------------------------------------------------------------
    # Record writes
    # ------------------------------------------------------------------

    async def restore(self) -> tuple[SyncRecord, ...]:
        """Load persisted records for this book into the store."""
        if self._records is None:
            return ()
        restored = await self._records.load(self._store.book.book_id)
        self._store.set_sync_records(restored)
        logger.info("Restored %d sync record(s) for %s", len(restored), self._store.book.book_id)
        return restored

    async def _put_record(self, record: SyncRecord) -> None:
        merged = {**self._store.state.records_by_part, record.part_number: record}
        self._store.set_sync_records(tuple(merged.values()))
        if self._records is not None:
            await self._records.save(self._store.book.book_id, record)

    async def _drop_record(self, part_number: int) -> None:
        remaining = tuple(
            r for r in self._store.state.sync_records if r.part_number != part_number
        )
        self._store.set_sync_records(remaining)
        if self._records is not None:
            await self._records.delete(self._store.book.book_id, part_number)

    async def _delete_remote(self, object_id: str) -> None:
        if not self._config.prune_orphans or not isinstance(self._remote, SupportsDelete):
            return
        try:
            await self._remote.delete(object_id)
        except (TransientUploadError, PermanentUploadError) as exc:
            logger.warning("Could not delete remote object %s: %s", object_id, exc)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def reconcile(self, plan: ChunkPlan) -> None:
        """Align slot statuses with *plan* and prune slots it no longer has.

        Only called while no upload is in flight.
        """
        state = self._store.state
        by_part = state.records_by_part

        for chunk in self.eligible_chunks(plan):
            record = by_part.get(chunk.part_number)
            if record is None:
                await self._put_record(SyncRecord(part_number=chunk.part_number))
                continue
            matches = record.last_synced_fingerprint == chunk.content_fingerprint
            if record.status is SyncStatus.SYNCED and not matches:
                await self._put_record(
                    replace(record, status=advance(record.status, "invalidate"))
                )
            elif record.status is SyncStatus.DIRTY and matches:
                # Content reverted to what the remote already holds.
                await self._put_record(
                    replace(record, status=advance(record.status, "reconcile"), error_message=None)
                )

        planned = {c.part_number for c in plan.chunks}
        for record in state.sync_records:
            if record.part_number in planned:
                continue
            logger.info("Pruning sync record for vanished part %d", record.part_number)
            await self._drop_record(record.part_number)
            if record.remote_object_id:
                await self._delete_remote(record.remote_object_id)

    def next_chunk(self, state: BookState) -> Chunk | None:
        """First eligible chunk, in part order, whose fingerprint changed.

        Chunks planned from size estimates wait until every member is cached.
        """
        if state.plan is None:
            return None
        for chunk in self.eligible_chunks(state.plan):
            record = state.record_for(chunk.part_number)
            if record.status is SyncStatus.UPLOADING or not chunk.fully_optimized:
                continue
            if record.last_synced_fingerprint != chunk.content_fingerprint:
                return chunk
        return None

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def tick(self) -> SyncRecord | None:
        """Sync at most one chunk.

        Returns:
            The slot's final record when an upload was attempted, else None.
        """
        state = self._store.state
        if any(r.status is SyncStatus.UPLOADING for r in state.sync_records):
            return None
        plan = state.plan
        if plan is None:
            return None
        folder_id = self.folder_id(state)
        if not folder_id:
            logger.debug("No remote folder configured; skipping sync tick")
            return None
        if self._circuit_breaker is not None and self._circuit_breaker.is_open:
            logger.debug("Circuit breaker open; skipping sync tick")
            return None

        await self.reconcile(plan)
        chunk = self.next_chunk(self._store.state)
        if chunk is None:
            return None
        return await self._sync_chunk(chunk, folder_id)

    def _items_for(self, state: BookState, chunk: Chunk) -> list[Item]:
        by_id = {item.item_id: item for item in state.book.items}
        return [by_id[item_id] for item_id in chunk.item_ids if item_id in by_id]

    async def _sync_chunk(self, chunk: Chunk, folder_id: str) -> SyncRecord:
        state = self._store.state
        record = state.record_for(chunk.part_number)
        fingerprint = chunk.content_fingerprint
        previous_object_id = record.remote_object_id

        await self._put_record(
            replace(
                record,
                status=advance(record.status, *events_to_upload(record.status)),
                error_message=None,
            )
        )
        if self._progress is not None:
            self._progress.upload_started(chunk)
        logger.info("Uploading %s (%d item(s))", chunk.title, chunk.item_count)

        try:
            data = await self._gateway.encode(
                self._items_for(state, chunk),
                chunk.title,
                state.book.settings.compression_level,
            )
            object_id = await self._remote.upload(
                folder_id, bundle_filename(chunk.title), data
            )
        except (TransientEncodingError, TransientUploadError) as exc:
            logger.warning("Upload of %s failed, will retry: %s", chunk.title, exc)
            return await self._fail(chunk, exc)
        except PermanentUploadError as exc:
            logger.error("Upload of %s rejected: %s", chunk.title, exc)
            return await self._fail(chunk, exc)
        except Exception as exc:
            logger.error("Unexpected error uploading %s: %s", chunk.title, exc, exc_info=True)
            return await self._fail(chunk, exc)

        current = self._store.state.record_for(chunk.part_number)
        done = replace(
            current,
            status=advance(current.status, "complete_upload"),
            last_synced_fingerprint=fingerprint,
            remote_object_id=object_id,
            error_message=None,
        )
        await self._put_record(done)
        self.uploads += 1
        if self._progress is not None:
            self._progress.upload_succeeded(chunk)
        logger.info("Synced %s -> %s", chunk.title, object_id)

        if previous_object_id and previous_object_id != object_id:
            await self._delete_remote(previous_object_id)
        return done

    async def _fail(self, chunk: Chunk, exc: Exception) -> SyncRecord:
        current = self._store.state.record_for(chunk.part_number)
        dirty = replace(
            current,
            status=advance(current.status, "fail_upload"),
            error_message=str(exc) or type(exc).__name__,
        )
        await self._put_record(dirty)
        self.failures += 1
        if self._progress is not None:
            self._progress.upload_failed(
                chunk, dirty.error_message or "", rate_limited=isinstance(exc, RateLimitError)
            )
        return dirty

    async def run(self, stop_event: asyncio.Event) -> None:
        """Tick every ``sync_interval`` seconds until *stop_event* is set."""
        while not stop_event.is_set():
            await self.tick()
            await sleep_or_stop(stop_event, self._config.sync_interval)
