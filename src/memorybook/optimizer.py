"""Background optimizer keeping per-item compressed representations current.

Runs one refresh per tick, always the first item (in document order,
starting from the cursor) whose cached representation is missing or was
produced under another compression level. The loop is level-triggered:
it keeps ticking while anything needs processing, then waits for the
next edit to the book.
"""

from __future__ import annotations

import asyncio
import logging

from memorybook._loop import sleep_or_stop, wait_for_any
from memorybook.cache import ItemCache
from memorybook.constants import OPTIMIZER_TICK_SECONDS
from memorybook.encoding.gateway import EncodingGateway
from memorybook.exceptions import StaleResultDiscard, TransientEncodingError
from memorybook.models import BookState, CachedRepresentation, CompressionLevel, Item
from memorybook.store import BookStore

logger = logging.getLogger(__name__)


class BackgroundOptimizer:
    """Refreshes stale cache entries one item at a time.

    Usage::

        optimizer = BackgroundOptimizer(store, gateway)
        stop = asyncio.Event()
        task = asyncio.create_task(optimizer.run(stop))
        ...
        stop.set()
        await task

    Args:
        store: Shared book state.
        gateway: Encoding gateway used for ``compress`` and ``page_count``.
        interval: Seconds between ticks while there is work.
    """

    def __init__(
        self,
        store: BookStore,
        gateway: EncodingGateway,
        interval: float = OPTIMIZER_TICK_SECONDS,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._cache = ItemCache(store)
        self._interval = interval

        self._cursor = 0
        self._cursor_generation = store.generation
        self._wake = asyncio.Event()

        # Tracking
        self.refreshed = 0
        self.failed = 0
        self.discarded = 0

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def is_idle(self) -> bool:
        """True when no item needs processing under the current settings."""
        return not ItemCache.pending(self._store.state)

    def invalidate(self) -> None:
        """Reset the cursor and wake the loop."""
        self._cursor = 0
        self._cursor_generation = self._store.generation
        self._wake.set()

    def _on_change(self, state: BookState) -> None:
        if state.generation != self._cursor_generation:
            self.invalidate()

    def _pick(self, state: BookState) -> tuple[int, Item] | None:
        items = state.book.items
        if not items:
            return None
        settings = state.book.settings
        start = min(self._cursor, len(items))
        for idx in (*range(start, len(items)), *range(0, start)):
            if ItemCache.needs_processing(items[idx], settings):
                return idx, items[idx]
        return None

    def _check_current(self, generation: int, item_id: str, level: CompressionLevel) -> None:
        state = self._store.state
        if (
            state.generation != generation
            or item_id not in state.book.item_ids
            or state.book.settings.compression_level != level
        ):
            raise StaleResultDiscard(
                f"{item_id} refreshed for generation {generation}, now {state.generation}"
            )

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def tick(self) -> bool:
        """Refresh at most one item.

        Returns:
            True if an item was attempted (whatever the outcome), False
            when nothing needs processing.
        """
        state = self._store.state
        if state.generation != self._cursor_generation:
            self.invalidate()

        picked = self._pick(state)
        if picked is None:
            return False

        idx, item = picked
        level = state.book.settings.compression_level
        generation = state.generation

        try:
            compressed = await self._gateway.compress(item, level)
            page_count = None
            if item.kind.is_multi_page and item.page_count is None:
                try:
                    page_count = await self._gateway.page_count(compressed.data)
                except TransientEncodingError as exc:
                    logger.warning("Page count failed for %s: %s", item.item_id, exc)
        except TransientEncodingError as exc:
            logger.warning("Optimizing %s failed, will retry: %s", item.item_id, exc)
            self.failed += 1
            self._cursor = idx + 1
            return True
        except Exception as exc:
            logger.error("Unexpected error optimizing %s: %s", item.item_id, exc, exc_info=True)
            self.failed += 1
            self._cursor = idx + 1
            return True

        try:
            self._check_current(generation, item.item_id, level)
        except StaleResultDiscard as exc:
            logger.debug("Discarding stale refresh: %s", exc)
            self.discarded += 1
            return True

        representation = CachedRepresentation(
            data=compressed.data, size=compressed.size, compression_level=level
        )
        self._cache.store(item.item_id, representation, page_count)
        self._cursor = idx
        self.refreshed += 1
        logger.debug(
            "Refreshed %s at %s: %d bytes (%d/%d current)",
            item.item_id,
            level.value,
            compressed.size,
            ItemCache.progress(self._store.state).current,
            len(self._store.book.items),
        )
        return True

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run(self, stop_event: asyncio.Event) -> None:
        """Tick until *stop_event* is set, idling while nothing is stale."""
        subscription = self._store.subscribe(self._on_change)
        try:
            while not stop_event.is_set():
                self._wake.clear()
                worked = await self.tick()
                if worked:
                    await sleep_or_stop(stop_event, self._interval)
                else:
                    await wait_for_any(self._wake, stop_event)
        finally:
            subscription.dispose()
