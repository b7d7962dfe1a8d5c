"""Chunk planner: greedy bin packing with estimate-then-verify.

Items are appended to the current batch while a cheap running estimate
(bundle overhead plus best-known size and per-item overhead for each item)
stays under the verification threshold. Once the estimate reaches the
threshold, or the items run out, the batch is encoded exactly through the
gateway. An exact size under the effective limit is accepted and packing
continues from it; a size at or above the limit pops the last item and
finalizes the rest. A single item that cannot fit on its own becomes an
oversized chunk of its own and is never split further.

:func:`plan_chunks` is a pure function of its inputs (given a
deterministic gateway). :class:`ChunkPlanner` decides when to run it
against the shared store and commits the result.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Sequence

from memorybook._loop import sleep_or_stop
from memorybook.cache import ItemCache
from memorybook.constants import (
    BUNDLE_OVERHEAD_BYTES,
    ITEM_OVERHEAD_BYTES,
    PLANNER_SETTLE_SECONDS,
    PLANNER_TICK_SECONDS,
)
from memorybook.encoding.gateway import EncodingGateway
from memorybook.exceptions import OversizedItemError, TransientEncodingError
from memorybook.models import Book, BookState, Chunk, ChunkPlan, Item, Settings
from memorybook.store import BookStore
from memorybook.sync.fingerprint import compute_plan_key, fingerprint_items

logger = logging.getLogger(__name__)


def chunk_title(title: str, part_number: int) -> str:
    return f"{title} (Part {part_number})"


def plan_key(book: Book) -> str:
    """Key identifying the inputs a plan for *book* would be computed from."""
    return compute_plan_key(book.items, book.settings, book.title)


def estimate_size(items: Sequence[Item], settings: Settings) -> int:
    """Bundle size estimate for *items* from their best-known sizes."""
    level = settings.compression_level
    return BUNDLE_OVERHEAD_BYTES + sum(
        item.best_known_size(level) + ITEM_OVERHEAD_BYTES for item in items
    )


@dataclass(frozen=True, slots=True)
class _Packed:
    end: int
    verified_size: int
    oversized: bool = False


class _Packer:
    """Packs one plan. Holds the pass inputs so the helpers stay small."""

    def __init__(
        self,
        items: tuple[Item, ...],
        settings: Settings,
        title: str,
        gateway: EncodingGateway,
    ) -> None:
        self.items = items
        self.settings = settings
        self.title = title
        self.gateway = gateway
        self.level = settings.compression_level
        self.limit = settings.effective_limit
        self.threshold = settings.verification_threshold

    async def verify(self, start: int, end: int, part_number: int) -> int:
        data = await self.gateway.encode(
            list(self.items[start:end]), chunk_title(self.title, part_number), self.level
        )
        size = len(data)
        logger.debug(
            "Verified part %d items [%d:%d]: %d bytes (limit %.0f)",
            part_number,
            start,
            end,
            size,
            self.limit,
        )
        return size

    async def pack_from(self, start: int, part_number: int) -> _Packed:
        """Find the end of the chunk starting at *start*."""
        total = len(self.items)
        estimate = BUNDLE_OVERHEAD_BYTES
        # Last verified batch items[start:good_end] known to fit.
        good_end: int | None = None
        good_size = 0
        end = start

        while end < total:
            estimate += self.items[end].best_known_size(self.level) + ITEM_OVERHEAD_BYTES
            end += 1
            if estimate < self.threshold and end < total:
                continue

            size = await self.verify(start, end, part_number)
            if size < self.limit:
                if end == total:
                    return _Packed(end, size)
                good_end, good_size = end, size
                estimate = size
                continue

            if end - start == 1:
                return _Packed(end, size, oversized=True)
            return await self._backtrack(start, end - 1, part_number, good_end, good_size)

        # Only reached when start == total, which callers never pass.
        raise ValueError(f"no items left to pack at index {start}")

    async def _backtrack(
        self,
        start: int,
        end: int,
        part_number: int,
        good_end: int | None,
        good_size: int,
    ) -> _Packed:
        """Shrink items[start:end] until it verifies under the limit."""
        while True:
            if end == good_end:
                return _Packed(end, good_size)
            size = await self.verify(start, end, part_number)
            if size < self.limit:
                return _Packed(end, size)
            if end - start == 1:
                return _Packed(end, size, oversized=True)
            end -= 1

    def make_chunk(self, start: int, packed: _Packed, part_number: int) -> Chunk:
        members = self.items[start : packed.end]
        title = chunk_title(self.title, part_number)
        return Chunk(
            part_number=part_number,
            item_ids=tuple(item.item_id for item in members),
            title=title,
            estimated_size_bytes=estimate_size(members, self.settings),
            verified_size_bytes=packed.verified_size,
            content_fingerprint=fingerprint_items(title, members, self.level),
            oversized=packed.oversized,
            fully_optimized=all(item.is_current(self.level) for item in members),
        )


async def plan_chunks(
    items: Sequence[Item],
    settings: Settings,
    title: str,
    gateway: EncodingGateway,
    generation: int = 0,
) -> ChunkPlan:
    """Pack *items* into size-bounded, order-preserving chunks.

    Args:
        items: The book's items in document order.
        settings: Size and compression settings for this pass.
        title: Book title; chunk titles are derived from it.
        gateway: Encoder used for exact size verification.
        generation: Generation marker recorded on the returned plan.

    Returns:
        A :class:`ChunkPlan` whose chunks, concatenated in part order,
        reproduce *items* exactly.

    Raises:
        TransientEncodingError: If the gateway fails; the pass is
            abandoned and no partial plan is returned.
    """
    frozen = tuple(items)
    packer = _Packer(frozen, settings, title, gateway)
    chunks: list[Chunk] = []
    start = 0
    while start < len(frozen):
        part_number = len(chunks) + 1
        packed = await packer.pack_from(start, part_number)
        chunks.append(packer.make_chunk(start, packed, part_number))
        start = packed.end

    return ChunkPlan(
        chunks=tuple(chunks),
        generation=generation,
        plan_key=compute_plan_key(frozen, settings, title),
    )


class ChunkPlanner:
    """Keeps the store's chunk plan in step with the book.

    Args:
        store: Shared book state.
        gateway: Encoder used for verification.
        interval: Seconds between planner ticks.
        settle_seconds: While the optimizer still has work, replan only
            after this long without a user edit or a previous pass.
        on_violation: Called with the :class:`OversizedItemError` each
            time a committed plan contains oversized chunks.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        store: BookStore,
        gateway: EncodingGateway,
        interval: float = PLANNER_TICK_SECONDS,
        settle_seconds: float = PLANNER_SETTLE_SECONDS,
        on_violation: Callable[[OversizedItemError], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._interval = interval
        self._settle_seconds = settle_seconds
        self._on_violation = on_violation
        self._clock = clock
        self._last_pass_at: float | None = None

        # Tracking
        self.passes = 0
        self.failed = 0
        self.discarded = 0

    def is_current(self, state: BookState | None = None) -> bool:
        """True if the stored plan was computed from the current inputs."""
        state = state or self._store.state
        return state.plan is not None and state.plan.plan_key == plan_key(state.book)

    def should_plan(self, state: BookState) -> bool:
        if self.is_current(state):
            return False
        pending = ItemCache.pending(state)
        if not pending:
            return True

        level = state.book.settings.compression_level
        if not any(item.is_current(level) for item in state.book.items):
            # Nothing refreshed since the last invalidation.
            return False

        if self._store.seconds_since_edit() < self._settle_seconds:
            return False
        if self._last_pass_at is None:
            return True
        return self._clock() - self._last_pass_at >= self._settle_seconds

    async def plan_once(self) -> ChunkPlan | None:
        """Plan the current snapshot and commit it if still current.

        Returns:
            The committed plan, or None when the book was edited while
            planning and the result was discarded.

        Raises:
            TransientEncodingError: If the gateway failed; the previous
                plan stays in place.
            OversizedItemError: If the committed plan holds oversized
                chunks. The plan is committed before raising.
        """
        state = self._store.state
        book = state.book
        self._last_pass_at = self._clock()
        self.passes += 1

        plan = await plan_chunks(
            book.items, book.settings, book.title, self._gateway, generation=state.generation
        )

        if self._store.generation != state.generation:
            logger.debug(
                "Discarding plan for generation %d (now %d)",
                state.generation,
                self._store.generation,
            )
            self.discarded += 1
            return None

        self._store.commit_plan(plan)
        logger.info(
            "Committed plan for generation %d: %d chunk(s), %d oversized",
            plan.generation,
            len(plan.chunks),
            len(plan.oversized_chunks),
        )
        plan.raise_for_oversized()
        return plan

    async def tick(self) -> bool:
        """Replan if needed. Returns True when a pass was attempted."""
        if not self.should_plan(self._store.state):
            return False
        try:
            await self.plan_once()
        except TransientEncodingError as exc:
            self.failed += 1
            logger.warning("Planning pass failed, will retry: %s", exc)
        except OversizedItemError as exc:
            logger.error("%s", exc)
            if self._on_violation is not None:
                self._on_violation(exc)
        return True

    async def run(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            await self.tick()
            await sleep_or_stop(stop_event, self._interval)
