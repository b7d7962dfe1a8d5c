"""Snapshot store and change bus for the shared book state.

:class:`BookStore` owns the one :class:`~memorybook.models.BookState` value
the optimizer, planner and sync engine share. Every write is a pure
function from the previous snapshot to the next one, applied atomically
(there are no awaits inside ``replace``), so a loop that captured an
older snapshot can detect staleness and drop its result instead of
merging it.

Snapshots are published on a reactivex ``BehaviorSubject``. Subscribers
register explicitly and dispose of their subscription on teardown.
"""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Callable

from reactivex import operators as ops
from reactivex.abc import DisposableBase
from reactivex.subject import BehaviorSubject

from memorybook.models import Book, BookState, ChunkPlan, Item, Settings, SyncRecord

logger = logging.getLogger(__name__)


class BookStore:
    """Holds the current :class:`BookState` and publishes every replacement.

    Usage::

        store = BookStore(book)
        subscription = store.subscribe(lambda state: print(state.revision))
        store.update_settings(new_settings)
        subscription.dispose()
    """

    def __init__(self, book: Book, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._state = BookState(book=book, last_edit_at=clock())
        self._subject: BehaviorSubject[BookState] = BehaviorSubject(self._state)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def state(self) -> BookState:
        return self._state

    @property
    def book(self) -> Book:
        return self._state.book

    @property
    def generation(self) -> int:
        return self._state.generation

    def seconds_since_edit(self) -> float:
        return self._clock() - self._state.last_edit_at

    # ------------------------------------------------------------------
    # Change bus
    # ------------------------------------------------------------------

    def subscribe(self, on_change: Callable[[BookState], None]) -> DisposableBase:
        """Register *on_change* for every new snapshot; dispose to deregister."""
        return self._subject.pipe(
            ops.distinct_until_changed(lambda s: s.revision),
        ).subscribe(on_next=on_change)

    def close(self) -> None:
        self._subject.on_completed()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def replace(self, fn: Callable[[BookState], BookState]) -> BookState:
        """Apply *fn* to the current snapshot and publish the result."""
        new_state = fn(self._state)
        if new_state is self._state:
            return new_state
        new_state = replace(new_state, revision=self._state.revision + 1)
        self._state = new_state
        self._subject.on_next(new_state)
        return new_state

    def _edit(self, fn: Callable[[Book], Book]) -> BookState:
        """Apply a user edit: bump the generation and invalidate the plan."""

        def apply(state: BookState) -> BookState:
            return replace(
                state,
                book=fn(state.book),
                generation=state.generation + 1,
                plan=None,
                last_edit_at=self._clock(),
            )

        new_state = self.replace(apply)
        logger.debug("Book edited, generation now %d", new_state.generation)
        return new_state

    def set_items(self, items: list[Item] | tuple[Item, ...]) -> BookState:
        return self._edit(lambda book: book.with_items(items))

    def move_item(self, item_id: str, new_index: int) -> BookState:
        def move(book: Book) -> Book:
            items = [i for i in book.items if i.item_id != item_id]
            moved = next(i for i in book.items if i.item_id == item_id)
            items.insert(max(0, min(new_index, len(items))), moved)
            return book.with_items(items)

        return self._edit(move)

    def remove_item(self, item_id: str) -> BookState:
        return self._edit(
            lambda book: book.with_items([i for i in book.items if i.item_id != item_id])
        )

    def update_settings(self, settings: Settings) -> BookState:
        return self._edit(lambda book: book.with_settings(settings))

    def set_title(self, title: str) -> BookState:
        return self._edit(lambda book: replace(book, title=title))

    def update_item(self, item_id: str, fn: Callable[[Item], Item]) -> BookState:
        """Replace the item with *item_id* by ``fn(item)``; other items are untouched.

        Does not bump the generation: cache writes are not user edits.
        Unknown ids leave the state unchanged.
        """

        def apply(state: BookState) -> BookState:
            if item_id not in state.book.item_ids:
                return state
            items = tuple(
                fn(existing) if existing.item_id == item_id else existing
                for existing in state.book.items
            )
            return replace(state, book=replace(state.book, items=items))

        return self.replace(apply)

    def commit_plan(self, plan: ChunkPlan) -> BookState:
        return self.replace(lambda state: replace(state, plan=plan))

    def set_sync_records(self, records: tuple[SyncRecord, ...]) -> BookState:
        ordered = tuple(sorted(records, key=lambda r: r.part_number))
        return self.replace(lambda state: replace(state, sync_records=ordered))
