"""Per-item cache of compressed representations."""

from __future__ import annotations

import logging
from dataclasses import replace

from memorybook.models import (
    BookState,
    CachedRepresentation,
    Item,
    OptimizationProgress,
    Settings,
)
from memorybook.store import BookStore

logger = logging.getLogger(__name__)


class ItemCache:
    """Cache view over the items held by a :class:`BookStore`.

    The cached representation lives on each :class:`Item` value; writing
    one replaces that item only.
    """

    def __init__(self, store: BookStore) -> None:
        self._store = store

    @staticmethod
    def needs_processing(item: Item, settings: Settings) -> bool:
        """True if *item* has no representation under the current compression level."""
        return not item.is_current(settings.compression_level)

    def store(
        self,
        item_id: str,
        representation: CachedRepresentation,
        page_count: int | None = None,
    ) -> bool:
        """Replace the cached entry for *item_id*. Returns False for unknown ids."""
        if item_id not in self._store.book.item_ids:
            logger.debug("Ignoring cache write for unknown item %s", item_id)
            return False

        def apply(item: Item) -> Item:
            if page_count is None:
                return replace(item, cached=representation)
            return replace(item, cached=representation, page_count=page_count)

        self._store.update_item(item_id, apply)
        return True

    @classmethod
    def pending(cls, state: BookState) -> list[Item]:
        """Items needing processing, in document order."""
        settings = state.book.settings
        return [i for i in state.book.items if cls.needs_processing(i, settings)]

    @classmethod
    def progress(cls, state: BookState) -> OptimizationProgress:
        total = len(state.book.items)
        return OptimizationProgress(current=total - len(cls.pending(state)), total=total)
