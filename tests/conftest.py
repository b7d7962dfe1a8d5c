"""Shared pytest fixtures and fakes for memorybook tests.

Provides a deterministic in-memory encoding gateway, an in-memory remote
store, item/book builders, and a store fixture. Sizes are controlled
exactly so planner and sync behaviour can be asserted byte for byte.
"""

from __future__ import annotations

import asyncio
from typing import Sequence

import pytest

from memorybook.constants import MB
from memorybook.encoding.gateway import CompressedItem
from memorybook.exceptions import TransientEncodingError
from memorybook.models import (
    Book,
    CachedRepresentation,
    CompressionLevel,
    Item,
    ItemKind,
    Settings,
)
from memorybook.store import BookStore

# Level-dependent shrink factor applied by the fake compressor.
LEVEL_FACTORS = {
    CompressionLevel.LOW: 1.0,
    CompressionLevel.MEDIUM: 0.6,
    CompressionLevel.HIGH: 0.35,
}


# ======================================================================
# Builders
# ======================================================================


def make_item(
    item_id: str,
    size: int,
    kind: ItemKind = ItemKind.IMAGE,
    level: CompressionLevel | None = CompressionLevel.LOW,
    raw_size: int | None = None,
    page_count: int | None = None,
) -> Item:
    """Build an item whose cached size under *level* is *size*.

    Pass ``level=None`` for an item with no cached representation.
    """
    cached = None
    if level is not None:
        cached = CachedRepresentation(data=item_id.encode(), size=size, compression_level=level)
    return Item(
        item_id=item_id,
        position=0,
        raw_size=size if raw_size is None else raw_size,
        kind=kind,
        cached=cached,
        page_count=page_count,
    )


def make_book(
    items: Sequence[Item],
    max_mb: float = 15.0,
    margin: float = 0.0,
    level: CompressionLevel = CompressionLevel.LOW,
    title: str = "Family Album",
    folder_id: str | None = "folder-1",
) -> Book:
    book = Book(
        book_id="book-1",
        title=title,
        items=(),
        settings=Settings.from_megabytes(max_mb, level, margin),
        remote_folder_id=folder_id,
    )
    return book.with_items(list(items))


# ======================================================================
# Fakes
# ======================================================================


class FakeEncodingGateway:
    """Deterministic gateway with controllable sizes and failures.

    * ``compress`` returns ``raw_size * LEVEL_FACTORS[level]`` bytes, or the
      size from ``compressed_sizes[(item_id, level)]`` when given.
    * ``encode`` returns ``bundle_overhead`` plus the sum of the items'
      sizes, or ``bundle_sizes[item_ids]`` when given.
    """

    def __init__(
        self,
        bundle_sizes: dict[tuple[str, ...], int] | None = None,
        compressed_sizes: dict[tuple[str, CompressionLevel], int] | None = None,
        bundle_overhead: int = 50_000,
        page_counts: dict[str, int] | None = None,
    ) -> None:
        self.bundle_sizes = dict(bundle_sizes or {})
        self.compressed_sizes = dict(compressed_sizes or {})
        self.bundle_overhead = bundle_overhead
        self.page_counts = dict(page_counts or {})

        self.fail_compress: set[str] = set()
        self.fail_encode = False
        self.fail_page_count = False
        self.gate: asyncio.Event | None = None

        self.compress_calls: list[tuple[str, CompressionLevel]] = []
        self.encode_calls: list[tuple[tuple[str, ...], str, CompressionLevel]] = []
        self.page_count_calls = 0

    def size_for(self, item: Item, level: CompressionLevel) -> int:
        if (item.item_id, level) in self.compressed_sizes:
            return self.compressed_sizes[(item.item_id, level)]
        if item.is_current(level):
            return item.cached.size  # type: ignore[union-attr]
        return int(item.raw_size * LEVEL_FACTORS[level])

    async def compress(self, item: Item, level: CompressionLevel) -> CompressedItem:
        self.compress_calls.append((item.item_id, level))
        if self.gate is not None:
            await self.gate.wait()
        if item.item_id in self.fail_compress:
            raise TransientEncodingError(f"cannot decode {item.item_id}")
        size = self.size_for(item, level)
        return CompressedItem(data=f"{item.item_id}:{level.value}".encode(), size=size)

    async def encode(self, items: Sequence[Item], title: str, level: CompressionLevel) -> bytes:
        ids = tuple(item.item_id for item in items)
        self.encode_calls.append((ids, title, level))
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_encode:
            raise TransientEncodingError("encoder unavailable")
        if ids in self.bundle_sizes:
            size = self.bundle_sizes[ids]
        else:
            size = self.bundle_overhead + sum(self.size_for(item, level) for item in items)
        return bytes(size)

    async def page_count(self, data: bytes) -> int:
        self.page_count_calls += 1
        if self.fail_page_count:
            raise TransientEncodingError("not a PDF")
        item_id = data.decode().split(":", 1)[0]
        return self.page_counts.get(item_id, 1)


class FakeRemoteStore:
    """In-memory remote store recording every upload and delete."""

    def __init__(self) -> None:
        self.uploads: list[tuple[str, str, int]] = []
        self.objects: dict[str, bytes] = {}
        self.deleted: list[str] = []
        self.errors: list[Exception] = []
        self.gate: asyncio.Event | None = None
        self.in_flight = 0
        self.max_in_flight = 0

    async def upload(self, folder_id: str, filename: str, data: bytes) -> str:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.errors:
                raise self.errors.pop(0)
            self.uploads.append((folder_id, filename, len(data)))
            object_id = f"{folder_id}/{filename}"
            self.objects[object_id] = data
            return object_id
        finally:
            self.in_flight -= 1

    async def delete(self, object_id: str) -> None:
        self.deleted.append(object_id)
        self.objects.pop(object_id, None)

    @property
    def filenames(self) -> list[str]:
        return [filename for _, filename, _ in self.uploads]


# ======================================================================
# Fixtures
# ======================================================================


@pytest.fixture
def gateway() -> FakeEncodingGateway:
    return FakeEncodingGateway()


@pytest.fixture
def remote() -> FakeRemoteStore:
    return FakeRemoteStore()


@pytest.fixture
def small_book() -> Book:
    """Four 6 MB items under a 15 MB ceiling: two chunks of two."""
    return make_book([make_item(f"item-{i}", 6 * MB) for i in range(1, 5)])


@pytest.fixture
def store(small_book: Book) -> BookStore:
    book_store = BookStore(small_book)
    yield book_store
    book_store.close()
