"""Data models and enums for the memorybook chunk planner and sync engine.

All aggregates are frozen dataclasses. State changes are expressed by
building a new value (``dataclasses.replace``) rather than mutating one in
place, so an async result computed against an old snapshot can simply be
dropped.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

from memorybook.constants import (
    MAX_SAFETY_MARGIN_PERCENT,
    MB,
    OPTIMIZER_TICK_SECONDS,
    PLANNER_SETTLE_SECONDS,
    PLANNER_TICK_SECONDS,
    SYNC_TICK_SECONDS,
    UNKNOWN_RAW_SIZE_BYTES,
    VERIFICATION_THRESHOLD,
)
from memorybook.exceptions import OversizedItemError


class ItemKind(str, Enum):
    """Kind of media item in a book."""

    IMAGE = "image"
    PDF = "pdf"
    DOCUMENT = "document"

    @property
    def is_multi_page(self) -> bool:
        return self is not ItemKind.IMAGE


class CompressionLevel(str, Enum):
    """User-selected compression level."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        """0 for low, 2 for high. Higher rank never produces larger output."""
        return ("low", "medium", "high").index(self.value)


@dataclass(frozen=True, slots=True)
class CachedRepresentation:
    """Compressed bytes of one item and the level they were produced under."""

    data: bytes
    size: int
    compression_level: CompressionLevel


@dataclass(frozen=True, slots=True)
class Item:
    """A media item at a position in the book."""

    item_id: str
    position: int
    raw_size: int
    kind: ItemKind
    source: str | None = None
    cached: CachedRepresentation | None = None
    page_count: int | None = None
    modified: str = ""

    def is_current(self, level: CompressionLevel) -> bool:
        """True if the cached representation was produced under *level*."""
        return self.cached is not None and self.cached.compression_level == level

    def best_known_size(self, level: CompressionLevel) -> int:
        """Cached size when current, otherwise the raw size as a conservative estimate."""
        if self.is_current(level):
            return self.cached.size  # type: ignore[union-attr]
        return self.raw_size if self.raw_size > 0 else UNKNOWN_RAW_SIZE_BYTES


@dataclass(frozen=True, slots=True)
class Settings:
    """Immutable snapshot of the size and compression settings."""

    max_chunk_size_bytes: int
    compression_level: CompressionLevel = CompressionLevel.LOW
    safety_margin_percent: float = 1.0

    def __post_init__(self) -> None:
        if not isinstance(self.compression_level, CompressionLevel):
            object.__setattr__(
                self, "compression_level", CompressionLevel(self.compression_level)
            )
        if self.max_chunk_size_bytes <= 0:
            raise ValueError(
                f"max_chunk_size_bytes must be positive, got {self.max_chunk_size_bytes}"
            )
        if not 0 <= self.safety_margin_percent <= MAX_SAFETY_MARGIN_PERCENT:
            raise ValueError(
                f"safety_margin_percent must be within [0, {MAX_SAFETY_MARGIN_PERCENT:g}], "
                f"got {self.safety_margin_percent}"
            )

    @classmethod
    def from_megabytes(
        cls,
        max_chunk_mb: float,
        compression_level: CompressionLevel | str = CompressionLevel.LOW,
        safety_margin_percent: float = 1.0,
    ) -> Settings:
        return cls(
            max_chunk_size_bytes=int(max_chunk_mb * MB),
            compression_level=CompressionLevel(compression_level),
            safety_margin_percent=safety_margin_percent,
        )

    @property
    def effective_limit(self) -> float:
        """Ceiling after applying the safety margin."""
        return self.max_chunk_size_bytes * (1 - self.safety_margin_percent / 100)

    @property
    def verification_threshold(self) -> float:
        """Estimated size at which the planner switches to exact verification."""
        return self.effective_limit * VERIFICATION_THRESHOLD


@dataclass(frozen=True, slots=True)
class Book:
    """The ordered item sequence plus the settings it is exported with."""

    book_id: str
    title: str
    items: tuple[Item, ...]
    settings: Settings
    remote_folder_id: str | None = None

    @property
    def item_ids(self) -> tuple[str, ...]:
        return tuple(item.item_id for item in self.items)

    def with_items(self, items: list[Item] | tuple[Item, ...]) -> Book:
        """Return a copy holding *items* renumbered in sequence order."""
        renumbered = tuple(
            item if item.position == idx else replace(item, position=idx)
            for idx, item in enumerate(items)
        )
        return replace(self, items=renumbered)

    def with_settings(self, settings: Settings) -> Book:
        return replace(self, settings=settings)


@dataclass(frozen=True, slots=True)
class Chunk:
    """One planned bundle: a contiguous slice of the book's items."""

    part_number: int
    item_ids: tuple[str, ...]
    title: str
    estimated_size_bytes: int
    verified_size_bytes: int
    content_fingerprint: str
    oversized: bool = False
    # Every member had a representation under the plan's level when planned.
    fully_optimized: bool = True

    @property
    def item_count(self) -> int:
        return len(self.item_ids)


@dataclass(frozen=True, slots=True)
class ChunkPlan:
    """Result of one planning pass, replaced wholesale by the next one."""

    chunks: tuple[Chunk, ...]
    generation: int = 0
    plan_key: str = ""

    @property
    def oversized_chunks(self) -> tuple[Chunk, ...]:
        return tuple(c for c in self.chunks if c.oversized)

    @property
    def item_ids(self) -> tuple[str, ...]:
        """Concatenation of every chunk's item ids in part order."""
        return tuple(item_id for chunk in self.chunks for item_id in chunk.item_ids)

    def chunk(self, part_number: int) -> Chunk | None:
        for c in self.chunks:
            if c.part_number == part_number:
                return c
        return None

    def raise_for_oversized(self) -> None:
        """Raise :class:`OversizedItemError` if any chunk is oversized."""
        oversized = self.oversized_chunks
        if oversized:
            raise OversizedItemError(oversized)

    def view(self) -> list[dict[str, Any]]:
        """Plan as exposed to the UI layer."""
        return [
            {
                "part_number": c.part_number,
                "title": c.title,
                "item_ids": list(c.item_ids),
                "verified_size_bytes": c.verified_size_bytes,
                "oversized": c.oversized,
            }
            for c in self.chunks
        ]


class SyncStatus(str, Enum):
    """Upload status of one chunk slot."""

    WAITING = "waiting"
    UPLOADING = "uploading"
    SYNCED = "synced"
    DIRTY = "dirty"


@dataclass(frozen=True, slots=True)
class SyncRecord:
    """Sync state of the chunk slot identified by *part_number*."""

    part_number: int
    status: SyncStatus = SyncStatus.WAITING
    last_synced_fingerprint: str | None = None
    remote_object_id: str | None = None
    error_message: str | None = None

    def view(self) -> dict[str, Any]:
        return {
            "part_number": self.part_number,
            "status": self.status.value,
            "last_synced_fingerprint": self.last_synced_fingerprint,
        }


@dataclass(frozen=True, slots=True)
class OptimizationProgress:
    """How many items have a representation under the current settings."""

    current: int
    total: int

    @property
    def fraction(self) -> float:
        if self.total == 0:
            return 1.0
        return self.current / self.total

    @property
    def complete(self) -> bool:
        return self.current >= self.total


@dataclass(frozen=True, slots=True)
class BookState:
    """The single shared aggregate the three loops read and replace.

    ``generation`` changes on user edits (items, order, settings, title)
    and is the marker async work checks before committing. ``revision``
    changes on every replacement, including cache writes and plan commits.
    """

    book: Book
    generation: int = 0
    revision: int = 0
    plan: ChunkPlan | None = None
    sync_records: tuple[SyncRecord, ...] = ()
    last_edit_at: float = 0.0

    @property
    def records_by_part(self) -> dict[int, SyncRecord]:
        return {r.part_number: r for r in self.sync_records}

    def record_for(self, part_number: int) -> SyncRecord:
        return self.records_by_part.get(part_number, SyncRecord(part_number=part_number))


@dataclass
class SyncConfig:
    """Configuration for the session loops and the remote target.

    Controls tick cadences, the remote folder, persistence and what the
    sync engine does with oversized chunks and vanished part numbers.
    """

    remote_folder_id: str | None = None
    access_token: str | None = None
    db_path: str = "data/memorybook.db"
    optimizer_interval: float = OPTIMIZER_TICK_SECONDS
    planner_interval: float = PLANNER_TICK_SECONDS
    planner_settle_seconds: float = PLANNER_SETTLE_SECONDS
    sync_interval: float = SYNC_TICK_SECONDS
    rate_limit_tier: str = "standard"
    upload_oversized: bool = False
    prune_orphans: bool = True
