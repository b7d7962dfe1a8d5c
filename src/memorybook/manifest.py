"""Book manifests: the JSON description of a book's items and settings.

Example::

    {
      "title": "Grandma's Letters",
      "folder_id": "1AbC...",
      "settings": {"max_chunk_mb": 15, "compression_level": "medium"},
      "items": [
        {"path": "scans/letter-01.jpg"},
        {"path": "scans/diary.pdf", "id": "diary"}
      ]
    }
"""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator

from memorybook.constants import (
    DEFAULT_MAX_CHUNK_MB,
    DEFAULT_SAFETY_MARGIN_PERCENT,
    MAX_MAX_CHUNK_MB,
    MAX_SAFETY_MARGIN_PERCENT,
    MIN_MAX_CHUNK_MB,
)
from memorybook.models import Book, CompressionLevel, Item, ItemKind, Settings

logger = logging.getLogger(__name__)

IMAGE_SUFFIXES = frozenset(
    {".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp", ".tif", ".tiff", ".heic"}
)


class ItemEntry(BaseModel):
    """One item of the book, in document order."""

    path: str = Field(min_length=1, description="Path relative to the manifest file")
    id: str | None = Field(default=None, description="Stable item id; derived from path if omitted")
    kind: ItemKind | None = Field(default=None, description="Inferred from the suffix if omitted")

    model_config = ConfigDict(extra="ignore")


class SettingsEntry(BaseModel):
    max_chunk_mb: float = Field(default=DEFAULT_MAX_CHUNK_MB, ge=MIN_MAX_CHUNK_MB, le=MAX_MAX_CHUNK_MB)
    compression_level: CompressionLevel = CompressionLevel.LOW
    safety_margin_percent: float = Field(
        default=DEFAULT_SAFETY_MARGIN_PERCENT, ge=0, le=MAX_SAFETY_MARGIN_PERCENT
    )

    model_config = ConfigDict(extra="ignore")


class BookManifest(BaseModel):
    """Top-level manifest document."""

    title: str = Field(min_length=1)
    book_id: str | None = None
    folder_id: str | None = None
    settings: SettingsEntry = Field(default_factory=SettingsEntry)
    items: list[ItemEntry] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")

    @field_validator("items")
    @classmethod
    def unique_ids(cls, v: list[ItemEntry]) -> list[ItemEntry]:
        explicit = [entry.id for entry in v if entry.id]
        duplicates = sorted({i for i in explicit if explicit.count(i) > 1})
        if duplicates:
            raise ValueError(f"duplicate item ids: {', '.join(duplicates)}")
        return v


def infer_kind(path: Path) -> ItemKind:
    suffix = path.suffix.lower()
    if suffix in IMAGE_SUFFIXES:
        return ItemKind.IMAGE
    if suffix == ".pdf":
        return ItemKind.PDF
    return ItemKind.DOCUMENT


def _stable_id(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]


def parse_manifest(path: Path) -> BookManifest:
    """Read and validate *path*. Raises ValueError on malformed content."""
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    return BookManifest.model_validate(data)


def load_manifest(path: str | Path) -> Book:
    """Build a :class:`Book` from the manifest at *path*.

    Item paths are resolved relative to the manifest's directory, raw
    sizes are read from disk (0 for missing files, which the planner then
    estimates), and ids default to a hash of the relative path so they
    survive reordering.

    Raises:
        FileNotFoundError: If the manifest itself does not exist.
        ValueError: If the manifest is not valid JSON or fails validation.
    """
    manifest_path = Path(path).resolve()
    manifest = parse_manifest(manifest_path)
    base = manifest_path.parent

    items: list[Item] = []
    seen: set[str] = set()
    for position, entry in enumerate(manifest.items):
        source = (base / entry.path).resolve()
        item_id = entry.id or _stable_id(entry.path)
        if item_id in seen:
            raise ValueError(f"{manifest_path}: item {entry.path!r} resolves to duplicate id {item_id}")
        seen.add(item_id)

        raw_size = 0
        modified = ""
        if source.is_file():
            stat = source.stat()
            raw_size = stat.st_size
            modified = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat()
        else:
            logger.warning("Manifest item %s not found at %s", entry.path, source)

        items.append(
            Item(
                item_id=item_id,
                position=position,
                raw_size=raw_size,
                kind=entry.kind or infer_kind(source),
                source=str(source),
                modified=modified,
            )
        )

    settings = Settings.from_megabytes(
        manifest.settings.max_chunk_mb,
        manifest.settings.compression_level,
        manifest.settings.safety_margin_percent,
    )
    return Book(
        book_id=manifest.book_id or _stable_id(str(manifest_path)),
        title=manifest.title,
        items=tuple(items),
        settings=settings,
        remote_folder_id=manifest.folder_id,
    )
