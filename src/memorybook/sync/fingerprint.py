"""Content fingerprints for planned chunks and plan inputs."""

from __future__ import annotations

import hashlib
import json
from typing import Any, Iterable

from memorybook.models import CompressionLevel, Item, Settings


def _digest(payload: dict[str, Any]) -> str:
    encoded = json.dumps(payload, sort_keys=True, ensure_ascii=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def fingerprint_chunk(
    title: str,
    compression_level: CompressionLevel,
    entries: Iterable[tuple[str, int]],
) -> str:
    """Compute a deterministic SHA-256 fingerprint for one chunk.

    If the fingerprint matches the slot's ``last_synced_fingerprint``, the
    chunk's bundle on the remote side is up to date and no upload is
    needed.

    Args:
        title: The chunk title (book title plus part number).
        compression_level: Level the chunk's items are encoded under.
        entries: Ordered ``(item_id, size)`` pairs, sizes being the
            best-known sizes the planner used.

    Returns:
        Hex-encoded SHA-256 digest string.
    """
    return _digest(
        {
            "title": title,
            "compression": CompressionLevel(compression_level).value,
            "items": [[item_id, int(size)] for item_id, size in entries],
        }
    )


def fingerprint_items(title: str, items: Iterable[Item], level: CompressionLevel) -> str:
    """Fingerprint a slice of items using their best-known sizes."""
    return fingerprint_chunk(
        title, level, ((item.item_id, item.best_known_size(level)) for item in items)
    )


def compute_plan_key(items: Iterable[Item], settings: Settings, title: str) -> str:
    """Identify the inputs of a planning pass.

    Two books with the same key produce the same plan (given a
    deterministic encoder), so a planner holding a plan under this key
    has nothing to do.
    """
    level = settings.compression_level
    return _digest(
        {
            "title": title,
            "settings": {
                "max_chunk_size_bytes": settings.max_chunk_size_bytes,
                "compression": level.value,
                "safety_margin_percent": settings.safety_margin_percent,
            },
            "items": [
                [item.item_id, item.best_known_size(level), item.is_current(level)]
                for item in items
            ],
        }
    )
