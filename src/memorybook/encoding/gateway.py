"""Encoding gateway contract.

The planner, optimizer and sync engine only ever talk to the encoder
through this protocol. All three calls are suspension points and may fail
with :class:`~memorybook.exceptions.TransientEncodingError`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, Sequence, runtime_checkable

from memorybook.models import CompressionLevel, Item


@dataclass(frozen=True, slots=True)
class CompressedItem:
    """Per-item compressed representation returned by ``compress``."""

    data: bytes
    size: int


@runtime_checkable
class EncodingGateway(Protocol):
    """Produces exact bundle bytes and per-item compressed representations."""

    async def encode(
        self, items: Sequence[Item], title: str, level: CompressionLevel
    ) -> bytes:
        """Encode *items* in order as one bundle titled *title*."""
        ...

    async def compress(self, item: Item, level: CompressionLevel) -> CompressedItem:
        """Compress a single item under *level*."""
        ...

    async def page_count(self, data: bytes) -> int:
        """Return the authoritative page count of a multi-page container."""
        ...
