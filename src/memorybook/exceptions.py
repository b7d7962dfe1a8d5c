"""Exception hierarchy for the chunk-planning and sync engine.

Only :class:`OversizedItemError` is meant to reach callers of the core.
Every other error is handled inside the loop that owns the failing call
and retried on a later tick.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from memorybook.models import Chunk


class MemoryBookError(Exception):
    """Base class for all memorybook errors."""


class TransientEncodingError(MemoryBookError):
    """Raised when a compress/encode/page-count call fails.

    Covers unreadable sources, decoder failures and gateway quota errors.
    The item or chunk stays unprocessed and is retried on the next tick.
    """


class OversizedItemError(MemoryBookError):
    """Raised when a single item cannot be brought under the effective limit.

    The planner never splits an item, so this needs a decision outside the
    core: a higher compression level or removing the item.
    """

    def __init__(self, chunks: list[Chunk] | tuple[Chunk, ...]) -> None:
        self.chunks = tuple(chunks)
        parts = ", ".join(
            f"part {c.part_number} ({c.item_ids[0]}: {c.verified_size_bytes} bytes)"
            for c in self.chunks
        )
        super().__init__(f"{len(self.chunks)} item(s) exceed the size limit: {parts}")

    @property
    def item_ids(self) -> tuple[str, ...]:
        return tuple(c.item_ids[0] for c in self.chunks)


class TransientUploadError(MemoryBookError):
    """Raised when the remote store fails in a way that may succeed later."""


class RateLimitError(TransientUploadError):
    """Raised when the remote store answers 429."""


class PermanentUploadError(MemoryBookError):
    """Raised on client errors (4xx except 429) that will not fix themselves."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StaleResultDiscard(MemoryBookError):
    """Signals that an async result no longer matches the current state.

    Internal only: raised and caught inside the loops, never reported.
    """
