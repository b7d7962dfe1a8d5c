"""Size-bounded PDF bundling and incremental sync for media books."""

__version__ = "0.1.0"

from memorybook.exceptions import OversizedItemError
from memorybook.models import (
    Book,
    Chunk,
    ChunkPlan,
    CompressionLevel,
    Item,
    ItemKind,
    Settings,
    SyncConfig,
    SyncRecord,
    SyncStatus,
)

__all__ = [
    "Book",
    "Chunk",
    "ChunkPlan",
    "CompressionLevel",
    "Item",
    "ItemKind",
    "OversizedItemError",
    "Settings",
    "SyncConfig",
    "SyncRecord",
    "SyncStatus",
    "__version__",
]
