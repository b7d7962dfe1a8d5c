"""Incremental upload of planned chunks.

Public API
----------
.. autoclass:: SyncEngine
.. autoclass:: SyncRecordStore
.. autoclass:: ChunkSyncSM
"""

from memorybook.sync.engine import SyncEngine, bundle_filename
from memorybook.sync.fingerprint import compute_plan_key, fingerprint_chunk
from memorybook.sync.fsm import ChunkSyncSM, advance
from memorybook.sync.records import SyncRecordStore

__all__ = [
    "ChunkSyncSM",
    "SyncEngine",
    "SyncRecordStore",
    "advance",
    "bundle_filename",
    "compute_plan_key",
    "fingerprint_chunk",
]
