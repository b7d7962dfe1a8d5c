"""Per-slot upload lifecycle state machine.

Each chunk slot (identified by its part number) moves through
``waiting -> uploading -> synced | dirty``. The machine only validates
transitions; the sync engine applies the resulting status by replacing
the slot's :class:`~memorybook.models.SyncRecord`.
"""

from __future__ import annotations

from statemachine import State, StateMachine

from memorybook.models import SyncStatus


class ChunkSyncSM(StateMachine):
    """Four-state lifecycle of one chunk slot.

    States:
        waiting   -- Fingerprint differs from the last synced one; eligible.
        uploading -- Bundle encode and upload in flight.
        synced    -- Remote copy matches ``last_synced_fingerprint``.
        dirty     -- Last attempt failed; retried on a later tick, or
                     reconciled to synced when the content reverts to
                     the last synced fingerprint.
    """

    waiting = State("waiting", initial=True, value="waiting")
    uploading = State("uploading", value="uploading")
    synced = State("synced", value="synced")
    dirty = State("dirty", value="dirty")

    start_upload = waiting.to(uploading)
    complete_upload = uploading.to(synced)
    fail_upload = uploading.to(dirty)
    retry = dirty.to(waiting)
    invalidate = synced.to(waiting)
    reconcile = dirty.to(synced)


def create_fsm(current: SyncStatus | str) -> ChunkSyncSM:
    """Create an FSM positioned at *current*."""
    return ChunkSyncSM(start_value=SyncStatus(current).value)


def advance(current: SyncStatus, *events: str) -> SyncStatus:
    """Apply *events* in order starting at *current* and return the final status.

    Raises:
        statemachine.exceptions.TransitionNotAllowed: If any event is not
            legal from the state it is applied in.
    """
    sm = create_fsm(current)
    for event in events:
        sm.send(event)
    return SyncStatus(sm.current_state_value)


def events_to_upload(current: SyncStatus) -> tuple[str, ...]:
    """Events that take a slot in *current* to ``uploading``."""
    if current is SyncStatus.SYNCED:
        return ("invalidate", "start_upload")
    if current is SyncStatus.DIRTY:
        return ("retry", "start_upload")
    return ("start_upload",)
