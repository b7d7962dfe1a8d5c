"""Remote store interfaces consumed by the sync engine."""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class RemoteStore(Protocol):
    """Destination for exported bundles.

    ``upload`` writes *data* under *filename* inside *folder_id*,
    overwriting an existing object of the same name, and returns the
    remote object id. It raises
    :class:`~memorybook.exceptions.TransientUploadError` for failures worth
    retrying and :class:`~memorybook.exceptions.PermanentUploadError` for
    the rest.
    """

    async def upload(self, folder_id: str, filename: str, data: bytes) -> str: ...


@runtime_checkable
class SupportsDelete(Protocol):
    """Remote stores that can remove an object they returned from ``upload``."""

    async def delete(self, object_id: str) -> None: ...
