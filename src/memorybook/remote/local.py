"""Remote store backed by a local directory.

Useful as an export target and for end-to-end runs without network
access: each folder id is a subdirectory of *root*.
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from pathlib import Path

from memorybook.exceptions import PermanentUploadError, TransientUploadError

logger = logging.getLogger(__name__)


class LocalFolderStore:
    """Writes bundles to ``root/<folder_id>/<filename>``.

    Writes are atomic: the bundle goes to a temporary file in the target
    directory and is renamed over the destination, so a reader never sees
    a half-written PDF. The object id is the destination path.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def _target(self, folder_id: str, filename: str) -> Path:
        name = Path(filename).name
        if not name or name in (".", ".."):
            raise PermanentUploadError(f"Invalid filename {filename!r}")
        return self.root / folder_id / name

    def _write(self, folder_id: str, filename: str, data: bytes) -> str:
        target = self._target(folder_id, filename)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=".", suffix=".part")
        except OSError as exc:
            raise TransientUploadError(f"Cannot prepare {target}: {exc}") from exc

        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            os.replace(tmp_name, target)
        except OSError as exc:
            Path(tmp_name).unlink(missing_ok=True)
            raise TransientUploadError(f"Writing {target} failed: {exc}") from exc

        logger.info("Wrote %s (%d bytes)", target, len(data))
        return str(target)

    async def upload(self, folder_id: str, filename: str, data: bytes) -> str:
        return await asyncio.to_thread(self._write, folder_id, filename, data)

    async def delete(self, object_id: str) -> None:
        path = Path(object_id)
        await asyncio.to_thread(path.unlink, missing_ok=True)
        logger.info("Removed %s", path)
