"""Shared-folder transport.

Stores device blobs in a plain directory, typically one kept in sync by an
external tool (network share, Syncthing, a cloud drive client).
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

from profilesync.transport.base import (
    RemoteSyncFile,
    Transport,
    TransportError,
    TransportNotFoundError,
    device_id_from_file_name,
    sync_file_name,
)

logger = logging.getLogger(__name__)


class FolderTransport(Transport):
    """Transport writing blobs to a local directory.

    The locator of a blob is its file name. Writes go through a temporary
    file and os.replace, so readers never see a partial blob.
    """

    def __init__(self, root: Path | str) -> None:
        """Initialize folder transport.

        Args:
            root: Directory holding the blobs (created if needed).
        """
        self.root = Path(root).expanduser()
        self.root.mkdir(parents=True, exist_ok=True)

    @property
    def location(self) -> str:
        return str(self.root)

    def _path(self, locator: str) -> Path:
        path = self.root / Path(locator).name
        if device_id_from_file_name(path.name) is None:
            raise TransportError(f"Not a sync file: {locator}")
        return path

    def upload(self, device_id: str, data: bytes) -> str:
        file_name = sync_file_name(device_id)
        target = self.root / file_name
        try:
            fd, tmp_name = tempfile.mkstemp(dir=self.root, prefix=".tmp-")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                os.replace(tmp_name, target)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise TransportError(f"Cannot write {target}: {e}") from e
        logger.debug(f"Wrote {len(data)} bytes to {target}")
        return file_name

    def download(self, locator: str) -> bytes:
        path = self._path(locator)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise TransportNotFoundError(f"Sync file not found: {locator}") from None
        except OSError as e:
            raise TransportError(f"Cannot read {path}: {e}") from e

    def list(self) -> list[RemoteSyncFile]:
        files = []
        try:
            entries = sorted(self.root.iterdir())
        except OSError as e:
            raise TransportError(f"Cannot list {self.root}: {e}") from e
        for entry in entries:
            device_id = device_id_from_file_name(entry.name)
            if device_id is None or not entry.is_file():
                continue
            stat = entry.stat()
            files.append(
                RemoteSyncFile(
                    locator=entry.name,
                    file_name=entry.name,
                    device_id=device_id,
                    modified_time=int(stat.st_mtime * 1000),
                    size=stat.st_size,
                )
            )
        return files

    def delete(self, locator: str) -> bool:
        path = self._path(locator)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise TransportError(f"Cannot delete {path}: {e}") from e
        return True
