"""LocalFolderStorage — StorageProvider over a local or mounted directory."""

from __future__ import annotations

import logging
import os
import uuid
from pathlib import Path

from foldersync.errors import AlreadyExists
from foldersync.storage.base import StorageProvider

logger = logging.getLogger(__name__)

# Temporary files written during atomic replace; hidden from list_files()
_TEMP_PREFIX = ".~tmp-"


class LocalFolderStorage(StorageProvider):
    """Shared folder on a local disk, network mount, or synced drive.

    Writes go to a temporary sibling first and are moved into place with
    :func:`os.replace`, so a reader never sees a half-written file.

    Parameters
    ----------
    root:
        The shared directory.  Created if missing.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def list_files(self) -> list[str]:
        return sorted(
            p.name for p in self.root.iterdir()
            if p.is_file() and not p.name.startswith(_TEMP_PREFIX)
        )

    def exists(self, name: str) -> bool:
        return self._path(name).is_file()

    def read_bytes(self, name: str) -> bytes:
        return self._path(name).read_bytes()

    def write_bytes(self, name: str, data: bytes) -> None:
        tmp = self._write_temp(name, data)
        try:
            os.replace(tmp, self._path(name))
        except OSError:
            tmp.unlink(missing_ok=True)
            raise

    def create(self, name: str, data: bytes) -> None:
        if self.exists(name):
            raise AlreadyExists(name)
        tmp = self._write_temp(name, data)
        try:
            # link() refuses to overwrite, closing the exists() race where supported
            os.link(tmp, self._path(name))
        except FileExistsError:
            raise AlreadyExists(name) from None
        except OSError:
            logger.debug("Hard links unsupported in %s, falling back to replace", self.root)
            if self.exists(name):
                raise AlreadyExists(name) from None
            os.replace(tmp, self._path(name))
        finally:
            tmp.unlink(missing_ok=True)

    def delete(self, name: str) -> None:
        self._path(name).unlink()

    def rename(self, src: str, dst: str) -> None:
        os.replace(self._path(src), self._path(dst))

    def _path(self, name: str) -> Path:
        if not name or "/" in name or "\\" in name or name in (".", ".."):
            raise ValueError(f"Invalid file name: {name!r}")
        return self.root / name

    def _write_temp(self, name: str, data: bytes) -> Path:
        tmp = self.root / f"{_TEMP_PREFIX}{name}-{uuid.uuid4().hex[:8]}"
        with tmp.open("wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        return tmp
