"""Abstract StorageProvider interface over one shared directory."""

from __future__ import annotations

import abc


class StorageProvider(abc.ABC):
    """Flat file access to a shared folder.

    Every method may raise :class:`OSError`.  Names are bare file names
    relative to the folder; sub-directories are not part of the contract.
    """

    @abc.abstractmethod
    def list_files(self) -> list[str]:
        """Return the names of all regular files in the folder."""

    @abc.abstractmethod
    def exists(self, name: str) -> bool:
        """Return True if *name* exists."""

    @abc.abstractmethod
    def read_bytes(self, name: str) -> bytes:
        """Return the full content of *name*."""

    @abc.abstractmethod
    def write_bytes(self, name: str, data: bytes) -> None:
        """Atomically create or replace *name* with *data*.

        Readers observe either the previous content or the new content,
        never a partial write.
        """

    @abc.abstractmethod
    def create(self, name: str, data: bytes) -> None:
        """Atomically create *name*; raise AlreadyExists if it exists."""

    @abc.abstractmethod
    def delete(self, name: str) -> None:
        """Remove *name*; raise FileNotFoundError if it is missing."""

    @abc.abstractmethod
    def rename(self, src: str, dst: str) -> None:
        """Atomically move *src* to *dst*, replacing *dst* if present."""

    def read_text(self, name: str) -> str:
        return self.read_bytes(name).decode("utf-8")

    def write_text(self, name: str, text: str) -> None:
        self.write_bytes(name, text.encode("utf-8"))
