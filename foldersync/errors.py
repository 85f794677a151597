"""Error taxonomy for the sync core.

Storage failures are reported as plain :class:`OSError`; everything the
core itself detects derives from :class:`SyncError`.
"""

from __future__ import annotations

from typing import Any


class SyncError(Exception):
    """Base class for sync engine errors."""


class CorruptChangeFile(SyncError):
    """A change file or working file could not be parsed."""

    def __init__(self, name: str, reason: str = "") -> None:
        self.name = name
        self.reason = reason
        msg = f"Corrupt file '{name}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class CorruptLock(SyncError):
    """The merge lock marker could not be parsed."""


class UnresolvedConflict(SyncError):
    """Raised by ``resolve()`` when a conflict has no matching resolution."""

    def __init__(self, missing: list[tuple[str, Any]]) -> None:
        self.missing = missing
        keys = ", ".join(f"{table}:{sync_id}" for table, sync_id in missing)
        super().__init__(f"{len(missing)} conflict(s) lack a resolution: {keys}")


class InvalidResolution(SyncError):
    """A resolution choice is not valid for the conflict it targets."""


class InvalidState(SyncError):
    """An engine operation was called in a state that does not allow it."""


class MissingBase(SyncError):
    """The shared folder holds no base snapshot."""


class AlreadyExists(SyncError, FileExistsError):
    """Raised when creating a file that already exists."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"'{name}' already exists.")
