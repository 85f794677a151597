"""The narrow file contract the sync core depends on."""

from foldersync.storage.base import StorageProvider
from foldersync.storage.local import LocalFolderStorage

__all__ = ["LocalFolderStorage", "StorageProvider"]
