"""The storage interface that chunk uploaders, downloaders and operators work against."""

from __future__ import annotations

from abc import ABC, abstractmethod


class StorageError(Exception):
    """Raised when a storage backend fails to carry out an operation."""


class Storage(ABC):
    """A backend holding chunk and snapshot files.

    ``thread_index`` identifies the calling worker so that backends may keep
    one connection per thread.  Failures are reported by raising StorageError.
    """

    @abstractmethod
    def find_chunk(self, thread_index: int, chunk_id: str, is_fossil: bool) -> tuple[str, bool, int]:
        """Return (path, exists, size) for the chunk or, with is_fossil, its fossil."""

    @abstractmethod
    def download_file(self, thread_index: int, file_path: str, chunk) -> None:
        """Write the content of ``file_path`` into ``chunk`` through its write method."""

    @abstractmethod
    def upload_file(self, thread_index: int, file_path: str, content: bytes) -> None:
        """Store ``content`` at ``file_path``."""

    @abstractmethod
    def move_file(self, thread_index: int, from_path: str, to_path: str) -> None:
        """Rename a file within the storage."""

    @abstractmethod
    def delete_file(self, thread_index: int, file_path: str) -> None:
        """Remove a file from the storage."""

    @abstractmethod
    def create_directory(self, thread_index: int, dir_path: str) -> None:
        """Create a directory; an existing one is not an error."""

    @abstractmethod
    def list_files(self, thread_index: int, dir_path: str) -> tuple[list[str], list[int]]:
        """Return the names under ``dir_path`` and their sizes; directories end with '/'."""

    @abstractmethod
    def is_cache_needed(self) -> bool:
        """Whether snapshot chunks should be kept in a local cache."""