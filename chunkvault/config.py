"""Storage-wide settings shared by chunks and the components that move them."""

from __future__ import annotations

import hashlib
import hmac
import os
import queue
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .chunk import Chunk

DEFAULT_KEY = b"duplicacy"
DEFAULT_COMPRESSION_LEVEL = 100
DEFAULT_AVERAGE_CHUNK_SIZE = 4 * 1024 * 1024


def _default_pool_size() -> int:
    return (os.cpu_count() or 1) * 16


@dataclass(eq=False)
class Config:
    """Chunking, hashing, compression and encryption settings of one storage.

    A compression level between -1 and 9 selects zlib together with
    HMAC-SHA256 and SHA-256; DEFAULT_COMPRESSION_LEVEL selects LZ4 together
    with BLAKE2b-256.
    """

    compression_level: int = DEFAULT_COMPRESSION_LEVEL
    average_chunk_size: int = DEFAULT_AVERAGE_CHUNK_SIZE
    maximum_chunk_size: int = DEFAULT_AVERAGE_CHUNK_SIZE * 4
    minimum_chunk_size: int = DEFAULT_AVERAGE_CHUNK_SIZE // 4
    chunk_seed: bytes = DEFAULT_KEY
    hash_key: bytes = DEFAULT_KEY
    id_key: bytes = DEFAULT_KEY
    chunk_key: bytes = b""
    file_key: bytes = b""
    data_shards: int = 0
    parity_shards: int = 0
    rsa_public_key: Any = None
    rsa_private_key: Any = None
    dry_run: bool = False
    pool_size: int = field(default_factory=_default_pool_size)
    _pool: queue.Queue = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._pool = queue.Queue(maxsize=max(self.pool_size, 1))

    @property
    def _uses_blake2(self) -> bool:
        return self.compression_level == DEFAULT_COMPRESSION_LEVEL

    def new_keyed_hasher(self, key):
        """Return a fresh keyed hasher with a 32-byte digest."""
        key = bytes(key)
        if self._uses_blake2:
            return hashlib.blake2b(key=key, digest_size=32)
        return hmac.new(key, digestmod=hashlib.sha256)

    def new_file_hasher(self):
        """Return a fresh unkeyed hasher for whole-file hashes."""
        if self._uses_blake2:
            return hashlib.blake2b(digest_size=32)
        return hashlib.sha256()

    def get_chunk_id_from_hash(self, chunk_hash) -> str:
        """Return the hex chunk id derived from a binary chunk hash."""
        hasher = self.new_keyed_hasher(self.id_key)
        hasher.update(bytes(chunk_hash))
        return hasher.hexdigest()

    def get_chunk(self) -> "Chunk":
        """Take a buffered chunk from the pool, or create one."""
        try:
            return self._pool.get_nowait()
        except queue.Empty:
            from .chunk import Chunk

            return Chunk(self, True)

    def put_chunk(self, chunk) -> None:
        """Return a chunk to the pool; it is dropped when the pool is full."""
        if chunk is None or self.pool_size <= 0:
            return
        try:
            self._pool.put_nowait(chunk)
        except queue.Full:
            pass