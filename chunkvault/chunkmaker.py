"""Content-defined chunking with a rolling buzhash."""

from __future__ import annotations

import hashlib
import struct
from typing import BinaryIO, Callable, Optional

from .chunk import Chunk

_MASK = (1 << 64) - 1

EndOfChunk = Callable[[Chunk, bool], None]
NextReader = Callable[[int, str], Optional[BinaryIO]]


def _rotate_left(value: int, bits: int) -> int:
    bits &= 0x3F
    return ((value << bits) | (value >> (64 - bits))) & _MASK


class ChunkMaker:
    """Split a sequence of readers into chunks.

    The average chunk size must be a power of two.  When the minimum and
    maximum sizes are equal, every file is cut into fixed-size chunks on its
    own; otherwise boundaries are found with a buzhash over a window of the
    minimum chunk size and depend only on the concatenated data.
    """

    def __init__(self, config, hash_only=False):
        average = config.average_chunk_size
        if average <= 0 or average & (average - 1):
            raise ValueError(f"Invalid average chunk size: {average} is not a power of 2")

        self.config = config
        self.hash_only = hash_only
        self.minimum_chunk_size = config.minimum_chunk_size
        self.maximum_chunk_size = config.maximum_chunk_size
        self.buffer_capacity = 2 * config.minimum_chunk_size
        self.hash_mask = average - 1

        table: list[int] = []
        digest = hashlib.sha256(bytes(config.chunk_seed)).digest()
        for _ in range(64):
            table.extend(struct.unpack("<4Q", digest))
            digest = hashlib.sha256(digest).digest()
        self.random_table = tuple(table)
        # Values leaving the window are rotated by the window length.
        self._outgoing_table = tuple(
            _rotate_left(value, self.minimum_chunk_size) for value in table
        )
        self._hash_only_chunk = Chunk(config, False) if hash_only else None

    def _new_chunk(self) -> Chunk:
        chunk = self._hash_only_chunk if self.hash_only else self.config.get_chunk()
        chunk.reset(True)
        return chunk

    def _buzhash_sum(self, data) -> int:
        table = self.random_table
        total = 0
        for byte in data:
            total = (((total << 1) | (total >> 63)) & _MASK) ^ table[byte]
        return total

    def for_each_chunk(
        self,
        reader: BinaryIO,
        end_of_chunk: EndOfChunk,
        next_reader: Optional[NextReader] = None,
    ) -> None:
        """Read ``reader`` and report every chunk to ``end_of_chunk(chunk, final)``.

        At the end of each reader ``next_reader(file_size, file_hash)`` is called
        with the size and hex file hash of the data just read; it returns the
        next reader, or None when there are no more.
        """
        config = self.config
        file_size = 0
        file_hasher = config.new_file_hasher()

        def switch_reader() -> Optional[BinaryIO]:
            nonlocal file_size, file_hasher
            following = next_reader(file_size, file_hasher.hexdigest()) if next_reader else None
            if following is not None:
                file_size = 0
                file_hasher = config.new_file_hasher()
            return following

        minimum = self.minimum_chunk_size

        if minimum == self.maximum_chunk_size:
            chunk = self._new_chunk()
            while True:
                block = bytearray()
                at_end = False
                while len(block) < minimum:
                    data = reader.read(minimum - len(block))
                    if not data:
                        at_end = True
                        break
                    block += data
                file_hasher.update(block)
                file_size += len(block)
                chunk.write(block)
                if at_end:
                    following = switch_reader()
                    if following is None:
                        end_of_chunk(chunk, True)
                        return
                    reader = following
                end_of_chunk(chunk, False)
                chunk = self._new_chunk()

        capacity = self.buffer_capacity
        maximum = self.maximum_chunk_size
        mask = self.hash_mask
        table = self.random_table
        outgoing = self._outgoing_table

        pending = bytearray()
        at_end = False
        chunk = self._new_chunk()
        hash_sum = 0
        minimum_reached = False

        def fill(count: int) -> None:
            chunk.write(pending[:count])
            del pending[:count]

        while True:
            while len(pending) < capacity and not at_end:
                data = reader.read(capacity - len(pending))
                if data:
                    pending += data
                    file_hasher.update(data)
                    file_size += len(data)
                    continue
                following = switch_reader()
                if following is None:
                    at_end = True
                else:
                    reader = following

            if len(pending) < minimum:
                fill(len(pending))
                end_of_chunk(chunk, True)
                return

            if not minimum_reached:
                hash_sum = self._buzhash_sum(pending[:minimum])
                if hash_sum & mask == 0:
                    fill(minimum)
                    end_of_chunk(chunk, False)
                    chunk = self._new_chunk()
                    hash_sum = 0
                    continue
                minimum_reached = True

            count = len(pending) - minimum
            end_found = False
            limit = maximum - chunk.length - minimum - 1
            for i in range(len(pending) - minimum):
                hash_sum = (
                    (((hash_sum << 1) | (hash_sum >> 63)) & _MASK)
                    ^ outgoing[pending[i]]
                    ^ table[pending[i + minimum]]
                )
                if hash_sum & mask == 0 or i == limit:
                    count = i + 1 + minimum
                    end_found = True
                    break

            fill(count)

            if end_found:
                if at_end and not pending:
                    end_of_chunk(chunk, True)
                    return
                end_of_chunk(chunk, False)
                chunk = self._new_chunk()
                hash_sum = 0
                minimum_reached = False
                continue

            if at_end:
                fill(len(pending))
                end_of_chunk(chunk, True)
                return