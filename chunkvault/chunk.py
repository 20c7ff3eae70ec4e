"""Chunks: the unit of data that is hashed, compressed, encrypted and stored."""

from __future__ import annotations

import functools
import hashlib
import hmac
import logging
import operator
import os
import struct
import zlib

import lz4.block
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .config import DEFAULT_COMPRESSION_LEVEL
from .highwayhash import highway_hash_256
from .reedsolomon import ReedSolomon, ReedSolomonError

logger = logging.getLogger(__name__)

ENCRYPTION_BANNER = b"duplicacy\x00"
ENCRYPTION_VERSION_RSA = 2
ERASURE_CODING_BANNER = b"duplicacy\x03"

_BANNER_LENGTH = len(ENCRYPTION_BANNER)
_NONCE_SIZE = 12
_HEADER_SIZE = 14
_SHARD_HASH_SIZE = 32
_SHARD_HASH_KEY = bytes(32)
_LZ4_PREFIX = b"LZ4 "

# Compatibility switch for data whose keys were derived with HMAC-SHA256.
DECRYPT_WITH_HMACSHA256 = os.environ.get("CHUNKVAULT_DECRYPT_WITH_HMACSHA256", "0") != "0"

_OAEP = padding.OAEP(
    mgf=padding.MGF1(algorithm=hashes.SHA256()),
    algorithm=hashes.SHA256(),
    label=None,
)


class ChunkError(Exception):
    """Raised when a chunk cannot be encoded or decoded."""


def _as_bytes(value) -> bytes:
    if not value:
        return b""
    if isinstance(value, str):
        return value.encode("latin-1")
    return bytes(value)


def _checksum(header: bytes) -> bytes:
    even = functools.reduce(operator.xor, header[0:12:2])
    odd = functools.reduce(operator.xor, header[1:12:2])
    return bytes((even, odd))


def _erasure_header(chunk_size: int, data_shards: int, parity_shards: int) -> bytes:
    fields = struct.pack("<QHH", chunk_size, data_shards, parity_shards)
    return fields + _checksum(fields)


def _new_aead(key: bytes) -> AESGCM:
    try:
        return AESGCM(key)
    except ValueError as error:
        raise ChunkError(f"Invalid encryption key: {error}") from error


class Chunk:
    """A block of data together with its running hash.

    A chunk created without a buffer only counts the bytes written to it and
    is used to compute hashes.
    """

    def __init__(self, config, buffer_needed=True):
        self.config = config
        self._buffer: bytearray | None = bytearray() if buffer_needed else None
        self._size = 0
        self._hasher = None
        self._hash = b""
        self._id = ""
        self.is_snapshot = False
        self.is_broken = False

    @property
    def length(self) -> int:
        """Number of bytes held (or counted, for hash-only chunks)."""
        if self._buffer is not None:
            return len(self._buffer)
        return self._size

    @property
    def data(self) -> bytes:
        """The bytes held in the chunk."""
        return bytes(self._require_buffer())

    @property
    def hash(self) -> bytes:
        """The binary keyed hash of the data written since the last reset."""
        if not self._hash:
            if self._hasher is None:
                raise ChunkError("The chunk has no hasher")
            self._hash = self._hasher.digest()
        return self._hash

    @property
    def id(self) -> str:
        """The hex id under which the chunk is stored."""
        if not self._id:
            self._id = self.config.get_chunk_id_from_hash(self.hash)
        return self._id

    def _require_buffer(self) -> bytearray:
        if self._buffer is None:
            raise ChunkError("The chunk has no buffer")
        return self._buffer

    def reset(self, hash_needed):
        """Clear the chunk; hash the data to come only if ``hash_needed``."""
        if self._buffer is not None:
            self._buffer.clear()
        self._hasher = self.config.new_keyed_hasher(self.config.hash_key) if hash_needed else None
        self._hash = b""
        self._id = ""
        self._size = 0
        self.is_snapshot = False
        self.is_broken = False

    def write(self, data) -> int:
        """Append ``data`` and feed it to the hasher; return its length."""
        data = bytes(data)
        if self._buffer is None:
            self._size += len(data)
        else:
            self._buffer += data
        if self._hasher is not None:
            self._hasher.update(data)
        return len(data)

    def verify_id(self) -> None:
        """Raise ChunkError if the stored id does not match the buffered data."""
        hasher = self.config.new_keyed_hasher(self.config.hash_key)
        hasher.update(self._require_buffer())
        expected = self.config.get_chunk_id_from_hash(hasher.digest())
        if expected != self.id:
            raise ChunkError(
                f"The chunk id should be {expected} instead of {self.id}, length: {self.length}"
            )

    def _compress(self, plain: bytes) -> bytes:
        level = self.config.compression_level
        if -1 <= level <= 9:
            return zlib.compress(plain, level)
        if level == DEFAULT_COMPRESSION_LEVEL:
            return _LZ4_PREFIX + lz4.block.compress(plain, store_size=True)
        raise ChunkError(f"Invalid compression level: {level}")

    def encrypt(self, encryption_key, derivation_key=b"", is_snapshot=False) -> None:
        """Compress, optionally encrypt, and optionally erasure-code the buffer in place.

        With a derivation key the AES key is the keyed hash of ``encryption_key``
        under ``derivation_key``.  File chunks use a random key wrapped by RSA
        when the config holds an RSA public key.
        """
        config = self.config
        plain = bytes(self._require_buffer())
        encryption_key = _as_bytes(encryption_key)
        derivation_key = _as_bytes(derivation_key)

        aead = None
        header = b""
        nonce = b""
        if encryption_key:
            key = encryption_key
            wrapped_key = None
            if config.rsa_public_key is not None and not is_snapshot and not self.is_snapshot:
                key = os.urandom(32)
                try:
                    wrapped_key = config.rsa_public_key.encrypt(key, _OAEP)
                except ValueError as error:
                    raise ChunkError(f"RSA encryption failed: {error}") from error
            elif derivation_key:
                hasher = config.new_keyed_hasher(derivation_key)
                hasher.update(encryption_key)
                key = hasher.digest()
            aead = _new_aead(key)
            if wrapped_key is not None:
                header = (
                    ENCRYPTION_BANNER[:-1]
                    + bytes([ENCRYPTION_VERSION_RSA])
                    + struct.pack("<H", len(wrapped_key))
                    + wrapped_key
                )
            else:
                header = ENCRYPTION_BANNER
            nonce = os.urandom(_NONCE_SIZE)

        payload = self._compress(plain)

        if aead is not None:
            # Pad as much as PKCS7 allows so compressed sizes leak less.
            padding_length = 256 - len(payload) % 256
            padded = payload + bytes([padding_length & 0xFF]) * padding_length
            payload = header + nonce + aead.encrypt(nonce, padded, None)

        data_shards, parity_shards = config.data_shards, config.parity_shards
        if not data_shards or not parity_shards:
            self._buffer = bytearray(payload)
            return

        try:
            coder = ReedSolomon(data_shards, parity_shards)
        except ReedSolomonError as error:
            raise ChunkError(str(error)) from error
        chunk_size = len(payload)
        shard_size = -(-chunk_size // data_shards)
        padded = payload + bytes(shard_size * data_shards - chunk_size)
        shards = coder.encode(
            [padded[i * shard_size:(i + 1) * shard_size] for i in range(data_shards)]
        )
        erasure_header = _erasure_header(chunk_size, data_shards, parity_shards)

        encoded = bytearray(ERASURE_CODING_BANNER)
        encoded += erasure_header
        for shard in shards:
            encoded += highway_hash_256(_SHARD_HASH_KEY, shard)
        for shard in shards:
            encoded += shard
        encoded += erasure_header
        self._buffer = encoded

    def _erasure_decode(self, data: bytes) -> bytes:
        if len(data) < _BANNER_LENGTH + _HEADER_SIZE:
            raise ChunkError(f"Erasure coding header truncated ({len(data)} bytes)")
        header = data[_BANNER_LENGTH:_BANNER_LENGTH + _HEADER_SIZE]
        if header[12:14] != _checksum(header):
            raise ChunkError(f"Erasure coding header corrupted ({header.hex()})")

        chunk_size, data_shards, parity_shards = struct.unpack_from("<QHH", header)
        if data_shards == 0:
            raise ChunkError("Erasure coding header has no data shards")
        total_shards = data_shards + parity_shards
        shard_size = -(-chunk_size // data_shards)
        expected_length = (
            _BANNER_LENGTH + 2 * _HEADER_SIZE + total_shards * (shard_size + _SHARD_HASH_SIZE)
        )
        minimum_length = (
            _BANNER_LENGTH
            + _HEADER_SIZE
            + total_shards * _SHARD_HASH_SIZE
            + data_shards * shard_size
        )
        logger.debug(
            "Chunk size: %d bytes, data size: %d, parity: %d/%d",
            chunk_size, len(data), data_shards, parity_shards,
        )
        if len(data) > expected_length:
            logger.warning("Chunk has %d bytes (instead of %d)", len(data), expected_length)
        elif len(data) == expected_length:
            pass
        elif len(data) > minimum_length:
            logger.warning("Chunk is truncated (%d out of %d bytes)", len(data), expected_length)
        else:
            raise ChunkError(
                f"Not enough chunk data for recovery; chunk size: {chunk_size} bytes, "
                f"data size: {len(data)}, parity: {data_shards}/{parity_shards}"
            )

        hash_offset = _BANNER_LENGTH + _HEADER_SIZE
        data_offset = hash_offset + total_shards * _SHARD_HASH_SIZE

        shards: list[bytes | None] = [None] * total_shards
        recovery_needed = False
        available = 0
        for i in range(total_shards):
            start = data_offset + i * shard_size
            if start + shard_size > len(data):
                break
            shard = data[start:start + shard_size]
            stored_hash = data[hash_offset + i * _SHARD_HASH_SIZE:hash_offset + (i + 1) * _SHARD_HASH_SIZE]
            if highway_hash_256(_SHARD_HASH_KEY, shard) != stored_hash:
                if i < data_shards:
                    recovery_needed = True
            else:
                shards[i] = shard
                available += 1
                if available >= data_shards:
                    break

        if not recovery_needed:
            return data[data_offset:data_offset + chunk_size]

        if available < data_shards:
            raise ChunkError(
                f"Not enough chunk data for recover; only {available} out of "
                f"{total_shards} shards are complete"
            )
        slots = "".join("*" if shard else "-" for shard in shards)
        logger.warning(
            "Recovering a %d byte chunk from %d byte shards: %s", chunk_size, shard_size, slots
        )
        try:
            rebuilt = ReedSolomon(data_shards, parity_shards).reconstruct(shards)
        except ReedSolomonError as error:
            raise ChunkError(str(error)) from error
        logger.debug("Chunk data successfully recovered")
        return b"".join(rebuilt[:data_shards])[:chunk_size]

    def _decrypt_payload(self, data: bytes, encryption_key: bytes, derivation_key: bytes) -> bytes:
        config = self.config
        key = encryption_key
        if derivation_key:
            if DECRYPT_WITH_HMACSHA256:
                hasher = hmac.new(derivation_key, digestmod=hashlib.sha256)
            else:
                hasher = config.new_keyed_hasher(derivation_key)
            hasher.update(encryption_key)
            key = hasher.digest()

        banner_length = _BANNER_LENGTH
        if len(data) < banner_length + _NONCE_SIZE:
            raise ChunkError(f"No enough encrypted data ({len(data)} bytes) provided")
        if data[:banner_length - 1] != ENCRYPTION_BANNER[:-1]:
            raise ChunkError("The storage doesn't seem to be encrypted")

        version = data[banner_length - 1]
        if version not in (0, ENCRYPTION_VERSION_RSA):
            raise ChunkError(f"Unsupported encryption version {version}")

        if version == ENCRYPTION_VERSION_RSA:
            if config.rsa_private_key is None:
                raise ChunkError("An RSA private key is required to decrypt the chunk")
            (key_length,) = struct.unpack_from("<H", data, banner_length)
            if len(data) < banner_length + 14 + key_length:
                raise ChunkError(f"No enough encrypted data ({len(data)} bytes) provided")
            wrapped_key = data[banner_length + 2:banner_length + 2 + key_length]
            banner_length += 2 + key_length
            try:
                key = config.rsa_private_key.decrypt(wrapped_key, _OAEP)
            except ValueError as error:
                raise ChunkError(f"RSA decryption failed: {error}") from error

        aead = _new_aead(key)
        offset = banner_length + _NONCE_SIZE
        nonce = data[banner_length:offset]
        try:
            plain = aead.decrypt(nonce, data[offset:], None)
        except (InvalidTag, ValueError) as error:
            raise ChunkError("cipher: message authentication failed") from error

        if not plain:
            raise ChunkError("Incorrect padding length 256 out of 0 bytes")
        padding_length = plain[-1] or 256
        if len(plain) <= padding_length:
            raise ChunkError(
                f"Incorrect padding length {padding_length} out of {len(plain)} bytes"
            )
        tail = plain[-padding_length:]
        if any(byte != padding_length & 0xFF for byte in tail):
            raise ChunkError(f"Incorrect padding of length {padding_length}: {tail.hex()}")
        return plain[:-padding_length]

    def _decompress(self, payload: bytes) -> None:
        if len(payload) > len(_LZ4_PREFIX) and payload.startswith(_LZ4_PREFIX):
            try:
                plain = lz4.block.decompress(payload[len(_LZ4_PREFIX):])
            except (lz4.block.LZ4BlockError, ValueError) as error:
                raise ChunkError(f"LZ4 decompression error: {error}") from error
        else:
            try:
                plain = zlib.decompress(payload)
            except zlib.error as error:
                raise ChunkError(f"zlib decompression error: {error}") from error

        self._buffer = bytearray(plain)
        self._size = 0
        self._hasher = self.config.new_keyed_hasher(self.config.hash_key)
        self._hasher.update(plain)
        self._hash = b""
        self._id = ""

    def decrypt(self, encryption_key, derivation_key=b"") -> None:
        """Undo encrypt: recover from erasure coding, decrypt and decompress in place."""
        data = bytes(self._require_buffer())
        encryption_key = _as_bytes(encryption_key)
        derivation_key = _as_bytes(derivation_key)

        if len(data) > _BANNER_LENGTH and data[:_BANNER_LENGTH] == ERASURE_CODING_BANNER:
            data = self._erasure_decode(data)

        if encryption_key:
            data = self._decrypt_payload(data, encryption_key, derivation_key)

        self._decompress(data)