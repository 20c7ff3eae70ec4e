import random
import struct

import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from chunkvault.chunk import (
    ENCRYPTION_BANNER,
    ERASURE_CODING_BANNER,
    Chunk,
    ChunkError,
)
from chunkvault.config import Config

CHUNK_KEY = bytes(range(32))


def payload(size, seed=1):
    return random.Random(seed).randbytes(size)


def make_chunk(config, content):
    chunk = Chunk(config, True)
    chunk.reset(True)
    chunk.write(content)
    return chunk


def reload(config, encoded):
    chunk = Chunk(config, True)
    chunk.reset(False)
    chunk.write(encoded)
    return chunk


def roundtrip(config, content, encryption_key=b"", derivation_key=b""):
    original = make_chunk(config, content)
    original_hash = original.hash
    original.encrypt(encryption_key, derivation_key, False)
    restored = reload(config, original.data)
    restored.decrypt(encryption_key, derivation_key)
    return original_hash, original.data, restored


@pytest.fixture(scope="module")
def rsa_private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def test_write_and_length():
    chunk = make_chunk(Config(), b"hello")
    assert chunk.write(b" world") == 6
    assert chunk.length == 11
    assert chunk.data == b"hello world"


def test_hash_only_chunk_counts_bytes():
    config = Config()
    counting = Chunk(config, False)
    counting.reset(True)
    counting.write(b"abc")
    counting.write(b"def")
    buffered = make_chunk(config, b"abcdef")
    assert counting.length == 6
    assert counting.hash == buffered.hash
    with pytest.raises(ChunkError):
        counting.data


def test_id_is_derived_from_hash():
    config = Config()
    chunk = make_chunk(config, b"content")
    assert len(chunk.hash) == 32
    assert chunk.id == config.get_chunk_id_from_hash(chunk.hash)


def test_reset_clears_state():
    chunk = make_chunk(Config(), b"content")
    chunk.is_snapshot = True
    chunk.is_broken = True
    first_id = chunk.id
    chunk.reset(True)
    assert chunk.length == 0
    assert chunk.is_snapshot is False
    assert chunk.is_broken is False
    chunk.write(b"other")
    assert chunk.id != first_id


def test_hash_without_hasher_raises():
    chunk = Chunk(Config(), True)
    chunk.reset(False)
    written = chunk.write(b"data")
    assert written == 4
    assert chunk.length == 4
    assert chunk.data == b"data"
    with pytest.raises(ChunkError):
        chunk.hash


def test_verify_id_detects_mismatch():
    chunk = make_chunk(Config(), b"first part")
    chunk.id
    chunk.write(b" second part")
    with pytest.raises(ChunkError):
        chunk.verify_id()


@pytest.mark.parametrize("level", [100, 6, -1, 0, 9])
def test_roundtrip_without_encryption(level):
    content = payload(5000)
    original_hash, _, restored = roundtrip(Config(compression_level=level), content)
    assert restored.data == content
    assert restored.hash == original_hash


def test_lz4_prefix_without_encryption():
    chunk = make_chunk(Config(), payload(300))
    chunk.encrypt(b"", b"", False)
    assert chunk.data.startswith(b"LZ4 ")


def test_invalid_compression_level():
    chunk = make_chunk(Config(compression_level=50), b"data")
    with pytest.raises(ChunkError):
        chunk.encrypt(b"", b"", False)


@pytest.mark.parametrize("level", [100, 6])
def test_roundtrip_with_encryption(level):
    content = payload(10000, seed=2)
    original_hash, encoded, restored = roundtrip(Config(compression_level=level), content, CHUNK_KEY)
    assert encoded.startswith(ENCRYPTION_BANNER)
    assert (len(encoded) - len(ENCRYPTION_BANNER) - 12 - 16) % 256 == 0
    assert restored.data == content
    assert restored.hash == original_hash


def test_roundtrip_with_derivation_key():
    content = payload(2000, seed=3)
    _, _, restored = roundtrip(Config(), content, b"secret", b"derivation")
    assert restored.data == content


def test_encryption_is_randomised():
    config = Config()
    first = make_chunk(config, b"same content")
    second = make_chunk(config, b"same content")
    first.encrypt(CHUNK_KEY, b"", False)
    second.encrypt(CHUNK_KEY, b"", False)
    assert first.data != second.data


def test_wrong_derivation_key_fails():
    config = Config()
    chunk = make_chunk(config, payload(500))
    chunk.encrypt(b"secret", b"one", False)
    restored = reload(config, chunk.data)
    with pytest.raises(ChunkError):
        restored.decrypt(b"secret", b"two")


def test_tampered_ciphertext_fails():
    config = Config()
    chunk = make_chunk(config, payload(500))
    chunk.encrypt(CHUNK_KEY, b"", False)
    encoded = bytearray(chunk.data)
    encoded[-1] ^= 0xFF
    restored = reload(config, bytes(encoded))
    with pytest.raises(ChunkError):
        restored.decrypt(CHUNK_KEY, b"")


def test_unencrypted_data_with_key_fails():
    config = Config()
    restored = reload(config, b"plain data that is long enough")
    with pytest.raises(ChunkError, match="encrypted"):
        restored.decrypt(CHUNK_KEY, b"")


def test_short_encrypted_data_fails():
    restored = reload(Config(), b"duplicacy\x00")
    with pytest.raises(ChunkError):
        restored.decrypt(CHUNK_KEY, b"")


def test_rsa_roundtrip(rsa_private_key):
    config = Config(
        rsa_public_key=rsa_private_key.public_key(), rsa_private_key=rsa_private_key
    )
    content = payload(3000, seed=4)
    original_hash, encoded, restored = roundtrip(config, content, CHUNK_KEY, b"derivation")
    assert encoded[:10] == b"duplicacy\x02"
    assert struct.unpack_from("<H", encoded, 10)[0] == 256
    assert restored.data == content
    assert restored.hash == original_hash


def test_rsa_not_used_for_snapshot_chunks(rsa_private_key):
    config = Config(rsa_public_key=rsa_private_key.public_key())
    chunk = make_chunk(config, payload(100))
    chunk.encrypt(CHUNK_KEY, b"", True)
    assert chunk.data.startswith(ENCRYPTION_BANNER)


def test_rsa_chunk_needs_private_key(rsa_private_key):
    config = Config(rsa_public_key=rsa_private_key.public_key())
    chunk = make_chunk(config, payload(100))
    chunk.encrypt(CHUNK_KEY, b"", False)
    restored = reload(config, chunk.data)
    with pytest.raises(ChunkError, match="RSA private key"):
        restored.decrypt(CHUNK_KEY, b"")


def erasure_config():
    return Config(compression_level=6, data_shards=5, parity_shards=2)


def test_erasure_coding_layout():
    chunk = make_chunk(erasure_config(), payload(4000, seed=5))
    chunk.encrypt(b"", b"", False)
    encoded = chunk.data
    assert encoded.startswith(ERASURE_CODING_BANNER)
    header = encoded[10:24]
    assert encoded[-14:] == header
    chunk_size, data_shards, parity_shards = struct.unpack_from("<QHH", header)
    assert (data_shards, parity_shards) == (5, 2)
    shard_size = -(-chunk_size // 5)
    assert len(encoded) == 10 + 28 + 7 * (shard_size + 32)


@pytest.mark.parametrize("key", [b"", CHUNK_KEY])
def test_erasure_coding_roundtrip(key):
    content = payload(4000, seed=6)
    original_hash, _, restored = roundtrip(erasure_config(), content, key)
    assert restored.data == content
    assert restored.hash == original_hash


def corrupt_shards(encoded, indices):
    data = bytearray(encoded)
    chunk_size = struct.unpack_from("<Q", data, 10)[0]
    shard_size = -(-chunk_size // 5)
    data_offset = 10 + 14 + 7 * 32
    for index in indices:
        data[data_offset + index * shard_size] ^= 0xFF
    return bytes(data)


def test_erasure_coding_recovers_damaged_shards():
    config = erasure_config()
    content = payload(4000, seed=7)
    chunk = make_chunk(config, content)
    chunk.encrypt(CHUNK_KEY, b"", False)
    restored = reload(config, corrupt_shards(chunk.data, [0, 3]))
    restored.decrypt(CHUNK_KEY, b"")
    assert restored.data == content


def test_erasure_coding_fails_with_too_many_damaged_shards():
    config = erasure_config()
    chunk = make_chunk(config, payload(4000, seed=8))
    chunk.encrypt(b"", b"", False)
    restored = reload(config, corrupt_shards(chunk.data, [0, 1, 2]))
    with pytest.raises(ChunkError, match="Not enough chunk data"):
        restored.decrypt(b"", b"")


def test_erasure_coding_truncated_header():
    restored = reload(erasure_config(), ERASURE_CODING_BANNER + bytes(5))
    with pytest.raises(ChunkError, match="truncated"):
        restored.decrypt(b"", b"")


def test_erasure_coding_corrupted_header():
    config = erasure_config()
    chunk = make_chunk(config, payload(1000, seed=9))
    chunk.encrypt(b"", b"", False)
    encoded = bytearray(chunk.data)
    encoded[10] ^= 0x01
    restored = reload(config, bytes(encoded))
    with pytest.raises(ChunkError, match="corrupted"):
        restored.decrypt(b"", b"")


def test_erasure_coding_too_short():
    config = erasure_config()
    chunk = make_chunk(config, payload(1000, seed=10))
    chunk.encrypt(b"", b"", False)
    restored = reload(config, chunk.data[:100])
    with pytest.raises(ChunkError):
        restored.decrypt(b"", b"")