import pytest

from chunkvault.chunk import Chunk
from chunkvault.config import DEFAULT_COMPRESSION_LEVEL, DEFAULT_KEY, Config


def test_default_settings_follow_lz4_and_default_keys():
    config = Config()
    assert config.compression_level == DEFAULT_COMPRESSION_LEVEL
    assert config.hash_key == DEFAULT_KEY
    assert config.id_key == DEFAULT_KEY
    assert config.maximum_chunk_size == config.average_chunk_size * 4
    assert config.minimum_chunk_size == config.average_chunk_size // 4


def test_keyed_hasher_is_hmac_sha256_for_zlib_levels():
    config = Config(compression_level=6)
    hasher = config.new_keyed_hasher(b"Jefe")
    hasher.update(b"what do ya want for nothing?")
    assert hasher.hexdigest() == (
        "5bdcc146bf60754e6a042426089575c75a003f089d2739839dec58b964ec3843"
    )


def test_file_hasher_is_sha256_for_zlib_levels():
    config = Config(compression_level=-1)
    hasher = config.new_file_hasher()
    hasher.update(b"abc")
    assert hasher.hexdigest() == (
        "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
    )


def test_file_hasher_is_blake2b_256_by_default():
    hasher = Config().new_file_hasher()
    hasher.update(b"abc")
    assert hasher.hexdigest() == (
        "bddd813c634239723171ef3fee98579b94964e3bb1cb3e427262c8c068d52319"
    )


@pytest.mark.parametrize("level", [DEFAULT_COMPRESSION_LEVEL, 6])
def test_keyed_hasher_depends_on_key(level):
    config = Config(compression_level=level)
    first = config.new_keyed_hasher(b"one")
    second = config.new_keyed_hasher(b"two")
    first.update(b"data")
    second.update(b"data")
    assert len(first.digest()) == 32
    assert first.digest() != second.digest()


def test_keyed_hasher_differs_from_file_hasher():
    config = Config()
    keyed = config.new_keyed_hasher(DEFAULT_KEY)
    plain = config.new_file_hasher()
    keyed.update(b"data")
    plain.update(b"data")
    assert keyed.digest() != plain.digest()


def test_chunk_id_depends_on_id_key():
    chunk_hash = bytes(range(32))
    first = Config().get_chunk_id_from_hash(chunk_hash)
    second = Config(id_key=b"other").get_chunk_id_from_hash(chunk_hash)
    assert len(first) == 64
    assert int(first, 16) >= 0
    assert first != second
    assert first == Config().get_chunk_id_from_hash(chunk_hash)


def test_chunk_id_matches_chunk():
    config = Config()
    chunk = Chunk(config, True)
    chunk.reset(True)
    chunk.write(b"some chunk content")
    assert config.get_chunk_id_from_hash(chunk.hash) == chunk.id


def test_get_chunk_creates_buffered_chunk():
    config = Config()
    chunk = config.get_chunk()
    assert isinstance(chunk, Chunk)
    assert chunk.config is config
    chunk.reset(False)
    chunk.write(b"abc")
    assert chunk.data == b"abc"


def test_put_chunk_recycles():
    config = Config()
    chunk = config.get_chunk()
    config.put_chunk(chunk)
    assert config.get_chunk() is chunk


def test_full_pool_discards_chunks():
    config = Config(pool_size=1)
    first = Chunk(config, True)
    second = Chunk(config, True)
    config.put_chunk(first)
    config.put_chunk(second)
    assert config.get_chunk() is first
    third = config.get_chunk()
    assert third is not second
    assert third is not first


def test_put_none_leaves_pool_empty():
    config = Config()
    config.put_chunk(None)
    chunk = config.get_chunk()
    assert chunk.length == 0