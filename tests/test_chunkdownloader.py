import os
import random
import threading
from types import SimpleNamespace

import pytest

from chunkvault.chunk import Chunk
from chunkvault.chunkdownloader import ChunkDownloader, DownloadError
from chunkvault.chunkuploader import ChunkUploader
from chunkvault.config import Config
from chunkvault.storage import Storage, StorageError


class MemoryStorage(Storage):
    def __init__(self, cache_needed=False):
        self.files = {}
        self.cache_needed = cache_needed
        self.download_calls = 0
        self._lock = threading.Lock()

    def find_chunk(self, thread_index, chunk_id, is_fossil):
        path = "chunks/" + chunk_id + (".fsl" if is_fossil else "")
        with self._lock:
            content = self.files.get(path)
        return path, content is not None, len(content) if content is not None else 0

    def download_file(self, thread_index, file_path, chunk):
        with self._lock:
            self.download_calls += 1
            content = self.files.get(file_path)
        if content is None:
            raise StorageError(f"{file_path} not found")
        chunk.write(content)

    def upload_file(self, thread_index, file_path, content):
        with self._lock:
            self.files[file_path] = bytes(content)

    def move_file(self, thread_index, from_path, to_path):
        with self._lock:
            if from_path not in self.files:
                raise StorageError(f"{from_path} not found")
            self.files[to_path] = self.files.pop(from_path)

    def delete_file(self, thread_index, file_path):
        with self._lock:
            self.files.pop(file_path, None)

    def create_directory(self, thread_index, dir_path):
        pass

    def list_files(self, thread_index, dir_path):
        with self._lock:
            names = [p[len(dir_path):] for p in self.files if p.startswith(dir_path)]
            return names, [len(self.files[dir_path + n]) for n in names]

    def is_cache_needed(self):
        return self.cache_needed


def store_chunk(config, storage, content):
    """Put an encoded chunk into the storage; return its hash and id."""
    chunk = Chunk(config, True)
    chunk.reset(True)
    chunk.write(content)
    chunk_hash, chunk_id = chunk.hash, chunk.id
    chunk.encrypt(config.chunk_key, chunk_hash, False)
    storage.upload_file(0, "chunks/" + chunk_id, chunk.data)
    return chunk_hash, chunk_id


@pytest.mark.parametrize("threads", [1, 4])
@pytest.mark.parametrize("chunk_key", [b"", b"secret"])
def test_uploader_and_downloader(threads, chunk_key):
    config = Config(minimum_chunk_size=100, chunk_key=chunk_key, pool_size=40)
    storage = MemoryStorage()
    rng = random.Random(7)
    contents = [os.urandom(rng.randrange(8192) + 1) for _ in range(20)]

    chunks = []
    for content in contents:
        chunk = Chunk(config, True)
        chunk.reset(True)
        chunk.write(content)
        chunks.append(chunk)
    ids = [chunk.id for chunk in chunks]
    hashes = [chunk.hash for chunk in chunks]

    uploaded = []
    uploader = ChunkUploader(config, storage, None, threads,
                             lambda c, i, skipped, size, upload: uploaded.append(i))
    uploader.start()
    for i, chunk in enumerate(chunks):
        uploader.start_chunk(chunk, i)
    uploader.stop()
    assert sorted(uploaded) == list(range(20))

    downloader = ChunkDownloader(config, storage, None, True, threads, False)
    downloader.total_chunk_size = sum(len(c) for c in contents)
    for chunk_hash in hashes:
        downloader.add_chunk(chunk_hash)
    for i in range(len(chunks)):
        downloaded = downloader.wait_for_chunk(i)
        assert downloaded.id == ids[i]
        assert downloaded.data == contents[i]
    downloader.stop()
    assert downloader.number_of_downloaded_chunks == 20
    assert downloader.number_of_failed_chunks == 0


def test_missing_chunk_raises_without_allow_failures():
    config = Config(minimum_chunk_size=100)
    storage = MemoryStorage()
    downloader = ChunkDownloader(config, storage, None, False, 1, False)
    downloader.add_chunk(b"\x00" * 32)
    with pytest.raises(DownloadError, match="can't be found"):
        downloader.wait_for_chunk(0)
    downloader.stop()
    assert downloader.number_of_failed_chunks == 1


def test_missing_chunk_is_broken_with_allow_failures():
    config = Config(minimum_chunk_size=100)
    storage = MemoryStorage()
    downloader = ChunkDownloader(config, storage, None, False, 2, True)
    downloader.add_chunk(b"\x01" * 32)
    chunk = downloader.wait_for_chunk(0)
    assert chunk.is_broken is True
    assert downloader.number_of_failed_chunks == 1
    downloader.stop()


def test_fossil_is_resurrected():
    config = Config(minimum_chunk_size=100)
    storage = MemoryStorage()
    content = b"fossilized content" * 10
    chunk_hash, chunk_id = store_chunk(config, storage, content)
    path = "chunks/" + chunk_id
    storage.move_file(0, path, path + ".fsl")

    downloader = ChunkDownloader(config, storage, None, False, 1, False)
    downloader.add_chunk(chunk_hash)
    assert downloader.wait_for_chunk(0).data == content
    downloader.stop()
    assert path in storage.files
    assert path + ".fsl" not in storage.files


def test_corrupted_chunk_is_retried_then_fails():
    config = Config(minimum_chunk_size=100)
    storage = MemoryStorage()
    chunk_hash, chunk_id = store_chunk(config, storage, b"abc" * 50)
    storage.files["chunks/" + chunk_id] = b"garbage that is not a chunk"

    downloader = ChunkDownloader(config, storage, None, False, 1, False)
    downloader.add_chunk(chunk_hash)
    with pytest.raises(DownloadError, match="decrypt"):
        downloader.wait_for_chunk(0)
    downloader.stop()
    assert storage.download_calls == 4


def test_chunk_served_from_snapshot_cache():
    config = Config(minimum_chunk_size=100)
    storage = MemoryStorage(cache_needed=True)
    cache = MemoryStorage()
    content = b"cached snapshot data" * 20
    chunk = Chunk(config, True)
    chunk.reset(True)
    chunk.write(content)
    cache.upload_file(0, "chunks/" + chunk.id, content)

    downloader = ChunkDownloader(config, storage, cache, False, 1, False)
    downloader.add_chunk(chunk.hash)
    assert downloader.wait_for_chunk(0).data == content
    downloader.stop()
    assert storage.download_calls == 0


def test_downloaded_chunk_is_saved_to_snapshot_cache():
    config = Config(minimum_chunk_size=100, chunk_key=b"secret")
    storage = MemoryStorage(cache_needed=True)
    cache = MemoryStorage()
    content = os.urandom(3000)
    chunk_hash, chunk_id = store_chunk(config, storage, content)

    downloader = ChunkDownloader(config, storage, cache, False, 1, False)
    downloader.add_chunk(chunk_hash)
    assert downloader.wait_for_chunk(0).data == content
    downloader.stop()
    assert cache.files["chunks/" + chunk_id] == content


def test_add_files_builds_task_list():
    config = Config(minimum_chunk_size=100)
    downloader = ChunkDownloader(config, MemoryStorage(), None, False, 1, False)
    hashes = [bytes([i]) * 32 for i in range(5)]
    lengths = [10, 20, 30, 40, 50]
    a = SimpleNamespace(path="a", size=5, start_chunk=0, end_chunk=1)
    b = SimpleNamespace(path="b", size=5, start_chunk=1, end_chunk=3)
    empty = SimpleNamespace(path="c", size=0, start_chunk=3, end_chunk=3)
    d = SimpleNamespace(path="d", size=5, start_chunk=4, end_chunk=4)
    downloader.add_files(hashes, lengths, [a, b, empty, d])
    downloader.stop()

    assert [task.chunk_hash for task in downloader.task_list] == hashes
    assert [task.needed for task in downloader.task_list] == [False, True, False, False, False]
    assert (a.start_chunk, a.end_chunk) == (0, 1)
    assert (b.start_chunk, b.end_chunk) == (1, 3)
    assert (empty.start_chunk, empty.end_chunk) == (3, 3)
    assert (d.start_chunk, d.end_chunk) == (4, 4)
    assert downloader.total_chunk_size == 150


def test_reclaim_drops_undownloaded_sizes():
    config = Config(minimum_chunk_size=100)
    downloader = ChunkDownloader(config, MemoryStorage(), None, False, 1, False)
    hashes = [bytes([i]) * 32 for i in range(3)]
    f = SimpleNamespace(path="f", size=60, start_chunk=0, end_chunk=2)
    downloader.add_files(hashes, [10, 20, 30], [f])
    downloader.reclaim(2)
    downloader.stop()
    assert downloader.total_chunk_size == 30
    assert downloader.last_chunk_index == 2


def test_prefetch_and_wait_over_files():
    config = Config(minimum_chunk_size=100)
    storage = MemoryStorage()
    contents = [os.urandom(500 + i) for i in range(3)]
    stored = [store_chunk(config, storage, content) for content in contents]
    hashes = [h for h, _ in stored]
    lengths = [len(c) for c in contents]
    a = SimpleNamespace(path="a", size=10, start_chunk=0, end_chunk=1)
    b = SimpleNamespace(path="b", size=10, start_chunk=1, end_chunk=2)

    downloader = ChunkDownloader(config, storage, None, False, 2, False)
    downloader.add_files(hashes, lengths, [a, b])
    downloader.prefetch(a)
    assert downloader.task_list[0].is_downloading is False
    assert downloader.task_list[1].is_downloading is True
    for i, content in enumerate(contents):
        assert downloader.wait_for_chunk(i).data == content
    downloader.stop()


def test_last_downloaded_chunk():
    config = Config(minimum_chunk_size=100)
    storage = MemoryStorage()
    downloader = ChunkDownloader(config, storage, None, False, 1, False)
    assert downloader.last_downloaded_chunk() == (None, b"")
    stored = [store_chunk(config, storage, os.urandom(400)) for _ in range(2)]
    for chunk_hash, _ in stored:
        downloader.add_chunk(chunk_hash)
    downloader.wait_for_chunk(1)
    chunk, chunk_hash = downloader.last_downloaded_chunk()
    assert chunk_hash == stored[1][0]
    assert chunk.id == stored[1][1]
    downloader.stop()


def test_wait_for_completion_downloads_all():
    config = Config(minimum_chunk_size=100)
    storage = MemoryStorage()
    stored = [store_chunk(config, storage, os.urandom(300)) for _ in range(3)]
    downloader = ChunkDownloader(config, storage, None, False, 1, False)
    for chunk_hash, _ in stored:
        downloader.add_chunk(chunk_hash)
    downloader.wait_for_completion()
    downloader.stop()
    assert downloader.number_of_downloaded_chunks == 3
    assert storage.download_calls == 3