# chunkvault

Building blocks for a deduplicating backup engine. The package has these modules:

- `chunkvault.config.Config` is a dataclass that holds the chunk sizes, the keys,
  the compression level, the erasure-coding shard counts and the RSA keys. It
  also keeps a pool of reusable chunks (`get_chunk`, `put_chunk`). Compression
  levels -1 to 9 select zlib, with HMAC-SHA256 as the keyed hash and SHA-256 as
  the file hash. `DEFAULT_COMPRESSION_LEVEL` (100) selects LZ4, with keyed and
  unkeyed BLAKE2b-256 in those roles.
- `chunkvault.chunkmaker.ChunkMaker` splits a series of readers into chunks.
  When the minimum and maximum chunk sizes differ, it finds chunk boundaries
  with a rolling buzhash over the concatenated data. When they are equal, each
  file is cut into fixed-size chunks. The average chunk size must be a power of
  two; otherwise `ValueError` is raised.
- `chunkvault.chunk.Chunk` holds data together with its keyed `hash` and its hex
  `id`.
  - `encrypt` compresses the data and can then seal it with AES-GCM. The AES key
    is either the keyed hash of the encryption key under a derivation key, or a
    random key wrapped with RSA-OAEP. Padding is the largest that PKCS7 allows.
    When `data_shards` and `parity_shards` are set, it finally adds Reed-Solomon
    shards, and each shard is checked by HighwayHash-256.
  - `decrypt` reverses these steps and rebuilds damaged data shards where enough
    shards are intact.
  - Failures raise `ChunkError`.
- `chunkvault.chunkuploader.ChunkUploader` uploads chunks on worker threads. It
  skips chunks that already exist and encrypts only those it has to upload.
- `chunkvault.chunkdownloader.ChunkDownloader` downloads, decrypts and verifies
  chunks on worker threads, and prefetches the chunks that follow.
  - It resurrects fossils (`<chunk>.fsl`) when a chunk is missing.
  - It retries failed decrypts, id mismatches and `EOFError` up to three times.
  - An optional snapshot cache can be given.
- `chunkvault.chunkoperator.ChunkOperator` runs find, delete, fossilize and
  resurrect operations on worker threads.
- `chunkvault.benchmark` measures disk, chunking and storage throughput with
  `benchmark`, `benchmark_split` and `benchmark_run`.
- `chunkvault.highwayhash` (`HighwayHash`, `highway_hash_256`) and
  `chunkvault.reedsolomon` (`ReedSolomon`, `ReedSolomonError`) are the
  pure-Python primitives that the erasure coding uses.

All progress and diagnostics go to the standard `logging` module, under the
module names.

## Installation

```
pip install chunkvault
```

## Splitting data into chunks

```python
import io

from chunkvault.config import Config
from chunkvault.chunkmaker import ChunkMaker

config = Config(average_chunk_size=4096, maximum_chunk_size=16384, minimum_chunk_size=1024)
maker = ChunkMaker(config, False)
hashes = []

def end_of_chunk(chunk, final):
    hashes.append(chunk.hash)
    config.put_chunk(chunk)

maker.for_each_chunk(io.BytesIO(b"some data " * 10000), end_of_chunk, None)
```

`for_each_chunk` reports each chunk as `end_of_chunk(chunk, final)`. When a
reader is exhausted, it calls `next_reader(file_size, file_hash)` with the size
and the hex file hash of that reader. The callback returns the next reader, or
`None` to finish. Passing `None` as `next_reader` processes a single reader.

## Encrypting a chunk

```python
from chunkvault.chunk import Chunk

chunk = Chunk(config, True)
chunk.reset(True)
chunk.write(b"payload")
original_hash = chunk.hash

chunk_key = b"secret"
chunk.encrypt(chunk_key, original_hash, False)
chunk.decrypt(chunk_key, original_hash)
assert chunk.data == b"payload"
```

Decryption accepts keys that were derived with HMAC-SHA256 when the environment
variable `CHUNKVAULT_DECRYPT_WITH_HMACSHA256` is set to a value other than `0`
at import time.

## Storage backends

The transfer classes work against `chunkvault.storage.Storage`, an abstract
base class. A subclass implements these methods:

- `find_chunk(thread_index, chunk_id, is_fossil)` returns `(path, exists, size)`.
- `download_file(thread_index, file_path, chunk)` writes the file's content into
  `chunk` with `chunk.write`.
- `upload_file(thread_index, file_path, content)`
- `move_file(thread_index, from_path, to_path)`
- `delete_file(thread_index, file_path)`
- `create_directory(thread_index, dir_path)`
- `list_files(thread_index, dir_path)` returns `(names, sizes)`.
- `is_cache_needed()`

Failures are reported by raising `chunkvault.storage.StorageError`. A storage
with a true `retries_missing_chunks` attribute is asked again when a chunk
cannot be found or read.

```python
from chunkvault.chunkdownloader import ChunkDownloader
from chunkvault.chunkuploader import ChunkUploader
from chunkvault.storage import Storage, StorageError


class MemoryStorage(Storage):
    def __init__(self):
        self.files = {}

    def find_chunk(self, thread_index, chunk_id, is_fossil):
        path = f"chunks/{chunk_id}" + (".fsl" if is_fossil else "")
        return path, path in self.files, len(self.files.get(path, b""))

    def download_file(self, thread_index, file_path, chunk):
        if file_path not in self.files:
            raise StorageError(f"{file_path} not found")
        chunk.write(self.files[file_path])

    def upload_file(self, thread_index, file_path, content):
        self.files[file_path] = bytes(content)

    def move_file(self, thread_index, from_path, to_path):
        self.files[to_path] = self.files.pop(from_path)

    def delete_file(self, thread_index, file_path):
        self.files.pop(file_path, None)

    def create_directory(self, thread_index, dir_path):
        pass

    def list_files(self, thread_index, dir_path):
        names = [p[len(dir_path):] for p in self.files if p.startswith(dir_path)]
        return names, [len(self.files[dir_path + n]) for n in names]

    def is_cache_needed(self):
        return False


storage = MemoryStorage()
config = Config(minimum_chunk_size=1024, chunk_key=b"secret")

chunk = Chunk(config, True)
chunk.reset(True)
chunk.write(b"payload")
chunk_hash = chunk.hash

uploader = ChunkUploader(config, storage, None, 2, None)
uploader.start()
uploader.start_chunk(chunk, 0)
uploader.stop()

downloader = ChunkDownloader(config, storage, None, False, 2, False)
index = downloader.add_chunk(chunk_hash)
assert downloader.wait_for_chunk(index).data == b"payload"
downloader.stop()
```

`ChunkUploader` calls `completion_func(chunk, chunk_index, skipped, chunk_size,
upload_size)` after each chunk. An error raised in one of its workers is raised
again by `stop` or by the next `start_chunk`.

Without `allow_failures`, `ChunkDownloader` raises `DownloadError` for a chunk
that cannot be fetched. With `allow_failures`, it returns the chunk with
`is_broken` set and counts it in `number_of_failed_chunks`.

`ChunkOperator` collects the paths of fossils in `fossils` and the messages of
errors in `errors`. Its `stop` raises `StorageError` if any error occurred.

## What the package does not do

This package has no storage backend: there is no local-disk or cloud storage,
and every `Storage` has to be supplied by the user. It has no snapshots, no
backup or restore of directory trees, no repository configuration files and no
command-line program. It provides the chunk-level pieces that such a tool would
be built from.

## Running the tests

```
pip install -e ".[test]"
pytest
```