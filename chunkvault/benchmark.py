"""Measure local disk, chunking and storage upload/download speed."""

from __future__ import annotations

import hashlib
import io
import logging
import os
import queue
import threading
import time
from typing import Callable

from .chunkmaker import ChunkMaker
from .config import DEFAULT_COMPRESSION_LEVEL, DEFAULT_KEY, Config
from .storage import Storage, StorageError

logger = logging.getLogger(__name__)

_BENCHMARK_KEY = b"0123456789abcdef0123456789abcdef"
_READ_SEGMENT = 1024 * 1024


def _elapsed(start: float) -> float:
    return max(time.perf_counter() - start, 1e-9)


def benchmark_split(data: bytes, chunk_size: int, compression: bool, encryption: bool,
                    annotation: str = "") -> int:
    """Split ``data`` into chunks, optionally compressing/encrypting each; return the chunk count."""
    config = Config(
        compression_level=DEFAULT_COMPRESSION_LEVEL,
        average_chunk_size=chunk_size,
        maximum_chunk_size=chunk_size * 4,
        minimum_chunk_size=chunk_size // 4,
        chunk_seed=b"duplicacy",
        hash_key=DEFAULT_KEY,
        id_key=DEFAULT_KEY,
    )
    maker = ChunkMaker(config, False)
    count = 0

    def end_of_chunk(chunk, final):
        nonlocal count
        if compression:
            key = _BENCHMARK_KEY if encryption else b""
            chunk.encrypt(key, b"", False)
        config.put_chunk(chunk)
        count += 1

    start = time.perf_counter()
    maker.for_each_chunk(io.BytesIO(data), end_of_chunk, None)
    running = _elapsed(start)
    logger.info(
        "Split %d bytes into %d chunks %s in %.2fs: %d bytes/s",
        len(data), count, annotation, running, int(len(data) / running),
    )
    return count


def benchmark_run(threads: int, chunk_count: int, job: Callable[[int, int], None]) -> None:
    """Call ``job(thread_index, chunk_index)`` for every chunk index using ``threads`` threads.

    The first exception raised by a job is raised again once all jobs are done.
    """
    indices: queue.Queue = queue.Queue()
    for index in range(chunk_count):
        indices.put(index)
    errors: list[BaseException] = []
    lock = threading.Lock()

    def work(thread_index: int) -> None:
        while True:
            try:
                chunk_index = indices.get_nowait()
            except queue.Empty:
                return
            try:
                job(thread_index, chunk_index)
            except BaseException as error:  # raised again below
                with lock:
                    errors.append(error)

    workers = [threading.Thread(target=work, args=(i,), daemon=True) for i in range(max(threads, 1))]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join()
    if errors:
        raise errors[0]


def _list_names(storage: Storage, dir_path: str) -> list[str]:
    listing = storage.list_files(0, dir_path)
    if isinstance(listing, tuple):
        return list(listing[0])
    return list(listing)


def benchmark(local_directory, storage: Storage, file_size: int, chunk_size: int, chunk_count: int,
              upload_threads: int, download_threads: int) -> bool:
    """Benchmark the disk, the chunking and the storage; return False on a setup failure."""
    filename = os.path.join(os.fspath(local_directory), "benchmark.dat")
    try:
        logger.info("Generating %d byte random data in memory", file_size)
        data = os.urandom(file_size)

        start = time.perf_counter()
        logger.info("Writing random data to local disk")
        try:
            with open(filename, "wb") as handle:
                handle.write(data)
        except OSError as error:
            logger.error("Failed to write the random data: %s", error)
            return False
        running = _elapsed(start)
        logger.info("Wrote %d bytes in %.2fs: %d bytes/s", file_size, running, int(file_size / running))

        start = time.perf_counter()
        logger.info("Reading the random data from local disk")
        try:
            with open(filename, "rb") as handle:
                while handle.read(_READ_SEGMENT):
                    pass
        except OSError as error:
            logger.error("Failed to read the random data file: %s", error)
            return False
        running = _elapsed(start)
        logger.info("Read %d bytes in %.2fs: %d bytes/s", file_size, running, int(file_size / running))

        benchmark_split(data, chunk_size, False, False, "without compression/encryption")
        benchmark_split(data, chunk_size, True, False, "with compression but without encryption")
        benchmark_split(data, chunk_size, True, True, "with compression and encryption")

        try:
            storage.create_directory(0, "benchmark")
        except StorageError as error:
            logger.warning("Failed to create the benchmark directory: %s", error)
        try:
            existing = [
                "benchmark/" + name
                for name in _list_names(storage, "benchmark/")
                if name and not name.endswith("/")
            ]
        except StorageError as error:
            logger.error("Failed to list the benchmark directory: %s", error)
            return False

        if existing:
            logger.info("Deleting %d temporary files from previous benchmark runs", len(existing))
            benchmark_run(upload_threads, len(existing),
                          lambda thread, index: storage.delete_file(thread, existing[index]))

        logger.info("Generating %d chunks", chunk_count)
        chunks = [os.urandom(chunk_size) for _ in range(chunk_count)]
        chunk_hashes = [hashlib.sha256(chunk).hexdigest() for chunk in chunks]
        total = chunk_size * chunk_count

        start = time.perf_counter()
        benchmark_run(upload_threads, chunk_count,
                      lambda thread, index: storage.upload_file(
                          thread, f"benchmark/chunk{index}", chunks[index]))
        running = _elapsed(start)
        logger.info("Uploaded %d bytes in %.2fs: %d bytes/s", total, running, int(total / running))

        config = Config()
        hash_error = threading.Event()

        def download(thread: int, index: int) -> None:
            chunk = config.get_chunk()
            chunk.reset(False)
            storage.download_file(thread, f"benchmark/chunk{index}", chunk)
            digest = hashlib.sha256(chunk.data).hexdigest()
            if digest != chunk_hashes[index]:
                logger.warning("Chunk %d has mismatched hashes: %s != %s",
                               index, chunk_hashes[index], digest)
                hash_error.set()
            config.put_chunk(chunk)

        start = time.perf_counter()
        benchmark_run(download_threads, chunk_count, download)
        running = _elapsed(start)
        logger.info("Downloaded %d bytes in %.2fs: %d bytes/s", total, running, int(total / running))

        if not hash_error.is_set():
            benchmark_run(upload_threads, chunk_count,
                          lambda thread, index: storage.delete_file(thread, f"benchmark/chunk{index}"))
            logger.info("Deleted %d temporary files from the storage", chunk_count)
        return True
    finally:
        try:
            os.remove(filename)
        except OSError:
            pass