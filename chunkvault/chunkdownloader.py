"""Multi-threaded download of chunks, with prefetching along a chunk list."""

from __future__ import annotations

import itertools
import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import NamedTuple, Optional, Sequence

from .chunk import Chunk, ChunkError
from .storage import Storage, StorageError

logger = logging.getLogger(__name__)

MAX_DOWNLOAD_ATTEMPTS = 3


class DownloadError(Exception):
    """Raised when a chunk cannot be downloaded and failures are not allowed."""


@dataclass
class ChunkDownloadTask:
    """One chunk in the download list."""

    chunk_index: int
    chunk_hash: bytes
    chunk_length: int = 0
    needed: bool = False
    is_downloading: bool = False
    chunk: Optional[Chunk] = None


class _Completion(NamedTuple):
    chunk_index: int
    chunk: Optional[Chunk]
    error: Optional[BaseException] = None


class ChunkDownloader:
    """Download chunks with a pool of worker threads.

    Chunks are first arranged in a task list, either from the chunk ranges of
    files (add_files) or one at a time (add_chunk).  wait_for_chunk returns a
    chunk once it has arrived, prefetching the chunks that follow as far as the
    number of threads permits.  Chunks no longer needed go back to the config's
    chunk pool.

    A storage with a true ``retries_missing_chunks`` attribute is asked again
    when a chunk cannot be found or read, as some backends report chunks
    missing that do exist.
    """

    def __init__(
        self,
        config,
        storage: Storage,
        snapshot_cache: Optional[Storage] = None,
        show_statistics: bool = False,
        threads: int = 1,
        allow_failures: bool = False,
    ):
        self.config = config
        self.storage = storage
        self.snapshot_cache = snapshot_cache
        self.show_statistics = show_statistics
        self.threads = max(threads, 1)
        self.allow_failures = allow_failures

        self.task_list: list[ChunkDownloadTask] = []
        self._completed: dict[int, bool] = {}
        self.last_chunk_index = 0

        self.total_chunk_size = 0
        self.downloaded_chunk_size = 0
        self._size_lock = threading.Lock()

        self.start_time = time.time()
        self.number_of_downloaded_chunks = 0
        self.number_of_downloading_chunks = 0
        self.number_of_active_chunks = 0
        self.number_of_failed_chunks = 0

        self._tasks: queue.Queue = queue.Queue(maxsize=self.threads)
        self._completions: queue.Queue = queue.Queue()
        self._workers = [
            threading.Thread(target=self._work, args=(index,), daemon=True)
            for index in range(self.threads)
        ]
        for worker in self._workers:
            worker.start()

    def _work(self, thread_index: int) -> None:
        while True:
            task = self._tasks.get()
            if task is None:
                return
            try:
                self.download(thread_index, task)
            except BaseException as error:  # handed to the waiting caller
                self._completions.put(_Completion(task.chunk_index, None, error))

    def _chunk_id(self, chunk_hash) -> str:
        return self.config.get_chunk_id_from_hash(chunk_hash)

    def _dispatch(self, task: ChunkDownloadTask) -> None:
        self._tasks.put(task)
        task.is_downloading = True
        self.number_of_downloading_chunks += 1
        self.number_of_active_chunks += 1

    def _receive(self) -> _Completion:
        completion = self._completions.get()
        self.number_of_downloaded_chunks += 1
        self.number_of_downloading_chunks -= 1
        if completion.error is not None or (completion.chunk is not None and completion.chunk.is_broken):
            self.number_of_failed_chunks += 1
        return completion

    @staticmethod
    def _raise(completion: _Completion) -> None:
        error = completion.error
        if isinstance(error, DownloadError):
            raise error
        raise DownloadError(f"Failed to download chunk {completion.chunk_index}: {error}") from error

    def add_files(self, chunk_hashes: Sequence[bytes], chunk_lengths: Sequence[int], files) -> None:
        """Build the task list from the chunk ranges of ``files``.

        Each file's start_chunk and end_chunk are rewritten to index the task
        list.  A chunk shared by consecutive files is listed once and marked
        as needed.
        """
        self.task_list = []
        self.total_chunk_size = 0
        last_chunk_index = -1
        for file in files:
            if file.size == 0:
                continue
            for i in range(file.start_chunk, file.end_chunk + 1):
                if last_chunk_index != i:
                    self.task_list.append(
                        ChunkDownloadTask(
                            chunk_index=len(self.task_list),
                            chunk_hash=chunk_hashes[i],
                            chunk_length=chunk_lengths[i],
                        )
                    )
                    self.total_chunk_size += chunk_lengths[i]
                else:
                    self.task_list[-1].needed = True
                last_chunk_index = i
            span = file.end_chunk - file.start_chunk
            file.start_chunk = len(self.task_list) - span - 1
            file.end_chunk = len(self.task_list) - 1

    def add_chunk(self, chunk_hash) -> int:
        """Append one chunk to the task list and return its index."""
        task = ChunkDownloadTask(chunk_index=len(self.task_list), chunk_hash=chunk_hash, needed=True)
        self.task_list.append(task)
        if self.number_of_active_chunks < self.threads:
            self._dispatch(task)
        return task.chunk_index

    def prefetch(self, file) -> None:
        """Start downloading needed chunks of ``file`` while threads are free."""
        self.reclaim(file.start_chunk)
        for i in range(file.start_chunk, file.end_chunk + 1):
            task = self.task_list[i]
            if task.needed:
                if not task.is_downloading:
                    if self.number_of_active_chunks >= self.threads:
                        return
                    if logger.isEnabledFor(logging.DEBUG):
                        logger.debug("Prefetching %s chunk %s", file.path, self._chunk_id(task.chunk_hash))
                    self._dispatch(task)
            elif logger.isEnabledFor(logging.DEBUG):
                logger.debug("%s chunk %s is not needed", file.path, self._chunk_id(task.chunk_hash))

    def reclaim(self, chunk_index: int) -> None:
        """Return downloaded chunks before ``chunk_index`` to the chunk pool."""
        if self.last_chunk_index >= chunk_index:
            return
        for i in list(self._completed):
            task = self.task_list[i]
            if i < chunk_index and task.chunk is not None:
                self.config.put_chunk(task.chunk)
                task.chunk = None
                del self._completed[i]
                self.number_of_active_chunks -= 1
        for task in self.task_list[self.last_chunk_index:chunk_index]:
            # Chunks never sent for download no longer count towards the total.
            if not task.is_downloading:
                with self._size_lock:
                    self.total_chunk_size -= task.chunk_length
        self.last_chunk_index = chunk_index

    def last_downloaded_chunk(self) -> tuple[Optional[Chunk], bytes]:
        """Return the chunk at the last reclaimed position and its hash."""
        if self.last_chunk_index >= len(self.task_list):
            return None, b""
        task = self.task_list[self.last_chunk_index]
        return task.chunk, task.chunk_hash

    def wait_for_chunk(self, chunk_index: int) -> Chunk:
        """Block until the chunk at ``chunk_index`` has been downloaded and return it."""
        self.reclaim(chunk_index)

        task = self.task_list[chunk_index]
        if not task.is_downloading:
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug("Fetching chunk %s", self._chunk_id(task.chunk_hash))
            self._dispatch(task)

        for following in self.task_list[chunk_index + 1:]:
            if self.number_of_active_chunks >= self.threads or not following.needed:
                break
            if not following.is_downloading:
                if logger.isEnabledFor(logging.DEBUG):
                    logger.debug("Prefetching chunk %s", self._chunk_id(following.chunk_hash))
                self._dispatch(following)

        while chunk_index not in self._completed:
            completion = self._receive()
            if completion.error is not None:
                self.number_of_active_chunks -= 1
                self._raise(completion)
            self._completed[completion.chunk_index] = True
            self.task_list[completion.chunk_index].chunk = completion.chunk
        return self.task_list[chunk_index].chunk

    def wait_for_completion(self) -> None:
        """Download every remaining chunk in the list, releasing each as it arrives."""
        self.number_of_active_chunks -= len(self._completed)
        for index in self._completed:
            self.last_chunk_index = max(self.last_chunk_index, index)

        while self.number_of_active_chunks > 0 or self.last_chunk_index + 1 < len(self.task_list):
            if self.number_of_active_chunks > 0:
                completion = self._receive()
                self.number_of_active_chunks -= 1
                if completion.error is not None:
                    self._raise(completion)
                self.config.put_chunk(completion.chunk)

            if self.last_chunk_index + 1 < len(self.task_list):
                task = self.task_list[self.last_chunk_index + 1]
                self.last_chunk_index += 1
                if not task.is_downloading:
                    self._dispatch(task)

    def stop(self) -> None:
        """Wait for downloads in progress, release all chunks and stop the workers."""
        while self.number_of_downloading_chunks > 0:
            completion = self._receive()
            if completion.error is not None:
                self.number_of_active_chunks -= 1
                continue
            self._completed[completion.chunk_index] = True
            self.task_list[completion.chunk_index].chunk = completion.chunk

        for i in self._completed:
            task = self.task_list[i]
            self.config.put_chunk(task.chunk)
            task.chunk = None
            self.number_of_active_chunks -= 1
        self._completed.clear()

        for _ in self._workers:
            self._tasks.put(None)
        for worker in self._workers:
            worker.join()
        self._workers.clear()

    def _load_from_cache(self, thread_index: int, chunk: Chunk, chunk_id: str, task) -> tuple[str, bool]:
        """Try the snapshot cache; return (cache path, whether the chunk was served)."""
        chunk.reset(True)
        try:
            cached_path, exists, _ = self.snapshot_cache.find_chunk(thread_index, chunk_id, False)
        except StorageError as error:
            logger.warning("Failed to find the cache path for the chunk %s: %s", chunk_id, error)
            return "", False
        if not exists:
            return cached_path, False
        try:
            self.snapshot_cache.download_file(0, cached_path, chunk)
        except StorageError as error:
            logger.warning("Failed to load the chunk %s from the snapshot cache: %s", chunk_id, error)
            return cached_path, False
        actual_id = chunk.id
        if actual_id != chunk_id:
            logger.warning(
                "The chunk %s load from the snapshot cache has a hash id of %s", chunk_id, actual_id
            )
            return cached_path, False
        logger.debug("Chunk %s has been loaded from the snapshot cache", chunk_id)
        self._completions.put(_Completion(task.chunk_index, chunk))
        return cached_path, True

    def download(self, thread_index: int, task: ChunkDownloadTask) -> bool:
        """Download, decrypt and verify one chunk, then report it as completed.

        Return True if the chunk came from the storage, False if it came from
        the snapshot cache or failed with failures allowed.  Without
        allow_failures a failure raises DownloadError.
        """
        chunk_id = self._chunk_id(task.chunk_hash)
        chunk = self.config.get_chunk()
        cached_path = ""

        if self.snapshot_cache is not None and self.storage.is_cache_needed():
            cached_path, served = self._load_from_cache(thread_index, chunk, chunk_id, task)
            if served:
                return False

        chunk.reset(False)

        def fail(message: str) -> bool:
            if self.allow_failures:
                chunk.is_broken = True
                logger.warning(message)
                self._completions.put(_Completion(task.chunk_index, chunk))
                return False
            logger.error(message)
            raise DownloadError(message)

        retry_missing = bool(getattr(self.storage, "retries_missing_chunks", False))

        for attempt in itertools.count():
            try:
                chunk_path, exists, _ = self.storage.find_chunk(thread_index, chunk_id, False)
            except StorageError as error:
                return fail(f"Failed to find the chunk {chunk_id}: {error}")

            if not exists:
                try:
                    fossil_path, fossil_exists, _ = self.storage.find_chunk(thread_index, chunk_id, True)
                except StorageError as error:
                    return fail(f"Failed to find the chunk {chunk_id}: {error}")

                if not fossil_exists:
                    if retry_missing and attempt < MAX_DOWNLOAD_ATTEMPTS:
                        logger.warning("Failed to find the chunk %s; retrying", chunk_id)
                        continue
                    return fail(f"Chunk {chunk_id} can't be found")

                # A fossil is turned back into a regular chunk before downloading.
                try:
                    self.storage.move_file(thread_index, fossil_path, chunk_path)
                except StorageError as error:
                    return fail(f"Failed to resurrect chunk {chunk_id}: {error}")
                logger.warning("Fossil %s has been resurrected", chunk_id)
                continue

            try:
                self.storage.download_file(thread_index, chunk_path, chunk)
            except (StorageError, EOFError) as error:
                if (isinstance(error, EOFError) or retry_missing) and attempt < MAX_DOWNLOAD_ATTEMPTS:
                    logger.warning("Failed to download the chunk %s: %s; retrying", chunk_id, error)
                    chunk.reset(False)
                    continue
                return fail(f"Failed to download the chunk {chunk_id}: {error}")

            try:
                chunk.decrypt(self.config.chunk_key, task.chunk_hash)
            except ChunkError as error:
                if attempt < MAX_DOWNLOAD_ATTEMPTS:
                    logger.warning("Failed to decrypt the chunk %s: %s; retrying", chunk_id, error)
                    chunk.reset(False)
                    continue
                return fail(f"Failed to decrypt the chunk {chunk_id}: {error}")

            actual_id = chunk.id
            if actual_id != chunk_id:
                if attempt < MAX_DOWNLOAD_ATTEMPTS:
                    logger.warning("The chunk %s has a hash id of %s; retrying", chunk_id, actual_id)
                    chunk.reset(False)
                    continue
                return fail(f"The chunk {chunk_id} has a hash id of {actual_id}")
            break

        if cached_path:
            try:
                self.snapshot_cache.upload_file(thread_index, cached_path, chunk.data)
            except StorageError as error:
                logger.warning("Failed to add the chunk %s to the snapshot cache: %s", chunk_id, error)

        with self._size_lock:
            self.downloaded_chunk_size += chunk.length
            downloaded = self.downloaded_chunk_size
            total = self.total_chunk_size

        if self.show_statistics and total > 0:
            elapsed = max(int(time.time() - self.start_time), 1)
            speed = downloaded // elapsed
            remaining = (total - downloaded) // speed + 1 if speed > 0 else 0
            percentage = downloaded * 1000 // total / 10
            logger.info(
                "Downloaded chunk %d size %d, %dB/s %ds %.1f%%",
                task.chunk_index + 1, chunk.length, speed, remaining, percentage,
            )
        else:
            logger.debug("Chunk %s has been downloaded", chunk_id)

        self._completions.put(_Completion(task.chunk_index, chunk))
        return True