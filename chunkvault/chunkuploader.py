"""Multi-threaded upload of chunks to a storage."""

from __future__ import annotations

import logging
import queue
import threading
from typing import Callable, Optional

from .chunk import Chunk
from .storage import Storage, StorageError

logger = logging.getLogger(__name__)

CompletionFunc = Callable[[Chunk, int, bool, int, int], None]


class ChunkUploader:
    """Upload chunks with a pool of worker threads.

    Chunks are handed over by start_chunk.  After each chunk the completion
    function is called as ``completion_func(chunk, chunk_index, skipped,
    chunk_size, upload_size)``.  The uploader never returns chunks to the pool;
    that is left to the completion function.  An error raised in a worker is
    raised again by stop, or by the next start_chunk.
    """

    def __init__(
        self,
        config,
        storage: Storage,
        snapshot_cache: Optional[Storage] = None,
        threads: int = 1,
        completion_func: Optional[CompletionFunc] = None,
    ):
        self.config = config
        self.storage = storage
        self.snapshot_cache = snapshot_cache
        self.threads = max(threads, 1)
        self.completion_func = completion_func
        self._tasks: queue.Queue = queue.Queue(maxsize=1)
        self._workers: list[threading.Thread] = []
        self._pending = 0
        self._idle = threading.Condition()
        self._error: Optional[BaseException] = None

    def start(self) -> None:
        """Start the worker threads."""
        for index in range(self.threads):
            worker = threading.Thread(target=self._work, args=(index,), daemon=True)
            worker.start()
            self._workers.append(worker)

    def _work(self, thread_index: int) -> None:
        while True:
            task = self._tasks.get()
            if task is None:
                return
            chunk, chunk_index = task
            try:
                self.upload(thread_index, chunk, chunk_index)
            except BaseException as error:  # reported to the caller by stop()
                logger.error("Failed to upload chunk %d: %s", chunk_index, error)
                with self._idle:
                    if self._error is None:
                        self._error = error
            finally:
                with self._idle:
                    self._pending -= 1
                    self._idle.notify_all()

    def _raise_pending_error(self) -> None:
        with self._idle:
            error, self._error = self._error, None
        if error is not None:
            raise error

    def start_chunk(self, chunk: Chunk, chunk_index: int) -> None:
        """Queue a chunk for upload; blocks while all workers are busy."""
        self._raise_pending_error()
        with self._idle:
            self._pending += 1
        self._tasks.put((chunk, chunk_index))

    def stop(self) -> None:
        """Wait for queued chunks to finish, then stop the workers."""
        with self._idle:
            self._idle.wait_for(lambda: self._pending <= 0)
        for _ in self._workers:
            self._tasks.put(None)
        for worker in self._workers:
            worker.join()
        self._workers.clear()
        self._raise_pending_error()

    def _save_to_cache(self, thread_index: int, chunk: Chunk, chunk_id: str) -> None:
        try:
            chunk_path, exists, _ = self.snapshot_cache.find_chunk(thread_index, chunk_id, False)
        except StorageError as error:
            logger.warning("Failed to find the cache path for the chunk %s: %s", chunk_id, error)
            return
        if exists:
            logger.debug("Chunk %s already exists in the snapshot cache", chunk_id)
            return
        try:
            self.snapshot_cache.upload_file(thread_index, chunk_path, chunk.data)
        except StorageError as error:
            logger.warning("Failed to save the chunk %s to the snapshot cache: %s", chunk_id, error)
        else:
            logger.debug("Chunk %s has been saved to the snapshot cache", chunk_id)

    def _complete(self, chunk: Chunk, chunk_index: int, skipped: bool, chunk_size: int, upload_size: int) -> None:
        if self.completion_func is not None:
            self.completion_func(chunk, chunk_index, skipped, chunk_size, upload_size)

    def upload(self, thread_index: int, chunk: Chunk, chunk_index: int) -> bool:
        """Upload one chunk; return False if it already existed in the storage."""
        chunk_size = chunk.length
        chunk_id = chunk.id

        if self.snapshot_cache is not None:
            chunk.verify_id()
            if self.storage.is_cache_needed():
                self._save_to_cache(thread_index, chunk, chunk_id)

        chunk_path, exists, _ = self.storage.find_chunk(thread_index, chunk_id, False)
        if exists:
            logger.debug("Chunk %s already exists", chunk_id)
            self._complete(chunk, chunk_index, True, chunk_size, 0)
            return False

        chunk.encrypt(self.config.chunk_key, chunk.hash, self.snapshot_cache is not None)

        if not self.config.dry_run:
            self.storage.upload_file(thread_index, chunk_path, chunk.data)
            logger.debug("Chunk %s has been uploaded", chunk_id)
        else:
            logger.debug("Uploading was skipped for chunk %s", chunk_id)

        self._complete(chunk, chunk_index, False, chunk_size, chunk.length)
        return True