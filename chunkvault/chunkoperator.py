"""Multi-threaded find, delete, fossilize and resurrect operations on chunks."""

from __future__ import annotations

import enum
import logging
import queue
import threading
from typing import Optional

from .storage import Storage, StorageError

logger = logging.getLogger(__name__)

FOSSIL_SUFFIX = ".fsl"


class ChunkOperation(enum.IntEnum):
    """The operations a ChunkOperator performs."""

    FIND = 0
    DELETE = 1
    FOSSILIZE = 2
    RESURRECT = 3


class ChunkOperator:
    """Run chunk operations on a storage with a pool of worker threads.

    Tasks are queued by add_task (or the shortcuts find, delete, fossilize and
    resurrect).  Paths of the fossils created or found by fossilize are
    collected in ``fossils``.  Errors met by the workers are logged and kept in
    ``errors``; stop raises StorageError if there were any.
    """

    def __init__(self, storage: Storage, threads: int = 1):
        self.storage = storage
        self.threads = max(threads, 1)
        self.errors: list[str] = []
        self._tasks: queue.Queue = queue.Queue(maxsize=self.threads * 4)
        self._active = 0
        self._idle = threading.Condition()
        self._stopped = False
        self._fossils: list[str] = []
        self._lock = threading.Lock()
        self._workers = [
            threading.Thread(target=self._work, args=(index,), daemon=True)
            for index in range(self.threads)
        ]
        for worker in self._workers:
            worker.start()

    @property
    def fossils(self) -> list[str]:
        """Paths of the fossils produced so far."""
        with self._lock:
            return list(self._fossils)

    def _add_fossil(self, path: str) -> None:
        with self._lock:
            self._fossils.append(path)

    def _error(self, message: str) -> None:
        logger.error(message)
        with self._lock:
            self.errors.append(message)

    def _work(self, thread_index: int) -> None:
        while True:
            task = self._tasks.get()
            if task is None:
                return
            try:
                self.run(thread_index, *task)
            except BaseException as error:  # kept and reported by stop()
                self._error(f"Chunk operation on {task[1]} failed: {error}")
            finally:
                with self._idle:
                    self._active -= 1
                    self._idle.notify_all()

    def stop(self) -> None:
        """Wait for all queued tasks and stop the workers; safe to call again."""
        if self._stopped:
            return
        with self._idle:
            self._idle.wait_for(lambda: self._active <= 0)
        for _ in self._workers:
            self._tasks.put(None)
        for worker in self._workers:
            worker.join()
        self._workers.clear()
        self._stopped = True
        with self._lock:
            errors = list(self.errors)
        if errors:
            raise StorageError("; ".join(errors))

    def add_task(self, operation, chunk_id: str, file_path: str = "") -> None:
        """Queue an operation; blocks while the queue is full."""
        if self._stopped:
            raise RuntimeError("The chunk operator has been stopped")
        operation = ChunkOperation(operation)
        with self._idle:
            self._active += 1
        self._tasks.put((operation, chunk_id, file_path))

    def find(self, chunk_id: str) -> None:
        self.add_task(ChunkOperation.FIND, chunk_id, "")

    def delete(self, chunk_id: str, file_path: str = "") -> None:
        self.add_task(ChunkOperation.DELETE, chunk_id, file_path)

    def fossilize(self, chunk_id: str, file_path: str = "") -> None:
        self.add_task(ChunkOperation.FOSSILIZE, chunk_id, file_path)

    def resurrect(self, chunk_id: str, file_path: str) -> None:
        self.add_task(ChunkOperation.RESURRECT, chunk_id, file_path)

    def _locate(self, thread_index: int, chunk_id: str, is_fossil: bool) -> Optional[tuple[str, bool]]:
        try:
            path, exists, _ = self.storage.find_chunk(thread_index, chunk_id, is_fossil)
        except StorageError as error:
            self._error(f"Failed to locate the path for the chunk {chunk_id}: {error}")
            return None
        return path, exists

    def run(self, thread_index: int, operation, chunk_id: str, file_path: str = "") -> None:
        """Perform one operation in the calling thread."""
        operation = ChunkOperation(operation)
        storage = self.storage

        if operation in (ChunkOperation.DELETE, ChunkOperation.FOSSILIZE) and not file_path:
            located = self._locate(thread_index, chunk_id, False)
            if located is None:
                return
            path, exists = located
            if not exists:
                if operation is ChunkOperation.DELETE:
                    logger.warning("Chunk %s does not exist in the storage", chunk_id)
                    return
                try:
                    fossil_path, fossil_exists, _ = storage.find_chunk(thread_index, chunk_id, True)
                except StorageError:
                    fossil_exists = False
                if fossil_exists:
                    logger.warning("Chunk %s is already a fossil", chunk_id)
                    self._add_fossil(fossil_path)
                else:
                    self._error(f"Chunk {chunk_id} does not exist in the storage")
                return
            file_path = path

        if operation is ChunkOperation.FIND:
            located = self._locate(thread_index, chunk_id, False)
            if located is None:
                return
            if not located[1]:
                self._error(f"Chunk {chunk_id} does not exist in the storage")
            else:
                logger.debug("Chunk %s exists in the storage", chunk_id)

        elif operation is ChunkOperation.DELETE:
            try:
                storage.delete_file(thread_index, file_path)
            except StorageError as error:
                logger.warning("Failed to remove the file %s: %s", file_path, error)
                return
            if chunk_id:
                logger.info("The chunk %s has been permanently removed", chunk_id)
            else:
                logger.info("Deleted file %s from the storage", file_path)

        elif operation is ChunkOperation.FOSSILIZE:
            fossil_path = file_path + FOSSIL_SUFFIX
            try:
                storage.move_file(thread_index, file_path, fossil_path)
            except StorageError as error:
                try:
                    _, fossil_exists, _ = storage.find_chunk(thread_index, chunk_id, True)
                except StorageError:
                    fossil_exists = False
                if not fossil_exists:
                    self._error(f"Failed to fossilize the chunk {chunk_id}: {error}")
                    return
                try:
                    storage.delete_file(thread_index, file_path)
                except StorageError:
                    pass
                else:
                    logger.debug("Deleted chunk file %s as the fossil already exists", chunk_id)
                self._add_fossil(fossil_path)
            else:
                logger.debug("The chunk %s has been marked as a fossil", chunk_id)
                self._add_fossil(fossil_path)

        elif operation is ChunkOperation.RESURRECT:
            located = self._locate(thread_index, chunk_id, False)
            if located is None:
                return
            chunk_path, exists = located
            if exists:
                try:
                    storage.delete_file(thread_index, file_path)
                except StorageError as error:
                    logger.warning("Failed to remove the fossil %s: %s", file_path, error)
                logger.info("The chunk %s already exists", chunk_id)
                return
            try:
                storage.move_file(thread_index, file_path, chunk_path)
            except StorageError as error:
                self._error(
                    f"Failed to resurrect the chunk {chunk_id} from the fossil {file_path}: {error}"
                )
            else:
                logger.info("The chunk %s has been resurrected", file_path)