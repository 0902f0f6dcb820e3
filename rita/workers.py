"""Threaded collect/process pipelines and database upsert helpers."""

from __future__ import annotations

import logging
import os
import queue
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from pymongo.errors import PyMongoError

_STOP = object()
_QUEUE_SIZE = 64


@dataclass
class Update:
    """A selector/query pair to upsert, optionally aimed at a named collection."""

    selector: dict
    query: dict
    collection: str | None = None


def worker_count() -> int:
    """Number of worker threads to start: half the CPUs, at least one."""
    return max(1, (os.cpu_count() or 1) // 2)


class WorkerPool:
    """Feeds collected items to a handler running on one or more threads."""

    def __init__(self, handler: Callable[[Any], None], on_close: Callable[[], None] | None = None) -> None:
        self._handler = handler
        self._on_close = on_close
        self._queue: queue.Queue = queue.Queue(maxsize=_QUEUE_SIZE)
        self._threads: list[threading.Thread] = []
        self._errors: list[BaseException] = []
        self._lock = threading.Lock()
        self._closed = False

    def start(self) -> None:
        """Start one more worker thread."""
        if self._closed:
            raise RuntimeError("worker pool is closed")
        thread = threading.Thread(target=self._run, daemon=True)
        thread.start()
        self._threads.append(thread)

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            try:
                self._handler(item)
            except Exception as exc:
                with self._lock:
                    self._errors.append(exc)

    def collect(self, item: Any) -> None:
        """Hand an item to the workers, blocking while the queue is full."""
        if self._closed:
            raise RuntimeError("worker pool is closed")
        if not self._threads:
            raise RuntimeError("worker pool has not been started")
        self._queue.put(item)

    def close(self) -> None:
        """Wait for all items to be handled, then run the close callback.

        The first error raised by the handler, if any, is raised here.
        """
        if self._closed:
            raise RuntimeError("worker pool is already closed")
        self._closed = True
        for _ in self._threads:
            self._queue.put(_STOP)
        for thread in self._threads:
            thread.join()
        try:
            if self._on_close is not None:
                self._on_close()
        finally:
            if self._errors:
                raise self._errors[0]

    def __enter__(self) -> WorkerPool:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if not self._closed:
            self.close()


def upsert_update(collection, update: Update, log: logging.Logger, module: str, require_matched: bool = False):
    """Upsert one update into the collection, logging failures.

    Returns the update result, or None if the database reported an error.
    """
    try:
        result = collection.update_one(update.selector, update.query, upsert=True)
    except PyMongoError as exc:
        log.error(
            "[%s] upsert failed: %s (selector=%r, query=%r)",
            module,
            exc,
            update.selector,
            update.query,
        )
        return None
    unchanged = result.modified_count == 0 and result.upserted_id is None
    if unchanged and (not require_matched or result.matched_count == 0):
        log.error(
            "[%s] upsert changed nothing (selector=%r, query=%r)",
            module,
            update.selector,
            update.query,
        )
    return result