# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Work Queue - Per-cluster serialized execution of mutating operations.

Every cluster key owns one FIFO and one worker task. Operations for the
same key run strictly one at a time in submission order; different keys
run independently on the event loop.

A failing operation is logged and the queue moves on. If the worker task
itself dies, a supervisor restarts it after `restart_delay` seconds on
the same FIFO, so queued operations survive the restart.

Usage:
    queue = WorkQueue()
    queue.submit(key, lambda: scale_datacenter(dc), kind="scale")
    await queue.join(key)
"""

import asyncio
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Hashable, List

import structlog
from ulid import ULID

from dcbackup.exceptions import WorkQueueError

logger = structlog.get_logger()

DEFAULT_RESTART_DELAY = 1.0

Operation = Callable[[], Awaitable[Any]]

# Queued after the last operation of a disposed key
_STOP = object()


@dataclass
class _PendingOperation:
    operation_id: str
    kind: str
    operation: Operation
    submitted_at: float = field(default_factory=time.monotonic)


@dataclass(eq=False)
class _KeyEntry:
    key: Hashable
    queue: asyncio.Queue
    worker: asyncio.Task | None = None
    restarts: int = 0


def _key_label(key: Hashable) -> str:
    return getattr(key, "id", None) or str(key)


class WorkQueue:
    """Serializes operations per key, one worker task per active key."""

    def __init__(self, restart_delay: float = DEFAULT_RESTART_DELAY) -> None:
        if restart_delay < 0:
            raise WorkQueueError(
                "restart_delay must be >= 0",
                details={"restart_delay": restart_delay},
            )
        self.restart_delay = restart_delay
        self._lock = threading.Lock()
        self._entries: Dict[Hashable, _KeyEntry] = {}
        # Disposed entries still draining their last operations
        self._draining: Dict[Hashable, List[_KeyEntry]] = {}
        self._restart_handles: Dict[int, asyncio.TimerHandle] = {}
        self._closed = False

    def submit(self, key: Hashable, operation: Operation, *, kind: str = "") -> str:
        """
        Queue an operation for `key` without waiting for it.

        Must be called from the thread running the event loop.

        Args:
            key: Cluster key the operation mutates
            operation: Zero-argument callable returning an awaitable
            kind: Short label used in logs (e.g. "backup", "scale")

        Returns:
            Operation ID (ULID)

        Raises:
            WorkQueueError: If the queue was shut down
        """
        if self._closed:
            raise WorkQueueError(
                "WorkQueue is shut down",
                details={"key": _key_label(key)},
            )

        pending = _PendingOperation(operation_id=str(ULID()), kind=kind, operation=operation)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = _KeyEntry(key=key, queue=asyncio.Queue())
                self._entries[key] = entry
                self._start_worker(entry)
                logger.debug("workqueue_created", key=_key_label(key))
            entry.queue.put_nowait(pending)

        logger.debug(
            "operation_submitted",
            key=_key_label(key),
            operation_id=pending.operation_id,
            kind=kind,
        )
        return pending.operation_id

    def dispose(self, key: Hashable) -> bool:
        """
        Stop accepting operations for `key`.

        Operations already queued still run; the worker exits after the
        last one. A later submit for the same key starts a fresh queue.

        Returns:
            True if the key had a queue
        """
        with self._lock:
            entry = self._entries.pop(key, None)
            if entry is None:
                return False
            self._draining.setdefault(key, []).append(entry)
            entry.queue.put_nowait(_STOP)

        logger.info("workqueue_disposed", key=_key_label(key), pending=entry.queue.qsize() - 1)
        return True

    async def join(self, key: Hashable) -> None:
        """Wait until every operation queued so far for `key` has run."""
        with self._lock:
            entries = list(self._draining.get(key, []))
            if key in self._entries:
                entries.append(self._entries[key])
        for entry in entries:
            await entry.queue.join()

    async def shutdown(self) -> None:
        """Cancel every worker. Queued operations are dropped."""
        with self._lock:
            self._closed = True
            entries = list(self._entries.values())
            for draining in self._draining.values():
                entries.extend(draining)
            self._entries.clear()
            self._draining.clear()
            handles = list(self._restart_handles.values())
            self._restart_handles.clear()

        for handle in handles:
            handle.cancel()

        workers = [e.worker for e in entries if e.worker is not None and not e.worker.done()]
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        logger.info("workqueue_shutdown", workers=len(workers))

    def keys(self) -> List[Hashable]:
        with self._lock:
            return list(self._entries)

    def pending(self, key: Hashable) -> int:
        """Operations queued for `key` and not yet started."""
        with self._lock:
            entry = self._entries.get(key)
            return entry.queue.qsize() if entry is not None else 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._entries

    # ------------------------------------------------------------------
    # Worker and supervisor
    # ------------------------------------------------------------------

    def _start_worker(self, entry: _KeyEntry) -> None:
        self._restart_handles.pop(id(entry), None)
        if self._closed:
            return
        entry.worker = asyncio.get_running_loop().create_task(
            self._run(entry), name=f"workqueue:{_key_label(entry.key)}"
        )
        entry.worker.add_done_callback(lambda task: self._on_worker_done(entry, task))

    async def _run(self, entry: _KeyEntry) -> None:
        while True:
            item = await entry.queue.get()
            try:
                if item is _STOP:
                    return
                await self._execute(entry.key, item)
            finally:
                entry.queue.task_done()

    async def _execute(self, key: Hashable, pending: _PendingOperation) -> None:
        started_at = time.monotonic()
        pending_ms = int((started_at - pending.submitted_at) * 1000)
        try:
            await pending.operation()
        except asyncio.CancelledError as e:
            # Only a cancellation aimed at the worker itself stops it
            if asyncio.current_task().cancelling():
                raise
            self._log_failure(key, pending, pending_ms, started_at, e)
            return
        except Exception as e:
            self._log_failure(key, pending, pending_ms, started_at, e)
            return

        logger.info(
            "operation_completed",
            key=_key_label(key),
            operation_id=pending.operation_id,
            kind=pending.kind,
            pending_ms=pending_ms,
            execution_ms=int((time.monotonic() - started_at) * 1000),
        )

    def _log_failure(
        self,
        key: Hashable,
        pending: _PendingOperation,
        pending_ms: int,
        started_at: float,
        error: BaseException,
    ) -> None:
        logger.error(
            "operation_failed",
            key=_key_label(key),
            operation_id=pending.operation_id,
            kind=pending.kind,
            pending_ms=pending_ms,
            execution_ms=int((time.monotonic() - started_at) * 1000),
            error=repr(error),
            exc_info=True,
        )

    def _on_worker_done(self, entry: _KeyEntry, task: asyncio.Task) -> None:
        if self._closed:
            return

        if task.cancelled():
            # Cancelled from outside while the queue is still live
            error: BaseException = asyncio.CancelledError()
        else:
            error = task.exception()

        if error is None:
            # Normal exit after a stop marker
            with self._lock:
                draining = self._draining.get(entry.key, [])
                if entry in draining:
                    draining.remove(entry)
                if not draining:
                    self._draining.pop(entry.key, None)
            logger.debug("workqueue_released", key=_key_label(entry.key))
            return

        entry.restarts += 1
        logger.error(
            "workqueue_worker_crashed",
            key=_key_label(entry.key),
            error=repr(error),
            restarts=entry.restarts,
            restart_in=self.restart_delay,
            pending=entry.queue.qsize(),
        )
        handle = asyncio.get_running_loop().call_later(
            self.restart_delay, self._start_worker, entry
        )
        self._restart_handles[id(entry)] = handle
