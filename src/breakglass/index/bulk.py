"""Bounded, coalescing bulk indexer.

Documents are buffered by document ID, so several snapshots of the same
identity between two flushes collapse into one write (the latest wins).
A flush happens when the buffer reaches ``flush_docs`` distinct documents or
when ``flush_interval`` seconds have elapsed since the previous flush,
whichever comes first. Flushes are serialized; inside one flush the batch is
split across ``workers`` concurrent requests.

``add()`` is synchronous and safe to call from any thread. When the buffer is
at ``max_buffer`` and the document ID is not already queued, the document is
dropped and the drop is recorded; the next mutation of that identity
re-submits a full snapshot anyway.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Awaitable, Callable

from breakglass.errors import BreakGlassError
from breakglass.index.models import BulkItem, BulkResult
from breakglass.logging_setup import correlation_scope
from breakglass.telemetry import span

logger = logging.getLogger("breakglass.index.bulk")

SendFn = Callable[[list[BulkItem]], Awaitable[BulkResult]]
ErrorFn = Callable[[BreakGlassError, list[BulkItem]], None]


class BulkIndexer:
    """Periodic flusher in front of the ``_bulk`` API."""

    def __init__(
        self,
        send: SendFn,
        *,
        flush_interval: float = 300.0,
        workers: int = 1,
        flush_docs: int = 100,
        max_buffer: int = 1000,
        on_error: ErrorFn | None = None,
    ) -> None:
        self._send = send
        self._flush_interval = flush_interval
        self._workers = max(1, workers)
        self._flush_docs = flush_docs
        self._max_buffer = max_buffer
        self._on_error = on_error

        self._lock = threading.Lock()
        self._buffer: dict[str, BulkItem] = {}
        self._flush_lock: asyncio.Lock | None = None
        self._wakeup: asyncio.Event | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._task: asyncio.Task | None = None
        self._running = False

        self.stats = {"added": 0, "dropped": 0, "flushed": 0, "failed": 0}

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._buffer)

    @property
    def running(self) -> bool:
        return self._running

    def add(self, item: BulkItem) -> bool:
        """Queue an item. Returns False if it was dropped (buffer full)."""
        with self._lock:
            if item.doc_id not in self._buffer and len(self._buffer) >= self._max_buffer:
                self.stats["dropped"] += 1
                dropped = True
            else:
                self._buffer.pop(item.doc_id, None)
                self._buffer[item.doc_id] = item
                self.stats["added"] += 1
                dropped = False
            size = len(self._buffer)

        if dropped:
            logger.warning("bulk buffer full (%d documents), dropped %s", self._max_buffer, item.doc_id)
            with span("breakglass-bulk-drop", documentID=item.doc_id, bufferSize=size):
                pass
            return False

        if size >= self._flush_docs:
            self._signal()
        return True

    def requeue(self, items: list[BulkItem]) -> int:
        """Put failed items back unless a newer snapshot with the same ID is queued."""
        requeued = 0
        with self._lock:
            for item in items:
                if item.doc_id in self._buffer or len(self._buffer) >= self._max_buffer:
                    continue
                item.attempts += 1
                self._buffer[item.doc_id] = item
                requeued += 1
        return requeued

    # ------------------------------------------------------------------ #
    #  Lifecycle                                                          #
    # ------------------------------------------------------------------ #

    async def start(self) -> None:
        """Start the flush loop on the running event loop (non-blocking)."""
        if self._running:
            return
        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()
        self._flush_lock = asyncio.Lock()
        self._running = True
        self._task = asyncio.ensure_future(self._run())
        logger.info(
            "bulk indexer started (interval=%ss, workers=%d, max_buffer=%d)",
            self._flush_interval, self._workers, self._max_buffer,
        )

    async def stop(self, flush: bool = True) -> None:
        """Stop the loop, optionally flushing what is still buffered.

        A flush already in progress is allowed to finish. With ``flush=False``
        the loop is cancelled instead and any batch it was sending is put
        back in the buffer.
        """
        self._running = False
        if self._task is not None:
            if flush and self._wakeup is not None:
                self._wakeup.set()
            else:
                self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if flush:
            await self.flush()
        logger.info("bulk indexer stopped (%d documents left unsent)", self.pending)

    def _signal(self) -> None:
        loop, wakeup = self._loop, self._wakeup
        if loop is None or wakeup is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(wakeup.set)

    async def _run(self) -> None:
        assert self._wakeup is not None
        while self._running:
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self._flush_interval)
            except asyncio.TimeoutError:
                pass
            self._wakeup.clear()
            try:
                await self.flush()
            except Exception as exc:
                logger.error("bulk flush error: %s", exc)

    # ------------------------------------------------------------------ #
    #  Flushing                                                           #
    # ------------------------------------------------------------------ #

    async def flush(self) -> int:
        """Send everything buffered right now. Returns the number of items sent."""
        if self._flush_lock is None:
            self._flush_lock = asyncio.Lock()
        async with self._flush_lock:
            with self._lock:
                items = list(self._buffer.values())
                self._buffer = {}
            if not items:
                return 0

            with correlation_scope("flush"):
                logger.debug("flushing %d documents", len(items))
                chunks = [items[i::self._workers] for i in range(self._workers)]
                await asyncio.gather(*(self._send_chunk(chunk) for chunk in chunks if chunk))
            return len(items)

    async def _send_chunk(self, chunk: list[BulkItem]) -> None:
        try:
            result = await self._send(chunk)
        except asyncio.CancelledError:
            requeued = self.requeue(chunk)
            logger.warning("bulk request cancelled, requeued %d of %d documents", requeued, len(chunk))
            raise
        except BreakGlassError as exc:
            with self._lock:
                self.stats["failed"] += len(chunk)
            logger.warning("bulk request of %d documents failed: %s", len(chunk), exc.message)
            if self._on_error is not None:
                self._on_error(exc, chunk)
            return

        with self._lock:
            self.stats["flushed"] += result.succeeded
            self.stats["failed"] += len(result.failed)
        for item, reason in result.failed:
            logger.warning("bulk indexer failed to write %s: %s", item.doc_id, reason)
