"""Background scheduler for periodic cache maintenance.

Uses a recursive asyncio.sleep loop: the next tick is only scheduled after
the current one completes, so a slow task never overlaps itself.

Tasks registered by the service:
- policy-sweep: drop expired resource-authorization decisions
- iam-sweep: drop stale IAM tokens
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Coroutine

logger = logging.getLogger("breakglass.scheduler")

TaskFn = Callable[[], Coroutine[Any, Any, Any]]


@dataclass
class ScheduledTask:
    """A periodic background task."""
    name: str
    interval_seconds: float
    func: TaskFn
    last_run: float = 0.0
    run_count: int = 0
    last_error: str | None = None


class Scheduler:
    """Asyncio-based runner for periodic tasks. Overlap-safe."""

    def __init__(self, tick_interval: float = 1.0, task_timeout: float = 60.0) -> None:
        self._tick_interval = tick_interval
        self._task_timeout = task_timeout
        self._tasks: dict[str, ScheduledTask] = {}
        self._running = False
        self._task_handle: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._running

    def register(self, name: str, func: TaskFn, interval_seconds: float) -> None:
        self._tasks[name] = ScheduledTask(name=name, interval_seconds=interval_seconds, func=func)

    def start(self) -> None:
        """Start the scheduler loop (non-blocking)."""
        if self._running:
            logger.debug("Scheduler already running")
            return
        self._running = True
        # first run happens one interval after start
        now = time.monotonic()
        for task in self._tasks.values():
            task.last_run = now
        self._task_handle = asyncio.ensure_future(self._loop())
        logger.info("scheduler started (%d tasks)", len(self._tasks))

    async def stop(self) -> None:
        self._running = False
        if self._task_handle:
            self._task_handle.cancel()
            try:
                await self._task_handle
            except asyncio.CancelledError:
                pass
            self._task_handle = None
        logger.info("scheduler stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.tick()
            except Exception as e:
                logger.error("Scheduler tick error: %s", e)
            await asyncio.sleep(self._tick_interval)

    async def tick(self, force: bool = False) -> None:
        """Run every task that is due (all of them with ``force``)."""
        now = time.monotonic()
        for task in self._tasks.values():
            if not force and now - task.last_run < task.interval_seconds:
                continue
            try:
                result = await asyncio.wait_for(task.func(), timeout=self._task_timeout)
                task.last_run = now
                task.run_count += 1
                task.last_error = None
                logger.debug("Scheduler task %s completed: %s", task.name, result)
            except asyncio.TimeoutError:
                task.last_error = f"timeout ({self._task_timeout}s)"
                logger.warning("Scheduler task %s timed out", task.name)
            except Exception as e:
                task.last_error = str(e)[:200]
                logger.warning("Scheduler task %s failed: %s", task.name, e)

    def status(self) -> list[dict[str, Any]]:
        now = time.monotonic()
        result = []
        for task in self._tasks.values():
            next_in = max(0.0, task.interval_seconds - (now - task.last_run)) if task.last_run else 0.0
            result.append({
                "name": task.name,
                "interval_seconds": task.interval_seconds,
                "run_count": task.run_count,
                "last_error": task.last_error,
                "next_run_in": round(next_in),
            })
        return result
