"""Per-process registry of scheduled continuations."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional, Set, Tuple

logger = logging.getLogger(__name__)

Continuation = Callable[[], Awaitable[None]]


class ContinuationRegistry:
    """Track pending and running continuations keyed by process id.

    A continuation is first *pending* (a loop timer) and then *running* (a
    task). :meth:`cancel` only drops pending timers; a running task is left
    to finish and must re-check the persisted process status itself. The
    registry holds no authoritative state and can be recreated empty after a
    restart.
    """

    def __init__(self) -> None:
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._tasks: Dict[str, Set[asyncio.Task]] = {}
        # (process id, name) -> [lock, holders and waiters]
        self._locks: Dict[Tuple[str, str], list] = {}

    @asynccontextmanager
    async def lock(self, process_id: str, name: str = "steps") -> AsyncIterator[None]:
        """Hold the named per-process lock; ``steps`` serialises state machine advances.

        The lock is discarded once nobody holds or waits for it.
        """
        key = (process_id, name)
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    def lock_count(self) -> int:
        return len(self._locks)

    def schedule(
        self, process_id: str, continuation: Continuation, delay: float = 0.0
    ) -> None:
        """Run ``continuation`` after ``delay`` seconds, replacing any pending one."""
        self.cancel(process_id)
        loop = asyncio.get_running_loop()
        self._timers[process_id] = loop.call_later(
            delay, self._launch, process_id, continuation
        )

    def _launch(self, process_id: str, continuation: Continuation) -> None:
        self._timers.pop(process_id, None)
        task = asyncio.ensure_future(continuation())
        self._tasks.setdefault(process_id, set()).add(task)
        task.add_done_callback(lambda t: self._finished(process_id, t))

    def _finished(self, process_id: str, task: asyncio.Task) -> None:
        tasks = self._tasks.get(process_id)
        if tasks is not None:
            tasks.discard(task)
            if not tasks:
                del self._tasks[process_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                f"Continuation for process {process_id} raised: {task.exception()!r}"
            )

    def cancel(self, process_id: str) -> bool:
        """Drop the pending continuation of ``process_id``, if any."""
        handle = self._timers.pop(process_id, None)
        if handle is None:
            return False
        handle.cancel()
        logger.debug(f"Cancelled scheduled continuation for process {process_id}")
        return True

    def pending(self, process_id: str) -> bool:
        return process_id in self._timers

    def active(self, process_id: Optional[str] = None) -> bool:
        if process_id is None:
            return bool(self._timers or self._tasks)
        return process_id in self._timers or process_id in self._tasks

    async def wait_idle(self, process_id: Optional[str] = None) -> None:
        """Wait until no continuation is pending or running."""
        while self.active(process_id):
            tasks = [
                task
                for pid, group in self._tasks.items()
                if process_id is None or pid == process_id
                for task in group
            ]
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
            else:
                await asyncio.sleep(0.01)

    async def shutdown(self) -> None:
        """Cancel every pending timer and running task."""
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        tasks = [task for group in self._tasks.values() for task in group]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
