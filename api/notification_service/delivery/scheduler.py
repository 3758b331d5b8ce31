"""Time-ordered scheduler for deferred deliveries and retries."""

import asyncio
import heapq
import itertools
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[Any]]


class TimerScheduler:
    """
    Single background task that fires jobs at or after their due time.

    Jobs are keyed; scheduling an existing key keeps the earlier due time.
    Nothing here is authoritative: pending jobs are rebuilt from the store
    on startup.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None):
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._heap: list[tuple[datetime, int, str]] = []
        self._jobs: dict[str, tuple[datetime, Job]] = {}
        self._counter = itertools.count()
        self._wakeup = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._on_fire: Callable[[Job], None] | None = None

    def __len__(self) -> int:
        return len(self._jobs)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, on_fire: Callable[[Job], None]) -> None:
        """Begin firing; ``on_fire`` receives each due job."""
        if self.running:
            return
        self._on_fire = on_fire
        self._task = asyncio.create_task(self._run(), name="delivery-scheduler")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    def schedule(self, key: str, due: datetime, job: Job) -> None:
        existing = self._jobs.get(key)
        if existing is not None and existing[0] <= due:
            return
        self._jobs[key] = (due, job)
        heapq.heappush(self._heap, (due, next(self._counter), key))
        self._wakeup.set()

    def cancel(self, key: str) -> None:
        self._jobs.pop(key, None)

    def pending(self) -> list[tuple[str, datetime]]:
        return sorted(((key, due) for key, (due, _) in self._jobs.items()), key=lambda x: x[1])

    def _pop_due(self) -> list[Job]:
        now = self._clock()
        due_jobs = []
        while self._heap and self._heap[0][0] <= now:
            due, _, key = heapq.heappop(self._heap)
            entry = self._jobs.get(key)
            # Stale heap entry from a rescheduled or cancelled key
            if entry is None or entry[0] != due:
                continue
            del self._jobs[key]
            due_jobs.append(entry[1])
        return due_jobs

    def _seconds_until_next(self) -> float | None:
        while self._heap:
            due, _, key = self._heap[0]
            entry = self._jobs.get(key)
            if entry is None or entry[0] != due:
                heapq.heappop(self._heap)
                continue
            return max((due - self._clock()).total_seconds(), 0.0)
        return None

    async def _run(self) -> None:
        while True:
            for job in self._pop_due():
                self._on_fire(job)

            self._wakeup.clear()
            timeout = self._seconds_until_next()
            if timeout == 0.0:
                continue
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass
