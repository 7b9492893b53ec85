"""Timer abstraction for the polling monitors."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Protocol, Set

from ..monitoring.logger import get_logger

TickFn = Callable[[], Awaitable[None]]


class CancelHandle(Protocol):
    def cancel(self) -> None:
        ...


class Scheduler(Protocol):
    """Runs coroutine callbacks periodically or once after a delay."""

    def schedule(self, interval_seconds: float, fn: TickFn) -> CancelHandle:
        ...

    def call_later(self, delay_seconds: float, fn: TickFn) -> CancelHandle:
        ...


class AsyncioScheduler:
    """Scheduler backed by the running asyncio event loop.

    Each tick runs as its own task so a slow pass never delays the next
    timer. Cancelling a handle stops future ticks only; ticks already
    running are left to finish and can be awaited with :meth:`drain`.
    """

    def __init__(self) -> None:
        self._running: Set[asyncio.Task] = set()
        self._logger = get_logger(__name__)

    def _spawn(self, fn: TickFn) -> None:
        task = asyncio.get_running_loop().create_task(fn())
        self._running.add(task)
        task.add_done_callback(self._finished)

    def _finished(self, task: asyncio.Task) -> None:
        self._running.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.error("Scheduled tick failed: %s", exc, exc_info=exc)

    def schedule(self, interval_seconds: float, fn: TickFn) -> CancelHandle:
        if interval_seconds <= 0:
            raise ValueError("Interval must be greater than 0")

        async def _loop() -> None:
            while True:
                await asyncio.sleep(interval_seconds)
                self._spawn(fn)

        return asyncio.get_running_loop().create_task(_loop())

    def call_later(self, delay_seconds: float, fn: TickFn) -> CancelHandle:
        loop = asyncio.get_running_loop()
        return loop.call_later(max(delay_seconds, 0.0), self._spawn, fn)

    @property
    def in_flight(self) -> int:
        return len(self._running)

    async def drain(self) -> None:
        while self._running:
            await asyncio.gather(*list(self._running), return_exceptions=True)


@dataclass(slots=True)
class _ManualJob:
    fn: TickFn
    due: float
    interval: Optional[float] = None
    cancelled: bool = False

    def cancel(self) -> None:
        self.cancelled = True


@dataclass(slots=True)
class ManualScheduler:
    """Deterministic scheduler for tests: time only moves through :meth:`advance`."""

    now: float = 0.0
    jobs: List[_ManualJob] = field(default_factory=list)
    fired: int = 0

    def schedule(self, interval_seconds: float, fn: TickFn) -> CancelHandle:
        if interval_seconds <= 0:
            raise ValueError("Interval must be greater than 0")
        job = _ManualJob(fn=fn, due=self.now + interval_seconds, interval=interval_seconds)
        self.jobs.append(job)
        return job

    def call_later(self, delay_seconds: float, fn: TickFn) -> CancelHandle:
        job = _ManualJob(fn=fn, due=self.now + max(delay_seconds, 0.0))
        self.jobs.append(job)
        return job

    def pending(self) -> int:
        return sum(1 for job in self.jobs if not job.cancelled)

    async def advance(self, seconds: float) -> int:
        """Move time forward, running every callback that falls due in order."""

        target = self.now + seconds
        ran = 0
        while True:
            due = [job for job in self.jobs if not job.cancelled and job.due <= target]
            if not due:
                break
            job = min(due, key=lambda item: item.due)
            self.now = job.due
            if job.interval is None:
                job.cancelled = True
            else:
                job.due += job.interval
            await job.fn()
            ran += 1
        self.now = target
        self.jobs = [job for job in self.jobs if not job.cancelled]
        self.fired += ran
        return ran


__all__ = ["AsyncioScheduler", "CancelHandle", "ManualScheduler", "Scheduler", "TickFn"]
