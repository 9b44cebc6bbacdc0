"""
Kestrel Scheduler

Cancellable recurring tasks driven by an injectable clock. Production code
uses SystemClock; tests use ManualClock and advance virtual time instead of
sleeping.
"""

import asyncio
import heapq
import itertools
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, List, Optional, Tuple

from utils.logger import core_logger as logger


class Clock(ABC):
    """Source of wall time, monotonic time and sleeping."""

    @abstractmethod
    def now(self) -> datetime:
        """Current UTC time, timezone-aware."""
        ...

    @abstractmethod
    def monotonic(self) -> float:
        ...

    @abstractmethod
    async def sleep(self, seconds: float) -> None:
        ...


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class ManualClock(Clock):
    """
    Virtual clock for deterministic tests.

    ``sleep`` parks the caller until ``advance`` moves virtual time past its
    deadline. Sleepers wake in deadline order and each gets a chance to run
    before the next one is released.
    """

    def __init__(self, start: Optional[datetime] = None, settle_rounds: int = 25):
        self._start = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self._elapsed = 0.0
        self._sleepers: List[Tuple[float, int, asyncio.Future]] = []
        self._counter = itertools.count()
        self.settle_rounds = settle_rounds

    def now(self) -> datetime:
        return self._start + timedelta(seconds=self._elapsed)

    def monotonic(self) -> float:
        return self._elapsed

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return

        future = asyncio.get_running_loop().create_future()
        heapq.heappush(self._sleepers, (self._elapsed + seconds, next(self._counter), future))
        await future

    @property
    def pending_sleepers(self) -> int:
        return sum(1 for _, _, future in self._sleepers if not future.done())

    async def settle(self) -> None:
        """Yield to the event loop until woken tasks have had a chance to run."""
        for _ in range(self.settle_rounds):
            await asyncio.sleep(0)

    async def advance(self, seconds: float) -> None:
        """Move virtual time forward, waking every sleeper that comes due."""
        target = self._elapsed + seconds
        await self.settle()

        while self._sleepers and self._sleepers[0][0] <= target:
            deadline, _, future = heapq.heappop(self._sleepers)
            if future.done():
                continue
            self._elapsed = max(self._elapsed, deadline)
            future.set_result(None)
            await self.settle()

        self._elapsed = target
        await self.settle()


class RecurringTask:
    """
    Run an async callback on a fixed interval until stopped.

    A failing callback is logged and counted; the next run still happens one
    interval later.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        callback: Callable[[], Awaitable[object]],
        clock: Optional[Clock] = None,
        run_immediately: bool = True,
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")

        self.name = name
        self.interval = interval
        self.callback = callback
        self.clock = clock or SystemClock()
        self.run_immediately = run_immediately
        self.tick_count = 0
        self.failure_count = 0
        self.last_run_at: Optional[datetime] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            logger.warning(f"Recurring task '{self.name}' already running")
            return

        self._task = asyncio.create_task(self._run(), name=f"recurring:{self.name}")
        logger.info(f"Started recurring task '{self.name}' every {self.interval}s")

    async def stop(self) -> None:
        if self._task is None:
            return

        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info(f"Stopped recurring task '{self.name}' after {self.tick_count} runs")

    async def run_once(self) -> bool:
        """Run the callback a single time; returns False if it raised."""
        self.last_run_at = self.clock.now()
        try:
            await self.callback()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failure_count += 1
            logger.exception(f"Recurring task '{self.name}' failed: {e}", task=self.name)
            return False
        finally:
            self.tick_count += 1
        return True

    async def _run(self) -> None:
        if not self.run_immediately:
            await self.clock.sleep(self.interval)

        while True:
            await self.run_once()
            await self.clock.sleep(self.interval)
