"""
Rate limited FIFO dispatch queue.

Each external API gets its own queue sized to its published limit
(Discord: 50 requests/second, Google Calendar: 100 requests/100 seconds).

A ticker runs every `tick_interval` seconds. When the current window has
elapsed the consumed count resets and a new window starts. Each tick then
launches queued items in admission order until the window's capacity is used.
Launched items run concurrently; the queue never waits for one to finish
before starting the next, so completion order is not guaranteed.

Usage:
    queue = RateLimitedQueue("discord", capacity=50, window=1.0, tick_interval=0.02)
    queue.start()
    event = await queue.enqueue(lambda: client.create_scheduled_event(payload))
"""

import time
import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Set

from common.errors import QueueStoppedError

logger = logging.getLogger("RateLimiter")


@dataclass
class QueueItem:
    """A deferred operation and the future its caller awaits."""
    thunk: Callable[[], Awaitable[Any]]
    future: asyncio.Future


class RateLimitedQueue:

    def __init__(
        self,
        name: str,
        capacity: int,
        window: float,
        tick_interval: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        if window <= 0:
            raise ValueError("window must be positive")

        self.name = name
        self.capacity = capacity
        self.window = window
        self.tick_interval = min(tick_interval or window, window)
        self._clock = clock

        self._items: Deque[QueueItem] = deque()
        self._consumed = 0
        self._window_end = clock()
        self._ticker: Optional[asyncio.Task] = None
        self._in_flight: Set[asyncio.Task] = set()
        self._launched_total = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def enqueue(self, thunk: Callable[[], Awaitable[Any]]) -> asyncio.Future:
        """Admit an operation. The returned future settles with its outcome."""
        future = asyncio.get_running_loop().create_future()
        self._items.append(QueueItem(thunk=thunk, future=future))
        return future

    def start(self) -> None:
        if self._ticker is None or self._ticker.done():
            self._ticker = asyncio.get_running_loop().create_task(self._run())
            logger.debug(f"Queue '{self.name}' started ({self.capacity} per {self.window}s)")

    async def stop(self) -> None:
        """Stop ticking and reject items that never launched."""
        if self._ticker is not None:
            self._ticker.cancel()
            try:
                await self._ticker
            except asyncio.CancelledError:
                pass
            self._ticker = None

        rejected = 0
        while self._items:
            item = self._items.popleft()
            if not item.future.done():
                item.future.set_exception(QueueStoppedError(self.name))
                rejected += 1
        if rejected:
            logger.warning(f"Queue '{self.name}' stopped with {rejected} pending requests")

    def tick(self) -> int:
        """Run one scheduling step. Returns the number of items launched."""
        now = self._clock()
        if now >= self._window_end:
            self._consumed = 0
            self._window_end = now + self.window

        launched = 0
        while self._items and self._consumed < self.capacity:
            item = self._items.popleft()
            if item.future.done():
                # Caller gave up (cancelled) before launch; don't spend capacity
                continue
            self._consumed += 1
            launched += 1
            self._launch(item)

        self._launched_total += launched
        return launched

    @property
    def pending(self) -> int:
        return len(self._items)

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def get_status(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "capacity": self.capacity,
            "window_seconds": self.window,
            "pending": self.pending,
            "in_flight": self.in_flight,
            "consumed_in_window": self._consumed,
            "launched_total": self._launched_total,
            "running": self._ticker is not None and not self._ticker.done(),
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        while True:
            self.tick()
            await asyncio.sleep(self.tick_interval)

    def _launch(self, item: QueueItem) -> None:
        task = asyncio.get_running_loop().create_task(self._execute(item))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def _execute(self, item: QueueItem) -> None:
        try:
            result = await item.thunk()
        except asyncio.CancelledError:
            if not item.future.done():
                item.future.cancel()
            raise
        except Exception as e:
            if not item.future.done():
                item.future.set_exception(e)
        else:
            if not item.future.done():
                item.future.set_result(result)
