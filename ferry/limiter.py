"""Call-rate limiting for the remote completion endpoint."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from enum import Enum, auto
from typing import Any, Awaitable, Callable, Deque, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

QueueItem = Tuple[tuple, dict, "asyncio.Future[Any]"]


class LimiterState(Enum):
    IDLE = auto()
    DRAINING = auto()


class CallRateLimiter:
    """Serialises calls to an async callable and spaces their starts.

    Calls are started one at a time in submission order. After a call
    settles, the next one is dequeued only once ``interval`` seconds have
    elapsed, so starts are never closer together than ``interval``.
    """

    def __init__(self, func: Callable[..., Awaitable[T]], interval: float) -> None:
        self.func = func
        self.interval = interval
        self.state = LimiterState.IDLE
        self._queue: Deque[QueueItem] = deque()
        self._drain_task: Optional[asyncio.Task] = None

    @property
    def queued(self) -> int:
        return len(self._queue)

    async def __call__(self, *args: Any, **kwargs: Any) -> Any:
        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()
        self._queue.append((args, kwargs, future))
        if self.state is LimiterState.IDLE:
            self.state = LimiterState.DRAINING
            self._drain_task = loop.create_task(self._drain())
        return await future

    async def _drain(self) -> None:
        try:
            while self._queue:
                args, kwargs, future = self._queue.popleft()
                if future.cancelled():
                    continue
                try:
                    result = await self.func(*args, **kwargs)
                except Exception as exc:
                    if not future.done():
                        future.set_exception(exc)
                else:
                    if not future.done():
                        future.set_result(result)
                if self._queue:
                    logger.debug(
                        "Rate limiter cooling down for %.2fs (%d queued).",
                        self.interval,
                        len(self._queue),
                    )
                await asyncio.sleep(self.interval)
        finally:
            self.state = LimiterState.IDLE
            self._drain_task = None


def limit_call_rate(
    func: Callable[..., Awaitable[T]],
    interval: float,
) -> Callable[..., Awaitable[T]]:
    """Return ``func`` limited to one call per ``interval`` seconds.

    A non-positive interval disables limiting and returns ``func`` itself.
    """

    if interval <= 0:
        return func
    return CallRateLimiter(func, interval)
