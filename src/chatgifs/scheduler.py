from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
Sleep = Callable[[float], Awaitable[None]]


class PeriodicTask:
    """Runs ``func`` every ``interval_s`` seconds until stopped.

    Polling stands in for push where the store cannot notify on its own
    (presence expiry, the per-user conversation list). A failing tick is
    logged and the loop keeps going.
    """

    def __init__(
        self,
        name: str,
        interval_s: float,
        func: Callable[[], Any],
        *,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        self.name = name
        self.interval_s = interval_s
        self._func = func
        self._sleep = sleep
        self._task: asyncio.Task | None = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def tick(self) -> None:
        self.ticks += 1
        try:
            result = self._func()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("periodic task %s failed", self.name)

    async def _run(self) -> None:
        try:
            while True:
                await self._sleep(self.interval_s)
                await self.tick()
        except asyncio.CancelledError:
            return


async def retry_fixed_delay(
    func: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    delay_s: float,
    retry_on: Tuple[Type[BaseException], ...],
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Await ``func`` up to ``attempts`` times, sleeping ``delay_s`` in between."""

    if attempts < 1:
        raise ValueError("attempts must be at least 1")
    for attempt in range(1, attempts + 1):
        try:
            return await func()
        except retry_on as exc:
            if attempt == attempts:
                raise
            logger.warning("attempt %d/%d failed (%s); retrying in %.1fs", attempt, attempts, exc, delay_s)
            await sleep(delay_s)
    raise AssertionError("unreachable")
