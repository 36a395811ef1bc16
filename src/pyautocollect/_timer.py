"""Repeating asyncio timer used by the detectors and the supervisor."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

_logger = logging.getLogger(__name__)


class RepeatingTimer:
    """Run an async callback on a fixed interval on the running loop.

    ``start`` and ``stop`` are idempotent: the held task handle is the
    guard.  A failing callback is logged and the next tick still runs.
    """

    def __init__(
        self,
        interval_s: float,
        callback: Callable[[], Awaitable[object]],
        *,
        name: str,
        immediate: bool = True,
        initial_delay_s: float | None = None,
    ) -> None:
        self._interval_s = interval_s
        self._callback = callback
        self._name = name
        self._immediate = immediate
        self._initial_delay_s = initial_delay_s
        self._task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def interval_s(self) -> float:
        return self._interval_s

    def start(self) -> bool:
        """Arm the timer.  Returns False when it was already running."""
        if self.is_running:
            return False
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self._name)
        _logger.debug("Timer %s started interval=%.3fs", self._name, self._interval_s)
        return True

    def stop(self) -> bool:
        """Disarm the timer.  Returns False when it was not running."""
        task = self._task
        self._task = None
        if task is None or task.done():
            return False
        task.cancel()
        _logger.debug("Timer %s stopped", self._name)
        return True

    async def _tick(self) -> None:
        try:
            await self._callback()
        except asyncio.CancelledError:
            raise
        except Exception:
            _logger.warning("Timer %s callback failed", self._name, exc_info=True)

    async def _run(self) -> None:
        if self._initial_delay_s:
            await asyncio.sleep(self._initial_delay_s)
        if self._immediate:
            await self._tick()
        while True:
            await asyncio.sleep(self._interval_s)
            await self._tick()
