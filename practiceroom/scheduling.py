from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable

_LOGGER = logging.getLogger("practiceroom.scheduling")

RetryAction = Callable[[], Awaitable[Any] | None]


class RetryTimer:
    """A single deferred retry owned by one component.

    The timer handle is the cancellation token: ``cancel()`` drops it, and a
    fired timer re-checks ``should_fire`` so a retry never outlives a stop.
    """

    def __init__(
        self,
        delay: float,
        action: RetryAction,
        *,
        should_fire: Callable[[], bool] = lambda: True,
        name: str = "retry",
    ) -> None:
        self.delay = delay
        self._action = action
        self._should_fire = should_fire
        self._name = name
        self._handle: asyncio.TimerHandle | None = None
        self._task: asyncio.Task[Any] | None = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def schedule(self) -> bool:
        if self._handle is not None:
            return False
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.delay, self._fire)
        _LOGGER.debug("%s scheduled in %.2fs", self._name, self.delay)
        return True

    def cancel(self) -> None:
        # A retry that already fired is left to finish; its owner re-checks
        # whether it is still wanted after every suspension point.
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        if not self._should_fire():
            _LOGGER.debug("%s skipped; owner no longer active", self._name)
            return
        _LOGGER.info("%s firing", self._name)
        result = self._action()
        if inspect.isawaitable(result):
            self._task = asyncio.ensure_future(result)
            self._task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        if self._task is task:
            self._task = None
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            _LOGGER.warning("%s failed: %s", self._name, exc, exc_info=exc)
