"""Cancellable timers on top of an asyncio-style scheduler.

Anything exposing ``time()``, ``call_at()`` and ``call_later()`` returning
handles with ``cancel()`` works; the running event loop is the default.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional, Protocol


logger = logging.getLogger(__name__)


class Handle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def time(self) -> float: ...

    def call_at(self, when: float, callback: Callable[..., Any], *args: Any) -> Handle: ...

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> Handle: ...


def default_scheduler() -> Scheduler:
    return asyncio.get_running_loop()


class Timer:
    """One-shot timer; ``cancel()`` is idempotent and safe after firing."""

    def __init__(self, scheduler: Scheduler, delay: float, callback: Callable[[], None], *, name: str = "timer"):
        self.name = name
        self._callback = callback
        self._fired = False
        self._handle: Optional[Handle] = scheduler.call_later(delay, self._fire)

    @property
    def active(self) -> bool:
        return self._handle is not None

    @property
    def fired(self) -> bool:
        return self._fired

    def cancel(self) -> None:
        if self._handle is not None:
            logger.debug("timer cancelled name=%s", self.name)
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        if self._handle is None:
            return
        self._handle = None
        self._fired = True
        logger.debug("timer fired name=%s", self.name)
        self._callback()


class Ticker:
    """Repeating timer counting whole intervals since it was started.

    Each tick is scheduled against the start time rather than the previous
    tick, so the count stays equal to floor(elapsed / interval).
    """

    def __init__(self, scheduler: Scheduler, interval: float, on_tick: Callable[[int], None], *, name: str = "ticker"):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self._scheduler = scheduler
        self._interval = interval
        self._on_tick = on_tick
        self._start = scheduler.time()
        self.ticks = 0
        self._handle: Optional[Handle] = None
        self._schedule_next()

    @property
    def active(self) -> bool:
        return self._handle is not None

    def cancel(self) -> None:
        if self._handle is not None:
            logger.debug("ticker cancelled name=%s ticks=%s", self.name, self.ticks)
            self._handle.cancel()
            self._handle = None

    def _schedule_next(self) -> None:
        when = self._start + (self.ticks + 1) * self._interval
        self._handle = self._scheduler.call_at(when, self._tick)

    def _tick(self) -> None:
        if self._handle is None:
            return
        self.ticks += 1
        self._schedule_next()
        self._on_tick(self.ticks)
