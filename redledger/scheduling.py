"""
Timer-driven helpers for the streaming session.

Both helpers take a ``Scheduler`` instead of touching the event loop
directly, so tests can drive them with a fake clock.
"""
import asyncio
from typing import Callable, Optional, Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        ...


class LoopScheduler:
    """Scheduler backed by the running asyncio loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        return loop.call_later(delay, callback)


class ThrottleScheduler:
    """Coalesces flush requests into at most one flush per interval.

    ``arm()`` starts a timer only if none is pending; the flush callback
    reads live state when it fires, so coalesced requests are not lost.
    """

    def __init__(self, scheduler: Scheduler, interval: float, flush: Callable[[], None]):
        self._scheduler = scheduler
        self._interval = interval
        self._flush = flush
        self._handle: Optional[TimerHandle] = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def arm(self) -> None:
        if self._handle is not None:
            return
        self._handle = self._scheduler.call_later(self._interval, self._fire)

    def cancel(self) -> None:
        """Drop any pending flush without running it."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def fire_now(self) -> None:
        """Flush immediately, superseding any pending timer."""
        self.cancel()
        self._flush()

    def _fire(self) -> None:
        self._handle = None
        self._flush()


class ThinkingActivityTracker:
    """True while thinking chunks keep arriving within ``window`` seconds."""

    def __init__(
        self,
        scheduler: Scheduler,
        window: float,
        on_change: Optional[Callable[[bool], None]] = None,
    ):
        self._scheduler = scheduler
        self._window = window
        self._on_change = on_change
        self._handle: Optional[TimerHandle] = None
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    def mark(self) -> None:
        """Record a thinking chunk and restart the idle window."""
        if self._handle is not None:
            self._handle.cancel()
        self._handle = self._scheduler.call_later(self._window, self._expire)
        self._set(True)

    def clear(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._set(False)

    def _expire(self) -> None:
        self._handle = None
        self._set(False)

    def _set(self, active: bool) -> None:
        if active == self._active:
            return
        self._active = active
        if self._on_change is not None:
            self._on_change(active)
