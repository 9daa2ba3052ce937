import asyncio
import time
from collections.abc import Callable
from typing import Any


class Throttle:
    """Run ``func`` at most once per ``interval`` seconds (leading edge)."""

    def __init__(self, func: Callable[[], Any], interval: float, clock: Callable[[], float] = time.monotonic):
        self.func = func
        self.interval = interval
        self._clock = clock
        self._last_call: float | None = None

    def __call__(self) -> bool:
        now = self._clock()
        if self._last_call is not None and now - self._last_call < self.interval:
            return False
        self._last_call = now
        self.func()
        return True

    def reset(self) -> None:
        self._last_call = None


class Debouncer:
    """Delay ``func`` until ``delay`` seconds pass without another call.

    Only the arguments of the last call are delivered. Needs a running loop.
    """

    def __init__(self, func: Callable[..., Any], delay: float):
        self.func = func
        self.delay = delay
        self._handle: asyncio.TimerHandle | None = None
        self._args: tuple[Any, ...] = ()

    def __call__(self, *args: Any) -> None:
        self.cancel()
        self._args = args
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.delay, self._fire)

    def _fire(self) -> None:
        self._handle = None
        args, self._args = self._args, ()
        self.func(*args)

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def flush(self) -> None:
        """Deliver a pending call right away."""
        if self._handle is not None:
            self._handle.cancel()
            self._fire()
