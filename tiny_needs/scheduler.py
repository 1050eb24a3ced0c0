"""Host schedulers used to run deferred callbacks for TinyNeeds timeouts.

A scheduler only has to run a callback once after a delay and hand back
a handle that can cancel it. Two are provided: one backed by threading
timers, and one backed by an asyncio event loop.
"""

import asyncio
import threading
from typing import Callable, Protocol


class TimerHandle(Protocol):
    """A pending deferred callback that can be cancelled."""

    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Something that can run a callback once after a delay."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        """Schedule `callback` to run after `delay` seconds."""
        ...


class ThreadTimerScheduler:
    """Runs deferred callbacks on daemon `threading.Timer` threads."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        """Start a daemon timer that invokes the callback after the delay.

        Args:
            delay: Seconds to wait before running the callback
            callback: Function to call, with no arguments

        Returns:
            The started timer, which doubles as the cancel handle
        """
        timer = threading.Timer(delay, callback)
        timer.daemon = True
        timer.start()
        return timer


def _on_loop_thread(loop: asyncio.AbstractEventLoop) -> bool:
    try:
        return asyncio.get_running_loop() is loop
    except RuntimeError:
        return False


class LoopTimer:
    """A deferred callback on an event loop that can be armed and cancelled from any thread.

    Off the loop's thread, arming and cancelling are handed to the loop with
    `call_soon_threadsafe`. Cancelling after the loop has closed does nothing.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, delay: float, callback: Callable[[], None]) -> None:
        self._loop = loop
        self._handle: asyncio.TimerHandle | None = None
        self._cancelled = False
        if _on_loop_thread(loop):
            self._arm(delay, callback)
        else:
            loop.call_soon_threadsafe(self._arm, delay, callback)

    def _arm(self, delay: float, callback: Callable[[], None]) -> None:
        if not self._cancelled:
            self._handle = self._loop.call_later(delay, callback)

    def _disarm(self) -> None:
        self._cancelled = True
        if self._handle is not None:
            self._handle.cancel()

    def cancel(self) -> None:
        if _on_loop_thread(self._loop):
            self._disarm()
        elif not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._disarm)


class AsyncioScheduler:
    """Runs deferred callbacks on an asyncio event loop.

    If no loop is given, the loop running at construction time is used.
    The callback always executes on the loop's thread, and the returned
    handles may be cancelled from any thread.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop if loop is not None else asyncio.get_running_loop()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return LoopTimer(self._loop, delay, callback)


_default_scheduler: Scheduler = ThreadTimerScheduler()


def default_scheduler() -> Scheduler:
    """Return the process-wide scheduler used when none is configured."""
    return _default_scheduler
