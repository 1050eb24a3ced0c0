"""Provides TinyNeeds, a future for a set of named values.

A TinyNeeds is created with the names of the values it needs. Producers
fill those slots independently with `keep`, and the future is kept once
every slot has been filled exactly once. Any producer may instead `fail`
it, and a timeout can fail it automatically. Consumers register `keep`,
`fail` and `resolve` listeners, and one TinyNeeds can `take` the values
of another, optionally renaming them on the way.
"""

from collections.abc import Iterable, Mapping
from enum import Enum
from functools import partial
import logging
import math
import threading
from typing import Any, Callable, Literal

from .scheduler import Scheduler, TimerHandle, default_scheduler

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_REASON = "Unspecified error."

EventKind = Literal["keep", "fail", "resolve"]


class UsageError(ValueError):
    """Raised synchronously when a TinyNeeds is used incorrectly."""


class NeedsStatus(Enum):
    """Settlement state of a TinyNeeds. KEPT and FAILED are terminal."""

    PENDING = "pending"
    KEPT = "kept"
    FAILED = "failed"


def _invoke(callback: Callable[..., Any], context: Any, *args: Any) -> None:
    # A context, when given, is passed as the receiver.
    if context is None:
        callback(*args)
    else:
        callback(context, *args)


class TinyNeeds:
    """A future that is kept once all of its named slots are filled.

    Settlement happens at most once. After that, `keep` and `fail` are
    silently ignored, and newly registered listeners fire immediately.
    """

    def __init__(self, *slots: str | Iterable[str], scheduler: Scheduler | None = None) -> None:
        """Initialize a new TinyNeeds.

        Args:
            *slots: Names of the needed values, either as separate arguments or
                as a single iterable of names. Duplicates are collapsed.
            scheduler: Scheduler used to run timeouts, defaults to threading timers

        Raises:
            UsageError: If a slot name is not a string
        """
        names: Iterable[Any] = slots
        if len(slots) == 1 and isinstance(slots[0], Iterable) and not isinstance(slots[0], str):
            names = slots[0]
        self._filled: dict[str, bool] = {}
        for name in names:
            if not isinstance(name, str):
                raise UsageError(f"Slot names must be strings, got {name!r}.")
            self._filled[name] = False

        self._values: dict[str, Any] = {}
        self._failure_reason: Any = None
        self._listeners: list[tuple[EventKind, Callable[..., Any], Any]] = []
        self._lock = threading.RLock()
        # Held while settlement listeners run, so late registrations fire after them.
        self._dispatch_lock = threading.RLock()
        self._is_done = threading.Event()
        self._scheduler = scheduler if scheduler is not None else default_scheduler()
        self._timer: TimerHandle | None = None
        self._timer_generation = 0

        # Nothing to wait for.
        if self._filled:
            self._status = NeedsStatus.PENDING
        else:
            self._status = NeedsStatus.KEPT
            self._is_done.set()

    # Queries

    @property
    def status(self) -> NeedsStatus:
        return self._status

    @property
    def done(self) -> bool:
        """Whether this TinyNeeds has been kept or failed."""
        return self._is_done.is_set()

    @property
    def kept(self) -> bool:
        return self._status is NeedsStatus.KEPT

    @property
    def failed(self) -> bool:
        return self._status is NeedsStatus.FAILED

    @property
    def slots(self) -> tuple[str, ...]:
        """All declared slot names, in declaration order."""
        return tuple(self._filled)

    @property
    def pending_slots(self) -> tuple[str, ...]:
        """Declared slot names that have not been filled yet, in declaration order."""
        with self._lock:
            return tuple(name for name, filled in self._filled.items() if not filled)

    @property
    def values(self) -> dict[str, Any]:
        """A copy of the values filled so far."""
        with self._lock:
            return dict(self._values)

    @property
    def failure_reason(self) -> Any:
        """The reason given when this TinyNeeds failed, or None if it has not."""
        return self._failure_reason

    def is_declared(self, name: str) -> bool:
        return name in self._filled

    def is_filled(self, name: str) -> bool:
        return self._filled.get(name, False)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until this TinyNeeds is kept or failed.

        A failure is not raised here; inspect `failed` and `failure_reason`.

        Args:
            timeout: Maximum seconds to wait, or None to wait forever

        Returns:
            True if the TinyNeeds has settled, False if the wait timed out
        """
        return self._is_done.wait(timeout)

    # Running

    def run(self, callback: Callable[..., Any], context: Any = None) -> "TinyNeeds":
        """Call `callback` with this TinyNeeds right away, then return it.

        Useful for wiring up producers while building the future in one expression.
        """
        if not callable(callback):
            raise UsageError("No callback provided.")
        _invoke(callback, context, self)
        return self

    # Events

    def on_keep(self, callback: Callable[..., Any], context: Any = None) -> "TinyNeeds":
        """Register a listener for when every slot has been filled.

        The callback receives a dict of all filled values. If the TinyNeeds is
        already kept, it runs immediately.

        Args:
            callback: Function to call with the values
            context: Optional receiver, passed as the first argument when given

        Returns:
            This TinyNeeds, for chaining

        Raises:
            UsageError: If callback is not callable
        """
        return self._on("keep", callback, context)

    def on_fail(self, callback: Callable[..., Any], context: Any = None) -> "TinyNeeds":
        """Register a listener for failure. The callback receives the failure reason."""
        return self._on("fail", callback, context)

    def on_resolve(self, callback: Callable[..., Any], context: Any = None) -> "TinyNeeds":
        """Register a listener for either outcome. The callback receives no arguments."""
        return self._on("resolve", callback, context)

    def _on(self, kind: EventKind, callback: Callable[..., Any], context: Any) -> "TinyNeeds":
        if not callable(callback):
            raise UsageError("No callback provided.")
        with self._lock:
            if self._status is NeedsStatus.PENDING:
                self._listeners.append((kind, callback, context))
                return self
            status = self._status
            values = dict(self._values)
            reason = self._failure_reason
        with self._dispatch_lock:
            self._dispatch([(kind, callback, context)], status, values, reason)
        return self

    @staticmethod
    def _dispatch(
        listeners: list[tuple[EventKind, Callable[..., Any], Any]],
        status: NeedsStatus,
        values: dict[str, Any],
        reason: Any,
    ) -> None:
        """Invoke the listeners that match a terminal status, in registration order."""
        for kind, callback, context in listeners:
            if kind == "resolve":
                _invoke(callback, context)
            elif kind == "keep" and status is NeedsStatus.KEPT:
                _invoke(callback, context, values)
            elif kind == "fail" and status is NeedsStatus.FAILED:
                _invoke(callback, context, reason)

    # Auto-timeout

    def timeout(self, millis: float) -> "TinyNeeds":
        """Fail this TinyNeeds if it has not settled within `millis` milliseconds.

        The failure reason names the slots still unfilled when the timeout
        fires. Calling this again replaces the previous timeout. Does nothing
        if the TinyNeeds has already settled.

        Raises:
            UsageError: If millis is not a finite, non-negative number
        """
        if (
            isinstance(millis, bool)
            or not isinstance(millis, (int, float))
            or not math.isfinite(millis)
            or millis < 0
        ):
            raise UsageError(f"Timeout must be a finite, non-negative number of milliseconds, got {millis!r}.")
        with self._lock:
            if self._status is not NeedsStatus.PENDING:
                return self
            self._cancel_timer()
            self._timer = self._scheduler.call_later(millis / 1000, partial(self._expire, self._timer_generation))
        logger.debug("Armed %sms timeout waiting on %s", millis, self.pending_slots)
        return self

    def cancel_timeout(self) -> "TinyNeeds":
        """Disarm the current timeout, if any."""
        with self._lock:
            self._cancel_timer()
        return self

    def _cancel_timer(self) -> None:
        # Caller holds the lock. Bumping the generation voids a timer that has
        # already fired but not yet acquired the lock.
        self._timer_generation += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _expire(self, generation: int) -> None:
        with self._lock:
            if self._status is not NeedsStatus.PENDING or generation != self._timer_generation:
                return
            self._timer = None
            waiting = self.pending_slots
        self.fail("Timed out waiting on " + " and ".join(waiting))

    # Keeping and failing

    def keep(self, name: str, value: Any = None) -> "TinyNeeds":
        """Fill one slot with a value.

        Once the last slot is filled the TinyNeeds is kept and its `keep` and
        `resolve` listeners run. If it has already settled the call is ignored.

        Args:
            name: The slot to fill
            value: The value for the slot

        Returns:
            This TinyNeeds, for chaining

        Raises:
            UsageError: If the slot was already filled or was never declared
        """
        with self._lock:
            if self._filled.get(name):
                raise UsageError(f'"{name}" can only be kept once.')
            if name not in self._filled:
                raise UsageError(f'"{name}" is not needed.')
            if self._status is not NeedsStatus.PENDING:
                return self
            self._filled[name] = True
            self._values[name] = value
            if not all(self._filled.values()):
                return self
            listeners = self._settle(NeedsStatus.KEPT)
            values = dict(self._values)
        logger.debug("Kept %s", tuple(values))
        self._fire(listeners, NeedsStatus.KEPT, values, None)
        return self

    def fail(self, reason: Any = None) -> "TinyNeeds":
        """Fail this TinyNeeds, no matter how many slots are filled.

        Ignored if it has already settled.

        Args:
            reason: Passed to `fail` listeners, defaults to DEFAULT_FAILURE_REASON

        Returns:
            This TinyNeeds, for chaining
        """
        if reason is None:
            reason = DEFAULT_FAILURE_REASON
        with self._lock:
            if self._status is not NeedsStatus.PENDING:
                return self
            self._failure_reason = reason
            listeners = self._settle(NeedsStatus.FAILED)
        self._fire(listeners, NeedsStatus.FAILED, {}, reason)
        return self

    def _settle(self, status: NeedsStatus) -> list[tuple[EventKind, Callable[..., Any], Any]]:
        """Move to a terminal status and detach the queued listeners.

        Caller holds the lock. The dispatch lock is acquired before the lock is
        released, so registrations that see the new status wait for dispatch,
        and it must be released through `_fire`.
        """
        self._status = status
        self._cancel_timer()
        listeners, self._listeners = self._listeners, []
        self._is_done.set()
        self._dispatch_lock.acquire()
        return listeners

    def _fire(
        self,
        listeners: list[tuple[EventKind, Callable[..., Any], Any]],
        status: NeedsStatus,
        values: dict[str, Any],
        reason: Any,
    ) -> None:
        try:
            self._dispatch(listeners, status, values, reason)
        finally:
            self._dispatch_lock.release()

    # Chaining

    def take(self, other: "TinyNeeds", key_map: Mapping[str, str] | None = None) -> "TinyNeeds":
        """Fill slots of this TinyNeeds from the values of another one.

        When `other` is kept, each of its values whose name is also declared
        here fills the slot of the same name. `key_map` renames other's slots
        to slots of this TinyNeeds, and a mapped value wins over a direct name
        match for the same slot. Values with no matching slot are ignored.
        If `other` fails, this TinyNeeds fails with the same reason.

        Args:
            other: The TinyNeeds to take values from
            key_map: Optional mapping of other's slot names to slot names here

        Returns:
            This TinyNeeds, for chaining

        Raises:
            UsageError: If other is not a TinyNeeds
        """
        if not isinstance(other, TinyNeeds):
            raise UsageError(f"Can only take from another TinyNeeds, got {type(other).__name__}.")
        renames = dict(key_map) if key_map is not None else {}

        def _take(got: dict[str, Any]) -> None:
            taken: dict[str, Any] = {}
            for name, value in got.items():
                if self.is_declared(name):
                    taken[name] = value
            for name, value in got.items():
                target = renames.get(name)
                if target is not None and self.is_declared(target):
                    taken[target] = value
            for name, value in taken.items():
                self.keep(name, value)

        other.on_fail(self.fail)
        other.on_keep(_take)
        return self
