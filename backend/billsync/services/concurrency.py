# Overview: Timer-based scheduling primitives shared by services (per-key debounce, periodic sweeps).

from __future__ import annotations

import logging
import threading
from typing import Callable, Hashable

logger = logging.getLogger(__name__)


class KeyedDebouncer:
    """
    Trailing-edge debounce per key.

    Each schedule() for a key cancels that key's pending timer and starts a new
    one, so a burst of triggers collapses into a single action after the last
    trigger. Keys are independent of each other.

    timer_factory must be call-compatible with threading.Timer(interval, fn).
    context_factory, when set, wraps each action (e.g. app.app_context) because
    actions run on the timer thread.
    """

    def __init__(
        self,
        delay: float = 1.0,
        timer_factory: Callable = threading.Timer,
        context_factory: Callable | None = None,
    ):
        self.delay = delay
        self.timer_factory = timer_factory
        self.context_factory = context_factory
        self._timers: dict[Hashable, object] = {}
        self._lock = threading.Lock()

    def schedule(self, key: Hashable, action: Callable[[], object], delay: float | None = None):
        interval = self.delay if delay is None else delay

        def fire() -> None:
            with self._lock:
                if self._timers.get(key) is timer:
                    del self._timers[key]
            self._run(key, action)

        with self._lock:
            previous = self._timers.pop(key, None)
            if previous is not None:
                previous.cancel()
            timer = self.timer_factory(interval, fire)
            timer.daemon = True
            self._timers[key] = timer
        timer.start()
        return timer

    def cancel(self, key: Hashable) -> bool:
        with self._lock:
            timer = self._timers.pop(key, None)
        if timer is None:
            return False
        timer.cancel()
        return True

    def cancel_all(self) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()

    def pending_keys(self) -> list:
        with self._lock:
            return list(self._timers)

    def __len__(self) -> int:
        with self._lock:
            return len(self._timers)

    def _run(self, key: Hashable, action: Callable[[], object]) -> None:
        try:
            if self.context_factory is None:
                action()
            else:
                with self.context_factory():
                    action()
        except Exception:
            logger.exception("Debounced action for %r failed", key)


class IntervalTask:
    """Runs an action every `interval` seconds until cancelled."""

    def __init__(self, interval: float, action: Callable[[], object], timer_factory: Callable = threading.Timer):
        self.interval = interval
        self.action = action
        self.timer_factory = timer_factory
        self._timer = None
        self._cancelled = False
        self._lock = threading.Lock()

    def start(self) -> "IntervalTask":
        with self._lock:
            if self._cancelled:
                return self
            self._timer = self.timer_factory(self.interval, self._tick)
            self._timer.daemon = True
        self._timer.start()
        return self

    def cancel(self) -> None:
        with self._lock:
            self._cancelled = True
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def _tick(self) -> None:
        try:
            self.action()
        except Exception:
            logger.exception("Interval task failed")
        self.start()
