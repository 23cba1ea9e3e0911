"""
Timers and handler serialization for the realtime core.

Socket callbacks arrive on the transport's reader thread and timers fire on
their own threads. Every component takes `scheduler.lock` around its handler
bodies, so handlers run to completion one at a time, as on a single event
loop. REST calls are made outside the lock.
"""
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class TimerHandle:
    """Cancellable reference to a scheduled callback."""

    def __init__(self, cancel_fn: Optional[Callable[[], None]] = None):
        self._cancel_fn = cancel_fn
        self.cancelled = False

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        if self._cancel_fn is not None:
            self._cancel_fn()


class Scheduler(ABC):
    """Clock, one-shot timers and the shared handler lock."""

    def __init__(self):
        self.lock = threading.RLock()

    @abstractmethod
    def time(self) -> float:
        """Monotonic time in seconds."""
        pass

    @abstractmethod
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        """Run `callback` once after `delay` seconds."""
        pass

    def call_soon(self, callback: Callable[[], None]) -> TimerHandle:
        """Run `callback` as soon as possible, outside the caller's stack."""
        return self.call_later(0, callback)


class ThreadingScheduler(Scheduler):
    """Scheduler backed by threading.Timer."""

    def time(self) -> float:
        return time.monotonic()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle()

        def _run():
            if handle.cancelled:
                return
            try:
                callback()
            except Exception:
                logger.exception("Timer callback failed")

        timer = threading.Timer(max(0.0, delay), _run)
        timer.daemon = True
        handle._cancel_fn = timer.cancel
        timer.start()
        return handle


class Repeater:
    """
    Re-arms a callback every `interval` seconds until stopped.

    The next tick is scheduled after the current one returns, so a slow
    tick (e.g., a REST round-trip) never overlaps the next.
    """

    def __init__(self, scheduler: Scheduler, interval: float, callback: Callable[[], None]):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.scheduler = scheduler
        self.interval = interval
        self.callback = callback
        self._handle: Optional[TimerHandle] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        with self.scheduler.lock:
            if self._running:
                return
            self._running = True
            self._arm()

    def stop(self) -> None:
        with self.scheduler.lock:
            self._running = False
            if self._handle is not None:
                self._handle.cancel()
                self._handle = None

    def _arm(self) -> None:
        self._handle = self.scheduler.call_later(self.interval, self._tick)

    def _tick(self) -> None:
        if not self._running:
            return
        try:
            self.callback()
        except Exception:
            logger.exception("Periodic callback failed")
        finally:
            with self.scheduler.lock:
                if self._running:
                    self._arm()
