"""
Shared fixtures for the realtime core tests.

FakeTransport stands in for the socket and lets a test drive open, message,
close and error events by hand. ManualScheduler replaces wall-clock timers
with a virtual clock advanced explicitly, so backoff and heartbeat timing
can be asserted exactly.
"""

import json
from typing import Callable, Dict, List, Optional

import pytest

from marketsync.api.transport import Transport, TransportError
from marketsync.config import StreamConfig
from marketsync.realtime.connection import ConnectionManager
from marketsync.realtime.registry import SubscriptionRegistry
from marketsync.realtime.scheduler import Scheduler, TimerHandle


# =============================================================================
# Test doubles
# =============================================================================


class FakeSocket:
    """Callbacks handed to one FakeTransport.open() call."""

    def __init__(self, url, on_open, on_message, on_close, on_error):
        self.url = url
        self.on_open = on_open
        self.on_message = on_message
        self.on_close = on_close
        self.on_error = on_error


class FakeTransport(Transport):
    """In-memory transport that records every frame sent."""

    def __init__(self):
        self.sockets: List[FakeSocket] = []
        self.sent: List[str] = []
        self.closes = 0
        self.open_error: Optional[Exception] = None
        self._open = False

    def open(self, url, on_open, on_message, on_close, on_error) -> None:
        if self.open_error is not None:
            raise self.open_error
        self._open = False
        self.sockets.append(FakeSocket(url, on_open, on_message, on_close, on_error))

    def send(self, payload: str) -> None:
        if not self._open:
            raise TransportError("Socket is not open")
        self.sent.append(payload)

    def close(self) -> None:
        self.closes += 1
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    # Driving events ----------------------------------------------------------

    @property
    def opens(self) -> int:
        return len(self.sockets)

    @property
    def current(self) -> FakeSocket:
        return self.sockets[-1]

    def simulate_open(self) -> None:
        self._open = True
        self.current.on_open()

    def simulate_message(self, payload) -> None:
        if not isinstance(payload, str):
            payload = json.dumps(payload)
        self.current.on_message(payload)

    def simulate_close(self, code: int = 1006, reason: str = "abnormal closure") -> None:
        self._open = False
        self.current.on_close(code, reason)

    def simulate_error(self, error: str = "connection reset") -> None:
        self._open = False
        self.current.on_error(error)

    # Inspecting frames -------------------------------------------------------

    def frames(self) -> List[Dict]:
        return [json.loads(payload) for payload in self.sent]

    def frames_of(self, frame_type: str, key: Optional[str] = None) -> List[Dict]:
        return [
            frame for frame in self.frames()
            if frame.get("type") == frame_type and (key is None or frame.get("tokenId") == key)
        ]


class ManualScheduler(Scheduler):
    """Scheduler on a virtual clock. Timers fire only inside advance()."""

    def __init__(self):
        super().__init__()
        self.now = 0.0
        self._seq = 0
        self._timers: List[list] = []

    def time(self) -> float:
        return self.now

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle()
        self._seq += 1
        self._timers.append([self.now + max(0.0, delay), self._seq, handle, callback])
        return handle

    def pending(self) -> List[float]:
        """Due times of timers not yet fired or cancelled."""
        return sorted(due for due, _, handle, _ in self._timers if not handle.cancelled)

    def next_delay(self) -> Optional[float]:
        pending = self.pending()
        return pending[0] - self.now if pending else None

    def advance(self, seconds: float = 0.0) -> None:
        """Move the clock forward, firing due timers in order (including new ones)."""
        target = self.now + seconds
        while True:
            due = [t for t in self._timers if not t[2].cancelled and t[0] <= target]
            if not due:
                break
            timer = min(due, key=lambda t: (t[0], t[1]))
            self._timers.remove(timer)
            self.now = timer[0]
            timer[2].cancelled = True
            timer[3]()
        self._timers = [t for t in self._timers if not t[2].cancelled]
        self.now = target


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def stream_config():
    return StreamConfig(
        base_url="http://localhost:8000",
        page_scheme="https",
        path="/ws",
        heartbeat_interval=30.0,
        reconnect_base_delay=1.0,
        reconnect_max_delay=30.0,
        max_reconnect_attempts=5,
    )


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def connection(transport, scheduler, stream_config):
    return ConnectionManager(transport, scheduler, stream_config)


@pytest.fixture
def registry(connection):
    return SubscriptionRegistry(connection)


@pytest.fixture
def connected(connection, transport):
    """Connection manager that has reached CONNECTED."""
    connection.connect()
    transport.simulate_open()
    return connection
