"""Streaming transport: one socket, send/receive and connection events."""
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

import websocket

logger = logging.getLogger(__name__)


class TransportError(Exception):
    """Raised when the transport cannot open or send."""

    pass


OpenCallback = Callable[[], None]
MessageCallback = Callable[[str], None]
CloseCallback = Callable[[Optional[int], Optional[str]], None]
ErrorCallback = Callable[[Any], None]


class Transport(ABC):
    """
    Abstract streaming transport.

    Owns at most one socket at a time. `open()` replaces any previous socket;
    callbacks passed to `open()` only ever fire for the socket that call
    created.
    """

    @abstractmethod
    def open(
        self,
        url: str,
        on_open: OpenCallback,
        on_message: MessageCallback,
        on_close: CloseCallback,
        on_error: ErrorCallback,
    ) -> None:
        """
        Start connecting to `url`. Returns immediately.

        Raises:
            TransportError: If the socket cannot be created
        """
        pass

    @abstractmethod
    def send(self, payload: str) -> None:
        """
        Send one text frame.

        Raises:
            TransportError: If the socket is not open
        """
        pass

    @abstractmethod
    def close(self) -> None:
        """Close the current socket, if any."""
        pass

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """True while the current socket is open."""
        pass


class WebSocketTransport(Transport):
    """
    Transport backed by websocket-client.

    Each `open()` creates a `WebSocketApp` and runs it on a daemon thread.
    """

    def __init__(self, ping_interval: float = 0, thread_name: str = "marketsync-ws"):
        """
        Initialize the transport.

        Args:
            ping_interval: Protocol-level ping interval passed to run_forever
                (0 disables it; application heartbeat is separate)
            thread_name: Name of the reader thread
        """
        self.ping_interval = ping_interval
        self.thread_name = thread_name

        self.ws: Optional[websocket.WebSocketApp] = None
        self._thread: Optional[threading.Thread] = None
        self._open = False
        self._lock = threading.Lock()

    def open(self, url, on_open, on_message, on_close, on_error) -> None:
        self.close()

        def _on_open(ws):
            with self._lock:
                if ws is self.ws:
                    self._open = True
            on_open()

        def _on_message(ws, message):
            on_message(message)

        def _on_error(ws, error):
            on_error(error)

        def _on_close(ws, close_status_code, close_msg):
            with self._lock:
                if ws is self.ws:
                    self._open = False
            on_close(close_status_code, close_msg)

        try:
            ws = websocket.WebSocketApp(
                url,
                on_open=_on_open,
                on_message=_on_message,
                on_error=_on_error,
                on_close=_on_close,
            )
        except Exception as e:
            raise TransportError(f"Failed to create socket for {url}: {e}") from e

        with self._lock:
            self.ws = ws
            self._open = False

        self._thread = threading.Thread(
            target=ws.run_forever,
            kwargs={"ping_interval": self.ping_interval},
            name=self.thread_name,
            daemon=True,
        )
        self._thread.start()
        logger.debug(f"Opening socket to {url}")

    def send(self, payload: str) -> None:
        ws = self.ws
        if ws is None or not self._open:
            raise TransportError("Socket is not open")

        try:
            ws.send(payload)
        except (websocket.WebSocketException, OSError) as e:
            raise TransportError(f"Send failed: {e}") from e

    def close(self) -> None:
        with self._lock:
            ws = self.ws
            self.ws = None
            self._open = False

        if ws is not None:
            try:
                ws.close()
            except websocket.WebSocketException as e:
                logger.debug(f"Error closing socket: {e}")

    @property
    def is_open(self) -> bool:
        return self._open
