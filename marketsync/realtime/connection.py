"""
Connection Manager for the shared market-data stream.

Owns the transport's lifecycle: connect, heartbeat, exponential-backoff
reconnect and URL derivation from configuration.

State machine:
    DISCONNECTED -(connect)-> CONNECTING -(open)-> CONNECTED
    CONNECTED/CONNECTING -(close/error)-> RECONNECTING -(backoff elapsed)-> CONNECTING
    RECONNECTING -(max attempts exceeded)-> FAILED
    any -(disconnect)-> DISCONNECTED
    any -(reconnect)-> CONNECTING (attempt counter reset to 0)

Example:
    >>> manager = ConnectionManager(WebSocketTransport(), ThreadingScheduler(), StreamConfig())
    >>> manager.add_handler(lambda message: print(message))
    >>> manager.connect()
"""
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..api.messages import PING_FRAME, Pong, ProtocolError, StreamMessage, decode_frame, encode_frame
from ..api.transport import Transport, TransportError
from ..config import StreamConfig
from .scheduler import Scheduler, TimerHandle

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Lifecycle state of the shared stream."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value


MessageHandler = Callable[[StreamMessage], None]
StateListener = Callable[[ConnectionState, ConnectionState], None]


@dataclass
class ConnectionStats:
    """Statistics for the stream."""
    frames_received: int = 0
    messages_dispatched: int = 0
    parse_errors: int = 0
    connection_errors: int = 0
    reconnects: int = 0
    heartbeat_timeouts: int = 0
    last_frame_ts: int = 0


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """
    Delay before reconnect attempt `attempt` (1-based).

    Returns:
        min(base_delay * 2^(attempt-1), max_delay)
    """
    if attempt < 1:
        return 0.0
    return min(base_delay * (2 ** (attempt - 1)), max_delay)


class ConnectionManager:
    """
    Keeps exactly one streaming connection alive for all consumers.

    Inbound frames are decoded and handed to every registered handler.
    A frame that fails to decode is logged and dropped; it never affects
    the connection or later frames.

    Attributes:
        transport: Transport that owns the socket
        scheduler: Timer source and handler lock
        config: Connection settings
        stats: Running counters
    """

    def __init__(
        self,
        transport: Transport,
        scheduler: Scheduler,
        config: Optional[StreamConfig] = None,
    ):
        """
        Initialize the manager. Nothing connects until connect() is called.

        Args:
            transport: Transport implementation (WebSocketTransport in production)
            scheduler: Scheduler for heartbeat and backoff timers
            config: Connection settings (default: from environment)
        """
        self.transport = transport
        self.scheduler = scheduler
        self.config = config or StreamConfig.from_env()
        self.config.validate()

        self._lock = scheduler.lock
        self._state = ConnectionState.DISCONNECTED
        self._attempts = 0
        self._manual_disconnect = False

        # Incremented for every socket; callbacks from older sockets are ignored
        self._generation = 0

        self._reconnect_timer: Optional[TimerHandle] = None
        self._heartbeat_timer: Optional[TimerHandle] = None
        self._ping_sent_at: Optional[float] = None

        self._handlers: List[MessageHandler] = []
        self._state_listeners: List[StateListener] = []

        self.stats = ConnectionStats()

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def reconnect_attempts(self) -> int:
        return self._attempts

    @property
    def url(self) -> str:
        return self.config.ws_url

    @property
    def heartbeat_timeout(self) -> float:
        return self.config.heartbeat_interval * 2

    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    # =========================================================================
    # Observers
    # =========================================================================

    def add_handler(self, handler: MessageHandler) -> None:
        """Add a handler for decoded inbound messages."""
        with self._lock:
            self._handlers.append(handler)

    def remove_handler(self, handler: MessageHandler) -> None:
        with self._lock:
            if handler in self._handlers:
                self._handlers.remove(handler)

    def add_state_listener(self, listener: StateListener) -> None:
        """Add a listener called with (old_state, new_state) on every transition."""
        with self._lock:
            self._state_listeners.append(listener)

    def remove_state_listener(self, listener: StateListener) -> None:
        with self._lock:
            if listener in self._state_listeners:
                self._state_listeners.remove(listener)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def connect(self) -> None:
        """
        Open the stream.

        No-op while CONNECTING or CONNECTED, and in FAILED (use reconnect()).
        From DISCONNECTED or RECONNECTING, clears the manual-disconnect flag
        and opens a new socket right away.
        """
        with self._lock:
            if self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
                return

            if self._state == ConnectionState.FAILED:
                logger.warning("Stream is FAILED; call reconnect() to try again")
                return

            self._manual_disconnect = False
            self._cancel_reconnect_timer()
            self._open_socket()

    def ensure_connected(self) -> None:
        """
        Connect if idle.

        Unlike connect(), this does not cut a pending backoff short and does
        not leave FAILED; only reconnect() does that.
        """
        with self._lock:
            if self._state == ConnectionState.DISCONNECTED:
                self.connect()

    def disconnect(self) -> None:
        """Close the stream and suppress auto-reconnect."""
        with self._lock:
            self._manual_disconnect = True
            self._generation += 1
            self._cancel_reconnect_timer()
            self._stop_heartbeat()

            try:
                self.transport.close()
            except TransportError as e:
                logger.debug(f"Error closing transport: {e}")

            self._set_state(ConnectionState.DISCONNECTED)
            logger.info("Stream disconnected")

    def reconnect(self) -> None:
        """Manually reconnect, resetting the attempt counter. Leaves FAILED."""
        with self._lock:
            logger.info("Manual reconnect requested")
            self._attempts = 0
            self._manual_disconnect = False
            self._generation += 1
            self._cancel_reconnect_timer()
            self._stop_heartbeat()

            try:
                self.transport.close()
            except TransportError as e:
                logger.debug(f"Error closing transport: {e}")

            self._open_socket()

    def start(self) -> None:
        self.connect()

    def stop(self) -> None:
        self.disconnect()

    # =========================================================================
    # Sending
    # =========================================================================

    def send(self, message: Dict[str, Any]) -> bool:
        """
        Send a client frame if the stream is connected.

        Returns:
            True if sent, False if not connected or the send failed
        """
        with self._lock:
            if self._state != ConnectionState.CONNECTED:
                logger.debug(f"Not connected, dropping frame {message.get('type')}")
                return False

            try:
                self.transport.send(encode_frame(message))
                return True
            except TransportError as e:
                logger.warning(f"Send failed: {e}")
                return False

    # =========================================================================
    # Socket lifecycle (internal)
    # =========================================================================

    def _open_socket(self) -> None:
        self._generation += 1
        generation = self._generation
        url = self.url

        self._set_state(ConnectionState.CONNECTING)
        logger.info(f"Connecting to {url} (attempt {self._attempts})")

        try:
            self.transport.open(
                url,
                on_open=lambda: self._handle_open(generation),
                on_message=lambda raw: self._handle_frame(generation, raw),
                on_close=lambda code, reason: self._handle_close(generation, code, reason),
                on_error=lambda error: self._handle_error(generation, error),
            )
        except TransportError as e:
            self.stats.connection_errors += 1
            logger.warning(f"Failed to open stream: {e}")
            self._connection_lost(str(e))

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation and not self._manual_disconnect

    def _handle_open(self, generation: int) -> None:
        with self._lock:
            if not self._is_current(generation):
                return

            self._attempts = 0
            logger.info("Stream connected")
            self._start_heartbeat()
            # Listeners (the registry) re-issue subscriptions on this transition
            self._set_state(ConnectionState.CONNECTED)

    def _handle_close(self, generation: int, code: Optional[int], reason: Optional[str]) -> None:
        with self._lock:
            if not self._is_current(generation):
                return
            logger.info(f"Stream closed: {code} - {reason}")
            self._connection_lost(f"closed ({code})")

    def _handle_error(self, generation: int, error: Any) -> None:
        with self._lock:
            if not self._is_current(generation):
                return
            self.stats.connection_errors += 1
            logger.warning(f"Stream error: {error}")
            self._connection_lost(f"error: {error}")

    def _handle_frame(self, generation: int, raw: str) -> None:
        with self._lock:
            if not self._is_current(generation):
                return

            self.stats.frames_received += 1
            self.stats.last_frame_ts = int(time.time() * 1000)

            try:
                messages = decode_frame(raw)
            except ProtocolError as e:
                self.stats.parse_errors += 1
                logger.error(f"Dropping malformed frame: {e}")
                return

            if not messages:
                logger.debug(f"No tracked events in frame: {str(raw)[:100]}")

            for message in messages:
                if isinstance(message, Pong):
                    self._ping_sent_at = None
                    continue

                self.stats.messages_dispatched += 1
                for handler in list(self._handlers):
                    try:
                        handler(message)
                    except Exception as e:
                        logger.error(f"Message handler error: {e}", exc_info=True)

    def _connection_lost(self, reason: str) -> None:
        """Schedule a backoff reconnect, or give up once attempts are exhausted."""
        # Late callbacks from this socket must not count as a second loss
        self._generation += 1
        self._stop_heartbeat()

        if self._manual_disconnect:
            return

        if self._attempts >= self.config.max_reconnect_attempts:
            logger.error(
                f"Max reconnection attempts reached ({self._attempts}), giving up: {reason}"
            )
            self._set_state(ConnectionState.FAILED)
            return

        self._attempts += 1
        self.stats.reconnects += 1
        delay = backoff_delay(
            self._attempts,
            self.config.reconnect_base_delay,
            self.config.reconnect_max_delay,
        )
        logger.info(
            f"Reconnecting in {delay:.1f}s "
            f"(attempt {self._attempts}/{self.config.max_reconnect_attempts}): {reason}"
        )
        self._set_state(ConnectionState.RECONNECTING)
        self._cancel_reconnect_timer()
        self._reconnect_timer = self.scheduler.call_later(delay, self._reconnect_elapsed)

    def _reconnect_elapsed(self) -> None:
        with self._lock:
            self._reconnect_timer = None
            if self._state != ConnectionState.RECONNECTING or self._manual_disconnect:
                return
            self._open_socket()

    def _cancel_reconnect_timer(self) -> None:
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

    # =========================================================================
    # Heartbeat
    # =========================================================================

    def _start_heartbeat(self) -> None:
        self._stop_heartbeat()
        self._ping_sent_at = None
        self._schedule_heartbeat(self._generation)

    def _schedule_heartbeat(self, generation: int) -> None:
        self._heartbeat_timer = self.scheduler.call_later(
            self.config.heartbeat_interval,
            lambda: self._heartbeat_tick(generation),
        )

    def _stop_heartbeat(self) -> None:
        if self._heartbeat_timer is not None:
            self._heartbeat_timer.cancel()
            self._heartbeat_timer = None
        self._ping_sent_at = None

    def _heartbeat_tick(self, generation: int) -> None:
        with self._lock:
            if not self._is_current(generation) or self._state != ConnectionState.CONNECTED:
                return

            now = self.scheduler.time()

            if self._ping_sent_at is not None:
                if now - self._ping_sent_at >= self.heartbeat_timeout:
                    # Open but silent: do not trust it
                    self.stats.heartbeat_timeouts += 1
                    logger.warning(
                        f"No pong within {self.heartbeat_timeout:.0f}s, closing stalled stream"
                    )
                    try:
                        self.transport.close()
                    except TransportError as e:
                        logger.debug(f"Error closing transport: {e}")
                    self._connection_lost("heartbeat timeout")
                    return
            else:
                try:
                    self.transport.send(encode_frame(PING_FRAME))
                    self._ping_sent_at = now
                except TransportError as e:
                    logger.warning(f"Ping failed: {e}")
                    self._connection_lost(f"ping failed: {e}")
                    return

            self._schedule_heartbeat(generation)

    # =========================================================================
    # State
    # =========================================================================

    def _set_state(self, new_state: ConnectionState) -> None:
        old_state = self._state
        if old_state == new_state:
            return

        self._state = new_state
        logger.debug(f"Connection state: {old_state} -> {new_state}")

        for listener in list(self._state_listeners):
            try:
                listener(old_state, new_state)
            except Exception as e:
                logger.error(f"State listener error: {e}", exc_info=True)

    def get_stats(self) -> Dict:
        """Get connection statistics."""
        now_ms = int(time.time() * 1000)
        age = (now_ms - self.stats.last_frame_ts) / 1000.0 if self.stats.last_frame_ts else None

        return {
            "state": self._state.value,
            "url": self.url,
            "reconnect_attempts": self._attempts,
            "frames_received": self.stats.frames_received,
            "messages_dispatched": self.stats.messages_dispatched,
            "parse_errors": self.stats.parse_errors,
            "connection_errors": self.stats.connection_errors,
            "reconnects": self.stats.reconnects,
            "heartbeat_timeouts": self.stats.heartbeat_timeouts,
            "seconds_since_frame": age,
        }
