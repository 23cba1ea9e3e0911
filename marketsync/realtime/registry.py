"""
Subscription Registry.

Reference-counted mapping from a subscription key (asset/token id) to the
consumer callbacks interested in it. The registry is the only place that
decides when a wire-level subscribe or unsubscribe is sent, so any number
of consumers on one key share a single wire subscription.

Example:
    >>> registry = SubscriptionRegistry(connection)
    >>> sub = registry.subscribe("token-1", on_message)
    >>> ...
    >>> sub.cancel()  # last consumer out sends the wire unsubscribe
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List

from ..api.messages import StreamMessage, subscribe_frame, unsubscribe_frame
from .connection import ConnectionManager, ConnectionState

logger = logging.getLogger(__name__)

Callback = Callable[[Any], None]


class Subscription:
    """
    Disposer for one registration.

    Cancelling is idempotent and synchronous: once `cancel()` returns, the
    callback is never invoked again. Also usable as a context manager.
    """

    def __init__(self, key: str, cancel_fn: Callable[[], None]):
        self.key = key
        self._cancel_fn = cancel_fn
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> None:
        if not self._active:
            return
        self._active = False
        self._cancel_fn()

    def __call__(self) -> None:
        self.cancel()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cancel()

    def __repr__(self) -> str:
        return f"Subscription(key={self.key!r}, active={self._active})"


@dataclass(eq=False)
class _Registration:
    callback: Callback
    active: bool = True


@dataclass
class _SubscriptionRecord:
    key: str
    registrations: List[_Registration] = field(default_factory=list)

    @property
    def refcount(self) -> int:
        return len(self.registrations)


class SubscriptionRegistry:
    """
    Fans inbound messages out to consumers by key.

    Registers itself with the ConnectionManager as a message handler (to
    route decoded messages by asset id) and as a state listener (to re-issue
    every wire subscription when the stream reaches CONNECTED).
    """

    def __init__(self, connection: ConnectionManager):
        self.connection = connection
        self._lock = connection.scheduler.lock
        self._records: Dict[str, _SubscriptionRecord] = {}

        connection.add_handler(self._route)
        connection.add_state_listener(self._on_state_change)

    def subscribe(self, key: str, callback: Callback) -> Subscription:
        """
        Register `callback` for messages on `key`.

        The first registration for a key sends the wire subscribe (if the
        stream is up) and asks the connection manager to connect.

        Args:
            key: Asset/token id
            callback: Called with each StreamMessage for the key

        Returns:
            Subscription whose cancel() performs the matching unsubscribe
        """
        if not key:
            raise ValueError("Subscription key is required")

        with self._lock:
            registration = _Registration(callback)
            record = self._records.get(key)
            first = record is None

            if first:
                record = _SubscriptionRecord(key)
                self._records[key] = record

            record.registrations.append(registration)

            if first:
                logger.debug(f"Subscribing to {key[:16]}...")
                self.connection.send(subscribe_frame(key))
                self.connection.ensure_connected()

        return Subscription(key, lambda: self._remove(key, registration))

    def unsubscribe(self, key: str, callback: Callback) -> None:
        """Remove one registration of `callback` under `key`."""
        with self._lock:
            record = self._records.get(key)
            if record is None:
                return

            for registration in record.registrations:
                if registration.callback == callback:
                    self._remove(key, registration)
                    return

    def dispatch(self, key: str, message: Any) -> int:
        """
        Deliver `message` to every live callback for `key`.

        A callback that raises is logged and skipped; the rest still receive
        the message.

        Returns:
            Number of callbacks that received the message
        """
        with self._lock:
            record = self._records.get(key)
            if record is None:
                return 0

            delivered = 0
            for registration in list(record.registrations):
                # Cancelled by an earlier callback in this same dispatch
                if not registration.active:
                    continue
                try:
                    registration.callback(message)
                    delivered += 1
                except Exception as e:
                    logger.error(f"Subscriber callback error for {key[:16]}...: {e}", exc_info=True)

            return delivered

    def keys(self) -> List[str]:
        """Keys with at least one live registration."""
        with self._lock:
            return list(self._records)

    def refcount(self, key: str) -> int:
        with self._lock:
            record = self._records.get(key)
            return record.refcount if record else 0

    def __contains__(self, key: str) -> bool:
        return key in self._records

    def __len__(self) -> int:
        return len(self._records)

    def _remove(self, key: str, registration: _Registration) -> None:
        with self._lock:
            registration.active = False

            record = self._records.get(key)
            if record is None or registration not in record.registrations:
                return

            record.registrations.remove(registration)

            if not record.registrations:
                del self._records[key]
                logger.debug(f"Unsubscribing from {key[:16]}...")
                self.connection.send(unsubscribe_frame(key))

    def _route(self, message: StreamMessage) -> None:
        asset_id = getattr(message, "asset_id", None)
        if asset_id:
            self.dispatch(asset_id, message)

    def _on_state_change(self, old_state: ConnectionState, new_state: ConnectionState) -> None:
        if new_state != ConnectionState.CONNECTED:
            return

        keys = list(self._records)
        if keys:
            logger.info(f"Re-subscribing to {len(keys)} keys")
        for key in keys:
            self.connection.send(subscribe_frame(key))
