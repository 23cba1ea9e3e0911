"""
Order Book Store.

Per-asset reconciled view of the book, fed by two independent sources that
write the same cell:

- the stream: "book" snapshots and "price_change" diffs routed by the
  SubscriptionRegistry,
- polling: a full REST snapshot for every watched asset on a fixed interval,
  whether or not the stream is healthy.

Write rules:
    - A snapshot (from either source) replaces the stored book wholesale.
    - A diff is applied against the stored book, level by level, in arrival
      order. A diff with no stored book is discarded and a fresh snapshot
      fetch is scheduled instead.
    - Between the two sources, last write by arrival order wins. No sequence
      or hash ordering is enforced; the next snapshot resynchronizes.

REST failures never clear a stored book. They are reported through
BookStatus.last_error instead of raising into the caller.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

from ..api.clob import ClobApiError
from ..api.messages import (
    OrderBookSnapshot,
    PriceChangeDiff,
    PriceLevel,
    Side,
    now_ms,
)
from ..config import BOOK_POLL_INTERVAL
from .connection import ConnectionState
from .registry import Subscription, SubscriptionRegistry
from .scheduler import Repeater, Scheduler

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class BookSource(Enum):
    """Which path produced the latest write."""
    STREAM = "stream"
    POLL = "poll"


@dataclass
class OrderBook:
    """
    Reconciled book for one asset, as read by consumers.

    Sides are ordered best to worst: bids descending, asks ascending.
    """
    asset_id: str
    market_id: str
    sequence_hash: str
    bids: List[PriceLevel]
    asks: List[PriceLevel]
    observed_at: int
    source: BookSource

    @property
    def best_bid(self) -> Optional[Decimal]:
        return self.bids[0].price_value if self.bids else None

    @property
    def best_ask(self) -> Optional[Decimal]:
        return self.asks[0].price_value if self.asks else None

    @property
    def mid(self) -> Optional[Decimal]:
        if self.best_bid is None or self.best_ask is None:
            return None
        return (self.best_bid + self.best_ask) / 2

    @property
    def spread(self) -> Optional[Decimal]:
        if self.best_bid is None or self.best_ask is None:
            return None
        return self.best_ask - self.best_bid

    def to_dict(self) -> Dict:
        return {
            "asset_id": self.asset_id,
            "market": self.market_id,
            "hash": self.sequence_hash,
            "bids": [level.to_dict() for level in self.bids],
            "asks": [level.to_dict() for level in self.asks],
            "timestamp": self.observed_at,
            "source": self.source.value,
        }


@dataclass
class BookStatus:
    """Freshness and error flag for one asset's book."""
    asset_id: str
    last_source: Optional[BookSource] = None
    last_updated_at: Optional[int] = None
    last_error: Optional[str] = None
    consecutive_failures: int = 0

    @property
    def has_error(self) -> bool:
        return self.last_error is not None


class _BookState:
    """Mutable per-asset state. Levels keyed by Decimal price so "0.5" == "0.50"."""

    def __init__(self, snapshot: OrderBookSnapshot, source: BookSource):
        self.asset_id = snapshot.asset_id
        self.market_id = snapshot.market_id
        self.sequence_hash = snapshot.sequence_hash
        self.observed_at = snapshot.observed_at
        self.source = source
        self.bids: Dict[Decimal, PriceLevel] = {}
        self.asks: Dict[Decimal, PriceLevel] = {}

        for level in snapshot.bids:
            self._set(self.bids, level.price_value, level.size_value, level)
        for level in snapshot.asks:
            self._set(self.asks, level.price_value, level.size_value, level)

    @staticmethod
    def _set(side: Dict[Decimal, PriceLevel], price: Decimal, size: Decimal, level: PriceLevel) -> None:
        if size == ZERO:
            side.pop(price, None)
        else:
            side[price] = level

    def apply(self, diff: PriceChangeDiff) -> None:
        # Parse every change before touching the book so a bad one leaves it intact
        updates = [
            (
                self.bids if change.side == Side.BUY else self.asks,
                change.price_value,
                change.size_value,
                PriceLevel(price=change.price, size=change.size),
            )
            for change in diff.changes
        ]
        for side, price, size, level in updates:
            self._set(side, price, size, level)

        if diff.market_id:
            self.market_id = diff.market_id
        if diff.sequence_hash:
            self.sequence_hash = diff.sequence_hash
        self.observed_at = diff.observed_at
        self.source = BookSource.STREAM

    def view(self) -> OrderBook:
        return OrderBook(
            asset_id=self.asset_id,
            market_id=self.market_id,
            sequence_hash=self.sequence_hash,
            bids=[self.bids[p] for p in sorted(self.bids, reverse=True)],
            asks=[self.asks[p] for p in sorted(self.asks)],
            observed_at=self.observed_at,
            source=self.source,
        )


BookListener = Callable[[OrderBook], None]


class OrderBookStore:
    """
    Holds at most one reconciled book per asset.

    Consumers call `watch()` to express interest (which drives both the
    stream subscription and polling) and read through `get_snapshot()`,
    regardless of which source wrote last.

    Attributes:
        registry: Subscription registry used for the stream path
        client: REST client with get_order_book(token_id)
        scheduler: Timer source and handler lock
        poll_interval: Seconds between polling passes
    """

    def __init__(
        self,
        registry: SubscriptionRegistry,
        client,
        scheduler: Scheduler,
        poll_interval: float = BOOK_POLL_INTERVAL,
    ):
        self.registry = registry
        self.client = client
        self.scheduler = scheduler
        self.poll_interval = poll_interval

        self._lock = scheduler.lock
        self._books: Dict[str, _BookState] = {}
        self._status: Dict[str, BookStatus] = {}
        self._listeners: Dict[str, List[BookListener]] = {}
        self._stream_subs: Dict[str, Subscription] = {}
        self._pending_fetches: Set[str] = set()

        self._poller = Repeater(scheduler, poll_interval, self.poll_once)

    # =========================================================================
    # Consumer API
    # =========================================================================

    def watch(self, asset_id: str, listener: Optional[BookListener] = None) -> Subscription:
        """
        Start tracking an asset's book.

        The first watcher subscribes the store to the stream for the asset and
        schedules a fresh REST fetch. The last watcher's cancel() drops the
        stream subscription, takes the asset out of polling and discards its
        stored book and status.

        Args:
            asset_id: Asset/token id
            listener: Optional callback invoked with every new OrderBook

        Returns:
            Subscription disposer for this watcher
        """
        if not asset_id:
            raise ValueError("asset_id is required")

        watcher = listener or _noop_listener

        with self._lock:
            listeners = self._listeners.setdefault(asset_id, [])
            listeners.append(watcher)

            if asset_id not in self._stream_subs:
                self._stream_subs[asset_id] = self.registry.subscribe(asset_id, self._on_stream_message)
                self._schedule_fetch(asset_id)

        return Subscription(asset_id, lambda: self._unwatch(asset_id, watcher))

    def get_snapshot(self, asset_id: str) -> Optional[OrderBook]:
        """
        Current reconciled book for an asset.

        On a cold start (nothing stored yet) this performs the initial REST
        fetch before returning.

        Returns:
            OrderBook, or None if there is no book and the fetch failed
        """
        with self._lock:
            state = self._books.get(asset_id)
            if state is not None:
                return state.view()

        self.refresh(asset_id)

        with self._lock:
            state = self._books.get(asset_id)
            return state.view() if state is not None else None

    def peek(self, asset_id: str) -> Optional[OrderBook]:
        """Stored book without triggering a fetch."""
        with self._lock:
            state = self._books.get(asset_id)
            return state.view() if state is not None else None

    def status(self, asset_id: str) -> BookStatus:
        with self._lock:
            status = self._status.get(asset_id) or BookStatus(asset_id)
            return BookStatus(
                asset_id=status.asset_id,
                last_source=status.last_source,
                last_updated_at=status.last_updated_at,
                last_error=status.last_error,
                consecutive_failures=status.consecutive_failures,
            )

    def is_degraded(self, asset_id: str) -> bool:
        """
        True when both sources are failing for the asset: the stream is not
        connected and the most recent REST fetch failed.
        """
        with self._lock:
            status = self._status.get(asset_id)
            stream_down = self.registry.connection.state != ConnectionState.CONNECTED
            return stream_down and status is not None and status.has_error

    def watched_assets(self) -> List[str]:
        with self._lock:
            return list(self._stream_subs)

    # =========================================================================
    # Writes
    # =========================================================================

    def apply_snapshot(self, snapshot: OrderBookSnapshot, source: BookSource = BookSource.STREAM) -> OrderBook:
        """Replace the stored book for snapshot.asset_id. Snapshots are never merged."""
        state = _BookState(snapshot, source)
        book = state.view()

        with self._lock:
            self._books[snapshot.asset_id] = state
            self._mark_updated(snapshot.asset_id, source)

        logger.debug(
            f"Book snapshot for {snapshot.asset_id[:16]}... from {source.value}: "
            f"{len(book.bids)} bids, {len(book.asks)} asks"
        )
        self._notify(book)
        return book

    def apply_diff(self, diff: PriceChangeDiff) -> Optional[OrderBook]:
        """
        Apply incremental level changes to the stored book.

        Returns:
            Updated OrderBook, or None if there was no base snapshot (the diff
            is discarded and a snapshot fetch scheduled)
        """
        with self._lock:
            state = self._books.get(diff.asset_id)
            if state is None:
                logger.debug(f"Diff for {diff.asset_id[:16]}... before any snapshot, fetching")
                self._schedule_fetch(diff.asset_id)
                return None

            state.apply(diff)
            self._mark_updated(diff.asset_id, BookSource.STREAM)
            book = state.view()

        self._notify(book)
        return book

    def refresh(self, asset_id: str) -> bool:
        """
        Fetch a full snapshot over REST and store it.

        Returns:
            True on success. On failure the prior book is kept and the error
            is recorded on the asset's BookStatus.
        """
        try:
            snapshot = self.client.get_order_book(asset_id)
        except ClobApiError as e:
            with self._lock:
                status = self._status.setdefault(asset_id, BookStatus(asset_id))
                status.last_error = str(e)
                status.consecutive_failures += 1
            logger.warning(f"Order book fetch failed for {asset_id[:16]}...: {e}")
            return False

        self.apply_snapshot(snapshot, BookSource.POLL)
        return True

    # =========================================================================
    # Polling
    # =========================================================================

    def start(self) -> None:
        """Start the polling fallback."""
        self._poller.start()
        logger.info(f"Order book polling every {self.poll_interval}s")

    def stop(self) -> None:
        """Stop polling. Stored books and watchers are kept."""
        self._poller.stop()

    def close(self) -> None:
        """Stop polling and drop every stream subscription."""
        self.stop()
        with self._lock:
            subs = list(self._stream_subs.values())
            self._stream_subs.clear()
            self._listeners.clear()
            self._books.clear()
            self._status.clear()
        for sub in subs:
            sub.cancel()

    def poll_once(self) -> int:
        """
        Refresh every watched asset once.

        Returns:
            Number of successful refreshes
        """
        assets = self.watched_assets()
        ok = 0
        for asset_id in assets:
            if self.refresh(asset_id):
                ok += 1
        if assets:
            logger.debug(f"Polled {ok}/{len(assets)} books")
        return ok

    # =========================================================================
    # Internal
    # =========================================================================

    def _on_stream_message(self, message) -> None:
        if isinstance(message, OrderBookSnapshot):
            self.apply_snapshot(message, BookSource.STREAM)
        elif isinstance(message, PriceChangeDiff):
            self.apply_diff(message)

    def _schedule_fetch(self, asset_id: str) -> None:
        if asset_id in self._pending_fetches:
            return
        self._pending_fetches.add(asset_id)

        def _fetch():
            with self._lock:
                self._pending_fetches.discard(asset_id)
            self.refresh(asset_id)

        self.scheduler.call_soon(_fetch)

    def _mark_updated(self, asset_id: str, source: BookSource) -> None:
        status = self._status.setdefault(asset_id, BookStatus(asset_id))
        status.last_source = source
        status.last_updated_at = now_ms()
        if source == BookSource.POLL:
            status.last_error = None
            status.consecutive_failures = 0

    def _notify(self, book: OrderBook) -> None:
        with self._lock:
            listeners = list(self._listeners.get(book.asset_id, []))

        for listener in listeners:
            try:
                listener(book)
            except Exception as e:
                logger.error(f"Book listener error for {book.asset_id[:16]}...: {e}", exc_info=True)

    def _unwatch(self, asset_id: str, watcher: BookListener) -> None:
        with self._lock:
            listeners = self._listeners.get(asset_id)
            if not listeners or watcher not in listeners:
                return

            listeners.remove(watcher)
            if listeners:
                return

            del self._listeners[asset_id]
            sub = self._stream_subs.pop(asset_id, None)
            self._books.pop(asset_id, None)
            self._status.pop(asset_id, None)

        if sub is not None:
            sub.cancel()


def _noop_listener(book: OrderBook) -> None:
    pass
