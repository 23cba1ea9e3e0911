"""
Price Board: latest scalar price per token.

Fed by "price_update"/"last_trade_price" ticks from the stream and by a
batched REST price poll for every watched token. Both paths write the same
cell; last write wins. A failed poll keeps the prices already known.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from ..api.clob import ClobApiError
from ..api.messages import PriceUpdate, now_ms
from ..config import PRICE_BATCH_SIZE, PRICE_POLL_INTERVAL
from .registry import Subscription, SubscriptionRegistry
from .scheduler import Repeater, Scheduler

logger = logging.getLogger(__name__)


@dataclass
class PriceQuote:
    """Latest known price for a token."""
    token_id: str
    price: Decimal
    timestamp: int
    change_24h: Optional[float] = None
    source: str = "stream"

    def to_dict(self) -> Dict:
        return {
            "tokenId": self.token_id,
            "price": float(self.price),
            "timestamp": self.timestamp,
            "change_24h": self.change_24h,
            "source": self.source,
        }


PriceListener = Callable[[PriceQuote], None]


class PriceBoard:
    """
    Tracks last prices for watched tokens.

    Example:
        >>> board = PriceBoard(registry, client, scheduler)
        >>> sub = board.watch("token-1", lambda quote: print(quote.price))
        >>> board.start()
        >>> board.get_price("token-1")
    """

    def __init__(
        self,
        registry: SubscriptionRegistry,
        client,
        scheduler: Scheduler,
        poll_interval: float = PRICE_POLL_INTERVAL,
        batch_size: int = PRICE_BATCH_SIZE,
    ):
        self.registry = registry
        self.client = client
        self.scheduler = scheduler
        self.poll_interval = poll_interval
        self.batch_size = batch_size

        self._lock = scheduler.lock
        self._quotes: Dict[str, PriceQuote] = {}
        self._listeners: Dict[str, List[PriceListener]] = {}
        self._stream_subs: Dict[str, Subscription] = {}
        self.last_error: Optional[str] = None

        self._poller = Repeater(scheduler, poll_interval, self.poll_once)

    def watch(self, token_id: str, listener: Optional[PriceListener] = None) -> Subscription:
        """Track a token's price. The returned Subscription stops tracking."""
        if not token_id:
            raise ValueError("token_id is required")

        watcher = listener or _noop_listener

        with self._lock:
            self._listeners.setdefault(token_id, []).append(watcher)
            if token_id not in self._stream_subs:
                self._stream_subs[token_id] = self.registry.subscribe(token_id, self._on_stream_message)

        return Subscription(token_id, lambda: self._unwatch(token_id, watcher))

    def get_quote(self, token_id: str) -> Optional[PriceQuote]:
        with self._lock:
            return self._quotes.get(token_id)

    def get_price(self, token_id: str) -> Optional[Decimal]:
        quote = self.get_quote(token_id)
        return quote.price if quote else None

    def get_all_prices(self) -> Dict[str, Decimal]:
        with self._lock:
            return {token_id: quote.price for token_id, quote in self._quotes.items()}

    def watched_tokens(self) -> List[str]:
        with self._lock:
            return list(self._stream_subs)

    def apply_update(self, update: PriceUpdate) -> PriceQuote:
        """Store a price tick from the stream."""
        return self._store(PriceQuote(
            token_id=update.asset_id,
            price=update.price,
            timestamp=update.timestamp,
            change_24h=update.change_24h,
            source=update.source,
        ))

    # =========================================================================
    # Polling
    # =========================================================================

    def start(self) -> None:
        self._poller.start()
        logger.info(f"Price polling every {self.poll_interval}s")

    def stop(self) -> None:
        self._poller.stop()

    def close(self) -> None:
        """Stop polling and drop every stream subscription."""
        self.stop()
        with self._lock:
            subs = list(self._stream_subs.values())
            self._stream_subs.clear()
            self._listeners.clear()
        for sub in subs:
            sub.cancel()

    def poll_once(self) -> int:
        """
        Fetch prices for every watched token.

        Returns:
            Number of prices updated
        """
        tokens = self.watched_tokens()
        if not tokens:
            return 0

        try:
            prices = self.client.get_prices(tokens, batch_size=self.batch_size)
        except ClobApiError as e:
            with self._lock:
                self.last_error = str(e)
            logger.warning(f"Price poll failed: {e}")
            return 0

        with self._lock:
            self.last_error = None

        timestamp = now_ms()
        for token_id, price in prices.items():
            previous = self.get_quote(token_id)
            self._store(PriceQuote(
                token_id=token_id,
                price=price,
                timestamp=timestamp,
                change_24h=previous.change_24h if previous else None,
                source="poll",
            ))
        return len(prices)

    # =========================================================================
    # Internal
    # =========================================================================

    def _on_stream_message(self, message) -> None:
        if isinstance(message, PriceUpdate):
            self.apply_update(message)

    def _store(self, quote: PriceQuote) -> PriceQuote:
        with self._lock:
            self._quotes[quote.token_id] = quote
            listeners = list(self._listeners.get(quote.token_id, []))

        for listener in listeners:
            try:
                listener(quote)
            except Exception as e:
                logger.error(f"Price listener error for {quote.token_id[:16]}...: {e}", exc_info=True)
        return quote

    def _unwatch(self, token_id: str, watcher: PriceListener) -> None:
        with self._lock:
            listeners = self._listeners.get(token_id)
            if not listeners or watcher not in listeners:
                return

            listeners.remove(watcher)
            if listeners:
                return

            del self._listeners[token_id]
            sub = self._stream_subs.pop(token_id, None)

        if sub is not None:
            sub.cancel()


def _noop_listener(quote: PriceQuote) -> None:
    pass
