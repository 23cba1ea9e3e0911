"""
MarketDataService: the realtime core wired together.

Builds one ConnectionManager, one SubscriptionRegistry and the stores on top
of them. Callers hold a service instance; there is no module-level singleton,
so tests and separate consumers can run independent instances.

Example:
    >>> with MarketDataService() as service:
    ...     sub = service.books.watch(token_id, on_book)
    ...     time.sleep(60)
"""
import logging
from typing import Dict, Optional

from .api.clob import ClobRestClient
from .api.transport import Transport, WebSocketTransport
from .config import BOOK_POLL_INTERVAL, PRICE_POLL_INTERVAL, StreamConfig
from .realtime.aggregator import TradeAggregator, TradeHistory
from .realtime.connection import ConnectionManager
from .realtime.orderbook import OrderBookStore
from .realtime.prices import PriceBoard
from .realtime.registry import SubscriptionRegistry
from .realtime.scheduler import Scheduler, ThreadingScheduler

logger = logging.getLogger(__name__)


class MarketDataService:
    """
    Owns the shared stream, the subscription table and the stores.

    Attributes:
        connection: Shared stream lifecycle
        registry: Reference-counted subscriptions over the stream
        books: Reconciled order books (stream + polling)
        prices: Latest scalar prices (stream + polling)
        trades: Trade-history aggregation for charts
    """

    def __init__(
        self,
        config: Optional[StreamConfig] = None,
        transport: Optional[Transport] = None,
        client: Optional[ClobRestClient] = None,
        scheduler: Optional[Scheduler] = None,
        book_poll_interval: float = BOOK_POLL_INTERVAL,
        price_poll_interval: float = PRICE_POLL_INTERVAL,
    ):
        self.config = config or StreamConfig.from_env()
        self.scheduler = scheduler or ThreadingScheduler()
        self.client = client or ClobRestClient()

        self.connection = ConnectionManager(
            transport or WebSocketTransport(),
            self.scheduler,
            self.config,
        )
        self.registry = SubscriptionRegistry(self.connection)
        self.books = OrderBookStore(self.registry, self.client, self.scheduler, book_poll_interval)
        self.prices = PriceBoard(self.registry, self.client, self.scheduler, price_poll_interval)
        self.trades = TradeAggregator(self.client)

        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start polling and open the stream."""
        if self._running:
            logger.info("Service already running")
            return

        self._running = True
        self.books.start()
        self.prices.start()
        self.connection.connect()
        logger.info(f"Market data service started ({self.connection.url})")

    def stop(self) -> None:
        """Stop polling, drop subscriptions and close the stream."""
        if not self._running:
            return

        self._running = False
        self.books.close()
        self.prices.close()
        self.connection.disconnect()
        logger.info("Market data service stopped")

    def history(self, asset_id: str) -> TradeHistory:
        """Hourly VWAP history for an asset."""
        return self.trades.history(asset_id)

    def get_stats(self) -> Dict:
        return {
            "running": self._running,
            "connection": self.connection.get_stats(),
            "subscriptions": len(self.registry),
            "books_watched": len(self.books.watched_assets()),
            "prices_watched": len(self.prices.watched_tokens()),
        }

    def __enter__(self) -> "MarketDataService":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
