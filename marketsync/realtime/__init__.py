"""
Realtime market-data synchronization.

This module provides:
- ConnectionManager: one shared stream with heartbeat and backoff reconnect
- SubscriptionRegistry: reference-counted fan-out by asset id
- OrderBookStore: reconciled books from snapshots, diffs and polling
- PriceBoard: latest scalar prices from ticks and polling
- aggregate_trades / TradeAggregator: hourly VWAP buckets for charts
"""

from .aggregator import AggregatedBucket, TradeAggregator, TradeHistory, TradePrint, aggregate_trades
from .connection import ConnectionManager, ConnectionState, backoff_delay
from .orderbook import BookSource, BookStatus, OrderBook, OrderBookStore
from .prices import PriceBoard, PriceQuote
from .registry import Subscription, SubscriptionRegistry
from .scheduler import Repeater, Scheduler, ThreadingScheduler, TimerHandle

__all__ = [
    # Connection
    "ConnectionManager",
    "ConnectionState",
    "backoff_delay",
    # Subscriptions
    "Subscription",
    "SubscriptionRegistry",
    # Order books
    "BookSource",
    "BookStatus",
    "OrderBook",
    "OrderBookStore",
    # Prices
    "PriceBoard",
    "PriceQuote",
    # Trade history
    "AggregatedBucket",
    "TradeAggregator",
    "TradeHistory",
    "TradePrint",
    "aggregate_trades",
    # Scheduling
    "Repeater",
    "Scheduler",
    "ThreadingScheduler",
    "TimerHandle",
]
