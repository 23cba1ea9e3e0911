#!/usr/bin/env python3
"""
Run the Market Data Sync Service

Watches live order books and prices for one or more Polymarket tokens over
the shared stream, with REST polling as a fallback, and prints a summary
line per update. Can also print hourly VWAP history for a token.

Usage:
    # Watch one token's book and price
    python scripts/run_market_sync.py --token <TOKEN_ID>

    # Watch several tokens for 10 minutes
    python scripts/run_market_sync.py --token <A> --token <B> --duration 10

    # Print hourly VWAP history and exit
    python scripts/run_market_sync.py --history <TOKEN_ID>

    # Verbose output
    python scripts/run_market_sync.py --token <TOKEN_ID> --verbose

Environment Variables:
    STREAM_BASE_URL - Backend serving the /ws stream (default: http://localhost:8000)
    PAGE_SCHEME - "https" (default) or "http"; selects wss/ws for non-local hosts
    CLOB_BASE_URL - CLOB REST API (default: https://clob.polymarket.com)
    BOOK_POLL_INTERVAL - Seconds between order book polls (default: 10)
"""

import argparse
import logging
import signal
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from marketsync.config import PROJECT_ROOT, StreamConfig
from marketsync.realtime.orderbook import OrderBook
from marketsync.realtime.prices import PriceQuote
from marketsync.service import MarketDataService


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for the service."""
    level = logging.DEBUG if verbose else logging.INFO

    # Create formatters
    console_format = "%(asctime)s [%(levelname)s] %(message)s"
    file_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(console_format, datefmt="%H:%M:%S"))

    # File handler
    log_dir = PROJECT_ROOT / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f"market_sync_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"

    file_handler = logging.FileHandler(log_file)
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(file_format))

    # Configure root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

    # Reduce noise from external libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)
    logging.getLogger("websocket").setLevel(logging.WARNING)

    print(f"Logs will be written to: {log_file}")


def print_book(book: OrderBook) -> None:
    best_bid = f"{book.best_bid:.3f}" if book.best_bid is not None else "-"
    best_ask = f"{book.best_ask:.3f}" if book.best_ask is not None else "-"
    spread = f"{book.spread:.3f}" if book.spread is not None else "-"
    print(
        f"[{datetime.now().strftime('%H:%M:%S')}] BOOK {book.asset_id[:12]}... "
        f"bid={best_bid} ask={best_ask} spread={spread} "
        f"levels={len(book.bids)}/{len(book.asks)} via {book.source.value}"
    )


def print_quote(quote: PriceQuote) -> None:
    print(
        f"[{datetime.now().strftime('%H:%M:%S')}] PRICE {quote.token_id[:12]}... "
        f"{quote.price} via {quote.source}"
    )


def show_history(service: MarketDataService, token_id: str) -> int:
    history = service.history(token_id)
    if not history.ok:
        print(f"Failed to fetch trade history: {history.error}")
        return 1

    print(f"\n{history.trade_count} trades in {len(history.buckets)} hourly buckets\n")
    print(f"{'Hour (UTC)':<20} {'VWAP':>10} {'Volume':>14} {'Trades':>8}")
    print("-" * 56)
    for bucket in history.buckets:
        hour = datetime.fromtimestamp(bucket.bucket_start, tz=timezone.utc).strftime("%Y-%m-%d %H:%M")
        print(
            f"{hour:<20} {float(bucket.volume_weighted_price):>10.4f} "
            f"{float(bucket.total_volume):>14.2f} {bucket.trade_count:>8}"
        )
    return 0


def watch(service: MarketDataService, token_ids: list, duration: float) -> int:
    stop_event = threading.Event()

    def handle_signal(signum, frame):
        print("\nShutting down...")
        stop_event.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    subscriptions = []
    for token_id in token_ids:
        subscriptions.append(service.books.watch(token_id, print_book))
        subscriptions.append(service.prices.watch(token_id, print_quote))

    service.start()
    try:
        stop_event.wait(timeout=duration * 60 if duration else None)
    finally:
        for sub in subscriptions:
            sub.cancel()
        stats = service.get_stats()
        service.stop()

    print(f"\nStream stats: {stats['connection']}")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Polymarket market data sync")
    parser.add_argument("--token", action="append", default=[], help="Token id to watch (repeatable)")
    parser.add_argument("--history", metavar="TOKEN_ID", help="Print hourly VWAP history for a token")
    parser.add_argument("--duration", type=float, default=0, help="Minutes to run (0 = until Ctrl+C)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    args = parser.parse_args()

    if not args.token and not args.history:
        parser.error("pass --token or --history")

    setup_logging(args.verbose)

    config = StreamConfig.from_env()
    service = MarketDataService(config=config)

    if args.history:
        return show_history(service, args.history)

    print(f"Stream endpoint: {config.ws_url}")
    return watch(service, args.token, args.duration)


if __name__ == "__main__":
    sys.exit(main())
