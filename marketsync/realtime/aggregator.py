"""
Trade Aggregator.

Turns raw trade prints into time-bucketed, volume-weighted prices for
charting. Pure and stateless: every call recomputes all buckets from the
input list.

Example:
    >>> trades = [TradePrint(0, Decimal("0.5"), Decimal("10")),
    ...           TradePrint(100, Decimal("0.7"), Decimal("10")),
    ...           TradePrint(4000, Decimal("0.3"), Decimal("5"))]
    >>> [(b.bucket_start, b.volume_weighted_price) for b in aggregate_trades(trades)]
    [(0, Decimal('0.6')), (3600, Decimal('0.3'))]
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from ..api.clob import ClobApiError
from ..api.messages import ProtocolError, to_decimal
from ..config import TRADE_BUCKET_SECONDS, TRADE_HISTORY_LIMIT

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TradePrint:
    """One historical trade. Timestamp in Unix seconds, price in [0, 1]."""
    timestamp: int
    price: Decimal
    size: Decimal

    @classmethod
    def from_dict(cls, data: Dict) -> "TradePrint":
        try:
            timestamp = int(float(data["timestamp"]))
        except (KeyError, TypeError, ValueError, OverflowError):
            raise ProtocolError(f"Invalid trade timestamp: {data.get('timestamp')!r}")

        return cls(
            timestamp=timestamp,
            price=to_decimal(data.get("price"), "price"),
            size=to_decimal(data.get("size") or "0", "size"),
        )


@dataclass(frozen=True)
class AggregatedBucket:
    """Aggregate of all trades whose timestamp falls in one bucket."""
    bucket_start: int
    volume_weighted_price: Decimal
    total_volume: Decimal
    trade_count: int

    def to_point(self) -> Dict:
        """Chart point: {"t": bucket start, "p": price string, "volume": float}."""
        return {
            "t": self.bucket_start,
            "p": str(self.volume_weighted_price),
            "volume": float(self.total_volume),
        }


def bucket_start(timestamp: int, bucket_seconds: int = TRADE_BUCKET_SECONDS) -> int:
    """Truncate a timestamp to the start of its bucket."""
    return (timestamp // bucket_seconds) * bucket_seconds


def aggregate_trades(
    trades: Iterable[TradePrint],
    bucket_seconds: int = TRADE_BUCKET_SECONDS,
) -> List[AggregatedBucket]:
    """
    Aggregate trades into volume-weighted buckets.

    VWAP per bucket is sum(price * size) / sum(size). A bucket whose total
    size is zero falls back to the plain mean of its prices.

    Args:
        trades: Trade prints for one asset (any order)
        bucket_seconds: Bucket width in seconds (default: one hour)

    Returns:
        Buckets sorted ascending by start time
    """
    if bucket_seconds <= 0:
        raise ValueError("bucket_seconds must be positive")

    grouped: Dict[int, List[TradePrint]] = {}
    for trade in trades:
        grouped.setdefault(bucket_start(trade.timestamp, bucket_seconds), []).append(trade)

    buckets = []
    for start in sorted(grouped):
        bucket_trades = grouped[start]
        total_volume = sum((t.size for t in bucket_trades), Decimal("0"))

        if total_volume > 0:
            notional = sum((t.price * t.size for t in bucket_trades), Decimal("0"))
            price = notional / total_volume
        else:
            price = sum((t.price for t in bucket_trades), Decimal("0")) / len(bucket_trades)

        buckets.append(AggregatedBucket(
            bucket_start=start,
            volume_weighted_price=price,
            total_volume=total_volume,
            trade_count=len(bucket_trades),
        ))

    return buckets


def parse_trades(raw_trades: Iterable[Dict]) -> List[TradePrint]:
    """Parse raw trade dictionaries, skipping malformed entries."""
    trades = []
    skipped = 0
    for raw in raw_trades:
        try:
            trades.append(TradePrint.from_dict(raw))
        except ProtocolError as e:
            skipped += 1
            logger.debug(f"Skipping malformed trade: {e}")

    if skipped:
        logger.warning(f"Skipped {skipped} malformed trades")
    return trades


@dataclass
class TradeHistory:
    """Aggregated history for one asset. `error` is set if the fetch failed."""
    asset_id: str
    buckets: List[AggregatedBucket] = field(default_factory=list)
    trade_count: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_points(self) -> List[Dict]:
        return [bucket.to_point() for bucket in self.buckets]


class TradeAggregator:
    """
    Fetches trade history over REST and aggregates it.

    Attributes:
        client: REST client with get_trades(asset_id, limit)
        bucket_seconds: Bucket width
        limit: Max trades fetched per call
    """

    def __init__(
        self,
        client,
        bucket_seconds: int = TRADE_BUCKET_SECONDS,
        limit: int = TRADE_HISTORY_LIMIT,
    ):
        self.client = client
        self.bucket_seconds = bucket_seconds
        self.limit = limit

    def history(self, asset_id: str) -> TradeHistory:
        """
        Fetch and aggregate trade history for an asset.

        Never raises on REST failure; returns an empty history with `error` set.
        """
        try:
            raw_trades = self.client.get_trades(asset_id, limit=self.limit)
        except ClobApiError as e:
            logger.warning(f"Trade history fetch failed for {asset_id[:16]}...: {e}")
            return TradeHistory(asset_id=asset_id, error=str(e))

        trades = parse_trades(raw_trades)
        buckets = aggregate_trades(trades, self.bucket_seconds)

        logger.info(
            f"Aggregated {len(trades)} trades into {len(buckets)} buckets for {asset_id[:16]}..."
        )
        return TradeHistory(asset_id=asset_id, buckets=buckets, trade_count=len(trades))
