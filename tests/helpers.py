"""
Builders shared by the order book and service tests.
"""

from decimal import Decimal
from typing import List

from marketsync.api.messages import OrderBookSnapshot, PriceLevel


def make_snapshot(asset_id: str = "token-1", bids=(), asks=(), hash_: str = "h1") -> OrderBookSnapshot:
    """Build a snapshot from (price, size) string pairs."""
    return OrderBookSnapshot(
        asset_id=asset_id,
        market_id="0xmarket",
        sequence_hash=hash_,
        bids=[PriceLevel(price, size) for price, size in bids],
        asks=[PriceLevel(price, size) for price, size in asks],
        observed_at=1700000000000,
    )


def prices(levels) -> List[Decimal]:
    return [level.price_value for level in levels]
