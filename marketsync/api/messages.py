"""
Wire codec for the market-data stream.

Decodes inbound JSON frames into typed messages and builds the client
frames (subscribe, unsubscribe, ping).

Inbound frame kinds:
    {"type": "pong"} or plain-text "PONG"          -> Pong
    {"event_type": "book", ...}                    -> OrderBookSnapshot
    {"event_type": "price_change", ...}            -> PriceChangeDiff (one per asset)
    {"type": "price_update", "tokenId": ...}       -> PriceUpdate
    {"event_type": "last_trade_price", ...}        -> PriceUpdate (source "last_trade")

A frame may also be a JSON array of events; each element is decoded on its own.
"""
import json
import time
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional, Union


class ProtocolError(Exception):
    """Raised when an inbound frame cannot be decoded."""

    pass


class Side(Enum):
    """Book side a price level belongs to."""
    BUY = "BUY"    # bids
    SELL = "SELL"  # asks

    @classmethod
    def parse(cls, value: Any) -> "Side":
        text = str(value or "").upper()
        if text in ("BUY", "BID", "BIDS"):
            return cls.BUY
        if text in ("SELL", "ASK", "ASKS"):
            return cls.SELL
        raise ProtocolError(f"Unknown side: {value!r}")


def now_ms() -> int:
    """Get current time in milliseconds."""
    return int(time.time() * 1000)


def to_decimal(value: Any, name: str = "value") -> Decimal:
    """Parse a finite decimal string (or number) without going through float."""
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ProtocolError(f"Invalid {name}: {value!r}")

    # NaN and Infinity cannot be ordered as book prices
    if not result.is_finite():
        raise ProtocolError(f"Invalid {name}: {value!r}")
    return result


def _parse_timestamp(value: Any) -> int:
    if value in (None, ""):
        return now_ms()
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        raise ProtocolError(f"Invalid timestamp: {value!r}")


def _parse_change(value: Any) -> Optional[float]:
    if value in (None, ""):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ProtocolError(f"Invalid change_24h: {value!r}")


def _as_list(data: Dict, key: str) -> List:
    value = data.get(key) or []
    if not isinstance(value, list):
        raise ProtocolError(f"Expected a list for {key}: {value!r}")
    return value


@dataclass(frozen=True)
class PriceLevel:
    """One price level of a book side. Price and size stay decimal strings."""
    price: str
    size: str

    @property
    def price_value(self) -> Decimal:
        return to_decimal(self.price, "price")

    @property
    def size_value(self) -> Decimal:
        return to_decimal(self.size, "size")

    @classmethod
    def from_dict(cls, data: Dict) -> "PriceLevel":
        if not isinstance(data, dict) or "price" not in data:
            raise ProtocolError(f"Invalid price level: {data!r}")
        level = cls(price=str(data["price"]), size=str(data.get("size", "0")))
        # Validate both fields eagerly so bad levels never reach the store
        level.price_value
        level.size_value
        return level

    def to_dict(self) -> Dict[str, str]:
        return {"price": self.price, "size": self.size}


@dataclass
class OrderBookSnapshot:
    """
    Full, authoritative order book for one asset.

    Produced by both the stream ("book" events) and the REST /book endpoint.
    """
    asset_id: str
    market_id: str = ""
    sequence_hash: str = ""
    bids: List[PriceLevel] = field(default_factory=list)
    asks: List[PriceLevel] = field(default_factory=list)
    observed_at: int = field(default_factory=now_ms)

    @classmethod
    def from_dict(cls, data: Dict) -> "OrderBookSnapshot":
        asset_id = data.get("asset_id") or data.get("assetId")
        if not asset_id:
            raise ProtocolError("Book message missing asset_id")

        return cls(
            asset_id=str(asset_id),
            market_id=str(data.get("market") or ""),
            sequence_hash=str(data.get("hash") or ""),
            bids=[PriceLevel.from_dict(level) for level in _as_list(data, "bids")],
            asks=[PriceLevel.from_dict(level) for level in _as_list(data, "asks")],
            observed_at=_parse_timestamp(data.get("timestamp")),
        )


@dataclass(frozen=True)
class LevelChange:
    """New size for one price level; a size of zero removes the level."""
    price: str
    size: str
    side: Side

    @property
    def price_value(self) -> Decimal:
        return to_decimal(self.price, "price")

    @property
    def size_value(self) -> Decimal:
        return to_decimal(self.size, "size")


@dataclass
class PriceChangeDiff:
    """Incremental level updates for one asset. Only meaningful against a snapshot."""
    asset_id: str
    changes: List[LevelChange]
    market_id: str = ""
    best_bid: Optional[str] = None
    best_ask: Optional[str] = None
    sequence_hash: str = ""
    observed_at: int = field(default_factory=now_ms)


@dataclass
class PriceUpdate:
    """Lightweight last-price tick, distinct from the book."""
    asset_id: str
    price: Decimal
    timestamp: int = field(default_factory=now_ms)
    change_24h: Optional[float] = None
    source: str = "stream"


@dataclass(frozen=True)
class Pong:
    """Heartbeat reply."""
    pass


StreamMessage = Union[OrderBookSnapshot, PriceChangeDiff, PriceUpdate, Pong]


# =============================================================================
# Client frames
# =============================================================================

PING_FRAME = {"type": "ping"}


def subscribe_frame(key: str) -> Dict[str, str]:
    """Wire-level subscribe for one asset."""
    return {"type": "subscribe", "tokenId": key}


def unsubscribe_frame(key: str) -> Dict[str, str]:
    """Wire-level unsubscribe for one asset."""
    return {"type": "unsubscribe", "tokenId": key}


# =============================================================================
# Inbound decoding
# =============================================================================

def _decode_level_change(change: Any) -> LevelChange:
    if not isinstance(change, dict) or change.get("price") in (None, ""):
        raise ProtocolError(f"Invalid price change entry: {change!r}")

    level = LevelChange(
        price=str(change["price"]),
        size=str(change.get("size", "0")),
        side=Side.parse(change.get("side")),
    )
    level.price_value
    level.size_value
    return level


def _decode_price_change(data: Dict) -> List[PriceChangeDiff]:
    market_id = str(data.get("market") or "")
    observed_at = _parse_timestamp(data.get("timestamp"))

    # Legacy single-asset shape: {"asset_id": ..., "changes": [...]}
    if "price_changes" not in data:
        asset_id = data.get("asset_id")
        if not asset_id:
            raise ProtocolError("price_change message missing asset_id")
        changes = [_decode_level_change(c) for c in _as_list(data, "changes")]
        return [PriceChangeDiff(
            asset_id=str(asset_id),
            changes=changes,
            market_id=market_id,
            sequence_hash=str(data.get("hash") or ""),
            observed_at=observed_at,
        )]

    # Current shape: one entry per level, each carrying its own asset_id
    diffs: Dict[str, PriceChangeDiff] = {}
    for change in _as_list(data, "price_changes"):
        if not isinstance(change, dict):
            raise ProtocolError(f"Invalid price change entry: {change!r}")

        asset_id = change.get("asset_id")
        if not asset_id:
            raise ProtocolError("price change entry missing asset_id")

        level = _decode_level_change(change)

        diff = diffs.get(asset_id)
        if diff is None:
            diff = PriceChangeDiff(
                asset_id=str(asset_id),
                changes=[],
                market_id=market_id,
                observed_at=observed_at,
            )
            diffs[asset_id] = diff

        diff.changes.append(level)
        # Keep the values reported with the last entry for this asset
        diff.best_bid = change.get("best_bid", diff.best_bid)
        diff.best_ask = change.get("best_ask", diff.best_ask)
        diff.sequence_hash = str(change.get("hash") or diff.sequence_hash)

    return list(diffs.values())


def _decode_price_update(data: Dict) -> Optional[PriceUpdate]:
    token_id = data.get("tokenId") or data.get("asset_id")
    price = data.get("price")
    if not token_id or price in (None, ""):
        return None

    return PriceUpdate(
        asset_id=str(token_id),
        price=to_decimal(price, "price"),
        timestamp=_parse_timestamp(data.get("timestamp")),
        change_24h=_parse_change(data.get("change_24h")),
    )


def _decode_event(data: Any) -> List[StreamMessage]:
    if not isinstance(data, dict):
        raise ProtocolError(f"Unexpected frame element: {data!r}")

    msg_type = data.get("type")
    event_type = data.get("event_type")

    if msg_type == "pong":
        return [Pong()]

    if event_type == "book":
        return [OrderBookSnapshot.from_dict(data)]

    if event_type == "price_change":
        return list(_decode_price_change(data))

    if msg_type == "price_update":
        update = _decode_price_update(data)
        return [update] if update else []

    if event_type == "last_trade_price":
        update = _decode_price_update(data)
        if update:
            update.source = "last_trade"
            return [update]
        return []

    # tick_size_change and anything else is not tracked
    return []


def decode_frame(raw: Union[str, bytes]) -> List[StreamMessage]:
    """
    Decode one inbound frame.

    Args:
        raw: Frame text as delivered by the transport

    Returns:
        Decoded messages (possibly empty for untracked event types)

    Raises:
        ProtocolError: If the frame is not valid JSON or a tracked event is malformed
    """
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")

    text = raw.strip()
    if text.upper() == "PONG":
        return [Pong()]

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Invalid JSON frame: {e}") from e

    events = data if isinstance(data, list) else [data]

    messages: List[StreamMessage] = []
    for event in events:
        try:
            messages.extend(_decode_event(event))
        except ProtocolError:
            raise
        except (ValueError, TypeError, ArithmeticError, AttributeError) as e:
            raise ProtocolError(f"Malformed event: {e}") from e
    return messages


def encode_frame(message: Dict) -> str:
    """Serialize a client frame."""
    return json.dumps(message, separators=(",", ":"))
