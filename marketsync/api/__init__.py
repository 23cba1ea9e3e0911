"""
Upstream venue clients.

This module provides:
- ClobRestClient: order book, trade-history and price REST endpoints
- Transport / WebSocketTransport: the single streaming socket
- Wire codec for stream frames (messages)
"""

from .clob import ClobApiError, ClobRestClient
from .messages import (
    LevelChange,
    OrderBookSnapshot,
    Pong,
    PriceChangeDiff,
    PriceLevel,
    PriceUpdate,
    ProtocolError,
    Side,
    decode_frame,
)
from .transport import Transport, TransportError, WebSocketTransport

__all__ = [
    # REST
    "ClobRestClient",
    "ClobApiError",
    # Stream transport
    "Transport",
    "TransportError",
    "WebSocketTransport",
    # Wire messages
    "LevelChange",
    "OrderBookSnapshot",
    "Pong",
    "PriceChangeDiff",
    "PriceLevel",
    "PriceUpdate",
    "ProtocolError",
    "Side",
    "decode_frame",
]
