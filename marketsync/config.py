"""Configuration management for the market-data synchronization core."""
import os
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlsplit, urlunsplit

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Base paths
PROJECT_ROOT = Path(__file__).parent.parent

# =============================================================================
# API ENDPOINTS
# =============================================================================

# Backend that serves both the stream and the REST proxy routes
STREAM_BASE_URL = os.getenv("STREAM_BASE_URL", "http://localhost:8000")

# Scheme of the embedding page ("https" or "http")
PAGE_SCHEME = os.getenv("PAGE_SCHEME", "https")

# Path of the streaming endpoint on the backend
STREAM_PATH = os.getenv("STREAM_PATH", "/ws")

CLOB_BASE_URL = os.getenv("CLOB_BASE_URL", "https://clob.polymarket.com")

# Timeout for REST calls (seconds)
REST_TIMEOUT = float(os.getenv("REST_TIMEOUT", "10"))

# =============================================================================
# CONNECTION
# =============================================================================

# Seconds between pings; a ping unanswered for twice this closes the socket
HEARTBEAT_INTERVAL = float(os.getenv("HEARTBEAT_INTERVAL", "30"))

# Reconnect backoff: min(base * 2^(attempt-1), max)
RECONNECT_BASE_DELAY = float(os.getenv("RECONNECT_BASE_DELAY", "1.0"))
RECONNECT_MAX_DELAY = float(os.getenv("RECONNECT_MAX_DELAY", "30.0"))
MAX_RECONNECT_ATTEMPTS = int(os.getenv("MAX_RECONNECT_ATTEMPTS", "5"))

# =============================================================================
# POLLING FALLBACK
# =============================================================================

BOOK_POLL_INTERVAL = float(os.getenv("BOOK_POLL_INTERVAL", "10"))
PRICE_POLL_INTERVAL = float(os.getenv("PRICE_POLL_INTERVAL", "10"))

# Max token ids per batched price lookup
PRICE_BATCH_SIZE = int(os.getenv("PRICE_BATCH_SIZE", "50"))

# =============================================================================
# TRADE HISTORY
# =============================================================================

TRADE_HISTORY_LIMIT = int(os.getenv("TRADE_HISTORY_LIMIT", "1000"))

# Hourly buckets for charting
TRADE_BUCKET_SECONDS = int(os.getenv("TRADE_BUCKET_SECONDS", "3600"))

_INSECURE_SCHEMES = {"http": "ws"}
_SECURE_SCHEMES = {"https": "wss"}


def derive_ws_url(base_url: str, page_scheme: str = "https", path: str = "/ws") -> str:
    """
    Derive the streaming endpoint from the backend base URL.

    A localhost backend always gets the plain socket scheme for its HTTP
    scheme (http -> ws, https -> wss). Any other host only swaps the scheme
    that matches the page's own security context: https -> wss on an https
    page, http -> ws on an http page. Other schemes pass through unchanged.

    Args:
        base_url: Backend base URL (e.g., "https://worker.example.com")
        page_scheme: Scheme of the embedding page
        path: Path appended to the base URL

    Returns:
        Streaming endpoint URL
    """
    parts = urlsplit(base_url)
    scheme = parts.scheme.lower()

    if parts.hostname == "localhost":
        mapping = {**_INSECURE_SCHEMES, **_SECURE_SCHEMES}
    elif page_scheme.lower().rstrip(":") == "https":
        mapping = _SECURE_SCHEMES
    else:
        mapping = _INSECURE_SCHEMES

    scheme = mapping.get(scheme, parts.scheme)
    full_path = parts.path.rstrip("/") + path if path else parts.path

    return urlunsplit((scheme, parts.netloc, full_path, parts.query, parts.fragment))


@dataclass
class StreamConfig:
    """
    Connection settings for one ConnectionManager.

    Attributes:
        base_url: Backend base URL (scheme is rewritten for the socket)
        page_scheme: Scheme of the embedding page
        path: Streaming endpoint path
        heartbeat_interval: Seconds between pings
        reconnect_base_delay: First reconnect delay in seconds
        reconnect_max_delay: Upper bound on any reconnect delay
        max_reconnect_attempts: Attempts before the connection is FAILED
    """
    base_url: str = STREAM_BASE_URL
    page_scheme: str = PAGE_SCHEME
    path: str = STREAM_PATH
    heartbeat_interval: float = HEARTBEAT_INTERVAL
    reconnect_base_delay: float = RECONNECT_BASE_DELAY
    reconnect_max_delay: float = RECONNECT_MAX_DELAY
    max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS

    @classmethod
    def from_env(cls) -> "StreamConfig":
        """Build a config from the current environment."""
        return cls(
            base_url=os.getenv("STREAM_BASE_URL", STREAM_BASE_URL),
            page_scheme=os.getenv("PAGE_SCHEME", PAGE_SCHEME),
            path=os.getenv("STREAM_PATH", STREAM_PATH),
            heartbeat_interval=float(os.getenv("HEARTBEAT_INTERVAL", str(HEARTBEAT_INTERVAL))),
            reconnect_base_delay=float(os.getenv("RECONNECT_BASE_DELAY", str(RECONNECT_BASE_DELAY))),
            reconnect_max_delay=float(os.getenv("RECONNECT_MAX_DELAY", str(RECONNECT_MAX_DELAY))),
            max_reconnect_attempts=int(os.getenv("MAX_RECONNECT_ATTEMPTS", str(MAX_RECONNECT_ATTEMPTS))),
        )

    def validate(self) -> bool:
        """Validate configuration parameters."""
        if self.heartbeat_interval <= 0:
            raise ValueError("heartbeat_interval must be positive")
        if self.reconnect_base_delay <= 0:
            raise ValueError("reconnect_base_delay must be positive")
        if self.reconnect_max_delay < self.reconnect_base_delay:
            raise ValueError("reconnect_max_delay must be >= reconnect_base_delay")
        if self.max_reconnect_attempts < 0:
            raise ValueError("max_reconnect_attempts must be >= 0")
        return True

    @property
    def ws_url(self) -> str:
        """Streaming endpoint derived from base_url and page_scheme."""
        return derive_ws_url(self.base_url, self.page_scheme, self.path)
