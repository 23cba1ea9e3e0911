"""
CLOB REST client for the snapshot, trade-history and price endpoints.

All endpoints are idempotent GETs. Transient failures (connection errors,
timeouts, 5xx) are retried with exponential backoff; anything still failing
raises ClobApiError, which every caller in the realtime core treats as a
soft failure.
"""
import logging
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

import requests
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config import CLOB_BASE_URL, PRICE_BATCH_SIZE, REST_TIMEOUT, TRADE_HISTORY_LIMIT
from .messages import OrderBookSnapshot, ProtocolError, to_decimal

logger = logging.getLogger(__name__)

# Retry configuration
MAX_RETRY_ATTEMPTS = 3
RETRY_MIN_WAIT = 0.5  # seconds
RETRY_MAX_WAIT = 2.0  # seconds


class ClobApiError(Exception):
    """Raised when a REST call fails after retries or returns unusable data."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class _RetryableError(ClobApiError):
    """Transient failure worth retrying (network error or 5xx)."""

    pass


class ClobRestClient:
    """
    Client for the Polymarket CLOB REST API.

    Used for:
    - Order book snapshots (cold start and polling fallback)
    - Trade history (hourly price charts)
    - Batched last-price lookups
    """

    def __init__(
        self,
        base_url: str = CLOB_BASE_URL,
        timeout: float = REST_TIMEOUT,
        session: Optional[requests.Session] = None,
        max_attempts: int = MAX_RETRY_ATTEMPTS,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.session = session or requests.Session()
        self.session.headers.update({
            "Accept": "application/json",
            "User-Agent": "marketsync/1.0",
        })

    def _get(self, endpoint: str, params: Optional[Dict] = None) -> Any:
        """Make GET request with retry on transient failures."""
        url = f"{self.base_url}{endpoint}"

        @retry(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=1, min=RETRY_MIN_WAIT, max=RETRY_MAX_WAIT),
            retry=retry_if_exception_type(_RetryableError),
            reraise=True,
        )
        def _execute():
            try:
                response = self.session.get(url, params=params, timeout=self.timeout)
            except requests.RequestException as e:
                raise _RetryableError(f"GET {endpoint} failed: {e}") from e

            if response.status_code >= 500:
                raise _RetryableError(
                    f"GET {endpoint} returned {response.status_code}",
                    status_code=response.status_code,
                )
            if response.status_code >= 400:
                raise ClobApiError(
                    f"GET {endpoint} returned {response.status_code}",
                    status_code=response.status_code,
                )

            try:
                return response.json()
            except ValueError as e:
                raise ClobApiError(f"GET {endpoint} returned invalid JSON: {e}") from e

        try:
            return _execute()
        except _RetryableError as e:
            logger.error(f"GET {endpoint} failed after {self.max_attempts} attempts: {e}")
            raise ClobApiError(str(e), status_code=e.status_code) from e

    def get_order_book(self, token_id: str) -> OrderBookSnapshot:
        """
        Get the full order book for a token.

        Raises:
            ClobApiError: On request failure or a malformed book
        """
        data = self._get("/book", {"token_id": token_id})

        if not isinstance(data, dict):
            raise ClobApiError(f"Unexpected order book payload for {token_id}")

        data.setdefault("asset_id", token_id)
        try:
            return OrderBookSnapshot.from_dict(data)
        except ProtocolError as e:
            raise ClobApiError(f"Malformed order book for {token_id}: {e}") from e

    def get_trades(self, asset_id: str, limit: int = TRADE_HISTORY_LIMIT) -> List[Dict]:
        """
        Get recent trade prints for an asset.

        Returns:
            Raw trade dictionaries (timestamp in seconds, price and size as strings)
        """
        data = self._get("/trades", {"asset_id": asset_id, "limit": limit})

        if isinstance(data, dict):
            data = data.get("data", [])
        if not isinstance(data, list):
            raise ClobApiError(f"Unexpected trades payload for {asset_id}")

        return data

    def get_price(self, token_id: str) -> Optional[Decimal]:
        """
        Get the mid price for one token.

        Returns:
            Mid price, or None if the venue reports none
        """
        data = self._get("/prices", {"token_id": token_id})

        mid = data.get("mid") if isinstance(data, dict) else None
        if mid in (None, ""):
            return None

        try:
            return to_decimal(mid, "mid")
        except ProtocolError as e:
            raise ClobApiError(f"Invalid mid price for {token_id}: {e}") from e

    def get_prices(self, token_ids: Iterable[str], batch_size: int = PRICE_BATCH_SIZE) -> Dict[str, Decimal]:
        """
        Get mid prices for many tokens, in batches.

        A token whose lookup fails is left out of the result rather than
        failing the whole batch. Raises only if every lookup failed.

        Returns:
            Mapping of token id to mid price
        """
        token_ids = list(dict.fromkeys(token_ids))
        prices: Dict[str, Decimal] = {}
        errors = 0

        for start in range(0, len(token_ids), batch_size):
            batch = token_ids[start:start + batch_size]
            for token_id in batch:
                try:
                    price = self.get_price(token_id)
                except ClobApiError as e:
                    errors += 1
                    logger.warning(f"Price lookup failed for {token_id[:16]}...: {e}")
                    continue
                if price is not None:
                    prices[token_id] = price

        if token_ids and errors == len(token_ids):
            raise ClobApiError(f"All {errors} price lookups failed")

        return prices
