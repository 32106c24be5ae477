"""
perptrader Core: Exchange Connector (Hyperliquid)

Read-only access to the Hyperliquid info API (mid prices, account state). Write operations are not implemented yet and raise
WriteNotSupported so callers can record a failed decision instead of
silently doing nothing.
"""

import os
import random
import time
from typing import Any, Dict, Optional
import logging

import requests

from core.exceptions import ApiError, ConfigurationError, RateLimitError, WriteNotSupported

logger = logging.getLogger(__name__)

MAINNET_URL = "https://api.hyperliquid.xyz"
TESTNET_URL = "https://api.hyperliquid-testnet.xyz"

class HyperliquidClient:
    """
    Thin REST client for the Hyperliquid ``/info`` endpoint.

    Retries on:
    - 429 (rate limit)
    - 5xx (server errors)
    - Network errors (timeout, connection)

    Every failure surfaces as ApiError (RateLimitError for 429).
    """

    def __init__(self, base_url: Optional[str] = None, testnet: bool = False,
                 wallet_address: Optional[str] = None, wallet_env: str = "HYPERLIQUID_WALLET_ADDRESS",
                 timeout: float = 10.0, max_retries: int = 3,
                 session: Optional[requests.Session] = None):
        self.base_url = (base_url or (TESTNET_URL if testnet else MAINNET_URL)).rstrip("/")
        self.testnet = testnet
        self._wallet_address = wallet_address or os.getenv(wallet_env)
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self._session = session or requests.Session()
        logger.info(f"Initialized HyperliquidClient ({'testnet' if testnet else 'mainnet'}) at {self.base_url}")

    @property
    def address(self) -> str:
        if not self._wallet_address:
            raise ConfigurationError("Hyperliquid wallet address not configured")
        return self._wallet_address

    def configured(self) -> bool:
        return bool(self._wallet_address)

    def _info(self, payload: Dict[str, Any]) -> Any:
        url = f"{self.base_url}/info"
        request_type = payload.get("type")
        last_error: Optional[Exception] = None

        for attempt in range(self.max_retries):
            try:
                response = self._session.post(url, json=payload, timeout=self.timeout)
                response.raise_for_status()
                return response.json()

            except requests.exceptions.HTTPError as e:
                status_code = e.response.status_code if e.response is not None else None
                if status_code == 429:
                    logger.warning(f"Rate limited (429) on {request_type}, attempt {attempt + 1}/{self.max_retries}")
                    last_error = RateLimitError(f"Hyperliquid rate limit on {request_type}", e, status_code)
                elif status_code is not None and status_code >= 500:
                    logger.warning(f"Server error ({status_code}) on {request_type}, attempt {attempt + 1}/{self.max_retries}")
                    last_error = ApiError(f"Hyperliquid server error {status_code} on {request_type}", e, status_code)
                else:
                    logger.error(f"Hyperliquid client error on {request_type}: {status_code}")
                    raise ApiError(f"Hyperliquid API error: {e}", e, status_code) from e

            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                logger.warning(f"Network error on {request_type}: {e}, attempt {attempt + 1}/{self.max_retries}")
                last_error = ApiError(f"Hyperliquid network error on {request_type}: {e}", e)

            except ValueError as e:
                raise ApiError(f"Hyperliquid returned invalid JSON for {request_type}", e) from e

            if attempt < self.max_retries - 1:
                backoff = (2 ** attempt) + random.uniform(0, 1)
                logger.info(f"Retrying in {backoff:.1f}s...")
                time.sleep(backoff)

        logger.error(f"All {self.max_retries} retries exhausted for {request_type}")
        raise last_error

    # === Read operations ===

    def all_mids(self) -> Dict[str, float]:
        """Mid prices keyed by coin symbol."""
        data = self._info({"type": "allMids"}) or {}
        mids = {}
        for coin, price in data.items():
            try:
                mids[coin] = float(price)
            except (TypeError, ValueError):
                logger.debug(f"Skipping unparseable mid for {coin}: {price!r}")
        return mids

    def user_state(self, user_address: Optional[str] = None) -> Dict[str, Any]:
        """Clearinghouse state: margin summary and asset positions."""
        return self._info({"type": "clearinghouseState", "user": user_address or self.address})

    # === Write operations ===

    def place_order(self, params: Dict[str, Any]) -> Dict[str, Any]:
        raise WriteNotSupported("place_order")

    def cancel_order(self, coin: str, order_id: str) -> Dict[str, Any]:
        raise WriteNotSupported("cancel_order")

    def update_leverage(self, coin: str, leverage: int) -> Dict[str, Any]:
        raise WriteNotSupported("update_leverage")
