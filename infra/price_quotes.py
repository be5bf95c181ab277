"""
Trade Lifecycle Infrastructure: Price Quotes

Current-price lookups for exit monitoring. Bounded by a short timeout;
any failure is reported as "price unavailable" (None) so the caller can
retry on its next tick.
"""

import logging
from typing import Any, Dict, Optional

import requests

from core.exceptions import QuoteUnavailable

logger = logging.getLogger(__name__)

DEFAULT_URL_TEMPLATE = "https://query1.finance.yahoo.com/v8/finance/chart/{symbol}"


class PriceQuoteService:
    """Fetch `regularMarketPrice` from a Yahoo-style chart endpoint."""

    def __init__(
        self,
        url_template: str = DEFAULT_URL_TEMPLATE,
        timeout: float = 5.0,
        session: Optional[requests.Session] = None,
    ):
        self.url_template = url_template
        self.timeout = float(timeout)
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", "trade-lifecycle/1.0")

    @classmethod
    def from_config(cls, raw_config: Optional[Dict[str, Any]]) -> "PriceQuoteService":
        raw_config = raw_config or {}
        return cls(
            url_template=raw_config.get("url_template", DEFAULT_URL_TEMPLATE),
            timeout=float(raw_config.get("timeout_seconds", 5.0)),
        )

    def fetch_current_price(self, symbol: str) -> Optional[float]:
        try:
            return self.get_quote(symbol)
        except QuoteUnavailable as e:
            logger.warning(f"Error fetching price for {symbol}: {e.original or e}")
            return None

    def get_quote(self, symbol: str) -> float:
        """
        Raises:
            QuoteUnavailable: transport error, timeout, bad payload or no price
        """
        url = self.url_template.format(symbol=symbol)
        try:
            r = self.session.get(url, params={"interval": "1d", "range": "1d"}, timeout=self.timeout)
            r.raise_for_status()
            payload = r.json()
        except (requests.RequestException, ValueError) as e:
            raise QuoteUnavailable(symbol, e) from e

        price = self._extract_price(payload)
        if price is None or price <= 0:
            raise QuoteUnavailable(symbol)
        return price

    @staticmethod
    def _extract_price(payload: Any) -> Optional[float]:
        if not isinstance(payload, dict):
            return None

        # Flat proxy shape: {"regularMarketPrice": ...}
        value = payload.get("regularMarketPrice")

        if value is None:
            try:
                value = payload["chart"]["result"][0]["meta"]["regularMarketPrice"]
            except (KeyError, IndexError, TypeError):
                return None

        try:
            return float(value)
        except (TypeError, ValueError):
            return None
