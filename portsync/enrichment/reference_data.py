"""
Reference-data (quote) providers.

Used as the equity fallback when the gateway cannot supply a previous close
(quota exhausted, cooldown, no bars) and to fill missing sector/country.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional

import yfinance as yf

from portsync.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ReferenceQuote:
    symbol: str
    last_price: Optional[float] = None
    previous_close: Optional[float] = None
    day_change: Optional[float] = None
    day_change_percent: Optional[float] = None
    sector: Optional[str] = None
    industry: Optional[str] = None
    country: Optional[str] = None


class ReferenceDataProvider(ABC):
    @abstractmethod
    async def get_quotes(self, symbols: List[str], exchanges: Optional[Dict[str, str]] = None) -> Dict[str, ReferenceQuote]:
        """
        Quotes keyed by the requested symbol. Symbols the provider cannot
        resolve are omitted.
        """


# Yahoo suffixes for non-US listings
YAHOO_EXCHANGE_SUFFIX = {
    "SEHK": ".HK",
    "LSE": ".L",
    "TSE": ".TO",
    "ASX": ".AX",
    "SGX": ".SI",
    "FWB": ".F",
    "SWB": ".SG",
    "JPX": ".T",
}


def to_yahoo_symbol(symbol: str, exchange: str = "") -> str:
    """Translate a gateway symbol into Yahoo's ticker convention."""
    suffix = YAHOO_EXCHANGE_SUFFIX.get((exchange or "").upper(), "")
    if suffix == ".HK" and symbol.isdigit():
        return symbol.zfill(4) + suffix
    return symbol.replace(" ", "-") + suffix


class YahooReferenceProvider(ReferenceDataProvider):
    """Yahoo Finance via yfinance; blocking calls run in a worker thread."""

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout

    async def get_quotes(self, symbols: List[str], exchanges: Optional[Dict[str, str]] = None) -> Dict[str, ReferenceQuote]:
        exchanges = exchanges or {}
        quotes: Dict[str, ReferenceQuote] = {}
        for symbol in symbols:
            yahoo_symbol = to_yahoo_symbol(symbol, exchanges.get(symbol, ""))
            try:
                info = await asyncio.wait_for(
                    asyncio.to_thread(self._fetch_info, yahoo_symbol), self.timeout
                )
            except asyncio.TimeoutError:
                logger.warning(f"Yahoo quote for {yahoo_symbol} timed out after {self.timeout}s")
                continue
            except Exception as e:
                logger.warning(f"Yahoo quote for {yahoo_symbol} failed: {e}")
                continue

            quote = self._to_quote(symbol, info)
            if quote is not None:
                quotes[symbol] = quote
        return quotes

    @staticmethod
    def _fetch_info(yahoo_symbol: str) -> dict:
        return yf.Ticker(yahoo_symbol).info or {}

    @staticmethod
    def _to_quote(symbol: str, info: dict) -> Optional[ReferenceQuote]:
        last = info.get("regularMarketPrice") or info.get("currentPrice")
        prev = info.get("regularMarketPreviousClose") or info.get("previousClose")
        if last is None and prev is None:
            return None

        change = None
        change_percent = None
        if last and prev:
            change = last - prev
            change_percent = change / prev * 100

        return ReferenceQuote(
            symbol=symbol,
            last_price=last,
            previous_close=prev,
            day_change=change,
            day_change_percent=change_percent,
            sector=info.get("sector"),
            industry=info.get("industry"),
            country=info.get("country"),
        )
