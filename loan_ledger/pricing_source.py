"""
pricing_source.py - Price oracles for loan valuation

Classes:
- StaticPriceOracle: Fixed prices, time-independent (tests, demos)
- FallbackPriceOracle: Primary source, then fallback source, behind a short
  cache; serves the last cached price if every source fails

Both implement the PriceOracle protocol from collaborators.py. Prices are
quoted in USD; pairs are written "ASSET/USD".
"""

from __future__ import annotations
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, Optional, Sequence
import logging

from cachetools import TTLCache

from .collaborators import PriceOracle, PriceQuote
from .core import OracleCollaboratorError, to_decimal, utc_now

logger = logging.getLogger(__name__)


def normalize_pair(asset_or_pair: str, quote: str = "USD") -> str:
    """'eth' -> 'ETH/USD'; 'link/usd' -> 'LINK/USD'."""
    text = asset_or_pair.strip().upper()
    if "/" in text:
        return text
    return f"{text}/{quote}"


class StaticPriceOracle:
    """
    Oracle with static prices.

    The quote currency itself always prices at 1.
    """

    def __init__(
        self,
        prices: Dict[str, Decimal],
        quote_currency: str = "USD",
        clock: Optional[Callable[[], datetime]] = None,
        source: str = "static",
    ):
        self.quote_currency = quote_currency
        self.source = source
        self._clock = clock or utc_now
        self.prices: Dict[str, Decimal] = {
            normalize_pair(k, quote_currency): to_decimal(v) for k, v in prices.items()
        }
        self.prices[f"{quote_currency}/{quote_currency}"] = Decimal("1")

    async def current_price(self, asset_pair: str) -> PriceQuote:
        pair = normalize_pair(asset_pair, self.quote_currency)
        price = self.prices.get(pair)
        if price is None:
            raise OracleCollaboratorError(f"No price for {pair}", code="unknown_pair")
        return PriceQuote(price=price, timestamp=self._clock(), source=self.source)

    def update_price(self, asset_pair: str, price: Decimal) -> None:
        self.prices[normalize_pair(asset_pair, self.quote_currency)] = to_decimal(price)

    def __repr__(self):
        return f"StaticPriceOracle({len(self.prices)} prices, quote={self.quote_currency})"


class FallbackPriceOracle:
    """
    Oracle chaining several sources behind a short-lived cache.

    Lookup order per call:
        1. Quote still in the TTL cache (source "cache")
        2. Each source in order; the first success is cached and returned
        3. The last known quote of any age (source "cache_fallback")
        4. OracleCollaboratorError

    The cache runs on the injected clock, so tests can expire it by
    advancing time.
    """

    def __init__(
        self,
        sources: Sequence[PriceOracle],
        cache_ttl: timedelta = timedelta(seconds=1),
        clock: Optional[Callable[[], datetime]] = None,
        cache_size: int = 256,
    ):
        if not sources:
            raise ValueError("FallbackPriceOracle needs at least one source")
        self.sources = list(sources)
        self.cache_ttl = cache_ttl
        self._clock = clock or utc_now
        self._cache: TTLCache = TTLCache(
            maxsize=cache_size,
            ttl=cache_ttl.total_seconds(),
            timer=lambda: self._clock().timestamp(),
        )
        self._last_known: Dict[str, PriceQuote] = {}

    async def current_price(self, asset_pair: str) -> PriceQuote:
        pair = normalize_pair(asset_pair)
        now = self._clock()

        cached = self._cache.get(pair)
        if cached is not None:
            return PriceQuote(price=cached.price, timestamp=now, source="cache")

        errors = []
        for source in self.sources:
            try:
                quote = await source.current_price(pair)
            except Exception as exc:
                errors.append(f"{type(source).__name__}: {exc}")
                logger.warning("Price source %s failed for %s: %s", type(source).__name__, pair, exc)
                continue
            self._cache[pair] = quote
            self._last_known[pair] = quote
            return quote

        last = self._last_known.get(pair)
        if last is not None:
            logger.warning("All price sources failed for %s, serving last known price from %s",
                           pair, last.timestamp.isoformat())
            return PriceQuote(price=last.price, timestamp=now, source="cache_fallback")

        raise OracleCollaboratorError(
            f"No price available for {pair}: {'; '.join(errors)}",
            code="unavailable",
            retryable=True,
        )

    def __repr__(self):
        return f"FallbackPriceOracle({len(self.sources)} sources, ttl={self.cache_ttl})"
