"""
USD price book for tokens, fed by Chainlink-style aggregators.

The book is an explicit object owned by the engine and passed to the
components that need USD values (pool index liquidity filter, loan sizing,
profit check). Stablecoins are pinned at 1.0. Feed answers that are stale
or non-positive are rejected rather than used, and a cached price stops
being served once its oracle timestamp is older than the staleness limit.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from dex_arbitrage.exceptions import DataQualityError
from dex_arbitrage.utils import get_logger

from . import abi
from .chain import ReadAccessor

logger = get_logger(__name__)


@dataclass
class PriceEntry:
    """A cached price; ``updated_at`` is the source's own timestamp, ``fetched_at`` our read time."""

    price_usd: float
    updated_at: float
    source: str
    fetched_at: float = 0.0


class TokenPriceBook:
    """
    Token address -> USD price, with per-entry freshness.

    Args:
        stable_tokens: Addresses priced at exactly 1 USD
        feeds: Token address -> aggregator address
        staleness_seconds: Maximum age of a price, measured from the source's
            timestamp; 0 disables the limit
        cache_ttl_seconds: How long a fetched answer is reused without re-reading
    """

    def __init__(
        self,
        stable_tokens: Iterable[str] = (),
        feeds: Optional[Dict[str, str]] = None,
        staleness_seconds: float = 180.0,
        cache_ttl_seconds: float = 30.0,
    ):
        self.stable_tokens = {t.lower() for t in stable_tokens}
        self.feeds = {k.lower(): v for k, v in (feeds or {}).items()}
        self.staleness_seconds = staleness_seconds
        self.cache_ttl_seconds = cache_ttl_seconds
        self._entries: Dict[str, PriceEntry] = {}
        self._feed_decimals: Dict[str, int] = {}

    def set_price(self, token: str, price_usd: float, source: str = "manual", updated_at: Optional[float] = None):
        """Record a price; non-positive prices are rejected."""
        if price_usd is None or price_usd <= 0:
            raise DataQualityError(
                f"Refusing non-positive price {price_usd}", source=source, token=token
            )
        now = time.time()
        self._entries[token.lower()] = PriceEntry(
            price_usd=float(price_usd),
            updated_at=now if updated_at is None else updated_at,
            source=source,
            fetched_at=now,
        )

    def _fresh(self, entry: PriceEntry, now: float) -> bool:
        return self.staleness_seconds <= 0 or now - entry.updated_at <= self.staleness_seconds

    def price(self, token: str, now: Optional[float] = None) -> Optional[float]:
        """Last known USD price, or None if unknown or older than the staleness limit."""
        t = token.lower()
        if t in self.stable_tokens:
            return 1.0
        entry = self._entries.get(t)
        if entry is None:
            return None
        if not self._fresh(entry, time.time() if now is None else now):
            return None
        return entry.price_usd

    def snapshot(self, now: Optional[float] = None) -> Dict[str, float]:
        """Plain token -> price map of fresh prices for pure functions."""
        now = time.time() if now is None else now
        prices = {t: e.price_usd for t, e in self._entries.items() if self._fresh(e, now)}
        for t in self.stable_tokens:
            prices[t] = 1.0
        return prices

    def to_usd(self, token: str, amount_wei: int, decimals: int) -> Optional[float]:
        price = self.price(token)
        if price is None:
            return None
        return amount_wei / 10**decimals * price

    def from_usd(self, token: str, amount_usd: float, decimals: int) -> Optional[int]:
        price = self.price(token)
        if not price:
            return None
        return int(amount_usd / price * 10**decimals)

    async def fetch_feed_price(self, accessor: ReadAccessor, token: str, now: Optional[float] = None) -> float:
        """
        Read the token's aggregator and return a fresh USD price.

        Args:
            accessor: Read accessor
            token: Token address
            now: Current Unix time (for tests)

        Returns:
            USD price

        Raises:
            DataQualityError: No feed, stale answer or non-positive answer
        """
        t = token.lower()
        if t in self.stable_tokens:
            return 1.0

        now = time.time() if now is None else now
        cached = self._entries.get(t)
        if (
            cached
            and cached.source == "feed"
            and now - cached.fetched_at < self.cache_ttl_seconds
            and self._fresh(cached, now)
        ):
            return cached.price_usd

        feed = self.feeds.get(t)
        if not feed:
            raise DataQualityError(f"No price feed for {token}", source="chainlink", token=token)

        if feed not in self._feed_decimals:
            raw = await accessor.call(feed, abi.encode_call(abi.DECIMALS))
            (decimals,) = abi.decode_result(("uint8",), raw)
            self._feed_decimals[feed] = min(36, int(decimals))

        raw = await accessor.call(feed, abi.encode_call(abi.LATEST_ROUND_DATA))
        _, answer, _, updated_at, _ = abi.decode_result(abi.LATEST_ROUND_DATA_TYPES, raw)

        if answer <= 0:
            raise DataQualityError(
                f"Non-positive feed answer {answer} for {token}", source=feed, token=token
            )
        age = now - int(updated_at)
        if self.staleness_seconds > 0 and age > self.staleness_seconds:
            raise DataQualityError(
                f"Stale feed for {token}: updated {age:.0f}s ago",
                source=feed,
                token=token,
                details={"age_seconds": age, "limit_seconds": self.staleness_seconds},
            )

        price = int(answer) / 10 ** self._feed_decimals[feed]
        self._entries[t] = PriceEntry(
            price_usd=price, updated_at=float(updated_at), source="feed", fetched_at=now
        )
        return price

    def expire(self, now: Optional[float] = None) -> int:
        """Drop entries past the staleness limit; returns how many were dropped."""
        now = time.time() if now is None else now
        stale = [t for t, e in self._entries.items() if not self._fresh(e, now)]
        for t in stale:
            del self._entries[t]
        return len(stale)

    async def refresh(self, accessor: ReadAccessor, now: Optional[float] = None) -> int:
        """
        Refresh every configured feed concurrently.

        A feed that fails keeps its previous entry only while that entry is
        within the staleness limit. Returns the number of feeds refreshed.
        """
        now = time.time() if now is None else now
        tokens = list(self.feeds)
        results = await asyncio.gather(
            *(self.fetch_feed_price(accessor, t, now=now) for t in tokens), return_exceptions=True
        )
        refreshed = 0
        for token, result in zip(tokens, results):
            if isinstance(result, BaseException):
                logger.warning(f"Price feed refresh failed for {token}: {result}")
            else:
                refreshed += 1
        expired = self.expire(now)
        if expired:
            logger.warning(f"Dropped {expired} stale prices")
        return refreshed
