"""
In-memory index of eligible pools.

Pools are keyed by address, by unordered token pair and by token
membership. The whole index is rebuilt from the discovery feed on each
refresh cycle; confirmed swaps patch a single pool's state in place. Scans
read an ``IndexSnapshot`` so that concurrent updates never change the
structure under a running pass.
"""

import time
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Optional

from dex_arbitrage.utils import get_logger

from . import pricing
from .token_prices import TokenPriceBook
from .types import Pool

logger = get_logger(__name__)


@dataclass
class IndexSnapshot:
    """Frozen copy of the index views for one scan pass."""

    by_address: Dict[str, Pool]
    by_pair_key: Dict[str, List[Pool]]
    by_token: Dict[str, List[Pool]]
    min_liquidity_usd: float
    taken_at: float

    def pool(self, address: str) -> Optional[Pool]:
        return self.by_address.get(address.lower())

    def __len__(self) -> int:
        return len(self.by_address)


class PoolIndex:
    """
    Holds the latest state of every pool that passed the liquidity filter.

    Args:
        price_book: USD prices used for the liquidity filter
        min_liquidity_usd: Pools below this combined USD value are excluded
    """

    def __init__(self, price_book: TokenPriceBook, min_liquidity_usd: float = 300_000.0):
        self.price_book = price_book
        self.min_liquidity_usd = min_liquidity_usd
        self.by_address: Dict[str, Pool] = {}
        self.by_pair_key: Dict[str, List[Pool]] = {}
        self.by_token: Dict[str, List[Pool]] = {}
        self.excluded: Dict[str, str] = {}
        self.last_rebuild: float = 0.0

    def _eligible(self, pool: Pool, prices: Dict[str, float]) -> Optional[str]:
        """Return an exclusion reason, or None if the pool may be indexed."""
        if pool.token0 == pool.token1:
            return "same_token"
        pool.liquidity_usd = pricing.liquidity_usd(pool, prices)
        if pool.liquidity_usd <= 0:
            return "unpriced"
        if pool.liquidity_usd < self.min_liquidity_usd:
            return "low_liquidity"
        return None

    def rebuild(self, pools: Iterable[Pool]) -> int:
        """
        Replace the index contents with ``pools`` that pass the filter.

        Returns:
            Number of pools indexed
        """
        prices = self.price_book.snapshot()
        by_address: Dict[str, Pool] = {}
        by_pair_key: Dict[str, List[Pool]] = {}
        by_token: Dict[str, List[Pool]] = {}
        excluded: Dict[str, str] = {}

        for pool in pools:
            reason = self._eligible(pool, prices)
            if reason:
                excluded[pool.address] = reason
                continue
            if pool.address in by_address:
                continue
            by_address[pool.address] = pool
            by_pair_key.setdefault(pool.key, []).append(pool)
            for token in pool.tokens:
                by_token.setdefault(token, []).append(pool)

        # Swap in the new views together
        self.by_address = by_address
        self.by_pair_key = by_pair_key
        self.by_token = by_token
        self.excluded = excluded
        self.last_rebuild = time.time()

        logger.info(
            f"Pool index rebuilt: {len(by_address)} eligible, {len(excluded)} excluded "
            f"(min liquidity ${self.min_liquidity_usd:,.0f})"
        )
        return len(by_address)

    def apply_update(
        self,
        address: str,
        reserve0: Optional[int] = None,
        reserve1: Optional[int] = None,
        liquidity: Optional[int] = None,
        sqrt_price_x96: Optional[int] = None,
    ) -> Optional[Pool]:
        """
        Patch one pool's state in place after a confirmed swap.

        The pool's USD liquidity is recomputed; the pool stays in the views
        and the scanner re-checks liquidity at scan time.

        Returns:
            The updated pool, or None if it isn't indexed
        """
        pool = self.by_address.get(address.lower())
        if pool is None:
            return None

        if reserve0 is not None:
            pool.reserve0 = int(reserve0)
        if reserve1 is not None:
            pool.reserve1 = int(reserve1)
        if liquidity is not None:
            pool.liquidity = int(liquidity)
        if sqrt_price_x96 is not None:
            pool.sqrt_price_x96 = int(sqrt_price_x96)
        pool.updated_at = time.time()
        pool.liquidity_usd = pricing.liquidity_usd(pool, self.price_book.snapshot())
        return pool

    def snapshot(self) -> IndexSnapshot:
        """Consistent copy of the views; pools are copied so later patches don't leak in."""
        copies = {addr: replace(pool) for addr, pool in self.by_address.items()}
        by_pair_key = {
            key: [copies[p.address] for p in pools] for key, pools in self.by_pair_key.items()
        }
        by_token = {
            token: [copies[p.address] for p in pools] for token, pools in self.by_token.items()
        }
        return IndexSnapshot(
            by_address=copies,
            by_pair_key=by_pair_key,
            by_token=by_token,
            min_liquidity_usd=self.min_liquidity_usd,
            taken_at=time.time(),
        )

    def pools(self) -> List[Pool]:
        return list(self.by_address.values())

    def __len__(self) -> int:
        return len(self.by_address)

    def __contains__(self, address: str) -> bool:
        return address.lower() in self.by_address

    def get_stats(self) -> Dict[str, int]:
        """Get current statistics."""
        return {
            "pools": len(self.by_address),
            "pair_groups": len(self.by_pair_key),
            "tokens": len(self.by_token),
            "excluded": len(self.excluded),
        }
