"""
Opportunity scanner: direct two-venue and three-hop triangular search.

Both scans run over an ``IndexSnapshot``. A full pass covers the whole
index; an incremental pass, triggered by one pool's state change, only
looks at routes through that pool. Opportunities above the edge threshold
are promoted to ``TradeCandidate`` objects and pushed into a bounded
``CandidateQueue`` that drops the lowest edges when full.
"""

import asyncio
import time
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from dex_arbitrage.exceptions import DataQualityError
from dex_arbitrage.utils import get_logger

from . import pricing
from .pool_index import IndexSnapshot
from .route_deduplication import create_fingerprint
from .slippage import (
    DEFAULT_LOAN_TIERS,
    estimate_slippage_pct,
    min_amount_out,
    size_loan_usd,
)
from .token_prices import TokenPriceBook
from .types import (
    DirectOpportunity,
    Opportunity,
    Pool,
    TradeCandidate,
    TriangularOpportunity,
)

logger = get_logger(__name__)


def direct_edge(price_a: float, price_b: float) -> float:
    """|pA - pB| / mean(pA, pB); zero exactly when the prices are equal."""
    mid = (price_a + price_b) / 2
    if mid <= 0:
        return 0.0
    return abs(price_a - price_b) / mid


class OpportunityScanner:
    """
    Finds direct and triangular opportunities in an index snapshot.

    Args:
        price_book: USD prices for loan sizing
        min_edge: Minimum edge as a fraction (0.0025 = 0.25%)
        loan_tokens: Tokens allowed as flash-loan assets; empty allows any
        max_notional_usd: Cap on loan size in USD
        trade_slippage_bps: Slippage used to derive minimum outputs
        loan_tiers: Loan share of liquidity by liquidity tier
    """

    def __init__(
        self,
        price_book: TokenPriceBook,
        min_edge: float = 0.0025,
        loan_tokens: Iterable[str] = (),
        max_notional_usd: float = 10_000.0,
        trade_slippage_bps: int = 100,
        loan_tiers: Sequence[Tuple[float, float]] = DEFAULT_LOAN_TIERS,
    ):
        self.price_book = price_book
        self.min_edge = min_edge
        self.loan_tokens = {t.lower() for t in loan_tokens}
        self.max_notional_usd = max_notional_usd
        self.trade_slippage_bps = trade_slippage_bps
        self.loan_tiers = loan_tiers

    @staticmethod
    def _liquid(pool: Pool, snapshot: IndexSnapshot) -> bool:
        return pool.liquidity_usd >= snapshot.min_liquidity_usd

    def orient(self, key: str) -> Tuple[str, str]:
        """(base, quote) for a pair key; the quote side is the loan asset."""
        first, second = key.split("|")
        if self.loan_tokens and first in self.loan_tokens and second not in self.loan_tokens:
            return second, first
        return first, second

    # === DIRECT ===

    def scan_direct(self, snapshot: IndexSnapshot, only_pool: Optional[str] = None) -> List[DirectOpportunity]:
        """
        Compare every venue of each pair group against its best counter-venue.

        Args:
            snapshot: Index snapshot
            only_pool: If set, only consider pairs involving this pool

        Returns:
            Opportunities whose edge exceeds ``min_edge``
        """
        found: List[DirectOpportunity] = []
        only = only_pool.lower() if only_pool else None

        for key, members in snapshot.by_pair_key.items():
            eligible = [p for p in members if self._liquid(p, snapshot)]
            if len(eligible) < 2:
                continue
            if only and all(p.address != only for p in eligible):
                continue

            base, quote = self.orient(key)
            if self.loan_tokens and quote not in self.loan_tokens:
                continue
            prices: Dict[str, float] = {}
            for p in eligible:
                price = pricing.unit_price(p, base, quote)
                if price > 0:
                    prices[p.address] = price

            emitted: Set[frozenset] = set()
            for a in eligible:
                if a.address not in prices or (only and a.address != only):
                    continue
                best: Optional[Pool] = None
                best_edge = 0.0
                for b in eligible:
                    if b.address == a.address or b.address not in prices:
                        continue
                    edge = direct_edge(prices[a.address], prices[b.address])
                    if best is None or edge > best_edge:
                        best, best_edge = b, edge

                if best is None or best_edge <= self.min_edge:
                    continue
                pair = frozenset((a.address, best.address))
                if pair in emitted:
                    continue
                emitted.add(pair)

                pa, pb = prices[a.address], prices[best.address]
                buy, sell = (a, best) if pa < pb else (best, a)
                found.append(
                    DirectOpportunity(
                        token_in=quote,
                        token_out=base,
                        venue_buy=buy,
                        venue_sell=sell,
                        price_buy=min(pa, pb),
                        price_sell=max(pa, pb),
                        edge=best_edge,
                    )
                )
        return found

    # === TRIANGULAR ===

    def scan_triangular(
        self,
        snapshot: IndexSnapshot,
        start_tokens: Optional[Iterable[str]] = None,
        only_pool: Optional[str] = None,
    ) -> List[TriangularOpportunity]:
        """
        Bounded 3-hop cycle search A -> B -> C -> A.

        Cost is O(sum over tokens of degree^2); longer cycles are never
        explored.
        """
        found: List[TriangularOpportunity] = []
        only = only_pool.lower() if only_pool else None
        seen_cycles: Set[Tuple[str, ...]] = set()

        starts = list(start_tokens) if start_tokens is not None else list(snapshot.by_token)
        for a in starts:
            a = a.lower()
            if self.loan_tokens and a not in self.loan_tokens:
                continue
            for p1 in snapshot.by_token.get(a, []):
                if not self._liquid(p1, snapshot):
                    continue
                b = p1.other(a)
                r1 = pricing.rate(p1, a, b)
                if r1 <= 0:
                    continue
                for p2 in snapshot.by_token.get(b, []):
                    if p2.address == p1.address or not self._liquid(p2, snapshot):
                        continue
                    c = p2.other(b)
                    if c == a:
                        continue
                    r2 = pricing.rate(p2, b, c)
                    if r2 <= 0:
                        continue
                    for p3 in snapshot.by_token.get(c, []):
                        if p3.address in (p1.address, p2.address) or not p3.has_token(a):
                            continue
                        if not self._liquid(p3, snapshot):
                            continue
                        if only and only not in (p1.address, p2.address, p3.address):
                            continue
                        r3 = pricing.rate(p3, c, a)
                        cycle_rate = r1 * r2 * r3
                        edge = cycle_rate - 1
                        if edge <= 0 or edge <= self.min_edge:
                            continue

                        addresses = (p1.address, p2.address, p3.address)
                        if not self.loan_tokens:
                            # One entry per directed cycle regardless of start token
                            i = addresses.index(min(addresses))
                            rotation = addresses[i:] + addresses[:i]
                            if rotation in seen_cycles:
                                continue
                            seen_cycles.add(rotation)

                        found.append(
                            TriangularOpportunity(
                                route=[a, b, c, a],
                                pools=[p1, p2, p3],
                                cycle_rate=cycle_rate,
                                edge=edge,
                            )
                        )
        return found

    # === PASSES ===

    def scan(self, snapshot: IndexSnapshot) -> List[Opportunity]:
        """Full pass; opportunities sorted by descending edge."""
        opportunities: List[Opportunity] = []
        opportunities.extend(self.scan_direct(snapshot))
        opportunities.extend(self.scan_triangular(snapshot))
        opportunities.sort(key=lambda o: o.edge, reverse=True)
        return opportunities

    def scan_pool(self, snapshot: IndexSnapshot, address: str) -> List[Opportunity]:
        """Incremental pass over routes that trade through one pool."""
        pool = snapshot.pool(address)
        if pool is None:
            return []
        opportunities: List[Opportunity] = []
        opportunities.extend(self.scan_direct(snapshot, only_pool=pool.address))
        opportunities.extend(
            self.scan_triangular(snapshot, start_tokens=pool.tokens, only_pool=pool.address)
        )
        opportunities.sort(key=lambda o: o.edge, reverse=True)
        return opportunities

    # === PROMOTION ===

    def promote(
        self, opportunity: Opportunity, gas_cost_usd: float = 0.0, now: Optional[float] = None
    ) -> Optional[TradeCandidate]:
        """
        Turn an opportunity into a sized, estimated trade candidate.

        Returns None when the edge is under threshold or the loan asset
        can't be priced or quoted (data problems fail closed).
        """
        if opportunity.edge <= self.min_edge:
            return None

        route = list(opportunity.route)
        pools = list(opportunity.pools)
        loan_asset = route[0]
        loan_decimals = pools[0].decimals_of(loan_asset)

        thinnest = min(p.liquidity_usd for p in pools)
        loan_usd = size_loan_usd(thinnest, self.max_notional_usd, self.loan_tiers)
        loan_wei = self.price_book.from_usd(loan_asset, loan_usd, loan_decimals)
        if not loan_wei or loan_wei <= 0:
            logger.debug(f"No USD price for loan asset {loan_asset}, dropping opportunity")
            return None

        try:
            expected_out = pricing.quote_route(pools, route, loan_wei)
        except (DataQualityError, ValueError) as e:
            logger.debug(f"Quote failed for {route}: {e}")
            return None

        if isinstance(opportunity, DirectOpportunity):
            cycle_rate = opportunity.price_sell / opportunity.price_buy
        else:
            cycle_rate = opportunity.cycle_rate
        slip_pct = estimate_slippage_pct(loan_wei, expected_out, loan_wei * cycle_rate)

        gross_usd = opportunity.edge * loan_usd
        profit_usd = gross_usd - gas_cost_usd - slip_pct / 100.0 * loan_usd

        return TradeCandidate(
            opportunity=opportunity,
            fingerprint=create_fingerprint(opportunity.kind, route, [p.address for p in pools]),
            loan_asset=loan_asset,
            loan_decimals=loan_decimals,
            loan_amount_usd=loan_usd,
            loan_amount_wei=loan_wei,
            expected_out_wei=expected_out,
            min_out_wei=min_amount_out(expected_out, self.trade_slippage_bps),
            estimated_slippage_pct=slip_pct,
            estimated_gas_cost_usd=gas_cost_usd,
            estimated_profit_usd=profit_usd,
            created_at=time.time() if now is None else now,
        )


class CandidateQueue:
    """
    Bounded priority queue of candidates keyed by edge.

    When full, the lowest-edge candidates are dropped first. A fingerprint
    already queued is kept once, with the higher edge winning.
    """

    def __init__(self, capacity: int = 100):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1: {capacity}")
        self.capacity = capacity
        self._items: Dict[str, TradeCandidate] = {}
        self._available = asyncio.Condition()

    def _insert(self, candidate: TradeCandidate) -> List[TradeCandidate]:
        dropped: List[TradeCandidate] = []
        existing = self._items.get(candidate.fingerprint)
        if existing is not None:
            if existing.edge >= candidate.edge:
                return [candidate]
            dropped.append(existing)

        self._items[candidate.fingerprint] = candidate
        while len(self._items) > self.capacity:
            lowest = min(self._items.values(), key=lambda c: c.edge)
            del self._items[lowest.fingerprint]
            dropped.append(lowest)
        return dropped

    async def push_many(self, candidates: Iterable[TradeCandidate]) -> List[TradeCandidate]:
        """Insert candidates; returns those dropped (including rejected newcomers)."""
        async with self._available:
            dropped: List[TradeCandidate] = []
            for candidate in candidates:
                dropped.extend(self._insert(candidate))
            if self._items:
                self._available.notify_all()
        return dropped

    async def push(self, candidate: TradeCandidate) -> List[TradeCandidate]:
        return await self.push_many([candidate])

    def get_nowait(self) -> Optional[TradeCandidate]:
        """Pop the highest-edge candidate, or None if empty."""
        if not self._items:
            return None
        best = max(self._items.values(), key=lambda c: c.edge)
        del self._items[best.fingerprint]
        return best

    async def get(self) -> TradeCandidate:
        """Wait for and pop the highest-edge candidate."""
        async with self._available:
            await self._available.wait_for(lambda: bool(self._items))
            return self.get_nowait()

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, fingerprint: str) -> bool:
        return fingerprint in self._items
