"""
Venue price model: one pricing and quoting rule per venue kind.

``unit_price`` returns a float used only for comparing and ranking venues.
``quote`` works in integer base units and is what minimum-output bounds are
derived from. Dispatch is by ``VenueKind``; every kind must have an entry in
both tables, checked at import time.
"""

from typing import Callable, Dict, Optional

from dex_arbitrage.exceptions import DataQualityError, UnsupportedVenueError

from .adapters import v2, v3, vault
from .types import Pool, VenueKind


def _reserve_pair(pool: Pool):
    """(reserve0, reserve1) for any venue, virtual for concentrated pools."""
    if pool.kind.is_concentrated:
        return v3.virtual_reserves(pool.liquidity, pool.sqrt_price_x96)
    return pool.reserve0, pool.reserve1


# --- per-kind spot prices: token1 per token0, decimals adjusted ---

def _price_reserves(pool: Pool) -> float:
    return v2.reserve_price(pool.reserve0, pool.reserve1, pool.decimals0, pool.decimals1)


def _price_sqrt(pool: Pool) -> float:
    return v3.sqrt_price_to_price(pool.sqrt_price_x96, pool.decimals0, pool.decimals1)


_SPOT_PRICERS: Dict[VenueKind, Callable[[Pool], float]] = {
    VenueKind.CONSTANT_PRODUCT_V2: _price_reserves,
    VenueKind.CONCENTRATED_V3: _price_sqrt,
    VenueKind.ELASTIC_V3: _price_sqrt,
    VenueKind.WEIGHTED_VAULT: _price_reserves,
    VenueKind.STABLE_SWAP: _price_reserves,
}


# --- per-kind quotes ---

def _quote_constant_product(pool: Pool, amount_in: int, reserve_in: int, reserve_out: int) -> int:
    return v2.get_amount_out(amount_in, reserve_in, reserve_out, pool.fee_bps)


def _quote_proportional(pool: Pool, amount_in: int, reserve_in: int, reserve_out: int) -> int:
    return vault.proportional_amount_out(amount_in, reserve_in, reserve_out, pool.fee_bps)


_QUOTERS: Dict[VenueKind, Callable[[Pool, int, int, int], int]] = {
    VenueKind.CONSTANT_PRODUCT_V2: _quote_constant_product,
    # Liquidity-derived virtual reserves stand in for tick math
    VenueKind.CONCENTRATED_V3: _quote_constant_product,
    VenueKind.ELASTIC_V3: _quote_constant_product,
    VenueKind.WEIGHTED_VAULT: _quote_proportional,
    VenueKind.STABLE_SWAP: _quote_proportional,
}

_missing = (set(VenueKind) - set(_SPOT_PRICERS)) | (set(VenueKind) - set(_QUOTERS))
if _missing:
    raise UnsupportedVenueError(f"No pricing rule for venue kinds: {sorted(_missing)}")


def _dispatch(table: Dict[VenueKind, Callable], pool: Pool) -> Callable:
    try:
        return table[pool.kind]
    except KeyError:
        raise UnsupportedVenueError(
            f"Unsupported venue kind {pool.kind!r}", source=pool.address
        ) from None


def unit_price(pool: Pool, base: str, quote: str) -> float:
    """
    Price of one whole ``base`` token in ``quote`` tokens on ``pool``.

    Args:
        pool: Venue holding both tokens
        base: Token being priced
        quote: Token the price is expressed in

    Returns:
        Price as float, or 0.0 if the pool has no usable state or does not
        hold the requested pair
    """
    b, q = base.lower(), quote.lower()
    spot = _dispatch(_SPOT_PRICERS, pool)(pool)
    if spot <= 0:
        return 0.0
    if b == pool.token0 and q == pool.token1:
        return spot
    if b == pool.token1 and q == pool.token0:
        return 1.0 / spot
    return 0.0


def rate(pool: Pool, token_from: str, token_to: str) -> float:
    """Spot conversion rate for one hop; alias of ``unit_price``."""
    return unit_price(pool, token_from, token_to)


def quote(pool: Pool, amount_in: int, token_in: str) -> int:
    """
    Integer output for swapping ``amount_in`` of ``token_in`` through ``pool``.

    Raises:
        DataQualityError: If the pool has no usable reserves for the quote
        UnsupportedVenueError: If the venue kind has no quoting rule
    """
    quoter = _dispatch(_QUOTERS, pool)
    r0, r1 = _reserve_pair(pool)
    t = token_in.lower()
    if t == pool.token0:
        reserve_in, reserve_out = r0, r1
    elif t == pool.token1:
        reserve_in, reserve_out = r1, r0
    else:
        raise DataQualityError(
            f"Token {token_in} not in pool {pool.address}", source=pool.address, token=token_in
        )
    if reserve_in <= 0 or reserve_out <= 0:
        raise DataQualityError(
            f"Pool {pool.address} has no usable reserves", source=pool.address
        )
    return quoter(pool, amount_in, reserve_in, reserve_out)


def quote_route(pools, route, amount_in: int) -> int:
    """Chain ``quote`` over consecutive hops of ``route`` (len(route) == len(pools) + 1)."""
    amount = amount_in
    for pool, token_in in zip(pools, route[:-1]):
        amount = quote(pool, amount, token_in)
        if amount <= 0:
            return 0
    return amount


def token_balances(pool: Pool) -> Dict[str, int]:
    """Raw balances (virtual for concentrated pools) keyed by token address."""
    r0, r1 = _reserve_pair(pool)
    return {pool.token0: r0, pool.token1: r1}


def liquidity_usd(pool: Pool, prices: Dict[str, float]) -> float:
    """
    Combined USD value of a pool's two sides.

    When only one side has a USD price the other side is valued through the
    pool's own spot price, so the result is twice the priced side.
    """
    balances = token_balances(pool)
    values: Dict[str, Optional[float]] = {}
    for token, raw in balances.items():
        price = prices.get(token)
        decimals = pool.decimals_of(token)
        values[token] = (raw / 10**decimals) * price if price and price > 0 else None

    known = [v for v in values.values() if v is not None]
    if not known:
        return 0.0
    if len(known) == 2:
        return known[0] + known[1]
    return 2 * known[0]
