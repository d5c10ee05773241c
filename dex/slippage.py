"""
Slippage bounds and trade sizing for DEX arbitrage.

Everything that ends up in a transaction is integer math on base units.
Percentages are only used to scale those integers.
"""

from typing import Sequence, Tuple

BPS = 10_000

# (min thinnest-pool liquidity USD, loan share of that liquidity)
DEFAULT_LOAN_TIERS: Tuple[Tuple[float, float], ...] = (
    (500_000.0, 0.005),
    (200_000.0, 0.008),
    (0.0, 0.02),
)


def min_amount_out(amount: int, slippage_bps: int) -> int:
    """
    Minimum acceptable output for an expected ``amount``.

    minOut = amount * (10000 - slippageBps) // 10000

    Raises:
        ValueError: If slippage is outside [0, 10000)
    """
    if slippage_bps < 0 or slippage_bps >= BPS:
        raise ValueError(f"slippage_bps must be in [0, 10000): {slippage_bps}")
    return amount * (BPS - slippage_bps) // BPS


def slippage_gap_bps(expected_out: int, min_out: int) -> int:
    """
    Gap between expected and minimum output in basis points (floor).

    Callers must reject ``expected_out <= 0`` and ``min_out > expected_out``
    before using the value.
    """
    return (expected_out - min_out) * BPS // expected_out


def safe_trade_amount(reserve_in: int, desired: int, slippage_pct: int = 1) -> int:
    """
    Clamp ``desired`` to what a venue can absorb at ``slippage_pct``.

    safe = reserveIn * (100 - pct) // 100, then min(safe, desired).
    """
    pct = max(0, min(99, int(slippage_pct)))
    safe = reserve_in * (100 - pct) // 100
    return min(safe, desired)


def loan_share(liquidity_usd: float, tiers: Sequence[Tuple[float, float]] = DEFAULT_LOAN_TIERS) -> float:
    """Fraction of pool liquidity to borrow; deeper pools get a smaller share."""
    for threshold, share in tiers:
        if liquidity_usd >= threshold:
            return share
    return tiers[-1][1]


def size_loan_usd(
    thinnest_liquidity_usd: float,
    max_notional_usd: float,
    tiers: Sequence[Tuple[float, float]] = DEFAULT_LOAN_TIERS,
) -> float:
    """
    USD notional to borrow for a route.

    Args:
        thinnest_liquidity_usd: Smallest USD liquidity among the route's pools
        max_notional_usd: Configured cap on notional

    Returns:
        Loan size in USD
    """
    if thinnest_liquidity_usd <= 0:
        return 0.0
    return min(thinnest_liquidity_usd * loan_share(thinnest_liquidity_usd, tiers), max_notional_usd)


def estimate_slippage_pct(amount_in: int, amount_out: int, spot_out: float) -> float:
    """
    Percent shortfall of a quoted output versus its spot-price output.

    Includes pool fees and price impact.
    """
    if amount_in <= 0 or spot_out <= 0:
        return 0.0
    shortfall = max(0.0, spot_out - amount_out)
    return shortfall / spot_out * 100.0

