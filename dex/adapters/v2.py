"""
Uniswap V2 style adapter for constant-product AMM pools.

Implements reserve fetching and swap simulation using the x*y=k formula
with fees embedded in the swap calculation. All amounts are integers in
token base units; floats only appear in spot prices used for ranking.
"""

from typing import Tuple

from .. import abi
from ..chain import ReadAccessor

FEE_DENOMINATOR = 10_000
DEFAULT_FEE_BPS = 30


def get_amount_out(
    amount_in: int, reserve_in: int, reserve_out: int, fee_bps: int = DEFAULT_FEE_BPS
) -> int:
    """
    Calculate output amount for a V2 swap using constant-product formula.

    Formula (with fee embedded):
        amountInWithFee = amountIn * (10000 - feeBps)
        amountOut = amountInWithFee * reserveOut / (reserveIn * 10000 + amountInWithFee)

    Args:
        amount_in: Input token amount (base units)
        reserve_in: Reserve of input token
        reserve_out: Reserve of output token
        fee_bps: Fee in basis points (30 = 0.3%)

    Returns:
        Output token amount (base units, rounded down)

    Raises:
        ValueError: If inputs are invalid (negative, zero reserves, etc.)
    """
    if amount_in <= 0:
        raise ValueError(f"amount_in must be positive: {amount_in}")
    if reserve_in <= 0 or reserve_out <= 0:
        raise ValueError(
            f"Reserves must be positive: in={reserve_in}, out={reserve_out}"
        )
    if fee_bps < 0 or fee_bps >= FEE_DENOMINATOR:
        raise ValueError(f"Fee must be in [0, 10000) bps: {fee_bps}")

    amount_in_with_fee = amount_in * (FEE_DENOMINATOR - fee_bps)
    numerator = amount_in_with_fee * reserve_out
    denominator = reserve_in * FEE_DENOMINATOR + amount_in_with_fee
    return numerator // denominator


def reserve_price(reserve_base: int, reserve_quote: int, decimals_base: int, decimals_quote: int) -> float:
    """Quote-per-base spot price from raw balances, adjusted for decimals."""
    if reserve_base <= 0 or reserve_quote <= 0:
        return 0.0
    base = reserve_base / 10**decimals_base
    quote = reserve_quote / 10**decimals_quote
    return quote / base


async def fetch_reserves(accessor: ReadAccessor, pair_addr: str) -> Tuple[int, int]:
    """
    Fetch reserves from a Uniswap V2 style pair.

    Args:
        accessor: Read accessor (already limited and retried by the caller)
        pair_addr: Address of the pair contract

    Returns:
        Tuple of (reserve0, reserve1)
    """
    data = await accessor.call(pair_addr, abi.encode_call(abi.GET_RESERVES))
    r0, r1, _ = abi.decode_result(abi.GET_RESERVES_TYPES, data)
    return int(r0), int(r1)
