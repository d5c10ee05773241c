"""
Uniswap V3 / Kyber Elastic adapter for concentrated-liquidity pools.

Spot prices come from the square-root price. Quotes use the virtual
reserves implied by the active liquidity and feed them to the
constant-product formula, which ignores tick crossings. That makes large
quotes optimistic; the slippage guard bounds the resulting error.
"""

from math import isqrt
from typing import List, Tuple

from web3 import Web3

from .. import abi
from ..chain import ReadAccessor

Q96 = 2**96

# Common V3 fee tiers (in hundredths of a basis point)
V3_FEE_TIERS = {
    "LOWEST": 100,  # 0.01%
    "LOW": 500,  # 0.05%
    "MEDIUM": 3000,  # 0.30%
    "HIGH": 10000,  # 1.00%
}


def sqrt_price_to_price(sqrt_price_x96: int, decimals0: int, decimals1: int) -> float:
    """
    Token1-per-token0 price from a Q64.96 square-root price.

    price = (sqrtPriceX96 / 2^96)^2 * 10^(decimals0 - decimals1)
    """
    if sqrt_price_x96 <= 0:
        return 0.0
    ratio = (sqrt_price_x96 / Q96) ** 2
    return ratio * 10 ** (decimals0 - decimals1)


def virtual_reserves(liquidity: int, sqrt_price_x96: int) -> Tuple[int, int]:
    """
    Virtual (reserve0, reserve1) of the active range.

    x = L * 2^96 / sqrtP and y = L * sqrtP / 2^96, in integer math.
    """
    if liquidity <= 0 or sqrt_price_x96 <= 0:
        return 0, 0
    reserve0 = liquidity * Q96 // sqrt_price_x96
    reserve1 = liquidity * sqrt_price_x96 // Q96
    return reserve0, reserve1


def price_to_sqrt_price_x96(price: float, decimals0: int = 18, decimals1: int = 18) -> int:
    """Inverse of ``sqrt_price_to_price``; handy for seeding pool state."""
    raw = price / 10 ** (decimals0 - decimals1)
    # Scale before the integer square root to keep precision
    scaled = int(raw * 2**128)
    return isqrt(scaled) * Q96 // 2**64


def fee_bps_to_tier(fee_bps: int) -> int:
    """Convert a fee in basis points to a V3 fee tier (hundredths of a bip)."""
    return int(fee_bps) * 100


def encode_v3_path(tokens: List[str], fees: List[int]) -> bytes:
    """
    Encode a Uniswap V3 swap path.

    V3 paths are encoded as: token0 (20 bytes) | fee0 (3 bytes) | token1 (20 bytes) | ...

    Args:
        tokens: Token addresses along the path
        fees: Fee tiers between consecutive tokens (e.g., [3000] for 0.3%)

    Returns:
        Packed path bytes

    Raises:
        ValueError: If the lengths don't line up or a fee doesn't fit 3 bytes
    """
    if len(tokens) < 2 or len(fees) != len(tokens) - 1:
        raise ValueError(
            f"Path needs n tokens and n-1 fees, got {len(tokens)} tokens, {len(fees)} fees"
        )

    path = b""
    for i, token in enumerate(tokens):
        if not Web3.is_address(token):
            raise ValueError(f"Invalid token address in path: {token}")
        path += bytes.fromhex(token[2:] if token.startswith("0x") else token)
        if i < len(fees):
            fee = int(fees[i])
            if fee < 0 or fee >= 2**24:
                raise ValueError(f"Fee tier does not fit uint24: {fee}")
            path += fee.to_bytes(3, "big")
    return path


async def fetch_state(accessor: ReadAccessor, pool_addr: str) -> Tuple[int, int]:
    """
    Fetch (sqrt_price_x96, liquidity) from a Uniswap V3 pool.

    Args:
        accessor: Read accessor
        pool_addr: Pool contract address

    Returns:
        Tuple of (sqrt_price_x96, liquidity)
    """
    slot0 = await accessor.call(pool_addr, abi.encode_call(abi.SLOT0))
    liq = await accessor.call(pool_addr, abi.encode_call(abi.LIQUIDITY))
    sqrt_price_x96 = abi.decode_result(abi.SLOT0_TYPES, slot0)[0]
    (liquidity,) = abi.decode_result(("uint128",), liq)
    return int(sqrt_price_x96), int(liquidity)


async def fetch_elastic_state(accessor: ReadAccessor, pool_addr: str) -> Tuple[int, int]:
    """Fetch (sqrt_price_x96, liquidity) from a Kyber Elastic pool."""
    state = await accessor.call(pool_addr, abi.encode_call(abi.ELASTIC_POOL_STATE))
    liq = await accessor.call(pool_addr, abi.encode_call(abi.ELASTIC_LIQUIDITY_STATE))
    sqrt_price_x96 = abi.decode_result(abi.ELASTIC_POOL_STATE_TYPES, state)[0]
    base_l, reinvest_l, _ = abi.decode_result(abi.ELASTIC_LIQUIDITY_STATE_TYPES, liq)
    return int(sqrt_price_x96), int(base_l) + int(reinvest_l)
