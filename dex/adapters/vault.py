"""
Balancer vault and Curve stable-pool adapters.

Both are priced from their token balances with a proportional-swap
approximation instead of the weighted or stable invariant. Profit
estimates on these venues are best-effort.
"""

from typing import Tuple

from .. import abi
from ..chain import ReadAccessor
from ..types import Pool


def proportional_amount_out(
    amount_in: int, reserve_in: int, reserve_out: int, fee_bps: int = 0
) -> int:
    """amountOut = amountIn' * reserveOut / (reserveIn + amountIn') with amountIn' net of fee."""
    if amount_in <= 0:
        raise ValueError(f"amount_in must be positive: {amount_in}")
    if reserve_in <= 0 or reserve_out <= 0:
        raise ValueError(
            f"Reserves must be positive: in={reserve_in}, out={reserve_out}"
        )
    net_in = amount_in * (10_000 - fee_bps) // 10_000
    return net_in * reserve_out // (reserve_in + net_in)


def pool_id_bytes(pool_id: str) -> bytes:
    """Balancer pool id as the 32 raw bytes the vault expects."""
    raw = bytes.fromhex(pool_id[2:] if pool_id.startswith("0x") else pool_id)
    if len(raw) != 32:
        raise ValueError(f"Balancer pool id must be 32 bytes, got {len(raw)}")
    return raw


async def fetch_vault_balances(accessor: ReadAccessor, vault_addr: str, pool: Pool) -> Tuple[int, int]:
    """
    Read the pool's balances for token0/token1 from the Balancer vault.

    Args:
        accessor: Read accessor
        vault_addr: Vault contract address
        pool: Pool whose ``pool_id`` identifies it in the vault

    Returns:
        Tuple of (reserve0, reserve1)

    Raises:
        ValueError: If the pool has no id or the vault doesn't list a token
    """
    if not pool.pool_id:
        raise ValueError(f"Vault pool {pool.address} has no pool_id")
    data = await accessor.call(
        vault_addr,
        abi.encode_call(abi.GET_POOL_TOKENS, ["bytes32"], [pool_id_bytes(pool.pool_id)]),
    )
    tokens, balances, _ = abi.decode_result(abi.GET_POOL_TOKENS_TYPES, data)
    by_token = {t.lower(): int(b) for t, b in zip(tokens, balances)}
    if pool.token0 not in by_token or pool.token1 not in by_token:
        raise ValueError(f"Vault pool {pool.pool_id} does not hold both tokens")
    return by_token[pool.token0], by_token[pool.token1]


async def fetch_curve_balances(accessor: ReadAccessor, pool: Pool) -> Tuple[int, int]:
    """Read ``balances(i)`` for the pool's two coin indices."""
    out = []
    for index in (pool.coin_index0, pool.coin_index1):
        data = await accessor.call(
            pool.address, abi.encode_call(abi.CURVE_BALANCES, ["uint256"], [index])
        )
        (balance,) = abi.decode_result(("uint256",), data)
        out.append(int(balance))
    return out[0], out[1]
