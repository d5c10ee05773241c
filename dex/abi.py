"""
Function selectors and calldata helpers for the contracts the engine reads
and calls.

Reads go through a bare ``call(address, data)`` accessor, so encoding and
decoding is done here with eth_abi rather than through web3 contract objects.
"""

from typing import Any, Sequence, Tuple

from eth_abi import decode, encode
from web3 import Web3


def selector(signature: str) -> bytes:
    """First four bytes of keccak256 of a canonical function signature."""
    return bytes(Web3.keccak(text=signature)[:4])


def encode_call(signature: str, arg_types: Sequence[str] = (), args: Sequence[Any] = ()) -> bytes:
    """
    Build calldata for ``signature`` with ABI-encoded arguments.

    Args:
        signature: Canonical signature, e.g. "balanceOf(address)"
        arg_types: ABI types of the arguments
        args: Argument values

    Returns:
        Selector followed by the encoded arguments
    """
    data = selector(signature)
    if arg_types:
        data += encode(list(arg_types), list(args))
    return data


def decode_result(result_types: Sequence[str], data: bytes) -> Tuple[Any, ...]:
    """Decode return data, raising ValueError on an empty result."""
    if not data:
        raise ValueError("Empty return data")
    return decode(list(result_types), bytes(data))


# Uniswap V2 pair
GET_RESERVES = "getReserves()"
GET_RESERVES_SELECTOR = selector(GET_RESERVES)  # 0x0902f1ac
GET_RESERVES_TYPES = ("uint112", "uint112", "uint32")

TOKEN0 = "token0()"
TOKEN0_SELECTOR = selector(TOKEN0)  # 0x0dfe1681
TOKEN1 = "token1()"

# Uniswap V3 / Kyber Elastic pool
SLOT0 = "slot0()"
SLOT0_SELECTOR = selector(SLOT0)  # 0x3850c7bd
SLOT0_TYPES = ("uint160", "int24", "uint16", "uint16", "uint16", "uint8", "bool")
LIQUIDITY = "liquidity()"

# Kyber Elastic exposes its state under different names
ELASTIC_POOL_STATE = "getPoolState()"
ELASTIC_POOL_STATE_TYPES = ("uint160", "int24", "int24", "bool")
ELASTIC_LIQUIDITY_STATE = "getLiquidityState()"
ELASTIC_LIQUIDITY_STATE_TYPES = ("uint128", "uint128", "uint128")

# Balancer vault
GET_POOL_TOKENS = "getPoolTokens(bytes32)"
GET_POOL_TOKENS_TYPES = ("address[]", "uint256[]", "uint256")

# Curve stable pool
CURVE_BALANCES = "balances(uint256)"

# ERC-20
BALANCE_OF = "balanceOf(address)"
DECIMALS = "decimals()"

# Chainlink aggregator
LATEST_ROUND_DATA = "latestRoundData()"
LATEST_ROUND_DATA_TYPES = ("uint80", "int256", "uint256", "uint256", "uint80")

# Flash-loan executor contracts (Aave and Balancer variants share the ABI)
SWAP_STEP_TYPE = (
    "(uint8,address,address[],uint24,bool,bytes,uint256,uint256,uint256,bool)"
)
EXECUTE_ARBITRAGE = f"executeArbitrage((address[],uint256[],{SWAP_STEP_TYPE}[]))"
EXECUTE_ARBITRAGE_ARG = f"(address[],uint256[],{SWAP_STEP_TYPE}[])"
