"""Tests for the pool discovery feed and on-chain refresh."""

import json

import pytest
from eth_abi import encode

from dex import abi
from dex.adapters.v3 import Q96
from dex.discovery import JsonPoolFeed, OnChainPoolRefresher, pool_from_record
from dex.types import VenueKind
from web3 import Web3
from fakes import (
    BALANCER_VAULT,
    DAI,
    POOL_A,
    POOL_B,
    POOL_C,
    POOL_D,
    USDC,
    WETH,
    FakeAccessor,
    encode_reserves,
    encode_uint,
    v2_pool,
)

POOL_ID = "0x" + "0b" * 32


class TestPoolFromRecord:
    def test_v2_record(self):
        pool = pool_from_record(
            {"type": "uniswapv2", "address": POOL_A.upper(), "token0": USDC, "token1": DAI, "decimals0": 6, "router": "0xR"}
        )
        assert pool.kind == VenueKind.CONSTANT_PRODUCT_V2
        assert pool.address == POOL_A
        assert pool.decimals0 == 6
        assert pool.fee_bps == 30
        assert pool.router == "0xr"

    def test_v3_fee_tier_converted(self):
        pool = pool_from_record({"kind": "v3", "address": POOL_B, "token0": USDC, "token1": WETH, "fee": 500})
        assert pool.fee_bps == 5

    def test_explicit_fee_bps_wins(self):
        pool = pool_from_record(
            {"kind": "v3", "address": POOL_B, "token0": USDC, "token1": WETH, "fee": 500, "fee_bps": 1}
        )
        assert pool.fee_bps == 1

    def test_vault_defaults_to_zero_fee(self):
        pool = pool_from_record(
            {"kind": "balancer", "address": POOL_C, "token0": USDC, "token1": DAI, "pool_id": POOL_ID}
        )
        assert pool.fee_bps == 0
        assert pool.pool_id == POOL_ID

    @pytest.mark.parametrize(
        "record",
        [
            {"kind": "v2", "token0": USDC, "token1": DAI},
            {"kind": "orderbook", "address": POOL_A, "token0": USDC, "token1": DAI},
            {"address": POOL_A, "token0": USDC, "token1": DAI},
        ],
    )
    def test_malformed(self, record):
        with pytest.raises((KeyError, ValueError)):
            pool_from_record(record)


class TestJsonPoolFeed:
    def test_json_list_with_bad_records(self, tmp_path):
        path = tmp_path / "pools.json"
        path.write_text(
            json.dumps(
                [
                    {"kind": "v2", "address": POOL_A, "token0": USDC, "token1": DAI},
                    {"kind": "v2", "address": POOL_B},
                    "not a record",
                ]
            )
        )
        feed = JsonPoolFeed(path)

        pools = feed.load()

        assert [p.address for p in pools] == [POOL_A]
        assert feed.skipped == 2

    def test_yaml_mapping(self, tmp_path):
        path = tmp_path / "pools.yaml"
        path.write_text(
            "pools:\n"
            f"  - {{kind: curve, address: '{POOL_C}', token0: '{USDC}', token1: '{DAI}', coin_index1: 2}}\n"
        )
        pools = JsonPoolFeed(path).load()
        assert pools[0].kind == VenueKind.STABLE_SWAP
        assert pools[0].coin_index1 == 2

    def test_missing_file(self, tmp_path):
        assert JsonPoolFeed(tmp_path / "none.json").load() == []


class TestOnChainPoolRefresher:
    @pytest.mark.asyncio
    async def test_refresh_v2_and_v3(self):
        v2 = v2_pool(POOL_A, USDC, DAI, 0, 0)
        v3 = pool_from_record({"kind": "v3", "address": POOL_B, "token0": USDC, "token1": WETH, "fee": 500})
        slot0 = encode(list(abi.SLOT0_TYPES), [Q96, 0, 0, 0, 0, 0, True])
        accessor = FakeAccessor(
            responses={
                (POOL_A, abi.GET_RESERVES_SELECTOR): encode_reserves(7, 9),
                (POOL_B, abi.SLOT0_SELECTOR): slot0,
                (POOL_B, abi.encode_call(abi.LIQUIDITY)): encode_uint(123, "uint128"),
            }
        )

        refreshed = await OnChainPoolRefresher(accessor).refresh([v2, v3])

        assert (v2.reserve0, v2.reserve1) == (7, 9)
        assert (v3.sqrt_price_x96, v3.liquidity) == (Q96, 123)
        assert len(refreshed) == 2
        assert v2.updated_at > 0

    @pytest.mark.asyncio
    async def test_vault_balances_via_configured_vault(self):
        pool = pool_from_record(
            {"kind": "balancer", "address": POOL_C, "token0": USDC, "token1": DAI, "pool_id": POOL_ID}
        )
        tokens_data = encode(
            list(abi.GET_POOL_TOKENS_TYPES),
            [[Web3.to_checksum_address(DAI), Web3.to_checksum_address(USDC)], [5 * 10**18, 3 * 10**6], 0],
        )
        accessor = FakeAccessor(responses={(BALANCER_VAULT, abi.selector(abi.GET_POOL_TOKENS)): tokens_data})

        await OnChainPoolRefresher(accessor, balancer_vault=BALANCER_VAULT).refresh_pool(pool)

        assert (pool.reserve0, pool.reserve1) == (3 * 10**6, 5 * 10**18)

    @pytest.mark.asyncio
    async def test_curve_balances(self):
        pool = pool_from_record(
            {"kind": "curve", "address": POOL_D, "token0": USDC, "token1": DAI, "coin_index0": 1, "coin_index1": 0}
        )
        accessor = FakeAccessor(
            responses={
                (POOL_D, abi.encode_call(abi.CURVE_BALANCES, ["uint256"], [1])): encode_uint(11),
                (POOL_D, abi.encode_call(abi.CURVE_BALANCES, ["uint256"], [0])): encode_uint(22),
            }
        )

        await OnChainPoolRefresher(accessor).refresh_pool(pool)
        assert (pool.reserve0, pool.reserve1) == (11, 22)

    @pytest.mark.asyncio
    async def test_failures_dropped(self):
        good = v2_pool(POOL_A, USDC, DAI, 0, 0)
        bad = v2_pool(POOL_B, USDC, DAI, 0, 0)
        vault_without_address = pool_from_record(
            {"kind": "balancer", "address": POOL_C, "token0": USDC, "token1": DAI, "pool_id": POOL_ID}
        )
        accessor = FakeAccessor(responses={(POOL_A, abi.GET_RESERVES_SELECTOR): encode_reserves(1, 2)})

        refreshed = await OnChainPoolRefresher(accessor).refresh([good, bad, vault_without_address])

        assert [p.address for p in refreshed] == [POOL_A]
