"""
Pool discovery feed and on-chain state refresh.

``JsonPoolFeed`` reads pool records written by an external discovery
process (JSON or YAML). ``OnChainPoolRefresher`` then reads each pool's
current state through the venue adapters. Records that can't be parsed and
pools whose state can't be read are skipped, never guessed.
"""

import asyncio
import json
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import yaml

from dex_arbitrage.utils import get_logger

from .adapters import v2, v3, vault
from .chain import ReadAccessor
from .types import Pool, VenueKind

logger = get_logger(__name__)


def pool_from_record(record: Dict[str, Any]) -> Pool:
    """
    Build a Pool from a feed record.

    Accepts ``kind`` (or ``type``), ``address``, ``token0``, ``token1`` and
    optional decimals, router, fee and state fields. ``fee`` is taken as a
    V3-style tier (hundredths of a bip) and converted when ``fee_bps`` is
    absent.

    Raises:
        KeyError, ValueError, TypeError: If the record is malformed
    """
    kind = VenueKind.parse(record.get("kind") or record["type"])
    if "fee_bps" in record:
        fee_bps = int(record["fee_bps"])
    elif "fee" in record:
        fee_bps = int(record["fee"]) // 100
    else:
        fee_bps = 0 if kind == VenueKind.WEIGHTED_VAULT else 30

    return Pool(
        kind=kind,
        address=str(record["address"]),
        token0=str(record["token0"]),
        token1=str(record["token1"]),
        decimals0=int(record.get("decimals0", 18)),
        decimals1=int(record.get("decimals1", 18)),
        dex=str(record.get("dex", "")),
        router=str(record.get("router") or ""),
        fee_bps=fee_bps,
        reserve0=int(record.get("reserve0", 0)),
        reserve1=int(record.get("reserve1", 0)),
        liquidity=int(record.get("liquidity", 0)),
        sqrt_price_x96=int(record.get("sqrt_price_x96", 0)),
        pool_id=record.get("pool_id"),
        coin_index0=int(record.get("coin_index0", 0)),
        coin_index1=int(record.get("coin_index1", 1)),
    )


class JsonPoolFeed:
    """
    Pull-style discovery feed backed by a file.

    The file holds either a list of records or ``{"pools": [...]}``.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.skipped = 0

    def _load(self) -> List[Any]:
        if not self.path.exists():
            logger.warning(f"Pool feed not found: {self.path}")
            return []
        with open(self.path, "r") as f:
            if self.path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(f)
            else:
                data = json.load(f)
        if isinstance(data, dict):
            data = data.get("pools", [])
        return data or []

    def load(self) -> List[Pool]:
        pools: List[Pool] = []
        self.skipped = 0
        for record in self._load():
            try:
                pools.append(pool_from_record(record))
            except (KeyError, ValueError, TypeError, AttributeError) as e:
                self.skipped += 1
                logger.warning(f"Skipping malformed pool record {record!r}: {e}")
        logger.info(f"Loaded {len(pools)} pools from {self.path} ({self.skipped} skipped)")
        return pools


class OnChainPoolRefresher:
    """
    Reads current state for pools through the venue adapters.

    Args:
        accessor: Read accessor (normally a ``LimitedReadAccessor``)
        balancer_vault: Vault address used when a vault pool has no router
    """

    def __init__(self, accessor: ReadAccessor, balancer_vault: Optional[str] = None):
        self.accessor = accessor
        self.balancer_vault = balancer_vault

    async def refresh_pool(self, pool: Pool) -> Pool:
        if pool.kind == VenueKind.CONSTANT_PRODUCT_V2:
            pool.reserve0, pool.reserve1 = await v2.fetch_reserves(self.accessor, pool.address)
        elif pool.kind == VenueKind.CONCENTRATED_V3:
            pool.sqrt_price_x96, pool.liquidity = await v3.fetch_state(self.accessor, pool.address)
        elif pool.kind == VenueKind.ELASTIC_V3:
            pool.sqrt_price_x96, pool.liquidity = await v3.fetch_elastic_state(self.accessor, pool.address)
        elif pool.kind == VenueKind.WEIGHTED_VAULT:
            vault_addr = pool.router or self.balancer_vault
            if not vault_addr:
                raise ValueError(f"No vault address for pool {pool.address}")
            pool.reserve0, pool.reserve1 = await vault.fetch_vault_balances(
                self.accessor, vault_addr, pool
            )
        elif pool.kind == VenueKind.STABLE_SWAP:
            pool.reserve0, pool.reserve1 = await vault.fetch_curve_balances(self.accessor, pool)
        pool.updated_at = time.time()
        return pool

    async def refresh(self, pools: Iterable[Pool]) -> List[Pool]:
        """
        Refresh every pool concurrently.

        Returns:
            Pools whose state was read; failures are logged and dropped
        """
        pools = list(pools)
        results = await asyncio.gather(
            *(self.refresh_pool(p) for p in pools), return_exceptions=True
        )
        refreshed: List[Pool] = []
        for pool, result in zip(pools, results):
            if isinstance(result, BaseException):
                logger.warning(f"State refresh failed for {pool.kind.value} pool {pool.address}: {result}")
            else:
                refreshed.append(result)
        return refreshed
