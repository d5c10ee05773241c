"""
Blockchain access seams for the engine.

The engine only needs a handful of reads and a raw-transaction send. These
are described by the ``ReadAccessor`` and ``RawTransactionSubmitter``
protocols so that node selection and rotation stay outside the engine.
Web3-backed implementations are provided, plus ``LimitedReadAccessor``
which applies the admission limiter and the central retry policy to any
accessor.
"""

import asyncio
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Dict, Optional, Protocol

from web3 import Web3
from web3.exceptions import TransactionNotFound

from dex_arbitrage.retry import RetryPolicy
from dex_arbitrage.rpc_limiter import AdmissionLimiter
from dex_arbitrage.utils import get_logger

logger = get_logger(__name__)

# ERC-20 balanceOf(address)
_BALANCE_OF_SELECTOR = bytes.fromhex("70a08231")


@dataclass
class FeeData:
    """Fee market snapshot; EIP-1559 fields are None on legacy chains."""

    gas_price: Optional[int] = None
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None

    @property
    def uses_1559(self) -> bool:
        return self.max_fee_per_gas is not None and self.max_priority_fee_per_gas is not None

    @property
    def effective_fee_per_gas(self) -> Optional[int]:
        """Upper bound on the per-gas price the transaction may pay."""
        if self.uses_1559:
            return self.max_fee_per_gas
        return self.gas_price


class ReadAccessor(Protocol):
    async def get_block_number(self) -> int: ...

    async def call(self, address: str, data: bytes) -> bytes: ...

    async def estimate_gas(self, tx: Dict[str, Any]) -> int: ...

    async def get_fee_data(self) -> FeeData: ...

    async def get_balance(self, address: str, token: Optional[str] = None) -> int: ...

    async def get_transaction_count(self, address: str, block: str = "pending") -> int: ...

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]: ...


class RawTransactionSubmitter(Protocol):
    name: str

    async def send(self, raw_tx: bytes) -> str: ...


class Web3ReadAccessor:
    """
    ReadAccessor over a synchronous ``Web3`` instance.

    Blocking RPC calls run in the default thread pool so they never stall
    the event loop.
    """

    def __init__(self, web3: Web3):
        self.web3 = web3

    async def _run(self, fn: Callable, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(fn, *args, **kwargs))

    async def get_block_number(self) -> int:
        return int(await self._run(lambda: self.web3.eth.block_number))

    async def call(self, address: str, data: bytes) -> bytes:
        tx = {"to": Web3.to_checksum_address(address), "data": Web3.to_hex(data)}
        result = await self._run(self.web3.eth.call, tx)
        return bytes(result)

    async def estimate_gas(self, tx: Dict[str, Any]) -> int:
        return int(await self._run(self.web3.eth.estimate_gas, tx))

    async def get_fee_data(self) -> FeeData:
        block = await self._run(self.web3.eth.get_block, "latest")
        gas_price = int(await self._run(lambda: self.web3.eth.gas_price))
        base_fee = block.get("baseFeePerGas") if hasattr(block, "get") else None
        if base_fee is None:
            return FeeData(gas_price=gas_price)

        priority = int(await self._run(lambda: self.web3.eth.max_priority_fee))
        return FeeData(
            gas_price=gas_price,
            max_fee_per_gas=2 * int(base_fee) + priority,
            max_priority_fee_per_gas=priority,
        )

    async def get_balance(self, address: str, token: Optional[str] = None) -> int:
        owner = Web3.to_checksum_address(address)
        if not token:
            return int(await self._run(self.web3.eth.get_balance, owner))
        data = _BALANCE_OF_SELECTOR + bytes(12) + bytes.fromhex(owner[2:])
        result = await self.call(token, data)
        return int.from_bytes(result[:32], "big") if result else 0

    async def get_transaction_count(self, address: str, block: str = "pending") -> int:
        owner = Web3.to_checksum_address(address)
        return int(await self._run(self.web3.eth.get_transaction_count, owner, block))

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        try:
            receipt = await self._run(self.web3.eth.get_transaction_receipt, tx_hash)
        except TransactionNotFound:
            return None
        return dict(receipt) if receipt else None


class Web3RawSubmitter:
    """Sends signed raw transactions to a single relay endpoint."""

    def __init__(self, url: str, name: Optional[str] = None, timeout: float = 10.0):
        self.url = url
        self.name = name or url.split("//")[-1].split("/")[0]
        self.web3 = Web3(Web3.HTTPProvider(url, request_kwargs={"timeout": timeout}))

    async def send(self, raw_tx: bytes) -> str:
        loop = asyncio.get_running_loop()
        tx_hash = await loop.run_in_executor(
            None, self.web3.eth.send_raw_transaction, raw_tx
        )
        return Web3.to_hex(tx_hash)


class LimitedReadAccessor:
    """
    Applies the admission limiter and the retry policy to every read.

    ``accessor_factory`` is called once per attempt, so a rotating backend
    can hand the retry a freshly selected node.
    """

    def __init__(
        self,
        accessor_factory: Callable[[], ReadAccessor],
        limiter: Optional[AdmissionLimiter] = None,
        retry: Optional[RetryPolicy] = None,
    ):
        self.accessor_factory = accessor_factory
        self.limiter = limiter or AdmissionLimiter()
        self.retry = retry or RetryPolicy()

    @classmethod
    def wrap(cls, accessor: ReadAccessor, **kwargs) -> "LimitedReadAccessor":
        return cls(lambda: accessor, **kwargs)

    async def _read(self, method: str, *args, **kwargs):
        async def attempt():
            accessor = self.accessor_factory()
            async with self.limiter.slot(method):
                return await getattr(accessor, method)(*args, **kwargs)

        return await self.retry.run(attempt, label=method)

    async def get_block_number(self) -> int:
        return await self._read("get_block_number")

    async def call(self, address: str, data: bytes) -> bytes:
        return await self._read("call", address, data)

    async def estimate_gas(self, tx: Dict[str, Any]) -> int:
        return await self._read("estimate_gas", tx)

    async def get_fee_data(self) -> FeeData:
        return await self._read("get_fee_data")

    async def get_balance(self, address: str, token: Optional[str] = None) -> int:
        return await self._read("get_balance", address, token)

    async def get_transaction_count(self, address: str, block: str = "pending") -> int:
        return await self._read("get_transaction_count", address, block)

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return await self._read("get_transaction_receipt", tx_hash)
