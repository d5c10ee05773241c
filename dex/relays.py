"""
Nonce assignment and relay fan-out for signed transactions.
"""

import asyncio
import heapq
import re
from typing import List, Optional, Sequence, Set, Tuple

from web3 import Web3

from dex_arbitrage.exceptions import RelayError
from dex_arbitrage.metrics import EngineMetrics
from dex_arbitrage.utils import get_logger

from .chain import RawTransactionSubmitter, ReadAccessor

logger = get_logger(__name__)

TX_HASH_RE = re.compile(r"0x[0-9a-fA-F]{64}")

ALREADY_KNOWN = "already known"
NONCE_TOO_LOW = "nonce too low"


def extract_tx_hash(text: str) -> Optional[str]:
    """First 32-byte hex hash found in ``text``, if any."""
    match = TX_HASH_RE.search(text or "")
    return match.group(0) if match else None


def implicit_success_hash(error: BaseException, raw_tx: bytes) -> Optional[str]:
    """
    Hash to report when a relay error means the transaction already landed.

    "already known" without a hash in the text falls back to the hash of the
    raw transaction; "nonce too low" without a hash is not treated as success.
    """
    message = str(error)
    lowered = message.lower()
    if ALREADY_KNOWN in lowered:
        return extract_tx_hash(message) or Web3.to_hex(Web3.keccak(raw_tx))
    if NONCE_TOO_LOW in lowered:
        return extract_tx_hash(message)
    return None


class NonceManager:
    """
    Hands out nonces for one sending account; no nonce is ever held by two
    transactions at once.

    The pending transaction count is read once, lazily, under the lock;
    later assignments increment locally. Every nonce handed out stays
    outstanding until the caller either ``settle``s it (the network has the
    transaction) or ``release``s it (the transaction never left).

    A released nonce is rewound when it is the highest one handed out, so
    nothing after it is in flight. Otherwise it is queued and handed out
    again before any new nonce, which closes the gap. Once nothing is
    outstanding or queued the next assignment re-reads the pending count.
    """

    def __init__(self, accessor: ReadAccessor, address: str):
        self.accessor = accessor
        self.address = address
        self._lock = asyncio.Lock()
        self._next: Optional[int] = None
        self._outstanding: Set[int] = set()
        self._freed: List[int] = []

    async def next_nonce(self) -> int:
        async with self._lock:
            if self._freed:
                nonce = heapq.heappop(self._freed)
            else:
                if self._next is None:
                    self._next = await self.accessor.get_transaction_count(self.address, "pending")
                    logger.info(f"Nonce base for {self.address}: {self._next}")
                nonce = self._next
                self._next += 1
            self._outstanding.add(nonce)
            return nonce

    def settle(self, nonce: int) -> None:
        """The transaction carrying ``nonce`` reached the network."""
        self._outstanding.discard(nonce)

    def release(self, nonce: int) -> None:
        """The transaction carrying ``nonce`` was never accepted; free the nonce."""
        if nonce not in self._outstanding:
            return
        self._outstanding.discard(nonce)

        if self._next is not None and nonce == self._next - 1:
            self._next = nonce
            # Queued nonces directly below the new tip rewind too
            while self._freed and max(self._freed) == self._next - 1:
                self._freed.remove(self._next - 1)
                heapq.heapify(self._freed)
                self._next -= 1
        else:
            heapq.heappush(self._freed, nonce)

        if not self._outstanding and not self._freed:
            # Nothing of ours in flight: resync from the chain next time
            self._next = None
        logger.warning(f"Released nonce {nonce} for {self.address}")

    @property
    def outstanding(self) -> int:
        return len(self._outstanding)

    @property
    def peek(self) -> Optional[int]:
        if self._freed:
            return self._freed[0]
        return self._next


class RelayFanout:
    """
    Tries relays in order until one returns a transaction hash.

    Args:
        relays: Ordered submitters
        timeout: Per-relay timeout in seconds
        metrics: Optional metrics sink
    """

    def __init__(
        self,
        relays: Sequence[RawTransactionSubmitter],
        timeout: float = 10.0,
        metrics: Optional[EngineMetrics] = None,
    ):
        if not relays:
            raise ValueError("At least one relay is required")
        self.relays = list(relays)
        self.timeout = timeout
        self.metrics = metrics

    async def send(self, raw_tx: bytes) -> Tuple[str, str]:
        """
        Submit ``raw_tx``.

        Returns:
            (tx_hash, relay_name) from the first relay that accepted it

        Raises:
            RelayError: If every relay failed, with one reason per relay
        """
        reasons: List[str] = []
        for relay in self.relays:
            try:
                tx_hash = await asyncio.wait_for(relay.send(raw_tx), self.timeout)
                return tx_hash, relay.name
            except asyncio.CancelledError:
                raise
            except asyncio.TimeoutError:
                reasons.append(f"{relay.name}: timeout after {self.timeout}s")
            except Exception as e:
                tx_hash = implicit_success_hash(e, raw_tx)
                if tx_hash:
                    logger.info(f"Relay {relay.name} reports tx already in flight: {tx_hash}")
                    return tx_hash, relay.name
                reasons.append(f"{relay.name}: {e}")

            logger.warning(f"Relay {relay.name} failed: {reasons[-1]}")
            if self.metrics:
                self.metrics.record_relay_error(relay.name)

        raise RelayError(f"All {len(self.relays)} relays failed", reasons=reasons)
