"""
Risk controls shared by the protection pipeline.

Tracks recently observed swap intents so candidates whose venues have
pending activity can be held back, and splits an approved profit into a
locked share and a reinvestable remainder.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class SwapIntent:
    """
    A decoded, not yet confirmed swap seen in the mempool.

    Attributes:
        hash: Transaction hash
        sender: Address that sent the transaction
        to: Router or pool the transaction calls
        dex_kind: Venue label reported by the decoder
        token_in: Input token address
        token_out: Output token address
        amount_in: Raw input amount
        min_out: Raw minimum output amount
        timestamp: When the intent was observed (Unix seconds)
    """

    hash: str
    sender: str
    to: str
    dex_kind: str
    token_in: str
    token_out: str
    amount_in: int = 0
    min_out: int = 0
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SwapIntent":
        return cls(
            hash=str(data.get("hash", "")),
            sender=str(data.get("from", data.get("sender", ""))).lower(),
            to=str(data.get("to", "")).lower(),
            dex_kind=str(data.get("dexKind", data.get("dex_kind", ""))),
            token_in=str(data.get("tokenIn", data.get("token_in", ""))).lower(),
            token_out=str(data.get("tokenOut", data.get("token_out", ""))).lower(),
            amount_in=int(data.get("amountIn", data.get("amount_in", 0)) or 0),
            min_out=int(data.get("minOut", data.get("min_out", 0)) or 0),
            timestamp=float(data.get("timestamp", time.time())),
        )


class SwapActivityMonitor:
    """
    Rolling window of recently observed swap intents.

    Used as a front-running proxy: a candidate whose venues were touched by a
    pending swap inside the lookback window is considered at risk.
    """

    def __init__(self, lookback_seconds: float = 10.0, max_intents: int = 5000):
        self.lookback_seconds = lookback_seconds
        self._intents: Deque[SwapIntent] = deque(maxlen=max_intents)
        self._lock = threading.Lock()

    def observe(self, intent: SwapIntent) -> None:
        with self._lock:
            self._intents.append(intent)

    def prune(self, now: Optional[float] = None) -> int:
        """Drop intents older than the lookback window. Returns count removed."""
        now = time.time() if now is None else now
        removed = 0
        with self._lock:
            while self._intents and now - self._intents[0].timestamp >= self.lookback_seconds:
                self._intents.popleft()
                removed += 1
        return removed

    def conflicts(
        self, venues: Iterable[str], now: Optional[float] = None
    ) -> List[SwapIntent]:
        """
        Recent intents whose target is one of ``venues``.

        Args:
            venues: Pool, vault or router addresses a candidate trades through
            now: Current timestamp

        Returns:
            Matching intents, oldest first
        """
        now = time.time() if now is None else now
        self.prune(now)
        wanted = {v.lower() for v in venues if v}
        with self._lock:
            return [
                intent
                for intent in self._intents
                if intent.to in wanted and now - intent.timestamp < self.lookback_seconds
            ]

    def __len__(self) -> int:
        return len(self._intents)


@dataclass
class ProfitLock:
    locked_usd: float
    leftover_usd: float


def lock_profit(profit_usd: float, lock_pct: float = 0.75) -> ProfitLock:
    """
    Split an estimated profit into a locked share and a reinvestable rest.

    Works in integer cents to avoid float drift in the reported numbers.
    """
    if profit_usd is None or profit_usd != profit_usd or profit_usd <= 0:
        return ProfitLock(locked_usd=0.0, leftover_usd=0.0)
    cents = round(profit_usd * 100)
    locked = round(cents * lock_pct)
    return ProfitLock(locked_usd=locked / 100, leftover_usd=(cents - locked) / 100)
