"""
Route fingerprinting and cooldown management for DEX arbitrage.

Prevents repeated execution of the same opportunity by:
1. Fingerprinting routes on their ordered token path and venues
2. Tracking the last accepted submission per fingerprint with a cooldown
3. Persisting active cooldowns so a restart doesn't reopen a cooled route
"""

import hashlib
import json
import time
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from dex_arbitrage.utils import atomic_write_json, get_logger

logger = get_logger(__name__)


def create_route_key(kind: str, tokens: Sequence[str], pool_addresses: Sequence[str]) -> List[str]:
    """
    Ordered identity tuple of a route.

    Unlike a sorted key, the order is kept: the same pools traded in the
    opposite direction are a different trade.

    Args:
        kind: "direct" or "triangular"
        tokens: Token path, start token repeated at the end
        pool_addresses: Pool contract addresses for each leg, in order

    Returns:
        List usable as hash input
    """
    return [kind] + [t.lower() for t in tokens] + [p.lower() for p in pool_addresses]


def create_fingerprint(kind: str, tokens: Sequence[str], pool_addresses: Sequence[str]) -> str:
    """
    Deterministic fingerprint of a directional route.

    Returns:
        First 32 hex chars of the SHA-256 of the JSON-encoded route key
    """
    data = json.dumps(create_route_key(kind, tokens, pool_addresses), separators=(",", ":"))
    return hashlib.sha256(data.encode()).hexdigest()[:32]


class RouteCooldown:
    """
    Cooldown per route fingerprint.

    A fingerprint that passed the check may not pass again until
    ``cooldown_sec`` has elapsed.
    """

    def __init__(self, cooldown_sec: float = 3.0):
        self.cooldown_sec = cooldown_sec
        self.last_accepted: Dict[str, float] = {}

    def remaining(self, fingerprint: str, now: Optional[float] = None) -> float:
        now = time.time() if now is None else now
        last = self.last_accepted.get(fingerprint)
        if last is None:
            return 0.0
        return max(0.0, self.cooldown_sec - (now - last))

    def should_execute(self, fingerprint: str, now: Optional[float] = None) -> Tuple[bool, Optional[str]]:
        """
        Check and, if allowed, record the fingerprint.

        Returns:
            (should_execute, skip_reason) tuple
        """
        now = time.time() if now is None else now
        self.cleanup_expired(now)

        remaining = self.remaining(fingerprint, now)
        if remaining > 0:
            return False, f"Route cooldown ({remaining:.1f}s remaining)"

        self.last_accepted[fingerprint] = now
        return True, None

    def cleanup_expired(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        expired = [
            fp for fp, ts in self.last_accepted.items() if now - ts >= self.cooldown_sec
        ]
        for fp in expired:
            del self.last_accepted[fp]
        return len(expired)

    def save(self, path: str) -> int:
        """Write active cooldowns as {fingerprint: cooldown_end} atomically."""
        now = time.time()
        active = {
            fp: ts + self.cooldown_sec
            for fp, ts in self.last_accepted.items()
            if ts + self.cooldown_sec > now
        }
        atomic_write_json(path, active)
        logger.info(f"Saved {len(active)} active cooldowns to {path}")
        return len(active)

    def load(self, path: str) -> int:
        """Restore cooldowns that haven't ended yet. Returns count restored."""
        state_path = Path(path)
        if not state_path.exists():
            logger.info(f"No cooldown state file found at {path}")
            return 0

        with open(state_path, "r") as f:
            data = json.load(f)

        now = time.time()
        restored = 0
        for fp, cooldown_end in data.items():
            if float(cooldown_end) > now:
                self.last_accepted[fp] = float(cooldown_end) - self.cooldown_sec
                restored += 1
        logger.info(f"Restored {restored} active cooldowns from {path}")
        return restored

    def get_stats(self) -> Dict[str, int]:
        """Get current statistics."""
        return {"tracked_routes": len(self.last_accepted)}
