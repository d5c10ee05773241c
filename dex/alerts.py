"""
Alert sinks for terminal candidate outcomes.

The engine emits one ``AlertRecord`` per terminal outcome. Sinks decide how
it is delivered: the log, a JSON Lines file, or several at once.
"""

import json
import logging
import threading
import time
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from dex_arbitrage.utils import format_usd, timestamp_to_iso

from .types import AlertRecord, TradeCandidate

ALERT_STATUSES = ("submitted", "skip", "fail", "info")


def make_alert(
    status: str,
    candidate: TradeCandidate,
    reason: Optional[str] = None,
    tx_hash: Optional[str] = None,
    **details,
) -> AlertRecord:
    if status not in ALERT_STATUSES:
        raise ValueError(f"Unknown alert status: {status}")
    return AlertRecord(
        status=status,
        route=candidate.summary(),
        profit_usd=candidate.estimated_profit_usd,
        reason=reason,
        tx_hash=tx_hash,
        fingerprint=candidate.fingerprint,
        timestamp=time.time(),
        details=details,
    )


class AlertSink:
    def emit(self, alert: AlertRecord) -> None:
        raise NotImplementedError


class LoggingAlertSink(AlertSink):
    """Writes alerts to the ``alerts`` logger at a level matching the status."""

    LEVELS = {
        "submitted": logging.INFO,
        "skip": logging.INFO,
        "info": logging.INFO,
        "fail": logging.ERROR,
    }

    def __init__(self, logger_name: str = "alerts"):
        self.logger = logging.getLogger(logger_name)

    def emit(self, alert: AlertRecord) -> None:
        profit = format_usd(alert.profit_usd) if alert.profit_usd is not None else "n/a"
        parts = [f"[{alert.status.upper()}] {alert.route}", f"profit: {profit}"]
        if alert.reason:
            parts.append(f"reason: {alert.reason}")
        if alert.tx_hash:
            parts.append(f"tx: {alert.tx_hash}")
        self.logger.log(self.LEVELS.get(alert.status, logging.INFO), " | ".join(parts))


class JsonlAlertSink(AlertSink):
    """
    Appends alerts as JSON Lines.

    Repeated ``skip``/``info`` alerts with the same fingerprint and reason
    inside ``suppression_window`` seconds are suppressed; submitted and
    failed alerts are always written.
    """

    def __init__(self, path: Union[str, Path], suppression_window: float = 2.0):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.suppression_window = suppression_window
        self._last_seen: Dict[Tuple[str, str], float] = {}
        self._lock = threading.Lock()
        self.suppressed = 0

    def _is_duplicate(self, alert: AlertRecord) -> bool:
        if self.suppression_window <= 0 or alert.status not in ("skip", "info"):
            return False
        key = (alert.fingerprint or alert.route, alert.reason or "")
        last = self._last_seen.get(key)
        self._last_seen[key] = alert.timestamp
        if last is not None and alert.timestamp - last <= self.suppression_window:
            self.suppressed += 1
            return True
        return False

    def emit(self, alert: AlertRecord) -> None:
        entry = asdict(alert)
        entry["timestamp_readable"] = timestamp_to_iso(alert.timestamp)
        line = json.dumps(entry, default=str) + "\n"

        with self._lock:
            if self._is_duplicate(alert):
                return
            # Single write call per line keeps appends whole
            with open(self.path, "a") as f:
                f.write(line)

    def read_all(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        with open(self.path, "r") as f:
            return [json.loads(line) for line in f if line.strip()]


class MultiAlertSink(AlertSink):
    """Fans an alert out to several sinks; one failing sink doesn't block the rest."""

    def __init__(self, sinks: Sequence[AlertSink]):
        self.sinks = list(sinks)
        self.logger = logging.getLogger(__name__)

    def emit(self, alert: AlertRecord) -> None:
        for sink in self.sinks:
            try:
                sink.emit(alert)
            except OSError as e:
                self.logger.error(f"Alert sink {type(sink).__name__} failed: {e}")
