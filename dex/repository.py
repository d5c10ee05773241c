"""
File-backed candidate repository.

One JSON record per fingerprint in a directory. Writes go through a temp
file and ``os.replace`` so a reader never sees a half-written record.
Writing a fingerprint that already exists keeps whichever record has the
higher estimated profit, with the newer timestamp winning ties.
"""

import json
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from dex_arbitrage.utils import atomic_write_json, get_logger

from .types import TradeCandidate

logger = get_logger(__name__)


def _prefer(new: Dict[str, Any], old: Dict[str, Any]) -> bool:
    """True if ``new`` should replace ``old``."""
    new_profit = float(new.get("estimated_profit_usd") or 0.0)
    old_profit = float(old.get("estimated_profit_usd") or 0.0)
    if new_profit != old_profit:
        return new_profit > old_profit
    return float(new.get("timestamp") or 0.0) > float(old.get("timestamp") or 0.0)


class CandidateRepository:
    """
    Candidate records keyed by fingerprint.

    Args:
        directory: Directory holding ``<fingerprint>.json`` files
    """

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _path(self, fingerprint: str) -> Path:
        if not fingerprint or "/" in fingerprint or fingerprint.startswith("."):
            raise ValueError(f"Invalid fingerprint: {fingerprint!r}")
        return self.directory / f"{fingerprint}.json"

    def _read(self, path: Path) -> Optional[Dict[str, Any]]:
        try:
            with open(path, "r") as f:
                return json.load(f)
        except FileNotFoundError:
            return None

    def get(self, fingerprint: str) -> Optional[Dict[str, Any]]:
        return self._read(self._path(fingerprint))

    def put(self, candidate: Union[TradeCandidate, Dict[str, Any]]) -> bool:
        """
        Store a candidate record.

        Returns:
            True if the record was written, False if an existing record won
        """
        record = candidate.to_record() if isinstance(candidate, TradeCandidate) else dict(candidate)
        path = self._path(record["fingerprint"])
        with self._lock:
            existing = self._read(path)
            if existing is not None and not _prefer(record, existing):
                return False
            atomic_write_json(path, record)
        return True

    def delete(self, fingerprint: str) -> bool:
        """Remove a record. Returns False if it wasn't there."""
        path = self._path(fingerprint)
        with self._lock:
            try:
                path.unlink()
            except FileNotFoundError:
                return False
        return True

    def list(self) -> List[Dict[str, Any]]:
        """All records, highest estimated profit first."""
        records = []
        for path in sorted(self.directory.glob("*.json")):
            record = self._read(path)
            if record is not None:
                records.append(record)
        records.sort(key=lambda r: float(r.get("estimated_profit_usd") or 0.0), reverse=True)
        return records

    def __len__(self) -> int:
        return sum(1 for _ in self.directory.glob("*.json"))
