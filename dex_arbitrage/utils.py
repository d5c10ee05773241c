"""
Common utilities and helper functions for the arbitrage engine.

This module provides centralized helpers for timestamps, atomic JSON
persistence, USD formatting and logger lookup.
"""

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union


# Timestamp utilities
def timestamp_to_iso(timestamp: float) -> str:
    """Convert Unix timestamp to ISO 8601 string."""
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


# JSON utilities
def _json_default_handler(obj: Any) -> Any:
    """Default JSON serialization handler for custom types."""
    if isinstance(obj, datetime):
        return obj.isoformat()
    elif isinstance(obj, bytes):
        return "0x" + obj.hex()
    elif hasattr(obj, "__dict__"):
        return obj.__dict__
    else:
        return str(obj)


def safe_json_dump(data: Any, **kwargs) -> str:
    """
    Safely serialize data to JSON with sensible defaults.

    Integers larger than a JSON double are left as ints; callers that need
    wei amounts to round-trip through other languages should stringify them.
    """
    defaults = {"ensure_ascii": False, "indent": 2, "default": _json_default_handler}
    defaults.update(kwargs)
    return json.dumps(data, **defaults)


def atomic_write_json(path: Union[str, Path], data: Any) -> Path:
    """
    Write JSON to ``path`` so that readers never observe a partial file.

    The payload goes to a temp file in the same directory which is then
    swapped in with ``os.replace``.

    Args:
        path: Destination file
        data: JSON-serializable payload

    Returns:
        Path that was written
    """
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)

    fd, temp_path = tempfile.mkstemp(
        dir=target.parent, prefix=f".{target.stem}_", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, "w") as f:
            f.write(safe_json_dump(data))
        os.replace(temp_path, target)
    except Exception:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise
    return target


# Logging utilities
def get_logger(
    name: str,
    level: Optional[Union[str, int]] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> Union[logging.Logger, logging.LoggerAdapter]:
    """
    Get a module logger.

    Handlers, format and the default level belong to ``logging_config``;
    records propagate to the root logger it configures.

    Args:
        name: Logger name (typically __name__)
        level: Explicit level for this logger; inherited when None
        extra: Context fields attached to every record from this logger

    Returns:
        The named logger, wrapped in a LoggerAdapter when ``extra`` is given
    """
    logger = logging.getLogger(name)
    if level is not None:
        logger.setLevel(level)
    if extra:
        return logging.LoggerAdapter(logger, dict(extra))
    return logger


def format_usd(amount: float) -> str:
    """Format a USD amount with two decimals and a dollar sign."""
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"
