"""
DEX Arbitrage Engine.

Shared infrastructure for the flash-loan arbitrage engine: exception types,
logging helpers, the retry policy and read-admission limiter, risk state and
Prometheus metrics. The trading engine itself lives in the ``dex`` package.
"""

from dex_arbitrage.exceptions import (
    ArbitrageEngineError,
    ConfigurationError,
    DataQualityError,
    ExecutionError,
    NetworkError,
    RelayError,
    UnsupportedVenueError,
)
from dex_arbitrage.version import __version__

PROJECT_NAME = "dex-flash-arbitrage"
VERSION = __version__

__all__ = [
    "PROJECT_NAME",
    "VERSION",
    "ArbitrageEngineError",
    "ConfigurationError",
    "DataQualityError",
    "ExecutionError",
    "NetworkError",
    "RelayError",
    "UnsupportedVenueError",
]
