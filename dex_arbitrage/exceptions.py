"""
Exception hierarchy for the DEX arbitrage engine.

Provides specific exception types for each error category so that callers
can tell transient infrastructure trouble from bad data, failed execution
and fatal misconfiguration.
"""

from typing import Any, Dict, List, Optional


class ArbitrageEngineError(Exception):
    """Base exception for all arbitrage engine related errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class ConfigurationError(ArbitrageEngineError):
    """Raised when required configuration is missing or invalid."""

    pass


class NetworkError(ArbitrageEngineError):
    """Raised when an RPC node, relay or price feed cannot be reached."""

    def __init__(
        self,
        message: str,
        endpoint: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.endpoint = endpoint
        self.status_code = status_code


class DataQualityError(ArbitrageEngineError):
    """Raised when on-chain or oracle data is stale, zero or unreadable."""

    def __init__(
        self,
        message: str,
        source: Optional[str] = None,
        token: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.source = source
        self.token = token


class UnsupportedVenueError(DataQualityError):
    """Raised when a pool's venue kind or call layout is not recognised."""

    pass


class ExecutionError(ArbitrageEngineError):
    """Raised when building, signing or submitting a transaction fails."""

    def __init__(
        self,
        message: str,
        executor: Optional[str] = None,
        fingerprint: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.executor = executor
        self.fingerprint = fingerprint


class RelayError(ExecutionError):
    """Raised when every relay endpoint rejected a signed transaction."""

    def __init__(
        self,
        message: str,
        reasons: Optional[List[str]] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details=details)
        self.reasons = reasons or []
