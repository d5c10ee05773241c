"""Tests for the exceptions module."""

import pytest
from dex_arbitrage.exceptions import (
    ArbitrageEngineError,
    ConfigurationError,
    DataQualityError,
    ExecutionError,
    NetworkError,
    RelayError,
    UnsupportedVenueError,
)


def test_base_exception():
    """Test the base exception class."""
    error = ArbitrageEngineError("Test error")
    assert str(error) == "Test error"
    assert error.details == {}

    error_with_details = ArbitrageEngineError("Test error", {"key": "value"})
    assert error_with_details.details == {"key": "value"}


def test_configuration_error():
    """Test configuration error."""
    error = ConfigurationError("Config error", {"config_file": "engine.yaml"})
    assert str(error) == "Config error"
    assert error.details["config_file"] == "engine.yaml"
    assert isinstance(error, ArbitrageEngineError)


def test_network_error():
    """Test network error."""
    error = NetworkError("Network error", endpoint="polygon-rpc.com", status_code=429)
    assert str(error) == "Network error"
    assert error.endpoint == "polygon-rpc.com"
    assert error.status_code == 429
    assert isinstance(error, ArbitrageEngineError)


def test_data_quality_error():
    """Test data quality error."""
    error = DataQualityError("Stale feed", source="chainlink", token="0xabc")
    assert error.source == "chainlink"
    assert error.token == "0xabc"
    assert isinstance(error, ArbitrageEngineError)


def test_unsupported_venue_is_data_quality():
    """Unsupported venues fail closed like any other bad data."""
    error = UnsupportedVenueError("Unknown venue", source="0xpool")
    assert isinstance(error, DataQualityError)
    assert error.source == "0xpool"


def test_execution_error():
    """Test execution error."""
    error = ExecutionError("Execution failed", executor="aave", fingerprint="ab12")
    assert str(error) == "Execution failed"
    assert error.executor == "aave"
    assert error.fingerprint == "ab12"


def test_relay_error_keeps_reasons():
    """Test relay error."""
    error = RelayError("All relays failed", reasons=["a: timeout", "b: rejected"])
    assert error.reasons == ["a: timeout", "b: rejected"]
    assert isinstance(error, ExecutionError)

    assert RelayError("x").reasons == []


def test_exception_inheritance():
    """Test that all custom exceptions inherit from base exception."""
    exceptions = [
        ConfigurationError,
        NetworkError,
        DataQualityError,
        UnsupportedVenueError,
        ExecutionError,
        RelayError,
    ]

    for exc_class in exceptions:
        instance = exc_class("test message")
        assert isinstance(instance, ArbitrageEngineError)
        assert isinstance(instance, Exception)


def test_exceptions_exported_from_package():
    import dex_arbitrage

    assert dex_arbitrage.ConfigurationError is ConfigurationError
    from dex_arbitrage.version import get_version

    assert dex_arbitrage.VERSION == get_version()
    with pytest.raises(ArbitrageEngineError):
        raise dex_arbitrage.RelayError("boom")
