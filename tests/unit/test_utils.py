"""
Unit tests for dex_arbitrage.utils and the root logging configuration.
"""

import json
import logging

import pytest

import logging_config
from dex_arbitrage.utils import (
    atomic_write_json,
    format_usd,
    get_logger,
    safe_json_dump,
    timestamp_to_iso,
)


def test_timestamp_to_iso():
    assert timestamp_to_iso(0) == "1970-01-01T00:00:00+00:00"


def test_safe_json_dump_handles_bytes():
    data = json.loads(safe_json_dump({"aux": b"\x01\x02", "n": 3}))
    assert data == {"aux": "0x0102", "n": 3}


def test_atomic_write_json(tmp_path):
    target = tmp_path / "nested" / "state.json"
    atomic_write_json(target, {"fp": 1.5})

    assert json.loads(target.read_text()) == {"fp": 1.5}
    assert [p.name for p in target.parent.iterdir()] == ["state.json"]


def test_atomic_write_json_keeps_old_file_on_failure(tmp_path):
    target = tmp_path / "state.json"
    atomic_write_json(target, {"ok": True})

    circular = []
    circular.append(circular)
    with pytest.raises(ValueError):
        atomic_write_json(target, circular)

    assert json.loads(target.read_text()) == {"ok": True}
    assert [p.name for p in tmp_path.iterdir()] == ["state.json"]


def test_format_usd():
    assert format_usd(1234.5) == "$1,234.50"
    assert format_usd(-3.256) == "-$3.26"


def test_get_logger_basic():
    logger = get_logger(__name__)
    assert isinstance(logger, logging.Logger)
    assert logger.name == __name__


def test_get_logger_leaves_handlers_and_level_alone():
    logger = get_logger(__name__ + ".plain")
    assert logger.handlers == []
    assert logger.level == logging.NOTSET
    assert logger.propagate is True


def test_get_logger_with_level():
    logger = get_logger(__name__ + ".debug", level=logging.DEBUG)
    assert logger.level == logging.DEBUG


def test_get_logger_with_extra(caplog):
    logger = get_logger(__name__ + ".extra", extra={"engine": "polygon"})
    assert isinstance(logger, logging.LoggerAdapter)

    with caplog.at_level(logging.INFO, logger=__name__ + ".extra"):
        logger.info("scan done")
    assert caplog.records[-1].engine == "polygon"


def test_get_logger_respects_configured_level(capsys):
    try:
        logging_config.setup(logging.WARNING)
        logger = get_logger("dex.quiet")

        logger.info("hidden")
        logger.warning("Test message")

        output = capsys.readouterr().out
        assert "hidden" not in output
        assert "WARNING" in output
        assert "dex.quiet" in output
        assert "Test message" in output
    finally:
        logging.getLogger().handlers.clear()
        logging.getLogger().setLevel(logging.WARNING)
        for name in ("__main__", "dex", "dex_arbitrage"):
            logging.getLogger(name).setLevel(logging.NOTSET)


class TestLoggingConfig:
    def teardown_method(self):
        logging.getLogger().handlers.clear()

    def test_setup_accepts_names(self):
        logging_config.setup("DEBUG")
        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert logging.getLogger("dex").level == logging.DEBUG

    def test_noisy_loggers_quieted(self):
        logging_config.setup(logging.INFO)
        assert logging.getLogger("web3").level == logging.WARNING
        assert logging.getLogger("urllib3").level == logging.WARNING
        assert logging.getLogger("aiohttp.access").level == logging.WARNING

    def test_setup_minimal(self):
        logging_config.setup_minimal()
        assert logging.getLogger().level == logging.WARNING

    def test_setup_debug(self):
        logging_config.setup_debug()
        assert logging.getLogger("web3").level == logging.DEBUG
