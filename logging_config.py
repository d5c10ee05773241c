"""
Logging configuration for cleaner output.

Usage:
    import logging_config
    logging_config.setup()
"""

import logging
import sys


def setup(level=logging.INFO):
    """
    Configure logging for cleaner, more readable output.

    - Suppresses verbose HTTP and RPC request logs from web3/urllib3/aiohttp
    - Uses shorter timestamp format (HH:MM:SS instead of full datetime)
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    # Root logger - minimal format
    root = logging.getLogger()
    root.setLevel(level)

    # Clear existing handlers
    root.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)

    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s",
        datefmt="%H:%M:%S",
    )
    console.setFormatter(formatter)
    root.addHandler(console)

    # Suppress noisy loggers
    logging.getLogger("web3").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)  # Hide metrics scrapes

    # Keep application loggers at the requested level
    logging.getLogger("__main__").setLevel(level)
    logging.getLogger("dex").setLevel(level)
    logging.getLogger("dex_arbitrage").setLevel(level)
    logging.getLogger("alerts").setLevel(logging.INFO)


def setup_minimal():
    """
    Even more minimal logging - only warnings and errors.
    Good for production or when you only care about problems.
    """
    setup(level=logging.WARNING)


def setup_debug():
    """
    Verbose logging for debugging.
    Shows everything including RPC requests.
    """
    setup(level=logging.DEBUG)
    logging.getLogger("web3").setLevel(logging.DEBUG)
