#!/usr/bin/env python3
"""
Run the flash-loan DEX arbitrage engine.

MODES:
  1. Dry Run (default from config): build, gas-gate and sign, never relay
  2. Live: relay signed transactions (REQUIRES the signing key env var)

Usage:
  # One refresh + scan + drain, then exit
  python run_engine.py --config config/engine.example.yaml --once

  # Continuous dry run
  python run_engine.py --config config/engine.example.yaml --dry-run

  # Live execution (DANGEROUS - requires private key)
  export ARB_PRIVATE_KEY="0x..."
  python run_engine.py --config config/engine.yaml

Environment Variables:
  ARB_PRIVATE_KEY: Signing key (name configurable via execution.private_key_env)
  ARB_RPC_URL: Overrides rpc.url from the config file
"""

import argparse
import asyncio
import signal
import sys

from dotenv import load_dotenv
from web3 import Web3

import logging_config
from dex.chain import LimitedReadAccessor, Web3RawSubmitter, Web3ReadAccessor
from dex.config import load_config, private_key_from_env
from dex.runner import ArbEngine
from dex_arbitrage.exceptions import ConfigurationError
from dex_arbitrage.metrics import get_metrics
from dex_arbitrage.retry import RetryPolicy
from dex_arbitrage.rpc_limiter import AdmissionLimiter
from dex_arbitrage.utils import get_logger

logger = get_logger(__name__)


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Flash-loan DEX arbitrage engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--config",
        type=str,
        required=True,
        help="Path to engine config YAML file",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run one refresh, scan and drain, then exit",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Force dry-run mode regardless of the config file",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    return parser.parse_args(argv)


def build_engine(config) -> ArbEngine:
    """Wire Web3 accessors, the limiter and relays into an engine."""
    rpc = config.rpc
    web3 = Web3(Web3.HTTPProvider(rpc.url, request_kwargs={"timeout": rpc.call_timeout_seconds}))
    accessor = LimitedReadAccessor(
        lambda: Web3ReadAccessor(web3),
        limiter=AdmissionLimiter(rpc.max_inflight, fast_lane_methods=rpc.fast_lane_methods),
        retry=RetryPolicy(max_attempts=rpc.retry_attempts, timeout=rpc.call_timeout_seconds),
    )
    submitters = [
        Web3RawSubmitter(url, timeout=config.execution.relay_timeout_seconds)
        for url in config.relay_urls
    ]
    metrics = get_metrics() if config.metrics.enabled else None
    return ArbEngine.from_config(
        config,
        accessor,
        submitters,
        private_key=private_key_from_env(config),
        metrics=metrics,
    )


async def main(argv=None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    logging_config.setup(args.log_level)
    load_dotenv()

    try:
        logger.info(f"Loading config from {args.config}...")
        config = load_config(args.config, force_dry_run=args.dry_run)
        engine = build_engine(config)
    except ConfigurationError as e:
        logger.error(f"Refusing to start: {e}")
        return 2

    mode = "DRY RUN" if config.execution.dry_run else "LIVE"
    logger.info(f"Execution Mode: {mode}")

    if args.once:
        outcomes = await engine.run_once()
        logger.info(f"Single pass complete: {outcomes}")
        return 0

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, engine.request_stop)
        except NotImplementedError:
            # Windows event loops don't support signal handlers
            pass

    await engine.run_forever()
    return 0


def cli():
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
