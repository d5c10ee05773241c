"""Tests for swap activity tracking and profit locking."""

import pytest

from dex_arbitrage.risk_controls import SwapActivityMonitor, SwapIntent, lock_profit

ROUTER = "0xa5e0829caced8ffdd4de3c43696c57f7d7a678ff"
OTHER_ROUTER = "0x1b02da8cb0d097eb8d57a175b88c7d8b47997506"


def intent(to=ROUTER, timestamp=1000.0):
    return SwapIntent(
        hash="0x01",
        sender="0xabc",
        to=to,
        dex_kind="uniswapv2",
        token_in="0xaaa",
        token_out="0xbbb",
        timestamp=timestamp,
    )


class TestSwapIntent:
    def test_from_dict_camel_case(self):
        parsed = SwapIntent.from_dict(
            {
                "hash": "0xfeed",
                "from": "0xABC",
                "to": ROUTER.upper(),
                "dexKind": "uniswapv2",
                "tokenIn": "0xAAA",
                "tokenOut": "0xBBB",
                "amountIn": "1000",
                "minOut": 990,
                "timestamp": 1234.5,
            }
        )

        assert parsed.sender == "0xabc"
        assert parsed.to == ROUTER.upper().lower()
        assert parsed.token_in == "0xaaa"
        assert parsed.amount_in == 1000
        assert parsed.min_out == 990
        assert parsed.timestamp == 1234.5

    def test_from_dict_snake_case_defaults(self):
        parsed = SwapIntent.from_dict({"hash": "0x1", "sender": "0xS", "to": "0xT", "token_in": "0xI"})
        assert parsed.sender == "0xs"
        assert parsed.token_in == "0xi"
        assert parsed.amount_in == 0
        assert parsed.min_out == 0


class TestSwapActivityMonitor:
    def test_conflicts_match_venue(self):
        monitor = SwapActivityMonitor(lookback_seconds=10)
        monitor.observe(intent(ROUTER, 1000.0))
        monitor.observe(intent(OTHER_ROUTER, 1001.0))

        hits = monitor.conflicts([ROUTER.upper()], now=1005.0)
        assert [h.to for h in hits] == [ROUTER]

    def test_old_intents_ignored_and_pruned(self):
        monitor = SwapActivityMonitor(lookback_seconds=10)
        monitor.observe(intent(ROUTER, 1000.0))
        monitor.observe(intent(ROUTER, 1008.0))

        assert len(monitor.conflicts([ROUTER], now=1012.0)) == 1
        assert len(monitor) == 1

    def test_prune_count(self):
        monitor = SwapActivityMonitor(lookback_seconds=5)
        for t in (1.0, 2.0, 10.0):
            monitor.observe(intent(timestamp=t))
        assert monitor.prune(now=10.0) == 2
        assert len(monitor) == 1

    def test_empty_venues(self):
        monitor = SwapActivityMonitor()
        monitor.observe(intent(timestamp=1000.0))
        assert monitor.conflicts(["", None], now=1000.0) == []

    def test_bounded_size(self):
        monitor = SwapActivityMonitor(max_intents=3)
        for i in range(5):
            monitor.observe(intent(timestamp=1000.0 + i))
        assert len(monitor) == 3


class TestLockProfit:
    def test_split(self):
        lock = lock_profit(100.0, 0.75)
        assert lock.locked_usd == 75.0
        assert lock.leftover_usd == 25.0

    def test_cents_add_up(self):
        lock = lock_profit(10.01, 0.75)
        assert lock.locked_usd + lock.leftover_usd == pytest.approx(10.01)

    @pytest.mark.parametrize("profit", [0, -5.0, None, float("nan")])
    def test_non_positive(self, profit):
        lock = lock_profit(profit)
        assert lock.locked_usd == 0.0
        assert lock.leftover_usd == 0.0
