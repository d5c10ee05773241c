"""Tests for nonce assignment and relay fan-out."""

import asyncio

import pytest
from prometheus_client import CollectorRegistry
from web3 import Web3

from dex.relays import NonceManager, RelayFanout, extract_tx_hash, implicit_success_hash
from dex_arbitrage.exceptions import RelayError
from dex_arbitrage.metrics import EngineMetrics
from fakes import WALLET, FakeAccessor, FakeSubmitter

RAW_TX = b"\x02\xf8\x71signed-tx-bytes"
TX_HASH = "0x" + "ab" * 32


class TestNonceManager:
    @pytest.mark.asyncio
    async def test_concurrent_assignments_are_unique_and_increasing(self):
        accessor = FakeAccessor(tx_count=7)
        nonces = NonceManager(accessor, WALLET)

        assigned = await asyncio.gather(*(nonces.next_nonce() for _ in range(10)))

        assert sorted(assigned) == list(range(7, 17))
        assert len(set(assigned)) == 10
        # Only the first assignment reads the pending count
        assert accessor.count("get_transaction_count") == 1
        assert nonces.peek == 17

    @pytest.mark.asyncio
    async def test_reads_pending_count(self):
        accessor = FakeAccessor(tx_count=3)
        await NonceManager(accessor, WALLET).next_nonce()
        assert accessor.calls[0] == ("get_transaction_count", (WALLET, "pending"))

    @pytest.mark.asyncio
    async def test_release_of_only_nonce_rereads(self):
        accessor = FakeAccessor(tx_count=5)
        nonces = NonceManager(accessor, WALLET)
        assert await nonces.next_nonce() == 5

        accessor.tx_count = 5  # the transaction never landed
        nonces.release(5)
        assert nonces.peek is None
        assert await nonces.next_nonce() == 5
        assert accessor.count("get_transaction_count") == 2

    @pytest.mark.asyncio
    async def test_release_of_highest_rewinds(self):
        nonces = NonceManager(FakeAccessor(tx_count=5), WALLET)
        assert await nonces.next_nonce() == 5
        assert await nonces.next_nonce() == 6

        nonces.release(6)

        assert nonces.peek == 6
        assert await nonces.next_nonce() == 6

    @pytest.mark.asyncio
    async def test_release_below_inflight_is_reused_first(self):
        accessor = FakeAccessor(tx_count=20)
        nonces = NonceManager(accessor, WALLET)
        first, second = await nonces.next_nonce(), await nonces.next_nonce()

        # 21 is still being relayed when 20 fails everywhere
        nonces.release(first)

        assert await nonces.next_nonce() == 20
        assert await nonces.next_nonce() == 22
        assert second == 21
        assert accessor.count("get_transaction_count") == 1

    @pytest.mark.asyncio
    async def test_queued_nonces_rewind_with_the_tip(self):
        nonces = NonceManager(FakeAccessor(tx_count=0), WALLET)
        for _ in range(3):
            await nonces.next_nonce()

        nonces.release(1)
        nonces.release(2)

        # 0 is still in flight, so the tip rewinds past the queued 1
        assert nonces.outstanding == 1
        assert nonces.peek == 1
        assert await nonces.next_nonce() == 1
        assert await nonces.next_nonce() == 2

    @pytest.mark.asyncio
    async def test_settled_and_unknown_nonces_not_released(self):
        nonces = NonceManager(FakeAccessor(tx_count=3), WALLET)
        nonce = await nonces.next_nonce()
        await nonces.next_nonce()
        nonces.settle(nonce)

        nonces.release(nonce)
        nonces.release(99)

        assert await nonces.next_nonce() == 5


class TestImplicitSuccess:
    def test_extract_hash(self):
        assert extract_tx_hash(f"known transaction: {TX_HASH}") == TX_HASH
        assert extract_tx_hash("nothing here") is None
        assert extract_tx_hash(None) is None

    def test_already_known_with_hash(self):
        error = ValueError(f"{{'code': -32000, 'message': 'already known {TX_HASH}'}}")
        assert implicit_success_hash(error, RAW_TX) == TX_HASH

    def test_already_known_without_hash_uses_raw_hash(self):
        error = ValueError("already known")
        assert implicit_success_hash(error, RAW_TX) == Web3.to_hex(Web3.keccak(RAW_TX))

    def test_nonce_too_low(self):
        assert implicit_success_hash(ValueError(f"nonce too low: {TX_HASH}"), RAW_TX) == TX_HASH
        assert implicit_success_hash(ValueError("Nonce too low"), RAW_TX) is None

    def test_other_errors(self):
        assert implicit_success_hash(ValueError("insufficient funds for gas"), RAW_TX) is None


class TestRelayFanout:
    def test_requires_a_relay(self):
        with pytest.raises(ValueError):
            RelayFanout([])

    @pytest.mark.asyncio
    async def test_first_success_wins(self):
        first = FakeSubmitter("primary", tx_hash=TX_HASH)
        second = FakeSubmitter("backup")

        assert await RelayFanout([first, second]).send(RAW_TX) == (TX_HASH, "primary")
        assert second.sent == []

    @pytest.mark.asyncio
    async def test_timeout_then_already_known(self):
        metrics = EngineMetrics(CollectorRegistry())
        slow = FakeSubmitter("slow", tx_hash="0x" + "11" * 32, delay=1.0)
        known = FakeSubmitter("known", error=ValueError(f"already known: {TX_HASH}"))

        tx_hash, relay = await RelayFanout([slow, known], timeout=0.05, metrics=metrics).send(RAW_TX)

        assert (tx_hash, relay) == (TX_HASH, "known")
        assert metrics.registry.get_sample_value("dex_arbitrage_relay_errors_total", {"relay": "slow"}) == 1

    @pytest.mark.asyncio
    async def test_all_fail(self):
        relays = [
            FakeSubmitter("a", error=ValueError("insufficient funds")),
            FakeSubmitter("b", error=ConnectionError("refused")),
        ]

        with pytest.raises(RelayError) as exc_info:
            await RelayFanout(relays).send(RAW_TX)

        reasons = exc_info.value.reasons
        assert len(reasons) == 2
        assert reasons[0].startswith("a: insufficient funds")
        assert reasons[1].startswith("b: refused")
        assert all(r.sent == [RAW_TX] for r in relays)
