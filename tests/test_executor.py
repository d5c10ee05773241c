"""
Tests for the execution orchestrator: gas gating, dry runs, live
submission, confirmation and outcome aggregation.
"""

import asyncio

import pytest
from eth_account import Account
from web3 import Web3

from dex.chain import FeeData
from dex.executor import ExecutionConfig, ExecutionOrchestrator, ExecutorTarget, aggregate_outcome
from dex.relays import RelayFanout
from dex.token_prices import TokenPriceBook
from dex.trade_builder import TradeBuilder
from dex.types import ExecutionAttempt
from dex_arbitrage.exceptions import ConfigurationError
from fakes import (
    EXECUTOR_AAVE,
    EXECUTOR_BALANCER,
    GWEI,
    TEST_PRIVATE_KEY,
    USDC,
    WALLET,
    WMATIC,
    FakeAccessor,
    FakeSubmitter,
    make_candidate,
)

TX_HASH = "0x" + "cd" * 32
TARGETS = [ExecutorTarget("aave", EXECUTOR_AAVE), ExecutorTarget("balancer", EXECUTOR_BALANCER)]


class FlakySubmitter:
    """Rejects the first transaction outright; later ones land after a short delay."""

    name = "flaky"

    def __init__(self):
        self.sent = []

    async def send(self, raw_tx):
        self.sent.append(bytes(raw_tx))
        if len(self.sent) == 1:
            raise ValueError("replacement transaction underpriced")
        await asyncio.sleep(0.05)
        return Web3.to_hex(Web3.keccak(raw_tx))


class RefusingSigner:
    def sign_transaction(self, tx):
        raise ValueError("signer unavailable")


def live_config(**overrides):
    params = dict(
        private_key=TEST_PRIVATE_KEY,
        chain_id=137,
        dry_run_mode=False,
        native_price_usd=0.5,
        confirmation_timeout=0.05,
        receipt_poll_interval=0.01,
    )
    params.update(overrides)
    return ExecutionConfig(**params)


def make_orchestrator(accessor=None, relays=None, config=None, targets=TARGETS, book=None):
    accessor = accessor or FakeAccessor()
    relays = relays or [FakeSubmitter("primary", tx_hash=TX_HASH)]
    return ExecutionOrchestrator(
        accessor,
        TradeBuilder(slippage_bps=100),
        RelayFanout(relays, timeout=1.0),
        targets,
        config or live_config(),
        book or TokenPriceBook(stable_tokens=[USDC]),
    )


class TestConstruction:
    def test_requires_targets(self):
        with pytest.raises(ConfigurationError):
            make_orchestrator(targets=[])

    def test_live_requires_key(self):
        with pytest.raises(ConfigurationError):
            make_orchestrator(config=ExecutionConfig(dry_run_mode=False, wallet=WALLET))

    def test_dry_run_requires_sender(self):
        with pytest.raises(ConfigurationError):
            make_orchestrator(config=ExecutionConfig(dry_run_mode=True))

    def test_sender_from_key(self):
        orchestrator = make_orchestrator()
        assert orchestrator.sender == Account.from_key(TEST_PRIVATE_KEY).address

    def test_dry_run_with_wallet_only(self):
        orchestrator = make_orchestrator(config=ExecutionConfig(dry_run_mode=True, wallet=WALLET))
        assert orchestrator.account is None
        assert orchestrator.sender.lower() == WALLET


class TestGasCost:
    def test_native_price_from_book(self):
        book = TokenPriceBook()
        book.set_price(WMATIC, 0.8)
        orchestrator = make_orchestrator(config=live_config(native_token=WMATIC), book=book)

        assert orchestrator.native_price_usd() == 0.8
        # 500k gas at 100 gwei = 0.05 native
        assert orchestrator.gas_cost_usd(500_000, 100 * GWEI) == pytest.approx(0.04)

    def test_native_price_fallback(self):
        orchestrator = make_orchestrator(config=live_config(native_token=WMATIC))
        assert orchestrator.native_price_usd() == 0.5


class TestAttempts:
    @pytest.mark.asyncio
    async def test_gas_above_profit_skips(self):
        accessor = FakeAccessor(fee_data=FeeData(gas_price=1_000 * GWEI), gas=1_000_000)
        orchestrator = make_orchestrator(accessor, config=live_config(native_price_usd=100.0))

        # 1M gas at 1000 gwei = 1 native = $100 of gas
        outcome = await orchestrator.execute(make_candidate(profit_usd=50.0))

        assert outcome.status == "skip"
        assert [a.reason for a in outcome.attempts] == ["gas>profit", "gas>profit"]
        assert outcome.attempts[0].gas_cost_usd == pytest.approx(100.0)
        assert accessor.count("get_transaction_count") == 0

    @pytest.mark.asyncio
    async def test_gas_estimate_failure_skips(self):
        accessor = FakeAccessor(gas=ValueError("execution reverted"))
        outcome = await make_orchestrator(accessor).execute(make_candidate())

        assert outcome.status == "skip"
        assert all(a.reason.startswith("gas estimate failed") for a in outcome.attempts)

    @pytest.mark.asyncio
    async def test_dry_run_signs_but_never_relays(self):
        relay = FakeSubmitter("primary", tx_hash=TX_HASH)
        accessor = FakeAccessor(tx_count=4)
        orchestrator = make_orchestrator(accessor, relays=[relay], config=live_config(dry_run_mode=True))

        outcome = await orchestrator.execute(make_candidate())

        assert outcome.status == "skip"
        assert [a.reason for a in outcome.attempts] == ["dry_run", "dry_run"]
        assert relay.sent == []
        assert accessor.count("get_transaction_count") == 2
        assert orchestrator.nonces.peek is None

    @pytest.mark.asyncio
    async def test_dry_run_without_key(self):
        accessor = FakeAccessor()
        orchestrator = make_orchestrator(accessor, config=ExecutionConfig(dry_run_mode=True, wallet=WALLET))

        outcome = await orchestrator.execute(make_candidate())

        assert outcome.status == "skip"
        assert accessor.count("get_transaction_count") == 0

    @pytest.mark.asyncio
    async def test_live_submission_confirmed(self):
        relay = FakeSubmitter("primary", tx_hash=TX_HASH)
        accessor = FakeAccessor(tx_count=12, receipts={TX_HASH: {"status": 1}})
        orchestrator = make_orchestrator(accessor, relays=[relay], config=live_config(attempt_all_executors=False))

        outcome = await orchestrator.execute(make_candidate())

        assert outcome.status == "submitted"
        assert outcome.tx_hashes == [TX_HASH]
        # Stops after the first executor that submitted
        assert len(outcome.attempts) == 1
        assert outcome.attempts[0].executor == "aave"
        assert outcome.attempts[0].nonce == 12
        assert len(relay.sent) == 1
        assert orchestrator.get_stats()["submissions"] == 1

    @pytest.mark.asyncio
    async def test_every_executor_attempted_by_default(self):
        relay = FakeSubmitter("primary", tx_hash=TX_HASH)
        accessor = FakeAccessor(tx_count=0, receipts={TX_HASH: {"status": 1}})
        orchestrator = make_orchestrator(accessor, relays=[relay], config=live_config())

        outcome = await orchestrator.execute(make_candidate())

        assert [a.nonce for a in outcome.attempts] == [0, 1]
        assert len(relay.sent) == 2

    @pytest.mark.asyncio
    async def test_reverted_receipt(self):
        accessor = FakeAccessor(receipts={TX_HASH: {"status": 0}})
        orchestrator = make_orchestrator(accessor, targets=TARGETS[:1])

        outcome = await orchestrator.execute(make_candidate())

        assert outcome.status == "fail"
        assert outcome.attempts[0].reason == "reverted"
        assert outcome.attempts[0].tx_hash == TX_HASH

    @pytest.mark.asyncio
    async def test_confirmation_timeout_stays_submitted(self):
        orchestrator = make_orchestrator(FakeAccessor(), targets=TARGETS[:1])

        outcome = await orchestrator.execute(make_candidate())

        assert outcome.status == "submitted"
        assert outcome.attempts[0].reason == "confirmation_timeout"

    @pytest.mark.asyncio
    async def test_no_wait_for_receipt(self):
        accessor = FakeAccessor()
        orchestrator = make_orchestrator(accessor, targets=TARGETS[:1], config=live_config(wait_for_receipt=False))

        outcome = await orchestrator.execute(make_candidate())

        assert outcome.status == "submitted"
        assert accessor.count("get_transaction_receipt") == 0

    @pytest.mark.asyncio
    async def test_relay_failure_releases_nonce(self):
        accessor = FakeAccessor(tx_count=3)
        relays = [FakeSubmitter("a", error=ValueError("insufficient funds"))]
        orchestrator = make_orchestrator(accessor, relays=relays)

        outcome = await orchestrator.execute(make_candidate())

        assert outcome.status == "fail"
        assert [a.nonce for a in outcome.attempts] == [3, 3]
        assert "insufficient funds" in outcome.attempts[0].reason
        assert accessor.count("get_transaction_count") == 2

    @pytest.mark.asyncio
    async def test_concurrent_candidates_get_distinct_nonces(self):
        accessor = FakeAccessor(tx_count=20)
        orchestrator = make_orchestrator(accessor, targets=TARGETS[:1], config=live_config(wait_for_receipt=False))

        outcomes = await asyncio.gather(
            orchestrator.execute(make_candidate(fingerprint="fp-1")),
            orchestrator.execute(make_candidate(fingerprint="fp-2")),
            orchestrator.execute(make_candidate(fingerprint="fp-3")),
        )

        nonces = sorted(o.attempts[0].nonce for o in outcomes)
        assert nonces == [20, 21, 22]
        assert accessor.count("get_transaction_count") == 1

    @pytest.mark.asyncio
    async def test_failed_relay_nonce_is_reused_not_duplicated(self):
        accessor = FakeAccessor(tx_count=20)
        relay = FlakySubmitter()
        orchestrator = make_orchestrator(
            accessor, relays=[relay], targets=TARGETS[:1], config=live_config(wait_for_receipt=False)
        )

        first = asyncio.gather(
            orchestrator.execute(make_candidate(fingerprint="fp-1")),
            orchestrator.execute(make_candidate(fingerprint="fp-2")),
        )
        await asyncio.sleep(0.01)
        later = await asyncio.gather(
            orchestrator.execute(make_candidate(fingerprint="fp-3")),
            orchestrator.execute(make_candidate(fingerprint="fp-4")),
        )
        outcomes = list(await first) + later

        submitted = [o.attempts[0].nonce for o in outcomes if o.status == "submitted"]
        assert [o.status for o in outcomes].count("fail") == 1
        assert sorted(submitted) == [20, 21, 22]
        assert orchestrator.nonces.outstanding == 0

    @pytest.mark.asyncio
    async def test_signing_failure_releases_nonce(self):
        accessor = FakeAccessor(tx_count=3, receipts={TX_HASH: {"status": 1}})
        orchestrator = make_orchestrator(accessor, targets=TARGETS[:1])
        account = orchestrator.account
        orchestrator.account = RefusingSigner()

        outcome = await orchestrator.execute(make_candidate())

        assert outcome.status == "fail"
        assert "signer unavailable" in outcome.attempts[0].reason
        assert orchestrator.nonces.outstanding == 0
        assert orchestrator.nonces.peek is None

        orchestrator.account = account
        outcome = await orchestrator.execute(make_candidate())
        assert outcome.attempts[0].nonce == 3


class TestAggregate:
    def test_any_submitted(self):
        outcome = aggregate_outcome(
            [ExecutionAttempt("a", "failed", reason="x"), ExecutionAttempt("b", "submitted", tx_hash=TX_HASH)]
        )
        assert outcome.status == "submitted"

    def test_all_attempted_failed(self):
        outcome = aggregate_outcome(
            [ExecutionAttempt("a", "skipped", reason="gas>profit"), ExecutionAttempt("b", "failed", reason="reverted")]
        )
        assert outcome.status == "fail"
        assert "b: reverted" in outcome.reason

    def test_all_skipped(self):
        outcome = aggregate_outcome([ExecutionAttempt("a", "skipped", reason="dry_run")])
        assert outcome.status == "skip"
        assert outcome.reason == "a: dry_run"

    def test_nothing_attempted(self):
        outcome = aggregate_outcome([])
        assert outcome.status == "skip"
        assert outcome.reason == "no executor attempted"
