"""
DEX arbitrage execution with flash-loan executor contracts.

Handles:
- Building the executor transaction for each configured contract
- Gas gating against the candidate's estimated profit
- Serialized nonce assignment and signing
- Relay fan-out with implicit-success detection
- Optional receipt confirmation and dry-run simulation

Per executor the attempt moves through
Built -> GasGated -> NonceAssigned -> Signed -> Relayed -> Confirmed/TimedOut.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import Web3

from dex_arbitrage.exceptions import ConfigurationError, RelayError
from dex_arbitrage.utils import get_logger

from .chain import FeeData, ReadAccessor
from .relays import NonceManager, RelayFanout
from .token_prices import TokenPriceBook
from .trade_builder import TradeBuilder
from .types import ExecutionAttempt, ExecutionOutcome, TradeCandidate

logger = get_logger(__name__)


@dataclass
class ExecutorTarget:
    """A deployed flash-loan executor contract (e.g., Aave or Balancer backed)."""

    name: str
    address: str


@dataclass
class ExecutionConfig:
    """
    Configuration for arbitrage execution.

    Attributes:
        private_key: Private key for signing transactions (WARNING: keep secure!)
        wallet: Sender address when running without a key (dry run)
        chain_id: Chain id stamped on transactions
        dry_run_mode: If True, build, gate and sign but don't relay
        native_token: Wrapped native token address for gas pricing
        native_price_usd: Fallback native token price when the book has none
        wait_for_receipt: Wait for the receipt after submission
        confirmation_timeout: Seconds to wait for the receipt
        receipt_poll_interval: Seconds between receipt polls
        attempt_all_executors: Try every executor even after one submitted; when
            False, stop at the first submission
    """

    private_key: Optional[str] = None
    wallet: Optional[str] = None
    chain_id: Optional[int] = None
    dry_run_mode: bool = True
    native_token: Optional[str] = None
    native_price_usd: float = 0.0
    wait_for_receipt: bool = True
    confirmation_timeout: float = 60.0
    receipt_poll_interval: float = 1.0
    attempt_all_executors: bool = True


def aggregate_outcome(attempts: List[ExecutionAttempt]) -> ExecutionOutcome:
    """
    Fold per-executor attempts into one outcome.

    submitted if any attempt was submitted; fail only when every attempted
    (non-skipped) executor failed; skip otherwise.
    """
    if any(a.status == "submitted" for a in attempts):
        return ExecutionOutcome(status="submitted", attempts=attempts)

    attempted = [a for a in attempts if a.status != "skipped"]
    reason = "; ".join(f"{a.executor}: {a.reason}" for a in attempts if a.reason)
    if attempted and all(a.status == "failed" for a in attempted):
        return ExecutionOutcome(status="fail", attempts=attempts, reason=reason)
    return ExecutionOutcome(status="skip", attempts=attempts, reason=reason or "no executor attempted")


class ExecutionOrchestrator:
    """
    Executes approved candidates against one or more executor contracts.

    Args:
        accessor: Read accessor for gas, fee and receipt reads
        builder: Pure transaction builder
        relays: Relay fan-out for signed transactions
        targets: Executor contracts in the order they are tried
        config: Execution configuration
        price_book: USD prices for gas costing
    """

    def __init__(
        self,
        accessor: ReadAccessor,
        builder: TradeBuilder,
        relays: RelayFanout,
        targets: Sequence[ExecutorTarget],
        config: ExecutionConfig,
        price_book: TokenPriceBook,
    ):
        if not targets:
            raise ConfigurationError("At least one executor contract is required")

        self.accessor = accessor
        self.builder = builder
        self.relays = relays
        self.targets = list(targets)
        self.config = config
        self.price_book = price_book

        self.account: Optional[LocalAccount] = None
        if config.private_key:
            self.account = Account.from_key(config.private_key)
            logger.info(f"Loaded account: {self.account.address}")
        elif not config.dry_run_mode:
            raise ConfigurationError("A private key is required unless running in dry-run mode")

        sender = self.account.address if self.account else config.wallet
        if not sender:
            raise ConfigurationError("No sender address: set a private key or a wallet")
        self.sender = Web3.to_checksum_address(sender)
        self.nonces = NonceManager(accessor, self.sender)

        # Execution statistics
        self.attempts_made = 0
        self.submissions = 0

    def native_price_usd(self) -> float:
        if self.config.native_token:
            price = self.price_book.price(self.config.native_token)
            if price:
                return price
        return self.config.native_price_usd

    def gas_cost_usd(self, gas_limit: int, fee_per_gas: int) -> float:
        """gasLimit * feePerGas in native units, converted to USD."""
        return gas_limit * fee_per_gas / 1e18 * self.native_price_usd()

    @staticmethod
    def _apply_fees(tx: Dict[str, Any], fee_data: FeeData) -> None:
        if fee_data.uses_1559:
            tx["maxFeePerGas"] = fee_data.max_fee_per_gas
            tx["maxPriorityFeePerGas"] = fee_data.max_priority_fee_per_gas
        else:
            tx["gasPrice"] = fee_data.gas_price

    async def _wait_for_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        """Poll for the receipt; None if it didn't arrive in time."""
        deadline = time.monotonic() + self.config.confirmation_timeout
        while time.monotonic() < deadline:
            receipt = await self.accessor.get_transaction_receipt(tx_hash)
            if receipt:
                return receipt
            await asyncio.sleep(self.config.receipt_poll_interval)
        return None

    async def attempt(self, candidate: TradeCandidate, target: ExecutorTarget) -> ExecutionAttempt:
        """Run one executor through the state machine; never raises."""
        self.attempts_made += 1
        tag = f"[{target.name}] {candidate.fingerprint[:8]}"

        try:
            # Built
            tx = self.builder.build_transaction(
                candidate, target.address, self.sender, chain_id=self.config.chain_id
            )

            # GasGated
            fee_data = await self.accessor.get_fee_data()
            fee_per_gas = fee_data.effective_fee_per_gas
            if fee_per_gas is None:
                return ExecutionAttempt(target.name, "skipped", reason="no fee data")
            try:
                gas_limit = await self.accessor.estimate_gas(tx)
            except Exception as e:
                logger.warning(f"{tag} gas estimate failed: {e}")
                return ExecutionAttempt(target.name, "skipped", reason=f"gas estimate failed: {e}")

            gas_cost = self.gas_cost_usd(gas_limit, fee_per_gas)
            if gas_cost > candidate.estimated_profit_usd:
                logger.info(
                    f"{tag} gas ${gas_cost:.2f} > profit ${candidate.estimated_profit_usd:.2f}, skipping"
                )
                return ExecutionAttempt(
                    target.name, "skipped", reason="gas>profit", gas_cost_usd=gas_cost
                )

            tx["gas"] = gas_limit
            self._apply_fees(tx, fee_data)
            tx.pop("from", None)

            if self.config.dry_run_mode:
                if self.account:
                    tx["nonce"] = await self.accessor.get_transaction_count(self.sender, "pending")
                    self.account.sign_transaction(tx)
                logger.info(
                    f"[DRY RUN] {tag} would execute {candidate.summary()} "
                    f"(profit: ${candidate.estimated_profit_usd:.2f}, gas: ${gas_cost:.2f})"
                )
                return ExecutionAttempt(
                    target.name, "skipped", reason="dry_run", gas_cost_usd=gas_cost
                )

            # NonceAssigned -> Signed
            nonce = await self.nonces.next_nonce()
            relayed = False
            try:
                tx["nonce"] = nonce
                signed = self.account.sign_transaction(tx)

                # Relayed
                try:
                    tx_hash, relay_name = await self.relays.send(signed.raw_transaction)
                except RelayError as e:
                    logger.error(f"{tag} relay failed: {'; '.join(e.reasons)}")
                    return ExecutionAttempt(
                        target.name, "failed", reason="; ".join(e.reasons) or str(e), nonce=nonce
                    )
                relayed = True
            finally:
                if relayed:
                    self.nonces.settle(nonce)
                else:
                    self.nonces.release(nonce)
            self.submissions += 1
            logger.info(f"{tag} submitted via {relay_name}: {tx_hash} (nonce {nonce})")

            # Confirmed / TimedOut
            if not self.config.wait_for_receipt:
                return ExecutionAttempt(target.name, "submitted", tx_hash=tx_hash, nonce=nonce, gas_cost_usd=gas_cost)
            receipt = await self._wait_for_receipt(tx_hash)
            if receipt is None:
                return ExecutionAttempt(
                    target.name, "submitted", tx_hash=tx_hash, reason="confirmation_timeout",
                    nonce=nonce, gas_cost_usd=gas_cost,
                )
            if int(receipt.get("status", 1)) == 0:
                logger.error(f"{tag} reverted: {tx_hash}")
                return ExecutionAttempt(
                    target.name, "failed", tx_hash=tx_hash, reason="reverted", nonce=nonce, gas_cost_usd=gas_cost
                )
            return ExecutionAttempt(target.name, "submitted", tx_hash=tx_hash, nonce=nonce, gas_cost_usd=gas_cost)

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"{tag} execution failed: {e}")
            return ExecutionAttempt(target.name, "failed", reason=str(e))

    async def execute(self, candidate: TradeCandidate) -> ExecutionOutcome:
        """Try each executor in order and aggregate the attempts."""
        attempts: List[ExecutionAttempt] = []
        for target in self.targets:
            result = await self.attempt(candidate, target)
            attempts.append(result)
            if result.status == "submitted" and not self.config.attempt_all_executors:
                break

        outcome = aggregate_outcome(attempts)
        logger.info(f"Execution outcome for {candidate.summary()}: {outcome.status}")
        return outcome

    def get_stats(self) -> Dict[str, Any]:
        """Get execution statistics."""
        return {
            "attempts": self.attempts_made,
            "submissions": self.submissions,
            "next_nonce": self.nonces.peek,
            "executors": [t.name for t in self.targets],
        }
