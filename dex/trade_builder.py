"""
Transaction builder for flash-loan arbitrage executors.

Turns an approved ``TradeCandidate`` into the ordered swap steps the
executor contract dispatches on, one step per leg, and encodes the
``executeArbitrage`` call. Nothing in this module touches the network.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from eth_abi import encode
from web3 import Web3

from dex_arbitrage.exceptions import UnsupportedVenueError

from . import abi, pricing
from .adapters.v3 import encode_v3_path, fee_bps_to_tier
from .adapters.vault import pool_id_bytes
from .slippage import min_amount_out
from .types import Pool, TradeCandidate, VenueKind

# Step kind tags understood by the executor contract
STEP_KINDS: Dict[VenueKind, int] = {
    VenueKind.CONSTANT_PRODUCT_V2: 0,
    VenueKind.CONCENTRATED_V3: 1,
    VenueKind.WEIGHTED_VAULT: 2,
    VenueKind.STABLE_SWAP: 3,
    VenueKind.ELASTIC_V3: 4,
}

_missing = [k for k in VenueKind if k not in STEP_KINDS]
if _missing:
    raise UnsupportedVenueError(f"No executor step kind for venue kinds: {sorted(_missing)}")


@dataclass
class SwapStep:
    """
    One venue call inside the executor transaction.

    Attributes:
        kind: Venue kind the executor dispatches on
        router: Router, vault or pool the executor calls
        path: Token path for this leg (token in, token out)
        fee_tier: V3-style fee tier, 0 where not applicable
        exact_input_single: Use the single-pool exact-input entry point
        aux_data: Venue-specific bytes (V3 path, vault pool id, stable coin indices)
        amount_in: Input amount in base units
        min_amount_out: Minimum acceptable output in base units
        deadline: Unix deadline passed to the venue
        unwrap_eth: Unwrap wrapped native output
    """

    kind: VenueKind
    router: str
    path: List[str]
    fee_tier: int
    exact_input_single: bool
    aux_data: bytes
    amount_in: int
    min_amount_out: int
    deadline: int
    unwrap_eth: bool = False

    def as_tuple(self) -> Tuple[Any, ...]:
        return (
            STEP_KINDS[self.kind],
            Web3.to_checksum_address(self.router),
            [Web3.to_checksum_address(t) for t in self.path],
            self.fee_tier,
            self.exact_input_single,
            self.aux_data,
            self.amount_in,
            self.min_amount_out,
            self.deadline,
            self.unwrap_eth,
        )


@dataclass
class TradePlan:
    """Flash-loan assets and amounts plus the ordered swap steps."""

    fingerprint: str
    loan_asset: str
    loan_amount: int
    steps: List[SwapStep] = field(default_factory=list)

    @property
    def final_min_out(self) -> int:
        return self.steps[-1].min_amount_out if self.steps else 0

    def as_params(self) -> Tuple[Any, ...]:
        return (
            [Web3.to_checksum_address(self.loan_asset)],
            [self.loan_amount],
            [step.as_tuple() for step in self.steps],
        )


class TradeBuilder:
    """
    Builds swap steps and executor calldata for a candidate.

    Args:
        slippage_bps: Slippage applied to each leg's expected output
        deadline_seconds: Deadline offset from build time
    """

    def __init__(self, slippage_bps: int = 100, deadline_seconds: int = 120):
        self.slippage_bps = slippage_bps
        self.deadline_seconds = deadline_seconds

    def aux_data(self, pool: Pool, token_in: str, token_out: str) -> bytes:
        """Venue-specific auxiliary bytes for a leg."""
        if pool.kind.is_concentrated:
            return encode_v3_path([token_in, token_out], [fee_bps_to_tier(pool.fee_bps)])
        if pool.kind == VenueKind.WEIGHTED_VAULT:
            if not pool.pool_id:
                raise UnsupportedVenueError(
                    f"Vault pool {pool.address} has no pool id", source=pool.address
                )
            return pool_id_bytes(pool.pool_id)
        if pool.kind == VenueKind.STABLE_SWAP:
            if token_in.lower() == pool.token0:
                i, j = pool.coin_index0, pool.coin_index1
            else:
                i, j = pool.coin_index1, pool.coin_index0
            return encode(["int128", "int128"], [i, j])
        return b""

    def build_step(
        self,
        pool: Pool,
        token_in: str,
        token_out: str,
        amount_in: int,
        deadline: int,
        min_out: Optional[int] = None,
    ) -> SwapStep:
        """Step for one leg; ``min_out`` overrides the slippage-derived minimum."""
        router = pool.router
        if not router:
            # Stable pools are called directly
            if pool.kind != VenueKind.STABLE_SWAP:
                raise UnsupportedVenueError(
                    f"No router configured for {pool.kind.value} pool {pool.address}",
                    source=pool.address,
                )
            router = pool.address

        expected = pricing.quote(pool, amount_in, token_in)
        if min_out is None:
            min_out = min_amount_out(expected, self.slippage_bps)
        return SwapStep(
            kind=pool.kind,
            router=router,
            path=[token_in, token_out],
            fee_tier=fee_bps_to_tier(pool.fee_bps) if pool.kind.is_concentrated else 0,
            exact_input_single=pool.kind.is_concentrated,
            aux_data=self.aux_data(pool, token_in, token_out),
            amount_in=amount_in,
            min_amount_out=min_out,
            deadline=deadline,
        )

    def build(self, candidate: TradeCandidate, now: Optional[float] = None) -> TradePlan:
        """
        One step per leg.

        Each leg spends the previous leg's quoted output. The last leg's
        minimum is the candidate's approved ``min_out_wei``, so the bound
        sent on-chain is the one the slippage check accepted; a leg that
        falls short reverts the whole transaction.

        Raises:
            ValueError: If the candidate has no loan amount
            DataQualityError: If a leg can't be quoted
            UnsupportedVenueError: If a leg's venue can't be encoded
        """
        if candidate.loan_amount_wei <= 0:
            raise ValueError(f"Candidate {candidate.fingerprint} has no loan amount")

        now = time.time() if now is None else now
        deadline = int(now) + self.deadline_seconds
        route = candidate.route
        plan = TradePlan(
            fingerprint=candidate.fingerprint,
            loan_asset=candidate.loan_asset,
            loan_amount=candidate.loan_amount_wei,
        )

        amount = candidate.loan_amount_wei
        last = len(candidate.pools) - 1
        for i, pool in enumerate(candidate.pools):
            final_min = candidate.min_out_wei if i == last and candidate.min_out_wei > 0 else None
            step = self.build_step(pool, route[i], route[i + 1], amount, deadline, min_out=final_min)
            plan.steps.append(step)
            amount = pricing.quote(pool, amount, route[i])
        return plan

    def encode_execute_arbitrage(self, plan: TradePlan) -> bytes:
        return abi.selector(abi.EXECUTE_ARBITRAGE) + encode(
            [abi.EXECUTE_ARBITRAGE_ARG], [plan.as_params()]
        )

    def build_transaction(
        self,
        candidate: TradeCandidate,
        executor: str,
        sender: str,
        chain_id: Optional[int] = None,
        now: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Unsigned transaction calling ``executor``; gas, fees and nonce are
        filled in by the orchestrator.
        """
        plan = self.build(candidate, now=now)
        tx: Dict[str, Any] = {
            "from": Web3.to_checksum_address(sender),
            "to": Web3.to_checksum_address(executor),
            "value": 0,
            "data": Web3.to_hex(self.encode_execute_arbitrage(plan)),
        }
        if chain_id is not None:
            tx["chainId"] = chain_id
        return tx
