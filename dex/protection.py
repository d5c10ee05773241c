"""
Pre-submission protection pipeline.

An ordered, short-circuiting list of independent checks. Each check gets
the candidate plus a ``ProtectionContext`` (wallet, accessor factory, price
book, swap-activity monitor, flash-loan sources) and returns a
``CheckResult``. Checks run one at a time under the central retry policy:
a per-check timeout and a single retry on transient errors, with a fresh
accessor taken from the factory on every attempt.

Order:
    1. cooldown        route fingerprint re-submission window
    2. activity        recent unconfirmed swaps touching the same venues
    3. slippage        expected vs minimum output gap
    4. profit          absolute USD and relative bps minimums
    5. gas             fee ceiling, gas limit ceiling, estimation failure
    6. balance         flash-loan source (or wallet) liquidity
    7. reserve_clamp   clamp the loan to what the first venue can absorb
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from dex_arbitrage.exceptions import DataQualityError
from dex_arbitrage.metrics import EngineMetrics
from dex_arbitrage.retry import RetryPolicy, is_retryable_error
from dex_arbitrage.risk_controls import SwapActivityMonitor, lock_profit
from dex_arbitrage.utils import get_logger

from . import abi, pricing
from .adapters.v3 import virtual_reserves
from .chain import ReadAccessor
from .route_deduplication import RouteCooldown
from .slippage import safe_trade_amount, slippage_gap_bps
from .token_prices import TokenPriceBook
from .types import CheckResult, PipelineResult, Pool, TradeCandidate

logger = get_logger(__name__)

FLASH_LOAN_KINDS = ("aave", "balancer")


@dataclass
class FlashLoanSource:
    """A flash-loan provider and the address holding its liquidity."""

    kind: str
    address: str
    enabled: bool = True


@dataclass
class ProtectionLimits:
    """Thresholds for the default checks."""

    cooldown_seconds: float = 3.0
    max_slippage_bps: int = 150
    min_profit_usd: float = 10.0
    min_profit_bps: float = 0.0
    max_fee_gwei: float = 300.0
    max_gas_limit: int = 2_000_000
    reserve_slippage_pct: int = 1
    step_timeout_seconds: float = 5.0
    profit_lock_pct: float = 0.75


@dataclass
class ProtectionContext:
    """
    Ambient inputs shared by the checks.

    Attributes:
        wallet: Sending account address
        accessor_factory: Returns a ReadAccessor; called once per check attempt
        price_book: USD prices and oracle feeds
        tx_request_factory: Builds the unsigned executor transaction for gas estimation
        activity: Swap-intent monitor; None makes the activity check pass
        flash_sources: Configured flash-loan providers
    """

    wallet: str
    accessor_factory: Callable[[], ReadAccessor]
    price_book: TokenPriceBook
    tx_request_factory: Optional[Callable[[TradeCandidate], Dict[str, Any]]] = None
    activity: Optional[SwapActivityMonitor] = None
    flash_sources: List[FlashLoanSource] = field(default_factory=list)


class ProtectionCheck:
    """Base class; subclasses set ``name`` and implement ``run``."""

    name = "check"

    async def run(self, candidate: TradeCandidate, ctx: ProtectionContext) -> CheckResult:
        raise NotImplementedError


class CooldownCheck(ProtectionCheck):
    name = "cooldown"

    def __init__(self, cooldown: RouteCooldown):
        self.cooldown = cooldown

    async def run(self, candidate, ctx):
        ok, reason = self.cooldown.should_execute(candidate.fingerprint)
        if not ok:
            return CheckResult.failed(reason)
        return CheckResult.passed()


class ActivityCheck(ProtectionCheck):
    name = "activity"

    async def run(self, candidate, ctx):
        if ctx.activity is None:
            return CheckResult.passed(skipped=True)
        conflicts = ctx.activity.conflicts(candidate.venue_addresses)
        if conflicts:
            return CheckResult.failed(
                f"conflicting activity: {len(conflicts)} recent swap(s) on route venues",
                tx_hashes=[c.hash for c in conflicts],
            )
        return CheckResult.passed()


class SlippageCheck(ProtectionCheck):
    name = "slippage"

    def __init__(self, max_slippage_bps: int = 150):
        self.max_slippage_bps = max_slippage_bps

    async def run(self, candidate, ctx):
        expected, minimum = candidate.expected_out_wei, candidate.min_out_wei
        if expected <= 0:
            return CheckResult.failed("expected output is not positive", expected_out=expected)
        if minimum > expected:
            return CheckResult.failed(
                "minimum output exceeds expected output", expected_out=expected, min_out=minimum
            )
        gap = slippage_gap_bps(expected, minimum)
        if gap > self.max_slippage_bps:
            return CheckResult.failed(
                f"slippage {gap / 100:.2f}% exceeds max {self.max_slippage_bps / 100:.2f}%",
                gap_bps=gap,
            )
        return CheckResult.passed(gap_bps=gap)


class ProfitCheck(ProtectionCheck):
    """
    Absolute and relative profit minimums.

    Uses the candidate's own USD estimate when it has one; otherwise prices
    the route tokens through the oracle feeds (in parallel) and derives
    profit from the expected output. Stale or non-positive oracle answers
    reject the candidate.
    """

    name = "profit"

    def __init__(self, min_profit_usd: float = 10.0, min_profit_bps: float = 0.0):
        self.min_profit_usd = min_profit_usd
        self.min_profit_bps = min_profit_bps

    async def _oracle_profit(self, candidate, ctx):
        accessor = ctx.accessor_factory()
        tokens = list(dict.fromkeys(candidate.route))
        prices = await asyncio.gather(
            *(ctx.price_book.fetch_feed_price(accessor, t) for t in tokens)
        )
        price = dict(zip(tokens, prices))[candidate.loan_asset]
        scale = 10**candidate.loan_decimals
        notional = candidate.loan_amount_wei / scale * price
        gross = (candidate.expected_out_wei - candidate.loan_amount_wei) / scale * price
        return notional, gross - candidate.estimated_gas_cost_usd, "oracle"

    async def run(self, candidate, ctx):
        if candidate.loan_amount_usd > 0:
            notional = candidate.loan_amount_usd
            profit = candidate.estimated_profit_usd
            source = "estimate"
        else:
            try:
                notional, profit, source = await self._oracle_profit(candidate, ctx)
            except DataQualityError as e:
                return CheckResult.failed(f"price unavailable: {e}", token=e.token)

        if notional <= 0:
            return CheckResult.failed("notional is not positive", notional_usd=notional)
        profit_bps = profit / notional * 10_000
        details = {"profit_usd": profit, "notional_usd": notional, "profit_bps": profit_bps, "source": source}

        if profit < self.min_profit_usd:
            return CheckResult.failed(
                f"profit ${profit:.2f} < min ${self.min_profit_usd:.2f}", **details
            )
        if profit_bps < self.min_profit_bps:
            return CheckResult.failed(
                f"profit {profit_bps:.1f}bps < min {self.min_profit_bps:.1f}bps", **details
            )
        return CheckResult.passed(**details)


class GasCheck(ProtectionCheck):
    name = "gas"

    def __init__(self, max_fee_gwei: float = 300.0, max_gas_limit: int = 2_000_000):
        self.max_fee_wei = int(max_fee_gwei * 10**9)
        self.max_gas_limit = max_gas_limit

    async def run(self, candidate, ctx):
        accessor = ctx.accessor_factory()
        fee_data = await accessor.get_fee_data()
        fee_per_gas = fee_data.effective_fee_per_gas
        if fee_per_gas is None:
            return CheckResult.failed("no fee data")
        if fee_per_gas > self.max_fee_wei:
            return CheckResult.failed(
                f"fee {fee_per_gas / 1e9:.1f} gwei exceeds ceiling {self.max_fee_wei / 1e9:.1f} gwei",
                fee_per_gas=fee_per_gas,
            )
        if ctx.tx_request_factory is None:
            return CheckResult.failed("no transaction factory for gas estimation")

        tx = ctx.tx_request_factory(candidate)
        try:
            gas_limit = await accessor.estimate_gas(tx)
        except Exception as e:
            if is_retryable_error(e):
                raise
            return CheckResult.failed(f"gas estimation failed: {e}")

        if gas_limit > self.max_gas_limit:
            return CheckResult.failed(
                f"gas limit {gas_limit} exceeds ceiling {self.max_gas_limit}", gas_limit=gas_limit
            )
        candidate.details["gas_limit"] = gas_limit
        candidate.details["fee_per_gas"] = fee_per_gas
        return CheckResult.passed(
            gas_limit=gas_limit, fee_per_gas=fee_per_gas, uses_1559=fee_data.uses_1559
        )


class BalanceCheck(ProtectionCheck):
    """At least one enabled flash-loan source holds the loan; else the wallet must."""

    name = "balance"

    async def run(self, candidate, ctx):
        accessor = ctx.accessor_factory()
        needed = candidate.loan_amount_wei
        sources = [s for s in ctx.flash_sources if s.enabled and s.kind in FLASH_LOAN_KINDS]

        if sources:
            seen: Dict[str, int] = {}
            for source in sources:
                balance = await accessor.get_balance(source.address, candidate.loan_asset)
                seen[source.kind] = balance
                if balance >= needed:
                    return CheckResult.passed(source=source.kind, balance=balance)
            return CheckResult.failed(
                "no flash-loan source holds enough liquidity", needed=needed, balances=seen
            )

        balance = await accessor.get_balance(ctx.wallet, candidate.loan_asset)
        if balance < needed:
            return CheckResult.failed("insufficient wallet balance", needed=needed, balance=balance)
        return CheckResult.passed(source="wallet", balance=balance)


class ReserveClampCheck(ProtectionCheck):
    """
    Clamp the loan to a safe share of the first venue's current depth.

    Probes ``getReserves()`` then ``slot0()``; a pool answering neither is
    skipped rather than guessed at.
    """

    name = "reserve_clamp"

    def __init__(self, slippage_pct: int = 1):
        self.slippage_pct = slippage_pct

    async def _try_call(self, accessor: ReadAccessor, address: str, data: bytes) -> Optional[bytes]:
        try:
            result = await accessor.call(address, data)
        except Exception as e:
            if is_retryable_error(e):
                raise
            return None
        return result or None

    async def _token0(self, accessor: ReadAccessor, pool: Pool) -> str:
        raw = await self._try_call(accessor, pool.address, abi.TOKEN0_SELECTOR)
        if raw is None:
            return pool.token0
        (token0,) = abi.decode_result(("address",), raw)
        return token0.lower()

    async def _reserve_in(self, accessor: ReadAccessor, pool: Pool, token_in: str) -> Optional[int]:
        raw = await self._try_call(accessor, pool.address, abi.GET_RESERVES_SELECTOR)
        if raw is not None:
            r0, r1, _ = abi.decode_result(abi.GET_RESERVES_TYPES, raw)
            token0 = await self._token0(accessor, pool)
            return int(r0) if token_in == token0 else int(r1)

        raw = await self._try_call(accessor, pool.address, abi.SLOT0_SELECTOR)
        if raw is not None:
            sqrt_price_x96 = int(abi.decode_result(abi.SLOT0_TYPES, raw)[0])
            liq_raw = await self._try_call(accessor, pool.address, abi.selector(abi.LIQUIDITY))
            liquidity = int(abi.decode_result(("uint128",), liq_raw)[0]) if liq_raw else pool.liquidity
            x, y = virtual_reserves(liquidity, sqrt_price_x96)
            token0 = await self._token0(accessor, pool)
            return x if token_in == token0 else y
        return None

    async def run(self, candidate, ctx):
        pool = candidate.pools[0]
        token_in = candidate.route[0]
        accessor = ctx.accessor_factory()

        reserve_in = await self._reserve_in(accessor, pool, token_in)
        if reserve_in is None:
            return CheckResult.passed(skipped=True, pool=pool.address)

        desired = candidate.loan_amount_wei
        safe = safe_trade_amount(reserve_in, desired, self.slippage_pct)
        if safe <= 0:
            return CheckResult.failed("venue has no usable reserves", pool=pool.address)
        if safe < desired:
            ratio = safe / desired
            expected = pricing.quote_route(candidate.pools, candidate.route, safe)
            if expected <= 0:
                return CheckResult.failed("clamped amount quotes to nothing", pool=pool.address, safe=safe)
            # Keep the approved slippage gap on the smaller trade
            if candidate.expected_out_wei > 0:
                minimum = expected * candidate.min_out_wei // candidate.expected_out_wei
            else:
                minimum = 0
            candidate.loan_amount_wei = safe
            candidate.expected_out_wei = expected
            candidate.min_out_wei = minimum
            candidate.loan_amount_usd *= ratio
            candidate.estimated_profit_usd *= ratio
            candidate.details["clamped_from_wei"] = desired
            logger.info(f"Clamped loan for {candidate.fingerprint[:8]}: {desired} -> {safe}")
            return CheckResult.passed(clamped=True, requested=desired, safe=safe)
        return CheckResult.passed(clamped=False, safe=safe)


class ProtectionPipeline:
    """
    Runs checks in order and stops at the first failure.

    Args:
        checks: Ordered checks
        retry: Retry policy applied per check (one retry by default)
        step_timeout: Per-attempt timeout for each check
        profit_lock_pct: Share of estimated profit locked on success
        metrics: Optional metrics sink
    """

    def __init__(
        self,
        checks: List[ProtectionCheck],
        retry: Optional[RetryPolicy] = None,
        step_timeout: float = 5.0,
        profit_lock_pct: float = 0.75,
        metrics: Optional[EngineMetrics] = None,
    ):
        self.checks = list(checks)
        self.retry = retry or RetryPolicy(max_attempts=2, timeout=step_timeout)
        self.step_timeout = step_timeout
        self.profit_lock_pct = profit_lock_pct
        self.metrics = metrics

    @classmethod
    def default(
        cls,
        limits: ProtectionLimits,
        cooldown: Optional[RouteCooldown] = None,
        metrics: Optional[EngineMetrics] = None,
    ) -> "ProtectionPipeline":
        checks = [
            CooldownCheck(cooldown or RouteCooldown(limits.cooldown_seconds)),
            ActivityCheck(),
            SlippageCheck(limits.max_slippage_bps),
            ProfitCheck(limits.min_profit_usd, limits.min_profit_bps),
            GasCheck(limits.max_fee_gwei, limits.max_gas_limit),
            BalanceCheck(),
            ReserveClampCheck(limits.reserve_slippage_pct),
        ]
        return cls(
            checks,
            step_timeout=limits.step_timeout_seconds,
            profit_lock_pct=limits.profit_lock_pct,
            metrics=metrics,
        )

    async def _run_check(self, check: ProtectionCheck, candidate, ctx) -> CheckResult:
        try:
            return await self.retry.run(
                lambda: check.run(candidate, ctx), label=check.name, timeout=self.step_timeout
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Check {check.name} errored for {candidate.fingerprint[:8]}: {e}")
            return CheckResult.failed(f"error:{type(e).__name__}: {e}")

    async def run(self, candidate: TradeCandidate, ctx: ProtectionContext) -> PipelineResult:
        trace: List[Dict[str, Any]] = []
        details: Dict[str, Any] = {}

        for check in self.checks:
            start = time.perf_counter()
            result = await self._run_check(check, candidate, ctx)
            elapsed_ms = (time.perf_counter() - start) * 1000

            trace.append({"name": check.name, "elapsed_ms": elapsed_ms})
            details[check.name] = result.details
            if self.metrics:
                self.metrics.record_protection_step(check.name, elapsed_ms)

            if not result.ok:
                if self.metrics:
                    self.metrics.record_protection_rejection(check.name)
                logger.info(f"Rejected {candidate.summary()} at {check.name}: {result.reason}")
                return PipelineResult(
                    ok=False,
                    failed_check=check.name,
                    reason=result.reason,
                    trace=trace,
                    details=details,
                )

        lock = lock_profit(candidate.estimated_profit_usd, self.profit_lock_pct)
        return PipelineResult(
            ok=True,
            trace=trace,
            details=details,
            profit_lock={"locked_usd": lock.locked_usd, "leftover_usd": lock.leftover_usd},
        )
