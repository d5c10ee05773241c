"""
Main DEX arbitrage engine loop.

Wires discovery, the pool index, the scanner, the protection pipeline and
the execution orchestrator together:

    refresh loop   feed -> on-chain state -> price book -> index rebuild
    scan loop      full scan -> promote -> repository put -> bounded queue
    workers        queue -> protection -> execution -> alert + repository delete

Confirmed-swap updates patch one pool and trigger an incremental scan.
Shutdown stops the loops, lets in-flight candidates finish, skips what is
still queued, then saves cooldown state.
"""

import asyncio
import time
from dataclasses import asdict
from typing import Any, Dict, List, Optional, Sequence, Set

from dex_arbitrage.exceptions import ConfigurationError
from dex_arbitrage.metrics import EngineMetrics
from dex_arbitrage.risk_controls import SwapActivityMonitor, SwapIntent
from dex_arbitrage.utils import get_logger

from .alerts import AlertSink, JsonlAlertSink, LoggingAlertSink, MultiAlertSink, make_alert
from .chain import RawTransactionSubmitter, ReadAccessor
from .config import EngineConfig
from .discovery import JsonPoolFeed, OnChainPoolRefresher
from .executor import ExecutionConfig, ExecutionOrchestrator, ExecutorTarget
from .pool_index import PoolIndex
from .protection import FlashLoanSource, ProtectionContext, ProtectionLimits, ProtectionPipeline
from .relays import RelayFanout
from .repository import CandidateRepository
from .route_deduplication import RouteCooldown
from .scanner import CandidateQueue, OpportunityScanner
from .token_prices import TokenPriceBook
from .trade_builder import TradeBuilder
from .types import AlertRecord, TradeCandidate

logger = get_logger(__name__)


class ArbEngine:
    """
    Long-running arbitrage engine.

    Components are injected so tests can swap any of them; ``from_config``
    builds the production wiring.
    """

    def __init__(
        self,
        *,
        price_book: TokenPriceBook,
        index: PoolIndex,
        scanner: OpportunityScanner,
        queue: CandidateQueue,
        pipeline: ProtectionPipeline,
        context: ProtectionContext,
        orchestrator: ExecutionOrchestrator,
        repository: CandidateRepository,
        alerts: AlertSink,
        feed: Optional[JsonPoolFeed] = None,
        refresher: Optional[OnChainPoolRefresher] = None,
        accessor: Optional[ReadAccessor] = None,
        cooldown: Optional[RouteCooldown] = None,
        activity: Optional[SwapActivityMonitor] = None,
        metrics: Optional[EngineMetrics] = None,
        max_concurrent: int = 4,
        scan_interval: float = 2.0,
        refresh_interval: float = 30.0,
        cooldown_state_path: Optional[str] = None,
        gas_units_estimate: int = 600_000,
        metrics_port: Optional[int] = None,
        metrics_host: str = "0.0.0.0",
    ):
        self.price_book = price_book
        self.index = index
        self.scanner = scanner
        self.queue = queue
        self.pipeline = pipeline
        self.context = context
        self.orchestrator = orchestrator
        self.repository = repository
        self.alerts = alerts
        self.feed = feed
        self.refresher = refresher
        self.accessor = accessor
        self.cooldown = cooldown
        self.activity = activity
        self.metrics = metrics
        self.max_concurrent = max_concurrent
        self.scan_interval = scan_interval
        self.refresh_interval = refresh_interval
        self.cooldown_state_path = cooldown_state_path
        self.gas_units_estimate = gas_units_estimate
        self.metrics_port = metrics_port
        self.metrics_host = metrics_host

        self.gas_cost_usd_estimate = 0.0
        self._in_flight: Set[str] = set()
        self._stopping = asyncio.Event()
        self._loops: List[asyncio.Task] = []
        self._workers: List[asyncio.Task] = []
        self.outcomes: Dict[str, int] = {"submitted": 0, "skip": 0, "fail": 0}

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        accessor: ReadAccessor,
        submitters: Sequence[RawTransactionSubmitter],
        private_key: Optional[str] = None,
        metrics: Optional[EngineMetrics] = None,
    ) -> "ArbEngine":
        """
        Build the production engine from validated configuration.

        Raises:
            ConfigurationError: If live execution lacks a key or executors
        """
        execution = config.execution
        protection = config.protection
        if not execution.dry_run and not private_key:
            raise ConfigurationError("A signing key is required unless dry_run is enabled")

        price_book = TokenPriceBook(
            stable_tokens=config.stable_tokens,
            feeds=config.price_feeds,
            staleness_seconds=protection.oracle_staleness_seconds,
        )
        cooldown = RouteCooldown(protection.cooldown_seconds)
        activity = SwapActivityMonitor(protection.activity_lookback_seconds)

        builder = TradeBuilder(execution.trade_slippage_bps, execution.deadline_seconds)
        orchestrator = ExecutionOrchestrator(
            accessor=accessor,
            builder=builder,
            relays=RelayFanout(submitters, timeout=execution.relay_timeout_seconds, metrics=metrics),
            targets=[ExecutorTarget(e.name, e.address) for e in execution.executors],
            config=ExecutionConfig(
                private_key=private_key,
                wallet=execution.wallet,
                chain_id=config.rpc.chain_id,
                dry_run_mode=execution.dry_run,
                native_token=execution.native_token,
                native_price_usd=execution.native_price_usd,
                wait_for_receipt=execution.wait_for_receipt,
                confirmation_timeout=execution.confirmation_timeout_seconds,
                attempt_all_executors=execution.attempt_all_executors,
            ),
            price_book=price_book,
        )

        first_executor = orchestrator.targets[0].address
        context = ProtectionContext(
            wallet=orchestrator.sender,
            accessor_factory=lambda: accessor,
            price_book=price_book,
            tx_request_factory=lambda c: builder.build_transaction(
                c, first_executor, orchestrator.sender, chain_id=config.rpc.chain_id
            ),
            activity=activity,
            flash_sources=[
                FlashLoanSource(s.type, s.address, s.enabled) for s in config.flash_loan_sources
            ],
        )

        limits = ProtectionLimits(
            cooldown_seconds=protection.cooldown_seconds,
            max_slippage_bps=protection.max_slippage_bps,
            min_profit_usd=protection.min_profit_usd,
            min_profit_bps=protection.min_profit_bps,
            max_fee_gwei=protection.max_fee_gwei,
            max_gas_limit=protection.max_gas_limit,
            reserve_slippage_pct=protection.reserve_slippage_pct,
            step_timeout_seconds=protection.step_timeout_seconds,
            profit_lock_pct=protection.profit_lock_pct / 100.0,
        )

        storage = config.storage
        alerts = MultiAlertSink(
            [
                LoggingAlertSink(),
                JsonlAlertSink(storage.alerts_path, storage.alert_suppression_seconds),
            ]
        )

        return cls(
            price_book=price_book,
            index=PoolIndex(price_book, config.scanner.min_liquidity_usd),
            scanner=OpportunityScanner(
                price_book,
                min_edge=config.scanner.min_edge_pct / 100.0,
                loan_tokens=config.scanner.loan_tokens,
                max_notional_usd=config.scanner.max_notional_usd,
                trade_slippage_bps=execution.trade_slippage_bps,
            ),
            queue=CandidateQueue(config.scanner.queue_capacity),
            pipeline=ProtectionPipeline.default(limits, cooldown, metrics),
            context=context,
            orchestrator=orchestrator,
            repository=CandidateRepository(storage.repository_dir),
            alerts=alerts,
            feed=JsonPoolFeed(storage.pool_feed_path),
            refresher=OnChainPoolRefresher(
                accessor,
                balancer_vault=next(
                    (s.address for s in config.flash_loan_sources if s.type == "balancer"), None
                ),
            ),
            accessor=accessor,
            cooldown=cooldown,
            activity=activity,
            metrics=metrics,
            max_concurrent=execution.max_concurrent_candidates,
            scan_interval=config.scanner.scan_interval_seconds,
            refresh_interval=config.scanner.refresh_interval_seconds,
            cooldown_state_path=storage.cooldown_state_path,
            gas_units_estimate=execution.gas_units_estimate,
            metrics_port=config.metrics.port if config.metrics.enabled else None,
            metrics_host=config.metrics.host,
        )

    # === REFRESH ===

    async def _update_gas_estimate(self) -> None:
        fee_data = await self.accessor.get_fee_data()
        fee_per_gas = fee_data.effective_fee_per_gas
        if fee_per_gas:
            self.gas_cost_usd_estimate = self.orchestrator.gas_cost_usd(
                self.gas_units_estimate, fee_per_gas
            )

    async def refresh(self) -> int:
        """
        Rebuild the index from the discovery feed.

        Returns:
            Number of pools indexed
        """
        pools = self.feed.load() if self.feed else self.index.pools()
        if self.refresher:
            pools = await self.refresher.refresh(pools)
        if self.accessor:
            await self.price_book.refresh(self.accessor)
            try:
                await self._update_gas_estimate()
            except Exception as e:
                logger.warning(f"Gas estimate refresh failed: {e}")

        count = self.index.rebuild(pools)
        if self.metrics:
            self.metrics.update_pool_count(count)
            self.metrics.record_index_refresh("full")
            for reason in self.index.excluded.values():
                self.metrics.record_pool_excluded(reason)
        return count

    # === SCANNING ===

    async def scan_once(self, address: Optional[str] = None) -> int:
        """
        Run a full scan, or an incremental one through ``address``.

        Returns:
            Number of candidates enqueued
        """
        mode = "incremental" if address else "full"
        start = time.perf_counter()
        snapshot = self.index.snapshot()
        if address:
            opportunities = self.scanner.scan_pool(snapshot, address)
        else:
            opportunities = self.scanner.scan(snapshot)

        candidates: List[TradeCandidate] = []
        for opportunity in opportunities:
            if self.metrics:
                self.metrics.record_opportunity(opportunity.kind)
            candidate = self.scanner.promote(opportunity, self.gas_cost_usd_estimate)
            if candidate is not None:
                candidates.append(candidate)

        for candidate in candidates:
            self.repository.put(candidate)
        dropped = await self.queue.push_many(candidates)
        for candidate in dropped:
            fp = candidate.fingerprint
            if fp not in self.queue and fp not in self._in_flight:
                self.repository.delete(fp)

        if self.metrics:
            self.metrics.record_scan(mode, time.perf_counter() - start)
            self.metrics.record_candidate_dropped(len(dropped))
            self.metrics.update_queue_depth(len(self.queue))
        if candidates:
            logger.info(
                f"{mode} scan: {len(opportunities)} opportunities, "
                f"{len(candidates) - len(dropped)} queued, {len(dropped)} dropped"
            )
        return len(candidates) - len(dropped)

    async def on_pool_update(
        self,
        address: str,
        reserve0: Optional[int] = None,
        reserve1: Optional[int] = None,
        liquidity: Optional[int] = None,
        sqrt_price_x96: Optional[int] = None,
    ) -> int:
        """Apply a confirmed swap's state to one pool and rescan around it."""
        pool = self.index.apply_update(address, reserve0, reserve1, liquidity, sqrt_price_x96)
        if pool is None:
            return 0
        if self.metrics:
            self.metrics.record_index_refresh("incremental")
        return await self.scan_once(address=pool.address)

    def observe_intent(self, record: Dict[str, Any]) -> None:
        """Feed one decoded pending swap to the activity monitor."""
        if self.activity is not None:
            self.activity.observe(SwapIntent.from_dict(record))

    # === CANDIDATE PROCESSING ===

    def _retire(self, fp: str, alerts: List[AlertRecord]) -> None:
        """Emit ``alerts`` and delete the record; sink or storage errors are logged, never raised."""
        for alert in alerts:
            try:
                self.alerts.emit(alert)
            except Exception as e:
                logger.error(f"Alert sink failed for {fp} ({alert.status}): {e}")
        try:
            self.repository.delete(fp)
        except Exception as e:
            logger.error(f"Could not delete repository record {fp}: {e}")

    async def process(self, candidate: TradeCandidate) -> str:
        """
        Take a candidate to a terminal outcome.

        Emits exactly one terminal alert and removes the repository record
        once. When more than one executor submitted, an extra ``info``
        alert reports it.

        Returns:
            "submitted", "skip" or "fail"
        """
        fp = candidate.fingerprint
        self._in_flight.add(fp)
        alerts: List[AlertRecord] = []
        try:
            try:
                result = await self.pipeline.run(candidate, self.context)
                if not result.ok:
                    candidate.status = "skip"
                    alerts.append(
                        make_alert("skip", candidate, reason=f"{result.failed_check}: {result.reason}")
                    )
                else:
                    outcome = await self.orchestrator.execute(candidate)
                    candidate.status = outcome.status
                    hashes = outcome.tx_hashes
                    alerts.append(
                        make_alert(
                            outcome.status,
                            candidate,
                            reason=outcome.reason,
                            tx_hash=hashes[0] if hashes else None,
                            profit_lock=result.profit_lock,
                            attempts=[asdict(a) for a in outcome.attempts],
                        )
                    )
                    executed = [a.executor for a in outcome.attempts if a.status == "submitted"]
                    if len(executed) > 1:
                        alerts.append(
                            make_alert(
                                "info",
                                candidate,
                                reason=f"executed on {len(executed)} executors: {', '.join(executed)}",
                                tx_hashes=hashes,
                            )
                        )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Unexpected error processing {fp}: {e}", exc_info=True)
                candidate.status = "fail"
                alerts = [make_alert("fail", candidate, reason=f"error: {e}")]

            self._retire(fp, alerts)
        finally:
            self._in_flight.discard(fp)

        self.outcomes[candidate.status] = self.outcomes.get(candidate.status, 0) + 1
        if self.metrics:
            self.metrics.record_outcome(candidate.status, candidate.estimated_profit_usd)
        return candidate.status

    async def drain(self) -> int:
        """Process everything currently queued, ``max_concurrent`` at a time."""
        semaphore = asyncio.Semaphore(self.max_concurrent)

        async def run(candidate):
            async with semaphore:
                return await self.process(candidate)

        batch = []
        while len(self.queue):
            batch.append(self.queue.get_nowait())
        if batch:
            await asyncio.gather(*(run(c) for c in batch))
        return len(batch)

    # === LOOPS ===

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), seconds)
        except asyncio.TimeoutError:
            pass

    async def _refresh_loop(self) -> None:
        while not self._stopping.is_set():
            await self._sleep(self.refresh_interval)
            if self._stopping.is_set():
                break
            try:
                await self.refresh()
            except Exception as e:
                logger.warning(f"Index refresh failed: {e}")

    async def _scan_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.scan_once()
            except Exception as e:
                logger.error(f"Scan failed: {e}", exc_info=True)
            await self._sleep(self.scan_interval)

    async def _worker(self, n: int) -> None:
        stop_wait = asyncio.ensure_future(self._stopping.wait())
        try:
            while not self._stopping.is_set():
                get_task = asyncio.ensure_future(self.queue.get())
                done, _ = await asyncio.wait(
                    {get_task, stop_wait}, return_when=asyncio.FIRST_COMPLETED
                )
                if get_task not in done:
                    get_task.cancel()
                    break
                if self.metrics:
                    self.metrics.update_queue_depth(len(self.queue))
                await self.process(get_task.result())
        finally:
            stop_wait.cancel()
        logger.debug(f"Worker {n} stopped")

    async def start(self) -> None:
        """Load state, build the index and start the loops and workers."""
        if self.cooldown and self.cooldown_state_path:
            self.cooldown.load(self.cooldown_state_path)
        if self.metrics and self.metrics_port:
            await self.metrics.start_server(self.metrics_port, self.metrics_host)

        await self.refresh()
        self._loops = [
            asyncio.ensure_future(self._scan_loop()),
            asyncio.ensure_future(self._refresh_loop()),
        ]
        self._workers = [
            asyncio.ensure_future(self._worker(n)) for n in range(self.max_concurrent)
        ]
        logger.info(
            f"Engine started: {len(self.index)} pools, {self.max_concurrent} workers, "
            f"dry_run={self.orchestrator.config.dry_run_mode}"
        )

    async def stop(self) -> None:
        """
        Stop scanning, wait for in-flight candidates, skip whatever is still
        queued, then persist state.
        """
        self._stopping.set()
        await asyncio.gather(*self._loops, return_exceptions=True)
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._loops, self._workers = [], []
        flushed = self._flush_queue()
        if flushed:
            logger.info(f"Skipped {flushed} queued candidates at shutdown")

        if self.cooldown and self.cooldown_state_path:
            self.cooldown.save(self.cooldown_state_path)
        if self.metrics and self.metrics_port:
            await self.metrics.stop_server()
        logger.info(f"Engine stopped: {self.outcomes}")

    def _flush_queue(self) -> int:
        """Retire queued candidates the workers never reached."""
        flushed = 0
        while len(self.queue):
            candidate = self.queue.get_nowait()
            candidate.status = "skip"
            self._retire(candidate.fingerprint, [make_alert("skip", candidate, reason="shutdown")])
            self.outcomes["skip"] = self.outcomes.get("skip", 0) + 1
            flushed += 1
        return flushed

    def request_stop(self) -> None:
        self._stopping.set()

    async def run_forever(self) -> None:
        await self.start()
        try:
            await self._stopping.wait()
        finally:
            await self.stop()

    async def run_once(self) -> Dict[str, int]:
        """One refresh, one full scan and a full drain of the queue."""
        await self.refresh()
        await self.scan_once()
        await self.drain()
        if self.cooldown and self.cooldown_state_path:
            self.cooldown.save(self.cooldown_state_path)
        return dict(self.outcomes)

    def get_stats(self) -> Dict[str, Any]:
        """Get current statistics."""
        return {
            "index": self.index.get_stats(),
            "queue_depth": len(self.queue),
            "in_flight": len(self._in_flight),
            "outcomes": dict(self.outcomes),
            "cooldowns": self.cooldown.get_stats() if self.cooldown else {},
            "execution": self.orchestrator.get_stats(),
        }
