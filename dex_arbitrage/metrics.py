"""
Prometheus Metrics Server for the DEX Arbitrage Engine

Exposes scanning, protection and execution metrics for monitoring and alerting.
"""

import logging
import threading
import time
from typing import Any, Dict, Optional

from aiohttp import web
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)


class EngineMetrics:
    """
    Engine metrics collection and exposure

    Provides Prometheus-compatible metrics for:
    - Pool index size and refreshes
    - Detected opportunities and queue pressure
    - Protection pipeline rejections and step latency
    - Execution outcomes and relay errors
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """Initialize metrics with custom registry or default"""
        self.registry = registry or REGISTRY
        self._initialize_metrics()

        self._app = None
        self._runner = None
        self._site = None

        self._lock = threading.RLock()

    def _initialize_metrics(self):
        """Initialize all Prometheus metrics"""

        # === INDEX METRICS ===
        self.pools_indexed = Gauge(
            "dex_arbitrage_pools_indexed",
            "Pools currently eligible for scanning",
            registry=self.registry,
        )

        self.pools_excluded_total = Counter(
            "dex_arbitrage_pools_excluded_total",
            "Pools excluded from the index",
            ["reason"],
            registry=self.registry,
        )

        self.index_refreshes_total = Counter(
            "dex_arbitrage_index_refreshes_total",
            "Full and incremental index refreshes",
            ["mode"],
            registry=self.registry,
        )

        # === SCANNER METRICS ===
        self.opportunities_detected_total = Counter(
            "dex_arbitrage_opportunities_detected_total",
            "Opportunities emitted by the scanner",
            ["kind"],
            registry=self.registry,
        )

        self.candidates_dropped_total = Counter(
            "dex_arbitrage_candidates_dropped_total",
            "Candidates dropped by the bounded queue",
            registry=self.registry,
        )

        self.queue_depth = Gauge(
            "dex_arbitrage_queue_depth",
            "Candidates waiting for protection",
            registry=self.registry,
        )

        self.scan_duration_seconds = Histogram(
            "dex_arbitrage_scan_duration_seconds",
            "Duration of a scan pass",
            ["mode"],
            buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0],
            registry=self.registry,
        )

        # === PROTECTION METRICS ===
        self.protection_rejections_total = Counter(
            "dex_arbitrage_protection_rejections_total",
            "Candidates rejected by a protection check",
            ["check"],
            registry=self.registry,
        )

        self.protection_step_seconds = Histogram(
            "dex_arbitrage_protection_step_seconds",
            "Latency of individual protection checks",
            ["check"],
            buckets=[0.001, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
            registry=self.registry,
        )

        # === EXECUTION METRICS ===
        self.execution_outcomes_total = Counter(
            "dex_arbitrage_execution_outcomes_total",
            "Terminal candidate outcomes",
            ["status"],
            registry=self.registry,
        )

        self.relay_errors_total = Counter(
            "dex_arbitrage_relay_errors_total",
            "Errors returned by relay endpoints",
            ["relay"],
            registry=self.registry,
        )

        self.estimated_profit_usd = Histogram(
            "dex_arbitrage_estimated_profit_usd",
            "Estimated profit of submitted candidates",
            buckets=[0, 5, 10, 25, 50, 100, 250, 500, 1000],
            registry=self.registry,
        )

    # === RECORDING HELPERS ===

    def update_pool_count(self, count: int):
        self.pools_indexed.set(count)

    def record_pool_excluded(self, reason: str):
        self.pools_excluded_total.labels(reason=reason).inc()

    def record_index_refresh(self, mode: str):
        self.index_refreshes_total.labels(mode=mode).inc()

    def record_opportunity(self, kind: str):
        self.opportunities_detected_total.labels(kind=kind).inc()

    def record_candidate_dropped(self, count: int = 1):
        if count > 0:
            self.candidates_dropped_total.inc(count)

    def update_queue_depth(self, depth: int):
        self.queue_depth.set(depth)

    def record_scan(self, mode: str, duration_seconds: float):
        self.scan_duration_seconds.labels(mode=mode).observe(duration_seconds)

    def record_protection_step(self, check: str, elapsed_ms: float):
        self.protection_step_seconds.labels(check=check).observe(elapsed_ms / 1000.0)

    def record_protection_rejection(self, check: str):
        self.protection_rejections_total.labels(check=check).inc()

    def record_outcome(self, status: str, profit_usd: Optional[float] = None):
        with self._lock:
            self.execution_outcomes_total.labels(status=status).inc()
            if status == "submitted" and profit_usd is not None:
                self.estimated_profit_usd.observe(profit_usd)

    def record_relay_error(self, relay: str):
        self.relay_errors_total.labels(relay=relay).inc()

    # === SERVER MANAGEMENT ===

    async def start_server(
        self, port: int = 8000, host: str = "0.0.0.0", path: str = "/metrics"
    ):
        """Start Prometheus metrics HTTP server"""
        try:
            self._app = web.Application()
            self._app.router.add_get(path, self._metrics_handler)
            self._app.router.add_get("/health", self._health_handler)

            self._runner = web.AppRunner(self._app)
            await self._runner.setup()

            self._site = web.TCPSite(self._runner, host, port)
            await self._site.start()

            logger.info(f"Prometheus metrics server started on http://{host}:{port}{path}")
            return True

        except OSError as e:
            logger.error(f"Failed to start metrics server: {e}")
            return False

    async def stop_server(self):
        """Stop the metrics server"""
        if self._site:
            await self._site.stop()
        if self._runner:
            await self._runner.cleanup()
        self._site = None
        self._runner = None
        logger.info("Metrics server stopped")

    async def _metrics_handler(self, request):
        """Handle metrics endpoint requests"""
        metrics_output = generate_latest(self.registry)
        # aiohttp sets the charset itself
        content_type = CONTENT_TYPE_LATEST.split(";")[0]
        return web.Response(text=metrics_output.decode("utf-8"), content_type=content_type)

    async def _health_handler(self, request):
        """Handle health check endpoint"""
        return web.json_response({"status": "healthy", "service": "dex_arbitrage_metrics"})

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Get current metrics summary"""
        return {
            "metrics_available": True,
            "server_running": self._site is not None,
            "timestamp": time.time(),
        }


# Global metrics instance (singleton pattern)
_global_metrics: Optional[EngineMetrics] = None


def get_metrics() -> EngineMetrics:
    """Get or create global metrics instance"""
    global _global_metrics
    if _global_metrics is None:
        _global_metrics = EngineMetrics()
    return _global_metrics


def initialize_metrics(registry: Optional[CollectorRegistry] = None) -> EngineMetrics:
    """Initialize global metrics with custom registry"""
    global _global_metrics
    _global_metrics = EngineMetrics(registry)
    return _global_metrics
