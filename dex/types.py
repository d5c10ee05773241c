"""
Core data types for DEX arbitrage scanning and execution.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union


class VenueKind(str, Enum):
    """Closed set of AMM invariants the engine knows how to price."""

    CONSTANT_PRODUCT_V2 = "v2"
    CONCENTRATED_V3 = "v3"
    WEIGHTED_VAULT = "balancer"
    STABLE_SWAP = "curve"
    ELASTIC_V3 = "kyber_elastic"

    @classmethod
    def parse(cls, value: Union[str, "VenueKind"]) -> "VenueKind":
        """Accept enum values plus the loose labels discovery feeds emit."""
        if isinstance(value, cls):
            return value
        label = str(value).strip().lower()
        aliases = {
            "v2": cls.CONSTANT_PRODUCT_V2,
            "uniswapv2": cls.CONSTANT_PRODUCT_V2,
            "constant_product": cls.CONSTANT_PRODUCT_V2,
            "v3": cls.CONCENTRATED_V3,
            "uniswapv3": cls.CONCENTRATED_V3,
            "concentrated": cls.CONCENTRATED_V3,
            "balancer": cls.WEIGHTED_VAULT,
            "weighted": cls.WEIGHTED_VAULT,
            "vault": cls.WEIGHTED_VAULT,
            "curve": cls.STABLE_SWAP,
            "stable": cls.STABLE_SWAP,
            "stableswap": cls.STABLE_SWAP,
            "kyber_elastic": cls.ELASTIC_V3,
            "kyberelastic": cls.ELASTIC_V3,
            "elastic": cls.ELASTIC_V3,
        }
        if label not in aliases:
            raise ValueError(f"Unknown venue kind: {value}")
        return aliases[label]

    @property
    def is_concentrated(self) -> bool:
        return self in (VenueKind.CONCENTRATED_V3, VenueKind.ELASTIC_V3)


def pair_key(token_a: str, token_b: str) -> str:
    """Unordered pair key: lower-cased addresses sorted and joined with '|'."""
    a, b = token_a.lower(), token_b.lower()
    return f"{a}|{b}" if a <= b else f"{b}|{a}"


@dataclass
class Pool:
    """
    A liquidity venue instance with its latest known state.

    Identity fields never change after discovery; reserve fields are updated
    in place by the pool index on refresh or after a confirmed swap.

    Attributes:
        kind: AMM invariant family
        address: Pool (or pair) contract address, lower-cased
        token0: Lower-cased address of token0
        token1: Lower-cased address of token1
        decimals0: On-chain decimals of token0
        decimals1: On-chain decimals of token1
        dex: Human-readable venue label (e.g., "quickswap")
        router: Router (or vault) the executor calls for this venue
        fee_bps: Swap fee in basis points (30 = 0.3%)
        reserve0: Raw token0 balance (V2, vault and stable pools)
        reserve1: Raw token1 balance (V2, vault and stable pools)
        liquidity: Active liquidity (concentrated pools)
        sqrt_price_x96: Square-root price in Q64.96 (concentrated pools)
        pool_id: Vault pool identifier as 0x-prefixed bytes32 hex
        coin_index0: Index of token0 in a stable pool's coin list
        coin_index1: Index of token1 in a stable pool's coin list
        liquidity_usd: Combined USD value computed at index time
        updated_at: Unix time of the last state update
    """

    kind: VenueKind
    address: str
    token0: str
    token1: str
    decimals0: int = 18
    decimals1: int = 18
    dex: str = ""
    router: str = ""
    fee_bps: int = 30
    reserve0: int = 0
    reserve1: int = 0
    liquidity: int = 0
    sqrt_price_x96: int = 0
    pool_id: Optional[str] = None
    coin_index0: int = 0
    coin_index1: int = 1
    liquidity_usd: float = 0.0
    updated_at: float = 0.0

    def __post_init__(self):
        self.kind = VenueKind.parse(self.kind)
        self.address = self.address.lower()
        self.token0 = self.token0.lower()
        self.token1 = self.token1.lower()
        self.router = (self.router or "").lower()

    @property
    def key(self) -> str:
        return pair_key(self.token0, self.token1)

    @property
    def tokens(self) -> Tuple[str, str]:
        return (self.token0, self.token1)

    def has_token(self, token: str) -> bool:
        return token.lower() in (self.token0, self.token1)

    def other(self, token: str) -> str:
        """The pool's counter token for ``token``."""
        t = token.lower()
        if t == self.token0:
            return self.token1
        if t == self.token1:
            return self.token0
        raise ValueError(f"Token {token} not in pool {self.address}")

    def decimals_of(self, token: str) -> int:
        return self.decimals0 if token.lower() == self.token0 else self.decimals1


@dataclass
class DirectOpportunity:
    """
    Same pair priced differently on two venues.

    Prices are quote-per-base; the loan asset is ``token_in`` (the quote
    token), bought into ``token_out`` on ``venue_buy`` and sold back on
    ``venue_sell``.
    """

    token_in: str
    token_out: str
    venue_buy: Pool
    venue_sell: Pool
    price_buy: float
    price_sell: float
    edge: float

    kind = "direct"

    @property
    def route(self) -> List[str]:
        return [self.token_in, self.token_out, self.token_in]

    @property
    def pools(self) -> List[Pool]:
        return [self.venue_buy, self.venue_sell]


@dataclass
class TriangularOpportunity:
    """Three-hop cycle A -> B -> C -> A through three distinct pools."""

    route: List[str]
    pools: List[Pool]
    cycle_rate: float
    edge: float

    kind = "triangular"

    @property
    def token_in(self) -> str:
        return self.route[0]


Opportunity = Union[DirectOpportunity, TriangularOpportunity]


@dataclass
class TradeCandidate:
    """
    An opportunity promoted for protection and execution.

    Created at scan time and enriched in place by the protection and build
    stages until it reaches a terminal outcome.
    """

    opportunity: Opportunity
    fingerprint: str
    loan_asset: str
    loan_decimals: int
    loan_amount_usd: float
    loan_amount_wei: int
    expected_out_wei: int = 0
    min_out_wei: int = 0
    estimated_slippage_pct: float = 0.0
    estimated_gas_cost_usd: float = 0.0
    estimated_profit_usd: float = 0.0
    created_at: float = 0.0
    status: str = "pending"
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> str:
        return self.opportunity.kind

    @property
    def edge(self) -> float:
        return self.opportunity.edge

    @property
    def route(self) -> List[str]:
        return list(self.opportunity.route)

    @property
    def pools(self) -> List[Pool]:
        return list(self.opportunity.pools)

    @property
    def venue_addresses(self) -> List[str]:
        addresses = []
        for pool in self.pools:
            addresses.append(pool.address)
            if pool.router:
                addresses.append(pool.router)
        return addresses

    def summary(self) -> str:
        """Short route description for logs and alerts."""
        hops = " -> ".join(t[:8] for t in self.route)
        dexes = "/".join(p.dex or p.kind.value for p in self.pools)
        return f"{self.kind} {hops} via {dexes}"

    def to_record(self) -> Dict[str, Any]:
        """Repository record shape; wei amounts are stringified."""
        return {
            "fingerprint": self.fingerprint,
            "kind": self.kind,
            "route": self.route,
            "pools": [p.address for p in self.pools],
            "loan_asset": self.loan_asset,
            "loan_amount_wei": str(self.loan_amount_wei),
            "loan_amount_usd": self.loan_amount_usd,
            "edge": self.edge,
            "estimated_slippage_pct": self.estimated_slippage_pct,
            "estimated_gas_cost_usd": self.estimated_gas_cost_usd,
            "estimated_profit_usd": self.estimated_profit_usd,
            "status": self.status,
            "timestamp": self.created_at,
        }


@dataclass
class CheckResult:
    """Outcome of a single protection check."""

    ok: bool
    reason: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def passed(cls, **details) -> "CheckResult":
        return cls(ok=True, details=details)

    @classmethod
    def failed(cls, reason: str, **details) -> "CheckResult":
        return cls(ok=False, reason=reason, details=details)


@dataclass
class PipelineResult:
    """
    Aggregate outcome of the protection pipeline.

    Attributes:
        ok: True if every check passed
        failed_check: Name of the first failing check
        reason: Failure reason from that check
        trace: Per-check ``{"name", "elapsed_ms"}`` entries in run order
        details: Per-check details keyed by check name
        profit_lock: Locked and leftover USD on success
    """

    ok: bool
    failed_check: Optional[str] = None
    reason: Optional[str] = None
    trace: List[Dict[str, Any]] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)
    profit_lock: Optional[Dict[str, float]] = None


@dataclass
class ExecutionAttempt:
    """
    Result of trying one executor contract for a candidate.

    ``status`` is one of "submitted", "skipped" or "failed".
    """

    executor: str
    status: str
    tx_hash: Optional[str] = None
    reason: Optional[str] = None
    nonce: Optional[int] = None
    gas_cost_usd: Optional[float] = None


@dataclass
class ExecutionOutcome:
    """Aggregate outcome across every executor attempted for a candidate."""

    status: str
    attempts: List[ExecutionAttempt] = field(default_factory=list)
    reason: Optional[str] = None

    @property
    def tx_hashes(self) -> List[str]:
        return [a.tx_hash for a in self.attempts if a.tx_hash]


@dataclass
class AlertRecord:
    """
    Abstract alert emitted once per terminal outcome (or as info).

    ``status`` is one of "submitted", "skip", "fail" or "info".
    """

    status: str
    route: str
    profit_usd: Optional[float] = None
    reason: Optional[str] = None
    tx_hash: Optional[str] = None
    fingerprint: Optional[str] = None
    timestamp: float = 0.0
    details: Dict[str, Any] = field(default_factory=dict)
