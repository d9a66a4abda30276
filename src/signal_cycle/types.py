"""Shared domain types for the signal and trading cycle engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

SignalAction = Literal["buy_to_enter", "sell_to_enter", "add", "reduce", "hold", "close_all"]
Side = Literal["LONG", "SHORT"]
Severity = Literal["none", "medium", "high", "critical"]
Tier = Literal["AUTO_TRADE", "DISPLAY_ONLY", "REJECTED"]
CycleStatus = Literal["RUNNING", "STOPPED", "CIRCUIT_BROKEN"]
BreakerStatus = Literal["CLOSED", "OPEN"]
ExitReason = Literal[
    "STOP_LOSS",
    "TAKE_PROFIT",
    "TRAILING_STOP",
    "SIGNAL_REVERSAL",
    "RANKING_DROP",
    "INDICATOR_BASED",
]
OrderStatus = Literal[
    "FILLED",
    "PARTIAL_FILLED",
    "REJECTED",
    "TIMEOUT",
    "FAILED",
    "UNKNOWN_OUTCOME",
]


_PRICELESS_ACTIONS = {"hold", "close_all"}
_BUY_SIDE_ACTIONS = {"buy_to_enter", "add"}


def signal_direction(action: SignalAction) -> int:
    """Return +1 for buy-side actions and -1 for everything else."""
    return 1 if action in _BUY_SIDE_ACTIONS else -1


@dataclass(slots=True, frozen=True)
class SignalProposal:
    """A proposed action before it is scored. Carries no confidence."""

    asset: str
    action: SignalAction
    entry_price: float | None = None
    stop_loss: float | None = None
    take_profit: float | None = None
    invalidation_condition: str = ""

    def __post_init__(self) -> None:
        _check_priceless(self.action, self.entry_price, self.stop_loss, self.take_profit)

    @property
    def direction(self) -> int:
        return signal_direction(self.action)


@dataclass(slots=True, frozen=True)
class Signal:
    """A scored, immutable trading signal for one asset and one tick."""

    asset: str
    action: SignalAction
    entry_price: float | None
    stop_loss: float | None
    take_profit: float | None
    confidence: float
    expected_value: float
    invalidation_condition: str
    justification: str
    warnings: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        _check_priceless(self.action, self.entry_price, self.stop_loss, self.take_profit)
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence_out_of_range: {self.confidence}")

    @property
    def direction(self) -> int:
        return signal_direction(self.action)


def _check_priceless(
    action: str,
    entry_price: float | None,
    stop_loss: float | None,
    take_profit: float | None,
) -> None:
    if action in _PRICELESS_ACTIONS and any(
        value is not None for value in (entry_price, stop_loss, take_profit)
    ):
        raise ValueError(f"{action}_must_not_carry_prices")


@dataclass(slots=True)
class Vote:
    """One directional vote cast by a quality rule."""

    rule: str
    group: str
    weight: float
    direction: Literal["bullish", "bearish"]
    description: str
    counted: bool = True


@dataclass(slots=True)
class Contradiction:
    """One reading that opposes the signal's stated direction."""

    check: str
    points: int
    description: str


@dataclass(slots=True)
class QualityResult:
    """Weighted confidence and contradiction breakdown for one signal."""

    bullish_score: float
    bearish_score: float
    unique_bullish_count: int
    unique_bearish_count: int
    quality_ratio: float
    redundant_groups: list[str]
    contradictions: list[Contradiction]
    conflict_severity: Severity
    base_confidence: float
    adjusted_confidence: float
    contradiction_score: int = 0
    raw_bullish_count: int = 0
    raw_bearish_count: int = 0
    votes: list[Vote] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class GateResult:
    """Expected-value classification of one signal."""

    expected_value: float
    tier: Tier
    reason: str


@dataclass(slots=True)
class ScoredSignal:
    """A signal together with the evidence used to produce it."""

    signal: Signal
    quality: QualityResult
    gate: GateResult
    capital_allocated: float
    leverage: float
    rank_score: float = 0.0


@dataclass(slots=True)
class Position:
    """An open exposure to one asset."""

    asset: str
    side: Side
    quantity: float
    entry_price: float
    leverage: float
    highest_price: float
    lowest_price: float
    entry_time: str
    trailing_stop: float | None = None
    trailing_active: bool = False
    stop_loss: float | None = None
    take_profit: float | None = None
    take_profit_hits: list[float] = field(default_factory=list)
    take_profit_closed_pct: float = 0.0

    def __post_init__(self) -> None:
        if self.quantity <= 0:
            raise ValueError(f"position_quantity_must_be_positive: {self.quantity}")


@dataclass(slots=True)
class PositionMarks:
    """Price extremes and trailing level computed for one tick."""

    highest_price: float
    lowest_price: float
    trailing_stop: float | None
    trailing_active: bool


@dataclass(slots=True)
class ExitCondition:
    """Result of evaluating one exit rule against one position."""

    reason: ExitReason
    priority: int
    should_exit: bool
    exit_size: float
    exit_price: float | None
    timestamp: str
    description: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TradeRecord:
    """A realized (full or partial) close."""

    asset: str
    side: Side
    quantity: float
    entry_price: float
    exit_price: float
    pnl: float
    pnl_pct: float
    reason: str
    opened_at: str
    closed_at: str
    r_multiple: float | None = None


@dataclass(slots=True)
class EquityPoint:
    """One point of the equity curve."""

    timestamp: str
    equity: float


@dataclass(slots=True)
class PerformanceStats:
    """Running performance counters kept in the cycle state."""

    initial_equity: float
    current_equity: float
    peak_equity: float
    total_trades: int = 0
    wins: int = 0
    losses: int = 0
    win_rate: float = 0.0
    total_return_pct: float = 0.0
    total_return_usd: float = 0.0
    max_drawdown_pct: float = 0.0
    sharpe_ratio: float = 0.0
    consecutive_wins: int = 0
    consecutive_losses: int = 0
    max_consecutive_wins: int = 0
    max_consecutive_losses: int = 0
    equity_curve: list[EquityPoint] = field(default_factory=list)


@dataclass(slots=True)
class CircuitBreakerState:
    """Circuit breaker flags. OPEN blocks new openings until reset."""

    status: BreakerStatus = "CLOSED"
    reason: str | None = None
    tripped_at: str | None = None
    daily_date: str | None = None
    daily_start_equity: float = 0.0
    daily_pnl: float = 0.0
    api_calls: int = 0
    api_errors: int = 0


@dataclass(slots=True)
class CycleState:
    """The authoritative process-wide trading state."""

    cycle_id: str
    started_at: str
    status: CycleStatus
    performance: PerformanceStats
    positions: dict[str, Position] = field(default_factory=dict)
    trade_history: list[TradeRecord] = field(default_factory=list)
    circuit_breaker: CircuitBreakerState = field(default_factory=CircuitBreakerState)
    last_ranking_at: str | None = None
    top_assets: list[str] = field(default_factory=list)
    ranking_history: dict[str, list[int | None]] = field(default_factory=dict)
    needs_reconciliation: bool = False
    last_reconciled_at: str | None = None
    tick_count: int = 0


@dataclass(slots=True)
class VenuePosition:
    """A position as reported by the venue."""

    asset: str
    side: Side
    quantity: float
    entry_price: float
    leverage: float = 1.0
    unrealized_pnl: float = 0.0


@dataclass(slots=True)
class VenueAccountState:
    """Authoritative account state returned by the venue."""

    account_value: float
    total_margin_used: float
    withdrawable: float
    positions: list[VenuePosition] = field(default_factory=list)


@dataclass(slots=True)
class ReconcileDiff:
    """Counts and assets touched by one reconciliation pass."""

    positions_updated: int = 0
    positions_closed: int = 0
    updated_assets: list[str] = field(default_factory=list)
    closed_assets: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return self.positions_updated == 0 and self.positions_closed == 0


@dataclass(slots=True)
class ExecutionResult:
    """Outcome of one order execution attempt sequence."""

    filled: bool
    status: OrderStatus
    fill_price: float | None = None
    quantity: float = 0.0
    order_id: str | None = None
    error: str | None = None
    attempts: int = 0
    slippage_pct: float = 0.0
    api_calls: int = 0
    api_errors: int = 0


@dataclass(slots=True)
class ExecutionReport:
    """Per-tick summary handed to callers outside the engine."""

    cycle_id: str
    status: str = "unknown"
    signals_generated: list[dict[str, object]] = field(default_factory=list)
    signals_rejected: list[dict[str, object]] = field(default_factory=list)
    opened: list[dict[str, object]] = field(default_factory=list)
    closed: list[dict[str, object]] = field(default_factory=list)
    trimmed: list[dict[str, object]] = field(default_factory=list)
    failures: list[dict[str, object]] = field(default_factory=list)
    reconciliation: ReconcileDiff | None = None
    warnings: list[str] = field(default_factory=list)
    elapsed_ms: float = 0.0
