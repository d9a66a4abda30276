"""Individual exit rules. Each returns exactly one ExitCondition."""

from __future__ import annotations

from dataclasses import dataclass, field

from signal_cycle.config import Settings, TakeProfitLevel
from signal_cycle.quality.rules import ema_structure
from signal_cycle.quality.snapshot import IndicatorSnapshot, TrendAlignment
from signal_cycle.types import ExitCondition, ExitReason, Position, PositionMarks, Signal, Tier

STOP_LOSS_PRIORITY = 1
TAKE_PROFIT_PRIORITY = 2
TRAILING_STOP_PRIORITY = 3
SIGNAL_REVERSAL_PRIORITY = 4
RANKING_DROP_PRIORITY = 5
INDICATOR_PRIORITY = 5


@dataclass(slots=True)
class ExitConfig:
    stop_loss_enabled: bool = True
    take_profit_enabled: bool = True
    trailing_stop_enabled: bool = True
    signal_reversal_enabled: bool = True
    ranking_drop_enabled: bool = False
    indicator_enabled: bool = False
    take_profit_levels: list[TakeProfitLevel] = field(default_factory=list)
    move_stop_to_breakeven: bool = True
    trailing_activate_pct: float = 1.0
    trailing_distance_pct: float = 5.0
    reversal_confidence_threshold: float = 0.65
    top_n: int = 5
    ranking_buffer: int = 2
    ranking_confirmation_cycles: int = 2
    ranking_exit_size_pct: float = 50.0
    indicator_exit_size_pct: float = 50.0
    indicator_require_confirmation: bool = True
    rsi_exit_long: float = 75.0
    rsi_exit_short: float = 25.0

    @classmethod
    def from_settings(cls, settings: Settings) -> ExitConfig:
        return cls(
            stop_loss_enabled=settings.stop_loss_enabled,
            take_profit_enabled=settings.take_profit_enabled,
            trailing_stop_enabled=settings.trailing_stop_enabled,
            signal_reversal_enabled=settings.signal_reversal_enabled,
            ranking_drop_enabled=settings.ranking_drop_enabled,
            indicator_enabled=settings.indicator_exit_enabled,
            take_profit_levels=settings.take_profit_levels(),
            move_stop_to_breakeven=settings.move_stop_to_breakeven,
            trailing_activate_pct=settings.trailing_activate_pct,
            trailing_distance_pct=settings.trailing_distance_pct,
            reversal_confidence_threshold=settings.reversal_confidence_threshold,
            top_n=settings.top_n,
            ranking_buffer=settings.ranking_buffer,
            ranking_confirmation_cycles=settings.ranking_confirmation_cycles,
            ranking_exit_size_pct=settings.ranking_exit_size_pct,
            indicator_exit_size_pct=settings.indicator_exit_size_pct,
            indicator_require_confirmation=settings.indicator_require_confirmation,
            rsi_exit_long=settings.indicator_rsi_exit_long,
            rsi_exit_short=settings.indicator_rsi_exit_short,
        )


@dataclass(slots=True)
class ExitContext:
    """Per-tick inputs beyond price that soft rules need."""

    reversal_signal: Signal | None = None
    reversal_tier: Tier | None = None
    rank_history: list[int | None] = field(default_factory=list)
    snapshot: IndicatorSnapshot | None = None
    trend: TrendAlignment | None = None


def no_exit(reason: ExitReason, priority: int, now: str, description: str) -> ExitCondition:
    return ExitCondition(
        reason=reason,
        priority=priority,
        should_exit=False,
        exit_size=0.0,
        exit_price=None,
        timestamp=now,
        description=description,
    )


def _crossed(side: str, price: float, level: float, *, favourable: bool) -> bool:
    """Inclusive crossing test; ``favourable`` means in the position's direction."""
    if (side == "LONG") == favourable:
        return price >= level
    return price <= level


def stop_loss(position: Position, price: float, now: str) -> ExitCondition:
    """Fires when price has reached the stop level against the side (inclusive)."""
    level = position.stop_loss
    if level is None or level <= 0:
        return no_exit("STOP_LOSS", STOP_LOSS_PRIORITY, now, "no stop level set")
    if not _crossed(position.side, price, level, favourable=False):
        return no_exit("STOP_LOSS", STOP_LOSS_PRIORITY, now, f"stop {level} not reached")
    return ExitCondition(
        reason="STOP_LOSS",
        priority=STOP_LOSS_PRIORITY,
        should_exit=True,
        exit_size=100.0,
        exit_price=level,
        timestamp=now,
        description=f"Stop loss hit at {level:.4f} (current: {price:.4f})",
        metadata={"stop_loss": level, "current_price": price},
    )


def take_profit(position: Position, price: float, config: ExitConfig, now: str) -> ExitCondition:
    """Single take-profit level, or configured cumulative levels from entry."""
    if not config.take_profit_levels:
        level = position.take_profit
        if level is None or level <= 0:
            return no_exit("TAKE_PROFIT", TAKE_PROFIT_PRIORITY, now, "no take-profit level set")
        if not _crossed(position.side, price, level, favourable=True):
            return no_exit("TAKE_PROFIT", TAKE_PROFIT_PRIORITY, now, "take-profit not reached")
        return ExitCondition(
            reason="TAKE_PROFIT",
            priority=TAKE_PROFIT_PRIORITY,
            should_exit=True,
            exit_size=100.0,
            exit_price=level,
            timestamp=now,
            description=f"Take profit hit at {level:.4f} (current: {price:.4f})",
            metadata={"take_profit": level, "current_price": price},
        )

    sign = 1 if position.side == "LONG" else -1
    cumulative = 0.0
    reached: list[tuple[TakeProfitLevel, float, float]] = []
    for level in config.take_profit_levels:
        cumulative += level.size_pct
        level_price = position.entry_price * (1 + sign * level.gain_pct / 100)
        if level.gain_pct in position.take_profit_hits:
            continue
        if _crossed(position.side, price, level_price, favourable=True):
            reached.append((level, level_price, cumulative))
    if not reached:
        return no_exit("TAKE_PROFIT", TAKE_PROFIT_PRIORITY, now, "no take-profit level reached")

    deepest, deepest_price, cumulative_pct = reached[-1]
    new_pct = cumulative_pct - position.take_profit_closed_pct
    remaining_pct = 100.0 - position.take_profit_closed_pct
    if new_pct <= 0 or remaining_pct <= 0:
        return no_exit("TAKE_PROFIT", TAKE_PROFIT_PRIORITY, now, "take-profit size already closed")

    first_size = config.take_profit_levels[0].size_pct
    return ExitCondition(
        reason="TAKE_PROFIT",
        priority=TAKE_PROFIT_PRIORITY,
        should_exit=True,
        exit_size=min(100.0, new_pct / remaining_pct * 100.0),
        exit_price=deepest_price,
        timestamp=now,
        description=(
            f"Take profit level {deepest.gain_pct}% hit at {deepest_price:.4f} "
            f"(close {new_pct:.1f}% of original size)"
        ),
        metadata={
            "levels_hit": [level.gain_pct for level, _, _ in reached],
            "original_pct": new_pct,
            "cumulative_pct": cumulative_pct,
            "move_stop_to_breakeven": config.move_stop_to_breakeven
            and cumulative_pct >= first_size,
        },
    )


def trailing_stop(
    position: Position,
    price: float,
    marks: PositionMarks,
    config: ExitConfig,
    now: str,
) -> tuple[ExitCondition, PositionMarks]:
    """Ratchet the trail level from the best price seen; fire on a cross back."""
    entry = position.entry_price
    if position.side == "LONG":
        best_gain_pct = (marks.highest_price - entry) / entry * 100
    else:
        best_gain_pct = (entry - marks.lowest_price) / entry * 100

    active = position.trailing_active or best_gain_pct >= config.trailing_activate_pct
    if not active:
        return (
            no_exit(
                "TRAILING_STOP",
                TRAILING_STOP_PRIORITY,
                now,
                f"inactive: best gain {best_gain_pct:.2f}% < {config.trailing_activate_pct}%",
            ),
            marks,
        )

    distance = config.trailing_distance_pct / 100
    previous = position.trailing_stop
    if position.side == "LONG":
        candidate = marks.highest_price * (1 - distance)
        level = candidate if previous is None else max(previous, candidate)
    else:
        candidate = marks.lowest_price * (1 + distance)
        level = candidate if previous is None else min(previous, candidate)

    updated = PositionMarks(
        highest_price=marks.highest_price,
        lowest_price=marks.lowest_price,
        trailing_stop=level,
        trailing_active=True,
    )
    if not _crossed(position.side, price, level, favourable=False):
        return (
            no_exit("TRAILING_STOP", TRAILING_STOP_PRIORITY, now, f"trailing at {level:.4f}"),
            updated,
        )
    condition = ExitCondition(
        reason="TRAILING_STOP",
        priority=TRAILING_STOP_PRIORITY,
        should_exit=True,
        exit_size=100.0,
        exit_price=level,
        timestamp=now,
        description=f"Trailing stop hit at {level:.4f} (current: {price:.4f})",
        metadata={
            "trailing_stop": level,
            "highest_price": marks.highest_price,
            "lowest_price": marks.lowest_price,
        },
    )
    return condition, updated


def signal_reversal(
    position: Position,
    price: float,
    context: ExitContext,
    config: ExitConfig,
    now: str,
) -> ExitCondition:
    """Fires on a fresh, gate-cleared opposite signal above the reversal threshold."""
    signal = context.reversal_signal
    if signal is None or context.reversal_tier in (None, "REJECTED"):
        return no_exit("SIGNAL_REVERSAL", SIGNAL_REVERSAL_PRIORITY, now, "no opposing signal")
    opposite = "sell_to_enter" if position.side == "LONG" else "buy_to_enter"
    if signal.asset != position.asset or signal.action != opposite:
        return no_exit("SIGNAL_REVERSAL", SIGNAL_REVERSAL_PRIORITY, now, "no opposing signal")
    if signal.confidence < config.reversal_confidence_threshold:
        return no_exit(
            "SIGNAL_REVERSAL",
            SIGNAL_REVERSAL_PRIORITY,
            now,
            f"opposing confidence {signal.confidence:.2f} below "
            f"{config.reversal_confidence_threshold:.2f}",
        )
    return ExitCondition(
        reason="SIGNAL_REVERSAL",
        priority=SIGNAL_REVERSAL_PRIORITY,
        should_exit=True,
        exit_size=100.0,
        exit_price=price,
        timestamp=now,
        description=f"Opposite {signal.action} signal at confidence {signal.confidence:.2f}",
        metadata={"confidence": signal.confidence, "tier": context.reversal_tier},
    )


def ranking_drop(
    position: Position,
    price: float,
    context: ExitContext,
    config: ExitConfig,
    now: str,
) -> ExitCondition:
    """Trim when the asset stays outside top-N plus buffer for the confirmation window."""
    limit = config.top_n + config.ranking_buffer
    window = context.rank_history[-config.ranking_confirmation_cycles :]
    if len(window) < config.ranking_confirmation_cycles:
        return no_exit("RANKING_DROP", RANKING_DROP_PRIORITY, now, "not enough ranking history")
    if any(rank is not None and rank <= limit for rank in window):
        return no_exit("RANKING_DROP", RANKING_DROP_PRIORITY, now, f"ranked within top {limit}")
    return ExitCondition(
        reason="RANKING_DROP",
        priority=RANKING_DROP_PRIORITY,
        should_exit=True,
        exit_size=config.ranking_exit_size_pct,
        exit_price=price,
        timestamp=now,
        description=(
            f"Outside top {limit} for {config.ranking_confirmation_cycles} cycles "
            f"(recent ranks: {window})"
        ),
        metadata={"recent_ranks": list(window), "limit": limit},
    )


def indicator_based(
    position: Position,
    price: float,
    context: ExitContext,
    config: ExitConfig,
    now: str,
) -> ExitCondition:
    """Trim when indicator readings flip against the position."""
    snapshot = context.snapshot
    if snapshot is None:
        return no_exit("INDICATOR_BASED", INDICATOR_PRIORITY, now, "no indicator snapshot")

    long_side = position.side == "LONG"
    readings: list[str] = []
    if snapshot.rsi14 is not None:
        if long_side and snapshot.rsi14 >= config.rsi_exit_long:
            readings.append(f"RSI {snapshot.rsi14:.1f} >= {config.rsi_exit_long}")
        if not long_side and snapshot.rsi14 <= config.rsi_exit_short:
            readings.append(f"RSI {snapshot.rsi14:.1f} <= {config.rsi_exit_short}")
    macd = snapshot.macd
    if macd is not None and macd.macd is not None and macd.signal is not None:
        if (macd.macd - macd.signal) * (1 if long_side else -1) < 0:
            readings.append("MACD crossed against position")
    if ema_structure(snapshot) == (-1 if long_side else 1):
        readings.append("EMA20/EMA50 structure broke against position")
    trend = context.trend
    if trend is not None and trend.daily_trend == ("downtrend" if long_side else "uptrend"):
        readings.append(f"daily trend flipped to {trend.daily_trend}")

    needed = 2 if config.indicator_require_confirmation else 1
    if len(readings) < needed:
        return no_exit(
            "INDICATOR_BASED",
            INDICATOR_PRIORITY,
            now,
            f"{len(readings)} of {needed} confirming readings",
        )
    return ExitCondition(
        reason="INDICATOR_BASED",
        priority=INDICATOR_PRIORITY,
        should_exit=True,
        exit_size=config.indicator_exit_size_pct,
        exit_price=price,
        timestamp=now,
        description="; ".join(readings),
        metadata={"readings": readings},
    )
