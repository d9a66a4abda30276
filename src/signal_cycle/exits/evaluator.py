"""Per-position exit evaluation: runs every rule and picks the governing one."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone

from signal_cycle.exits.rules import (
    INDICATOR_PRIORITY,
    RANKING_DROP_PRIORITY,
    SIGNAL_REVERSAL_PRIORITY,
    STOP_LOSS_PRIORITY,
    TAKE_PROFIT_PRIORITY,
    TRAILING_STOP_PRIORITY,
    ExitConfig,
    ExitContext,
    indicator_based,
    no_exit,
    ranking_drop,
    signal_reversal,
    stop_loss,
    take_profit,
    trailing_stop,
)
from signal_cycle.types import ExitCondition, ExitReason, Position, PositionMarks

_ALL_RULES: tuple[tuple[ExitReason, int], ...] = (
    ("STOP_LOSS", STOP_LOSS_PRIORITY),
    ("TAKE_PROFIT", TAKE_PROFIT_PRIORITY),
    ("TRAILING_STOP", TRAILING_STOP_PRIORITY),
    ("SIGNAL_REVERSAL", SIGNAL_REVERSAL_PRIORITY),
    ("RANKING_DROP", RANKING_DROP_PRIORITY),
    ("INDICATOR_BASED", INDICATOR_PRIORITY),
)


@dataclass(slots=True)
class ExitDecision:
    """All rule outcomes for one position and one tick."""

    asset: str
    conditions: list[ExitCondition]
    marks: PositionMarks
    governing: ExitCondition | None

    @property
    def fired(self) -> list[ExitCondition]:
        return [condition for condition in self.conditions if condition.should_exit]

    @property
    def should_exit(self) -> bool:
        return self.governing is not None

    @property
    def reasons(self) -> list[str]:
        return [condition.reason for condition in self.fired]


def select_governing(conditions: list[ExitCondition]) -> ExitCondition | None:
    """Lowest priority number wins; equal priority goes to the larger exit size."""
    fired = [condition for condition in conditions if condition.should_exit]
    if not fired:
        return None
    return min(fired, key=lambda condition: (condition.priority, -condition.exit_size))


def evaluate_exits(
    position: Position,
    price: float,
    config: ExitConfig,
    context: ExitContext | None = None,
    now: str | None = None,
) -> ExitDecision:
    """Evaluate every exit rule for one position. Never mutates the position."""
    now = now or datetime.now(timezone.utc).isoformat()
    context = context or ExitContext()
    unchanged = PositionMarks(
        highest_price=position.highest_price,
        lowest_price=position.lowest_price,
        trailing_stop=position.trailing_stop,
        trailing_active=position.trailing_active,
    )

    if not _usable(price) or not _usable(position.entry_price):
        conditions = [
            no_exit(reason, priority, now, "insufficient_data")
            for reason, priority in _ALL_RULES
        ]
        return ExitDecision(position.asset, conditions, unchanged, None)

    marks = PositionMarks(
        highest_price=max(position.highest_price, price),
        lowest_price=min(position.lowest_price, price),
        trailing_stop=position.trailing_stop,
        trailing_active=position.trailing_active,
    )

    conditions: list[ExitCondition] = []
    conditions.append(
        stop_loss(position, price, now)
        if config.stop_loss_enabled
        else no_exit("STOP_LOSS", STOP_LOSS_PRIORITY, now, "disabled")
    )
    conditions.append(
        take_profit(position, price, config, now)
        if config.take_profit_enabled
        else no_exit("TAKE_PROFIT", TAKE_PROFIT_PRIORITY, now, "disabled")
    )
    if config.trailing_stop_enabled:
        trailing, marks = trailing_stop(position, price, marks, config, now)
    else:
        trailing = no_exit("TRAILING_STOP", TRAILING_STOP_PRIORITY, now, "disabled")
    conditions.append(trailing)
    conditions.append(
        signal_reversal(position, price, context, config, now)
        if config.signal_reversal_enabled
        else no_exit("SIGNAL_REVERSAL", SIGNAL_REVERSAL_PRIORITY, now, "disabled")
    )
    conditions.append(
        ranking_drop(position, price, context, config, now)
        if config.ranking_drop_enabled
        else no_exit("RANKING_DROP", RANKING_DROP_PRIORITY, now, "disabled")
    )
    conditions.append(
        indicator_based(position, price, context, config, now)
        if config.indicator_enabled
        else no_exit("INDICATOR_BASED", INDICATOR_PRIORITY, now, "disabled")
    )

    conditions.sort(key=lambda condition: condition.priority)
    governing = select_governing(conditions)
    if governing is not None:
        governing.exit_size = min(100.0, max(1.0, governing.exit_size))
    return ExitDecision(position.asset, conditions, marks, governing)


def _usable(value: float) -> bool:
    return math.isfinite(value) and value > 0
