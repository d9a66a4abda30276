"""Expected value gate: decides whether a scored signal may auto-trade."""

from __future__ import annotations

import math

from signal_cycle.config import EVThresholds
from signal_cycle.types import GateResult, QualityResult, SignalProposal, Tier

_ENTRY_ACTIONS = {"buy_to_enter", "sell_to_enter", "add"}


def expected_value(
    probability: float,
    entry: float,
    stop: float,
    target: float,
    capital: float,
    leverage: float = 1.0,
) -> float | None:
    """P(win) * avg_win - P(loss) * avg_loss, or None for degenerate inputs."""
    values = (probability, entry, stop, target, capital, leverage)
    if not all(math.isfinite(value) for value in values):
        return None
    if entry <= 0 or capital <= 0 or leverage <= 0:
        return None
    notional = capital * leverage
    avg_win = notional * abs(target - entry) / entry
    avg_loss = notional * abs(entry - stop) / entry
    p_win = min(1.0, max(0.0, probability))
    return p_win * avg_win - (1.0 - p_win) * avg_loss


def tier_for(value: float, thresholds: EVThresholds) -> Tier:
    """Map an expected value onto its tier. Monotonic in ``value``."""
    if value < thresholds.reject:
        return "REJECTED"
    if value < thresholds.auto_trade:
        return "DISPLAY_ONLY"
    return "AUTO_TRADE"


def classify(
    proposal: SignalProposal,
    quality: QualityResult,
    capital_allocated: float,
    *,
    thresholds: EVThresholds,
    leverage: float = 1.0,
) -> GateResult:
    """Compute expected value and the resulting action tier."""
    if proposal.action not in _ENTRY_ACTIONS:
        return GateResult(expected_value=0.0, tier="REJECTED", reason="non_entry_action")
    if proposal.entry_price is None or proposal.stop_loss is None or proposal.take_profit is None:
        return GateResult(expected_value=0.0, tier="REJECTED", reason="missing_prices")
    if not _levels_on_correct_side(
        proposal.direction, proposal.entry_price, proposal.stop_loss, proposal.take_profit
    ):
        return GateResult(expected_value=0.0, tier="REJECTED", reason="invalid_price_levels")

    value = expected_value(
        quality.adjusted_confidence,
        proposal.entry_price,
        proposal.stop_loss,
        proposal.take_profit,
        capital_allocated,
        leverage,
    )
    if value is None:
        return GateResult(expected_value=0.0, tier="REJECTED", reason="insufficient_data")

    tier = tier_for(value, thresholds)
    if tier == "REJECTED":
        reason = f"ev {value:.2f} below reject threshold {thresholds.reject:.2f}"
    elif tier == "DISPLAY_ONLY" and value < thresholds.display:
        reason = f"ev {value:.2f} below display threshold {thresholds.display:.2f}; shown for review"
    elif tier == "DISPLAY_ONLY":
        reason = f"ev {value:.2f} below auto-trade threshold {thresholds.auto_trade:.2f}"
    else:
        reason = f"ev {value:.2f} clears auto-trade threshold {thresholds.auto_trade:.2f}"
    return GateResult(expected_value=value, tier=tier, reason=reason)


def _levels_on_correct_side(direction: int, entry: float, stop: float, target: float) -> bool:
    if direction > 0:
        return stop < entry < target
    return target < entry < stop
