"""Position sizing, capital allocation and hard risk limits."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

from signal_cycle.config import Settings

KELLY_FRACTION_CAP = 0.25


@dataclass(slots=True)
class AllocationCandidate:
    asset: str
    confidence: float
    entry_price: float | None
    stop_loss: float | None
    take_profit: float | None


@dataclass(slots=True)
class RiskCheckResult:
    allowed: bool
    risk_budget_pct: float
    reasons: list[str] = field(default_factory=list)


class RiskEngine:
    """Rule-based risk controls."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def check_entry(
        self,
        *,
        open_positions: int,
        quantity: float,
        entry: float,
        stop: float | None,
        equity: float,
    ) -> RiskCheckResult:
        """Validate one prospective opening against the hard limits."""
        reasons: list[str] = []
        if open_positions >= self._settings.max_open_positions:
            reasons.append("max_open_positions_reached")
        if quantity <= 0:
            reasons.append("zero_quantity")
        if stop is not None and equity > 0 and quantity > 0:
            risk_pct = abs(entry - stop) * quantity / equity * 100
            if risk_pct > self._settings.risk_per_trade_pct * (1 + 1e-9):
                reasons.append("max_risk_per_trade_exceeded")
        return RiskCheckResult(
            allowed=not reasons,
            risk_budget_pct=self._settings.risk_per_trade_pct,
            reasons=reasons,
        )

    def compute_position_size(
        self,
        equity: float,
        entry: float,
        stop: float,
        risk_budget_pct: float,
    ) -> float:
        """Compute position size from risk-per-trade budget."""
        if equity <= 0 or entry <= 0 or stop <= 0:
            return 0.0
        per_unit_risk = abs(entry - stop)
        if per_unit_risk <= 0:
            return 0.0
        risk_amount = equity * (risk_budget_pct / 100.0)
        qty = risk_amount / per_unit_risk
        return max(0.0, float(qty))

    def position_quantity(
        self,
        *,
        capital: float,
        leverage: float,
        entry: float,
        stop: float | None,
        equity: float,
    ) -> float:
        """Notional from allocated capital, capped by the per-trade risk budget."""
        if capital <= 0 or entry <= 0:
            return 0.0
        qty = capital * leverage / entry
        if stop is not None:
            qty = min(
                qty,
                self.compute_position_size(equity, entry, stop, self._settings.risk_per_trade_pct),
            )
        return max(0.0, float(qty))

    def build_stop_loss(
        self,
        entry: float,
        atr: float | None,
        atr_multiplier: float,
        *,
        direction: int = 1,
    ) -> float:
        """ATR stop below (long) or above (short) entry; percent fallback without ATR."""
        if entry <= 0:
            return 0.0
        if atr is None or atr <= 0 or atr_multiplier <= 0:
            distance = entry * self._settings.default_stop_pct / 100.0
        else:
            distance = atr * atr_multiplier
        stop = entry - distance if direction > 0 else entry + distance
        return max(0.0, float(stop))

    def allocate_capital(
        self,
        candidates: Sequence[AllocationCandidate],
        equity: float,
    ) -> dict[str, float]:
        """Split deployable equity across candidates per the configured strategy."""
        if not candidates or equity <= 0:
            return {candidate.asset: 0.0 for candidate in candidates}

        available = equity * (1.0 - self._settings.reserve_capital_pct / 100.0)
        cap = equity * self._settings.max_position_size_pct / 100.0
        strategy = self._settings.allocation_strategy

        if strategy == "equal":
            weights = {c.asset: 1.0 for c in candidates}
        elif strategy == "confidence_weighted":
            weights = {c.asset: max(0.0, c.confidence) for c in candidates}
        elif strategy == "risk_parity":
            weights = {c.asset: _inverse_stop_distance(c) for c in candidates}
        else:
            return {c.asset: min(cap, available * kelly_fraction(c)) for c in candidates}

        total = sum(weights.values())
        if total <= 0:
            return {c.asset: 0.0 for c in candidates}
        return {asset: min(cap, available * weight / total) for asset, weight in weights.items()}


def kelly_fraction(candidate: AllocationCandidate) -> float:
    """f = p - (1 - p) / b with b the reward/risk ratio, clamped to [0, 0.25]."""
    entry, stop, target = candidate.entry_price, candidate.stop_loss, candidate.take_profit
    if entry is None or stop is None or target is None:
        return 0.0
    risk = abs(entry - stop)
    reward = abs(target - entry)
    if risk <= 0 or reward <= 0:
        return 0.0
    p = min(max(candidate.confidence, 0.0), 1.0)
    fraction = p - (1.0 - p) / (reward / risk)
    return min(max(fraction, 0.0), KELLY_FRACTION_CAP)


def _inverse_stop_distance(candidate: AllocationCandidate) -> float:
    if candidate.entry_price is None or candidate.stop_loss is None or candidate.entry_price <= 0:
        return 0.0
    distance_pct = abs(candidate.entry_price - candidate.stop_loss) / candidate.entry_price
    return 1.0 / distance_pct if distance_pct > 0 else 0.0
