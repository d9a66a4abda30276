"""Circuit breaker: CLOSED (normal) / OPEN (tripped, no new openings)."""

from __future__ import annotations

from dataclasses import dataclass

from signal_cycle.config import Settings
from signal_cycle.state.performance import current_drawdown_pct
from signal_cycle.types import CircuitBreakerState, PerformanceStats


@dataclass(slots=True)
class BreakerLimits:
    max_consecutive_losses: int = 3
    max_drawdown_pct: float = 10.0
    daily_loss_limit_pct: float = 5.0
    max_api_error_rate: float = 0.5
    min_api_calls: int = 10

    @classmethod
    def from_settings(cls, settings: Settings) -> BreakerLimits:
        return cls(
            max_consecutive_losses=settings.max_consecutive_losses,
            max_drawdown_pct=settings.max_drawdown_pct,
            daily_loss_limit_pct=settings.daily_loss_limit_pct,
            max_api_error_rate=settings.max_api_error_rate,
            min_api_calls=settings.min_api_calls,
        )


class CircuitBreaker:
    """Rule evaluation over a CircuitBreakerState owned by the state manager."""

    def __init__(self, limits: BreakerLimits) -> None:
        self._limits = limits

    @staticmethod
    def is_open(state: CircuitBreakerState) -> bool:
        return state.status == "OPEN"

    def roll_day(self, state: CircuitBreakerState, today: str, equity: float) -> None:
        """Reset the daily PnL window when the UTC date changes."""
        if state.daily_date != today:
            state.daily_date = today
            state.daily_start_equity = equity
            state.daily_pnl = 0.0

    def record_pnl(self, state: CircuitBreakerState, pnl: float) -> None:
        state.daily_pnl += pnl

    def record_api_calls(self, state: CircuitBreakerState, calls: int, errors: int) -> None:
        state.api_calls += calls
        state.api_errors += errors

    def check(self, state: CircuitBreakerState, performance: PerformanceStats) -> str | None:
        """Return the first tripping reason, or None when every limit holds."""
        limits = self._limits
        if performance.consecutive_losses >= limits.max_consecutive_losses:
            return f"consecutive_losses {performance.consecutive_losses} >= {limits.max_consecutive_losses}"
        drawdown = current_drawdown_pct(performance)
        if drawdown >= limits.max_drawdown_pct:
            return f"drawdown {drawdown:.2f}% >= {limits.max_drawdown_pct}%"
        if state.daily_start_equity > 0 and state.daily_pnl < 0:
            daily_loss_pct = -state.daily_pnl / state.daily_start_equity * 100
            if daily_loss_pct >= limits.daily_loss_limit_pct:
                return f"daily_loss {daily_loss_pct:.2f}% >= {limits.daily_loss_limit_pct}%"
        if state.api_calls >= limits.min_api_calls:
            error_rate = state.api_errors / state.api_calls
            if error_rate >= limits.max_api_error_rate:
                return f"api_error_rate {error_rate:.2f} >= {limits.max_api_error_rate}"
        return None

    def update(
        self,
        state: CircuitBreakerState,
        performance: PerformanceStats,
        now: str,
    ) -> bool:
        """Trip when a limit is breached. Returns True only on a new trip.

        An OPEN breaker stays open until ``reset`` is called.
        """
        if self.is_open(state):
            return False
        reason = self.check(state, performance)
        if reason is None:
            return False
        state.status = "OPEN"
        state.reason = reason
        state.tripped_at = now
        return True

    @staticmethod
    def reset(state: CircuitBreakerState) -> None:
        state.status = "CLOSED"
        state.reason = None
        state.tripped_at = None
        state.api_calls = 0
        state.api_errors = 0
