from __future__ import annotations

from pathlib import Path

from signal_cycle.config import Settings
from signal_cycle.execution.paper import PaperExecutor
from signal_cycle.state.circuit_breaker import BreakerLimits, CircuitBreaker
from signal_cycle.state.manager import CycleStateManager
from signal_cycle.state.performance import new_performance
from signal_cycle.state.store import StateStore
from signal_cycle.types import CircuitBreakerState

_NOW = "2026-01-01T00:00:00+00:00"


def _breaker() -> CircuitBreaker:
    return CircuitBreaker(
        BreakerLimits(
            max_consecutive_losses=3,
            max_drawdown_pct=10.0,
            daily_loss_limit_pct=5.0,
            max_api_error_rate=0.5,
            min_api_calls=4,
        )
    )


def test_consecutive_losses_trip() -> None:
    breaker = _breaker()
    state = CircuitBreakerState()
    performance = new_performance(1000.0, _NOW)
    performance.consecutive_losses = 3

    assert breaker.update(state, performance, _NOW)
    assert state.status == "OPEN"
    assert state.reason.startswith("consecutive_losses")
    assert state.tripped_at == _NOW


def test_drawdown_trip() -> None:
    breaker = _breaker()
    performance = new_performance(1000.0, _NOW)
    performance.peak_equity = 1200.0
    performance.current_equity = 1080.0

    state = CircuitBreakerState()

    assert breaker.update(state, performance, _NOW)
    assert state.reason.startswith("drawdown")


def test_daily_loss_trip_and_day_roll() -> None:
    breaker = _breaker()
    performance = new_performance(1000.0, _NOW)
    state = CircuitBreakerState()
    breaker.roll_day(state, "2026-01-01", 1000.0)
    breaker.record_pnl(state, -30.0)
    assert breaker.check(state, performance) is None

    breaker.record_pnl(state, -20.0)
    assert breaker.check(state, performance).startswith("daily_loss")

    breaker.roll_day(state, "2026-01-02", 950.0)
    assert state.daily_pnl == 0.0
    assert state.daily_start_equity == 950.0
    assert breaker.check(state, performance) is None


def test_api_error_rate_needs_minimum_calls() -> None:
    breaker = _breaker()
    performance = new_performance(1000.0, _NOW)
    state = CircuitBreakerState()

    breaker.record_api_calls(state, 2, 2)
    assert breaker.check(state, performance) is None

    breaker.record_api_calls(state, 2, 0)
    assert breaker.check(state, performance).startswith("api_error_rate")


def test_open_breaker_stays_open_until_reset() -> None:
    breaker = _breaker()
    performance = new_performance(1000.0, _NOW)
    state = CircuitBreakerState(status="OPEN", reason="manual", tripped_at=_NOW)

    assert not breaker.update(state, performance, _NOW)
    assert breaker.is_open(state)

    breaker.reset(state)
    assert state.status == "CLOSED"
    assert state.reason is None
    assert state.api_calls == 0


def test_manager_reset_restarts_baselines(tmp_path: Path) -> None:
    settings = Settings(state_file=tmp_path / "state.json")
    manager = CycleStateManager(settings, StateStore(settings.state_file), PaperExecutor())
    state = manager.new_state()
    state.status = "CIRCUIT_BROKEN"
    state.circuit_breaker.status = "OPEN"
    state.circuit_breaker.reason = "drawdown 12.00% >= 10.0%"
    state.circuit_breaker.daily_pnl = -300.0
    state.performance.consecutive_losses = 4
    state.performance.current_equity = 8_800.0

    reset = manager.reset_circuit_breaker(state)

    assert reset.status == "RUNNING"
    assert reset.circuit_breaker.status == "CLOSED"
    assert reset.performance.consecutive_losses == 0
    assert reset.performance.peak_equity == 8_800.0
    assert reset.circuit_breaker.daily_start_equity == 8_800.0
    assert reset.circuit_breaker.daily_pnl == 0.0
    assert state.circuit_breaker.status == "OPEN"
