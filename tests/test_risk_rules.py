from __future__ import annotations

import pytest

from signal_cycle.config import Settings
from signal_cycle.risk.rules import AllocationCandidate, RiskEngine, kelly_fraction


def _candidate(asset: str, confidence: float, stop: float = 95.0, target: float = 110.0) -> AllocationCandidate:
    return AllocationCandidate(
        asset=asset,
        confidence=confidence,
        entry_price=100.0,
        stop_loss=stop,
        take_profit=target,
    )


def test_compute_position_size() -> None:
    engine = RiskEngine(Settings(journal_dir="data/journal"))
    qty = engine.compute_position_size(
        equity=10_000,
        entry=50_000,
        stop=49_500,
        risk_budget_pct=0.5,
    )
    assert qty == pytest.approx(0.1)


def test_position_quantity_capped_by_risk_budget() -> None:
    engine = RiskEngine(Settings(risk_per_trade_pct=1.0))

    # Capital allows 60 units, 1% of equity over a 4.0 stop allows 25.
    assert engine.position_quantity(capital=2000, leverage=3, entry=100, stop=96, equity=10_000) == pytest.approx(25.0)
    assert engine.position_quantity(capital=500, leverage=1, entry=100, stop=96, equity=10_000) == pytest.approx(5.0)
    assert engine.position_quantity(capital=0, leverage=3, entry=100, stop=96, equity=10_000) == 0.0


def test_check_entry_limits() -> None:
    engine = RiskEngine(Settings(max_open_positions=2, risk_per_trade_pct=1.0))

    ok = engine.check_entry(open_positions=1, quantity=25, entry=100, stop=96, equity=10_000)
    assert ok.allowed

    blocked = engine.check_entry(open_positions=2, quantity=30, entry=100, stop=96, equity=10_000)
    assert not blocked.allowed
    assert blocked.reasons == ["max_open_positions_reached", "max_risk_per_trade_exceeded"]

    zero = engine.check_entry(open_positions=0, quantity=0, entry=100, stop=96, equity=10_000)
    assert zero.reasons == ["zero_quantity"]


def test_build_stop_loss_for_both_sides() -> None:
    engine = RiskEngine(Settings(default_stop_pct=3.0))

    assert engine.build_stop_loss(100, 2.0, 2.0) == 96.0
    assert engine.build_stop_loss(100, 2.0, 2.0, direction=-1) == 104.0
    assert engine.build_stop_loss(100, None, 2.0) == 97.0
    assert engine.build_stop_loss(0, 2.0, 2.0) == 0.0


def test_equal_allocation_respects_cap_and_reserve() -> None:
    engine = RiskEngine(
        Settings(allocation_strategy="equal", max_position_size_pct=50.0, reserve_capital_pct=10.0)
    )

    allocation = engine.allocate_capital([_candidate("BTC", 0.9), _candidate("ETH", 0.5), _candidate("SOL", 0.7)], 10_000)

    assert allocation == pytest.approx({"BTC": 3000.0, "ETH": 3000.0, "SOL": 3000.0})


def test_confidence_weighted_allocation() -> None:
    engine = RiskEngine(
        Settings(allocation_strategy="confidence_weighted", max_position_size_pct=100.0, reserve_capital_pct=0.0)
    )

    allocation = engine.allocate_capital([_candidate("BTC", 0.75), _candidate("ETH", 0.25)], 1000)

    assert allocation == pytest.approx({"BTC": 750.0, "ETH": 250.0})


def test_risk_parity_favors_tighter_stops() -> None:
    engine = RiskEngine(
        Settings(allocation_strategy="risk_parity", max_position_size_pct=100.0, reserve_capital_pct=0.0)
    )

    allocation = engine.allocate_capital([_candidate("BTC", 0.5, stop=98.0), _candidate("ETH", 0.5, stop=96.0)], 900)

    assert allocation == pytest.approx({"BTC": 600.0, "ETH": 300.0})


def test_kelly_allocation_is_capped() -> None:
    engine = RiskEngine(
        Settings(allocation_strategy="kelly", max_position_size_pct=100.0, reserve_capital_pct=10.0)
    )

    assert kelly_fraction(_candidate("BTC", 0.9)) == 0.25
    assert kelly_fraction(_candidate("BTC", 0.2)) == 0.0

    allocation = engine.allocate_capital([_candidate("BTC", 0.9), _candidate("ETH", 0.2)], 10_000)

    assert allocation == pytest.approx({"BTC": 2250.0, "ETH": 0.0})


def test_zero_weights_allocate_nothing() -> None:
    engine = RiskEngine(Settings(allocation_strategy="confidence_weighted"))

    assert engine.allocate_capital([_candidate("BTC", 0.0)], 10_000) == {"BTC": 0.0}
    assert engine.allocate_capital([_candidate("BTC", 0.5)], 0) == {"BTC": 0.0}
