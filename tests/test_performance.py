from __future__ import annotations

from datetime import datetime, timezone

import pytest

from signal_cycle.state.performance import (
    max_drawdown_pct,
    new_performance,
    record_trade,
    sharpe_ratio,
    summarize,
)
from signal_cycle.types import EquityPoint, TradeRecord


def _trade(pnl: float, asset: str = "BTC", closed_at: str = "2026-01-10T00:00:00+00:00") -> TradeRecord:
    return TradeRecord(
        asset=asset,
        side="LONG",
        quantity=1.0,
        entry_price=100.0,
        exit_price=100.0 + pnl,
        pnl=pnl,
        pnl_pct=pnl,
        reason="TAKE_PROFIT" if pnl > 0 else "STOP_LOSS",
        opened_at="2026-01-01T00:00:00+00:00",
        closed_at=closed_at,
        r_multiple=pnl / 5.0,
    )


def test_record_trade_updates_streaks_and_equity() -> None:
    stats = new_performance(1000.0, "2026-01-01T00:00:00+00:00")

    for pnl in (50.0, -20.0, -30.0, 10.0):
        record_trade(stats, _trade(pnl))

    assert stats.total_trades == 4
    assert stats.wins == 2
    assert stats.losses == 2
    assert stats.win_rate == 50.0
    assert stats.current_equity == pytest.approx(1010.0)
    assert stats.peak_equity == pytest.approx(1050.0)
    assert stats.max_consecutive_losses == 2
    assert stats.consecutive_losses == 0
    assert stats.consecutive_wins == 1
    assert stats.total_return_pct == pytest.approx(1.0)
    assert stats.max_drawdown_pct == pytest.approx(50 / 1050 * 100)
    assert len(stats.equity_curve) == 5


def test_max_drawdown_of_series() -> None:
    assert max_drawdown_pct([100, 120, 90, 130, 117]) == pytest.approx(25.0)
    assert max_drawdown_pct([100]) == 0.0


def test_sharpe_ratio_needs_variation() -> None:
    flat = [EquityPoint(timestamp=str(i), equity=100.0) for i in range(5)]
    rising = [EquityPoint(timestamp=str(i), equity=value) for i, value in enumerate([100, 101, 103, 102, 105])]

    assert sharpe_ratio(flat) == 0.0
    assert sharpe_ratio(rising) > 0


def test_summarize_groups_and_rolls() -> None:
    trades = [
        _trade(10.0, "BTC", "2025-11-01T00:00:00+00:00"),
        _trade(-5.0, "BTC", "2026-01-05T00:00:00+00:00"),
        _trade(20.0, "ETH", "2026-01-06T00:00:00+00:00"),
    ]

    summary = summarize(trades, now=datetime(2026, 1, 10, tzinfo=timezone.utc))

    assert summary["trade_count"] == 3
    assert summary["total_pnl"] == pytest.approx(25.0)
    assert summary["win_rate_pct"] == pytest.approx(200 / 3)
    assert summary["avg_r_multiple"] == pytest.approx(5.0 / 3)
    assert summary["per_asset"]["BTC"]["trade_count"] == 2
    assert summary["per_asset"]["ETH"]["win_rate_pct"] == 100.0
    assert summary["rolling_30d"]["trade_count"] == 2
    assert summary["rolling_30d"]["total_pnl"] == pytest.approx(15.0)


def test_summarize_empty() -> None:
    summary = summarize([])

    assert summary["trade_count"] == 0
    assert summary["avg_r_multiple"] is None
