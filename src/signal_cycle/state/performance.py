"""Performance counters and reporting metrics for the cycle state."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from typing import Any

import numpy as np
import pandas as pd

from signal_cycle.types import EquityPoint, PerformanceStats, TradeRecord

EQUITY_CURVE_LIMIT = 1000
_PERIODS_PER_YEAR = 365


def new_performance(initial_equity: float, now: str) -> PerformanceStats:
    return PerformanceStats(
        initial_equity=initial_equity,
        current_equity=initial_equity,
        peak_equity=initial_equity,
        equity_curve=[EquityPoint(timestamp=now, equity=initial_equity)],
    )


def record_trade(stats: PerformanceStats, trade: TradeRecord) -> None:
    """Fold one realized trade into the running counters."""
    stats.total_trades += 1
    if trade.pnl > 0:
        stats.wins += 1
        stats.consecutive_wins += 1
        stats.consecutive_losses = 0
    elif trade.pnl < 0:
        stats.losses += 1
        stats.consecutive_losses += 1
        stats.consecutive_wins = 0
    else:
        stats.consecutive_wins = 0
        stats.consecutive_losses = 0
    stats.max_consecutive_wins = max(stats.max_consecutive_wins, stats.consecutive_wins)
    stats.max_consecutive_losses = max(stats.max_consecutive_losses, stats.consecutive_losses)
    stats.win_rate = stats.wins / stats.total_trades * 100

    stats.current_equity += trade.pnl
    stats.peak_equity = max(stats.peak_equity, stats.current_equity)
    stats.total_return_usd = stats.current_equity - stats.initial_equity
    if stats.initial_equity > 0:
        stats.total_return_pct = stats.total_return_usd / stats.initial_equity * 100

    stats.equity_curve.append(EquityPoint(timestamp=trade.closed_at, equity=stats.current_equity))
    if len(stats.equity_curve) > EQUITY_CURVE_LIMIT:
        del stats.equity_curve[: len(stats.equity_curve) - EQUITY_CURVE_LIMIT]

    stats.max_drawdown_pct = max(
        stats.max_drawdown_pct,
        max_drawdown_pct([point.equity for point in stats.equity_curve]),
        current_drawdown_pct(stats),
    )
    stats.sharpe_ratio = sharpe_ratio(stats.equity_curve)


def current_drawdown_pct(stats: PerformanceStats) -> float:
    if stats.peak_equity <= 0:
        return 0.0
    return max(0.0, (stats.peak_equity - stats.current_equity) / stats.peak_equity * 100)


def max_drawdown_pct(values: Sequence[float]) -> float:
    """Largest peak-to-trough decline of an equity series, in percent."""
    if len(values) < 2:
        return 0.0
    series = pd.Series(values, dtype=float)
    running_max = series.cummax()
    drawdown = (running_max - series) / running_max.where(running_max > 0)
    worst = drawdown.max()
    return float(worst * 100) if pd.notna(worst) else 0.0


def sharpe_ratio(curve: Sequence[EquityPoint]) -> float:
    """Annualized Sharpe of per-point equity returns (risk-free rate 0)."""
    if len(curve) < 3:
        return 0.0
    equity = pd.Series([point.equity for point in curve], dtype=float)
    returns = equity.pct_change().replace([np.inf, -np.inf], np.nan).dropna()
    if len(returns) < 2:
        return 0.0
    std = float(returns.std(ddof=1))
    if not np.isfinite(std) or std == 0:
        return 0.0
    return float(returns.mean() / std * np.sqrt(_PERIODS_PER_YEAR))


def summarize(trades: Sequence[TradeRecord], now: datetime | None = None) -> dict[str, Any]:
    """Win rate, average R, per-asset and rolling 30-day statistics."""
    if not trades:
        return {
            "trade_count": 0,
            "win_rate_pct": 0.0,
            "total_pnl": 0.0,
            "avg_r_multiple": None,
            "per_asset": {},
            "rolling_30d": {"trade_count": 0, "win_rate_pct": 0.0, "total_pnl": 0.0},
        }

    frame = pd.DataFrame([asdict(trade) for trade in trades])
    frame["win"] = frame["pnl"] > 0
    frame["closed_at"] = pd.to_datetime(frame["closed_at"], utc=True, errors="coerce")

    per_asset = {
        str(asset): {
            "trade_count": int(len(group)),
            "win_rate_pct": float(group["win"].mean() * 100),
            "total_pnl": float(group["pnl"].sum()),
        }
        for asset, group in frame.groupby("asset")
    }

    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=30)
    recent = frame[frame["closed_at"] >= pd.Timestamp(cutoff)]
    r_values = frame["r_multiple"].dropna()
    return {
        "trade_count": int(len(frame)),
        "win_rate_pct": float(frame["win"].mean() * 100),
        "total_pnl": float(frame["pnl"].sum()),
        "avg_r_multiple": float(r_values.mean()) if not r_values.empty else None,
        "per_asset": per_asset,
        "rolling_30d": {
            "trade_count": int(len(recent)),
            "win_rate_pct": float(recent["win"].mean() * 100) if len(recent) else 0.0,
            "total_pnl": float(recent["pnl"].sum()),
        },
    }
