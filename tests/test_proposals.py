from __future__ import annotations

import pytest

from signal_cycle.config import Settings
from signal_cycle.quality.snapshot import normalize_snapshot
from signal_cycle.strategy.proposals import propose_signal, vote_balance

_BULLISH = {
    "price": 110.0,
    "ema8": 108.0,
    "ema20": 105.0,
    "ema50": 100.0,
    "macd": {"macd": 2.0, "signal": 1.0, "histogram": 1.0},
    "atr": 2.0,
}
_BEARISH = {
    "price": 90.0,
    "ema8": 92.0,
    "ema20": 95.0,
    "ema50": 100.0,
    "macd": {"macd": -2.0, "signal": -1.0, "histogram": -1.0},
}


def test_bullish_snapshot_proposes_long_with_atr_stop() -> None:
    settings = Settings(stop_loss_atr_multiplier=2.0, reward_risk_ratio=2.0)
    snapshot = normalize_snapshot(_BULLISH)

    proposal = propose_signal("BTC", _BULLISH, snapshot, settings)

    assert vote_balance(snapshot) > 0
    assert proposal is not None
    assert proposal.action == "buy_to_enter"
    assert proposal.entry_price == 110.0
    assert proposal.stop_loss == 106.0
    assert proposal.take_profit == 118.0
    assert proposal.invalidation_condition == "close below 106"


def test_bearish_snapshot_without_atr_uses_percent_stop() -> None:
    settings = Settings(default_stop_pct=5.0, reward_risk_ratio=2.0)

    proposal = propose_signal("ETH", _BEARISH, normalize_snapshot(_BEARISH), settings)

    assert proposal is not None
    assert proposal.action == "sell_to_enter"
    assert proposal.stop_loss == pytest.approx(94.5)
    assert proposal.take_profit == pytest.approx(81.0)


def test_no_lean_or_no_price_means_no_proposal() -> None:
    settings = Settings()

    assert propose_signal("BTC", {"price": 100.0}, normalize_snapshot({"price": 100.0}), settings) is None
    assert propose_signal("BTC", {"rsi": 50}, normalize_snapshot({"rsi": 50}), settings) is None
    assert propose_signal("BTC", None, None, settings) is None


def test_signal_block_overrides_rules() -> None:
    raw = {
        **_BULLISH,
        "signal": {"action": "sell_to_enter", "entry": "110", "stopLoss": 115, "target": 100},
    }

    proposal = propose_signal("BTC", raw, normalize_snapshot(raw), Settings())

    assert proposal is not None
    assert proposal.action == "sell_to_enter"
    assert proposal.stop_loss == 115.0
    assert proposal.take_profit == 100.0


def test_invalid_signal_block_is_dropped() -> None:
    unknown = {"signal": {"action": "moon"}}
    priced_hold = {"signal": {"action": "hold", "entry": 100}}

    assert propose_signal("BTC", unknown, None, Settings()) is None
    assert propose_signal("BTC", priced_hold, None, Settings()) is None
