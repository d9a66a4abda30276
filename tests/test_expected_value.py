from __future__ import annotations

import math

import pytest

from signal_cycle.config import EVThresholds, Settings
from signal_cycle.gate.expected_value import classify, expected_value, tier_for
from signal_cycle.types import QualityResult, SignalProposal

_THRESHOLDS = EVThresholds(reject=-1.0, display=0.2, auto_trade=0.5)


def _quality(confidence: float) -> QualityResult:
    return QualityResult(
        bullish_score=1.0,
        bearish_score=0.0,
        unique_bullish_count=1,
        unique_bearish_count=0,
        quality_ratio=1.0,
        redundant_groups=[],
        contradictions=[],
        conflict_severity="none",
        base_confidence=confidence,
        adjusted_confidence=confidence,
    )


def test_expected_value_formula() -> None:
    # win 1000 * 10% = 100, loss 1000 * 5% = 50
    assert expected_value(0.6, 100, 95, 110, 1000, 1) == pytest.approx(40.0)
    assert expected_value(0.6, 100, 95, 110, 1000, 2) == pytest.approx(80.0)


def test_expected_value_degenerate_inputs() -> None:
    assert expected_value(0.6, 0, 95, 110, 1000) is None
    assert expected_value(0.6, 100, 95, 110, 0) is None
    assert expected_value(math.nan, 100, 95, 110, 1000) is None
    assert expected_value(0.6, 100, math.inf, 110, 1000) is None


def test_tier_boundaries_are_monotonic() -> None:
    assert tier_for(-1.5, _THRESHOLDS) == "REJECTED"
    assert tier_for(-1.0, _THRESHOLDS) == "DISPLAY_ONLY"
    assert tier_for(0.49, _THRESHOLDS) == "DISPLAY_ONLY"
    assert tier_for(0.5, _THRESHOLDS) == "AUTO_TRADE"

    order = {"REJECTED": 0, "DISPLAY_ONLY": 1, "AUTO_TRADE": 2}
    ranks = [order[tier_for(value / 10, _THRESHOLDS)] for value in range(-30, 30)]
    assert ranks == sorted(ranks)


def test_classify_auto_trade() -> None:
    proposal = SignalProposal("BTC", "buy_to_enter", 100.0, 95.0, 110.0)

    result = classify(proposal, _quality(0.6), 1000.0, thresholds=_THRESHOLDS)

    assert result.tier == "AUTO_TRADE"
    assert result.expected_value == pytest.approx(40.0)


def test_classify_rejects_missing_or_inverted_levels() -> None:
    missing = SignalProposal("BTC", "buy_to_enter", 100.0, None, 110.0)
    inverted = SignalProposal("BTC", "sell_to_enter", 100.0, 95.0, 110.0)
    hold = SignalProposal("BTC", "hold")

    assert classify(missing, _quality(0.9), 1000.0, thresholds=_THRESHOLDS).reason == "missing_prices"
    assert classify(inverted, _quality(0.9), 1000.0, thresholds=_THRESHOLDS).reason == "invalid_price_levels"
    assert classify(hold, _quality(0.9), 1000.0, thresholds=_THRESHOLDS).tier == "REJECTED"


def test_classify_zero_capital_is_insufficient_data() -> None:
    proposal = SignalProposal("BTC", "buy_to_enter", 100.0, 95.0, 110.0)

    result = classify(proposal, _quality(0.9), 0.0, thresholds=_THRESHOLDS)

    assert result.tier == "REJECTED"
    assert result.reason == "insufficient_data"


def test_low_confidence_is_rejected() -> None:
    proposal = SignalProposal("ETH", "sell_to_enter", 100.0, 110.0, 95.0)

    # 0.1 * 5 - 0.9 * 10 = -8.5
    result = classify(proposal, _quality(0.1), 100.0, thresholds=_THRESHOLDS)

    assert result.expected_value == pytest.approx(-8.5)
    assert result.tier == "REJECTED"


def test_thresholds_follow_autonomy_mode() -> None:
    settings = Settings(autonomy="manual", ev_auto_trade_manual=3.0)

    assert settings.ev_thresholds().auto_trade == 3.0
    assert settings.ev_thresholds().reject < settings.ev_thresholds().display


def test_thresholds_must_increase() -> None:
    with pytest.raises(ValueError):
        EVThresholds(reject=1.0, display=0.5, auto_trade=2.0)
    with pytest.raises(ValueError):
        Settings(ev_display_autonomous=5.0)
