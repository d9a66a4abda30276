"""Contradiction checks: readings that oppose a signal's stated direction."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from signal_cycle.quality.rules import ema_structure
from signal_cycle.quality.snapshot import IndicatorSnapshot, TrendAlignment
from signal_cycle.types import Contradiction, Severity

MAX_CONTRADICTION_SCORE = 4

SEVERITY_BY_SCORE: dict[int, Severity] = {4: "critical", 3: "high", 2: "medium"}

# Each check returns the points it contributes (0 when it does not fire).
Check = Callable[[IndicatorSnapshot, TrendAlignment | None, int], int]


@dataclass(frozen=True, slots=True)
class ContradictionCheck:
    name: str
    check: Check
    template: str


def _bb_position(s: IndicatorSnapshot, trend: TrendAlignment | None, direction: int) -> int:
    if s.price is None or s.bollinger is None or s.bollinger.middle is None:
        return 0
    return 1 if (s.price - s.bollinger.middle) * direction < 0 else 0


def _bb_breakout(s: IndicatorSnapshot, trend: TrendAlignment | None, direction: int) -> int:
    if s.price is None or s.bollinger is None:
        return 0
    band = s.bollinger.lower if direction > 0 else s.bollinger.upper
    if band is None:
        return 0
    return 1 if (s.price - band) * direction < 0 else 0


def _obv(s: IndicatorSnapshot, trend: TrendAlignment | None, direction: int) -> int:
    if s.obv is None:
        return 0
    return 1 if s.obv * direction < 0 else 0


def _macd_histogram(s: IndicatorSnapshot, trend: TrendAlignment | None, direction: int) -> int:
    if s.macd is None or s.macd.histogram is None:
        return 0
    return 1 if s.macd.histogram * direction < 0 else 0


def _aroon(s: IndicatorSnapshot, trend: TrendAlignment | None, direction: int) -> int:
    if s.aroon is None:
        return 0
    opposing = s.aroon.down if direction > 0 else s.aroon.up
    return 1 if opposing is not None and opposing > 80 else 0


def _daily_trend(s: IndicatorSnapshot, trend: TrendAlignment | None, direction: int) -> int:
    if trend is None or trend.daily_trend is None:
        return 0
    against = "downtrend" if direction > 0 else "uptrend"
    return 1 if trend.daily_trend == against else 0


def _ema(s: IndicatorSnapshot, trend: TrendAlignment | None, direction: int) -> int:
    return 1 if ema_structure(s) == -direction else 0


def _rsi_divergence(s: IndicatorSnapshot, trend: TrendAlignment | None, direction: int) -> int:
    against = "bearish" if direction > 0 else "bullish"
    return 1 if s.rsi_divergence == against else 0


def _macd_divergence(s: IndicatorSnapshot, trend: TrendAlignment | None, direction: int) -> int:
    against = "bearish" if direction > 0 else "bullish"
    return 1 if s.macd_divergence == against else 0


def _parabolic_sar(s: IndicatorSnapshot, trend: TrendAlignment | None, direction: int) -> int:
    if s.parabolic_sar is None or s.price is None:
        return 0
    # SAR below price is bullish.
    return 1 if (s.price - s.parabolic_sar) * direction < 0 else 0


def _cci(s: IndicatorSnapshot, trend: TrendAlignment | None, direction: int) -> int:
    if s.cci is None:
        return 0
    return 1 if s.cci * direction < -100 else 0


def _price_change(s: IndicatorSnapshot, trend: TrendAlignment | None, direction: int) -> int:
    if s.price_change_24h is None:
        return 0
    return 1 if s.price_change_24h * direction < 0 else 0


def _volume_change(s: IndicatorSnapshot, trend: TrendAlignment | None, direction: int) -> int:
    change = s.volume_change_pct
    if change is None:
        return 0
    if direction < 0:
        if change > 100:
            return 2
        return 1 if change > 50 else 0
    if change < -80:
        return 2
    return 1 if change < -50 else 0


CONTRADICTION_CHECKS: tuple[ContradictionCheck, ...] = (
    ContradictionCheck("bb_position", _bb_position, "{side} signal but price is on the wrong side of the BB middle"),
    ContradictionCheck("bb_breakout", _bb_breakout, "{side} signal but price is beyond the opposite Bollinger band"),
    ContradictionCheck("obv", _obv, "{side} signal but OBV {obv:.0f} shows opposite pressure"),
    ContradictionCheck("macd_histogram", _macd_histogram, "{side} signal but MACD histogram is {macd_histogram:+.4f}"),
    ContradictionCheck("aroon", _aroon, "{side} signal but Aroon shows a strong opposite trend"),
    ContradictionCheck("daily_trend", _daily_trend, "{side} signal against the daily trend"),
    ContradictionCheck("ema_structure", _ema, "{side} signal against the EMA20/EMA50 structure"),
    ContradictionCheck("rsi_divergence", _rsi_divergence, "{side} signal but RSI shows {rsi_divergence} divergence"),
    ContradictionCheck("macd_divergence", _macd_divergence, "{side} signal but MACD shows {macd_divergence} divergence"),
    ContradictionCheck("parabolic_sar", _parabolic_sar, "{side} signal but Parabolic SAR {parabolic_sar} disagrees"),
    ContradictionCheck("cci", _cci, "{side} signal but CCI is {cci:.1f}"),
    ContradictionCheck("price_change_24h", _price_change, "{side} signal but 24h change is {price_change_24h:+.2f}%"),
    ContradictionCheck("volume_change", _volume_change, "{side} signal but volume changed {volume_change_pct:+.1f}%"),
)


def detect_contradictions(
    snapshot: IndicatorSnapshot,
    trend: TrendAlignment | None,
    direction: int,
) -> tuple[list[Contradiction], int]:
    """Run every check; return the findings and the capped point score."""
    context = snapshot.flat_values()
    context["side"] = "BUY" if direction > 0 else "SELL"
    found: list[Contradiction] = []
    score = 0
    for item in CONTRADICTION_CHECKS:
        points = item.check(snapshot, trend, direction)
        if points <= 0:
            continue
        try:
            description = item.template.format(**context)
        except (KeyError, TypeError, ValueError):
            description = item.name
        found.append(Contradiction(check=item.name, points=points, description=description))
        score = min(score + points, MAX_CONTRADICTION_SCORE)
    return found, score


def severity_for(score: int) -> Severity:
    return SEVERITY_BY_SCORE.get(min(score, MAX_CONTRADICTION_SCORE), "none")
