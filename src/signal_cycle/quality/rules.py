"""Declarative vote rules used by the signal quality engine.

Each rule returns +1 (bullish), -1 (bearish) or 0 for a snapshot and a
signal direction (+1 buy side, -1 sell side). Rules that depend on the
signal's own direction flip their predicate on ``direction``, so one table
serves both sides.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from signal_cycle.quality.snapshot import IndicatorSnapshot

PRICE_POSITION = "Price Position"
TREND_MOMENTUM = "Trend Momentum"
OVERBOUGHT_OVERSOLD = "Overbought/Oversold"
VOLUME_CONFIRMATION = "Volume Confirmation"
SUPPORT_RESISTANCE = "Support/Resistance"
STRUCTURE_REGIME = "Structure & Regime"
DIVERGENCE = "Divergence"

# Only the highest-weight vote per direction counts inside these groups.
REDUNDANT_GROUPS = frozenset({PRICE_POSITION, OVERBOUGHT_OVERSOLD})

REGIME_MULTIPLIERS: dict[str, dict[str, float]] = {
    "trending": {TREND_MOMENTUM: 1.3, OVERBOUGHT_OVERSOLD: 0.7},
    "ranging": {TREND_MOMENTUM: 0.7, OVERBOUGHT_OVERSOLD: 1.3},
    "choppy": {TREND_MOMENTUM: 0.7, OVERBOUGHT_OVERSOLD: 1.3},
    "high_volatility": {DIVERGENCE: 0.8},
}

ADX_STRONG_LEVEL = 25.0
AROON_DOMINANT_LEVEL = 70.0
LEVEL_PROXIMITY_PCT = 2.0
FUNDING_EXTREME = 0.001
VOLUME_DIVERGENCE_LEVEL = 0.5
OBV_VOLUME_DROP_PCT = -20.0

Predicate = Callable[[IndicatorSnapshot, int], int]


@dataclass(frozen=True, slots=True)
class VoteRule:
    name: str
    group: str
    weight: float
    predicate: Predicate
    template: str

    def describe(self, snapshot: IndicatorSnapshot, direction: int) -> str:
        context = snapshot.flat_values()
        context["extreme"] = "overbought" if direction > 0 else "oversold"
        context["side"] = "buy" if direction > 0 else "sell"
        try:
            return self.template.format(**context)
        except (KeyError, TypeError, ValueError):
            return self.name


def _sign(value: float) -> int:
    if value > 0:
        return 1
    if value < 0:
        return -1
    return 0


def _above(price: float | None, level: float | None) -> int:
    if price is None or level is None:
        return 0
    return _sign(price - level)


def _macd_histogram(s: IndicatorSnapshot, direction: int) -> int:
    if s.macd is None or s.macd.histogram is None:
        return 0
    return _sign(s.macd.histogram)


def _macd_crossover(s: IndicatorSnapshot, direction: int) -> int:
    if s.macd is None or s.macd.macd is None or s.macd.signal is None:
        return 0
    return _sign(s.macd.macd - s.macd.signal)


def _price_vs_ema20(s: IndicatorSnapshot, direction: int) -> int:
    return _above(s.price, s.ema20)


def _price_vs_ema8(s: IndicatorSnapshot, direction: int) -> int:
    return _above(s.price, s.ema8)


def _price_vs_vwap(s: IndicatorSnapshot, direction: int) -> int:
    return _above(s.price, s.vwap)


def _price_vs_bb_middle(s: IndicatorSnapshot, direction: int) -> int:
    middle = s.bollinger.middle if s.bollinger is not None else None
    return _above(s.price, middle)


def ema_structure(s: IndicatorSnapshot) -> int:
    """+1 for price > EMA20 > EMA50, -1 for the inverse, else 0."""
    if s.price is None or s.ema20 is None or s.ema50 is None:
        return 0
    if s.price > s.ema20 > s.ema50:
        return 1
    if s.price < s.ema20 < s.ema50:
        return -1
    return 0


def _ema_alignment(s: IndicatorSnapshot, direction: int) -> int:
    return ema_structure(s)


def _adx_strong(s: IndicatorSnapshot, direction: int) -> int:
    # A strong trend reading backs whichever side the signal takes.
    if s.adx is None or s.adx <= ADX_STRONG_LEVEL:
        return 0
    return direction


def _di_dominance(s: IndicatorSnapshot, direction: int) -> int:
    if s.plus_di is None or s.minus_di is None:
        return 0
    return _sign(s.plus_di - s.minus_di)


def extreme_count(s: IndicatorSnapshot, direction: int) -> int:
    """Oscillators stretched in the signal's own direction."""
    if direction > 0:
        readings = (
            s.stoch_k is not None and s.stoch_k > 80,
            s.williams_r is not None and s.williams_r > -20,
            s.rsi14 is not None and s.rsi14 > 70,
        )
    else:
        readings = (
            s.stoch_k is not None and s.stoch_k < 20,
            s.williams_r is not None and s.williams_r < -80,
            s.rsi14 is not None and s.rsi14 < 30,
        )
    return sum(readings)


def _triple_extreme(s: IndicatorSnapshot, direction: int) -> int:
    return -direction if extreme_count(s, direction) >= 3 else 0


def _dual_extreme(s: IndicatorSnapshot, direction: int) -> int:
    return -direction if extreme_count(s, direction) == 2 else 0


def _aroon_vs_ema(s: IndicatorSnapshot, direction: int) -> int:
    if s.aroon is None or s.aroon.up is None or s.aroon.down is None:
        return 0
    structure = ema_structure(s)
    if structure > 0 and s.aroon.down > s.aroon.up and s.aroon.down > AROON_DOMINANT_LEVEL:
        return -1
    if structure < 0 and s.aroon.up > s.aroon.down and s.aroon.up > AROON_DOMINANT_LEVEL:
        return 1
    return 0


def _divergence_sign(label: str | None) -> int:
    if label == "bullish":
        return 1
    if label == "bearish":
        return -1
    return 0


def _macd_divergence(s: IndicatorSnapshot, direction: int) -> int:
    sign = _divergence_sign(s.macd_divergence)
    return sign if sign == -direction else 0


def _rsi_divergence(s: IndicatorSnapshot, direction: int) -> int:
    sign = _divergence_sign(s.rsi_divergence)
    return sign if sign == -direction else 0


def _volume_divergence(s: IndicatorSnapshot, direction: int) -> int:
    if s.volume_price_divergence is None:
        return 0
    if s.volume_price_divergence * direction < -VOLUME_DIVERGENCE_LEVEL:
        return -direction
    return 0


def _obv_divergence(s: IndicatorSnapshot, direction: int) -> int:
    # Price moving with the signal while volume dries up.
    if s.price_change_24h is None or s.volume_change_pct is None:
        return 0
    if s.price_change_24h * direction > 0 and s.volume_change_pct < OBV_VOLUME_DROP_PCT:
        return -direction
    return 0


def _level_proximity(s: IndicatorSnapshot, direction: int) -> int:
    if s.price is None or s.price <= 0:
        return 0
    near_support = (
        s.support is not None
        and abs(s.price - s.support) / s.price * 100 <= LEVEL_PROXIMITY_PCT
    )
    near_resistance = (
        s.resistance is not None
        and abs(s.resistance - s.price) / s.price * 100 <= LEVEL_PROXIMITY_PCT
    )
    if near_support and not near_resistance:
        return 1
    if near_resistance and not near_support:
        return -1
    return 0


def _funding_extreme(s: IndicatorSnapshot, direction: int) -> int:
    # Crowded funding on the signal's side.
    rate = s.external.funding_rate
    if rate is None:
        return 0
    return -direction if rate * direction > FUNDING_EXTREME else 0


VOTE_RULES: tuple[VoteRule, ...] = (
    VoteRule("MACD_DIVERGENCE", DIVERGENCE, 3.0, _macd_divergence,
             "MACD {macd_divergence} divergence against {side} signal"),
    VoteRule("RSI_DIVERGENCE", DIVERGENCE, 2.8, _rsi_divergence,
             "RSI {rsi_divergence} divergence against {side} signal"),
    VoteRule("TRIPLE_EXTREME", OVERBOUGHT_OVERSOLD, 2.5, _triple_extreme,
             "Triple {extreme}: Stoch %K {stoch_k:.1f}, Williams %R {williams_r:.1f}, RSI {rsi14:.1f}"),
    VoteRule("VOLUME_DIVERGENCE", VOLUME_CONFIRMATION, 2.2, _volume_divergence,
             "Volume-price divergence {volume_price_divergence:.2f}"),
    VoteRule("DUAL_EXTREME", OVERBOUGHT_OVERSOLD, 2.0, _dual_extreme,
             "Dual {extreme} oscillator reading"),
    VoteRule("OBV_DIVERGENCE", VOLUME_CONFIRMATION, 1.8, _obv_divergence,
             "Price {price_change_24h:+.2f}% on volume {volume_change_pct:+.1f}%"),
    VoteRule("AROON_CONTRADICTION", STRUCTURE_REGIME, 1.8, _aroon_vs_ema,
             "Aroon up {aroon_up:.0f} / down {aroon_down:.0f} against EMA structure"),
    VoteRule("ADX_STRONG", STRUCTURE_REGIME, 1.8, _adx_strong,
             "ADX {adx:.1f} confirms a strong trend"),
    VoteRule("SUPPORT_RESISTANCE_PROXIMITY", SUPPORT_RESISTANCE, 1.6, _level_proximity,
             "Price {price} within 2% of a key level"),
    VoteRule("FUNDING_RATE_EXTREME", STRUCTURE_REGIME, 1.5, _funding_extreme,
             "Funding rate {funding_rate:.4%} crowds the {side} side"),
    VoteRule("EMA_ALIGNMENT", TREND_MOMENTUM, 1.5, _ema_alignment,
             "EMA structure price {price} / EMA20 {ema20} / EMA50 {ema50}"),
    VoteRule("MACD_CROSSOVER", TREND_MOMENTUM, 1.2, _macd_crossover,
             "MACD {macd_macd:.4f} vs signal {macd_signal:.4f}"),
    VoteRule("PLUS_DI_DOMINANCE", TREND_MOMENTUM, 1.2, _di_dominance,
             "+DI {plus_di:.1f} vs -DI {minus_di:.1f}"),
    VoteRule("MACD_HISTOGRAM", TREND_MOMENTUM, 0.6, _macd_histogram,
             "MACD histogram {macd_histogram:+.4f}"),
    VoteRule("PRICE_ABOVE_EMA20", PRICE_POSITION, 0.5, _price_vs_ema20,
             "Price {price} vs EMA20 {ema20}"),
    VoteRule("PRICE_ABOVE_EMA8", PRICE_POSITION, 0.4, _price_vs_ema8,
             "Price {price} vs EMA8 {ema8}"),
    VoteRule("PRICE_ABOVE_VWAP", PRICE_POSITION, 0.4, _price_vs_vwap,
             "Price {price} vs VWAP {vwap}"),
    VoteRule("PRICE_ABOVE_BB_MIDDLE", PRICE_POSITION, 0.4, _price_vs_bb_middle,
             "Price {price} vs Bollinger middle {bb_middle}"),
)
