"""Indicator snapshot schema and the single alias-normalization step."""

from __future__ import annotations

import math
from collections.abc import Mapping
from typing import Annotated, Any, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    ValidationError,
    model_validator,
)

from signal_cycle.utils.logging import get_logger

_logger = get_logger("signal_cycle.quality.snapshot")

TrendLabel = Literal["uptrend", "downtrend", "sideways"]
MarketRegime = Literal["trending", "ranging", "choppy", "high_volatility"]


def _finite_or_none(value: Any) -> float | None:
    """Coerce numbers and numeric strings; NaN, Infinity and junk become None."""
    if isinstance(value, (list, tuple)):
        return _finite_or_none(value[-1]) if value else None
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return None
    if not isinstance(value, (int, float)):
        return None
    number = float(value)
    return number if math.isfinite(number) else None


def _divergence(value: Any) -> str | None:
    if isinstance(value, Mapping):
        value = value.get("divergence") or value.get("type")
    if not isinstance(value, str):
        return None
    lowered = value.strip().lower()
    if lowered.startswith("bull"):
        return "bullish"
    if lowered.startswith("bear"):
        return "bearish"
    return None


def _trend_label(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    lowered = value.strip().lower()
    if lowered in {"uptrend", "up", "bullish"}:
        return "uptrend"
    if lowered in {"downtrend", "down", "bearish"}:
        return "downtrend"
    if lowered in {"sideways", "neutral", "range", "ranging"}:
        return "sideways"
    return None


def _regime(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    lowered = value.strip().lower().replace("-", "_").replace(" ", "_")
    if lowered in {"trending", "trend", "strong_trend"}:
        return "trending"
    if lowered in {"ranging", "range", "sideways"}:
        return "ranging"
    if lowered == "choppy":
        return "choppy"
    if lowered in {"high_volatility", "volatile", "high_vol"}:
        return "high_volatility"
    return None


FiniteFloat = Annotated[float | None, BeforeValidator(_finite_or_none)]
Divergence = Annotated[Literal["bullish", "bearish"] | None, BeforeValidator(_divergence)]


def _alias(*names: str) -> Any:
    return Field(default=None, validation_alias=AliasChoices(*names))


class _Reading(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    def has_values(self) -> bool:
        return any(value is not None for value in self.model_dump().values())


class MacdReading(_Reading):
    macd: FiniteFloat = _alias("macd", "MACD", "macdLine", "line", "value")
    signal: FiniteFloat = _alias("signal", "signalLine", "signal_line")
    histogram: FiniteFloat = _alias("histogram", "hist", "macdHistogram")


class BollingerReading(_Reading):
    upper: FiniteFloat = _alias("upper", "upperBand", "upper_band")
    middle: FiniteFloat = _alias("middle", "mid", "basis", "middleBand", "middle_band")
    lower: FiniteFloat = _alias("lower", "lowerBand", "lower_band")


class AroonReading(_Reading):
    up: FiniteFloat = _alias("up", "aroonUp", "aroon_up")
    down: FiniteFloat = _alias("down", "aroonDown", "aroon_down")


class TrendAlignment(_Reading):
    """Multi-timeframe trend summary."""

    daily_trend: Annotated[TrendLabel | None, BeforeValidator(_trend_label)] = _alias(
        "daily_trend", "dailyTrend", "trend"
    )
    aligned: bool = False
    score: FiniteFloat = _alias("score", "alignmentScore", "alignment_score")


class ExternalData(_Reading):
    """Market metadata that is not derived from the price series."""

    funding_rate: FiniteFloat = _alias("funding_rate", "fundingRate", "funding")
    open_interest: FiniteFloat = _alias("open_interest", "openInterest", "oi")
    orderbook_imbalance: FiniteFloat = _alias(
        "orderbook_imbalance", "orderBookImbalance", "orderbookImbalance", "imbalance"
    )
    whale_activity: FiniteFloat = _alias("whale_activity", "whaleActivity", "whales")
    exchange_flow: FiniteFloat = _alias("exchange_flow", "exchangeFlow", "netflow")

    @model_validator(mode="before")
    @classmethod
    def _unwrap_nested(cls, data: Any) -> Any:
        if not isinstance(data, Mapping):
            return {}
        flat = dict(data)
        for key, value in data.items():
            if isinstance(value, Mapping):
                flat[key] = value.get("current", value.get("value"))
        return flat


class TimeframeIndicators(_Reading):
    price: FiniteFloat = _alias("price", "close", "currentPrice")
    rsi14: FiniteFloat = _alias("rsi14", "rsi", "RSI14", "RSI")
    ema20: FiniteFloat = _alias("ema20", "EMA20", "ema_20")
    ema50: FiniteFloat = _alias("ema50", "EMA50", "ema_50")
    macd: MacdReading | None = None
    trend: Annotated[TrendLabel | None, BeforeValidator(_trend_label)] = None

    @model_validator(mode="before")
    @classmethod
    def _drop_bad_nested(cls, data: Any) -> Any:
        if isinstance(data, Mapping) and not isinstance(data.get("macd"), (Mapping, type(None))):
            data = {**data, "macd": None}
        return data


# Carried for context (sizing, display) but never voted on or checked.
_UNSCORED_FIELDS = frozenset(
    {
        "asset",
        "price",
        "atr",
        "ema200",
        "stoch_d",
        "market_regime",
        "macd",
        "bollinger",
        "aroon",
        "timeframes",
        "external",
    }
)


class IndicatorSnapshot(_Reading):
    """Canonical, alias-free view of one asset's indicator bundle."""

    asset: str = ""
    price: FiniteFloat = _alias("price", "currentPrice", "current_price", "close", "markPrice")
    rsi14: FiniteFloat = _alias("rsi14", "rsi", "RSI14", "RSI", "rsi_14")
    ema8: FiniteFloat = _alias("ema8", "EMA8", "ema_8")
    ema20: FiniteFloat = _alias("ema20", "EMA20", "ema_20")
    ema50: FiniteFloat = _alias("ema50", "EMA50", "ema_50")
    ema200: FiniteFloat = _alias("ema200", "EMA200", "ema_200")
    vwap: FiniteFloat = _alias("vwap", "VWAP")
    adx: FiniteFloat = _alias("adx", "ADX")
    plus_di: FiniteFloat = _alias("plus_di", "plusDI", "plusDi", "pdi", "diPlus")
    minus_di: FiniteFloat = _alias("minus_di", "minusDI", "minusDi", "mdi", "diMinus")
    stoch_k: FiniteFloat = _alias("stoch_k", "stochK", "stochasticK", "k")
    stoch_d: FiniteFloat = _alias("stoch_d", "stochD", "stochasticD", "d")
    williams_r: FiniteFloat = _alias("williams_r", "williamsR", "willr", "williamsPercentR")
    cci: FiniteFloat = _alias("cci", "CCI")
    obv: FiniteFloat = _alias("obv", "OBV")
    parabolic_sar: FiniteFloat = _alias("parabolic_sar", "parabolicSAR", "psar", "sar")
    atr: FiniteFloat = _alias("atr", "atr14", "ATR")
    volume_change_pct: FiniteFloat = _alias(
        "volume_change_pct", "volumeChangePercent", "volumeChange", "volume_change"
    )
    price_change_24h: FiniteFloat = _alias("price_change_24h", "priceChange24h", "change24h")
    volume_price_divergence: FiniteFloat = _alias(
        "volume_price_divergence", "volumePriceDivergence", "vpDivergence"
    )
    support: FiniteFloat = _alias("support", "nearestSupport", "supportLevel")
    resistance: FiniteFloat = _alias("resistance", "nearestResistance", "resistanceLevel")
    macd: MacdReading | None = None
    bollinger: BollingerReading | None = Field(
        default=None,
        validation_alias=AliasChoices("bollinger", "bollingerBands", "bb", "bbands"),
    )
    aroon: AroonReading | None = None
    rsi_divergence: Divergence = _alias("rsi_divergence", "rsiDivergence")
    macd_divergence: Divergence = _alias("macd_divergence", "macdDivergence")
    market_regime: Annotated[MarketRegime | None, BeforeValidator(_regime)] = _alias(
        "market_regime", "marketRegime", "regime"
    )
    timeframes: dict[str, TimeframeIndicators] = Field(
        default_factory=dict,
        validation_alias=AliasChoices(
            "timeframes", "multiTimeframe", "multiTimeframeIndicators", "multi_timeframe"
        ),
    )
    external: ExternalData = Field(
        default_factory=ExternalData,
        validation_alias=AliasChoices("external", "externalData", "external_data"),
    )

    @model_validator(mode="before")
    @classmethod
    def _flatten_nested_shapes(cls, data: Any) -> Any:
        if not isinstance(data, Mapping):
            return data
        flat: dict[str, Any] = dict(data)

        stochastic = flat.pop("stochastic", None)
        if isinstance(stochastic, Mapping):
            flat.setdefault("stochK", stochastic.get("k", stochastic.get("stochK")))
            flat.setdefault("stochD", stochastic.get("d", stochastic.get("stochD")))

        adx = flat.get("adx", flat.get("ADX"))
        if isinstance(adx, Mapping):
            flat.pop("ADX", None)
            flat["adx"] = adx.get("adx", adx.get("value"))
            flat.setdefault("plusDI", adx.get("plusDI", adx.get("plus_di", adx.get("pdi"))))
            flat.setdefault("minusDI", adx.get("minusDI", adx.get("minus_di", adx.get("mdi"))))

        levels = flat.pop("supportResistance", None)
        if isinstance(levels, Mapping):
            flat.setdefault("support", levels.get("support"))
            flat.setdefault("resistance", levels.get("resistance"))

        for key in ("macd", "bollinger", "bollingerBands", "bb", "bbands", "aroon"):
            if key in flat and not isinstance(flat[key], Mapping):
                flat.pop(key)

        frames = None
        for key in ("timeframes", "multiTimeframe", "multiTimeframeIndicators", "multi_timeframe"):
            if key in flat:
                frames = flat.pop(key)
                break
        if isinstance(frames, Mapping):
            flat["timeframes"] = {
                str(tf): payload for tf, payload in frames.items() if isinstance(payload, Mapping)
            }

        external: dict[str, Any] = {}
        for key in ("external", "externalData", "external_data"):
            if isinstance(flat.get(key), Mapping):
                external = dict(flat.pop(key))
                break
        for key in ("fundingRate", "funding_rate", "openInterest", "open_interest"):
            if key in flat:
                external.setdefault(key, flat.pop(key))
        flat["external"] = external
        return flat

    def has_any_indicator(self) -> bool:
        """Whether at least one reading that the scoring rules consume is usable."""
        scalars = self.model_dump(exclude=set(_UNSCORED_FIELDS))
        if any(value is not None for value in scalars.values()):
            return True
        nested = (self.macd, self.bollinger, self.aroon)
        return any(reading is not None and reading.has_values() for reading in nested)

    def flat_values(self) -> dict[str, float | str | None]:
        """Flattened readings used to render rule descriptions."""
        values: dict[str, float | str | None] = {
            key: value
            for key, value in self.model_dump(
                exclude={"macd", "bollinger", "aroon", "timeframes", "external"}
            ).items()
        }
        for prefix, reading in (("macd", self.macd), ("bb", self.bollinger), ("aroon", self.aroon)):
            if reading is None:
                continue
            for key, value in reading.model_dump().items():
                values[f"{prefix}_{key}"] = value
        values["funding_rate"] = self.external.funding_rate
        return values


def normalize_snapshot(raw: Mapping[str, Any] | IndicatorSnapshot | None) -> IndicatorSnapshot | None:
    """Validate a raw payload into the canonical snapshot, or None when unusable."""
    if raw is None or isinstance(raw, IndicatorSnapshot):
        return raw
    try:
        return IndicatorSnapshot.model_validate(raw)
    except ValidationError as exc:
        _logger.warning("snapshot_invalid", errors=exc.error_count(), first=exc.errors()[0]["msg"])
        return None


def normalize_trend_alignment(raw: Mapping[str, Any] | TrendAlignment | None) -> TrendAlignment | None:
    if raw is None or isinstance(raw, TrendAlignment):
        return raw
    try:
        return TrendAlignment.model_validate(raw)
    except ValidationError:
        return None


def derive_trend_alignment(snapshot: IndicatorSnapshot) -> TrendAlignment | None:
    """Build a trend summary from the multi-timeframe blocks when none is supplied."""
    trends: dict[str, str] = {}
    for timeframe, frame in snapshot.timeframes.items():
        label = frame.trend or _structure_trend(frame.price, frame.ema20, frame.ema50)
        if label is not None:
            trends[timeframe] = label
    if not trends:
        return None
    daily = trends.get("1d") or trends.get("4h") or next(iter(trends.values()))
    aligned = len(trends) > 1 and len(set(trends.values())) == 1
    agreeing = sum(1 for label in trends.values() if label == daily)
    return TrendAlignment(daily_trend=daily, aligned=aligned, score=agreeing / len(trends))


def _structure_trend(
    price: float | None, ema20: float | None, ema50: float | None
) -> TrendLabel | None:
    if price is None or ema20 is None or ema50 is None:
        return None
    if price > ema20 > ema50:
        return "uptrend"
    if price < ema20 < ema50:
        return "downtrend"
    return "sideways"
