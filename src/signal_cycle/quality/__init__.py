"""Signal quality package exports."""

from signal_cycle.quality.engine import evaluate, finalize_signal, unavailable_result
from signal_cycle.quality.snapshot import (
    ExternalData,
    IndicatorSnapshot,
    TrendAlignment,
    normalize_snapshot,
)

__all__ = [
    "ExternalData",
    "IndicatorSnapshot",
    "TrendAlignment",
    "evaluate",
    "finalize_signal",
    "normalize_snapshot",
    "unavailable_result",
]
