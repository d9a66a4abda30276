"""Signal quality engine: weighted votes, contradictions and confidence."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from signal_cycle.quality.contradictions import (
    MAX_CONTRADICTION_SCORE,
    detect_contradictions,
    severity_for,
)
from signal_cycle.quality.rules import REDUNDANT_GROUPS, REGIME_MULTIPLIERS, VOTE_RULES
from signal_cycle.quality.snapshot import (
    ExternalData,
    IndicatorSnapshot,
    TrendAlignment,
    derive_trend_alignment,
    normalize_snapshot,
    normalize_trend_alignment,
)
from signal_cycle.types import (
    Contradiction,
    GateResult,
    QualityResult,
    Severity,
    Signal,
    SignalProposal,
    Vote,
)

SEVERITY_PENALTY: dict[Severity, float] = {
    "critical": 0.30,
    "high": 0.15,
    "medium": 0.05,
    "none": 0.0,
}
REDUNDANCY_PENALTY_SCALE = 0.1

NO_INDICATORS_MESSAGE = "No technical indicators available - signal cannot be validated"


def unavailable_result() -> QualityResult:
    """Worst-case result used whenever no indicator data is usable."""
    return QualityResult(
        bullish_score=0.0,
        bearish_score=0.0,
        unique_bullish_count=0,
        unique_bearish_count=0,
        quality_ratio=0.0,
        redundant_groups=[],
        contradictions=[
            Contradiction(
                check="indicators_unavailable",
                points=MAX_CONTRADICTION_SCORE,
                description=NO_INDICATORS_MESSAGE,
            )
        ],
        conflict_severity="critical",
        base_confidence=0.0,
        adjusted_confidence=0.0,
        contradiction_score=MAX_CONTRADICTION_SCORE,
        warnings=["indicators_unavailable"],
    )


def evaluate(
    proposal: SignalProposal,
    snapshot: IndicatorSnapshot | Mapping[str, Any] | None,
    trend_alignment: TrendAlignment | Mapping[str, Any] | None = None,
    external_data: ExternalData | Mapping[str, Any] | None = None,
) -> QualityResult:
    """Score one proposal against its indicator snapshot."""
    snap = normalize_snapshot(snapshot)
    if snap is None or not snap.has_any_indicator():
        return unavailable_result()
    if external_data is not None:
        snap = _merge_external(snap, external_data)

    trend = normalize_trend_alignment(trend_alignment) or derive_trend_alignment(snap)
    direction = proposal.direction
    multipliers = REGIME_MULTIPLIERS.get(snap.market_regime or "", {})

    votes: list[Vote] = []
    for rule in VOTE_RULES:
        sign = rule.predicate(snap, direction)
        if sign == 0:
            continue
        votes.append(
            Vote(
                rule=rule.name,
                group=rule.group,
                weight=rule.weight * multipliers.get(rule.group, 1.0),
                direction="bullish" if sign > 0 else "bearish",
                description=rule.describe(snap, direction),
            )
        )
    redundant_groups = _collapse_redundant(votes)

    counted = [vote for vote in votes if vote.counted]
    bullish = sum(vote.weight for vote in counted if vote.direction == "bullish")
    bearish = sum(vote.weight for vote in counted if vote.direction == "bearish")
    total = bullish + bearish

    warnings: list[str] = []
    if total > 0:
        quality_ratio = bullish / total
        supporting = bullish if direction > 0 else bearish
        base_confidence = supporting / total
    else:
        quality_ratio = 0.0
        base_confidence = 0.0
        warnings.append("no_directional_votes")

    contradictions, score = detect_contradictions(snap, trend, direction)
    severity = severity_for(score)

    collapsed = len(votes) - len(counted)
    redundancy_penalty = REDUNDANCY_PENALTY_SCALE * collapsed / len(votes) if votes else 0.0
    adjusted = base_confidence * (1 - SEVERITY_PENALTY[severity]) * (1 - redundancy_penalty)

    return QualityResult(
        bullish_score=round(bullish, 6),
        bearish_score=round(bearish, 6),
        unique_bullish_count=sum(1 for vote in counted if vote.direction == "bullish"),
        unique_bearish_count=sum(1 for vote in counted if vote.direction == "bearish"),
        quality_ratio=quality_ratio,
        redundant_groups=redundant_groups,
        contradictions=contradictions,
        conflict_severity=severity,
        base_confidence=base_confidence,
        adjusted_confidence=min(1.0, max(0.0, adjusted)),
        contradiction_score=score,
        raw_bullish_count=sum(1 for vote in votes if vote.direction == "bullish"),
        raw_bearish_count=sum(1 for vote in votes if vote.direction == "bearish"),
        votes=votes,
        warnings=warnings,
    )


def finalize_signal(
    proposal: SignalProposal,
    quality: QualityResult,
    gate: GateResult,
) -> Signal:
    """Freeze a proposal into a Signal whose confidence comes from the engine."""
    warnings = [item.description for item in quality.contradictions]
    warnings.extend(quality.warnings)
    if gate.tier != "AUTO_TRADE":
        warnings.append(f"{gate.tier.lower()}: {gate.reason}")
    return Signal(
        asset=proposal.asset,
        action=proposal.action,
        entry_price=proposal.entry_price,
        stop_loss=proposal.stop_loss,
        take_profit=proposal.take_profit,
        confidence=quality.adjusted_confidence,
        expected_value=gate.expected_value,
        invalidation_condition=proposal.invalidation_condition,
        justification=build_justification(quality),
        warnings=tuple(warnings),
    )


def build_justification(quality: QualityResult) -> str:
    counted = [vote for vote in quality.votes if vote.counted]
    lines = [
        f"[{vote.direction}] {vote.rule} ({vote.weight:.2f}): {vote.description}"
        for vote in counted
    ]
    lines.append(
        f"bullish {quality.bullish_score:.2f} / bearish {quality.bearish_score:.2f}, "
        f"severity {quality.conflict_severity}, "
        f"confidence {quality.base_confidence:.2f} -> {quality.adjusted_confidence:.2f}"
    )
    if quality.redundant_groups:
        lines.append("redundant groups collapsed: " + ", ".join(quality.redundant_groups))
    return "\n".join(lines)


def _collapse_redundant(votes: list[Vote]) -> list[str]:
    """Keep only the heaviest vote per direction inside redundant groups."""
    redundant: list[str] = []
    buckets: dict[tuple[str, str], list[Vote]] = {}
    for vote in votes:
        if vote.group in REDUNDANT_GROUPS:
            buckets.setdefault((vote.group, vote.direction), []).append(vote)
    for (group, _direction), bucket in buckets.items():
        if len(bucket) < 2:
            continue
        heaviest = max(bucket, key=lambda vote: vote.weight)
        for vote in bucket:
            vote.counted = vote is heaviest
        if group not in redundant:
            redundant.append(group)
    return redundant


def _merge_external(
    snapshot: IndicatorSnapshot,
    external_data: ExternalData | Mapping[str, Any],
) -> IndicatorSnapshot:
    extra = (
        external_data
        if isinstance(external_data, ExternalData)
        else ExternalData.model_validate(external_data)
    )
    merged = snapshot.external.model_dump()
    merged.update({key: value for key, value in extra.model_dump().items() if value is not None})
    return snapshot.model_copy(update={"external": ExternalData(**merged)})
