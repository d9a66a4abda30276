"""Rule-based signal proposals from a normalized indicator snapshot."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, get_args

from signal_cycle.config import Settings
from signal_cycle.quality.rules import VOTE_RULES
from signal_cycle.quality.snapshot import IndicatorSnapshot
from signal_cycle.risk.rules import RiskEngine
from signal_cycle.types import SignalAction, SignalProposal
from signal_cycle.utils.logging import get_logger

_logger = get_logger("signal_cycle.strategy.proposals")

_VALID_ACTIONS = frozenset(get_args(SignalAction))
_SIGNAL_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "entry_price": ("entry_price", "entryPrice", "entry"),
    "stop_loss": ("stop_loss", "stopLoss", "stop"),
    "take_profit": ("take_profit", "takeProfit", "target"),
    "invalidation_condition": ("invalidation_condition", "invalidationCondition", "invalidation"),
}


def vote_balance(snapshot: IndicatorSnapshot) -> int:
    """Unweighted bullish minus bearish votes, read from the buy side."""
    return sum(rule.predicate(snapshot, 1) for rule in VOTE_RULES)


def propose_signal(
    asset: str,
    raw: Mapping[str, Any] | None,
    snapshot: IndicatorSnapshot | None,
    settings: Settings,
    *,
    risk: RiskEngine | None = None,
) -> SignalProposal | None:
    """Return an entry proposal, or None when the snapshot has no directional lean.

    A ``signal`` block in the raw payload takes precedence over the rules.
    """
    override = raw.get("signal") if raw is not None else None
    if isinstance(override, Mapping):
        return _proposal_from_payload(asset, override)

    if snapshot is None or snapshot.price is None or snapshot.price <= 0:
        return None
    balance = vote_balance(snapshot)
    if balance == 0:
        return None

    direction = 1 if balance > 0 else -1
    engine = risk or RiskEngine(settings)
    entry = snapshot.price
    stop = engine.build_stop_loss(
        entry,
        snapshot.atr,
        settings.stop_loss_atr_multiplier,
        direction=direction,
    )
    if stop <= 0:
        return None
    target = entry + direction * settings.reward_risk_ratio * abs(entry - stop)
    if target <= 0:
        return None
    return SignalProposal(
        asset=asset,
        action="buy_to_enter" if direction > 0 else "sell_to_enter",
        entry_price=entry,
        stop_loss=stop,
        take_profit=target,
        invalidation_condition=f"close {'below' if direction > 0 else 'above'} {stop:.6g}",
    )


def _proposal_from_payload(asset: str, payload: Mapping[str, Any]) -> SignalProposal | None:
    action = str(payload.get("action") or "hold")
    if action not in _VALID_ACTIONS:
        _logger.warning("signal_payload_invalid", asset=asset, error=f"unknown_action: {action}")
        return None
    fields: dict[str, Any] = {}
    for name, aliases in _SIGNAL_FIELD_ALIASES.items():
        for alias in aliases:
            if payload.get(alias) is not None:
                fields[name] = payload[alias]
                break
    try:
        for name in ("entry_price", "stop_loss", "take_profit"):
            if name in fields:
                fields[name] = float(fields[name])
        return SignalProposal(
            asset=asset,
            action=action,  # type: ignore[arg-type]
            **fields,
        )
    except (TypeError, ValueError) as exc:
        _logger.warning("signal_payload_invalid", asset=asset, error=str(exc))
        return None
