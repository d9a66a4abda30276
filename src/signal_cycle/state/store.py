"""Durable JSON store for the cycle state with atomic replace-on-write."""

from __future__ import annotations

import json
import os
import tempfile
from dataclasses import asdict
from pathlib import Path
from typing import Any

from signal_cycle.types import (
    CircuitBreakerState,
    CycleState,
    EquityPoint,
    PerformanceStats,
    Position,
    TradeRecord,
)
from signal_cycle.utils.logging import get_logger

STATE_VERSION = 1
_STATUSES = {"RUNNING", "STOPPED", "CIRCUIT_BROKEN"}


class StateCorruptedError(Exception):
    """Raised when a persisted state document cannot be decoded completely."""


class StateStore:
    """Owns the state file. Created at process start, closed with the process."""

    def __init__(self, state_file: Path) -> None:
        self._state_file = state_file
        self._logger = get_logger("signal_cycle.state.store")

    @property
    def path(self) -> Path:
        return self._state_file

    def load(self) -> CycleState | None:
        """Return the stored state, or None when the file is missing or empty.

        Raises StateCorruptedError when the file exists but cannot be decoded.
        """
        if not self._state_file.exists():
            return None
        text = self._state_file.read_text(encoding="utf-8")
        if not text.strip():
            return None
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise StateCorruptedError(f"invalid_json: {exc}") from exc
        return state_from_dict(payload)

    def save(self, state: CycleState) -> None:
        """Write to a temp file in the same directory, fsync, then rename over."""
        self._state_file.parent.mkdir(parents=True, exist_ok=True)
        serialized = json.dumps(state_to_dict(state), ensure_ascii=True, indent=2)
        fd, temp_path = tempfile.mkstemp(
            dir=self._state_file.parent,
            prefix=".state_",
            suffix=".json.tmp",
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(serialized)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, self._state_file)
        except BaseException:
            Path(temp_path).unlink(missing_ok=True)
            raise
        self._logger.debug(
            "state_saved",
            path=str(self._state_file),
            positions=len(state.positions),
            tick=state.tick_count,
        )


def state_to_dict(state: CycleState) -> dict[str, Any]:
    payload = asdict(state)
    payload["version"] = STATE_VERSION
    return payload


def state_from_dict(payload: Any) -> CycleState:
    """Strict decoder: any missing or malformed field is corruption."""
    if not isinstance(payload, dict):
        raise StateCorruptedError("state_document_not_object")
    if payload.get("status") not in _STATUSES:
        raise StateCorruptedError(f"invalid_status: {payload.get('status')!r}")
    try:
        performance_raw = dict(payload["performance"])
        curve = [EquityPoint(**point) for point in performance_raw.pop("equity_curve")]
        performance = PerformanceStats(**performance_raw, equity_curve=curve)
        positions = {
            str(asset): Position(**raw) for asset, raw in dict(payload["positions"]).items()
        }
        for asset, position in positions.items():
            if position.asset != asset:
                raise StateCorruptedError(f"position_key_mismatch: {asset}")
        return CycleState(
            cycle_id=str(payload["cycle_id"]),
            started_at=str(payload["started_at"]),
            status=payload["status"],
            performance=performance,
            positions=positions,
            trade_history=[TradeRecord(**raw) for raw in payload["trade_history"]],
            circuit_breaker=CircuitBreakerState(**payload["circuit_breaker"]),
            last_ranking_at=payload["last_ranking_at"],
            top_assets=list(payload["top_assets"]),
            ranking_history={
                str(asset): list(ranks) for asset, ranks in dict(payload["ranking_history"]).items()
            },
            needs_reconciliation=bool(payload["needs_reconciliation"]),
            last_reconciled_at=payload["last_reconciled_at"],
            tick_count=int(payload["tick_count"]),
        )
    except StateCorruptedError:
        raise
    except (KeyError, TypeError, ValueError) as exc:
        raise StateCorruptedError(f"invalid_state_field: {exc}") from exc
