"""File-backed source of per-asset indicator snapshots and latest prices."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from signal_cycle.quality.snapshot import normalize_snapshot
from signal_cycle.utils.logging import get_logger


class SnapshotSourceError(Exception):
    """Raised when the snapshot file exists but is not a JSON object."""


class SnapshotFileSource:
    """Reads ``{asset: snapshot}`` from a JSON file on every call."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._logger = get_logger("signal_cycle.data.snapshots")

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> dict[str, dict[str, Any]]:
        """Return raw snapshots keyed by asset; an absent file yields no assets."""
        if not self._path.exists():
            self._logger.warning("snapshot_file_missing", path=str(self._path))
            return {}
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise SnapshotSourceError(f"invalid_json: {exc}") from exc
        if not isinstance(payload, dict):
            raise SnapshotSourceError("snapshot_document_not_object")

        snapshots: dict[str, dict[str, Any]] = {}
        for asset, raw in payload.items():
            if not isinstance(raw, dict):
                self._logger.warning("snapshot_skipped", asset=asset, reason="not_object")
                continue
            snapshots[str(asset)] = {"asset": str(asset), **raw}
        return snapshots

    def latest_prices(self) -> dict[str, float]:
        """Re-read the file and return each asset's usable price."""
        prices: dict[str, float] = {}
        for asset, raw in self.load().items():
            snapshot = normalize_snapshot(raw)
            if snapshot is not None and snapshot.price is not None and snapshot.price > 0:
                prices[asset] = snapshot.price
        return prices
