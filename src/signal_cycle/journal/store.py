"""JSONL audit journal for cycle events."""

from __future__ import annotations

import json
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any

_ALLOWED_EVENT_TYPES = {
    "cycle_start",
    "signal",
    "signal_rejected",
    "order",
    "exit",
    "execution_failure",
    "reconciliation",
    "circuit_breaker",
    "cycle_end",
    "error",
}


class JournalStore:
    """Append-only JSONL event store, one file per UTC day."""

    def __init__(self, journal_dir: Path) -> None:
        self._journal_dir = journal_dir
        self._journal_dir.mkdir(parents=True, exist_ok=True)

    def append(self, event_type: str, payload: dict[str, Any]) -> None:
        """Append one event line to the daily JSONL file."""
        if event_type not in _ALLOWED_EVENT_TYPES:
            raise ValueError(f"unsupported_event_type: {event_type}")
        now = datetime.now(timezone.utc)
        record = {
            "timestamp": now.isoformat(),
            "event_type": event_type,
            "payload": payload,
        }
        with self._file_path_for_day(now.date()).open("a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=True, default=str) + "\n")

    def load_recent(self, limit: int, event_type: str | None = None) -> list[dict[str, Any]]:
        """Load the most recent events, oldest first, optionally of one type."""
        if limit <= 0:
            return []

        rows: list[dict[str, Any]] = []
        for file in sorted(self._journal_dir.glob("*.jsonl"), reverse=True):
            for line in reversed(file.read_text(encoding="utf-8").splitlines()):
                if not line.strip():
                    continue
                row = json.loads(line)
                if event_type is not None and row.get("event_type") != event_type:
                    continue
                rows.append(row)
                if len(rows) >= limit:
                    return list(reversed(rows))
        return list(reversed(rows))

    def _file_path_for_day(self, day: date) -> Path:
        return self._journal_dir / f"{day.isoformat()}.jsonl"
