from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from signal_cycle.config import Settings
from signal_cycle.execution.paper import PaperExecutor
from signal_cycle.execution.venue import VenueAPIError
from signal_cycle.journal.store import JournalStore
from signal_cycle.pipeline import reconcile_due, run_trading_cycle, score_signals
from signal_cycle.state.manager import CycleStateManager
from signal_cycle.state.store import StateStore
from signal_cycle.types import VenueAccountState, VenuePosition

_BTC = {
    "price": 110.0,
    "ema8": 108.0,
    "ema20": 105.0,
    "ema50": 100.0,
    "vwap": 104.0,
    "macd": {"macd": 2.0, "signal": 1.0, "histogram": 1.0},
    "adx": {"adx": 30.0, "plusDI": 30.0, "minusDI": 10.0},
    "atr": 2.0,
}


def _settings(tmp_path: Path, **overrides: object) -> Settings:
    fields = {
        "journal_dir": tmp_path / "journal",
        "state_file": tmp_path / "state" / "cycle_state.json",
        "snapshot_file": tmp_path / "snapshots.json",
        "autonomy": "autonomous",
    }
    fields.update(overrides)
    return Settings(**fields)


def _write_snapshots(settings: Settings, snapshots: dict) -> None:
    settings.snapshot_file.write_text(json.dumps(snapshots), encoding="utf-8")


class _FakeVenueClient:
    def __init__(self, account: VenueAccountState | None = None) -> None:
        self._account = account
        self.api_calls = 0
        self.api_errors = 0

    def get_account_state(self) -> VenueAccountState:
        if self._account is None:
            raise VenueAPIError("http_503")
        return self._account


def test_score_signals_gates_and_ranks(tmp_path: Path) -> None:
    settings = _settings(tmp_path)

    scored, scores = score_signals({"BTC": _BTC, "FLAT": {"price": 5.0}}, settings, equity=10_000)

    assert [score.asset for score in scores] == ["BTC", "FLAT"]
    assert len(scored) == 1
    item = scored[0]
    assert item.signal.stop_loss == 106.0
    assert item.signal.take_profit == 118.0
    assert item.signal.confidence == pytest.approx(0.975)
    assert item.capital_allocated == pytest.approx(2000.0)
    assert item.gate.tier == "AUTO_TRADE"
    assert item.rank_score == pytest.approx(item.signal.confidence * item.gate.expected_value)


def test_dry_run_opens_on_paper_without_persisting(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    _write_snapshots(settings, {"BTC": _BTC})

    report = run_trading_cycle(settings, dry_run=True)

    assert report.status == "opened_dry_run"
    assert report.opened[0]["asset"] == "BTC"
    assert report.opened[0]["quantity"] == pytest.approx(25.0)
    assert "dry_run_state_not_persisted" in report.warnings
    assert not settings.state_file.exists()

    events = [row["event_type"] for row in JournalStore(settings.journal_dir).load_recent(50)]
    assert events[0] == "cycle_start"
    assert "signal" in events
    assert "order" in events
    assert events[-1] == "cycle_end"


def test_persisted_cycle_blocks_duplicate_entry(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    _write_snapshots(settings, {"BTC": _BTC})

    first = run_trading_cycle(settings, dry_run=False)
    second = run_trading_cycle(settings, dry_run=False)

    assert first.status == "opened"
    state = StateStore(settings.state_file).load()
    assert state is not None
    assert state.positions["BTC"].quantity == pytest.approx(25.0)
    assert state.tick_count == 2
    assert second.status == "no_trade"
    assert second.signals_rejected[0]["reason"] == "position_exists"


def test_semi_autonomous_thresholds_keep_weak_signal_display_only(tmp_path: Path) -> None:
    settings = _settings(tmp_path, autonomy="semi_autonomous", ev_auto_trade_semi_autonomous=10_000.0)
    _write_snapshots(settings, {"BTC": _BTC})

    report = run_trading_cycle(settings, dry_run=True)

    assert report.status == "no_trade"
    assert report.signals_rejected[0]["reason"] == "tier_display_only"


def test_missing_snapshot_file_is_no_signal(tmp_path: Path) -> None:
    report = run_trading_cycle(_settings(tmp_path), dry_run=True)

    assert report.status == "no_signal"


def test_corrupt_snapshot_file_fails_cycle(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    settings.snapshot_file.write_text("[1, 2]", encoding="utf-8")

    report = run_trading_cycle(settings, dry_run=True)

    assert report.status == "failed"
    errors = JournalStore(settings.journal_dir).load_recent(10, event_type="error")
    assert errors and "snapshot_document_not_object" in errors[-1]["payload"]["error"]


def test_live_cycle_reconciles_before_trading(tmp_path: Path) -> None:
    settings = _settings(tmp_path, mode="live")
    _write_snapshots(settings, {"BTC": _BTC})
    venue = _FakeVenueClient(
        VenueAccountState(
            account_value=10_000.0,
            total_margin_used=100.0,
            withdrawable=9_900.0,
            positions=[VenuePosition("ETH", "LONG", 1.0, 2000.0)],
        )
    )

    report = run_trading_cycle(settings, dry_run=False, executor=PaperExecutor(), venue_client=venue)

    assert report.reconciliation is not None
    assert report.reconciliation.updated_assets == ["ETH"]
    assert report.status == "opened"
    assert "no_price: ETH" in report.warnings
    state = StateStore(settings.state_file).load()
    assert set(state.positions) == {"BTC", "ETH"}
    assert state.last_reconciled_at is not None


def test_reconciliation_failure_is_a_warning(tmp_path: Path) -> None:
    settings = _settings(tmp_path, mode="live")
    _write_snapshots(settings, {"BTC": _BTC})

    report = run_trading_cycle(
        settings, dry_run=False, executor=PaperExecutor(), venue_client=_FakeVenueClient()
    )

    assert report.warnings[0] == "reconciliation_failed: http_503"
    assert report.reconciliation is None


def test_reconcile_due(tmp_path: Path) -> None:
    settings = _settings(tmp_path, reconcile_interval_min=15)
    now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
    state = CycleStateManager(settings, StateStore(settings.state_file), PaperExecutor()).new_state()
    assert reconcile_due(state, settings, now)

    state.last_reconciled_at = (now - timedelta(minutes=5)).isoformat()
    assert not reconcile_due(state, settings, now)

    state.last_reconciled_at = (now - timedelta(minutes=20)).isoformat()
    assert reconcile_due(state, settings, now)

    state.last_reconciled_at = now.isoformat()
    state.needs_reconciliation = True
    assert reconcile_due(state, settings, now)
