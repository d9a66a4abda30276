"""Unified trading cycle pipeline: score, gate, rank, tick, persist."""

from __future__ import annotations

import threading
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from time import perf_counter
from typing import Any

from signal_cycle.config import Settings
from signal_cycle.data.snapshots import SnapshotFileSource, SnapshotSourceError
from signal_cycle.execution.live import LiveExecutor
from signal_cycle.execution.orders import Executor
from signal_cycle.execution.paper import PaperExecutor
from signal_cycle.execution.venue import VenueClient, VenueError
from signal_cycle.gate.expected_value import classify
from signal_cycle.journal.store import JournalStore
from signal_cycle.quality import evaluate, finalize_signal
from signal_cycle.quality.snapshot import (
    IndicatorSnapshot,
    TrendAlignment,
    derive_trend_alignment,
    normalize_snapshot,
    normalize_trend_alignment,
)
from signal_cycle.risk.rules import AllocationCandidate, RiskEngine
from signal_cycle.state.manager import CycleStateManager
from signal_cycle.state.store import StateStore
from signal_cycle.strategy.proposals import propose_signal
from signal_cycle.types import (
    CycleState,
    ExecutionReport,
    QualityResult,
    ScoredSignal,
    SignalProposal,
)
from signal_cycle.utils.logging import (
    bind_cycle_context,
    clear_cycle_context,
    get_logger,
    log_trade_signal,
)

_ENTRY_ACTIONS = {"buy_to_enter", "sell_to_enter", "add"}
_TREND_KEYS = ("trendAlignment", "trend_alignment", "trend")


@dataclass(slots=True)
class AssetScore:
    asset: str
    proposal: SignalProposal | None
    quality: QualityResult | None
    snapshot: IndicatorSnapshot | None
    trend: TrendAlignment | None


def build_executor(
    settings: Settings,
    *,
    client: VenueClient | None = None,
    dry_run: bool = False,
) -> Executor:
    """PAPER (or any dry run) fills locally; LIVE goes through the venue client."""
    if dry_run or settings.is_paper_mode:
        return PaperExecutor(slippage_bps=settings.paper_slippage_bps)
    return LiveExecutor(settings, client or VenueClient(settings))


def score_asset(
    asset: str,
    raw: Mapping[str, Any],
    settings: Settings,
    risk: RiskEngine,
) -> AssetScore:
    """Normalize, propose and quality-score one asset. Safe to run in a worker."""
    snapshot = normalize_snapshot(raw)
    trend = None
    for key in _TREND_KEYS:
        if isinstance(raw.get(key), Mapping):
            trend = normalize_trend_alignment(raw[key])
            break
    if trend is None and snapshot is not None:
        trend = derive_trend_alignment(snapshot)

    proposal = propose_signal(asset, raw, snapshot, settings, risk=risk)
    if proposal is None:
        return AssetScore(asset, None, None, snapshot, trend)
    quality = evaluate(proposal, snapshot, trend)
    return AssetScore(asset, proposal, quality, snapshot, trend)


def score_signals(
    snapshots: Mapping[str, Mapping[str, Any]],
    settings: Settings,
    *,
    equity: float,
    risk: RiskEngine | None = None,
) -> tuple[list[ScoredSignal], list[AssetScore]]:
    """Score every asset on a bounded pool, allocate capital, gate, and rank."""
    risk = risk or RiskEngine(settings)
    with ThreadPoolExecutor(max_workers=settings.scoring_workers) as pool:
        futures = {
            asset: pool.submit(score_asset, asset, raw, settings, risk)
            for asset, raw in snapshots.items()
        }
        scores = [futures[asset].result() for asset in sorted(futures)]

    proposed = [score for score in scores if score.proposal is not None and score.quality is not None]
    allocations = risk.allocate_capital(
        [
            AllocationCandidate(
                asset=score.asset,
                confidence=score.quality.adjusted_confidence,
                entry_price=score.proposal.entry_price,
                stop_loss=score.proposal.stop_loss,
                take_profit=score.proposal.take_profit,
            )
            for score in proposed
            if score.proposal.action in _ENTRY_ACTIONS
        ],
        equity,
    )

    thresholds = settings.ev_thresholds()
    leverage = settings.default_leverage
    scored: list[ScoredSignal] = []
    for score in proposed:
        capital = allocations.get(score.asset, 0.0)
        gate = classify(
            score.proposal,
            score.quality,
            capital,
            thresholds=thresholds,
            leverage=leverage,
        )
        signal = finalize_signal(score.proposal, score.quality, gate)
        scored.append(
            ScoredSignal(
                signal=signal,
                quality=score.quality,
                gate=gate,
                capital_allocated=capital,
                leverage=leverage,
                rank_score=score.quality.adjusted_confidence * gate.expected_value,
            )
        )
    scored.sort(key=lambda item: item.rank_score, reverse=True)
    return scored, scores


def reconcile_due(state: CycleState, settings: Settings, now: datetime | None = None) -> bool:
    if state.needs_reconciliation or state.last_reconciled_at is None:
        return True
    now = now or datetime.now(timezone.utc)
    last = datetime.fromisoformat(state.last_reconciled_at)
    if last.tzinfo is None:
        last = last.replace(tzinfo=timezone.utc)
    return now - last >= timedelta(minutes=settings.reconcile_interval_min)


def run_trading_cycle(
    settings: Settings,
    dry_run: bool,
    *,
    source: SnapshotFileSource | None = None,
    executor: Executor | None = None,
    venue_client: VenueClient | None = None,
    cancel_event: threading.Event | None = None,
) -> ExecutionReport:
    """Run one full trading cycle."""
    logger = get_logger("signal_cycle.pipeline")
    started = perf_counter()
    journal = JournalStore(settings.journal_dir)
    source = source or SnapshotFileSource(settings.snapshot_file)
    report = ExecutionReport(cycle_id="unknown")
    owned_client: VenueClient | None = None

    journal.append(
        "cycle_start",
        {
            "mode": settings.mode.value,
            "autonomy": settings.autonomy.value,
            "dry_run": dry_run,
            "started_at": datetime.now(timezone.utc).isoformat(),
        },
    )

    try:
        client = venue_client
        if client is None and settings.is_live_mode:
            client = owned_client = VenueClient(settings)
        executor = executor or build_executor(settings, client=client, dry_run=dry_run)
        manager = CycleStateManager(
            settings,
            StateStore(settings.state_file),
            executor,
            cancel_event=cancel_event,
        )
        state = manager.initialize()
        bind_cycle_context(cycle_id=state.cycle_id, mode=settings.mode.value, dry_run=dry_run)

        reconciliation = None
        warnings: list[str] = []
        if client is not None and reconcile_due(state, settings):
            try:
                state, reconciliation = manager.reconcile(state, client.get_account_state())
                journal.append("reconciliation", asdict(reconciliation))
            except VenueError as exc:
                logger.warning("reconciliation_failed", error=str(exc))
                warnings.append(f"reconciliation_failed: {exc}")

        scored, scores = score_signals(
            source.load(),
            settings,
            equity=state.performance.current_equity,
        )
        for item in scored:
            log_trade_signal(
                logger,
                asset=item.signal.asset,
                action=item.signal.action,
                tier=item.gate.tier,
                confidence=item.signal.confidence,
                expected_value=round(item.gate.expected_value, 4),
                severity=item.quality.conflict_severity,
            )

        def _latest_prices() -> dict[str, float]:
            try:
                return source.latest_prices()
            except (SnapshotSourceError, OSError) as exc:
                logger.warning("prices_unavailable", error=str(exc))
                return {}

        state, report = manager.tick(
            state,
            scored,
            prices=_latest_prices,
            snapshots={s.asset: s.snapshot for s in scores if s.snapshot is not None},
            rankings=[item.signal.asset for item in scored if item.gate.tier != "REJECTED"],
            trends={s.asset: s.trend for s in scores if s.trend is not None},
        )
        report.reconciliation = reconciliation
        report.warnings[:0] = warnings

        _journal_report(journal, report)
        if dry_run:
            report.warnings.append("dry_run_state_not_persisted")
        else:
            manager.persist(state)
        return _finish_cycle(report, journal, started, status=_cycle_status(report, scored, dry_run))

    except Exception as exc:  # noqa: BLE001 - top-level guard for loop resilience.
        logger.exception("pipeline_failed", error=str(exc))
        journal.append("error", {"error": str(exc)})
        return _finish_cycle(report, journal, started, status="failed")
    finally:
        if owned_client is not None:
            owned_client.close()
        clear_cycle_context()


def _cycle_status(report: ExecutionReport, scored: list[ScoredSignal], dry_run: bool) -> str:
    if report.status in ("circuit_broken", "awaiting_reconciliation"):
        return report.status
    if report.opened:
        return "opened_dry_run" if dry_run else "opened"
    if report.closed or report.trimmed:
        return "exited"
    if report.failures:
        return "execution_failed"
    if not scored:
        return "no_signal"
    return "no_trade"


def _journal_report(journal: JournalStore, report: ExecutionReport) -> None:
    for row in report.signals_generated:
        journal.append("signal", row)
    for row in report.signals_rejected:
        journal.append("signal_rejected", row)
    for row in report.opened:
        journal.append("order", row)
    for row in [*report.closed, *report.trimmed]:
        journal.append("exit", row)
    for row in report.failures:
        journal.append("execution_failure", row)
    if report.status == "circuit_broken":
        journal.append("circuit_breaker", {"status": "OPEN", "cycle_id": report.cycle_id})


def _finish_cycle(
    report: ExecutionReport,
    journal: JournalStore,
    started: float,
    *,
    status: str,
) -> ExecutionReport:
    elapsed_ms = (perf_counter() - started) * 1000
    report.status = status
    report.elapsed_ms = elapsed_ms
    journal.append("cycle_end", {"status": status, "elapsed_ms": elapsed_ms})
    return report
