"""Cycle state manager: the single writer of CycleState.

Each operation works on a deep copy of the state it is given and returns the
new state, so a failed tick never leaves a half-applied document behind.
"""

from __future__ import annotations

import copy
import threading
import time
import uuid
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime, timezone

from signal_cycle.config import Settings
from signal_cycle.execution.orders import Executor, OrderIntent
from signal_cycle.exits import ExitConfig, ExitContext, evaluate_exits
from signal_cycle.quality.snapshot import IndicatorSnapshot, TrendAlignment
from signal_cycle.risk.rules import RiskEngine
from signal_cycle.state.circuit_breaker import BreakerLimits, CircuitBreaker
from signal_cycle.state.performance import new_performance, record_trade
from signal_cycle.state.store import StateCorruptedError, StateStore
from signal_cycle.types import (
    CircuitBreakerState,
    CycleState,
    ExecutionReport,
    ExecutionResult,
    ExitCondition,
    OrderStatus,
    Position,
    ReconcileDiff,
    ScoredSignal,
    TradeRecord,
    VenueAccountState,
)
from signal_cycle.utils.logging import (
    get_logger,
    log_reconciliation,
    log_risk_event,
    log_trade_signal,
)

MIN_VENUE_POSITION_SIZE = 0.0001
RANKING_HISTORY_LIMIT = 20
_ENTRY_ACTIONS = {"buy_to_enter", "sell_to_enter", "add"}

PriceSource = Callable[[], Mapping[str, float]]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CycleStateManager:
    """Owns every mutation of the trading state: ticks, reconcile, reset."""

    def __init__(
        self,
        settings: Settings,
        store: StateStore,
        executor: Executor,
        breaker: CircuitBreaker | None = None,
        *,
        risk: RiskEngine | None = None,
        exit_config: ExitConfig | None = None,
        clock: Callable[[], datetime] = _utc_now,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._executor = executor
        self._breaker = breaker or CircuitBreaker(BreakerLimits.from_settings(settings))
        self._risk = risk or RiskEngine(settings)
        self._exit_config = exit_config or ExitConfig.from_settings(settings)
        self._clock = clock
        self._cancel_event = cancel_event
        self._logger = get_logger("signal_cycle.state.manager")

    # ---- lifecycle -----------------------------------------------------

    def new_state(self) -> CycleState:
        now = self._clock()
        equity = self._settings.initial_equity
        return CycleState(
            cycle_id=f"cycle-{now:%Y%m%dT%H%M%S}-{uuid.uuid4().hex[:6]}",
            started_at=now.isoformat(),
            status="RUNNING",
            performance=new_performance(equity, now.isoformat()),
            circuit_breaker=CircuitBreakerState(
                daily_date=now.date().isoformat(),
                daily_start_equity=equity,
            ),
        )

    def initialize(self) -> CycleState:
        """Load the persisted state; start fresh when it is missing, empty or corrupt."""
        try:
            state = self._store.load()
        except StateCorruptedError as exc:
            self._logger.error("state_corrupted", path=str(self._store.path), error=str(exc))
            state = None
        if state is None:
            state = self.new_state()
            self._logger.info("state_initialized", cycle_id=state.cycle_id)
        else:
            self._logger.info(
                "state_loaded",
                cycle_id=state.cycle_id,
                positions=len(state.positions),
                status=state.status,
            )
        return state

    def persist(self, state: CycleState) -> None:
        self._store.save(state)

    def reset_circuit_breaker(self, state: CycleState) -> CycleState:
        """Explicitly close the breaker and restart the limits' baselines."""
        new = copy.deepcopy(state)
        previous_reason = new.circuit_breaker.reason
        self._breaker.reset(new.circuit_breaker)
        performance = new.performance
        performance.consecutive_losses = 0
        performance.peak_equity = performance.current_equity
        new.circuit_breaker.daily_start_equity = performance.current_equity
        new.circuit_breaker.daily_pnl = 0.0
        new.status = "RUNNING"
        log_risk_event(
            self._logger,
            event_type="circuit_breaker_reset",
            action="allow_openings",
            previous_reason=previous_reason,
        )
        return new

    # ---- tick ----------------------------------------------------------

    def tick(
        self,
        state: CycleState,
        signals: Sequence[ScoredSignal],
        *,
        prices: PriceSource,
        snapshots: Mapping[str, IndicatorSnapshot] | None = None,
        rankings: Sequence[str] | None = None,
        trends: Mapping[str, TrendAlignment] | None = None,
    ) -> tuple[CycleState, ExecutionReport]:
        """Apply one tick: rankings, openings, exits, then the circuit breaker."""
        started = time.perf_counter()
        new = copy.deepcopy(state)
        new.tick_count += 1
        now = self._clock()
        now_iso = now.isoformat()
        report = ExecutionReport(cycle_id=new.cycle_id)
        self._breaker.roll_day(
            new.circuit_breaker,
            now.date().isoformat(),
            new.performance.current_equity,
        )

        if rankings is not None:
            self._record_rankings(new, rankings, now_iso)

        for scored in signals:
            report.signals_generated.append(_signal_summary(scored))
            quantity, reason = self._opening_check(new, scored)
            if reason is not None:
                report.signals_rejected.append({**_signal_summary(scored), "reason": reason})
                continue
            self._open(new, scored, quantity, report, now_iso)

        latest = prices()
        reversals = {
            scored.signal.asset: scored
            for scored in signals
            if scored.gate.tier != "REJECTED"
        }
        for asset in list(new.positions):
            position = new.positions[asset]
            price = latest.get(asset)
            if price is None:
                report.warnings.append(f"no_price: {asset}")
                continue
            reversal = reversals.get(asset)
            context = ExitContext(
                reversal_signal=reversal.signal if reversal else None,
                reversal_tier=reversal.gate.tier if reversal else None,
                rank_history=list(new.ranking_history.get(asset, [])),
                snapshot=(snapshots or {}).get(asset),
                trend=(trends or {}).get(asset),
            )
            decision = evaluate_exits(position, price, self._exit_config, context, now_iso)
            position.highest_price = decision.marks.highest_price
            position.lowest_price = decision.marks.lowest_price
            position.trailing_stop = decision.marks.trailing_stop
            position.trailing_active = decision.marks.trailing_active
            if decision.governing is not None:
                self._exit(new, position, decision.governing, price, report, now_iso)

        breaker = new.circuit_breaker
        if self._breaker.update(breaker, new.performance, now_iso):
            log_risk_event(
                self._logger,
                event_type="circuit_breaker_tripped",
                action="block_openings",
                reason=breaker.reason,
            )
        if self._breaker.is_open(breaker):
            new.status = "CIRCUIT_BROKEN"
            report.status = "circuit_broken"
        else:
            new.status = "RUNNING"
            report.status = "awaiting_reconciliation" if new.needs_reconciliation else "ok"
        report.elapsed_ms = (time.perf_counter() - started) * 1000
        return new, report

    def _record_rankings(self, state: CycleState, rankings: Sequence[str], now: str) -> None:
        ranks = {asset: index + 1 for index, asset in enumerate(rankings)}
        tracked = set(state.ranking_history) | set(ranks) | set(state.positions)
        for asset in tracked:
            history = state.ranking_history.setdefault(asset, [])
            history.append(ranks.get(asset))
            del history[:-RANKING_HISTORY_LIMIT]
        state.top_assets = list(rankings[: self._settings.top_n])
        state.last_ranking_at = now

    def _opening_check(self, state: CycleState, scored: ScoredSignal) -> tuple[float, str | None]:
        """Return the order quantity, or the reason the signal may not open."""
        signal = scored.signal
        if self._breaker.is_open(state.circuit_breaker):
            return 0.0, "circuit_breaker_open"
        if state.needs_reconciliation:
            return 0.0, "awaiting_reconciliation"
        if signal.action not in _ENTRY_ACTIONS:
            return 0.0, "non_entry_action"
        if self._settings.autonomy.value == "manual":
            return 0.0, "autonomy_manual"
        if scored.gate.tier != "AUTO_TRADE":
            return 0.0, f"tier_{scored.gate.tier.lower()}"
        if signal.asset in state.positions:
            return 0.0, "position_exists"
        if len(state.positions) >= self._settings.max_open_positions:
            return 0.0, "max_open_positions"
        if self._settings.is_live_mode and signal.confidence < self._settings.live_min_confidence:
            return 0.0, "below_live_confidence_floor"
        if signal.entry_price is None:
            return 0.0, "missing_prices"

        equity = state.performance.current_equity
        quantity = self._risk.position_quantity(
            capital=scored.capital_allocated,
            leverage=scored.leverage,
            entry=signal.entry_price,
            stop=signal.stop_loss,
            equity=equity,
        )
        check = self._risk.check_entry(
            open_positions=len(state.positions),
            quantity=quantity,
            entry=signal.entry_price,
            stop=signal.stop_loss,
            equity=equity,
        )
        if not check.allowed:
            return 0.0, check.reasons[0]
        return quantity, None

    def _open(
        self,
        state: CycleState,
        scored: ScoredSignal,
        quantity: float,
        report: ExecutionReport,
        now: str,
    ) -> None:
        signal = scored.signal
        result = self._execute(state, OrderIntent.from_signal(signal, quantity))
        if not result.filled or result.fill_price is None:
            report.failures.append(_failure(signal.asset, "open", result))
            return
        fill = result.fill_price
        state.positions[signal.asset] = Position(
            asset=signal.asset,
            side="LONG" if signal.direction > 0 else "SHORT",
            quantity=result.quantity,
            entry_price=fill,
            leverage=scored.leverage,
            highest_price=fill,
            lowest_price=fill,
            entry_time=now,
            stop_loss=signal.stop_loss,
            take_profit=signal.take_profit,
        )
        log_trade_signal(
            self._logger,
            asset=signal.asset,
            action=signal.action,
            tier=scored.gate.tier,
            confidence=signal.confidence,
            expected_value=round(signal.expected_value, 4),
            quantity=result.quantity,
            fill_price=fill,
        )
        report.opened.append(
            {
                "asset": signal.asset,
                "side": "LONG" if signal.direction > 0 else "SHORT",
                "quantity": result.quantity,
                "price": fill,
                "order_id": result.order_id,
                "status": result.status,
            }
        )

    def _exit(
        self,
        state: CycleState,
        position: Position,
        condition: ExitCondition,
        price: float,
        report: ExecutionReport,
        now: str,
    ) -> None:
        full = condition.exit_size >= 100.0
        quantity = position.quantity if full else position.quantity * condition.exit_size / 100.0
        reference = condition.exit_price if condition.exit_price is not None else price
        intent = OrderIntent.from_exit(position, quantity, reference, condition.reason)
        result = self._execute(state, intent)
        if not result.filled or result.fill_price is None:
            report.failures.append(_failure(position.asset, "exit", result, reason=condition.reason))
            return

        closed_qty = min(result.quantity, position.quantity)
        sign = 1 if position.side == "LONG" else -1
        pnl = (result.fill_price - position.entry_price) * closed_qty * sign
        margin = position.entry_price * closed_qty / max(position.leverage, 1.0)
        risk_per_unit = abs(position.entry_price - position.stop_loss) if position.stop_loss else 0.0
        trade = TradeRecord(
            asset=position.asset,
            side=position.side,
            quantity=closed_qty,
            entry_price=position.entry_price,
            exit_price=result.fill_price,
            pnl=pnl,
            pnl_pct=pnl / margin * 100 if margin > 0 else 0.0,
            reason=condition.reason,
            opened_at=position.entry_time,
            closed_at=now,
            r_multiple=(
                (result.fill_price - position.entry_price) * sign / risk_per_unit
                if risk_per_unit > 0
                else None
            ),
        )
        state.trade_history.append(trade)
        record_trade(state.performance, trade)
        self._breaker.record_pnl(state.circuit_breaker, pnl)

        entry = {
            "asset": position.asset,
            "side": position.side,
            "quantity": closed_qty,
            "price": result.fill_price,
            "pnl": pnl,
            "reason": condition.reason,
            "description": condition.description,
        }
        remaining = position.quantity - closed_qty
        if remaining <= position.quantity * 1e-9 or remaining < MIN_VENUE_POSITION_SIZE:
            del state.positions[position.asset]
            report.closed.append(entry)
            return

        position.quantity = remaining
        if condition.reason == "TAKE_PROFIT" and "levels_hit" in condition.metadata:
            position.take_profit_hits.extend(condition.metadata["levels_hit"])
            position.take_profit_closed_pct = float(condition.metadata["cumulative_pct"])
            if condition.metadata.get("move_stop_to_breakeven"):
                position.stop_loss = position.entry_price
        report.trimmed.append({**entry, "remaining": remaining})

    def _execute(self, state: CycleState, intent: OrderIntent) -> ExecutionResult:
        try:
            result = self._executor.execute(intent, self._cancel_event)
        except Exception as exc:  # noqa: BLE001 - one asset must not abort the tick.
            self._logger.exception("execution_crashed", asset=intent.asset, error=str(exc))
            # A live order may have been sent before the crash.
            status: OrderStatus = "UNKNOWN_OUTCOME" if self._settings.is_live_mode else "FAILED"
            result = ExecutionResult(filled=False, status=status, error=f"execution_crashed: {exc}")
        self._breaker.record_api_calls(state.circuit_breaker, result.api_calls, result.api_errors)
        if result.status == "UNKNOWN_OUTCOME":
            state.needs_reconciliation = True
            log_risk_event(
                self._logger,
                event_type="unknown_order_outcome",
                action="require_reconciliation",
                asset=intent.asset,
                order_id=result.order_id,
            )
        return result

    # ---- reconcile -----------------------------------------------------

    def reconcile(
        self,
        state: CycleState,
        venue_state: VenueAccountState,
    ) -> tuple[CycleState, ReconcileDiff]:
        """Make local positions match the venue's. Idempotent."""
        new = copy.deepcopy(state)
        now = self._clock().isoformat()
        diff = ReconcileDiff()
        tolerance = self._settings.position_qty_tolerance
        venue = {
            item.asset: item
            for item in venue_state.positions
            if abs(item.quantity) >= MIN_VENUE_POSITION_SIZE
        }

        for asset in list(new.positions):
            if asset not in venue:
                del new.positions[asset]
                diff.positions_closed += 1
                diff.closed_assets.append(asset)

        for asset, remote in venue.items():
            local = new.positions.get(asset)
            if local is None or local.side != remote.side:
                new.positions[asset] = Position(
                    asset=asset,
                    side=remote.side,
                    quantity=abs(remote.quantity),
                    entry_price=remote.entry_price,
                    leverage=remote.leverage,
                    highest_price=remote.entry_price,
                    lowest_price=remote.entry_price,
                    entry_time=now,
                )
                diff.positions_updated += 1
                diff.updated_assets.append(asset)
                continue
            changed = False
            if abs(local.quantity - abs(remote.quantity)) > tolerance:
                local.quantity = abs(remote.quantity)
                changed = True
            if remote.entry_price > 0 and abs(local.entry_price - remote.entry_price) > remote.entry_price * 1e-9:
                local.entry_price = remote.entry_price
                changed = True
            if changed:
                diff.positions_updated += 1
                diff.updated_assets.append(asset)

        new.needs_reconciliation = False
        new.last_reconciled_at = now
        log_reconciliation(
            self._logger,
            positions_updated=diff.positions_updated,
            positions_closed=diff.positions_closed,
            updated_assets=diff.updated_assets,
            closed_assets=diff.closed_assets,
            account_value=venue_state.account_value,
        )
        return new, diff


def _signal_summary(scored: ScoredSignal) -> dict[str, object]:
    return {
        "asset": scored.signal.asset,
        "action": scored.signal.action,
        "confidence": round(scored.signal.confidence, 4),
        "expected_value": round(scored.gate.expected_value, 4),
        "tier": scored.gate.tier,
        "severity": scored.quality.conflict_severity,
    }


def _failure(asset: str, action: str, result: ExecutionResult, **extra: object) -> dict[str, object]:
    return {
        "asset": asset,
        "action": action,
        "status": result.status,
        "error": result.error,
        "attempts": result.attempts,
        **extra,
    }

