"""Live executor: priced IOC orders with slippage escalation and fill polling."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass

from signal_cycle.config import Settings
from signal_cycle.execution.orders import OrderIntent
from signal_cycle.execution.retry import SlippageSchedule
from signal_cycle.execution.venue import (
    OrderRejectedError,
    OrderRequest,
    VenueAPIError,
    VenueClient,
    VenueError,
)
from signal_cycle.types import ExecutionResult, OrderStatus
from signal_cycle.utils.logging import get_logger, log_order_execution

_PRICE_DECIMALS = 6


@dataclass(slots=True)
class _FillOutcome:
    status: OrderStatus
    filled_size: float = 0.0
    price: float | None = None
    error: str | None = None


class LiveExecutor:
    """Submit orders to the venue until filled, rejected past the cap, or out of attempts."""

    def __init__(
        self,
        settings: Settings,
        client: VenueClient,
        *,
        schedule: SlippageSchedule | None = None,
    ) -> None:
        self._settings = settings
        self._client = client
        self._schedule = schedule or SlippageSchedule.from_settings(settings)
        self._logger = get_logger("signal_cycle.execution.live")

    def execute(
        self,
        intent: OrderIntent,
        cancel_event: threading.Event | None = None,
    ) -> ExecutionResult:
        calls_before = self._client.api_calls
        errors_before = self._client.api_errors
        result = self._execute(intent, cancel_event or threading.Event())
        result.api_calls = self._client.api_calls - calls_before
        result.api_errors = self._client.api_errors - errors_before
        log_order_execution(
            self._logger,
            asset=intent.asset,
            side=intent.side,
            quantity=result.quantity,
            price=result.fill_price,
            order_id=result.order_id,
            status=result.status,
            mode="live",
            attempts=result.attempts,
            slippage_pct=result.slippage_pct,
            error=result.error,
        )
        return result

    def _execute(self, intent: OrderIntent, cancel: threading.Event) -> ExecutionResult:
        if intent.quantity <= 0:
            return ExecutionResult(filled=False, status="FAILED", error="invalid_quantity")

        max_attempts = self._settings.max_retries + 1
        attempts = 0
        tolerance = 0.0
        last_status: OrderStatus = "FAILED"
        last_error: str | None = None

        for tolerance in self._schedule.tolerances():
            if attempts >= max_attempts:
                break
            if cancel.is_set():
                last_error = "cancelled_before_submit"
                break
            attempts += 1

            try:
                mid = self._client.get_mid_price(intent.asset)
            except VenueError as exc:
                return self._failed("FAILED", f"mid_price_error: {exc}", attempts, tolerance)
            if mid is None or mid <= 0:
                return self._failed("FAILED", "mid_price_unavailable", attempts, tolerance)
            if not intent.reduce_only and intent.price > 0:
                deviation_pct = abs(mid - intent.price) / intent.price * 100
                if deviation_pct > self._settings.max_price_deviation_pct:
                    return self._failed("FAILED", "price_moved_beyond_band", attempts, tolerance)

            factor = 1.0 + tolerance / 100.0 if intent.is_buy else 1.0 - tolerance / 100.0
            order = OrderRequest(
                asset=intent.asset,
                is_buy=intent.is_buy,
                size=intent.quantity,
                price=round(mid * factor, _PRICE_DECIMALS),
                reduce_only=intent.reduce_only,
                time_in_force="Ioc",
            )

            try:
                ack = self._client.submit_order(order)
            except OrderRejectedError as exc:
                last_status, last_error = "REJECTED", str(exc)
                self._logger.info(
                    "order_rejected_escalating",
                    asset=intent.asset,
                    attempt=attempts,
                    slippage_pct=tolerance,
                    error=last_error,
                )
                continue
            except VenueAPIError as exc:
                # The submission may have reached the venue.
                return self._failed("UNKNOWN_OUTCOME", str(exc), attempts, tolerance)
            except VenueError as exc:
                return self._failed("FAILED", str(exc), attempts, tolerance)

            if ack.status == "filled":
                return self._filled(
                    intent,
                    ack.filled_size or intent.quantity,
                    ack.avg_price or order.price,
                    ack.order_id,
                    attempts,
                    tolerance,
                )

            if ack.order_id is None:
                # Resting somewhere on the book with no id to poll or cancel.
                return self._failed("UNKNOWN_OUTCOME", "resting_order_without_id", attempts, tolerance)
            order_id = ack.order_id
            outcome = self._await_fill(order_id, cancel)
            if outcome.status in ("FILLED", "PARTIAL_FILLED"):
                return self._filled(
                    intent,
                    outcome.filled_size or intent.quantity,
                    outcome.price or order.price,
                    order_id,
                    attempts,
                    tolerance,
                )
            if outcome.status == "UNKNOWN_OUTCOME":
                result = self._failed("UNKNOWN_OUTCOME", outcome.error, attempts, tolerance)
                result.order_id = order_id
                return result
            if outcome.status == "REJECTED":
                last_status, last_error = "REJECTED", outcome.error
                continue

            # Timed out while resting.
            try:
                self._client.cancel_order(intent.asset, order_id)
            except VenueError as exc:
                result = self._failed("UNKNOWN_OUTCOME", f"cancel_failed: {exc}", attempts, tolerance)
                result.order_id = order_id
                return result
            last_status, last_error = "TIMEOUT", "order_fill_timeout"
            if outcome.filled_size > 0:
                return self._filled(
                    intent,
                    outcome.filled_size,
                    outcome.price or order.price,
                    order_id,
                    attempts,
                    tolerance,
                )
            if not self._settings.retry_on_timeout:
                break

        return self._failed(last_status, last_error or "slippage_schedule_exhausted", attempts, tolerance)

    def _await_fill(self, order_id: str, cancel: threading.Event) -> _FillOutcome:
        """Poll until the order settles, the deadline passes, or ``cancel`` is set."""
        deadline = time.monotonic() + self._settings.order_fill_timeout_sec
        filled_size = 0.0
        price: float | None = None
        while True:
            if cancel.wait(self._settings.fill_poll_interval_sec):
                return _FillOutcome("UNKNOWN_OUTCOME", filled_size, price, "fill_poll_cancelled")
            try:
                report = self._client.order_status(order_id)
            except VenueError as exc:
                self._logger.warning("order_status_failed", order_id=order_id, error=str(exc))
                report = None
            if report is not None:
                filled_size = report.filled_size
                price = report.avg_price
                if report.status == "filled":
                    return _FillOutcome("FILLED", filled_size, price)
                if report.status == "rejected":
                    return _FillOutcome("REJECTED", 0.0, None, "order_rejected")
                if report.status == "canceled":
                    return _FillOutcome("REJECTED", 0.0, None, "order_canceled_unfilled")
                if report.status == "partial" and report.terminal:
                    # IOC remainder cancelled by the venue.
                    return _FillOutcome("PARTIAL_FILLED", filled_size, price)
            if time.monotonic() >= deadline:
                return _FillOutcome("TIMEOUT", filled_size, price)

    def _filled(
        self,
        intent: OrderIntent,
        quantity: float,
        price: float,
        order_id: str | None,
        attempts: int,
        tolerance: float,
    ) -> ExecutionResult:
        status: OrderStatus = "FILLED" if quantity >= intent.quantity * (1 - 1e-9) else "PARTIAL_FILLED"
        return ExecutionResult(
            filled=True,
            status=status,
            fill_price=float(price),
            quantity=float(min(quantity, intent.quantity)),
            order_id=order_id,
            attempts=attempts,
            slippage_pct=tolerance,
        )

    @staticmethod
    def _failed(
        status: OrderStatus,
        error: str | None,
        attempts: int,
        tolerance: float,
    ) -> ExecutionResult:
        return ExecutionResult(
            filled=False,
            status=status,
            error=error,
            attempts=attempts,
            slippage_pct=tolerance,
        )
