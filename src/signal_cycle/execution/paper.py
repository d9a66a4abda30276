"""Paper trading executor: immediate fills with configured slippage, no network."""

from __future__ import annotations

import threading
import uuid

from signal_cycle.execution.orders import OrderIntent
from signal_cycle.types import ExecutionResult
from signal_cycle.utils.logging import get_logger, log_order_execution


class PaperExecutor:
    """Simulated execution used identically to the live adapter."""

    def __init__(self, *, slippage_bps: float = 0.0) -> None:
        self._slippage_bps = slippage_bps
        self._logger = get_logger("signal_cycle.execution.paper")

    def execute(
        self,
        intent: OrderIntent,
        cancel_event: threading.Event | None = None,
    ) -> ExecutionResult:
        """Fill at the requested price moved against the trader by the slippage."""
        if intent.quantity <= 0 or intent.price <= 0:
            return ExecutionResult(
                filled=False,
                status="FAILED",
                quantity=0.0,
                error="invalid_intent",
                attempts=1,
            )
        slip = self._slippage_bps / 10_000.0
        fill_price = intent.price * (1.0 + slip if intent.is_buy else 1.0 - slip)
        result = ExecutionResult(
            filled=True,
            status="FILLED",
            fill_price=float(fill_price),
            quantity=float(intent.quantity),
            order_id=f"paper-{uuid.uuid4().hex[:12]}",
            attempts=1,
            slippage_pct=self._slippage_bps / 100.0,
        )
        log_order_execution(
            self._logger,
            asset=intent.asset,
            side=intent.side,
            quantity=result.quantity,
            price=result.fill_price,
            order_id=result.order_id,
            status=result.status,
            mode="paper",
            reason=intent.reason,
        )
        return result
