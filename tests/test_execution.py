from __future__ import annotations

import threading

import pytest

from signal_cycle.config import Settings
from signal_cycle.execution.live import LiveExecutor
from signal_cycle.execution.orders import OrderIntent
from signal_cycle.execution.paper import PaperExecutor
from signal_cycle.execution.retry import RetryPolicy, SlippageSchedule
from signal_cycle.execution.venue import (
    OrderAck,
    OrderRejectedError,
    OrderRequest,
    OrderStatusReport,
    VenueAPIError,
)
from signal_cycle.types import Position


class _FakeVenueClient:
    """Scripted venue: each submit pops the next outcome."""

    def __init__(
        self,
        outcomes: list[object],
        *,
        mid: float | None = 100.0,
        statuses: list[OrderStatusReport] | None = None,
    ) -> None:
        self._outcomes = list(outcomes)
        self._statuses = list(statuses or [])
        self.mid = mid
        self.submitted: list[OrderRequest] = []
        self.cancelled: list[str] = []
        self.api_calls = 0
        self.api_errors = 0

    def get_mid_price(self, asset: str) -> float | None:
        self.api_calls += 1
        return self.mid

    def submit_order(self, order: OrderRequest) -> OrderAck:
        self.api_calls += 1
        self.submitted.append(order)
        outcome = self._outcomes.pop(0)
        if isinstance(outcome, Exception):
            self.api_errors += 1
            raise outcome
        return outcome

    def order_status(self, order_id: str) -> OrderStatusReport:
        self.api_calls += 1
        if len(self._statuses) > 1:
            return self._statuses.pop(0)
        if self._statuses:
            return self._statuses[0]
        return OrderStatusReport(order_id=order_id, status="open")

    def cancel_order(self, asset: str, order_id: str) -> bool:
        self.api_calls += 1
        self.cancelled.append(order_id)
        return True


def _settings(**overrides: object) -> Settings:
    fields = {
        "max_retries": 3,
        "max_price_deviation_pct": 1.0,
        "order_fill_timeout_sec": 0.05,
        "fill_poll_interval_sec": 0.001,
    }
    fields.update(overrides)
    return Settings(**fields)


def _buy(quantity: float = 2.0, price: float = 100.0) -> OrderIntent:
    return OrderIntent(asset="BTC", side="BUY", quantity=quantity, price=price)


def test_paper_fill_applies_slippage_against_trader() -> None:
    executor = PaperExecutor(slippage_bps=10)

    buy = executor.execute(_buy())
    sell = executor.execute(OrderIntent(asset="BTC", side="SELL", quantity=1.0, price=100.0))

    assert buy.status == "FILLED"
    assert buy.fill_price == pytest.approx(100.1)
    assert sell.fill_price == pytest.approx(99.9)
    assert buy.order_id.startswith("paper-")
    assert buy.slippage_pct == pytest.approx(0.1)


def test_paper_rejects_invalid_intent() -> None:
    result = PaperExecutor().execute(_buy(quantity=0.0))

    assert not result.filled
    assert result.status == "FAILED"
    assert result.error == "invalid_intent"


def test_exit_intent_is_reduce_only_opposite_side() -> None:
    position = Position(
        asset="ETH",
        side="SHORT",
        quantity=3.0,
        entry_price=2000.0,
        leverage=2.0,
        highest_price=2000.0,
        lowest_price=2000.0,
        entry_time="2026-01-01T00:00:00+00:00",
    )

    intent = OrderIntent.from_exit(position, 1.5, 1950.0, "TAKE_PROFIT")

    assert intent.side == "BUY"
    assert intent.reduce_only
    assert intent.quantity == 1.5
    assert intent.reason == "TAKE_PROFIT"


def test_geometric_schedule_is_capped() -> None:
    schedule = SlippageSchedule(start_pct=1.0, max_pct=8.0, mode="geometric", step=2.0)

    assert list(schedule.tolerances()) == [1.0, 2.0, 4.0, 8.0]


def test_linear_schedule_ends_at_cap() -> None:
    schedule = SlippageSchedule(start_pct=0.5, max_pct=2.0, mode="linear", step=0.7)

    assert list(schedule.tolerances()) == pytest.approx([0.5, 1.2, 1.9, 2.0])


def test_geometric_step_must_grow() -> None:
    with pytest.raises(ValueError):
        list(SlippageSchedule(mode="geometric", step=1.0).tolerances())


def test_retry_policy_retries_only_listed_errors() -> None:
    policy = RetryPolicy(max_attempts=3, backoff_min=0, backoff_max=0, retry_on=(VenueAPIError,))
    calls: list[int] = []

    def _flaky() -> str:
        calls.append(1)
        if len(calls) < 3:
            raise VenueAPIError("http_503")
        return "ok"

    assert policy.call(_flaky) == "ok"
    assert len(calls) == 3

    def _rejected() -> None:
        calls.append(1)
        raise OrderRejectedError("price band")

    calls.clear()
    with pytest.raises(OrderRejectedError):
        policy.call(_rejected)
    assert len(calls) == 1


def test_live_rejection_escalates_slippage_then_fills() -> None:
    client = _FakeVenueClient(
        [
            OrderRejectedError("price too far from oracle"),
            OrderAck(order_id="11", status="filled", filled_size=2.0, avg_price=100.02),
        ]
    )
    executor = LiveExecutor(_settings(), client, schedule=SlippageSchedule(start_pct=0.01, max_pct=8.0))

    result = executor.execute(_buy())

    assert result.status == "FILLED"
    assert result.fill_price == 100.02
    assert result.attempts == 2
    assert result.slippage_pct == pytest.approx(0.02)
    assert [order.price for order in client.submitted] == [100.01, 100.02]
    assert client.submitted[0].time_in_force == "Ioc"
    assert result.api_calls == 4
    assert result.api_errors == 1


def test_live_aborts_when_price_left_the_band() -> None:
    client = _FakeVenueClient([], mid=102.0)

    result = LiveExecutor(_settings(), client).execute(_buy())

    assert result.status == "FAILED"
    assert result.error == "price_moved_beyond_band"
    assert client.submitted == []


def test_reduce_only_ignores_the_band() -> None:
    client = _FakeVenueClient([OrderAck(order_id="5", status="filled", filled_size=1.0, avg_price=89.9)], mid=90.0)
    intent = OrderIntent(asset="BTC", side="SELL", quantity=1.0, price=95.0, reduce_only=True)

    result = LiveExecutor(_settings(), client).execute(intent)

    assert result.status == "FILLED"
    assert client.submitted[0].reduce_only
    assert client.submitted[0].price < 90.0


def test_live_transport_error_is_unknown_outcome() -> None:
    client = _FakeVenueClient([VenueAPIError("read timeout")])

    result = LiveExecutor(_settings(), client).execute(_buy())

    assert result.status == "UNKNOWN_OUTCOME"
    assert not result.filled


def test_live_all_rejected_exhausts_attempts() -> None:
    client = _FakeVenueClient([OrderRejectedError("band")] * 10)

    result = LiveExecutor(_settings(max_retries=2), client).execute(_buy())

    assert result.status == "REJECTED"
    assert result.attempts == 3
    assert len(client.submitted) == 3


def test_resting_order_fills_on_poll() -> None:
    client = _FakeVenueClient(
        [OrderAck(order_id="7", status="resting")],
        statuses=[
            OrderStatusReport(order_id="7", status="open"),
            OrderStatusReport(order_id="7", status="filled", filled_size=2.0, avg_price=100.01),
        ],
    )

    result = LiveExecutor(_settings(), client).execute(_buy())

    assert result.status == "FILLED"
    assert result.order_id == "7"
    assert result.fill_price == 100.01


def test_resting_order_times_out_and_is_cancelled() -> None:
    client = _FakeVenueClient([OrderAck(order_id="8", status="resting")])

    result = LiveExecutor(_settings(retry_on_timeout=False), client).execute(_buy())

    assert result.status == "TIMEOUT"
    assert client.cancelled == ["8"]


def test_partial_fill_reported_after_ioc_remainder_cancelled() -> None:
    client = _FakeVenueClient(
        [OrderAck(order_id="9", status="resting")],
        statuses=[
            OrderStatusReport(order_id="9", status="partial", filled_size=0.5, avg_price=100.0, terminal=True),
        ],
    )

    result = LiveExecutor(_settings(), client).execute(_buy())

    assert result.status == "PARTIAL_FILLED"
    assert result.quantity == 0.5


def test_cancel_event_stops_polling_with_unknown_outcome() -> None:
    client = _FakeVenueClient([OrderAck(order_id="12", status="resting")])
    executor = LiveExecutor(_settings(), client)
    stop = threading.Event()
    original = client.submit_order

    def _submit_then_stop(order: OrderRequest) -> OrderAck:
        ack = original(order)
        stop.set()
        return ack

    client.submit_order = _submit_then_stop
    result = executor.execute(_buy(), stop)

    assert result.status == "UNKNOWN_OUTCOME"
    assert result.error == "fill_poll_cancelled"
    assert result.order_id == "12"

    cancel = threading.Event()
    cancel.set()
    result = executor.execute(_buy(), cancel)
    assert result.error == "cancelled_before_submit"
    assert result.attempts == 0


def test_resting_ack_without_order_id_is_unknown_outcome() -> None:
    client = _FakeVenueClient([OrderAck(order_id=None, status="resting")])

    result = LiveExecutor(_settings(), client).execute(_buy())

    assert result.status == "UNKNOWN_OUTCOME"
    assert result.error == "resting_order_without_id"
    assert result.order_id is None
    assert client.cancelled == []
    assert len(client.submitted) == 1
