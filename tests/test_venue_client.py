from __future__ import annotations

import json

import httpx
import pytest

from signal_cycle.config import Settings
from signal_cycle.execution.retry import RetryPolicy
from signal_cycle.execution.venue import (
    OrderRejectedError,
    OrderRequest,
    VenueAPIError,
    VenueClient,
    VenueError,
    parse_account_state,
    parse_order_ack,
    parse_order_status,
)

_META = {"universe": [{"name": "BTC"}, {"name": "ETH"}]}


def _client(handler: object, *, signer: object | None = None) -> VenueClient:
    http = httpx.Client(base_url="https://venue.test", transport=httpx.MockTransport(handler))
    return VenueClient(
        Settings(venue_account_address="0xabc"),
        http_client=http,
        signer=signer,
        retry_policy=RetryPolicy(max_attempts=3, backoff_min=0, backoff_max=0, retry_on=(VenueAPIError,)),
    )


def test_account_state_parses_positions() -> None:
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(
            200,
            json={
                "marginSummary": {"accountValue": "10500.5", "totalMarginUsed": "1200"},
                "withdrawable": "9300.5",
                "assetPositions": [
                    {"position": {"coin": "BTC", "szi": "0.5", "entryPx": "60000", "leverage": {"value": 5}}},
                    {"position": {"coin": "ETH", "szi": "-2", "entryPx": "3000", "unrealizedPnl": "-12.5"}},
                    {"position": {"coin": "DOGE", "szi": "0.00001", "entryPx": "0.1"}},
                ],
            },
        )

    with _client(handler) as client:
        state = client.get_account_state()

    assert seen == [{"type": "clearinghouseState", "user": "0xabc"}]
    assert state.account_value == 10500.5
    assert state.withdrawable == 9300.5
    assert [(p.asset, p.side, p.quantity) for p in state.positions] == [("BTC", "LONG", 0.5), ("ETH", "SHORT", 2.0)]
    assert state.positions[0].leverage == 5.0
    assert state.positions[1].unrealized_pnl == -12.5


def test_account_state_requires_address() -> None:
    client = VenueClient(Settings(), http_client=httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(200))))

    with pytest.raises(VenueError, match="missing_account_address"):
        client.get_account_state()


def test_server_errors_are_retried_and_counted() -> None:
    responses = iter([httpx.Response(503), httpx.Response(502), httpx.Response(200, json={"BTC": "65000.5"})])

    client = _client(lambda request: next(responses))

    assert client.get_mid_price("BTC") == 65000.5
    assert client.api_calls == 3
    assert client.api_errors == 2


def test_client_errors_are_not_retried() -> None:
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(400, text="bad request")

    client = _client(handler)

    with pytest.raises(VenueError) as info:
        client.get_mid_price("BTC")
    assert not isinstance(info.value, VenueAPIError)
    assert len(calls) == 1


def test_submit_order_wire_format_and_fill() -> None:
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        bodies.append(body)
        if request.url.path == "/info":
            return httpx.Response(200, json=_META)
        return httpx.Response(
            200,
            json={
                "status": "ok",
                "response": {"data": {"statuses": [{"filled": {"oid": 77, "totalSz": "0.1", "avgPx": "3001.5"}}]}},
            },
        )

    signed: list[dict] = []

    def signer(body: dict) -> dict:
        signed.append(body)
        return {**body, "signature": {"r": "0x1", "s": "0x2", "v": 27}}

    client = _client(handler, signer=signer)
    order = OrderRequest(asset="ETH", is_buy=True, size=0.1, price=3001.5)

    ack = client.submit_order(order)

    assert ack.status == "filled"
    assert ack.order_id == "77"
    assert ack.avg_price == 3001.5
    wire = bodies[-1]["action"]["orders"][0]
    assert wire == {
        "a": 1,
        "b": True,
        "p": "3001.5",
        "s": "0.1",
        "r": False,
        "t": {"limit": {"tif": "Ioc"}},
        "c": order.client_order_id,
    }
    assert bodies[-1]["action"]["grouping"] == "na"
    assert "signature" in bodies[-1]
    assert signed[0]["action"]["type"] == "order"


def test_order_rejection_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/info":
            return httpx.Response(200, json=_META)
        return httpx.Response(
            200,
            json={"status": "ok", "response": {"data": {"statuses": [{"error": "Order price too far from oracle"}]}}},
        )

    client = _client(handler)

    with pytest.raises(OrderRejectedError, match="too far"):
        client.submit_order(OrderRequest(asset="BTC", is_buy=False, size=1, price=60000))


def test_unknown_asset_is_an_error() -> None:
    client = _client(lambda request: httpx.Response(200, json=_META))

    with pytest.raises(VenueError, match="unknown_asset"):
        client.asset_index("XRP")


def test_order_status_mapping() -> None:
    def _payload(status: str, orig: str, remaining: str) -> dict:
        return {
            "status": "order",
            "order": {"status": status, "order": {"origSz": orig, "sz": remaining, "limitPx": "100"}},
        }

    assert parse_order_status("1", _payload("filled", "2", "0")).status == "filled"
    assert parse_order_status("1", _payload("open", "2", "2")).status == "open"

    partial = parse_order_status("1", _payload("canceled", "2", "1.5"))
    assert partial.status == "partial"
    assert partial.terminal
    assert partial.filled_size == 0.5

    assert parse_order_status("1", _payload("canceled", "2", "2")).status == "canceled"
    assert parse_order_status("1", _payload("minTradeNtlRejected", "2", "2")).status == "rejected"
    assert parse_order_status("1", {"status": "unknownOid"}).status == "unknown"


def test_account_state_rejects_non_object() -> None:
    with pytest.raises(VenueError):
        parse_account_state(["not", "an", "object"])


def test_non_json_reply_is_a_retryable_api_error() -> None:
    client = _client(lambda request: httpx.Response(200, text="<html>gateway</html>"))

    with pytest.raises(VenueAPIError, match="invalid_json_response"):
        client.get_mid_price("BTC")
    assert client.api_calls == 3
    assert client.api_errors == 3


def test_order_ack_without_oid_has_no_order_id() -> None:
    def _ack(status: dict) -> dict:
        return {"status": "ok", "response": {"data": {"statuses": [status]}}}

    resting = parse_order_ack(_ack({"resting": {}}))
    filled = parse_order_ack(_ack({"filled": {"totalSz": "1", "avgPx": "10"}}))

    assert resting.status == "resting"
    assert resting.order_id is None
    assert filled.order_id is None
    assert parse_order_ack(_ack({"resting": {"oid": 12}})).order_id == "12"
