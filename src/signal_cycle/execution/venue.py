"""HTTP client for the execution venue (account state, prices, orders)."""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal

import httpx

from signal_cycle.config import Settings
from signal_cycle.execution.retry import RetryPolicy
from signal_cycle.types import VenueAccountState, VenuePosition
from signal_cycle.utils.logging import get_logger

_MIN_POSITION_SIZE = 0.0001

Signer = Callable[[dict[str, Any]], dict[str, Any]]


class VenueError(Exception):
    """Base venue error."""


class VenueAPIError(VenueError):
    """Transport failure, rate limit or server error. Safe to retry."""


class OrderRejectedError(VenueError):
    """The venue refused an order (price band, size, margin)."""


@dataclass(slots=True)
class OrderRequest:
    asset: str
    is_buy: bool
    size: float
    price: float
    reduce_only: bool = False
    order_type: Literal["limit", "market"] = "limit"
    time_in_force: Literal["Gtc", "Ioc", "Alo"] = "Ioc"
    client_order_id: str = ""

    def __post_init__(self) -> None:
        if not self.client_order_id:
            self.client_order_id = "0x" + uuid.uuid4().hex


@dataclass(slots=True)
class OrderAck:
    order_id: str | None
    status: Literal["filled", "resting"]
    filled_size: float = 0.0
    avg_price: float | None = None


@dataclass(slots=True)
class OrderStatusReport:
    order_id: str
    status: Literal["open", "filled", "partial", "canceled", "rejected", "unknown"]
    filled_size: float = 0.0
    avg_price: float | None = None
    terminal: bool = False


class VenueClient:
    """Thin client for the venue's info and exchange endpoints."""

    def __init__(
        self,
        settings: Settings,
        *,
        http_client: httpx.Client | None = None,
        signer: Signer | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._settings = settings
        self._client = http_client or httpx.Client(
            base_url=settings.venue_base_url,
            timeout=settings.venue_timeout,
        )
        self._signer = signer
        self._retry = retry_policy or RetryPolicy.from_settings(settings, (VenueAPIError,))
        self._asset_index: dict[str, int] | None = None
        self._logger = get_logger("signal_cycle.execution.venue")
        self.api_calls = 0
        self.api_errors = 0

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> VenueClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ---- queries -------------------------------------------------------

    def get_account_state(self, address: str | None = None) -> VenueAccountState:
        """Authoritative margin summary, positions and withdrawable balance."""
        user = address or self._settings.venue_account_address
        if not user:
            raise VenueError("missing_account_address")
        payload = self._retry.call(self._post, "/info", {"type": "clearinghouseState", "user": user})
        return parse_account_state(payload)

    def get_mid_price(self, asset: str) -> float | None:
        payload = self._retry.call(self._post, "/info", {"type": "allMids"})
        if not isinstance(payload, dict):
            return None
        return _to_float(payload.get(asset))

    def asset_index(self, asset: str) -> int:
        if self._asset_index is None:
            payload = self._retry.call(self._post, "/info", {"type": "meta"})
            universe = payload.get("universe", []) if isinstance(payload, dict) else []
            self._asset_index = {
                str(item.get("name")): index
                for index, item in enumerate(universe)
                if isinstance(item, dict)
            }
        if asset not in self._asset_index:
            raise VenueError(f"unknown_asset: {asset}")
        return self._asset_index[asset]

    def order_status(self, order_id: str) -> OrderStatusReport:
        payload = self._retry.call(
            self._post,
            "/info",
            {
                "type": "orderStatus",
                "user": self._settings.venue_account_address,
                "oid": int(order_id) if order_id.isdigit() else order_id,
            },
        )
        return parse_order_status(order_id, payload)

    # ---- orders --------------------------------------------------------

    def submit_order(self, order: OrderRequest) -> OrderAck:
        """Submit one order. Transport retries reuse the same client order id."""
        wire = {
            "a": self.asset_index(order.asset),
            "b": order.is_buy,
            "p": _wire_number(order.price),
            "s": _wire_number(order.size),
            "r": order.reduce_only,
            "t": {"limit": {"tif": "Ioc" if order.order_type == "market" else order.time_in_force}},
            "c": order.client_order_id,
        }
        action = {"type": "order", "orders": [wire], "grouping": "na"}
        payload = self._retry.call(self._post, "/exchange", self._signed(action))
        return parse_order_ack(payload)

    def cancel_order(self, asset: str, order_id: str) -> bool:
        action = {
            "type": "cancel",
            "cancels": [{"a": self.asset_index(asset), "o": int(order_id) if order_id.isdigit() else order_id}],
        }
        payload = self._retry.call(self._post, "/exchange", self._signed(action))
        return isinstance(payload, dict) and payload.get("status") == "ok"

    # ---- transport -----------------------------------------------------

    def _signed(self, action: dict[str, Any]) -> dict[str, Any]:
        body = {"action": action, "nonce": int(time.time() * 1000)}
        return self._signer(body) if self._signer is not None else body

    def _post(self, path: str, payload: dict[str, Any]) -> Any:
        self.api_calls += 1
        try:
            response = self._client.post(path, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self.api_errors += 1
            status = exc.response.status_code
            self._logger.warning("venue_http_error", path=path, status_code=status)
            if status == 429 or status >= 500:
                raise VenueAPIError(f"http_{status}") from exc
            raise VenueError(f"http_{status}: {exc.response.text[:200]}") from exc
        except httpx.HTTPError as exc:
            self.api_errors += 1
            self._logger.warning("venue_transport_error", path=path, error=str(exc))
            raise VenueAPIError(str(exc) or type(exc).__name__) from exc
        try:
            return response.json()
        except ValueError as exc:
            self.api_errors += 1
            self._logger.warning("venue_invalid_json", path=path, body=response.text[:200])
            raise VenueAPIError("invalid_json_response") from exc


def parse_account_state(payload: Any) -> VenueAccountState:
    """Read margin summary, positions and withdrawable from a clearinghouse payload."""
    data = payload.get("data") if isinstance(payload, dict) and isinstance(payload.get("data"), dict) else payload
    if not isinstance(data, dict):
        raise VenueError("account_state_not_object")
    margin = data.get("marginSummary") or data.get("crossMarginSummary") or {}

    positions: list[VenuePosition] = []
    for item in data.get("assetPositions") or []:
        position = item.get("position") if isinstance(item, dict) else None
        if not isinstance(position, dict):
            continue
        coin = str(position.get("coin") or "")
        size = _to_float(position.get("szi"))
        if not coin or size is None or abs(size) < _MIN_POSITION_SIZE:
            continue
        leverage_raw = position.get("leverage")
        if isinstance(leverage_raw, dict):
            leverage_raw = leverage_raw.get("value")
        positions.append(
            VenuePosition(
                asset=coin,
                side="LONG" if size > 0 else "SHORT",
                quantity=abs(size),
                entry_price=_to_float(position.get("entryPx")) or 0.0,
                leverage=_to_float(leverage_raw) or 1.0,
                unrealized_pnl=_to_float(position.get("unrealizedPnl")) or 0.0,
            )
        )
    return VenueAccountState(
        account_value=_to_float(margin.get("accountValue")) or 0.0,
        total_margin_used=_to_float(margin.get("totalMarginUsed")) or 0.0,
        withdrawable=_to_float(data.get("withdrawable")) or 0.0,
        positions=positions,
    )


def parse_order_ack(payload: Any) -> OrderAck:
    if not isinstance(payload, dict) or payload.get("status") != "ok":
        detail = payload.get("response") if isinstance(payload, dict) else payload
        raise OrderRejectedError(f"order_not_accepted: {detail}")
    try:
        first = payload["response"]["data"]["statuses"][0]
    except (KeyError, IndexError, TypeError) as exc:
        raise VenueError("order_response_malformed") from exc
    if "error" in first:
        raise OrderRejectedError(str(first["error"]))
    if "filled" in first:
        filled = first["filled"]
        return OrderAck(
            order_id=_order_id(filled.get("oid")),
            status="filled",
            filled_size=_to_float(filled.get("totalSz")) or 0.0,
            avg_price=_to_float(filled.get("avgPx")),
        )
    if "resting" in first:
        return OrderAck(order_id=_order_id(first["resting"].get("oid")), status="resting")
    raise VenueError(f"order_status_unrecognized: {first}")


def parse_order_status(order_id: str, payload: Any) -> OrderStatusReport:
    if not isinstance(payload, dict) or payload.get("status") != "order":
        return OrderStatusReport(order_id=order_id, status="unknown")
    wrapper = payload.get("order") or {}
    order = wrapper.get("order") or {}
    raw_status = str(wrapper.get("status") or "").lower()
    original = _to_float(order.get("origSz")) or 0.0
    remaining = _to_float(order.get("sz")) or 0.0
    filled = max(0.0, original - remaining)
    price = _to_float(order.get("avgPx")) or _to_float(order.get("limitPx"))

    if raw_status == "filled":
        status = "filled"
        filled = filled or original
    elif raw_status == "open":
        status = "partial" if filled > 0 else "open"
    elif raw_status.endswith("rejected"):
        status = "rejected"
    elif "cancel" in raw_status:
        status = "partial" if filled > 0 else "canceled"
    else:
        status = "unknown"
    return OrderStatusReport(
        order_id=order_id,
        status=status,
        filled_size=filled,
        avg_price=price,
        terminal=raw_status not in ("open", ""),
    )


def _order_id(value: Any) -> str | None:
    return None if value is None or value == "" else str(value)


def _to_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if number == number and abs(number) != float("inf") else None


def _wire_number(value: float) -> str:
    return f"{value:.8f}".rstrip("0").rstrip(".")
