"""Order intents and the executor interface shared by PAPER and LIVE."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Literal, Protocol

from signal_cycle.types import ExecutionResult, Position, Signal

OrderSide = Literal["BUY", "SELL"]


@dataclass(slots=True, frozen=True)
class OrderIntent:
    asset: str
    side: OrderSide
    quantity: float
    price: float
    reduce_only: bool = False
    reason: str = "entry"

    @property
    def is_buy(self) -> bool:
        return self.side == "BUY"

    @classmethod
    def from_signal(cls, signal: Signal, quantity: float) -> OrderIntent:
        if signal.entry_price is None:
            raise ValueError(f"signal_without_entry_price: {signal.asset}")
        return cls(
            asset=signal.asset,
            side="BUY" if signal.direction > 0 else "SELL",
            quantity=quantity,
            price=signal.entry_price,
            reason=signal.action,
        )

    @classmethod
    def from_exit(
        cls,
        position: Position,
        quantity: float,
        price: float,
        reason: str,
    ) -> OrderIntent:
        return cls(
            asset=position.asset,
            side="SELL" if position.side == "LONG" else "BUY",
            quantity=quantity,
            price=price,
            reduce_only=True,
            reason=reason,
        )


class Executor(Protocol):
    def execute(
        self,
        intent: OrderIntent,
        cancel_event: threading.Event | None = None,
    ) -> ExecutionResult: ...
