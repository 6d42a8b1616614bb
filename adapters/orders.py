"""
Order Execution Port: the interface the auto-trade engine sends orders through.

`execute` returns an OrderFilled or an OrderFailed; it never raises for
exchange or network problems. An OrderFailed with kind TRANSPORT means no
usable response came back, so the order may or may not exist on the exchange.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, Union

FAILURE_TRANSPORT = "transport"
FAILURE_REJECTED = "rejected"


@dataclass(frozen=True)
class OrderFilled:
    external_order_id: str
    executed_price: float
    executed_quantity: float
    raw: dict[str, Any] = field(default_factory=dict)
    success: bool = True


@dataclass(frozen=True)
class OrderFailed:
    error_code: str
    error_message: str
    kind: str = FAILURE_REJECTED
    raw: dict[str, Any] = field(default_factory=dict)
    success: bool = False

    @property
    def ambiguous(self) -> bool:
        return self.kind == FAILURE_TRANSPORT


OrderResult = Union[OrderFilled, OrderFailed]


class OrderExecutionPort(Protocol):
    name: str

    def execute(
        self,
        symbol: str,
        side: str,
        quantity: float,
        reference_price: float,
        order_kind: str = "market",
    ) -> OrderResult:
        ...
