from __future__ import annotations

import uuid

from django.conf import settings

from .orders import OrderFilled, OrderResult


class PaperOrderPort:
    """Fills every order at the reference price plus configured slippage."""

    name = "paper"

    def __init__(self, slippage_bps: float | None = None):
        if slippage_bps is None:
            slippage_bps = float(getattr(settings, "PAPER_SLIPPAGE_BPS", 0.0))
        self.slippage_bps = max(0.0, float(slippage_bps))

    def execute(
        self,
        symbol: str,
        side: str,
        quantity: float,
        reference_price: float,
        order_kind: str = "market",
    ) -> OrderResult:
        slip = reference_price * self.slippage_bps / 10_000
        price = reference_price + slip if side == "buy" else reference_price - slip
        order_id = f"paper-{uuid.uuid4().hex[:16]}"
        return OrderFilled(
            external_order_id=order_id,
            executed_price=price,
            executed_quantity=float(quantity),
            raw={"id": order_id, "status": "closed", "symbol": symbol, "type": order_kind},
        )
