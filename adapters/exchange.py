"""
Spot exchange order port on top of CCXT.

Market metadata reads are retried on transient network errors; order
placement is sent exactly once.
"""
from __future__ import annotations

import logging
from typing import Any

import ccxt
from django.conf import settings
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .orders import FAILURE_REJECTED, FAILURE_TRANSPORT, OrderFailed, OrderFilled, OrderResult

logger = logging.getLogger(__name__)

_retry_exchange = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
    retry=retry_if_exception_type((ccxt.NetworkError, ccxt.ExchangeNotAvailable, ccxt.RequestTimeout)),
    reraise=True,
)


class CcxtOrderPort:
    def __init__(
        self,
        exchange_id: str,
        api_key: str,
        api_secret: str,
        sandbox: bool = False,
        quote_currency: str = "USD",
    ):
        self.name = exchange_id
        self.quote_currency = quote_currency
        exchange_cls = getattr(ccxt, exchange_id)
        self.client = exchange_cls({
            "apiKey": api_key,
            "secret": api_secret,
            "enableRateLimit": True,
        })
        if sandbox:
            try:
                self.client.set_sandbox_mode(True)
            except ccxt.NotSupported:
                logger.warning("%s has no sandbox; orders go to the live venue", exchange_id)
        self._markets_loaded = False

    @classmethod
    def from_profile(cls, profile) -> "CcxtOrderPort":
        quote = getattr(settings, "EXCHANGE_QUOTE_CURRENCY", "USD")
        return cls(
            exchange_id=profile.exchange,
            api_key=profile.exchange_api_key,
            api_secret=profile.exchange_api_secret,
            sandbox=profile.sandbox,
            quote_currency=quote,
        )

    @_retry_exchange
    def _load_markets(self):
        self.client.load_markets()
        self._markets_loaded = True

    def _map_symbol(self, symbol: str) -> str:
        """BTC -> BTC/USD, pairs pass through."""
        if "/" in symbol:
            return symbol
        return f"{symbol.upper()}/{self.quote_currency}"

    def execute(
        self,
        symbol: str,
        side: str,
        quantity: float,
        reference_price: float,
        order_kind: str = "market",
    ) -> OrderResult:
        mapped = self._map_symbol(symbol)
        try:
            if not self._markets_loaded:
                self._load_markets()
        except ccxt.BaseError as exc:
            # Nothing was sent yet, safe to report as a plain rejection.
            return OrderFailed(
                error_code=type(exc).__name__,
                error_message=f"markets unavailable: {exc}",
                kind=FAILURE_REJECTED,
            )

        price = reference_price if order_kind == "limit" else None
        try:
            amount = float(self.client.amount_to_precision(mapped, quantity))
        except ccxt.BaseError:
            amount = float(quantity)

        try:
            order: dict[str, Any] = self.client.create_order(mapped, order_kind, side, amount, price)
        except ccxt.NetworkError as exc:
            logger.error("create_order %s %s %s: no usable response: %s", side, amount, mapped, exc)
            return OrderFailed(
                error_code=type(exc).__name__,
                error_message=str(exc),
                kind=FAILURE_TRANSPORT,
            )
        except ccxt.ExchangeError as exc:
            logger.warning("create_order %s %s %s rejected: %s", side, amount, mapped, exc)
            return OrderFailed(
                error_code=type(exc).__name__,
                error_message=str(exc),
                kind=FAILURE_REJECTED,
            )
        except Exception as exc:
            logger.error("create_order %s %s %s failed unexpectedly: %s", side, amount, mapped, exc)
            return OrderFailed(
                error_code=type(exc).__name__,
                error_message=str(exc),
                kind=FAILURE_TRANSPORT,
            )

        order_id = str(order.get("id") or "")
        info = order.get("info")
        raw = {
            "id": order_id,
            "status": order.get("status"),
            "symbol": order.get("symbol") or mapped,
            "filled": order.get("filled"),
            "info": info if isinstance(info, dict) else {},
        }
        filled = order.get("filled")
        executed_qty = amount if filled is None else float(filled)
        if order.get("status") == "open" or executed_qty <= 0:
            # Accepted but not (fully) executed: the outcome is unknown until reconciled.
            logger.error(
                "create_order %s %s %s accepted as %s without a confirmed fill (filled=%s)",
                side,
                amount,
                mapped,
                order_id or "?",
                filled,
            )
            return OrderFailed(
                error_code="OrderNotFilled",
                error_message=f"order {order_id or '?'} status={order.get('status')} filled={filled}",
                kind=FAILURE_TRANSPORT,
                raw=raw,
            )
        executed_price = float(order.get("average") or order.get("price") or reference_price)
        return OrderFilled(
            external_order_id=order_id,
            executed_price=executed_price,
            executed_quantity=executed_qty,
            raw=raw,
        )
