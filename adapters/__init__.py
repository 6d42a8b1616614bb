from __future__ import annotations

from typing import Any, Protocol

from django.conf import settings

from core.errors import ValidationError

from .coindesk import CoinDeskClient
from .exchange import CcxtOrderPort
from .orders import (
    FAILURE_REJECTED,
    FAILURE_TRANSPORT,
    OrderExecutionPort,
    OrderFailed,
    OrderFilled,
    OrderResult,
)
from .paper import PaperOrderPort


class MarketDataProtocol(Protocol):
    def fetch_hourly(self, symbol: str, limit: int = 24) -> list[dict[str, Any]]:
        ...


def get_order_port(profile) -> OrderExecutionPort:
    """Resolve the order port for a trading profile. Paper mode wins over live credentials."""
    mode = str(getattr(settings, "MODE", "paper") or "paper").lower()
    if mode != "live" or profile.exchange == profile.Exchange.PAPER:
        return PaperOrderPort()
    if not profile.has_exchange_credentials:
        raise ValidationError(
            f"Exchange credentials for {profile.exchange} are not configured",
            details={"exchange": profile.exchange},
        )
    return CcxtOrderPort.from_profile(profile)


def get_market_data_client(config) -> MarketDataProtocol:
    return CoinDeskClient.from_config(config)


__all__ = [
    "CcxtOrderPort",
    "CoinDeskClient",
    "FAILURE_REJECTED",
    "FAILURE_TRANSPORT",
    "MarketDataProtocol",
    "OrderExecutionPort",
    "OrderFailed",
    "OrderFilled",
    "OrderResult",
    "PaperOrderPort",
    "get_market_data_client",
    "get_order_port",
]
