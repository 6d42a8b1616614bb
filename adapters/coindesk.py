"""
CoinDesk (CCData) hourly OHLCV client.

Errors of any kind surface as ExternalApiError; the caller decides whether to
isolate or retry. No internal retry.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone as dt_timezone
from typing import Any

import httpx
from django.conf import settings

from core.errors import ExternalApiError

logger = logging.getLogger(__name__)

HOURLY_PATH = "/index/cc/v1/historical/hours"


def _to_float(val: Any) -> float:
    try:
        return float(val)
    except (TypeError, ValueError):
        return 0.0


class CoinDeskClient:
    def __init__(
        self,
        api_url: str,
        api_token: str,
        timeout: float | None = None,
        market: str = "cadli",
        quote: str = "USD",
    ):
        self.api_token = api_token
        self.timeout = float(timeout if timeout is not None else getattr(settings, "MARKETDATA_FETCH_TIMEOUT", 30))
        self.market = market
        self.quote = quote
        base = (api_url or "").strip().split("?")[0].rstrip("/")
        self.endpoint = base if base.endswith(HOURLY_PATH) else f"{base}{HOURLY_PATH}"

    @classmethod
    def from_config(cls, config) -> "CoinDeskClient":
        return cls(
            api_url=config.api_url or getattr(settings, "MARKETDATA_API_URL", ""),
            api_token=config.api_token,
            market=getattr(settings, "MARKETDATA_MARKET", "cadli"),
        )

    def instrument_code(self, symbol: str) -> str:
        return f"{symbol.strip().upper()}-{self.quote}"

    def fetch_hourly(self, symbol: str, limit: int = 24) -> list[dict[str, Any]]:
        """Return hourly bars oldest first as dicts with ts/open/high/low/close/volume/quote_volume."""
        params = {
            "market": self.market,
            "instrument": self.instrument_code(symbol),
            "limit": int(limit),
            "aggregate": 1,
            "response_format": "JSON",
        }
        headers = {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json",
        }
        try:
            resp = httpx.get(self.endpoint, params=params, headers=headers, timeout=self.timeout)
        except httpx.TimeoutException as exc:
            raise ExternalApiError(
                f"{symbol}: request timed out after {self.timeout:g}s",
                details={"symbol": symbol, "url": self.endpoint},
            ) from exc
        except httpx.HTTPError as exc:
            raise ExternalApiError(
                f"{symbol}: transport error: {exc}",
                details={"symbol": symbol, "url": self.endpoint},
            ) from exc

        if resp.status_code != 200:
            raise ExternalApiError(
                f"{symbol}: API request failed with status {resp.status_code}",
                status_code=resp.status_code,
                details={"symbol": symbol, "response": resp.text[:500]},
            )
        try:
            payload = resp.json()
        except ValueError as exc:
            raise ExternalApiError(f"{symbol}: response is not JSON", status_code=resp.status_code) from exc

        rows = payload.get("Data") if isinstance(payload, dict) else None
        if not isinstance(rows, list):
            err = payload.get("Err") if isinstance(payload, dict) else None
            raise ExternalApiError(
                f"{symbol}: invalid data format received from API",
                status_code=resp.status_code,
                details={"error": err or {}},
            )

        bars: list[dict[str, Any]] = []
        for row in rows:
            if not isinstance(row, dict) or row.get("TIMESTAMP") is None or row.get("CLOSE") is None:
                continue
            try:
                ts = datetime.fromtimestamp(int(row["TIMESTAMP"]), tz=dt_timezone.utc)
            except (TypeError, ValueError, OverflowError, OSError):
                continue
            bars.append(
                {
                    "ts": ts,
                    "open": _to_float(row.get("OPEN")),
                    "high": _to_float(row.get("HIGH")),
                    "low": _to_float(row.get("LOW")),
                    "close": _to_float(row.get("CLOSE")),
                    "volume": _to_float(row.get("VOLUME")),
                    "quote_volume": _to_float(row.get("QUOTE_VOLUME")),
                }
            )
        bars.sort(key=lambda b: b["ts"])
        logger.debug("Fetched %d hourly bars for %s", len(bars), symbol)
        return bars
