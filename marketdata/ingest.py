from __future__ import annotations

import logging
from typing import Any

from core.models import Instrument
from marketdata.models import HourlyBar

logger = logging.getLogger(__name__)


def store_hourly_bars(instrument: Instrument, bars: list[dict[str, Any]]) -> int:
    """Upsert bars for one instrument and refresh its last price from the newest close."""
    rows = [
        HourlyBar(
            instrument=instrument,
            ts=b["ts"],
            open=b["open"],
            high=b["high"],
            low=b["low"],
            close=b["close"],
            volume=b.get("volume", 0),
            quote_volume=b.get("quote_volume", 0),
        )
        for b in bars
    ]
    if not rows:
        return 0
    HourlyBar.objects.bulk_create(
        rows,
        update_conflicts=True,
        unique_fields=["instrument", "ts"],
        update_fields=["open", "high", "low", "close", "volume", "quote_volume", "fetched_at"],
    )
    newest = max(bars, key=lambda b: b["ts"])
    if newest["close"] > 0:
        Instrument.objects.filter(pk=instrument.pk).update(
            last_price=newest["close"],
            last_price_at=newest["ts"],
        )
    logger.debug("Stored %d hourly bars for %s", len(rows), instrument.symbol)
    return len(rows)
