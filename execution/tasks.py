from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Any

from celery import shared_task
from django.contrib.auth import get_user_model
from django.utils import timezone

from core.models import Instrument
from execution.autotrade import AutoTradeOrchestrator

logger = logging.getLogger(__name__)


def _parse_prices(prices: dict[str, Any]) -> dict[str, Decimal]:
    parsed: dict[str, Decimal] = {}
    for symbol, raw in (prices or {}).items():
        try:
            value = Decimal(str(raw))
        except (InvalidOperation, TypeError, ValueError):
            logger.warning("Ignoring non-numeric price for %s: %r", symbol, raw)
            continue
        if not value.is_finite() or value <= 0:
            logger.warning("Ignoring non-positive price for %s: %r", symbol, raw)
            continue
        parsed[str(symbol).strip().upper()] = value
    return parsed


def process_ticks_for_user(user, prices: dict[str, Any], orchestrator: AutoTradeOrchestrator | None = None) -> list[dict]:
    """Record last prices and run one auto-trade evaluation per instrument."""
    orchestrator = orchestrator or AutoTradeOrchestrator()
    parsed = _parse_prices(prices)
    if not parsed:
        return []
    now = timezone.now()
    results: list[dict] = []
    instruments = Instrument.objects.filter(owner=user, symbol__in=list(parsed.keys())).order_by("symbol")
    for inst in instruments:
        price = parsed[inst.symbol]
        Instrument.objects.filter(pk=inst.pk).update(last_price=price, last_price_at=now)
        try:
            outcome = orchestrator.on_price_tick(inst, price)
        except Exception as exc:
            # One instrument must not stop the rest of the tick.
            logger.exception("Auto-trade evaluation crashed for %s user=%s: %s", inst.symbol, user.pk, exc)
            results.append({"instrument_id": inst.pk, "symbol": inst.symbol, "outcome": "error", "message": str(exc)})
            continue
        results.append(outcome.as_dict())
    return results


@shared_task
def process_price_ticks(user_id: int, prices: dict[str, Any]):
    user = get_user_model().objects.filter(pk=user_id).first()
    if user is None:
        logger.warning("process_price_ticks: user %s not found", user_id)
        return []
    results = process_ticks_for_user(user, prices)
    filled = sum(1 for r in results if r.get("outcome") == "filled")
    logger.info("Price ticks user=%s instruments=%d filled=%d", user_id, len(results), filled)
    return results
