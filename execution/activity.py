"""Bounded per-user feed of recent auto-trade outcomes, kept in Redis."""
from __future__ import annotations

import json
import logging
from typing import Any

from django.conf import settings
from django.utils import timezone

from execution.locks import _redis_client

logger = logging.getLogger(__name__)


def _key(user_id: int) -> str:
    return f"autotrade:activity:{user_id}"


def _maxlen() -> int:
    return max(1, int(getattr(settings, "AUTOTRADE_ACTIVITY_MAXLEN", 200)))


def record_activity(user_id: int, entry: dict[str, Any]) -> None:
    client = _redis_client()
    if client is None:
        return
    payload = {"ts": timezone.now().isoformat(), **entry}
    key = _key(user_id)
    try:
        pipe = client.pipeline()
        pipe.lpush(key, json.dumps(payload, default=str))
        pipe.ltrim(key, 0, _maxlen() - 1)
        pipe.execute()
    except Exception as exc:
        logger.warning("Activity feed write failed for user=%s: %s", user_id, exc)


def recent_activity(user_id: int, limit: int | None = None) -> list[dict[str, Any]]:
    client = _redis_client()
    if client is None:
        return []
    count = min(_maxlen(), int(limit or _maxlen()))
    try:
        rows = client.lrange(_key(user_id), 0, count - 1)
    except Exception as exc:
        logger.warning("Activity feed read failed for user=%s: %s", user_id, exc)
        return []
    out: list[dict[str, Any]] = []
    for raw in rows or []:
        try:
            out.append(json.loads(raw))
        except (TypeError, ValueError):
            continue
    return out
