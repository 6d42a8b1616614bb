"""
Per-instrument mutual exclusion for auto-trade evaluations.

A process-local lock serializes threads in one worker; a Redis token lock
keeps other workers out. Redis is fail-open: when it is unreachable only the
local lock applies.
"""
from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from typing import Any

import redis
from django.conf import settings

logger = logging.getLogger(__name__)

_local_locks: dict[int, threading.Lock] = {}
_local_guard = threading.Lock()


class InstrumentBusy(Exception):
    pass


def _redis_client():
    url = str(getattr(settings, "REDIS_URL", "") or "")
    if not url:
        return None
    try:
        return redis.from_url(url)
    except Exception:
        return None


def _decode_redis_value(raw: Any) -> str:
    if raw is None:
        return ""
    if isinstance(raw, bytes):
        try:
            return raw.decode("utf-8")
        except Exception:
            return str(raw)
    return str(raw)


def acquire_redis_lock(lock_key: str, ttl_seconds: int) -> tuple[Any, str]:
    """
    Returns (client, token):
    - client is None when Redis is unavailable (fail-open).
    - token is empty when the lock is already held.
    """
    client = _redis_client()
    if client is None:
        return None, ""
    token = uuid.uuid4().hex
    ttl = max(1, int(ttl_seconds or 1))
    try:
        acquired = bool(client.set(lock_key, token, nx=True, ex=ttl))
        return client, (token if acquired else "")
    except Exception as exc:
        logger.warning("Redis lock %s unavailable, continuing without it: %s", lock_key, exc)
        return None, ""


def release_redis_lock(client: Any, lock_key: str, token: str) -> None:
    """Best-effort release. Deletes only if the token still matches."""
    if client is None or not token:
        return
    try:
        current = _decode_redis_value(client.get(lock_key))
        if current and current == token:
            client.delete(lock_key)
    except Exception as exc:
        logger.warning("Redis lock %s release failed: %s", lock_key, exc)


def _local_lock(instrument_id: int) -> threading.Lock:
    with _local_guard:
        lock = _local_locks.get(instrument_id)
        if lock is None:
            lock = _local_locks[instrument_id] = threading.Lock()
        return lock


@contextmanager
def instrument_lock(instrument_id: int, wait_seconds: float | None = None):
    """Hold the per-instrument lock or raise InstrumentBusy."""
    if wait_seconds is None:
        wait_seconds = float(getattr(settings, "AUTOTRADE_LOCK_WAIT_SECONDS", 10.0))
    local = _local_lock(instrument_id)
    if not local.acquire(timeout=max(0.0, wait_seconds)):
        raise InstrumentBusy(f"instrument {instrument_id} is being evaluated in this worker")
    client, token = None, ""
    lock_key = f"lock:autotrade:instrument:{instrument_id}"
    try:
        if getattr(settings, "AUTOTRADE_LOCK_ENABLED", True):
            ttl = int(getattr(settings, "AUTOTRADE_LOCK_TTL_SECONDS", 60))
            client, token = acquire_redis_lock(lock_key, ttl)
            if client is not None and not token:
                raise InstrumentBusy(f"instrument {instrument_id} is locked by another worker")
        yield
    finally:
        release_redis_lock(client, lock_key, token)
        local.release()
