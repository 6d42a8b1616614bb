from __future__ import annotations

from datetime import datetime, time as dt_time, timedelta
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from django.conf import settings
from django.utils import timezone


def utc_day_start(now: Optional[datetime] = None) -> datetime:
    now = now or timezone.now()
    utc_now = now.astimezone(ZoneInfo("UTC"))
    return utc_now.replace(hour=0, minute=0, second=0, microsecond=0)


def parse_run_time(value: str) -> dt_time:
    hours, minutes = (int(part) for part in value.strip().split(":", 1))
    return dt_time(hour=hours, minute=minutes)


def is_due(config, now: Optional[datetime] = None, tolerance_minutes: Optional[int] = None) -> tuple[bool, dict[str, Any]]:
    """True when the local clock is within the tolerance of the configured daily run time."""
    run_time = (config.daily_run_time or "").strip()
    if not run_time:
        return True, {"reason": "No daily run time configured"}
    if tolerance_minutes is None:
        tolerance_minutes = int(getattr(settings, "SCHEDULING_DUE_TOLERANCE_MINUTES", 5))
    try:
        zone = ZoneInfo(config.time_zone or "UTC")
        scheduled_clock = parse_run_time(run_time)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        return False, {"reason": "Invalid time zone or run time", "error": str(exc)}

    local_now = (now or timezone.now()).astimezone(zone)
    today = local_now.replace(
        hour=scheduled_clock.hour,
        minute=scheduled_clock.minute,
        second=0,
        microsecond=0,
    )
    # Nearest occurrence, so 23:58 is still due at 00:01 the next day.
    scheduled = min(
        (today + timedelta(days=offset) for offset in (-1, 0, 1)),
        key=lambda candidate: abs(local_now - candidate),
    )
    diff = abs(local_now - scheduled)
    tolerance = timedelta(minutes=max(1, tolerance_minutes))
    due = diff < tolerance
    return due, {
        "timeZone": str(zone),
        "currentTimeInZone": local_now.isoformat(),
        "scheduledTimeInZone": scheduled.isoformat(),
        "differenceSeconds": int(diff.total_seconds()),
        "toleranceSeconds": int(tolerance.total_seconds()),
        "reason": "Within time tolerance" if due else "Outside time tolerance",
    }
