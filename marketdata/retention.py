from __future__ import annotations

import logging
from datetime import timedelta

from django.utils import timezone

from core.errors import ValidationError
from marketdata.models import AnalysisSnapshot, HourlyBar

logger = logging.getLogger(__name__)


def purge_older_than(owner, days: int) -> dict[str, int]:
    """Delete one user's bars and snapshots older than `days`."""
    if days is None or int(days) <= 0:
        raise ValidationError(f"retention days must be positive, got {days!r}")
    cutoff = timezone.now() - timedelta(days=int(days))
    bars_deleted, _ = HourlyBar.objects.filter(instrument__owner=owner, ts__lt=cutoff).delete()
    snaps_deleted, _ = AnalysisSnapshot.objects.filter(instrument__owner=owner, ts__lt=cutoff).delete()
    logger.info(
        "Retention purge user=%s cutoff=%s bars=%d snapshots=%d",
        getattr(owner, "pk", owner),
        cutoff.isoformat(),
        bars_deleted,
        snaps_deleted,
    )
    return {"hourly_bars": bars_deleted, "analysis_snapshots": snaps_deleted, "cutoff": cutoff.isoformat()}
