from __future__ import annotations

import logging
from datetime import timedelta

from celery import shared_task
from django.conf import settings
from django.utils import timezone

from execution.locks import acquire_redis_lock, release_redis_lock
from scheduling.models import ProcessingStatus, SchedulingLogEntry
from scheduling.orchestrator import SchedulingOrchestrator

logger = logging.getLogger(__name__)


@shared_task
def run_scheduled_tasks(force: bool = False):
    lock_client = None
    lock_token = ""
    lock_key = str(getattr(settings, "SCHEDULING_LOCK_KEY", "lock:run_scheduled_tasks") or "lock:run_scheduled_tasks")
    lock_ttl = max(60, int(getattr(settings, "SCHEDULING_LOCK_TTL_SECONDS", 3600) or 3600))
    if bool(getattr(settings, "SCHEDULING_LOCK_ENABLED", True)):
        lock_client, lock_token = acquire_redis_lock(lock_key, lock_ttl)
        if lock_client is not None and not lock_token:
            logger.info("run_scheduled_tasks skipped: lock active key=%s", lock_key)
            return {"success": False, "message": "A scheduler pass is already running"}
    try:
        summary = SchedulingOrchestrator().run(force=bool(force))
    finally:
        release_redis_lock(lock_client, lock_key, lock_token)
    logger.info("Scheduler pass %s: %s", summary.run_id, summary.message)
    return {"success": True, **summary.as_dict()}


@shared_task
def purge_scheduling_history(days: int | None = None):
    """Delete finished statuses and log rows older than the retention window."""
    days = max(1, int(days or getattr(settings, "SCHEDULING_LOG_RETENTION_DAYS", 30)))
    cutoff = timezone.now() - timedelta(days=days)
    logs_deleted, _ = SchedulingLogEntry.objects.filter(timestamp__lt=cutoff).delete()
    _, per_model = (
        ProcessingStatus.objects.filter(updated_at__lt=cutoff)
        .exclude(status=ProcessingStatus.Status.RUNNING)
        .delete()
    )
    statuses_deleted = per_model.get(ProcessingStatus._meta.label, 0)
    logger.info(
        "Purged scheduling history older than %s days: logs=%d statuses=%d",
        days,
        logs_deleted,
        statuses_deleted,
    )
    return {"logs": logs_deleted, "statuses": statuses_deleted}
