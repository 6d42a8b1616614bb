"""
Process status tracker.

Rows move RUNNING -> COMPLETED | FAILED once. `create` is an upsert so a retry
after a crash does not trip the unique process id; `advance` is a plain
read-modify-write (last writer wins) because a process is only advanced from
one sequential loop.
"""
from __future__ import annotations

import logging
import math
from datetime import timedelta
from typing import Any, Optional

from django.utils import timezone

from scheduling.models import ProcessingStatus

logger = logging.getLogger(__name__)

STALE_MESSAGE = "Process timed out or was interrupted"


def progress_percent(processed: int, total: int) -> int:
    if not total:
        return 0
    # Half-up rounding, so 2.5 -> 3 rather than banker's 2.
    return int(math.floor(processed / total * 100 + 0.5))


class ProcessStatusTracker:
    def create(
        self,
        process_id: str,
        owner,
        job_type: str,
        total_items: int = 0,
        details: Optional[dict[str, Any]] = None,
    ) -> ProcessingStatus:
        now = timezone.now()
        status, created = ProcessingStatus.objects.update_or_create(
            process_id=process_id,
            defaults={
                "owner": owner,
                "job_type": job_type,
                "status": ProcessingStatus.Status.RUNNING,
                "total_items": max(0, int(total_items or 0)),
                "processed_items": 0,
                "details": details or {},
                "error": "",
                "started_at": now,
                "completed_at": None,
                "updated_at": now,
            },
        )
        if not created:
            logger.info("Process %s already existed; restarted as RUNNING", process_id)
        return status

    def ensure(self, process_id: str, owner, job_type: str) -> ProcessingStatus:
        """Make sure a row exists without resetting one that does."""
        now = timezone.now()
        status, _ = ProcessingStatus.objects.get_or_create(
            process_id=process_id,
            defaults={
                "owner": owner,
                "job_type": job_type,
                "started_at": now,
                "updated_at": now,
            },
        )
        return status

    def advance(
        self,
        process_id: str,
        processed_delta: int = 0,
        detail_patch: Optional[dict[str, Any]] = None,
    ) -> Optional[ProcessingStatus]:
        status = ProcessingStatus.objects.filter(process_id=process_id).first()
        if status is None:
            logger.warning("advance on unknown process %s ignored", process_id)
            return None
        if status.is_terminal:
            logger.warning("advance on finished process %s (%s) ignored", process_id, status.status)
            return status
        status.processed_items = max(0, status.processed_items + int(processed_delta or 0))
        if detail_patch:
            status.details = {**(status.details or {}), **detail_patch}
        status.updated_at = timezone.now()
        status.save(update_fields=["processed_items", "details", "updated_at"])
        return status

    def _finalize(self, process_id: str, new_status: str, error: str = "", detail_patch: Optional[dict] = None) -> bool:
        now = timezone.now()
        qs = ProcessingStatus.objects.filter(process_id=process_id, status=ProcessingStatus.Status.RUNNING)
        if detail_patch:
            current = qs.values_list("details", flat=True).first()
            if current is not None:
                qs.update(details={**(current or {}), **detail_patch})
        updated = qs.update(status=new_status, error=error, completed_at=now, updated_at=now)
        if not updated:
            logger.warning("Process %s was not RUNNING; %s ignored", process_id, new_status)
        return bool(updated)

    def complete(self, process_id: str, detail_patch: Optional[dict[str, Any]] = None) -> bool:
        return self._finalize(process_id, ProcessingStatus.Status.COMPLETED, detail_patch=detail_patch)

    def fail(self, process_id: str, error_message: str, detail_patch: Optional[dict[str, Any]] = None) -> bool:
        return self._finalize(process_id, ProcessingStatus.Status.FAILED, str(error_message or "")[:4000], detail_patch)

    def reclaim_stale(self, max_age_minutes: int) -> int:
        """Fail RUNNING rows with no update for `max_age_minutes`."""
        now = timezone.now()
        cutoff = now - timedelta(minutes=max(1, int(max_age_minutes)))
        reclaimed = ProcessingStatus.objects.filter(
            status=ProcessingStatus.Status.RUNNING,
            updated_at__lt=cutoff,
        ).update(
            status=ProcessingStatus.Status.FAILED,
            error=STALE_MESSAGE,
            completed_at=now,
            updated_at=now,
        )
        if reclaimed:
            logger.warning("Reclaimed %d stale processes (no update since %s)", reclaimed, cutoff.isoformat())
        return reclaimed

    def snapshot(self, process_id: str) -> Optional[dict[str, Any]]:
        status = ProcessingStatus.objects.filter(process_id=process_id).first()
        if status is None:
            return None
        return snapshot_of(status)


def snapshot_of(status: ProcessingStatus) -> dict[str, Any]:
    out: dict[str, Any] = {
        "processId": status.process_id,
        "jobType": status.job_type,
        "status": status.status,
        "processedItems": status.processed_items,
        "totalItems": status.total_items,
        "progressPercent": progress_percent(status.processed_items, status.total_items),
        "startedAt": status.started_at.isoformat() if status.started_at else None,
        "completedAt": status.completed_at.isoformat() if status.completed_at else None,
        "details": status.details or {},
    }
    if status.error:
        out["error"] = status.error
    return out
