"""
Structured scheduling log.

Every event goes to the module logger and to a SchedulingLogEntry row tied to
its process id. A failed row write is reported on the logger and otherwise
ignored: logging never aborts the pipeline.
"""
from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from django.db import DatabaseError, transaction

from scheduling.models import ProcessingStatus, SchedulingLogEntry
from scheduling.status import ProcessStatusTracker

logger = logging.getLogger(__name__)

Level = SchedulingLogEntry.Level
Category = SchedulingLogEntry.Category

_PY_LEVELS = {
    Level.DEBUG: logging.DEBUG,
    Level.INFO: logging.INFO,
    Level.WARNING: logging.WARNING,
    Level.ERROR: logging.ERROR,
    Level.CRITICAL: logging.CRITICAL,
}


class SchedulingLogbook:
    def __init__(self, tracker: Optional[ProcessStatusTracker] = None):
        self.tracker = tracker or ProcessStatusTracker()
        self._known: set[str] = set()

    def log(
        self,
        process_id: str,
        operation: str,
        message: str,
        *,
        owner=None,
        level: str = Level.INFO,
        category: str = Category.SCHEDULING,
        symbol: str = "",
        details: Optional[dict[str, Any]] = None,
        duration_ms: Optional[int] = None,
    ) -> Optional[SchedulingLogEntry]:
        logger.log(
            _PY_LEVELS.get(level, logging.INFO),
            "[%s] %s%s: %s",
            process_id,
            operation,
            f" {symbol}" if symbol else "",
            message,
        )
        try:
            with transaction.atomic():
                if process_id not in self._known:
                    # Log rows reference the status row; create a bare one if needed.
                    self.tracker.ensure(process_id, owner, ProcessingStatus.JobType.DATA_SCHEDULING)
                entry = SchedulingLogEntry.objects.create(
                    process_id=process_id,
                    owner=owner,
                    level=level,
                    category=category,
                    operation=operation,
                    symbol=symbol or "",
                    message=str(message)[:4000],
                    details=details or {},
                    duration_ms=duration_ms,
                )
        except DatabaseError as exc:
            logger.warning("Scheduling log write failed for %s/%s: %s", process_id, operation, exc)
            return None
        self._known.add(process_id)
        return entry

    def info(self, process_id: str, operation: str, message: str, **kwargs) -> Optional[SchedulingLogEntry]:
        return self.log(process_id, operation, message, level=Level.INFO, **kwargs)

    def warning(self, process_id: str, operation: str, message: str, **kwargs) -> Optional[SchedulingLogEntry]:
        return self.log(process_id, operation, message, level=Level.WARNING, **kwargs)

    def error(self, process_id: str, operation: str, message: str, **kwargs) -> Optional[SchedulingLogEntry]:
        return self.log(process_id, operation, message, level=Level.ERROR, **kwargs)

    @contextmanager
    def timed(
        self,
        process_id: str,
        operation: str,
        *,
        owner=None,
        category: str = Category.SCHEDULING,
        symbol: str = "",
        details: Optional[dict[str, Any]] = None,
    ) -> Iterator[dict[str, Any]]:
        """
        Time a block and log `<operation>_COMPLETE` or `<operation>_ERROR` with
        its duration. The yielded dict is merged into the completion details;
        a `message` key in it replaces the default completion message.
        Exceptions are logged and re-raised.
        """
        extra: dict[str, Any] = {}
        started = time.monotonic()
        try:
            yield extra
        except Exception as exc:
            extra.pop("message", None)
            self.log(
                process_id,
                f"{operation}_ERROR",
                f"{operation} failed: {exc}",
                owner=owner,
                level=Level.ERROR,
                category=category,
                symbol=symbol,
                details={**(details or {}), **extra, "error": str(exc), "error_type": type(exc).__name__},
                duration_ms=int((time.monotonic() - started) * 1000),
            )
            raise
        message = extra.pop("message", f"{operation} completed")
        self.log(
            process_id,
            f"{operation}_COMPLETE",
            message,
            owner=owner,
            category=category,
            symbol=symbol,
            details={**(details or {}), **extra},
            duration_ms=int((time.monotonic() - started) * 1000),
        )
