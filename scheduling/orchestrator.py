"""
Scheduling orchestrator.

One invocation walks every user with scheduling enabled, one at a time:

    reclaim stale statuses
    for each user:
        skip if a run completed since 00:00 UTC (unless forced)
        skip if not due (unless forced)
        skip if credentials or instruments are missing
        create the ProcessingStatus row
        fetch -> analysis (optional) -> cleanup (optional)
        mark COMPLETED

Stage failures are logged and the next stage still runs. An exception that
escapes a user's block marks that user's run FAILED and the loop moves on.
The "ran today" check and the status row together are a best-effort lock: two
overlapping invocations can both pass the check before either creates its row.
"""
from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from django.conf import settings
from django.db import InterfaceError, OperationalError
from django.utils import timezone
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from adapters import MarketDataProtocol, get_market_data_client
from core.metrics import SCHEDULING_RUNS, STAGE_SECONDS
from core.models import Instrument
from marketdata.analytics import AnalyticsProvider, get_analytics_provider
from marketdata.retention import purge_older_than
from scheduling.batch import BatchProcessor
from scheduling.logbook import Category, Level, SchedulingLogbook
from scheduling.models import DataSchedulingConfig, ProcessingStatus
from scheduling.schedule import is_due, utc_day_start
from scheduling.status import ProcessStatusTracker

logger = logging.getLogger(__name__)

ALREADY_COMPLETED = "ALREADY_COMPLETED"
NOT_DUE = "NOT_DUE"
VALIDATION_FAILED = "VALIDATION_FAILED"


def _db_retry():
    attempts = max(1, int(getattr(settings, "SCHEDULING_DB_RETRY_ATTEMPTS", 3)))
    return retry(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
        retry=retry_if_exception_type((OperationalError, InterfaceError)),
        reraise=True,
    )


def with_db_retry(func: Callable[..., Any], *args, **kwargs) -> Any:
    """Run a database read with backoff on connection-level errors."""
    return _db_retry()(func)(*args, **kwargs)


@dataclass
class UserRunResult:
    user_id: int
    outcome: str
    process_id: str = ""
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class RunSummary:
    run_id: str
    forced: bool
    reclaimed: int = 0
    results: list[UserRunResult] = field(default_factory=list)

    def count(self, outcome: str) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    @property
    def message(self) -> str:
        return (
            f"Checked {len(self.results)} users: "
            f"{self.count('COMPLETED')} completed, {self.count('FAILED')} failed, "
            f"{self.count(ALREADY_COMPLETED)} already completed, {self.count(NOT_DUE)} not due, "
            f"{self.count(VALIDATION_FAILED)} invalid"
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "forced": self.forced,
            "reclaimed": self.reclaimed,
            "message": self.message,
            "results": [
                {
                    "userId": r.user_id,
                    "outcome": r.outcome,
                    "processId": r.process_id,
                    "message": r.message,
                }
                for r in self.results
            ],
        }


class SchedulingOrchestrator:
    def __init__(
        self,
        tracker: Optional[ProcessStatusTracker] = None,
        logbook: Optional[SchedulingLogbook] = None,
        client_factory: Optional[Callable[[DataSchedulingConfig], MarketDataProtocol]] = None,
        analytics: Optional[AnalyticsProvider] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.tracker = tracker or ProcessStatusTracker()
        self.logbook = logbook or SchedulingLogbook(self.tracker)
        self.client_factory = client_factory or get_market_data_client
        self.analytics = analytics
        self.sleep = sleep

    def _analytics(self) -> AnalyticsProvider:
        if self.analytics is None:
            self.analytics = get_analytics_provider()
        return self.analytics

    def run(self, force: bool = False) -> RunSummary:
        run_id = f"scheduler-{timezone.now():%Y%m%d%H%M%S}-{uuid.uuid4().hex[:8]}"
        summary = RunSummary(run_id=run_id, forced=force)
        self.tracker.create(run_id, None, ProcessingStatus.JobType.SCHEDULER_RUN, 0, {"force": force})
        self.logbook.info(run_id, "SCHEDULED_TASKS_CHECK_START", f"Scheduler pass started (force={force})")

        try:
            stale_minutes = int(getattr(settings, "SCHEDULING_STALE_MINUTES", 120))
            summary.reclaimed = self.tracker.reclaim_stale(stale_minutes)
            if summary.reclaimed:
                self.logbook.warning(
                    run_id,
                    "STALE_STATUS_CLEANUP",
                    f"Marked {summary.reclaimed} stale processes as FAILED",
                    details={"maxAgeMinutes": stale_minutes},
                )

            configs = with_db_retry(
                lambda: list(
                    DataSchedulingConfig.objects.filter(enabled=True)
                    .select_related("owner")
                    .order_by("owner_id")
                )
            )
            self.tracker.advance(run_id, 0, {"users": len(configs)})
            for config in configs:
                result = self._run_user_isolated(config, run_id, force)
                summary.results.append(result)
                SCHEDULING_RUNS.labels(outcome=result.outcome).inc()
                self.tracker.advance(run_id, 1)
        except Exception as exc:
            logger.exception("Scheduler pass %s aborted", run_id)
            self.tracker.fail(run_id, str(exc), {"summary": summary.message})
            self.logbook.error(
                run_id,
                "SCHEDULED_TASKS_CHECK_ERROR",
                f"Scheduler pass aborted: {exc}",
                details={"error_type": type(exc).__name__},
            )
            raise

        self.tracker.complete(run_id, {"summary": summary.message})
        self.logbook.info(
            run_id,
            "SCHEDULED_TASKS_CHECK_COMPLETE",
            summary.message,
            details={"reclaimed": summary.reclaimed, "users": len(configs)},
        )
        return summary

    def _run_user_isolated(self, config: DataSchedulingConfig, run_id: str, force: bool) -> UserRunResult:
        try:
            return self.run_for_user(config, run_id, force=force)
        except Exception as exc:
            # Raised before the user's status row existed; nothing else to finalize.
            logger.exception("Scheduling checks failed for user=%s", config.owner_id)
            self.logbook.error(
                run_id,
                "SCHEDULED_TASK_ERROR",
                f"User {config.owner_id} skipped: {exc}",
                owner=config.owner,
                details={"error_type": type(exc).__name__},
            )
            return UserRunResult(config.owner_id, "FAILED", message=str(exc))

    def completed_today(self, owner) -> bool:
        return with_db_retry(
            lambda: ProcessingStatus.objects.filter(
                owner=owner,
                job_type=ProcessingStatus.JobType.DATA_SCHEDULING,
                status=ProcessingStatus.Status.COMPLETED,
                completed_at__gte=utc_day_start(),
            ).exists()
        )

    def run_for_user(self, config: DataSchedulingConfig, run_id: str, force: bool = False) -> UserRunResult:
        """Run one user's pipeline. Skip and validation events are logged under `run_id`."""
        owner = config.owner
        log_id = run_id

        if not force and self.completed_today(owner):
            self.logbook.info(
                log_id,
                ALREADY_COMPLETED,
                f"User {owner.pk} already has a completed run today",
                owner=owner,
            )
            return UserRunResult(owner.pk, ALREADY_COMPLETED, message="Already completed today")

        if not force:
            due, due_details = is_due(config)
            if not due:
                self.logbook.log(
                    log_id,
                    NOT_DUE,
                    f"User {owner.pk} not due: {due_details.get('reason')}",
                    owner=owner,
                    level=Level.DEBUG,
                    details=due_details,
                )
                return UserRunResult(owner.pk, NOT_DUE, message=str(due_details.get("reason", "")))

        instruments = with_db_retry(
            lambda: list(Instrument.objects.filter(owner=owner).order_by("symbol"))
        )
        problems = []
        if not config.has_credentials:
            problems.append("market data API url/token missing")
        if not instruments:
            problems.append("no instruments tracked")
        if problems:
            message = "; ".join(problems)
            self.logbook.warning(
                log_id,
                VALIDATION_FAILED,
                f"User {owner.pk}: {message}",
                owner=owner,
                details={"problems": problems},
            )
            return UserRunResult(owner.pk, VALIDATION_FAILED, message=message)

        process_id = f"scheduled-{owner.pk}-{timezone.now():%Y%m%d%H%M%S}-{uuid.uuid4().hex[:8]}"
        self.tracker.create(
            process_id,
            owner,
            ProcessingStatus.JobType.DATA_SCHEDULING,
            len(instruments),
            {"runId": run_id, "forced": force, "stages": {}},
        )
        self.logbook.info(
            process_id,
            "SCHEDULED_TASK_START",
            f"Pipeline started for {len(instruments)} instruments",
            owner=owner,
            details={
                "runAnalysis": config.run_analysis,
                "cleanupEnabled": config.cleanup_enabled,
                "cleanupDays": config.cleanup_days,
                "limit": config.fetch_limit,
            },
        )

        try:
            stages: dict[str, Any] = {}
            stages["fetch"] = self._fetch_stage(process_id, config, instruments)
            if config.run_analysis:
                stages["analysis"] = self._analysis_stage(process_id, config, instruments)
            if config.cleanup_enabled:
                stages["cleanup"] = self._cleanup_stage(process_id, config)
            self.tracker.complete(process_id, {"stages": stages})
            self.logbook.info(
                process_id,
                "SCHEDULED_TASK_COMPLETE",
                "Pipeline completed",
                owner=owner,
                details={"stages": stages},
            )
            return UserRunResult(owner.pk, "COMPLETED", process_id, "Pipeline completed", stages)
        except Exception as exc:
            logger.exception("Scheduled pipeline crashed for user=%s process=%s", owner.pk, process_id)
            self.tracker.fail(process_id, str(exc))
            self.logbook.error(
                process_id,
                "SCHEDULED_TASK_ERROR",
                f"Pipeline failed: {exc}",
                owner=owner,
                details={"error_type": type(exc).__name__},
            )
            return UserRunResult(owner.pk, "FAILED", process_id, str(exc))

    def _fetch_stage(self, process_id: str, config: DataSchedulingConfig, instruments: list[Instrument]) -> dict[str, Any]:
        owner = config.owner
        self.logbook.info(
            process_id,
            "SCHEDULED_FETCH_START",
            f"Fetching market data for {len(instruments)} instruments",
            owner=owner,
            category=Category.API_CALL,
        )
        started = time.monotonic()
        try:
            processor = BatchProcessor(
                client=self.client_factory(config),
                tracker=self.tracker,
                logbook=self.logbook,
                analytics=self._analytics() if config.run_analysis else None,
                sleep=self.sleep,
            )
            report = processor.run(
                process_id,
                owner,
                instruments,
                fetch_limit=config.fetch_limit,
                analyze=config.run_analysis,
            )
        except Exception as exc:
            self.logbook.error(
                process_id,
                "SCHEDULED_FETCH_ERROR",
                f"Fetch stage failed: {exc}",
                owner=owner,
                category=Category.API_CALL,
                details={"error_type": type(exc).__name__},
                duration_ms=int((time.monotonic() - started) * 1000),
            )
            return {"ok": False, "error": str(exc)}
        finally:
            STAGE_SECONDS.labels(stage="fetch").observe(time.monotonic() - started)

        details = report.as_details()
        self.tracker.advance(process_id, 0, details)
        self.logbook.log(
            process_id,
            "SCHEDULED_FETCH_COMPLETE",
            f"Fetched {len(report.succeeded)}/{report.total} instruments",
            owner=owner,
            level=Level.WARNING if report.failed else Level.INFO,
            category=Category.API_CALL,
            details=details,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return {"ok": not report.failed, "partial": report.partial, **details}

    def _analysis_stage(self, process_id: str, config: DataSchedulingConfig, instruments: list[Instrument]) -> dict[str, Any]:
        owner = config.owner
        analysis_id = f"analysis-{process_id}"
        started = time.monotonic()
        self.tracker.create(
            analysis_id,
            owner,
            ProcessingStatus.JobType.ANALYSIS,
            len(instruments),
            {"parent": process_id},
        )
        self.logbook.info(
            process_id,
            "SCHEDULED_ANALYSIS_START",
            "Portfolio analysis started",
            owner=owner,
            category=Category.ANALYSIS,
            details={"analysisProcessId": analysis_id},
        )
        try:
            result = self._analytics().analyze_portfolio(owner, instruments)
        except Exception as exc:
            self.tracker.fail(analysis_id, str(exc))
            self.logbook.error(
                process_id,
                "SCHEDULED_ANALYSIS_ERROR",
                f"Analysis stage failed: {exc}",
                owner=owner,
                category=Category.ANALYSIS,
                details={"analysisProcessId": analysis_id, "error_type": type(exc).__name__},
                duration_ms=int((time.monotonic() - started) * 1000),
            )
            return {"ok": False, "processId": analysis_id, "error": str(exc)}
        finally:
            STAGE_SECONDS.labels(stage="analysis").observe(time.monotonic() - started)

        self.tracker.advance(analysis_id, len(instruments), {"result": result})
        self.tracker.complete(analysis_id)
        self.logbook.info(
            process_id,
            "SCHEDULED_ANALYSIS_COMPLETE",
            f"Analyzed {result.get('analyzed', 0)} instruments",
            owner=owner,
            category=Category.ANALYSIS,
            details={"analysisProcessId": analysis_id, **result},
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return {"ok": True, "processId": analysis_id, "analyzed": result.get("analyzed", 0)}

    def _cleanup_stage(self, process_id: str, config: DataSchedulingConfig) -> dict[str, Any]:
        owner = config.owner
        started = time.monotonic()
        self.logbook.info(
            process_id,
            "SCHEDULED_CLEANUP_START",
            f"Purging data older than {config.cleanup_days} days",
            owner=owner,
            category=Category.CLEANUP,
        )
        try:
            with self.logbook.timed(process_id, "SCHEDULED_CLEANUP", owner=owner, category=Category.CLEANUP) as extra:
                deleted = purge_older_than(owner, config.cleanup_days)
                extra.update(deleted)
                extra["message"] = (
                    f"Deleted {deleted['hourly_bars']} bars and {deleted['analysis_snapshots']} snapshots"
                )
        except Exception as exc:
            return {"ok": False, "error": str(exc)}
        finally:
            STAGE_SECONDS.labels(stage="cleanup").observe(time.monotonic() - started)
        return {"ok": True, **deleted}
