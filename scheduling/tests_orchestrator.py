from datetime import timedelta
from unittest.mock import Mock, patch

from django.contrib.auth import get_user_model
from django.db import OperationalError
from django.test import TestCase, override_settings
from django.utils import timezone

from core.models import Instrument
from marketdata.analytics import TechnicalAnalyticsProvider
from marketdata.models import HourlyBar
from .models import DataSchedulingConfig, ProcessingStatus, SchedulingLogEntry
from .orchestrator import ALREADY_COMPLETED, NOT_DUE, VALIDATION_FAILED, SchedulingOrchestrator
from .schedule import utc_day_start
from .status import STALE_MESSAGE
from .tasks import purge_scheduling_history, run_scheduled_tasks
from .tests import FakeMarketData


class OrchestratorTestMixin:
    def make_user(self, username, symbols=("BTC", "ETH"), **config):
        user = get_user_model().objects.create_user(username, password="x")
        for symbol in symbols:
            Instrument.objects.create(owner=user, symbol=symbol)
        defaults = {
            "enabled": True,
            "api_url": "https://data-api.example.com",
            "api_token": "token-123",
            "fetch_limit": 3,
        }
        defaults.update(config)
        DataSchedulingConfig.objects.create(owner=user, **defaults)
        return user

    def make_orchestrator(self, client=None):
        self.client_fake = client or FakeMarketData()
        return SchedulingOrchestrator(
            client_factory=lambda config: self.client_fake,
            analytics=TechnicalAnalyticsProvider(),
            sleep=lambda seconds: None,
        )

    def user_runs(self, user, job_type=ProcessingStatus.JobType.DATA_SCHEDULING):
        return ProcessingStatus.objects.filter(owner=user, job_type=job_type)


class SchedulingOrchestratorTest(OrchestratorTestMixin, TestCase):
    def test_full_pipeline_completes(self):
        user = self.make_user("alice", cleanup_enabled=True, cleanup_days=30)

        summary = self.make_orchestrator().run()

        result = summary.results[0]
        self.assertEqual(result.outcome, "COMPLETED")
        row = ProcessingStatus.objects.get(process_id=result.process_id)
        self.assertTrue(row.process_id.startswith(f"scheduled-{user.pk}-"))
        self.assertEqual(row.status, ProcessingStatus.Status.COMPLETED)
        self.assertEqual(row.processed_items, 2)
        self.assertEqual(row.total_items, 2)
        self.assertEqual(set(row.details["stages"]), {"fetch", "analysis", "cleanup"})
        self.assertEqual(HourlyBar.objects.filter(instrument__owner=user).count(), 6)

        run_row = ProcessingStatus.objects.get(process_id=summary.run_id)
        self.assertIsNone(run_row.owner)
        self.assertEqual(run_row.job_type, ProcessingStatus.JobType.SCHEDULER_RUN)
        self.assertEqual(run_row.status, ProcessingStatus.Status.COMPLETED)

    def test_analysis_gets_its_own_status_row(self):
        user = self.make_user("bob")
        summary = self.make_orchestrator().run()

        process_id = summary.results[0].process_id
        analysis = ProcessingStatus.objects.get(process_id=f"analysis-{process_id}")
        self.assertEqual(analysis.owner, user)
        self.assertEqual(analysis.job_type, ProcessingStatus.JobType.ANALYSIS)
        self.assertEqual(analysis.status, ProcessingStatus.Status.COMPLETED)
        self.assertEqual(analysis.details["parent"], process_id)

    def test_completed_today_skips_user(self):
        user = self.make_user("carol")
        ProcessingStatus.objects.create(
            process_id="scheduled-earlier",
            owner=user,
            job_type=ProcessingStatus.JobType.DATA_SCHEDULING,
            status=ProcessingStatus.Status.COMPLETED,
            started_at=timezone.now(),
            completed_at=timezone.now(),
            updated_at=timezone.now(),
        )

        summary = self.make_orchestrator().run()

        self.assertEqual(summary.results[0].outcome, ALREADY_COMPLETED)
        self.assertEqual(self.user_runs(user).count(), 1)
        self.assertEqual(self.client_fake.calls, [])
        skip = SchedulingLogEntry.objects.get(operation=ALREADY_COMPLETED)
        self.assertEqual(skip.process_id, summary.run_id)
        self.assertEqual(skip.owner, user)

    def test_completion_before_midnight_utc_does_not_count(self):
        user = self.make_user("dave")
        yesterday = utc_day_start() - timedelta(minutes=1)
        ProcessingStatus.objects.create(
            process_id="scheduled-yesterday",
            owner=user,
            job_type=ProcessingStatus.JobType.DATA_SCHEDULING,
            status=ProcessingStatus.Status.COMPLETED,
            started_at=yesterday,
            completed_at=yesterday,
            updated_at=yesterday,
        )

        summary = self.make_orchestrator().run()

        self.assertEqual(summary.results[0].outcome, "COMPLETED")

    def test_running_row_today_does_not_block(self):
        user = self.make_user("erin")
        ProcessingStatus.objects.create(
            process_id="scheduled-in-flight",
            owner=user,
            job_type=ProcessingStatus.JobType.DATA_SCHEDULING,
            status=ProcessingStatus.Status.RUNNING,
            started_at=timezone.now(),
            updated_at=timezone.now(),
        )

        summary = self.make_orchestrator().run()

        self.assertEqual(summary.results[0].outcome, "COMPLETED")

    def test_force_ignores_completed_today_and_schedule(self):
        user = self.make_user("frank", daily_run_time=self._far_from_now())
        ProcessingStatus.objects.create(
            process_id="scheduled-earlier",
            owner=user,
            job_type=ProcessingStatus.JobType.DATA_SCHEDULING,
            status=ProcessingStatus.Status.COMPLETED,
            started_at=timezone.now(),
            completed_at=timezone.now(),
            updated_at=timezone.now(),
        )

        summary = self.make_orchestrator().run(force=True)

        self.assertTrue(summary.forced)
        self.assertEqual(summary.results[0].outcome, "COMPLETED")
        self.assertEqual(self.user_runs(user).count(), 2)

    def test_overlapping_passes_can_both_run_a_user(self):
        # The ran-today check and the status row are a best-effort lock only.
        user = self.make_user("fred")
        first = self.make_orchestrator()
        second = SchedulingOrchestrator(
            client_factory=lambda config: FakeMarketData(),
            analytics=TechnicalAnalyticsProvider(),
            sleep=lambda seconds: None,
        )
        checked = first.completed_today

        def racing_check(owner):
            done = checked(owner)
            second.run()
            return done

        first.completed_today = racing_check
        summary = first.run()

        self.assertEqual(summary.results[0].outcome, "COMPLETED")
        completed = self.user_runs(user).filter(status=ProcessingStatus.Status.COMPLETED)
        self.assertEqual(completed.count(), 2)

    def test_not_due_is_skipped(self):
        user = self.make_user("gina", daily_run_time=self._far_from_now())

        summary = self.make_orchestrator().run()

        self.assertEqual(summary.results[0].outcome, NOT_DUE)
        self.assertEqual(self.user_runs(user).count(), 0)

    def test_validation_failure_moves_to_next_user(self):
        broken = self.make_user("hank", api_token="")
        empty = self.make_user("ivy", symbols=())
        ok = self.make_user("jack")

        summary = self.make_orchestrator().run()

        outcomes = {r.user_id: r.outcome for r in summary.results}
        self.assertEqual(outcomes[broken.pk], VALIDATION_FAILED)
        self.assertEqual(outcomes[empty.pk], VALIDATION_FAILED)
        self.assertEqual(outcomes[ok.pk], "COMPLETED")
        self.assertEqual(self.user_runs(broken).count(), 0)
        warnings = SchedulingLogEntry.objects.filter(operation=VALIDATION_FAILED)
        self.assertEqual(warnings.count(), 2)
        self.assertIn("1 completed", summary.message)
        self.assertIn("2 invalid", summary.message)

    def test_fetch_failures_do_not_block_cleanup(self):
        user = self.make_user("kate", symbols=("BTC",), cleanup_enabled=True, cleanup_days=7)
        inst = Instrument.objects.get(owner=user)
        HourlyBar.objects.create(
            instrument=inst,
            ts=timezone.now() - timedelta(days=30),
            open=1,
            high=1,
            low=1,
            close=1,
        )

        summary = self.make_orchestrator(FakeMarketData(failing={"BTC"})).run()

        result = summary.results[0]
        self.assertEqual(result.outcome, "COMPLETED")
        self.assertFalse(result.details["fetch"]["ok"])
        self.assertEqual(result.details["fetch"]["failedSymbols"], ["BTC"])
        self.assertEqual(result.details["cleanup"]["hourly_bars"], 1)
        self.assertFalse(HourlyBar.objects.filter(instrument=inst).exists())
        self.assertTrue(
            SchedulingLogEntry.objects.filter(process_id=result.process_id, operation="API_FETCH_ERROR").exists()
        )
        cleanup = SchedulingLogEntry.objects.get(process_id=result.process_id, operation="SCHEDULED_CLEANUP_COMPLETE")
        self.assertEqual(cleanup.message, "Deleted 1 bars and 0 snapshots")
        self.assertEqual(cleanup.details["hourly_bars"], 1)
        self.assertIsNotNone(cleanup.duration_ms)

    def test_cleanup_failure_is_logged_and_contained(self):
        self.make_user("lena", cleanup_enabled=True)

        with patch("scheduling.orchestrator.purge_older_than", side_effect=RuntimeError("disk full")):
            summary = self.make_orchestrator().run()

        result = summary.results[0]
        self.assertEqual(result.outcome, "COMPLETED")
        self.assertEqual(result.details["cleanup"], {"ok": False, "error": "disk full"})
        error = SchedulingLogEntry.objects.get(process_id=result.process_id, operation="SCHEDULED_CLEANUP_ERROR")
        self.assertEqual(error.details["error_type"], "RuntimeError")

    def test_market_data_client_failure_is_contained(self):
        self.make_user("liam")
        orchestrator = self.make_orchestrator()
        orchestrator.client_factory = Mock(side_effect=RuntimeError("no client"))

        summary = orchestrator.run()

        result = summary.results[0]
        self.assertEqual(result.outcome, "COMPLETED")
        self.assertEqual(result.details["fetch"], {"ok": False, "error": "no client"})
        self.assertTrue(
            SchedulingLogEntry.objects.filter(process_id=result.process_id, operation="SCHEDULED_FETCH_ERROR").exists()
        )

    def test_crashed_pipeline_fails_that_user_only(self):
        first = self.make_user("mia", cleanup_enabled=True)
        second = self.make_user("noah")
        orchestrator = self.make_orchestrator()
        orchestrator._cleanup_stage = Mock(side_effect=RuntimeError("disk full"))

        with self.assertLogs("scheduling.orchestrator", "ERROR"):
            summary = orchestrator.run()

        outcomes = {r.user_id: r for r in summary.results}
        self.assertEqual(outcomes[first.pk].outcome, "FAILED")
        self.assertEqual(outcomes[second.pk].outcome, "COMPLETED")
        failed = ProcessingStatus.objects.get(process_id=outcomes[first.pk].process_id)
        self.assertEqual(failed.status, ProcessingStatus.Status.FAILED)
        self.assertEqual(failed.error, "disk full")

    def test_read_failure_before_pipeline_skips_only_that_user(self):
        first = self.make_user("mark")
        second = self.make_user("nina")
        orchestrator = self.make_orchestrator()

        def completed_today(owner):
            if owner.pk == first.pk:
                raise OperationalError("database is locked")
            return False

        orchestrator.completed_today = completed_today

        with self.assertLogs("scheduling.orchestrator", "ERROR"):
            summary = orchestrator.run()

        outcomes = {r.user_id: r for r in summary.results}
        self.assertEqual(outcomes[first.pk].outcome, "FAILED")
        self.assertEqual(outcomes[first.pk].message, "database is locked")
        self.assertEqual(outcomes[second.pk].outcome, "COMPLETED")
        self.assertFalse(self.user_runs(first).exists())
        run_row = ProcessingStatus.objects.get(process_id=summary.run_id)
        self.assertEqual(run_row.status, ProcessingStatus.Status.COMPLETED)
        self.assertTrue(
            SchedulingLogEntry.objects.filter(
                process_id=summary.run_id, owner=first, operation="SCHEDULED_TASK_ERROR"
            ).exists()
        )

    def test_aborted_pass_finalizes_its_own_row(self):
        self.make_user("omar")
        orchestrator = self.make_orchestrator()
        orchestrator.tracker.reclaim_stale = Mock(side_effect=OperationalError("connection lost"))

        with self.assertLogs("scheduling.orchestrator", "ERROR"), self.assertRaises(OperationalError):
            orchestrator.run()

        run_row = ProcessingStatus.objects.get(job_type=ProcessingStatus.JobType.SCHEDULER_RUN)
        self.assertEqual(run_row.status, ProcessingStatus.Status.FAILED)
        self.assertEqual(run_row.error, "connection lost")

    @override_settings(SCHEDULING_STALE_MINUTES=60)
    def test_stale_running_rows_are_reclaimed_first(self):
        self.make_user("olga")
        ProcessingStatus.objects.create(
            process_id="scheduled-stuck",
            job_type=ProcessingStatus.JobType.DATA_SCHEDULING,
            started_at=timezone.now(),
            updated_at=timezone.now(),
        )
        ProcessingStatus.objects.filter(process_id="scheduled-stuck").update(
            updated_at=timezone.now() - timedelta(hours=3)
        )

        summary = self.make_orchestrator().run()

        self.assertEqual(summary.reclaimed, 1)
        stuck = ProcessingStatus.objects.get(process_id="scheduled-stuck")
        self.assertEqual(stuck.status, ProcessingStatus.Status.FAILED)
        self.assertEqual(stuck.error, STALE_MESSAGE)
        self.assertTrue(SchedulingLogEntry.objects.filter(operation="STALE_STATUS_CLEANUP").exists())

    def test_disabled_configs_are_ignored(self):
        self.make_user("pete", enabled=False)
        summary = self.make_orchestrator().run()
        self.assertEqual(summary.results, [])

    def _far_from_now(self):
        return (timezone.now() + timedelta(hours=6)).strftime("%H:%M")


class SchedulingTasksTest(OrchestratorTestMixin, TestCase):
    def test_run_scheduled_tasks_returns_summary(self):
        self.make_user("quinn")
        with patch("scheduling.orchestrator.get_market_data_client", return_value=FakeMarketData()):
            result = run_scheduled_tasks()

        self.assertTrue(result["success"])
        self.assertTrue(result["runId"].startswith("scheduler-"))
        self.assertEqual(result["results"][0]["outcome"], "COMPLETED")

    @override_settings(SCHEDULING_LOCK_ENABLED=True)
    def test_run_scheduled_tasks_respects_lock(self):
        with patch("scheduling.tasks.acquire_redis_lock", return_value=(Mock(), "")):
            result = run_scheduled_tasks()
        self.assertFalse(result["success"])
        self.assertFalse(ProcessingStatus.objects.exists())

    def test_purge_scheduling_history(self):
        old = timezone.now() - timedelta(days=45)
        for pid, status in (("old-done", "COMPLETED"), ("old-running", "RUNNING"), ("new-done", "COMPLETED")):
            ProcessingStatus.objects.create(
                process_id=pid,
                job_type=ProcessingStatus.JobType.DATA_SCHEDULING,
                status=status,
                started_at=timezone.now(),
                updated_at=timezone.now(),
            )
        SchedulingLogEntry.objects.create(process_id="old-done", category="SCHEDULING", operation="X", message="m")
        SchedulingLogEntry.objects.create(process_id="new-done", category="SCHEDULING", operation="Y", message="m")
        ProcessingStatus.objects.filter(process_id__in=["old-done", "old-running"]).update(updated_at=old)
        SchedulingLogEntry.objects.filter(operation="X").update(timestamp=old)

        result = purge_scheduling_history(30)

        self.assertEqual(result, {"logs": 1, "statuses": 1})
        self.assertEqual(
            set(ProcessingStatus.objects.values_list("process_id", flat=True)),
            {"old-running", "new-done"},
        )
        self.assertEqual(SchedulingLogEntry.objects.get().operation, "Y")
