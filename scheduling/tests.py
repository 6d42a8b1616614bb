from datetime import datetime, timedelta, timezone as dt_timezone
from types import SimpleNamespace
from unittest.mock import Mock, patch

from django.contrib.auth import get_user_model
from django.db import DatabaseError
from django.test import SimpleTestCase, TestCase
from django.utils import timezone

from core.errors import ExternalApiError
from core.models import Instrument
from marketdata.models import HourlyBar
from .batch import BatchProcessor, chunked
from .logbook import Category, Level, SchedulingLogbook
from .models import ProcessingStatus, SchedulingLogEntry
from .schedule import is_due, parse_run_time, utc_day_start
from .status import STALE_MESSAGE, ProcessStatusTracker, progress_percent, snapshot_of


class FakeMarketData:
    def __init__(self, failing=()):
        self.failing = set(failing)
        self.calls = []

    def fetch_hourly(self, symbol, limit=24):
        self.calls.append((symbol, limit))
        if symbol in self.failing:
            raise ExternalApiError(f"{symbol}: API request failed with status 500", status_code=500)
        start = timezone.now().replace(minute=0, second=0, microsecond=0) - timedelta(hours=limit)
        return [
            {"ts": start + timedelta(hours=i), "open": 1, "high": 2, "low": 0.5, "close": 1.5, "volume": 3}
            for i in range(limit)
        ]


class ProgressTest(SimpleTestCase):
    def test_progress_percent(self):
        self.assertEqual(progress_percent(0, 0), 0)
        self.assertEqual(progress_percent(5, 0), 0)
        self.assertEqual(progress_percent(1, 3), 33)
        self.assertEqual(progress_percent(2, 3), 67)
        self.assertEqual(progress_percent(1, 40), 3)
        self.assertEqual(progress_percent(12, 12), 100)

    def test_chunked(self):
        self.assertEqual(chunked(list(range(7)), 3), [[0, 1, 2], [3, 4, 5], [6]])
        self.assertEqual(chunked([], 5), [])


class ScheduleTest(SimpleTestCase):
    def _config(self, run_time="09:00", zone="America/New_York"):
        return SimpleNamespace(daily_run_time=run_time, time_zone=zone)

    def test_blank_run_time_is_always_due(self):
        due, details = is_due(self._config(run_time=""))
        self.assertTrue(due)
        self.assertIn("No daily run time", details["reason"])

    def test_due_inside_tolerance_in_local_zone(self):
        now = datetime(2024, 6, 1, 13, 2, tzinfo=dt_timezone.utc)  # 09:02 EDT
        due, details = is_due(self._config(), now=now, tolerance_minutes=5)
        self.assertTrue(due)
        self.assertEqual(details["differenceSeconds"], 120)

    def test_not_due_outside_tolerance(self):
        now = datetime(2024, 6, 1, 13, 10, tzinfo=dt_timezone.utc)
        self.assertFalse(is_due(self._config(), now=now, tolerance_minutes=5)[0])

    def test_tolerance_boundary_is_exclusive(self):
        now = datetime(2024, 6, 1, 12, 55, tzinfo=dt_timezone.utc)  # 08:55 EDT
        self.assertFalse(is_due(self._config(), now=now, tolerance_minutes=5)[0])

    def test_window_wraps_past_midnight(self):
        late = self._config(run_time="23:58", zone="UTC")
        after = datetime(2024, 6, 2, 0, 1, tzinfo=dt_timezone.utc)
        due, details = is_due(late, now=after, tolerance_minutes=5)
        self.assertTrue(due)
        self.assertEqual(details["differenceSeconds"], 180)
        self.assertTrue(details["scheduledTimeInZone"].startswith("2024-06-01T23:58"))

        early = self._config(run_time="00:02", zone="UTC")
        before = datetime(2024, 6, 1, 23, 59, tzinfo=dt_timezone.utc)
        self.assertTrue(is_due(early, now=before, tolerance_minutes=5)[0])

    def test_invalid_zone_or_time_is_not_due(self):
        due, details = is_due(self._config(zone="Mars/Olympus"))
        self.assertFalse(due)
        self.assertIn("Invalid", details["reason"])
        self.assertFalse(is_due(self._config(run_time="9am"))[0])

    def test_helpers(self):
        self.assertEqual(parse_run_time("07:30").hour, 7)
        start = utc_day_start(datetime(2024, 6, 1, 23, 59, tzinfo=dt_timezone(timedelta(hours=-5))))
        self.assertEqual(start, datetime(2024, 6, 2, tzinfo=dt_timezone.utc))


class ProcessStatusTrackerTest(TestCase):
    def setUp(self):
        self.user = get_user_model().objects.create_user("sched", password="x")
        self.tracker = ProcessStatusTracker()

    def test_create_is_idempotent(self):
        self.tracker.create("p-1", self.user, ProcessingStatus.JobType.DATA_SCHEDULING, 4)
        self.tracker.advance("p-1", 2)
        self.tracker.fail("p-1", "boom")

        again = self.tracker.create("p-1", self.user, ProcessingStatus.JobType.DATA_SCHEDULING, 6)

        self.assertEqual(ProcessingStatus.objects.filter(process_id="p-1").count(), 1)
        self.assertEqual(again.status, ProcessingStatus.Status.RUNNING)
        self.assertEqual(again.processed_items, 0)
        self.assertEqual(again.total_items, 6)
        self.assertIsNone(again.completed_at)

    def test_advance_merges_details(self):
        self.tracker.create("p-2", self.user, ProcessingStatus.JobType.DATA_SCHEDULING, 10, {"a": 1})
        self.tracker.advance("p-2", 5, {"b": 2})
        row = self.tracker.advance("p-2", 0, {"a": 3})
        self.assertEqual(row.processed_items, 5)
        self.assertEqual(row.details, {"a": 3, "b": 2})
        self.assertIsNone(self.tracker.advance("missing", 1))

    def test_finalize_happens_once(self):
        self.tracker.create("p-3", self.user, ProcessingStatus.JobType.DATA_SCHEDULING, 1)
        self.assertTrue(self.tracker.complete("p-3", {"done": True}))
        self.assertFalse(self.tracker.fail("p-3", "late failure"))
        self.tracker.advance("p-3", 1)

        row = ProcessingStatus.objects.get(process_id="p-3")
        self.assertEqual(row.status, ProcessingStatus.Status.COMPLETED)
        self.assertEqual(row.error, "")
        self.assertEqual(row.processed_items, 0)
        self.assertTrue(row.details["done"])
        self.assertIsNotNone(row.completed_at)

    def test_reclaim_stale_fails_old_running_rows(self):
        self.tracker.create("old", self.user, ProcessingStatus.JobType.DATA_SCHEDULING)
        self.tracker.create("fresh", self.user, ProcessingStatus.JobType.DATA_SCHEDULING)
        self.tracker.create("old-done", self.user, ProcessingStatus.JobType.DATA_SCHEDULING)
        self.tracker.complete("old-done")
        three_hours_ago = timezone.now() - timedelta(hours=3)
        ProcessingStatus.objects.filter(process_id__in=["old", "old-done"]).update(updated_at=three_hours_ago)

        self.assertEqual(self.tracker.reclaim_stale(60), 1)

        old = ProcessingStatus.objects.get(process_id="old")
        self.assertEqual(old.status, ProcessingStatus.Status.FAILED)
        self.assertEqual(old.error, STALE_MESSAGE)
        self.assertEqual(ProcessingStatus.objects.get(process_id="fresh").status, ProcessingStatus.Status.RUNNING)
        self.assertEqual(ProcessingStatus.objects.get(process_id="old-done").status, ProcessingStatus.Status.COMPLETED)

    def test_snapshot(self):
        self.tracker.create("p-4", self.user, ProcessingStatus.JobType.DATA_SCHEDULING, 3)
        self.tracker.advance("p-4", 1)
        snap = self.tracker.snapshot("p-4")
        self.assertEqual(snap["progressPercent"], 33)
        self.assertEqual(snap["status"], "RUNNING")
        self.assertNotIn("error", snap)
        self.tracker.fail("p-4", "bad")
        self.assertEqual(snapshot_of(ProcessingStatus.objects.get(process_id="p-4"))["error"], "bad")
        self.assertIsNone(self.tracker.snapshot("nope"))


class SchedulingLogbookTest(TestCase):
    def setUp(self):
        self.user = get_user_model().objects.create_user("logs", password="x")
        self.logbook = SchedulingLogbook()

    def test_log_creates_missing_status_row(self):
        entry = self.logbook.info("p-new", "SCHEDULED_TASK_START", "go", owner=self.user, symbol="BTC")

        self.assertEqual(entry.process_id, "p-new")
        self.assertEqual(entry.level, Level.INFO)
        self.assertEqual(entry.category, Category.SCHEDULING)
        self.assertTrue(ProcessingStatus.objects.filter(process_id="p-new").exists())

    def test_log_mirrors_to_python_logger(self):
        with self.assertLogs("scheduling.logbook", "ERROR") as logs:
            self.logbook.error("p-x", "API_FETCH_ERROR", "down", owner=self.user, symbol="ETH")
        self.assertIn("API_FETCH_ERROR ETH", logs.output[0])

    def test_write_failure_does_not_raise(self):
        with patch("scheduling.logbook.SchedulingLogEntry.objects.create", side_effect=DatabaseError("locked")):
            with self.assertLogs("scheduling.logbook", "WARNING"):
                self.assertIsNone(self.logbook.info("p-y", "X", "msg"))

    def test_timed_logs_complete_and_error(self):
        with self.logbook.timed("p-t", "SCHEDULED_CLEANUP", owner=self.user) as extra:
            extra["deleted"] = 3
        with self.assertRaises(RuntimeError):
            with self.logbook.timed("p-t", "SCHEDULED_FETCH", owner=self.user):
                raise RuntimeError("nope")

        ops = dict(SchedulingLogEntry.objects.filter(process_id="p-t").values_list("operation", "level"))
        self.assertEqual(ops["SCHEDULED_CLEANUP_COMPLETE"], Level.INFO)
        self.assertEqual(ops["SCHEDULED_FETCH_ERROR"], Level.ERROR)
        done = SchedulingLogEntry.objects.get(operation="SCHEDULED_CLEANUP_COMPLETE")
        self.assertEqual(done.details["deleted"], 3)
        self.assertIsNotNone(done.duration_ms)


class BatchProcessorTest(TestCase):
    def setUp(self):
        self.user = get_user_model().objects.create_user("batch", password="x")
        self.instruments = [
            Instrument.objects.create(owner=self.user, symbol=f"S{i:02d}") for i in range(12)
        ]
        self.tracker = ProcessStatusTracker()
        self.logbook = SchedulingLogbook(self.tracker)
        self.tracker.create("b-1", self.user, ProcessingStatus.JobType.DATA_SCHEDULING, len(self.instruments))

    def _processor(self, client, analytics=None):
        self.sleep = Mock()
        return BatchProcessor(
            client=client,
            tracker=self.tracker,
            logbook=self.logbook,
            analytics=analytics,
            batch_size=5,
            delay_seconds=1.0,
            sleep=self.sleep,
        )

    def test_batches_of_five_with_pauses_between(self):
        client = FakeMarketData()
        report = self._processor(client).run("b-1", self.user, self.instruments, fetch_limit=3)

        self.assertEqual(report.processed, 12)
        self.assertEqual(len(report.succeeded), 12)
        self.assertEqual(report.bars_stored, 36)
        self.assertEqual(self.sleep.call_count, 2)
        self.sleep.assert_called_with(1.0)
        self.assertEqual([c[0] for c in client.calls], [i.symbol for i in self.instruments])
        row = ProcessingStatus.objects.get(process_id="b-1")
        self.assertEqual(row.processed_items, 12)
        self.assertEqual(row.details["lastBatch"], 3)
        self.assertEqual(
            SchedulingLogEntry.objects.filter(process_id="b-1", operation="BATCH_COMPLETE").count(),
            3,
        )

    def test_failing_symbol_is_isolated(self):
        client = FakeMarketData(failing={"S03", "S07"})
        report = self._processor(client).run("b-1", self.user, self.instruments, fetch_limit=2)

        self.assertEqual(sorted(report.failed), ["S03", "S07"])
        self.assertEqual(len(report.succeeded), 10)
        self.assertTrue(report.partial)
        self.assertFalse(HourlyBar.objects.filter(instrument__symbol="S03").exists())
        self.assertTrue(HourlyBar.objects.filter(instrument__symbol="S08").exists())
        errors = SchedulingLogEntry.objects.filter(process_id="b-1", operation="API_FETCH_ERROR")
        self.assertEqual(sorted(errors.values_list("symbol", flat=True)), ["S03", "S07"])
        self.assertEqual(report.as_details()["failedSymbols"], ["S03", "S07"])

    def test_analytics_run_per_batch_on_fetched_symbols(self):
        analytics = Mock()
        analytics.analyze_batch.side_effect = lambda insts: {i.symbol: object() for i in insts}
        client = FakeMarketData(failing={"S00"})

        report = self._processor(client, analytics).run("b-1", self.user, self.instruments, analyze=True)

        self.assertEqual(analytics.analyze_batch.call_count, 3)
        first_batch = [i.symbol for i in analytics.analyze_batch.call_args_list[0].args[0]]
        self.assertEqual(first_batch, ["S01", "S02", "S03", "S04"])
        self.assertEqual(len(report.analyzed), 11)

    def test_analytics_failure_is_logged_and_batch_continues(self):
        analytics = Mock()
        analytics.analyze_batch.side_effect = RuntimeError("pandas exploded")

        report = self._processor(FakeMarketData(), analytics).run("b-1", self.user, self.instruments, analyze=True)

        self.assertEqual(report.processed, 12)
        self.assertEqual(
            SchedulingLogEntry.objects.filter(process_id="b-1", operation="BATCH_ANALYSIS_ERROR").count(),
            3,
        )
