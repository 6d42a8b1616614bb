from __future__ import annotations

import importlib.util
import json
import os
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import Mock, patch

import redis
from celery.signals import task_failure
from django.conf import settings
from django.test import SimpleTestCase

from config import celery as celery_cfg
from execution.tasks import process_price_ticks
from scheduling.tasks import purge_scheduling_history, run_scheduled_tasks


def _load_settings_with(env: dict[str, str]):
    path = Path(celery_cfg.__file__).with_name("settings.py")
    spec = importlib.util.spec_from_file_location("config_settings_fresh", path)
    module = importlib.util.module_from_spec(spec)
    with patch.dict(os.environ, env, clear=False):
        spec.loader.exec_module(module)
    return module


class FailurePayloadTest(SimpleTestCase):
    def test_scheduler_failure_payload_carries_queue_and_retries(self):
        request = SimpleNamespace(delivery_info={"routing_key": "scheduling"}, retries=2)

        payload = celery_cfg._failure_payload(
            run_scheduled_tasks.name,
            "run-1",
            RuntimeError("database is locked"),
            [],
            {"force": True},
            SimpleNamespace(traceback="x" * 5000),
            request,
        )

        self.assertEqual(payload["task_name"], "scheduling.tasks.run_scheduled_tasks")
        self.assertEqual(payload["queue"], "scheduling")
        self.assertEqual(payload["retries"], 2)
        self.assertEqual(payload["kwargs"], {"force": True})
        self.assertEqual(payload["error_type"], "RuntimeError")
        self.assertEqual(len(payload["traceback"]), 4000)
        json.dumps(payload)

    def test_payload_without_request_or_exception(self):
        payload = celery_cfg._failure_payload(purge_scheduling_history.name, None, None, None, None, None)
        self.assertEqual(payload["task_id"], "")
        self.assertEqual(payload["error"], "unknown error")
        self.assertEqual(payload["queue"], "")
        self.assertEqual(payload["retries"], 0)
        self.assertEqual(payload["args"], [])


class TaskFailureSignalTest(SimpleTestCase):
    def test_price_tick_failure_is_logged_pushed_and_notified(self):
        with (
            patch("config.celery._push_task_failure_dlq") as push_mock,
            patch("config.celery._notify_task_failure") as notify_mock,
            self.assertLogs("config.celery", "ERROR") as logs,
        ):
            task_failure.send(
                sender=process_price_ticks,
                task_id="tick-7",
                exception=ValueError("bad price for BTC"),
                args=[3, {"BTC": "x"}],
                kwargs={},
                einfo=SimpleNamespace(traceback="tb"),
            )

        payload = push_mock.call_args.args[0]
        self.assertEqual(payload["task_name"], "execution.tasks.process_price_ticks")
        self.assertEqual(payload["args"], [3, {"BTC": "x"}])
        self.assertIn("execution.tasks.process_price_ticks[tick-7]", logs.output[0])
        notify_mock.assert_called_once_with("execution.tasks.process_price_ticks", "tick-7", "bad price for BTC")


class DeadLetterQueueTest(SimpleTestCase):
    @patch.dict(os.environ, {"CELERY_DLQ_REDIS_KEY": "foliowatch:dlq", "CELERY_DLQ_MAXLEN": "10"}, clear=False)
    def test_maxlen_has_a_floor(self):
        pipe = Mock()
        client = Mock()
        client.pipeline.return_value = pipe
        with patch("config.celery._dlq_client", return_value=client):
            celery_cfg._push_task_failure_dlq({"task_name": run_scheduled_tasks.name})

        pipe.lpush.assert_called_once()
        pipe.ltrim.assert_called_once_with("foliowatch:dlq", 0, 99)

    def test_redis_errors_are_logged_not_raised(self):
        pipe = Mock()
        pipe.execute.side_effect = redis.ConnectionError("refused")
        client = Mock()
        client.pipeline.return_value = pipe
        with (
            patch("config.celery._dlq_client", return_value=client),
            self.assertLogs("config.celery", "WARNING"),
        ):
            celery_cfg._push_task_failure_dlq({"task_name": purge_scheduling_history.name})


class FailureNotifyTest(SimpleTestCase):
    @patch.dict(os.environ, {"CELERY_NOTIFY_ON_FAILURE": "true", "CELERY_FAILURE_NOTIFY_THROTTLE_SECONDS": "5"}, clear=False)
    def test_throttle_key_is_per_task_with_minimum_window(self):
        client = Mock()
        client.set.return_value = True
        with (
            patch("config.celery._dlq_client", return_value=client),
            patch("core.notifications.notify_error") as notify_mock,
        ):
            celery_cfg._notify_task_failure(run_scheduled_tasks.name, "run-2", "boom")

        client.set.assert_called_once_with(
            "celery:notify_fail:scheduling.tasks.run_scheduled_tasks", "1", nx=True, ex=30
        )
        notify_mock.assert_called_once_with("celery:scheduling.tasks.run_scheduled_tasks", "run-2: boom")

    @patch.dict(os.environ, {"CELERY_NOTIFY_ON_FAILURE": "false"}, clear=False)
    def test_notifications_can_be_switched_off(self):
        with (
            patch("config.celery._dlq_client") as client_mock,
            patch("core.notifications.notify_error") as notify_mock,
        ):
            celery_cfg._notify_task_failure(run_scheduled_tasks.name, "run-3", "boom")

        client_mock.assert_not_called()
        notify_mock.assert_not_called()


class BeatScheduleTest(SimpleTestCase):
    def test_scheduler_and_purge_are_scheduled(self):
        tasks = {entry["task"] for entry in settings.CELERY_BEAT_SCHEDULE.values()}
        self.assertIn("scheduling.tasks.purge_scheduling_history", tasks)
        if settings.SCHEDULING_ENABLED:
            self.assertIn("scheduling.tasks.run_scheduled_tasks", tasks)

    def test_beat_period_never_exceeds_due_tolerance(self):
        fresh = _load_settings_with(
            {
                "SCHEDULING_ENABLED": "true",
                "SCHEDULING_BEAT_MINUTES": "15",
                "SCHEDULING_DUE_TOLERANCE_MINUTES": "5",
            }
        )
        self.assertEqual(fresh.SCHEDULING_BEAT_MINUTES, 5)
        self.assertEqual(fresh.CELERY_BEAT_SCHEDULE["run-scheduled-tasks"]["schedule"].minute, set(range(0, 60, 5)))

    def test_shorter_beat_is_kept(self):
        fresh = _load_settings_with({"SCHEDULING_BEAT_MINUTES": "2", "SCHEDULING_DUE_TOLERANCE_MINUTES": "5"})
        self.assertEqual(fresh.SCHEDULING_BEAT_MINUTES, 2)
