from decimal import Decimal
from unittest.mock import Mock, patch

from django.contrib.auth import get_user_model
from django.test import override_settings
from django.urls import reverse
from django.utils import timezone
from rest_framework.test import APITestCase

from core.models import AutoTradeSettings, Instrument, TradingProfile
from execution.models import Transaction
from scheduling.models import DataSchedulingConfig, ProcessingStatus, SchedulingLogEntry

PLAIN_MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]


@override_settings(MIDDLEWARE=PLAIN_MIDDLEWARE)
class SchedulerTriggerApiTest(APITestCase):
    def setUp(self):
        user_model = get_user_model()
        self.staff = user_model.objects.create_user("ops", password="secret-123", is_staff=True)
        self.user = user_model.objects.create_user("tester", password="secret-123")
        self.url = reverse("scheduling-trigger")

    @patch("api.views.run_scheduled_tasks")
    def test_staff_trigger_is_accepted(self, task):
        task.delay.return_value = Mock(id="task-1")
        self.client.force_authenticate(self.staff)

        resp = self.client.post(self.url, {}, format="json")

        self.assertEqual(resp.status_code, 202)
        self.assertTrue(resp.data["success"])
        self.assertEqual(resp.data["taskId"], "task-1")
        task.delay.assert_called_once_with(force=False)

    @patch("api.views.run_scheduled_tasks")
    def test_force_flag_is_passed_through(self, task):
        self.client.force_authenticate(self.staff)
        resp = self.client.post(f"{self.url}?force=true", {}, format="json")
        self.assertEqual(resp.status_code, 202)
        task.delay.assert_called_once_with(force=True)

        resp_bad = self.client.post(self.url, {"force": "maybe"}, format="json")
        self.assertEqual(resp_bad.status_code, 400)

    @patch("api.views.run_scheduled_tasks")
    def test_regular_user_cannot_trigger(self, task):
        self.client.force_authenticate(self.user)
        resp = self.client.post(self.url, {}, format="json")
        self.assertEqual(resp.status_code, 403)
        task.delay.assert_not_called()

    @override_settings(SCHEDULING_TRIGGER_TOKEN="s3cret")
    @patch("api.views.run_scheduled_tasks")
    def test_bearer_token_trigger(self, task):
        resp = self.client.post(self.url, {}, format="json", HTTP_AUTHORIZATION="Bearer s3cret")
        self.assertEqual(resp.status_code, 202)

        resp_wrong = self.client.post(self.url, {}, format="json", HTTP_AUTHORIZATION="Bearer nope")
        self.assertIn(resp_wrong.status_code, (401, 403))
        self.assertEqual(task.delay.call_count, 1)

    @patch("api.views.run_scheduled_tasks")
    def test_anonymous_without_token_is_rejected(self, task):
        resp = self.client.post(self.url, {}, format="json")
        self.assertIn(resp.status_code, (401, 403))
        task.delay.assert_not_called()

    @patch("api.views.run_scheduled_tasks")
    def test_broker_failure_still_answers_accepted(self, task):
        task.delay.side_effect = ConnectionError("broker down")
        self.client.force_authenticate(self.staff)

        resp = self.client.post(self.url, {}, format="json")

        self.assertEqual(resp.status_code, 202)
        self.assertFalse(resp.data["success"])
        self.assertIn("broker down", resp.data["message"])


@override_settings(MIDDLEWARE=PLAIN_MIDDLEWARE)
class SchedulingApiTest(APITestCase):
    def setUp(self):
        user_model = get_user_model()
        self.user = user_model.objects.create_user("tester", password="secret-123")
        self.other = user_model.objects.create_user("other", password="secret-123")
        self.client.force_authenticate(self.user)

    def _status(self, process_id, owner, **extra):
        now = timezone.now()
        return ProcessingStatus.objects.create(
            process_id=process_id,
            owner=owner,
            job_type=ProcessingStatus.JobType.DATA_SCHEDULING,
            started_at=now,
            updated_at=now,
            **extra,
        )

    def test_process_status_snapshot(self):
        self._status("scheduled-mine", self.user, total_items=4, processed_items=1)

        resp = self.client.get(reverse("scheduling-process-status", kwargs={"process_id": "scheduled-mine"}))

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.data["progressPercent"], 25)
        self.assertEqual(resp.data["status"], "RUNNING")

    def test_process_status_of_other_user_is_hidden(self):
        self._status("scheduled-theirs", self.other)
        resp = self.client.get(reverse("scheduling-process-status", kwargs={"process_id": "scheduled-theirs"}))
        self.assertEqual(resp.status_code, 404)
        resp_missing = self.client.get(reverse("scheduling-process-status", kwargs={"process_id": "nope"}))
        self.assertEqual(resp_missing.status_code, 404)

    def test_config_roundtrip_hides_token(self):
        url = reverse("scheduling-config")
        resp = self.client.get(url)
        self.assertEqual(resp.status_code, 200)
        self.assertFalse(resp.data["enabled"])

        resp_patch = self.client.patch(
            url,
            {
                "enabled": True,
                "api_url": "https://data-api.example.com",
                "api_token": "abc",
                "daily_run_time": "09:30",
                "time_zone": "Europe/Berlin",
            },
            format="json",
        )

        self.assertEqual(resp_patch.status_code, 200)
        self.assertTrue(resp_patch.data["has_credentials"])
        self.assertNotIn("api_token", resp_patch.data)
        config = DataSchedulingConfig.objects.get(owner=self.user)
        self.assertEqual(config.api_token, "abc")
        self.assertEqual(config.daily_run_time, "09:30")

    def test_config_rejects_bad_values(self):
        url = reverse("scheduling-config")
        self.assertEqual(self.client.patch(url, {"time_zone": "Nowhere/City"}, format="json").status_code, 400)
        self.assertEqual(self.client.patch(url, {"daily_run_time": "25:00"}, format="json").status_code, 400)
        self.assertEqual(self.client.patch(url, {"cleanup_days": 0}, format="json").status_code, 400)

    def test_processes_and_logs_are_scoped_to_owner(self):
        self._status("scheduled-a", self.user)
        self._status("scheduled-b", self.other)
        SchedulingLogEntry.objects.create(
            process_id="scheduled-a", owner=self.user, category="SCHEDULING", operation="MINE", message="m"
        )
        SchedulingLogEntry.objects.create(
            process_id="scheduled-b", owner=self.other, category="SCHEDULING", operation="THEIRS", message="m"
        )

        processes = self.client.get(reverse("scheduling-processes"))
        logs = self.client.get(reverse("scheduling-logs"), {"process_id": "scheduled-a"})

        self.assertEqual([p["process_id"] for p in processes.data], ["scheduled-a"])
        self.assertEqual([entry["operation"] for entry in logs.data], ["MINE"])
        self.assertEqual(logs.data[0]["process_id"], "scheduled-a")


@override_settings(MIDDLEWARE=PLAIN_MIDDLEWARE)
class PortfolioApiTest(APITestCase):
    def setUp(self):
        user_model = get_user_model()
        self.user = user_model.objects.create_user("tester", password="secret-123")
        self.other = user_model.objects.create_user("other", password="secret-123")
        TradingProfile.objects.create(user=self.user, cash_balance=Decimal("1000"))
        self.btc = Instrument.objects.create(
            owner=self.user,
            symbol="BTC",
            quantity=Decimal("2"),
            purchase_price=Decimal("100"),
            last_price=Decimal("100"),
        )
        self.client.force_authenticate(self.user)

    def test_profile_me(self):
        url = reverse("profile-me")
        resp = self.client.get(url)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(Decimal(resp.data["cash_balance"]), Decimal("1000"))
        self.assertNotIn("exchange_api_secret", resp.data)

        resp_bad = self.client.patch(url, {"cash_balance": "-1"}, format="json")
        self.assertEqual(resp_bad.status_code, 400)

        resp_ok = self.client.patch(url, {"auto_trading_enabled": True}, format="json")
        self.assertEqual(resp_ok.status_code, 200)
        self.assertTrue(TradingProfile.objects.get(user=self.user).auto_trading_enabled)

    def test_auto_flags_are_create_only(self):
        resp = self.client.post(
            reverse("instrument-list"),
            {"symbol": "eth", "auto_buy_enabled": True, "auto_sell_enabled": True},
            format="json",
        )
        self.assertEqual(resp.status_code, 201)
        eth = Instrument.objects.get(owner=self.user, symbol="ETH")
        self.assertTrue(eth.auto_buy_enabled)

        resp_patch = self.client.patch(
            reverse("instrument-detail", args=[eth.pk]),
            {"auto_buy_enabled": False, "quantity": "3"},
            format="json",
        )

        self.assertEqual(resp_patch.status_code, 200)
        eth.refresh_from_db()
        self.assertTrue(eth.auto_buy_enabled)
        self.assertEqual(eth.quantity, Decimal("3"))

    def test_duplicate_symbol_is_rejected(self):
        resp = self.client.post(reverse("instrument-list"), {"symbol": "btc"}, format="json")
        self.assertEqual(resp.status_code, 400)

    def test_other_users_instruments_are_invisible(self):
        theirs = Instrument.objects.create(owner=self.other, symbol="SOL")
        resp = self.client.get(reverse("instrument-detail", args=[theirs.pk]))
        self.assertEqual(resp.status_code, 404)

    def test_next_action_is_read_only_after_create(self):
        cfg = AutoTradeSettings.objects.create(
            instrument=self.btc,
            shares_amount=Decimal("1"),
            next_action=AutoTradeSettings.Action.SELL,
        )

        resp = self.client.patch(
            reverse("autotrade-settings-detail", args=[cfg.pk]),
            {"next_action": "buy", "buy_threshold_pct": "4"},
            format="json",
        )

        self.assertEqual(resp.status_code, 200)
        cfg.refresh_from_db()
        self.assertEqual(cfg.next_action, AutoTradeSettings.Action.SELL)
        self.assertEqual(cfg.buy_threshold_pct, Decimal("4"))

    def test_settings_create_places_the_cursor(self):
        resp = self.client.post(
            reverse("autotrade-settings-list"),
            {"instrument": self.btc.pk, "shares_amount": "1", "next_action": "sell"},
            format="json",
        )

        self.assertEqual(resp.status_code, 201)
        self.assertEqual(resp.data["next_action"], "sell")
        self.assertEqual(AutoTradeSettings.objects.get(instrument=self.btc).next_action, AutoTradeSettings.Action.SELL)

    def test_settings_create_defaults_cursor_to_buy(self):
        resp = self.client.post(
            reverse("autotrade-settings-list"),
            {"instrument": self.btc.pk, "total_value": "50", "sizing_mode": "value"},
            format="json",
        )

        self.assertEqual(resp.status_code, 201)
        self.assertEqual(AutoTradeSettings.objects.get(instrument=self.btc).next_action, AutoTradeSettings.Action.BUY)

    def test_instrument_with_history_is_not_deleted(self):
        Transaction.objects.create(
            owner=self.user,
            instrument=self.btc,
            symbol="BTC",
            action=Transaction.Action.BUY,
            requested_side=Transaction.Action.BUY,
            quantity=Decimal("1"),
            price=Decimal("100"),
            total_amount=Decimal("100"),
        )

        resp = self.client.delete(reverse("instrument-detail", args=[self.btc.pk]))

        self.assertEqual(resp.status_code, 409)
        self.assertTrue(Instrument.objects.filter(pk=self.btc.pk).exists())

    def test_instrument_without_history_can_be_deleted(self):
        resp = self.client.delete(reverse("instrument-detail", args=[self.btc.pk]))
        self.assertEqual(resp.status_code, 204)

    def test_manual_trade(self):
        resp = self.client.post(
            reverse("instrument-trade", args=[self.btc.pk]),
            {"action": "buy", "quantity": "1", "price": "100"},
            format="json",
        )

        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.data["success"])
        self.assertEqual(resp.data["transaction"]["action"], "buy")
        self.assertEqual(resp.data["transaction"]["source"], Transaction.Source.MANUAL)
        self.btc.refresh_from_db()
        self.assertEqual(self.btc.quantity, Decimal("3"))

    def test_manual_trade_rejections(self):
        url = reverse("instrument-trade", args=[self.btc.pk])
        oversell = self.client.post(url, {"action": "sell", "quantity": "5"}, format="json")
        bad_side = self.client.post(url, {"action": "hold", "quantity": "1"}, format="json")

        self.assertEqual(oversell.status_code, 400)
        self.assertFalse(oversell.data["success"])
        self.assertEqual(bad_side.status_code, 400)
        self.assertFalse(Transaction.objects.exists())

    def test_transactions_are_scoped_and_filterable(self):
        theirs = Instrument.objects.create(owner=self.other, symbol="BTC")
        for owner, inst, action in (
            (self.user, self.btc, Transaction.Action.BUY),
            (self.user, self.btc, Transaction.Action.ERROR),
            (self.other, theirs, Transaction.Action.SELL),
        ):
            Transaction.objects.create(
                owner=owner,
                instrument=inst,
                symbol="BTC",
                action=action,
                requested_side=Transaction.Action.BUY,
                quantity=Decimal("1"),
                price=Decimal("100"),
                total_amount=Decimal("100"),
            )

        url = reverse("transaction-list")
        everything = self.client.get(url)
        failed = self.client.get(url, {"failed": "true"})

        self.assertEqual(everything.status_code, 200)
        self.assertEqual(len(everything.data), 2)
        self.assertEqual([t["action"] for t in failed.data], ["error"])

    def test_ticks_endpoint(self):
        url = reverse("autotrade-ticks")
        self.assertEqual(self.client.post(url, {"prices": []}, format="json").status_code, 400)
        self.assertEqual(self.client.post(url, {}, format="json").status_code, 400)

        resp = self.client.post(url, {"prices": {"BTC": "101"}}, format="json")

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.data["results"][0]["symbol"], "BTC")
        self.btc.refresh_from_db()
        self.assertEqual(self.btc.last_price, Decimal("101"))

    def test_activity_without_redis_is_empty(self):
        resp = self.client.get(reverse("autotrade-activity"))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.data, {"entries": []})
