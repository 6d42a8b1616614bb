from decimal import Decimal
from unittest.mock import Mock, patch

from django.contrib.auth import get_user_model
from django.db import IntegrityError, transaction
from django.test import SimpleTestCase, TestCase, override_settings

from core import notifications
from core.errors import ExternalApiError, ValidationError
from .models import AutoTradeSettings, Instrument, TradingProfile


class InstrumentModelTest(TestCase):
    def setUp(self):
        self.user = get_user_model().objects.create_user("alice", password="x")

    def test_symbol_is_normalized(self):
        inst = Instrument.objects.create(owner=self.user, symbol=" btc ")
        self.assertEqual(inst.symbol, "BTC")
        self.assertIn("BTC", str(inst))

    def test_symbol_unique_per_owner(self):
        Instrument.objects.create(owner=self.user, symbol="ETH")
        other = get_user_model().objects.create_user("bob", password="x")
        Instrument.objects.create(owner=other, symbol="ETH")
        with self.assertRaises(IntegrityError), transaction.atomic():
            Instrument.objects.create(owner=self.user, symbol="eth")

    def test_quantity_cannot_go_negative(self):
        inst = Instrument.objects.create(owner=self.user, symbol="SOL", quantity=Decimal("1"))
        with self.assertRaises(IntegrityError), transaction.atomic():
            Instrument.objects.filter(pk=inst.pk).update(quantity=Decimal("-1"))

    def test_auto_enabled(self):
        inst = Instrument.objects.create(owner=self.user, symbol="ADA")
        self.assertFalse(inst.auto_enabled)
        inst.auto_sell_enabled = True
        self.assertTrue(inst.auto_enabled)


class TradingProfileModelTest(TestCase):
    def test_cash_balance_cannot_go_negative(self):
        user = get_user_model().objects.create_user("carol", password="x")
        profile = TradingProfile.objects.create(user=user, cash_balance=Decimal("10"))
        with self.assertRaises(IntegrityError), transaction.atomic():
            TradingProfile.objects.filter(pk=profile.pk).update(cash_balance=Decimal("-0.01"))

    def test_credentials_require_key_and_secret(self):
        user = get_user_model().objects.create_user("dave", password="x")
        profile = TradingProfile.objects.create(user=user, exchange_api_key="k")
        self.assertFalse(profile.has_exchange_credentials)


class AutoTradeSettingsModelTest(TestCase):
    def test_has_valid_size(self):
        user = get_user_model().objects.create_user("erin", password="x")
        inst = Instrument.objects.create(owner=user, symbol="BTC")
        cfg = AutoTradeSettings(instrument=inst)
        self.assertFalse(cfg.has_valid_size)
        cfg.shares_amount = Decimal("0.5")
        self.assertTrue(cfg.has_valid_size)
        cfg.sizing_mode = AutoTradeSettings.SizingMode.VALUE
        self.assertFalse(cfg.has_valid_size)
        cfg.total_value = Decimal("100")
        self.assertTrue(cfg.has_valid_size)


class ErrorTaxonomyTest(SimpleTestCase):
    def test_details_default_to_empty_dict(self):
        exc = ValidationError("bad")
        self.assertEqual(exc.details, {})
        self.assertEqual(str(exc), "bad")

    def test_external_api_error_keeps_status(self):
        exc = ExternalApiError("down", status_code=503, details={"symbol": "BTC"})
        self.assertEqual(exc.status_code, 503)
        self.assertEqual(exc.details["symbol"], "BTC")


class NotificationTest(SimpleTestCase):
    @override_settings(TELEGRAM_ENABLED=False)
    def test_disabled_sends_nothing(self):
        with patch("core.notifications.httpx.post") as post:
            self.assertFalse(notifications.send_telegram("hi"))
        post.assert_not_called()

    @override_settings(TELEGRAM_ENABLED=True, TELEGRAM_BOT_TOKEN="t", TELEGRAM_CHAT_ID="c")
    def test_parse_error_falls_back_to_plain_text(self):
        bad = Mock(status_code=400, text="Bad Request: can't parse entities")
        ok = Mock(status_code=200, text="")
        with patch("core.notifications.httpx.post", side_effect=[bad, ok]) as post:
            self.assertTrue(notifications.send_telegram("<b>x"))
        self.assertEqual(post.call_count, 2)
        self.assertNotIn("parse_mode", post.call_args.kwargs["json"])

    @override_settings(TELEGRAM_ENABLED=True, TELEGRAM_BOT_TOKEN="t", TELEGRAM_CHAT_ID="c")
    def test_critical_alert_mentions_reconciliation(self):
        with patch("core.notifications.send_telegram") as send:
            notifications.notify_critical("ledger:BTC", "db down")
        self.assertIn("reconciliation", send.call_args.args[0])
