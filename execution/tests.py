from decimal import Decimal

from django.contrib.auth import get_user_model
from django.db.models import ProtectedError
from django.test import SimpleTestCase, TestCase

from core.errors import ValidationError
from core.models import Instrument
from . import thresholds
from .audit import ErrorAudit, RequestAudit, ResponseAudit, from_payload, sanitize_raw, to_payload
from .models import Transaction


class ThresholdEvaluatorTest(SimpleTestCase):
    def test_sell_triggers_on_rise_past_threshold(self):
        # reference 100, current 106, threshold 5%
        self.assertTrue(thresholds.should_trade(106, 100, thresholds.SELL, 5))

    def test_buy_triggers_on_drop_past_threshold(self):
        # reference 100, current 94, threshold 5%
        self.assertTrue(thresholds.should_trade(94, 100, thresholds.BUY, 5))

    def test_exact_threshold_triggers(self):
        self.assertTrue(thresholds.should_trade(105, 100, thresholds.SELL, 5))
        self.assertTrue(thresholds.should_trade(95, 100, thresholds.BUY, 5))
        self.assertTrue(thresholds.should_trade("100.1", "100", thresholds.SELL, "0.1"))

    def test_small_moves_do_not_trigger(self):
        self.assertFalse(thresholds.should_trade(104.99, 100, thresholds.SELL, 5))
        self.assertFalse(thresholds.should_trade(95.01, 100, thresholds.BUY, 5))
        self.assertFalse(thresholds.should_trade(110, 100, thresholds.BUY, 5))

    def test_decisions_are_monotonic_in_price(self):
        prices = [Decimal(p) for p in range(80, 121)]
        sells = [thresholds.should_trade(p, 100, thresholds.SELL, 7) for p in prices]
        buys = [thresholds.should_trade(p, 100, thresholds.BUY, 7) for p in prices]
        first_sell = sells.index(True)
        self.assertTrue(all(sells[first_sell:]))
        last_buy = len(buys) - 1 - buys[::-1].index(True)
        self.assertTrue(all(buys[: last_buy + 1]))

    def test_zero_threshold_triggers_on_any_move_in_direction(self):
        self.assertTrue(thresholds.should_trade(100, 100, thresholds.SELL, 0))
        self.assertTrue(thresholds.should_trade(100, 100, thresholds.BUY, 0))

    def test_non_positive_reference_is_rejected(self):
        with self.assertRaises(ValidationError):
            thresholds.should_trade(10, 0, thresholds.SELL, 5)
        with self.assertRaises(ValidationError):
            thresholds.change_pct(10, -1)

    def test_bad_inputs_are_rejected(self):
        with self.assertRaises(ValidationError):
            thresholds.should_trade(10, 100, "hold", 5)
        with self.assertRaises(ValidationError):
            thresholds.should_trade(10, 100, thresholds.SELL, -1)
        with self.assertRaises(ValidationError):
            thresholds.should_trade("abc", 100, thresholds.SELL, 5)
        with self.assertRaises(ValidationError):
            thresholds.should_trade(float("nan"), 100, thresholds.SELL, 5)

    def test_evaluate_reports_move(self):
        decision = thresholds.evaluate(106, 100, thresholds.SELL, 5)
        self.assertTrue(decision.triggered)
        self.assertEqual(decision.change_pct, Decimal("6"))
        self.assertEqual(decision.threshold_pct, Decimal("5"))


class AuditPayloadTest(SimpleTestCase):
    def test_payloads_are_tagged(self):
        request = to_payload(RequestAudit("BTC", "buy", 1.0, 100.0, "market", "paper"))
        response = to_payload(ResponseAudit("o-1", 100.0, 1.0))
        error = to_payload(ErrorAudit("rejected", "InsufficientFunds", "no cash"))
        self.assertEqual(request["tag"], "request")
        self.assertEqual(response["tag"], "response")
        self.assertEqual(error["tag"], "error")
        self.assertTrue(error["error"])
        self.assertNotIn("error", response)

    def test_from_payload_dispatches_on_tag(self):
        audit = from_payload(to_payload(ErrorAudit("transport", "RequestTimeout", "timeout")))
        self.assertIsInstance(audit, ErrorAudit)
        self.assertEqual(audit.error_kind, "transport")
        self.assertIsNone(from_payload({}))
        with self.assertRaises(ValueError):
            from_payload({"tag": "mystery"})

    def test_sanitize_raw_makes_values_json_safe(self):
        raw = sanitize_raw({"fee": Decimal("0.1"), "fills": ({"px": Decimal("1")},), 3: None})
        self.assertEqual(raw, {"fee": "0.1", "fills": [{"px": "1"}], "3": None})


class TransactionModelTest(TestCase):
    def setUp(self):
        self.user = get_user_model().objects.create_user("tx", password="x")
        self.inst = Instrument.objects.create(owner=self.user, symbol="BTC")
        self.tx = Transaction.objects.create(
            owner=self.user,
            instrument=self.inst,
            symbol="BTC",
            action=Transaction.Action.ERROR,
            requested_side=Transaction.Action.BUY,
            quantity=Decimal("1"),
            price=Decimal("100"),
            total_amount=Decimal("100"),
            response_audit={"tag": "error", "error_kind": "rejected"},
        )

    def test_transactions_are_append_only(self):
        with self.assertRaises(TypeError):
            self.tx.save()
        with self.assertRaises(TypeError):
            self.tx.delete()
        with self.assertRaises(TypeError):
            Transaction.objects.filter(pk=self.tx.pk).update(symbol="ETH")

    def test_error_helpers(self):
        self.assertTrue(self.tx.is_error)
        self.assertEqual(self.tx.error_kind, "rejected")
        self.assertEqual(list(Transaction.objects.failed()), [self.tx])

    def test_instrument_with_history_cannot_be_deleted(self):
        with self.assertRaises(ProtectedError):
            self.inst.delete()
        self.tx.refresh_from_db()
        self.assertEqual(self.tx.instrument_id, self.inst.pk)
        self.assertEqual(self.tx.symbol, "BTC")
