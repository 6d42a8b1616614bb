from decimal import Decimal
from unittest.mock import Mock, patch

from django.contrib.auth import get_user_model
from django.test import TestCase, override_settings

from adapters.orders import FAILURE_REJECTED, FAILURE_TRANSPORT, OrderFailed
from adapters.paper import PaperOrderPort
from core.errors import ConsistencyError, ValidationError
from core.models import AutoTradeSettings, Instrument, TradingProfile
from .autotrade import AutoTradeOrchestrator, Outcome, configure_cursor, watched_directions
from .locks import InstrumentBusy
from .models import Transaction


class AutoTradeTestMixin:
    def setUp(self):
        self.user = get_user_model().objects.create_user("trader", password="x")
        self.profile = TradingProfile.objects.create(
            user=self.user,
            cash_balance=Decimal("10000"),
            auto_trading_enabled=True,
        )

    def make_instrument(self, symbol="BTC", quantity="1", purchase_price="100", buy=True, sell=True, **cfg):
        inst = Instrument.objects.create(
            owner=self.user,
            symbol=symbol,
            quantity=Decimal(quantity),
            purchase_price=Decimal(purchase_price),
            auto_buy_enabled=buy,
            auto_sell_enabled=sell,
        )
        options = {
            "buy_threshold_pct": Decimal("5"),
            "sell_threshold_pct": Decimal("5"),
            "shares_amount": Decimal("1"),
            "continuous_trading": True,
        }
        options.update(cfg)
        AutoTradeSettings.objects.create(instrument=inst, **options)
        return inst

    def port_factory(self, port):
        factory = Mock(return_value=port)
        return factory


class OnPriceTickTest(AutoTradeTestMixin, TestCase):
    def test_buy_fills_and_flips_to_sell(self):
        inst = self.make_instrument(next_action=AutoTradeSettings.Action.BUY)

        result = AutoTradeOrchestrator().on_price_tick(inst, Decimal("94"))

        self.assertEqual(result.outcome, Outcome.FILLED)
        self.assertEqual(result.states, ["idle", "evaluating", "executing", "settling", "idle"])
        tx = Transaction.objects.get()
        self.assertEqual(tx.action, Transaction.Action.BUY)
        self.assertEqual(tx.source, Transaction.Source.AUTO)
        self.assertEqual(tx.quantity, Decimal("1"))
        self.assertEqual(tx.price, Decimal("94"))
        self.assertEqual(tx.request_audit["tag"], "request")
        self.assertEqual(tx.response_audit["tag"], "response")
        inst.refresh_from_db()
        self.profile.refresh_from_db()
        self.assertEqual(inst.quantity, Decimal("2"))
        self.assertEqual(inst.purchase_price, Decimal("94"))
        self.assertEqual(self.profile.cash_balance, Decimal("9906"))
        self.assertEqual(inst.autotrade.next_action, AutoTradeSettings.Action.SELL)

    def test_sell_fills_and_flips_to_buy(self):
        inst = self.make_instrument(next_action=AutoTradeSettings.Action.SELL)

        result = AutoTradeOrchestrator().on_price_tick(inst, 106)

        self.assertEqual(result.outcome, Outcome.FILLED)
        inst.refresh_from_db()
        self.profile.refresh_from_db()
        self.assertEqual(inst.quantity, Decimal("0"))
        self.assertEqual(self.profile.cash_balance, Decimal("10106"))
        self.assertEqual(inst.autotrade.next_action, AutoTradeSettings.Action.BUY)

    def test_sell_larger_than_holding_is_rejected_before_any_call(self):
        inst = self.make_instrument(quantity="0.5", next_action=AutoTradeSettings.Action.SELL)
        factory = self.port_factory(PaperOrderPort())

        result = AutoTradeOrchestrator(port_factory=factory).on_price_tick(inst, 106)

        self.assertEqual(result.outcome, Outcome.REJECTED)
        factory.assert_not_called()
        self.assertFalse(Transaction.objects.exists())
        inst.refresh_from_db()
        self.assertEqual(inst.quantity, Decimal("0.5"))
        self.assertEqual(inst.autotrade.next_action, AutoTradeSettings.Action.SELL)

    def test_no_trigger_below_threshold(self):
        inst = self.make_instrument(next_action=AutoTradeSettings.Action.BUY)
        factory = self.port_factory(PaperOrderPort())

        result = AutoTradeOrchestrator(port_factory=factory).on_price_tick(inst, 98)

        self.assertEqual(result.outcome, Outcome.NO_TRIGGER)
        factory.assert_not_called()
        self.assertFalse(Transaction.objects.exists())

    def test_only_next_action_direction_is_watched(self):
        inst = self.make_instrument(next_action=AutoTradeSettings.Action.BUY)
        result = AutoTradeOrchestrator().on_price_tick(inst, 120)
        self.assertEqual(result.outcome, Outcome.NO_TRIGGER)

    def test_user_switch_off_skips(self):
        self.profile.auto_trading_enabled = False
        self.profile.save()
        inst = self.make_instrument()
        factory = self.port_factory(PaperOrderPort())

        result = AutoTradeOrchestrator(port_factory=factory).on_price_tick(inst, 50)

        self.assertEqual(result.outcome, Outcome.SKIPPED)
        factory.assert_not_called()

    @override_settings(AUTOTRADE_ENABLED=False)
    def test_global_switch_off_skips(self):
        inst = self.make_instrument()
        result = AutoTradeOrchestrator().on_price_tick(inst, 50)
        self.assertEqual(result.outcome, Outcome.SKIPPED)

    def test_instrument_without_auto_flags_skips(self):
        inst = self.make_instrument(buy=False, sell=False)
        result = AutoTradeOrchestrator().on_price_tick(inst, 50)
        self.assertEqual(result.outcome, Outcome.SKIPPED)

    def test_disabled_side_is_not_watched(self):
        inst = self.make_instrument(buy=False, sell=True, next_action=AutoTradeSettings.Action.BUY)
        result = AutoTradeOrchestrator().on_price_tick(inst, 50)
        self.assertEqual(result.outcome, Outcome.NO_TRIGGER)

    def test_profile_default_threshold_applies(self):
        self.profile.default_buy_threshold_pct = Decimal("10")
        self.profile.save()
        inst = self.make_instrument(buy_threshold_pct=None, next_action=AutoTradeSettings.Action.BUY)

        self.assertEqual(AutoTradeOrchestrator().on_price_tick(inst, 94).outcome, Outcome.NO_TRIGGER)
        self.assertEqual(AutoTradeOrchestrator().on_price_tick(inst, 90).outcome, Outcome.FILLED)

    def test_invalid_size_is_reported(self):
        inst = self.make_instrument(shares_amount=Decimal("0"))
        factory = self.port_factory(PaperOrderPort())

        result = AutoTradeOrchestrator(port_factory=factory).on_price_tick(inst, 94)

        self.assertEqual(result.outcome, Outcome.INVALID)
        factory.assert_not_called()
        self.assertFalse(Transaction.objects.exists())

    def test_value_sizing_divides_by_current_price(self):
        inst = self.make_instrument(
            sizing_mode=AutoTradeSettings.SizingMode.VALUE,
            total_value=Decimal("100"),
        )

        result = AutoTradeOrchestrator().on_price_tick(inst, 80)

        self.assertEqual(result.outcome, Outcome.FILLED)
        tx = Transaction.objects.get()
        self.assertEqual(tx.quantity, Decimal("1.25"))
        self.assertEqual(tx.total_amount, Decimal("100"))

    def test_buy_beyond_cash_is_rejected(self):
        self.profile.cash_balance = Decimal("50")
        self.profile.save()
        inst = self.make_instrument()

        result = AutoTradeOrchestrator().on_price_tick(inst, 94)

        self.assertEqual(result.outcome, Outcome.REJECTED)
        self.assertFalse(Transaction.objects.exists())

    def test_rejected_order_records_error_without_flip(self):
        inst = self.make_instrument(next_action=AutoTradeSettings.Action.BUY)
        port = Mock(name="port")
        port.name = "mock"
        port.execute.return_value = OrderFailed("InsufficientFunds", "not enough USD", kind=FAILURE_REJECTED)

        result = AutoTradeOrchestrator(port_factory=self.port_factory(port)).on_price_tick(inst, 94)

        self.assertEqual(result.outcome, Outcome.FAILED)
        port.execute.assert_called_once()
        tx = Transaction.objects.get()
        self.assertTrue(tx.is_error)
        self.assertEqual(tx.requested_side, "buy")
        self.assertEqual(tx.error_kind, FAILURE_REJECTED)
        self.assertEqual(tx.request_audit["venue"], "mock")
        self.assertFalse(tx.needs_reconciliation)
        inst.refresh_from_db()
        self.profile.refresh_from_db()
        self.assertEqual(inst.quantity, Decimal("1"))
        self.assertEqual(self.profile.cash_balance, Decimal("10000"))
        self.assertEqual(inst.autotrade.next_action, AutoTradeSettings.Action.BUY)

    def test_unnamed_port_records_its_class_as_venue(self):
        inst = self.make_instrument(next_action=AutoTradeSettings.Action.BUY)
        port = Mock(spec=["execute"])
        port.execute.return_value = OrderFailed("InsufficientFunds", "not enough USD", kind=FAILURE_REJECTED)

        AutoTradeOrchestrator(port_factory=self.port_factory(port)).on_price_tick(inst, 94)

        self.assertEqual(Transaction.objects.get().request_audit["venue"], "Mock")

    def test_transport_failure_needs_reconciliation(self):
        inst = self.make_instrument()
        port = Mock(name="port")
        port.name = "mock"
        port.execute.return_value = OrderFailed("RequestTimeout", "timed out", kind=FAILURE_TRANSPORT)

        with patch("execution.autotrade.notify_error") as notify, self.assertLogs("execution.autotrade", "ERROR"):
            result = AutoTradeOrchestrator(port_factory=self.port_factory(port)).on_price_tick(inst, 94)

        self.assertEqual(result.outcome, Outcome.FAILED)
        tx = Transaction.objects.get()
        self.assertTrue(tx.needs_reconciliation)
        self.assertEqual(tx.error_kind, FAILURE_TRANSPORT)
        notify.assert_called_once()
        inst.refresh_from_db()
        self.assertEqual(inst.quantity, Decimal("1"))

    def test_port_exception_counts_as_transport_failure(self):
        inst = self.make_instrument()
        port = Mock(name="port")
        port.name = "mock"
        port.execute.side_effect = ConnectionResetError("reset by peer")

        with patch("execution.autotrade.notify_error"), self.assertLogs("execution.autotrade", "ERROR"):
            result = AutoTradeOrchestrator(port_factory=self.port_factory(port)).on_price_tick(inst, 94)

        self.assertEqual(result.outcome, Outcome.FAILED)
        self.assertEqual(port.execute.call_count, 1)
        self.assertTrue(Transaction.objects.get().needs_reconciliation)

    def test_missing_live_credentials_are_invalid(self):
        inst = self.make_instrument()
        with override_settings(MODE="live"):
            self.profile.exchange = TradingProfile.Exchange.KRAKEN
            self.profile.save()
            result = AutoTradeOrchestrator().on_price_tick(inst, 94)
        self.assertEqual(result.outcome, Outcome.INVALID)
        self.assertFalse(Transaction.objects.exists())

    def test_ledger_failure_keeps_transaction(self):
        inst = self.make_instrument(next_action=AutoTradeSettings.Action.BUY)

        def boom(ctx):
            raise RuntimeError("disk full")

        with (
            patch.object(AutoTradeOrchestrator, "_advance_cursor", return_value=boom),
            patch("execution.ledger.notify_critical") as critical,
            self.assertLogs("execution.ledger", "CRITICAL"),
        ):
            result = AutoTradeOrchestrator().on_price_tick(inst, 94)

        self.assertEqual(result.outcome, Outcome.LEDGER_ERROR)
        critical.assert_called_once()
        self.assertEqual(Transaction.objects.filter(action=Transaction.Action.BUY).count(), 1)
        inst.refresh_from_db()
        self.profile.refresh_from_db()
        self.assertEqual(inst.quantity, Decimal("1"))
        self.assertEqual(self.profile.cash_balance, Decimal("10000"))
        self.assertEqual(inst.autotrade.next_action, AutoTradeSettings.Action.BUY)

    def test_busy_instrument_is_reported(self):
        inst = self.make_instrument()
        with patch("execution.autotrade.instrument_lock", side_effect=InstrumentBusy("held")):
            result = AutoTradeOrchestrator().on_price_tick(inst, 94)
        self.assertEqual(result.outcome, Outcome.BUSY)


class CursorRulesTest(AutoTradeTestMixin, TestCase):
    def test_one_shot_is_cleared_after_it_fires(self):
        inst = self.make_instrument(
            continuous_trading=False,
            next_action=AutoTradeSettings.Action.BUY,
            one_time_sell=True,
        )

        result = AutoTradeOrchestrator().on_price_tick(inst, 106)

        self.assertEqual(result.side, "sell")
        cfg = AutoTradeSettings.objects.get(instrument=inst)
        self.assertFalse(cfg.one_time_sell)
        self.assertEqual(cfg.next_action, AutoTradeSettings.Action.BUY)
        inst.refresh_from_db()
        self.assertTrue(inst.auto_sell_enabled)

    def test_single_trade_configuration_disables_the_side(self):
        inst = self.make_instrument(continuous_trading=False, next_action=AutoTradeSettings.Action.BUY)

        AutoTradeOrchestrator().on_price_tick(inst, 94)

        inst.refresh_from_db()
        self.assertFalse(inst.auto_buy_enabled)
        self.assertTrue(inst.auto_sell_enabled)
        self.assertEqual(inst.autotrade.next_action, AutoTradeSettings.Action.BUY)
        self.assertEqual(AutoTradeOrchestrator().on_price_tick(inst, 80).outcome, Outcome.NO_TRIGGER)

    def test_continuous_trading_alternates(self):
        inst = self.make_instrument(next_action=AutoTradeSettings.Action.BUY)
        orchestrator = AutoTradeOrchestrator()

        self.assertEqual(orchestrator.on_price_tick(inst, 94).side, "buy")
        # Reference is now 94; a 5% rise is 98.7.
        self.assertEqual(orchestrator.on_price_tick(inst, 99).side, "sell")
        self.assertEqual(orchestrator.on_price_tick(inst, 90).side, "buy")
        self.assertEqual(Transaction.objects.count(), 3)

    def test_watched_directions_order(self):
        inst = self.make_instrument(next_action=AutoTradeSettings.Action.SELL, one_time_buy=True)
        cfg = AutoTradeSettings.objects.get(instrument=inst)
        self.assertEqual(watched_directions(cfg, inst), ["sell", "buy"])

    def test_configure_cursor_only_before_creation(self):
        inst = self.make_instrument()
        fresh = AutoTradeSettings(instrument=Instrument(owner=self.user, symbol="NEW"))
        self.assertEqual(configure_cursor(fresh, "sell").next_action, "sell")
        with self.assertRaises(ValidationError):
            configure_cursor(inst.autotrade, "sell")
        with self.assertRaises(ValidationError):
            configure_cursor(fresh, "hold")


class ManualTradeTest(AutoTradeTestMixin, TestCase):
    def test_manual_sell_does_not_move_cursor(self):
        inst = self.make_instrument(next_action=AutoTradeSettings.Action.SELL)

        result = AutoTradeOrchestrator().execute_manual(inst, "sell", quantity="0.5", current_price="110")

        self.assertEqual(result.outcome, Outcome.FILLED)
        tx = Transaction.objects.get()
        self.assertEqual(tx.source, Transaction.Source.MANUAL)
        self.assertEqual(tx.quantity, Decimal("0.5"))
        inst.refresh_from_db()
        self.assertEqual(inst.quantity, Decimal("0.5"))
        self.assertEqual(inst.autotrade.next_action, AutoTradeSettings.Action.SELL)

    def test_manual_trade_ignores_auto_switches(self):
        self.profile.auto_trading_enabled = False
        self.profile.save()
        inst = self.make_instrument(buy=False, sell=False)

        result = AutoTradeOrchestrator().execute_manual(inst, "buy", quantity="2", current_price="100")

        self.assertEqual(result.outcome, Outcome.FILLED)

    def test_manual_sell_beyond_holding_raises(self):
        inst = self.make_instrument(quantity="0.5")
        with self.assertRaises(ConsistencyError):
            AutoTradeOrchestrator().execute_manual(inst, "sell", quantity="1", current_price="100")
        self.assertFalse(Transaction.objects.exists())

    def test_manual_trade_uses_last_price_and_configured_size(self):
        inst = self.make_instrument()
        Instrument.objects.filter(pk=inst.pk).update(last_price=Decimal("120"))

        AutoTradeOrchestrator().execute_manual(inst, "sell")

        tx = Transaction.objects.get()
        self.assertEqual(tx.price, Decimal("120"))
        self.assertEqual(tx.quantity, Decimal("1"))

    def test_manual_trade_validates_input(self):
        inst = self.make_instrument()
        with self.assertRaises(ValidationError):
            AutoTradeOrchestrator().execute_manual(inst, "hold", quantity="1")
        with self.assertRaises(ValidationError):
            AutoTradeOrchestrator().execute_manual(inst, "buy", quantity="-1", current_price="100")

    def test_busy_instrument_raises_consistency_error(self):
        inst = self.make_instrument()
        with patch("execution.autotrade.instrument_lock", side_effect=InstrumentBusy("held")):
            with self.assertRaises(ConsistencyError):
                AutoTradeOrchestrator().execute_manual(inst, "buy", quantity="1", current_price="100")
