from decimal import Decimal
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.db import DatabaseError
from django.test import TestCase

from adapters.orders import FAILURE_REJECTED, FAILURE_TRANSPORT
from core.errors import PersistenceError
from core.models import Instrument, TradingProfile
from . import ledger
from .audit import ErrorAudit, RequestAudit, ResponseAudit
from .models import Transaction


class LedgerTest(TestCase):
    def setUp(self):
        self.user = get_user_model().objects.create_user("ledger", password="x")
        self.profile = TradingProfile.objects.create(user=self.user, cash_balance=Decimal("100"))
        self.inst = Instrument.objects.create(
            owner=self.user,
            symbol="ETH",
            quantity=Decimal("3"),
            purchase_price=Decimal("90"),
        )

    def _request(self, side="buy", qty=1.0, price=100.0):
        return RequestAudit("ETH", side, qty, price, "market", "paper")

    def _settle(self, side, qty, price, after_fill=None):
        return ledger.settle_fill(
            owner=self.user,
            instrument=self.inst,
            side=side,
            source=Transaction.Source.AUTO,
            request=self._request(side, qty, price),
            response=ResponseAudit(f"o-{side}", price, qty),
            after_fill=after_fill,
        )

    def test_buy_updates_holdings_price_and_cash(self):
        tx = self._settle("buy", 0.5, 80.0)

        self.assertEqual(tx.total_amount, Decimal("40"))
        self.assertEqual(tx.external_order_id, "o-buy")
        self.inst.refresh_from_db()
        self.profile.refresh_from_db()
        self.assertEqual(self.inst.quantity, Decimal("3.5"))
        self.assertEqual(self.inst.purchase_price, Decimal("80"))
        self.assertEqual(self.profile.cash_balance, Decimal("60"))

    def test_buy_cash_is_clamped_at_zero(self):
        # Slippage can push the fill above the cash that was checked up front.
        self._settle("buy", 1.0, 101.0)
        self.profile.refresh_from_db()
        self.assertEqual(self.profile.cash_balance, Decimal("0"))

    def test_sell_credits_cash(self):
        self._settle("sell", 3.0, 110.0)
        self.inst.refresh_from_db()
        self.profile.refresh_from_db()
        self.assertEqual(self.inst.quantity, Decimal("0"))
        self.assertEqual(self.profile.cash_balance, Decimal("430"))

    def test_oversell_keeps_transaction_and_raises(self):
        with patch("execution.ledger.notify_critical"), self.assertLogs("execution.ledger", "CRITICAL"):
            with self.assertRaises(PersistenceError) as ctx:
                self._settle("sell", 5.0, 110.0)
        tx_id = ctx.exception.details["transaction_id"]
        self.assertTrue(Transaction.objects.filter(pk=tx_id, action="sell").exists())
        self.inst.refresh_from_db()
        self.assertEqual(self.inst.quantity, Decimal("3"))

    def test_after_fill_runs_inside_the_unit(self):
        seen = []
        tx = self._settle("buy", 1.0, 50.0, after_fill=lambda ctx: seen.append(ctx.transaction.pk))
        self.assertEqual(seen, [tx.pk])

    def test_after_fill_failure_rolls_back_balances_only(self):
        def boom(ctx):
            raise DatabaseError("deadlock")

        with patch("execution.ledger.notify_critical") as critical, self.assertLogs("execution.ledger", "CRITICAL"):
            with self.assertRaises(PersistenceError):
                self._settle("buy", 1.0, 50.0, after_fill=boom)

        critical.assert_called_once()
        self.assertEqual(Transaction.objects.count(), 1)
        self.inst.refresh_from_db()
        self.profile.refresh_from_db()
        self.assertEqual(self.inst.quantity, Decimal("3"))
        self.assertEqual(self.profile.cash_balance, Decimal("100"))

    def test_transaction_write_failure_is_critical(self):
        with (
            patch("execution.ledger.Transaction.objects.create", side_effect=DatabaseError("down")),
            patch("execution.ledger.notify_critical"),
            self.assertLogs("execution.ledger", "CRITICAL"),
        ):
            with self.assertRaises(PersistenceError) as ctx:
                self._settle("buy", 1.0, 50.0)
        self.assertEqual(ctx.exception.details["external_order_id"], "o-buy")

    def test_record_failure_flags_transport_errors(self):
        tx = ledger.record_failure(
            owner=self.user,
            instrument=self.inst,
            side="sell",
            source=Transaction.Source.AUTO,
            quantity=Decimal("1"),
            reference_price=Decimal("100"),
            request=self._request("sell"),
            error=ErrorAudit(FAILURE_TRANSPORT, "RequestTimeout", "timed out"),
        )
        self.assertTrue(tx.is_error)
        self.assertTrue(tx.needs_reconciliation)
        self.assertTrue(tx.response_audit["error"])

        rejected = ledger.record_failure(
            owner=self.user,
            instrument=self.inst,
            side="buy",
            source=Transaction.Source.MANUAL,
            quantity=Decimal("1"),
            reference_price=Decimal("100"),
            request=self._request(),
            error=ErrorAudit(FAILURE_REJECTED, "InvalidOrder", "min size"),
        )
        self.assertFalse(rejected.needs_reconciliation)
        self.profile.refresh_from_db()
        self.assertEqual(self.profile.cash_balance, Decimal("100"))
