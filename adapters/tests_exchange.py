from decimal import Decimal
from unittest import mock

import ccxt
from django.test import SimpleTestCase, override_settings

from core.errors import ValidationError
from core.models import TradingProfile

from . import get_order_port
from .exchange import CcxtOrderPort
from .orders import FAILURE_REJECTED, FAILURE_TRANSPORT
from .paper import PaperOrderPort


class CcxtOrderPortTests(SimpleTestCase):
    def _build_port(self, client):
        port = object.__new__(CcxtOrderPort)
        port.name = "kraken"
        port.quote_currency = "USD"
        port.client = client
        port._markets_loaded = True
        return port

    def _client(self):
        client = mock.Mock()
        client.amount_to_precision.side_effect = lambda symbol, qty: str(qty)
        return client

    def test_fill_maps_average_price_and_filled_amount(self):
        client = self._client()
        client.create_order.return_value = {
            "id": "o-1",
            "average": 101.5,
            "price": 100.0,
            "filled": 0.25,
            "status": "closed",
            "info": {"txid": ["o-1"]},
        }
        port = self._build_port(client)

        result = port.execute("btc", "buy", 0.25, 100.0)

        self.assertTrue(result.success)
        self.assertEqual(result.external_order_id, "o-1")
        self.assertEqual(result.executed_price, 101.5)
        self.assertEqual(result.executed_quantity, 0.25)
        client.create_order.assert_called_once_with("BTC/USD", "market", "buy", 0.25, None)

    def test_missing_fill_fields_fall_back_to_request(self):
        client = self._client()
        client.create_order.return_value = {"id": "o-2"}
        result = self._build_port(client).execute("ETH", "sell", 2.0, 3000.0)
        self.assertEqual(result.executed_price, 3000.0)
        self.assertEqual(result.executed_quantity, 2.0)

    def test_limit_orders_carry_reference_price(self):
        client = self._client()
        client.create_order.return_value = {"id": "o-3", "price": 50.0}
        self._build_port(client).execute("SOL/EUR", "buy", 1.0, 50.0, order_kind="limit")
        client.create_order.assert_called_once_with("SOL/EUR", "limit", "buy", 1.0, 50.0)

    def test_open_unfilled_limit_order_is_not_a_fill(self):
        client = self._client()
        client.create_order.return_value = {"id": "o-4", "status": "open", "filled": 0.0, "price": 50.0}

        with self.assertLogs("adapters.exchange", "ERROR"):
            result = self._build_port(client).execute("BTC", "buy", 1.0, 50.0, order_kind="limit")

        self.assertFalse(result.success)
        self.assertEqual(result.kind, FAILURE_TRANSPORT)
        self.assertTrue(result.ambiguous)
        self.assertEqual(result.raw["id"], "o-4")
        self.assertEqual(result.raw["status"], "open")

    def test_closed_order_with_zero_filled_is_not_a_fill(self):
        client = self._client()
        client.create_order.return_value = {"id": "o-5", "status": "closed", "filled": 0}

        with self.assertLogs("adapters.exchange", "ERROR"):
            result = self._build_port(client).execute("BTC", "sell", 1.0, 50.0)

        self.assertFalse(result.success)
        self.assertTrue(result.ambiguous)

    def test_partial_fill_reports_filled_quantity(self):
        client = self._client()
        client.create_order.return_value = {"id": "o-6", "status": "closed", "filled": 0.4, "average": 99.0}
        result = self._build_port(client).execute("BTC", "buy", 1.0, 100.0)
        self.assertTrue(result.success)
        self.assertEqual(result.executed_quantity, 0.4)

    def test_network_error_is_transport_failure_and_not_retried(self):
        client = self._client()
        client.create_order.side_effect = ccxt.RequestTimeout("timed out")
        result = self._build_port(client).execute("BTC", "buy", 1.0, 100.0)

        self.assertFalse(result.success)
        self.assertEqual(result.kind, FAILURE_TRANSPORT)
        self.assertTrue(result.ambiguous)
        self.assertEqual(result.error_code, "RequestTimeout")
        self.assertEqual(client.create_order.call_count, 1)

    def test_exchange_error_is_rejection(self):
        client = self._client()
        client.create_order.side_effect = ccxt.InsufficientFunds("not enough USD")
        result = self._build_port(client).execute("BTC", "buy", 1.0, 100.0)

        self.assertFalse(result.success)
        self.assertEqual(result.kind, FAILURE_REJECTED)
        self.assertFalse(result.ambiguous)
        self.assertIn("not enough USD", result.error_message)

    def test_market_load_failure_rejects_before_sending(self):
        client = self._client()
        client.load_markets.side_effect = ccxt.AuthenticationError("bad key")
        port = self._build_port(client)
        port._markets_loaded = False

        result = port.execute("BTC", "buy", 1.0, 100.0)

        self.assertEqual(result.kind, FAILURE_REJECTED)
        client.create_order.assert_not_called()


class PaperOrderPortTests(SimpleTestCase):
    def test_fills_at_reference_price(self):
        result = PaperOrderPort(slippage_bps=0).execute("BTC", "buy", 0.5, 100.0)
        self.assertTrue(result.success)
        self.assertEqual(result.executed_price, 100.0)
        self.assertEqual(result.executed_quantity, 0.5)
        self.assertTrue(result.external_order_id.startswith("paper-"))

    def test_slippage_moves_price_against_the_trader(self):
        port = PaperOrderPort(slippage_bps=100)
        self.assertAlmostEqual(port.execute("BTC", "buy", 1, 100.0).executed_price, 101.0)
        self.assertAlmostEqual(port.execute("BTC", "sell", 1, 100.0).executed_price, 99.0)


class OrderPortResolutionTests(SimpleTestCase):
    def _profile(self, **kwargs):
        defaults = {"exchange": TradingProfile.Exchange.KRAKEN, "cash_balance": Decimal("0")}
        defaults.update(kwargs)
        return TradingProfile(**defaults)

    @override_settings(MODE="paper")
    def test_paper_mode_ignores_live_credentials(self):
        port = get_order_port(self._profile(exchange_api_key="k", exchange_api_secret="s"))
        self.assertIsInstance(port, PaperOrderPort)

    @override_settings(MODE="live")
    def test_live_mode_requires_credentials(self):
        with self.assertRaises(ValidationError):
            get_order_port(self._profile())

    @override_settings(MODE="live")
    def test_live_mode_paper_exchange_stays_paper(self):
        port = get_order_port(self._profile(exchange=TradingProfile.Exchange.PAPER))
        self.assertIsInstance(port, PaperOrderPort)

    @override_settings(MODE="live")
    def test_live_mode_builds_exchange_port(self):
        profile = self._profile(exchange_api_key="k", exchange_api_secret="s")
        with mock.patch("adapters.CcxtOrderPort.from_profile", return_value="port") as build:
            self.assertEqual(get_order_port(profile), "port")
        build.assert_called_once_with(profile)
