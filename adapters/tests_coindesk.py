from datetime import datetime, timezone
from types import SimpleNamespace
from unittest import mock

import httpx
from django.test import SimpleTestCase

from core.errors import ExternalApiError

from .coindesk import HOURLY_PATH, CoinDeskClient


def _response(status_code=200, payload=None, text=""):
    resp = mock.Mock()
    resp.status_code = status_code
    resp.text = text
    if isinstance(payload, Exception):
        resp.json.side_effect = payload
    else:
        resp.json.return_value = payload
    return resp


class CoinDeskClientTests(SimpleTestCase):
    def setUp(self):
        self.client = CoinDeskClient("https://data-api.example.com/", "tok", timeout=5)

    def test_endpoint_is_built_once(self):
        self.assertEqual(self.client.endpoint, f"https://data-api.example.com{HOURLY_PATH}")
        full = CoinDeskClient(f"https://x.example.com{HOURLY_PATH}?market=cadli", "tok")
        self.assertEqual(full.endpoint, f"https://x.example.com{HOURLY_PATH}")

    def test_fetch_hourly_parses_and_sorts_bars(self):
        payload = {
            "Data": [
                {"TIMESTAMP": 1700003600, "OPEN": 2, "HIGH": 3, "LOW": 1, "CLOSE": 2.5, "VOLUME": 10},
                {"TIMESTAMP": 1700000000, "OPEN": 1, "HIGH": 2, "LOW": 0.5, "CLOSE": 1.5, "VOLUME": 5},
                {"TIMESTAMP": None, "CLOSE": 9},
            ]
        }
        with mock.patch("adapters.coindesk.httpx.get", return_value=_response(payload=payload)) as get:
            bars = self.client.fetch_hourly("btc", 2)

        self.assertEqual(len(bars), 2)
        self.assertEqual(bars[0]["ts"], datetime.fromtimestamp(1700000000, tz=timezone.utc))
        self.assertEqual(bars[1]["close"], 2.5)
        self.assertEqual(bars[0]["quote_volume"], 0.0)
        kwargs = get.call_args.kwargs
        self.assertEqual(kwargs["params"]["instrument"], "BTC-USD")
        self.assertEqual(kwargs["params"]["limit"], 2)
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer tok")
        self.assertEqual(kwargs["timeout"], 5.0)

    def test_non_200_raises_with_status(self):
        with mock.patch("adapters.coindesk.httpx.get", return_value=_response(429, text="slow down")):
            with self.assertRaises(ExternalApiError) as ctx:
                self.client.fetch_hourly("BTC")
        self.assertEqual(ctx.exception.status_code, 429)

    def test_timeout_raises_external_error(self):
        with mock.patch("adapters.coindesk.httpx.get", side_effect=httpx.ReadTimeout("slow")):
            with self.assertRaises(ExternalApiError) as ctx:
                self.client.fetch_hourly("ETH")
        self.assertIn("timed out", str(ctx.exception))

    def test_transport_error_raises_external_error(self):
        with mock.patch("adapters.coindesk.httpx.get", side_effect=httpx.ConnectError("refused")):
            with self.assertRaises(ExternalApiError):
                self.client.fetch_hourly("ETH")

    def test_missing_data_list_is_invalid_format(self):
        resp = _response(payload={"Err": {"message": "unknown instrument"}})
        with mock.patch("adapters.coindesk.httpx.get", return_value=resp):
            with self.assertRaises(ExternalApiError) as ctx:
                self.client.fetch_hourly("XYZ")
        self.assertEqual(ctx.exception.details["error"], {"message": "unknown instrument"})

    def test_non_json_body_raises(self):
        with mock.patch("adapters.coindesk.httpx.get", return_value=_response(payload=ValueError("bad"))):
            with self.assertRaises(ExternalApiError):
                self.client.fetch_hourly("BTC")

    def test_from_config_uses_config_credentials(self):
        config = SimpleNamespace(api_url="https://cfg.example.com", api_token="cfg-token")
        client = CoinDeskClient.from_config(config)
        self.assertEqual(client.api_token, "cfg-token")
        self.assertTrue(client.endpoint.startswith("https://cfg.example.com"))
