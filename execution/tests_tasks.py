from __future__ import annotations

import json
from decimal import Decimal
from unittest.mock import Mock, patch

from django.contrib.auth import get_user_model
from django.test import SimpleTestCase, TestCase, override_settings

from core.models import AutoTradeSettings, Instrument, TradingProfile
from .activity import recent_activity, record_activity
from .locks import InstrumentBusy, acquire_redis_lock, instrument_lock, release_redis_lock
from .models import Transaction
from .tasks import _parse_prices, process_price_ticks, process_ticks_for_user


class _DummyRedis:
    def __init__(self):
        self.store: dict[str, object] = {}
        self.lists: dict[str, list] = {}

    def set(self, key, value, nx=False, ex=None):
        if nx and key in self.store:
            return False
        self.store[key] = value
        return True

    def get(self, key):
        value = self.store.get(key)
        return value.encode("utf-8") if isinstance(value, str) else value

    def delete(self, key):
        self.store.pop(key, None)

    def pipeline(self):
        return _DummyPipeline(self)

    def lrange(self, key, start, end):
        return self.lists.get(key, [])[start : end + 1]


class _DummyPipeline:
    def __init__(self, client):
        self.client = client
        self.ops = []

    def lpush(self, key, value):
        self.ops.append(("lpush", key, value))

    def ltrim(self, key, start, end):
        self.ops.append(("ltrim", key, start, end))

    def execute(self):
        for op in self.ops:
            if op[0] == "lpush":
                self.client.lists.setdefault(op[1], []).insert(0, op[2])
            else:
                _, key, start, end = op
                self.client.lists[key] = self.client.lists.get(key, [])[start : end + 1]


class LockTest(SimpleTestCase):
    def test_redis_lock_token_roundtrip(self):
        client = _DummyRedis()
        with patch("execution.locks._redis_client", return_value=client):
            got_client, token = acquire_redis_lock("lock:test", 30)
            self.assertTrue(token)
            _, second = acquire_redis_lock("lock:test", 30)
            self.assertEqual(second, "")
            release_redis_lock(got_client, "lock:test", token)
            self.assertNotIn("lock:test", client.store)

    def test_release_skips_foreign_token(self):
        client = _DummyRedis()
        client.store["lock:test"] = "someone-else"
        release_redis_lock(client, "lock:test", "mine")
        self.assertEqual(client.store["lock:test"], "someone-else")

    def test_redis_unavailable_is_fail_open(self):
        with patch("execution.locks._redis_client", return_value=None):
            self.assertEqual(acquire_redis_lock("lock:test", 30), (None, ""))

    def test_same_instrument_cannot_be_entered_twice(self):
        with instrument_lock(9001, wait_seconds=0):
            with self.assertRaises(InstrumentBusy):
                with instrument_lock(9001, wait_seconds=0):
                    pass
        with instrument_lock(9001, wait_seconds=0):
            pass

    @override_settings(AUTOTRADE_LOCK_ENABLED=True)
    def test_lock_held_by_other_worker(self):
        with patch("execution.locks.acquire_redis_lock", return_value=(Mock(), "")):
            with self.assertRaises(InstrumentBusy):
                with instrument_lock(9002, wait_seconds=0):
                    pass
        # The local lock was released on the way out.
        with instrument_lock(9002, wait_seconds=0):
            pass


class ActivityFeedTest(SimpleTestCase):
    @override_settings(AUTOTRADE_ACTIVITY_MAXLEN=3)
    def test_feed_is_bounded_and_newest_first(self):
        client = _DummyRedis()
        with patch("execution.activity._redis_client", return_value=client):
            for i in range(5):
                record_activity(7, {"symbol": f"S{i}"})
            entries = recent_activity(7)
        self.assertEqual([e["symbol"] for e in entries], ["S4", "S3", "S2"])
        self.assertIn("ts", entries[0])

    def test_feed_without_redis_is_empty(self):
        with patch("execution.activity._redis_client", return_value=None):
            record_activity(7, {"symbol": "BTC"})
            self.assertEqual(recent_activity(7), [])

    def test_unreadable_rows_are_skipped(self):
        client = _DummyRedis()
        client.lists["autotrade:activity:8"] = ["not-json", json.dumps({"symbol": "ETH"})]
        with patch("execution.activity._redis_client", return_value=client):
            self.assertEqual(recent_activity(8), [{"symbol": "ETH"}])


class PriceTickTest(TestCase):
    def setUp(self):
        self.user = get_user_model().objects.create_user("ticks", password="x")
        TradingProfile.objects.create(user=self.user, cash_balance=Decimal("1000"), auto_trading_enabled=True)
        self.btc = Instrument.objects.create(
            owner=self.user,
            symbol="BTC",
            quantity=Decimal("1"),
            purchase_price=Decimal("100"),
            auto_buy_enabled=True,
            auto_sell_enabled=True,
        )
        AutoTradeSettings.objects.create(
            instrument=self.btc,
            buy_threshold_pct=Decimal("5"),
            sell_threshold_pct=Decimal("5"),
            shares_amount=Decimal("1"),
            next_action=AutoTradeSettings.Action.SELL,
            continuous_trading=True,
        )
        self.eth = Instrument.objects.create(owner=self.user, symbol="ETH", purchase_price=Decimal("10"))

    def test_parse_prices_drops_bad_values(self):
        parsed = _parse_prices({"btc": "101.5", "eth": "abc", "sol": -1, "ada": 0})
        self.assertEqual(parsed, {"BTC": Decimal("101.5")})

    def test_ticks_record_last_price_and_trade(self):
        results = process_ticks_for_user(self.user, {"BTC": 106, "ETH": "11", "DOGE": 1})

        by_symbol = {r["symbol"]: r for r in results}
        self.assertEqual(set(by_symbol), {"BTC", "ETH"})
        self.assertEqual(by_symbol["BTC"]["outcome"], "filled")
        self.assertEqual(by_symbol["ETH"]["outcome"], "skipped")
        self.eth.refresh_from_db()
        self.assertEqual(self.eth.last_price, Decimal("11"))
        self.assertIsNotNone(self.eth.last_price_at)
        self.assertEqual(Transaction.objects.filter(symbol="BTC", action="sell").count(), 1)

    def test_crashing_instrument_does_not_stop_the_tick(self):
        ok = Mock()
        ok.as_dict.return_value = {"symbol": "ETH", "outcome": "skipped"}
        orchestrator = Mock()
        orchestrator.on_price_tick.side_effect = [RuntimeError("boom"), ok]

        with self.assertLogs("execution.tasks", "ERROR"):
            results = process_ticks_for_user(self.user, {"BTC": 106, "ETH": 11}, orchestrator=orchestrator)

        self.assertEqual(results[0]["outcome"], "error")
        self.assertEqual(results[1]["outcome"], "skipped")

    def test_other_users_instruments_are_untouched(self):
        other = get_user_model().objects.create_user("other", password="x")
        theirs = Instrument.objects.create(owner=other, symbol="BTC", purchase_price=Decimal("100"))
        process_ticks_for_user(self.user, {"BTC": 101})
        theirs.refresh_from_db()
        self.assertIsNone(theirs.last_price)

    def test_task_entrypoint(self):
        results = process_price_ticks(self.user.pk, {"BTC": 101})
        self.assertEqual(results[0]["outcome"], "no_trigger")
        self.assertEqual(process_price_ticks(999999, {"BTC": 1}), [])
