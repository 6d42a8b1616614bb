from datetime import datetime, timedelta, timezone as dt_timezone
from decimal import Decimal

import pandas as pd
from django.contrib.auth import get_user_model
from django.test import SimpleTestCase, TestCase, override_settings
from django.utils import timezone

from core.errors import ValidationError
from core.models import Instrument
from .analytics import (
    TechnicalAnalyticsProvider,
    classify_trend,
    compute_bollinger,
    compute_rsi,
    get_analytics_provider,
)
from .ingest import store_hourly_bars
from .models import AnalysisSnapshot, HourlyBar
from .retention import purge_older_than


def _bars(closes, start=None):
    start = start or datetime(2024, 1, 1, tzinfo=dt_timezone.utc)
    return [
        {
            "ts": start + timedelta(hours=i),
            "open": c,
            "high": c + 1,
            "low": c - 1,
            "close": c,
            "volume": 10.0,
            "quote_volume": 10.0 * c,
        }
        for i, c in enumerate(closes)
    ]


class IndicatorTest(SimpleTestCase):
    def test_rsi_needs_enough_points(self):
        self.assertIsNone(compute_rsi(pd.Series([1.0, 2.0, 3.0])))

    def test_rsi_extremes(self):
        rising = pd.Series([float(i) for i in range(1, 31)])
        falling = pd.Series([float(i) for i in range(30, 0, -1)])
        flat = pd.Series([5.0] * 30)
        self.assertEqual(compute_rsi(rising), 100.0)
        self.assertLess(compute_rsi(falling), 1.0)
        self.assertEqual(compute_rsi(flat), 50.0)

    def test_bollinger_brackets_the_mean(self):
        closes = pd.Series([float(i % 5) + 10 for i in range(40)])
        upper, lower = compute_bollinger(closes)
        mean = float(closes.iloc[-20:].mean())
        self.assertGreater(upper, mean)
        self.assertLess(lower, mean)
        self.assertEqual(compute_bollinger(closes.iloc[:5]), (None, None))

    def test_classify_trend(self):
        self.assertEqual(classify_trend(110, 100, 105), AnalysisSnapshot.Trend.BULLISH)
        self.assertEqual(classify_trend(90, 100, 95), AnalysisSnapshot.Trend.BEARISH)
        self.assertEqual(classify_trend(101, 100, 99), AnalysisSnapshot.Trend.NEUTRAL)
        self.assertEqual(classify_trend(101, None, None), AnalysisSnapshot.Trend.NEUTRAL)

    def test_provider_is_configurable(self):
        with override_settings(ANALYTICS_PROVIDER="marketdata.analytics.TechnicalAnalyticsProvider"):
            self.assertIsInstance(get_analytics_provider(), TechnicalAnalyticsProvider)


class IngestTest(TestCase):
    def setUp(self):
        self.user = get_user_model().objects.create_user("md", password="x")
        self.inst = Instrument.objects.create(owner=self.user, symbol="BTC")

    def test_store_is_an_upsert(self):
        self.assertEqual(store_hourly_bars(self.inst, _bars([100.0, 101.0])), 2)
        store_hourly_bars(self.inst, _bars([100.0, 105.0]))

        self.assertEqual(HourlyBar.objects.filter(instrument=self.inst).count(), 2)
        newest = HourlyBar.objects.filter(instrument=self.inst).order_by("-ts").first()
        self.assertEqual(newest.close, Decimal("105"))

    def test_last_price_follows_newest_close(self):
        bars = _bars([100.0, 101.0, 102.5])
        store_hourly_bars(self.inst, list(reversed(bars)))
        self.inst.refresh_from_db()
        self.assertEqual(self.inst.last_price, Decimal("102.5"))
        self.assertEqual(self.inst.last_price_at, bars[-1]["ts"])

    def test_empty_batch_is_noop(self):
        self.assertEqual(store_hourly_bars(self.inst, []), 0)


class AnalyticsProviderTest(TestCase):
    def setUp(self):
        self.user = get_user_model().objects.create_user("ana", password="x")
        self.up = Instrument.objects.create(owner=self.user, symbol="UP")
        self.down = Instrument.objects.create(owner=self.user, symbol="DOWN")
        self.thin = Instrument.objects.create(owner=self.user, symbol="THIN")
        store_hourly_bars(self.up, _bars([100.0 + i for i in range(30)]))
        store_hourly_bars(self.down, _bars([200.0 - 2 * i for i in range(30)]))
        store_hourly_bars(self.thin, _bars([1.0, 2.0, 3.0]))
        self.provider = TechnicalAnalyticsProvider()

    def test_analyze_batch_writes_snapshots(self):
        snaps = self.provider.analyze_batch([self.up, self.down, self.thin])

        self.assertEqual(set(snaps), {"UP", "DOWN"})
        up = snaps["UP"]
        self.assertEqual(up.trend, AnalysisSnapshot.Trend.BULLISH)
        self.assertEqual(up.bars_used, 30)
        self.assertEqual(up.close, Decimal("129"))
        self.assertIsNotNone(up.change_24h_pct)
        self.assertEqual(snaps["DOWN"].trend, AnalysisSnapshot.Trend.BEARISH)

    def test_analyze_batch_is_idempotent_per_bar(self):
        self.provider.analyze_batch([self.up])
        self.provider.analyze_batch([self.up])
        self.assertEqual(AnalysisSnapshot.objects.filter(instrument=self.up).count(), 1)

    def test_portfolio_summary(self):
        self.provider.analyze_batch([self.up, self.down])

        summary = self.provider.analyze_portfolio(self.user, [self.up, self.down, self.thin])

        self.assertEqual(summary["analyzed"], 2)
        self.assertEqual(summary["missing"], ["THIN"])
        self.assertEqual(summary["trends"]["bullish"], 1)
        self.assertEqual(summary["trends"]["bearish"], 1)
        self.assertEqual(summary["top_gainer"], "UP")
        self.assertEqual(summary["top_loser"], "DOWN")
        self.assertIn("UP", summary["overbought"])
        self.assertIn("DOWN", summary["oversold"])


class RetentionTest(TestCase):
    def setUp(self):
        self.user = get_user_model().objects.create_user("ret", password="x")
        self.other = get_user_model().objects.create_user("ret2", password="x")
        self.inst = Instrument.objects.create(owner=self.user, symbol="BTC")
        self.theirs = Instrument.objects.create(owner=self.other, symbol="BTC")
        old = timezone.now() - timedelta(days=40)
        recent = timezone.now() - timedelta(days=1)
        store_hourly_bars(self.inst, _bars([1.0, 2.0], start=old))
        store_hourly_bars(self.inst, _bars([3.0], start=recent))
        store_hourly_bars(self.theirs, _bars([1.0], start=old))

    def test_purge_only_touches_old_rows_of_the_owner(self):
        result = purge_older_than(self.user, 30)

        self.assertEqual(result["hourly_bars"], 2)
        self.assertEqual(HourlyBar.objects.filter(instrument=self.inst).count(), 1)
        self.assertEqual(HourlyBar.objects.filter(instrument=self.theirs).count(), 1)

    def test_non_positive_days_rejected(self):
        with self.assertRaises(ValidationError):
            purge_older_than(self.user, 0)
