"""
Analytics providers.

The scheduling pipeline only depends on `AnalyticsProvider`; the concrete class
is picked with the ANALYTICS_PROVIDER setting.
"""
from __future__ import annotations

import logging
from typing import Any, Optional, Protocol, Sequence

import numpy as np
import pandas as pd
from django.conf import settings
from django.utils.module_loading import import_string

from core.models import Instrument
from marketdata.models import AnalysisSnapshot, HourlyBar

logger = logging.getLogger(__name__)


class AnalyticsProvider(Protocol):
    def analyze_batch(self, instruments: Sequence[Instrument]) -> dict[str, AnalysisSnapshot]:
        ...

    def analyze_portfolio(self, owner, instruments: Sequence[Instrument]) -> dict[str, Any]:
        ...


def get_analytics_provider() -> AnalyticsProvider:
    path = getattr(settings, "ANALYTICS_PROVIDER", "marketdata.analytics.TechnicalAnalyticsProvider")
    return import_string(path)()


def latest_bars(instrument: Instrument, lookback: int = 200) -> pd.DataFrame:
    rows = list(
        HourlyBar.objects.filter(instrument=instrument)
        .order_by("-ts")[:lookback]
        .values("ts", "open", "high", "low", "close", "volume")
    )
    if not rows:
        return pd.DataFrame()
    df = pd.DataFrame(rows).sort_values("ts")
    for col in ("open", "high", "low", "close", "volume"):
        df[col] = df[col].astype(float)
    df.set_index("ts", inplace=True)
    return df


def compute_rsi(closes: pd.Series, period: int = 14) -> Optional[float]:
    if len(closes) < period + 1:
        return None
    delta = closes.diff().dropna()
    gains = delta.clip(lower=0)
    losses = -delta.clip(upper=0)
    # Wilder smoothing
    avg_gain = gains.ewm(alpha=1 / period, adjust=False).mean().iloc[-1]
    avg_loss = losses.ewm(alpha=1 / period, adjust=False).mean().iloc[-1]
    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else 50.0
    rs = avg_gain / avg_loss
    return round(float(100 - 100 / (1 + rs)), 4)


def compute_bollinger(closes: pd.Series, period: int = 20, width: float = 2.0) -> tuple[Optional[float], Optional[float]]:
    if len(closes) < period:
        return None, None
    window = closes.iloc[-period:]
    mid = float(window.mean())
    std = float(np.std(window.values, ddof=0))
    return mid + width * std, mid - width * std


def classify_trend(close: float, sma: Optional[float], ema: Optional[float]) -> str:
    if sma is None or ema is None:
        return AnalysisSnapshot.Trend.NEUTRAL
    if close > sma and ema > sma:
        return AnalysisSnapshot.Trend.BULLISH
    if close < sma and ema < sma:
        return AnalysisSnapshot.Trend.BEARISH
    return AnalysisSnapshot.Trend.NEUTRAL


class TechnicalAnalyticsProvider:
    """SMA/EMA(20), RSI(14), Bollinger(20, 2) and a trend label from hourly closes."""

    min_bars = 20
    lookback = 200

    def compute(self, df: pd.DataFrame) -> Optional[dict[str, Any]]:
        if df.empty or len(df) < self.min_bars:
            return None
        closes = df["close"]
        last_close = float(closes.iloc[-1])
        sma = float(closes.rolling(20).mean().iloc[-1])
        ema = float(closes.ewm(span=20, adjust=False).mean().iloc[-1])
        upper, lower = compute_bollinger(closes)
        change_24h = None
        if len(closes) > 24 and float(closes.iloc[-25]) > 0:
            change_24h = round((last_close / float(closes.iloc[-25]) - 1) * 100, 4)
        return {
            "ts": pd.Timestamp(df.index[-1]).to_pydatetime(),
            "close": last_close,
            "sma_20": round(sma, 8),
            "ema_20": round(ema, 8),
            "rsi_14": compute_rsi(closes),
            "bb_upper": upper,
            "bb_lower": lower,
            "change_24h_pct": change_24h,
            "trend": classify_trend(last_close, sma, ema),
            "bars_used": int(len(df)),
        }

    def analyze_batch(self, instruments: Sequence[Instrument]) -> dict[str, AnalysisSnapshot]:
        out: dict[str, AnalysisSnapshot] = {}
        for inst in instruments:
            metrics = self.compute(latest_bars(inst, self.lookback))
            if metrics is None:
                logger.debug("Not enough bars to analyze %s", inst.symbol)
                continue
            ts = metrics.pop("ts")
            snapshot, _ = AnalysisSnapshot.objects.update_or_create(
                instrument=inst,
                ts=ts,
                defaults=metrics,
            )
            out[inst.symbol] = snapshot
        return out

    def analyze_portfolio(self, owner, instruments: Sequence[Instrument]) -> dict[str, Any]:
        latest: dict[str, AnalysisSnapshot] = {}
        for inst in instruments:
            snap = AnalysisSnapshot.objects.filter(instrument=inst).order_by("-ts").first()
            if snap is not None:
                latest[inst.symbol] = snap
        trends = {t.value: 0 for t in AnalysisSnapshot.Trend}
        for snap in latest.values():
            trends[snap.trend] = trends.get(snap.trend, 0) + 1
        movers = sorted(
            (s for s in latest.values() if s.change_24h_pct is not None),
            key=lambda s: s.change_24h_pct,
        )
        overbought = sorted(sym for sym, s in latest.items() if s.rsi_14 is not None and s.rsi_14 >= 70)
        oversold = sorted(sym for sym, s in latest.items() if s.rsi_14 is not None and s.rsi_14 <= 30)
        return {
            "analyzed": len(latest),
            "missing": sorted(i.symbol for i in instruments if i.symbol not in latest),
            "trends": trends,
            "overbought": overbought,
            "oversold": oversold,
            "top_gainer": movers[-1].instrument.symbol if movers else None,
            "top_loser": movers[0].instrument.symbol if movers else None,
        }
