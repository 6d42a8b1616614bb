from django.db import models

from core.models import Instrument


class HourlyBar(models.Model):
    # Composite unique index (instrument, ts) already covers instrument lookups.
    instrument = models.ForeignKey(Instrument, on_delete=models.CASCADE, db_index=False, related_name="hourly_bars")
    ts = models.DateTimeField()
    open = models.DecimalField(max_digits=20, decimal_places=8)
    high = models.DecimalField(max_digits=20, decimal_places=8)
    low = models.DecimalField(max_digits=20, decimal_places=8)
    close = models.DecimalField(max_digits=20, decimal_places=8)
    volume = models.DecimalField(max_digits=28, decimal_places=10, default=0)
    quote_volume = models.DecimalField(max_digits=28, decimal_places=10, default=0)
    fetched_at = models.DateTimeField(auto_now=True)

    class Meta:
        unique_together = ("instrument", "ts")
        ordering = ["-ts"]
        indexes = [
            models.Index(fields=["ts"], name="md_hourly_ts_idx"),
        ]

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"{self.instrument.symbol} 1h {self.ts}"


class AnalysisSnapshot(models.Model):
    class Trend(models.TextChoices):
        BULLISH = "bullish", "Bullish"
        BEARISH = "bearish", "Bearish"
        NEUTRAL = "neutral", "Neutral"

    instrument = models.ForeignKey(Instrument, on_delete=models.CASCADE, related_name="analysis_snapshots")
    ts = models.DateTimeField(help_text="Timestamp of the last bar the snapshot was computed from")
    close = models.DecimalField(max_digits=20, decimal_places=8)
    sma_20 = models.FloatField(null=True, blank=True)
    ema_20 = models.FloatField(null=True, blank=True)
    rsi_14 = models.FloatField(null=True, blank=True)
    bb_upper = models.FloatField(null=True, blank=True)
    bb_lower = models.FloatField(null=True, blank=True)
    change_24h_pct = models.FloatField(null=True, blank=True)
    trend = models.CharField(max_length=8, choices=Trend.choices, default=Trend.NEUTRAL)
    bars_used = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        unique_together = ("instrument", "ts")
        ordering = ["-ts"]

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"{self.instrument.symbol} {self.trend} @ {self.ts}"
