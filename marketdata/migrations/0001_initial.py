import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("core", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="HourlyBar",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("ts", models.DateTimeField()),
                ("open", models.DecimalField(decimal_places=8, max_digits=20)),
                ("high", models.DecimalField(decimal_places=8, max_digits=20)),
                ("low", models.DecimalField(decimal_places=8, max_digits=20)),
                ("close", models.DecimalField(decimal_places=8, max_digits=20)),
                ("volume", models.DecimalField(decimal_places=10, default=0, max_digits=28)),
                ("quote_volume", models.DecimalField(decimal_places=10, default=0, max_digits=28)),
                ("fetched_at", models.DateTimeField(auto_now=True)),
                (
                    "instrument",
                    models.ForeignKey(
                        db_index=False,
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="hourly_bars",
                        to="core.instrument",
                    ),
                ),
            ],
            options={
                "ordering": ["-ts"],
                "indexes": [models.Index(fields=["ts"], name="md_hourly_ts_idx")],
                "unique_together": {("instrument", "ts")},
            },
        ),
        migrations.CreateModel(
            name="AnalysisSnapshot",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("ts", models.DateTimeField(help_text="Timestamp of the last bar the snapshot was computed from")),
                ("close", models.DecimalField(decimal_places=8, max_digits=20)),
                ("sma_20", models.FloatField(blank=True, null=True)),
                ("ema_20", models.FloatField(blank=True, null=True)),
                ("rsi_14", models.FloatField(blank=True, null=True)),
                ("bb_upper", models.FloatField(blank=True, null=True)),
                ("bb_lower", models.FloatField(blank=True, null=True)),
                ("change_24h_pct", models.FloatField(blank=True, null=True)),
                (
                    "trend",
                    models.CharField(
                        choices=[("bullish", "Bullish"), ("bearish", "Bearish"), ("neutral", "Neutral")],
                        default="neutral",
                        max_length=8,
                    ),
                ),
                ("bars_used", models.PositiveIntegerField(default=0)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "instrument",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="analysis_snapshots",
                        to="core.instrument",
                    ),
                ),
            ],
            options={
                "ordering": ["-ts"],
                "unique_together": {("instrument", "ts")},
            },
        ),
    ]
