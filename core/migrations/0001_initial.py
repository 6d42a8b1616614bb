import decimal

import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models

import core.fields


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="TradingProfile",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("cash_balance", models.DecimalField(decimal_places=8, default=decimal.Decimal("0"), max_digits=20)),
                ("auto_trading_enabled", models.BooleanField(default=False)),
                ("default_buy_threshold_pct", models.DecimalField(decimal_places=4, default=decimal.Decimal("5"), max_digits=8)),
                ("default_sell_threshold_pct", models.DecimalField(decimal_places=4, default=decimal.Decimal("5"), max_digits=8)),
                (
                    "exchange",
                    models.CharField(
                        choices=[
                            ("paper", "Paper (simulated)"),
                            ("kraken", "Kraken"),
                            ("binance", "Binance"),
                            ("coinbase", "Coinbase Advanced"),
                        ],
                        default="paper",
                        max_length=16,
                    ),
                ),
                ("exchange_api_key", core.fields.EncryptedCredentialField(blank=True, default="")),
                ("exchange_api_secret", core.fields.EncryptedCredentialField(blank=True, default="")),
                ("sandbox", models.BooleanField(default=True)),
                (
                    "user",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="trading_profile",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("cash_balance__gte", 0)),
                        name="core_profile_cash_non_negative",
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="Instrument",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("symbol", models.CharField(max_length=32)),
                (
                    "kind",
                    models.CharField(choices=[("crypto", "Crypto"), ("stock", "Stock")], default="crypto", max_length=8),
                ),
                ("quantity", models.DecimalField(decimal_places=10, default=decimal.Decimal("0"), max_digits=28)),
                ("purchase_price", models.DecimalField(decimal_places=8, default=decimal.Decimal("0"), max_digits=20)),
                ("last_price", models.DecimalField(blank=True, decimal_places=8, max_digits=20, null=True)),
                ("last_price_at", models.DateTimeField(blank=True, null=True)),
                ("auto_buy_enabled", models.BooleanField(default=False)),
                ("auto_sell_enabled", models.BooleanField(default=False)),
                (
                    "owner",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="instruments",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "indexes": [models.Index(fields=["owner", "symbol"], name="core_instr_owner_symbol_idx")],
                "constraints": [
                    models.UniqueConstraint(fields=("owner", "symbol"), name="core_instr_owner_symbol_uniq"),
                    models.CheckConstraint(
                        condition=models.Q(("quantity__gte", 0)),
                        name="core_instr_quantity_non_negative",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="AutoTradeSettings",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("buy_threshold_pct", models.DecimalField(blank=True, decimal_places=4, max_digits=8, null=True)),
                ("sell_threshold_pct", models.DecimalField(blank=True, decimal_places=4, max_digits=8, null=True)),
                (
                    "next_action",
                    models.CharField(choices=[("buy", "Buy"), ("sell", "Sell")], default="buy", max_length=4),
                ),
                ("one_time_buy", models.BooleanField(default=False)),
                ("one_time_sell", models.BooleanField(default=False)),
                ("continuous_trading", models.BooleanField(default=False)),
                (
                    "sizing_mode",
                    models.CharField(
                        choices=[("shares", "Fixed shares"), ("value", "Fixed notional value")],
                        default="shares",
                        max_length=8,
                    ),
                ),
                ("shares_amount", models.DecimalField(decimal_places=10, default=decimal.Decimal("0"), max_digits=28)),
                ("total_value", models.DecimalField(decimal_places=8, default=decimal.Decimal("0"), max_digits=20)),
                (
                    "order_kind",
                    models.CharField(choices=[("market", "Market"), ("limit", "Limit")], default="market", max_length=8),
                ),
                (
                    "instrument",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="autotrade",
                        to="core.instrument",
                    ),
                ),
            ],
        ),
    ]
