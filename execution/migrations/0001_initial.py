import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("core", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Transaction",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("symbol", models.CharField(max_length=32)),
                (
                    "action",
                    models.CharField(choices=[("buy", "Buy"), ("sell", "Sell"), ("error", "Error")], max_length=5),
                ),
                ("requested_side", models.CharField(choices=[("buy", "Buy"), ("sell", "Sell")], max_length=4)),
                (
                    "source",
                    models.CharField(choices=[("auto", "Auto-trade"), ("manual", "Manual")], default="auto", max_length=8),
                ),
                ("quantity", models.DecimalField(decimal_places=10, max_digits=28)),
                ("price", models.DecimalField(decimal_places=8, max_digits=20)),
                ("total_amount", models.DecimalField(decimal_places=8, max_digits=28)),
                ("external_order_id", models.CharField(blank=True, default="", max_length=128)),
                ("request_audit", models.JSONField(blank=True, default=dict)),
                ("response_audit", models.JSONField(blank=True, default=dict)),
                ("needs_reconciliation", models.BooleanField(default=False)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("expires_at", models.DateTimeField(blank=True, null=True)),
                (
                    "instrument",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="transactions",
                        to="core.instrument",
                    ),
                ),
                (
                    "owner",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="transactions",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at", "-id"],
                "indexes": [
                    models.Index(fields=["owner", "created_at"], name="exec_tx_owner_created_idx"),
                    models.Index(fields=["instrument", "created_at"], name="exec_tx_instr_created_idx"),
                ],
            },
        ),
    ]
