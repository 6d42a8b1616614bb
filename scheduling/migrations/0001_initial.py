import django.core.validators
import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models

import core.fields


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("core", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="DataSchedulingConfig",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("enabled", models.BooleanField(default=False)),
                ("api_url", models.URLField(blank=True, default="", max_length=255)),
                ("api_token", core.fields.EncryptedCredentialField(blank=True, default="")),
                (
                    "daily_run_time",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="Local time of the daily run; empty means every scheduler pass is due",
                        max_length=5,
                        validators=[
                            django.core.validators.RegexValidator("^([01]\\d|2[0-3]):[0-5]\\d$", "Use HH:MM (24h)")
                        ],
                    ),
                ),
                ("time_zone", models.CharField(default="UTC", max_length=64)),
                (
                    "fetch_limit",
                    models.PositiveIntegerField(
                        default=24,
                        validators=[
                            django.core.validators.MinValueValidator(1),
                            django.core.validators.MaxValueValidator(2000),
                        ],
                    ),
                ),
                ("run_analysis", models.BooleanField(default=True)),
                ("cleanup_enabled", models.BooleanField(default=False)),
                (
                    "cleanup_days",
                    models.PositiveIntegerField(default=30, validators=[django.core.validators.MinValueValidator(1)]),
                ),
                (
                    "owner",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="scheduling_config",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("cleanup_days__gt", 0)),
                        name="sched_cfg_cleanup_days_positive",
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="ProcessingStatus",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("process_id", models.CharField(max_length=96, unique=True)),
                (
                    "job_type",
                    models.CharField(
                        choices=[
                            ("SCHEDULER_RUN", "Scheduler run"),
                            ("DATA_SCHEDULING", "Data scheduling"),
                            ("ANALYSIS", "Analysis"),
                        ],
                        max_length=24,
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[("RUNNING", "Running"), ("COMPLETED", "Completed"), ("FAILED", "Failed")],
                        default="RUNNING",
                        max_length=10,
                    ),
                ),
                ("total_items", models.PositiveIntegerField(default=0)),
                ("processed_items", models.PositiveIntegerField(default=0)),
                ("details", models.JSONField(blank=True, default=dict)),
                ("error", models.TextField(blank=True, default="")),
                ("started_at", models.DateTimeField()),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("updated_at", models.DateTimeField()),
                (
                    "owner",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="processing_statuses",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name_plural": "processing statuses",
                "ordering": ["-started_at"],
                "indexes": [
                    models.Index(
                        fields=["owner", "job_type", "status", "completed_at"],
                        name="sched_ps_owner_done_idx",
                    ),
                    models.Index(fields=["status", "updated_at"], name="sched_ps_status_upd_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="SchedulingLogEntry",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "level",
                    models.CharField(
                        choices=[
                            ("DEBUG", "Debug"),
                            ("INFO", "Info"),
                            ("WARNING", "Warning"),
                            ("ERROR", "Error"),
                            ("CRITICAL", "Critical"),
                        ],
                        default="INFO",
                        max_length=8,
                    ),
                ),
                (
                    "category",
                    models.CharField(
                        choices=[
                            ("SCHEDULING", "Scheduling"),
                            ("API_CALL", "API call"),
                            ("DATA_PROCESSING", "Data processing"),
                            ("ANALYSIS", "Analysis"),
                            ("CLEANUP", "Cleanup"),
                        ],
                        max_length=16,
                    ),
                ),
                ("operation", models.CharField(max_length=64)),
                ("symbol", models.CharField(blank=True, default="", max_length=32)),
                ("message", models.TextField()),
                ("details", models.JSONField(blank=True, default=dict)),
                ("duration_ms", models.PositiveIntegerField(blank=True, null=True)),
                ("timestamp", models.DateTimeField(auto_now_add=True)),
                (
                    "owner",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="scheduling_logs",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "process",
                    models.ForeignKey(
                        db_column="process_id",
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="log_entries",
                        to="scheduling.processingstatus",
                        to_field="process_id",
                    ),
                ),
            ],
            options={
                "ordering": ["-timestamp", "-id"],
                "indexes": [
                    models.Index(fields=["owner", "timestamp"], name="sched_log_owner_ts_idx"),
                    models.Index(fields=["operation", "timestamp"], name="sched_log_op_ts_idx"),
                ],
            },
        ),
    ]
