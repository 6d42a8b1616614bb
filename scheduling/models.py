from django.conf import settings
from django.core.validators import MaxValueValidator, MinValueValidator, RegexValidator
from django.db import models

from core.fields import EncryptedCredentialField
from core.models import TimeStampedModel


class DataSchedulingConfig(TimeStampedModel):
    """Per-user market data refresh settings."""

    owner = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="scheduling_config",
    )
    enabled = models.BooleanField(default=False)
    api_url = models.URLField(max_length=255, blank=True, default="")
    api_token = EncryptedCredentialField(blank=True, default="")
    daily_run_time = models.CharField(
        max_length=5,
        blank=True,
        default="",
        validators=[RegexValidator(r"^([01]\d|2[0-3]):[0-5]\d$", "Use HH:MM (24h)")],
        help_text="Local time of the daily run; empty means every scheduler pass is due",
    )
    time_zone = models.CharField(max_length=64, default="UTC")
    fetch_limit = models.PositiveIntegerField(
        default=24,
        validators=[MinValueValidator(1), MaxValueValidator(2000)],
    )
    run_analysis = models.BooleanField(default=True)
    cleanup_enabled = models.BooleanField(default=False)
    cleanup_days = models.PositiveIntegerField(default=30, validators=[MinValueValidator(1)])

    class Meta:
        constraints = [
            models.CheckConstraint(
                condition=models.Q(cleanup_days__gt=0),
                name="sched_cfg_cleanup_days_positive",
            ),
        ]

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"scheduling:{self.owner_id} ({'on' if self.enabled else 'off'})"

    @property
    def has_credentials(self) -> bool:
        return bool((self.api_url or "").strip()) and bool((self.api_token or "").strip())


class ProcessingStatus(models.Model):
    class Status(models.TextChoices):
        RUNNING = "RUNNING", "Running"
        COMPLETED = "COMPLETED", "Completed"
        FAILED = "FAILED", "Failed"

    class JobType(models.TextChoices):
        SCHEDULER_RUN = "SCHEDULER_RUN", "Scheduler run"
        DATA_SCHEDULING = "DATA_SCHEDULING", "Data scheduling"
        ANALYSIS = "ANALYSIS", "Analysis"

    process_id = models.CharField(max_length=96, unique=True)
    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="processing_statuses",
    )
    job_type = models.CharField(max_length=24, choices=JobType.choices)
    status = models.CharField(max_length=10, choices=Status.choices, default=Status.RUNNING)
    total_items = models.PositiveIntegerField(default=0)
    processed_items = models.PositiveIntegerField(default=0)
    details = models.JSONField(default=dict, blank=True)
    error = models.TextField(blank=True, default="")
    started_at = models.DateTimeField()
    completed_at = models.DateTimeField(null=True, blank=True)
    updated_at = models.DateTimeField()

    class Meta:
        ordering = ["-started_at"]
        indexes = [
            models.Index(fields=["owner", "job_type", "status", "completed_at"], name="sched_ps_owner_done_idx"),
            models.Index(fields=["status", "updated_at"], name="sched_ps_status_upd_idx"),
        ]
        verbose_name_plural = "processing statuses"

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"{self.process_id} {self.status} {self.processed_items}/{self.total_items}"

    @property
    def is_terminal(self) -> bool:
        return self.status != self.Status.RUNNING


class SchedulingLogEntry(models.Model):
    class Level(models.TextChoices):
        DEBUG = "DEBUG", "Debug"
        INFO = "INFO", "Info"
        WARNING = "WARNING", "Warning"
        ERROR = "ERROR", "Error"
        CRITICAL = "CRITICAL", "Critical"

    class Category(models.TextChoices):
        SCHEDULING = "SCHEDULING", "Scheduling"
        API_CALL = "API_CALL", "API call"
        DATA_PROCESSING = "DATA_PROCESSING", "Data processing"
        ANALYSIS = "ANALYSIS", "Analysis"
        CLEANUP = "CLEANUP", "Cleanup"

    process = models.ForeignKey(
        ProcessingStatus,
        to_field="process_id",
        db_column="process_id",
        on_delete=models.CASCADE,
        related_name="log_entries",
    )
    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="scheduling_logs",
    )
    level = models.CharField(max_length=8, choices=Level.choices, default=Level.INFO)
    category = models.CharField(max_length=16, choices=Category.choices)
    operation = models.CharField(max_length=64)
    symbol = models.CharField(max_length=32, blank=True, default="")
    message = models.TextField()
    details = models.JSONField(default=dict, blank=True)
    duration_ms = models.PositiveIntegerField(null=True, blank=True)
    timestamp = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-timestamp", "-id"]
        indexes = [
            models.Index(fields=["owner", "timestamp"], name="sched_log_owner_ts_idx"),
            models.Index(fields=["operation", "timestamp"], name="sched_log_op_ts_idx"),
        ]

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"[{self.level}] {self.operation} {self.process_id}"
