from django import forms
from django.contrib import admin

from .models import DataSchedulingConfig, ProcessingStatus, SchedulingLogEntry


class DataSchedulingConfigAdminForm(forms.ModelForm):
    class Meta:
        model = DataSchedulingConfig
        fields = "__all__"
        widgets = {"api_token": forms.PasswordInput(render_value=True)}


@admin.register(DataSchedulingConfig)
class DataSchedulingConfigAdmin(admin.ModelAdmin):
    form = DataSchedulingConfigAdminForm
    list_display = ("owner", "enabled", "daily_run_time", "time_zone", "run_analysis", "cleanup_enabled")
    list_filter = ("enabled", "run_analysis", "cleanup_enabled")
    search_fields = ("owner__username",)


@admin.register(ProcessingStatus)
class ProcessingStatusAdmin(admin.ModelAdmin):
    list_display = ("process_id", "owner", "job_type", "status", "processed_items", "total_items", "started_at")
    list_filter = ("job_type", "status")
    search_fields = ("process_id", "owner__username")
    ordering = ("-started_at",)


@admin.register(SchedulingLogEntry)
class SchedulingLogEntryAdmin(admin.ModelAdmin):
    list_display = ("timestamp", "level", "category", "operation", "symbol", "process_id", "duration_ms")
    list_filter = ("level", "category", "operation")
    search_fields = ("process__process_id", "symbol", "message")
    ordering = ("-timestamp",)
