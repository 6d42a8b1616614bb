from django.contrib import admin

from .models import AnalysisSnapshot, HourlyBar


@admin.register(HourlyBar)
class HourlyBarAdmin(admin.ModelAdmin):
    list_display = ("instrument", "ts", "close", "volume", "fetched_at")
    list_filter = ("instrument__symbol",)
    ordering = ("-ts",)


@admin.register(AnalysisSnapshot)
class AnalysisSnapshotAdmin(admin.ModelAdmin):
    list_display = ("instrument", "ts", "close", "rsi_14", "change_24h_pct", "trend")
    list_filter = ("trend",)
    ordering = ("-ts",)
