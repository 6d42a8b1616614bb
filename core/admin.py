from django import forms
from django.contrib import admin

from .models import AutoTradeSettings, Instrument, TradingProfile


class TradingProfileAdminForm(forms.ModelForm):
    class Meta:
        model = TradingProfile
        fields = "__all__"
        widgets = {
            "exchange_api_key": forms.PasswordInput(render_value=True),
            "exchange_api_secret": forms.PasswordInput(render_value=True),
        }


@admin.register(TradingProfile)
class TradingProfileAdmin(admin.ModelAdmin):
    form = TradingProfileAdminForm
    list_display = ("user", "cash_balance", "auto_trading_enabled", "exchange", "sandbox", "updated_at")
    list_filter = ("exchange", "auto_trading_enabled", "sandbox")
    search_fields = ("user__username",)


class AutoTradeSettingsInline(admin.StackedInline):
    model = AutoTradeSettings
    extra = 0
    # The cursor only moves through the auto-trade orchestrator.
    readonly_fields = ("next_action",)


@admin.register(Instrument)
class InstrumentAdmin(admin.ModelAdmin):
    list_display = (
        "symbol",
        "owner",
        "kind",
        "quantity",
        "purchase_price",
        "last_price",
        "auto_buy_enabled",
        "auto_sell_enabled",
    )
    list_filter = ("kind", "auto_buy_enabled", "auto_sell_enabled")
    search_fields = ("symbol", "owner__username")
    readonly_fields = ("last_price", "last_price_at")
    inlines = [AutoTradeSettingsInline]
