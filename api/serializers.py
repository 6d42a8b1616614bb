from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from rest_framework import serializers

from core.models import AutoTradeSettings, Instrument, TradingProfile
from execution.autotrade import configure_cursor
from execution.models import Transaction
from scheduling.models import DataSchedulingConfig, ProcessingStatus, SchedulingLogEntry
from scheduling.status import progress_percent

# Only settable when the row is created; afterwards the auto-trade orchestrator owns them.
CREATE_ONLY_INSTRUMENT_FIELDS = ("auto_buy_enabled", "auto_sell_enabled")


class TradingProfileSerializer(serializers.ModelSerializer):
    exchange_api_key = serializers.CharField(write_only=True, required=False, allow_blank=True)
    exchange_api_secret = serializers.CharField(write_only=True, required=False, allow_blank=True)
    has_exchange_credentials = serializers.BooleanField(read_only=True)

    class Meta:
        model = TradingProfile
        fields = (
            "cash_balance",
            "auto_trading_enabled",
            "default_buy_threshold_pct",
            "default_sell_threshold_pct",
            "exchange",
            "sandbox",
            "exchange_api_key",
            "exchange_api_secret",
            "has_exchange_credentials",
            "updated_at",
        )
        read_only_fields = ("updated_at",)

    def validate_cash_balance(self, value):
        if value < 0:
            raise serializers.ValidationError("cash balance cannot be negative")
        return value


class InstrumentSerializer(serializers.ModelSerializer):
    class Meta:
        model = Instrument
        fields = "__all__"
        read_only_fields = ("owner", "last_price", "last_price_at", "created_at", "updated_at")

    def validate_quantity(self, value):
        if value < 0:
            raise serializers.ValidationError("quantity cannot be negative")
        return value

    def validate_symbol(self, value):
        symbol = (value or "").strip().upper()
        if not symbol:
            raise serializers.ValidationError("symbol is required")
        request = self.context.get("request")
        qs = Instrument.objects.filter(owner=getattr(request, "user", None), symbol=symbol)
        if self.instance is not None:
            qs = qs.exclude(pk=self.instance.pk)
        if request is not None and qs.exists():
            raise serializers.ValidationError(f"{symbol} is already tracked")
        return symbol

    def update(self, instance, validated_data):
        for name in CREATE_ONLY_INSTRUMENT_FIELDS:
            validated_data.pop(name, None)
        return super().update(instance, validated_data)


class AutoTradeSettingsSerializer(serializers.ModelSerializer):
    class Meta:
        model = AutoTradeSettings
        fields = "__all__"
        read_only_fields = ("created_at", "updated_at")

    def get_fields(self):
        fields = super().get_fields()
        if self.instance is not None:
            fields["next_action"].read_only = True
            fields["instrument"].read_only = True
        request = self.context.get("request")
        if request is not None and "instrument" in fields and not fields["instrument"].read_only:
            fields["instrument"].queryset = Instrument.objects.filter(owner=request.user)
        return fields

    def validate(self, attrs):
        for name in ("buy_threshold_pct", "sell_threshold_pct"):
            value = attrs.get(name)
            if value is not None and value < 0:
                raise serializers.ValidationError({name: "threshold cannot be negative"})
        mode = attrs.get("sizing_mode", getattr(self.instance, "sizing_mode", AutoTradeSettings.SizingMode.SHARES))
        if mode == AutoTradeSettings.SizingMode.SHARES:
            amount = attrs.get("shares_amount", getattr(self.instance, "shares_amount", 0))
            if not amount or amount <= 0:
                raise serializers.ValidationError({"shares_amount": "must be positive when trading by shares"})
        else:
            value = attrs.get("total_value", getattr(self.instance, "total_value", 0))
            if not value or value <= 0:
                raise serializers.ValidationError({"total_value": "must be positive when trading by value"})
        return attrs

    def create(self, validated_data):
        next_action = validated_data.pop("next_action", AutoTradeSettings.Action.BUY)
        cfg = configure_cursor(AutoTradeSettings(**validated_data), next_action)
        cfg.save()
        return cfg


class TransactionSerializer(serializers.ModelSerializer):
    is_error = serializers.BooleanField(read_only=True)
    error_kind = serializers.CharField(read_only=True)

    class Meta:
        model = Transaction
        fields = "__all__"
        read_only_fields = [f.name for f in Transaction._meta.fields]


class DataSchedulingConfigSerializer(serializers.ModelSerializer):
    api_token = serializers.CharField(write_only=True, required=False, allow_blank=True)
    has_credentials = serializers.BooleanField(read_only=True)

    class Meta:
        model = DataSchedulingConfig
        exclude = ("owner",)
        read_only_fields = ("created_at", "updated_at")

    def validate_time_zone(self, value):
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise serializers.ValidationError(f"unknown time zone {value!r}") from exc
        return value

    def validate_cleanup_days(self, value):
        if value <= 0:
            raise serializers.ValidationError("cleanup days must be positive")
        return value


class ProcessingStatusSerializer(serializers.ModelSerializer):
    progress_percent = serializers.SerializerMethodField()

    class Meta:
        model = ProcessingStatus
        fields = "__all__"

    def get_progress_percent(self, obj) -> int:
        return progress_percent(obj.processed_items, obj.total_items)


class SchedulingLogEntrySerializer(serializers.ModelSerializer):
    process_id = serializers.CharField(read_only=True)

    class Meta:
        model = SchedulingLogEntry
        exclude = ("process",)
