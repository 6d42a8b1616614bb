from decimal import Decimal

from django.conf import settings
from django.db import models

from core.fields import EncryptedCredentialField


class TimeStampedModel(models.Model):
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True


class TradingProfile(TimeStampedModel):
    """Per-user cash balance, global auto-trading switch and exchange access."""

    class Exchange(models.TextChoices):
        PAPER = "paper", "Paper (simulated)"
        KRAKEN = "kraken", "Kraken"
        BINANCE = "binance", "Binance"
        COINBASE = "coinbase", "Coinbase Advanced"

    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="trading_profile",
    )
    cash_balance = models.DecimalField(max_digits=20, decimal_places=8, default=Decimal("0"))
    auto_trading_enabled = models.BooleanField(default=False)
    default_buy_threshold_pct = models.DecimalField(
        max_digits=8, decimal_places=4, default=Decimal("5")
    )
    default_sell_threshold_pct = models.DecimalField(
        max_digits=8, decimal_places=4, default=Decimal("5")
    )
    exchange = models.CharField(max_length=16, choices=Exchange.choices, default=Exchange.PAPER)
    exchange_api_key = EncryptedCredentialField(blank=True, default="")
    exchange_api_secret = EncryptedCredentialField(blank=True, default="")
    sandbox = models.BooleanField(default=True)

    class Meta:
        constraints = [
            models.CheckConstraint(
                condition=models.Q(cash_balance__gte=0),
                name="core_profile_cash_non_negative",
            ),
        ]

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"{self.user} ({self.exchange})"

    @property
    def has_exchange_credentials(self) -> bool:
        return bool(self.exchange_api_key) and bool(self.exchange_api_secret)


class Instrument(TimeStampedModel):
    class InstrumentKind(models.TextChoices):
        CRYPTO = "crypto", "Crypto"
        STOCK = "stock", "Stock"

    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="instruments",
    )
    symbol = models.CharField(max_length=32)
    kind = models.CharField(
        max_length=8, choices=InstrumentKind.choices, default=InstrumentKind.CRYPTO
    )
    quantity = models.DecimalField(max_digits=28, decimal_places=10, default=Decimal("0"))
    purchase_price = models.DecimalField(max_digits=20, decimal_places=8, default=Decimal("0"))
    last_price = models.DecimalField(max_digits=20, decimal_places=8, null=True, blank=True)
    last_price_at = models.DateTimeField(null=True, blank=True)
    auto_buy_enabled = models.BooleanField(default=False)
    auto_sell_enabled = models.BooleanField(default=False)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["owner", "symbol"], name="core_instr_owner_symbol_uniq"),
            models.CheckConstraint(
                condition=models.Q(quantity__gte=0),
                name="core_instr_quantity_non_negative",
            ),
        ]
        indexes = [
            models.Index(fields=["owner", "symbol"], name="core_instr_owner_symbol_idx"),
        ]

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"{self.symbol} [{self.owner_id}]"

    def save(self, *args, **kwargs):
        self.symbol = (self.symbol or "").strip().upper()
        super().save(*args, **kwargs)

    @property
    def auto_enabled(self) -> bool:
        return self.auto_buy_enabled or self.auto_sell_enabled


class AutoTradeSettings(TimeStampedModel):
    """
    Per-instrument auto-trade configuration.

    `next_action` is the buy/sell cursor. After initial configuration it is only
    moved by `execution.autotrade.AutoTradeOrchestrator`; forms and the API
    expose it read-only.
    """

    class Action(models.TextChoices):
        BUY = "buy", "Buy"
        SELL = "sell", "Sell"

    class SizingMode(models.TextChoices):
        SHARES = "shares", "Fixed shares"
        VALUE = "value", "Fixed notional value"

    class OrderKind(models.TextChoices):
        MARKET = "market", "Market"
        LIMIT = "limit", "Limit"

    instrument = models.OneToOneField(
        Instrument,
        on_delete=models.CASCADE,
        related_name="autotrade",
    )
    buy_threshold_pct = models.DecimalField(max_digits=8, decimal_places=4, null=True, blank=True)
    sell_threshold_pct = models.DecimalField(max_digits=8, decimal_places=4, null=True, blank=True)
    next_action = models.CharField(max_length=4, choices=Action.choices, default=Action.BUY)
    one_time_buy = models.BooleanField(default=False)
    one_time_sell = models.BooleanField(default=False)
    continuous_trading = models.BooleanField(default=False)
    sizing_mode = models.CharField(
        max_length=8, choices=SizingMode.choices, default=SizingMode.SHARES
    )
    shares_amount = models.DecimalField(max_digits=28, decimal_places=10, default=Decimal("0"))
    total_value = models.DecimalField(max_digits=20, decimal_places=8, default=Decimal("0"))
    order_kind = models.CharField(
        max_length=8, choices=OrderKind.choices, default=OrderKind.MARKET
    )

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"autotrade:{self.instrument_id} next={self.next_action}"

    @property
    def has_valid_size(self) -> bool:
        if self.sizing_mode == self.SizingMode.SHARES:
            return (self.shares_amount or 0) > 0
        return (self.total_value or 0) > 0
