from django.conf import settings
from django.db import models

from core.models import Instrument


class TransactionQuerySet(models.QuerySet):
    def update(self, **kwargs):
        raise TypeError("Transactions are append-only")

    def for_owner(self, owner):
        return self.filter(owner=owner)

    def failed(self):
        return self.filter(action=Transaction.Action.ERROR)


class Transaction(models.Model):
    """
    Append-only record of one trade attempt, filled or failed.

    Failed attempts carry action=error; request/response/error audits are the
    tagged payloads from execution.audit.
    """

    class Action(models.TextChoices):
        BUY = "buy", "Buy"
        SELL = "sell", "Sell"
        ERROR = "error", "Error"

    class Source(models.TextChoices):
        AUTO = "auto", "Auto-trade"
        MANUAL = "manual", "Manual"

    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="transactions",
    )
    instrument = models.ForeignKey(
        Instrument,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="transactions",
    )
    symbol = models.CharField(max_length=32)
    action = models.CharField(max_length=5, choices=Action.choices)
    requested_side = models.CharField(max_length=4, choices=Action.choices[:2])
    source = models.CharField(max_length=8, choices=Source.choices, default=Source.AUTO)
    quantity = models.DecimalField(max_digits=28, decimal_places=10)
    price = models.DecimalField(max_digits=20, decimal_places=8)
    total_amount = models.DecimalField(max_digits=28, decimal_places=8)
    external_order_id = models.CharField(max_length=128, blank=True, default="")
    request_audit = models.JSONField(default=dict, blank=True)
    response_audit = models.JSONField(default=dict, blank=True)
    needs_reconciliation = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)
    expires_at = models.DateTimeField(null=True, blank=True)

    objects = TransactionQuerySet.as_manager()

    class Meta:
        ordering = ["-created_at", "-id"]
        indexes = [
            models.Index(fields=["owner", "created_at"], name="exec_tx_owner_created_idx"),
            models.Index(fields=["instrument", "created_at"], name="exec_tx_instr_created_idx"),
        ]

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"{self.symbol} {self.action} {self.quantity}@{self.price}"

    @property
    def is_error(self) -> bool:
        return self.action == self.Action.ERROR

    @property
    def error_kind(self) -> str:
        if not self.is_error:
            return ""
        return str((self.response_audit or {}).get("error_kind") or "")

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise TypeError("Transactions are append-only")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise TypeError("Transactions are append-only")
