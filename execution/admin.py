from django.contrib import admin

from .models import Transaction


@admin.register(Transaction)
class TransactionAdmin(admin.ModelAdmin):
    list_display = (
        "created_at",
        "owner",
        "symbol",
        "action",
        "requested_side",
        "source",
        "quantity",
        "price",
        "total_amount",
        "needs_reconciliation",
    )
    list_filter = ("action", "source", "needs_reconciliation")
    search_fields = ("symbol", "external_order_id", "owner__username")
    date_hierarchy = "created_at"

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False

    def has_add_permission(self, request):
        return False
