"""
Trade ledger writer.

A fill is settled as one database transaction: the Transaction row first, then
holdings, reference price, cash balance and the caller's cursor update inside
a savepoint. If the savepoint fails the Transaction row still commits, so a
confirmed order is never lost, and the failure is raised as PersistenceError
after a CRITICAL log.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Optional

from django.db import DatabaseError, transaction

from adapters.orders import FAILURE_TRANSPORT
from core.errors import ConsistencyError, PersistenceError
from core.metrics import LEDGER_FAILURES
from core.models import Instrument, TradingProfile
from core.notifications import notify_critical
from execution.audit import ErrorAudit, RequestAudit, ResponseAudit, to_payload
from execution.models import Transaction

logger = logging.getLogger(__name__)

QTY_STEP = Decimal("1e-10")
PRICE_STEP = Decimal("1e-8")
ZERO = Decimal("0")


def _qty(value) -> Decimal:
    return Decimal(str(value)).quantize(QTY_STEP, rounding=ROUND_HALF_UP)


def _price(value) -> Decimal:
    return Decimal(str(value)).quantize(PRICE_STEP, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class FillContext:
    instrument: Instrument
    profile: TradingProfile
    transaction: Transaction


AfterFill = Callable[[FillContext], None]


def record_failure(
    *,
    owner,
    instrument: Instrument,
    side: str,
    source: str,
    quantity,
    reference_price,
    request: RequestAudit,
    error: ErrorAudit,
) -> Transaction:
    """Write the error Transaction for an order the port did not fill."""
    qty = _qty(quantity)
    price = _price(reference_price)
    try:
        return Transaction.objects.create(
            owner=owner,
            instrument=instrument,
            symbol=instrument.symbol,
            action=Transaction.Action.ERROR,
            requested_side=side,
            source=source,
            quantity=qty,
            price=price,
            total_amount=_price(qty * price),
            request_audit=to_payload(request),
            response_audit=to_payload(error),
            needs_reconciliation=error.error_kind == FAILURE_TRANSPORT,
        )
    except DatabaseError as exc:
        logger.error(
            "Could not record failed %s %s for user=%s: %s",
            side,
            instrument.symbol,
            getattr(owner, "pk", owner),
            exc,
        )
        raise PersistenceError(
            f"failed to record error transaction for {instrument.symbol}",
            details={"error_code": error.error_code},
        ) from exc


def _apply_fill(
    owner,
    instrument_id: int,
    side: str,
    qty: Decimal,
    price: Decimal,
    total: Decimal,
    tx: Transaction,
    after_fill: Optional[AfterFill],
) -> None:
    instrument = Instrument.objects.select_for_update().get(pk=instrument_id)
    profile = TradingProfile.objects.select_for_update().get(user_id=owner.pk)

    if side == Transaction.Action.BUY:
        instrument.quantity = instrument.quantity + qty
        profile.cash_balance = max(ZERO, profile.cash_balance - total)
    else:
        remaining = instrument.quantity - qty
        if remaining < 0:
            raise ConsistencyError(
                f"{instrument.symbol}: sold {qty} but only {instrument.quantity} held",
            )
        instrument.quantity = remaining
        profile.cash_balance = profile.cash_balance + total
    instrument.purchase_price = price

    instrument.save(update_fields=["quantity", "purchase_price", "updated_at"])
    profile.save(update_fields=["cash_balance", "updated_at"])
    if after_fill is not None:
        after_fill(FillContext(instrument=instrument, profile=profile, transaction=tx))


def settle_fill(
    *,
    owner,
    instrument: Instrument,
    side: str,
    source: str,
    request: RequestAudit,
    response: ResponseAudit,
    after_fill: Optional[AfterFill] = None,
) -> Transaction:
    qty = _qty(response.executed_quantity)
    price = _price(response.executed_price)
    total = _price(qty * price)
    ledger_error: Exception | None = None

    try:
        with transaction.atomic():
            tx = Transaction.objects.create(
                owner=owner,
                instrument=instrument,
                symbol=instrument.symbol,
                action=side,
                requested_side=side,
                source=source,
                quantity=qty,
                price=price,
                total_amount=total,
                external_order_id=response.external_order_id,
                request_audit=to_payload(request),
                response_audit=to_payload(response),
            )
            try:
                with transaction.atomic():
                    _apply_fill(owner, instrument.pk, side, qty, price, total, tx, after_fill)
            except Exception as exc:
                ledger_error = exc
    except DatabaseError as exc:
        LEDGER_FAILURES.inc()
        logger.critical(
            "Order %s filled (%s %s %s @ %s) but the transaction could not be written: %s",
            response.external_order_id,
            side,
            qty,
            instrument.symbol,
            price,
            exc,
        )
        notify_critical(
            f"ledger:{instrument.symbol}",
            f"order {response.external_order_id} filled, transaction not written: {exc}",
        )
        raise PersistenceError(
            f"{instrument.symbol}: order {response.external_order_id} filled but not recorded",
            details={"external_order_id": response.external_order_id},
        ) from exc

    if ledger_error is not None:
        LEDGER_FAILURES.inc()
        logger.critical(
            "Order %s filled and transaction %s recorded, but holdings/balance update failed for %s: %s",
            response.external_order_id,
            tx.pk,
            instrument.symbol,
            ledger_error,
        )
        notify_critical(
            f"ledger:{instrument.symbol}",
            f"transaction {tx.pk} recorded, holdings/balance not updated: {ledger_error}",
        )
        raise PersistenceError(
            f"{instrument.symbol}: holdings not updated after fill",
            details={"transaction_id": tx.pk, "external_order_id": response.external_order_id},
        ) from ledger_error

    return tx
