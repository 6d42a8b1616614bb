"""
Auto-trade orchestrator.

One evaluation per instrument per price tick, walking
Idle -> Evaluating -> Executing -> Settling -> Idle. The order port is called
at most once per evaluation and never retried here. `next_action` and the
auto enable flags are only written through `_advance_cursor`.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Optional

from django.conf import settings

from adapters import get_order_port
from adapters.orders import FAILURE_TRANSPORT, OrderExecutionPort, OrderFailed
from core.errors import (
    ConsistencyError,
    PersistenceError,
    ValidationError,
)
from core.metrics import AUTOTRADE_DECISIONS, AUTOTRADE_ORDERS
from core.models import AutoTradeSettings, Instrument, TradingProfile
from core.notifications import notify_error, notify_trade_executed
from execution import ledger, thresholds
from execution.activity import record_activity
from execution.audit import ErrorAudit, RequestAudit, ResponseAudit, sanitize_raw
from execution.ledger import FillContext
from execution.locks import InstrumentBusy, instrument_lock
from execution.models import Transaction

logger = logging.getLogger(__name__)

BUY = thresholds.BUY
SELL = thresholds.SELL


class TradeState(str, Enum):
    IDLE = "idle"
    EVALUATING = "evaluating"
    EXECUTING = "executing"
    SETTLING = "settling"


class Outcome(str, Enum):
    SKIPPED = "skipped"
    NO_TRIGGER = "no_trigger"
    BUSY = "busy"
    INVALID = "invalid"
    REJECTED = "rejected"
    FAILED = "failed"
    FILLED = "filled"
    LEDGER_ERROR = "ledger_error"


@dataclass
class TradeOutcome:
    instrument_id: int
    symbol: str
    outcome: Outcome = Outcome.SKIPPED
    side: str = ""
    quantity: Decimal | None = None
    message: str = ""
    transaction: Optional[Transaction] = None
    states: list[str] = field(default_factory=lambda: [TradeState.IDLE.value])

    def enter(self, state: TradeState) -> None:
        self.states.append(state.value)

    def finish(self, outcome: Outcome, message: str = "") -> "TradeOutcome":
        self.outcome = outcome
        if message:
            self.message = message
        if self.states[-1] != TradeState.IDLE.value:
            self.states.append(TradeState.IDLE.value)
        return self

    def as_dict(self) -> dict[str, Any]:
        return {
            "instrument_id": self.instrument_id,
            "symbol": self.symbol,
            "outcome": self.outcome.value,
            "side": self.side,
            "quantity": str(self.quantity) if self.quantity is not None else None,
            "message": self.message,
            "transaction_id": self.transaction.pk if self.transaction else None,
        }


def _opposite(action: str) -> str:
    return SELL if action == BUY else BUY


def watched_directions(cfg: AutoTradeSettings, instrument: Instrument) -> list[str]:
    """The cursor direction first, then any armed one-shot, each gated by its enable flag."""
    candidates = [cfg.next_action]
    if cfg.one_time_buy and BUY not in candidates:
        candidates.append(BUY)
    if cfg.one_time_sell and SELL not in candidates:
        candidates.append(SELL)
    enabled = {BUY: instrument.auto_buy_enabled, SELL: instrument.auto_sell_enabled}
    return [d for d in candidates if enabled[d]]


def threshold_for(direction: str, cfg: AutoTradeSettings, profile: TradingProfile) -> Decimal:
    if direction == BUY:
        value = cfg.buy_threshold_pct
        fallback = profile.default_buy_threshold_pct
    else:
        value = cfg.sell_threshold_pct
        fallback = profile.default_sell_threshold_pct
    return value if value is not None else fallback


def trade_quantity(cfg: AutoTradeSettings, current_price: Decimal) -> Decimal:
    if not cfg.has_valid_size:
        raise ValidationError(
            f"instrument {cfg.instrument_id}: trade size must be a positive share count or value",
        )
    if cfg.sizing_mode == AutoTradeSettings.SizingMode.SHARES:
        return Decimal(cfg.shares_amount)
    if current_price <= 0:
        raise ValidationError(f"cannot size a {cfg.total_value} trade at price {current_price}")
    return Decimal(cfg.total_value) / current_price


class AutoTradeOrchestrator:
    def __init__(self, port_factory: Callable[[TradingProfile], OrderExecutionPort] = get_order_port):
        self.port_factory = port_factory

    def on_price_tick(self, instrument: Instrument, current_price) -> TradeOutcome:
        """Evaluate one instrument against a live price. Failures come back as outcomes."""
        result = TradeOutcome(instrument_id=instrument.pk, symbol=instrument.symbol)
        try:
            with instrument_lock(instrument.pk):
                self._evaluate(instrument.pk, Decimal(str(current_price)), result)
        except InstrumentBusy as exc:
            result.finish(Outcome.BUSY, str(exc))
        except ValidationError as exc:
            logger.warning("Auto-trade %s invalid: %s", instrument.symbol, exc)
            result.finish(Outcome.INVALID, str(exc))
        except ConsistencyError as exc:
            logger.info("Auto-trade %s rejected before execution: %s", instrument.symbol, exc)
            result.finish(Outcome.REJECTED, str(exc))
        except PersistenceError as exc:
            # Already logged CRITICAL by the ledger.
            result.finish(Outcome.LEDGER_ERROR, str(exc))
        AUTOTRADE_DECISIONS.labels(outcome=result.outcome.value).inc()
        if result.outcome not in (Outcome.NO_TRIGGER, Outcome.SKIPPED):
            record_activity(instrument.owner_id, result.as_dict())
        return result

    def execute_manual(
        self,
        instrument: Instrument,
        side: str,
        quantity=None,
        current_price=None,
    ) -> TradeOutcome:
        """
        Synchronous user-initiated trade. Skips the auto-trade gates but keeps the
        sizing and holdings checks. Raises AutoTradeError subclasses to the caller.
        """
        if side not in (BUY, SELL):
            raise ValidationError(f"side must be buy or sell, got {side!r}")
        result = TradeOutcome(instrument_id=instrument.pk, symbol=instrument.symbol)
        try:
            with instrument_lock(instrument.pk):
                fresh = Instrument.objects.select_related("owner").get(pk=instrument.pk)
                price = current_price if current_price is not None else (fresh.last_price or fresh.purchase_price)
                price = Decimal(str(price or 0))
                if price <= 0:
                    raise ValidationError(f"{fresh.symbol}: no usable price for a manual trade")
                if quantity is not None:
                    qty = Decimal(str(quantity))
                    if qty <= 0:
                        raise ValidationError("quantity must be positive")
                else:
                    cfg = AutoTradeSettings.objects.filter(instrument=fresh).first()
                    if cfg is None:
                        raise ValidationError(f"{fresh.symbol}: quantity is required without trade settings")
                    qty = trade_quantity(cfg, price)
                profile, _ = TradingProfile.objects.get_or_create(user=fresh.owner)
                result.enter(TradeState.EVALUATING)
                self._execute(fresh, profile, side, qty, price, "market", Transaction.Source.MANUAL, None, result)
        except InstrumentBusy as exc:
            raise ConsistencyError(f"{instrument.symbol}: a trade is already in progress") from exc
        record_activity(instrument.owner_id, result.as_dict())
        return result

    def _evaluate(self, instrument_id: int, current_price: Decimal, result: TradeOutcome) -> None:
        if not getattr(settings, "AUTOTRADE_ENABLED", True):
            result.finish(Outcome.SKIPPED, "auto-trading disabled globally")
            return
        instrument = Instrument.objects.select_related("owner").get(pk=instrument_id)
        profile, _ = TradingProfile.objects.get_or_create(user=instrument.owner)
        if not profile.auto_trading_enabled:
            result.finish(Outcome.SKIPPED, "auto-trading disabled for user")
            return
        if not instrument.auto_enabled:
            result.finish(Outcome.SKIPPED, "auto buy/sell not enabled")
            return
        cfg = AutoTradeSettings.objects.filter(instrument=instrument).first()
        if cfg is None:
            result.finish(Outcome.SKIPPED, "no auto-trade settings")
            return

        result.enter(TradeState.EVALUATING)
        triggered: Optional[thresholds.ThresholdDecision] = None
        for direction in watched_directions(cfg, instrument):
            decision = thresholds.evaluate(
                current_price,
                instrument.purchase_price,
                direction,
                threshold_for(direction, cfg, profile),
            )
            logger.debug(
                "%s %s watch: move=%.4f%% threshold=%s triggered=%s",
                instrument.symbol,
                direction,
                decision.change_pct,
                decision.threshold_pct,
                decision.triggered,
            )
            if decision.triggered:
                triggered = decision
                break
        if triggered is None:
            result.finish(Outcome.NO_TRIGGER)
            return

        qty = trade_quantity(cfg, current_price)
        logger.info(
            "Auto-trade %s %s triggered: move=%.2f%% threshold=%s%% qty=%s",
            triggered.direction,
            instrument.symbol,
            triggered.change_pct,
            triggered.threshold_pct,
            qty,
        )
        self._execute(
            instrument,
            profile,
            triggered.direction,
            qty,
            current_price,
            cfg.order_kind,
            Transaction.Source.AUTO,
            self._advance_cursor(triggered.direction),
            result,
        )

    def _execute(
        self,
        instrument: Instrument,
        profile: TradingProfile,
        side: str,
        qty: Decimal,
        price: Decimal,
        order_kind: str,
        source: str,
        after_fill: Optional[ledger.AfterFill],
        result: TradeOutcome,
    ) -> None:
        result.side = side
        result.quantity = qty
        if side == SELL and instrument.quantity < qty:
            raise ConsistencyError(
                f"{instrument.symbol}: cannot sell {qty}, only {instrument.quantity} held",
                details={"held": str(instrument.quantity), "requested": str(qty)},
            )
        if side == BUY and getattr(settings, "AUTOTRADE_REQUIRE_CASH", True):
            cost = qty * price
            if cost > profile.cash_balance:
                raise ConsistencyError(
                    f"{instrument.symbol}: buy of {cost:.2f} exceeds cash balance {profile.cash_balance}",
                )

        port = self.port_factory(profile)
        result.enter(TradeState.EXECUTING)
        request = RequestAudit(
            symbol=instrument.symbol,
            side=side,
            quantity=float(qty),
            reference_price=float(price),
            order_kind=order_kind,
            venue=str(getattr(port, "name", "") or type(port).__name__),
            source=source,
        )
        try:
            order = port.execute(instrument.symbol, side, float(qty), float(price), order_kind)
        except Exception as exc:
            logger.error("Order port raised for %s %s: %s", side, instrument.symbol, exc)
            order = OrderFailed(error_code=type(exc).__name__, error_message=str(exc), kind=FAILURE_TRANSPORT)

        if not order.success:
            AUTOTRADE_ORDERS.labels(side=side, result=order.kind).inc()
            error = ErrorAudit(
                error_kind=order.kind,
                error_code=order.error_code,
                error_message=order.error_message,
                raw=sanitize_raw(order.raw),
            )
            tx = ledger.record_failure(
                owner=instrument.owner,
                instrument=instrument,
                side=side,
                source=source,
                quantity=qty,
                reference_price=price,
                request=request,
                error=error,
            )
            result.transaction = tx
            if order.ambiguous:
                logger.error(
                    "No usable response for %s %s %s; transaction %s needs manual reconciliation",
                    side,
                    qty,
                    instrument.symbol,
                    tx.pk,
                )
                notify_error(
                    f"order:{instrument.symbol}",
                    f"{side} {qty} sent without a usable response; reconcile transaction {tx.pk}",
                )
            else:
                logger.warning(
                    "Order %s %s %s rejected: %s %s",
                    side,
                    qty,
                    instrument.symbol,
                    order.error_code,
                    order.error_message,
                )
            result.finish(Outcome.FAILED, f"{side} {instrument.symbol} failed: {order.error_message}")
            return

        AUTOTRADE_ORDERS.labels(side=side, result="filled").inc()
        result.enter(TradeState.SETTLING)
        response = ResponseAudit(
            external_order_id=order.external_order_id,
            executed_price=order.executed_price,
            executed_quantity=order.executed_quantity,
            raw=sanitize_raw(order.raw),
        )
        tx = ledger.settle_fill(
            owner=instrument.owner,
            instrument=instrument,
            side=side,
            source=source,
            request=request,
            response=response,
            after_fill=after_fill,
        )
        result.transaction = tx
        notify_trade_executed(
            instrument.symbol,
            side,
            order.executed_quantity,
            order.executed_price,
            username=instrument.owner.get_username(),
            mode=source,
        )
        result.finish(
            Outcome.FILLED,
            f"{side.capitalize()} {tx.quantity} {instrument.symbol} @ {tx.price}",
        )

    def _advance_cursor(self, executed: str) -> ledger.AfterFill:
        def advance(ctx: FillContext) -> None:
            cfg = AutoTradeSettings.objects.select_for_update().get(instrument_id=ctx.instrument.pk)
            fields: list[str] = []
            consumed = (executed == BUY and cfg.one_time_buy) or (executed == SELL and cfg.one_time_sell)
            if consumed:
                if executed == BUY:
                    cfg.one_time_buy = False
                    fields.append("one_time_buy")
                else:
                    cfg.one_time_sell = False
                    fields.append("one_time_sell")
            if cfg.continuous_trading or consumed:
                cfg.next_action = _opposite(executed)
                fields.append("next_action")
            else:
                # One-time configuration: stop trading this side.
                if executed == BUY:
                    ctx.instrument.auto_buy_enabled = False
                    ctx.instrument.save(update_fields=["auto_buy_enabled", "updated_at"])
                else:
                    ctx.instrument.auto_sell_enabled = False
                    ctx.instrument.save(update_fields=["auto_sell_enabled", "updated_at"])
            if fields:
                cfg.save(update_fields=[*fields, "updated_at"])
            logger.info(
                "%s cursor after %s: next=%s continuous=%s",
                ctx.instrument.symbol,
                executed,
                cfg.next_action,
                cfg.continuous_trading,
            )

        return advance


def configure_cursor(cfg: AutoTradeSettings, next_action: str) -> AutoTradeSettings:
    """Initial placement of the cursor when settings are first created."""
    if next_action not in (BUY, SELL):
        raise ValidationError(f"next_action must be buy or sell, got {next_action!r}")
    if cfg.pk is not None:
        raise ValidationError("next_action can only be set when settings are created")
    cfg.next_action = next_action
    return cfg


__all__ = [
    "AutoTradeOrchestrator",
    "Outcome",
    "TradeOutcome",
    "TradeState",
    "configure_cursor",
    "threshold_for",
    "trade_quantity",
    "watched_directions",
]
