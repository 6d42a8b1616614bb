"""
Threshold evaluation for auto-trading.

Pure functions, no Django access. Prices and thresholds may be Decimal, float
or int; comparisons are done in Decimal so a move exactly equal to the
threshold triggers.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from core.errors import ValidationError

BUY = "buy"
SELL = "sell"


def _dec(value, name: str) -> Decimal:
    try:
        out = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValidationError(f"{name} is not a number: {value!r}") from exc
    if not out.is_finite():
        raise ValidationError(f"{name} must be finite: {value!r}")
    return out


def change_pct(current_price, reference_price) -> Decimal:
    """Signed percent move of current against reference."""
    ref = _dec(reference_price, "reference_price")
    if ref <= 0:
        raise ValidationError(f"reference_price must be positive, got {reference_price!r}")
    cur = _dec(current_price, "current_price")
    if cur < 0:
        raise ValidationError(f"current_price must not be negative, got {current_price!r}")
    return (cur - ref) / ref * 100


def should_trade(current_price, reference_price, direction: str, threshold_pct) -> bool:
    """
    sell: (current - reference) / reference * 100 >= threshold
    buy:  (reference - current) / reference * 100 >= threshold
    """
    if direction not in (BUY, SELL):
        raise ValidationError(f"direction must be buy or sell, got {direction!r}")
    threshold = _dec(threshold_pct, "threshold_pct")
    if threshold < 0:
        raise ValidationError(f"threshold_pct must not be negative, got {threshold_pct!r}")
    move = change_pct(current_price, reference_price)
    if direction == SELL:
        return move >= threshold
    return -move >= threshold


@dataclass(frozen=True)
class ThresholdDecision:
    direction: str
    triggered: bool
    change_pct: Decimal
    threshold_pct: Decimal


def evaluate(current_price, reference_price, direction: str, threshold_pct) -> ThresholdDecision:
    triggered = should_trade(current_price, reference_price, direction, threshold_pct)
    return ThresholdDecision(
        direction=direction,
        triggered=triggered,
        change_pct=change_pct(current_price, reference_price),
        threshold_pct=_dec(threshold_pct, "threshold_pct"),
    )
