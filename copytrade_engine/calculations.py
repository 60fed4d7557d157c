"""
Copy-Trade Engine - Trade Calculations.

============================================================
PURPOSE
============================================================
Pure arithmetic used by the executor, the reconciler and the
fan-out engine:

- Realized / unrealized P&L
- Bracket (stop-loss / take-profit) prices
- Order sizing from a notional amount
- Margin buffer gate
- Follower notional scaling

============================================================
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from .errors import ValidationError
from .types import PnL, PositionSide


HUNDRED = Decimal("100")
ZERO = Decimal("0")


def quantize(value: Decimal, precision: int) -> Decimal:
    """Round half-up to `precision` decimal places."""
    return value.quantize(Decimal(1).scaleb(-precision), rounding=ROUND_HALF_UP)


# ============================================================
# P&L
# ============================================================

def calculate_pnl(
    side: PositionSide,
    entry_price: Decimal,
    exit_price: Decimal,
    quantity: Decimal,
) -> Decimal:
    """P&L in quote currency for a position closed at exit_price."""
    if side is PositionSide.LONG:
        return (exit_price - entry_price) * quantity
    return (entry_price - exit_price) * quantity


def calculate_pnl_percent(pnl: Decimal, entry_price: Decimal, quantity: Decimal) -> Decimal:
    notional = entry_price * quantity
    if notional == ZERO:
        return ZERO
    return pnl / notional * HUNDRED


def pnl_result(
    side: PositionSide,
    entry_price: Decimal,
    exit_price: Decimal,
    quantity: Decimal,
) -> PnL:
    usd = calculate_pnl(side, entry_price, exit_price, quantity)
    return PnL(usd=usd, percent=calculate_pnl_percent(usd, entry_price, quantity))


# ============================================================
# BRACKETS
# ============================================================

def stop_loss_price(
    side: PositionSide,
    entry_price: Decimal,
    percent: Decimal,
    precision: int = 2,
) -> Decimal:
    """Stop below entry for longs, above entry for shorts."""
    offset = percent / HUNDRED
    if side is PositionSide.LONG:
        price = entry_price * (1 - offset)
    else:
        price = entry_price * (1 + offset)
    return quantize(price, precision)


def take_profit_price(
    side: PositionSide,
    entry_price: Decimal,
    percent: Decimal,
    precision: int = 2,
) -> Decimal:
    """Target above entry for longs, below entry for shorts."""
    offset = percent / HUNDRED
    if side is PositionSide.LONG:
        price = entry_price * (1 + offset)
    else:
        price = entry_price * (1 - offset)
    return quantize(price, precision)


# ============================================================
# SIZING
# ============================================================

def calculate_quantity(notional: Decimal, price: Decimal, precision: int = 3) -> Decimal:
    """
    Convert a notional amount into an order quantity.

    Raises:
        ValidationError: price is not positive or the rounded quantity is zero
    """
    if price <= ZERO:
        raise ValidationError(f"Cannot size order at non-positive price {price}")
    if notional <= ZERO:
        raise ValidationError(f"Notional must be positive, got {notional}")

    quantity = quantize(notional / price, precision)
    if quantity <= ZERO:
        raise ValidationError(
            f"Notional {notional} at price {price} rounds to zero quantity "
            f"at {precision} decimals"
        )
    return quantity


def scale_notional(leader_notional: Decimal, allocation_percent: Decimal) -> Decimal:
    return leader_notional * allocation_percent / HUNDRED


def partial_close_quantity(quantity: Decimal, sell_percentage: Optional[Decimal], precision: int) -> Decimal:
    """
    Quantity to close for a sell percentage.

    Percentages outside 0.1..100 close the whole position, as does a
    rounded quantity of zero or above the position size.
    """
    if sell_percentage is None or sell_percentage < Decimal("0.1") or sell_percentage >= HUNDRED:
        return quantity
    partial = quantize(quantity * sell_percentage / HUNDRED, precision)
    if partial <= ZERO or partial >= quantity:
        return quantity
    return partial


# ============================================================
# MARGIN
# ============================================================

def margin_allows(available: Decimal, notional: Decimal, buffer_percent: Decimal) -> bool:
    """True when `available - notional` keeps at least buffer% of available free."""
    reserve = available * buffer_percent / HUNDRED
    return available - notional >= reserve


def drawdown_percent(high_water_mark: Optional[Decimal], equity: Optional[Decimal]) -> Decimal:
    if not high_water_mark or equity is None or high_water_mark <= ZERO:
        return ZERO
    return max(ZERO, (high_water_mark - equity) / high_water_mark * HUNDRED)
