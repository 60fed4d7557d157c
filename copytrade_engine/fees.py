"""
Copy-Trade Engine - Equity Curve and Fees.

============================================================
PURPOSE
============================================================
High-water-mark accounting for copy relationships.

    equity        = initial_equity + realized_pnl
    fee_eligible  = max(0, equity - high_water_mark_before)
    high_water    = max(high_water_mark_before, equity)
    drawdown %    = (high_water - equity) / high_water * 100

Only profit above the previous peak is billable; losses and
recovered losses never are. The override fee on that profit is
split between the platform and the leader.

============================================================
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from .calculations import HUNDRED, ZERO, drawdown_percent, quantize
from .types import CopyRelationship


@dataclass(frozen=True)
class EquityUpdate:
    """Effect of one closed trade on a relationship's equity curve."""

    equity: Decimal
    high_water_mark: Decimal
    previous_high_water_mark: Decimal
    drawdown_percent: Decimal
    fee_eligible_profit: Decimal


@dataclass(frozen=True)
class FeeBreakdown:
    fee_eligible_profit: Decimal
    override_fee: Decimal
    platform_fee: Decimal
    leader_fee: Decimal


def ensure_baseline(relationship: CopyRelationship, equity: Decimal) -> bool:
    """
    Set the equity baseline if the relationship has none yet.

    Returns True when the relationship was changed.
    """
    if relationship.initial_equity is not None:
        return False
    relationship.initial_equity = equity
    relationship.high_water_mark = equity
    relationship.current_drawdown = ZERO
    return True


def apply_closed_trade(relationship: CopyRelationship, realized_pnl: Decimal) -> EquityUpdate:
    """Book a realized P&L into the relationship and return the new curve point."""
    if relationship.initial_equity is None:
        relationship.initial_equity = ZERO

    previous = relationship.high_water_mark
    if previous is None:
        previous = relationship.initial_equity

    relationship.realized_pnl += realized_pnl
    equity = relationship.equity

    fee_eligible = max(ZERO, equity - previous)
    relationship.high_water_mark = max(previous, equity)
    relationship.current_drawdown = drawdown_percent(relationship.high_water_mark, equity)

    return EquityUpdate(
        equity=equity,
        high_water_mark=relationship.high_water_mark,
        previous_high_water_mark=previous,
        drawdown_percent=relationship.current_drawdown,
        fee_eligible_profit=fee_eligible,
    )


def split_fee(
    fee_eligible_profit: Decimal,
    override_fee_percent: Decimal,
    platform_share_percent: Decimal,
    precision: int = 2,
) -> FeeBreakdown:
    fee = quantize(fee_eligible_profit * override_fee_percent / HUNDRED, precision)
    platform = quantize(fee * platform_share_percent / HUNDRED, precision)
    return FeeBreakdown(
        fee_eligible_profit=fee_eligible_profit,
        override_fee=fee,
        platform_fee=platform,
        leader_fee=fee - platform,
    )


def exceeds_drawdown_stop(relationship: CopyRelationship, drawdown: Optional[Decimal] = None) -> bool:
    if drawdown is None:
        drawdown = drawdown_percent(relationship.high_water_mark, relationship.equity)
    return relationship.max_drawdown_stop > ZERO and drawdown > relationship.max_drawdown_stop
