"""
Pydantic schema for inbound trade intents.
"""

from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .types import Environment, IntentAction, OrderSide, OrderType


# =============================================================
# TRADE INTENT
# =============================================================

class TradeIntent(BaseModel):
    """Normalized request to open, close or reverse a position."""

    model_config = ConfigDict(frozen=True)

    owner_id: str = Field(min_length=1)
    exchange_id: str = Field(min_length=1)
    symbol: str = Field(min_length=1)
    action: IntentAction
    order_type: OrderType = OrderType.MARKET
    price: Optional[Decimal] = Field(default=None, gt=0)
    stop_loss_percent: Optional[Decimal] = Field(default=None, gt=0, lt=100)
    take_profit_percent: Optional[Decimal] = Field(default=None, gt=0)
    notional_usd: Decimal = Field(default=Decimal("0"), ge=0)
    strategy_id: Optional[str] = None
    source: Optional[str] = None
    environment: Environment = Environment.PRODUCTION
    sell_percentage: Optional[Decimal] = None
    copy_relationship_id: Optional[str] = None

    @field_validator("exchange_id")
    @classmethod
    def _lower_exchange(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("symbol")
    @classmethod
    def _strip_symbol(cls, value: str) -> str:
        return value.strip()

    @model_validator(mode="after")
    def _check_action_fields(self) -> "TradeIntent":
        if self.action is not IntentAction.CLOSE and self.notional_usd <= 0:
            raise ValueError("notional_usd must be positive for buy/sell intents")
        if self.order_type is OrderType.LIMIT and self.price is None:
            raise ValueError("limit orders require a price")
        return self

    @property
    def is_close(self) -> bool:
        return self.action is IntentAction.CLOSE

    @property
    def order_side(self) -> Optional[OrderSide]:
        if self.action is IntentAction.BUY:
            return OrderSide.BUY
        if self.action is IntentAction.SELL:
            return OrderSide.SELL
        return None

    def scaled(self, owner_id: str, exchange_id: str, notional: Decimal, **changes: Any) -> "TradeIntent":
        """Copy of this intent for another account at another size."""
        data: Dict[str, Any] = {
            "owner_id": owner_id,
            "exchange_id": exchange_id,
            "notional_usd": notional,
            "source": "copy_trade",
        }
        data.update(changes)
        return self.model_copy(update=data)
