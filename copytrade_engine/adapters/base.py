"""
Exchange Adapter - Abstract Base.

============================================================
PURPOSE
============================================================
Uniform contract over heterogeneous brokers.

DESIGN PRINCIPLES:
- Exchange-agnostic interface, canonical symbols in and out
- Authentication fully owned by the adapter
- Capabilities declared up front, checked by attribute access
- Fully testable with the mock adapter

PROTECTIVE ORDERS:
For place_stop_loss, place_take_profit and close_position the
`side` argument is the order side that reduces the position,
i.e. the opposite of the position side.

============================================================
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from ..types import (
    AssetClass,
    AuthScheme,
    Balance,
    ExchangePosition,
    OrderResult,
    OrderSide,
    OrderStatus,
    Ticker,
)
from .errors import ErrorCategory, create_rejection
from .symbols import normalize_symbol


logger = logging.getLogger(__name__)


# Assets treated as margin currency when summing balances
MARGIN_ASSETS = ("USDT", "USD", "USDC", "BUSD", "FDUSD")


# ============================================================
# CAPABILITIES
# ============================================================

@dataclass(frozen=True)
class AdapterCapabilities:
    """
    Static description of what an adapter can do.

    Fixed at construction. Callers branch on these flags instead of
    probing for methods.
    """

    auth_scheme: AuthScheme
    """How requests are authenticated."""

    asset_class: AssetClass = AssetClass.CRYPTO
    """Asset class traded through this adapter."""

    supports_stop_orders: bool = True
    """Resting stop-loss orders can be placed."""

    supports_take_profit_orders: bool = True
    """Resting take-profit orders can be placed."""

    supports_trailing_stop: bool = False

    supports_cancel_all: bool = False
    """cancel_all_orders is available."""

    supports_short: bool = True
    """Short positions can be opened."""

    requires_passphrase: bool = False

    quantity_precision: Optional[int] = None
    """Decimal places for order quantities. None means executor default."""

    price_precision: Optional[int] = None
    """Decimal places for prices. None means executor default."""


# ============================================================
# STATUS MAPPING
# ============================================================

_STATUS_MAP = {
    "NEW": OrderStatus.NEW,
    "OPEN": OrderStatus.NEW,
    "PENDING": OrderStatus.NEW,
    "ACCEPTED": OrderStatus.NEW,
    "QUEUED": OrderStatus.NEW,
    "PARTIALLY_FILLED": OrderStatus.PARTIALLY_FILLED,
    "PARTIAL": OrderStatus.PARTIALLY_FILLED,
    "FILLED": OrderStatus.FILLED,
    "EXECUTED": OrderStatus.FILLED,
    "CLOSED": OrderStatus.FILLED,
    "CANCELED": OrderStatus.CANCELED,
    "CANCELLED": OrderStatus.CANCELED,
    "REJECTED": OrderStatus.REJECTED,
    "EXPIRED": OrderStatus.EXPIRED,
    "EXPIRED_IN_MATCH": OrderStatus.EXPIRED,
}


def map_order_status(status: Optional[str]) -> OrderStatus:
    """Map a broker status string to OrderStatus."""
    if not status:
        return OrderStatus.UNKNOWN
    mapped = _STATUS_MAP.get(status.strip().upper())
    if mapped is None:
        logger.warning(f"Unknown order status: {status}")
        return OrderStatus.UNKNOWN
    return mapped


# ============================================================
# ABSTRACT EXCHANGE ADAPTER
# ============================================================

class ExchangeAdapter(ABC):
    """
    Abstract interface for exchange adapters.

    Implementations:
    - BinanceAdapter: HMAC signed futures API
    - RobinhoodAdapter: Ed25519 signed crypto API
    - ETradeAdapter: OAuth1 brokerage API
    - TradeStationAdapter: OAuth2 brokerage API
    - CapitalAdapter: Session token CFD API
    - MockExchangeAdapter: For testing
    """

    @property
    @abstractmethod
    def exchange_id(self) -> str:
        """Get exchange identifier."""

    @property
    @abstractmethod
    def capabilities(self) -> AdapterCapabilities:
        """Get the static capability descriptor."""

    @property
    def is_connected(self) -> bool:
        return True

    def normalize_symbol(self, symbol: str) -> str:
        return normalize_symbol(symbol)

    # --------------------------------------------------------
    # CONNECTION
    # --------------------------------------------------------

    async def connect(self) -> None:
        """Open network resources. Idempotent."""

    async def disconnect(self) -> None:
        """Release network resources. Idempotent."""

    # --------------------------------------------------------
    # ACCOUNT OPERATIONS
    # --------------------------------------------------------

    @abstractmethod
    async def get_balance(self) -> List[Balance]:
        """Get all asset balances."""

    async def get_available_margin(self) -> Decimal:
        """
        Margin available for new positions, in quote currency.

        Default sums the available amount of stable/fiat balances.
        """
        balances = await self.get_balance()
        return sum(
            (b.available for b in balances if b.asset.upper() in MARGIN_ASSETS),
            Decimal("0"),
        )

    @abstractmethod
    async def get_positions(self) -> List[ExchangePosition]:
        """Get all open positions."""

    async def get_position(self, symbol: str) -> Optional[ExchangePosition]:
        """
        Get the open position for symbol.

        Returns:
            ExchangePosition or None if flat
        """
        canonical = self.normalize_symbol(symbol)
        for position in await self.get_positions():
            if position.symbol == canonical and position.quantity != 0:
                return position
        return None

    async def has_open_position(self, symbol: str) -> bool:
        return await self.get_position(symbol) is not None

    # --------------------------------------------------------
    # MARKET DATA
    # --------------------------------------------------------

    @abstractmethod
    async def get_ticker(self, symbol: str) -> Ticker:
        """Get last/bid/ask for symbol."""

    # --------------------------------------------------------
    # ORDER OPERATIONS
    # --------------------------------------------------------

    @abstractmethod
    async def place_market_order(self, symbol: str, side: OrderSide, quantity: Decimal) -> OrderResult:
        """Place a market order."""

    @abstractmethod
    async def place_limit_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        price: Decimal,
    ) -> OrderResult:
        """Place a limit order."""

    @abstractmethod
    async def place_stop_loss(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        stop_price: Decimal,
    ) -> OrderResult:
        """
        Place a resting stop-loss order.

        Args:
            side: Order side that reduces the position
        """

    @abstractmethod
    async def place_take_profit(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        price: Decimal,
    ) -> OrderResult:
        """
        Place a resting take-profit order.

        Args:
            side: Order side that reduces the position
        """

    async def close_position(self, symbol: str, side: OrderSide, quantity: Decimal) -> OrderResult:
        """
        Reduce or flatten a position with a market order.

        Args:
            side: Order side that reduces the position
        """
        return await self.place_market_order(symbol, side, quantity)

    @abstractmethod
    async def cancel_order(self, symbol: str, order_id: str) -> bool:
        """Cancel an order. Returns True when the broker accepted the cancel."""

    @abstractmethod
    async def get_order(self, symbol: str, order_id: str) -> Optional[OrderResult]:
        """Query an order. None when the broker does not know it."""

    async def cancel_all_orders(self, symbol: str) -> int:
        """
        Cancel every open order on symbol.

        Only available when capabilities.supports_cancel_all is set.

        Returns:
            Number of orders cancelled
        """
        raise create_rejection(
            self.exchange_id,
            "cancel_all_orders is not supported",
            category=ErrorCategory.INVALID_ORDER,
            operation="cancel_all_orders",
            symbol=symbol,
        )

    def __repr__(self) -> str:
        return f"<{type(self).__name__} exchange_id={self.exchange_id!r}>"
