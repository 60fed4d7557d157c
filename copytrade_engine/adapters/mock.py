"""
Exchange Adapter - Mock Adapter.

============================================================
PURPOSE
============================================================
In-memory adapter for testing the executor, the reconciler and
the fan-out engine.

FEATURES:
- Optional simulated latency (zero by default)
- Per-operation error injection (one-shot or persistent)
- Net position tracking per symbol
- Resting protective order book
- Call journal for assertions

============================================================
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from ..types import (
    AssetClass,
    AuthScheme,
    Balance,
    ExchangePosition,
    OrderResult,
    OrderSide,
    OrderStatus,
    PositionSide,
    Ticker,
)
from .base import AdapterCapabilities, ExchangeAdapter
from .errors import ErrorCategory, create_rejection


logger = logging.getLogger(__name__)


# ============================================================
# MOCK CONFIGURATION
# ============================================================

@dataclass
class MockConfig:
    """Configuration for mock adapter."""

    exchange_id: str = "mock"
    """Identifier reported by the adapter."""

    latency_seconds: float = 0.0
    """Simulated latency per call."""

    available_margin: Decimal = Decimal("10000")
    """Initial available margin (USDT)."""

    default_price: Decimal = Decimal("50000")
    """Price used for symbols without an explicit price."""

    prices: Dict[str, Decimal] = field(default_factory=dict)
    """Initial prices by canonical symbol."""

    capabilities: AdapterCapabilities = field(default_factory=lambda: AdapterCapabilities(
        auth_scheme=AuthScheme.NONE,
        asset_class=AssetClass.CRYPTO,
        supports_cancel_all=True,
        quantity_precision=3,
        price_precision=2,
    ))
    """Capabilities advertised by the adapter."""


@dataclass
class MockOrder:
    """Resting or executed mock order."""

    order_id: str
    symbol: str
    side: OrderSide
    kind: str
    quantity: Decimal
    price: Optional[Decimal] = None
    status: OrderStatus = OrderStatus.NEW


# ============================================================
# MOCK EXCHANGE ADAPTER
# ============================================================

class MockExchangeAdapter(ExchangeAdapter):
    """
    Mock exchange adapter for testing.

    Market orders fill immediately at the current price; stops,
    take-profits and limits rest until cancelled.
    """

    def __init__(self, config: Optional[MockConfig] = None):
        self._config = config or MockConfig()
        self._connected = False
        self._init_state()

    def _init_state(self) -> None:
        self._available_margin = self._config.available_margin
        self._prices: Dict[str, Decimal] = {
            self.normalize_symbol(s): p for s, p in self._config.prices.items()
        }
        self._mark_prices: Dict[str, Decimal] = {}
        self._positions: Dict[str, ExchangePosition] = {}
        self._orders: Dict[str, MockOrder] = {}
        self._errors: Dict[str, Tuple[Exception, bool]] = {}
        self.calls: List[Tuple[str, ...]] = []

    @property
    def exchange_id(self) -> str:
        return self._config.exchange_id

    @property
    def capabilities(self) -> AdapterCapabilities:
        return self._config.capabilities

    @property
    def is_connected(self) -> bool:
        return self._connected

    # --------------------------------------------------------
    # CONNECTION
    # --------------------------------------------------------

    async def connect(self) -> None:
        self._connected = True
        logger.info("MockExchangeAdapter connected")

    async def disconnect(self) -> None:
        self._connected = False
        logger.info("MockExchangeAdapter disconnected")

    # --------------------------------------------------------
    # ACCOUNT OPERATIONS
    # --------------------------------------------------------

    async def get_balance(self) -> List[Balance]:
        await self._enter("get_balance")
        return [Balance(asset="USDT", available=self._available_margin, total=self._available_margin)]

    async def get_available_margin(self) -> Decimal:
        await self._enter("get_available_margin")
        return self._available_margin

    async def get_positions(self) -> List[ExchangePosition]:
        await self._enter("get_positions")
        return [
            ExchangePosition(
                symbol=p.symbol,
                side=p.side,
                quantity=p.quantity,
                entry_price=p.entry_price,
                mark_price=self._mark_prices.get(p.symbol),
            )
            for p in self._positions.values()
        ]

    # --------------------------------------------------------
    # MARKET DATA
    # --------------------------------------------------------

    async def get_ticker(self, symbol: str) -> Ticker:
        await self._enter("get_ticker", symbol)
        price = self._price(symbol)
        return Ticker(symbol=self.normalize_symbol(symbol), last=price, bid=price, ask=price)

    # --------------------------------------------------------
    # ORDER OPERATIONS
    # --------------------------------------------------------

    async def place_market_order(self, symbol: str, side: OrderSide, quantity: Decimal) -> OrderResult:
        await self._enter("place_market_order", symbol, side.value, str(quantity))
        return self._fill(symbol, side, quantity)

    async def place_limit_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        price: Decimal,
    ) -> OrderResult:
        await self._enter("place_limit_order", symbol, side.value, str(quantity), str(price))
        return self._rest(symbol, side, quantity, price, "limit")

    async def place_stop_loss(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        stop_price: Decimal,
    ) -> OrderResult:
        await self._enter("place_stop_loss", symbol, side.value, str(quantity), str(stop_price))
        return self._rest(symbol, side, quantity, stop_price, "stop_loss")

    async def place_take_profit(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        price: Decimal,
    ) -> OrderResult:
        await self._enter("place_take_profit", symbol, side.value, str(quantity), str(price))
        return self._rest(symbol, side, quantity, price, "take_profit")

    async def close_position(self, symbol: str, side: OrderSide, quantity: Decimal) -> OrderResult:
        await self._enter("close_position", symbol, side.value, str(quantity))
        return self._fill(symbol, side, quantity)

    async def cancel_order(self, symbol: str, order_id: str) -> bool:
        await self._enter("cancel_order", symbol, order_id)
        order = self._orders.get(order_id)
        if order is None or order.status is not OrderStatus.NEW:
            raise create_rejection(
                self.exchange_id,
                f"Unknown order {order_id}",
                category=ErrorCategory.ORDER_NOT_FOUND,
                operation="cancel_order",
                symbol=symbol,
            )
        order.status = OrderStatus.CANCELED
        return True

    async def cancel_all_orders(self, symbol: str) -> int:
        await self._enter("cancel_all_orders", symbol)
        canonical = self.normalize_symbol(symbol)
        cancelled = 0
        for order in self._orders.values():
            if order.symbol == canonical and order.status is OrderStatus.NEW:
                order.status = OrderStatus.CANCELED
                cancelled += 1
        return cancelled

    async def get_order(self, symbol: str, order_id: str) -> Optional[OrderResult]:
        await self._enter("get_order", symbol, order_id)
        order = self._orders.get(order_id)
        if order is None:
            return None
        return OrderResult(
            order_id=order.order_id,
            symbol=order.symbol,
            side=order.side,
            quantity=order.quantity,
            status=order.status,
            price=order.price,
            filled_quantity=order.quantity if order.status is OrderStatus.FILLED else Decimal("0"),
            average_price=order.price if order.status is OrderStatus.FILLED else None,
        )

    # --------------------------------------------------------
    # TEST HELPERS
    # --------------------------------------------------------

    def set_price(self, symbol: str, price: Decimal) -> None:
        self._prices[self.normalize_symbol(symbol)] = price

    def set_mark_price(self, symbol: str, price: Decimal) -> None:
        self._mark_prices[self.normalize_symbol(symbol)] = price

    def set_available_margin(self, amount: Decimal) -> None:
        self._available_margin = amount

    def set_position(
        self,
        symbol: str,
        side: PositionSide,
        quantity: Decimal,
        entry_price: Decimal,
    ) -> None:
        canonical = self.normalize_symbol(symbol)
        self._positions[canonical] = ExchangePosition(
            symbol=canonical, side=side, quantity=quantity, entry_price=entry_price,
        )

    def clear_position(self, symbol: str) -> None:
        self._positions.pop(self.normalize_symbol(symbol), None)

    def inject_error(self, operation: str, error: Exception, persistent: bool = False) -> None:
        """Raise `error` from the next call of `operation` (or every call if persistent)."""
        self._errors[operation] = (error, persistent)

    def clear_errors(self) -> None:
        self._errors.clear()

    def open_orders(self, symbol: Optional[str] = None) -> List[MockOrder]:
        canonical = self.normalize_symbol(symbol) if symbol else None
        return [
            o for o in self._orders.values()
            if o.status is OrderStatus.NEW and (canonical is None or o.symbol == canonical)
        ]

    def call_count(self, operation: str) -> int:
        return sum(1 for call in self.calls if call[0] == operation)

    def reset(self) -> None:
        self._init_state()

    # --------------------------------------------------------
    # INTERNAL
    # --------------------------------------------------------

    async def _enter(self, operation: str, *args: str) -> None:
        self.calls.append((operation, *args))
        if self._config.latency_seconds:
            await asyncio.sleep(self._config.latency_seconds)
        if operation in self._errors:
            error, persistent = self._errors[operation]
            if not persistent:
                del self._errors[operation]
            raise error

    def _price(self, symbol: str) -> Decimal:
        return self._prices.get(self.normalize_symbol(symbol), self._config.default_price)

    def _rest(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        price: Decimal,
        kind: str,
    ) -> OrderResult:
        order = MockOrder(
            order_id=str(uuid.uuid4()),
            symbol=self.normalize_symbol(symbol),
            side=side,
            kind=kind,
            quantity=quantity,
            price=price,
        )
        self._orders[order.order_id] = order
        return OrderResult(
            order_id=order.order_id,
            symbol=order.symbol,
            side=side,
            quantity=quantity,
            status=OrderStatus.NEW,
            price=price,
        )

    def _fill(self, symbol: str, side: OrderSide, quantity: Decimal) -> OrderResult:
        canonical = self.normalize_symbol(symbol)
        price = self._price(canonical)
        order = MockOrder(
            order_id=str(uuid.uuid4()),
            symbol=canonical,
            side=side,
            kind="market",
            quantity=quantity,
            price=price,
            status=OrderStatus.FILLED,
        )
        self._orders[order.order_id] = order
        self._update_position(canonical, side, quantity, price)
        return OrderResult(
            order_id=order.order_id,
            symbol=canonical,
            side=side,
            quantity=quantity,
            status=OrderStatus.FILLED,
            price=price,
            filled_quantity=quantity,
            average_price=price,
        )

    def _update_position(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        price: Decimal,
    ) -> None:
        """Net the fill into the symbol's position."""
        current = self._positions.get(symbol)
        delta = quantity if side is OrderSide.BUY else -quantity

        signed = Decimal("0")
        if current is not None:
            signed = current.quantity if current.side is PositionSide.LONG else -current.quantity

        new_qty = signed + delta
        if new_qty == 0:
            self._positions.pop(symbol, None)
            return

        entry = price
        if current is not None and (signed > 0) == (new_qty > 0) and abs(new_qty) >= abs(signed):
            entry = (current.entry_price * abs(signed) + price * abs(delta)) / abs(new_qty)
        elif current is not None and (signed > 0) == (new_qty > 0):
            entry = current.entry_price

        self._positions[symbol] = ExchangePosition(
            symbol=symbol,
            side=PositionSide.LONG if new_qty > 0 else PositionSide.SHORT,
            quantity=abs(new_qty),
            entry_price=entry,
        )
