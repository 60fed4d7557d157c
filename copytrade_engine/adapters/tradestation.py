"""
Exchange Adapter - TradeStation.

============================================================
PURPOSE
============================================================
OAuth2 adapter for the TradeStation v3 brokerage API.

AUTHENTICATION:
- Bearer access token, refreshed with the stored refresh token
  when it expires within 5 minutes
- Refresh tokens may rotate; the new token is handed to
  `on_token_rotated` so the credential store can persist it
- A 401 forces one refresh and exactly one retry
- A rejected refresh raises ReauthorizationRequired

============================================================
"""

import asyncio
import logging
import time
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import aiohttp

from ..config import TimeoutConfig
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
from .base import AdapterCapabilities
from .errors import (
    AuthenticationFailed,
    ErrorCategory,
    create_network_error,
    create_reauthorization_error,
    create_rejection,
)
from .http import RestExchangeAdapter
from .retry import RetryPolicy
from .symbols import base_asset


logger = logging.getLogger(__name__)


PRODUCTION_URL = "https://api.tradestation.com/v3"
SIMULATION_URL = "https://sim-api.tradestation.com/v3"
TOKEN_URL = "https://signin.tradestation.com/oauth/token"

REFRESH_THRESHOLD_SECONDS = 5 * 60
DEFAULT_EXPIRES_IN_SECONDS = 1200

TokenRotatedCallback = Callable[[str], Awaitable[None]]

_STATUS_CODES = {
    "ACK": OrderStatus.NEW,
    "OPN": OrderStatus.NEW,
    "DON": OrderStatus.NEW,
    "FPR": OrderStatus.PARTIALLY_FILLED,
    "FLP": OrderStatus.PARTIALLY_FILLED,
    "FLL": OrderStatus.FILLED,
    "CAN": OrderStatus.CANCELED,
    "OUT": OrderStatus.CANCELED,
    "REJ": OrderStatus.REJECTED,
    "EXP": OrderStatus.EXPIRED,
}


class TradeStationAdapter(RestExchangeAdapter):
    """
    TradeStation brokerage adapter.
    """

    refreshes_on_unauthorized = True

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        account_id: Optional[str] = None,
        pin: Optional[str] = None,
        sandbox: bool = False,
        on_token_rotated: Optional[TokenRotatedCallback] = None,
        retry_policy: Optional[RetryPolicy] = None,
        timeout_config: Optional[TimeoutConfig] = None,
    ):
        super().__init__(
            SIMULATION_URL if sandbox else PRODUCTION_URL,
            retry_policy=retry_policy,
            timeout_config=timeout_config,
        )
        self._client_id = client_id
        self._client_secret = client_secret
        self._refresh_token = refresh_token
        self._account_id = account_id
        self._pin = pin
        self._on_token_rotated = on_token_rotated

        self._access_token: Optional[str] = None
        self._expires_at: float = 0.0
        self._refresh_lock = asyncio.Lock()

        self._capabilities = AdapterCapabilities(
            auth_scheme=AuthScheme.OAUTH2,
            asset_class=AssetClass.STOCKS,
            quantity_precision=0,
            price_precision=2,
        )

    @property
    def exchange_id(self) -> str:
        return "tradestation"

    @property
    def capabilities(self) -> AdapterCapabilities:
        return self._capabilities

    @property
    def refresh_token(self) -> str:
        return self._refresh_token

    def normalize_symbol(self, symbol: str) -> str:
        return symbol.strip().upper()

    # --------------------------------------------------------
    # TOKEN MANAGEMENT
    # --------------------------------------------------------

    def token_needs_refresh(self) -> bool:
        return (
            self._access_token is None
            or time.time() >= self._expires_at - REFRESH_THRESHOLD_SECONDS
        )

    async def refresh_access_token(self, force: bool = False) -> None:
        """
        Exchange the refresh token for a new access token.

        Raises:
            ReauthorizationRequired: the refresh token was rejected
        """
        async with self._refresh_lock:
            if not force and not self.token_needs_refresh():
                return

            form = {
                "grant_type": "refresh_token",
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "refresh_token": self._refresh_token,
            }
            if self._pin:
                form["pin"] = self._pin

            status, data = await self._post_token(form)
            if status in (400, 401, 403):
                raise create_reauthorization_error(
                    self.exchange_id,
                    "TradeStation refresh token expired or invalid. Please re-authorize your account.",
                    operation="refresh_access_token",
                )
            if status >= 400:
                raise create_network_error(
                    self.exchange_id,
                    f"Token refresh failed with HTTP {status}",
                    operation="refresh_access_token",
                )

            self._access_token = data["access_token"]
            self._expires_at = time.time() + int(data.get("expires_in") or DEFAULT_EXPIRES_IN_SECONDS)

            rotated = data.get("refresh_token")
            if rotated and rotated != self._refresh_token:
                self._refresh_token = rotated
                logger.info("TradeStation refresh token rotated")
                if self._on_token_rotated is not None:
                    await self._on_token_rotated(rotated)

            logger.info("TradeStation access token refreshed")

    async def _post_token(self, form: Dict[str, str]) -> Tuple[int, Dict[str, Any]]:
        session = self._ensure_session()
        try:
            async with session.post(TOKEN_URL, data=form) as response:
                data = await response.json(content_type=None)
                return response.status, data or {}
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise create_network_error(self.exchange_id, f"Token refresh failed: {e}", operation="refresh_access_token")

    async def _before_request(self) -> None:
        if self.token_needs_refresh():
            await self.refresh_access_token()

    async def _refresh_credentials(self, error: AuthenticationFailed) -> None:
        logger.info("TradeStation token rejected, refreshing and retrying")
        await self.refresh_access_token(force=True)

    def _sign(
        self,
        method: str,
        path: str,
        params: Dict[str, Any],
        body: Optional[str],
    ) -> Tuple[Dict[str, str], Dict[str, Any]]:
        return {"Authorization": f"Bearer {self._access_token}"}, params

    # --------------------------------------------------------
    # ACCOUNT
    # --------------------------------------------------------

    async def _resolve_account(self) -> str:
        if self._account_id:
            return self._account_id
        data = await self._request("GET", "/brokerage/accounts", operation="get_accounts")
        accounts = data.get("Accounts", [])
        if not accounts:
            raise create_rejection(
                self.exchange_id, "No TradeStation accounts found", operation="get_accounts",
            )
        self._account_id = accounts[0]["AccountID"]
        return self._account_id

    async def _account_balance(self) -> Dict[str, Any]:
        account_id = await self._resolve_account()
        data = await self._request(
            "GET", f"/brokerage/accounts/{account_id}/balances", operation="get_balance",
        )
        balances = data.get("Balances") or []
        if not balances:
            raise create_rejection(self.exchange_id, "No balance data returned", operation="get_balance")
        return balances[0]

    async def get_balance(self) -> List[Balance]:
        balance = await self._account_balance()
        cash = Decimal(str(balance.get("CashBalance", "0")))
        buying_power = Decimal(str(balance.get("BuyingPower", cash)))
        return [Balance(asset="USD", available=buying_power, total=Decimal(str(balance.get("Equity", cash))))]

    async def get_available_margin(self) -> Decimal:
        balance = await self._account_balance()
        detail = balance.get("BalanceDetail") or {}
        for key in ("DayTradingBuyingPower", "MarginBuyingPower"):
            if detail.get(key) or balance.get(key):
                return Decimal(str(detail.get(key) or balance.get(key)))
        return Decimal(str(balance.get("BuyingPower") or balance.get("CashBalance") or "0"))

    async def get_positions(self) -> List[ExchangePosition]:
        account_id = await self._resolve_account()
        data = await self._request(
            "GET", f"/brokerage/accounts/{account_id}/positions", operation="get_positions",
        )
        positions = []
        for item in data.get("Positions") or []:
            quantity = Decimal(str(item.get("Quantity", "0")))
            if quantity == 0:
                continue
            short = item.get("LongShort") == "Short" or quantity < 0
            positions.append(ExchangePosition(
                symbol=self.normalize_symbol(item["Symbol"]),
                side=PositionSide.SHORT if short else PositionSide.LONG,
                quantity=abs(quantity),
                entry_price=Decimal(str(item.get("AveragePrice", "0"))),
                mark_price=Decimal(str(item["Last"])) if item.get("Last") else None,
                unrealized_pnl=Decimal(str(item.get("UnrealizedProfitLoss", "0"))),
            ))
        return positions

    # --------------------------------------------------------
    # MARKET DATA
    # --------------------------------------------------------

    async def get_ticker(self, symbol: str) -> Ticker:
        native = base_asset(symbol)
        data = await self._request("GET", f"/marketdata/quotes/{native}", operation="get_ticker")
        quotes = data.get("Quotes") or []
        if not quotes:
            raise create_rejection(
                self.exchange_id,
                f"Symbol {symbol} not found on TradeStation",
                category=ErrorCategory.SYMBOL_NOT_FOUND,
                operation="get_ticker",
                symbol=symbol,
            )
        quote = quotes[0]
        return Ticker(
            symbol=self.normalize_symbol(symbol),
            last=Decimal(str(quote.get("Last") or quote.get("Close") or "0")),
            bid=Decimal(str(quote["Bid"])) if quote.get("Bid") else None,
            ask=Decimal(str(quote["Ask"])) if quote.get("Ask") else None,
        )

    # --------------------------------------------------------
    # ORDERS
    # --------------------------------------------------------

    async def _submit(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        order_type: str,
        extra: Optional[Dict[str, Any]] = None,
        duration: str = "DAY",
    ) -> OrderResult:
        account_id = await self._resolve_account()
        body = {
            "AccountID": account_id,
            "Symbol": base_asset(symbol),
            "Quantity": str(abs(quantity)),
            "OrderType": order_type,
            "TradeAction": side.value.upper(),
            "TimeInForce": {"Duration": duration},
            "Route": "Intelligent",
            **(extra or {}),
        }
        data = await self._request("POST", "/orderexecution/orders", body=body, operation=f"place_{order_type}")
        orders = data.get("Orders") or [{}]
        order = orders[0]
        if order.get("Error"):
            raise create_rejection(
                self.exchange_id, order.get("Message", "Order rejected"), operation=f"place_{order_type}", symbol=symbol,
            )
        return OrderResult(
            order_id=order.get("OrderID"),
            symbol=self.normalize_symbol(symbol),
            side=side,
            quantity=quantity,
            status=OrderStatus.NEW,
            price=Decimal(extra["LimitPrice"]) if extra and "LimitPrice" in extra else None,
        )

    async def place_market_order(self, symbol: str, side: OrderSide, quantity: Decimal) -> OrderResult:
        return await self._submit(symbol, side, quantity, "Market")

    async def place_limit_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        price: Decimal,
    ) -> OrderResult:
        return await self._submit(symbol, side, quantity, "Limit", {"LimitPrice": f"{price:.2f}"})

    async def place_stop_loss(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        stop_price: Decimal,
    ) -> OrderResult:
        return await self._submit(
            symbol, side, quantity, "StopMarket", {"StopPrice": f"{stop_price:.2f}"}, duration="GTC",
        )

    async def place_take_profit(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        price: Decimal,
    ) -> OrderResult:
        return await self._submit(
            symbol, side, quantity, "Limit", {"LimitPrice": f"{price:.2f}"}, duration="GTC",
        )

    async def cancel_order(self, symbol: str, order_id: str) -> bool:
        await self._request("DELETE", f"/orderexecution/orders/{order_id}", operation="cancel_order")
        return True

    async def get_order(self, symbol: str, order_id: str) -> Optional[OrderResult]:
        account_id = await self._resolve_account()
        data = await self._request(
            "GET", f"/brokerage/accounts/{account_id}/orders/{order_id}", operation="get_order",
        )
        orders = data.get("Orders") or []
        if not orders:
            return None
        order = orders[0]
        leg = (order.get("Legs") or [{}])[0]
        side = OrderSide.BUY if leg.get("BuyOrSell", "Buy").lower() == "buy" else OrderSide.SELL
        filled_price = order.get("FilledPrice")
        return OrderResult(
            order_id=order.get("OrderID", order_id),
            symbol=self.normalize_symbol(symbol),
            side=side,
            quantity=Decimal(str(leg.get("QuantityOrdered", "0"))),
            status=_STATUS_CODES.get(order.get("Status", ""), OrderStatus.UNKNOWN),
            filled_quantity=Decimal(str(leg.get("ExecQuantity", "0"))),
            average_price=Decimal(str(filled_price)) if filled_price not in (None, "", "0") else None,
        )
