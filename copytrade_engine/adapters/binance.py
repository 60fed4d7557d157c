"""
Exchange Adapter - Binance USDⓈ-M Futures.

============================================================
PURPOSE
============================================================
Reference HMAC adapter.

AUTHENTICATION:
- Query string (including timestamp) signed with HMAC-SHA256
- API key in the X-MBX-APIKEY header
- No token refresh: a 401 is final

SYMBOLS:
- Native BTCUSDT, canonical BTC/USDT:USDT

============================================================
"""

import hashlib
import hmac
import logging
import time
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

from ..config import TimeoutConfig
from ..types import (
    AssetClass,
    AuthScheme,
    Balance,
    ExchangePosition,
    OrderResult,
    OrderSide,
    PositionSide,
    Ticker,
)
from .base import AdapterCapabilities, map_order_status
from .errors import ExchangeException, ErrorCategory, map_binance_error
from .http import HttpResponse, RestExchangeAdapter
from .retry import RetryPolicy
from .symbols import is_perpetual, normalize_symbol, split_symbol, to_concatenated


logger = logging.getLogger(__name__)


MAINNET_URL = "https://fapi.binance.com"
TESTNET_URL = "https://testnet.binancefuture.com"


class BinanceAdapter(RestExchangeAdapter):
    """
    Binance Futures exchange adapter.
    """

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        testnet: bool = False,
        retry_policy: Optional[RetryPolicy] = None,
        timeout_config: Optional[TimeoutConfig] = None,
        recv_window_ms: int = 5000,
    ):
        super().__init__(
            TESTNET_URL if testnet else MAINNET_URL,
            retry_policy=retry_policy,
            timeout_config=timeout_config,
        )
        self._api_key = api_key
        self._api_secret = api_secret
        self._testnet = testnet
        self._recv_window_ms = recv_window_ms
        self._capabilities = AdapterCapabilities(
            auth_scheme=AuthScheme.HMAC,
            asset_class=AssetClass.FUTURES,
            supports_cancel_all=True,
        )

    @property
    def exchange_id(self) -> str:
        return "binance"

    @property
    def capabilities(self) -> AdapterCapabilities:
        return self._capabilities

    def normalize_symbol(self, symbol: str) -> str:
        """All symbols on this venue are USDⓈ-margined perpetuals."""
        canonical = normalize_symbol(symbol)
        base, quote, _ = split_symbol(canonical)
        if quote and not is_perpetual(canonical):
            return f"{base}/{quote}:{quote}"
        return canonical

    # --------------------------------------------------------
    # SIGNING
    # --------------------------------------------------------

    def _sign(
        self,
        method: str,
        path: str,
        params: Dict[str, Any],
        body: Optional[str],
    ) -> Tuple[Dict[str, str], Dict[str, Any]]:
        params["timestamp"] = str(int(time.time() * 1000))
        params["recvWindow"] = str(self._recv_window_ms)
        query_string = urlencode(params)
        params["signature"] = hmac.new(
            self._api_secret.encode(),
            query_string.encode(),
            hashlib.sha256,
        ).hexdigest()
        return {"X-MBX-APIKEY": self._api_key}, params

    def _map_error(self, response: HttpResponse, operation: str) -> ExchangeException:
        data = response.data if isinstance(response.data, dict) else {}
        if "code" in data:
            return map_binance_error(int(data["code"]), str(data.get("msg", "")), response.status)
        return super()._map_error(response, operation)

    # --------------------------------------------------------
    # ACCOUNT OPERATIONS
    # --------------------------------------------------------

    async def get_balance(self) -> List[Balance]:
        data = await self._request("GET", "/fapi/v2/balance", operation="get_balance")
        return [
            Balance(
                asset=item["asset"],
                available=Decimal(str(item.get("availableBalance", "0"))),
                total=Decimal(str(item.get("balance", "0"))),
            )
            for item in data
        ]

    async def get_available_margin(self) -> Decimal:
        for balance in await self.get_balance():
            if balance.asset == "USDT":
                return balance.available
        return Decimal("0")

    async def get_positions(self) -> List[ExchangePosition]:
        data = await self._request("GET", "/fapi/v2/positionRisk", operation="get_positions")
        positions = []
        for item in data:
            amount = Decimal(str(item.get("positionAmt", "0")))
            if amount == 0:
                continue
            positions.append(ExchangePosition(
                symbol=self.normalize_symbol(item["symbol"]),
                side=PositionSide.LONG if amount > 0 else PositionSide.SHORT,
                quantity=abs(amount),
                entry_price=Decimal(str(item.get("entryPrice", "0"))),
                mark_price=Decimal(str(item["markPrice"])) if item.get("markPrice") else None,
                unrealized_pnl=Decimal(str(item.get("unRealizedProfit", "0"))),
            ))
        return positions

    # --------------------------------------------------------
    # MARKET DATA
    # --------------------------------------------------------

    async def get_ticker(self, symbol: str) -> Ticker:
        native = to_concatenated(symbol)
        price = await self._request(
            "GET", "/fapi/v1/ticker/price", params={"symbol": native}, operation="get_ticker",
        )
        book = await self._request(
            "GET", "/fapi/v1/ticker/bookTicker", params={"symbol": native}, operation="get_ticker",
        )
        return Ticker(
            symbol=self.normalize_symbol(symbol),
            last=Decimal(str(price["price"])),
            bid=Decimal(str(book["bidPrice"])) if book.get("bidPrice") else None,
            ask=Decimal(str(book["askPrice"])) if book.get("askPrice") else None,
        )

    # --------------------------------------------------------
    # ORDER OPERATIONS
    # --------------------------------------------------------

    async def _submit(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        order_type: str,
        extra: Optional[Dict[str, Any]] = None,
    ) -> OrderResult:
        # Same id on every retry so a resent order is rejected as a duplicate
        client_order_id = f"cte_{uuid.uuid4().hex[:16]}"
        params = {
            "symbol": to_concatenated(symbol),
            "side": side.value.upper(),
            "type": order_type,
            "quantity": str(quantity),
            "newClientOrderId": client_order_id,
            **(extra or {}),
        }
        data = await self._request("POST", "/fapi/v1/order", params=params, operation=f"place_{order_type.lower()}")
        return self._parse_order(data, symbol, side, quantity, client_order_id)

    async def place_market_order(self, symbol: str, side: OrderSide, quantity: Decimal) -> OrderResult:
        return await self._submit(symbol, side, quantity, "MARKET")

    async def place_limit_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        price: Decimal,
    ) -> OrderResult:
        return await self._submit(
            symbol, side, quantity, "LIMIT", {"price": str(price), "timeInForce": "GTC"},
        )

    async def place_stop_loss(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        stop_price: Decimal,
    ) -> OrderResult:
        return await self._submit(
            symbol, side, quantity, "STOP_MARKET",
            {"stopPrice": str(stop_price), "reduceOnly": "true", "workingType": "MARK_PRICE"},
        )

    async def place_take_profit(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        price: Decimal,
    ) -> OrderResult:
        return await self._submit(
            symbol, side, quantity, "TAKE_PROFIT_MARKET",
            {"stopPrice": str(price), "reduceOnly": "true", "workingType": "MARK_PRICE"},
        )

    async def close_position(self, symbol: str, side: OrderSide, quantity: Decimal) -> OrderResult:
        return await self._submit(symbol, side, quantity, "MARKET", {"reduceOnly": "true"})

    async def cancel_order(self, symbol: str, order_id: str) -> bool:
        await self._request(
            "DELETE",
            "/fapi/v1/order",
            params={"symbol": to_concatenated(symbol), "orderId": order_id},
            operation="cancel_order",
        )
        return True

    async def cancel_all_orders(self, symbol: str) -> int:
        native = to_concatenated(symbol)
        open_orders = await self._request(
            "GET", "/fapi/v1/openOrders", params={"symbol": native}, operation="get_open_orders",
        )
        if not open_orders:
            return 0
        await self._request(
            "DELETE", "/fapi/v1/allOpenOrders", params={"symbol": native}, operation="cancel_all_orders",
        )
        logger.info(f"Cancelled {len(open_orders)} open orders on {symbol}")
        return len(open_orders)

    async def get_order(self, symbol: str, order_id: str) -> Optional[OrderResult]:
        try:
            data = await self._request(
                "GET",
                "/fapi/v1/order",
                params={"symbol": to_concatenated(symbol), "orderId": order_id},
                operation="get_order",
            )
        except ExchangeException as e:
            if e.error.category is ErrorCategory.ORDER_NOT_FOUND:
                return None
            raise
        side = OrderSide.BUY if data.get("side") == "BUY" else OrderSide.SELL
        return self._parse_order(data, symbol, side, Decimal(str(data.get("origQty", "0"))))

    def _parse_order(
        self,
        data: Dict[str, Any],
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        client_order_id: Optional[str] = None,
    ) -> OrderResult:
        avg_price = Decimal(str(data.get("avgPrice", "0")))
        price = Decimal(str(data.get("price", "0")))
        return OrderResult(
            order_id=str(data.get("orderId")) if data.get("orderId") is not None else None,
            client_order_id=data.get("clientOrderId") or client_order_id,
            symbol=self.normalize_symbol(symbol),
            side=side,
            quantity=quantity,
            status=map_order_status(data.get("status")),
            price=price if price > 0 else None,
            filled_quantity=Decimal(str(data.get("executedQty", "0"))),
            average_price=avg_price if avg_price > 0 else None,
        )
