"""
Exchange Adapter - E*TRADE.

============================================================
PURPOSE
============================================================
OAuth1 adapter for the E*TRADE brokerage API (equities).

AUTHENTICATION:
- Every request signed with HMAC-SHA1 (RFC 5849)
- Access tokens expire at midnight US/Eastern and cannot be
  renewed without the account holder
- A 401, or a token issued before the latest Eastern midnight,
  raises ReauthorizationRequired (never retried)

ORDERS:
- Two step: preview, then place with the preview id

============================================================
"""

import base64
import hashlib
import hmac
import logging
import secrets
import time
from datetime import datetime, time as dt_time, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote
from zoneinfo import ZoneInfo

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
from .errors import (
    ErrorCategory,
    ExchangeException,
    create_reauthorization_error,
    create_rejection,
)
from .http import HttpResponse, RestExchangeAdapter
from .retry import RetryPolicy
from .symbols import base_asset


logger = logging.getLogger(__name__)


PRODUCTION_URL = "https://api.etrade.com"
SANDBOX_URL = "https://apisb.etrade.com"

EASTERN = ZoneInfo("America/New_York")


# ============================================================
# OAUTH1 HELPERS
# ============================================================

def _pct(value: Any) -> str:
    return quote(str(value), safe="~")


def last_eastern_midnight(now: Optional[datetime] = None) -> datetime:
    """Most recent 00:00 America/New_York, as an aware UTC datetime."""
    now = now or datetime.now(timezone.utc)
    eastern_now = now.astimezone(EASTERN)
    midnight = datetime.combine(eastern_now.date(), dt_time(0, 0), tzinfo=EASTERN)
    return midnight.astimezone(timezone.utc)


def oauth1_signature(
    method: str,
    url: str,
    params: Dict[str, Any],
    consumer_secret: str,
    token_secret: str,
) -> str:
    """HMAC-SHA1 signature over the RFC 5849 base string."""
    normalized = "&".join(
        f"{_pct(k)}={_pct(v)}" for k, v in sorted((str(k), str(v)) for k, v in params.items())
    )
    base_string = "&".join([method.upper(), _pct(url), _pct(normalized)])
    key = f"{_pct(consumer_secret)}&{_pct(token_secret)}"
    digest = hmac.new(key.encode(), base_string.encode(), hashlib.sha1).digest()
    return base64.b64encode(digest).decode()


class ETradeAdapter(RestExchangeAdapter):
    """
    E*TRADE brokerage adapter.
    """

    def __init__(
        self,
        consumer_key: str,
        consumer_secret: str,
        access_token: str,
        access_token_secret: str,
        account_id_key: Optional[str] = None,
        token_issued_at: Optional[datetime] = None,
        sandbox: bool = False,
        retry_policy: Optional[RetryPolicy] = None,
        timeout_config: Optional[TimeoutConfig] = None,
    ):
        super().__init__(
            SANDBOX_URL if sandbox else PRODUCTION_URL,
            retry_policy=retry_policy,
            timeout_config=timeout_config,
        )
        self._consumer_key = consumer_key
        self._consumer_secret = consumer_secret
        self._access_token = access_token
        self._access_token_secret = access_token_secret
        self._account_id_key = account_id_key
        self._token_issued_at = token_issued_at

        self._capabilities = AdapterCapabilities(
            auth_scheme=AuthScheme.OAUTH1,
            asset_class=AssetClass.STOCKS,
            quantity_precision=0,
            price_precision=2,
        )

    @property
    def exchange_id(self) -> str:
        return "etrade"

    @property
    def capabilities(self) -> AdapterCapabilities:
        return self._capabilities

    def normalize_symbol(self, symbol: str) -> str:
        return symbol.strip().upper()

    # --------------------------------------------------------
    # AUTHENTICATION
    # --------------------------------------------------------

    def token_expired(self, now: Optional[datetime] = None) -> bool:
        """True when the access token predates the latest Eastern midnight."""
        if self._token_issued_at is None:
            return False
        return self._token_issued_at < last_eastern_midnight(now)

    async def _before_request(self) -> None:
        if self.token_expired():
            raise create_reauthorization_error(
                self.exchange_id,
                "E*TRADE access token expired at midnight US/Eastern. Please re-authorize your account.",
            )

    def _sign(
        self,
        method: str,
        path: str,
        params: Dict[str, Any],
        body: Optional[str],
    ) -> Tuple[Dict[str, str], Dict[str, Any]]:
        oauth_params = {
            "oauth_consumer_key": self._consumer_key,
            "oauth_token": self._access_token,
            "oauth_nonce": secrets.token_hex(16),
            "oauth_timestamp": str(int(time.time())),
            "oauth_signature_method": "HMAC-SHA1",
            "oauth_version": "1.0",
        }
        oauth_params["oauth_signature"] = oauth1_signature(
            method,
            f"{self._base_url}{path}",
            {**params, **oauth_params},
            self._consumer_secret,
            self._access_token_secret,
        )
        header = "OAuth realm=\"\"," + ",".join(
            f'{k}="{_pct(v)}"' for k, v in oauth_params.items()
        )
        return {"Authorization": header, "Accept": "application/json"}, params

    def _map_error(self, response: HttpResponse, operation: str) -> ExchangeException:
        if response.status == 401:
            return create_reauthorization_error(
                self.exchange_id,
                "E*TRADE rejected the access token. Please re-authorize your account.",
                operation=operation,
            )
        return super()._map_error(response, operation)

    # --------------------------------------------------------
    # ACCOUNT
    # --------------------------------------------------------

    async def _resolve_account(self) -> str:
        if self._account_id_key:
            return self._account_id_key
        data = await self._request("GET", "/v1/accounts/list.json", operation="list_accounts")
        accounts = data.get("AccountListResponse", {}).get("Accounts", {}).get("Account", [])
        active = [a for a in accounts if a.get("accountStatus", "ACTIVE") == "ACTIVE"]
        if not active:
            raise create_rejection(self.exchange_id, "No active E*TRADE accounts", operation="list_accounts")
        self._account_id_key = active[0]["accountIdKey"]
        return self._account_id_key

    async def _computed_balance(self) -> Dict[str, Any]:
        account = await self._resolve_account()
        data = await self._request(
            "GET",
            f"/v1/accounts/{account}/balance.json",
            params={"instType": "BROKERAGE", "realTimeNAV": "true"},
            operation="get_balance",
        )
        return data.get("BalanceResponse", {}).get("Computed", {})

    async def get_balance(self) -> List[Balance]:
        computed = await self._computed_balance()
        total = computed.get("RealTimeValues", {}).get("totalAccountValue", 0)
        return [Balance(
            asset="USD",
            available=Decimal(str(computed.get("cashBuyingPower", 0))),
            total=Decimal(str(total)),
        )]

    async def get_available_margin(self) -> Decimal:
        computed = await self._computed_balance()
        return Decimal(str(computed.get("marginBuyingPower") or computed.get("cashBuyingPower") or 0))

    async def get_positions(self) -> List[ExchangePosition]:
        account = await self._resolve_account()
        data = await self._request("GET", f"/v1/accounts/{account}/portfolio.json", operation="get_positions")
        positions = []
        for portfolio in data.get("PortfolioResponse", {}).get("AccountPortfolio", []):
            for item in portfolio.get("Position", []):
                quantity = Decimal(str(item.get("quantity", 0)))
                if quantity == 0:
                    continue
                short = item.get("positionType") == "SHORT" or quantity < 0
                last = item.get("Quick", {}).get("lastTrade")
                positions.append(ExchangePosition(
                    symbol=self.normalize_symbol(item.get("Product", {}).get("symbol", item.get("symbolDescription", ""))),
                    side=PositionSide.SHORT if short else PositionSide.LONG,
                    quantity=abs(quantity),
                    entry_price=Decimal(str(item.get("pricePaid", 0))),
                    mark_price=Decimal(str(last)) if last else None,
                    unrealized_pnl=Decimal(str(item.get("totalGain", 0))),
                ))
        return positions

    # --------------------------------------------------------
    # MARKET DATA
    # --------------------------------------------------------

    async def get_ticker(self, symbol: str) -> Ticker:
        native = base_asset(symbol)
        data = await self._request("GET", f"/v1/market/quote/{native}.json", operation="get_ticker")
        quotes = data.get("QuoteResponse", {}).get("QuoteData", [])
        quote_data = quotes[0] if quotes else None
        values = (quote_data or {}).get("All") or (quote_data or {}).get("Intraday") or {}
        last = values.get("lastTrade")
        if not last:
            raise create_rejection(
                self.exchange_id,
                f"No price data available for {symbol}",
                category=ErrorCategory.SYMBOL_NOT_FOUND,
                operation="get_ticker",
                symbol=symbol,
            )
        return Ticker(
            symbol=self.normalize_symbol(symbol),
            last=Decimal(str(last)),
            bid=Decimal(str(values["bid"])) if values.get("bid") else None,
            ask=Decimal(str(values["ask"])) if values.get("ask") else None,
        )

    # --------------------------------------------------------
    # ORDERS
    # --------------------------------------------------------

    def _build_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        price_type: str,
        limit_price: Optional[Decimal] = None,
        stop_price: Optional[Decimal] = None,
        order_term: str = "GOOD_FOR_DAY",
    ) -> Dict[str, Any]:
        order: Dict[str, Any] = {
            "allOrNone": "false",
            "priceType": price_type,
            "orderTerm": order_term,
            "marketSession": "REGULAR",
            "Instrument": [{
                "Product": {"securityType": "EQ", "symbol": base_asset(symbol)},
                "orderAction": side.value.upper(),
                "quantityType": "QUANTITY",
                "quantity": str(abs(quantity)),
            }],
        }
        if limit_price is not None:
            order["limitPrice"] = str(limit_price)
        if stop_price is not None:
            order["stopPrice"] = str(stop_price)
        return {
            "orderType": "EQ",
            "clientOrderId": secrets.token_hex(10),
            "Order": [order],
        }

    async def _preview_and_place(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        request: Dict[str, Any],
    ) -> OrderResult:
        account = await self._resolve_account()
        preview = await self._request(
            "POST",
            f"/v1/accounts/{account}/orders/preview.json",
            body={"PreviewOrderRequest": request},
            operation="preview_order",
        )
        preview_ids = preview.get("PreviewOrderResponse", {}).get("PreviewIds", [])
        if not preview_ids:
            raise create_rejection(self.exchange_id, "Order preview returned no preview id", operation="preview_order")

        placed = await self._request(
            "POST",
            f"/v1/accounts/{account}/orders/place.json",
            body={"PlaceOrderRequest": {**request, "PreviewIds": preview_ids}},
            operation="place_order",
        )
        response = placed.get("PlaceOrderResponse", {})
        order_ids = response.get("OrderIds") or [{}]
        logger.info(f"E*TRADE order placed: {side.value} {quantity} {symbol}")
        return OrderResult(
            order_id=str(order_ids[0].get("orderId")) if order_ids[0].get("orderId") else None,
            client_order_id=request["clientOrderId"],
            symbol=self.normalize_symbol(symbol),
            side=side,
            quantity=quantity,
            status=map_order_status("OPEN"),
        )

    async def place_market_order(self, symbol: str, side: OrderSide, quantity: Decimal) -> OrderResult:
        return await self._preview_and_place(
            symbol, side, quantity, self._build_order(symbol, side, quantity, "MARKET"),
        )

    async def place_limit_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        price: Decimal,
    ) -> OrderResult:
        return await self._preview_and_place(
            symbol, side, quantity, self._build_order(symbol, side, quantity, "LIMIT", limit_price=price),
        )

    async def place_stop_loss(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        stop_price: Decimal,
    ) -> OrderResult:
        request = self._build_order(
            symbol, side, quantity, "STOP", stop_price=stop_price, order_term="GOOD_UNTIL_CANCEL",
        )
        return await self._preview_and_place(symbol, side, quantity, request)

    async def place_take_profit(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        price: Decimal,
    ) -> OrderResult:
        request = self._build_order(
            symbol, side, quantity, "LIMIT", limit_price=price, order_term="GOOD_UNTIL_CANCEL",
        )
        return await self._preview_and_place(symbol, side, quantity, request)

    async def cancel_order(self, symbol: str, order_id: str) -> bool:
        account = await self._resolve_account()
        await self._request(
            "PUT",
            f"/v1/accounts/{account}/orders/cancel.json",
            body={"CancelOrderRequest": {"orderId": int(order_id)}},
            operation="cancel_order",
        )
        return True

    async def get_order(self, symbol: str, order_id: str) -> Optional[OrderResult]:
        account = await self._resolve_account()
        data = await self._request(
            "GET", f"/v1/accounts/{account}/orders.json", params={"count": 100}, operation="get_order",
        )
        for order in data.get("OrdersResponse", {}).get("Order", []):
            if str(order.get("orderId")) != str(order_id):
                continue
            detail = (order.get("OrderDetail") or [{}])[0]
            instrument = (detail.get("Instrument") or [{}])[0]
            executed = instrument.get("averageExecutionPrice")
            return OrderResult(
                order_id=str(order_id),
                symbol=self.normalize_symbol(symbol),
                side=OrderSide.BUY if instrument.get("orderAction", "BUY").startswith("BUY") else OrderSide.SELL,
                quantity=Decimal(str(instrument.get("orderedQuantity", 0))),
                status=map_order_status(detail.get("status")),
                filled_quantity=Decimal(str(instrument.get("filledQuantity", 0))),
                average_price=Decimal(str(executed)) if executed else None,
            )
        return None
