"""
Exchange Adapter - Robinhood Crypto.

============================================================
PURPOSE
============================================================
Ed25519 signed adapter for the Robinhood crypto trading API.

AUTHENTICATION:
- Message: {api_key}{timestamp}{path}{method}{body}
- Signed with a base64 encoded Ed25519 seed (32 bytes; a
  64-byte seed+public key blob is also accepted)
- Headers: x-api-key, x-signature, x-timestamp
- A 401 is retried once with a fresh timestamp

MARKET:
- Spot only, long positions only (holdings)
- Native BTC-USD, canonical BTC/USD

============================================================
"""

import base64
import logging
import time
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

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
from .base import AdapterCapabilities, map_order_status
from .errors import AuthenticationFailed, ErrorCategory, ExchangeException, create_rejection
from .http import RestExchangeAdapter
from .retry import RetryPolicy
from .symbols import normalize_symbol, to_dashed


logger = logging.getLogger(__name__)


BASE_URL = "https://trading.robinhood.com"
ORDERS_PATH = "/api/v1/crypto/trading/orders/"


def load_private_key(encoded_seed: str) -> Ed25519PrivateKey:
    """
    Decode a base64 Ed25519 seed.

    Raises:
        ValueError: not base64 or not 32/64 bytes long
    """
    try:
        raw = base64.b64decode(encoded_seed, validate=True)
    except (ValueError, TypeError) as e:
        raise ValueError(f"Private key is not valid base64: {e}")
    if len(raw) == 64:
        raw = raw[:32]
    if len(raw) != 32:
        raise ValueError(f"Ed25519 seed must be 32 bytes, got {len(raw)}")
    return Ed25519PrivateKey.from_private_bytes(raw)


class RobinhoodAdapter(RestExchangeAdapter):
    """
    Robinhood crypto exchange adapter.
    """

    refreshes_on_unauthorized = True

    def __init__(
        self,
        api_key: str,
        private_key: str,
        retry_policy: Optional[RetryPolicy] = None,
        timeout_config: Optional[TimeoutConfig] = None,
        base_url: str = BASE_URL,
    ):
        super().__init__(base_url, retry_policy=retry_policy, timeout_config=timeout_config)
        self._api_key = api_key
        self._private_key = load_private_key(private_key)
        self._capabilities = AdapterCapabilities(
            auth_scheme=AuthScheme.ED25519,
            asset_class=AssetClass.CRYPTO,
            supports_take_profit_orders=True,
            supports_short=False,
            quantity_precision=8,
        )

    @property
    def exchange_id(self) -> str:
        return "robinhood"

    @property
    def capabilities(self) -> AdapterCapabilities:
        return self._capabilities

    def normalize_symbol(self, symbol: str) -> str:
        canonical = normalize_symbol(symbol)
        if "/" not in canonical:
            return f"{canonical}/USD"
        return canonical

    # --------------------------------------------------------
    # SIGNING
    # --------------------------------------------------------

    def sign_message(self, timestamp: int, path: str, method: str, body: str = "") -> str:
        message = f"{self._api_key}{timestamp}{path}{method}{body}"
        signature = self._private_key.sign(message.encode("utf-8"))
        return base64.b64encode(signature).decode("ascii")

    def _sign(
        self,
        method: str,
        path: str,
        params: Dict[str, Any],
        body: Optional[str],
    ) -> Tuple[Dict[str, str], Dict[str, Any]]:
        timestamp = int(time.time())
        signed_path = f"{path}?{urlencode(params)}" if params else path
        headers = {
            "x-api-key": self._api_key,
            "x-signature": self.sign_message(timestamp, signed_path, method, body or ""),
            "x-timestamp": str(timestamp),
        }
        return headers, params

    async def _refresh_credentials(self, error: AuthenticationFailed) -> None:
        # Nothing to refresh; the next attempt is signed with a new timestamp.
        logger.warning(f"Robinhood rejected signature ({error.code}), re-signing once")

    # --------------------------------------------------------
    # ACCOUNT OPERATIONS
    # --------------------------------------------------------

    async def get_balance(self) -> List[Balance]:
        data = await self._request("GET", "/api/v1/crypto/trading/accounts/", operation="get_balance")
        buying_power = Decimal(str(data.get("buying_power", "0")))
        return [Balance(
            asset=data.get("buying_power_currency", "USD"),
            available=buying_power,
            total=buying_power,
        )]

    async def get_positions(self) -> List[ExchangePosition]:
        data = await self._request("GET", "/api/v1/crypto/trading/holdings/", operation="get_positions")
        positions = []
        for holding in data.get("results", []):
            quantity = Decimal(str(holding.get("total_quantity", holding.get("quantity", "0"))))
            if quantity == 0:
                continue
            positions.append(ExchangePosition(
                symbol=self.normalize_symbol(holding["asset_code"]),
                side=PositionSide.LONG,
                quantity=quantity,
                entry_price=Decimal(str(holding.get("average_buy_price", "0"))),
            ))
        return positions

    # --------------------------------------------------------
    # MARKET DATA
    # --------------------------------------------------------

    async def get_ticker(self, symbol: str) -> Ticker:
        pair = to_dashed(self.normalize_symbol(symbol))
        data = await self._request(
            "GET",
            "/api/v1/crypto/marketdata/best_bid_ask/",
            params={"symbol": pair},
            operation="get_ticker",
        )
        quote = next((r for r in data.get("results", []) if r.get("symbol") == pair), None)
        if quote is None:
            raise create_rejection(
                self.exchange_id,
                f"No price data available for {symbol}",
                category=ErrorCategory.SYMBOL_NOT_FOUND,
                operation="get_ticker",
                symbol=symbol,
            )
        bid = Decimal(str(quote.get("bid_inclusive_of_sell_spread", quote.get("bid", "0"))))
        ask = Decimal(str(quote.get("ask_inclusive_of_buy_spread", quote.get("ask", "0"))))
        if bid and ask:
            mid = (bid + ask) / 2
        else:
            mid = bid or ask
        return Ticker(symbol=self.normalize_symbol(symbol), last=mid, bid=bid or None, ask=ask or None)

    # --------------------------------------------------------
    # ORDER OPERATIONS
    # --------------------------------------------------------

    async def _submit(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        order_type: str,
        config: Dict[str, Any],
    ) -> OrderResult:
        client_order_id = str(uuid.uuid4())
        body = {
            "client_order_id": client_order_id,
            "side": side.value,
            "type": order_type,
            "symbol": to_dashed(self.normalize_symbol(symbol)),
            f"{order_type}_order_config": {"asset_quantity": str(quantity), **config},
        }
        logger.info(f"Placing Robinhood {order_type} order: {side.value} {quantity} {symbol}")
        data = await self._request("POST", ORDERS_PATH, body=body, operation=f"place_{order_type}")
        return OrderResult(
            order_id=data.get("id") or client_order_id,
            client_order_id=client_order_id,
            symbol=self.normalize_symbol(symbol),
            side=side,
            quantity=quantity,
            status=map_order_status(data.get("state", "open")),
            average_price=_decimal_or_none(data.get("average_price")),
            filled_quantity=Decimal(str(data.get("filled_asset_quantity", "0"))),
        )

    async def place_market_order(self, symbol: str, side: OrderSide, quantity: Decimal) -> OrderResult:
        return await self._submit(symbol, side, quantity, "market", {})

    async def place_limit_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        price: Decimal,
    ) -> OrderResult:
        return await self._submit(
            symbol, side, quantity, "limit", {"limit_price": str(price), "time_in_force": "gtc"},
        )

    async def place_stop_loss(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        stop_price: Decimal,
    ) -> OrderResult:
        return await self._submit(
            symbol, side, quantity, "stop_loss", {"stop_price": str(stop_price), "time_in_force": "gtc"},
        )

    async def place_take_profit(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        price: Decimal,
    ) -> OrderResult:
        # Resting limit on the reducing side
        return await self.place_limit_order(symbol, side, quantity, price)

    async def cancel_order(self, symbol: str, order_id: str) -> bool:
        await self._request("POST", f"{ORDERS_PATH}{order_id}/cancel/", operation="cancel_order")
        return True

    async def get_order(self, symbol: str, order_id: str) -> Optional[OrderResult]:
        try:
            data = await self._request("GET", f"{ORDERS_PATH}{order_id}/", operation="get_order")
        except ExchangeException as e:
            if e.http_status == 404:
                return None
            raise
        side = OrderSide.BUY if data.get("side") == "buy" else OrderSide.SELL
        status = map_order_status(data.get("state"))
        return OrderResult(
            order_id=data.get("id", order_id),
            client_order_id=data.get("client_order_id"),
            symbol=self.normalize_symbol(data.get("symbol", symbol)),
            side=side,
            quantity=Decimal(str(data.get("quantity", data.get("filled_asset_quantity", "0")))),
            status=status if status is not OrderStatus.UNKNOWN else OrderStatus.NEW,
            average_price=_decimal_or_none(data.get("average_price")),
            filled_quantity=Decimal(str(data.get("filled_asset_quantity", "0"))),
        )


def _decimal_or_none(value: Any) -> Optional[Decimal]:
    if value in (None, "", 0, "0"):
        return None
    return Decimal(str(value))
