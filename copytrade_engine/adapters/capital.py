"""
Exchange Adapter - Capital.com.

============================================================
PURPOSE
============================================================
Session token adapter for Capital.com CFDs.

AUTHENTICATION:
- POST /api/v1/session with the API key header and account
  identifier/password returns CST and X-SECURITY-TOKEN headers
- Sessions live 10 minutes and are renewed once older than 8
- A 401 clears the session and the call is retried once

INSTRUMENTS:
- Addressed by broker "epic" tokens, resolved with a market
  search and cached per adapter
- Protective levels are attached to the open position

============================================================
"""

import json
import logging
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

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
from .errors import (
    AuthenticationFailed,
    ErrorCategory,
    ExchangeException,
    create_rejection,
    map_http_error,
)
from .http import RestExchangeAdapter
from .retry import RetryPolicy
from .symbols import to_concatenated


logger = logging.getLogger(__name__)


PRODUCTION_URL = "https://api-capital.backend-capital.com"
DEMO_URL = "https://demo-api-capital.backend-capital.com"

SESSION_REFRESH_AFTER_SECONDS = 8 * 60


class CapitalAdapter(RestExchangeAdapter):
    """
    Capital.com CFD adapter.
    """

    refreshes_on_unauthorized = True

    def __init__(
        self,
        api_key: str,
        identifier: str,
        password: str,
        account_id: Optional[str] = None,
        demo: bool = False,
        retry_policy: Optional[RetryPolicy] = None,
        timeout_config: Optional[TimeoutConfig] = None,
    ):
        super().__init__(
            DEMO_URL if demo else PRODUCTION_URL,
            retry_policy=retry_policy,
            timeout_config=timeout_config,
        )
        self._api_key = api_key
        self._identifier = identifier
        self._password = password
        self._account_id = account_id

        self._cst: Optional[str] = None
        self._security_token: Optional[str] = None
        self._session_created_at: Optional[float] = None
        self._epics: Dict[str, str] = {}

        self._capabilities = AdapterCapabilities(
            auth_scheme=AuthScheme.SESSION,
            asset_class=AssetClass.CFD,
            price_precision=2,
        )

    @property
    def exchange_id(self) -> str:
        return "capital"

    @property
    def capabilities(self) -> AdapterCapabilities:
        return self._capabilities

    # --------------------------------------------------------
    # SESSION
    # --------------------------------------------------------

    def session_expired(self) -> bool:
        if not self._cst or not self._security_token or self._session_created_at is None:
            return True
        return time.monotonic() - self._session_created_at > SESSION_REFRESH_AFTER_SECONDS

    def clear_session(self) -> None:
        self._cst = None
        self._security_token = None
        self._session_created_at = None

    async def create_session(self) -> None:
        """
        Log in and store the session tokens.

        Raises:
            AuthenticationFailed: credentials rejected
        """
        response = await self._send(
            "POST",
            "/api/v1/session",
            {"X-CAP-API-KEY": self._api_key},
            {},
            json.dumps({"identifier": self._identifier, "password": self._password, "encryptedPassword": False}),
        )
        if response.status >= 400:
            raise map_http_error(
                self.exchange_id, response.status, "Capital.com session creation failed", operation="create_session",
            )

        headers = {k.upper(): v for k, v in response.headers.items()}
        self._cst = headers.get("CST")
        self._security_token = headers.get("X-SECURITY-TOKEN")
        if not self._cst or not self._security_token:
            raise create_rejection(
                self.exchange_id,
                "Session tokens missing from login response",
                category=ErrorCategory.AUTHENTICATION,
                operation="create_session",
            )
        self._session_created_at = time.monotonic()
        if isinstance(response.data, dict) and not self._account_id:
            self._account_id = response.data.get("currentAccountId")
        logger.info("Capital.com session created")

    async def _before_request(self) -> None:
        if self.session_expired():
            await self.create_session()

    async def _refresh_credentials(self, error: AuthenticationFailed) -> None:
        logger.info("Capital.com session rejected, re-creating session")
        self.clear_session()

    def _sign(
        self,
        method: str,
        path: str,
        params: Dict[str, Any],
        body: Optional[str],
    ) -> Tuple[Dict[str, str], Dict[str, Any]]:
        return {
            "X-CAP-API-KEY": self._api_key,
            "CST": self._cst or "",
            "X-SECURITY-TOKEN": self._security_token or "",
        }, params

    # --------------------------------------------------------
    # EPICS
    # --------------------------------------------------------

    async def get_epic(self, symbol: str) -> str:
        """Resolve a symbol to its Capital.com epic (cached)."""
        canonical = self.normalize_symbol(symbol)
        if canonical in self._epics:
            return self._epics[canonical]

        search = to_concatenated(canonical)
        data = await self._request(
            "GET", "/api/v1/markets", params={"searchTerm": search}, operation="get_epic",
        )
        markets = data.get("markets") or []
        if not markets:
            raise create_rejection(
                self.exchange_id,
                f"Epic not found for {symbol}",
                category=ErrorCategory.SYMBOL_NOT_FOUND,
                operation="get_epic",
                symbol=symbol,
            )
        epic = markets[0]["epic"]
        self._epics[canonical] = epic
        logger.info(f"Mapped symbol {canonical} to epic {epic}")
        return epic

    # --------------------------------------------------------
    # ACCOUNT
    # --------------------------------------------------------

    async def get_balance(self) -> List[Balance]:
        data = await self._request("GET", "/api/v1/accounts", operation="get_balance")
        accounts = data.get("accounts") or []
        if not accounts:
            raise create_rejection(self.exchange_id, "No Capital.com accounts found", operation="get_balance")
        account = next((a for a in accounts if a.get("accountId") == self._account_id), accounts[0])
        balance = account.get("balance") or {}
        return [Balance(
            asset=account.get("currency", "USD"),
            available=Decimal(str(balance.get("available", 0))),
            total=Decimal(str(balance.get("balance", 0))),
        )]

    async def get_available_margin(self) -> Decimal:
        balances = await self.get_balance()
        return balances[0].available

    async def _raw_positions(self) -> List[Dict[str, Any]]:
        data = await self._request("GET", "/api/v1/positions", operation="get_positions")
        rows = []
        for item in data.get("positions") or []:
            position = item.get("position", item)
            market = item.get("market", {})
            rows.append({
                "epic": market.get("epic") or position.get("epic"),
                "deal_id": position.get("dealId"),
                "direction": position.get("direction"),
                "size": Decimal(str(position.get("size", 0))),
                "level": Decimal(str(position.get("level", 0))),
                "upl": Decimal(str(position.get("upl", 0))),
                "bid": market.get("bid"),
                "offer": market.get("offer"),
            })
        return rows

    async def get_positions(self) -> List[ExchangePosition]:
        positions = []
        for row in await self._raw_positions():
            if row["size"] == 0 or not row["epic"]:
                continue
            long = row["direction"] == "BUY"
            mark = row["bid"] if long else row["offer"]
            positions.append(ExchangePosition(
                symbol=self._symbol_for_epic(row["epic"]),
                side=PositionSide.LONG if long else PositionSide.SHORT,
                quantity=row["size"],
                entry_price=row["level"],
                mark_price=Decimal(str(mark)) if mark else None,
                unrealized_pnl=row["upl"],
            ))
        return positions

    def _symbol_for_epic(self, epic: str) -> str:
        for symbol, cached in self._epics.items():
            if cached == epic:
                return symbol
        return self.normalize_symbol(epic)

    async def _deal_id(self, symbol: str) -> str:
        epic = await self.get_epic(symbol)
        for row in await self._raw_positions():
            if row["epic"] == epic and row["deal_id"]:
                return row["deal_id"]
        raise create_rejection(
            self.exchange_id,
            f"No open position for {symbol}",
            category=ErrorCategory.POSITION_NOT_FOUND,
            symbol=symbol,
        )

    # --------------------------------------------------------
    # MARKET DATA
    # --------------------------------------------------------

    async def get_ticker(self, symbol: str) -> Ticker:
        epic = await self.get_epic(symbol)
        data = await self._request("GET", f"/api/v1/markets/{epic}", operation="get_ticker")
        snapshot = data.get("snapshot") or {}
        bid = Decimal(str(snapshot.get("bid") or 0))
        offer = Decimal(str(snapshot.get("offer") or 0))
        mid = (bid + offer) / 2 if bid and offer else (bid or offer)
        if not mid:
            raise create_rejection(
                self.exchange_id,
                f"No price data available for {symbol}",
                category=ErrorCategory.SYMBOL_NOT_FOUND,
                operation="get_ticker",
                symbol=symbol,
            )
        return Ticker(symbol=self.normalize_symbol(symbol), last=mid, bid=bid or None, ask=offer or None)

    # --------------------------------------------------------
    # ORDERS
    # --------------------------------------------------------

    async def _confirm(self, deal_reference: str) -> Dict[str, Any]:
        try:
            return await self._request("GET", f"/api/v1/confirms/{deal_reference}", operation="confirm_deal")
        except ExchangeException as e:
            logger.warning(f"Failed to confirm Capital.com deal {deal_reference}: {e}")
            return {}

    async def _deal_result(
        self,
        response: Dict[str, Any],
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        price: Optional[Decimal] = None,
    ) -> OrderResult:
        reference = response.get("dealReference")
        confirm = await self._confirm(reference) if reference else {}
        deal_status = confirm.get("dealStatus")
        if deal_status == "REJECTED":
            status = OrderStatus.REJECTED
        elif deal_status == "ACCEPTED":
            status = OrderStatus.FILLED
        else:
            status = map_order_status(confirm.get("status")) if confirm else OrderStatus.NEW
        level = confirm.get("level")
        return OrderResult(
            order_id=confirm.get("dealId") or reference,
            client_order_id=reference,
            symbol=self.normalize_symbol(symbol),
            side=side,
            quantity=quantity,
            status=status,
            price=price,
            filled_quantity=quantity if status is OrderStatus.FILLED else Decimal("0"),
            average_price=Decimal(str(level)) if level else None,
            error=confirm.get("reason") if status is OrderStatus.REJECTED else None,
        )

    async def place_market_order(self, symbol: str, side: OrderSide, quantity: Decimal) -> OrderResult:
        epic = await self.get_epic(symbol)
        logger.info(f"Opening Capital.com position: {side.value} {quantity} {epic}")
        response = await self._request(
            "POST",
            "/api/v1/positions",
            body={"epic": epic, "direction": side.value.upper(), "size": float(quantity)},
            operation="place_market_order",
        )
        return await self._deal_result(response, symbol, side, quantity)

    async def place_limit_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        price: Decimal,
    ) -> OrderResult:
        epic = await self.get_epic(symbol)
        response = await self._request(
            "POST",
            "/api/v1/workingorders",
            body={
                "epic": epic,
                "direction": side.value.upper(),
                "size": float(quantity),
                "level": float(price),
                "type": "LIMIT",
            },
            operation="place_limit_order",
        )
        return await self._deal_result(response, symbol, side, quantity, price)

    async def _amend_position(self, symbol: str, side: OrderSide, quantity: Decimal, levels: Dict[str, float]) -> OrderResult:
        deal_id = await self._deal_id(symbol)
        await self._request("PUT", f"/api/v1/positions/{deal_id}", body=levels, operation="amend_position")
        return OrderResult(
            order_id=deal_id,
            symbol=self.normalize_symbol(symbol),
            side=side,
            quantity=quantity,
            status=OrderStatus.NEW,
            price=Decimal(str(next(iter(levels.values())))),
        )

    async def place_stop_loss(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        stop_price: Decimal,
    ) -> OrderResult:
        return await self._amend_position(symbol, side, quantity, {"stopLevel": float(stop_price)})

    async def place_take_profit(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        price: Decimal,
    ) -> OrderResult:
        return await self._amend_position(symbol, side, quantity, {"profitLevel": float(price)})

    async def close_position(self, symbol: str, side: OrderSide, quantity: Decimal) -> OrderResult:
        deal_id = await self._deal_id(symbol)
        logger.info(f"Closing Capital.com position {deal_id} ({symbol})")
        response = await self._request("DELETE", f"/api/v1/positions/{deal_id}", operation="close_position")
        return await self._deal_result(response, symbol, side, quantity)

    async def cancel_order(self, symbol: str, order_id: str) -> bool:
        await self._request("DELETE", f"/api/v1/workingorders/{order_id}", operation="cancel_order")
        return True

    async def get_order(self, symbol: str, order_id: str) -> Optional[OrderResult]:
        data = await self._request("GET", "/api/v1/workingorders", operation="get_order")
        for item in data.get("workingOrders") or []:
            order = item.get("workingOrderData", item)
            if order.get("dealId") != order_id:
                continue
            return OrderResult(
                order_id=order_id,
                symbol=self.normalize_symbol(symbol),
                side=OrderSide.BUY if order.get("direction") == "BUY" else OrderSide.SELL,
                quantity=Decimal(str(order.get("orderSize", 0))),
                status=OrderStatus.NEW,
                price=Decimal(str(order["orderLevel"])) if order.get("orderLevel") else None,
            )
        return None

