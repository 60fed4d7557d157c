"""
Copy-Trade Engine - Trade Executor.

============================================================
PURPOSE
============================================================
Turns one trade intent into exchange orders for one account.

One instance per (owner, exchange). Every intent runs inside the
per-(owner, exchange, symbol) critical section, so the sequence
"resolve existing position -> open/close" never interleaves for
the same key.

============================================================
OPEN WORKFLOW
============================================================
1. Resolve existing position (re-verified on the exchange)
   - stale tracker entry: dropped, continue as fresh open
   - same side: skipped
   - opposite side: reversal (close fully, settle, open);
     a failed close aborts with REVERSAL_FAILED
2. Margin gate (available - notional >= buffer% of available)
3. Price (ticker for market, intent price for limit)
4. Quantity (notional / price at the adapter's precision)
5. Entry order; failure aborts
6. Stop-loss / take-profit, best effort (failures are warnings)
7. Track and persist
8. Result plus detached notification

============================================================
CLOSE WORKFLOW
============================================================
The live exchange position is the source of truth. No position
means success with "No position to close". Otherwise: opposing
market order, realized P&L, cancel resting brackets (full close
only), update tracker and storage, write one TradeRecord.

============================================================
"""

import asyncio
import inspect
import logging
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from .adapters import ExchangeAdapter, ExchangeException
from .calculations import (
    ZERO,
    calculate_quantity,
    margin_allows,
    partial_close_quantity,
    pnl_result,
    stop_loss_price,
    take_profit_price,
)
from .config import ExecutorConfig
from .errors import EngineError, InsufficientMargin, ReversalFailed, ValidationError
from .intent import TradeIntent
from .key_lock import KeyedLock
from .notifications import NotificationDispatcher
from .position_tracker import PositionTracker
from .repository import ExecutionStore
from .types import (
    ExecutionAction,
    ExecutionResult,
    ExitReason,
    OrderType,
    Position,
    PositionKey,
    PositionSide,
    TradeRecord,
    utc_now,
)


logger = logging.getLogger(__name__)


TradeClosedHook = Callable[[TradeRecord], Union[Awaitable[None], None]]


class TradeExecutor:
    """
    Executes trade intents against one exchange account.
    """

    def __init__(
        self,
        owner_id: str,
        adapter: ExchangeAdapter,
        tracker: PositionTracker,
        locks: KeyedLock,
        store: Optional[ExecutionStore] = None,
        notifier: Optional[NotificationDispatcher] = None,
        config: Optional[ExecutorConfig] = None,
        on_trade_closed: Optional[TradeClosedHook] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._owner_id = owner_id
        self._adapter = adapter
        self._tracker = tracker
        self._locks = locks
        self._store = store
        self._notifier = notifier
        self._config = config or ExecutorConfig()
        self._on_trade_closed = on_trade_closed
        self._sleep = sleep

    @property
    def owner_id(self) -> str:
        return self._owner_id

    @property
    def exchange_id(self) -> str:
        return self._adapter.exchange_id

    @property
    def adapter(self) -> ExchangeAdapter:
        return self._adapter

    @property
    def quantity_precision(self) -> int:
        precision = self._adapter.capabilities.quantity_precision
        return self._config.default_quantity_precision if precision is None else precision

    @property
    def price_precision(self) -> int:
        precision = self._adapter.capabilities.price_precision
        return self._config.default_price_precision if precision is None else precision

    def _key(self, symbol: str) -> PositionKey:
        return PositionKey(self._owner_id, self.exchange_id, symbol)

    # ============================================================
    # PUBLIC API
    # ============================================================

    async def execute(self, intent: TradeIntent) -> ExecutionResult:
        """
        Execute a trade intent.

        Never raises for trading failures; they come back as
        rejected results carrying an error code.
        """
        if intent.owner_id != self._owner_id:
            return ExecutionResult.rejected(
                f"Intent for {intent.owner_id} sent to executor of {self._owner_id}",
                ValidationError.code,
            )

        symbol = self._adapter.normalize_symbol(intent.symbol)
        closed: List[TradeRecord] = []

        async with self._locks.hold(self._key(symbol)):
            try:
                if intent.is_close:
                    result = await self._close(
                        symbol,
                        intent.sell_percentage,
                        ExitReason.MANUAL,
                        intent.strategy_id,
                    )
                else:
                    result = await self._open(intent, symbol, closed)
            except EngineError as e:
                logger.warning(f"Intent rejected for {self._owner_id}/{self.exchange_id}/{symbol}: {e}")
                result = ExecutionResult.rejected(e.message, e.code)
            except ExchangeException as e:
                logger.error(f"Exchange error for {self._owner_id}/{self.exchange_id}/{symbol}: {e}")
                result = ExecutionResult.rejected(str(e), e.code)

        # Reversal closes happened before the open; report them too
        for trade in closed:
            await self._trade_closed(trade)
            if self._notifier is not None:
                self._notifier.position_closed(trade)
        if result.trade is not None:
            await self._trade_closed(result.trade)

        self._notify(result, symbol)
        return result

    async def close_position(
        self,
        symbol: str,
        sell_percentage: Optional[Decimal] = None,
        reason: ExitReason = ExitReason.MANUAL,
    ) -> ExecutionResult:
        """Close (or partially close) a position outside of an intent."""
        symbol = self._adapter.normalize_symbol(symbol)
        async with self._locks.hold(self._key(symbol)):
            try:
                result = await self._close(symbol, sell_percentage, reason, None)
            except ExchangeException as e:
                logger.error(f"Close failed for {self._owner_id}/{self.exchange_id}/{symbol}: {e}")
                result = ExecutionResult.rejected(str(e), e.code)

        if result.trade is not None:
            await self._trade_closed(result.trade)
        self._notify(result, symbol)
        return result

    def positions_summary(self) -> Dict[str, Any]:
        return self._tracker.summary(self._owner_id, self.exchange_id)

    # ============================================================
    # OPEN
    # ============================================================

    async def _open(self, intent: TradeIntent, symbol: str, closed: List[TradeRecord]) -> ExecutionResult:
        side = PositionSide.from_order_side(intent.order_side)
        capabilities = self._adapter.capabilities
        if side is PositionSide.SHORT and not capabilities.supports_short:
            raise ValidationError(f"{self.exchange_id} does not support short positions")

        existing = await self._resolve_existing(symbol)
        if existing is not None and existing.side is side:
            logger.info(f"Already {side.value} {symbol} for {self._owner_id}, skipping")
            return ExecutionResult.skipped(f"Position already open: {side.value} {symbol}")

        if existing is not None:
            await self._reverse(existing, closed)

        # Margin gate
        available = await self._adapter.get_available_margin()
        if not margin_allows(available, intent.notional_usd, self._config.margin_buffer_percent):
            raise InsufficientMargin(available, intent.notional_usd, self._config.margin_buffer_percent)

        if intent.order_type is OrderType.LIMIT:
            price = intent.price
        else:
            price = (await self._adapter.get_ticker(symbol)).last

        quantity = calculate_quantity(intent.notional_usd, price, self.quantity_precision)

        entry_side = side.entry_side
        if intent.order_type is OrderType.LIMIT:
            order = await self._adapter.place_limit_order(symbol, entry_side, quantity, price)
        else:
            order = await self._adapter.place_market_order(symbol, entry_side, quantity)

        if not order.is_success:
            logger.error(f"Entry order failed for {symbol}: {order.error or order.status.value}")
            return ExecutionResult.rejected(
                f"Entry order failed: {order.error or order.status.value}",
                "ORDER_FAILED",
            )

        entry_price = order.fill_price or price
        position = Position(
            owner_id=self._owner_id,
            exchange_id=self.exchange_id,
            symbol=symbol,
            side=side,
            quantity=quantity,
            entry_price=entry_price,
            notional=entry_price * quantity,
            current_price=entry_price,
            stop_loss_percent=intent.stop_loss_percent,
            take_profit_percent=intent.take_profit_percent,
            strategy_id=intent.strategy_id,
            copy_relationship_id=intent.copy_relationship_id,
        )

        warnings: List[str] = []
        await self._place_brackets(position, warnings)

        self._tracker.add(position)
        await self._persist("save position", warnings, "save_position", position)

        logger.info(
            f"Opened {side.value} {quantity} {symbol} @ {entry_price} "
            f"for {self._owner_id} on {self.exchange_id}"
        )

        message = f"Opened {side.value} {quantity} {symbol} @ {entry_price}"
        if closed:
            message = f"Reversed to {side.value}: {message}"
        return ExecutionResult(
            success=True,
            action=ExecutionAction.OPENED,
            message=message,
            position=position,
            warnings=warnings,
            order=order,
        )

    async def _resolve_existing(self, symbol: str) -> Optional[Position]:
        """
        Tracked position for the symbol, checked against the exchange.

        A tracked position the exchange no longer has was closed
        externally and is dropped. An exchange position the tracker
        does not know is adopted.
        """
        tracked = self._tracker.get(self._owner_id, self.exchange_id, symbol)
        live = await self._adapter.get_position(symbol)

        if live is None:
            if tracked is not None:
                logger.warning(f"Dropping stale {symbol} position for {self._owner_id}: gone on exchange")
                self._tracker.remove(self._owner_id, self.exchange_id, symbol)
                await self._persist("delete stale position", None, "delete_position",
                                    self._owner_id, self.exchange_id, symbol)
            return None

        if tracked is None:
            tracked = Position(
                owner_id=self._owner_id,
                exchange_id=self.exchange_id,
                symbol=symbol,
                side=live.side,
                quantity=live.quantity,
                entry_price=live.entry_price,
                notional=live.entry_price * live.quantity,
                current_price=live.mark_price,
            )
            self._tracker.add(tracked)
        elif tracked.side is not live.side or tracked.quantity != live.quantity:
            tracked.side = live.side
            tracked.quantity = live.quantity
            tracked.notional = tracked.entry_price * live.quantity
        return tracked

    async def _reverse(self, existing: Position, closed: List[TradeRecord]) -> None:
        logger.info(
            f"Reversing {existing.side.value} {existing.symbol} for {self._owner_id} on {self.exchange_id}"
        )
        try:
            result = await self._close(existing.symbol, None, ExitReason.REVERSAL, existing.strategy_id)
        except ExchangeException as e:
            raise ReversalFailed(existing.symbol, str(e)) from e

        if not result.success:
            raise ReversalFailed(existing.symbol, result.message)
        if result.trade is not None:
            closed.append(result.trade)

        if self._config.reversal_settle_seconds > 0:
            await self._sleep(self._config.reversal_settle_seconds)

    async def _place_brackets(self, position: Position, warnings: List[str]) -> None:
        capabilities = self._adapter.capabilities
        exit_side = position.side.exit_side

        if position.stop_loss_percent:
            if not capabilities.supports_stop_orders:
                warnings.append(f"{self.exchange_id} does not support stop-loss orders")
            else:
                stop = stop_loss_price(
                    position.side, position.entry_price, position.stop_loss_percent, self.price_precision
                )
                try:
                    order = await self._adapter.place_stop_loss(position.symbol, exit_side, position.quantity, stop)
                    position.stop_order_id = order.order_id
                except ExchangeException as e:
                    logger.warning(f"Stop-loss failed for {position.symbol}: {e}")
                    warnings.append(f"Stop-loss order failed: {e}")

        if position.take_profit_percent:
            if not capabilities.supports_take_profit_orders:
                warnings.append(f"{self.exchange_id} does not support take-profit orders")
            else:
                target = take_profit_price(
                    position.side, position.entry_price, position.take_profit_percent, self.price_precision
                )
                try:
                    order = await self._adapter.place_take_profit(position.symbol, exit_side, position.quantity, target)
                    position.take_profit_order_id = order.order_id
                except ExchangeException as e:
                    logger.warning(f"Take-profit failed for {position.symbol}: {e}")
                    warnings.append(f"Take-profit order failed: {e}")

    # ============================================================
    # CLOSE
    # ============================================================

    async def _close(
        self,
        symbol: str,
        sell_percentage: Optional[Decimal],
        reason: ExitReason,
        strategy_id: Optional[str],
    ) -> ExecutionResult:
        tracked = self._tracker.get(self._owner_id, self.exchange_id, symbol)
        live = await self._adapter.get_position(symbol)

        if live is None or live.quantity <= ZERO:
            if tracked is not None:
                self._tracker.remove(self._owner_id, self.exchange_id, symbol)
                await self._persist("delete position", None, "delete_position",
                                    self._owner_id, self.exchange_id, symbol)
            return ExecutionResult(success=True, action=ExecutionAction.CLOSED, message="No position to close")

        quantity = partial_close_quantity(live.quantity, sell_percentage, self.quantity_precision)
        partial = quantity < live.quantity

        exit_price = live.mark_price
        if not exit_price:
            exit_price = (await self._adapter.get_ticker(symbol)).last

        order = await self._adapter.close_position(symbol, live.side.exit_side, quantity)
        if not order.is_success:
            logger.error(f"Close order failed for {symbol}: {order.error or order.status.value}")
            return ExecutionResult.rejected(
                f"Close order failed: {order.error or order.status.value}",
                "ORDER_FAILED",
            )

        entry_price = tracked.entry_price if tracked is not None else live.entry_price
        pnl = pnl_result(live.side, entry_price, exit_price, quantity)
        warnings: List[str] = []

        if partial:
            remaining = live.quantity - quantity
            updated = self._tracker.update_quantity(self._owner_id, self.exchange_id, symbol, remaining)
            if updated is not None:
                await self._persist("update position", warnings, "save_position", updated)
        else:
            await self._cancel_brackets(symbol, tracked)
            self._tracker.remove(self._owner_id, self.exchange_id, symbol)
            await self._persist("delete position", warnings, "delete_position",
                                self._owner_id, self.exchange_id, symbol)

        trade = TradeRecord(
            owner_id=self._owner_id,
            exchange_id=self.exchange_id,
            symbol=symbol,
            side=live.side,
            entry_price=entry_price,
            exit_price=exit_price,
            quantity=quantity,
            notional=entry_price * quantity,
            realized_pnl=pnl.usd,
            realized_pnl_percent=pnl.percent,
            exit_reason=reason,
            entry_time=tracked.entry_time if tracked is not None else utc_now(),
            strategy_id=strategy_id or (tracked.strategy_id if tracked is not None else None),
            copy_relationship_id=tracked.copy_relationship_id if tracked is not None else None,
            asset_class=self._adapter.capabilities.asset_class,
            close_order_id=order.order_id,
            partial=partial,
        )
        await self._persist("insert trade record", warnings, "insert_trade_record", trade)

        logger.info(
            f"Closed {'part of ' if partial else ''}{live.side.value} {quantity} {symbol} @ {exit_price} "
            f"for {self._owner_id}: pnl={pnl.usd:.2f} ({pnl.percent:.2f}%)"
        )

        return ExecutionResult(
            success=True,
            action=ExecutionAction.CLOSED,
            message=f"Closed {quantity} {symbol} @ {exit_price}",
            pnl=pnl,
            warnings=warnings,
            order=order,
            trade=trade,
        )

    async def _cancel_brackets(self, symbol: str, tracked: Optional[Position]) -> None:
        """Best-effort cleanup of resting protective orders."""
        if self._adapter.capabilities.supports_cancel_all:
            try:
                cancelled = await self._adapter.cancel_all_orders(symbol)
                if cancelled:
                    logger.info(f"Cancelled {cancelled} resting order(s) on {symbol}")
            except ExchangeException as e:
                logger.warning(f"Cancel-all failed for {symbol}: {e}")
            return

        if tracked is None:
            return
        for order_id in (tracked.stop_order_id, tracked.take_profit_order_id):
            if not order_id:
                continue
            try:
                await self._adapter.cancel_order(symbol, order_id)
            except ExchangeException as e:
                logger.warning(f"Could not cancel order {order_id} on {symbol}: {e}")

    # ============================================================
    # SIDE EFFECTS
    # ============================================================

    async def _persist(self, what: str, warnings: Optional[List[str]], method: str, *args: Any) -> None:
        if self._store is None:
            return
        try:
            await getattr(self._store, method)(*args)
        except Exception as e:
            logger.error(f"Failed to {what} for {self._owner_id}/{self.exchange_id}: {e}")
            if warnings is not None:
                warnings.append(f"Failed to {what}: {e}")

    async def _trade_closed(self, trade: TradeRecord) -> None:
        if self._on_trade_closed is None:
            return
        try:
            outcome = self._on_trade_closed(trade)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.error(f"Trade-closed hook failed for {trade.symbol}: {e}", exc_info=True)

    def _notify(self, result: ExecutionResult, symbol: str) -> None:
        if self._notifier is None:
            return
        if result.action is ExecutionAction.OPENED and result.position is not None:
            self._notifier.position_opened(result.position)
        elif result.action is ExecutionAction.CLOSED and result.trade is not None:
            self._notifier.position_closed(result.trade)
        elif result.action is ExecutionAction.REJECTED:
            self._notifier.execution_rejected(self._owner_id, self.exchange_id, symbol, result)
