"""
Copy-Trade Engine - Position Reconciler.

============================================================
PURPOSE
============================================================
Keeps the position tracker honest.

RESPONSIBILITIES:
- Periodically refresh current price and unrealized P&L of
  every tracked position, and persist the figures
- Re-derive an account's tracked positions from the exchange
  (sync): drop positions gone on the exchange, adopt untracked
  ones, correct side and quantity

CRITICAL CONSTRAINTS:
    "The exchange is authoritative for what is open."

Per-position failures are logged and skipped; one bad symbol
never stops an iteration.

============================================================
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Iterable, List, Optional, Tuple

from .adapters import ExchangeAdapter
from .calculations import HUNDRED, ZERO, calculate_pnl
from .config import ReconcilerConfig
from .key_lock import KeyedLock
from .position_tracker import PositionTracker
from .repository import ExecutionStore
from .types import Position, PositionKey, utc_now


logger = logging.getLogger(__name__)


AdapterProvider = Callable[[str, str], Awaitable[Optional[ExchangeAdapter]]]


# ============================================================
# RESULTS
# ============================================================

@dataclass
class UpdateResult:
    """Result of one price/P&L refresh iteration."""

    run_id: str
    started_at: datetime
    completed_at: datetime = field(default_factory=utc_now)
    updated: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


@dataclass
class SyncResult:
    """Result of re-deriving one account from the exchange."""

    owner_id: str
    exchange_id: str
    removed: List[str] = field(default_factory=list)
    adopted: List[str] = field(default_factory=list)
    corrected: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def changed(self) -> bool:
        return bool(self.removed or self.adopted or self.corrected)


# ============================================================
# RECONCILER
# ============================================================

class PositionReconciler:
    """
    Background price/P&L updater and exchange sync.
    """

    def __init__(
        self,
        tracker: PositionTracker,
        adapter_provider: AdapterProvider,
        locks: KeyedLock,
        store: Optional[ExecutionStore] = None,
        config: Optional[ReconcilerConfig] = None,
    ):
        self._tracker = tracker
        self._adapter_provider = adapter_provider
        self._locks = locks
        self._store = store
        self._config = config or ReconcilerConfig()

        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._run_counter = 0
        self._last_result: Optional[UpdateResult] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def last_result(self) -> Optional[UpdateResult]:
        return self._last_result

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="position-reconciler")
        logger.info(f"Position reconciler started (every {self._config.interval_seconds}s)")

    async def stop(self) -> None:
        """Stop the loop. An iteration already in progress completes first."""
        if self._task is None:
            return
        self._stop_event.set()
        try:
            await self._task
        finally:
            self._task = None
        logger.info("Position reconciler stopped")

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.update_all()
            except Exception as e:
                logger.error(f"Position update iteration failed: {e}", exc_info=True)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._config.interval_seconds)
            except asyncio.TimeoutError:
                pass

    # --------------------------------------------------------
    # PRICE / P&L UPDATES
    # --------------------------------------------------------

    async def force_update(self) -> UpdateResult:
        """Run one refresh iteration immediately."""
        return await self.update_all()

    async def update_all(self) -> UpdateResult:
        self._run_counter += 1
        result = UpdateResult(run_id=f"UPD_{self._run_counter:06d}", started_at=utc_now())

        for position in self._tracker.list_all():
            try:
                if await self._update_position(position):
                    result.updated += 1
            except Exception as e:
                result.errors.append(f"{position.key}: {e}")
                logger.warning(f"Failed to update {position.symbol} for {position.owner_id}: {e}")

        result.completed_at = utc_now()
        self._last_result = result
        logger.debug(f"Update {result.run_id}: {result.updated} positions, {len(result.errors)} errors")
        return result

    async def _update_position(self, position: Position) -> bool:
        adapter = await self._adapter_provider(position.owner_id, position.exchange_id)
        if adapter is None:
            return False

        async with self._locks.hold(position.key):
            # Closed or replaced since the snapshot was taken
            if self._tracker.get(position.owner_id, position.exchange_id, position.symbol) is not position:
                return False
            return await self._refresh(adapter, position)

    async def _refresh(self, adapter: ExchangeAdapter, position: Position) -> bool:
        ticker = await adapter.get_ticker(position.symbol)
        price = ticker.last
        pnl = calculate_pnl(position.side, position.entry_price, price, position.quantity)

        position.current_price = price
        position.unrealized_pnl = pnl
        position.unrealized_pnl_percent = pnl / position.notional * HUNDRED if position.notional else ZERO
        position.last_update = utc_now()

        if self._store is not None:
            await self._store.save_position(position)
        return True

    # --------------------------------------------------------
    # SYNC
    # --------------------------------------------------------

    async def sync(self, owner_id: str, exchange_id: str) -> SyncResult:
        """
        Re-derive tracked positions for one account from the exchange.
        """
        result = SyncResult(owner_id=owner_id, exchange_id=exchange_id)
        adapter = await self._adapter_provider(owner_id, exchange_id)
        if adapter is None:
            result.error = "no adapter"
            return result

        try:
            live = {p.symbol: p for p in await adapter.get_positions()}
        except Exception as e:
            result.error = str(e)
            logger.error(f"Sync failed for {owner_id}/{exchange_id}: {e}")
            return result

        tracked = {p.symbol: p for p in self._tracker.list_for(owner_id, exchange_id)}

        for symbol in sorted(set(tracked) | set(live)):
            async with self._locks.hold(PositionKey(owner_id, exchange_id, symbol)):
                await self._sync_symbol(owner_id, exchange_id, symbol, live.get(symbol), result)

        if result.changed:
            logger.info(
                f"Synced {owner_id}/{exchange_id}: removed={result.removed} "
                f"adopted={result.adopted} corrected={result.corrected}"
            )
        return result

    async def _sync_symbol(self, owner_id, exchange_id, symbol, live, result: SyncResult) -> None:
        # Re-read under the lock; the executor may have changed it
        current = self._tracker.get(owner_id, exchange_id, symbol)

        if live is None:
            if current is not None:
                self._tracker.remove(owner_id, exchange_id, symbol)
                if self._store is not None:
                    await self._store.delete_position(owner_id, exchange_id, symbol)
                result.removed.append(symbol)
            return

        if current is None:
            position = Position(
                owner_id=owner_id,
                exchange_id=exchange_id,
                symbol=symbol,
                side=live.side,
                quantity=live.quantity,
                entry_price=live.entry_price,
                notional=live.entry_price * live.quantity,
                current_price=live.mark_price,
            )
            self._tracker.add(position)
            if self._store is not None:
                await self._store.save_position(position)
            result.adopted.append(symbol)
            return

        if current.side is not live.side or current.quantity != live.quantity:
            current.side = live.side
            current.quantity = live.quantity
            current.entry_price = live.entry_price or current.entry_price
            current.notional = current.entry_price * live.quantity
            current.last_update = utc_now()
            if self._store is not None:
                await self._store.save_position(current)
            result.corrected.append(symbol)

    async def sync_accounts(self, accounts: Iterable[Tuple[str, str]]) -> List[SyncResult]:
        """Sync every distinct (owner, exchange) pair in `accounts`, in order."""
        results = []
        for owner_id, exchange_id in dict.fromkeys(accounts):
            result = await self.sync(owner_id, exchange_id)
            if result.error:
                logger.warning(f"Sync of {owner_id}/{exchange_id} failed: {result.error}")
            results.append(result)
        return results


__all__ = ["PositionReconciler", "UpdateResult", "SyncResult", "AdapterProvider"]
