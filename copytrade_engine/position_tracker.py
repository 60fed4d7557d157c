"""
Copy-Trade Engine - Position Tracker.

============================================================
PURPOSE
============================================================
In-memory ledger of open positions keyed by
(owner, exchange, symbol). Synchronous and free of I/O; callers
serialize writes per key through the KeyedLock.

At most one position exists per key: adding to an occupied key
replaces the entry.

============================================================
"""

import logging
from collections import defaultdict
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .types import Position, PositionKey, utc_now


logger = logging.getLogger(__name__)


class PositionTracker:
    """Open positions by key."""

    def __init__(self):
        self._positions: Dict[PositionKey, Position] = {}

    def has(self, owner_id: str, exchange_id: str, symbol: str) -> bool:
        return PositionKey(owner_id, exchange_id, symbol) in self._positions

    def get(self, owner_id: str, exchange_id: str, symbol: str) -> Optional[Position]:
        return self._positions.get(PositionKey(owner_id, exchange_id, symbol))

    def add(self, position: Position) -> None:
        if position.key in self._positions:
            logger.warning(f"Replacing tracked position {position.key}")
        self._positions[position.key] = position

    def remove(self, owner_id: str, exchange_id: str, symbol: str) -> Optional[Position]:
        return self._positions.pop(PositionKey(owner_id, exchange_id, symbol), None)

    def update_quantity(self, owner_id: str, exchange_id: str, symbol: str, quantity: Decimal) -> Optional[Position]:
        """Set a new size after a partial close, keeping notional proportional."""
        position = self.get(owner_id, exchange_id, symbol)
        if position is None:
            return None
        if position.quantity > 0:
            position.notional = position.notional * quantity / position.quantity
        position.quantity = quantity
        position.last_update = utc_now()
        return position

    def list_all(self) -> List[Position]:
        return list(self._positions.values())

    def list_for(self, owner_id: str, exchange_id: str) -> List[Position]:
        return [
            p for p in self._positions.values()
            if p.owner_id == owner_id and p.exchange_id == exchange_id
        ]

    def summary(self, owner_id: Optional[str] = None, exchange_id: Optional[str] = None) -> Dict[str, Any]:
        """Count, per-exchange breakdown, total notional and unrealized P&L."""
        positions = [
            p for p in self._positions.values()
            if (owner_id is None or p.owner_id == owner_id)
            and (exchange_id is None or p.exchange_id == exchange_id)
        ]
        by_exchange: Dict[str, int] = defaultdict(int)
        for position in positions:
            by_exchange[position.exchange_id] += 1
        return {
            "count": len(positions),
            "by_exchange": dict(by_exchange),
            "total_notional": sum((p.notional for p in positions), Decimal("0")),
            "total_unrealized_pnl": sum((p.unrealized_pnl for p in positions), Decimal("0")),
            "positions": [p.to_dict() for p in positions],
        }

    def clear(self) -> None:
        self._positions.clear()

    def __len__(self) -> int:
        return len(self._positions)
