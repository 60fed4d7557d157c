"""
Copy-Trade Engine - Repository.

============================================================
PURPOSE
============================================================
Async persistence for positions, trade records, copy
relationships, copied trades and credentials.

Every operation opens its own AsyncSession and commits before
returning. Conversions between ORM rows and engine dataclasses
happen here and nowhere else.

============================================================
STORE PROTOCOLS
============================================================
- ExecutionStore: what the executor and reconciler need
- CopyTradingStore: what the fan-out engine needs
TradingRepository implements both; tests substitute mocks.

============================================================
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional, Protocol, Tuple

from sqlalchemy import delete, select

from storage.database import Database

from .models import (
    CopiedTradeRow,
    CopyRelationshipRow,
    ExchangeCredentialRow,
    PositionRow,
    TradeRecordRow,
)
from .types import (
    CopiedTrade,
    CopyRelationship,
    Credential,
    Environment,
    IntentAction,
    Position,
    PositionSide,
    RelationshipStatus,
    TradeRecord,
)


logger = logging.getLogger(__name__)


# ============================================================
# STORE PROTOCOLS
# ============================================================

class ExecutionStore(Protocol):
    async def save_position(self, position: Position) -> None:
        ...

    async def delete_position(self, owner_id: str, exchange_id: str, symbol: str) -> None:
        ...

    async def insert_trade_record(self, trade: TradeRecord) -> str:
        ...


class CopyTradingStore(Protocol):
    async def list_active_relationships(
        self, leader_id: str, strategy_id: Optional[str] = None
    ) -> List[CopyRelationship]:
        ...

    async def get_relationship(self, relationship_id: str) -> Optional[CopyRelationship]:
        ...

    async def update_relationship(self, relationship: CopyRelationship) -> None:
        ...

    async def insert_copied_trade(self, trade: CopiedTrade) -> str:
        ...

    async def find_open_copied_trade(self, relationship_id: str, symbol: str) -> Optional[CopiedTrade]:
        ...

    async def update_copied_trade(self, trade: CopiedTrade) -> None:
        ...


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; everything stored is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ============================================================
# REPOSITORY
# ============================================================

class TradingRepository:
    """
    SQLAlchemy implementation of the engine's stores.
    """

    def __init__(self, database: Database):
        self._db = database

    # --------------------------------------------------------
    # POSITIONS
    # --------------------------------------------------------

    async def save_position(self, position: Position) -> None:
        """Upsert by (owner, exchange, symbol)."""
        async with self._db.session() as session:
            row = await session.scalar(
                select(PositionRow).where(
                    PositionRow.owner_id == position.owner_id,
                    PositionRow.exchange_id == position.exchange_id,
                    PositionRow.symbol == position.symbol,
                )
            )
            if row is None:
                row = PositionRow(
                    owner_id=position.owner_id,
                    exchange_id=position.exchange_id,
                    symbol=position.symbol,
                )
                session.add(row)

            row.side = position.side.value
            row.quantity = position.quantity
            row.entry_price = position.entry_price
            row.notional = position.notional
            row.entry_time = position.entry_time
            row.stop_order_id = position.stop_order_id
            row.take_profit_order_id = position.take_profit_order_id
            row.stop_loss_percent = position.stop_loss_percent
            row.take_profit_percent = position.take_profit_percent
            row.current_price = position.current_price
            row.unrealized_pnl = position.unrealized_pnl
            row.unrealized_pnl_percent = position.unrealized_pnl_percent
            row.last_update = position.last_update
            row.strategy_id = position.strategy_id
            row.copy_relationship_id = position.copy_relationship_id
            await session.commit()

    async def delete_position(self, owner_id: str, exchange_id: str, symbol: str) -> None:
        async with self._db.session() as session:
            await session.execute(
                delete(PositionRow).where(
                    PositionRow.owner_id == owner_id,
                    PositionRow.exchange_id == exchange_id,
                    PositionRow.symbol == symbol,
                )
            )
            await session.commit()

    async def load_positions(self) -> List[Position]:
        async with self._db.session() as session:
            rows = (await session.scalars(select(PositionRow))).all()
            return [self._to_position(row) for row in rows]

    async def list_accounts(self) -> List[Tuple[str, str]]:
        """Distinct (owner, exchange) pairs with persisted positions or active credentials."""
        async with self._db.session() as session:
            positions = await session.execute(
                select(PositionRow.owner_id, PositionRow.exchange_id).distinct()
            )
            credentials = await session.execute(
                select(ExchangeCredentialRow.owner_id, ExchangeCredentialRow.exchange_id)
                .where(ExchangeCredentialRow.is_active.is_(True))
                .distinct()
            )
            accounts = {(owner, exchange) for owner, exchange in positions}
            accounts.update((owner, exchange) for owner, exchange in credentials)
            return sorted(accounts)

    @staticmethod
    def _to_position(row: PositionRow) -> Position:
        return Position(
            owner_id=row.owner_id,
            exchange_id=row.exchange_id,
            symbol=row.symbol,
            side=PositionSide(row.side),
            quantity=row.quantity,
            entry_price=row.entry_price,
            notional=row.notional,
            entry_time=_aware(row.entry_time),
            stop_order_id=row.stop_order_id,
            take_profit_order_id=row.take_profit_order_id,
            stop_loss_percent=row.stop_loss_percent,
            take_profit_percent=row.take_profit_percent,
            current_price=row.current_price,
            unrealized_pnl=row.unrealized_pnl,
            unrealized_pnl_percent=row.unrealized_pnl_percent,
            last_update=_aware(row.last_update) or _aware(row.entry_time),
            strategy_id=row.strategy_id,
            copy_relationship_id=row.copy_relationship_id,
        )

    # --------------------------------------------------------
    # TRADE RECORDS
    # --------------------------------------------------------

    async def insert_trade_record(self, trade: TradeRecord) -> str:
        async with self._db.session() as session:
            row = TradeRecordRow(
                owner_id=trade.owner_id,
                exchange_id=trade.exchange_id,
                symbol=trade.symbol,
                side=trade.side.value,
                entry_price=trade.entry_price,
                exit_price=trade.exit_price,
                quantity=trade.quantity,
                notional=trade.notional,
                realized_pnl=trade.realized_pnl,
                realized_pnl_percent=trade.realized_pnl_percent,
                exit_reason=trade.exit_reason.value,
                entry_time=trade.entry_time,
                exit_time=trade.exit_time,
                strategy_id=trade.strategy_id,
                copy_relationship_id=trade.copy_relationship_id,
                asset_class=trade.asset_class.value,
                close_order_id=trade.close_order_id,
                partial=trade.partial,
            )
            session.add(row)
            await session.commit()
            logger.debug(f"Trade record {row.id} stored for {trade.owner_id} {trade.symbol}")
            return row.id

    async def list_trade_records(self, owner_id: str, limit: int = 100) -> List[TradeRecordRow]:
        async with self._db.session() as session:
            rows = await session.scalars(
                select(TradeRecordRow)
                .where(TradeRecordRow.owner_id == owner_id)
                .order_by(TradeRecordRow.exit_time.desc())
                .limit(limit)
            )
            return list(rows.all())

    # --------------------------------------------------------
    # COPY RELATIONSHIPS
    # --------------------------------------------------------

    async def create_relationship(self, relationship: CopyRelationship) -> str:
        async with self._db.session() as session:
            row = CopyRelationshipRow(id=relationship.id)
            self._fill_relationship(row, relationship)
            session.add(row)
            await session.commit()
            return row.id

    async def list_active_relationships(
        self,
        leader_id: str,
        strategy_id: Optional[str] = None,
    ) -> List[CopyRelationship]:
        query = select(CopyRelationshipRow).where(
            CopyRelationshipRow.leader_id == leader_id,
            CopyRelationshipRow.status == RelationshipStatus.ACTIVE.value,
        )
        if strategy_id is not None:
            query = query.where(CopyRelationshipRow.strategy_id == strategy_id)
        async with self._db.session() as session:
            rows = (await session.scalars(query.order_by(CopyRelationshipRow.created_at))).all()
            return [self._to_relationship(row) for row in rows]

    async def get_relationship(self, relationship_id: str) -> Optional[CopyRelationship]:
        async with self._db.session() as session:
            row = await session.get(CopyRelationshipRow, relationship_id)
            return self._to_relationship(row) if row is not None else None

    async def update_relationship(self, relationship: CopyRelationship) -> None:
        async with self._db.session() as session:
            row = await session.get(CopyRelationshipRow, relationship.id)
            if row is None:
                logger.warning(f"Relationship {relationship.id} not found, not updated")
                return
            self._fill_relationship(row, relationship)
            await session.commit()

    @staticmethod
    def _fill_relationship(row: CopyRelationshipRow, relationship: CopyRelationship) -> None:
        row.follower_id = relationship.follower_id
        row.leader_id = relationship.leader_id
        row.strategy_id = relationship.strategy_id
        row.allocation_percent = relationship.allocation_percent
        row.max_drawdown_stop = relationship.max_drawdown_stop
        row.follower_exchange_id = relationship.follower_exchange_id
        row.follower_environment = relationship.follower_environment.value
        row.initial_equity = relationship.initial_equity
        row.realized_pnl = relationship.realized_pnl
        row.high_water_mark = relationship.high_water_mark
        row.current_drawdown = relationship.current_drawdown
        row.status = relationship.status.value
        row.paused_at = relationship.paused_at
        row.override_fee_percent = relationship.override_fee_percent

    @staticmethod
    def _to_relationship(row: CopyRelationshipRow) -> CopyRelationship:
        return CopyRelationship(
            id=row.id,
            follower_id=row.follower_id,
            leader_id=row.leader_id,
            strategy_id=row.strategy_id,
            allocation_percent=row.allocation_percent,
            max_drawdown_stop=row.max_drawdown_stop,
            follower_exchange_id=row.follower_exchange_id,
            follower_environment=Environment(row.follower_environment),
            initial_equity=row.initial_equity,
            realized_pnl=row.realized_pnl,
            high_water_mark=row.high_water_mark,
            current_drawdown=row.current_drawdown,
            status=RelationshipStatus(row.status),
            paused_at=_aware(row.paused_at),
            override_fee_percent=row.override_fee_percent,
        )

    # --------------------------------------------------------
    # COPIED TRADES
    # --------------------------------------------------------

    async def insert_copied_trade(self, trade: CopiedTrade) -> str:
        async with self._db.session() as session:
            row = CopiedTradeRow()
            self._fill_copied_trade(row, trade)
            session.add(row)
            await session.commit()
            return row.id

    async def find_open_copied_trade(self, relationship_id: str, symbol: str) -> Optional[CopiedTrade]:
        """Most recent successful opening copy on the symbol that is not settled yet."""
        async with self._db.session() as session:
            row = await session.scalar(
                select(CopiedTradeRow)
                .where(
                    CopiedTradeRow.relationship_id == relationship_id,
                    CopiedTradeRow.symbol == symbol,
                    CopiedTradeRow.success.is_(True),
                    CopiedTradeRow.action != IntentAction.CLOSE.value,
                    CopiedTradeRow.exit_time.is_(None),
                )
                .order_by(CopiedTradeRow.entry_time.desc())
                .limit(1)
            )
            return self._to_copied_trade(row) if row is not None else None

    async def update_copied_trade(self, trade: CopiedTrade) -> None:
        if trade.id is None:
            raise ValueError("Copied trade has no id")
        async with self._db.session() as session:
            row = await session.get(CopiedTradeRow, trade.id)
            if row is None:
                logger.warning(f"Copied trade {trade.id} not found, not updated")
                return
            self._fill_copied_trade(row, trade)
            await session.commit()

    async def list_copied_trades(self, relationship_id: str) -> List[CopiedTrade]:
        async with self._db.session() as session:
            rows = await session.scalars(
                select(CopiedTradeRow)
                .where(CopiedTradeRow.relationship_id == relationship_id)
                .order_by(CopiedTradeRow.entry_time)
            )
            return [self._to_copied_trade(row) for row in rows.all()]

    @staticmethod
    def _fill_copied_trade(row: CopiedTradeRow, trade: CopiedTrade) -> None:
        row.relationship_id = trade.relationship_id
        row.follower_id = trade.follower_id
        row.leader_id = trade.leader_id
        row.strategy_id = trade.strategy_id
        row.symbol = trade.symbol
        row.action = trade.action.value
        row.leader_notional = trade.leader_notional
        row.follower_notional = trade.follower_notional
        row.leader_trade_ref = trade.leader_trade_ref
        row.follower_order_id = trade.follower_order_id
        row.follower_trade_ref = trade.follower_trade_ref
        row.success = trade.success
        row.reason = trade.reason
        row.realized_pnl = trade.realized_pnl
        row.realized_pnl_percent = trade.realized_pnl_percent
        row.fee_eligible_profit = trade.fee_eligible_profit
        row.override_fee = trade.override_fee
        row.platform_fee = trade.platform_fee
        row.leader_fee = trade.leader_fee
        row.entry_time = trade.entry_time
        row.exit_time = trade.exit_time

    @staticmethod
    def _to_copied_trade(row: CopiedTradeRow) -> CopiedTrade:
        return CopiedTrade(
            id=row.id,
            relationship_id=row.relationship_id,
            follower_id=row.follower_id,
            leader_id=row.leader_id,
            strategy_id=row.strategy_id,
            symbol=row.symbol,
            action=IntentAction(row.action),
            leader_notional=row.leader_notional,
            follower_notional=row.follower_notional,
            leader_trade_ref=row.leader_trade_ref,
            follower_order_id=row.follower_order_id,
            follower_trade_ref=row.follower_trade_ref,
            success=row.success,
            reason=row.reason,
            realized_pnl=row.realized_pnl,
            realized_pnl_percent=row.realized_pnl_percent,
            fee_eligible_profit=row.fee_eligible_profit,
            override_fee=row.override_fee,
            platform_fee=row.platform_fee,
            leader_fee=row.leader_fee,
            entry_time=_aware(row.entry_time),
            exit_time=_aware(row.exit_time),
        )

    # --------------------------------------------------------
    # CREDENTIALS
    # --------------------------------------------------------

    async def save_credential(self, credential: Credential) -> None:
        """Upsert by (owner, exchange, environment)."""
        async with self._db.session() as session:
            row = await self._credential_row(session, credential.owner_id, credential.exchange_id,
                                             credential.environment)
            if row is None:
                row = ExchangeCredentialRow(
                    owner_id=credential.owner_id,
                    exchange_id=credential.exchange_id.lower(),
                    environment=credential.environment.value,
                )
                session.add(row)
            row.api_key = credential.api_key
            row.api_secret = credential.api_secret
            row.passphrase = credential.passphrase
            row.access_token = credential.access_token
            row.access_token_secret = credential.access_token_secret
            row.refresh_token = credential.refresh_token
            row.account_id = credential.account_id
            row.pin = credential.pin
            row.label = credential.label
            row.extra = dict(credential.extra)
            row.token_issued_at = credential.token_issued_at
            row.is_active = True
            await session.commit()

    async def fetch_credential(
        self,
        owner_id: str,
        exchange_id: str,
        environment: Environment,
    ) -> Optional[Credential]:
        async with self._db.session() as session:
            row = await self._credential_row(session, owner_id, exchange_id, environment)
            if row is None or not row.is_active:
                return None
            return Credential(
                owner_id=row.owner_id,
                exchange_id=row.exchange_id,
                environment=Environment(row.environment),
                api_key=row.api_key,
                api_secret=row.api_secret,
                passphrase=row.passphrase,
                access_token=row.access_token,
                access_token_secret=row.access_token_secret,
                refresh_token=row.refresh_token,
                account_id=row.account_id,
                pin=row.pin,
                label=row.label,
                extra=dict(row.extra or {}),
                token_issued_at=_aware(row.token_issued_at),
            )

    async def update_refresh_token(
        self,
        owner_id: str,
        exchange_id: str,
        environment: Environment,
        refresh_token: str,
    ) -> bool:
        """Persist a rotated OAuth2 refresh token."""
        async with self._db.session() as session:
            row = await self._credential_row(session, owner_id, exchange_id, environment)
            if row is None:
                logger.warning(f"No credential row to rotate for {owner_id}/{exchange_id}")
                return False
            row.refresh_token = refresh_token
            await session.commit()
            logger.info(f"Stored rotated refresh token for {owner_id}/{exchange_id}")
            return True

    @staticmethod
    async def _credential_row(session, owner_id: str, exchange_id: str, environment: Environment):
        return await session.scalar(
            select(ExchangeCredentialRow).where(
                ExchangeCredentialRow.owner_id == owner_id,
                ExchangeCredentialRow.exchange_id == exchange_id.lower(),
                ExchangeCredentialRow.environment == environment.value,
            )
        )


__all__ = [
    "CopyTradingStore",
    "ExecutionStore",
    "TradingRepository",
]
