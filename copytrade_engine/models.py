"""
Copy-Trade Engine ORM Models.

============================================================
PURPOSE
============================================================
Tables backing the engine's persistence.

============================================================
MODELS
============================================================
- PositionRow: open positions, unique per (owner, exchange, symbol)
- TradeRecordRow: closed trades (append-only)
- CopyRelationshipRow: follower subscriptions and equity curve
- CopiedTradeRow: one row per replication attempt
- ExchangeCredentialRow: broker credentials per account

============================================================
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import Boolean, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from storage.models.base import Base, TimestampMixin, new_id


class PositionRow(Base, TimestampMixin):
    """
    Open position snapshot.

    Upserted by the executor and the reconciler, deleted on close.
    """

    __tablename__ = "positions"
    __table_args__ = (
        UniqueConstraint("owner_id", "exchange_id", "symbol", name="uq_positions_key"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)

    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    exchange_id: Mapped[str] = mapped_column(String(32), nullable=False)
    symbol: Mapped[str] = mapped_column(String(40), nullable=False)

    side: Mapped[str] = mapped_column(String(10), nullable=False, comment="LONG or SHORT")
    quantity: Mapped[Decimal] = mapped_column(nullable=False)
    entry_price: Mapped[Decimal] = mapped_column(nullable=False)
    notional: Mapped[Decimal] = mapped_column(nullable=False, comment="Quote value at entry")
    entry_time: Mapped[datetime] = mapped_column(nullable=False)

    stop_order_id: Mapped[Optional[str]] = mapped_column(String(64))
    take_profit_order_id: Mapped[Optional[str]] = mapped_column(String(64))
    stop_loss_percent: Mapped[Optional[Decimal]]
    take_profit_percent: Mapped[Optional[Decimal]]

    current_price: Mapped[Optional[Decimal]]
    unrealized_pnl: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    unrealized_pnl_percent: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    last_update: Mapped[Optional[datetime]]

    strategy_id: Mapped[Optional[str]] = mapped_column(String(64))
    copy_relationship_id: Mapped[Optional[str]] = mapped_column(String(36))


class TradeRecordRow(Base, TimestampMixin):
    """Closed trade. Written once, never updated."""

    __tablename__ = "trade_records"
    __table_args__ = (
        Index("ix_trade_records_owner_exit", "owner_id", "exit_time"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)

    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    exchange_id: Mapped[str] = mapped_column(String(32), nullable=False)
    symbol: Mapped[str] = mapped_column(String(40), nullable=False)
    side: Mapped[str] = mapped_column(String(10), nullable=False)

    entry_price: Mapped[Decimal] = mapped_column(nullable=False)
    exit_price: Mapped[Decimal] = mapped_column(nullable=False)
    quantity: Mapped[Decimal] = mapped_column(nullable=False)
    notional: Mapped[Decimal] = mapped_column(nullable=False)
    realized_pnl: Mapped[Decimal] = mapped_column(nullable=False)
    realized_pnl_percent: Mapped[Decimal] = mapped_column(nullable=False)

    exit_reason: Mapped[str] = mapped_column(String(20), nullable=False)
    entry_time: Mapped[datetime] = mapped_column(nullable=False)
    exit_time: Mapped[datetime] = mapped_column(nullable=False)

    strategy_id: Mapped[Optional[str]] = mapped_column(String(64))
    copy_relationship_id: Mapped[Optional[str]] = mapped_column(String(36), index=True)
    asset_class: Mapped[str] = mapped_column(String(16), nullable=False)
    close_order_id: Mapped[Optional[str]] = mapped_column(String(64))
    partial: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class CopyRelationshipRow(Base, TimestampMixin):
    """Follower subscription to a leader (optionally one strategy)."""

    __tablename__ = "copy_relationships"
    __table_args__ = (
        Index("ix_copy_relationships_leader", "leader_id", "status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)

    follower_id: Mapped[str] = mapped_column(String(64), nullable=False)
    leader_id: Mapped[str] = mapped_column(String(64), nullable=False)
    strategy_id: Mapped[Optional[str]] = mapped_column(String(64))

    allocation_percent: Mapped[Decimal] = mapped_column(nullable=False)
    max_drawdown_stop: Mapped[Decimal] = mapped_column(nullable=False)
    follower_exchange_id: Mapped[str] = mapped_column(String(32), nullable=False, default="binance")
    follower_environment: Mapped[str] = mapped_column(String(16), nullable=False, default="production")

    initial_equity: Mapped[Optional[Decimal]]
    realized_pnl: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    high_water_mark: Mapped[Optional[Decimal]]
    current_drawdown: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="ACTIVE")
    paused_at: Mapped[Optional[datetime]]
    override_fee_percent: Mapped[Optional[Decimal]]


class CopiedTradeRow(Base, TimestampMixin):
    """
    One replication attempt, whatever its outcome.

    Settlement fields are filled in when the follower's copied
    position closes.
    """

    __tablename__ = "copied_trades"
    __table_args__ = (
        Index("ix_copied_trades_relationship_symbol", "relationship_id", "symbol"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)

    relationship_id: Mapped[str] = mapped_column(String(36), nullable=False)
    follower_id: Mapped[str] = mapped_column(String(64), nullable=False)
    leader_id: Mapped[str] = mapped_column(String(64), nullable=False)
    strategy_id: Mapped[Optional[str]] = mapped_column(String(64))
    symbol: Mapped[str] = mapped_column(String(40), nullable=False)
    action: Mapped[str] = mapped_column(String(10), nullable=False)

    leader_notional: Mapped[Decimal] = mapped_column(nullable=False)
    follower_notional: Mapped[Decimal] = mapped_column(nullable=False)
    leader_trade_ref: Mapped[Optional[str]] = mapped_column(String(64))
    follower_order_id: Mapped[Optional[str]] = mapped_column(String(64))
    follower_trade_ref: Mapped[Optional[str]] = mapped_column(String(64))

    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text)

    realized_pnl: Mapped[Optional[Decimal]]
    realized_pnl_percent: Mapped[Optional[Decimal]]
    fee_eligible_profit: Mapped[Optional[Decimal]]
    override_fee: Mapped[Optional[Decimal]]
    platform_fee: Mapped[Optional[Decimal]]
    leader_fee: Mapped[Optional[Decimal]]

    entry_time: Mapped[datetime] = mapped_column(nullable=False)
    exit_time: Mapped[Optional[datetime]]


class ExchangeCredentialRow(Base, TimestampMixin):
    """Broker credentials for one (owner, exchange, environment)."""

    __tablename__ = "exchange_credentials"
    __table_args__ = (
        UniqueConstraint("owner_id", "exchange_id", "environment", name="uq_exchange_credentials_account"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)

    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    exchange_id: Mapped[str] = mapped_column(String(32), nullable=False)
    environment: Mapped[str] = mapped_column(String(16), nullable=False, default="production")

    api_key: Mapped[Optional[str]] = mapped_column(Text)
    api_secret: Mapped[Optional[str]] = mapped_column(Text)
    passphrase: Mapped[Optional[str]] = mapped_column(Text)
    access_token: Mapped[Optional[str]] = mapped_column(Text)
    access_token_secret: Mapped[Optional[str]] = mapped_column(Text)
    refresh_token: Mapped[Optional[str]] = mapped_column(Text)
    account_id: Mapped[Optional[str]] = mapped_column(String(64))
    pin: Mapped[Optional[str]] = mapped_column(String(32))
    label: Mapped[Optional[str]] = mapped_column(String(100))
    extra: Mapped[Dict[str, Any]] = mapped_column(nullable=False, default=dict)
    token_issued_at: Mapped[Optional[datetime]]

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
