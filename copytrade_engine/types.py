"""
Copy-Trade Engine - Core Types.

============================================================
PURPOSE
============================================================
Data model shared by the adapters, the executor, the position
tracker and the copy-trading fan-out engine.

All money and quantity figures are Decimal. Symbols are always
in canonical form (BASE/QUOTE or BASE/QUOTE:SETTLE) once they
leave an adapter.

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================
# ENUMS
# ============================================================

class OrderSide(Enum):
    """Order direction."""
    BUY = "buy"
    SELL = "sell"

    @property
    def opposite(self) -> "OrderSide":
        return OrderSide.SELL if self is OrderSide.BUY else OrderSide.BUY


class PositionSide(Enum):
    """Position direction."""
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def entry_side(self) -> OrderSide:
        """Order side that opens a position of this direction."""
        return OrderSide.BUY if self is PositionSide.LONG else OrderSide.SELL

    @property
    def exit_side(self) -> OrderSide:
        """Order side that reduces a position of this direction."""
        return self.entry_side.opposite

    @classmethod
    def from_order_side(cls, side: OrderSide) -> "PositionSide":
        return cls.LONG if side is OrderSide.BUY else cls.SHORT


class OrderType(Enum):
    MARKET = "market"
    LIMIT = "limit"


class IntentAction(Enum):
    """Action requested by an inbound trade intent."""
    BUY = "buy"
    SELL = "sell"
    CLOSE = "close"


class ExecutionAction(Enum):
    """What the executor ended up doing."""
    OPENED = "opened"
    CLOSED = "closed"
    SKIPPED = "skipped"
    REJECTED = "rejected"


class OrderStatus(Enum):
    NEW = "NEW"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELED = "CANCELED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"
    UNKNOWN = "UNKNOWN"


class ExitReason(Enum):
    MANUAL = "MANUAL"
    STOP_LOSS = "STOP_LOSS"
    TAKE_PROFIT = "TAKE_PROFIT"
    REVERSAL = "REVERSAL"


class RelationshipStatus(Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    STOPPED = "STOPPED"


class AssetClass(Enum):
    CRYPTO = "crypto"
    STOCKS = "stocks"
    OPTIONS = "options"
    FUTURES = "futures"
    FOREX = "forex"
    CFD = "cfd"


class AuthScheme(Enum):
    HMAC = "hmac"
    ED25519 = "ed25519"
    OAUTH1 = "oauth1"
    OAUTH2 = "oauth2"
    SESSION = "session"
    NONE = "none"


class Environment(Enum):
    PRODUCTION = "production"
    SANDBOX = "sandbox"


# ============================================================
# EXCHANGE VIEWS
# ============================================================

@dataclass(frozen=True)
class Ticker:
    """Current quote for a symbol."""
    symbol: str
    last: Decimal
    bid: Optional[Decimal] = None
    ask: Optional[Decimal] = None
    timestamp: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class Balance:
    asset: str
    available: Decimal
    total: Decimal


@dataclass(frozen=True)
class ExchangePosition:
    """Live position as reported by an exchange."""
    symbol: str
    side: PositionSide
    quantity: Decimal
    entry_price: Decimal
    mark_price: Optional[Decimal] = None
    unrealized_pnl: Optional[Decimal] = None


@dataclass
class OrderResult:
    """Outcome of a single order placement or query."""

    symbol: str
    side: OrderSide
    quantity: Decimal
    status: OrderStatus
    order_id: Optional[str] = None
    client_order_id: Optional[str] = None
    price: Optional[Decimal] = None
    filled_quantity: Decimal = Decimal("0")
    average_price: Optional[Decimal] = None
    error: Optional[str] = None

    @property
    def is_success(self) -> bool:
        return self.status not in (OrderStatus.REJECTED, OrderStatus.EXPIRED) and self.error is None

    @property
    def fill_price(self) -> Optional[Decimal]:
        """Best known execution price of the order."""
        return self.average_price or self.price


# ============================================================
# POSITIONS AND TRADES
# ============================================================

class PositionKey(NamedTuple):
    """Identity of a tracked position."""
    owner_id: str
    exchange_id: str
    symbol: str


@dataclass
class Position:
    """
    Open position tracked by the engine.

    At most one exists per (owner, exchange, symbol).
    """

    owner_id: str
    exchange_id: str
    symbol: str
    side: PositionSide
    quantity: Decimal
    entry_price: Decimal
    notional: Decimal
    """Quote-currency value at entry."""

    entry_time: datetime = field(default_factory=utc_now)
    stop_order_id: Optional[str] = None
    take_profit_order_id: Optional[str] = None
    stop_loss_percent: Optional[Decimal] = None
    take_profit_percent: Optional[Decimal] = None

    # Maintained by the reconciler
    current_price: Optional[Decimal] = None
    unrealized_pnl: Decimal = Decimal("0")
    unrealized_pnl_percent: Decimal = Decimal("0")
    last_update: datetime = field(default_factory=utc_now)

    strategy_id: Optional[str] = None
    copy_relationship_id: Optional[str] = None
    """Set when the position was opened by copy-trading fan-out."""

    @property
    def key(self) -> PositionKey:
        return PositionKey(self.owner_id, self.exchange_id, self.symbol)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner_id": self.owner_id,
            "exchange_id": self.exchange_id,
            "symbol": self.symbol,
            "side": self.side.value,
            "quantity": str(self.quantity),
            "entry_price": str(self.entry_price),
            "notional": str(self.notional),
            "entry_time": self.entry_time.isoformat(),
            "stop_order_id": self.stop_order_id,
            "take_profit_order_id": self.take_profit_order_id,
            "current_price": str(self.current_price) if self.current_price is not None else None,
            "unrealized_pnl": str(self.unrealized_pnl),
            "unrealized_pnl_percent": str(self.unrealized_pnl_percent),
            "strategy_id": self.strategy_id,
            "copy_relationship_id": self.copy_relationship_id,
        }


@dataclass(frozen=True)
class PnL:
    usd: Decimal
    percent: Decimal


@dataclass(frozen=True)
class TradeRecord:
    """Closed (or partially closed) trade. Written exactly once per close."""

    owner_id: str
    exchange_id: str
    symbol: str
    side: PositionSide
    entry_price: Decimal
    exit_price: Decimal
    quantity: Decimal
    notional: Decimal
    realized_pnl: Decimal
    realized_pnl_percent: Decimal
    exit_reason: ExitReason
    entry_time: datetime
    exit_time: datetime = field(default_factory=utc_now)
    strategy_id: Optional[str] = None
    copy_relationship_id: Optional[str] = None
    asset_class: AssetClass = AssetClass.CRYPTO
    close_order_id: Optional[str] = None
    partial: bool = False


# ============================================================
# COPY TRADING
# ============================================================

@dataclass
class CopyRelationship:
    """Subscription of a follower to a leader strategy."""

    id: str
    follower_id: str
    leader_id: str
    strategy_id: Optional[str]
    allocation_percent: Decimal
    """Share of the leader's notional replicated for the follower."""

    max_drawdown_stop: Decimal
    """Drawdown percent at which the relationship auto-pauses."""

    follower_exchange_id: str = "binance"
    follower_environment: Environment = Environment.PRODUCTION
    initial_equity: Optional[Decimal] = None
    realized_pnl: Decimal = Decimal("0")
    high_water_mark: Optional[Decimal] = None
    current_drawdown: Decimal = Decimal("0")
    status: RelationshipStatus = RelationshipStatus.ACTIVE
    paused_at: Optional[datetime] = None
    override_fee_percent: Optional[Decimal] = None

    @property
    def is_active(self) -> bool:
        return self.status is RelationshipStatus.ACTIVE

    @property
    def equity(self) -> Optional[Decimal]:
        if self.initial_equity is None:
            return None
        return self.initial_equity + self.realized_pnl


@dataclass
class CopiedTrade:
    """One replication attempt for one follower, successful or not."""

    relationship_id: str
    follower_id: str
    leader_id: str
    symbol: str
    action: IntentAction
    leader_notional: Decimal
    follower_notional: Decimal
    success: bool
    strategy_id: Optional[str] = None
    leader_trade_ref: Optional[str] = None
    follower_order_id: Optional[str] = None
    follower_trade_ref: Optional[str] = None
    reason: Optional[str] = None
    realized_pnl: Optional[Decimal] = None
    realized_pnl_percent: Optional[Decimal] = None
    fee_eligible_profit: Optional[Decimal] = None
    override_fee: Optional[Decimal] = None
    platform_fee: Optional[Decimal] = None
    leader_fee: Optional[Decimal] = None
    entry_time: datetime = field(default_factory=utc_now)
    exit_time: Optional[datetime] = None
    id: Optional[str] = None


@dataclass
class Credential:
    """Exchange credentials for one account. Secrets never leave the adapters."""

    owner_id: str
    exchange_id: str
    environment: Environment = Environment.PRODUCTION
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    passphrase: Optional[str] = None
    access_token: Optional[str] = None
    access_token_secret: Optional[str] = None
    refresh_token: Optional[str] = None
    account_id: Optional[str] = None
    pin: Optional[str] = None
    label: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)
    token_issued_at: Optional[datetime] = None

    @property
    def is_sandbox(self) -> bool:
        return self.environment is Environment.SANDBOX


# ============================================================
# EXECUTION RESULT
# ============================================================

@dataclass
class ExecutionResult:
    """Outcome of one trade intent."""

    success: bool
    action: ExecutionAction
    message: Optional[str] = None
    position: Optional[Position] = None
    pnl: Optional[PnL] = None
    warnings: List[str] = field(default_factory=list)
    error_code: Optional[str] = None
    order: Optional[OrderResult] = None
    trade: Optional[TradeRecord] = None

    @classmethod
    def rejected(cls, message: str, error_code: Optional[str] = None) -> "ExecutionResult":
        return cls(success=False, action=ExecutionAction.REJECTED, message=message, error_code=error_code)

    @classmethod
    def skipped(cls, message: str) -> "ExecutionResult":
        return cls(success=False, action=ExecutionAction.SKIPPED, message=message)

    @property
    def triggers_fan_out(self) -> bool:
        return self.success and self.action in (ExecutionAction.OPENED, ExecutionAction.CLOSED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "action": self.action.value,
            "message": self.message,
            "position": self.position.to_dict() if self.position else None,
            "pnl": {"usd": str(self.pnl.usd), "percent": str(self.pnl.percent)} if self.pnl else None,
            "warnings": list(self.warnings),
            "error_code": self.error_code,
        }
