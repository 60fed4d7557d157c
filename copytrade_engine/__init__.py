"""
Copy-Trade Engine.

============================================================
PURPOSE
============================================================
Signal-driven order execution and copy trading.

Receives normalized trade intents, executes them against
heterogeneous broker APIs with protective bracket orders,
tracks the resulting positions and replicates leader intents to
subscribed followers behind margin and drawdown gates.

============================================================
COMPONENTS
============================================================
- adapters/: exchange adapter contract and brokers
- credentials: TTL-cached credential resolution
- position_tracker / reconciler: position ledger and its sync
- executor: per-account trade execution
- fanout / fees: follower replication and fee accounting
- service: wiring and lifecycle

============================================================
"""

from .config import EngineConfig, ExecutorConfig, FanOutConfig, ReconcilerConfig
from .credentials import CredentialResolver, CredentialStore
from .errors import (
    CredentialNotFound,
    DrawdownExceeded,
    EngineError,
    InsufficientMargin,
    ReversalFailed,
    ValidationError,
)
from .executor import TradeExecutor
from .fanout import CopyTradingEngine, FanOutSummary, FollowerOutcome, FollowerStatus
from .fees import FeeBreakdown, apply_closed_trade, split_fee
from .intent import TradeIntent
from .key_lock import KeyedLock
from .notifications import Notification, NotificationDispatcher, TelegramNotifier
from .position_tracker import PositionTracker
from .reconciler import PositionReconciler, SyncResult, UpdateResult
from .repository import CopyTradingStore, ExecutionStore, TradingRepository
from .service import ExecutionService
from .types import (
    CopiedTrade,
    CopyRelationship,
    Credential,
    Environment,
    ExecutionAction,
    ExecutionResult,
    ExitReason,
    IntentAction,
    OrderSide,
    Position,
    PositionKey,
    PositionSide,
    RelationshipStatus,
    TradeRecord,
)


__all__ = [
    # Config
    "EngineConfig",
    "ExecutorConfig",
    "FanOutConfig",
    "ReconcilerConfig",
    # Errors
    "CredentialNotFound",
    "DrawdownExceeded",
    "EngineError",
    "InsufficientMargin",
    "ReversalFailed",
    "ValidationError",
    # Components
    "CopyTradingEngine",
    "CredentialResolver",
    "CredentialStore",
    "ExecutionService",
    "KeyedLock",
    "NotificationDispatcher",
    "PositionReconciler",
    "PositionTracker",
    "TelegramNotifier",
    "TradeExecutor",
    "TradingRepository",
    "CopyTradingStore",
    "ExecutionStore",
    # Results
    "FanOutSummary",
    "FeeBreakdown",
    "FollowerOutcome",
    "FollowerStatus",
    "Notification",
    "SyncResult",
    "UpdateResult",
    "apply_closed_trade",
    "split_fee",
    # Types
    "CopiedTrade",
    "CopyRelationship",
    "Credential",
    "Environment",
    "ExecutionAction",
    "ExecutionResult",
    "ExitReason",
    "IntentAction",
    "OrderSide",
    "Position",
    "PositionKey",
    "PositionSide",
    "RelationshipStatus",
    "TradeIntent",
    "TradeRecord",
]
