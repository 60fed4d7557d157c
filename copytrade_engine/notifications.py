"""
Copy-Trade Engine - Notifications.

============================================================
PURPOSE
============================================================
Fire-and-forget delivery of trading events.

NotificationDispatcher turns each event into a detached asyncio
task so the executor and the fan-out engine never wait on (or
fail because of) a notification sink. Pending tasks are tracked
and drained on shutdown.

TelegramNotifier is the default sink.

EVENTS:
- Position opened / closed
- Execution rejected
- Copy-trading fee computed (handed to billing)
- Relationship auto-paused on drawdown

============================================================
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Set

import aiohttp

from .config import NotificationConfig
from .types import CopiedTrade, CopyRelationship, ExecutionResult, Position, TradeRecord, utc_now


logger = logging.getLogger(__name__)


# ============================================================
# EVENTS
# ============================================================

class Severity(Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class EventType(Enum):
    POSITION_OPENED = "POSITION_OPENED"
    POSITION_CLOSED = "POSITION_CLOSED"
    EXECUTION_REJECTED = "EXECUTION_REJECTED"
    COPY_FEE = "COPY_FEE"
    RELATIONSHIP_PAUSED = "RELATIONSHIP_PAUSED"


@dataclass
class Notification:
    """A single event to deliver."""

    event_type: EventType
    severity: Severity
    message: str

    owner_id: Optional[str] = None
    symbol: Optional[str] = None

    details: Dict[str, Any] = field(default_factory=dict)
    """Additional key/value lines."""

    timestamp: datetime = field(default_factory=utc_now)


class NotificationSink(Protocol):
    async def send(self, notification: Notification) -> bool:
        ...


# ============================================================
# DISPATCHER
# ============================================================

class NotificationDispatcher:
    """
    Schedules notifications as detached tasks.

    Sink failures are logged and dropped.
    """

    def __init__(self, sinks: Optional[List[NotificationSink]] = None, config: Optional[NotificationConfig] = None):
        self._sinks: List[NotificationSink] = list(sinks or [])
        self._config = config or NotificationConfig()
        self._pending: Set[asyncio.Task] = set()

    def add_sink(self, sink: NotificationSink) -> None:
        self._sinks.append(sink)

    @property
    def pending(self) -> int:
        return len(self._pending)

    def dispatch(self, notification: Notification) -> Optional[asyncio.Task]:
        if not self._sinks:
            logger.debug(f"No notification sinks, dropping {notification.event_type.value}")
            return None
        task = asyncio.create_task(self._deliver(notification))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _deliver(self, notification: Notification) -> None:
        for sink in self._sinks:
            try:
                await sink.send(notification)
            except Exception as e:
                logger.error(f"Notification sink {type(sink).__name__} failed: {e}")

    async def drain(self, timeout: Optional[float] = 10.0) -> None:
        """Wait for pending deliveries; cancel whatever is left after `timeout`."""
        if not self._pending:
            return
        tasks = list(self._pending)
        done, not_done = await asyncio.wait(tasks, timeout=timeout)
        for task in not_done:
            task.cancel()
        if not_done:
            logger.warning(f"Cancelled {len(not_done)} undelivered notification(s)")

    # --------------------------------------------------------
    # EVENT HELPERS
    # --------------------------------------------------------

    def position_opened(self, position: Position) -> Optional[asyncio.Task]:
        if not self._config.notify_on_open:
            return None
        return self.dispatch(Notification(
            event_type=EventType.POSITION_OPENED,
            severity=Severity.INFO,
            message=(
                f"Opened {position.side.value} {position.quantity} {position.symbol} "
                f"@ {position.entry_price} on {position.exchange_id}"
            ),
            owner_id=position.owner_id,
            symbol=position.symbol,
            details={
                "notional": f"{position.notional:.2f}",
                "stop_order": position.stop_order_id or "-",
                "take_profit_order": position.take_profit_order_id or "-",
            },
        ))

    def position_closed(self, trade: TradeRecord) -> Optional[asyncio.Task]:
        if not self._config.notify_on_close:
            return None
        outcome = "profit" if trade.realized_pnl >= 0 else "loss"
        return self.dispatch(Notification(
            event_type=EventType.POSITION_CLOSED,
            severity=Severity.INFO,
            message=(
                f"Closed {trade.side.value} {trade.quantity} {trade.symbol} @ {trade.exit_price} "
                f"with {outcome} {trade.realized_pnl:.2f} ({trade.realized_pnl_percent:.2f}%)"
            ),
            owner_id=trade.owner_id,
            symbol=trade.symbol,
            details={"reason": trade.exit_reason.value, "partial": trade.partial},
        ))

    def execution_rejected(
        self,
        owner_id: str,
        exchange_id: str,
        symbol: str,
        result: ExecutionResult,
    ) -> Optional[asyncio.Task]:
        if not self._config.notify_on_rejection:
            return None
        return self.dispatch(Notification(
            event_type=EventType.EXECUTION_REJECTED,
            severity=Severity.WARNING,
            message=result.message or "Execution rejected",
            owner_id=owner_id,
            symbol=symbol,
            details={"exchange": exchange_id, "code": result.error_code or "-"},
        ))

    def copy_fee(self, relationship: CopyRelationship, trade: CopiedTrade) -> Optional[asyncio.Task]:
        return self.dispatch(Notification(
            event_type=EventType.COPY_FEE,
            severity=Severity.INFO,
            message=f"Copy-trading fee {trade.override_fee or Decimal('0'):.2f} on {trade.symbol}",
            owner_id=relationship.follower_id,
            symbol=trade.symbol,
            details={
                "relationship": relationship.id,
                "leader": relationship.leader_id,
                "fee_eligible_profit": f"{trade.fee_eligible_profit or Decimal('0'):.2f}",
                "platform_fee": f"{trade.platform_fee or Decimal('0'):.2f}",
                "leader_fee": f"{trade.leader_fee or Decimal('0'):.2f}",
            },
        ))

    def relationship_paused(self, relationship: CopyRelationship) -> Optional[asyncio.Task]:
        return self.dispatch(Notification(
            event_type=EventType.RELATIONSHIP_PAUSED,
            severity=Severity.WARNING,
            message=(
                f"Copy trading of {relationship.leader_id} paused: drawdown "
                f"{relationship.current_drawdown:.2f}% exceeds {relationship.max_drawdown_stop}%"
            ),
            owner_id=relationship.follower_id,
            details={"relationship": relationship.id},
        ))


# ============================================================
# TELEGRAM
# ============================================================

_SEVERITY_ORDER = [Severity.INFO, Severity.WARNING, Severity.ERROR, Severity.CRITICAL]

_SEVERITY_EMOJI = {
    Severity.INFO: "ℹ️",
    Severity.WARNING: "⚠️",
    Severity.ERROR: "❌",
    Severity.CRITICAL: "🚨",
}


class TelegramNotifier:
    """
    Sends notifications through the Telegram Bot API.

    Without a bot token and chat id, messages are only logged.
    """

    API_URL = "https://api.telegram.org/bot{token}/sendMessage"

    def __init__(self, config: NotificationConfig, session: Optional[aiohttp.ClientSession] = None):
        self._config = config
        self._session = session
        self._owns_session = session is None
        self._last_sent: Optional[float] = None
        self._lock = asyncio.Lock()

    @property
    def is_configured(self) -> bool:
        return bool(self._config.telegram_enabled and self._config.telegram_bot_token and self._config.telegram_chat_id)

    def should_send(self, notification: Notification) -> bool:
        try:
            threshold = Severity(self._config.min_severity.upper())
        except ValueError:
            logger.warning(f"Unknown TELEGRAM_MIN_SEVERITY {self._config.min_severity!r}, sending everything")
            return True
        return _SEVERITY_ORDER.index(notification.severity) >= _SEVERITY_ORDER.index(threshold)

    async def send(self, notification: Notification) -> bool:
        if not self.should_send(notification):
            return False

        if not self.is_configured:
            logger.info(f"[{notification.event_type.value}] {notification.message}")
            return False

        async with self._lock:
            # Rate limit
            if self._last_sent is not None:
                wait = self._config.min_interval_seconds - (time.monotonic() - self._last_sent)
                if wait > 0:
                    await asyncio.sleep(wait)

            if self._session is None:
                self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=10))

            url = self.API_URL.format(token=self._config.telegram_bot_token)
            payload = {
                "chat_id": self._config.telegram_chat_id,
                "text": self.format_message(notification),
                "parse_mode": "HTML",
            }
            try:
                async with self._session.post(url, json=payload) as response:
                    self._last_sent = time.monotonic()
                    if response.status == 200:
                        return True
                    body = await response.text()
                    logger.error(f"Telegram API error {response.status}: {body}")
                    return False
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.error(f"Failed to send Telegram notification: {e}")
                return False

    @staticmethod
    def format_message(notification: Notification) -> str:
        emoji = _SEVERITY_EMOJI.get(notification.severity, "📢")
        lines = [
            f"{emoji} <b>{notification.event_type.value}</b>",
            f"<b>Time:</b> {notification.timestamp.strftime('%Y-%m-%d %H:%M:%S')} UTC",
            "",
            notification.message,
        ]
        if notification.owner_id:
            lines.append(f"<b>Account:</b> {notification.owner_id}")
        if notification.symbol:
            lines.append(f"<b>Symbol:</b> {notification.symbol}")
        if notification.details:
            lines.append("")
            for key, value in notification.details.items():
                lines.append(f"  • {key}: {value}")
        return "\n".join(lines)

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None
