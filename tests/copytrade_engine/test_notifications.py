"""
Notification Tests.

============================================================
PURPOSE
============================================================
Tests for detached notification dispatch and Telegram
formatting.

TEST CATEGORIES:
- Dispatcher tests: Detached delivery, sink failures, drain
- Event tests: Message content and config switches
- Telegram tests: Unconfigured fallback and formatting

============================================================
"""

import asyncio
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from copytrade_engine.config import NotificationConfig
from copytrade_engine.notifications import (
    EventType,
    Notification,
    NotificationDispatcher,
    Severity,
    TelegramNotifier,
)
from copytrade_engine.types import (
    CopiedTrade,
    CopyRelationship,
    ExecutionResult,
    ExitReason,
    IntentAction,
    Position,
    PositionSide,
    TradeRecord,
)


class RecordingSink:
    """Sink that stores what it receives."""

    def __init__(self, delay=0.0, error=None):
        self.received = []
        self.delay = delay
        self.error = error

    async def send(self, notification):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        self.received.append(notification)
        return True


def make_position():
    return Position(
        owner_id="alice",
        exchange_id="binance",
        symbol="BTC/USDT",
        side=PositionSide.LONG,
        quantity=Decimal("0.02"),
        entry_price=Decimal("50000"),
        notional=Decimal("1000"),
    )


def make_trade(pnl="20"):
    return TradeRecord(
        owner_id="alice",
        exchange_id="binance",
        symbol="BTC/USDT",
        side=PositionSide.LONG,
        entry_price=Decimal("50000"),
        exit_price=Decimal("51000"),
        quantity=Decimal("0.02"),
        notional=Decimal("1000"),
        realized_pnl=Decimal(pnl),
        realized_pnl_percent=Decimal("2"),
        exit_reason=ExitReason.MANUAL,
        entry_time=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )


def make_relationship():
    return CopyRelationship(
        id="rel-1",
        follower_id="f1",
        leader_id="leader",
        strategy_id=None,
        allocation_percent=Decimal("50"),
        max_drawdown_stop=Decimal("25"),
        current_drawdown=Decimal("30"),
    )


# ============================================================
# DISPATCHER TESTS
# ============================================================

class TestDispatcher:
    """Tests for NotificationDispatcher."""

    @pytest.mark.asyncio
    async def test_delivered_in_background(self):
        """Test dispatch returns before the sink finishes."""
        sink = RecordingSink(delay=0.01)
        dispatcher = NotificationDispatcher([sink])

        task = dispatcher.position_opened(make_position())

        assert task is not None
        assert dispatcher.pending == 1
        assert sink.received == []
        await dispatcher.drain()
        assert len(sink.received) == 1
        assert sink.received[0].event_type is EventType.POSITION_OPENED

    @pytest.mark.asyncio
    async def test_sink_failure_isolated(self):
        """Test one failing sink does not stop the next."""
        broken = RecordingSink(error=RuntimeError("telegram down"))
        working = RecordingSink()
        dispatcher = NotificationDispatcher([broken, working])

        dispatcher.position_closed(make_trade())
        await dispatcher.drain()

        assert len(working.received) == 1

    @pytest.mark.asyncio
    async def test_no_sinks(self):
        dispatcher = NotificationDispatcher()

        assert dispatcher.position_opened(make_position()) is None
        assert dispatcher.pending == 0

    @pytest.mark.asyncio
    async def test_drain_cancels_stragglers(self):
        """Test deliveries still running after the timeout are cancelled."""
        dispatcher = NotificationDispatcher([RecordingSink(delay=5)])

        task = dispatcher.position_opened(make_position())
        await dispatcher.drain(timeout=0.01)
        await asyncio.sleep(0)

        assert task.cancelled()


# ============================================================
# EVENT TESTS
# ============================================================

class TestEvents:
    """Tests for event construction."""

    @pytest.mark.asyncio
    async def test_closed_message(self):
        sink = RecordingSink()
        dispatcher = NotificationDispatcher([sink])

        dispatcher.position_closed(make_trade("-5"))
        await dispatcher.drain()

        notification = sink.received[0]
        assert "loss -5.00" in notification.message
        assert notification.details["reason"] == "MANUAL"

    @pytest.mark.asyncio
    async def test_rejection_carries_code(self):
        sink = RecordingSink()
        dispatcher = NotificationDispatcher([sink])

        dispatcher.execution_rejected(
            "alice", "binance", "BTC/USDT",
            ExecutionResult.rejected("Insufficient margin", "INSUFFICIENT_MARGIN"),
        )
        await dispatcher.drain()

        notification = sink.received[0]
        assert notification.severity is Severity.WARNING
        assert notification.details["code"] == "INSUFFICIENT_MARGIN"

    @pytest.mark.asyncio
    async def test_disabled_events_dropped(self):
        """Test per-event switches in the config."""
        sink = RecordingSink()
        dispatcher = NotificationDispatcher([sink], NotificationConfig(notify_on_open=False))

        assert dispatcher.position_opened(make_position()) is None

    @pytest.mark.asyncio
    async def test_copy_fee_and_pause(self):
        sink = RecordingSink()
        dispatcher = NotificationDispatcher([sink])
        copied = CopiedTrade(
            relationship_id="rel-1",
            follower_id="f1",
            leader_id="leader",
            symbol="BTC/USDT",
            action=IntentAction.BUY,
            leader_notional=Decimal("1000"),
            follower_notional=Decimal("500"),
            success=True,
            fee_eligible_profit=Decimal("100"),
            override_fee=Decimal("15"),
            platform_fee=Decimal("6"),
            leader_fee=Decimal("9"),
        )

        dispatcher.copy_fee(make_relationship(), copied)
        dispatcher.relationship_paused(make_relationship())
        await dispatcher.drain()

        fee, paused = sink.received
        assert fee.details["leader_fee"] == "9.00"
        assert paused.event_type is EventType.RELATIONSHIP_PAUSED
        assert "30.00%" in paused.message


# ============================================================
# TELEGRAM TESTS
# ============================================================

class TestTelegramNotifier:
    """Tests for the Telegram sink."""

    @pytest.mark.asyncio
    async def test_unconfigured_only_logs(self):
        notifier = TelegramNotifier(NotificationConfig(telegram_bot_token=None))

        assert not notifier.is_configured
        assert await notifier.send(Notification(EventType.POSITION_OPENED, Severity.INFO, "hello")) is False

    def test_severity_filter(self):
        """Test events below the configured severity are not sent."""
        notifier = TelegramNotifier(NotificationConfig(min_severity="WARNING"))

        assert not notifier.should_send(Notification(EventType.POSITION_OPENED, Severity.INFO, "opened"))
        assert notifier.should_send(Notification(EventType.RELATIONSHIP_PAUSED, Severity.WARNING, "paused"))
        assert notifier.should_send(Notification(EventType.EXECUTION_REJECTED, Severity.CRITICAL, "down"))

    def test_format_message(self):
        notification = Notification(
            event_type=EventType.POSITION_CLOSED,
            severity=Severity.INFO,
            message="Closed LONG 0.02 BTC/USDT",
            owner_id="alice",
            symbol="BTC/USDT",
            details={"reason": "MANUAL"},
            timestamp=datetime(2024, 1, 1, 12, 30, tzinfo=timezone.utc),
        )

        text = TelegramNotifier.format_message(notification)

        assert "<b>POSITION_CLOSED</b>" in text
        assert "2024-01-01 12:30:00 UTC" in text
        assert "<b>Account:</b> alice" in text
        assert "reason: MANUAL" in text
