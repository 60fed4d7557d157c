"""
Position Tracking Tests.

============================================================
PURPOSE
============================================================
Tests for the in-memory position ledger and its reconciler.

TEST CATEGORIES:
- Tracker tests: Add, replace, partial update, summary
- Update tests: Price and unrealized P&L refresh
- Sync tests: Removing, adopting and correcting positions
- Lifecycle tests: Background loop start/stop

============================================================
"""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from copytrade_engine.adapters import MockConfig, MockExchangeAdapter, create_network_error
from copytrade_engine.config import ReconcilerConfig
from copytrade_engine.key_lock import KeyedLock
from copytrade_engine.position_tracker import PositionTracker
from copytrade_engine.reconciler import PositionReconciler
from copytrade_engine.types import Position, PositionKey, PositionSide


def make_position(symbol="BTC/USDT", side=PositionSide.LONG, quantity="0.02", entry="50000", owner="alice"):
    quantity = Decimal(quantity)
    entry = Decimal(entry)
    return Position(
        owner_id=owner,
        exchange_id="mock",
        symbol=symbol,
        side=side,
        quantity=quantity,
        entry_price=entry,
        notional=quantity * entry,
    )


@pytest.fixture
def tracker():
    return PositionTracker()


@pytest.fixture
def adapter():
    return MockExchangeAdapter(MockConfig(prices={"BTC/USDT": Decimal("50000"), "ETH/USDT": Decimal("3000")}))


@pytest.fixture
def store():
    store = AsyncMock()
    store.save_position = AsyncMock()
    store.delete_position = AsyncMock()
    return store


@pytest.fixture
def locks():
    return KeyedLock()


@pytest.fixture
def reconciler(tracker, adapter, store, locks):
    async def provider(owner_id, exchange_id):
        return adapter if owner_id == "alice" else None

    return PositionReconciler(
        tracker,
        provider,
        locks,
        store=store,
        config=ReconcilerConfig(interval_seconds=0.01),
    )


# ============================================================
# TRACKER TESTS
# ============================================================

class TestPositionTracker:
    """Tests for PositionTracker."""

    def test_one_position_per_key(self, tracker):
        """Test adding the same key replaces the entry."""
        tracker.add(make_position(quantity="0.02"))
        tracker.add(make_position(quantity="0.05"))

        assert len(tracker) == 1
        assert tracker.get("alice", "mock", "BTC/USDT").quantity == Decimal("0.05")

    def test_remove(self, tracker):
        """Test removal returns the dropped position."""
        tracker.add(make_position())

        removed = tracker.remove("alice", "mock", "BTC/USDT")

        assert removed.key == PositionKey("alice", "mock", "BTC/USDT")
        assert not tracker.has("alice", "mock", "BTC/USDT")
        assert tracker.remove("alice", "mock", "BTC/USDT") is None

    def test_update_quantity_scales_notional(self, tracker):
        """Test a partial close keeps notional proportional."""
        tracker.add(make_position(quantity="0.02", entry="50000"))

        position = tracker.update_quantity("alice", "mock", "BTC/USDT", Decimal("0.01"))

        assert position.quantity == Decimal("0.01")
        assert position.notional == Decimal("500")
        assert tracker.update_quantity("bob", "mock", "BTC/USDT", Decimal("1")) is None

    def test_list_for_account(self, tracker):
        """Test listing is scoped to one account."""
        tracker.add(make_position("BTC/USDT"))
        tracker.add(make_position("ETH/USDT", entry="3000", quantity="1"))
        tracker.add(make_position("BTC/USDT", owner="bob"))

        assert {p.symbol for p in tracker.list_for("alice", "mock")} == {"BTC/USDT", "ETH/USDT"}
        assert len(tracker.list_all()) == 3

    def test_summary(self, tracker):
        """Test counts and totals."""
        tracker.add(make_position("BTC/USDT", quantity="0.02", entry="50000"))
        tracker.add(make_position("ETH/USDT", quantity="1", entry="3000"))
        tracker.add(make_position("BTC/USDT", owner="bob"))

        summary = tracker.summary(owner_id="alice")

        assert summary["count"] == 2
        assert summary["by_exchange"] == {"mock": 2}
        assert summary["total_notional"] == Decimal("4000")
        assert len(summary["positions"]) == 2
        assert tracker.summary()["count"] == 3


# ============================================================
# UPDATE TESTS
# ============================================================

class TestPriceUpdates:
    """Tests for the price/P&L refresh."""

    @pytest.mark.asyncio
    async def test_long_pnl(self, reconciler, tracker, adapter, store):
        """Test unrealized P&L for a long position."""
        tracker.add(make_position(quantity="0.02", entry="50000"))
        adapter.set_price("BTC/USDT", Decimal("51000"))

        result = await reconciler.force_update()

        position = tracker.get("alice", "mock", "BTC/USDT")
        assert result.success
        assert result.updated == 1
        assert result.run_id == "UPD_000001"
        assert position.current_price == Decimal("51000")
        assert position.unrealized_pnl == Decimal("20")
        assert position.unrealized_pnl_percent == Decimal("2")
        store.save_position.assert_awaited_once_with(position)

    @pytest.mark.asyncio
    async def test_short_pnl(self, reconciler, tracker, adapter):
        """Test unrealized P&L for a short position."""
        tracker.add(make_position(side=PositionSide.SHORT, quantity="0.02", entry="50000"))
        adapter.set_price("BTC/USDT", Decimal("49000"))

        await reconciler.force_update()

        assert tracker.get("alice", "mock", "BTC/USDT").unrealized_pnl == Decimal("20")

    @pytest.mark.asyncio
    async def test_failure_isolated_per_position(self, reconciler, tracker, adapter):
        """Test one failing ticker does not stop the others."""
        tracker.add(make_position("BTC/USDT"))
        tracker.add(make_position("ETH/USDT", quantity="1", entry="2900"))
        adapter.inject_error("get_ticker", create_network_error("mock", "timeout"))

        result = await reconciler.force_update()

        assert result.updated == 1
        assert len(result.errors) == 1
        assert not result.success

    @pytest.mark.asyncio
    async def test_accounts_without_adapter_skipped(self, reconciler, tracker):
        """Test positions whose account has no adapter are left alone."""
        tracker.add(make_position(owner="bob"))

        result = await reconciler.force_update()

        assert result.updated == 0
        assert result.success

    @pytest.mark.asyncio
    async def test_refresh_waits_for_close(self, reconciler, tracker, store, locks):
        """Test a position closed under the lock is not refreshed afterwards."""
        position = make_position()
        tracker.add(position)

        async def close():
            async with locks.hold(position.key):
                await asyncio.sleep(0.01)
                tracker.remove("alice", "mock", "BTC/USDT")
                await store.delete_position("alice", "mock", "BTC/USDT")

        closing = asyncio.create_task(close())
        await asyncio.sleep(0)
        result = await reconciler.force_update()
        await closing

        assert result.updated == 0
        store.save_position.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_close_during_slow_ticker(self, reconciler, tracker, adapter, store, locks):
        """Test a close requested mid-refresh runs after the save, so the delete wins."""
        position = make_position()
        tracker.add(position)
        events = []
        store.save_position.side_effect = lambda *args: events.append("save")
        store.delete_position.side_effect = lambda *args: events.append("delete")
        get_ticker = adapter.get_ticker

        async def slow_ticker(symbol):
            await asyncio.sleep(0.02)
            return await get_ticker(symbol)

        adapter.get_ticker = slow_ticker
        refresh = asyncio.create_task(reconciler.force_update())
        await asyncio.sleep(0.005)

        async with locks.hold(position.key):
            tracker.remove("alice", "mock", "BTC/USDT")
            await store.delete_position("alice", "mock", "BTC/USDT")
        await refresh

        assert events == ["save", "delete"]
        assert len(tracker) == 0

    @pytest.mark.asyncio
    async def test_run_ids_increment(self, reconciler):
        """Test sequential run identifiers."""
        await reconciler.force_update()
        result = await reconciler.force_update()

        assert result.run_id == "UPD_000002"
        assert reconciler.last_result is result


# ============================================================
# SYNC TESTS
# ============================================================

class TestExchangeSync:
    """Tests for re-deriving positions from the exchange."""

    @pytest.mark.asyncio
    async def test_stale_position_removed(self, reconciler, tracker, store):
        """Test a tracked position closed on the exchange is dropped."""
        tracker.add(make_position())

        result = await reconciler.sync("alice", "mock")

        assert result.removed == ["BTC/USDT"]
        assert len(tracker) == 0
        store.delete_position.assert_awaited_once_with("alice", "mock", "BTC/USDT")

    @pytest.mark.asyncio
    async def test_unknown_position_adopted(self, reconciler, tracker, adapter):
        """Test an exchange position opened elsewhere is tracked."""
        adapter.set_position("ETH/USDT", PositionSide.SHORT, Decimal("2"), Decimal("3000"))

        result = await reconciler.sync("alice", "mock")

        assert result.adopted == ["ETH/USDT"]
        position = tracker.get("alice", "mock", "ETH/USDT")
        assert position.side is PositionSide.SHORT
        assert position.notional == Decimal("6000")

    @pytest.mark.asyncio
    async def test_size_corrected(self, reconciler, tracker, adapter):
        """Test the exchange's size and side win."""
        tracker.add(make_position(quantity="0.02"))
        adapter.set_position("BTC/USDT", PositionSide.LONG, Decimal("0.01"), Decimal("50000"))

        result = await reconciler.sync("alice", "mock")

        assert result.corrected == ["BTC/USDT"]
        assert tracker.get("alice", "mock", "BTC/USDT").quantity == Decimal("0.01")

    @pytest.mark.asyncio
    async def test_matching_position_untouched(self, reconciler, tracker, adapter, store):
        """Test nothing changes when both sides agree."""
        tracker.add(make_position(quantity="0.02"))
        adapter.set_position("BTC/USDT", PositionSide.LONG, Decimal("0.02"), Decimal("50000"))

        result = await reconciler.sync("alice", "mock")

        assert not result.changed
        store.save_position.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_exchange_failure_keeps_ledger(self, reconciler, tracker, adapter):
        """Test a failed position query leaves the tracker alone."""
        tracker.add(make_position())
        adapter.inject_error("get_positions", create_network_error("mock", "down"))

        result = await reconciler.sync("alice", "mock")

        assert result.error is not None
        assert len(tracker) == 1

    @pytest.mark.asyncio
    async def test_no_adapter(self, reconciler):
        """Test accounts without an adapter report an error."""
        result = await reconciler.sync("bob", "mock")

        assert result.error == "no adapter"

    @pytest.mark.asyncio
    async def test_sync_accounts_deduplicates(self, reconciler, adapter):
        """Test each account is synced once."""
        results = await reconciler.sync_accounts([("alice", "mock"), ("bob", "mock"), ("alice", "mock")])

        assert [r.owner_id for r in results] == ["alice", "bob"]
        assert results[1].error == "no adapter"
        assert adapter.call_count("get_positions") == 1


# ============================================================
# LIFECYCLE TESTS
# ============================================================

class TestReconcilerLifecycle:
    """Tests for the background loop."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, reconciler, tracker, adapter):
        """Test the loop refreshes periodically and stops cleanly."""
        tracker.add(make_position())

        reconciler.start()
        assert reconciler.is_running
        await asyncio.sleep(0.05)
        await reconciler.stop()

        assert not reconciler.is_running
        assert adapter.call_count("get_ticker") >= 2

    @pytest.mark.asyncio
    async def test_stop_without_start(self, reconciler):
        """Test stopping an idle reconciler is a no-op."""
        await reconciler.stop()
        assert not reconciler.is_running
