"""
Copy-Trading Fan-Out Tests.

============================================================
PURPOSE
============================================================
Tests for replicating leader intents to followers and settling
the copied trades.

TEST CATEGORIES:
- Replication tests: Allocation scaling and shared leader reference
- Isolation tests: One follower's failure never affects another
- Gate tests: Credentials, allocation, margin, drawdown
- Settlement tests: High-water-mark fees on closed copies

============================================================
"""

import asyncio
from dataclasses import replace
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from copytrade_engine.adapters import MockConfig, MockExchangeAdapter, create_rejection
from copytrade_engine.config import ExecutorConfig, FanOutConfig
from copytrade_engine.errors import CredentialNotFound
from copytrade_engine.executor import TradeExecutor
from copytrade_engine.fanout import CopyTradingEngine, FollowerStatus
from copytrade_engine.intent import TradeIntent
from copytrade_engine.key_lock import KeyedLock
from copytrade_engine.position_tracker import PositionTracker
from copytrade_engine.types import (
    CopyRelationship,
    ExecutionAction,
    ExecutionResult,
    IntentAction,
    RelationshipStatus,
)


class InMemoryCopyStore:
    """Copy-trading store backed by dicts."""

    def __init__(self, relationships):
        self.relationships = {r.id: r for r in relationships}
        self.copied = []
        self.updated = []

    async def list_active_relationships(self, leader_id, strategy_id=None):
        return [
            replace(r) for r in self.relationships.values()
            if r.leader_id == leader_id
            and r.is_active
            and (strategy_id is None or r.strategy_id == strategy_id)
        ]

    async def get_relationship(self, relationship_id):
        relationship = self.relationships.get(relationship_id)
        return replace(relationship) if relationship is not None else None

    async def update_relationship(self, relationship):
        self.relationships[relationship.id] = replace(relationship)

    async def insert_copied_trade(self, trade):
        self.copied.append(trade)
        return f"ct-{len(self.copied)}"

    async def find_open_copied_trade(self, relationship_id, symbol):
        candidates = [
            c for c in self.copied
            if c.relationship_id == relationship_id
            and c.symbol == symbol
            and c.success
            and c.action is not IntentAction.CLOSE
            and c.exit_time is None
        ]
        return candidates[-1] if candidates else None

    async def update_copied_trade(self, trade):
        self.updated.append(trade)


def make_relationship(rel_id, follower_id, allocation, **overrides):
    values = dict(
        id=rel_id,
        follower_id=follower_id,
        leader_id="leader",
        strategy_id=None,
        allocation_percent=Decimal(allocation),
        max_drawdown_stop=Decimal("25"),
        follower_exchange_id="mock",
    )
    values.update(overrides)
    return CopyRelationship(**values)


def make_intent(action=IntentAction.BUY, notional="1000", **overrides):
    values = dict(
        owner_id="leader",
        exchange_id="mock",
        symbol="BTCUSDT",
        action=action,
        notional_usd=Decimal(notional),
    )
    values.update(overrides)
    return TradeIntent(**values)


class Accounts:
    """Mock exchange accounts and their executors."""

    def __init__(self):
        self.tracker = PositionTracker()
        self.locks = KeyedLock()
        self.adapters = {}
        self.executors = {}
        self.requested = []

    def add(self, owner_id, margin="10000"):
        adapter = MockExchangeAdapter(MockConfig(
            prices={"BTC/USDT": Decimal("50000")},
            available_margin=Decimal(margin),
        ))
        self.adapters[owner_id] = adapter
        self.executors[owner_id] = TradeExecutor(
            owner_id,
            adapter,
            self.tracker,
            self.locks,
            config=ExecutorConfig(reversal_settle_seconds=0.0),
        )
        return adapter

    async def provider(self, owner_id, exchange_id, environment):
        self.requested.append(owner_id)
        if owner_id not in self.executors:
            raise CredentialNotFound(owner_id, exchange_id, environment.value)
        return self.executors[owner_id]

    def set_price(self, price):
        for adapter in self.adapters.values():
            adapter.set_price("BTC/USDT", Decimal(price))


@pytest.fixture
def accounts():
    accounts = Accounts()
    accounts.add("leader")
    accounts.add("f1")
    accounts.add("f2")
    return accounts


@pytest.fixture
def store():
    return InMemoryCopyStore([
        make_relationship("rel-1", "f1", "50"),
        make_relationship("rel-2", "f2", "25"),
    ])


@pytest.fixture
def notifier():
    return MagicMock()


@pytest.fixture
def engine(store, accounts, notifier):
    return CopyTradingEngine(store, accounts.provider, notifier=notifier, config=FanOutConfig())


async def leader_executes(accounts, intent):
    return await accounts.executors["leader"].execute(intent)


# ============================================================
# REPLICATION TESTS
# ============================================================

class TestReplication:
    """Tests for scaled replication."""

    @pytest.mark.asyncio
    async def test_followers_scaled_by_allocation(self, engine, accounts, store):
        """Test $1000 at 50000 copies as $500 and $250."""
        intent = make_intent()
        leader_result = await leader_executes(accounts, intent)
        assert leader_result.position.quantity == Decimal("0.020")

        summary = await engine.fan_out(intent, leader_result)

        assert summary.processed == 2
        assert summary.succeeded == 2

        f1 = await accounts.adapters["f1"].get_position("BTC/USDT")
        f2 = await accounts.adapters["f2"].get_position("BTC/USDT")
        assert f1.quantity == Decimal("0.010")
        assert f2.quantity == Decimal("0.005")

        by_follower = {c.follower_id: c for c in store.copied}
        assert by_follower["f1"].follower_notional == Decimal("500")
        assert by_follower["f2"].follower_notional == Decimal("250")
        refs = {c.leader_trade_ref for c in store.copied}
        assert refs == {leader_result.order.order_id}
        assert all(c.success for c in store.copied)
        assert all(c.symbol == "BTC/USDT" for c in store.copied)

    @pytest.mark.asyncio
    async def test_follower_positions_tagged(self, engine, accounts):
        """Test copied positions remember their relationship."""
        intent = make_intent()
        await engine.fan_out(intent, await leader_executes(accounts, intent))

        position = accounts.tracker.get("f1", "mock", "BTC/USDT")
        assert position.copy_relationship_id == "rel-1"

    @pytest.mark.asyncio
    async def test_copied_trade_ids_recorded(self, engine, accounts):
        """Test each outcome carries its persisted copied trade."""
        intent = make_intent()

        summary = await engine.fan_out(intent, await leader_executes(accounts, intent))

        assert {o.copied_trade.id for o in summary.outcomes} == {"ct-1", "ct-2"}

    @pytest.mark.asyncio
    async def test_close_replicated(self, engine, accounts):
        """Test a leader close closes followers too."""
        open_intent = make_intent()
        await engine.fan_out(open_intent, await leader_executes(accounts, open_intent))

        close_intent = make_intent(IntentAction.CLOSE, notional="0")
        close_result = await leader_executes(accounts, close_intent)
        summary = await engine.fan_out(close_intent, close_result)

        assert summary.succeeded == 2
        assert await accounts.adapters["f1"].get_position("BTC/USDT") is None
        closed = [o.result.trade for o in summary.outcomes]
        assert {t.copy_relationship_id for t in closed} == {"rel-1", "rel-2"}

    @pytest.mark.asyncio
    async def test_skipped_leader_not_replicated(self, engine, accounts, store):
        """Test only opened or closed leader results fan out."""
        intent = make_intent()

        summary = await engine.fan_out(intent, ExecutionResult.skipped("Position already open"))

        assert summary.processed == 0
        assert store.copied == []
        assert accounts.requested == []

    @pytest.mark.asyncio
    async def test_strategy_filter(self, accounts, notifier):
        """Test strategy subscribers only copy that strategy."""
        store = InMemoryCopyStore([
            make_relationship("rel-1", "f1", "50", strategy_id="trend"),
            make_relationship("rel-2", "f2", "25", strategy_id="meanrev"),
        ])
        engine = CopyTradingEngine(store, accounts.provider, notifier=notifier)
        intent = make_intent(strategy_id="trend")

        summary = await engine.fan_out(intent, await leader_executes(accounts, intent))

        assert [o.follower_id for o in summary.outcomes] == ["f1"]

    @pytest.mark.asyncio
    async def test_concurrency_bounded(self, accounts):
        """Test no more followers run at once than configured."""
        relationships = []
        for n in range(5):
            accounts.add(f"g{n}")
            relationships.append(make_relationship(f"rel-g{n}", f"g{n}", "10"))
        in_flight = []
        peak = []

        async def slow_provider(owner_id, exchange_id, environment):
            in_flight.append(owner_id)
            peak.append(len(in_flight))
            await asyncio.sleep(0.01)
            in_flight.remove(owner_id)
            return accounts.executors[owner_id]

        engine = CopyTradingEngine(
            InMemoryCopyStore(relationships),
            slow_provider,
            config=FanOutConfig(max_concurrency=2),
        )
        intent = make_intent()

        summary = await engine.fan_out(intent, await leader_executes(accounts, intent))

        assert summary.succeeded == 5
        assert max(peak) <= 2


# ============================================================
# ISOLATION TESTS
# ============================================================

class TestIsolation:
    """Tests for per-follower failure isolation."""

    @pytest.mark.asyncio
    async def test_provider_crash_isolated(self, store, accounts):
        """Test an unexpected error for one follower leaves the other intact."""
        async def provider(owner_id, exchange_id, environment):
            if owner_id == "f2":
                raise RuntimeError("adapter construction exploded")
            return accounts.executors[owner_id]

        engine = CopyTradingEngine(store, provider)
        intent = make_intent()

        summary = await engine.fan_out(intent, await leader_executes(accounts, intent))

        statuses = {o.follower_id: o.status for o in summary.outcomes}
        assert statuses == {"f1": FollowerStatus.SUCCEEDED, "f2": FollowerStatus.FAILED}
        failed = next(c for c in store.copied if c.follower_id == "f2")
        assert not failed.success
        assert "exploded" in failed.reason

    @pytest.mark.asyncio
    async def test_follower_rejection_isolated(self, engine, accounts):
        """Test an exchange rejection for one follower is reported per follower."""
        accounts.adapters["f1"].inject_error("place_market_order", create_rejection("mock", "Account restricted"))
        intent = make_intent()

        summary = await engine.fan_out(intent, await leader_executes(accounts, intent))

        statuses = {o.follower_id: o.status for o in summary.outcomes}
        assert statuses["f1"] is FollowerStatus.FAILED
        assert statuses["f2"] is FollowerStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_store_failure_returns_empty(self, accounts):
        """Test a failing relationship lookup aborts the fan-out quietly."""
        store = InMemoryCopyStore([])

        async def broken(leader_id, strategy_id=None):
            raise ConnectionError("database down")

        store.list_active_relationships = broken
        engine = CopyTradingEngine(store, accounts.provider)
        intent = make_intent()

        summary = await engine.fan_out(intent, await leader_executes(accounts, intent))

        assert summary.processed == 0


# ============================================================
# GATE TESTS
# ============================================================

class TestFollowerGates:
    """Tests for per-follower checks."""

    @pytest.mark.asyncio
    async def test_missing_credential_skipped(self, store, accounts):
        """Test followers without credentials are skipped, not failed."""
        store.relationships["rel-3"] = make_relationship("rel-3", "ghost", "10")
        engine = CopyTradingEngine(store, accounts.provider)
        intent = make_intent()

        summary = await engine.fan_out(intent, await leader_executes(accounts, intent))

        ghost = next(o for o in summary.outcomes if o.follower_id == "ghost")
        assert ghost.status is FollowerStatus.SKIPPED
        assert ghost.reason == "no_credential"
        assert summary.succeeded == 2

    @pytest.mark.asyncio
    async def test_zero_allocation_skipped(self, accounts):
        store = InMemoryCopyStore([make_relationship("rel-1", "f1", "0")])
        engine = CopyTradingEngine(store, accounts.provider)
        intent = make_intent()

        summary = await engine.fan_out(intent, await leader_executes(accounts, intent))

        assert summary.outcomes[0].reason == "zero_allocation"
        assert accounts.adapters["f1"].call_count("place_market_order") == 0

    @pytest.mark.asyncio
    async def test_insufficient_follower_margin(self, engine, accounts):
        """Test a follower without enough free margin is skipped."""
        accounts.adapters["f1"].set_available_margin(Decimal("550"))
        intent = make_intent()

        summary = await engine.fan_out(intent, await leader_executes(accounts, intent))

        f1 = next(o for o in summary.outcomes if o.follower_id == "f1")
        assert f1.status is FollowerStatus.SKIPPED
        assert f1.reason == "insufficient_margin"
        assert accounts.adapters["f1"].call_count("place_market_order") == 0

    @pytest.mark.asyncio
    async def test_baseline_set_on_first_copy(self, engine, accounts, store):
        """Test the first copied open fixes the equity baseline."""
        intent = make_intent()

        await engine.fan_out(intent, await leader_executes(accounts, intent))

        relationship = store.relationships["rel-1"]
        assert relationship.initial_equity == Decimal("500")
        assert relationship.high_water_mark == Decimal("500")

    @pytest.mark.asyncio
    async def test_drawdown_pauses_relationship(self, store, accounts, notifier):
        """Test a follower past its drawdown stop is paused instead of copied."""
        store.relationships["rel-1"] = make_relationship(
            "rel-1", "f1", "50",
            initial_equity=Decimal("1000"),
            realized_pnl=Decimal("-300"),
            high_water_mark=Decimal("1000"),
        )
        engine = CopyTradingEngine(store, accounts.provider, notifier=notifier)
        intent = make_intent()

        summary = await engine.fan_out(intent, await leader_executes(accounts, intent))

        f1 = next(o for o in summary.outcomes if o.follower_id == "f1")
        assert f1.reason == "drawdown_exceeded"
        assert store.relationships["rel-1"].status is RelationshipStatus.PAUSED
        assert store.relationships["rel-1"].paused_at is not None
        assert accounts.adapters["f1"].call_count("place_market_order") == 0
        notifier.relationship_paused.assert_called_once()

    @pytest.mark.asyncio
    async def test_paused_between_listing_and_copy(self, store, accounts):
        """Test the status is re-read before each follower is copied."""
        stale = await store.list_active_relationships("leader")
        store.relationships["rel-1"] = replace(store.relationships["rel-1"], status=RelationshipStatus.PAUSED)

        async def stale_listing(leader_id, strategy_id=None):
            return stale

        store.list_active_relationships = stale_listing
        engine = CopyTradingEngine(store, accounts.provider)
        intent = make_intent()

        summary = await engine.fan_out(intent, await leader_executes(accounts, intent))

        f1 = next(o for o in summary.outcomes if o.follower_id == "f1")
        assert f1.reason == "relationship_inactive"

    @pytest.mark.asyncio
    async def test_close_skips_entry_gates(self, engine, accounts):
        """Test closes replicate even when margin would block an open."""
        open_intent = make_intent()
        await engine.fan_out(open_intent, await leader_executes(accounts, open_intent))
        accounts.adapters["f1"].set_available_margin(Decimal("0"))

        close_intent = make_intent(IntentAction.CLOSE, notional="0")
        summary = await engine.fan_out(close_intent, await leader_executes(accounts, close_intent))

        f1 = next(o for o in summary.outcomes if o.follower_id == "f1")
        assert f1.status is FollowerStatus.SUCCEEDED
        assert f1.result.action is ExecutionAction.CLOSED


# ============================================================
# SETTLEMENT TESTS
# ============================================================

class TestSettlement:
    """Tests for booking closed copies."""

    async def open_and_close(self, engine, accounts, exit_price):
        open_intent = make_intent()
        await engine.fan_out(open_intent, await leader_executes(accounts, open_intent))
        accounts.set_price(exit_price)
        close_intent = make_intent(IntentAction.CLOSE, notional="0")
        summary = await engine.fan_out(close_intent, await leader_executes(accounts, close_intent))
        return {o.follower_id: o.result.trade for o in summary.outcomes}

    @pytest.mark.asyncio
    async def test_profit_charges_override_fee(self, engine, accounts, store, notifier):
        """Test 0.010 BTC closed 10000 higher earns 100, fee 15 split 6/9."""
        trades = await self.open_and_close(engine, accounts, "60000")

        fees = await engine.settle_copied_trade(trades["f1"])

        assert trades["f1"].realized_pnl == Decimal("100")
        assert fees.fee_eligible_profit == Decimal("100")
        assert fees.override_fee == Decimal("15.00")
        assert fees.platform_fee == Decimal("6.00")
        assert fees.leader_fee == Decimal("9.00")

        relationship = store.relationships["rel-1"]
        assert relationship.realized_pnl == Decimal("100")
        assert relationship.high_water_mark == Decimal("600")

        settled = store.updated[-1]
        assert settled.relationship_id == "rel-1"
        assert settled.action is IntentAction.BUY
        assert settled.realized_pnl == Decimal("100")
        assert settled.override_fee == Decimal("15.00")
        assert settled.exit_time is not None
        notifier.copy_fee.assert_called_once()

    @pytest.mark.asyncio
    async def test_partial_closes_accumulate(self, engine, accounts, store, notifier):
        """Test each close leg is booked into the same copied trade."""
        open_intent = make_intent()
        await engine.fan_out(open_intent, await leader_executes(accounts, open_intent))
        accounts.set_price("60000")
        fees = []
        for sell_percentage in ("50", None):
            close_intent = make_intent(IntentAction.CLOSE, notional="0", sell_percentage=sell_percentage)
            summary = await engine.fan_out(close_intent, await leader_executes(accounts, close_intent))
            trade = {o.follower_id: o.result.trade for o in summary.outcomes}["f1"]
            fees.append(await engine.settle_copied_trade(trade))

        assert [f.override_fee for f in fees] == [Decimal("7.50"), Decimal("7.50")]
        assert store.relationships["rel-1"].high_water_mark == Decimal("600")

        first, second = [c for c in store.updated if c.relationship_id == "rel-1"]
        assert first is second
        assert second.realized_pnl == Decimal("100")
        assert second.override_fee == Decimal("15.00")
        assert second.platform_fee == Decimal("6.00")
        assert second.leader_fee == Decimal("9.00")
        assert second.exit_time is not None

        billed = [c.args[1] for c in notifier.copy_fee.call_args_list if c.args[0].id == "rel-1"]
        assert [b.override_fee for b in billed] == [Decimal("7.50"), Decimal("7.50")]

    @pytest.mark.asyncio
    async def test_loss_charges_nothing(self, engine, accounts, store):
        """Test losing trades only move the equity curve."""
        trades = await self.open_and_close(engine, accounts, "45000")

        fees = await engine.settle_copied_trade(trades["f1"])

        assert fees.override_fee == Decimal("0")
        relationship = store.relationships["rel-1"]
        assert relationship.equity == Decimal("450")
        assert relationship.current_drawdown == Decimal("10")
        assert relationship.is_active

    @pytest.mark.asyncio
    async def test_loss_beyond_stop_pauses(self, engine, accounts, store, notifier):
        """Test settlement pauses a relationship past its drawdown stop."""
        trades = await self.open_and_close(engine, accounts, "30000")

        await engine.settle_copied_trade(trades["f1"])

        relationship = store.relationships["rel-1"]
        assert relationship.current_drawdown == Decimal("40")
        assert relationship.status is RelationshipStatus.PAUSED
        notifier.relationship_paused.assert_called_once()

    @pytest.mark.asyncio
    async def test_relationship_override_fee(self, engine, accounts, store):
        """Test a relationship's own fee rate wins over the default."""
        store.relationships["rel-1"].override_fee_percent = Decimal("20")
        trades = await self.open_and_close(engine, accounts, "60000")

        fees = await engine.settle_copied_trade(trades["f1"])

        assert fees.override_fee == Decimal("20.00")

    @pytest.mark.asyncio
    async def test_not_a_copied_trade(self, engine, accounts):
        """Test leader trades are ignored by settlement."""
        trades = await self.open_and_close(engine, accounts, "60000")
        leader_trade = replace(trades["f1"], copy_relationship_id=None)

        assert await engine.settle_copied_trade(leader_trade) is None
