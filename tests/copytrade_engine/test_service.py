"""
Execution Service Tests.

============================================================
PURPOSE
============================================================
End-to-end tests of the service wiring against an in-memory
database and mock exchange accounts.

TEST CATEGORIES:
- Intent tests: Validation and credential lookup
- Position maintenance tests: Forced refresh and account sync
- Executor cache tests: Reuse and rebuild on credential change
- Copy-trading tests: Detached fan-out and settlement
- Token tests: Rotated refresh tokens are persisted

============================================================
"""

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from copytrade_engine.adapters import AdapterFactory, MockConfig, MockExchangeAdapter
from copytrade_engine.config import EngineConfig
from copytrade_engine.errors import CredentialNotFound, ValidationError
from copytrade_engine.service import ExecutionService
from copytrade_engine.types import (
    CopyRelationship,
    Credential,
    Environment,
    ExecutionAction,
    PositionSide,
)


class MockAccounts:
    """One mock exchange account per API key."""

    def __init__(self):
        self.adapters = {}
        self.created = []

    def create(self, config):
        self.created.append(config.api_key)
        if config.api_key not in self.adapters:
            self.adapters[config.api_key] = MockExchangeAdapter(MockConfig(prices={"BTC/USDT": Decimal("50000")}))
        return self.adapters[config.api_key]

    def set_price(self, price):
        for adapter in self.adapters.values():
            adapter.set_price("BTC/USDT", Decimal(price))


@pytest.fixture
def accounts():
    accounts = MockAccounts()
    AdapterFactory.register("mock", accounts.create)
    yield accounts
    AdapterFactory.unregister("mock")


@pytest.fixture
async def service(accounts):
    service = ExecutionService(EngineConfig.for_testing())
    await service.start(create_schema=True)
    for owner in ("leader", "f1"):
        await service.repository.save_credential(Credential(owner_id=owner, exchange_id="mock", api_key=owner))
    yield service
    await service.stop()


def buy_payload(**overrides):
    payload = {
        "owner_id": "leader",
        "exchange_id": "mock",
        "symbol": "BTCUSDT",
        "action": "buy",
        "notional_usd": "1000",
    }
    payload.update(overrides)
    return payload


# ============================================================
# INTENT TESTS
# ============================================================

class TestHandleIntent:
    """Tests for the service entry point."""

    @pytest.mark.asyncio
    async def test_opens_position(self, service, accounts):
        result = await service.handle_intent(buy_payload())

        assert result.success
        assert result.action is ExecutionAction.OPENED
        assert result.position.quantity == Decimal("0.020")
        assert service.positions_summary("leader")["count"] == 1

    @pytest.mark.asyncio
    async def test_position_persisted(self, service):
        """Test opened positions reach the database."""
        await service.handle_intent(buy_payload())

        stored = await service.repository.load_positions()

        assert [p.symbol for p in stored] == ["BTC/USDT"]

    @pytest.mark.asyncio
    async def test_invalid_payload_rejected(self, service, accounts):
        """Test malformed payloads never reach an exchange."""
        result = await service.handle_intent(buy_payload(notional_usd="-1"))

        assert result.action is ExecutionAction.REJECTED
        assert result.error_code == ValidationError.code
        assert accounts.created == []

    @pytest.mark.asyncio
    async def test_unknown_account_rejected(self, service):
        result = await service.handle_intent(buy_payload(owner_id="nobody"))

        assert result.action is ExecutionAction.REJECTED
        assert result.error_code == CredentialNotFound.code

    @pytest.mark.asyncio
    async def test_unbuildable_adapter_rejected(self, service):
        """Test a credential missing required fields is refused cleanly."""
        await service.repository.save_credential(Credential(owner_id="leader", exchange_id="binance", api_key="k"))

        result = await service.handle_intent(buy_payload(exchange_id="binance"))

        assert result.action is ExecutionAction.REJECTED
        assert "api_secret" in result.message


# ============================================================
# POSITION MAINTENANCE TESTS
# ============================================================

class TestPositionMaintenance:
    """Tests for on-demand reconcile and sync."""

    @pytest.mark.asyncio
    async def test_force_reconcile(self, service, accounts):
        """Test a forced refresh marks tracked positions to market."""
        await service.handle_intent(buy_payload())
        accounts.set_price("51000")

        result = await service.force_reconcile()

        assert result.updated == 1
        position = service.tracker.get("leader", "mock", "BTC/USDT")
        assert position.unrealized_pnl == Decimal("20")
        assert await accounts.adapters["leader"].has_open_position("BTCUSDT")

    @pytest.mark.asyncio
    async def test_sync_account_adopts(self, service, accounts):
        """Test a position opened outside the engine is adopted."""
        await service.executor_for("leader", "mock")
        accounts.adapters["leader"].set_position("ETH/USDT", PositionSide.LONG, Decimal("1"), Decimal("3000"))

        result = await service.sync_account("leader", "MOCK")

        assert result.adopted == ["ETH/USDT"]
        assert service.positions_summary("leader")["count"] == 1


# ============================================================
# EXECUTOR CACHE TESTS
# ============================================================

class TestExecutorCache:
    """Tests for per-account executor reuse."""

    @pytest.mark.asyncio
    async def test_executor_reused(self, service, accounts):
        first = await service.executor_for("leader", "MOCK")
        second = await service.executor_for("leader", "mock")

        assert first is second
        assert accounts.created == ["leader"]

    @pytest.mark.asyncio
    async def test_rebuilt_on_credential_change(self, service, accounts):
        """Test a changed credential produces a fresh adapter."""
        first = await service.executor_for("leader", "mock")
        await service.repository.save_credential(Credential(owner_id="leader", exchange_id="mock", api_key="leader-2"))
        service.invalidate_credentials("leader", "mock")

        second = await service.executor_for("leader", "mock")

        assert second is not first
        assert accounts.created == ["leader", "leader-2"]

    @pytest.mark.asyncio
    async def test_one_environment_per_account(self, service, accounts):
        """Test an account cannot trade sandbox while production positions are open."""
        await service.repository.save_credential(Credential(
            owner_id="leader", exchange_id="mock", environment=Environment.SANDBOX, api_key="leader-sandbox",
        ))
        await service.handle_intent(buy_payload())

        blocked = await service.handle_intent(buy_payload(environment="sandbox"))

        assert blocked.action is ExecutionAction.REJECTED
        assert "open production positions" in blocked.message

        await service.handle_intent(buy_payload(action="close", notional_usd="0"))
        switched = await service.handle_intent(buy_payload(environment="sandbox"))

        assert switched.action is ExecutionAction.OPENED
        assert accounts.created == ["leader", "leader-sandbox"]
        assert await accounts.adapters["leader-sandbox"].has_open_position("BTCUSDT")

    @pytest.mark.asyncio
    async def test_missing_credential_raises(self, service):
        with pytest.raises(CredentialNotFound):
            await service.executor_for("nobody", "mock", Environment.SANDBOX)


# ============================================================
# COPY-TRADING TESTS
# ============================================================

class TestCopyTradingFlow:
    """Tests for the detached fan-out and settlement."""

    @pytest.fixture
    async def relationship(self, service):
        relationship = CopyRelationship(
            id="rel-1",
            follower_id="f1",
            leader_id="leader",
            strategy_id=None,
            allocation_percent=Decimal("50"),
            max_drawdown_stop=Decimal("25"),
            follower_exchange_id="mock",
        )
        await service.repository.create_relationship(relationship)
        return relationship

    @pytest.mark.asyncio
    async def test_leader_open_copied(self, service, accounts, relationship):
        """Test a leader open is replicated to the follower at half size."""
        result = await service.handle_intent(buy_payload())
        await service.wait_for_background()

        assert result.success
        follower = await accounts.adapters["f1"].get_position("BTC/USDT")
        assert follower.quantity == Decimal("0.010")

        [copied] = await service.repository.list_copied_trades("rel-1")
        assert copied.success
        assert copied.leader_trade_ref == result.order.order_id

        stored = await service.repository.get_relationship("rel-1")
        assert stored.initial_equity == Decimal("500")

    @pytest.mark.asyncio
    async def test_close_settles_fee(self, service, accounts, relationship):
        """Test a profitable copied close books P&L and the override fee."""
        await service.handle_intent(buy_payload())
        await service.wait_for_background()
        accounts.set_price("60000")

        result = await service.handle_intent(buy_payload(action="close", notional_usd="0"))
        await service.wait_for_background()

        assert result.action is ExecutionAction.CLOSED
        assert await accounts.adapters["f1"].get_position("BTC/USDT") is None

        stored = await service.repository.get_relationship("rel-1")
        assert stored.realized_pnl == Decimal("100")
        assert stored.high_water_mark == Decimal("600")

        opened = [c for c in await service.repository.list_copied_trades("rel-1") if c.realized_pnl is not None]
        assert len(opened) == 1
        assert opened[0].override_fee == Decimal("15")
        assert opened[0].platform_fee == Decimal("6")
        assert opened[0].leader_fee == Decimal("9")

    @pytest.mark.asyncio
    async def test_follower_intent_not_refanned(self, service, accounts, relationship):
        """Test a copied intent sent directly is never fanned out again."""
        await service.handle_intent(buy_payload(owner_id="f1", copy_relationship_id="rel-1"))
        await service.wait_for_background()

        assert await service.repository.list_copied_trades("rel-1") == []

    @pytest.mark.asyncio
    async def test_skipped_leader_not_copied(self, service, accounts, relationship):
        """Test a duplicate open does not fan out twice."""
        await service.handle_intent(buy_payload())
        await service.wait_for_background()

        result = await service.handle_intent(buy_payload())
        await service.wait_for_background()

        assert result.action is ExecutionAction.SKIPPED
        assert len(await service.repository.list_copied_trades("rel-1")) == 1


# ============================================================
# TOKEN TESTS
# ============================================================

class TestTokenRotation:
    """Tests for persisting rotated OAuth2 refresh tokens."""

    @pytest.mark.asyncio
    async def test_rotated_token_stored(self, service):
        """Test a rotated refresh token is saved without rebuilding the adapter."""
        await service.repository.save_credential(Credential(
            owner_id="trader",
            exchange_id="tradestation",
            api_key="client-id",
            api_secret="client-secret",
            refresh_token="rt-1",
            account_id="SIM123",
        ))
        executor = await service.executor_for("trader", "tradestation")
        executor.adapter._post_token = AsyncMock(return_value=(200, {
            "access_token": "at-1",
            "refresh_token": "rt-2",
            "expires_in": 1200,
        }))

        await executor.adapter.refresh_access_token(force=True)

        credential = await service.repository.fetch_credential("trader", "tradestation", Environment.PRODUCTION)
        assert credential.refresh_token == "rt-2"
        assert await service.executor_for("trader", "tradestation") is executor
