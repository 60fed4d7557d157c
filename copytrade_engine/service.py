"""
Copy-Trade Engine - Execution Service.

============================================================
PURPOSE
============================================================
Main entry point. Wires the engine together and owns its
lifecycle.

============================================================
WORKFLOW
============================================================
1. Validate the inbound payload into a TradeIntent
2. Resolve the account's executor (credential -> adapter)
3. Execute under the per-symbol lock
4. Leader results that opened or closed a position are fanned
   out to followers as a detached task
5. Closed copied positions are settled as a detached task
6. Return the ExecutionResult

Adapters are cached per account and rebuilt when the account's
credential changes. Rotated OAuth refresh tokens are persisted
and the credential cache entry is dropped.

============================================================
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple, Union

from pydantic import ValidationError as SchemaValidationError

from storage.database import Database

from .adapters import AdapterFactory, ExchangeAdapter, RetryPolicy
from .config import EngineConfig
from .credentials import CredentialResolver
from .errors import CredentialNotFound, ValidationError
from .executor import TradeExecutor
from .fanout import CopyTradingEngine, FanOutSummary
from .intent import TradeIntent
from .key_lock import KeyedLock
from .notifications import NotificationDispatcher, TelegramNotifier
from .position_tracker import PositionTracker
from .reconciler import PositionReconciler, SyncResult, UpdateResult
from .repository import TradingRepository
from .types import Credential, Environment, ExecutionResult, TradeRecord


logger = logging.getLogger(__name__)


AccountKey = Tuple[str, str, str]


def _fingerprint(credential: Credential) -> Tuple[Any, ...]:
    # A rotated refresh token alone does not invalidate a live adapter
    return (
        credential.api_key,
        credential.api_secret,
        credential.passphrase,
        credential.access_token,
        credential.access_token_secret,
        credential.account_id,
        credential.pin,
        credential.environment,
        tuple(sorted(credential.extra.items())),
    )


class ExecutionService:
    """
    Owns the tracker, locks, resolver, reconciler, fan-out engine
    and notification dispatch for one process.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        database: Optional[Database] = None,
        repository: Optional[TradingRepository] = None,
        notifier: Optional[NotificationDispatcher] = None,
        adapter_factory: type = AdapterFactory,
    ):
        self._config = config or EngineConfig.from_env()
        self._db = database or Database(
            self._config.database.url,
            echo=self._config.database.echo,
            pool_size=self._config.database.pool_size,
        )
        self._repository = repository or TradingRepository(self._db)
        self._adapter_factory = adapter_factory

        self._tracker = PositionTracker()
        self._locks = KeyedLock()
        self._resolver = CredentialResolver(self._repository, self._config.credentials)
        self._retry_policy = RetryPolicy(self._config.retry)

        self._telegram: Optional[TelegramNotifier] = None
        if notifier is None:
            sinks = []
            if self._config.notifications.telegram_enabled:
                self._telegram = TelegramNotifier(self._config.notifications)
                sinks.append(self._telegram)
            notifier = NotificationDispatcher(sinks, self._config.notifications)
        self._notifier = notifier

        self._executors: Dict[AccountKey, Tuple[Tuple[Any, ...], TradeExecutor]] = {}
        self._executor_locks = KeyedLock()

        self._reconciler = PositionReconciler(
            self._tracker,
            self._adapter_for,
            self._locks,
            store=self._repository,
            config=self._config.reconciler,
        )
        self._copy_engine = CopyTradingEngine(
            self._repository,
            self.executor_for,
            notifier=self._notifier,
            config=self._config.fan_out,
        )

        self._tasks: Set[asyncio.Task] = set()
        self._running = False

    # ============================================================
    # PROPERTIES
    # ============================================================

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def tracker(self) -> PositionTracker:
        return self._tracker

    @property
    def reconciler(self) -> PositionReconciler:
        return self._reconciler

    @property
    def copy_engine(self) -> CopyTradingEngine:
        return self._copy_engine

    @property
    def repository(self) -> TradingRepository:
        return self._repository

    # ============================================================
    # LIFECYCLE
    # ============================================================

    async def start(self, create_schema: bool = False) -> None:
        if self._running:
            return
        logger.info("Starting Execution Service...")

        if create_schema:
            await self._db.create_all()

        for position in await self._repository.load_positions():
            self._tracker.add(position)
        if len(self._tracker):
            logger.info(f"Restored {len(self._tracker)} persisted position(s)")

        if self._config.reconciler.sync_on_start:
            await self._reconciler.sync_accounts(await self._repository.list_accounts())

        if self._config.reconciler.enabled:
            self._reconciler.start()

        self._running = True
        logger.info("Execution Service started")

    async def stop(self, timeout: float = 10.0) -> None:
        logger.info("Stopping Execution Service...")
        self._running = False

        await self._reconciler.stop()

        if self._tasks:
            done, pending = await asyncio.wait(list(self._tasks), timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning(f"Cancelled {len(pending)} background task(s) on shutdown")

        await self._notifier.drain(timeout)
        if self._telegram is not None:
            await self._telegram.close()

        for _, executor in self._executors.values():
            await executor.adapter.disconnect()
        self._executors.clear()

        await self._db.disconnect()
        logger.info("Execution Service stopped")

    # ============================================================
    # INTENTS
    # ============================================================

    async def handle_intent(self, payload: Union[TradeIntent, Dict[str, Any]]) -> ExecutionResult:
        """
        Validate and execute one intent.

        Leader fan-out and copied-trade settlement run detached;
        the returned result never waits for them.
        """
        try:
            intent = payload if isinstance(payload, TradeIntent) else TradeIntent.model_validate(payload)
        except SchemaValidationError as e:
            logger.warning(f"Invalid trade intent: {e.error_count()} error(s)")
            return ExecutionResult.rejected(f"Invalid trade intent: {e}", ValidationError.code)

        try:
            executor = await self.executor_for(intent.owner_id, intent.exchange_id, intent.environment)
        except CredentialNotFound as e:
            logger.warning(str(e))
            return ExecutionResult.rejected(e.message, e.code)
        except ValueError as e:
            logger.error(f"Cannot build adapter for {intent.owner_id}/{intent.exchange_id}: {e}")
            return ExecutionResult.rejected(str(e), ValidationError.code)

        result = await executor.execute(intent)

        if result.triggers_fan_out and intent.copy_relationship_id is None:
            self._spawn(self._copy_engine.fan_out(intent, result), f"fan-out:{intent.owner_id}:{intent.symbol}")
        return result

    async def fan_out(self, intent: TradeIntent, result: ExecutionResult) -> FanOutSummary:
        """Run a fan-out inline (used by tools and tests)."""
        return await self._copy_engine.fan_out(intent, result)

    # ============================================================
    # EXECUTORS
    # ============================================================

    async def executor_for(
        self,
        owner_id: str,
        exchange_id: str,
        environment: Environment = Environment.PRODUCTION,
    ) -> TradeExecutor:
        """
        Executor for an account, built on first use.

        Raises:
            CredentialNotFound: no credential for the account
            ValueError: the credential cannot drive the exchange's adapter
        """
        exchange_id = exchange_id.lower()
        credential = await self._resolver.resolve(owner_id, exchange_id, environment)
        if credential is None:
            raise CredentialNotFound(owner_id, exchange_id, environment.value)

        key = (owner_id, exchange_id, environment.value)
        fingerprint = _fingerprint(credential)

        async with self._executor_locks.hold((owner_id, exchange_id)):
            await self._switch_environment(owner_id, exchange_id, environment)
            cached = self._executors.get(key)
            if cached is not None and cached[0] == fingerprint:
                return cached[1]
            if cached is not None:
                logger.info(f"Credential changed for {owner_id}/{exchange_id}, rebuilding adapter")
                await cached[1].adapter.disconnect()

            adapter = self._adapter_factory.create_for_credential(
                credential,
                retry_policy=self._retry_policy,
                timeout_config=self._config.timeout,
                on_token_rotated=self._token_rotated(owner_id, exchange_id, environment),
            )
            await adapter.connect()

            executor = TradeExecutor(
                owner_id,
                adapter,
                self._tracker,
                self._locks,
                store=self._repository,
                notifier=self._notifier,
                config=self._config.executor,
                on_trade_closed=self._on_trade_closed,
            )
            self._executors[key] = (fingerprint, executor)
            logger.info(f"Executor ready for {owner_id} on {exchange_id} ({environment.value})")
            return executor

    async def _switch_environment(self, owner_id: str, exchange_id: str, environment: Environment) -> None:
        """
        Positions are tracked per (owner, exchange, symbol), so an account
        trades in one environment at a time. Switching is allowed while flat.

        Raises:
            ValueError: the account still holds positions in the other environment
        """
        for owner, exchange, env in list(self._executors):
            if (owner, exchange) != (owner_id, exchange_id) or env == environment.value:
                continue
            if self._tracker.list_for(owner_id, exchange_id):
                raise ValueError(
                    f"{owner_id}/{exchange_id} has open {env} positions; "
                    f"close them before trading {environment.value}"
                )
            _, stale = self._executors.pop((owner, exchange, env))
            await stale.adapter.disconnect()
            logger.info(f"{owner_id}/{exchange_id} switched from {env} to {environment.value}")

    async def _adapter_for(self, owner_id: str, exchange_id: str) -> Optional[ExchangeAdapter]:
        for (owner, exchange, _), (_, executor) in self._executors.items():
            if owner == owner_id and exchange == exchange_id:
                return executor.adapter
        try:
            return (await self.executor_for(owner_id, exchange_id)).adapter
        except (CredentialNotFound, ValueError) as e:
            logger.warning(f"No adapter for {owner_id}/{exchange_id}: {e}")
            return None

    def _token_rotated(
        self,
        owner_id: str,
        exchange_id: str,
        environment: Environment,
    ) -> Callable[[str], Awaitable[None]]:
        async def store_rotated_token(refresh_token: str) -> None:
            await self._repository.update_refresh_token(owner_id, exchange_id, environment, refresh_token)
            self._resolver.invalidate(owner_id, exchange_id, environment)

        return store_rotated_token

    def invalidate_credentials(self, owner_id: str, exchange_id: str) -> int:
        return self._resolver.invalidate(owner_id, exchange_id)

    # ============================================================
    # POSITIONS
    # ============================================================

    def positions_summary(self, owner_id: Optional[str] = None, exchange_id: Optional[str] = None) -> Dict[str, Any]:
        return self._tracker.summary(owner_id, exchange_id)

    async def force_reconcile(self) -> UpdateResult:
        return await self._reconciler.force_update()

    async def sync_account(self, owner_id: str, exchange_id: str) -> SyncResult:
        return await self._reconciler.sync(owner_id, exchange_id.lower())

    # ============================================================
    # BACKGROUND TASKS
    # ============================================================

    def _on_trade_closed(self, trade: TradeRecord) -> None:
        if trade.copy_relationship_id is not None:
            self._spawn(
                self._copy_engine.settle_copied_trade(trade),
                f"settle:{trade.copy_relationship_id}:{trade.symbol}",
            )

    def _spawn(self, coro: Awaitable[Any], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background task {task.get_name()} failed: {error}")

    async def wait_for_background(self) -> None:
        """Wait until detached fan-out and settlement tasks finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
