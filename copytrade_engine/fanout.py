"""
Copy-Trade Engine - Copy-Trading Fan-Out.

============================================================
PURPOSE
============================================================
Replicates a leader's successful intent to every active
follower, scaled by the follower's allocation.

PER FOLLOWER (concurrently, bounded, isolated):
a. Re-check relationship status
b. follower_notional = leader_notional * allocation% / 100
c. Obtain the follower's executor (no credential -> skipped)
d. Margin gate (opening intents only)
e. Drawdown gate; past the stop the relationship is paused
   (opening intents only)
f. Execute the scaled intent tagged with the relationship id
g. Record a CopiedTrade whatever the outcome

A failing follower never affects another follower or the
leader.

============================================================
SETTLEMENT
============================================================
When a copied position closes, its P&L is booked into the
relationship's equity curve, the fee-eligible profit above the
high-water mark is computed and the override fee is split
between platform and leader.

============================================================
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .calculations import HUNDRED, ZERO, drawdown_percent, margin_allows, scale_notional
from .config import FanOutConfig
from .errors import CredentialNotFound, DrawdownExceeded
from .executor import TradeExecutor
from .fees import FeeBreakdown, apply_closed_trade, ensure_baseline, exceeds_drawdown_stop, split_fee
from .intent import TradeIntent
from .key_lock import KeyedLock
from .notifications import NotificationDispatcher
from .repository import CopyTradingStore
from .types import (
    CopiedTrade,
    CopyRelationship,
    Environment,
    ExecutionAction,
    ExecutionResult,
    RelationshipStatus,
    TradeRecord,
    utc_now,
)


logger = logging.getLogger(__name__)


ExecutorProvider = Callable[[str, str, Environment], Awaitable[TradeExecutor]]
"""Returns the executor for (owner, exchange, environment); raises CredentialNotFound."""


# ============================================================
# RESULTS
# ============================================================

class FollowerStatus(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class FollowerOutcome:
    relationship_id: str
    follower_id: str
    status: FollowerStatus
    follower_notional: Decimal = ZERO
    reason: Optional[str] = None
    result: Optional[ExecutionResult] = None
    copied_trade: Optional[CopiedTrade] = None


@dataclass
class FanOutSummary:
    """Result of replicating one leader intent."""

    leader_id: str
    symbol: str
    action: str
    outcomes: List[FollowerOutcome] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.outcomes)

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.status is FollowerStatus.SUCCEEDED)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if o.status is FollowerStatus.FAILED)

    @property
    def skipped(self) -> int:
        return sum(1 for o in self.outcomes if o.status is FollowerStatus.SKIPPED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "leader_id": self.leader_id,
            "symbol": self.symbol,
            "action": self.action,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "outcomes": [
                {
                    "relationship_id": o.relationship_id,
                    "follower_id": o.follower_id,
                    "status": o.status.value,
                    "follower_notional": str(o.follower_notional),
                    "reason": o.reason,
                }
                for o in self.outcomes
            ],
        }


# ============================================================
# ENGINE
# ============================================================

class CopyTradingEngine:
    """
    Fans leader intents out to followers and settles copied trades.
    """

    def __init__(
        self,
        store: CopyTradingStore,
        executor_provider: ExecutorProvider,
        notifier: Optional[NotificationDispatcher] = None,
        config: Optional[FanOutConfig] = None,
    ):
        self._store = store
        self._executor_provider = executor_provider
        self._notifier = notifier
        self._config = config or FanOutConfig()
        self._semaphore = asyncio.Semaphore(self._config.max_concurrency)
        self._relationship_locks = KeyedLock()

    # ============================================================
    # FAN-OUT
    # ============================================================

    async def fan_out(self, intent: TradeIntent, leader_result: ExecutionResult) -> FanOutSummary:
        """
        Replicate a leader intent to its followers.

        Only successful opens and closes are replicated.
        """
        summary = FanOutSummary(leader_id=intent.owner_id, symbol=intent.symbol, action=intent.action.value)
        if not leader_result.triggers_fan_out:
            return summary

        try:
            relationships = await self._store.list_active_relationships(intent.owner_id, intent.strategy_id)
        except Exception as e:
            logger.error(f"Could not load followers of {intent.owner_id}: {e}", exc_info=True)
            return summary

        if not relationships:
            return summary

        leader_notional = self._leader_notional(intent, leader_result)
        leader_ref = self._leader_ref(leader_result)

        logger.info(
            f"Fanning out {intent.action.value} {intent.symbol} from {intent.owner_id} "
            f"to {len(relationships)} follower(s)"
        )

        results = await asyncio.gather(
            *(self._bounded(rel, intent, leader_notional, leader_ref) for rel in relationships),
            return_exceptions=True,
        )

        for relationship, outcome in zip(relationships, results):
            if isinstance(outcome, BaseException):
                logger.error(f"Follower {relationship.follower_id} failed: {outcome}")
                outcome = FollowerOutcome(
                    relationship_id=relationship.id,
                    follower_id=relationship.follower_id,
                    status=FollowerStatus.FAILED,
                    reason=str(outcome),
                )
            summary.outcomes.append(outcome)

        logger.info(
            f"Fan-out of {intent.symbol} from {intent.owner_id} complete: "
            f"{summary.succeeded} succeeded, {summary.failed} failed, {summary.skipped} skipped"
        )
        return summary

    @staticmethod
    def _leader_notional(intent: TradeIntent, result: ExecutionResult) -> Decimal:
        if not intent.is_close:
            return intent.notional_usd
        if result.trade is not None:
            return result.trade.notional
        return ZERO

    @staticmethod
    def _leader_ref(result: ExecutionResult) -> Optional[str]:
        if result.trade is not None and result.trade.close_order_id:
            return result.trade.close_order_id
        if result.order is not None:
            return result.order.order_id
        return None

    async def _bounded(self, relationship, intent, leader_notional, leader_ref) -> FollowerOutcome:
        async with self._semaphore:
            return await self._replicate(relationship, intent, leader_notional, leader_ref)

    async def _replicate(
        self,
        relationship: CopyRelationship,
        intent: TradeIntent,
        leader_notional: Decimal,
        leader_ref: Optional[str],
    ) -> FollowerOutcome:
        follower_notional = scale_notional(leader_notional, relationship.allocation_percent)
        copied = CopiedTrade(
            relationship_id=relationship.id,
            follower_id=relationship.follower_id,
            leader_id=relationship.leader_id,
            strategy_id=intent.strategy_id,
            symbol=intent.symbol,
            action=intent.action,
            leader_notional=leader_notional,
            follower_notional=follower_notional,
            leader_trade_ref=leader_ref,
            success=False,
        )
        outcome = FollowerOutcome(
            relationship_id=relationship.id,
            follower_id=relationship.follower_id,
            status=FollowerStatus.SKIPPED,
            follower_notional=follower_notional,
            copied_trade=copied,
        )

        try:
            await self._run_follower(relationship, intent, follower_notional, copied, outcome)
        except Exception as e:
            logger.error(f"Copy to {relationship.follower_id} failed: {e}", exc_info=True)
            outcome.status = FollowerStatus.FAILED
            outcome.reason = str(e)

        copied.reason = outcome.reason
        await self._record(copied)
        return outcome

    async def _run_follower(
        self,
        relationship: CopyRelationship,
        intent: TradeIntent,
        follower_notional: Decimal,
        copied: CopiedTrade,
        outcome: FollowerOutcome,
    ) -> None:
        # a. status
        current = await self._store.get_relationship(relationship.id)
        if current is None or not current.is_active:
            outcome.reason = "relationship_inactive"
            return
        relationship = current

        if not intent.is_close and follower_notional <= ZERO:
            outcome.reason = "zero_allocation"
            return

        # c. executor
        try:
            executor = await self._executor_provider(
                relationship.follower_id,
                relationship.follower_exchange_id,
                relationship.follower_environment,
            )
        except CredentialNotFound as e:
            logger.warning(f"Skipping follower {relationship.follower_id}: {e.message}")
            outcome.reason = "no_credential"
            return

        copied.symbol = executor.adapter.normalize_symbol(intent.symbol)

        if not intent.is_close:
            # d. margin
            try:
                available = await executor.adapter.get_available_margin()
            except Exception as e:
                logger.warning(f"Margin check failed for follower {relationship.follower_id}: {e}")
                outcome.reason = "margin_check_failed"
                return
            if not margin_allows(available, follower_notional, self._config.margin_buffer_percent):
                outcome.reason = "insufficient_margin"
                return

            # e. drawdown
            async with self._relationship_locks.hold(relationship.id):
                if ensure_baseline(relationship, follower_notional):
                    await self._store.update_relationship(relationship)
                elif exceeds_drawdown_stop(relationship):
                    await self._pause(relationship)
                    error = DrawdownExceeded(
                        relationship.id,
                        drawdown_percent(relationship.high_water_mark, relationship.equity),
                        relationship.max_drawdown_stop,
                    )
                    logger.warning(str(error))
                    outcome.reason = "drawdown_exceeded"
                    return

        # f. execute
        follower_intent = intent.scaled(
            relationship.follower_id,
            relationship.follower_exchange_id,
            follower_notional,
            environment=relationship.follower_environment,
            copy_relationship_id=relationship.id,
        )
        result = await executor.execute(follower_intent)
        outcome.result = result

        copied.success = result.success
        if result.order is not None:
            copied.follower_order_id = result.order.order_id
        if result.trade is not None:
            copied.follower_trade_ref = result.trade.close_order_id

        if result.success and result.action in (ExecutionAction.OPENED, ExecutionAction.CLOSED):
            outcome.status = FollowerStatus.SUCCEEDED
        elif result.success:
            outcome.reason = result.message
        else:
            outcome.status = FollowerStatus.FAILED
            outcome.reason = result.error_code or result.message

    async def _record(self, copied: CopiedTrade) -> None:
        try:
            copied.id = await self._store.insert_copied_trade(copied)
        except Exception as e:
            logger.error(f"Failed to record copied trade for {copied.follower_id}: {e}")

    async def _pause(self, relationship: CopyRelationship) -> None:
        relationship.status = RelationshipStatus.PAUSED
        relationship.paused_at = utc_now()
        await self._store.update_relationship(relationship)
        logger.warning(
            f"Paused relationship {relationship.id} ({relationship.follower_id} <- {relationship.leader_id}) "
            f"at drawdown {relationship.current_drawdown:.2f}%"
        )
        if self._notifier is not None:
            self._notifier.relationship_paused(relationship)

    # ============================================================
    # SETTLEMENT
    # ============================================================

    async def settle_copied_trade(self, trade: TradeRecord) -> Optional[FeeBreakdown]:
        """
        Book a closed follower trade into its relationship.

        Returns the fee breakdown, or None for trades that are not
        copied trades.
        """
        relationship_id = trade.copy_relationship_id
        if relationship_id is None:
            return None

        async with self._relationship_locks.hold(relationship_id):
            relationship = await self._store.get_relationship(relationship_id)
            if relationship is None:
                logger.warning(f"Closed trade references unknown relationship {relationship_id}")
                return None

            update = apply_closed_trade(relationship, trade.realized_pnl)
            override = relationship.override_fee_percent
            if override is None:
                override = self._config.default_override_fee_percent
            fees = split_fee(update.fee_eligible_profit, override, self._config.platform_fee_share_percent)

            if relationship.is_active and exceeds_drawdown_stop(relationship, update.drawdown_percent):
                await self._pause(relationship)
            else:
                await self._store.update_relationship(relationship)

            copied = await self._store.find_open_copied_trade(relationship_id, trade.symbol)
            if copied is not None:
                _book_close(copied, trade, fees)
                await self._store.update_copied_trade(copied)
            else:
                logger.warning(f"No open copied trade for {relationship_id} {trade.symbol}")

        logger.info(
            f"Settled {trade.symbol} for relationship {relationship_id}: pnl={trade.realized_pnl:.2f} "
            f"equity={update.equity:.2f} hwm={update.high_water_mark:.2f} "
            f"fee_eligible={fees.fee_eligible_profit:.2f}"
        )

        if fees.override_fee > ZERO and self._notifier is not None and copied is not None:
            # Billing is per close leg; the record keeps the running totals
            self._notifier.copy_fee(relationship, replace(
                copied,
                realized_pnl=trade.realized_pnl,
                fee_eligible_profit=fees.fee_eligible_profit,
                override_fee=fees.override_fee,
                platform_fee=fees.platform_fee,
                leader_fee=fees.leader_fee,
            ))
        return fees


def _add(total: Optional[Decimal], amount: Decimal) -> Decimal:
    return amount if total is None else total + amount


def _book_close(copied: CopiedTrade, trade: TradeRecord, fees: FeeBreakdown) -> None:
    """
    Accumulate one close leg into the copied trade.

    A partial close leaves the copy open so later legs settle into the
    same record. Only the final leg sets the exit time.
    """
    copied.realized_pnl = _add(copied.realized_pnl, trade.realized_pnl)
    if copied.follower_notional:
        copied.realized_pnl_percent = copied.realized_pnl / copied.follower_notional * HUNDRED
    else:
        copied.realized_pnl_percent = trade.realized_pnl_percent
    copied.fee_eligible_profit = _add(copied.fee_eligible_profit, fees.fee_eligible_profit)
    copied.override_fee = _add(copied.override_fee, fees.override_fee)
    copied.platform_fee = _add(copied.platform_fee, fees.platform_fee)
    copied.leader_fee = _add(copied.leader_fee, fees.leader_fee)
    copied.follower_trade_ref = trade.close_order_id
    if not trade.partial:
        copied.exit_time = trade.exit_time


__all__ = [
    "CopyTradingEngine",
    "ExecutorProvider",
    "FanOutSummary",
    "FollowerOutcome",
    "FollowerStatus",
]
