"""Confirmation and accounting for submitted exits.

A submitted transaction ends in one of three ways:

CONFIRMED   balance, partial/sold totals and P&L are written from the real
            proceeds read off the chain (amountOutMin only as a fallback)
REVERTED    the only hard failure; counted per position, FAILED at the limit
UNRESOLVED  still ambiguous after ``max_checks`` checks; the execution is
            parked as UNCONFIRMED and the position goes back to HOLDING

``settle`` returns whether and when polling should be re-armed; it never
re-arms anything itself.
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Set

from autoexit.core.position import (
    DUST_TOKENS, ExecutionStatus, ExitExecution, ExitTrigger, PartialSellRecord,
    PositionStatus, utcnow,
)
from autoexit.data.chain import REVERTED, RPC_ERROR, ChainStatus, ReconcileHints
from autoexit.utils import events as topics
from autoexit.utils.logging_utils import jlog


class Outcome(str, Enum):
    CONFIRMED = "CONFIRMED"
    REVERTED = "REVERTED"
    UNRESOLVED = "UNRESOLVED"
    NOT_SUBMITTED = "NOT_SUBMITTED"


@dataclass
class ReconcileResult:
    outcome: Outcome
    amount_out: Optional[float] = None
    gas_fee_usd: Optional[float] = None
    gas_fee_native: Optional[float] = None
    reason: Optional[str] = None
    checks: int = 0
    estimated: bool = False
    rearm: bool = False
    rearm_delay: float = 0.0
    terminal: bool = False      # position left the open states


def classify_exit(trigger: ExitTrigger, pnl_usd: float) -> ExitTrigger:
    """Label a finished exit so the label agrees with the sign of the P&L."""
    if trigger is ExitTrigger.TAKE_PROFIT and pnl_usd < 0:
        return ExitTrigger.STOP_LOSS
    if trigger is ExitTrigger.STOP_LOSS and pnl_usd > 0:
        return ExitTrigger.TAKE_PROFIT
    return trigger


class TransactionReconciler:
    def __init__(self, cfg, logger: logging.Logger, store, chain, fees=None, events=None, oracle=None):
        self.cfg = cfg.reconcile
        self.rearm_cooldown = cfg.monitor.rearm_cooldown_sec
        self.logger = logger
        self.store = store
        self.chain = chain
        self.fees = fees
        self.events = events
        self.oracle = oracle
        self._fee_tasks: Set[asyncio.Task] = set()

    # ---------- confirmation ----------
    async def wait_for_outcome(self, tx_hash: str, chain: str, hints: ReconcileHints) -> ReconcileResult:
        reason = None
        for attempt in range(1, self.cfg.max_checks + 1):
            status = await self._check_once(tx_hash, chain, hints)
            if status.success:
                amount = status.actual_amount_out
                estimated = amount is None
                if estimated:
                    amount = hints.amount_out_min or 0.0
                    jlog(self.logger, "PROCEEDS_ESTIMATED", logging.WARNING, tx_hash=tx_hash,
                         amount_out_min=amount)
                return ReconcileResult(Outcome.CONFIRMED, amount_out=amount,
                                       gas_fee_usd=await self._gas_usd(chain, status),
                                       gas_fee_native=status.gas_fee_native, checks=attempt, estimated=estimated)
            if status.failure_reason == REVERTED:
                return ReconcileResult(Outcome.REVERTED, gas_fee_usd=await self._gas_usd(chain, status),
                                       gas_fee_native=status.gas_fee_native, reason=REVERTED, checks=attempt)
            reason = status.failure_reason or "unknown"
            jlog(self.logger, "RECONCILE_AMBIGUOUS", tx_hash=tx_hash, chain=chain, attempt=attempt,
                 max_checks=self.cfg.max_checks, reason=reason)
            if attempt < self.cfg.max_checks:
                await asyncio.sleep(self.cfg.recheck_delay_sec)
        return ReconcileResult(Outcome.UNRESOLVED, reason=reason, checks=self.cfg.max_checks)

    async def _gas_usd(self, chain: str, status: ChainStatus) -> Optional[float]:
        if status.gas_fee_usd is not None:
            return status.gas_fee_usd
        if not status.gas_fee_native or self.oracle is None:
            return None
        try:
            price = await self.oracle.native_price(chain)
        except Exception as e:
            self.logger.warning(f"gas coin price for {chain} failed: {e}")
            return None
        if price is None:
            jlog(self.logger, "GAS_UNPRICED", logging.WARNING, chain=chain, gas_fee_native=status.gas_fee_native)
            return None
        return status.gas_fee_native * price

    async def _check_once(self, tx_hash: str, chain: str, hints: ReconcileHints) -> ChainStatus:
        # the chain client bounds its own polling; this only guards a hung client
        limit = self.cfg.confirm_timeout_sec + self.cfg.confirm_poll_sec + 10.0
        try:
            return await asyncio.wait_for(self.chain.check(tx_hash, chain, hints), timeout=limit)
        except asyncio.TimeoutError:
            return ChainStatus(False, failure_reason="timeout")
        except Exception as e:
            self.logger.warning(f"chain status check failed for {tx_hash}: {e}")
            return ChainStatus(False, failure_reason=RPC_ERROR)

    # ---------- accounting ----------
    async def settle(self, position_id: str, execution: ExitExecution,
                     partial: Optional[PartialSellRecord] = None) -> ReconcileResult:
        pos = await self.store.get_position(position_id)
        if pos is None:
            self.logger.error(f"Position {position_id} vanished while reconciling {execution.tx_hash}")
            return ReconcileResult(Outcome.UNRESOLVED, reason="position missing")
        hints = ReconcileHints(wallet_address=pos.wallet_address,
                               token_out_address=execution.token_out_address,
                               amount_out_min=execution.amount_out_min)
        result = await self.wait_for_outcome(execution.tx_hash, pos.chain, hints)
        if result.outcome is Outcome.CONFIRMED:
            await self._confirmed(position_id, execution, partial, result)
        elif result.outcome is Outcome.REVERTED:
            await self._reverted(position_id, execution, partial, result)
        else:
            await self._unresolved(position_id, execution, partial, result)
        return result

    async def _confirmed(self, position_id: str, execution: ExitExecution,
                         partial: Optional[PartialSellRecord], result: ReconcileResult):
        pos = await self.store.get_position(position_id)
        now = utcnow()
        amount_out = result.amount_out or 0.0
        sold_tokens = min(execution.amount_in_token, pos.balance)
        balance = pos.balance - sold_tokens
        if balance <= DUST_TOKENS:
            balance = 0.0
        exit_fees = pos.exit_fees_usd + (result.gas_fee_usd or 0.0)

        await self.store.update_execution(execution.id, status=ExecutionStatus.CONFIRMED, confirmed_at=now,
                                          amount_out_usd=amount_out, gas_fee_native=result.gas_fee_native,
                                          gas_fee_usd=result.gas_fee_usd)

        if partial is not None:
            sold_pct = min(100.0, pos.partial_sold_pct + partial.sell_percent)
            sold_usd = pos.partial_sold_usd + amount_out
            await self.store.update_partial_sell(partial.id, status=ExecutionStatus.CONFIRMED,
                                                 sell_amount_usd=amount_out, confirmed_at=now)
            partial.sell_amount_usd = amount_out
            partial.tx_hash = execution.tx_hash
            await self.store.update_position(
                position_id, current_token_balance=balance, partial_sold_pct=sold_pct,
                partial_sold_usd=sold_usd, exit_fees_usd=exit_fees, pending_tx_hash=None,
                exit_revert_count=0, error_message=None,
                status=PositionStatus.HOLDING if balance > 0 else PositionStatus.EXITING,
            )
            pos = await self.store.get_position(position_id)
            await self.store.append_partial_exit(pos, partial, result.gas_fee_usd)
            jlog(self.logger, "PARTIAL_CONFIRMED", position_id=position_id, tx_hash=execution.tx_hash,
                 rule_index=partial.rule_index, sell_percent=partial.sell_percent, amount_out=amount_out,
                 balance=balance, estimated=result.estimated)
            self._publish(topics.PARTIAL_CONFIRMED, position_id=position_id, tx_hash=execution.tx_hash,
                          rule_index=partial.rule_index, amount_out=amount_out, balance=balance)
            self._collect_fee(pos, amount_out)
            if balance > 0:
                result.rearm, result.rearm_delay = True, 0.0
                return
            await self.finalize(position_id, ExitTrigger.PARTIAL_TP, 0.0, execution.id)
            result.terminal = True
            return

        await self.store.update_position(position_id, current_token_balance=balance, exit_fees_usd=exit_fees,
                                         pending_tx_hash=None)
        self._collect_fee(pos, amount_out)
        await self.finalize(position_id, execution.exit_type, amount_out, execution.id,
                            estimated=result.estimated)
        result.terminal = True

    async def finalize(self, position_id: str, trigger: ExitTrigger, last_exit_usd: float,
                       execution_id: Optional[int] = None, estimated: bool = False):
        """Close the position: proceeds of every confirmed sell against entry and fees."""
        pos = await self.store.get_position(position_id)
        proceeds = pos.partial_sold_usd + last_exit_usd
        total_fees = pos.entry_fee_usd + pos.exit_fees_usd
        pnl = proceeds - pos.entry_amount_usd - total_fees
        pnl_pct = pnl / pos.entry_amount_usd * 100.0 if pos.entry_amount_usd > 0 else 0.0
        label = classify_exit(trigger, pnl)
        now = utcnow()
        await self.store.update_position(
            position_id, status=PositionStatus.EXITED, current_token_balance=0.0, exit_trigger=trigger,
            exit_classification=label, exit_amount_usd=proceeds, realized_pnl_usd=pnl,
            realized_pnl_percent=pnl_pct, total_fees=total_fees, pending_tx_hash=None,
            error_message=None, closed_at=now,
        )
        if execution_id is not None:
            await self.store.update_execution(execution_id, exit_classification=label, realized_pnl_usd=pnl,
                                              realized_pnl_percent=pnl_pct, total_fees=total_fees)
        await self.store.append_trade_history(await self.store.get_position(position_id))
        if label is not trigger:
            jlog(self.logger, "EXIT_RELABELED", position_id=position_id, trigger=trigger.value,
                 classification=label.value, pnl_usd=pnl)
        jlog(self.logger, "EXIT_CONFIRMED", position_id=position_id, token=pos.token_symbol,
             trigger=trigger.value, classification=label.value, proceeds_usd=proceeds, pnl_usd=pnl,
             pnl_pct=pnl_pct, fees_usd=total_fees, estimated=estimated)
        self._publish(topics.EXIT_CONFIRMED, position_id=position_id, trigger=trigger.value,
                      classification=label.value, proceeds_usd=proceeds, pnl_usd=pnl, pnl_pct=pnl_pct)

    async def _reverted(self, position_id: str, execution: ExitExecution,
                        partial: Optional[PartialSellRecord], result: ReconcileResult):
        pos = await self.store.get_position(position_id)
        count = pos.exit_revert_count + 1
        message = f"exit tx {execution.tx_hash} reverted on-chain ({count}/{self.cfg.max_hard_failures})"
        await self.store.update_execution(execution.id, status=ExecutionStatus.REVERTED, error_message=message,
                                          gas_fee_native=result.gas_fee_native, gas_fee_usd=result.gas_fee_usd)
        if partial is not None:
            await self.store.update_partial_sell(partial.id, status=ExecutionStatus.FAILED)
        exit_fees = pos.exit_fees_usd + (result.gas_fee_usd or 0.0)
        if count >= self.cfg.max_hard_failures:
            await self.store.update_position(position_id, status=PositionStatus.FAILED, exit_revert_count=count,
                                             exit_fees_usd=exit_fees, pending_tx_hash=None,
                                             error_message=message + "; manual action required")
            jlog(self.logger, "EXIT_FAILED", logging.ERROR, position_id=position_id, tx_hash=execution.tx_hash,
                 reverts=count)
            self._publish(topics.EXIT_FAILED, position_id=position_id, tx_hash=execution.tx_hash,
                          reason=message)
            result.terminal = True
            return
        await self.store.update_position(position_id, status=PositionStatus.HOLDING, exit_revert_count=count,
                                         exit_fees_usd=exit_fees, pending_tx_hash=None, error_message=message)
        jlog(self.logger, "EXIT_REVERTED", logging.WARNING, position_id=position_id, tx_hash=execution.tx_hash,
             reverts=count)
        self._publish(topics.EXIT_REVERTED, position_id=position_id, tx_hash=execution.tx_hash, reverts=count)
        result.rearm, result.rearm_delay = True, self.rearm_cooldown

    async def _unresolved(self, position_id: str, execution: ExitExecution,
                          partial: Optional[PartialSellRecord], result: ReconcileResult):
        message = (f"exit tx {execution.tx_hash} unconfirmed after {result.checks} checks "
                   f"({result.reason}); verify on-chain")
        await self.store.update_execution(execution.id, status=ExecutionStatus.UNCONFIRMED, error_message=message)
        if partial is not None:
            await self.store.update_partial_sell(partial.id, status=ExecutionStatus.UNCONFIRMED)
        await self.store.update_position(position_id, status=PositionStatus.HOLDING, pending_tx_hash=None,
                                         error_message=message)
        jlog(self.logger, "RECONCILE_UNRESOLVED", logging.WARNING, position_id=position_id,
             tx_hash=execution.tx_hash, checks=result.checks, reason=result.reason)
        self._publish(topics.EXIT_UNRESOLVED, position_id=position_id, tx_hash=execution.tx_hash,
                      reason=result.reason)
        result.rearm, result.rearm_delay = True, self.rearm_cooldown

    # ---------- side effects ----------
    def _publish(self, topic: str, **payload):
        if self.events is not None:
            self.events.publish(topic, **payload)

    def _collect_fee(self, pos, amount_usd: float):
        if self.fees is None or amount_usd <= 0:
            return
        task = asyncio.create_task(self._fee(pos, amount_usd))
        self._fee_tasks.add(task)
        task.add_done_callback(self._fee_tasks.discard)

    async def _fee(self, pos, amount_usd: float):
        identities = {"positionId": pos.id, "userId": pos.user_id, "ownerIdentity": pos.owner_identity,
                      "walletAddress": pos.wallet_address}
        try:
            await self.fees.collect(amount_usd, "SELL", pos.chain, identities)
            jlog(self.logger, "FEE_COLLECTED", position_id=pos.id, amount_usd=amount_usd)
        except Exception as e:
            self.logger.warning(f"Fee collection failed for {pos.id}: {e}")

    async def drain(self):
        if self._fee_tasks:
            await asyncio.gather(*list(self._fee_tasks), return_exceptions=True)

    async def close(self):
        await self.drain()
        for client in (self.chain, self.fees):
            closer = getattr(client, "close", None)
            if closer is not None:
                await closer()
