import asyncio
import logging
from typing import Dict, Iterable, List, Optional

from autoexit.core.executor import ExitExecutor, SubmissionError
from autoexit.core.oracle import PriceOracle
from autoexit.core.position import (
    DUST_TOKENS, ExecutionStatus, ExitDecision, ExitExecution, ExitTrigger, PartialSellRecord,
    Position, PositionStatus,
)
from autoexit.core.reconciler import Outcome, ReconcileResult, TransactionReconciler
from autoexit.core.registry import MonitorEntry, MonitorRegistry
from autoexit.data.chain import JsonRpcChainStatus
from autoexit.data.fees import HttpFeeCollector
from autoexit.data.paper import PaperChainStatus, PaperLedger, PaperSigner, PaperSwapBuilder
from autoexit.data.signer import HttpRemoteSigner
from autoexit.data.swap import HttpSwapBuilder
from autoexit.data.venues import AlphaQuoteVenue, DexScreenerPoolVenue, JupiterPoolVenue
from autoexit.utils import events as topics
from autoexit.utils.classification import detect_misclassification, resolve_classification
from autoexit.utils.events import EventChannel
from autoexit.utils.exit import ExitRuleEngine, manual_decision
from autoexit.utils.logging_utils import jlog


class PositionMonitor:
    """
    One polling task per open position; each tick prices the token, runs the
    exit rules and hands fired decisions to an exit pipeline.

    A position is owned by exactly one of: its polling task, its exit
    pipeline, or a re-arm timer. The polling task is detached before the
    pipeline starts and the pipeline re-arms polling only once the
    transaction is resolved, so ticks never overlap an exit in flight.
    Stopping monitoring never cancels a pipeline.
    """

    def __init__(self, cfg, logger: logging.Logger, store, oracle: PriceOracle, rules: ExitRuleEngine,
                 executor: ExitExecutor, reconciler: TransactionReconciler,
                 events: Optional[EventChannel] = None):
        self.cfg = cfg
        self.logger = logger
        self.store = store
        self.oracle = oracle
        self.rules = rules
        self.executor = executor
        self.reconciler = reconciler
        self.events = events or EventChannel(logger)
        self.registry = MonitorRegistry()
        self._pipelines: Dict[str, asyncio.Task] = {}
        self._timers: Dict[str, asyncio.Task] = {}
        self._closing = False

    @classmethod
    def from_config(cls, cfg, logger: logging.Logger, store, events: Optional[EventChannel] = None):
        events = events or EventChannel(logger)
        venues = []
        if cfg.oracle.alpha.enabled:
            venues.append(AlphaQuoteVenue(cfg, logger))
        if cfg.oracle.dexscreener.enabled:
            venues.append(DexScreenerPoolVenue(cfg, logger))
        if cfg.oracle.jupiter.enabled:
            venues.append(JupiterPoolVenue(cfg, logger))

        if cfg.mode == "live":
            builder = HttpSwapBuilder(cfg, logger)
            signer = HttpRemoteSigner(cfg, logger)
            chain = JsonRpcChainStatus(cfg, logger)
            fees = HttpFeeCollector(cfg, logger) if cfg.fees.enabled else None
        else:
            ledger = PaperLedger()
            builder = PaperSwapBuilder(ledger, logger)
            signer = PaperSigner(ledger, logger)
            chain = PaperChainStatus(ledger)
            fees = None

        oracle = PriceOracle(cfg, logger, venues)
        return cls(
            cfg, logger, store,
            oracle=oracle,
            rules=ExitRuleEngine(cfg),
            executor=ExitExecutor(cfg, logger, builder, signer),
            reconciler=TransactionReconciler(cfg, logger, store, chain, fees=fees, events=events,
                                             oracle=oracle),
            events=events,
        )

    # ---------- lifecycle ----------
    def is_monitoring(self, position_id: str) -> bool:
        return position_id in self.registry

    def exit_in_flight(self, position_id: str) -> bool:
        return position_id in self._pipelines

    def start(self, position_id: str) -> bool:
        """Attach a polling task. No-op while one exists or an exit is in flight."""
        if self._closing or position_id in self.registry or position_id in self._pipelines:
            return False
        self._cancel_timer(position_id)
        task = asyncio.create_task(self._poll(position_id), name=f"monitor:{position_id}")
        self.registry.add(MonitorEntry(position_id, task))
        jlog(self.logger, "MONITOR_START", position_id=position_id, active=len(self.registry))
        return True

    def stop(self, position_id: str) -> bool:
        timer = self._cancel_timer(position_id)
        stopped = self.registry.cancel(position_id)
        if stopped or timer:
            jlog(self.logger, "MONITOR_STOP", position_id=position_id, active=len(self.registry))
        return stopped or timer

    async def stop_all(self) -> int:
        for position_id in list(self._timers):
            self._cancel_timer(position_id)
        tasks = self.registry.cancel_all()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        jlog(self.logger, "MONITOR_STOP_ALL", stopped=len(tasks), exits_in_flight=len(self._pipelines))
        return len(tasks)

    async def shutdown(self, wait_for_exits: bool = True):
        self._closing = True
        await self.stop_all()
        if wait_for_exits and self._pipelines:
            jlog(self.logger, "SHUTDOWN_WAITING", exits_in_flight=sorted(self._pipelines))
            await asyncio.gather(*list(self._pipelines.values()), return_exceptions=True)
        await self.events.drain()

    async def close(self):
        await self.reconciler.close()
        await self.executor.close()
        await self.oracle.close()

    def status(self) -> dict:
        report = self.registry.status()
        report["exits_in_flight"] = sorted(self._pipelines)
        report["rearm_pending"] = sorted(self._timers)
        return report

    async def resume(self, position_ids: Optional[Iterable[str]] = None) -> int:
        """Re-attach open positions after a restart; returns how many were picked up."""
        wanted = set(position_ids) if position_ids else None
        picked = 0
        for pos in await self.store.list_positions([PositionStatus.HOLDING, PositionStatus.EXITING]):
            if wanted is not None and pos.id not in wanted:
                continue
            if pos.status is PositionStatus.EXITING and await self._recover(pos):
                picked += 1
                continue
            if self.start(pos.id):
                picked += 1
        jlog(self.logger, "RESUMED", positions=picked)
        return picked

    async def _recover(self, pos: Position) -> bool:
        execution = None
        if pos.pending_tx_hash:
            execution = await self.store.pending_execution(pos.id, pos.pending_tx_hash)
        if execution is None or execution.status is not ExecutionStatus.PENDING:
            await self.store.update_position(pos.id, status=PositionStatus.HOLDING, pending_tx_hash=None,
                                             error_message="exit interrupted before submission")
            jlog(self.logger, "RECOVER_HOLDING", position_id=pos.id)
            return False
        if pos.id in self._pipelines:
            return True
        partial = None
        if execution.exit_type is ExitTrigger.PARTIAL_TP:
            partial = await self.store.find_partial_sell(pos.id, execution.tx_hash)
        jlog(self.logger, "RECOVER_RECONCILE", position_id=pos.id, tx_hash=execution.tx_hash)
        self.registry.cancel(pos.id)
        task = asyncio.create_task(self._run_pipeline(pos.id, [], resume=(execution, partial)),
                                   name=f"exit:{pos.id}")
        self._pipelines[pos.id] = task
        return True

    # ---------- polling ----------
    async def _poll(self, position_id: str):
        try:
            while True:
                if await self.tick(position_id):
                    return
                await asyncio.sleep(self.cfg.monitor.poll_interval_sec)
        finally:
            entry = self.registry.get(position_id)
            if entry is not None and entry.task is asyncio.current_task():
                self.registry.detach(position_id)

    async def tick(self, position_id: str) -> bool:
        """One evaluation. Returns True when polling for this position is over."""
        try:
            return await self._tick(position_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            jlog(self.logger, "TICK_ERROR", logging.ERROR, position_id=position_id, error=str(e))
            await self._record_error(position_id, f"tick failed: {e}")
            return False

    async def _tick(self, position_id: str) -> bool:
        pos = await self.store.get_position(position_id)
        if pos is None:
            jlog(self.logger, "MONITOR_GONE", logging.WARNING, position_id=position_id)
            return True
        if pos.status is not PositionStatus.HOLDING:
            jlog(self.logger, "MONITOR_SKIP", position_id=position_id, status=pos.status.value)
            return True
        self.registry.refresh(pos)

        pos = await self._repair(pos)
        classification = resolve_classification(pos.is_alpha_token, pos.signal_source, pos.contract_address)
        try:
            price = await asyncio.wait_for(
                self.oracle.get_price(pos.token_symbol, pos.chain, classification, pos.contract_address),
                timeout=self.cfg.monitor.tick_timeout_sec,
            )
        except asyncio.TimeoutError:
            jlog(self.logger, "PRICE_TIMEOUT", logging.WARNING, position_id=position_id, token=pos.token_symbol)
            return False
        if price is None:
            return False

        ev = self.rules.evaluate(pos, price)
        if ev.updates:
            await self.store.update_position(position_id, **ev.updates)
        if ev.take_profit_repaired:
            jlog(self.logger, "TAKE_PROFIT_REPAIRED", position_id=position_id,
                 stored=pos.take_profit_price, repaired=ev.updates.get("take_profit_price"))
        if ev.stop_moved:
            stop = ev.updates["stop_loss_price"]
            jlog(self.logger, "STOP_UPDATED", position_id=position_id, token=pos.token_symbol,
                 old_stop=pos.stop_loss_price, new_stop=stop, type=ev.updates["stop_loss_type"].value)
            self.events.publish(topics.STOP_UPDATED, position_id=position_id, stop_loss_price=stop,
                                stop_loss_type=ev.updates["stop_loss_type"].value)
        jlog(self.logger, "TICK", logging.DEBUG, position_id=position_id, token=pos.token_symbol, price=price,
             stop=ev.updates.get("stop_loss_price", pos.stop_loss_price),
             pnl_pct=round(ev.updates["unrealized_pnl_percent"], 4))
        if not ev.fired:
            return False

        for decision in ev.decisions:
            self._announce(pos, decision)
        self._launch(position_id, ev.decisions)
        return True

    async def _repair(self, pos: Position) -> Position:
        fields = {}
        corrected = detect_misclassification(pos.is_alpha_token, pos.signal_source)
        if corrected is not None:
            jlog(self.logger, "CLASSIFICATION_REPAIRED", position_id=pos.id, signal_source=pos.signal_source,
                 stored=pos.is_alpha_token, corrected=corrected)
            fields["is_alpha_token"] = corrected
            pos.is_alpha_token = corrected
        if pos.current_token_balance is None:
            fields["current_token_balance"] = pos.entry_amount_token
            pos.current_token_balance = pos.entry_amount_token
        if fields:
            await self.store.update_position(pos.id, **fields)
        return pos

    async def _record_error(self, position_id: str, message: str):
        try:
            await self.store.update_position(position_id, error_message=message[:500])
        except Exception as e:
            self.logger.error(f"Could not record error for {position_id}: {e}")

    # ---------- exits ----------
    async def manual_exit(self, position_id: str, reason: str = "manual exit") -> Optional[asyncio.Task]:
        """Sell whatever is left now. Returns the pipeline task, or None when refused."""
        if position_id in self._pipelines:
            jlog(self.logger, "MANUAL_EXIT_REJECTED", position_id=position_id, reason="exit in flight")
            return None
        pos = await self.store.get_position(position_id)
        if pos is None or pos.status not in (PositionStatus.HOLDING, PositionStatus.FAILED):
            jlog(self.logger, "MANUAL_EXIT_REJECTED", position_id=position_id,
                 reason="not open" if pos is None else pos.status.value)
            return None
        if position_id in self._pipelines:
            return None
        self.stop(position_id)
        decision = manual_decision(pos, pos.current_price or pos.entry_price, reason)
        self._announce(pos, decision)
        return self._launch(position_id, [decision])

    def _announce(self, pos: Position, decision: ExitDecision):
        jlog(self.logger, "EXIT_TRIGGERED", position_id=pos.id, token=pos.token_symbol,
             trigger=decision.trigger.value, sell_pct=decision.sell_pct, price=decision.price,
             reason=decision.reason)
        self.events.publish(topics.EXIT_TRIGGERED, position_id=pos.id, trigger=decision.trigger.value,
                            sell_pct=decision.sell_pct, price=decision.price, rule_index=decision.rule_index)

    def _launch(self, position_id: str, decisions: List[ExitDecision]) -> asyncio.Task:
        self.registry.detach(position_id)
        task = asyncio.create_task(self._run_pipeline(position_id, decisions), name=f"exit:{position_id}")
        self._pipelines[position_id] = task
        return task

    async def _run_pipeline(self, position_id: str, decisions: List[ExitDecision], resume=None):
        delay = None
        try:
            result = None
            if resume is not None:
                result = await self.reconciler.settle(position_id, *resume)
            for decision in decisions:
                result = await self._execute(position_id, decision)
                if result.outcome is not Outcome.CONFIRMED or result.terminal:
                    break
            if result is not None and result.rearm:
                delay = result.rearm_delay
        except asyncio.CancelledError:
            raise
        except Exception as e:
            jlog(self.logger, "PIPELINE_ERROR", logging.ERROR, position_id=position_id, error=str(e))
            delay = await self._park(position_id, f"exit pipeline failed: {e}")
        finally:
            if self._pipelines.get(position_id) is asyncio.current_task():
                del self._pipelines[position_id]
        if delay is not None:
            self._schedule_rearm(position_id, delay)

    async def _execute(self, position_id: str, decision: ExitDecision) -> ReconcileResult:
        pos = await self.store.get_position(position_id)
        if pos is None or pos.status is PositionStatus.EXITED:
            return ReconcileResult(Outcome.NOT_SUBMITTED, reason="position closed", terminal=True)
        if pos.status is PositionStatus.FAILED and decision.trigger is not ExitTrigger.MANUAL:
            return ReconcileResult(Outcome.NOT_SUBMITTED, reason="position failed", terminal=True)
        if pos.balance <= DUST_TOKENS:
            jlog(self.logger, "ZERO_BALANCE_EXIT", position_id=position_id, trigger=decision.trigger.value)
            await self.reconciler.finalize(position_id, decision.trigger, 0.0)
            return ReconcileResult(Outcome.CONFIRMED, terminal=True)
        if not decision.full and decision.rule_index in pos.partial_tp_triggered:
            return ReconcileResult(Outcome.CONFIRMED, rearm=True, rearm_delay=0.0)
        if pos.status is not PositionStatus.EXITING:
            await self.store.update_position(position_id, status=PositionStatus.EXITING, error_message=None)

        partial = None
        if not decision.full:
            rule = pos.partial_tp_rules[decision.rule_index]
            partial = PartialSellRecord(
                position_id=position_id, rule_index=decision.rule_index, trigger_price=decision.price,
                sell_percent=decision.sell_pct, sell_amount_token=decision.token_amount(pos),
                profit_pct_trigger=rule.profit_pct, actual_profit_pct=pos.profit_pct(decision.price),
            )
            await self.store.create_partial_sell(partial)

        try:
            handle = await self.executor.submit(pos, decision)
        except SubmissionError as e:
            if partial is not None:
                await self.store.update_partial_sell(partial.id, status=ExecutionStatus.FAILED)
            await self.store.update_position(position_id, status=PositionStatus.HOLDING, error_message=str(e))
            cooldown = self.cfg.monitor.rearm_cooldown_sec
            jlog(self.logger, "EXIT_SUBMIT_FAILED", logging.WARNING, position_id=position_id,
                 trigger=decision.trigger.value, error=str(e), retry_in=cooldown)
            self.events.publish(topics.EXIT_SUBMIT_FAILED, position_id=position_id, error=str(e))
            return ReconcileResult(Outcome.NOT_SUBMITTED, reason=str(e), rearm=True, rearm_delay=cooldown)

        execution = ExitExecution(
            position_id=position_id, tx_hash=handle.tx_hash, exit_type=decision.trigger,
            amount_in_token=handle.amount_in_token, amount_out_min=handle.amount_out_min,
            token_out_address=handle.token_out_address, submitted_at=handle.submitted_at,
        )
        await self.store.create_execution(execution)
        fields = {"pending_tx_hash": handle.tx_hash}
        if partial is not None:
            partial.tx_hash = handle.tx_hash
            await self.store.update_partial_sell(partial.id, tx_hash=handle.tx_hash)
            fields["partial_tp_triggered"] = set(pos.partial_tp_triggered) | {decision.rule_index}
        else:
            fields["exit_tx_hash"] = handle.tx_hash
        await self.store.update_position(position_id, **fields)
        jlog(self.logger, "EXIT_SUBMITTED", position_id=position_id, tx_hash=handle.tx_hash,
             trigger=decision.trigger.value, amount_in=handle.amount_in_token,
             recovered=handle.recovered_from_error)
        self.events.publish(topics.EXIT_SUBMITTED, position_id=position_id, tx_hash=handle.tx_hash,
                            trigger=decision.trigger.value)
        return await self.reconciler.settle(position_id, execution, partial)

    async def _park(self, position_id: str, message: str) -> Optional[float]:
        """Back to HOLDING after an unexpected pipeline error, unless a transaction may be in flight."""
        try:
            pos = await self.store.get_position(position_id)
            if pos is None or not pos.is_open():
                return None
            if pos.pending_tx_hash:
                # stays EXITING; resume() picks the hash up again
                await self.store.update_position(position_id, error_message=message[:500])
                return None
            await self.store.update_position(position_id, status=PositionStatus.HOLDING, error_message=message[:500])
        except Exception as e:
            self.logger.error(f"Could not park {position_id} after pipeline error: {e}")
            return None
        return self.cfg.monitor.rearm_cooldown_sec

    # ---------- re-arm ----------
    def _schedule_rearm(self, position_id: str, delay: float):
        if self._closing:
            return
        if delay <= 0:
            self.start(position_id)
            return
        self._cancel_timer(position_id)
        self._timers[position_id] = asyncio.create_task(self._rearm_later(position_id, delay),
                                                        name=f"rearm:{position_id}")
        jlog(self.logger, "REARM_SCHEDULED", position_id=position_id, delay_sec=delay)

    async def _rearm_later(self, position_id: str, delay: float):
        await asyncio.sleep(delay)
        if self._timers.get(position_id) is asyncio.current_task():
            del self._timers[position_id]
        self.start(position_id)

    def _cancel_timer(self, position_id: str) -> bool:
        timer = self._timers.pop(position_id, None)
        if timer is None or timer is asyncio.current_task():
            return False
        timer.cancel()
        return True
