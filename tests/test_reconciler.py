import pytest

from autoexit.core.position import (
    ExecutionStatus, ExitExecution, ExitTrigger, PartialSellRecord, PositionStatus,
)
from autoexit.core.reconciler import Outcome, TransactionReconciler, classify_exit
from autoexit.data.chain import ChainStatus

TX = "0x" + "12" * 32


async def submitted(h, make_position, trigger=ExitTrigger.STOP_LOSS, amount_in=100.0, **pos_fields):
    await h.store.insert_position(make_position(status=PositionStatus.EXITING, pending_tx_hash=TX, **pos_fields))
    ex = ExitExecution("pos-1", TX, trigger, amount_in, amount_out_min=80.75, token_out_address="0xstable")
    await h.store.create_execution(ex)
    return ex


@pytest.mark.parametrize("trigger,pnl,expected", [
    (ExitTrigger.TAKE_PROFIT, -1.0, ExitTrigger.STOP_LOSS),
    (ExitTrigger.STOP_LOSS, 2.0, ExitTrigger.TAKE_PROFIT),
    (ExitTrigger.TAKE_PROFIT, 2.0, ExitTrigger.TAKE_PROFIT),
    (ExitTrigger.TRAILING_STOP, 2.0, ExitTrigger.TRAILING_STOP),
    (ExitTrigger.MANUAL, -5.0, ExitTrigger.MANUAL),
])
def test_classify_exit_follows_pnl_sign(trigger, pnl, expected):
    assert classify_exit(trigger, pnl) is expected


async def test_ambiguous_twice_then_confirmed(harness, make_position):
    h = harness
    ex = await submitted(h, make_position)
    h.chain.script = [ChainStatus(False, failure_reason="timeout"), ChainStatus(False, failure_reason="rpc_error")]
    h.chain.amount_out = 86.0

    result = await h.reconciler.settle("pos-1", ex)

    assert result.outcome is Outcome.CONFIRMED
    assert result.checks == 3
    assert not result.estimated
    pos = await h.store.get_position("pos-1")
    assert pos.status is PositionStatus.EXITED
    assert pos.exit_amount_usd == 86.0
    assert abs(pos.realized_pnl_usd - (-14.0)) < 1e-9
    assert abs(pos.realized_pnl_percent - (-14.0)) < 1e-9
    assert pos.pending_tx_hash is None
    [row] = await h.store.list_executions("pos-1")
    assert row.status is ExecutionStatus.CONFIRMED
    assert row.amount_out_usd == 86.0
    assert row.exit_classification is ExitTrigger.STOP_LOSS


async def test_missing_proceeds_fall_back_to_minimum(harness, make_position):
    h = harness
    ex = await submitted(h, make_position)
    result = await h.reconciler.settle("pos-1", ex)
    assert result.estimated
    pos = await h.store.get_position("pos-1")
    assert pos.exit_amount_usd == 80.75


async def test_pnl_counts_partials_and_fees(harness, make_position):
    h = harness
    ex = await submitted(h, make_position, trigger=ExitTrigger.TRAILING_STOP, amount_in=70.0,
                         current_token_balance=70.0, partial_sold_pct=30.0, partial_sold_usd=40.0,
                         entry_fee_usd=1.0)
    h.chain.script = [ChainStatus(True, actual_amount_out=70.0, gas_fee_usd=0.5)]
    await h.reconciler.settle("pos-1", ex)
    pos = await h.store.get_position("pos-1")
    assert pos.exit_amount_usd == 110.0
    assert pos.total_fees == 1.5
    assert abs(pos.realized_pnl_usd - 8.5) < 1e-9
    assert pos.exit_trigger is ExitTrigger.TRAILING_STOP
    assert (await h.store.trade_summary())["win_trades"] == 1


async def test_take_profit_at_a_loss_is_relabeled(harness, make_position):
    h = harness
    ex = await submitted(h, make_position, trigger=ExitTrigger.TAKE_PROFIT)
    h.chain.amount_out = 95.0
    await h.reconciler.settle("pos-1", ex)
    pos = await h.store.get_position("pos-1")
    assert pos.exit_trigger is ExitTrigger.TAKE_PROFIT
    assert pos.exit_classification is ExitTrigger.STOP_LOSS


async def test_unresolved_parks_the_position(harness, make_position):
    h = harness
    ex = await submitted(h, make_position)
    h.chain.script = [ChainStatus(False, failure_reason="timeout")] * h.cfg.reconcile.max_checks

    result = await h.reconciler.settle("pos-1", ex)

    assert result.outcome is Outcome.UNRESOLVED
    assert result.rearm and result.rearm_delay == h.cfg.monitor.rearm_cooldown_sec
    assert len(h.chain.calls) == h.cfg.reconcile.max_checks
    pos = await h.store.get_position("pos-1")
    assert pos.status is PositionStatus.HOLDING
    assert TX in pos.error_message
    assert pos.balance == 100.0
    [row] = await h.store.list_executions("pos-1")
    assert row.status is ExecutionStatus.UNCONFIRMED


async def test_first_revert_returns_to_holding(harness, make_position):
    h = harness
    ex = await submitted(h, make_position)
    h.chain.script = [ChainStatus(False, failure_reason="reverted")]
    result = await h.reconciler.settle("pos-1", ex)
    assert result.outcome is Outcome.REVERTED
    assert result.checks == 1
    assert result.rearm and not result.terminal
    pos = await h.store.get_position("pos-1")
    assert pos.status is PositionStatus.HOLDING
    assert pos.exit_revert_count == 1


async def test_partial_confirmation_books_the_rung(harness, make_position):
    h = harness
    ex = await submitted(h, make_position, trigger=ExitTrigger.PARTIAL_TP, amount_in=30.0,
                         partial_tp_enabled=True, partial_tp_rules=[(10, 30)], partial_tp_triggered={0})
    rec = PartialSellRecord("pos-1", 0, trigger_price=1.1, sell_percent=30.0, sell_amount_token=30.0,
                            profit_pct_trigger=10.0, actual_profit_pct=10.0, tx_hash=TX)
    await h.store.create_partial_sell(rec)
    h.chain.amount_out = 33.0

    result = await h.reconciler.settle("pos-1", ex, rec)

    assert result.rearm and result.rearm_delay == 0.0
    pos = await h.store.get_position("pos-1")
    assert pos.status is PositionStatus.HOLDING
    assert pos.current_token_balance == 70.0
    assert pos.partial_sold_pct == 30.0
    assert pos.partial_sold_usd == 33.0
    [stored] = await h.store.list_partial_sells("pos-1")
    assert stored.status is ExecutionStatus.CONFIRMED
    assert stored.sell_amount_usd == 33.0
    assert await h.store.count_partial_exits("pos-1") == 1
    await h.reconciler.drain()
    assert h.fees.calls[0][0] == 33.0


class GasPrice:
    def __init__(self, price):
        self.price = price
        self.chains = []

    async def native_price(self, chain):
        self.chains.append(chain)
        return self.price


async def test_native_gas_is_priced_into_fees(harness, make_position, cfg, logger):
    h = harness
    ex = await submitted(h, make_position, entry_fee_usd=0.5)
    h.chain.script = [ChainStatus(True, actual_amount_out=86.0, gas_fee_native=0.002)]
    gas = GasPrice(600.0)
    reconciler = TransactionReconciler(cfg, logger, h.store, h.chain, oracle=gas)

    result = await reconciler.settle("pos-1", ex)

    assert abs(result.gas_fee_usd - 1.2) < 1e-9
    assert gas.chains == ["BSC"]
    pos = await h.store.get_position("pos-1")
    assert abs(pos.total_fees - 1.7) < 1e-9
    assert abs(pos.realized_pnl_usd - (86.0 - 100.0 - 1.7)) < 1e-9
    [row] = await h.store.list_executions("pos-1")
    assert row.gas_fee_native == 0.002
    assert abs(row.gas_fee_usd - 1.2) < 1e-9


async def test_unpriced_gas_leaves_fees_alone(harness, make_position, cfg, logger):
    h = harness
    ex = await submitted(h, make_position)
    h.chain.script = [ChainStatus(True, actual_amount_out=86.0, gas_fee_native=0.002)]
    reconciler = TransactionReconciler(cfg, logger, h.store, h.chain, oracle=GasPrice(None))
    result = await reconciler.settle("pos-1", ex)
    assert result.gas_fee_usd is None
    pos = await h.store.get_position("pos-1")
    assert pos.total_fees == 0.0
    [row] = await h.store.list_executions("pos-1")
    assert row.gas_fee_native == 0.002 and row.gas_fee_usd is None
