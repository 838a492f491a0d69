import asyncio
import logging
from types import SimpleNamespace

import pytest

from autoexit.config import Config
from autoexit.core.executor import ExitExecutor
from autoexit.core.position import PartialTpRule, Position, StopLossType
from autoexit.core.reconciler import TransactionReconciler
from autoexit.data.chain import ChainStatus
from autoexit.data.swap import SwapBuild
from autoexit.monitor import PositionMonitor
from autoexit.utils.db import PositionStore
from autoexit.utils.events import EventChannel
from autoexit.utils.exit import ExitRuleEngine

WALLET = "0x1111111111111111111111111111111111111111"
OWNER = "owner-1"


class FakeOracle:
    """Walks a price path; the last price repeats. None entries mean 'unavailable'."""

    def __init__(self, prices=None):
        self.prices = list(prices or [])
        self.calls = []

    async def get_price(self, symbol, chain, classification, contract_address=None):
        self.calls.append((symbol, chain, classification, contract_address))
        if not self.prices:
            return None
        if len(self.prices) > 1:
            return self.prices.pop(0)
        return self.prices[0]

    async def close(self):
        pass


class FakeSwapBuilder:
    def __init__(self):
        self.requests = []
        self.needs_approval = False
        self.error = None

    async def build(self, req):
        self.requests.append(req)
        if self.error is not None:
            raise self.error
        expected = req.amount_in * (req.reference_price or 1.0)
        return SwapBuild(
            unsigned_swap_tx={"to": "0xrouter", "data": "0xswap"},
            needs_approval=self.needs_approval,
            unsigned_approval_tx={"to": "0xtoken", "data": "0xapprove"} if self.needs_approval else None,
            amount_out_min=expected * (1 - req.slippage_percent / 100.0),
            token_out_address="0xstable",
        )

    async def close(self):
        pass


class FakeSigner:
    """Each call consumes one scripted item: a hash string or an exception to raise."""

    def __init__(self):
        self.script = []
        self.calls = []
        self._n = 0

    async def sign_and_send(self, owner_identity, unsigned_tx, chain):
        self.calls.append((owner_identity, unsigned_tx, chain))
        if self.script:
            item = self.script.pop(0)
            if isinstance(item, BaseException):
                raise item
            return item
        self._n += 1
        return "0x" + format(self._n, "064x")

    async def close(self):
        pass


class FakeChain:
    """Scripted chain statuses; once the script runs out every check succeeds with ``amount_out``."""

    def __init__(self):
        self.script = []
        self.amount_out = None
        self.gate = None
        self.calls = []

    async def check(self, tx_hash, chain, hints):
        self.calls.append((tx_hash, chain, hints))
        if self.gate is not None:
            await self.gate.wait()
        if self.script:
            return self.script.pop(0)
        return ChainStatus(True, actual_amount_out=self.amount_out)

    async def close(self):
        pass


class FakeFees:
    def __init__(self):
        self.calls = []

    async def collect(self, trade_amount_usd, side, chain, identities):
        self.calls.append((trade_amount_usd, side, chain, identities))
        return {"ok": True}


def fast_config():
    cfg = Config()
    cfg.monitor.poll_interval_sec = 0.01
    cfg.monitor.rearm_cooldown_sec = 0.05
    cfg.monitor.tick_timeout_sec = 1.0
    cfg.oracle.venue_timeout_sec = 0.5
    cfg.stops.time_decay_enabled = False
    cfg.execution.approval_settle_sec = 0
    cfg.execution.signer_timeout_sec = 1.0
    cfg.execution.builder_timeout_sec = 1.0
    cfg.reconcile.recheck_delay_sec = 0
    cfg.reconcile.confirm_timeout_sec = 0.5
    cfg.reconcile.confirm_poll_sec = 0.01
    cfg.logging.json = False
    return cfg


def new_position(**overrides) -> Position:
    fields = dict(
        id="pos-1",
        token_symbol="TOK",
        chain="BSC",
        wallet_address=WALLET,
        contract_address="0x2222222222222222222222222222222222222222",
        entry_price=1.0,
        entry_amount_token=100.0,
        entry_amount_usd=100.0,
        current_token_balance=100.0,
        stop_loss_price=0.9,
        take_profit_price=1.2,
        stop_loss_type=StopLossType.FIXED,
        is_alpha_token=True,
        owner_identity=OWNER,
    )
    fields.update(overrides)
    if "partial_tp_rules" in fields:
        fields["partial_tp_rules"] = [r if isinstance(r, PartialTpRule) else PartialTpRule(*r)
                                      for r in fields["partial_tp_rules"]]
    return Position(**fields)


@pytest.fixture
def cfg():
    return fast_config()


@pytest.fixture
def logger():
    return logging.getLogger("autoexit.tests")


@pytest.fixture
def make_position():
    return new_position


@pytest.fixture
async def store(tmp_path):
    s = await PositionStore.connect(str(tmp_path / "autoexit.db"))
    await s.upsert_wallet(WALLET, OWNER, user_id="user-1")
    yield s
    await s.close()


@pytest.fixture
def eventually():
    async def wait(predicate, timeout=3.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            result = predicate()
            if asyncio.iscoroutine(result):
                result = await result
            if result:
                return result
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.01)
    return wait


@pytest.fixture
async def harness(cfg, logger, store):
    """A PositionMonitor wired to a real store and rule engine with faked venues and chain."""
    oracle = FakeOracle()
    builder = FakeSwapBuilder()
    signer = FakeSigner()
    chain = FakeChain()
    fees = FakeFees()
    events = EventChannel(logger)
    published = []
    events.subscribe(lambda topic, payload: published.append((topic, payload)))
    executor = ExitExecutor(cfg, logger, builder, signer)
    reconciler = TransactionReconciler(cfg, logger, store, chain, fees=fees, events=events)
    monitor = PositionMonitor(cfg, logger, store, oracle, ExitRuleEngine(cfg), executor, reconciler, events)
    h = SimpleNamespace(cfg=cfg, store=store, oracle=oracle, builder=builder, signer=signer, chain=chain,
                        fees=fees, events=events, published=published, monitor=monitor,
                        reconciler=reconciler, executor=executor)
    yield h
    await monitor.shutdown(wait_for_exits=False)
    pending = list(monitor._pipelines.values())
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)
    await reconciler.drain()
