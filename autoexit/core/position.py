from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Set

# Balances below this are treated as fully disposed (rounding dust).
DUST_TOKENS = 1e-9


class PositionStatus(str, Enum):
    HOLDING = "HOLDING"
    EXITING = "EXITING"
    EXITED = "EXITED"
    FAILED = "FAILED"


class StopLossType(str, Enum):
    FIXED = "FIXED"
    TRAILING = "TRAILING"


class ExitTrigger(str, Enum):
    STOP_LOSS = "STOP_LOSS"
    TRAILING_STOP = "TRAILING_STOP"
    TAKE_PROFIT = "TAKE_PROFIT"
    PARTIAL_TP = "PARTIAL_TP"
    MANUAL = "MANUAL"


class Classification(str, Enum):
    ALPHA = "alpha"      # aggregated off-chain quote venue first
    POOL = "pool"        # on-chain pool venue only
    UNKNOWN = "unknown"  # legacy rows, best effort


class ExecutionStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    REVERTED = "REVERTED"
    UNCONFIRMED = "UNCONFIRMED"
    FAILED = "FAILED"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PartialTpRule:
    profit_pct: float   # e.g. 10.0 => +10% over entry
    sell_pct: float     # percent of the original entry amount

    @classmethod
    def from_dict(cls, data) -> "PartialTpRule":
        return cls(
            profit_pct=float(data.get("profitPct", data.get("profit_pct"))),
            sell_pct=float(data.get("sellPct", data.get("sell_pct"))),
        )

    def to_dict(self) -> dict:
        return {"profitPct": self.profit_pct, "sellPct": self.sell_pct}


@dataclass
class Position:
    id: str
    token_symbol: str
    chain: str
    wallet_address: str
    entry_price: float
    entry_amount_token: float
    entry_amount_usd: float
    stop_loss_price: Optional[float]
    take_profit_price: Optional[float] = None
    contract_address: Optional[str] = None
    current_token_balance: Optional[float] = None
    stop_loss_type: StopLossType = StopLossType.FIXED
    partial_tp_enabled: bool = False
    partial_tp_rules: List[PartialTpRule] = field(default_factory=list)
    partial_tp_triggered: Set[int] = field(default_factory=set)
    partial_sold_pct: float = 0.0
    partial_sold_usd: float = 0.0
    is_alpha_token: Optional[bool] = None
    signal_id: Optional[str] = None
    signal_source: Optional[str] = None
    status: PositionStatus = PositionStatus.HOLDING
    # trailing / decay state
    highest_price: Optional[float] = None
    trailing_activated: bool = False
    last_stop_update_at: Optional[datetime] = None
    # last observation
    current_price: Optional[float] = None
    unrealized_pnl_usd: Optional[float] = None
    unrealized_pnl_percent: Optional[float] = None
    # accounting
    entry_fee_usd: float = 0.0
    exit_fees_usd: float = 0.0
    pending_tx_hash: Optional[str] = None
    exit_tx_hash: Optional[str] = None
    exit_trigger: Optional[ExitTrigger] = None
    exit_classification: Optional[ExitTrigger] = None
    exit_amount_usd: Optional[float] = None
    realized_pnl_usd: Optional[float] = None
    realized_pnl_percent: Optional[float] = None
    total_fees: Optional[float] = None
    exit_revert_count: int = 0
    error_message: Optional[str] = None
    opened_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    # joined context (read-only, never written back to the positions table)
    owner_identity: Optional[str] = None
    user_id: Optional[str] = None
    signal_take_profit: Optional[float] = None

    @property
    def balance(self) -> float:
        """Tokens still held; a missing balance means nothing was sold yet."""
        if self.current_token_balance is None:
            return self.entry_amount_token
        return max(0.0, self.current_token_balance)

    @property
    def remaining_pct(self) -> float:
        return max(0.0, 100.0 - self.partial_sold_pct)

    def profit_pct(self, price: float) -> float:
        if self.entry_price <= 0:
            return 0.0
        return (price - self.entry_price) / self.entry_price * 100.0

    def age_sec(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        return int((now - self.opened_at).total_seconds())

    def is_open(self) -> bool:
        return self.status in (PositionStatus.HOLDING, PositionStatus.EXITING)


@dataclass
class ExitDecision:
    trigger: ExitTrigger
    sell_pct: float                 # percent of the original entry amount
    price: float
    full: bool = True               # sells the whole remaining balance
    rule_index: Optional[int] = None
    reason: str = ""

    @property
    def sell_fraction(self) -> float:
        return self.sell_pct / 100.0

    def token_amount(self, position: Position) -> float:
        if self.full:
            return position.balance
        return min(position.balance, position.entry_amount_token * self.sell_fraction)


@dataclass
class ExitExecution:
    position_id: str
    tx_hash: str
    exit_type: ExitTrigger
    amount_in_token: float
    amount_out_min: Optional[float] = None
    token_out_address: Optional[str] = None
    submitted_at: datetime = field(default_factory=utcnow)
    confirmed_at: Optional[datetime] = None
    status: ExecutionStatus = ExecutionStatus.PENDING
    amount_out_usd: Optional[float] = None
    exit_classification: Optional[ExitTrigger] = None
    realized_pnl_usd: Optional[float] = None
    realized_pnl_percent: Optional[float] = None
    total_fees: Optional[float] = None
    gas_fee_native: Optional[float] = None
    gas_fee_usd: Optional[float] = None
    error_message: Optional[str] = None
    id: Optional[int] = None


@dataclass
class PartialSellRecord:
    position_id: str
    rule_index: int
    trigger_price: float
    sell_percent: float
    sell_amount_token: float
    profit_pct_trigger: float = 0.0
    actual_profit_pct: float = 0.0
    sell_amount_usd: Optional[float] = None
    tx_hash: Optional[str] = None
    status: ExecutionStatus = ExecutionStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    confirmed_at: Optional[datetime] = None
    id: Optional[int] = None
