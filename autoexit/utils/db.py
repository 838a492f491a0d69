import json
import os
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

import aiosqlite

from autoexit.core.position import (
    ExecutionStatus, ExitExecution, ExitTrigger, PartialSellRecord, PartialTpRule,
    Position, PositionStatus, StopLossType, utcnow,
)

SCHEMA = """
PRAGMA journal_mode=WAL;
CREATE TABLE IF NOT EXISTS signals (
  signal_id TEXT PRIMARY KEY,
  signal_source TEXT,
  token_symbol TEXT,
  take_profit_1 REAL,
  stop_loss_1 REAL,
  created_at TEXT
);
CREATE TABLE IF NOT EXISTS wallets (
  wallet_address TEXT PRIMARY KEY,
  user_id TEXT,
  owner_identity TEXT       -- identity the remote signer signs for
);
CREATE TABLE IF NOT EXISTS positions (
  id TEXT PRIMARY KEY,
  token_symbol TEXT NOT NULL,
  chain TEXT NOT NULL,
  contract_address TEXT,
  wallet_address TEXT NOT NULL,
  entry_price REAL NOT NULL,
  entry_amount_token REAL NOT NULL,
  entry_amount_usd REAL NOT NULL,
  current_token_balance REAL,
  stop_loss_price REAL,
  stop_loss_type TEXT NOT NULL DEFAULT 'FIXED',
  take_profit_price REAL,
  partial_tp_enabled INTEGER NOT NULL DEFAULT 0,
  partial_tp_rules TEXT,         -- JSON [{profitPct, sellPct}]
  partial_tp_triggered TEXT,     -- JSON [rule index]
  partial_sold_pct REAL NOT NULL DEFAULT 0,
  partial_sold_usd REAL NOT NULL DEFAULT 0,
  is_alpha_token INTEGER,
  signal_id TEXT,
  signal_source TEXT,
  status TEXT NOT NULL,          -- HOLDING/EXITING/EXITED/FAILED
  highest_price REAL,
  trailing_activated INTEGER NOT NULL DEFAULT 0,
  last_stop_update_at TEXT,
  current_price REAL,
  unrealized_pnl_usd REAL,
  unrealized_pnl_percent REAL,
  entry_fee_usd REAL NOT NULL DEFAULT 0,
  exit_fees_usd REAL NOT NULL DEFAULT 0,
  pending_tx_hash TEXT,
  exit_tx_hash TEXT,
  exit_trigger TEXT,
  exit_classification TEXT,
  exit_amount_usd REAL,
  realized_pnl_usd REAL,
  realized_pnl_percent REAL,
  total_fees REAL,
  exit_revert_count INTEGER NOT NULL DEFAULT 0,
  error_message TEXT,
  opened_at TEXT NOT NULL,
  updated_at TEXT,
  closed_at TEXT
);
CREATE TABLE IF NOT EXISTS executions (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  position_id TEXT NOT NULL,
  tx_hash TEXT NOT NULL,
  exit_type TEXT NOT NULL,
  exit_classification TEXT,
  amount_in_token REAL NOT NULL,
  amount_out_min REAL,
  token_out_address TEXT,
  amount_out_usd REAL,
  submitted_at TEXT NOT NULL,
  confirmed_at TEXT,
  status TEXT NOT NULL,
  realized_pnl_usd REAL,
  realized_pnl_percent REAL,
  total_fees REAL,
  gas_fee_native REAL,
  gas_fee_usd REAL,
  error_message TEXT
);
CREATE TABLE IF NOT EXISTS partial_sells (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  position_id TEXT NOT NULL,
  rule_index INTEGER NOT NULL,
  profit_pct_trigger REAL,
  sell_percent REAL NOT NULL,
  trigger_price REAL NOT NULL,
  sell_amount_token REAL NOT NULL,
  sell_amount_usd REAL,
  actual_profit_pct REAL,
  tx_hash TEXT,
  status TEXT NOT NULL,
  created_at TEXT NOT NULL,
  confirmed_at TEXT
);
CREATE TABLE IF NOT EXISTS partial_exits (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  position_id TEXT NOT NULL,
  user_id TEXT,
  token_symbol TEXT NOT NULL,
  chain TEXT NOT NULL,
  rule_index INTEGER NOT NULL,
  sell_percent REAL NOT NULL,
  sell_amount_token REAL NOT NULL,
  sell_amount_usd REAL NOT NULL,
  trigger_price REAL,
  profit_percent REAL,
  tx_hash TEXT,
  gas_fee REAL,
  created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS trade_history (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  position_id TEXT NOT NULL,
  user_id TEXT,
  token_symbol TEXT NOT NULL,
  chain TEXT NOT NULL,
  entry_price REAL NOT NULL,
  entry_amount_usd REAL NOT NULL,
  exit_amount_usd REAL NOT NULL,
  exit_trigger TEXT,
  exit_classification TEXT,
  realized_pnl_usd REAL NOT NULL,
  realized_pnl_percent REAL NOT NULL,
  total_fees REAL NOT NULL,
  opened_at TEXT NOT NULL,
  closed_at TEXT NOT NULL
);
"""

POSITION_COLUMNS = {
    "id", "token_symbol", "chain", "contract_address", "wallet_address", "entry_price",
    "entry_amount_token", "entry_amount_usd", "current_token_balance", "stop_loss_price",
    "stop_loss_type", "take_profit_price", "partial_tp_enabled", "partial_tp_rules",
    "partial_tp_triggered", "partial_sold_pct", "partial_sold_usd", "is_alpha_token",
    "signal_id", "signal_source", "status", "highest_price", "trailing_activated",
    "last_stop_update_at", "current_price", "unrealized_pnl_usd", "unrealized_pnl_percent",
    "entry_fee_usd", "exit_fees_usd", "pending_tx_hash", "exit_tx_hash", "exit_trigger",
    "exit_classification", "exit_amount_usd", "realized_pnl_usd", "realized_pnl_percent",
    "total_fees", "exit_revert_count", "error_message", "opened_at", "updated_at", "closed_at",
}
EXECUTION_COLUMNS = {
    "tx_hash", "exit_type", "exit_classification", "amount_in_token", "amount_out_min",
    "token_out_address", "amount_out_usd", "submitted_at", "confirmed_at", "status",
    "realized_pnl_usd", "realized_pnl_percent", "total_fees", "gas_fee_native", "gas_fee_usd", "error_message",
}
PARTIAL_SELL_COLUMNS = {"sell_amount_usd", "tx_hash", "status", "confirmed_at", "actual_profit_pct"}

POSITION_QUERY = """
SELECT p.*,
       COALESCE(p.signal_source, s.signal_source) AS resolved_signal_source,
       s.take_profit_1 AS signal_take_profit,
       w.owner_identity AS owner_identity,
       w.user_id AS user_id
FROM positions p
LEFT JOIN signals s ON p.signal_id = s.signal_id
LEFT JOIN wallets w ON p.wallet_address = w.wallet_address
"""


async def init_db(cfg):
    async with aiosqlite.connect(cfg.database.path) as db:
        await apply_schema(db)

async def apply_schema(db: aiosqlite.Connection):
    for stmt in SCHEMA.strip().split(";"):
        s = stmt.strip()
        if s:
            await db.execute(s)
    await db.commit()

def ensure_dirs(cfg):
    for path in (cfg.logging.log_file, cfg.database.path):
        d = os.path.dirname(path)
        if d:
            os.makedirs(d, exist_ok=True)


def _to_db(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        return json.dumps(sorted(value))
    if isinstance(value, list):
        return json.dumps([v.to_dict() if isinstance(v, PartialTpRule) else v for v in value])
    return value

def _ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None

def _json_list(value: Optional[str]) -> list:
    if not value:
        return []
    try:
        data = json.loads(value)
    except (TypeError, ValueError):
        return []
    return data if isinstance(data, list) else []

def _flag(value) -> Optional[bool]:
    return None if value is None else bool(value)

def _enum(cls, value):
    return cls(value) if value else None

def row_to_position(row) -> Position:
    r = dict(row)
    return Position(
        id=r["id"],
        token_symbol=r["token_symbol"],
        chain=r["chain"],
        wallet_address=r["wallet_address"],
        entry_price=float(r["entry_price"]),
        entry_amount_token=float(r["entry_amount_token"]),
        entry_amount_usd=float(r["entry_amount_usd"]),
        stop_loss_price=r["stop_loss_price"],
        take_profit_price=r["take_profit_price"],
        contract_address=r["contract_address"],
        current_token_balance=r["current_token_balance"],
        stop_loss_type=StopLossType(r["stop_loss_type"] or "FIXED"),
        partial_tp_enabled=bool(r["partial_tp_enabled"]),
        partial_tp_rules=[PartialTpRule.from_dict(d) for d in _json_list(r["partial_tp_rules"])],
        partial_tp_triggered={int(i) for i in _json_list(r["partial_tp_triggered"])},
        partial_sold_pct=float(r["partial_sold_pct"] or 0.0),
        partial_sold_usd=float(r["partial_sold_usd"] or 0.0),
        is_alpha_token=_flag(r["is_alpha_token"]),
        signal_id=r["signal_id"],
        signal_source=r.get("resolved_signal_source", r["signal_source"]),
        status=PositionStatus(r["status"]),
        highest_price=r["highest_price"],
        trailing_activated=bool(r["trailing_activated"]),
        last_stop_update_at=_ts(r["last_stop_update_at"]),
        current_price=r["current_price"],
        unrealized_pnl_usd=r["unrealized_pnl_usd"],
        unrealized_pnl_percent=r["unrealized_pnl_percent"],
        entry_fee_usd=float(r["entry_fee_usd"] or 0.0),
        exit_fees_usd=float(r["exit_fees_usd"] or 0.0),
        pending_tx_hash=r["pending_tx_hash"],
        exit_tx_hash=r["exit_tx_hash"],
        exit_trigger=_enum(ExitTrigger, r["exit_trigger"]),
        exit_classification=_enum(ExitTrigger, r["exit_classification"]),
        exit_amount_usd=r["exit_amount_usd"],
        realized_pnl_usd=r["realized_pnl_usd"],
        realized_pnl_percent=r["realized_pnl_percent"],
        total_fees=r["total_fees"],
        exit_revert_count=int(r["exit_revert_count"] or 0),
        error_message=r["error_message"],
        opened_at=_ts(r["opened_at"]) or utcnow(),
        updated_at=_ts(r["updated_at"]),
        closed_at=_ts(r["closed_at"]),
        owner_identity=r.get("owner_identity"),
        user_id=r.get("user_id"),
        signal_take_profit=r.get("signal_take_profit"),
    )

def row_to_execution(row) -> ExitExecution:
    r = dict(row)
    return ExitExecution(
        id=r["id"],
        position_id=r["position_id"],
        tx_hash=r["tx_hash"],
        exit_type=ExitTrigger(r["exit_type"]),
        amount_in_token=float(r["amount_in_token"]),
        amount_out_min=r["amount_out_min"],
        token_out_address=r["token_out_address"],
        submitted_at=_ts(r["submitted_at"]),
        confirmed_at=_ts(r["confirmed_at"]),
        status=ExecutionStatus(r["status"]),
        amount_out_usd=r["amount_out_usd"],
        exit_classification=_enum(ExitTrigger, r["exit_classification"]),
        realized_pnl_usd=r["realized_pnl_usd"],
        realized_pnl_percent=r["realized_pnl_percent"],
        total_fees=r["total_fees"],
        gas_fee_native=r["gas_fee_native"],
        gas_fee_usd=r["gas_fee_usd"],
        error_message=r["error_message"],
    )

def row_to_partial_sell(row) -> PartialSellRecord:
    r = dict(row)
    return PartialSellRecord(
        id=r["id"],
        position_id=r["position_id"],
        rule_index=int(r["rule_index"]),
        trigger_price=float(r["trigger_price"]),
        sell_percent=float(r["sell_percent"]),
        sell_amount_token=float(r["sell_amount_token"]),
        profit_pct_trigger=float(r["profit_pct_trigger"] or 0.0),
        actual_profit_pct=float(r["actual_profit_pct"] or 0.0),
        sell_amount_usd=r["sell_amount_usd"],
        tx_hash=r["tx_hash"],
        status=ExecutionStatus(r["status"]),
        created_at=_ts(r["created_at"]),
        confirmed_at=_ts(r["confirmed_at"]),
    )


class PositionStore:
    """Persistent store over a single aiosqlite connection."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db
        self.db.row_factory = aiosqlite.Row

    @classmethod
    async def connect(cls, path: str) -> "PositionStore":
        db = await aiosqlite.connect(path)
        await apply_schema(db)
        return cls(db)

    async def close(self):
        await self.db.close()

    # ---------- context rows ----------
    async def upsert_signal(self, signal_id: str, signal_source: Optional[str] = None,
                            take_profit_1: Optional[float] = None, stop_loss_1: Optional[float] = None,
                            token_symbol: Optional[str] = None):
        await self.db.execute(
            "INSERT INTO signals(signal_id, signal_source, token_symbol, take_profit_1, stop_loss_1, created_at) "
            "VALUES(?,?,?,?,?,?) ON CONFLICT(signal_id) DO UPDATE SET signal_source=excluded.signal_source, "
            "token_symbol=excluded.token_symbol, take_profit_1=excluded.take_profit_1, stop_loss_1=excluded.stop_loss_1",
            (signal_id, signal_source, token_symbol, take_profit_1, stop_loss_1, utcnow().isoformat()),
        )
        await self.db.commit()

    async def upsert_wallet(self, wallet_address: str, owner_identity: Optional[str], user_id: Optional[str] = None):
        await self.db.execute(
            "INSERT INTO wallets(wallet_address, user_id, owner_identity) VALUES(?,?,?) "
            "ON CONFLICT(wallet_address) DO UPDATE SET user_id=excluded.user_id, owner_identity=excluded.owner_identity",
            (wallet_address, user_id, owner_identity),
        )
        await self.db.commit()

    # ---------- positions ----------
    async def insert_position(self, pos: Position):
        values = {col: _to_db(getattr(pos, col)) for col in POSITION_COLUMNS}
        cols = sorted(values)
        await self.db.execute(
            f"INSERT INTO positions({', '.join(cols)}) VALUES({', '.join('?' for _ in cols)})",
            [values[c] for c in cols],
        )
        await self.db.commit()

    async def get_position(self, position_id: str) -> Optional[Position]:
        async with self.db.execute(POSITION_QUERY + " WHERE p.id = ?", (position_id,)) as cur:
            row = await cur.fetchone()
        return None if row is None else row_to_position(row)

    async def list_positions(self, statuses: Iterable[PositionStatus]) -> List[Position]:
        wanted = [s.value for s in statuses]
        if not wanted:
            return []
        q = POSITION_QUERY + f" WHERE p.status IN ({', '.join('?' for _ in wanted)}) ORDER BY p.opened_at"
        async with self.db.execute(q, wanted) as cur:
            rows = await cur.fetchall()
        return [row_to_position(r) for r in rows]

    async def update_position(self, position_id: str, **fields):
        if not fields:
            return
        unknown = set(fields) - POSITION_COLUMNS
        if unknown:
            raise ValueError(f"unknown position columns: {sorted(unknown)}")
        fields.setdefault("updated_at", utcnow())
        cols = sorted(fields)
        await self.db.execute(
            f"UPDATE positions SET {', '.join(f'{c} = ?' for c in cols)} WHERE id = ?",
            [_to_db(fields[c]) for c in cols] + [position_id],
        )
        await self.db.commit()

    # ---------- executions ----------
    async def create_execution(self, ex: ExitExecution) -> int:
        cur = await self.db.execute(
            "INSERT INTO executions(position_id, tx_hash, exit_type, amount_in_token, amount_out_min, "
            "token_out_address, submitted_at, status) VALUES(?,?,?,?,?,?,?,?)",
            (ex.position_id, ex.tx_hash, _to_db(ex.exit_type), ex.amount_in_token, ex.amount_out_min,
             ex.token_out_address, _to_db(ex.submitted_at), _to_db(ex.status)),
        )
        await self.db.commit()
        ex.id = cur.lastrowid
        return ex.id

    async def update_execution(self, execution_id: int, **fields):
        unknown = set(fields) - EXECUTION_COLUMNS
        if unknown:
            raise ValueError(f"unknown execution columns: {sorted(unknown)}")
        cols = sorted(fields)
        await self.db.execute(
            f"UPDATE executions SET {', '.join(f'{c} = ?' for c in cols)} WHERE id = ?",
            [_to_db(fields[c]) for c in cols] + [execution_id],
        )
        await self.db.commit()

    async def list_executions(self, position_id: str) -> List[ExitExecution]:
        async with self.db.execute("SELECT * FROM executions WHERE position_id = ? ORDER BY id",
                                   (position_id,)) as cur:
            rows = await cur.fetchall()
        return [row_to_execution(r) for r in rows]

    async def pending_execution(self, position_id: str, tx_hash: str) -> Optional[ExitExecution]:
        async with self.db.execute(
            "SELECT * FROM executions WHERE position_id = ? AND tx_hash = ? ORDER BY id DESC LIMIT 1",
            (position_id, tx_hash),
        ) as cur:
            row = await cur.fetchone()
        return None if row is None else row_to_execution(row)

    # ---------- partial take-profit ----------
    async def create_partial_sell(self, rec: PartialSellRecord) -> int:
        cur = await self.db.execute(
            "INSERT INTO partial_sells(position_id, rule_index, profit_pct_trigger, sell_percent, trigger_price, "
            "sell_amount_token, actual_profit_pct, tx_hash, status, created_at) VALUES(?,?,?,?,?,?,?,?,?,?)",
            (rec.position_id, rec.rule_index, rec.profit_pct_trigger, rec.sell_percent, rec.trigger_price,
             rec.sell_amount_token, rec.actual_profit_pct, rec.tx_hash, _to_db(rec.status),
             _to_db(rec.created_at)),
        )
        await self.db.commit()
        rec.id = cur.lastrowid
        return rec.id

    async def update_partial_sell(self, record_id: int, **fields):
        unknown = set(fields) - PARTIAL_SELL_COLUMNS
        if unknown:
            raise ValueError(f"unknown partial_sells columns: {sorted(unknown)}")
        cols = sorted(fields)
        await self.db.execute(
            f"UPDATE partial_sells SET {', '.join(f'{c} = ?' for c in cols)} WHERE id = ?",
            [_to_db(fields[c]) for c in cols] + [record_id],
        )
        await self.db.commit()

    async def list_partial_sells(self, position_id: str) -> List[PartialSellRecord]:
        async with self.db.execute("SELECT * FROM partial_sells WHERE position_id = ? ORDER BY id",
                                   (position_id,)) as cur:
            rows = await cur.fetchall()
        return [row_to_partial_sell(r) for r in rows]

    async def find_partial_sell(self, position_id: str, tx_hash: str) -> Optional[PartialSellRecord]:
        async with self.db.execute(
            "SELECT * FROM partial_sells WHERE position_id = ? AND tx_hash = ? ORDER BY id DESC LIMIT 1",
            (position_id, tx_hash),
        ) as cur:
            row = await cur.fetchone()
        return None if row is None else row_to_partial_sell(row)

    async def append_partial_exit(self, pos: Position, rec: PartialSellRecord, gas_fee: Optional[float]):
        await self.db.execute(
            "INSERT INTO partial_exits(position_id, user_id, token_symbol, chain, rule_index, sell_percent, "
            "sell_amount_token, sell_amount_usd, trigger_price, profit_percent, tx_hash, gas_fee, created_at) "
            "VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?)",
            (pos.id, pos.user_id, pos.token_symbol, pos.chain, rec.rule_index, rec.sell_percent,
             rec.sell_amount_token, rec.sell_amount_usd or 0.0, rec.trigger_price, rec.actual_profit_pct,
             rec.tx_hash, gas_fee or 0.0, utcnow().isoformat()),
        )
        await self.db.commit()

    async def count_partial_exits(self, position_id: str) -> int:
        async with self.db.execute("SELECT COUNT(*) FROM partial_exits WHERE position_id = ?",
                                   (position_id,)) as cur:
            row = await cur.fetchone()
        return int(row[0])

    # ---------- history ----------
    async def append_trade_history(self, pos: Position):
        await self.db.execute(
            "INSERT INTO trade_history(position_id, user_id, token_symbol, chain, entry_price, entry_amount_usd, "
            "exit_amount_usd, exit_trigger, exit_classification, realized_pnl_usd, realized_pnl_percent, "
            "total_fees, opened_at, closed_at) VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
            (pos.id, pos.user_id, pos.token_symbol, pos.chain, pos.entry_price, pos.entry_amount_usd,
             pos.exit_amount_usd or 0.0, _to_db(pos.exit_trigger), _to_db(pos.exit_classification),
             pos.realized_pnl_usd or 0.0, pos.realized_pnl_percent or 0.0, pos.total_fees or 0.0,
             _to_db(pos.opened_at), _to_db(pos.closed_at or utcnow())),
        )
        await self.db.commit()

    async def trade_summary(self) -> Dict[str, float]:
        async with self.db.execute(
            "SELECT COUNT(*), SUM(CASE WHEN realized_pnl_usd > 0 THEN 1 ELSE 0 END), "
            "SUM(realized_pnl_usd), AVG(realized_pnl_percent) FROM trade_history"
        ) as cur:
            row = await cur.fetchone()
        return {
            "total_trades": row[0] or 0,
            "win_trades": row[1] or 0,
            "total_pnl_usd": row[2] or 0.0,
            "avg_pnl_percent": row[3] or 0.0,
        }
