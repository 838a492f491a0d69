from dataclasses import dataclass, field
from typing import Dict, List
import yaml

@dataclass
class MonitorConfig:
    poll_interval_sec: float = 15.0
    rearm_cooldown_sec: float = 30.0
    tick_timeout_sec: float = 60.0

@dataclass
class OracleAlpha:
    enabled: bool = True
    klines_url: str = "https://www.binance.com/bapi/defi/v1/public/alpha-trade/klines"
    spot_url: str = "https://api.binance.com"
    quote_asset: str = "USDT"

@dataclass
class OracleDexscreener:
    enabled: bool = True
    search_url: str = "https://api.dexscreener.com/latest/dex/search"

@dataclass
class OracleJupiter:
    enabled: bool = True
    price_url: str = "https://api.jup.ag/price/v2"
    api_key: str = ""

@dataclass
class OracleConfig:
    venue_timeout_sec: float = 10.0
    pool_only_chains: List[str] = field(default_factory=lambda: ["Solana"])
    native_symbols: Dict[str, str] = field(default_factory=lambda: {
        "BSC": "BNB", "Base": "ETH", "Solana": "SOL",
    })
    alpha: OracleAlpha = field(default_factory=OracleAlpha)
    dexscreener: OracleDexscreener = field(default_factory=OracleDexscreener)
    jupiter: OracleJupiter = field(default_factory=OracleJupiter)

@dataclass
class StopsConfig:
    trailing_activation_pct: float = 0.0
    trailing_stop_pct: float = 3.0
    time_decay_enabled: bool = True
    time_decay_start_sec: int = 3600
    time_decay_interval_sec: int = 900
    time_decay_step_pct: float = 1.0
    time_decay_min_distance_pct: float = 2.0

@dataclass
class ExecutionConfig:
    full_exit_slippage_pct: float = 5.0
    partial_slippage_pct: float = 3.0
    approval_settle_sec: float = 5.0
    approval_gas_limit: str = "0x15f90"
    signer_timeout_sec: float = 30.0
    builder_timeout_sec: float = 20.0
    exit_tokens: Dict[str, str] = field(default_factory=lambda: {
        "BSC": "USDT", "Base": "USDC", "Solana": "USDC",
    })
    default_exit_token: str = "USDC"
    swap_builder_url: str = "http://127.0.0.1:8700/swap/build"
    signer_url: str = "http://127.0.0.1:8701/sign-and-send"
    signer_api_key: str = ""

@dataclass
class ReconcileConfig:
    confirm_timeout_sec: float = 120.0
    confirm_poll_sec: float = 3.0
    max_checks: int = 4
    recheck_delay_sec: float = 60.0
    max_hard_failures: int = 2
    rpc_urls: Dict[str, str] = field(default_factory=lambda: {
        "BSC": "https://bsc-dataseed.binance.org",
        "Base": "https://mainnet.base.org",
        "Solana": "https://api.mainnet-beta.solana.com",
    })

@dataclass
class FeesConfig:
    enabled: bool = False
    url: str = "http://127.0.0.1:8702/fees/collect"
    timeout_sec: float = 15.0

@dataclass
class LoggingConfig:
    level: str = "INFO"
    json: bool = True
    log_file: str = "logs/autoexit.jsonl"

@dataclass
class Database:
    path: str = "autoexit.db"

@dataclass
class Config:
    mode: str = "paper"
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    oracle: OracleConfig = field(default_factory=OracleConfig)
    stops: StopsConfig = field(default_factory=StopsConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    reconcile: ReconcileConfig = field(default_factory=ReconcileConfig)
    fees: FeesConfig = field(default_factory=FeesConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    database: Database = field(default_factory=Database)

def merge(data, cls):
    obj = cls()
    for k, v in (data or {}).items():
        if hasattr(obj, k):
            attr = getattr(obj, k)
            if hasattr(attr, "__dataclass_fields__"):  # nested dataclass
                setattr(obj, k, merge(v, type(attr)))
            elif isinstance(attr, dict) and isinstance(v, dict):
                setattr(obj, k, {**attr, **v})
            else:
                setattr(obj, k, v)
    return obj

def load_config(path: str) -> Config:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    return merge(data, Config)
