from autoexit.config import Config, load_config


def test_defaults():
    cfg = Config()
    assert cfg.mode == "paper"
    assert cfg.monitor.poll_interval_sec == 15.0
    assert cfg.stops.trailing_stop_pct == 3.0
    assert cfg.execution.full_exit_slippage_pct == 5.0
    assert cfg.execution.partial_slippage_pct == 3.0
    assert cfg.execution.approval_gas_limit == "0x15f90"
    assert cfg.reconcile.max_checks == 4
    assert cfg.oracle.pool_only_chains == ["Solana"]


def test_load_config_merges_nested_sections(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "mode: live\n"
        "monitor:\n  poll_interval_sec: 5\n"
        "oracle:\n  jupiter:\n    api_key: k\n"
        "execution:\n  exit_tokens:\n    Arbitrum: USDC\n"
        "unknown_section:\n  x: 1\n",
        encoding="utf-8",
    )
    cfg = load_config(str(path))
    assert cfg.mode == "live"
    assert cfg.monitor.poll_interval_sec == 5
    assert cfg.monitor.rearm_cooldown_sec == 30.0
    assert cfg.oracle.jupiter.api_key == "k"
    assert cfg.oracle.dexscreener.enabled
    assert cfg.execution.exit_tokens["Arbitrum"] == "USDC"
    assert cfg.execution.exit_tokens["BSC"] == "USDT"
    assert not hasattr(cfg, "unknown_section")


def test_empty_file_gives_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("", encoding="utf-8")
    assert load_config(str(path)) == Config()
