import argparse
import asyncio

from autoexit.config import load_config
from autoexit.core.position import PositionStatus
from autoexit.monitor import PositionMonitor
from autoexit.utils.db import PositionStore, ensure_dirs, init_db
from autoexit.utils.logging_utils import jlog, setup_logging


def build_parser():
    p = argparse.ArgumentParser("autoexit")
    p.add_argument("--config", default="config.yaml", help="Path to config.yaml")
    p.add_argument("--status", action="store_true", help="Print status and exit")
    p.add_argument("--mode", choices=["paper", "live"], help="Override mode")
    p.add_argument("--position", action="append", metavar="ID", help="Only monitor this position (repeatable)")
    p.add_argument("--manual-exit", metavar="ID", help="Exit this position now and wait for the result")
    p.add_argument("-v", "--verbose", action="store_true", help="Set logging to DEBUG")
    return p


async def print_status(db_path: str):
    store = await PositionStore.connect(db_path)
    try:
        rows = await store.list_positions([PositionStatus.HOLDING, PositionStatus.EXITING, PositionStatus.FAILED])
        print("Open Positions:")
        for p in rows:
            print(f"  {p.id} {p.token_symbol} on {p.chain}: {p.status.value} balance={p.balance:.6g} "
                  f"entry={p.entry_price} stop={p.stop_loss_price} tp={p.take_profit_price} "
                  f"sold={p.partial_sold_pct:.1f}%" + (f" error={p.error_message}" if p.error_message else ""))
        s = await store.trade_summary()
        print(f"Closed trades: {s['total_trades']} (wins {s['win_trades']}), "
              f"Total PnL: {s['total_pnl_usd']:.4f} USD, Avg PnL%: {s['avg_pnl_percent']:.2f}")
    finally:
        await store.close()


async def run(cfg, logger, args):
    store = await PositionStore.connect(cfg.database.path)
    monitor = PositionMonitor.from_config(cfg, logger, store)
    jlog(logger, "START", mode=cfg.mode)
    try:
        if args.manual_exit:
            task = await monitor.manual_exit(args.manual_exit, reason="cli manual exit")
            if task is not None:
                await task
            return
        await monitor.resume(args.position)
        await asyncio.Event().wait()
    finally:
        await monitor.shutdown()
        await monitor.close()
        await store.close()
        jlog(logger, "STOPPED", status=monitor.status())


def main():
    parser = build_parser()
    args = parser.parse_args()

    cfg = load_config(args.config)
    if args.mode:
        cfg.mode = args.mode

    log_level = "DEBUG" if args.verbose else cfg.logging.level
    logger = setup_logging(cfg, level=log_level)

    ensure_dirs(cfg)
    asyncio.run(init_db(cfg))

    if args.status:
        asyncio.run(print_status(cfg.database.path))
        return

    try:
        asyncio.run(run(cfg, logger, args))
    except KeyboardInterrupt:
        logger.warning("KeyboardInterrupt: stopped")


if __name__ == "__main__":
    main()
