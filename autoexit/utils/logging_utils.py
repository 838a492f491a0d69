import json
import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Any, Dict

class JsonLineFormatter(logging.Formatter):
    def formatTime(self, record, datefmt=None):
        from datetime import datetime, timezone
        dt = datetime.fromtimestamp(record.created, tz=timezone.utc)
        if datefmt:
            return dt.strftime(datefmt)
        return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": self.formatTime(record),
            "level": record.levelname,
            "msg": record.getMessage(),
            "logger": record.name,
        }
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            payload.update(extra)
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class ConsoleFormatter(logging.Formatter):
    def format(self, record):
        msg = super().format(record)
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict) and extra:
            # compact kv tail, the event name is already the message
            tail = " ".join(f"{k}={v}" for k, v in extra.items() if k not in ("msg", "logger", "event"))
            return f"{msg} {tail}" if tail else msg
        return msg


def setup_logging(cfg, level=None):
    logger = logging.getLogger("autoexit")
    logger.setLevel(getattr(logging, (level or cfg.logging.level).upper()))
    logger.propagate = False
    logger.handlers.clear()

    ch = logging.StreamHandler()
    ch.setLevel(logger.level)
    ch.setFormatter(ConsoleFormatter("[%(levelname)s] %(message)s"))
    logger.addHandler(ch)

    # JSONL file
    if cfg.logging.json:
        log_dir = os.path.dirname(cfg.logging.log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        fh = RotatingFileHandler(cfg.logging.log_file, maxBytes=5_000_000, backupCount=5, encoding="utf-8")
        fh.setLevel(logger.level)
        fh.setFormatter(JsonLineFormatter())
        logger.addHandler(fh)

    return logger

def jlog(logger, event: str, level: int = logging.INFO, **fields):
    logger.log(level, event, extra={"extra": {"event": event, **fields}})
