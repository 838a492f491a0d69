import json
import logging

from autoexit.utils.logging_utils import ConsoleFormatter, jlog, setup_logging


def test_jlog_writes_json_lines(cfg, tmp_path):
    cfg.logging.json = True
    cfg.logging.log_file = str(tmp_path / "logs" / "autoexit.jsonl")
    logger = setup_logging(cfg, level="DEBUG")
    try:
        jlog(logger, "EXIT_SUBMITTED", position_id="pos-1", tx_hash="0xabc")
        for h in logger.handlers:
            h.flush()
        line = (tmp_path / "logs" / "autoexit.jsonl").read_text(encoding="utf-8").strip().splitlines()[-1]
        record = json.loads(line)
        assert record["msg"] == "EXIT_SUBMITTED"
        assert record["event"] == "EXIT_SUBMITTED"
        assert record["position_id"] == "pos-1"
        assert record["level"] == "INFO"
    finally:
        for h in list(logger.handlers):
            h.close()
            logger.removeHandler(h)


def test_console_formatter_appends_fields():
    record = logging.LogRecord("autoexit", logging.INFO, __file__, 1, "TICK", None, None)
    record.extra = {"event": "TICK", "price": 1.5}
    assert ConsoleFormatter("%(message)s").format(record) == "TICK price=1.5"
