from __future__ import annotations

import json
import logging
from pathlib import Path

from geoquery.logging_utils import HumanFormatter, LogOptions, configure_logging, log_context


def test_configure_logging_writes_json(tmp_path: Path) -> None:
    log_path = tmp_path / "logs" / "geoquery.jsonl"
    configure_logging(LogOptions(log_file=log_path))
    logger = logging.getLogger("geoquery.test")
    logger.info("hello", extra=log_context("Expression/0:GdalSource", 3))
    logging.shutdown()

    lines = log_path.read_text(encoding="utf-8").strip().splitlines()
    assert lines
    payload = json.loads(lines[-1])
    assert payload["message"] == "hello"
    assert payload["level"] == "info"
    assert payload["extra"]["operator"] == "Expression/0:GdalSource"
    assert payload["extra"]["tile"] == 3


def test_log_context_skips_unset_fields() -> None:
    assert log_context() == {}
    assert log_context(tile=0) == {"tile": 0}


def test_human_formatter_prefixes_context() -> None:
    formatter = HumanFormatter("%(message)s")

    def _format(**extra) -> str:
        record = logging.LogRecord("geoquery", logging.INFO, __file__, 1, "read", None, None)
        for key, value in extra.items():
            setattr(record, key, value)
        return formatter.format(record)

    assert _format() == "read"
    assert _format(operator="GdalSource") == "[GdalSource] read"
    assert _format(operator="GdalSource", tile=0) == "[GdalSource#0] read"
    assert _format(tile=2) == "[#2] read"


def test_quiet_console_level() -> None:
    root = configure_logging(LogOptions(quiet=True))
    assert root.handlers[0].level == logging.WARNING
    root = configure_logging(LogOptions(verbose=1))
    assert root.handlers[0].level == logging.DEBUG
    root.handlers.clear()
