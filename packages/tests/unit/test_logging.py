"""Tests for pumplink._logging — NDJSON formatter and root setup.

Test Techniques Used:
    - Specification-based Testing: JSON line schema, device_id field
    - State Inspection: root logger handlers and level after configure
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path

from pumplink._logging import JsonFormatter, configure_logging
from pumplink._settings import LoggingSettings


def _record(
    message: str = "Sent %s",
    *args: object,
    level: int = logging.INFO,
    **extra: object,
) -> logging.LogRecord:
    record = logging.LogRecord(
        name="pumplink._dispatcher",
        level=level,
        pathname=__file__,
        lineno=1,
        msg=message,
        args=args or ("PAUSE_INFUSION",),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def _format(record: logging.LogRecord, **kwargs: str) -> dict[str, object]:
    return json.loads(JsonFormatter(**kwargs).format(record))


class TestJsonFormatter:
    """Technique: Specification-based Testing."""

    def test_single_line_schema(self) -> None:
        line = JsonFormatter(service="pumplink", version="0.1.0").format(_record())
        assert "\n" not in line
        data = json.loads(line)
        assert data["level"] == "INFO"
        assert data["logger"] == "pumplink._dispatcher"
        assert data["message"] == "Sent PAUSE_INFUSION"
        assert data["service"] == "pumplink"
        assert data["version"] == "0.1.0"
        assert datetime.fromisoformat(data["timestamp"]).tzinfo == UTC

    def test_version_omitted_when_empty(self) -> None:
        assert "version" not in _format(_record(), service="pumplink")

    def test_device_id_from_extra(self) -> None:
        data = _format(_record(device_id="PUMP_0001"), service="pumplink")
        assert data["device_id"] == "PUMP_0001"

    def test_device_id_absent_by_default(self) -> None:
        assert "device_id" not in _format(_record(), service="pumplink")

    def test_exception_traceback(self) -> None:
        try:
            raise ConnectionError("store down")
        except ConnectionError:
            record = _record(level=logging.ERROR)
            record.exc_info = sys.exc_info()
        data = _format(record, service="pumplink")
        assert "ConnectionError: store down" in data["exception"]

    def test_stack_info(self) -> None:
        record = _record()
        record.stack_info = "Stack (most recent call last)"
        assert "most recent" in _format(record)["stack_info"]

    def test_real_logger_extra_reaches_output(self) -> None:
        """``extra={"device_id": ...}`` on a logger call is carried through."""
        captured: list[str] = []

        class _Capture(logging.Handler):
            def emit(self, record: logging.LogRecord) -> None:
                captured.append(self.format(record))

        handler = _Capture()
        handler.setFormatter(JsonFormatter(service="pumplink"))
        log = logging.getLogger("pumplink.test.capture")
        log.addHandler(handler)
        log.propagate = False
        try:
            log.warning("Dropping %s", "progress", extra={"device_id": "PUMP_0002"})
        finally:
            log.removeHandler(handler)
        [line] = captured
        assert json.loads(line)["device_id"] == "PUMP_0002"


class TestConfigureLogging:
    """Technique: State Inspection."""

    def test_json_is_default(self) -> None:
        configure_logging(LoggingSettings(), service="pumplink")
        [handler] = logging.getLogger().handlers
        assert isinstance(handler.formatter, JsonFormatter)
        assert logging.getLogger().level == logging.INFO

    def test_text_format(self) -> None:
        configure_logging(LoggingSettings(format="text", level="DEBUG"), service="pumplink")
        [handler] = logging.getLogger().handlers
        assert not isinstance(handler.formatter, JsonFormatter)
        assert logging.getLogger().level == logging.DEBUG

    def test_replaces_existing_handlers(self) -> None:
        stale = logging.NullHandler()
        logging.getLogger().addHandler(stale)
        configure_logging(LoggingSettings(), service="pumplink")
        assert stale not in logging.getLogger().handlers

    def test_rotating_file(self, tmp_path: Path) -> None:
        settings = LoggingSettings(
            file=str(tmp_path / "pumplink.log"),
            max_file_size_mb=2,
            backup_count=5,
        )
        configure_logging(settings, service="pumplink", version="0.1.0")
        [rotating] = [
            h for h in logging.getLogger().handlers if isinstance(h, RotatingFileHandler)
        ]
        assert rotating.maxBytes == 2 * 1024 * 1024
        assert rotating.backupCount == 5

        logging.getLogger("pumplink").warning("to file", extra={"device_id": "P"})
        rotating.flush()
        line = (tmp_path / "pumplink.log").read_text().strip().splitlines()[-1]
        assert json.loads(line)["device_id"] == "P"
