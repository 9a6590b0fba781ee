"""Log output for the pump service.

Two renderings share one root-logger setup:

* ``json`` — NDJSON, one object per record, for container log drivers.
* ``text`` — timestamped lines for a developer terminal.

Records logged with ``extra={"device_id": ...}`` (and optionally
``infusion_id``) keep those ids as top-level JSON fields, so the full
history of one pump can be filtered out of the stream with ``jq``.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from typing import Any

from pumplink._settings import LoggingSettings

_MEGABYTE = 1024 * 1024

_TEXT_LAYOUT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

# Attributes copied from ``extra`` onto the JSON line when present.
_CORRELATION_FIELDS = ("device_id", "infusion_id")


class JsonFormatter(logging.Formatter):
    """Render a record as one JSON object.

    Always present: ``timestamp`` (UTC ISO 8601), ``level``, ``logger``,
    ``message`` and ``service``.  ``version`` appears when configured;
    ``device_id``/``infusion_id`` when supplied through ``extra``;
    ``exception`` and ``stack_info`` when the record carries them.
    """

    def __init__(self, *, service: str = "", version: str = "") -> None:
        super().__init__()
        self._static: dict[str, str] = {"service": service}
        if version:
            self._static["version"] = version

    def format(self, record: logging.LogRecord) -> str:
        line: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **self._static,
        }
        for field in _CORRELATION_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                line[field] = value
        if record.exc_info and record.exc_info[0] is not None:
            line["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            line["stack_info"] = self.formatStack(record.stack_info)
        return json.dumps(line, default=str)


def _formatter_for(settings: LoggingSettings, service: str, version: str) -> logging.Formatter:
    if settings.format == "json":
        return JsonFormatter(service=service, version=version)
    return logging.Formatter(_TEXT_LAYOUT)


def _sinks(settings: LoggingSettings) -> list[logging.Handler]:
    sinks: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if settings.file is not None:
        sinks.append(
            RotatingFileHandler(
                settings.file,
                maxBytes=settings.max_file_size_mb * _MEGABYTE,
                backupCount=settings.backup_count,
            )
        )
    return sinks


def configure_logging(
    settings: LoggingSettings,
    *,
    service: str,
    version: str = "",
) -> None:
    """Point the root logger at stderr (and the rotating file, if any).

    Handlers already on the root logger are detached first, so calling
    this twice does not duplicate output.
    """
    root = logging.getLogger()
    for stale in list(root.handlers):
        root.removeHandler(stale)

    formatter = _formatter_for(settings, service, version)
    for sink in _sinks(settings):
        sink.setFormatter(formatter)
        root.addHandler(sink)

    root.setLevel(settings.level)
