"""Structured JSON logging for client processes."""

from __future__ import annotations

import logging
import sys
from typing import TextIO

from pythonjsonlogger import jsonlogger

# Transport libraries log every request/frame at INFO/DEBUG.
NOISY_LOGGERS = ("httpx", "httpcore", "websockets")

_base_factory = logging.getLogRecordFactory()


def configure_logging(
    service_name: str,
    env: str,
    level: int = logging.INFO,
    stream: TextIO | None = None,
) -> None:
    """Route all records through one JSON handler tagged with service and environment.

    Safe to call more than once: the handler and the record factory are
    replaced, not stacked.
    """
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "severity"},
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    def record_factory(*args, **kwargs):  # type: ignore[no-untyped-def]
        record = _base_factory(*args, **kwargs)
        record.service = service_name  # type: ignore[attr-defined]
        record.environment = env  # type: ignore[attr-defined]
        return record

    logging.setLogRecordFactory(record_factory)
