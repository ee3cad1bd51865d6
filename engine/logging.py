"""
OpenClaw - Structured Logging

JSON-lines logging for the orchestrator. Every module logs through a
child of the "openclaw" logger; structured fields ride on the record
(record.structured) and are merged into the JSON entry by JSONFormatter.

Design decisions:
  - Transport: Python logging with JSON formatter
  - Schema: OTel-compatible resource attributes (service.name, service.version)
  - Correlation: run_id / project_id fields on every run-scoped entry

Usage:
    from engine.logging import configure_logging, get_logger, log_structured

    configure_logging(level="INFO")
    logger = get_logger("runtime")
    log_structured(logger, logging.INFO, "step_completed", run_id=rid, step=1)
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

ROOT_LOGGER = "openclaw"


# ═══════════════════════════════════════════════════════════════════
# JSON Formatter (OTel-compatible)
# ═══════════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """
    Formats log records as JSON lines.

    OTel semantic conventions used:
      - service.name: "openclaw"
      - service.version: from OC_VERSION env
    """

    def __init__(self, service_name: str = ROOT_LOGGER):
        super().__init__()
        self.service_name = service_name
        self.service_version = os.environ.get("OC_VERSION", "0.1.0")

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service.name": self.service_name,
            "service.version": self.service_version,
        }

        if hasattr(record, "structured"):
            entry.update(record.structured)

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])

        return json.dumps(entry, default=str)


# ═══════════════════════════════════════════════════════════════════
# Log Configuration
# ═══════════════════════════════════════════════════════════════════

def configure_logging(
    level: str = "INFO",
    stream: Any = None,
    service_name: str = ROOT_LOGGER,
    fmt: str = "json",
) -> logging.Logger:
    """
    Configure the openclaw logger.

    Args:
        level: DEBUG, INFO, WARNING, ERROR
        stream: Output stream (default: sys.stderr)
        service_name: Service name in log entries
        fmt: "json" (default) or "text" for local development

    Returns:
        The configured root logger for openclaw
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Avoid duplicate handlers on reconfigure
    logger.handlers.clear()
    for name in list(logging.Logger.manager.loggerDict.keys()):
        if name.startswith(ROOT_LOGGER + "."):
            child = logging.getLogger(name)
            child.handlers.clear()
            child.setLevel(logging.NOTSET)

    handler = logging.StreamHandler(stream or sys.stderr)
    if fmt == "text":
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)-7s %(name)s: %(message)s"
        ))
    else:
        handler.setFormatter(JSONFormatter(service_name=service_name))
    handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def configure_from_config(config: Any, stream: Any = None) -> logging.Logger:
    """Configure logging from a ConfigLoader (logging.level / logging.format)."""
    return configure_logging(
        level=str(config.get("logging.level", "INFO")),
        fmt=str(config.get("logging.format", "json")),
        stream=stream,
    )


def get_logger(name: str = "") -> logging.Logger:
    """Get a child logger under the openclaw namespace."""
    if name:
        return logging.getLogger(f"{ROOT_LOGGER}.{name}")
    return logging.getLogger(ROOT_LOGGER)


def log_structured(
    logger: logging.Logger,
    level: int,
    action: str,
    **fields: Any,
) -> None:
    """Emit a record whose structured fields are merged into the JSON entry."""
    if not logger.isEnabledFor(level):
        return
    record = logger.makeRecord(
        name=logger.name,
        level=level,
        fn="", lno=0, msg=action,
        args=(), exc_info=None,
    )
    record.structured = {"action": action, **fields}
    logger.handle(record)
