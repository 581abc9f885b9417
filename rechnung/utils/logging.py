"""Logging setup and write auditing."""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from .config import AUDIT_LOG_PATH

LOG_FORMAT = "%(levelname)s:%(name)s:%(message)s"

_LOGGER = logging.getLogger("rechnung.audit")


def configure_root(level: int = logging.INFO) -> None:
    """(Re)configure the root logger, replacing handlers installed elsewhere."""

    logging.basicConfig(level=level, format=LOG_FORMAT, force=True)


def record_write_attempt(operation: str = "write", **fields: Any) -> None:
    """Note a write-capable operation in the log and, if configured, the audit file."""

    entry = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "operation": operation,
        **fields,
    }
    _LOGGER.debug("write.attempt", extra={"audit": entry})

    if AUDIT_LOG_PATH is None:
        return
    AUDIT_LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
    with AUDIT_LOG_PATH.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(entry, sort_keys=True, default=str))
        handle.write("\n")


__all__ = ["LOG_FORMAT", "configure_root", "record_write_attempt"]
