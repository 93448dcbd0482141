"""Structured log sink: ``{priority, module, message, context}`` entries."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from .models import utcnow

logger = logging.getLogger(__name__)

MODULE_NAME = "gateway"


class LogPriority(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


_LEVELS = {
    LogPriority.DEBUG: logging.DEBUG,
    LogPriority.INFO: logging.INFO,
    LogPriority.WARN: logging.WARNING,
    LogPriority.ERROR: logging.ERROR,
}


@dataclass
class LogEntry:
    priority: LogPriority
    module: str
    message: str
    context: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)


class LogsService:
    """Forwards entries to ``logging`` and optionally appends them as JSONL."""

    def __init__(self, log_path: Path | None = None, keep: int = 200) -> None:
        self._log_path = log_path
        self._keep = keep
        self._recent: list[LogEntry] = []

    def insert(
        self,
        priority: LogPriority,
        module: str,
        message: str,
        context: dict[str, Any] | None = None,
    ) -> LogEntry:
        entry = LogEntry(priority, module, message, dict(context or {}))
        logger.log(
            _LEVELS[priority], "[%s] %s %s", module, message, entry.context or ""
        )
        if self._keep > 0:
            self._recent.append(entry)
            del self._recent[: -self._keep]
        if self._log_path is not None:
            self._append_log(entry)
        return entry

    def _append_log(self, entry: LogEntry) -> None:
        assert self._log_path is not None
        self._log_path.parent.mkdir(parents=True, exist_ok=True)
        record = {
            "timestamp": entry.created_at.isoformat(),
            "priority": entry.priority.value,
            "module": entry.module,
            "message": entry.message,
            "context": entry.context,
        }
        with open(self._log_path, "a") as f:
            f.write(json.dumps(record, default=str) + "\n")

    @property
    def recent(self) -> list[LogEntry]:
        return list(self._recent)
