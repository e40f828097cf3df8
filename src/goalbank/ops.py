"""Operational utilities for goalbank."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

from .models import utc_now

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class StructuredLogger:
    """Write JSON lines log entries and forward them to the ``goalbank`` logger."""

    def __init__(self, *, path: Path | None = None, name: str = "goalbank", retain: int = 1000) -> None:
        self.path = path
        self._entries: list[dict] = []
        self._retain = retain
        self._logger = logging.getLogger(name)

    def log(self, event_type: str, *, level: str = "info", **fields: object) -> dict:
        entry = {"timestamp": utc_now().isoformat(), "event": event_type, **fields}
        self._entries.append(entry)
        if len(self._entries) > self._retain:
            del self._entries[: len(self._entries) - self._retain]
        line = json.dumps(entry, default=str)
        if self.path:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        self._logger.log(_LEVELS.get(level, logging.INFO), line)
        return entry

    def error(self, event_type: str, **fields: object) -> dict:
        return self.log(event_type, level="error", **fields)

    def tail(self, limit: int = 50, *, event: Optional[str] = None) -> tuple[dict, ...]:
        entries = self._entries
        if event is not None:
            entries = [entry for entry in entries if entry["event"] == event]
        return tuple(entries[-limit:])


def configure_logging(level: str = "INFO") -> None:
    """Attach a stream handler to the ``goalbank`` logger once."""

    logger = logging.getLogger("goalbank")
    logger.setLevel(level)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
        logger.addHandler(handler)


__all__ = ["StructuredLogger", "configure_logging"]
