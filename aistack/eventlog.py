"""Structured JSON event logging with level filtering."""

from __future__ import annotations

import json
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, TextIO


class Level(str, Enum):
    """Log severity."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


_RANKS = {Level.DEBUG: 0, Level.INFO: 1, Level.WARN: 2, Level.ERROR: 3}


def _rank(level: Level | str) -> int:
    try:
        return _RANKS[Level(level)]
    except ValueError:
        return 0


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class Event:
    """A single structured log event."""

    timestamp: str
    level: Level
    type: str
    message: str
    payload: Mapping[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        """Return the event in its JSON shape; an empty payload is left out."""
        data: dict[str, Any] = {
            "ts": self.timestamp,
            "level": Level(self.level).value,
            "type": self.type,
            "message": self.message,
        }
        if self.payload:
            data["payload"] = dict(sorted(self.payload.items()))
        return data


class Logger:
    """Writes one JSON object per line for every event at or above a minimum level."""

    def __init__(self, min_level: Level | str = Level.INFO, output: TextIO | None = None):
        self.min_level = Level(min_level)
        self.output = output
        self._file: TextIO | None = None

    def close(self) -> None:
        """Close the log file if this logger owns one."""
        if self._file is not None:
            self._file.close()
            self._file = None

    def __enter__(self) -> "Logger":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def should_log(self, level: Level | str) -> bool:
        """Tell whether an event at ``level`` passes the minimum level."""
        return _rank(level) >= _rank(self.min_level)

    def log(
        self,
        level: Level | str,
        event_type: str,
        message: str,
        payload: Mapping[str, Any] | None = None,
    ) -> None:
        """Write a structured event if its level passes the filter."""
        if not self.should_log(level):
            return

        event = Event(_timestamp(), Level(level), event_type, message, payload)
        try:
            line = json.dumps(event.to_dict(), separators=(",", ":"), default=str)
        except (TypeError, ValueError) as exc:
            print(f"Failed to marshal log event: {exc}", file=sys.stderr)
            return

        output = self.output if self.output is not None else sys.stderr
        try:
            output.write(line + "\n")
            output.flush()
        except (OSError, ValueError) as exc:
            if output is not sys.stderr:
                print(f"Failed to write log event: {exc}", file=sys.stderr)

    def debug(self, event_type: str, message: str, payload: Mapping[str, Any] | None = None) -> None:
        self.log(Level.DEBUG, event_type, message, payload)

    def info(self, event_type: str, message: str, payload: Mapping[str, Any] | None = None) -> None:
        self.log(Level.INFO, event_type, message, payload)

    def warn(self, event_type: str, message: str, payload: Mapping[str, Any] | None = None) -> None:
        self.log(Level.WARN, event_type, message, payload)

    def error(self, event_type: str, message: str, payload: Mapping[str, Any] | None = None) -> None:
        self.log(Level.ERROR, event_type, message, payload)


def open_file_logger(min_level: Level | str, path: str | os.PathLike[str]) -> Logger:
    """Return a logger appending to ``path``, creating its directory if needed."""
    log_path = Path(path)
    log_path.parent.mkdir(mode=0o750, parents=True, exist_ok=True)
    fd = os.open(log_path, os.O_APPEND | os.O_CREAT | os.O_WRONLY, 0o600)
    handle = os.fdopen(fd, "a", encoding="utf-8")
    logger = Logger(min_level, handle)
    logger._file = handle
    return logger