"""Per-job log collection forwarded to the caller and the stdlib logger."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable

from utils import format_command, mask_secrets

log = logging.getLogger(__name__)

INFO = "info"
SUCCESS = "success"
WARNING = "warning"
ERROR = "error"

GENERAL = "general"
COMMAND = "command"

_STDLIB_LEVELS = {
    INFO: logging.INFO,
    SUCCESS: logging.INFO,
    WARNING: logging.WARNING,
    ERROR: logging.ERROR,
}

LogCallback = Callable[[str, str, str, "dict | None"], None]


class JobLog:
    """Collects the human readable lines of one dump or restore job.

    Every line is kept for BackupResult.logs, passed to the optional
    on_log(message, level, log_type, details) callback and mirrored to
    the module logger.
    """

    def __init__(self, on_log: LogCallback | None = None, secrets=()):
        self._on_log = on_log
        self._secrets = tuple(s for s in secrets if s)
        self.lines: list[str] = []

    def __call__(self, message: str, level: str = INFO, log_type: str = GENERAL,
                 details: dict | None = None) -> None:
        message = mask_secrets(message, self._secrets)
        stamp = datetime.now(timezone.utc).strftime("%H:%M:%S")
        self.lines.append(f"[{stamp}] {message}")
        log.log(_STDLIB_LEVELS.get(level, logging.INFO), message)
        if self._on_log is not None:
            self._on_log(message, level, log_type, details)

    def info(self, message: str) -> None:
        self(message, INFO)

    def success(self, message: str) -> None:
        self(message, SUCCESS)

    def warning(self, message: str) -> None:
        self(message, WARNING)

    def error(self, message: str) -> None:
        self(message, ERROR)

    def mask(self, text: str) -> str:
        return mask_secrets(text, self._secrets)

    def command(self, binary: str, args: list[str]) -> None:
        """Log an invocation with every credential masked."""
        rendered = format_command(binary, args, self._secrets)
        self(f"Executing: {rendered}", INFO, COMMAND, {"command": rendered})
