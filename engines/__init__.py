"""Database engine interface and factory."""

from __future__ import annotations

import importlib
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable

import process
from config import EngineConfig
from dialects import Dialect, DialectRegistry
from errors import ConfigError
from logs import JobLog
from process import CancelToken, ProcessResult, ProgressTracker


@dataclass(frozen=True)
class ConnectionStatus:
    success: bool
    message: str
    version: str | None = None
    edition: str | None = None


def resolve_timeout(config: EngineConfig) -> float | None:
    """Return the timeout in seconds from datasource options, or None."""
    timeout = config.options.get("timeout")
    if timeout is None:
        return None
    try:
        timeout = float(timeout)
    except (TypeError, ValueError):
        raise ConfigError(f"timeout must be a number of seconds, got {timeout!r}") from None
    if timeout <= 0:
        raise ConfigError(f"timeout must be positive, got {timeout}")
    return timeout


class Engine(ABC):
    """Abstract base for database engine backends.

    An engine turns the argv built by its dialect into supervised tool runs.
    Methods receive the caller's EngineConfig and never modify it.
    """

    source_type = ""
    # Format of one per-database dump file (archive.FORMAT_EXTENSIONS key).
    dump_format = "sql"
    # False when a single dump already covers every database (Redis RDB).
    supports_multi_db = True

    def __init__(self, registry: DialectRegistry):
        self.registry = registry

    def dialect(self, config: EngineConfig) -> Dialect:
        return self.registry.resolve(config.engine, config.detected_version)

    def format_for(self, config: EngineConfig) -> str:
        return self.dump_format

    # -- tool helpers -----------------------------------------------------

    def keep_stderr_line(self, line: str) -> bool:
        """Filter for stderr lines worth forwarding to the job log."""
        return True

    def run_tool(
        self,
        config: EngineConfig,
        binary: str,
        args: list[str],
        *,
        env: dict[str, str],
        job: JobLog | None = None,
        **kwargs,
    ) -> ProcessResult:
        tool = os.path.basename(binary)
        on_stderr = None
        if job is not None:
            job.command(binary, args)

            def on_stderr(line: str) -> None:
                if self.keep_stderr_line(line):
                    job(f"[{tool}] {line}")

        return process.run(
            binary, args,
            env=env,
            on_stderr=on_stderr,
            timeout=resolve_timeout(config),
            **kwargs,
        )

    # -- Engine interface -------------------------------------------------

    @abstractmethod
    def test(self, config: EngineConfig) -> ConnectionStatus:
        """Ping the server and read its version. Never raises."""

    @abstractmethod
    def list_databases(self, config: EngineConfig) -> list[str]:
        """User databases on the server (system databases filtered out)."""

    @abstractmethod
    def dump_database(self, config: EngineConfig, database: str | None, output_path: str,
                      job: JobLog, cancel: CancelToken | None = None) -> None:
        """Write one database (None: everything the tool dumps by default) to output_path."""

    def prepare_restore(self, config: EngineConfig, databases: Iterable[str]) -> None:
        """Make sure every target database exists and is writable."""

    @abstractmethod
    def restore(self, config: EngineConfig, input_path: str, job: JobLog,
                progress: ProgressTracker | None = None, cancel: CancelToken | None = None) -> dict | None:
        """Restore a single (non-archive) dump file. May return result metadata."""

    @abstractmethod
    def restore_database(self, config: EngineConfig, name: str, target: str, input_path: str,
                         job: JobLog, cancel: CancelToken | None = None) -> None:
        """Restore the dump of database `name` (from an archive) into `target`."""

    def analyze_dump(self, config: EngineConfig, input_path: str) -> list[str]:
        """Database names contained in a single dump file."""
        return []


# Map of engine type names to module names within this package.
_ENGINE_TYPES = {
    "mysql": "mysql",
    "mariadb": "mysql",
    "postgres": "postgres",
    "mongodb": "mongodb",
    "mssql": "mssql",
    "sqlite": "sqlite",
    "redis": "redis",
}


def create_engine(engine_type: str, registry: DialectRegistry | None = None) -> Engine:
    """Create an Engine instance by type name.

    The engine_type must match a key in _ENGINE_TYPES (e.g. 'postgres').
    """
    if engine_type not in _ENGINE_TYPES:
        raise ConfigError(
            f"Unknown engine type '{engine_type}'. "
            f"Available: {', '.join(_ENGINE_TYPES)}"
        )

    module = importlib.import_module(f".{_ENGINE_TYPES[engine_type]}", package=__name__)
    return module.create(registry or DialectRegistry.default())
