"""SQLite engine: sqlite3 .dump locally or on a remote host over ssh."""

from __future__ import annotations

import logging
import os
import shutil
import time

from config import EngineConfig, selected_mapping
from dialects.sqlite import db_path, resolve_mode
from errors import FormatError, ProcessError
from logs import JobLog
from process import CancelToken, ProgressTracker, build_env

from . import ConnectionStatus, Engine

log = logging.getLogger(__name__)


class SQLiteEngine(Engine):
    source_type = "sqlite"
    dump_format = "sql"
    supports_multi_db = False

    def test(self, config: EngineConfig) -> ConnectionStatus:
        dialect = self.dialect(config)
        try:
            if resolve_mode(config) == "local" and not os.path.isfile(db_path(config)):
                return ConnectionStatus(False, f"Database file not found: {db_path(config)}")
            result = self.run_tool(config, dialect.binary(config), dialect.get_connection_args(config),
                                   env=build_env(), capture_stdout=True)
        except (ProcessError, TimeoutError) as exc:
            return ConnectionStatus(False, f"Connection failed: {exc}")
        return ConnectionStatus(True, "Connection successful", version=result.text.strip() or None)

    def list_databases(self, config: EngineConfig) -> list[str]:
        # One file is one database.
        return [os.path.splitext(os.path.basename(db_path(config)))[0]]

    def dump_database(self, config: EngineConfig, database: str | None, output_path: str,
                      job: JobLog, cancel: CancelToken | None = None) -> None:
        dialect = self.dialect(config)
        job.info(f"Starting SQLite dump in {resolve_mode(config)} mode...")
        self.run_tool(config, dialect.binary(config), dialect.get_dump_args(config, []),
                      env=build_env(), job=job, stdout_path=output_path, cancel=cancel)

    def _safety_copy(self, config: EngineConfig, job: JobLog) -> None:
        """Copy the live database to <path>.bak-<timestamp> before it is overwritten."""
        path = db_path(config)
        backup_path = f"{path}.bak-{int(time.time() * 1000)}"
        if resolve_mode(config) == "local":
            if os.path.exists(path):
                job.info(f"Backing up existing database to {backup_path}")
                shutil.copy2(path, backup_path)
            return
        job.info("Creating remote backup of existing database...")
        self.run_tool(config, "ssh", self.dialect(config).get_safety_copy_args(config, backup_path),
                      env=build_env(), job=job)

    def restore(self, config: EngineConfig, input_path: str, job: JobLog,
                progress: ProgressTracker | None = None, cancel: CancelToken | None = None) -> None:
        mapping = config.database_mapping
        if mapping is not None and len(selected_mapping(mapping)) > 1:
            raise FormatError("A SQLite dump holds one database; select a single mapping entry")
        if mapping is not None and not selected_mapping(mapping):
            job.warning("No database selected for restore; nothing to do")
            return
        dialect = self.dialect(config)
        self._safety_copy(config, job)
        self.run_tool(config, dialect.binary(config), dialect.get_restore_args(config),
                      env=build_env(), job=job, stdin_path=input_path, progress=progress, cancel=cancel)

    def restore_database(self, config: EngineConfig, name: str, target: str, input_path: str,
                         job: JobLog, cancel: CancelToken | None = None) -> None:
        self.restore(config, input_path, job, cancel=cancel)


def create(registry) -> SQLiteEngine:
    return SQLiteEngine(registry)
