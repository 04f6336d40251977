"""MySQL / MariaDB engine: mysqldump and mysql client based backup and restore."""

from __future__ import annotations

import dataclasses
import logging

from config import DatabaseMappingEntry, EngineConfig, selected_mapping
from errors import ConnectivityError, ProcessError
from logs import JobLog
from process import CancelToken, ProgressTracker
from rewrite import MYSQL_SHAPES, DumpRewriter, iter_lines, rewrite_lines, scan_database_names
from utils import validate_identifier, version_tuple

from . import ConnectionStatus, Engine

log = logging.getLogger(__name__)

_SYSTEM_DATABASES = {"information_schema", "mysql", "performance_schema", "sys"}

# Client chatter on stderr that is not worth a job log line.
_NOISE = ("Using a password on the command line", "Deprecated program name")


class MySQLEngine(Engine):
    source_type = "mysql"
    dump_format = "sql"

    def keep_stderr_line(self, line: str) -> bool:
        return not any(n in line for n in _NOISE)

    def _query(self, config: EngineConfig, sql: str, user: str | None = None,
               password: str | None = None) -> str:
        dialect = self.dialect(config)
        cfg = dataclasses.replace(config, user=user) if user else config
        args = dialect.get_connection_args(cfg) + ["-N", "-s", "-e", sql]
        result = self.run_tool(config, dialect.client_binary, args,
                               env=dialect.get_env(config, password), capture_stdout=True)
        return result.text

    # -- Engine interface -------------------------------------------------

    def test(self, config: EngineConfig) -> ConnectionStatus:
        dialect = self.dialect(config)
        log.info("Checking database connectivity: %s@%s:%d", config.user, config.host, config.port)
        try:
            self.run_tool(
                config, dialect.admin_binary,
                ["ping", *dialect.get_connection_args(config), "--connect-timeout=10"],
                env=dialect.get_env(config),
            )
            raw = self._query(config, "SELECT VERSION()").strip()
        except (ProcessError, TimeoutError) as exc:
            return ConnectionStatus(False, f"Connection failed: {exc}")
        # "8.0.35-log" and "10.11.6-MariaDB-1:10.11.6+maria~ubu2204" keep only the numbers
        version = ".".join(str(p) for p in version_tuple(raw)) or raw
        edition = "MariaDB" if "mariadb" in raw.lower() else "MySQL"
        return ConnectionStatus(True, "Connection successful", version=version, edition=edition)

    def list_databases(self, config: EngineConfig) -> list[str]:
        out = self._query(config, "SHOW DATABASES")
        return [
            name for name in (line.strip() for line in out.splitlines())
            if name and name not in _SYSTEM_DATABASES
        ]

    def dump_database(self, config: EngineConfig, database: str | None, output_path: str,
                      job: JobLog, cancel: CancelToken | None = None) -> None:
        dialect = self.dialect(config)
        args = dialect.get_dump_args(config, [database] if database else [])
        self.run_tool(config, dialect.dump_binary, args, env=dialect.get_env(config), job=job,
                      stdout_path=output_path, cancel=cancel)

    def prepare_restore(self, config: EngineConfig, databases) -> None:
        privileged = bool(config.privileged_user)
        user = config.privileged_user if privileged else config.user
        password = config.privileged_password if privileged else config.password

        for name in databases:
            validate_identifier(name)
            try:
                self._query(config, f"CREATE DATABASE IF NOT EXISTS `{name}`", user=user, password=password)
                if privileged and config.user:
                    self._query(
                        config,
                        f"GRANT ALL PRIVILEGES ON `{name}`.* TO '{config.user}'@'%'; "
                        f"GRANT ALL PRIVILEGES ON `{name}`.* TO '{config.user}'@'localhost'; "
                        f"FLUSH PRIVILEGES;",
                        user=user, password=password,
                    )
            except ProcessError as exc:
                if "Access denied" in exc.stderr or "ERROR 1044" in exc.stderr:
                    raise ConnectivityError(
                        f"Access denied for user '{user}' to database '{name}'. User permissions?"
                    ) from exc
                raise
            log.info("Database '%s' ensured.", name)

    def _restore_stream(self, config: EngineConfig, input_path: str, target: str | None,
                        mapping: list[DatabaseMappingEntry] | None, job: JobLog,
                        progress: ProgressTracker | None, cancel: CancelToken | None) -> None:
        dialect = self.dialect(config)
        args = dialect.get_restore_args(config, target)
        if mapping is None:
            source = iter_lines(input_path, progress)
        else:
            rewriter = DumpRewriter(MYSQL_SHAPES, mapping)
            source = rewrite_lines(iter_lines(input_path, progress), rewriter)
        self.run_tool(config, dialect.client_binary, args, env=dialect.get_env(config), job=job,
                      stdin_producer=source, progress=progress, cancel=cancel)

    def restore(self, config: EngineConfig, input_path: str, job: JobLog,
                progress: ProgressTracker | None = None, cancel: CancelToken | None = None) -> None:
        mapping = config.database_mapping
        if mapping is not None:
            targets = [e.target_name for e in selected_mapping(mapping)]
        else:
            targets = list(config.databases)
        self.prepare_restore(config, targets)
        target = targets[0] if len(targets) == 1 else None
        self._restore_stream(config, input_path, target, mapping, job, progress, cancel)

    def restore_database(self, config: EngineConfig, name: str, target: str, input_path: str,
                         job: JobLog, cancel: CancelToken | None = None) -> None:
        self.prepare_restore(config, [target])
        mapping = [DatabaseMappingEntry(name, target, True)]
        self._restore_stream(config, input_path, target, mapping, job, None, cancel)

    def analyze_dump(self, config: EngineConfig, input_path: str) -> list[str]:
        return scan_database_names(input_path, MYSQL_SHAPES)


def create(registry) -> MySQLEngine:
    return MySQLEngine(registry)
