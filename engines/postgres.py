"""PostgreSQL engine: pg_dump/pg_restore/psql based backup and restore."""

from __future__ import annotations

import logging
import os
import re

from config import EngineConfig, selected_mapping
from dialects.postgres import resolve_format
from errors import ConnectivityError, FormatError, ProcessError
from logs import JobLog
from process import CancelToken, ProgressTracker
from rewrite import POSTGRES_SHAPES, DumpRewriter, iter_lines, rewrite_lines, scan_database_names
from utils import validate_identifier, version_tuple

from . import ConnectionStatus, Engine

log = logging.getLogger(__name__)

CUSTOM_MAGIC = b"PGDMP"

_VERSION_RE = re.compile(r"PostgreSQL\s+([\d.]+)")
_DBNAME_RE = re.compile(r"^;\s+dbname:\s+(\S+)", re.MULTILINE)


def is_custom_format(path: str) -> bool:
    with open(path, "rb") as f:
        return f.read(len(CUSTOM_MAGIC)) == CUSTOM_MAGIC


def pg_restore_tolerated(returncode: int, stderr: str) -> bool:
    """pg_restore exits 1 for ignorable errors (e.g. missing roles) it only warns about."""
    text = stderr.lower()
    return returncode == 1 and "warning" in text and "errors ignored" in text


class PostgresEngine(Engine):
    source_type = "postgres"
    dump_format = "custom"

    # -- private helpers --------------------------------------------------

    @staticmethod
    def _pg_bin(config: EngineConfig, name: str) -> str:
        """Return path to a PG binary, respecting pg_version or the detected server major."""
        pg_ver = config.options.get("pg_version")
        if pg_ver is not None:
            return f"/usr/lib/postgresql/{int(pg_ver)}/bin/{name}"
        major = version_tuple(config.detected_version)[:1]
        if major:
            candidate = f"/usr/lib/postgresql/{major[0]}/bin/{name}"
            if os.path.isfile(candidate):
                return candidate
        return name

    def _psql(self, config: EngineConfig, sql: str, database: str = "postgres",
              user: str | None = None, password: str | None = None) -> str:
        dialect = self.dialect(config)
        args = ["-h", config.host, "-p", str(config.port), "-U", user or config.user,
                "-w", "-d", database, "-tAc", sql]
        result = self.run_tool(config, self._pg_bin(config, "psql"), args,
                               env=dialect.get_env(config, password), capture_stdout=True)
        return result.text

    def format_for(self, config: EngineConfig) -> str:
        return "custom" if resolve_format(config) == "custom" else "sql"

    # -- Engine interface -------------------------------------------------

    def test(self, config: EngineConfig) -> ConnectionStatus:
        dialect = self.dialect(config)
        log.info("Checking database connectivity: %s@%s:%d", config.user, config.host, config.port)
        try:
            self.run_tool(
                config, self._pg_bin(config, "pg_isready"),
                dialect.get_connection_args(config) + ["-d", config.database or "postgres"],
                env=dialect.get_env(config),
            )
            out = self._psql(config, "SELECT version();", database=config.database or "postgres")
        except (ProcessError, TimeoutError) as exc:
            return ConnectionStatus(False, f"Database is not reachable: {exc}")
        match = _VERSION_RE.search(out)
        version = match.group(1) if match else out.strip()
        self._check_version_compat(config, version)
        return ConnectionStatus(True, "Connection successful", version=version)

    def _check_version_compat(self, config: EngineConfig, server_version: str) -> None:
        try:
            result = self.run_tool(config, self._pg_bin(config, "pg_dump"), ["--version"],
                                   env=self.dialect(config).get_env(config), capture_stdout=True)
        except (ProcessError, TimeoutError) as exc:
            log.warning("Could not read pg_dump version: %s", exc)
            return
        client = version_tuple(re.sub(r"^\D+", "", result.text))[:1]
        server = version_tuple(server_version)[:1]
        if not client or not server:
            return
        log.info("PostgreSQL client: %d, server: %d", client[0], server[0])
        if client[0] < server[0]:
            log.warning(
                "pg_dump client version (%d) is older than server (%d). "
                "This may cause errors or missing features. "
                "Set pg_version: %d on this datasource.",
                client[0], server[0], server[0],
            )

    def list_databases(self, config: EngineConfig) -> list[str]:
        out = self._psql(config, "SELECT datname FROM pg_database WHERE datistemplate = false;")
        return [line.strip() for line in out.splitlines() if line.strip()]

    def dump_database(self, config: EngineConfig, database: str | None, output_path: str,
                      job: JobLog, cancel: CancelToken | None = None) -> None:
        dialect = self.dialect(config)
        database = database or config.database
        if not database:
            raise FormatError("pg_dump needs a database name")
        args = dialect.get_dump_args(config, [database])
        self.run_tool(config, self._pg_bin(config, "pg_dump"), args, env=dialect.get_env(config),
                      job=job, stdout_path=output_path, cancel=cancel)

    def prepare_restore(self, config: EngineConfig, databases) -> None:
        privileged = bool(config.privileged_user)
        user = config.privileged_user if privileged else config.user
        password = config.privileged_password if privileged else config.password

        for name in databases:
            validate_identifier(name)
            try:
                exists = self._psql(
                    config, f"SELECT 1 FROM pg_database WHERE datname = '{name}';",
                    user=user, password=password,
                ).strip() == "1"
                if not exists:
                    # Safe: name is validated to contain only [A-Za-z0-9_$-]
                    self._psql(config, f'CREATE DATABASE "{name}";', user=user, password=password)
                    log.info("Created database '%s'", name)
            except ProcessError as exc:
                if "permission denied" in exc.stderr:
                    raise ConnectivityError(
                        f"Access denied for user '{user}' to create database '{name}'"
                    ) from exc
                if "already exists" not in exc.stderr:
                    raise

    def _pg_restore(self, config: EngineConfig, input_path: str, target: str, job: JobLog,
                    progress: ProgressTracker | None, cancel: CancelToken | None) -> None:
        dialect = self.dialect(config)
        result = self.run_tool(
            config, self._pg_bin(config, "pg_restore"), dialect.get_pg_restore_args(config, target),
            env=dialect.get_env(config), job=job, stdin_path=input_path, progress=progress,
            cancel=cancel, tolerate=pg_restore_tolerated,
        )
        if result.tolerated:
            job.warning(f"pg_restore finished with ignorable errors: {result.stderr}")
            if progress is not None:
                progress.finish()

    def _psql_restore(self, config: EngineConfig, source, target: str, strict: bool, job: JobLog,
                      progress: ProgressTracker | None, cancel: CancelToken | None) -> None:
        dialect = self.dialect(config)
        self.run_tool(
            config, self._pg_bin(config, "psql"), dialect.get_psql_args(config, target, strict=strict),
            env=dialect.get_env(config), job=job, stdin_producer=source, progress=progress, cancel=cancel,
        )

    def _single_target(self, config: EngineConfig) -> str | None:
        """Target for a one-database dump; None when the mapping deselects it."""
        mapping = config.database_mapping
        if mapping is None:
            return config.database or None
        selected = selected_mapping(mapping)
        if len(selected) > 1:
            raise FormatError(
                "A single-database dump can only be restored into one target; "
                f"{len(selected)} mapping entries are selected"
            )
        return selected[0].target_name if selected else None

    def restore(self, config: EngineConfig, input_path: str, job: JobLog,
                progress: ProgressTracker | None = None, cancel: CancelToken | None = None) -> None:
        mapping = config.database_mapping

        if is_custom_format(input_path):
            target = self._single_target(config)
            if target is None:
                job.warning("No database selected for restore; nothing to do")
                return
            self.prepare_restore(config, [target])
            self._pg_restore(config, input_path, target, job, progress, cancel)
            return

        if mapping is not None and scan_database_names(input_path, POSTGRES_SHAPES):
            # Cluster-style script switching databases with \connect.
            self.prepare_restore(config, [e.target_name for e in selected_mapping(mapping)])
            rewriter = DumpRewriter(POSTGRES_SHAPES, mapping)
            source = rewrite_lines(iter_lines(input_path, progress), rewriter)
            self._psql_restore(config, source, "postgres", False, job, progress, cancel)
            return

        target = self._single_target(config)
        if target is None:
            job.warning("No database selected for restore; nothing to do")
            return
        self.prepare_restore(config, [target])
        self._psql_restore(config, iter_lines(input_path, progress), target, True, job, progress, cancel)

    def restore_database(self, config: EngineConfig, name: str, target: str, input_path: str,
                         job: JobLog, cancel: CancelToken | None = None) -> None:
        self.prepare_restore(config, [target])
        if is_custom_format(input_path):
            self._pg_restore(config, input_path, target, job, None, cancel)
        else:
            self._psql_restore(config, iter_lines(input_path), target, True, job, None, cancel)

    def analyze_dump(self, config: EngineConfig, input_path: str) -> list[str]:
        if not is_custom_format(input_path):
            return scan_database_names(input_path, POSTGRES_SHAPES)
        result = self.run_tool(config, self._pg_bin(config, "pg_restore"), ["--list", input_path],
                               env=self.dialect(config).get_env(config), capture_stdout=True)
        match = _DBNAME_RE.search(result.text)
        return [match.group(1)] if match else []


def create(registry) -> PostgresEngine:
    return PostgresEngine(registry)
