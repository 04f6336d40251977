"""SQL Server engine: server-side BACKUP/RESTORE DATABASE issued through sqlcmd.

The .bak files are written and read by the SQL Server process on its own
filesystem (backup_path). This host reaches the same directory through a
shared mount (local_backup_path) to copy artifacts in and out.
"""

from __future__ import annotations

import logging
import os
import posixpath
import re
import secrets
from datetime import datetime, timezone

from config import EngineConfig, selected_mapping
from dialects.mssql import DEFAULT_DATA_PATH, DEFAULT_LOCAL_BACKUP_PATH, DEFAULT_SERVER_BACKUP_PATH
from errors import ConfigError, ConnectivityError, FormatError, ProcessError
from logs import JobLog
from process import CancelToken, ProgressTracker, iter_file_chunks
from utils import validate_identifier

from . import ConnectionStatus, Engine

log = logging.getLogger(__name__)

_VERSION_RE = re.compile(r"^(\d+\.\d+\.\d+)")
_MSSQL_IDENTIFIER_RE = re.compile(r"^[a-zA-Z0-9_]+$")


def _rows(text: str) -> list[list[str]]:
    return [
        [col.strip() for col in line.split("|")]
        for line in text.splitlines()
        if line.strip()
    ]


def _copy(src: str, dest: str, progress: ProgressTracker | None = None) -> None:
    fd = os.open(dest, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as out:
        for chunk in iter_file_chunks(src, progress):
            out.write(chunk)


def _remove_staged(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        log.warning("Could not remove staged backup file %s: %s", path, exc)


class MSSQLEngine(Engine):
    source_type = "mssql"
    dump_format = "bak"

    # -- private helpers --------------------------------------------------

    def _query(self, config: EngineConfig, sql: str, job: JobLog | None = None,
               user: str | None = None, password: str | None = None,
               cancel: CancelToken | None = None) -> str:
        args = self.dialect(config).get_query_args(config, sql, user)
        return self._sqlcmd(config, args, job=job, password=password, cancel=cancel)

    def _sqlcmd(self, config: EngineConfig, args: list[str], job: JobLog | None = None,
                password: str | None = None, cancel: CancelToken | None = None) -> str:
        dialect = self.dialect(config)
        result = self.run_tool(config, dialect.client_binary, args,
                               env=dialect.get_env(config, password), job=job, capture_stdout=True,
                               cancel=cancel)
        if job is not None:
            for line in result.text.splitlines():
                if "percent processed" in line or "successfully processed" in line:
                    job(line.strip())
        return result.text

    @staticmethod
    def _paths(config: EngineConfig) -> tuple[str, str]:
        server = config.options.get("backup_path", DEFAULT_SERVER_BACKUP_PATH)
        local = config.options.get("local_backup_path", DEFAULT_LOCAL_BACKUP_PATH)
        return server, local

    @staticmethod
    def _staging_name(database: str) -> str:
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S")
        return f"{database}_{stamp}_{secrets.token_hex(4)}.bak"

    def supports_compression(self, config: EngineConfig) -> bool:
        """Backup compression is not available on Express, Web or Azure SQL Edge."""
        try:
            out = self._query(
                config, "SELECT SERVERPROPERTY('Edition'), SERVERPROPERTY('EngineEdition')"
            )
        except (ProcessError, TimeoutError) as exc:
            log.warning("Could not determine SQL Server edition, compression disabled: %s", exc)
            return False
        rows = _rows(out)
        if not rows or len(rows[0]) < 2:
            return False
        edition = rows[0][0].lower()
        try:
            engine_edition = int(rows[0][1])
        except ValueError:
            return False
        if "express" in edition or "web" in edition or engine_edition == 9:
            return False
        return engine_edition in (2, 3, 8)

    # -- Engine interface -------------------------------------------------

    def test(self, config: EngineConfig) -> ConnectionStatus:
        log.info("Checking database connectivity: %s@%s:%d", config.user, config.host, config.port)
        try:
            out = self._query(
                config, "SELECT SERVERPROPERTY('ProductVersion'), SERVERPROPERTY('Edition')"
            )
        except (ProcessError, TimeoutError) as exc:
            message = str(exc)
            if "Login failed" in message:
                return ConnectionStatus(False, "Login failed. Check username/password.")
            if "certificate" in message:
                return ConnectionStatus(False, "Certificate error. Try trust_server_certificate: true.")
            return ConnectionStatus(False, f"Connection failed: {message}")
        rows = _rows(out)
        product = rows[0][0] if rows else ""
        edition = rows[0][1] if rows and len(rows[0]) > 1 else None
        match = _VERSION_RE.match(product)
        version = match.group(1) if match else product
        return ConnectionStatus(True, "Connection successful", version=version, edition=edition)

    def list_databases(self, config: EngineConfig) -> list[str]:
        out = self._query(
            config, "SELECT name FROM sys.databases WHERE database_id > 4 AND state = 0 ORDER BY name"
        )
        return [row[0] for row in _rows(out)]

    def dump_database(self, config: EngineConfig, database: str | None, output_path: str,
                      job: JobLog, cancel: CancelToken | None = None) -> None:
        database = database or config.database
        if not database:
            raise ConfigError("No database specified for backup")
        validate_identifier(database)
        server_dir, local_dir = self._paths(config)
        name = self._staging_name(database)
        server_path = posixpath.join(server_dir, name)
        local_path = os.path.join(local_dir, name)

        compression = self.supports_compression(config)
        job.info(f"Compression {'enabled' if compression else 'disabled'} for {database}")
        dialect = self.dialect(config)
        args = dialect.get_dump_args(config, [database], backup_path=server_path, compression=compression)
        try:
            self._sqlcmd(config, args, job=job, cancel=cancel)
            if not os.path.isfile(local_path):
                raise ConfigError(
                    f"Backup file not found at {local_path}. Check that local_backup_path "
                    f"matches the volume shared with the SQL Server host."
                )
            _copy(local_path, output_path)
        finally:
            _remove_staged(local_path)

    def prepare_restore(self, config: EngineConfig, databases) -> None:
        for name in databases:
            validate_identifier(name)
            if not _MSSQL_IDENTIFIER_RE.match(name):
                raise ConfigError(f"Invalid database name: {name}")
            try:
                out = self._query(config, f"SELECT state_desc FROM sys.databases WHERE name = N'{name}'")
            except ProcessError as exc:
                raise ConnectivityError(f"Cannot prepare restore for '{name}': {exc}") from exc
            rows = _rows(out)
            if rows and rows[0][0] != "ONLINE":
                raise ConnectivityError(f"Database '{name}' is not online (state: {rows[0][0]})")

    def _restore_bak(self, config: EngineConfig, original: str, target: str, input_path: str,
                     job: JobLog, progress: ProgressTracker | None = None,
                     cancel: CancelToken | None = None) -> None:
        self.prepare_restore(config, [target])
        server_dir, local_dir = self._paths(config)
        name = self._staging_name(target)
        server_path = posixpath.join(server_dir, name)
        local_path = os.path.join(local_dir, name)
        dialect = self.dialect(config)
        try:
            job.info(f"Staging backup file at {server_path}")
            _copy(input_path, local_path, progress)

            move_files = None
            if original != target:
                data_dir = config.options.get("data_path", DEFAULT_DATA_PATH)
                move_files = []
                for row in _rows(self._query(config, dialect.get_filelist_query(server_path))):
                    # LogicalName|PhysicalName|Type|...
                    ext = ".mdf" if len(row) > 2 and row[2] == "D" else ".ldf"
                    move_files.append((row[0], posixpath.join(data_dir, f"{target}{ext}")))
                job.info(f"Restoring database: {original} -> {target}")

            args = dialect.get_restore_args(config, target, backup_path=server_path, move_files=move_files)
            self._sqlcmd(config, args, job=job, cancel=cancel)
        finally:
            _remove_staged(local_path)

    def restore(self, config: EngineConfig, input_path: str, job: JobLog,
                progress: ProgressTracker | None = None, cancel: CancelToken | None = None) -> None:
        mapping = config.database_mapping
        if mapping is not None:
            selected = selected_mapping(mapping)
            if len(selected) > 1:
                raise FormatError(
                    "A .bak file holds one database; "
                    f"{len(selected)} mapping entries are selected"
                )
            if not selected:
                job.warning("No database selected for restore; nothing to do")
                return
            original, target = selected[0].original_name, selected[0].target_name
        elif config.database:
            original = target = config.database
        else:
            raise ConfigError("No target database specified for restore")
        self._restore_bak(config, original, target, input_path, job, progress, cancel)

    def restore_database(self, config: EngineConfig, name: str, target: str, input_path: str,
                         job: JobLog, cancel: CancelToken | None = None) -> None:
        self._restore_bak(config, name, target, input_path, job, cancel=cancel)


def create(registry) -> MSSQLEngine:
    return MSSQLEngine(registry)
