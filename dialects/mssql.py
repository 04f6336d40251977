"""SQL Server dialects.

SQL Server backups are written by the server itself (T-SQL BACKUP DATABASE)
to a path on the server filesystem; the client side only issues the query
through sqlcmd and copies the resulting .bak from a shared mount.
"""

from __future__ import annotations

from config import EngineConfig
from process import build_env
from utils import tokenize_options, version_tuple

from . import Dialect

DEFAULT_SERVER_BACKUP_PATH = "/var/opt/mssql/backup"
DEFAULT_LOCAL_BACKUP_PATH = "/tmp"
DEFAULT_DATA_PATH = "/var/opt/mssql/data"


def quote_literal(value: str) -> str:
    return value.replace("'", "''")


class MSSQLDialect(Dialect):
    """SQL Server 2019 and later (also the fallback for unknown versions)."""

    name = "mssql"
    client_binary = "sqlcmd"

    def get_connection_args(self, config: EngineConfig, user: str | None = None) -> list[str]:
        args = ["-S", f"{config.host},{config.port}", "-U", user or config.user, "-d", "master", "-b"]
        if config.options.get("encrypt", True):
            args.append("-N")
        if config.options.get("trust_server_certificate", False):
            args.append("-C")
        args += tokenize_options(config.extra_options)
        return args

    def get_query_args(self, config: EngineConfig, query: str, user: str | None = None) -> list[str]:
        """sqlcmd invocation printing bare, pipe separated rows."""
        return self.get_connection_args(config, user) + ["-h", "-1", "-W", "-s", "|", "-Q", f"SET NOCOUNT ON; {query}"]

    def get_backup_query(self, database: str, backup_path: str, compression: bool = True,
                         stats: int | None = None, copy_only: bool = False) -> str:
        clauses = ["FORMAT", "INIT"]
        if compression:
            clauses.append("COMPRESSION")
        if stats:
            clauses.append(f"STATS = {stats}")
        if copy_only:
            clauses.append("COPY_ONLY")
        clauses.append(f"NAME = N'{quote_literal(database)}-Full Database Backup'")
        return (
            f"BACKUP DATABASE [{database}] TO DISK = N'{quote_literal(backup_path)}' "
            f"WITH {', '.join(clauses)}"
        )

    def get_restore_query(self, database: str, backup_path: str, replace: bool = True,
                          recovery: bool = True, stats: int | None = None,
                          move_files: list[tuple[str, str]] | None = None) -> str:
        clauses = []
        if replace:
            clauses.append("REPLACE")
        clauses.append("RECOVERY" if recovery else "NORECOVERY")
        if stats:
            clauses.append(f"STATS = {stats}")
        for logical, physical in move_files or []:
            clauses.append(f"MOVE N'{quote_literal(logical)}' TO N'{quote_literal(physical)}'")
        return (
            f"RESTORE DATABASE [{database}] FROM DISK = N'{quote_literal(backup_path)}' "
            f"WITH {', '.join(clauses)}"
        )

    def get_filelist_query(self, backup_path: str) -> str:
        return f"RESTORE FILELISTONLY FROM DISK = N'{quote_literal(backup_path)}'"

    def get_dump_args(self, config: EngineConfig, databases: list[str], backup_path: str | None = None,
                      compression: bool = True) -> list[str]:
        path = backup_path or f"{DEFAULT_SERVER_BACKUP_PATH}/{databases[0]}.bak"
        return self.get_query_args(config, self.get_backup_query(databases[0], path, compression, stats=10))

    def get_restore_args(self, config: EngineConfig, target: str | None = None, backup_path: str | None = None,
                         move_files: list[tuple[str, str]] | None = None) -> list[str]:
        database = target or config.database
        path = backup_path or f"{DEFAULT_SERVER_BACKUP_PATH}/{database}.bak"
        query = self.get_restore_query(database, path, stats=10, move_files=move_files)
        return self.get_query_args(config, query)

    def get_env(self, config: EngineConfig, password: str | None = None) -> dict[str, str]:
        pw = config.password if password is None else password
        return build_env({"SQLCMDPASSWORD": pw} if pw else None)


class MSSQL2017Dialect(MSSQLDialect):
    """SQL Server 2017 (14.x); same BACKUP/RESTORE syntax, kept apart for version quirks."""

    name = "mssql-2017"

    def supports_version(self, version: str) -> bool:
        return version_tuple(version)[:1] == (14,)


def dialects(engine: str) -> list[Dialect]:
    return [MSSQL2017Dialect(), MSSQLDialect()]
