"""MySQL and MariaDB dialects (mysqldump / mysql, mariadb-dump / mariadb)."""

from __future__ import annotations

from config import EngineConfig
from process import build_env
from utils import tokenize_options, version_tuple

from . import Dialect


class MySQLBaseDialect(Dialect):
    name = "mysql"
    dump_binary = "mysqldump"
    client_binary = "mysql"
    admin_binary = "mysqladmin"

    def _base_args(self, config: EngineConfig) -> list[str]:
        # Always TCP, a socket path inside a container is never what we want.
        args = ["-h", config.host, "-P", str(config.port), "-u", config.user, "--protocol=tcp"]
        self.append_tls_args(args, config)
        return args

    def append_tls_args(self, args: list[str], config: EngineConfig) -> None:
        if config.options.get("disable_ssl"):
            args.append("--ssl-mode=DISABLED")

    def get_dump_args(self, config: EngineConfig, databases: list[str]) -> list[str]:
        args = self._base_args(config)
        args += ["--single-transaction", "--routines", "--triggers", "--events"]
        args += tokenize_options(config.extra_options)
        if databases:
            args += ["--databases", *databases]
        else:
            args.append("--all-databases")
        return args

    def get_restore_args(self, config: EngineConfig, target: str | None = None) -> list[str]:
        args = self._base_args(config)
        if target:
            args.append(target)
        return args

    def get_connection_args(self, config: EngineConfig) -> list[str]:
        return self._base_args(config)

    def get_env(self, config: EngineConfig, password: str | None = None) -> dict[str, str]:
        pw = config.password if password is None else password
        return build_env({"MYSQL_PWD": pw} if pw else None)


class MySQL57Dialect(MySQLBaseDialect):
    name = "mysql-5.7"

    def supports_version(self, version: str) -> bool:
        return "5.7." in version or (5, 7) <= version_tuple(version)[:2] < (8, 0)


class MySQL80Dialect(MySQLBaseDialect):
    name = "mysql-8.0"

    def supports_version(self, version: str) -> bool:
        parts = version_tuple(version)
        # MariaDB numbers its releases 10.x and up
        return bool(parts) and 8 <= parts[0] < 10

    def get_dump_args(self, config: EngineConfig, databases: list[str]) -> list[str]:
        args = super().get_dump_args(config, databases)
        args.append("--default-character-set=utf8mb4")
        return args


class MariaDBDialect(MySQLBaseDialect):
    name = "mariadb"
    dump_binary = "mariadb-dump"
    client_binary = "mariadb"
    admin_binary = "mariadb-admin"

    def append_tls_args(self, args: list[str], config: EngineConfig) -> None:
        # MariaDB clients do not know --ssl-mode.
        if config.options.get("disable_ssl"):
            args.append("--skip-ssl")


def dialects(engine: str) -> list[Dialect]:
    if engine == "mariadb":
        return [MariaDBDialect()]
    return [MySQL80Dialect(), MySQL57Dialect(), MySQLBaseDialect()]
