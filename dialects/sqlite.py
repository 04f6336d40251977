"""SQLite dialect: the sqlite3 shell, run locally or on a remote host over ssh."""

from __future__ import annotations

import shlex

from config import EngineConfig
from errors import ConfigError

from . import Dialect

VALID_MODES = {"local", "ssh"}


def resolve_mode(config: EngineConfig) -> str:
    mode = config.options.get("mode", "local")
    if mode not in VALID_MODES:
        raise ConfigError(f"Invalid sqlite mode '{mode}'. Supported: {', '.join(sorted(VALID_MODES))}")
    return mode


def db_path(config: EngineConfig) -> str:
    path = config.options.get("path")
    if not path:
        raise ConfigError(f"Datasource '{config.name}' is missing required 'path' field for sqlite")
    return str(path)


class SQLiteDialect(Dialect):
    name = "sqlite"

    def sqlite_binary(self, config: EngineConfig) -> str:
        return config.options.get("sqlite_binary", "sqlite3")

    def ssh_opts(self, config: EngineConfig) -> list[str]:
        opts = [
            "-o", "StrictHostKeyChecking=accept-new",
            "-o", "BatchMode=yes",
            "-o", "ConnectTimeout=10",
            "-p", str(config.options.get("ssh_port", 22)),
        ]
        key_file = config.options.get("ssh_key_file")
        if key_file:
            opts.extend(["-i", key_file])
        return opts

    def ssh_dest(self, config: EngineConfig) -> str:
        user = config.options.get("ssh_user") or config.user
        host = config.options.get("ssh_host") or config.host
        return f"{user}@{host}" if user else host

    def binary(self, config: EngineConfig) -> str:
        """Executable to spawn: sqlite3 locally, ssh in remote mode."""
        return "ssh" if resolve_mode(config) == "ssh" else self.sqlite_binary(config)

    def wrap(self, config: EngineConfig, argv: list[str]) -> list[str]:
        """Args for binary(); in ssh mode argv becomes one quoted remote command."""
        if resolve_mode(config) == "local":
            return argv[1:]
        remote = " ".join(shlex.quote(a) for a in argv)
        return [*self.ssh_opts(config), self.ssh_dest(config), remote]

    def get_connection_args(self, config: EngineConfig) -> list[str]:
        return self.wrap(config, [self.sqlite_binary(config), db_path(config), "SELECT sqlite_version();"])

    def get_dump_args(self, config: EngineConfig, databases: list[str]) -> list[str]:
        return self.wrap(config, [self.sqlite_binary(config), db_path(config), ".dump"])

    def get_restore_args(self, config: EngineConfig, target: str | None = None) -> list[str]:
        return self.wrap(config, [self.sqlite_binary(config), target or db_path(config)])

    def get_safety_copy_args(self, config: EngineConfig, backup_path: str) -> list[str]:
        """Remote-mode copy of the live database before it is overwritten."""
        path = db_path(config)
        remote = (
            f"if test -f {shlex.quote(path)}; then cp {shlex.quote(path)} {shlex.quote(backup_path)}; fi"
        )
        return [*self.ssh_opts(config), self.ssh_dest(config), remote]


def dialects(engine: str) -> list[Dialect]:
    return [SQLiteDialect()]
