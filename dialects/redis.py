"""Redis dialect (redis-cli)."""

from __future__ import annotations

from config import EngineConfig
from process import build_env

from . import Dialect


class RedisDialect(Dialect):
    name = "redis"

    def get_connection_args(self, config: EngineConfig, db_index: int | None = None) -> list[str]:
        args = ["-h", config.host, "-p", str(config.port)]
        if config.user:
            args += ["--user", config.user]
        if config.options.get("tls"):
            args.append("--tls")
        index = config.options.get("db_index", 0) if db_index is None else db_index
        if index:
            args += ["-n", str(index)]
        return args

    def get_dump_args(self, config: EngineConfig, databases: list[str], destination: str | None = None) -> list[str]:
        # An RDB snapshot always holds every logical database.
        return self.get_connection_args(config, db_index=0) + ["--rdb", destination or "-"]

    def get_restore_args(self, config: EngineConfig, target: str | None = None) -> list[str]:
        """CONFIG GET for the server setting that locates the RDB file.

        Redis cannot load a snapshot over the network, so restoring means
        finding where the server reads it from; target is "dir" (default)
        or "dbfilename".
        """
        return self.get_connection_args(config, db_index=0) + ["CONFIG", "GET", target or "dir"]

    def get_env(self, config: EngineConfig, password: str | None = None) -> dict[str, str]:
        # Keeps the password off argv and silences redis-cli's -a warning.
        pw = config.password if password is None else password
        return build_env({"REDISCLI_AUTH": pw} if pw else None)


def dialects(engine: str) -> list[Dialect]:
    return [RedisDialect()]
