"""PostgreSQL dialects (pg_dump / pg_restore / psql)."""

from __future__ import annotations

from config import EngineConfig
from errors import ConfigError
from process import build_env
from utils import tokenize_options, version_tuple

from . import Dialect

VALID_FORMATS = {"plain", "custom"}


def resolve_format(config: EngineConfig) -> str:
    """Return the dump format from datasource options, defaulting to 'custom'."""
    fmt = config.options.get("format", "custom")
    if fmt not in VALID_FORMATS:
        raise ConfigError(
            f"Invalid format '{fmt}'. Supported: {', '.join(sorted(VALID_FORMATS))}"
        )
    return fmt


class PostgresBaseDialect(Dialect):
    name = "postgres"

    def get_connection_args(self, config: EngineConfig) -> list[str]:
        return ["-h", config.host, "-p", str(config.port), "-U", config.user]

    def get_dump_args(self, config: EngineConfig, databases: list[str]) -> list[str]:
        args = self.get_connection_args(config)
        args += ["--no-owner", "--no-privileges"]
        if resolve_format(config) == "custom":
            args += ["-Fc", "-Z0"]
        if databases:
            # pg_dump handles exactly one database per run.
            args += ["-d", databases[0]]
        args += tokenize_options(config.extra_options)
        return args

    def get_restore_args(self, config: EngineConfig, target: str | None = None) -> list[str]:
        # psql and pg_restore share these flags; -w never prompts for a password.
        args = self.get_connection_args(config) + ["-w"]
        args += ["-d", target or config.database or "postgres"]
        return args

    def get_pg_restore_args(self, config: EngineConfig, target: str | None = None) -> list[str]:
        return self.get_restore_args(config, target) + ["--no-owner", "--no-privileges"]

    def get_psql_args(self, config: EngineConfig, target: str | None = None, strict: bool = True) -> list[str]:
        args = self.get_restore_args(config, target)
        if strict:
            args += ["--single-transaction", "--set", "ON_ERROR_STOP=1"]
        return args

    def get_env(self, config: EngineConfig, password: str | None = None) -> dict[str, str]:
        pw = config.password if password is None else password
        return build_env({"PGPASSWORD": pw} if pw else None)


class Postgres14Dialect(PostgresBaseDialect):
    name = "postgres-14"

    def supports_version(self, version: str) -> bool:
        return version_tuple(version)[:1] in ((14,), (15,))

    def get_dump_args(self, config: EngineConfig, databases: list[str]) -> list[str]:
        return super().get_dump_args(config, databases) + ["--no-sync"]


class Postgres16Dialect(PostgresBaseDialect):
    name = "postgres-16"

    def supports_version(self, version: str) -> bool:
        return version_tuple(version)[:1] == (16,)

    def get_dump_args(self, config: EngineConfig, databases: list[str]) -> list[str]:
        return super().get_dump_args(config, databases) + ["--no-sync"]


class Postgres17Dialect(PostgresBaseDialect):
    name = "postgres-17"

    def supports_version(self, version: str) -> bool:
        parts = version_tuple(version)
        return bool(parts) and parts[0] >= 17

    def get_dump_args(self, config: EngineConfig, databases: list[str]) -> list[str]:
        return super().get_dump_args(config, databases) + ["--no-sync", "--encoding=UTF8"]


def dialects(engine: str) -> list[Dialect]:
    return [Postgres17Dialect(), Postgres16Dialect(), Postgres14Dialect(), PostgresBaseDialect()]
