"""Per-engine, per-version command line builders and the registry that picks one."""

from __future__ import annotations

import importlib
from abc import ABC, abstractmethod

from config import EngineConfig
from errors import ConfigError
from process import build_env


class Dialect(ABC):
    """Builds argv for one engine's CLI tools within one version range.

    Dialects are stateless; the same instance serves every job.
    """

    name = "base"

    def supports_version(self, version: str) -> bool:
        return True

    @abstractmethod
    def get_dump_args(self, config: EngineConfig, databases: list[str]) -> list[str]:
        """Arguments for the dump tool."""

    @abstractmethod
    def get_restore_args(self, config: EngineConfig, target: str | None = None) -> list[str]:
        """Arguments for the restore tool, optionally pinned to a target database."""

    @abstractmethod
    def get_connection_args(self, config: EngineConfig) -> list[str]:
        """Host/port/user/TLS arguments shared by the engine's client tools."""

    def get_env(self, config: EngineConfig, password: str | None = None) -> dict[str, str]:
        """Child environment; credentials travel here rather than on argv.

        password overrides config.password (privileged connections).
        """
        return build_env()

    def __repr__(self) -> str:
        return f"<{type(self).__name__}>"


# engine id -> module defining a ``dialects()`` function (most specific first)
_DIALECT_MODULES = {
    "mysql": "mysql",
    "mariadb": "mysql",
    "postgres": "postgres",
    "mongodb": "mongodb",
    "mssql": "mssql",
    "sqlite": "sqlite",
    "redis": "redis",
}


class DialectRegistry:
    """Ordered dialect lists per engine; the first one supporting the version wins."""

    def __init__(self):
        self._dialects: dict[str, list[Dialect]] = {}

    def register(self, engine: str, dialects: list[Dialect]) -> None:
        self._dialects[engine] = list(dialects)

    def engines(self) -> list[str]:
        return list(self._dialects)

    def resolve(self, engine: str, version: str | None = None) -> Dialect:
        """Most specific dialect for (engine, version); base dialect when version is unknown."""
        candidates = self._dialects.get(engine)
        if not candidates:
            raise ConfigError(
                f"No dialects registered for engine '{engine}'. "
                f"Available: {', '.join(self._dialects)}"
            )
        if not version:
            return candidates[-1]
        for dialect in candidates:
            if dialect.supports_version(version):
                return dialect
        raise ConfigError(f"No {engine} dialect supports server version {version}")

    @classmethod
    def default(cls) -> DialectRegistry:
        """Registry with every built-in dialect."""
        registry = cls()
        for engine, module_name in _DIALECT_MODULES.items():
            module = importlib.import_module(f".{module_name}", package=__name__)
            registry.register(engine, module.dialects(engine))
        return registry
