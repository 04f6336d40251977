"""Configuration loading, validation, and env-var resolution."""

from __future__ import annotations

import logging
import os
import stat
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from errors import ConfigError

__all__ = [
    "ConfigError",
    "DatabaseMappingEntry",
    "EngineConfig",
    "get_all_datasource_names",
    "get_datasource",
    "load",
    "parse_mapping",
    "resolve_env",
    "selected_mapping",
    "should_restore_database",
    "target_database_name",
]

log = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "/config/config.yaml"

# Default ports per engine, used when the datasource omits one.
DEFAULT_PORTS = {
    "mysql": 3306,
    "mariadb": 3306,
    "postgres": 5432,
    "mongodb": 27017,
    "mssql": 1433,
    "sqlite": 0,
    "redis": 6379,
}

# Standard datasource keys (everything else goes into options).
_DS_STANDARD_KEYS = {
    "engine", "host", "port", "user", "password", "database", "databases",
    "extra_options", "detected_version", "privileged_user",
    "privileged_password", "database_mapping",
}


@dataclass(frozen=True)
class DatabaseMappingEntry:
    original_name: str
    target_name: str
    selected: bool = True


@dataclass
class EngineConfig:
    name: str
    engine: str  # "mysql", "postgres", ...
    host: str = "localhost"
    port: int = 0
    user: str = ""
    password: str = ""
    databases: list[str] = field(default_factory=list)
    extra_options: str = ""
    detected_version: str | None = None
    privileged_user: str | None = None
    privileged_password: str | None = None
    database_mapping: list[DatabaseMappingEntry] | None = None
    options: dict = field(default_factory=dict)  # engine-specific settings

    def __post_init__(self):
        self.databases = _normalize_databases(self.databases)
        if self.database_mapping is not None:
            _check_mapping(self.database_mapping)

    @property
    def database(self) -> str:
        """First configured database, or '' when none is set."""
        return self.databases[0] if self.databases else ""


def _normalize_databases(value) -> list[str]:
    """Accept a list or a comma separated string; strip, drop blanks, dedupe."""
    if value is None:
        return []
    if isinstance(value, str):
        value = value.split(",")
    seen: list[str] = []
    for item in value:
        name = str(item).strip()
        if name and name not in seen:
            seen.append(name)
    return seen


def _check_mapping(mapping: list[DatabaseMappingEntry]) -> None:
    names = set()
    for entry in mapping:
        if entry.original_name in names:
            raise ConfigError(
                f"Database mapping has more than one entry for '{entry.original_name}'"
            )
        names.add(entry.original_name)


def parse_mapping(raw) -> list[DatabaseMappingEntry] | None:
    """Build mapping entries from YAML (list of dicts) or None."""
    if raw is None:
        return None
    if not isinstance(raw, list):
        raise ConfigError("database_mapping must be a list of {original, target, selected}")
    entries = []
    for item in raw:
        if not isinstance(item, dict) or "original" not in item:
            raise ConfigError(f"Invalid database_mapping entry: {item!r}")
        original = str(item["original"])
        entries.append(DatabaseMappingEntry(
            original_name=original,
            target_name=str(item.get("target") or original),
            selected=bool(item.get("selected", True)),
        ))
    _check_mapping(entries)
    return entries


def should_restore_database(name: str, mapping: list[DatabaseMappingEntry] | None) -> bool:
    """No mapping restores everything; otherwise only selected, mapped names."""
    if mapping is None:
        return True
    for entry in mapping:
        if entry.original_name == name:
            return entry.selected
    return False


def target_database_name(name: str, mapping: list[DatabaseMappingEntry] | None) -> str:
    if mapping is None:
        return name
    for entry in mapping:
        if entry.original_name == name:
            return entry.target_name or name
    return name


def selected_mapping(mapping: list[DatabaseMappingEntry] | None) -> list[DatabaseMappingEntry]:
    return [e for e in mapping or [] if e.selected]


def _warn_if_exposed(path: str) -> None:
    """Credentials live in this file; complain when group/other can read it."""
    try:
        mode = stat.S_IMODE(os.stat(path).st_mode)
    except OSError as exc:
        log.debug("Could not stat config file '%s': %s", path, exc)
        return
    if mode & (stat.S_IRGRP | stat.S_IROTH):
        log.warning(
            "Config file '%s' is readable by group/others (mode %o), "
            "it may hold database passwords. Run: chmod 600 %s",
            path, mode, path,
        )


def load(config_path: str | None = None) -> dict:
    """Read the YAML config from config_path, $DBARCHIVE_CONFIG or the default path."""
    path = config_path or os.environ.get("DBARCHIVE_CONFIG") or DEFAULT_CONFIG_PATH
    if not Path(path).is_file():
        raise ConfigError(f"Error: config file not found: {path}")
    _warn_if_exposed(path)

    try:
        with open(path) as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: cannot parse {path}: {exc}") from None
    if not isinstance(raw, dict):
        raise ConfigError(f"Error: {path} must contain a YAML mapping at the top level")
    return raw


def _env_value(key: str, var: str) -> str:
    value = os.environ.get(var)
    if value is None:
        raise ConfigError(f"Error: '{key}' points at environment variable '{var}', which is not set")
    return value


def resolve_env(node):
    """Replace every ``<name>_env: VAR`` with ``<name>: $VAR``, walking nested maps and lists.

    ``{'password_env': 'PGPASS'}`` becomes ``{'password': '<value of $PGPASS>'}``;
    an unset variable is a ConfigError.
    """
    if isinstance(node, list):
        return [resolve_env(item) for item in node]
    if not isinstance(node, dict):
        return node
    out = {}
    for key, value in node.items():
        if isinstance(key, str) and key.endswith("_env") and isinstance(value, str):
            out[key[: -len("_env")]] = _env_value(key, value)
        else:
            out[key] = resolve_env(value)
    return out


def get_datasource(raw_config: dict, name: str) -> EngineConfig:
    """Get an EngineConfig by datasource name from the config."""
    datasources = raw_config.get("datasources") or {}
    if name not in datasources:
        raise ConfigError(
            f"Error: datasource '{name}' not found. "
            f"Available: {', '.join(datasources)}"
        )

    ds = resolve_env(datasources[name])

    engine = ds.get("engine")
    if not engine:
        raise ConfigError(
            f"Error: datasource '{name}' is missing required 'engine' field "
            f"(e.g. engine: postgres)"
        )
    if engine not in DEFAULT_PORTS:
        raise ConfigError(
            f"Error: datasource '{name}' has unknown engine '{engine}'. "
            f"Available: {', '.join(DEFAULT_PORTS)}"
        )

    # Collect engine-specific options (anything not in the standard keys)
    options = {k: v for k, v in ds.items() if k not in _DS_STANDARD_KEYS}

    databases = ds.get("databases", ds.get("database"))
    if databases is None and engine not in ("sqlite", "redis"):
        raise ConfigError(
            f"Error: datasource '{name}' is missing required 'database' field"
        )

    try:
        port = int(ds.get("port", DEFAULT_PORTS[engine]))
    except (TypeError, ValueError):
        raise ConfigError(f"Error: datasource '{name}' has invalid port {ds.get('port')!r}") from None

    detected = ds.get("detected_version")
    return EngineConfig(
        name=name,
        engine=engine,
        host=ds.get("host", "localhost"),
        port=port,
        user=ds.get("user", ""),
        password=ds.get("password", ""),
        databases=databases,
        extra_options=ds.get("extra_options", "") or "",
        detected_version=str(detected) if detected is not None else None,
        privileged_user=ds.get("privileged_user"),
        privileged_password=ds.get("privileged_password"),
        database_mapping=parse_mapping(ds.get("database_mapping")),
        options=options,
    )


def get_all_datasource_names(raw_config: dict) -> list[str]:
    """Return all datasource names defined in the config."""
    return list((raw_config.get("datasources") or {}).keys())
