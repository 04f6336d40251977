#!/usr/bin/env python3
"""dbarchive: dump and restore MySQL, MariaDB, PostgreSQL, MongoDB, SQL Server, SQLite and Redis.

Usage:
    dbarchive dump <datasource> <destination>
    dbarchive dump-all <directory> [--parallel N]
    dbarchive restore <datasource> <file> [--map old=new ...] [--only name ...]
    dbarchive test <datasource>
    dbarchive databases <datasource>
    dbarchive analyze <datasource> <file>
    dbarchive manifest <file>
"""

from __future__ import annotations

import argparse
import concurrent.futures
import dataclasses
import logging
import os
import sys
import time
from datetime import datetime, timezone

import config
from archive import is_multi_db_tar, read_manifest
from backup import run_dump
from config import ConfigError, DatabaseMappingEntry
from dialects import DialectRegistry
from errors import BackupError
from restore import analyze_dump, check_connection, list_databases, run_restore
from utils import format_size

log = logging.getLogger("dbarchive")


def setup_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="[%(asctime)s] [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _log_progress(percent: int) -> None:
    if percent % 10 == 0:
        log.info("Progress: %d%%", percent)


def build_mapping(names: list[str], maps: list[str] | None, only: list[str] | None) -> list[DatabaseMappingEntry] | None:
    """Turn --map old=new and --only name flags into mapping entries (None when neither is given)."""
    if not maps and not only:
        return None
    renames: dict[str, str] = {}
    for item in maps or []:
        original, sep, target = item.partition("=")
        if not sep or not original or not target:
            raise ConfigError(f"Invalid --map value '{item}', expected old=new")
        renames[original] = target
    selected = set(only) if only else set(renames)
    originals = list(dict.fromkeys([*names, *renames, *selected]))
    return [
        DatabaseMappingEntry(name, renames.get(name, name), name in selected)
        for name in originals
    ]


def cmd_dump(args: argparse.Namespace, raw_config: dict, registry: DialectRegistry) -> None:
    ds = config.get_datasource(raw_config, args.datasource)
    result = run_dump(ds, args.destination, on_progress=_log_progress, registry=registry)
    if not result.success:
        log.error("Dump of '%s' failed: %s", ds.name, result.error)
        sys.exit(1)
    log.info("Dump written to %s (%s, sha256 %s)", result.path, format_size(result.size),
             result.metadata.get("sha256"))


def _dump_one(name: str, raw_config: dict, directory: str, registry: DialectRegistry):
    """Dump a single datasource. Self-contained, no shared mutable state."""
    ds = config.get_datasource(raw_config, name)
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    ext = "tar" if len(ds.databases) > 1 else "dump"
    path = os.path.join(directory, f"{name}-{timestamp}.{ext}")
    log.info("=== Datasource: %s ===", name)
    result = run_dump(ds, path, registry=registry)
    if not result.success:
        raise BackupError(result.error)
    return result


def cmd_dump_all(args: argparse.Namespace, raw_config: dict, registry: DialectRegistry) -> None:
    names = config.get_all_datasource_names(raw_config)
    if not names:
        log.error("No datasources defined in config.")
        sys.exit(1)
    os.makedirs(args.directory, exist_ok=True)

    parallel = getattr(args, "parallel", 1)
    failed = []
    succeeded = []
    total_start = time.monotonic()
    starts: dict[str, float] = {}

    with concurrent.futures.ThreadPoolExecutor(max_workers=max(1, parallel)) as executor:
        future_to_name = {}
        for name in names:
            starts[name] = time.monotonic()
            future_to_name[executor.submit(_dump_one, name, raw_config, args.directory, registry)] = name
        for future in concurrent.futures.as_completed(future_to_name):
            name = future_to_name[future]
            elapsed = time.monotonic() - starts[name]
            try:
                future.result()
                succeeded.append((name, elapsed))
            except BackupError as e:
                log.error("Datasource '%s' failed: %s", name, e)
                failed.append(name)

    log.info(
        "=== Summary: %d succeeded, %d failed, total time %.1fs ===",
        len(succeeded), len(failed), time.monotonic() - total_start,
    )
    for name, elapsed in succeeded:
        log.info("  OK   %s (%.1fs)", name, elapsed)
    for name in failed:
        log.info("  FAIL %s", name)

    if failed:
        log.error("Failed datasources: %s", ", ".join(failed))
        sys.exit(1)


def cmd_restore(args: argparse.Namespace, raw_config: dict, registry: DialectRegistry) -> None:
    ds = config.get_datasource(raw_config, args.datasource)
    mapping = build_mapping(analyze_dump(ds, args.file, registry=registry), args.map, args.only)
    if mapping is not None:
        ds = dataclasses.replace(ds, database_mapping=mapping)
    result = run_restore(ds, args.file, on_progress=_log_progress, registry=registry)
    if not result.success:
        log.error("Restore into '%s' failed: %s", ds.name, result.error)
        sys.exit(1)
    if result.metadata.get("requires_manual_steps"):
        log.warning("Restore of '%s' needs manual steps, see the log above.", ds.name)


def cmd_test(args: argparse.Namespace, raw_config: dict, registry: DialectRegistry) -> None:
    ds = config.get_datasource(raw_config, args.datasource)
    status = check_connection(ds, registry=registry)
    if not status.success:
        log.error("%s", status.message)
        sys.exit(1)
    log.info("%s (version %s)", status.message, status.version or "unknown")


def cmd_databases(args: argparse.Namespace, raw_config: dict, registry: DialectRegistry) -> None:
    ds = config.get_datasource(raw_config, args.datasource)
    for name in list_databases(ds, registry=registry):
        print(name)


def cmd_analyze(args: argparse.Namespace, raw_config: dict, registry: DialectRegistry) -> None:
    ds = config.get_datasource(raw_config, args.datasource)
    for name in analyze_dump(ds, args.file, registry=registry):
        print(name)


def cmd_manifest(args: argparse.Namespace, raw_config: dict | None, registry: DialectRegistry) -> None:
    if not is_multi_db_tar(args.file):
        log.error("%s is not a multi-database archive", args.file)
        sys.exit(1)
    print(read_manifest(args.file).to_json())


def main() -> None:
    setup_logging()

    parser = argparse.ArgumentParser(
        prog="dbarchive",
        description="Dump and restore databases with the engines' native tools.",
    )
    parser.add_argument(
        "-c", "--config",
        default=None,
        help=f"Config file path (default: $DBARCHIVE_CONFIG or {config.DEFAULT_CONFIG_PATH})",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # dump
    p_dump = subparsers.add_parser("dump", help="Dump one datasource")
    p_dump.add_argument("datasource", help="Datasource name from config")
    p_dump.add_argument("destination", help="Output file (a .tar archive when several databases are configured)")

    # dump-all
    p_all = subparsers.add_parser("dump-all", help="Dump every datasource into a directory")
    p_all.add_argument("directory", help="Output directory")
    p_all.add_argument("--parallel", type=int, default=1, metavar="N",
        help="Run up to N dumps in parallel (default: 1, sequential)")

    # restore
    p_restore = subparsers.add_parser("restore", help="Restore a dump or archive")
    p_restore.add_argument("datasource", help="Datasource name from config")
    p_restore.add_argument("file", help="Dump file or multi-database archive")
    p_restore.add_argument("--map", action="append", metavar="OLD=NEW",
        help="Restore database OLD under the name NEW (repeatable)")
    p_restore.add_argument("--only", action="append", metavar="NAME",
        help="Restore only this database (repeatable)")

    # test
    p_test = subparsers.add_parser("test", help="Check connectivity and report the server version")
    p_test.add_argument("datasource", help="Datasource name from config")

    # databases
    p_dbs = subparsers.add_parser("databases", help="List databases on the server")
    p_dbs.add_argument("datasource", help="Datasource name from config")

    # analyze
    p_analyze = subparsers.add_parser("analyze", help="List databases contained in a dump")
    p_analyze.add_argument("datasource", help="Datasource name from config")
    p_analyze.add_argument("file", help="Dump file or archive")

    # manifest
    p_manifest = subparsers.add_parser("manifest", help="Print the manifest of an archive")
    p_manifest.add_argument("file", help="Multi-database archive")

    args = parser.parse_args()

    commands = {
        "dump": cmd_dump,
        "dump-all": cmd_dump_all,
        "restore": cmd_restore,
        "test": cmd_test,
        "databases": cmd_databases,
        "analyze": cmd_analyze,
        "manifest": cmd_manifest,
    }

    try:
        raw_config = None if args.command == "manifest" else config.load(args.config)
        registry = DialectRegistry.default()
        commands[args.command](args, raw_config, registry)
    except BackupError as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
