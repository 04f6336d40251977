"""Database restore: detect shape -> (archive: extract, iterate) | single file -> feed the engine.

Also hosts the smaller entry points that share the engine plumbing:
prepare_restore, check_connection, list_databases and analyze_dump.
"""

from __future__ import annotations

import logging
import os
import time
from typing import Callable

from archive import extract_archive, is_multi_db_tar, read_manifest, scoped_temp_dir
from backup import BackupResult
from config import EngineConfig, should_restore_database, target_database_name
from dialects import DialectRegistry
from engines import ConnectionStatus, Engine, create_engine
from errors import FormatError, IntegrityError
from logs import JobLog, LogCallback
from process import CancelToken, ProgressTracker
from utils import format_size, utc_now

log = logging.getLogger(__name__)


def _restore_archive(engine: Engine, config: EngineConfig, source_path: str, job: JobLog,
                     on_progress: Callable[[int], None] | None, cancel: CancelToken | None) -> dict:
    mapping = config.database_mapping
    with scoped_temp_dir(f"dbarchive-restore-{engine.source_type}") as tmpdir:
        manifest = extract_archive(source_path, tmpdir)
        if manifest.source_type != engine.source_type:
            raise FormatError(
                f"Archive was created from '{manifest.source_type}', "
                f"cannot restore it into '{engine.source_type}'"
            )
        total = len(manifest.databases)
        job.info(f"Detected multi-database archive with {total} databases "
                 f"({format_size(manifest.total_size)})")

        restored: list[str] = []
        skipped: list[str] = []
        for i, entry in enumerate(manifest.databases, start=1):
            if should_restore_database(entry.name, mapping):
                target = target_database_name(entry.name, mapping)
                job.info(f"Restoring database {i}/{total}: {entry.name} -> {target}")
                engine.restore_database(config, entry.name, target, os.path.join(tmpdir, entry.filename),
                                        job, cancel)
                job.success(f"Database {target} restored")
                restored.append(target)
            else:
                job.info(f"Skipping database: {entry.name} (not selected)")
                skipped.append(entry.name)
            if on_progress is not None:
                on_progress(round(i * 100 / total))

    job.info(f"Multi-database restore finished: {len(restored)} restored, {len(skipped)} skipped")
    return {"multi_db": {"restored": restored, "skipped": skipped}}


def run_restore(
    config: EngineConfig,
    source_path: str,
    on_log: LogCallback | None = None,
    on_progress: Callable[[int], None] | None = None,
    *,
    registry: DialectRegistry | None = None,
    cancel: CancelToken | None = None,
) -> BackupResult:
    """Restore source_path (a single dump or a multi-database archive).

    config.database_mapping selects and renames databases: without a
    mapping everything is restored under its original name; with one,
    only selected entries are restored, under their target names.
    Never raises; failures come back as a BackupResult with success=False.
    """
    started_at = utc_now()
    job = JobLog(on_log, secrets=(config.password, config.privileged_password))
    start = time.monotonic()

    try:
        registry = registry or DialectRegistry.default()
        engine = create_engine(config.engine, registry)
        if not os.path.isfile(source_path):
            raise FormatError(f"Backup file not found: {source_path}")
        size = os.path.getsize(source_path)
        if size == 0:
            raise IntegrityError(f"Backup file is empty: {source_path}")

        job.info(f"Starting restore of {source_path} ({format_size(size)}) into '{config.name}' "
                 f"(engine: {config.engine}, dialect: {engine.dialect(config).name})")

        if is_multi_db_tar(source_path):
            metadata = _restore_archive(engine, config, source_path, job, on_progress, cancel)
        else:
            progress = ProgressTracker(size, on_progress)
            metadata = engine.restore(config, source_path, job, progress, cancel) or {}

        job.success(f"Restore completed in {time.monotonic() - start:.1f}s")
        return BackupResult(
            success=True,
            path=source_path,
            size=size,
            logs=tuple(job.lines),
            started_at=started_at,
            completed_at=utc_now(),
            metadata=metadata,
        )
    except Exception as exc:
        job.error(f"Error: {exc}")
        return BackupResult(
            success=False,
            path=source_path,
            error=job.mask(str(exc)),
            logs=tuple(job.lines),
            started_at=started_at,
            completed_at=utc_now(),
        )


def prepare_restore(config: EngineConfig, database_names: list[str], *,
                    registry: DialectRegistry | None = None) -> None:
    """Validate target names and create missing databases. Raises on failure."""
    engine = create_engine(config.engine, registry or DialectRegistry.default())
    engine.prepare_restore(config, database_names)


def check_connection(config: EngineConfig, *, registry: DialectRegistry | None = None) -> ConnectionStatus:
    """Ping the server and read its version. Never raises."""
    try:
        engine = create_engine(config.engine, registry or DialectRegistry.default())
        return engine.test(config)
    except Exception as exc:
        log.warning("Connection check for '%s' failed: %s", config.name, exc)
        return ConnectionStatus(False, f"Connection failed: {exc}")


def list_databases(config: EngineConfig, *, registry: DialectRegistry | None = None) -> list[str]:
    engine = create_engine(config.engine, registry or DialectRegistry.default())
    return engine.list_databases(config)


def analyze_dump(config: EngineConfig, source_path: str, *,
                 registry: DialectRegistry | None = None) -> list[str]:
    """Database names contained in a dump: manifest names for archives, else an engine scan."""
    if is_multi_db_tar(source_path):
        return read_manifest(source_path).names()
    engine = create_engine(config.engine, registry or DialectRegistry.default())
    return engine.analyze_dump(config, source_path)
