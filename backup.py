"""Database dump: probe -> dump (single file or multi-database archive) -> verify."""

from __future__ import annotations

import dataclasses
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from archive import create_archive, entry_filename, scoped_temp_dir
from config import EngineConfig
from dialects import DialectRegistry
from engines import Engine, create_engine
from errors import ConnectivityError, IntegrityError
from logs import JobLog, LogCallback
from process import CancelToken
from utils import format_size, sha256_file, utc_now

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackupResult:
    success: bool
    started_at: datetime
    completed_at: datetime
    path: str | None = None
    size: int | None = None
    error: str | None = None
    logs: tuple[str, ...] = ()
    metadata: dict = field(default_factory=dict)


def probe_version(engine: Engine, config: EngineConfig, job: JobLog) -> EngineConfig:
    """Return a copy of config carrying the server version; the caller's config is untouched."""
    status = engine.test(config)
    if not status.success:
        raise ConnectivityError(status.message)
    if status.version:
        job.info(f"Detected {config.engine} server version {status.version}")
    return dataclasses.replace(config, detected_version=status.version)


def remove_partial(path: str) -> None:
    """Delete a partially written artifact; a failed cleanup is only logged."""
    try:
        os.remove(path)
    except FileNotFoundError:
        return
    except OSError as exc:
        log.warning("Could not remove partial file %s: %s", path, exc)
        return
    log.info("Removed partial file %s", path)


def _dump_multi(engine: Engine, config: EngineConfig, destination_path: str, job: JobLog,
                on_progress: Callable[[int], None] | None, cancel: CancelToken | None) -> dict:
    databases = config.databases
    fmt = engine.format_for(config)
    job.info(f"Dumping {len(databases)} databases into a multi-database archive")
    with scoped_temp_dir(f"dbarchive-{engine.source_type}") as tmpdir:
        files = []
        for i, name in enumerate(databases, start=1):
            path = os.path.join(tmpdir, entry_filename(name, fmt))
            job.info(f"Dumping database {i}/{len(databases)}: {name}")
            engine.dump_database(config, name, path, job, cancel)
            size = os.path.getsize(path)
            if size == 0:
                raise IntegrityError(f"Dump produced an empty (0-byte) file for '{name}'")
            job.info(f"Database {name} dumped ({format_size(size)})")
            files.append((name, path, fmt))
            if on_progress is not None:
                # the packing step takes the last share
                on_progress(round(i * 90 / len(databases)))

        try:
            manifest = create_archive(files, destination_path, engine.source_type, config.detected_version)
        except Exception:
            remove_partial(destination_path)
            raise
    job.info(f"Archive written with {len(manifest.databases)} databases")
    return {"multi_db": {"format": "tar", "databases": manifest.names()}}


def run_dump(
    config: EngineConfig,
    destination_path: str,
    on_log: LogCallback | None = None,
    on_progress: Callable[[int], None] | None = None,
    *,
    registry: DialectRegistry | None = None,
    cancel: CancelToken | None = None,
    probe: bool = True,
) -> BackupResult:
    """Dump the configured database(s) to destination_path.

    One database (or an engine whose dump always covers everything) is
    streamed straight into the destination. Several databases are dumped
    one after another into a private temp directory and packed into a TAR
    archive with a manifest. Never raises; failures come back as a
    BackupResult with success=False. A destination this job started
    writing is removed; anything already there before a failed probe or
    failed per-database dump is left alone.
    """
    started_at = utc_now()
    job = JobLog(on_log, secrets=(config.password, config.privileged_password))
    start = time.monotonic()
    # set once this job has put something at destination_path
    written = False

    try:
        registry = registry or DialectRegistry.default()
        engine = create_engine(config.engine, registry)
        if probe and not config.detected_version:
            config = probe_version(engine, config, job)
        job.info(f"Starting dump of '{config.name}' (engine: {config.engine}, "
                 f"dialect: {engine.dialect(config).name})")

        if len(config.databases) > 1 and engine.supports_multi_db:
            metadata = _dump_multi(engine, config, destination_path, job, on_progress, cancel)
            written = True
        else:
            database = config.databases[0] if config.databases else None
            written = True
            engine.dump_database(config, database, destination_path, job, cancel)
            metadata = {}

        size = os.path.getsize(destination_path)
        if size == 0:
            raise IntegrityError(
                f"Dump produced an empty (0-byte) file at {destination_path}. "
                f"This could indicate a problem with the database or engine."
            )
        metadata["sha256"] = sha256_file(destination_path)
        if config.detected_version:
            metadata["engine_version"] = config.detected_version

        job.success(f"Dump completed in {time.monotonic() - start:.1f}s ({format_size(size)})")
        if on_progress is not None:
            on_progress(100)
        return BackupResult(
            success=True,
            path=destination_path,
            size=size,
            logs=tuple(job.lines),
            started_at=started_at,
            completed_at=utc_now(),
            metadata=metadata,
        )
    except Exception as exc:
        if written:
            remove_partial(destination_path)
        job.error(f"Error: {exc}")
        return BackupResult(
            success=False,
            error=job.mask(str(exc)),
            logs=tuple(job.lines),
            started_at=started_at,
            completed_at=utc_now(),
        )
