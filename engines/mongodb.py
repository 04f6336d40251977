"""MongoDB engine: mongodump/mongorestore archives, mongosh for probes."""

from __future__ import annotations

import json
import logging

from config import EngineConfig, selected_mapping
from errors import ConnectivityError, ProcessError
from logs import JobLog
from process import CancelToken, ProgressTracker, build_env
from utils import validate_identifier

from . import ConnectionStatus, Engine

log = logging.getLogger(__name__)

_SYSTEM_DATABASES = {"admin", "config", "local"}

_ACCESS_DENIED = ("not authorized", "Authorization", "requires authentication", "command create requires")

_PERM_CHECK = """
try {
    var target = db.getSiblingDB(%s);
    target.createCollection('__perm_check_tmp');
    target.getCollection('__perm_check_tmp').drop();
} catch (e) {
    print('ERROR: ' + e.message);
    quit(1);
}
"""


class MongoDBEngine(Engine):
    source_type = "mongodb"
    dump_format = "archive"

    def _eval(self, config: EngineConfig, script: str, user: str | None = None,
              password: str | None = None) -> str:
        dialect = self.dialect(config)
        args = ["--quiet", *dialect.get_connection_args(config, user, password), "--eval", script]
        return self.run_tool(config, "mongosh", args, env=build_env(), capture_stdout=True).text

    def test(self, config: EngineConfig) -> ConnectionStatus:
        log.info("Checking database connectivity: %s:%d", config.host, config.port)
        try:
            out = self._eval(config, "db.adminCommand({ ping: 1 }); print(db.version())")
        except (ProcessError, TimeoutError) as exc:
            return ConnectionStatus(False, f"Connection failed: {exc}")
        lines = [line.strip() for line in out.splitlines() if line.strip()]
        return ConnectionStatus(True, "Connection successful", version=lines[-1] if lines else None)

    def list_databases(self, config: EngineConfig) -> list[str]:
        out = self._eval(
            config,
            "db.adminCommand({ listDatabases: 1 }).databases.forEach(function (d) { print(d.name); })",
        )
        return [
            name for name in (line.strip() for line in out.splitlines())
            if name and name not in _SYSTEM_DATABASES
        ]

    def dump_database(self, config: EngineConfig, database: str | None, output_path: str,
                      job: JobLog, cancel: CancelToken | None = None) -> None:
        args = self.dialect(config).get_dump_args(config, [database] if database else [])
        self.run_tool(config, "mongodump", args, env=build_env(), job=job,
                      stdout_path=output_path, cancel=cancel)

    def prepare_restore(self, config: EngineConfig, databases) -> None:
        privileged = bool(config.privileged_user)
        user = config.privileged_user if privileged else None
        password = config.privileged_password if privileged else None
        for name in databases:
            validate_identifier(name)
            try:
                self._eval(config, _PERM_CHECK % json.dumps(name), user=user, password=password)
            except ProcessError as exc:
                output = str(exc)
                if any(marker in output for marker in _ACCESS_DENIED):
                    raise ConnectivityError(f"Access denied to database '{name}'. Permissions?") from exc
                raise

    def restore(self, config: EngineConfig, input_path: str, job: JobLog,
                progress: ProgressTracker | None = None, cancel: CancelToken | None = None) -> None:
        dialect = self.dialect(config)
        mapping = config.database_mapping
        args = dialect.get_restore_args(config)
        if mapping is not None:
            renames = [(e.original_name, e.target_name) for e in selected_mapping(mapping)]
            if not renames:
                job.warning("No database selected for restore; nothing to do")
                return
            self.prepare_restore(config, [target for _, target in renames])
            for source, target in renames:
                if source != target:
                    job.info(f"Remapping database: {source} -> {target}")
            args += dialect.get_rename_args(renames)
        elif config.databases:
            self.prepare_restore(config, config.databases)
        # Archive goes through stdin so progress can follow the bytes read.
        self.run_tool(config, "mongorestore", args, env=build_env(), job=job,
                      stdin_path=input_path, progress=progress, cancel=cancel)

    def restore_database(self, config: EngineConfig, name: str, target: str, input_path: str,
                         job: JobLog, cancel: CancelToken | None = None) -> None:
        self.prepare_restore(config, [target])
        if name != target:
            job.info(f"Remapping database: {name} -> {target}")
        args = self.dialect(config).get_restore_args(config, target, source=name, archive_path=input_path)
        self.run_tool(config, "mongorestore", args, env=build_env(), job=job, cancel=cancel)


def create(registry) -> MongoDBEngine:
    return MongoDBEngine(registry)
