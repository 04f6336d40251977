"""Redis engine: RDB snapshots through redis-cli --rdb.

Redis cannot load an RDB file over the network, so restore only prepares
and logs the manual steps for the operator.
"""

from __future__ import annotations

import logging
import re

from config import EngineConfig
from errors import ProcessError
from logs import JobLog
from process import CancelToken, ProgressTracker

from . import ConnectionStatus, Engine

log = logging.getLogger(__name__)

_VERSION_RE = re.compile(r"redis_version:([^\r\n]+)")

DEFAULT_DATABASE_COUNT = 16


class RedisEngine(Engine):
    source_type = "redis"
    dump_format = "bak"
    supports_multi_db = False

    def _run_cli(self, config: EngineConfig, args: list[str]) -> str:
        env = self.dialect(config).get_env(config)
        return self.run_tool(config, "redis-cli", args, env=env, capture_stdout=True).text

    def _cli(self, config: EngineConfig, *command: str) -> str:
        return self._run_cli(config, self.dialect(config).get_connection_args(config, db_index=0) + list(command))

    @staticmethod
    def _config_value(output: str) -> str | None:
        # CONFIG GET replies with alternating key and value lines
        lines = [line.strip() for line in output.splitlines()]
        return lines[1] if len(lines) > 1 else None

    def test(self, config: EngineConfig) -> ConnectionStatus:
        try:
            if "PONG" not in self._cli(config, "PING"):
                return ConnectionStatus(False, "Redis did not respond with PONG")
            info = self._cli(config, "INFO", "server")
        except (ProcessError, TimeoutError) as exc:
            return ConnectionStatus(False, f"Connection failed: {exc}")
        match = _VERSION_RE.search(info)
        return ConnectionStatus(True, "Connection successful", version=match.group(1).strip() if match else None)

    def list_databases(self, config: EngineConfig) -> list[str]:
        count = self._config_value(self._cli(config, "CONFIG", "GET", "databases"))
        try:
            total = int(count) if count else DEFAULT_DATABASE_COUNT
        except ValueError:
            total = DEFAULT_DATABASE_COUNT
        return [str(i) for i in range(total)]

    def dump_database(self, config: EngineConfig, database: str | None, output_path: str,
                      job: JobLog, cancel: CancelToken | None = None) -> None:
        dialect = self.dialect(config)
        job.info("Starting Redis RDB backup...")
        self.run_tool(config, "redis-cli", dialect.get_dump_args(config, [], destination=output_path),
                      env=dialect.get_env(config), job=job, cancel=cancel)

    def restore(self, config: EngineConfig, input_path: str, job: JobLog,
                progress: ProgressTracker | None = None, cancel: CancelToken | None = None) -> dict:
        dialect = self.dialect(config)
        data_dir = self._config_value(self._run_cli(config, dialect.get_restore_args(config, "dir"))) or "/data"
        rdb_filename = (
            self._config_value(self._run_cli(config, dialect.get_restore_args(config, "dbfilename")))
            or "dump.rdb"
        )
        target = f"{data_dir}/{rdb_filename}"

        job.warning("Redis restore requires manual steps")
        job.info("Redis does not support remote RDB restore. To complete the restore:")
        job.info("1. Stop the Redis server")
        job.info(f"2. Copy the backup file to: {target}")
        job.info("3. Ensure correct file permissions (redis:redis)")
        job.info("4. Start the Redis server")
        job(
            "Systemd commands", details={
                "command": (
                    f"sudo systemctl stop redis\nsudo cp {input_path} {target}\n"
                    f"sudo chown redis:redis {target}\nsudo systemctl start redis"
                ),
            }, log_type="command",
        )
        if progress is not None:
            progress.finish()
        return {
            "requires_manual_steps": True,
            "data_dir": data_dir,
            "rdb_filename": rdb_filename,
        }

    def restore_database(self, config: EngineConfig, name: str, target: str, input_path: str,
                         job: JobLog, cancel: CancelToken | None = None) -> None:
        self.restore(config, input_path, job, cancel=cancel)


def create(registry) -> RedisEngine:
    return RedisEngine(registry)
