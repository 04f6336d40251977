"""MongoDB dialect (mongodump / mongorestore / mongosh).

The Mongo tools have no environment variable for the password, so it is
passed on argv and masked by the job log.
"""

from __future__ import annotations

from config import EngineConfig
from utils import tokenize_options

from . import Dialect


class MongoDBBaseDialect(Dialect):
    name = "mongodb"

    def _auth_args(self, config: EngineConfig, user: str | None = None, password: str | None = None) -> list[str]:
        user = config.user if user is None else user
        password = config.password if password is None else password
        uri = config.options.get("uri")
        if uri:
            return [f"--uri={uri}"]
        args = ["--host", config.host, "--port", str(config.port)]
        if user and password:
            args += [
                "--username", user,
                "--password", password,
                "--authenticationDatabase", config.options.get("auth_database") or "admin",
            ]
        return args

    def get_connection_args(self, config: EngineConfig, user: str | None = None,
                            password: str | None = None) -> list[str]:
        uri = config.options.get("uri")
        if uri:
            # mongosh takes the URI positionally
            return [uri]
        return self._auth_args(config, user, password)

    def get_dump_args(self, config: EngineConfig, databases: list[str]) -> list[str]:
        args = self._auth_args(config)
        if len(databases) == 1:
            args += ["--db", databases[0]]
        args += ["--archive", "--gzip"]
        args += tokenize_options(config.extra_options)
        return args

    def get_restore_args(self, config: EngineConfig, target: str | None = None,
                         source: str | None = None, archive_path: str | None = None) -> list[str]:
        args = self._auth_args(config)
        args.append(f"--archive={archive_path}" if archive_path else "--archive")
        args += ["--gzip", "--drop"]
        if source and target and source != target:
            args += ["--nsFrom", f"{source}.*", "--nsTo", f"{target}.*"]
        elif target:
            args += ["--nsInclude", f"{target}.*"]
        return args

    def get_rename_args(self, renames: list[tuple[str, str]]) -> list[str]:
        """--nsInclude/--nsFrom/--nsTo for several databases in one archive."""
        args: list[str] = []
        for source, target in renames:
            args += ["--nsInclude", f"{source}.*"]
            if source != target:
                args += ["--nsFrom", f"{source}.*", "--nsTo", f"{target}.*"]
        return args


def dialects(engine: str) -> list[Dialect]:
    return [MongoDBBaseDialect()]
