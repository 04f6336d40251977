"""Multi-database TAR archive: manifest.json first, then one dump file per database."""

from __future__ import annotations

import contextlib
import io
import json
import logging
import os
import shutil
import tarfile
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import PurePosixPath

from errors import ArchiveFormatError

log = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"
MANIFEST_VERSION = 1

# Dump format -> file extension inside the archive.
FORMAT_EXTENSIONS = {
    "sql": "sql",
    "custom": "dump",
    "archive": "archive",
    "bak": "bak",
}


@dataclass(frozen=True)
class DatabaseEntry:
    name: str
    filename: str
    size: int
    format: str

    def to_dict(self) -> dict:
        return {"name": self.name, "filename": self.filename, "size": self.size, "format": self.format}


@dataclass(frozen=True)
class ArchiveManifest:
    source_type: str
    databases: tuple[DatabaseEntry, ...] = ()
    engine_version: str | None = None
    created_at: str = field(default_factory=lambda: _iso_now())
    version: int = MANIFEST_VERSION

    @property
    def total_size(self) -> int:
        return sum(db.size for db in self.databases)

    def names(self) -> list[str]:
        return [db.name for db in self.databases]

    def to_json(self) -> str:
        data = {
            "version": self.version,
            "createdAt": self.created_at,
            "sourceType": self.source_type,
        }
        if self.engine_version is not None:
            data["engineVersion"] = self.engine_version
        data["databases"] = [db.to_dict() for db in self.databases]
        data["totalSize"] = self.total_size
        return json.dumps(data, indent=2)

    @classmethod
    def from_json(cls, text: str | bytes) -> ArchiveManifest:
        try:
            data = json.loads(text)
        except ValueError as exc:
            raise ArchiveFormatError(f"Invalid archive manifest: {exc}") from None
        if not isinstance(data, dict):
            raise ArchiveFormatError("Invalid archive manifest: expected a JSON object")
        if data.get("version") != MANIFEST_VERSION:
            raise ArchiveFormatError(
                f"Unsupported archive manifest version: {data.get('version')!r}"
            )
        try:
            databases = tuple(
                DatabaseEntry(
                    name=db["name"],
                    filename=db["filename"],
                    size=int(db["size"]),
                    format=db["format"],
                )
                for db in data["databases"]
            )
            return cls(
                source_type=data["sourceType"],
                databases=databases,
                engine_version=data.get("engineVersion"),
                created_at=data["createdAt"],
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ArchiveFormatError(f"Invalid archive manifest: missing or bad field {exc}") from None


def _iso_now() -> str:
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


def entry_filename(name: str, fmt: str) -> str:
    """Archive member name for a database dump, e.g. 'shop.sql'."""
    return f"{name}.{FORMAT_EXTENSIONS[fmt]}"


@contextlib.contextmanager
def scoped_temp_dir(prefix: str):
    """Private, uniquely named working directory removed on every exit path."""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    with tempfile.TemporaryDirectory(prefix=f"{prefix}-{stamp}-") as tmpdir:
        os.chmod(tmpdir, 0o700)
        yield tmpdir


def create_archive(
    files: list[tuple[str, str, str]],
    dest_path: str,
    source_type: str,
    engine_version: str | None = None,
) -> ArchiveManifest:
    """Pack (database name, dump path, format) triples into dest_path.

    The manifest is written as the first member; dump files are streamed
    into the archive without loading them into memory.
    """
    entries = []
    seen = set()
    for name, path, fmt in files:
        filename = entry_filename(name, fmt)
        if filename in seen:
            raise ArchiveFormatError(f"Duplicate archive member: {filename}")
        seen.add(filename)
        entries.append(DatabaseEntry(name=name, filename=filename, size=os.stat(path).st_size, format=fmt))

    manifest = ArchiveManifest(
        source_type=source_type,
        databases=tuple(entries),
        engine_version=engine_version,
    )
    payload = manifest.to_json().encode("utf-8")

    fd = os.open(dest_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as out, tarfile.open(fileobj=out, mode="w|", format=tarfile.PAX_FORMAT) as tar:
        info = tarfile.TarInfo(MANIFEST_NAME)
        info.size = len(payload)
        info.mtime = int(datetime.now(timezone.utc).timestamp())
        info.mode = 0o600
        tar.addfile(info, io.BytesIO(payload))

        for entry, (_, path, _) in zip(entries, files):
            info = tarfile.TarInfo(entry.filename)
            info.size = entry.size
            info.mtime = int(os.stat(path).st_mtime)
            info.mode = 0o600
            with open(path, "rb") as f:
                tar.addfile(info, f)

    log.info("Created archive %s with %d database(s)", dest_path, len(entries))
    return manifest


def _check_member_name(name: str) -> None:
    path = PurePosixPath(name)
    if path.is_absolute() or len(path.parts) != 1 or name in ("..", "."):
        raise ArchiveFormatError(f"Archive member '{name}' would extract outside target directory")


def extract_archive(path: str, dest_dir: str) -> ArchiveManifest:
    """Stream-unpack an archive into dest_dir and return its manifest."""
    manifest = None
    with tarfile.open(path, mode="r|*") as tar:
        for member in tar:
            if not member.isfile():
                continue
            _check_member_name(member.name)
            source = tar.extractfile(member)
            if member.name == MANIFEST_NAME:
                manifest = ArchiveManifest.from_json(source.read())
                continue
            target = os.path.join(dest_dir, member.name)
            fd = os.open(target, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "wb") as out:
                shutil.copyfileobj(source, out)

    if manifest is None:
        raise ArchiveFormatError(f"Archive {path} has no {MANIFEST_NAME}")

    for db in manifest.databases:
        if not os.path.isfile(os.path.join(dest_dir, db.filename)):
            raise ArchiveFormatError(f"Archive is missing '{db.filename}' listed in manifest")
    return manifest


def read_manifest(path: str) -> ArchiveManifest:
    """Read only the manifest; stops as soon as it has been parsed."""
    with tarfile.open(path, mode="r|*") as tar:
        for member in tar:
            if member.isfile() and member.name == MANIFEST_NAME:
                return ArchiveManifest.from_json(tar.extractfile(member).read())
    raise ArchiveFormatError(f"Archive {path} has no {MANIFEST_NAME}")


def is_multi_db_tar(path: str) -> bool:
    """True when path is a TAR archive carrying a readable manifest."""
    try:
        with open(path, "rb") as f:
            header = f.read(512)
    except OSError:
        return False
    if len(header) < 512:
        return False

    looks_like_tar = header[257:262] == b"ustar"
    first_name = header[:100].split(b"\0", 1)[0]
    if not looks_like_tar and first_name != MANIFEST_NAME.encode():
        return False

    try:
        read_manifest(path)
    except (ArchiveFormatError, tarfile.TarError) as exc:
        log.debug("%s looks like a tar file but has no usable manifest: %s", path, exc)
        return False
    return True
