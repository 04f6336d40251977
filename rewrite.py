"""Line-oriented rewriting of plain SQL dumps for selective and renamed restores.

A multi-database plain dump switches between databases with statements such
as ``USE `shop`;`` (mysqldump) or ``\\connect shop`` (pg_dumpall). The
rewriter tracks which database the current section belongs to and either
passes its lines through, renames the database identifiers in the
statements that name it, or drops the whole section until the next switch.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable, Iterator

from config import DatabaseMappingEntry, should_restore_database, target_database_name
from process import ProgressTracker

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatementShapes:
    """Regexes (bytes, each with a ``name`` group) recognising database statements."""

    switch: tuple[re.Pattern, ...]
    create: tuple[re.Pattern, ...]
    alter: tuple[re.Pattern, ...] = ()
    # Maintenance databases a dump connects to without them being restore targets.
    passthrough: frozenset[str] = frozenset()


MYSQL_SHAPES = StatementShapes(
    switch=(
        re.compile(rb"^--\s+Current Database:\s+`(?P<name>[^`]+)`"),
        re.compile(rb"^USE\s+`(?P<name>[^`]+)`\s*;"),
    ),
    create=(
        re.compile(rb"^CREATE DATABASE\b[^`]*`(?P<name>[^`]+)`"),
    ),
    alter=(
        re.compile(rb"^ALTER DATABASE\s+`(?P<name>[^`]+)`"),
    ),
)

POSTGRES_SHAPES = StatementShapes(
    switch=(
        re.compile(rb"^--\s+Database\s+\"(?P<name>[^\"]+)\"\s+dump"),
        re.compile(rb"^\\connect\s+(?:-reuse-previous=on\s+)?\"dbname='(?P<name>[^']+)'\""),
        re.compile(rb"^\\connect\s+(?:-reuse-previous=on\s+)?(?P<q>\"?)(?P<name>[^\"\s]+)(?P=q)"),
    ),
    create=(
        re.compile(rb"^CREATE DATABASE\s+(?P<q>\"?)(?P<name>[^\"\s;]+)(?P=q)"),
    ),
    alter=(
        re.compile(rb"^ALTER DATABASE\s+(?P<q>\"?)(?P<name>[^\"\s;]+)(?P=q)"),
    ),
    passthrough=frozenset({"postgres", "template0", "template1"}),
)


def _match(patterns: tuple[re.Pattern, ...], line: bytes) -> re.Match | None:
    for pattern in patterns:
        m = pattern.match(line)
        if m:
            return m
    return None


class DumpRewriter:
    """Stateful filter over the lines of one plain dump.

    State is (current database, skipping). Lines before the first switch
    statement (session settings, roles) always pass through.
    """

    def __init__(self, shapes: StatementShapes, mapping: list[DatabaseMappingEntry] | None):
        self.shapes = shapes
        self.mapping = mapping
        self.current_db: str | None = None
        self.skipping = False
        self.skipped: list[str] = []
        self._mapped_names = {e.original_name for e in mapping or []}

    def _is_passthrough(self, name: str) -> bool:
        return name in self.shapes.passthrough and name not in self._mapped_names

    def _rename(self, m: re.Match, line: bytes, name: str) -> bytes:
        target = target_database_name(name, self.mapping)
        if target == name:
            return line
        start, end = m.span("name")
        return line[:start] + target.encode("utf-8") + line[end:]

    def _skip(self, name: str) -> None:
        self.skipping = True
        if name not in self.skipped:
            self.skipped.append(name)
            log.info("Skipping database '%s' (not selected for restore)", name)

    def feed(self, line: bytes) -> bytes | None:
        """Return the line to emit (possibly rewritten) or None to drop it."""
        m = _match(self.shapes.switch, line)
        if m:
            name = m.group("name").decode("utf-8", errors="replace")
            if self._is_passthrough(name):
                self.current_db = None
                self.skipping = False
                return line
            self.current_db = name
            if should_restore_database(name, self.mapping):
                self.skipping = False
                return self._rename(m, line, name)
            self._skip(name)
            return None

        m = _match(self.shapes.create, line)
        if m:
            name = m.group("name").decode("utf-8", errors="replace")
            if self._is_passthrough(name):
                return None if self.skipping else line
            if should_restore_database(name, self.mapping):
                return self._rename(m, line, name)
            self._skip(name)
            return None

        m = _match(self.shapes.alter, line)
        if m:
            name = m.group("name").decode("utf-8", errors="replace")
            if self.skipping or not should_restore_database(name, self.mapping):
                return None
            return self._rename(m, line, name)

        return None if self.skipping else line


def iter_lines(path: str, progress: ProgressTracker | None = None) -> Iterator[bytes]:
    """Pull lines from a dump file, advancing progress by raw bytes read."""
    with open(path, "rb") as f:
        for line in f:
            if progress is not None:
                progress.advance(len(line))
            yield line


def rewrite_lines(lines: Iterable[bytes], rewriter: DumpRewriter) -> Iterator[bytes]:
    for line in lines:
        out = rewriter.feed(line)
        if out is not None:
            yield out


def scan_database_names(path: str, shapes: StatementShapes) -> list[str]:
    """Database names a plain dump creates or switches to, in order of appearance."""
    names: list[str] = []
    for line in iter_lines(path):
        m = _match(shapes.switch, line) or _match(shapes.create, line)
        if not m:
            continue
        name = m.group("name").decode("utf-8", errors="replace")
        if name not in shapes.passthrough and name not in names:
            names.append(name)
    return names
