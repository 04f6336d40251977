"""Supervision of external dump/restore tools.

Every engine talks to its database through the vendor CLI (mysqldump,
pg_restore, mongorestore, sqlcmd, ...). ``run`` spawns one such tool, wires
its stdin/stdout to files or in-process producers/consumers, forwards stderr
line by line, reports byte-level progress and turns the exit status into
either a ProcessResult or a typed exception.
"""

from __future__ import annotations

import logging
import os
import subprocess
import threading
from dataclasses import dataclass
from typing import Callable, Iterable

from errors import ProcessCancelled, ProcessError

log = logging.getLogger(__name__)

STDERR_TAIL_BYTES = 1024
CHUNK_SIZE = 64 * 1024

# Only these variables from the parent environment reach the child process.
_PASSTHROUGH_ENV = ("PATH", "HOME", "LANG", "LC_ALL", "LC_CTYPE", "TZ")


def build_env(extra: dict[str, str] | None = None) -> dict[str, str]:
    """Build a minimal environment dict for a CLI tool.

    Only passes through PATH and essential locale variables to avoid
    leaking unrelated secrets from the parent environment.
    """
    env: dict[str, str] = {}
    for key in _PASSTHROUGH_ENV:
        val = os.environ.get(key)
        if val is not None:
            env[key] = val
    for key, val in (extra or {}).items():
        if val is not None:
            env[key] = str(val)
    return env


class CancelToken:
    """Shared flag a caller flips to abort the job; kills the attached process."""

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._proc: subprocess.Popen | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()
        with self._lock:
            if self._proc is not None and self._proc.poll() is None:
                log.info("Cancelling running process (pid %s)", self._proc.pid)
                self._proc.kill()

    def attach(self, proc: subprocess.Popen) -> None:
        with self._lock:
            self._proc = proc
        if self.cancelled:
            proc.kill()

    def detach(self) -> None:
        with self._lock:
            self._proc = None

    def check(self, tool: str) -> None:
        if self.cancelled:
            raise ProcessCancelled(tool)


class ProgressTracker:
    """Integer percentage of bytes handed to a tool, emitted only when it grows."""

    def __init__(self, total: int, on_progress: Callable[[int], None] | None):
        self.total = total
        self.processed = 0
        self._on_progress = on_progress
        self._last = -1

    def advance(self, nbytes: int) -> None:
        self.processed += nbytes
        if self.total <= 0:
            return
        self._emit(min(100, round(self.processed * 100 / self.total)))

    def finish(self) -> None:
        self._emit(100)

    def _emit(self, percent: int) -> None:
        if percent > self._last:
            self._last = percent
            if self._on_progress is not None:
                self._on_progress(percent)


@dataclass(frozen=True)
class ProcessResult:
    returncode: int
    stdout: bytes = b""
    stderr: str = ""  # last STDERR_TAIL_BYTES of stderr
    tolerated: bool = False  # non-zero exit accepted by the tolerate hook

    @property
    def text(self) -> str:
        return self.stdout.decode("utf-8", errors="replace")


def iter_file_chunks(path: str, progress: ProgressTracker | None = None) -> Iterable[bytes]:
    """Yield a file in fixed-size chunks, advancing progress as they are read."""
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            if progress is not None:
                progress.advance(len(chunk))
            yield chunk


def run(
    binary: str,
    args: list[str],
    *,
    env: dict[str, str] | None = None,
    stdout_path: str | None = None,
    stdout_consumer: Callable[[bytes], None] | None = None,
    capture_stdout: bool = False,
    stdin_path: str | None = None,
    stdin_producer: Iterable[bytes] | None = None,
    on_stderr: Callable[[str], None] | None = None,
    progress: ProgressTracker | None = None,
    timeout: float | None = None,
    cancel: CancelToken | None = None,
    tolerate: Callable[[int, str], bool] | None = None,
) -> ProcessResult:
    """Run one external tool to completion.

    Success is exit code 0 only; anything written to stderr is forwarded to
    on_stderr but never decides the outcome. A non-zero exit raises
    ProcessError unless tolerate(returncode, stderr_tail) accepts it.
    On timeout the process is killed and TimeoutError is raised.
    """
    tool = os.path.basename(binary)
    if cancel is not None:
        cancel.check(tool)

    if stdin_path is not None and stdin_producer is None and progress is not None:
        stdin_producer = iter_file_chunks(stdin_path, progress)

    opened = []
    try:
        if stdout_path is not None:
            # Open with 0o600 to prevent other users from reading database dumps
            fd = os.open(stdout_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            stdout = os.fdopen(fd, "wb")
            opened.append(stdout)
        elif stdout_consumer is not None or capture_stdout:
            stdout = subprocess.PIPE
        else:
            stdout = subprocess.DEVNULL

        if stdin_producer is not None:
            stdin = subprocess.PIPE
        elif stdin_path is not None:
            stdin = open(stdin_path, "rb")
            opened.append(stdin)
        else:
            stdin = subprocess.DEVNULL

        try:
            proc = subprocess.Popen(
                [binary, *args],
                env=env,
                stdin=stdin,
                stdout=stdout,
                stderr=subprocess.PIPE,
            )
        except FileNotFoundError:
            raise ProcessError(tool, None, message=f"{tool}: command not found") from None

        if cancel is not None:
            cancel.attach(proc)
        try:
            return _supervise(proc, tool, stdout_consumer, capture_stdout, stdin_producer,
                              on_stderr, progress, timeout, cancel, tolerate)
        finally:
            if cancel is not None:
                cancel.detach()
    finally:
        for f in opened:
            f.close()


def _supervise(proc, tool, stdout_consumer, capture_stdout, stdin_producer,
               on_stderr, progress, timeout, cancel, tolerate) -> ProcessResult:
    errors: list[BaseException] = []
    tail = bytearray()
    captured = bytearray()

    def read_stderr():
        for raw in iter(proc.stderr.readline, b""):
            tail.extend(raw)
            if len(tail) > STDERR_TAIL_BYTES:
                del tail[:-STDERR_TAIL_BYTES]
            line = raw.decode("utf-8", errors="replace").rstrip()
            if line and on_stderr is not None:
                on_stderr(line)

    def read_stdout():
        try:
            for chunk in iter(lambda: proc.stdout.read(CHUNK_SIZE), b""):
                if stdout_consumer is not None:
                    stdout_consumer(chunk)
                else:
                    captured.extend(chunk)
        except Exception as exc:
            errors.append(exc)
            proc.kill()

    def feed_stdin():
        try:
            for chunk in stdin_producer:
                if cancel is not None and cancel.cancelled:
                    break
                proc.stdin.write(chunk)
        except BrokenPipeError:
            # The tool exited early; its exit status tells the story.
            log.debug("%s closed stdin early", tool)
        except Exception as exc:
            errors.append(exc)
            proc.kill()
        finally:
            try:
                proc.stdin.close()
            except BrokenPipeError:
                pass

    threads = [threading.Thread(target=read_stderr, daemon=True)]
    if proc.stdout is not None:
        threads.append(threading.Thread(target=read_stdout, daemon=True))
    if stdin_producer is not None:
        threads.append(threading.Thread(target=feed_stdin, daemon=True))
    for t in threads:
        t.start()

    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()
        for t in threads:
            t.join()
        raise TimeoutError(f"{tool} timed out after {timeout}s") from None
    for t in threads:
        t.join()

    if cancel is not None:
        cancel.check(tool)
    if errors:
        raise errors[0]

    stderr = tail.decode("utf-8", errors="replace").strip()
    if proc.returncode != 0:
        if tolerate is not None and tolerate(proc.returncode, stderr):
            log.warning("%s exited with code %d (tolerated): %s", tool, proc.returncode, stderr)
            return ProcessResult(proc.returncode, bytes(captured), stderr, tolerated=True)
        raise ProcessError(tool, proc.returncode, stderr)

    if progress is not None:
        progress.finish()
    return ProcessResult(proc.returncode, bytes(captured), stderr)
