"""Tests for process module, using real POSIX shell commands."""

from __future__ import annotations

import os
import stat
import threading

import pytest

import process
from errors import ProcessCancelled, ProcessError
from process import CancelToken, ProgressTracker, build_env


class TestBuildEnv:
    def test_only_passthrough_vars(self, monkeypatch):
        monkeypatch.setenv("PATH", "/usr/bin")
        monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "leak")
        env = build_env({"PGPASSWORD": "pw"})
        assert env["PATH"] == "/usr/bin"
        assert env["PGPASSWORD"] == "pw"
        assert "AWS_SECRET_ACCESS_KEY" not in env

    def test_none_values_dropped(self):
        assert "X" not in build_env({"X": None})


class TestProgressTracker:
    def test_monotonic_and_deduplicated(self):
        seen = []
        tracker = ProgressTracker(200, seen.append)
        tracker.advance(50)
        tracker.advance(0)
        tracker.advance(50)
        tracker.advance(100)
        tracker.finish()
        assert seen == [25, 50, 100]

    def test_unknown_total_only_finishes(self):
        seen = []
        tracker = ProgressTracker(0, seen.append)
        tracker.advance(10)
        tracker.finish()
        assert seen == [100]


class TestRun:
    def test_success_captures_stdout(self):
        result = process.run("sh", ["-c", "printf hello"], capture_stdout=True)
        assert result.returncode == 0
        assert result.text == "hello"

    def test_nonzero_exit_raises_with_stderr_tail(self):
        with pytest.raises(ProcessError) as exc_info:
            process.run("sh", ["-c", "echo boom >&2; exit 3"])
        assert exc_info.value.returncode == 3
        assert exc_info.value.tool == "sh"
        assert "boom" in exc_info.value.stderr

    def test_stderr_alone_is_not_failure(self):
        lines = []
        result = process.run("sh", ["-c", "echo warning: noisy >&2"], on_stderr=lines.append)
        assert result.returncode == 0
        assert lines == ["warning: noisy"]

    def test_stderr_tail_is_bounded(self):
        with pytest.raises(ProcessError) as exc_info:
            process.run("sh", ["-c", "i=0; while [ $i -lt 300 ]; do echo line-$i >&2; i=$((i+1)); done; exit 1"])
        assert len(exc_info.value.stderr.encode()) <= process.STDERR_TAIL_BYTES
        assert "line-299" in exc_info.value.stderr

    def test_tolerate_hook(self):
        result = process.run(
            "sh", ["-c", "echo 'warning: errors ignored on restore: 1' >&2; exit 1"],
            tolerate=lambda rc, err: rc == 1 and "errors ignored" in err,
        )
        assert result.tolerated
        assert result.returncode == 1

    def test_tolerate_hook_rejects(self):
        with pytest.raises(ProcessError):
            process.run("sh", ["-c", "exit 2"], tolerate=lambda rc, err: rc == 1)

    def test_missing_binary(self):
        with pytest.raises(ProcessError, match="command not found") as exc_info:
            process.run("definitely-not-a-real-tool-xyz", [])
        assert exc_info.value.returncode is None

    def test_timeout_kills(self):
        with pytest.raises(TimeoutError, match="timed out"):
            process.run("sh", ["-c", "exec sleep 5"], timeout=0.2)

    def test_stdout_path_is_private(self, tmp_path):
        out = tmp_path / "dump.sql"
        process.run("sh", ["-c", "echo data"], stdout_path=str(out))
        assert out.read_text() == "data\n"
        assert stat.S_IMODE(os.stat(out).st_mode) == 0o600

    def test_stdin_path_with_progress(self, tmp_path):
        src = tmp_path / "in.bin"
        src.write_bytes(b"x" * (process.CHUNK_SIZE * 3))
        out = tmp_path / "out.bin"
        seen = []
        process.run("cat", [], stdin_path=str(src), stdout_path=str(out),
                    progress=ProgressTracker(src.stat().st_size, seen.append))
        assert out.read_bytes() == src.read_bytes()
        assert seen == sorted(seen)
        assert seen[-1] == 100

    def test_stdin_producer_and_consumer(self):
        chunks = []
        process.run("cat", [], stdin_producer=iter([b"a\n", b"b\n"]), stdout_consumer=chunks.append)
        assert b"".join(chunks) == b"a\nb\n"

    def test_early_exit_with_stdin_reports_exit_status(self):
        big = (b"y" * 1024 for _ in range(4096))
        with pytest.raises(ProcessError) as exc_info:
            process.run("sh", ["-c", "exit 4"], stdin_producer=big)
        assert exc_info.value.returncode == 4


class TestCancel:
    def test_cancel_before_start(self):
        token = CancelToken()
        token.cancel()
        with pytest.raises(ProcessCancelled):
            process.run("sh", ["-c", "true"], cancel=token)

    def test_cancel_running_process(self):
        token = CancelToken()
        timer = threading.Timer(0.2, token.cancel)
        timer.start()
        try:
            with pytest.raises(ProcessCancelled):
                process.run("sh", ["-c", "exec sleep 5"], cancel=token)
        finally:
            timer.cancel()
