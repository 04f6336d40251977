"""Tests for dbarchive CLI (dbarchive.py)."""

from __future__ import annotations

import argparse
import logging
import os
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
import yaml

import config
from archive import create_archive
from backup import BackupResult
from config import ConfigError, DatabaseMappingEntry
from dbarchive import (
    build_mapping, cmd_analyze, cmd_databases, cmd_dump, cmd_dump_all, cmd_manifest, cmd_restore,
    cmd_test, main,
)
from engines import ConnectionStatus


def _write_config(tmp_path, cfg=None):
    """Write a minimal valid config and return the path."""
    if cfg is None:
        cfg = {
            "datasources": {
                "ds1": {
                    "engine": "postgres",
                    "host": "localhost",
                    "user": "u",
                    "password": "p",
                    "database": "db1",
                },
                "ds2": {
                    "engine": "mysql",
                    "host": "localhost",
                    "user": "u",
                    "password": "p",
                    "databases": ["a", "b"],
                },
            },
        }
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump(cfg))
    os.chmod(path, 0o600)
    return str(path)


def _result(success=True, **kwargs):
    now = datetime.now(timezone.utc)
    defaults = {"path": "/out/x", "size": 10, "metadata": {"sha256": "ab"}}
    if not success:
        defaults = {"error": "boom"}
    defaults.update(kwargs)
    return BackupResult(success=success, started_at=now, completed_at=now, **defaults)


class TestBuildMapping:
    def test_no_flags(self):
        assert build_mapping(["a", "b"], None, None) is None

    def test_map_selects_only_mapped(self):
        mapping = build_mapping(["a", "b"], ["a=a2"], None)
        assert mapping == [DatabaseMappingEntry("a", "a2", True), DatabaseMappingEntry("b", "b", False)]

    def test_only(self):
        mapping = build_mapping(["a", "b", "c"], None, ["b", "c"])
        assert [e.original_name for e in mapping if e.selected] == ["b", "c"]

    def test_map_and_only(self):
        mapping = build_mapping(["a", "b"], ["b=b9"], ["a", "b"])
        assert mapping == [DatabaseMappingEntry("a", "a", True), DatabaseMappingEntry("b", "b9", True)]

    def test_bad_map_value(self):
        with pytest.raises(ConfigError, match="old=new"):
            build_mapping([], ["nonsense"], None)


class TestCmdDump:
    @patch("dbarchive.run_dump")
    def test_success(self, mock_run_dump, tmp_path):
        raw = config.load(_write_config(tmp_path))
        mock_run_dump.return_value = _result()
        args = argparse.Namespace(datasource="ds1", destination=str(tmp_path / "x.dump"))
        cmd_dump(args, raw, MagicMock())
        ds = mock_run_dump.call_args[0][0]
        assert ds.name == "ds1"
        assert mock_run_dump.call_args[0][1] == str(tmp_path / "x.dump")

    @patch("dbarchive.run_dump")
    def test_failure_exits_1(self, mock_run_dump, tmp_path):
        raw = config.load(_write_config(tmp_path))
        mock_run_dump.return_value = _result(success=False)
        args = argparse.Namespace(datasource="ds1", destination=str(tmp_path / "x.dump"))
        with pytest.raises(SystemExit) as exc_info:
            cmd_dump(args, raw, MagicMock())
        assert exc_info.value.code == 1


class TestCmdDumpAll:
    @patch("dbarchive.run_dump")
    def test_dumps_every_datasource(self, mock_run_dump, tmp_path):
        raw = config.load(_write_config(tmp_path))
        mock_run_dump.return_value = _result()
        out_dir = tmp_path / "out"
        args = argparse.Namespace(directory=str(out_dir), parallel=2)
        cmd_dump_all(args, raw, MagicMock())
        assert mock_run_dump.call_count == 2
        paths = sorted(os.path.basename(c.args[1]) for c in mock_run_dump.call_args_list)
        assert paths[0].startswith("ds1-") and paths[0].endswith(".dump")
        assert paths[1].startswith("ds2-") and paths[1].endswith(".tar")
        assert out_dir.is_dir()

    @patch("dbarchive.run_dump")
    def test_one_failure_exits_1_after_all(self, mock_run_dump, tmp_path, caplog):
        raw = config.load(_write_config(tmp_path))
        mock_run_dump.side_effect = lambda ds, path, **kw: _result(success=ds.name != "ds1")
        args = argparse.Namespace(directory=str(tmp_path / "out"), parallel=1)
        with pytest.raises(SystemExit) as exc_info:
            cmd_dump_all(args, raw, MagicMock())
        assert exc_info.value.code == 1
        assert mock_run_dump.call_count == 2
        assert "Failed datasources: ds1" in caplog.text

    def test_no_datasources(self, tmp_path):
        with pytest.raises(SystemExit):
            cmd_dump_all(argparse.Namespace(directory=str(tmp_path), parallel=1), {"datasources": {}}, MagicMock())


class TestCmdRestore:
    @patch("dbarchive.run_restore")
    @patch("dbarchive.analyze_dump")
    def test_map_flags_build_mapping(self, mock_analyze, mock_run_restore, tmp_path):
        raw = config.load(_write_config(tmp_path))
        mock_analyze.return_value = ["a", "b"]
        mock_run_restore.return_value = _result()
        args = argparse.Namespace(datasource="ds2", file="all.tar", map=["a=a_copy"], only=None)
        cmd_restore(args, raw, MagicMock())
        ds = mock_run_restore.call_args[0][0]
        assert ds.database_mapping == [
            DatabaseMappingEntry("a", "a_copy", True),
            DatabaseMappingEntry("b", "b", False),
        ]

    @patch("dbarchive.run_restore")
    @patch("dbarchive.analyze_dump")
    def test_without_flags_keeps_config_mapping(self, mock_analyze, mock_run_restore, tmp_path):
        raw = config.load(_write_config(tmp_path))
        mock_analyze.return_value = ["db1"]
        mock_run_restore.return_value = _result()
        args = argparse.Namespace(datasource="ds1", file="x.dump", map=None, only=None)
        cmd_restore(args, raw, MagicMock())
        assert mock_run_restore.call_args[0][0].database_mapping is None

    @patch("dbarchive.run_restore")
    @patch("dbarchive.analyze_dump")
    def test_failure_exits_1(self, mock_analyze, mock_run_restore, tmp_path):
        raw = config.load(_write_config(tmp_path))
        mock_analyze.return_value = []
        mock_run_restore.return_value = _result(success=False)
        args = argparse.Namespace(datasource="ds1", file="x.dump", map=None, only=None)
        with pytest.raises(SystemExit):
            cmd_restore(args, raw, MagicMock())


class TestInfoCommands:
    @patch("dbarchive.check_connection")
    def test_test_ok(self, mock_check, tmp_path, caplog):
        raw = config.load(_write_config(tmp_path))
        mock_check.return_value = ConnectionStatus(True, "Connection successful", version="16.2")
        with caplog.at_level(logging.INFO, logger="dbarchive"):
            cmd_test(argparse.Namespace(datasource="ds1"), raw, MagicMock())
        assert "16.2" in caplog.text

    @patch("dbarchive.check_connection")
    def test_test_fail(self, mock_check, tmp_path):
        raw = config.load(_write_config(tmp_path))
        mock_check.return_value = ConnectionStatus(False, "Connection failed: refused")
        with pytest.raises(SystemExit):
            cmd_test(argparse.Namespace(datasource="ds1"), raw, MagicMock())

    @patch("dbarchive.list_databases")
    def test_databases(self, mock_list, tmp_path, capsys):
        raw = config.load(_write_config(tmp_path))
        mock_list.return_value = ["a", "b"]
        cmd_databases(argparse.Namespace(datasource="ds2"), raw, MagicMock())
        assert capsys.readouterr().out == "a\nb\n"

    @patch("dbarchive.analyze_dump")
    def test_analyze(self, mock_analyze, tmp_path, capsys):
        raw = config.load(_write_config(tmp_path))
        mock_analyze.return_value = ["shop"]
        cmd_analyze(argparse.Namespace(datasource="ds2", file="x.sql"), raw, MagicMock())
        assert capsys.readouterr().out == "shop\n"

    def test_manifest(self, tmp_path, capsys):
        src = tmp_path / "a.sql"
        src.write_text("select 1;")
        dest = tmp_path / "all.tar"
        create_archive([("a", str(src), "sql")], str(dest), "mysql")
        cmd_manifest(argparse.Namespace(file=str(dest)), None, MagicMock())
        assert '"sourceType": "mysql"' in capsys.readouterr().out

    def test_manifest_not_archive(self, tmp_path):
        f = tmp_path / "x.sql"
        f.write_text("select 1;\n")
        with pytest.raises(SystemExit):
            cmd_manifest(argparse.Namespace(file=str(f)), None, MagicMock())


class TestMain:
    def test_missing_config_exits_1(self, monkeypatch, capsys):
        monkeypatch.setattr("sys.argv", ["dbarchive", "-c", "/nonexistent.yaml", "test", "ds1"])
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 1
        assert "config file not found" in capsys.readouterr().err

    def test_unknown_datasource_exits_1(self, tmp_path, monkeypatch, capsys):
        path = _write_config(tmp_path)
        monkeypatch.setattr("sys.argv", ["dbarchive", "-c", path, "dump", "nope", str(tmp_path / "x")])
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 1
        assert "not found" in capsys.readouterr().err

    @patch("dbarchive.run_dump")
    def test_dispatches_dump(self, mock_run_dump, tmp_path, monkeypatch):
        path = _write_config(tmp_path)
        mock_run_dump.return_value = _result()
        monkeypatch.setattr("sys.argv", ["dbarchive", "-c", path, "dump", "ds1", str(tmp_path / "x.dump")])
        main()
        mock_run_dump.assert_called_once()

    def test_config_from_env(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setenv("DBARCHIVE_CONFIG", _write_config(tmp_path))
        monkeypatch.setattr("sys.argv", ["dbarchive", "dump", "missing", str(tmp_path / "x")])
        with pytest.raises(SystemExit):
            main()
        assert "Available: ds1, ds2" in capsys.readouterr().err

    def test_subcommand_required(self, monkeypatch):
        monkeypatch.setattr("sys.argv", ["dbarchive"])
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 2
