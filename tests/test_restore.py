"""Tests for restore module."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from archive import create_archive
from config import DatabaseMappingEntry
from engines import ConnectionStatus
from errors import ConnectivityError
from process import ProcessResult
from restore import analyze_dump, check_connection, list_databases, prepare_restore, run_restore


def _engine(source_type="mysql"):
    engine = MagicMock()
    engine.source_type = source_type
    engine.dialect.return_value.name = source_type
    engine.restore.return_value = None
    return engine


def _archive(tmp_path, names, source_type="mysql"):
    files = []
    for name in names:
        path = tmp_path / f"{name}.src"
        path.write_bytes(f"-- {name}\n".encode())
        files.append((name, str(path), "sql"))
    dest = tmp_path / "all.tar"
    create_archive(files, str(dest), source_type, "8.0.35")
    return str(dest)


class TestRunRestoreArchive:
    @patch("restore.create_engine")
    def test_mapping_renames_and_skips(self, mock_create_engine, make_config, tmp_path):
        engine = _engine()
        restored_content = {}

        def fake_restore_database(config, name, target, input_path, job, cancel=None):
            with open(input_path, "rb") as f:
                restored_content[target] = f.read()

        engine.restore_database.side_effect = fake_restore_database
        mock_create_engine.return_value = engine
        path = _archive(tmp_path, ["a", "b", "c"])
        mapping = [
            DatabaseMappingEntry("a", "a_new", True),
            DatabaseMappingEntry("b", "b", False),
            DatabaseMappingEntry("c", "c", True),
        ]
        progress = []

        result = run_restore(make_config("mysql", database_mapping=mapping), path,
                             on_progress=progress.append)

        assert result.success, result.error
        assert result.metadata["multi_db"] == {"restored": ["a_new", "c"], "skipped": ["b"]}
        assert restored_content == {"a_new": b"-- a\n", "c": b"-- c\n"}
        calls = [(c.args[1], c.args[2]) for c in engine.restore_database.call_args_list]
        assert calls == [("a", "a_new"), ("c", "c")]
        assert progress == [33, 67, 100]
        engine.restore.assert_not_called()

    @patch("restore.create_engine")
    def test_no_mapping_restores_all(self, mock_create_engine, make_config, tmp_path):
        engine = _engine()
        mock_create_engine.return_value = engine
        result = run_restore(make_config("mysql"), _archive(tmp_path, ["a", "b"]))
        assert result.success
        assert result.metadata["multi_db"]["restored"] == ["a", "b"]

    @patch("restore.create_engine")
    def test_unmapped_entries_are_skipped(self, mock_create_engine, make_config, tmp_path):
        engine = _engine()
        mock_create_engine.return_value = engine
        mapping = [DatabaseMappingEntry("b", "b", True)]
        result = run_restore(make_config("mysql", database_mapping=mapping), _archive(tmp_path, ["a", "b"]))
        assert result.metadata["multi_db"] == {"restored": ["b"], "skipped": ["a"]}

    @patch("restore.create_engine")
    def test_source_type_mismatch(self, mock_create_engine, make_config, tmp_path):
        mock_create_engine.return_value = _engine("postgres")
        result = run_restore(make_config("postgres"), _archive(tmp_path, ["a", "b"], source_type="mysql"))
        assert not result.success
        assert "created from 'mysql'" in result.error

    @patch("restore.create_engine")
    def test_failure_midway_stops(self, mock_create_engine, make_config, tmp_path):
        engine = _engine()
        engine.restore_database.side_effect = [None, ConnectivityError("lost connection")]
        mock_create_engine.return_value = engine
        result = run_restore(make_config("mysql"), _archive(tmp_path, ["a", "b", "c"]))
        assert not result.success
        assert result.error == "lost connection"
        assert engine.restore_database.call_count == 2


class TestRunRestoreSingle:
    @patch("restore.create_engine")
    def test_single_file_goes_to_engine(self, mock_create_engine, make_config, tmp_path):
        engine = _engine()
        mock_create_engine.return_value = engine
        dump = tmp_path / "shop.sql"
        dump.write_bytes(b"CREATE TABLE t (id int);\n")
        result = run_restore(make_config("mysql"), str(dump))
        assert result.success
        assert result.size == dump.stat().st_size
        args = engine.restore.call_args[0]
        assert args[1] == str(dump)
        assert args[3].total == dump.stat().st_size
        engine.test.assert_not_called()

    @patch("restore.create_engine")
    def test_engine_metadata_is_returned(self, mock_create_engine, make_config, tmp_path):
        engine = _engine("redis")
        engine.restore.return_value = {"requires_manual_steps": True}
        mock_create_engine.return_value = engine
        rdb = tmp_path / "x.bak"
        rdb.write_bytes(b"REDIS")
        result = run_restore(make_config("redis"), str(rdb))
        assert result.metadata == {"requires_manual_steps": True}

    def test_missing_file(self, make_config, tmp_path):
        result = run_restore(make_config("mysql"), str(tmp_path / "nope.sql"))
        assert not result.success
        assert "not found" in result.error

    def test_empty_file(self, make_config, tmp_path):
        empty = tmp_path / "empty.sql"
        empty.write_bytes(b"")
        result = run_restore(make_config("mysql"), str(empty))
        assert not result.success
        assert "empty" in result.error

    def test_binary_dump_rejects_several_targets(self, make_config, tmp_path):
        bak = tmp_path / "shop.bak"
        bak.write_bytes(b"TAPE" * 200)
        mapping = [DatabaseMappingEntry("a", "a"), DatabaseMappingEntry("b", "b")]
        result = run_restore(make_config("mssql", database_mapping=mapping), str(bak))
        assert not result.success
        assert "2 mapping entries are selected" in result.error

    def test_pg_restore_ignorable_errors_succeed(self, make_config, tmp_path):
        dump = tmp_path / "x.dump"
        dump.write_bytes(b"PGDMP" + b"\0" * 100)

        def fake_run(binary, args, **kwargs):
            if binary == "pg_restore":
                return ProcessResult(1, b"", "pg_restore: warning: errors ignored on restore: 3", tolerated=True)
            return ProcessResult(0, b"1\n")

        with patch("process.run", side_effect=fake_run):
            result = run_restore(make_config("postgres"), str(dump))
        assert result.success, result.error
        assert any("ignorable errors" in line for line in result.logs)


class TestHelpers:
    @patch("restore.create_engine")
    def test_check_connection_never_raises(self, mock_create_engine, make_config):
        mock_create_engine.return_value.test.side_effect = RuntimeError("boom")
        status = check_connection(make_config())
        assert not status.success
        assert "boom" in status.message

    @patch("restore.create_engine")
    def test_check_connection_ok(self, mock_create_engine, make_config):
        mock_create_engine.return_value.test.return_value = ConnectionStatus(True, "ok", version="16.2")
        assert check_connection(make_config()).version == "16.2"

    @patch("restore.create_engine")
    def test_list_databases(self, mock_create_engine, make_config):
        mock_create_engine.return_value.list_databases.return_value = ["a"]
        assert list_databases(make_config()) == ["a"]

    @patch("restore.create_engine")
    def test_prepare_restore_propagates(self, mock_create_engine, make_config):
        mock_create_engine.return_value.prepare_restore.side_effect = ConnectivityError("denied")
        with pytest.raises(ConnectivityError):
            prepare_restore(make_config(), ["a"])

    def test_analyze_archive_reads_manifest(self, make_config, tmp_path):
        assert analyze_dump(make_config("mysql"), _archive(tmp_path, ["x", "y"])) == ["x", "y"]

    def test_analyze_plain_dump(self, make_config, tmp_path):
        dump = tmp_path / "all.sql"
        dump.write_bytes(b"-- Current Database: `shop`\nUSE `shop`;\n")
        assert analyze_dump(make_config("mysql"), str(dump)) == ["shop"]
