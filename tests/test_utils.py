"""Tests for utils module."""

from __future__ import annotations

import hashlib

import pytest

from errors import ConfigError
from utils import (
    MASK, format_command, format_size, mask_secrets, sha256_file, tokenize_options,
    validate_identifier, version_tuple,
)


class TestSha256File:
    def test_basic_file_hash(self, tmp_path):
        """Hash of a file with known content matches hashlib directly."""
        f = tmp_path / "test.bin"
        content = b"hello world\n"
        f.write_bytes(content)
        assert sha256_file(str(f)) == hashlib.sha256(content).hexdigest()

    def test_empty_file_hash(self, tmp_path):
        f = tmp_path / "empty.bin"
        f.write_bytes(b"")
        assert sha256_file(str(f)) == hashlib.sha256(b"").hexdigest()


class TestFormatSize:
    def test_bytes(self):
        assert format_size(0) == "0 B"
        assert format_size(1023) == "1023 B"

    def test_kilobytes(self):
        assert format_size(1024) == "1.0 KB"

    def test_megabytes(self):
        assert format_size(5 * 1024 * 1024) == "5.0 MB"

    def test_gigabytes(self):
        assert format_size(2 * 1024 ** 3) == "2.0 GB"


class TestTokenizeOptions:
    def test_empty(self):
        assert tokenize_options("") == []
        assert tokenize_options(None) == []
        assert tokenize_options("   ") == []

    def test_quoted_values_stay_whole(self):
        assert tokenize_options('--where="id > 5" --skip-lock-tables') == [
            "--where=id > 5", "--skip-lock-tables",
        ]

    def test_single_quotes(self):
        assert tokenize_options("--exclude-table 'a b'") == ["--exclude-table", "a b"]

    def test_unbalanced_quote_raises(self):
        with pytest.raises(ConfigError):
            tokenize_options('--where="oops')


class TestMaskSecrets:
    def test_known_secret(self):
        assert mask_secrets("login with hunter2 failed", ("hunter2",)) == f"login with {MASK} failed"

    def test_password_flag_forms(self):
        assert mask_secrets("--password=abc") == f"--password={MASK}"
        assert mask_secrets("--password abc --port 1") == f"--password {MASK} --port 1"

    def test_uri_credentials(self):
        masked = mask_secrets("mongodb://admin:s3cr3t@db:27017/x")
        assert "s3cr3t" not in masked
        assert f"admin:{MASK}@db" in masked

    def test_empty_secret_ignored(self):
        assert mask_secrets("text", ("", None)) == "text"

    def test_format_command(self):
        rendered = format_command("mongodump", ["--username", "u", "--password", "pw", "--db", "a b"], ("pw",))
        assert "pw" not in rendered.replace("--password", "")
        assert "'a b'" in rendered


class TestValidateIdentifier:
    @pytest.mark.parametrize("name", ["shop", "shop_2024", "a-b", "db$1", "x" * 64])
    def test_accepts(self, name):
        validate_identifier(name)

    @pytest.mark.parametrize("name", ["", "a b", "a;drop", "a'b", 'a"b', "x" * 65, "../etc"])
    def test_rejects(self, name):
        with pytest.raises(ConfigError, match="Unsafe database identifier"):
            validate_identifier(name)


class TestVersionTuple:
    def test_parses(self):
        assert version_tuple("8.0.35-log") == (8, 0, 35)
        assert version_tuple("10.11.6-MariaDB") == (10, 11, 6)
        assert version_tuple("16") == (16,)

    def test_unparseable(self):
        assert version_tuple(None) == ()
        assert version_tuple("") == ()
        assert version_tuple("unknown") == ()
