"""Shared fixtures for dbarchive tests."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Add the project root to sys.path so imports work like they do at runtime.
_pkg_root = str(Path(__file__).resolve().parent.parent)
if _pkg_root not in sys.path:
    sys.path.insert(0, _pkg_root)

from config import EngineConfig  # noqa: E402
from dialects import DialectRegistry  # noqa: E402


@pytest.fixture(scope="session")
def registry() -> DialectRegistry:
    return DialectRegistry.default()


@pytest.fixture
def make_config():
    """Factory for EngineConfig with sensible defaults per engine."""

    def _make(engine: str = "postgres", **overrides) -> EngineConfig:
        defaults = {
            "name": "test",
            "engine": engine,
            "host": "db.local",
            "port": 5432,
            "user": "u",
            "password": "p4ss",
            "databases": ["testdb"],
            "options": {},
        }
        defaults.update(overrides)
        return EngineConfig(**defaults)

    return _make
