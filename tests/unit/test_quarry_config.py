"""Tests for configuration loading."""

from __future__ import annotations

import os
import tomllib
from pathlib import Path

import pytest

from quarry.config import ABSOLUTE_MAX_RESULTS, CONFIG_FILE, QuarryConfig, get_default_config_toml


@pytest.fixture(autouse=True)
def isolated(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Run from an empty directory with no home config or QUARRY_ variables."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    for name in list(os.environ):
        if name.startswith("QUARRY_"):
            monkeypatch.delenv(name)
    return tmp_path


class TestDefaults:
    def test_defaults(self) -> None:
        config = QuarryConfig()
        assert config.execution.max_results == ABSOLUTE_MAX_RESULTS
        assert config.execution.timeout_seconds == 1200.0
        assert config.pool.max_connections == 15
        assert config.databases == {}

    def test_default_file_loads(self, isolated: Path) -> None:
        (isolated / CONFIG_FILE).write_text(get_default_config_toml())
        config = QuarryConfig.load()
        assert config.version == "1.0"
        assert config.execution.fetch_size == 500
        assert config.drivers.plugins == []

    def test_default_file_is_valid_toml(self) -> None:
        data = tomllib.loads(get_default_config_toml())
        assert data["execution"]["max_results"] == ABSOLUTE_MAX_RESULTS


class TestLoad:
    """File lookup, databases and environment overrides."""

    def test_explicit_path(self, isolated: Path) -> None:
        path = isolated / "custom.toml"
        path.write_text(
            '[execution]\nmax_results = 10\n\n[databases.1]\nengine = "sqlite"\ndetails = { db = "a.db" }\n'
        )
        config = QuarryConfig.load(path)
        assert config.execution.max_results == 10
        database = config.database(1)
        assert database.engine == "sqlite"
        assert database.details == {"db": "a.db"}
        assert config.database("2") is None

    def test_tables(self, isolated: Path) -> None:
        (isolated / CONFIG_FILE).write_text(
            '[databases.1]\nengine = "sqlite"\n\n'
            "[[databases.1.tables]]\n"
            'id = 1\nname = "venues"\nschema = "main"\n'
            'fields = [{ id = 11, name = "name", base_type = "type/Text" }]\n'
        )
        table = QuarryConfig.load().database(1).tables[0]
        assert table.schema_name == "main"
        assert table.fields[0].name == "name"

    def test_environment_overrides_file(self, isolated: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        (isolated / CONFIG_FILE).write_text("[execution]\nmax_results = 10\nfetch_size = 7\n")
        monkeypatch.setenv("QUARRY_EXECUTION__MAX_RESULTS", "100")
        config = QuarryConfig.load()
        assert config.execution.max_results == 100
        assert config.execution.fetch_size == 7

    def test_home_directory_fallback(self, isolated: Path) -> None:
        home = isolated / "home"
        home.mkdir()
        (home / CONFIG_FILE).write_text("[pool]\nmax_connections = 3\n")
        assert QuarryConfig.load().pool.max_connections == 3
