"""Tests for the quarry command line."""

from __future__ import annotations

import json
import sqlite3
from pathlib import Path

import pytest
from click.testing import CliRunner

from quarry import __version__
from quarry.cli import cli
from quarry.config import CONFIG_FILE

CONFIG = """
[databases.1]
engine = "sqlite"
details = { db = "venues.db" }
sync = false

[[databases.1.tables]]
id = 1
name = "venues"
fields = [
    { id = 11, name = "name", base_type = "type/Text" },
    { id = 12, name = "price", base_type = "type/Integer" },
]
"""


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def workdir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    (tmp_path / "quarry.toml").write_text(CONFIG)
    with sqlite3.connect(tmp_path / "venues.db") as conn:
        conn.execute("CREATE TABLE venues (name TEXT, price INTEGER)")
        conn.executemany("INSERT INTO venues VALUES (?, ?)", [("Red Medicine", 3), ("Krua Siri", 1), ("Brite Spot", 2)])
    conn.close()
    return tmp_path


def write_query(directory: Path, query: dict) -> str:
    path = directory / "query.json"
    path.write_text(json.dumps(query))
    return str(path)


class TestGroup:
    def test_help_lists_commands(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        for command in ("compile", "drivers", "init", "normalize", "run", "sync"):
            assert command in result.output

    def test_version(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output


class TestDrivers:
    def test_json(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["-F", "json", "drivers"])
        assert result.exit_code == 0
        described = {d["name"]: d for d in json.loads(result.stdout)}
        assert described["oracle"]["hierarchy"][:2] == ["oracle", "sql-dbapi"]
        assert "empty-string-is-null" in described["oracle"]["hierarchy"]
        assert "full-join" not in described["sqlite"]["features"]

    def test_csv(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["-F", "csv", "drivers"])
        assert result.exit_code == 0
        assert result.stdout.splitlines()[0] == "name,hierarchy"


class TestQueryCommands:
    """normalize and compile."""

    def test_normalize(self, runner: CliRunner, workdir: Path) -> None:
        path = write_query(workdir, {"database": 1, "query": {"source_table": 1, "aggregation": ["count"]}})
        result = runner.invoke(cli, ["normalize", path])
        assert result.exit_code == 0
        assert json.loads(result.stdout)["query"] == {"source-table": 1, "aggregation": [["count"]]}

    def test_normalize_invalid_json(self, runner: CliRunner, workdir: Path) -> None:
        path = workdir / "broken.json"
        path.write_text("{")
        result = runner.invoke(cli, ["normalize", str(path)])
        assert result.exit_code == 2

    def test_compile(self, runner: CliRunner, workdir: Path) -> None:
        path = write_query(
            workdir, {"database": 1, "query": {"source-table": 1, "fields": [11], "filter": ["=", 12, 2], "limit": 5}}
        )
        result = runner.invoke(cli, ["--config", str(workdir / "quarry.toml"), "compile", path])
        assert result.exit_code == 0, result.output
        lines = result.stdout.splitlines()
        assert lines[0] == 'SELECT "venues"."name" AS "name" FROM "venues" WHERE "venues"."price" = ? LIMIT 5'
        assert lines[1] == "-- params: [2]"

    def test_compile_native_with_param(self, runner: CliRunner, workdir: Path) -> None:
        path = write_query(
            workdir,
            {
                "database": 1,
                "native": {
                    "query": "SELECT * FROM venues WHERE name = {{name}}",
                    "template-tags": {"name": {"type": "text"}},
                },
            },
        )
        args = ["--config", str(workdir / "quarry.toml"), "-F", "json", "compile", path, "-p", "name=Fred 62"]
        result = runner.invoke(cli, args)
        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout) == {"query": "SELECT * FROM venues WHERE name = ?", "params": ["Fred 62"]}

    def test_compile_unknown_field(self, runner: CliRunner, workdir: Path) -> None:
        path = write_query(workdir, {"database": 1, "query": {"source-table": 1, "fields": [99]}})
        result = runner.invoke(cli, ["--config", str(workdir / "quarry.toml"), "compile", path])
        assert result.exit_code == 2
        assert "Field 99" in result.output

    def test_bad_param(self, runner: CliRunner, workdir: Path) -> None:
        path = write_query(workdir, {"database": 1, "native": {"query": "SELECT 1"}})
        result = runner.invoke(cli, ["--config", str(workdir / "quarry.toml"), "compile", path, "-p", "oops"])
        assert result.exit_code != 0
        assert "NAME=VALUE" in result.output


class TestInit:
    def test_writes_config(self, runner: CliRunner, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("HOME", str(tmp_path / "home"))
        with runner.isolated_filesystem(temp_dir=tmp_path):
            result = runner.invoke(cli, ["init"])
            assert result.exit_code == 0
            assert Path(CONFIG_FILE).exists()

            again = runner.invoke(cli, ["init"])
            assert again.exit_code == 1

            forced = runner.invoke(cli, ["init", "--force"])
            assert forced.exit_code == 0


class TestRun:
    """run executes against the configured SQLite file."""

    def test_json(self, runner: CliRunner, workdir: Path) -> None:
        path = write_query(
            workdir, {"database": 1, "query": {"source-table": 1, "fields": [11], "order-by": [["asc", 12]]}}
        )
        result = runner.invoke(cli, ["--config", str(workdir / "quarry.toml"), "-F", "json", "run", path])
        assert result.exit_code == 0, result.output
        response = json.loads(result.stdout)
        assert response["status"] == "completed"
        assert response["data"]["rows"] == [["Krua Siri"], ["Brite Spot"], ["Red Medicine"]]

    def test_csv(self, runner: CliRunner, workdir: Path) -> None:
        path = write_query(workdir, {"database": 1, "query": {"source-table": 1, "aggregation": [["count"]]}})
        result = runner.invoke(cli, ["--config", str(workdir / "quarry.toml"), "-F", "csv", "run", path])
        assert result.exit_code == 0, result.output
        assert result.stdout.splitlines() == ["count", "3"]

    def test_failed_query_exit_code(self, runner: CliRunner, workdir: Path) -> None:
        path = write_query(workdir, {"database": 1, "native": {"query": "SELECT * FROM nowhere"}})
        result = runner.invoke(cli, ["--config", str(workdir / "quarry.toml"), "-F", "json", "run", path])
        assert result.exit_code == 4
        assert json.loads(result.stdout)["error"] == "no such table: nowhere"


class TestSync:
    def test_json(self, runner: CliRunner, workdir: Path) -> None:
        result = runner.invoke(cli, ["--config", str(workdir / "quarry.toml"), "-F", "json", "sync"])
        assert result.exit_code == 0, result.output
        tables = json.loads(result.stdout)["1"]
        assert [t["name"] for t in tables] == ["venues"]
        assert tables[0]["id"] == 1
        fields = {f["name"]: (f["id"], f["base_type"]) for f in tables[0]["fields"]}
        assert fields == {"name": (11, "type/Text"), "price": (12, "type/Integer")}
