"""Tests for logging setup."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest
from click.testing import CliRunner
from pydantic import ValidationError

from quarry.cli import cli
from quarry.config import LoggingConfig
from quarry.logging import LOGGER_NAME, logger_name, setup_logging


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    setup_logging("normal")


class TestSetupLogging:
    @pytest.mark.parametrize(
        ("verbosity", "level"),
        [("quiet", logging.ERROR), ("normal", logging.INFO), ("verbose", logging.DEBUG)],
    )
    def test_verbosity(self, verbosity: str, level: int) -> None:
        logger = setup_logging(verbosity)
        assert logger.name == LOGGER_NAME
        assert logger.level == level

    def test_single_handler(self) -> None:
        setup_logging("normal")
        logger = setup_logging("verbose")
        assert len(logger.handlers) == 1

    def test_logger_name(self) -> None:
        assert logger_name("driver.sqlite") == "quarry.driver.sqlite"
        assert logger_name("quarry.processor") == "quarry.processor"
        assert logger_name("quarry") == "quarry"

    def test_per_logger_levels(self) -> None:
        setup_logging("normal", {"quarry.driver": "WARNING", "processor.pool": "debug"})
        assert logging.getLogger("quarry.driver").level == logging.WARNING
        assert logging.getLogger("quarry.processor.pool").level == logging.DEBUG
        assert not logging.getLogger("quarry.driver.sqlite").isEnabledFor(logging.INFO)

    def test_quiet_ignores_levels(self) -> None:
        setup_logging("quiet", {"quarry.driver": "DEBUG"})
        assert logging.getLogger("quarry.driver").level == logging.NOTSET
        assert not logging.getLogger("quarry.driver").isEnabledFor(logging.WARNING)

    def test_levels_reset_between_calls(self) -> None:
        setup_logging("normal", {"quarry.driver": "ERROR"})
        setup_logging("normal")
        assert logging.getLogger("quarry.driver").level == logging.NOTSET


class TestLoggingConfig:
    def test_unknown_level_rejected(self) -> None:
        with pytest.raises(ValidationError):
            LoggingConfig(levels={"quarry.driver": "LOUD"})

    def test_cli_applies_configured_levels(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("HOME", str(tmp_path / "home"))
        path = tmp_path / "quarry.toml"
        path.write_text('[logging]\nlevels = { "quarry.driver" = "WARNING" }\n')
        result = CliRunner().invoke(cli, ["--config", str(path), "-F", "json", "drivers"])
        assert result.exit_code == 0, result.output
        assert logging.getLogger("quarry.driver").level == logging.WARNING
