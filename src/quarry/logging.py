"""Logging configuration for Quarry.

Everything logs under the `quarry` logger tree to stderr, so query results on
stdout stay machine-readable. Individual subtrees can be tuned from the
`[logging]` config table:

    [logging]
    levels = { "quarry.driver" = "WARNING", "quarry.processor.pool" = "DEBUG" }
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Literal

from rich.console import Console
from rich.logging import RichHandler

LOGGER_NAME = "quarry"

# Console instances for stdout/stderr
console = Console()
err_console = Console(stderr=True)

VERBOSITY_LEVELS = {
    "quiet": logging.ERROR,
    "normal": logging.INFO,
    "verbose": logging.DEBUG,
}

# Loggers given their own level by the last setup_logging() call
_overridden: set[str] = set()


def logger_name(name: str) -> str:
    """Qualify `name` under the quarry tree: "driver.sqlite" -> "quarry.driver.sqlite"."""
    if name == LOGGER_NAME or name.startswith(f"{LOGGER_NAME}."):
        return name
    return f"{LOGGER_NAME}.{name}"


def setup_logging(
    verbosity: Literal["quiet", "normal", "verbose"] = "normal",
    levels: Mapping[str, str | int] | None = None,
) -> logging.Logger:
    """Configure the quarry logger tree.

    Args:
        verbosity: Base level for every quarry logger.
        levels: Per-logger levels, by logger name or level name. Ignored when
            quiet, so `-q` always means errors only.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.handlers.clear()
    logger.setLevel(VERBOSITY_LEVELS[verbosity])

    for name in _overridden:
        logging.getLogger(name).setLevel(logging.NOTSET)
    _overridden.clear()
    if verbosity != "quiet":
        for name, level in (levels or {}).items():
            qualified = logger_name(name)
            logging.getLogger(qualified).setLevel(level.upper() if isinstance(level, str) else level)
            _overridden.add(qualified)

    verbose = verbosity == "verbose"
    handler = RichHandler(
        console=err_console,
        show_time=verbose,
        show_path=verbose,
        rich_tracebacks=True,
    )
    # Submitted queries run on worker threads
    handler.setFormatter(logging.Formatter("[%(threadName)s] %(message)s" if verbose else "%(message)s"))
    logger.addHandler(handler)

    return logger


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_warning(message: str) -> None:
    """Print a warning message to stderr."""
    err_console.print(f"[yellow]Warning:[/yellow] {message}")


def print_success(message: str) -> None:
    console.print(f"[green]{message}[/green]")


def print_info(message: str) -> None:
    console.print(message)


__all__ = [
    "LOGGER_NAME",
    "console",
    "err_console",
    "logger_name",
    "print_error",
    "print_info",
    "print_success",
    "print_warning",
    "setup_logging",
]
