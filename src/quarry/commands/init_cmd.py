"""Quarry init command - write a default .quarryrc.toml."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import TYPE_CHECKING

import click

if TYPE_CHECKING:
    from quarry.cli import QuarryContext


@click.command()
@click.option("--force", "-f", is_flag=True, help="Overwrite existing .quarryrc.toml")
@click.pass_obj
def init(ctx: QuarryContext, force: bool) -> None:
    """Write a .quarryrc.toml with the default settings to the current directory."""
    from quarry.config import CONFIG_FILE, get_default_config_toml
    from quarry.errors import ExitCode
    from quarry.logging import print_error, print_info, print_success, print_warning

    config_path = Path.cwd() / CONFIG_FILE

    if config_path.exists() and not force:
        print_warning(f"Configuration file already exists: {config_path}")
        print_info("Use --force to overwrite")
        sys.exit(ExitCode.CONFIG_ERROR)

    try:
        config_path.write_text(get_default_config_toml())
    except OSError as e:
        print_error(f"Failed to create config file: {e}")
        sys.exit(ExitCode.CONFIG_ERROR)
    print_success(f"Created {config_path}")
    print_info("Add a [databases.<id>] table, then run 'quarry sync'")


__all__ = ["init"]
