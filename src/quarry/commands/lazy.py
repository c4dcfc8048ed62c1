"""Lazy-loading click group so `quarry --help` never imports a driver."""

from __future__ import annotations

import importlib
from typing import Any

import click


class LazyGroup(click.Group):
    """A click group whose subcommands are imported on first use.

    Subcommands are declared as `name -> "module.path:attribute"`. Listing
    commands only reads the declarations; the module is imported when the
    command is resolved, and the loaded command is cached.
    """

    def __init__(self, *args: Any, lazy_subcommands: dict[str, str] | None = None, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.lazy_subcommands: dict[str, str] = dict(lazy_subcommands or {})
        self._loaded: dict[str, click.Command] = {}

    def list_commands(self, ctx: click.Context) -> list[str]:
        return sorted(set(super().list_commands(ctx)) | set(self.lazy_subcommands))

    def get_command(self, ctx: click.Context, cmd_name: str) -> click.Command | None:
        if cmd_name in self._loaded:
            return self._loaded[cmd_name]
        cmd = super().get_command(ctx, cmd_name)
        if cmd is not None or cmd_name not in self.lazy_subcommands:
            return cmd

        module_path, _, attr_name = self.lazy_subcommands[cmd_name].partition(":")
        try:
            loaded = getattr(importlib.import_module(module_path), attr_name)
        except (ImportError, AttributeError) as e:
            raise click.ClickException(f"Failed to load command '{cmd_name}': {e}") from None
        if not isinstance(loaded, click.Command):
            raise click.ClickException(f"{self.lazy_subcommands[cmd_name]} is not a click command")
        self._loaded[cmd_name] = loaded
        return loaded


__all__ = ["LazyGroup"]
