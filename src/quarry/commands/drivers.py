"""Quarry drivers command - list drivers and their hierarchy."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

import click

if TYPE_CHECKING:
    from quarry.cli import QuarryContext


def describe_drivers() -> list[dict[str, Any]]:
    """Load every built-in driver and describe its place in the hierarchy."""
    from quarry.driver import BUILTIN_DRIVERS, CONCRETE, ROOT, available_drivers, linearize, registry, the_driver
    from quarry.driver.base import FEATURES, supports

    for name in BUILTIN_DRIVERS:
        the_driver(name)

    described = []
    for name in available_drivers():
        described.append(
            {
                "name": name,
                "parents": list(registry.parents(name)),
                "hierarchy": [d for d in linearize(name) if d not in (ROOT, CONCRETE)],
                "features": sorted(f for f in FEATURES if supports(name, f)),
            }
        )
    return described


@click.command()
@click.option("--features", is_flag=True, help="Show supported features")
@click.pass_obj
def drivers(ctx: QuarryContext, features: bool) -> None:
    """List the available drivers and what they inherit from."""
    from rich.table import Table

    from quarry.logging import console

    described = describe_drivers()

    if ctx.output_format == "json":
        click.echo(json.dumps(described, indent=2))
        return
    if ctx.output_format == "csv":
        click.echo("name,hierarchy")
        for d in described:
            click.echo(f"{d['name']},{' > '.join(d['hierarchy'])}")
        return

    table = Table(title="Drivers", show_header=True)
    table.add_column("Driver", style=None if ctx.no_color else "cyan")
    table.add_column("Resolution order")
    if features:
        table.add_column("Features")
    for d in described:
        row = [d["name"], " > ".join(d["hierarchy"][1:])]
        if features:
            row.append(", ".join(d["features"]))
        table.add_row(*row)
    console.print(table)


__all__ = ["describe_drivers", "drivers"]
