"""Quarry sync command - introspect configured databases."""

from __future__ import annotations

import json
import sys
from typing import TYPE_CHECKING

import click

if TYPE_CHECKING:
    from quarry.cli import QuarryContext


@click.command()
@click.option("--database", "-d", "database_ids", multiple=True, help="Only sync these database ids")
@click.pass_obj
def sync(ctx: QuarryContext, database_ids: tuple[str, ...]) -> None:
    """List the tables and fields found in each configured database."""
    from rich.table import Table

    from quarry.errors import QuarryError
    from quarry.logging import console, print_error, print_warning
    from quarry.metadata import InMemoryMetadataProvider, sync_database
    from quarry.processor.pool import PoolManager

    try:
        config = ctx.require_config()
    except QuarryError as e:
        print_error(e.message)
        sys.exit(e.exit_code)

    if not config.databases:
        print_warning("No databases configured")
        return

    provider = InMemoryMetadataProvider.from_config(config)
    pools = PoolManager(config)
    synced = {}
    try:
        for db_id, database in config.databases.items():
            if database_ids and db_id not in database_ids:
                continue
            with pools.connection(db_id) as connection:
                tables = sync_database(database.engine, connection, provider, int(db_id), database.details)
            synced[db_id] = [
                {**table.to_dict(), "fields": [f.to_dict() for f in provider.fields(table.id)]} for table in tables
            ]
    except QuarryError as e:
        print_error(e.message)
        sys.exit(e.exit_code)
    finally:
        pools.close()

    if ctx.output_format == "json":
        click.echo(json.dumps(synced, indent=2, default=str))
        return

    table = Table(title="Synced tables", show_header=True)
    table.add_column("Database")
    table.add_column("Table id", justify="right")
    table.add_column("Table", style=None if ctx.no_color else "cyan")
    table.add_column("Fields")
    for db_id, tables in synced.items():
        for t in tables:
            name = f"{t['schema']}.{t['name']}" if t["schema"] else t["name"]
            fields = ", ".join(f"{f['name']} ({f['id']}: {f['base_type']})" for f in t["fields"])
            table.add_row(db_id, str(t["id"]), name, fields)
    console.print(table)


__all__ = ["sync"]
