"""Quarry query commands - normalize, compile and run query files.

A query file is a JSON document in the structured or native query format:

    {"database": 1, "type": "query",
     "query": {"source-table": 2, "aggregation": [["count"]], "breakout": [["field", 5, null]]}}
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click

if TYPE_CHECKING:
    from quarry.cli import QuarryContext
    from quarry.config import QuarryConfig
    from quarry.processor import QueryProcessor


def load_query_file(path: Path) -> dict[str, Any]:
    """Read a JSON query document.

    Raises:
        InvalidQuery: If the file is not valid JSON.
    """
    from quarry.errors import InvalidQuery

    try:
        return json.loads(path.read_text())
    except json.JSONDecodeError as e:
        raise InvalidQuery(f"{path} is not valid JSON: {e}", path=str(path)) from e


def _parse_params(params: tuple[str, ...]) -> list[dict[str, Any]]:
    """Turn `name=value` options into template-tag parameters."""
    parsed = []
    for param in params:
        name, sep, value = param.partition("=")
        if not sep or not name:
            raise click.BadParameter(f"expected NAME=VALUE, got {param!r}", param_hint="--param")
        parsed.append({"type": "category", "target": ["variable", ["template-tag", name]], "value": value})
    return parsed


def build_processor(config: QuarryConfig, sync: bool = False) -> QueryProcessor:
    """A processor over the configured databases, optionally introspecting them first."""
    from quarry.metadata import InMemoryMetadataProvider, sync_database
    from quarry.processor import QueryProcessor
    from quarry.processor.pool import PoolManager

    provider = InMemoryMetadataProvider.from_config(config)
    pools = PoolManager(config)
    if sync:
        for db_id, database in config.databases.items():
            if not database.sync:
                continue
            with pools.connection(db_id) as connection:
                sync_database(database.engine, connection, provider, int(db_id), database.details)
    return QueryProcessor(config, provider, pools=pools)


def _fail(e: Exception) -> None:
    from quarry.errors import ExitCode, QuarryError
    from quarry.logging import print_error

    if isinstance(e, QuarryError):
        print_error(e.message)
        sys.exit(e.exit_code)
    print_error(str(e))
    sys.exit(ExitCode.FATAL_ERROR)


@click.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_obj
def normalize(ctx: QuarryContext, path: Path) -> None:
    """Print the canonical form of the query in PATH."""
    from quarry.errors import QuarryError
    from quarry.query import normalize as normalize_query

    try:
        normalized = normalize_query(load_query_file(path))
    except QuarryError as e:
        _fail(e)
        return
    click.echo(json.dumps(normalized, indent=2, default=str))


@click.command("compile")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--param", "-p", "params", multiple=True, help="Template tag value as NAME=VALUE")
@click.option("--sync", is_flag=True, help="Introspect databases before resolving fields")
@click.pass_obj
def compile_query(ctx: QuarryContext, path: Path, params: tuple[str, ...], sync: bool) -> None:
    """Print the native query the query in PATH compiles to."""
    from quarry.errors import QuarryError

    try:
        raw = load_query_file(path)
        if params:
            raw["parameters"] = list(raw.get("parameters", [])) + _parse_params(params)
        with build_processor(ctx.require_config(), sync=sync) as qp:
            native = qp.compile(raw)
    except QuarryError as e:
        _fail(e)
        return

    if ctx.output_format == "json":
        click.echo(json.dumps(native.to_dict(), indent=2, default=str))
        return
    if isinstance(native.query, str):
        click.echo(native.query)
    else:
        click.echo(json.dumps(native.query, indent=2, default=str))
    if native.params:
        click.echo(f"-- params: {json.dumps(list(native.params), default=str)}")


@click.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--param", "-p", "params", multiple=True, help="Template tag value as NAME=VALUE")
@click.option("--sync", is_flag=True, help="Introspect databases before resolving fields")
@click.option("--timeout", type=float, default=None, help="Cancel the query after this many seconds")
@click.pass_obj
def run(ctx: QuarryContext, path: Path, params: tuple[str, ...], sync: bool, timeout: float | None) -> None:
    """Run the query in PATH and print its results."""
    from quarry.errors import ExitCode, QuarryError
    from quarry.formatter import format_result

    try:
        raw = load_query_file(path)
        if params:
            raw["parameters"] = list(raw.get("parameters", [])) + _parse_params(params)
        config = ctx.require_config()
        if timeout is not None:
            config = config.model_copy(
                update={"execution": config.execution.model_copy(update={"timeout_seconds": timeout})}
            )
        with build_processor(config, sync=sync) as qp:
            result = qp.process_query(raw)
    except QuarryError as e:
        _fail(e)
        return

    click.echo(format_result(result, ctx.output_format or "table", no_color=ctx.no_color))
    if result["status"] != "completed":
        sys.exit(ExitCode.EXECUTION_ERROR)


__all__ = ["build_processor", "compile_query", "load_query_file", "normalize", "run"]
