"""Quarry CLI - compile and run queries from the command line."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Literal

from dotenv import load_dotenv

# Load .env before anything reads QUARRY_* variables
load_dotenv()

import click  # noqa: E402

from quarry import __version__  # noqa: E402
from quarry.commands.lazy import LazyGroup  # noqa: E402

if TYPE_CHECKING:
    from quarry.config import QuarryConfig

VerbosityLevel = Literal["quiet", "normal", "verbose"]


class QuarryContext:
    """Shared context for CLI commands."""

    def __init__(self) -> None:
        self.config: QuarryConfig | None = None
        self.config_error: str | None = None
        self.verbosity: VerbosityLevel = "normal"
        self.debug: bool = False
        self.output_format: str | None = None  # None = use command default
        self.no_color: bool = False

    def require_config(self) -> QuarryConfig:
        """The loaded configuration; exits if it could not be loaded."""
        if self.config is None:
            from quarry.errors import ConfigError

            raise ConfigError(self.config_error or "No configuration loaded")
        return self.config


pass_context = click.make_pass_decorator(QuarryContext, ensure=True)


LAZY_COMMANDS: dict[str, str] = {
    "drivers": "quarry.commands.drivers:drivers",
    "normalize": "quarry.commands.query:normalize",
    "compile": "quarry.commands.query:compile_query",
    "run": "quarry.commands.query:run",
    "sync": "quarry.commands.sync:sync",
    "init": "quarry.commands.init_cmd:init",
}


@click.group(cls=LazyGroup, lazy_subcommands=LAZY_COMMANDS)
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.option("-q", "--quiet", is_flag=True, help="Suppress non-error output")
@click.option("--debug", is_flag=True, help="Show full tracebacks on errors")
@click.option(
    "--config",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file",
)
@click.option(
    "--output-format",
    "-F",
    type=click.Choice(["table", "json", "csv"]),
    default=None,
    help="Output format (overrides command-specific defaults)",
)
@click.option("--no-color", is_flag=True, help="Disable colored output")
@click.version_option(version=__version__, prog_name="quarry")
@pass_context
def cli(
    ctx: QuarryContext,
    verbose: bool,
    quiet: bool,
    debug: bool,
    config: Path | None,
    output_format: str | None,
    no_color: bool,
) -> None:
    """Quarry - compile structured queries to SQL and run them.

    \b
    Queries:
      normalize    Print the canonical form of a query file
      compile      Print the native query a query file compiles to
      run          Run a query file and print the results

    \b
    Databases:
      drivers      List drivers and their hierarchy
      sync         Introspect configured databases
      init         Write a default .quarryrc.toml

    Use 'quarry <command> --help' for details.
    """
    import sys

    from quarry.config import QuarryConfig
    from quarry.logging import setup_logging

    ctx.debug = debug
    if quiet:
        ctx.verbosity = "quiet"
    elif verbose:
        ctx.verbosity = "verbose"
    else:
        ctx.verbosity = "normal"

    ctx.output_format = output_format
    ctx.no_color = no_color or not sys.stdout.isatty()

    # Commands like `init` work without a configuration
    try:
        ctx.config = QuarryConfig.load(config)
    except Exception as e:
        ctx.config_error = f"Failed to load configuration: {e}"
    setup_logging(ctx.verbosity, ctx.config.logging.levels if ctx.config else None)


def main() -> None:
    """Entry point for the CLI."""
    import sys

    from quarry.errors import ExitCode, QuarryError

    debug_mode = "--debug" in sys.argv
    try:
        cli(standalone_mode=False)
    except click.exceptions.Exit as e:
        sys.exit(e.exit_code)
    except click.Abort:
        sys.exit(130)
    except click.ClickException as e:
        e.show()
        sys.exit(e.exit_code)
    except KeyboardInterrupt:
        sys.exit(130)
    except QuarryError as e:
        from quarry.logging import print_error

        print_error(e.message)
        sys.exit(e.exit_code)
    except Exception as e:
        from quarry.logging import print_error, print_info

        print_error(f"Error: {e}")
        if debug_mode:
            import traceback

            print_info("")
            print_info("Full traceback (--debug mode):")
            traceback.print_exc()
        else:
            print_info("Run with --debug for the full traceback.")
        sys.exit(ExitCode.FATAL_ERROR)


__all__ = ["cli", "main", "QuarryContext"]
