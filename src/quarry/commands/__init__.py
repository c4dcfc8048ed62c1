"""Quarry CLI commands - subcommand implementations, loaded lazily by `quarry.cli`."""
