"""Configuration models for Quarry."""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

# Config file name looked up in the working directory and the home directory
CONFIG_FILE = ".quarryrc.toml"

# Postgres limits identifiers to 63 bytes; leave room for suffixes like `_2`
DEFAULT_ALIAS_MAX_LENGTH_BYTES = 60

# Hard upper bound on the number of rows any query may return
ABSOLUTE_MAX_RESULTS = 1048575


class ExecutionConfig(BaseModel):
    """Query execution configuration."""

    timeout_seconds: float = Field(
        default=1200.0,
        description="Wall-clock limit for a single query before it is cancelled",
    )
    max_results: int = Field(
        default=ABSOLUTE_MAX_RESULTS,
        description="Row cap applied when a query has no limit of its own",
    )
    fetch_size: int = Field(
        default=500,
        description="Number of rows fetched from the cursor per batch",
    )
    max_workers: int = Field(
        default=8,
        description="Worker threads used by QueryProcessor.submit()",
    )


class PoolConfig(BaseModel):
    """Connection pool configuration (one pool per database)."""

    max_connections: int = Field(
        default=15,
        description="Maximum open connections per database",
    )
    acquire_timeout_seconds: float = Field(
        default=30.0,
        description="How long to wait for a free connection",
    )


class DriverConfig(BaseModel):
    """Driver loading configuration."""

    plugins: list[str] = Field(
        default_factory=list,
        description="Extra modules to import so third-party drivers can register themselves",
    )


LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class LoggingConfig(BaseModel):
    """Per-logger levels on top of the CLI verbosity."""

    levels: dict[str, LogLevel] = Field(
        default_factory=dict,
        description="Logger name (e.g. 'quarry.driver' or 'processor.pool') to level",
    )


class FieldConfig(BaseModel):
    """A field declared statically in the configuration file."""

    id: int
    name: str
    base_type: str = "type/*"
    effective_type: str | None = None
    semantic_type: str | None = None
    coercion_strategy: str | None = None
    database_type: str | None = None


class TableConfig(BaseModel):
    """A table declared statically in the configuration file."""

    id: int
    name: str
    schema_name: str | None = Field(default=None, alias="schema")
    fields: list[FieldConfig] = Field(default_factory=list)

    model_config = {"populate_by_name": True}


class DatabaseConfig(BaseModel):
    """A configured database connection."""

    engine: str = Field(description="Driver name, e.g. 'sqlite' or 'postgres'")
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Connection details passed to the driver's connection spec",
    )
    sync: bool = Field(
        default=True,
        description="Introspect tables and fields from the live database",
    )
    tables: list[TableConfig] = Field(default_factory=list)


class QuarryConfig(BaseSettings):
    """Main Quarry configuration."""

    model_config = SettingsConfigDict(
        env_prefix="QUARRY_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    version: str = Field(default="1.0", description="Config version")
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    pool: PoolConfig = Field(default_factory=PoolConfig)
    drivers: DriverConfig = Field(default_factory=DriverConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    databases: dict[str, DatabaseConfig] = Field(default_factory=dict)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Environment variables override values read from config files
        return env_settings, init_settings, dotenv_settings, file_secret_settings

    def database(self, database_id: int | str) -> DatabaseConfig | None:
        """Look up a configured database by id."""
        return self.databases.get(str(database_id))

    @classmethod
    def load(cls, config_path: Path | None = None) -> QuarryConfig:
        """Load configuration from file and environment.

        Resolution order (highest to lowest priority):
        1. Environment variables
        2. Provided config file path
        3. .quarryrc.toml in current directory
        4. .quarryrc.toml in home directory
        5. Built-in defaults
        """
        config_data: dict[str, Any] = {}

        locations = []
        if config_path:
            locations.append(config_path)
        locations.extend(
            [
                Path.cwd() / CONFIG_FILE,
                Path.home() / CONFIG_FILE,
            ]
        )

        for loc in locations:
            if loc.exists():
                with open(loc, "rb") as f:
                    config_data = tomllib.load(f)
                break

        # The [quarry] table holds top-level keys
        config_data.update(config_data.pop("quarry", {}))
        return cls(**config_data)


def get_default_config_toml() -> str:
    """Generate default .quarryrc.toml content."""
    return f"""# Quarry Configuration

[quarry]
version = "1.0"

[execution]
timeout_seconds = 1200.0  # Cancel queries running longer than this
max_results = {ABSOLUTE_MAX_RESULTS}  # Row cap for queries without a limit
fetch_size = 500  # Rows fetched per cursor round trip
max_workers = 8  # Threads used for submitted queries

[pool]
max_connections = 15
acquire_timeout_seconds = 30.0

[drivers]
plugins = []  # Modules that register third-party drivers

[logging]
# levels = {{ "quarry.driver" = "WARNING" }}  # Per-logger levels

# [databases.1]
# engine = "sqlite"
# details = {{ db = "sample.db" }}
# sync = true
"""
