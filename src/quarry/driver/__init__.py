"""Quarry drivers - pluggable backends for database engine families.

Drivers are registered by name in a process-wide hierarchy. Built-in drivers
live in `quarry.driver.<name>` and are loaded lazily the first time they are
needed; third-party drivers are named `package.module/driver`.

Example:
    >>> from quarry.driver import the_driver, available_drivers
    >>> the_driver("sqlite")
    'sqlite'
    >>> "sqlite" in available_drivers()
    True
"""

from __future__ import annotations

from quarry.driver.base import initialize
from quarry.driver.dispatch import ANY, Capability
from quarry.driver.impl import (
    CONCRETE,
    ROOT,
    DriverRegistry,
    ReadWriteLock,
    registry,
    truncate_alias,
)
from quarry.errors import UnsupportedOperation

# Drivers shipped with quarry, loaded on demand
BUILTIN_DRIVERS = ("sqlite", "duckdb", "postgres", "oracle", "sqlserver", "mongo")


def register(name: str, parents: list[str] | tuple[str, ...] | str | None = None, abstract: bool = False) -> None:
    """Register a driver in the global hierarchy."""
    registry.register(name, parents=parents, abstract=abstract)


def add_parent(name: str, parent: str) -> None:
    registry.add_parent(name, parent)


def is_registered(name: str) -> bool:
    return registry.is_registered(name)


def is_concrete(name: str) -> bool:
    return registry.is_concrete(name)


def is_abstract(name: str) -> bool:
    return registry.is_abstract(name)


def load_if_needed(name: str) -> None:
    registry.load_if_needed(name)


def initialize_if_needed(name: str, init_fn=None) -> None:
    registry.initialize_if_needed(name, init_fn or initialize)


def linearize(name: str) -> tuple[str, ...]:
    return registry.linearize(name)


def available_drivers() -> list[str]:
    """Concrete drivers currently registered."""
    return registry.available_drivers()


def the_driver(name: str, for_query: bool = False) -> str:
    """Load and initialize `name` if needed, returning the driver name.

    Raises:
        DriverLoadError: If no module registers `name`.
        UnsupportedOperation: If `for_query` is set and the driver is abstract.
    """
    registry.load_if_needed(name)
    registry.initialize_if_needed(name, initialize)
    if for_query and registry.is_abstract(name):
        raise UnsupportedOperation(
            f"{name} is an abstract driver and cannot run queries",
            driver=name,
        )
    return name


__all__ = [
    "ANY",
    "BUILTIN_DRIVERS",
    "CONCRETE",
    "Capability",
    "DriverRegistry",
    "ROOT",
    "ReadWriteLock",
    "add_parent",
    "available_drivers",
    "initialize_if_needed",
    "is_abstract",
    "is_concrete",
    "is_registered",
    "linearize",
    "load_if_needed",
    "register",
    "registry",
    "the_driver",
    "truncate_alias",
]
