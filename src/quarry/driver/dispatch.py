"""Capability dispatch - per-driver method resolution over the driver hierarchy.

A `Capability` is a named operation that drivers implement. Implementations are
registered against a driver name (and, for keyed capabilities, a secondary
dispatch value such as a clause name or temporal unit). Calling a capability
walks the C3 linearization of the driver, most derived first, and uses the first
implementation found:

    quote_identifier = Capability("quote_identifier")

    @quote_identifier.register("sql")
    def _(driver, name):
        return '"' + name.replace('"', '""') + '"'

    @quote_identifier.register("sqlserver")
    def _(driver, name):
        return "[" + name.replace("]", "]]") + "]"

    quote_identifier("postgres", "id")   # -> '"id"'
    quote_identifier("sqlserver", "id")  # -> '[id]'

Implementations always receive the driver they were called for as the first
argument, not the driver they were registered on, so parent implementations can
dispatch back into the child's overrides.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any

from quarry.driver.impl import ROOT, DriverRegistry, registry as default_registry
from quarry.errors import NoImplementationError

logger = logging.getLogger(__name__)


class _AnyKey:
    """Dispatch value matching every key of a keyed capability."""

    def __repr__(self) -> str:
        return "ANY"


ANY = _AnyKey()


class Capability:
    """A driver operation resolved through the driver hierarchy.

    Args:
        name: Name used in error messages and logs.
        default: Implementation used when no driver in the hierarchy has one.
        key: For keyed capabilities, a function computing the secondary dispatch
            value from the call arguments (after the driver).
    """

    def __init__(
        self,
        name: str,
        default: Callable[..., Any] | None = None,
        key: Callable[..., Any] | None = None,
        registry: DriverRegistry | None = None,
    ) -> None:
        self.name = name
        self._default = default
        self._key_fn = key
        self._registry = registry
        self._methods: dict[tuple[str, Any], Callable[..., Any]] = {}
        self._cache: dict[tuple[str, Any], Callable[..., Any] | None] = {}
        self._cache_version = -1
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"Capability({self.name!r})"

    @property
    def registry(self) -> DriverRegistry:
        return self._registry or default_registry

    @property
    def keyed(self) -> bool:
        return self._key_fn is not None

    def register(self, driver: str, key: Any = None) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator recording an implementation for `driver` (and `key`)."""
        if self.keyed and key is None:
            raise ValueError(f"Capability {self.name} is keyed; pass key= (or ANY)")

        def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
            with self._lock:
                self._methods[(driver, key)] = fn
                self._cache.clear()
            return fn

        return decorator

    def _resolve(self, driver: str, key: Any) -> Callable[..., Any] | None:
        registry = self.registry
        if driver != ROOT and not registry.is_registered(driver):
            registry.load_if_needed(driver)
        # Never hold our own lock while waiting on the registry: a driver module
        # being loaded under the registry's write lock registers implementations here.
        version = registry.version
        order = registry.linearize(driver)
        with self._lock:
            if self._cache_version != version:
                self._cache.clear()
                self._cache_version = version
            cache_key = (driver, key)
            if cache_key in self._cache:
                return self._cache[cache_key]
            method = None
            for candidate in order:
                method = self._methods.get((candidate, key))
                if method is None and self.keyed:
                    method = self._methods.get((candidate, ANY))
                if method is not None:
                    break
            self._cache[cache_key] = method
            return method

    def has_method(self, driver: str, key: Any = None) -> bool:
        """Does `driver` or one of its ancestors implement this capability?"""
        return self._resolve(driver, key) is not None

    def get_method(self, driver: str, key: Any = None) -> Callable[..., Any]:
        """Return the implementation `driver` would use.

        Useful for explicit delegation to a parent's implementation:

            execute_reducible_query.get_method("sql-dbapi")(driver, native, ...)
        """
        method = self._resolve(driver, key)
        if method is not None:
            return method
        if self._default is not None:
            return self._default
        raise NoImplementationError(self.name, driver, key)

    def dispatch_value(self, *args: Any, **kwargs: Any) -> Any:
        return self._key_fn(*args, **kwargs) if self._key_fn else None

    def __call__(self, driver: str, *args: Any, **kwargs: Any) -> Any:
        key = self.dispatch_value(*args, **kwargs)
        return self.get_method(driver, key)(driver, *args, **kwargs)

    def implementations(self) -> dict[tuple[str, Any], Callable[..., Any]]:
        """All registered implementations, for introspection."""
        with self._lock:
            return dict(self._methods)
