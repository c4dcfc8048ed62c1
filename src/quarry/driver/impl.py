"""Driver registry internals: hierarchy, loading, initialization, alias truncation.

The public entry points are re-exported from `quarry.driver`; this module keeps
the locking and bookkeeping out of the way.

Drivers form a directed acyclic graph. Every registered driver derives from the
`driver` root; non-abstract drivers additionally derive from the `concrete`
marker, so concreteness is inherited the same way methods are. Capability
dispatch walks the C3 linearization of a driver's ancestors, which gives
multiple inheritance the same resolution order Python classes use.
"""

from __future__ import annotations

import importlib
import logging
import sys
import threading
import time
import zlib
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager

from quarry.config import DEFAULT_ALIAS_MAX_LENGTH_BYTES
from quarry.errors import DriverLoadError, DriverRegistrationError

logger = logging.getLogger(__name__)

# Sentinel nodes in the hierarchy
ROOT = "driver"
CONCRETE = "concrete"


# =============================================================================
# Read/Write Lock
# =============================================================================


class ReadWriteLock:
    """A reader-preferring read/write lock.

    Any number of threads may hold the read lock at once. The write lock is
    exclusive and reentrant for the thread holding it; that thread may also
    take the read lock. A thread must not upgrade from read to write.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer: int | None = None
        self._writer_depth = 0

    def acquire_read(self) -> None:
        me = threading.get_ident()
        with self._cond:
            while self._writer is not None and self._writer != me:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        me = threading.get_ident()
        with self._cond:
            if self._writer == me:
                self._writer_depth += 1
                return
            while self._writer is not None or self._readers > 0:
                self._cond.wait()
            self._writer = me
            self._writer_depth = 1

    def release_write(self) -> None:
        with self._cond:
            if self._writer != threading.get_ident():
                raise RuntimeError("Cannot release a write lock held by another thread")
            self._writer_depth -= 1
            if self._writer_depth == 0:
                self._writer = None
                self._cond.notify_all()

    @contextmanager
    def read_locked(self) -> Iterator[None]:
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write_locked(self) -> Iterator[None]:
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


# =============================================================================
# Hierarchy
# =============================================================================


def _c3_merge(name: str, sequences: list[list[str]]) -> list[str]:
    result: list[str] = []
    seqs = [list(s) for s in sequences]
    while True:
        seqs = [s for s in seqs if s]
        if not seqs:
            return result
        for seq in seqs:
            head = seq[0]
            if not any(head in other[1:] for other in seqs):
                break
        else:
            raise DriverRegistrationError(
                f"Cannot create a consistent resolution order for driver {name}",
                driver=name,
            )
        result.append(head)
        for seq in seqs:
            if seq[0] == head:
                del seq[0]


class DriverRegistry:
    """Process-wide registry of drivers and their parents.

    Lookups take the read lock; registration and module loading take the
    write lock. Initialization is tracked separately so child drivers never
    inherit "initialized" status from their parents.
    """

    def __init__(self) -> None:
        self._parents: dict[str, tuple[str, ...]] = {}
        self._concrete: dict[str, bool] = {}
        self._linearizations: dict[str, tuple[str, ...]] = {}
        self._version = 0
        self._load_lock = ReadWriteLock()
        self._initialized: set[str] = {ROOT, CONCRETE}
        self._init_lock = threading.RLock()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def version(self) -> int:
        """Incremented on every change to the hierarchy."""
        return self._version

    def is_registered(self, driver: str) -> bool:
        """Is `driver` a registered driver?"""
        with self._load_lock.read_locked():
            return driver in self._parents

    def is_concrete(self, driver: str) -> bool:
        """Is `driver` registered and non-abstract?"""
        with self._load_lock.read_locked():
            return self._derives_from_concrete(driver)

    def is_abstract(self, driver: str) -> bool:
        """Is `driver` a base driver that cannot be used to run queries directly?"""
        return not self.is_concrete(driver)

    def parents(self, driver: str) -> tuple[str, ...]:
        """Direct parents of `driver`, in declaration order."""
        with self._load_lock.read_locked():
            return self._parents.get(driver, ())

    def ancestors(self, driver: str) -> set[str]:
        """All transitive parents of `driver` (not including itself)."""
        with self._load_lock.read_locked():
            return self._ancestors(driver)

    def isa(self, driver: str, parent: str) -> bool:
        """Does `driver` derive from `parent` (or equal it)?"""
        if parent == ROOT:
            return self.is_registered(driver)
        if parent == CONCRETE:
            return self.is_concrete(driver)
        return driver == parent or parent in self.ancestors(driver)

    def linearize(self, driver: str) -> tuple[str, ...]:
        """C3 method resolution order for `driver`, most specific first, ending at the root."""
        with self._load_lock.read_locked():
            cached = self._linearizations.get(driver)
            if cached is not None:
                return cached
            order = tuple(self._linearize(driver, self._parents)) + (ROOT,)
            self._linearizations[driver] = order
            return order

    def registered_drivers(self) -> list[str]:
        with self._load_lock.read_locked():
            return sorted(self._parents)

    def available_drivers(self) -> list[str]:
        """Names of all registered concrete drivers."""
        with self._load_lock.read_locked():
            return sorted(d for d in self._parents if self._derives_from_concrete(d))

    def _ancestors(self, driver: str) -> set[str]:
        seen: set[str] = set()
        stack = list(self._parents.get(driver, ()))
        while stack:
            parent = stack.pop()
            if parent not in seen:
                seen.add(parent)
                stack.extend(self._parents.get(parent, ()))
        return seen

    def _derives_from_concrete(self, driver: str) -> bool:
        if driver not in self._parents:
            return False
        return any(self._concrete.get(d, False) for d in {driver} | self._ancestors(driver))

    def _linearize(self, driver: str, parents_map: dict[str, tuple[str, ...]]) -> list[str]:
        parents = parents_map.get(driver, ())
        sequences = [self._linearize(p, parents_map) for p in parents]
        sequences.append(list(parents))
        return [driver] + _c3_merge(driver, sequences)

    # -------------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------------

    @staticmethod
    def driver_module_name(driver: str) -> str:
        """Module expected to register `driver`.

        Built-in drivers live in `quarry.driver.<name>` with dashes replaced by
        underscores. Plugin drivers are named `package.module/driver`.
        """
        if "/" in driver:
            return driver.split("/", 1)[0]
        return f"quarry.driver.{driver.replace('-', '_')}"

    def _require_driver_module(self, driver: str, reload: bool = False) -> None:
        module_name = self.driver_module_name(driver)
        logger.debug(f"Loading driver {driver} ({module_name}{', reload' if reload else ''})")
        try:
            if reload and module_name in sys.modules:
                importlib.reload(sys.modules[module_name])
            else:
                importlib.import_module(module_name)
        except Exception as e:
            logger.error(f"Error loading driver module {module_name}: {e}")
            raise DriverLoadError(f"Could not load {driver} driver.", driver) from e

    def load_if_needed(self, driver: str) -> None:
        """Import the module for `driver` if the driver is not registered yet.

        Safe to call from many threads: the registration check is repeated
        after acquiring the write lock so a module is only imported once.
        """
        if self.is_registered(driver):
            return
        with self._load_lock.write_locked():
            if driver in self._parents:
                return
            start = time.perf_counter()
            self._require_driver_module(driver)
            if driver not in self._parents:
                self._require_driver_module(driver, reload=True)
            if driver not in self._parents:
                raise DriverLoadError(f"Driver not registered after loading: {driver}", driver)
            elapsed_ms = (time.perf_counter() - start) * 1000
            logger.debug(f"Loaded driver {driver} in {elapsed_ms:.1f}ms")

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def register(self, driver: str, parents: Iterable[str] | str | None = None, abstract: bool = False) -> None:
        """Register a driver.

        Args:
            driver: Driver name, e.g. "postgres".
            parents: Parent driver(s) to inherit capability implementations from.
                Declaration order is resolution preference.
            abstract: Abstract drivers cannot run queries (e.g. "sql").

        Raises:
            DriverRegistrationError: If the abstractness of a registered driver would
                change, an abstract driver is given a concrete parent, or the parents
                would make the hierarchy cyclic or ambiguous. The hierarchy is left
                untouched in that case.
        """
        if not driver or driver in (ROOT, CONCRETE):
            raise DriverRegistrationError(f"Invalid driver name: {driver!r}", driver=driver)
        parent_list = _one_or_many(parents)

        for parent in parent_list:
            self.load_if_needed(parent)

        with self._load_lock.write_locked():
            if abstract:
                for parent in parent_list:
                    if self._derives_from_concrete(parent):
                        raise DriverRegistrationError(
                            "Abstract drivers cannot derive from concrete parent drivers.",
                            driver=driver,
                            parent=parent,
                        )
            if driver in self._parents:
                old_abstract = not self._derives_from_concrete(driver)
                if old_abstract != bool(abstract):
                    raise DriverRegistrationError(
                        f"Error: attempting to change {driver} property `abstract` "
                        f"from {old_abstract} to {bool(abstract)}.",
                        driver=driver,
                    )
            self._add_parents(driver, parent_list)
            self._concrete[driver] = not abstract

        if abstract:
            logger.info(f"Registered abstract driver {driver}" + (f" (parents: {parent_list})" if parent_list else ""))
        else:
            logger.info(f"Registered driver {driver}" + (f" (parents: {parent_list})" if parent_list else ""))

    def add_parent(self, driver: str, parent: str) -> None:
        """Add another parent to an already registered driver."""
        self.load_if_needed(parent)
        with self._load_lock.write_locked():
            if driver not in self._parents:
                raise DriverRegistrationError(f"Driver {driver} is not registered", driver=driver)
            if not self._derives_from_concrete(driver) and self._derives_from_concrete(parent):
                raise DriverRegistrationError(
                    "Abstract drivers cannot derive from concrete parent drivers.",
                    driver=driver,
                    parent=parent,
                )
            self._add_parents(driver, [parent])
        logger.info(f"Added parent {parent} to driver {driver}")

    def _add_parents(self, driver: str, new_parents: list[str]) -> None:
        # Caller holds the write lock
        current = self._parents.get(driver, ())
        merged = current + tuple(p for p in new_parents if p not in current)
        for parent in merged:
            if parent == driver or driver in self._ancestors(parent):
                raise DriverRegistrationError(
                    f"Cannot derive {driver} from {parent}: the hierarchy would contain a cycle",
                    driver=driver,
                    parent=parent,
                )
            if parent not in self._parents:
                raise DriverRegistrationError(
                    f"Parent driver {parent} of {driver} is not registered",
                    driver=driver,
                    parent=parent,
                )
        # Validate every affected resolution order before committing anything
        tentative = dict(self._parents)
        tentative[driver] = merged
        affected = [d for d in tentative if d == driver or driver in self._ancestors_in(d, tentative)]
        for d in affected:
            self._linearize(d, tentative)
        self._parents = tentative
        self._linearizations.clear()
        self._version += 1

    @staticmethod
    def _ancestors_in(driver: str, parents_map: dict[str, tuple[str, ...]]) -> set[str]:
        seen: set[str] = set()
        stack = list(parents_map.get(driver, ()))
        while stack:
            parent = stack.pop()
            if parent not in seen:
                seen.add(parent)
                stack.extend(parents_map.get(parent, ()))
        return seen

    # -------------------------------------------------------------------------
    # Initialization
    # -------------------------------------------------------------------------

    def is_initialized(self, driver: str) -> bool:
        return driver in self._initialized

    def initialize_if_needed(self, driver: str, init_fn: Callable[[str], None]) -> None:
        """Run `init_fn(driver)` once per driver, after initializing its parents."""
        for parent in self.parents(driver):
            self.initialize_if_needed(parent, init_fn)
        if driver in self._initialized:
            return
        with self._init_lock:
            # Another thread may have finished initialization while we waited
            if driver in self._initialized:
                return
            logger.info(f"Initializing driver {driver}...")
            init_fn(driver)
            self._initialized.add(driver)


def _one_or_many(value: Iterable[str] | str | None) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [v for v in value if v is not None]


# The process-wide registry used by `quarry.driver`
registry = DriverRegistry()


# =============================================================================
# Alias Truncation
# =============================================================================

# Length of the suffix appended by truncate_alias: an underscore and 8 hex digits of CRC-32
TRUNCATED_ALIAS_HASH_SUFFIX_LENGTH = 9


def truncate_string_to_byte_count(s: str, max_length_bytes: int) -> str:
    """Truncate `s` to at most `max_length_bytes` UTF-8 bytes without splitting a character."""
    if max_length_bytes < 0:
        raise ValueError("max_length_bytes must not be negative")
    total = 0
    for i, char in enumerate(s):
        size = len(char.encode("utf-8"))
        if total + size > max_length_bytes:
            return s[:i]
        total += size
    return s


def truncate_alias(s: str, max_length_bytes: int = DEFAULT_ALIAS_MAX_LENGTH_BYTES) -> str:
    """Truncate `s` to exactly `max_length_bytes` bytes if it is longer, appending a checksum.

    The checksum is the CRC-32 of the full original string, so two long strings
    that differ only at the end still produce different results.

        truncate_alias("some_really_long_string", 15)    # -> "some_r_8e0f9bc2"
        truncate_alias("some_really_long_string_2", 15)  # -> "some_r_2a3c73eb"
    """
    if max_length_bytes <= TRUNCATED_ALIAS_HASH_SUFFIX_LENGTH:
        raise ValueError(
            f"max_length_bytes must be greater than {TRUNCATED_ALIAS_HASH_SUFFIX_LENGTH}, got {max_length_bytes}"
        )
    encoded = s.encode("utf-8")
    if len(encoded) <= max_length_bytes:
        return s
    checksum = f"{zlib.crc32(encoded) & 0xFFFFFFFF:08x}"
    prefix_bytes = max_length_bytes - TRUNCATED_ALIAS_HASH_SUFFIX_LENGTH
    truncated = truncate_string_to_byte_count(s, prefix_bytes)
    # A multibyte character at the boundary leaves a short prefix; pad to keep the length exact
    truncated += "_" * (prefix_bytes - len(truncated.encode("utf-8")))
    return f"{truncated}_{checksum}"
