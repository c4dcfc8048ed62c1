"""Tests for the driver registry: hierarchy, abstractness, loading and alias truncation."""

from __future__ import annotations

import threading

import pytest

from quarry.driver import the_driver
from quarry.driver.impl import (
    CONCRETE,
    ROOT,
    TRUNCATED_ALIAS_HASH_SUFFIX_LENGTH,
    DriverRegistry,
    ReadWriteLock,
    registry,
    truncate_alias,
    truncate_string_to_byte_count,
)
from quarry.errors import DriverLoadError, DriverRegistrationError, UnsupportedOperation


@pytest.fixture
def reg() -> DriverRegistry:
    """A private registry with a small sql-like hierarchy."""
    r = DriverRegistry()
    r.register("sql", abstract=True)
    r.register("jdbc", parents="sql", abstract=True)
    r.register("mixin", parents="sql", abstract=True)
    r.register("postgres", parents="jdbc")
    r.register("redshift", parents="postgres")
    r.register("oracle", parents=["jdbc", "mixin"])
    return r


class TestHierarchy:
    """Parent relations and C3 resolution order."""

    def test_linearize_single_inheritance(self, reg: DriverRegistry) -> None:
        assert reg.linearize("redshift") == ("redshift", "postgres", "jdbc", "sql", ROOT)

    def test_linearize_multiple_inheritance(self, reg: DriverRegistry) -> None:
        assert reg.linearize("oracle") == ("oracle", "jdbc", "mixin", "sql", ROOT)

    def test_isa(self, reg: DriverRegistry) -> None:
        assert reg.isa("redshift", "sql")
        assert reg.isa("redshift", "redshift")
        assert reg.isa("redshift", ROOT)
        assert reg.isa("redshift", CONCRETE)
        assert not reg.isa("sql", CONCRETE)
        assert not reg.isa("postgres", "mixin")

    def test_ancestors(self, reg: DriverRegistry) -> None:
        assert reg.ancestors("oracle") == {"jdbc", "mixin", "sql"}

    def test_add_parent(self, reg: DriverRegistry) -> None:
        reg.add_parent("postgres", "mixin")
        assert reg.parents("postgres") == ("jdbc", "mixin")
        assert reg.linearize("redshift") == ("redshift", "postgres", "jdbc", "mixin", "sql", ROOT)

    def test_cycle_rejected(self, reg: DriverRegistry) -> None:
        with pytest.raises(DriverRegistrationError, match="cycle"):
            reg.add_parent("sql", "mixin")
        assert reg.parents("sql") == ()

    def test_unknown_parent_rejected(self) -> None:
        r = DriverRegistry()
        with pytest.raises(DriverLoadError):
            r.register("child", parents="quarry_test_missing.module/nothing")

    def test_version_changes_on_registration(self, reg: DriverRegistry) -> None:
        before = reg.version
        reg.register("cockroach", parents="postgres")
        assert reg.version > before

    def test_reregistering_is_idempotent(self, reg: DriverRegistry) -> None:
        reg.register("postgres", parents="jdbc")
        assert reg.parents("postgres") == ("jdbc",)


class TestAbstractness:
    """Abstract drivers never run queries and never derive from concrete ones."""

    def test_concrete_and_abstract(self, reg: DriverRegistry) -> None:
        assert reg.is_concrete("postgres")
        assert reg.is_abstract("sql")
        assert not reg.is_concrete("unregistered")

    def test_abstract_with_concrete_parent_rejected(self, reg: DriverRegistry) -> None:
        with pytest.raises(DriverRegistrationError, match="concrete parent"):
            reg.register("pg-base", parents="postgres", abstract=True)
        assert not reg.is_registered("pg-base")

    def test_changing_abstractness_rejected(self, reg: DriverRegistry) -> None:
        with pytest.raises(DriverRegistrationError, match="abstract"):
            reg.register("postgres", parents="jdbc", abstract=True)
        assert reg.is_concrete("postgres")

    def test_available_drivers(self, reg: DriverRegistry) -> None:
        assert reg.available_drivers() == ["oracle", "postgres", "redshift"]

    def test_the_driver_rejects_abstract_for_query(self) -> None:
        with pytest.raises(UnsupportedOperation):
            the_driver("sql", for_query=True)


class TestLoading:
    """Built-in drivers are imported on demand."""

    def test_module_names(self) -> None:
        assert DriverRegistry.driver_module_name("sqlite") == "quarry.driver.sqlite"
        assert DriverRegistry.driver_module_name("sql-dbapi") == "quarry.driver.sql_dbapi"
        assert DriverRegistry.driver_module_name("acme.drivers/acme") == "acme.drivers"

    def test_load_builtin_driver(self) -> None:
        assert the_driver("sqlite") == "sqlite"
        assert registry.linearize("sqlite") == ("sqlite", "sql-dbapi", "sql", ROOT)

    def test_oracle_resolution_order(self) -> None:
        the_driver("oracle")
        assert registry.linearize("oracle") == ("oracle", "sql-dbapi", "empty-string-is-null", "sql", ROOT)

    def test_missing_module(self) -> None:
        with pytest.raises(DriverLoadError) as exc_info:
            registry.load_if_needed("no-such-driver")
        assert isinstance(exc_info.value.__cause__, ImportError)

    def test_initialize_runs_once_per_driver(self) -> None:
        r = DriverRegistry()
        r.register("base", abstract=True)
        r.register("child", parents="base")
        calls = []
        r.initialize_if_needed("child", calls.append)
        r.initialize_if_needed("child", calls.append)
        assert calls == ["base", "child"]


class TestConcurrency:
    """Locking behaviour of the registry."""

    def test_concurrent_registration_keeps_both(self) -> None:
        for _ in range(20):
            r = DriverRegistry()
            r.register("base", abstract=True)
            barrier = threading.Barrier(2)

            def register(name: str) -> None:
                barrier.wait()
                r.register(name, parents="base")

            threads = [threading.Thread(target=register, args=(n,)) for n in ("alpha", "beta")]
            for t in threads:
                t.start()
            for t in threads:
                t.join()
            assert r.available_drivers() == ["alpha", "beta"]
            assert r.parents("alpha") == ("base",)
            assert r.parents("beta") == ("base",)

    def test_writer_may_read_and_reenter(self) -> None:
        lock = ReadWriteLock()
        with lock.write_locked():
            with lock.write_locked():
                with lock.read_locked():
                    pass
        # Released completely: another thread can write
        done = threading.Event()
        t = threading.Thread(target=lambda: (lock.acquire_write(), lock.release_write(), done.set()))
        t.start()
        t.join(timeout=5)
        assert done.is_set()


class TestTruncateAlias:
    """Byte-length limited, collision-resistant aliases."""

    def test_short_alias_unchanged(self) -> None:
        assert truncate_alias("price", 30) == "price"

    @pytest.mark.parametrize("limit", [10, 15, 30, 60])
    def test_exact_byte_length(self, limit: int) -> None:
        s = "some_really_long_string_that_keeps_going_and_going_and_going_forever"
        assert len(truncate_alias(s, limit).encode("utf-8")) == limit

    def test_shared_prefix_stays_distinct(self) -> None:
        a = truncate_alias("some_really_long_string", 15)
        b = truncate_alias("some_really_long_string_2", 15)
        assert a != b
        assert a.startswith("some_r_")
        assert b.startswith("some_r_")

    def test_multibyte_boundary(self) -> None:
        s = "ééééééééééééééééééééé"  # 2 bytes each
        truncated = truncate_alias(s, 14)
        assert len(truncated.encode("utf-8")) == 14
        truncated.encode("utf-8").decode("utf-8")

    def test_limit_must_exceed_suffix(self) -> None:
        with pytest.raises(ValueError):
            truncate_alias("anything_long_enough", TRUNCATED_ALIAS_HASH_SUFFIX_LENGTH)

    def test_truncate_to_byte_count(self) -> None:
        assert truncate_string_to_byte_count("aé", 2) == "a"
        assert truncate_string_to_byte_count("aé", 3) == "aé"
