"""Tests for capability dispatch over the driver hierarchy."""

from __future__ import annotations

import pytest

from quarry.driver.dispatch import ANY, Capability
from quarry.driver.impl import DriverRegistry
from quarry.errors import NoImplementationError


@pytest.fixture
def reg() -> DriverRegistry:
    r = DriverRegistry()
    r.register("sql", abstract=True)
    r.register("dbapi", parents="sql", abstract=True)
    r.register("empty-null", parents="sql", abstract=True)
    r.register("postgres", parents="dbapi")
    r.register("oracle", parents=["dbapi", "empty-null"])
    return r


class TestCapability:
    """Method resolution follows the C3 order."""

    def test_inherited_implementation(self, reg: DriverRegistry) -> None:
        quote = Capability("quote", registry=reg)
        quote.register("sql")(lambda driver, name: f'"{name}"')
        assert quote("postgres", "id") == '"id"'

    def test_override(self, reg: DriverRegistry) -> None:
        quote = Capability("quote", registry=reg)
        quote.register("sql")(lambda driver, name: f'"{name}"')
        quote.register("postgres")(lambda driver, name: f"`{name}`")
        assert quote("postgres", "id") == "`id`"
        assert quote("oracle", "id") == '"id"'

    def test_first_parent_wins(self, reg: DriverRegistry) -> None:
        where = Capability("where", registry=reg)
        where.register("empty-null")(lambda driver: "empty-null")
        where.register("dbapi")(lambda driver: "dbapi")
        assert where("oracle") == "dbapi"

    def test_receives_calling_driver(self, reg: DriverRegistry) -> None:
        name = Capability("name", registry=reg)
        name.register("sql")(lambda driver: driver)
        assert name("oracle") == "oracle"

    def test_default(self, reg: DriverRegistry) -> None:
        cap = Capability("cap", default=lambda driver: "default", registry=reg)
        assert cap("postgres") == "default"

    def test_no_implementation(self, reg: DriverRegistry) -> None:
        cap = Capability("cap", registry=reg)
        with pytest.raises(NoImplementationError):
            cap("postgres")

    def test_get_method_for_explicit_delegation(self, reg: DriverRegistry) -> None:
        greet = Capability("greet", registry=reg)
        greet.register("sql")(lambda driver: f"sql for {driver}")
        greet.register("oracle")(lambda driver: "oracle, then " + greet.get_method("sql")(driver))
        assert greet("oracle") == "oracle, then sql for oracle"

    def test_cache_invalidated_by_new_parent(self, reg: DriverRegistry) -> None:
        cap = Capability("cap", default=lambda driver: "default", registry=reg)
        cap.register("empty-null")(lambda driver: "empty-null")
        assert cap("postgres") == "default"
        reg.add_parent("postgres", "empty-null")
        assert cap("postgres") == "empty-null"

    def test_has_method(self, reg: DriverRegistry) -> None:
        cap = Capability("cap", registry=reg)
        cap.register("dbapi")(lambda driver: None)
        assert cap.has_method("postgres")
        assert not cap.has_method("sql")


class TestKeyedCapability:
    """Keyed capabilities dispatch on driver and a secondary value."""

    def test_dispatch_on_key(self, reg: DriverRegistry) -> None:
        bucket = Capability("bucket", key=lambda unit, expr: unit, registry=reg)
        bucket.register("sql", key="day")(lambda driver, unit, expr: f"day({expr})")
        bucket.register("oracle", key="day")(lambda driver, unit, expr: f"TRUNC({expr})")
        assert bucket("postgres", "day", "x") == "day(x)"
        assert bucket("oracle", "day", "x") == "TRUNC(x)"

    def test_any_key(self, reg: DriverRegistry) -> None:
        bucket = Capability("bucket", key=lambda unit, expr: unit, registry=reg)
        bucket.register("sql", key=ANY)(lambda driver, unit, expr: f"{unit}({expr})")
        bucket.register("postgres", key="week")(lambda driver, unit, expr: "pg-week")
        assert bucket("postgres", "month", "x") == "month(x)"
        assert bucket("postgres", "week", "x") == "pg-week"

    def test_exact_key_beats_any_on_same_driver(self, reg: DriverRegistry) -> None:
        cap = Capability("cap", key=lambda k: k, registry=reg)
        cap.register("postgres", key=ANY)(lambda driver, k: "any")
        cap.register("postgres", key="x")(lambda driver, k: "exact")
        assert cap("postgres", "x") == "exact"
        assert cap("postgres", "y") == "any"

    def test_register_requires_key(self, reg: DriverRegistry) -> None:
        cap = Capability("cap", key=lambda k: k, registry=reg)
        with pytest.raises(ValueError):
            cap.register("sql")
