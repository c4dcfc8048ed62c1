"""Error handling framework for the Quarry query processor."""

from __future__ import annotations

from enum import Enum, IntEnum
from typing import Any

from pydantic import ValidationError


class ExitCode(IntEnum):
    """Quarry CLI exit codes."""

    SUCCESS = 0
    CONFIG_ERROR = 1  # Configuration/driver setup error (user fixable)
    QUERY_ERROR = 2  # The query itself is invalid or unsupported
    FATAL_ERROR = 3  # Unexpected crash
    EXECUTION_ERROR = 4  # The database rejected or aborted the query


class ErrorType(str, Enum):
    """Stable, machine-readable error categories returned to clients."""

    INVALID_QUERY = "invalid-query"
    INVALID_PARAMETER = "invalid-parameter"
    MISSING_REQUIRED_PERMISSIONS = "missing-required-permissions"
    UNSUPPORTED_FEATURE = "unsupported-feature"
    DRIVER = "driver"
    TIMED_OUT = "timed-out"
    QP = "qp"


KNOWN_ERROR_TYPES = frozenset(t.value for t in ErrorType)


def is_known_error_type(error_type: Any) -> bool:
    """Check whether `error_type` is one of the stable `ErrorType` tags."""
    if isinstance(error_type, ErrorType):
        return True
    return isinstance(error_type, str) and error_type in KNOWN_ERROR_TYPES


def validation_message(e: ValidationError) -> str:
    """Describe the most deeply nested failure in `e` as "loc.path: message"."""
    errors = e.errors()
    if not errors:
        return str(e)
    innermost = max(errors, key=lambda err: len(err["loc"]))
    location = ".".join(str(part) for part in innermost["loc"])
    return f"{location}: {innermost['msg']}" if location else innermost["msg"]


class QuarryError(Exception):
    """Base exception for Quarry errors."""

    exit_code: ExitCode = ExitCode.FATAL_ERROR
    error_type: ErrorType = ErrorType.QP

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for JSON output."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "error_type": self.error_type.value,
            "exit_code": int(self.exit_code),
            **self.context,
        }


class ConfigError(QuarryError):
    """Configuration-related errors, including missing driver libraries."""

    exit_code = ExitCode.CONFIG_ERROR


class InvalidQuery(QuarryError):
    """The query document is malformed or cannot be normalized."""

    exit_code = ExitCode.QUERY_ERROR
    error_type = ErrorType.INVALID_QUERY


class InvalidParameter(InvalidQuery):
    """A query parameter is missing or has an unusable value."""

    error_type = ErrorType.INVALID_PARAMETER


class FieldResolutionError(InvalidQuery):
    """A field, table, or saved question referenced by the query does not exist."""


class UnsupportedOperation(QuarryError):
    """The target driver cannot express a clause or feature of the query."""

    exit_code = ExitCode.QUERY_ERROR
    error_type = ErrorType.UNSUPPORTED_FEATURE

    def __init__(self, message: str, driver: str | None = None, clause: str | None = None, **context: Any):
        super().__init__(message, driver=driver, clause=clause, **context)
        self.driver = driver
        self.clause = clause


class PermissionsError(QuarryError):
    """The current user is not allowed to run the query."""

    exit_code = ExitCode.QUERY_ERROR
    error_type = ErrorType.MISSING_REQUIRED_PERMISSIONS


class DriverExecutionError(QuarryError):
    """The database engine raised an error while running the query.

    The engine's message is kept verbatim; the SQLSTATE and vendor error code
    are attached when the DB-API exception exposes them.
    """

    exit_code = ExitCode.EXECUTION_ERROR
    error_type = ErrorType.DRIVER

    def __init__(
        self,
        message: str,
        driver: str | None = None,
        state: str | None = None,
        code: Any = None,
        **context: Any,
    ) -> None:
        super().__init__(message, driver=driver, state=state, code=code, **context)
        self.driver = driver
        self.state = state
        self.code = code


class QueryTimeout(QuarryError):
    """The query ran longer than the configured timeout and was cancelled."""

    exit_code = ExitCode.EXECUTION_ERROR
    error_type = ErrorType.TIMED_OUT

    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(
            f"Timed out after {timeout_seconds:g} seconds.",
            timeout_seconds=timeout_seconds,
        )
        self.timeout_seconds = timeout_seconds


class QueryCancelled(QuarryError):
    """The caller cancelled the query before it completed."""

    exit_code = ExitCode.EXECUTION_ERROR

    def __init__(self, message: str = "Query cancelled") -> None:
        super().__init__(message)


class DriverRegistrationError(QuarryError):
    """A driver registration would corrupt the driver hierarchy."""

    exit_code = ExitCode.CONFIG_ERROR


class DriverLoadError(QuarryError):
    """A driver module could not be loaded, or did not register its driver."""

    exit_code = ExitCode.CONFIG_ERROR

    def __init__(self, message: str, driver: str) -> None:
        super().__init__(message, driver=driver)
        self.driver = driver


class NoImplementationError(QuarryError):
    """No driver in the hierarchy implements a capability, and it has no default."""

    exit_code = ExitCode.CONFIG_ERROR

    def __init__(self, capability: str, driver: str, key: Any = None) -> None:
        dispatch = f"[{driver} {key}]" if key is not None else driver
        super().__init__(
            f"No implementation of {capability} for {dispatch}",
            capability=capability,
            driver=driver,
            key=key,
        )
        self.capability = capability
        self.driver = driver
        self.key = key
