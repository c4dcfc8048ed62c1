"""Error normalizer - turn any exception into a well-formed failure envelope.

Every stage of the processor may fail; nothing is allowed to escape
`QueryProcessor.process_query`. The envelope reports the most useful message
in the exception chain: the database's own message if the database was
involved, otherwise the outermost one.
"""

from __future__ import annotations

import functools
import logging
import traceback
from typing import Any

from pydantic import ValidationError

from quarry.errors import (
    DriverExecutionError,
    ErrorType,
    QuarryError,
    QueryCancelled,
    QueryTimeout,
    is_known_error_type,
    validation_message,
)

logger = logging.getLogger(__name__)

DEFAULT_ERROR_MESSAGE = "Error running query"


def exception_chain(e: BaseException) -> list[BaseException]:
    """`e` and its causes, outermost first.

    Follows `__cause__`, then `__context__` unless suppressed with `from None`.
    """
    chain: list[BaseException] = []
    seen: set[int] = set()
    current: BaseException | None = e
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        chain.append(current)
        if current.__cause__ is not None:
            current = current.__cause__
        elif not current.__suppress_context__:
            current = current.__context__
        else:
            current = None
    return chain


def _stacktrace(e: BaseException) -> list[str]:
    return [line.rstrip("\n") for line in traceback.format_tb(e.__traceback__)]


@functools.singledispatch
def format_exception(e: BaseException) -> dict[str, Any]:
    """Describe a single exception (not its causes)."""
    return {
        "status": "failed",
        "class": type(e).__name__,
        "error": str(e) or None,
        "stacktrace": _stacktrace(e),
    }


@format_exception.register
def _(e: QuarryError) -> dict[str, Any]:
    result = format_exception.dispatch(BaseException)(e)
    result["error"] = e.message
    result["error_type"] = e.error_type.value
    result["ex_data"] = {k: v for k, v in e.context.items() if v is not None}
    return result


@format_exception.register
def _(e: DriverExecutionError) -> dict[str, Any]:
    result = format_exception.dispatch(QuarryError)(e)
    result["state"] = e.state
    result["code"] = e.code
    return result


@format_exception.register
def _(e: QueryCancelled) -> dict[str, Any]:
    result = format_exception.dispatch(QuarryError)(e)
    result["status"] = "interrupted"
    return result


@format_exception.register
def _(e: ValidationError) -> dict[str, Any]:
    result = format_exception.dispatch(BaseException)(e)
    errors = e.errors()
    result["error"] = validation_message(e)
    result["error_type"] = ErrorType.INVALID_QUERY.value
    result["ex_data"] = {"errors": [{"loc": list(err["loc"]), "msg": err["msg"]} for err in errors]}
    return result


def exception_response(e: BaseException) -> dict[str, Any]:
    """Summarize `e` and its whole cause chain."""
    chain = exception_chain(e)
    formatted = [format_exception(exc) for exc in chain]
    response = dict(formatted[0])

    native = next((f for exc, f in zip(chain, formatted) if isinstance(exc, DriverExecutionError)), None)
    if native is not None and native.get("error"):
        response["error"] = native["error"]
        response["state"] = native.get("state")
        response["code"] = native.get("code")

    error_type = next((f["error_type"] for f in formatted if is_known_error_type(f.get("error_type"))), None)
    if error_type is not None:
        response["error_type"] = error_type
    if any(isinstance(exc, QueryCancelled) for exc in chain) and not isinstance(e, QueryTimeout):
        response["status"] = "interrupted"
    response["via"] = formatted[1:]
    return response


def error_envelope(
    query: Any,
    e: BaseException,
    row_count: int = 0,
) -> dict[str, Any]:
    """The result returned in place of data when a query fails.

    Rows and columns are always empty, even if some were read before the failure.
    """
    response = exception_response(e)
    status = response.get("status", "failed")
    if isinstance(e, QueryTimeout):
        status = "failed"
    envelope = {
        "status": status,
        "class": response.get("class"),
        "data": {"rows": [], "cols": []},
        "row_count": row_count,
        "error": response.get("error") or DEFAULT_ERROR_MESSAGE,
        "error_type": response.get("error_type"),
        "ex_data": response.get("ex_data"),
        "stacktrace": response.get("stacktrace", []),
        "via": response["via"],
        "json_query": query,
    }
    if response.get("state") is not None or response.get("code") is not None:
        envelope["state"] = response.get("state")
        envelope["code"] = response.get("code")
    return envelope
