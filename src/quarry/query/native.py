"""Native query templates: `{{tag}}` references and `[[optional]]` clauses.

Templates are parsed with Lark into a flat list of parts. Drivers substitute
values through `render`, supplying a callback that turns one tag and its value
into native text; everything else here is driver-agnostic.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Union

from lark import Lark, Token, Transformer
from lark.exceptions import LarkError, UnexpectedInput

from quarry.errors import InvalidParameter, InvalidQuery
from quarry.query.ast import NativeQuery, Parameter, TemplateTag

logger = logging.getLogger(__name__)


# =============================================================================
# Template Parts
# =============================================================================


@dataclass(frozen=True)
class Text:
    text: str


@dataclass(frozen=True)
class Tag:
    name: str


@dataclass(frozen=True)
class OptionalClause:
    parts: tuple[Text | Tag, ...]

    @property
    def tags(self) -> list[str]:
        return [p.name for p in self.parts if isinstance(p, Tag)]


Part = Union[Text, Tag, OptionalClause]


class _TemplateTransformer(Transformer[Token, Any]):
    def start(self, items: list[Part]) -> tuple[Part, ...]:
        return tuple(items)

    def text(self, items: list[Token]) -> Text:
        return Text(str(items[0]))

    def tag(self, items: list[Token]) -> Tag:
        return Tag(str(items[0]).strip())

    def optional(self, items: list[Text | Tag]) -> OptionalClause:
        return OptionalClause(tuple(items))


class TemplateParser:
    """Parser for native query templates."""

    def __init__(self) -> None:
        grammar_path = Path(__file__).parent / "grammar.lark"
        self._lark = Lark(
            grammar_path.read_text(),
            start="start",
            parser="lalr",
            lexer="contextual",
        )
        self._transformer = _TemplateTransformer()

    def parse(self, template: str) -> tuple[Part, ...]:
        """Split `template` into text, tag and optional-clause parts.

        Raises:
            InvalidQuery: If braces or brackets are unbalanced.
        """
        try:
            tree = self._lark.parse(template)
        except UnexpectedInput as e:
            raise InvalidQuery(
                f"Invalid native query template at line {e.line}, column {e.column}: "
                f"unbalanced {{{{ }}}} or [[ ]]",
                clause="native",
            ) from e
        except LarkError as e:
            raise InvalidQuery(f"Invalid native query template: {e}", clause="native") from e
        return self._transformer.transform(tree)


_default_parser: TemplateParser | None = None


def parse_template(template: str) -> tuple[Part, ...]:
    """Parse a native query template using a shared parser instance."""
    global _default_parser
    if _default_parser is None:
        _default_parser = TemplateParser()
    return _default_parser.parse(template)


def referenced_tags(parts: tuple[Part, ...]) -> list[str]:
    names = []
    for part in parts:
        if isinstance(part, Tag):
            names.append(part.name)
        elif isinstance(part, OptionalClause):
            names.extend(part.tags)
    return names


# =============================================================================
# Values
# =============================================================================


class _NoValue:
    def __repr__(self) -> str:
        return "NO_VALUE"


NO_VALUE = _NoValue()


def _coerce_number(tag: TemplateTag, value: Any) -> Any:
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        try:
            number = Decimal(value.strip())
        except InvalidOperation:
            raise InvalidParameter(
                f"Invalid value for number parameter {tag.name}: {value!r}",
                tag=tag.name,
            ) from None
        return int(number) if number == number.to_integral_value() else float(number)
    raise InvalidParameter(f"Invalid value for number parameter {tag.name}: {value!r}", tag=tag.name)


def _coerce(tag: TemplateTag, value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        values = [_coerce(tag, v) for v in value]
        return values[0] if len(values) == 1 else values
    if tag.type == "number":
        return _coerce_number(tag, value)
    return value


def tag_values(native: NativeQuery, parameters: tuple[Parameter, ...]) -> dict[str, Any]:
    """Value for every declared tag: the matching parameter, else the tag default, else NO_VALUE."""
    supplied: dict[str, Any] = {}
    for param in parameters:
        name = param.tag_name
        if name is None:
            continue
        if native.tag(name) is None:
            raise InvalidParameter(f"No template tag named {name!r}", tag=name)
        if param.value is not None and param.value != []:
            supplied[name] = param.value

    values = {}
    for name, tag in native.template_tags:
        value = supplied.get(name, tag.default)
        values[name] = NO_VALUE if value is None or value == [] else _coerce(tag, value)
    return values


# =============================================================================
# Rendering
# =============================================================================


def _missing(tag: TemplateTag) -> InvalidParameter:
    label = tag.display_name or tag.name
    return InvalidParameter(
        f"You'll need to pick a value for '{label}' before this query can run.",
        tag=tag.name,
    )


def render(
    native: NativeQuery,
    parameters: tuple[Parameter, ...],
    render_tag: Callable[[TemplateTag, Any], str],
) -> str:
    """Substitute every tag in a native template.

    `render_tag(tag, value)` returns the native text for one occurrence of a
    tag; `value` is `NO_VALUE` only for field filters without a value
    outside optional clauses.

    Raises:
        InvalidQuery: If the template references an undeclared tag.
        InvalidParameter: If a required tag, or a tag outside an optional
            clause that is not a field filter, has no value.
    """
    if not isinstance(native.query, str):
        raise InvalidQuery("Native query templates must be strings", clause="native")
    parts = parse_template(native.query)
    for name in referenced_tags(parts):
        if native.tag(name) is None:
            raise InvalidQuery(f"Native query references undeclared template tag {name!r}", tag=name)
    values = tag_values(native, parameters)

    for name, tag in native.template_tags:
        if tag.required and values[name] is NO_VALUE:
            raise _missing(tag)

    out = []
    for part in parts:
        if isinstance(part, Text):
            out.append(part.text)
        elif isinstance(part, Tag):
            tag = native.tag(part.name)
            # Only field filters have a meaning without a value
            if values[part.name] is NO_VALUE and tag.type != "dimension":
                raise _missing(tag)
            out.append(render_tag(tag, values[part.name]))
        elif all(values[name] is not NO_VALUE for name in part.tags):
            for inner in part.parts:
                if isinstance(inner, Text):
                    out.append(inner.text)
                else:
                    out.append(render_tag(native.tag(inner.name), values[inner.name]))
        else:
            logger.debug(f"Dropping optional clause with missing values: {part.tags}")
    return "".join(out)
