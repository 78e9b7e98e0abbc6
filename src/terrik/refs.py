"""Tagged reference values parsed from ${...} interpolation syntax."""

from __future__ import annotations

import re
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from .errors import InvalidReferenceError

_INTERP_PATTERN = re.compile(r"\$\$\{|(\$\{([^{}]+)\})")
_SINGLE_PATTERN = re.compile(r"\$\{([^{}]+)\}")
_HEAD_SEGMENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")
_PATH_SEGMENT = re.compile(r"^[A-Za-z0-9_-]+$")


class RefKind(StrEnum):
    VAR = "var"
    DATA = "data"
    RESOURCE = "resource"


class _Unknown:
    """Sentinel for a value that is only known after apply."""

    _instance: _Unknown | None = None

    def __new__(cls) -> _Unknown:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"

    def __copy__(self) -> _Unknown:
        return self

    def __deepcopy__(self, memo: dict) -> _Unknown:
        return self


UNKNOWN: Any = _Unknown()


@dataclass(frozen=True)
class Reference:
    """A reference to a variable, a data source or another resource's attribute."""

    kind: RefKind
    name: str
    type: str | None = None
    attribute: str | None = None
    path: tuple[str, ...] = ()

    @property
    def address(self) -> str:
        """Address of the referenced object (e.g., 'aws_vpc.main', 'var.region')."""
        if self.kind is RefKind.VAR:
            return f"var.{self.name}"
        if self.kind is RefKind.DATA:
            return f"data.{self.type}.{self.name}"
        return f"{self.type}.{self.name}"

    def __str__(self) -> str:
        parts = [self.address]
        if self.attribute is not None:
            parts.append(self.attribute)
        parts.extend(self.path)
        return "${" + ".".join(parts) + "}"


@dataclass(frozen=True)
class Template:
    """A string mixing literal text and references."""

    parts: tuple[str | Reference, ...]

    def references(self) -> list[Reference]:
        return [p for p in self.parts if isinstance(p, Reference)]

    def __str__(self) -> str:
        return "".join(p if isinstance(p, str) else str(p) for p in self.parts)


def parse_reference(expr: str) -> Reference:
    """Parse the body of a ${...} expression into a Reference."""
    parts = expr.strip().split(".")
    if not _HEAD_SEGMENT.match(parts[0]) or not all(_PATH_SEGMENT.match(p) for p in parts[1:]):
        raise InvalidReferenceError(f"Unsupported expression: '${{{expr}}}'")

    head = parts[0]
    if head == "var":
        if len(parts) < 2:
            raise InvalidReferenceError(f"Incomplete variable reference: '${{{expr}}}'")
        return Reference(RefKind.VAR, parts[1], path=tuple(parts[2:]))

    if head == "data":
        if len(parts) < 3:
            raise InvalidReferenceError(f"Incomplete data source reference: '${{{expr}}}'")
        attribute = parts[3] if len(parts) > 3 else None
        return Reference(RefKind.DATA, parts[2], parts[1], attribute, tuple(parts[4:]))

    if len(parts) < 2:
        raise InvalidReferenceError(f"Unsupported expression: '${{{expr}}}'")
    attribute = parts[2] if len(parts) > 2 else None
    return Reference(RefKind.RESOURCE, parts[1], head, attribute, tuple(parts[3:]))


def parse_value(value: Any) -> Any:
    """Recursively turn ${...} strings into Reference and Template values.

    A string that is exactly one ${ref} becomes a Reference. A string with
    references embedded in literal text becomes a Template. Use $${...} for
    a literal ${...}.
    """
    if isinstance(value, dict):
        return {k: parse_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [parse_value(v) for v in value]
    if not isinstance(value, str) or "${" not in value:
        return value

    match = _SINGLE_PATTERN.fullmatch(value)
    if match:
        return parse_reference(match.group(1))

    parts: list[str | Reference] = []
    pos = 0
    for m in _INTERP_PATTERN.finditer(value):
        literal = value[pos : m.start()]
        if m.group(0) == "$${":
            literal += "${"
        _append_literal(parts, literal)
        if m.group(1) is not None:
            parts.append(parse_reference(m.group(2)))
        pos = m.end()
    _append_literal(parts, value[pos:])

    if not any(isinstance(p, Reference) for p in parts):
        return "".join(p for p in parts if isinstance(p, str))
    return Template(tuple(parts))


def _append_literal(parts: list[str | Reference], literal: str) -> None:
    if not literal:
        return
    if parts and isinstance(parts[-1], str):
        parts[-1] += literal
    else:
        parts.append(literal)


def iter_references(value: Any) -> Iterator[Reference]:
    """Yield every Reference found in a (possibly nested) value."""
    if isinstance(value, Reference):
        yield value
    elif isinstance(value, Template):
        yield from value.references()
    elif isinstance(value, dict):
        for v in value.values():
            yield from iter_references(v)
    elif isinstance(value, list | tuple):
        for v in value:
            yield from iter_references(v)


def stringify(value: Any) -> str:
    """Render a resolved value for embedding in a template string."""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def map_references(value: Any, fn: Callable[[Reference], Any]) -> Any:
    """Return a copy of value with every Reference replaced by fn(ref).

    Templates collapse to plain strings once all their parts are resolved,
    or to UNKNOWN if any part is unknown.
    """
    if isinstance(value, Reference):
        return fn(value)
    if isinstance(value, Template):
        parts = [p if isinstance(p, str) else fn(p) for p in value.parts]
        if any(p is UNKNOWN for p in parts):
            return UNKNOWN
        if any(isinstance(p, Reference | Template) for p in parts):
            return Template(tuple(p if isinstance(p, str | Reference) else stringify(p) for p in parts))
        return "".join(stringify(p) for p in parts)
    if isinstance(value, dict):
        return {k: map_references(v, fn) for k, v in value.items()}
    if isinstance(value, list):
        return [map_references(v, fn) for v in value]
    return value


def contains_unknown(value: Any) -> bool:
    """True if the value (or anything nested in it) is not yet known."""
    if value is UNKNOWN or isinstance(value, Reference | Template):
        return True
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, list):
        return any(contains_unknown(v) for v in value)
    return False
