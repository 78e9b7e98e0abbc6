"""Resource model — typed resources built from raw declarations."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .errors import DuplicateAttributeError, DuplicateResourceError, InvalidReferenceError
from .refs import RefKind, Reference, iter_references, parse_reference, parse_value
from .resolve import Resolver
from .schema import ResourceSchema, get_schema

logger = logging.getLogger(__name__)

META_ATTRS = frozenset({"depends_on", "lifecycle", "provider"})


class Mode(StrEnum):
    MANAGED = "managed"
    DATA = "data"


def make_address(type_name: str, name: str, mode: Mode = Mode.MANAGED) -> str:
    if mode is Mode.DATA:
        return f"data.{type_name}.{name}"
    return f"{type_name}.{name}"


class Resource(BaseModel):
    """A declared infrastructure object with variables substituted.

    Cross-resource references remain tagged Reference/Template values until
    planning or apply resolves them.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    type: str
    name: str
    mode: Mode = Mode.MANAGED
    attrs: dict[str, Any] = Field(default_factory=dict)
    depends_on: tuple[str, ...] = ()
    index: int = 0

    @property
    def address(self) -> str:
        return make_address(self.type, self.name, self.mode)

    @property
    def schema(self) -> type[ResourceSchema]:
        return get_schema(self.type, data_source=self.mode is Mode.DATA)

    @property
    def is_data(self) -> bool:
        return self.mode is Mode.DATA

    def references(self) -> list[Reference]:
        """Cross-resource references found anywhere in the attributes."""
        return [r for r in iter_references(self.attrs) if r.kind is not RefKind.VAR]

    def dependencies(self) -> list[str]:
        """Addresses this resource depends on, in first-seen order."""
        seen: dict[str, None] = {}
        for ref in self.references():
            seen.setdefault(ref.address, None)
        for address in self.depends_on:
            seen.setdefault(address, None)
        return list(seen)


class Output(BaseModel):
    """A named expression evaluated against final resource values."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    value: Any = None
    sensitive: bool = False
    description: str = ""


@dataclass
class Declaration:
    """A raw resource block before variable substitution.

    ``attrs`` may be a mapping or a sequence of (key, value) pairs; the pair
    form preserves repeated keys so they can be rejected.
    """

    type: str
    name: str
    attrs: Mapping[str, Any] | Sequence[tuple[str, Any]] = field(default_factory=dict)
    mode: Mode = Mode.MANAGED

    @property
    def address(self) -> str:
        return make_address(self.type, self.name, self.mode)

    def attributes(self) -> dict[str, Any]:
        """Return attrs as a dict, rejecting repeated keys."""
        if isinstance(self.attrs, Mapping):
            return dict(self.attrs)
        result: dict[str, Any] = {}
        for key, value in self.attrs:
            if key in result:
                raise DuplicateAttributeError(self.address, key)
            result[key] = value
        return result


def _parse_depends_on(address: str, value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        value = [value]
    addresses: list[str] = []
    for item in value or []:
        ref = parse_value(item)
        if isinstance(ref, str):
            ref = parse_reference(ref)
        if not isinstance(ref, Reference) or ref.kind is RefKind.VAR:
            raise InvalidReferenceError(f"{address}: invalid depends_on entry {item!r}")
        addresses.append(ref.address)
    return tuple(addresses)


def build_resource(decl: Declaration, variables: Mapping[str, Any], index: int) -> Resource:
    """Turn a single declaration into a Resource with variables substituted."""
    attrs = decl.attributes()
    get_schema(decl.type, data_source=decl.mode is Mode.DATA)

    depends_on = _parse_depends_on(decl.address, attrs.pop("depends_on", None))
    for meta in META_ATTRS & attrs.keys():
        logger.debug("Ignoring meta-argument '%s' on %s", meta, decl.address)
        attrs.pop(meta)

    resolver = Resolver(variables, partial=True)
    attrs = resolver.resolve_attrs(parse_value(attrs))

    resource = Resource(
        type=decl.type,
        name=decl.name,
        mode=decl.mode,
        attrs=attrs,
        depends_on=depends_on,
        index=index,
    )
    if resource.is_data:
        managed = [r for r in resource.dependencies() if not r.startswith("data.")]
        if managed:
            raise InvalidReferenceError(
                f"Data source '{resource.address}' cannot depend on managed resources: "
                + ", ".join(managed)
            )
    return resource


def build_resources(
    declarations: Iterable[Declaration],
    variables: Mapping[str, Any],
) -> dict[str, Resource]:
    """Build the address -> Resource mapping in declaration order.

    Raises DuplicateResourceError when two declarations share an address and
    UndefinedVariableError when an attribute references an unknown variable.
    """
    resources: dict[str, Resource] = {}
    for index, decl in enumerate(declarations):
        if decl.address in resources:
            raise DuplicateResourceError(decl.address)
        logger.debug("Building resource '%s'", decl.address)
        resources[decl.address] = build_resource(decl, variables, index)
    return resources


class Model(Mapping[str, Resource]):
    """The desired resource set with resolved variables and outputs."""

    def __init__(
        self,
        resources: Mapping[str, Resource] | None = None,
        outputs: Mapping[str, Output] | None = None,
        variables: Mapping[str, Any] | None = None,
    ) -> None:
        self.resources = dict(resources or {})
        self.outputs = dict(outputs or {})
        self.variables = dict(variables or {})

    def __getitem__(self, address: str) -> Resource:
        return self.resources[address]

    def __iter__(self) -> Iterator[str]:
        return iter(self.resources)

    def __len__(self) -> int:
        return len(self.resources)

    def managed(self) -> list[Resource]:
        return [r for r in self.resources.values() if not r.is_data]

    def data_sources(self) -> list[Resource]:
        return [r for r in self.resources.values() if r.is_data]

    def __repr__(self) -> str:
        return (
            f"Model(resources={len(self.managed())}, data={len(self.data_sources())}, "
            f"outputs={len(self.outputs)})"
        )
