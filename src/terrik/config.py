"""Configuration — accumulates parsed declaration blocks and builds the Model."""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from .errors import ConfigurationError, DuplicateResourceError
from .model import Declaration, Mode, Model, Output, build_resources
from .refs import parse_value
from .resolve import Resolver
from .variables import Variable, resolve_variables

M = TypeVar("M", bound=BaseModel)

logger = logging.getLogger(__name__)

_IGNORED_BLOCKS = frozenset({"provider", "terraform"})
_KNOWN_BLOCKS = frozenset({"variable", "resource", "data", "output"}) | _IGNORED_BLOCKS


class Configuration:
    """A mutable collection of declarations that resolves into a Model."""

    def __init__(self) -> None:
        self._variables: dict[str, Variable] = {}
        self._declarations: dict[str, Declaration] = {}
        self._outputs: dict[str, dict[str, Any]] = {}

    @property
    def variables(self) -> dict[str, Variable]:
        return self._variables

    @property
    def declarations(self) -> list[Declaration]:
        return list(self._declarations.values())

    def add(self, item: Declaration | Variable | Output) -> None:
        """Register a declaration, variable or output."""
        if isinstance(item, Declaration):
            if item.address in self._declarations:
                raise DuplicateResourceError(item.address)
            logger.debug("Found %s '%s'", item.mode.value, item.address)
            self._declarations[item.address] = item
        elif isinstance(item, Variable):
            if item.name in self._variables:
                raise ConfigurationError(f"Duplicate variable: '{item.name}'")
            self._variables[item.name] = item
        elif isinstance(item, Output):
            self._add_output(item.name, dict(item))
        else:
            raise TypeError(f"Unsupported configuration item: {type(item).__name__}")

    def _add_output(self, name: str, data: dict[str, Any]) -> None:
        if name in self._outputs:
            raise ConfigurationError(f"Duplicate output: '{name}'")
        self._outputs[name] = data

    def load(self, data: dict[str, Any]) -> None:
        """Extract variable, resource, data and output blocks from a parsed dict.

        Parsed structure (one list entry per block):
            {"resource": [{"aws_vpc": {"main": {"cidr_block": "10.0.0.0/16"}}}], ...}
        """
        for block_name in data:
            if block_name in _IGNORED_BLOCKS:
                logger.debug("Ignoring '%s' block", block_name)
            elif block_name not in _KNOWN_BLOCKS:
                logger.warning("Ignoring unsupported block '%s'", block_name)

        for var_block in data.get("variable", []):
            for var_name, var_data in var_block.items():
                self.add(_validated(Variable, "variable", var_name, var_data or {}))

        for mode, block_name in ((Mode.MANAGED, "resource"), (Mode.DATA, "data")):
            for block in data.get(block_name, []):
                for type_name, named in block.items():
                    for res_name, attrs in named.items():
                        self.add(Declaration(type_name, res_name, dict(attrs or {}), mode))

        for out_block in data.get("output", []):
            for out_name, out_data in out_block.items():
                self._add_output(out_name, {"name": out_name, **(out_data or {})})

    def resolve(
        self,
        overrides: Mapping[str, Any] | None = None,
        *,
        environ: Mapping[str, str] | None = None,
    ) -> Model:
        """Resolve variables and build the desired Model."""
        logger.debug(
            "Resolving %d variable(s), %d declaration(s) and %d output(s)",
            len(self._variables),
            len(self._declarations),
            len(self._outputs),
        )
        values = resolve_variables(self._variables, overrides, environ=environ)
        resources = build_resources(self._declarations.values(), values)

        resolver = Resolver(values, partial=True)
        outputs: dict[str, Output] = {}
        for name, data in self._outputs.items():
            data = dict(data)
            data["value"] = resolver.resolve(parse_value(data.get("value")))
            outputs[name] = _validated(Output, "output", name, data)

        return Model(resources, outputs, values)

    def __contains__(self, address: object) -> bool:
        return address in self._declarations

    def __iter__(self) -> Iterator[str]:
        return iter(self._declarations)

    def __len__(self) -> int:
        return len(self._declarations)

    def __repr__(self) -> str:
        return (
            f"Configuration(variables={len(self._variables)}, "
            f"declarations={len(self._declarations)}, outputs={len(self._outputs)})"
        )


def _validated(model: type[M], kind: str, name: str, data: Mapping[str, Any]) -> M:
    """Build a block model, reporting field errors as a ConfigurationError."""
    try:
        return model(**{**data, "name": name})
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(loc) for loc in err['loc']) or 'block'}: {err['msg']}"
            for err in exc.errors()
        )
        raise ConfigurationError(f"Invalid {kind} '{name}': {problems}") from exc
