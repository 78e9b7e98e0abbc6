"""Input variables — declared once, resolved before graph construction."""

from __future__ import annotations

import json
import logging
import os
import re
from collections.abc import Mapping
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator

from .errors import UndefinedVariableError, VariableTypeError

logger = logging.getLogger(__name__)

ENV_PREFIX = "TERRIK_VAR_"

_TYPE_PATTERN = re.compile(r"^\$?\{?\s*(\w+)")


class VariableType(StrEnum):
    STRING = "string"
    NUMBER = "number"
    BOOL = "bool"
    LIST = "list"
    MAP = "map"
    ANY = "any"


_TYPE_ALIASES = {
    "set": VariableType.LIST,
    "tuple": VariableType.LIST,
    "object": VariableType.MAP,
}


class Variable(BaseModel):
    """A named input with an optional default and a declared type."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: VariableType = VariableType.ANY
    default: Any = None
    description: str = ""
    sensitive: bool = False

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> Any:
        # HCL type constraints arrive as "${string}" or "list(string)"
        if isinstance(value, str):
            match = _TYPE_PATTERN.match(value.strip())
            if match:
                base = match.group(1)
                return _TYPE_ALIASES.get(base, base)
        return value

    @property
    def has_default(self) -> bool:
        return "default" in self.model_fields_set

    def coerce(self, value: Any) -> Any:
        """Convert a raw value (often a CLI string) to this variable's type."""
        try:
            return _COERCERS[self.type](value)
        except (TypeError, ValueError) as exc:
            raise VariableTypeError(
                f"Variable '{self.name}' expects {self.type.value}, got {value!r}"
            ) from exc


def _to_string(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str | int | float):
        return str(value)
    raise TypeError(type(value).__name__)


def _to_number(value: Any) -> int | float:
    if isinstance(value, bool):
        raise TypeError("bool")
    if isinstance(value, int | float):
        return value
    text = str(value).strip()
    try:
        return int(text)
    except ValueError:
        return float(text)


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("true", "1", "yes"):
        return True
    if text in ("false", "0", "no"):
        return False
    raise ValueError(text)


def _from_json(expected: type) -> Any:
    def convert(value: Any) -> Any:
        if isinstance(value, str):
            value = json.loads(value)
        if not isinstance(value, expected):
            raise TypeError(type(value).__name__)
        return value

    return convert


def _passthrough(value: Any) -> Any:
    return value


_COERCERS = {
    VariableType.STRING: _to_string,
    VariableType.NUMBER: _to_number,
    VariableType.BOOL: _to_bool,
    VariableType.LIST: _from_json(list),
    VariableType.MAP: _from_json(dict),
    VariableType.ANY: _passthrough,
}


def parse_overrides(pairs: list[str] | tuple[str, ...]) -> dict[str, str]:
    """Parse 'key=value' pairs into a dict."""
    overrides: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise VariableTypeError(f"Invalid variable override '{pair}'; expected key=value")
        overrides[key.strip()] = value
    return overrides


def env_overrides(environ: Mapping[str, str] | None = None) -> dict[str, str]:
    """Collect TERRIK_VAR_<name> values from the environment."""
    environ = os.environ if environ is None else environ
    return {k[len(ENV_PREFIX) :]: v for k, v in environ.items() if k.startswith(ENV_PREFIX)}


def resolve_variables(
    declared: Mapping[str, Variable],
    overrides: Mapping[str, Any] | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Resolve every declared variable to its final, typed value.

    Precedence: explicit overrides, then TERRIK_VAR_* environment values,
    then declared defaults. Explicit overrides for undeclared variables are
    rejected; stray environment values are ignored.
    """
    overrides = dict(overrides or {})
    from_env = env_overrides(environ)

    for name in overrides:
        if name not in declared:
            raise UndefinedVariableError(name, "is set but not declared")

    values: dict[str, Any] = {}
    for name, var in declared.items():
        if name in overrides:
            values[name] = var.coerce(overrides[name])
        elif name in from_env:
            logger.debug("Variable '%s' set from environment", name)
            values[name] = var.coerce(from_env[name])
        elif var.has_default:
            values[name] = var.default if var.default is None else var.coerce(var.default)
        else:
            raise UndefinedVariableError(name, "has no value and no default")

    logger.debug("Resolved %d variable(s)", len(values))
    return values
