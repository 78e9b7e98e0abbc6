"""Error taxonomy for configuration, provider, state and cancellation failures."""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .executor import ApplyResult


class TerrikError(Exception):
    """Base class for all terrik errors."""


# -- Configuration errors (fatal, raised before any provider call) --


class ConfigurationError(TerrikError, ValueError):
    """The declarations cannot be turned into a valid plan."""


class DuplicateResourceError(ConfigurationError):
    """Two declarations share the same (type, name) identity."""

    def __init__(self, address: str) -> None:
        super().__init__(f"Duplicate resource: '{address}'")
        self.address = address


class DuplicateAttributeError(ConfigurationError):
    """A single declaration defines the same attribute more than once."""

    def __init__(self, address: str, attribute: str) -> None:
        super().__init__(f"Attribute '{attribute}' is defined more than once in '{address}'")
        self.address = address
        self.attribute = attribute


class UndefinedVariableError(ConfigurationError):
    """A variable is referenced but has no declaration or no value."""

    def __init__(self, name: str, detail: str = "is not declared") -> None:
        super().__init__(f"Variable '{name}' {detail}")
        self.name = name


class VariableTypeError(ConfigurationError):
    """A variable value does not match its declared type."""


class UnknownResourceTypeError(ConfigurationError):
    """A declaration names a resource type with no registered schema."""

    def __init__(self, type_name: str) -> None:
        super().__init__(f"Unknown resource type: '{type_name}'")
        self.type_name = type_name


class InvalidReferenceError(ConfigurationError):
    """A ${...} expression is malformed, unsupported or points nowhere."""


class CyclicDependencyError(ConfigurationError):
    """The dependency graph contains a cycle."""

    def __init__(self, cycle: Iterable[str]) -> None:
        self.cycle = list(cycle)
        super().__init__(f"Cyclic dependency: {' -> '.join(self.cycle)}")


# -- Runtime errors --


class ProviderError(TerrikError):
    """A provider call for a single resource failed."""

    def __init__(self, message: str, address: str | None = None) -> None:
        super().__init__(message)
        self.address = address


class StateCorruptionError(TerrikError):
    """The persisted state is unreadable or inconsistent."""


class CancellationError(TerrikError):
    """The run was cancelled before all actions completed."""

    def __init__(self, message: str = "Run cancelled", result: ApplyResult | None = None) -> None:
        super().__init__(message)
        self.result = result


class ApplyError(TerrikError):
    """One or more actions failed during apply."""

    def __init__(self, result: ApplyResult) -> None:
        failed = ", ".join(r.address for r in result.failed)
        super().__init__(f"Apply failed for: {failed}")
        self.result = result
