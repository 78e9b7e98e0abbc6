"""Output extractor — evaluate declared outputs against final resource values."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from .executor import ActionStatus
from .model import Output
from .refs import UNKNOWN, RefKind, contains_unknown, iter_references
from .resolve import Resolver

logger = logging.getLogger(__name__)

SENSITIVE_PLACEHOLDER = "(sensitive value)"


class _Unavailable:
    """Marker for an output whose resource failed, was skipped, or never existed."""

    _instance: _Unavailable | None = None

    def __new__(cls) -> _Unavailable:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(unavailable)"

    def __bool__(self) -> bool:
        return False


UNAVAILABLE: Any = _Unavailable()


@dataclass
class OutputValues:
    """Resolved outputs, with sensitive values kept in their own channel."""

    values: dict[str, Any] = field(default_factory=dict)
    sensitive: dict[str, Any] = field(default_factory=dict)

    def __getitem__(self, name: str) -> Any:
        if name in self.values:
            return self.values[name]
        return self.sensitive[name]

    def __contains__(self, name: object) -> bool:
        return name in self.values or name in self.sensitive

    def __len__(self) -> int:
        return len(self.values) + len(self.sensitive)

    def is_sensitive(self, name: str) -> bool:
        return name in self.sensitive

    def available(self) -> dict[str, Any]:
        """Every output with a value, sensitive ones included."""
        merged = {**self.values, **self.sensitive}
        return {k: v for k, v in merged.items() if v is not UNAVAILABLE}

    def summary(self, *, show_sensitive: bool = False) -> dict[str, Any]:
        """Human-readable view; sensitive values are masked unless requested."""
        shown = dict(self.values)
        for name, value in self.sensitive.items():
            if show_sensitive or value is UNAVAILABLE:
                shown[name] = value
            else:
                shown[name] = SENSITIVE_PLACEHOLDER
        return shown


def extract_outputs(
    outputs: Mapping[str, Output],
    values: Mapping[str, Any],
    statuses: Mapping[str, ActionStatus] | None = None,
) -> OutputValues:
    """Evaluate outputs against final values.

    ``values`` maps resource addresses to attribute mappings. ``statuses``
    holds the final action status per address from the last run; any output
    touching a resource that did not complete resolves to UNAVAILABLE.
    """
    statuses = statuses or {}
    result = OutputValues()
    resolver = Resolver(values=values)

    for name, output in outputs.items():
        channel = result.sensitive if output.sensitive else result.values
        missing = [
            ref.address
            for ref in iter_references(output.value)
            if ref.kind is not RefKind.VAR
            and (
                statuses.get(ref.address, ActionStatus.COMPLETED) is not ActionStatus.COMPLETED
                or values.get(ref.address, UNKNOWN) is UNKNOWN
            )
        ]
        if missing:
            logger.warning("Output '%s' is unavailable; %s did not complete", name, ", ".join(missing))
            channel[name] = UNAVAILABLE
            continue

        value = resolver.resolve(output.value)
        channel[name] = UNAVAILABLE if contains_unknown(value) else value

    return result
