"""Resolver — substitute variables and resource attributes into tagged values."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from .errors import InvalidReferenceError, UndefinedVariableError
from .refs import UNKNOWN, RefKind, Reference, map_references

logger = logging.getLogger(__name__)


class Resolver:
    """Resolve References against variables and known resource values.

    ``values`` maps an address ('aws_vpc.main', 'data.aws_ami.ubuntu') to
    that object's attribute mapping, or to UNKNOWN when the whole object
    is only known after apply. With ``partial=True``, references to
    addresses missing from ``values`` are left in place instead of raising.
    """

    def __init__(
        self,
        variables: Mapping[str, Any] | None = None,
        values: Mapping[str, Any] | None = None,
        *,
        partial: bool = False,
    ) -> None:
        self._variables = variables or {}
        self._values = values or {}
        self._partial = partial

    def _walk_path(self, ref: Reference, current: Any, path: tuple[str, ...]) -> Any:
        for part in path:
            if current is UNKNOWN:
                return UNKNOWN
            try:
                if isinstance(current, list):
                    current = current[int(part)]
                else:
                    current = current[part]
            except (KeyError, IndexError, TypeError, ValueError):
                raise InvalidReferenceError(f"{ref} has no element '{part}'") from None
        return current

    def _resolve_ref(self, ref: Reference) -> Any:
        if ref.kind is RefKind.VAR:
            if ref.name not in self._variables:
                raise UndefinedVariableError(ref.name)
            return self._walk_path(ref, self._variables[ref.name], ref.path)

        if ref.address not in self._values:
            if self._partial:
                return ref
            raise InvalidReferenceError(f"Reference to undeclared resource: {ref}")

        obj = self._values[ref.address]
        if obj is UNKNOWN:
            return UNKNOWN

        attribute = ref.attribute or "id"
        if attribute not in obj:
            raise InvalidReferenceError(f"{ref}: '{ref.address}' has no attribute '{attribute}'")
        return self._walk_path(ref, obj[attribute], ref.path)

    def resolve(self, value: Any) -> Any:
        """Return a copy of value with every resolvable reference substituted."""
        return map_references(value, self._resolve_ref)

    def resolve_attrs(self, attrs: Mapping[str, Any]) -> dict[str, Any]:
        """Resolve each attribute of a resource."""
        return {k: self.resolve(v) for k, v in attrs.items()}
