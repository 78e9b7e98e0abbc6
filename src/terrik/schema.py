"""Resource type schemas and registration."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import ClassVar

from .errors import UnknownResourceTypeError

logger = logging.getLogger(__name__)

# -- Type Registry --

_type_registry: dict[str, type[ResourceSchema]] = {}
_data_registry: dict[str, type[ResourceSchema]] = {}


def resource_type(name: str, *, data_source: bool = False):
    """Register a ResourceSchema class for a resource (or data source) type."""

    def decorator(cls):
        cls.type_name = name
        cls.data_source = data_source
        registry = _data_registry if data_source else _type_registry
        registry[name] = cls
        return cls

    return decorator


def get_schema(name: str, *, data_source: bool = False) -> type[ResourceSchema]:
    """Look up a registered schema, raising UnknownResourceTypeError if missing."""
    registry = _data_registry if data_source else _type_registry
    try:
        return registry[name]
    except KeyError:
        raise UnknownResourceTypeError(f"data.{name}" if data_source else name) from None


# -- Schema Base --


class ResourceSchema:
    """Static attribute classification for a resource type.

    Attributes listed in ``force_new`` cannot change in place; a change to
    any of them replaces the resource. Every other configured attribute is
    updatable in place. ``computed`` attributes are assigned by the provider.
    """

    type_name: ClassVar[str] = ""
    data_source: ClassVar[bool] = False
    force_new: ClassVar[frozenset[str]] = frozenset()
    computed: ClassVar[frozenset[str]] = frozenset({"id"})
    id_prefix: ClassVar[str] = "res"

    @classmethod
    def replacement_attrs(cls, changed: Iterable[str]) -> set[str]:
        """Return the subset of changed attributes that force replacement."""
        return {attr for attr in changed if attr in cls.force_new}

    @classmethod
    def requires_replacement(cls, changed: Iterable[str]) -> bool:
        return bool(cls.replacement_attrs(changed))

    @classmethod
    def is_computed(cls, attr: str) -> bool:
        return attr in cls.computed
