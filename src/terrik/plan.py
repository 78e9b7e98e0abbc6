"""Planner — diff the desired resources against recorded state into ordered actions."""

from __future__ import annotations

import heapq
import logging
from collections.abc import Iterator, Mapping
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .context import Context
from .errors import StateCorruptionError
from .graph import Graph
from .model import Model, Resource
from .provider import Provider
from .refs import UNKNOWN, contains_unknown
from .resolve import Resolver
from .state import StateEntry, Status

logger = logging.getLogger(__name__)


class ActionKind(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DESTROY = "destroy"
    NOOP = "noop"


class Phase(StrEnum):
    APPLY = "apply"
    DESTROY = "destroy"


class Action(BaseModel):
    """A single step against one resource.

    A ``replace`` appears as two actions: a destroy-phase step for the old
    object followed by an apply-phase step creating the new one.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    address: str
    kind: ActionKind
    phase: Phase = Phase.APPLY
    changed: frozenset[str] = frozenset()
    resource: Resource | None = None
    prior: StateEntry | None = None
    reason: str = ""

    @property
    def key(self) -> str:
        return f"{self.phase.value}:{self.address}"

    @property
    def creates(self) -> bool:
        """True if this step asks the provider for a new object."""
        return self.phase is Phase.APPLY and self.kind in (ActionKind.CREATE, ActionKind.REPLACE)

    def describe(self) -> str:
        if self.kind is ActionKind.REPLACE:
            step = "destroy old" if self.phase is Phase.DESTROY else "create new"
            return f"{self.address}: replace ({step})"
        return f"{self.address}: {self.kind.value}"


class Plan(BaseModel):
    """An ordered sequence of actions plus the ordering constraints between them.

    ``requires`` maps each action key to the keys that must finish first.
    ``lookups`` holds values read for data sources while planning.
    ``stale`` lists recorded addresses with no live object that are no
    longer declared; applying the plan drops them from state.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    actions: list[Action] = Field(default_factory=list)
    requires: dict[str, frozenset[str]] = Field(default_factory=dict)
    lookups: dict[str, Any] = Field(default_factory=dict)
    stale: list[str] = Field(default_factory=list)
    destroy: bool = False

    def __iter__(self) -> Iterator[Action]:  # type: ignore[override]
        return iter(self.actions)

    def __len__(self) -> int:
        return len(self.actions)

    def for_address(self, address: str) -> list[Action]:
        return [a for a in self.actions if a.address == address]

    def kind_of(self, address: str) -> ActionKind | None:
        found = self.for_address(address)
        return found[0].kind if found else None

    def position(self, address: str, phase: Phase = Phase.APPLY) -> int:
        """Index of the action for ``address`` in the given phase."""
        key = f"{phase.value}:{address}"
        for i, action in enumerate(self.actions):
            if action.key == key:
                return i
        raise KeyError(key)

    @property
    def changes(self) -> list[Action]:
        return [a for a in self.actions if a.kind is not ActionKind.NOOP]

    @property
    def has_changes(self) -> bool:
        return bool(self.changes)

    def summary(self) -> dict[str, int]:
        counts = dict.fromkeys(("to_add", "to_change", "to_replace", "to_destroy", "unchanged"), 0)
        for action in self.actions:
            if action.kind is ActionKind.CREATE:
                counts["to_add"] += 1
            elif action.kind is ActionKind.UPDATE:
                counts["to_change"] += 1
            elif action.kind is ActionKind.DESTROY:
                counts["to_destroy"] += 1
            elif action.kind is ActionKind.NOOP:
                counts["unchanged"] += 1
            elif action.phase is Phase.APPLY:
                counts["to_replace"] += 1
                counts["to_add"] += 1
            else:
                counts["to_destroy"] += 1
        return counts


def diff_attributes(desired: Mapping[str, Any], prior: Mapping[str, Any]) -> set[str]:
    """Names of attributes whose desired value differs from (or is unknown vs) prior."""
    changed: set[str] = set()
    for attr in desired.keys() | prior.keys():
        value = desired.get(attr)
        if contains_unknown(value) or value != prior.get(attr):
            changed.add(attr)
    return changed


def state_graph(entries: Mapping[str, StateEntry]) -> Graph:
    """Dependency graph of recorded resources, from their stored dependencies."""
    graph = Graph()
    for entry in sorted(entries.values(), key=lambda e: e.index):
        graph.add_node(entry.address, entry.index)
    for entry in entries.values():
        for dep in entry.dependencies:
            if dep in graph:
                graph.add_edge(entry.address, dep)
    cycle = graph.find_cycle()
    if cycle:
        raise StateCorruptionError(f"Recorded dependencies form a cycle: {' -> '.join(cycle)}")
    return graph


class Planner:
    """Compute a Plan from the desired Model, its Graph and a state snapshot.

    Planning never writes state. Data sources are read through the provider
    (a side-effect free lookup) so their values are known while diffing.
    """

    def __init__(
        self,
        model: Model,
        graph: Graph,
        state: Mapping[str, StateEntry],
        *,
        provider: Provider | None = None,
        ctx: Context | None = None,
    ) -> None:
        self.model = model
        self.graph = graph
        self.state = dict(state)
        self.provider = provider
        self.ctx = ctx if ctx is not None or provider is None else Context(provider)

    def plan(self, *, destroy: bool = False) -> Plan:
        """Build the plan; ``destroy=True`` plans against an empty desired set."""
        existing = {a: e for a, e in self.state.items() if e.exists}
        managed = [] if destroy else self.model.managed()
        lookups = {} if destroy else self._read_data_sources()

        values: dict[str, Any] = dict(lookups)
        actions: dict[str, Action] = {}

        desired_graph = self.graph.subgraph(r.address for r in managed)
        desired_order = desired_graph.topological_order()
        for address in desired_order:
            resource = self.model[address]
            applied, expected = self._plan_resource(resource, existing.get(address), values)
            values[address] = expected
            if applied.kind is ActionKind.REPLACE:
                prior_step = applied.model_copy(update={"phase": Phase.DESTROY})
                actions[prior_step.key] = prior_step
            actions[applied.key] = applied
            logger.debug("Planned %s", applied.describe())

        for address, entry in existing.items():
            if address not in desired_graph:
                step = Action(address=address, kind=ActionKind.DESTROY, phase=Phase.DESTROY, prior=entry)
                actions[step.key] = step
                logger.debug("Planned %s", step.describe())

        recorded = state_graph(existing)
        requires = self._requirements(actions, desired_graph, recorded)
        ordered = self._order(actions, requires, desired_order, recorded.reverse_topological_order())

        # entries that never got an object and are no longer declared
        stale = [
            address
            for address, entry in self.state.items()
            if entry.provider_id is None
            and entry.status is not Status.DESTROYED
            and address not in desired_graph
        ]
        plan = Plan(
            actions=ordered,
            requires=requires,
            lookups=lookups,
            stale=stale,
            destroy=destroy,
        )
        logger.info(
            "Plan: %(to_add)d to add, %(to_change)d to change, %(to_destroy)d to destroy",
            plan.summary(),
        )
        return plan

    def _read_data_sources(self) -> dict[str, Any]:
        lookups: dict[str, Any] = {}
        for address in self.graph.topological_order():
            resource = self.model[address]
            if not resource.is_data:
                continue
            if self.provider is None:
                lookups[address] = UNKNOWN
                continue
            attrs = Resolver(values=lookups).resolve_attrs(resource.attrs)
            if contains_unknown(attrs):
                lookups[address] = UNKNOWN
                continue
            logger.debug("Reading data source %s", address)
            result = self.provider.read(resource.model_copy(update={"attrs": attrs}), self.ctx)
            lookups[address] = {**attrs, **result}
        return lookups

    def _plan_resource(
        self,
        resource: Resource,
        entry: StateEntry | None,
        values: Mapping[str, Any],
    ) -> tuple[Action, dict[str, Any]]:
        """Decide the action kind for one resource and its expected values after apply."""
        desired = Resolver(values=values).resolve_attrs(resource.attrs)
        schema = resource.schema
        fields: dict[str, Any] = {"address": resource.address, "resource": resource, "prior": entry}

        if entry is None:
            action = Action(kind=ActionKind.CREATE, changed=frozenset(desired), **fields)
        elif entry.tainted:
            action = Action(kind=ActionKind.REPLACE, reason=f"previous apply {entry.status.value}", **fields)
        else:
            changed = diff_attributes(desired, entry.attributes)
            forced = schema.replacement_attrs(changed)
            if not changed:
                action = Action(kind=ActionKind.NOOP, **fields)
            elif forced:
                reason = ", ".join(sorted(forced)) + " forces replacement"
                action = Action(kind=ActionKind.REPLACE, changed=frozenset(changed), reason=reason, **fields)
            else:
                action = Action(kind=ActionKind.UPDATE, changed=frozenset(changed), **fields)

        if action.kind is ActionKind.NOOP:
            expected = entry.values()
        elif action.kind is ActionKind.UPDATE:
            expected = {**entry.values(), **desired}
        else:
            expected = {attr: UNKNOWN for attr in schema.computed}
            expected.update(desired)
        return action, expected

    def _requirements(
        self,
        actions: Mapping[str, Action],
        desired: Graph,
        recorded: Graph,
    ) -> dict[str, frozenset[str]]:
        requires: dict[str, set[str]] = {key: set() for key in actions}

        def apply_key(address: str) -> str:
            return f"{Phase.APPLY.value}:{address}"

        def destroy_key(address: str) -> str:
            return f"{Phase.DESTROY.value}:{address}"

        for key, action in actions.items():
            if action.phase is Phase.APPLY:
                # dependencies first; a replaced resource's old object goes first
                for dep in desired.dependencies(action.address):
                    requires[key].add(apply_key(dep))
                if destroy_key(action.address) in actions:
                    requires[key].add(destroy_key(action.address))
            elif action.address in recorded:
                # dependents are torn down before what they attach to
                for dependent in recorded.dependents(action.address):
                    if destroy_key(dependent) in actions:
                        requires[key].add(destroy_key(dependent))

        # a removed resource outlives the update that detaches its former dependents
        for key, action in actions.items():
            if action.kind is not ActionKind.DESTROY or action.address not in recorded:
                continue
            for dependent in recorded.dependents(action.address):
                dep_key = apply_key(dependent)
                if dep_key in actions and not _reaches(requires, dep_key, key):
                    requires[key].add(dep_key)

        return {key: frozenset(deps) for key, deps in requires.items()}

    def _order(
        self,
        actions: Mapping[str, Action],
        requires: Mapping[str, frozenset[str]],
        desired_order: list[str],
        destroy_order: list[str],
    ) -> list[Action]:
        """Kahn's algorithm over action keys.

        Ready destroy steps go first, in reverse recorded order; ready apply
        steps follow in desired topological order.
        """
        apply_rank = {address: i for i, address in enumerate(desired_order)}
        destroy_rank = {address: i for i, address in enumerate(destroy_order)}

        def priority(key: str) -> tuple[int, int, str]:
            action = actions[key]
            if action.phase is Phase.DESTROY:
                return (0, destroy_rank.get(action.address, len(destroy_rank)), key)
            return (1, apply_rank[action.address], key)

        remaining = {key: len(deps) for key, deps in requires.items()}
        dependents: dict[str, list[str]] = {key: [] for key in requires}
        for key, deps in requires.items():
            for dep in deps:
                dependents[dep].append(key)

        ready = [priority(k) for k, count in remaining.items() if count == 0]
        heapq.heapify(ready)
        ordered: list[Action] = []
        while ready:
            *_, key = heapq.heappop(ready)
            ordered.append(actions[key])
            for dependent in dependents[key]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, priority(dependent))

        if len(ordered) != len(actions):
            stuck = sorted(k for k, count in remaining.items() if count > 0)
            raise StateCorruptionError(f"Cannot order actions: {', '.join(stuck)}")
        return ordered


def _reaches(requires: Mapping[str, set[str]], start: str, target: str) -> bool:
    """True if ``start`` transitively requires ``target``."""
    seen: set[str] = set()
    stack = [start]
    while stack:
        key = stack.pop()
        if key == target:
            return True
        if key not in seen:
            seen.add(key)
            stack.extend(requires.get(key, ()))
    return False
