"""Dependency graph builder — edges from references, cycle detection, stable ordering."""

from __future__ import annotations

import heapq
import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from enum import Enum

from .errors import CyclicDependencyError, InvalidReferenceError
from .model import Model

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Edge:
    """A dependency: ``source`` cannot be created before ``target``."""

    source: str
    target: str


class _Color(Enum):
    WHITE = 0
    GRAY = 1
    BLACK = 2


class Graph:
    """A directed dependency graph of addresses.

    Nodes keep a declaration index used to break ties in topological order,
    so unchanged input always yields the same ordering.
    """

    def __init__(self) -> None:
        self._nodes: dict[str, int] = {}
        self._deps: dict[str, dict[str, None]] = {}
        self._rdeps: dict[str, dict[str, None]] = {}

    def add_node(self, address: str, index: int | None = None) -> None:
        if address in self._nodes:
            return
        self._nodes[address] = len(self._nodes) if index is None else index
        self._deps[address] = {}
        self._rdeps[address] = {}

    def add_edge(self, source: str, target: str) -> None:
        """Record that ``source`` depends on ``target``."""
        for address in (source, target):
            if address not in self._nodes:
                raise KeyError(address)
        self._deps[source][target] = None
        self._rdeps[target][source] = None

    def __contains__(self, address: object) -> bool:
        return address in self._nodes

    def __iter__(self) -> Iterator[str]:
        return iter(self._nodes)

    def __len__(self) -> int:
        return len(self._nodes)

    @property
    def edges(self) -> list[Edge]:
        return [Edge(src, dst) for src, deps in self._deps.items() for dst in deps]

    def index(self, address: str) -> int:
        return self._nodes[address]

    def dependencies(self, address: str) -> list[str]:
        return list(self._deps[address])

    def dependents(self, address: str) -> list[str]:
        return list(self._rdeps[address])

    def find_cycle(self) -> list[str] | None:
        """Depth-first search with visiting/visited marks; return a cycle path or None."""
        color = dict.fromkeys(self._nodes, _Color.WHITE)
        stack: list[str] = []

        def visit(node: str) -> list[str] | None:
            color[node] = _Color.GRAY
            stack.append(node)
            for dep in self._deps[node]:
                if color[dep] is _Color.GRAY:
                    return stack[stack.index(dep) :] + [dep]
                if color[dep] is _Color.WHITE:
                    cycle = visit(dep)
                    if cycle:
                        return cycle
            stack.pop()
            color[node] = _Color.BLACK
            return None

        for node in sorted(self._nodes, key=self._nodes.__getitem__):
            if color[node] is _Color.WHITE:
                cycle = visit(node)
                if cycle:
                    return cycle
        return None

    def check_acyclic(self) -> None:
        cycle = self.find_cycle()
        if cycle:
            raise CyclicDependencyError(cycle)

    def topological_order(self) -> list[str]:
        """Kahn's algorithm; ready nodes are taken in declaration order."""
        remaining = {node: len(deps) for node, deps in self._deps.items()}
        ready = [(self._nodes[n], n) for n, count in remaining.items() if count == 0]
        heapq.heapify(ready)

        order: list[str] = []
        while ready:
            _, node = heapq.heappop(ready)
            order.append(node)
            for dependent in self._rdeps[node]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, (self._nodes[dependent], dependent))

        if len(order) != len(self._nodes):
            self.check_acyclic()
        return order

    def reverse_topological_order(self) -> list[str]:
        """Dependents before dependencies; the exact reverse of topological_order()."""
        return list(reversed(self.topological_order()))

    def subgraph(self, addresses: Iterable[str]) -> Graph:
        """Graph restricted to ``addresses``, keeping edges between them."""
        keep = set(addresses)
        sub = Graph()
        for node, index in self._nodes.items():
            if node in keep:
                sub.add_node(node, index)
        for edge in self.edges:
            if edge.source in keep and edge.target in keep:
                sub.add_edge(edge.source, edge.target)
        return sub

    def __repr__(self) -> str:
        return f"Graph(nodes={len(self._nodes)}, edges={len(self.edges)})"


def build_graph(model: Model) -> Graph:
    """Derive the dependency graph from every resource's references.

    Raises InvalidReferenceError for references to undeclared resources and
    CyclicDependencyError if the references form a cycle.
    """
    graph = Graph()
    for resource in model.values():
        graph.add_node(resource.address, resource.index)

    for resource in model.values():
        for target in resource.dependencies():
            if target not in graph:
                raise InvalidReferenceError(
                    f"'{resource.address}' references undeclared resource '{target}'"
                )
            logger.debug("Edge %s -> %s", resource.address, target)
            graph.add_edge(resource.address, target)

    graph.check_acyclic()
    logger.debug("Built %r", graph)
    return graph
