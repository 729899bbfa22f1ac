"""
Dependency graph construction and traversal.

Turns a resolved dependency description (packages plus the packages they
directly depend on) into a deduplicated, acyclic graph of package identities.
No version solving happens here: the description is already resolved.
"""

from dataclasses import dataclass, field
from typing import (
    Any,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Sequence,
    Set,
    Tuple,
    Union,
)

from .error_handling import MalformedGraphError
from .package import DependencyKind, PackageIdentity, SourceKind
from .structured_logging import log_graph_built


@dataclass(frozen=True)
class ResolvedDependency:
    """A direct dependency reference of a resolved package."""

    identity: PackageIdentity
    kind: DependencyKind = DependencyKind.NORMAL


@dataclass(frozen=True)
class ResolvedPackage:
    """A resolved package and its direct dependencies."""

    identity: PackageIdentity
    dependencies: Tuple[ResolvedDependency, ...] = field(default_factory=tuple)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResolvedPackage":
        """
        Build from ``{"name", "version", "source", "dependencies": [...]}``.

        Each dependency entry is an identity dict with an optional ``kind``.
        """
        dependencies = []
        for entry in data.get("dependencies") or []:
            dependencies.append(
                ResolvedDependency(
                    identity=PackageIdentity.from_dict(entry),
                    kind=DependencyKind.parse(entry.get("kind")),
                )
            )
        return cls(
            identity=PackageIdentity.from_dict(data), dependencies=tuple(dependencies)
        )


@dataclass(frozen=True)
class Edge:
    """A labelled "depends on" edge."""

    target: PackageIdentity
    kind: DependencyKind


class DependencyGraph:
    """
    Read-only directed acyclic graph over package identities.

    Nodes and each node's outgoing edges keep insertion order, which makes
    every traversal deterministic.
    """

    def __init__(
        self,
        adjacency: Dict[PackageIdentity, Tuple[Edge, ...]],
    ):
        self._adjacency = dict(adjacency)
        incoming: Dict[PackageIdentity, List[PackageIdentity]] = {
            node: [] for node in self._adjacency
        }
        for parent, edges in self._adjacency.items():
            for edge in edges:
                if parent not in incoming[edge.target]:
                    incoming[edge.target].append(parent)
        self._incoming = {node: tuple(parents) for node, parents in incoming.items()}

    def __contains__(self, identity: object) -> bool:
        return identity in self._adjacency

    def __len__(self) -> int:
        return len(self._adjacency)

    def __iter__(self) -> Iterator[PackageIdentity]:
        return iter(self._adjacency)

    @property
    def nodes(self) -> List[PackageIdentity]:
        return list(self._adjacency)

    @property
    def edge_count(self) -> int:
        return sum(len(edges) for edges in self._adjacency.values())

    def dependencies(
        self,
        identity: PackageIdentity,
        kinds: Optional[Iterable[DependencyKind]] = None,
    ) -> List[PackageIdentity]:
        """Direct dependencies of ``identity``, optionally filtered by kind."""
        allowed = set(kinds) if kinds is not None else None
        targets: List[PackageIdentity] = []
        for edge in self._adjacency[identity]:
            if allowed is not None and edge.kind not in allowed:
                continue
            if edge.target not in targets:
                targets.append(edge.target)
        return targets

    def dependents(self, identity: PackageIdentity) -> Tuple[PackageIdentity, ...]:
        """Packages that directly depend on ``identity``."""
        return self._incoming[identity]

    def roots(self) -> List[PackageIdentity]:
        """Packages nothing else depends on."""
        return [node for node in self._adjacency if not self._incoming[node]]

    def local_packages(self) -> List[PackageIdentity]:
        return [node for node in self._adjacency if node.source_kind == SourceKind.LOCAL]

    def find(self, name: str, version: Optional[str] = None) -> List[PackageIdentity]:
        """Look up identities by name and optional version."""
        return [
            node
            for node in self._adjacency
            if node.name == name and (version is None or node.version == version)
        ]

    def walk(
        self,
        root: PackageIdentity,
        kinds: Optional[Iterable[DependencyKind]] = None,
    ) -> List[PackageIdentity]:
        """
        Depth-first preorder of every node reachable from ``root``.

        Each distinct node appears once, however many paths reach it.
        Children are visited in edge-insertion order.
        """
        allowed = list(kinds) if kinds is not None else None
        visited: Set[PackageIdentity] = set()
        order: List[PackageIdentity] = []
        stack = [root]

        while stack:
            node = stack.pop()
            if node in visited:
                continue
            visited.add(node)
            order.append(node)
            children = self.dependencies(node, allowed)
            stack.extend(
                child for child in reversed(children) if child not in visited
            )

        return order


def _find_cycle(
    adjacency: Dict[PackageIdentity, Tuple[Edge, ...]],
) -> Optional[List[PackageIdentity]]:
    """Return one cycle as a node path, or None if the graph is acyclic."""
    WHITE, GREY, BLACK = 0, 1, 2
    color = {node: WHITE for node in adjacency}

    for start in adjacency:
        if color[start] != WHITE:
            continue
        path: List[PackageIdentity] = [start]
        iterators = [iter(adjacency[start])]
        color[start] = GREY

        while iterators:
            edge = next(iterators[-1], None)
            if edge is None:
                color[path.pop()] = BLACK
                iterators.pop()
                continue
            target = edge.target
            if color[target] == GREY:
                return path[path.index(target):] + [target]
            if color[target] == WHITE:
                color[target] = GREY
                path.append(target)
                iterators.append(iter(adjacency[target]))

    return None


def build(
    resolved_packages: Iterable[Union[ResolvedPackage, Dict[str, Any]]],
) -> DependencyGraph:
    """
    Build a deduplicated dependency graph.

    A package listed more than once is stored once, with the union of its
    edges in first-seen order.

    Raises:
        MalformedGraphError: If an edge points at an unknown package or the
            description contains a cycle
    """
    adjacency: Dict[PackageIdentity, List[Edge]] = {}

    for package in resolved_packages:
        if isinstance(package, dict):
            try:
                package = ResolvedPackage.from_dict(package)
            except ValueError as e:
                raise MalformedGraphError(f"Invalid package entry: {e}") from e

        edges = adjacency.setdefault(package.identity, [])
        for dependency in package.dependencies:
            edge = Edge(dependency.identity, dependency.kind)
            if edge not in edges:
                edges.append(edge)

    for parent, edges in adjacency.items():
        for edge in edges:
            if edge.target not in adjacency:
                raise MalformedGraphError(
                    f"{parent} depends on {edge.target} "
                    f"({edge.target.source}), which is not in the package set"
                )

    frozen = {node: tuple(edges) for node, edges in adjacency.items()}
    cycle = _find_cycle(frozen)
    if cycle:
        raise MalformedGraphError(
            "Dependency cycle detected: " + " -> ".join(str(node) for node in cycle)
        )

    graph = DependencyGraph(frozen)
    log_graph_built(len(graph), graph.edge_count, len(graph.roots()))
    return graph


def parse_kinds(values: Sequence[str]) -> List[DependencyKind]:
    """Parse dependency kind names, e.g. from configuration."""
    return [DependencyKind.parse(value) for value in values]
