"""Dependency graph engine for deferred items.

Provides functions for:
- Graph building from a snapshot of records and relationships
- Cycle detection (prospective edge check and whole-graph scan)
- Resolution order (Kahn's algorithm, ascending-id tie-break)
- Graph queries (direct/transitive blockers, unblocked-by, chains, stats)

Design decisions:
- Only blocking-semantic relationships (blocks, parent-of) are part of the
  graph; informational ones never affect cycles or ordering
- Nodes are plain integer ids; adjacency is kept as id -> set of ids
- Every traversal uses an explicit stack, so long chains cannot hit the
  interpreter's recursion limit
- Residual cycles in stored data degrade results instead of raising
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import asdict, dataclass, field
from typing import Any, NamedTuple

from deferit.models import Record, Relationship

logger = logging.getLogger(__name__)


class GraphError(Exception):
    """Base exception for graph-related errors."""


class CyclicDependencyError(GraphError):
    """Raised when a caller refuses to continue because of a dependency cycle."""

    def __init__(self, path: list[int]) -> None:
        self.path = path
        super().__init__(f"Dependency cycle: {format_path(path)}")


@dataclass
class Graph:
    """Blocking-semantic dependency graph over record ids.

    Attributes:
        nodes: Ids of every record in the snapshot.
        forward: forward[a] = ids that a depends on.
        reverse: reverse[b] = ids that depend on b.
    """

    nodes: set[int] = field(default_factory=set)
    forward: dict[int, set[int]] = field(default_factory=dict)
    reverse: dict[int, set[int]] = field(default_factory=dict)

    def __contains__(self, item_id: object) -> bool:
        return item_id in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def dependencies_of(self, item_id: int) -> set[int]:
        return self.forward.get(item_id, set())

    def dependents_of(self, item_id: int) -> set[int]:
        return self.reverse.get(item_id, set())

    def edge_count(self) -> int:
        return sum(len(targets) for targets in self.forward.values())


class CycleCheck(NamedTuple):
    """Outcome of checking a prospective edge."""

    cyclic: bool
    path: list[int] | None = None


class ResolutionOrder(NamedTuple):
    """Completion order plus any ids that could not actually be resolved."""

    order: list[int]
    unresolved: list[int]

    @property
    def is_complete(self) -> bool:
        return not self.unresolved


class DependencyChain(NamedTuple):
    """Longest dependency path starting at an item.

    ``chain`` starts with the item itself and ends at its deepest
    dependency; ``depth`` is the number of edges along it.
    """

    item_id: int
    depth: int
    chain: list[int]


@dataclass(frozen=True)
class GraphStats:
    total_items: int = 0
    items_with_dependencies: int = 0
    blocked_items: int = 0
    max_depth: int = 0
    has_cycles: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def format_path(path: Iterable[int]) -> str:
    """Render an id path for display, e.g. ``1 -> 2 -> 3 -> 1``."""
    return " -> ".join(str(item_id) for item_id in path)


# Graph Building


def build_graph(records: Iterable[Record], edges: Iterable[Relationship]) -> Graph:
    """Build a fresh dependency graph from a snapshot.

    Informational relationships are skipped. Edges whose endpoints are not
    among ``records`` (e.g. the item was deleted between the two reads) are
    dropped silently.

    Args:
        records: Every record in the snapshot.
        edges: Relationships of any kind.

    Returns:
        A new Graph; nothing is shared with graphs from earlier calls.
    """
    nodes = {record.id for record in records}
    forward: dict[int, set[int]] = {node: set() for node in nodes}
    reverse: dict[int, set[int]] = {node: set() for node in nodes}

    dropped = 0
    for edge in edges:
        if not edge.is_blocking:
            continue
        if edge.source_id not in nodes or edge.target_id not in nodes:
            dropped += 1
            continue
        forward[edge.source_id].add(edge.target_id)
        reverse[edge.target_id].add(edge.source_id)

    if dropped:
        logger.debug("Dropped %d dangling relationship(s) while building graph", dropped)

    return Graph(nodes=nodes, forward=forward, reverse=reverse)


def _sorted_iter(ids: Iterable[int]) -> Iterator[int]:
    return iter(sorted(ids))


# Cycle Detection


def would_create_cycle(graph: Graph, source_id: int, target_id: int) -> CycleCheck:
    """Check whether adding ``source_id -> target_id`` would close a cycle.

    The new edge closes a cycle exactly when ``source_id`` is already
    reachable from ``target_id``. The returned path is the full loop as the
    user would walk it: ``[source_id, target_id, ..., source_id]``.

    Args:
        graph: Current graph (blocking-semantic edges only).
        source_id: Item that would depend on target_id.
        target_id: Item that would be depended on.

    Returns:
        CycleCheck(cyclic=True, path=[...]) or CycleCheck(cyclic=False).
    """
    if source_id == target_id:
        return CycleCheck(cyclic=True, path=[source_id])

    visited: set[int] = {target_id}
    path: list[int] = [target_id]
    stack: list[Iterator[int]] = [_sorted_iter(graph.dependencies_of(target_id))]

    while stack:
        nxt = next(stack[-1], None)
        if nxt is None:
            stack.pop()
            path.pop()
            continue
        if nxt == source_id:
            return CycleCheck(cyclic=True, path=[source_id, *path, source_id])
        if nxt in visited:
            continue
        visited.add(nxt)
        path.append(nxt)
        stack.append(_sorted_iter(graph.dependencies_of(nxt)))

    return CycleCheck(cyclic=False)


_WHITE, _GRAY, _BLACK = 0, 1, 2


def find_any_cycle(graph: Graph) -> list[int] | None:
    """Find one cycle in an already-built graph.

    White/gray/black walk: gray nodes are on the current path, so reaching
    one again is a back-edge. Black nodes are finished and never re-entered.
    Start nodes and neighbours are visited in ascending id order, which
    makes the reported cycle deterministic.

    Returns:
        Closed path with the first id repeated at the end, or None.
    """
    color: dict[int, int] = {}

    for start in sorted(graph.nodes):
        if color.get(start, _WHITE) != _WHITE:
            continue

        color[start] = _GRAY
        path: list[int] = [start]
        stack: list[Iterator[int]] = [_sorted_iter(graph.dependencies_of(start))]

        while stack:
            nxt = next(stack[-1], None)
            if nxt is None:
                stack.pop()
                color[path.pop()] = _BLACK
                continue

            state = color.get(nxt, _WHITE)
            if state == _GRAY:
                return [*path[path.index(nxt):], nxt]
            if state == _WHITE:
                color[nxt] = _GRAY
                path.append(nxt)
                stack.append(_sorted_iter(graph.dependencies_of(nxt)))

    return None


# Ordering


def resolution_order(graph: Graph) -> ResolutionOrder:
    """Order every item so that dependencies come before their dependents.

    Kahn's algorithm: an item becomes ready once everything it depends on
    has been placed. Among ready items the lowest id goes first, so the
    output is reproducible for identical input.

    If stored data contains a cycle the walk stalls; the remaining items are
    appended in ascending id order and also returned in ``unresolved``.

    Args:
        graph: Graph to order.

    Returns:
        ResolutionOrder(order, unresolved). Never raises.
    """
    remaining: dict[int, int] = {node: len(graph.dependencies_of(node)) for node in graph.nodes}
    ready: list[int] = [node for node, count in remaining.items() if count == 0]
    heapq.heapify(ready)

    order: list[int] = []
    while ready:
        node = heapq.heappop(ready)
        order.append(node)
        for dependent in graph.dependents_of(node):
            remaining[dependent] -= 1
            if remaining[dependent] == 0:
                heapq.heappush(ready, dependent)

    if len(order) == len(graph.nodes):
        return ResolutionOrder(order=order, unresolved=[])

    placed = set(order)
    unresolved = sorted(node for node in graph.nodes if node not in placed)
    logger.warning(
        "Resolution order incomplete: %d item(s) are part of or behind a cycle: %s",
        len(unresolved),
        unresolved,
    )
    return ResolutionOrder(order=order + unresolved, unresolved=unresolved)


# Graph Queries


def direct_dependencies(graph: Graph, item_id: int) -> list[int]:
    """Ids ``item_id`` depends on directly, whatever their status."""
    return sorted(graph.dependencies_of(item_id))


def direct_dependents(graph: Graph, item_id: int) -> list[int]:
    """Ids that depend directly on ``item_id``."""
    return sorted(graph.dependents_of(item_id))


def _closure(adjacency: Mapping[int, set[int]], item_id: int) -> set[int]:
    visited: set[int] = set()
    to_visit: list[int] = list(adjacency.get(item_id, ()))

    while to_visit:
        current = to_visit.pop()
        if current in visited:
            continue
        visited.add(current)
        to_visit.extend(dep for dep in adjacency.get(current, ()) if dep not in visited)

    return visited


def transitive_dependencies(graph: Graph, item_id: int) -> set[int]:
    """Everything ``item_id`` depends on directly or indirectly.

    Does not include ``item_id`` itself unless it sits on a cycle.
    """
    return _closure(graph.forward, item_id)


def transitive_dependents(graph: Graph, item_id: int) -> set[int]:
    """Everything that depends on ``item_id`` directly or indirectly."""
    return _closure(graph.reverse, item_id)


def _is_active(records_by_id: Mapping[int, Record], item_id: int) -> bool:
    record = records_by_id.get(item_id)
    return record is not None and not record.is_complete


def active_blockers(graph: Graph, records_by_id: Mapping[int, Record], item_id: int) -> list[int]:
    """Direct dependencies of ``item_id`` that are not done or archived."""
    return [dep for dep in direct_dependencies(graph, item_id) if _is_active(records_by_id, dep)]


def active_blocker_count(graph: Graph, records_by_id: Mapping[int, Record], item_id: int) -> int:
    """Number of active blockers; an item is blocked iff this is > 0."""
    return len(active_blockers(graph, records_by_id, item_id))


def transitive_active_blockers(
    graph: Graph, records_by_id: Mapping[int, Record], item_id: int
) -> list[int]:
    """Active blockers of ``item_id`` plus, recursively, their active blockers.

    Completed items end the walk: whatever a done item depended on no
    longer stands in the way.
    """
    found: set[int] = set()
    visited: set[int] = {item_id}
    to_visit: list[int] = [item_id]

    while to_visit:
        current = to_visit.pop()
        for dep in active_blockers(graph, records_by_id, current):
            if dep != item_id:
                found.add(dep)
            if dep not in visited:
                visited.add(dep)
                to_visit.append(dep)

    return sorted(found)


def items_unblocked_by(
    graph: Graph, records_by_id: Mapping[int, Record], item_id: int
) -> list[int]:
    """Items for which ``item_id`` is the last remaining obstacle.

    A direct dependent qualifies when it is not itself complete and every
    active blocker it has other than ``item_id`` is already complete.
    """
    unblocked: list[int] = []

    for dependent in direct_dependents(graph, item_id):
        if not _is_active(records_by_id, dependent):
            continue
        others = [dep for dep in active_blockers(graph, records_by_id, dependent) if dep != item_id]
        if not others:
            unblocked.append(dependent)

    return unblocked


def _longest_paths(graph: Graph, roots: Iterable[int]) -> dict[int, tuple[int, int | None]]:
    """Memoized longest-path search.

    Returns node -> (depth, next hop on a longest path). A dependency that is
    still on the walk stack is a back-edge of a residual cycle and is
    ignored, so the search always terminates.
    """
    memo: dict[int, tuple[int, int | None]] = {}

    for root in roots:
        if root in memo:
            continue

        best: dict[int, tuple[int, int | None]] = {root: (0, None)}
        on_stack: set[int] = {root}
        stack: list[tuple[int, Iterator[int]]] = [(root, _sorted_iter(graph.dependencies_of(root)))]

        while stack:
            node, deps = stack[-1]
            dep = next(deps, None)

            if dep is None:
                stack.pop()
                on_stack.discard(node)
                memo[node] = best.pop(node)
                if stack:
                    parent = stack[-1][0]
                    if memo[node][0] + 1 > best[parent][0]:
                        best[parent] = (memo[node][0] + 1, node)
                continue

            if dep in memo:
                if memo[dep][0] + 1 > best[node][0]:
                    best[node] = (memo[dep][0] + 1, dep)
            elif dep not in on_stack:
                on_stack.add(dep)
                best[dep] = (0, None)
                stack.append((dep, _sorted_iter(graph.dependencies_of(dep))))

    return memo


def longest_chain(graph: Graph, item_id: int) -> DependencyChain:
    """Longest chain of dependencies starting at ``item_id``.

    Ties between equally deep dependencies go to the lowest id. An unknown
    id yields an empty chain.
    """
    if item_id not in graph:
        return DependencyChain(item_id=item_id, depth=0, chain=[])

    memo = _longest_paths(graph, [item_id])
    chain = [item_id]
    hop = memo[item_id][1]
    while hop is not None:
        chain.append(hop)
        hop = memo[hop][1]

    return DependencyChain(item_id=item_id, depth=memo[item_id][0], chain=chain)


def max_depth(graph: Graph) -> int:
    """Length, in edges, of the longest dependency path in the graph."""
    memo = _longest_paths(graph, sorted(graph.nodes))
    return max((depth for depth, _ in memo.values()), default=0)


def graph_stats(graph: Graph, records_by_id: Mapping[int, Record]) -> GraphStats:
    """Aggregate health numbers for the graph.

    Only open items count as blocked; a done or archived item with a
    pending dependency is not.
    """
    with_deps = sum(1 for node in graph.nodes if graph.dependencies_of(node))
    blocked = sum(
        1
        for node in graph.nodes
        if _is_active(records_by_id, node) and active_blocker_count(graph, records_by_id, node) > 0
    )

    return GraphStats(
        total_items=len(graph.nodes),
        items_with_dependencies=with_deps,
        blocked_items=blocked,
        max_depth=max_depth(graph),
        has_cycles=find_any_cycle(graph) is not None,
    )
