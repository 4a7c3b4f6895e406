"""In-process interface to the dependency graph for one snapshot.

A DependencyEngine is built from the records and relationships the storage
layer reports at one point in time and is discarded afterwards; it never
writes anything back. GraphCache lets a long-lived caller reuse an engine
until the snapshot version changes.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Union

from deferit import graph as g
from deferit.models import Record, Relationship

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Ok:
    """The edge may be stored."""

    @property
    def accepted(self) -> bool:
        return True


@dataclass(frozen=True)
class CycleRejected:
    """The edge would make an item depend on itself, directly or indirectly."""

    path: list[int]

    @property
    def accepted(self) -> bool:
        return False

    @property
    def is_self_reference(self) -> bool:
        return len(self.path) == 1

    def describe(self) -> str:
        if self.is_self_reference:
            return f"Item {self.path[0]} cannot depend on itself"
        return f"Adding this dependency would create a cycle: {g.format_path(self.path)}"


EdgeValidation = Union[Ok, CycleRejected]


@dataclass(frozen=True)
class BlockedItem:
    """An incomplete item that is waiting on at least one other item."""

    item_id: int
    blocked_by: list[int]
    transitive_blockers: list[int]
    can_unblock: bool


class DependencyEngine:
    """Graph queries over a single snapshot of records and relationships.

    Example:
        >>> engine = DependencyEngine(records, relationships)
        >>> engine.validate_edge(1, 3)
        CycleRejected(path=[1, 3, 2, 1])
    """

    def __init__(self, records: Iterable[Record], edges: Iterable[Relationship]) -> None:
        self.records_by_id: dict[int, Record] = {record.id: record for record in records}
        self.graph = g.build_graph(self.records_by_id.values(), edges)
        self._order: g.ResolutionOrder | None = None

    def __contains__(self, item_id: object) -> bool:
        return item_id in self.graph

    def validate_edge(self, source_id: int, target_id: int) -> EdgeValidation:
        """Check a prospective blocking edge ``source_id -> target_id``."""
        check = g.would_create_cycle(self.graph, source_id, target_id)
        if check.cyclic and check.path is not None:
            logger.info("Rejected %d -> %d: %s", source_id, target_id, g.format_path(check.path))
            return CycleRejected(path=check.path)
        return Ok()

    def _resolution(self) -> g.ResolutionOrder:
        if self._order is None:
            self._order = g.resolution_order(self.graph)
        return self._order

    def resolution_order(self) -> list[int]:
        """Every item, dependencies first. See ``unresolved`` for a cycle tail."""
        return list(self._resolution().order)

    @property
    def unresolved(self) -> list[int]:
        """Items placed at the end of the order only because of a stored cycle."""
        return list(self._resolution().unresolved)

    def direct_dependencies(self, item_id: int) -> list[int]:
        return g.direct_dependencies(self.graph, item_id)

    def direct_dependents(self, item_id: int) -> list[int]:
        return g.direct_dependents(self.graph, item_id)

    def transitive_dependencies(self, item_id: int) -> set[int]:
        return g.transitive_dependencies(self.graph, item_id)

    def transitive_dependents(self, item_id: int) -> set[int]:
        return g.transitive_dependents(self.graph, item_id)

    def active_blockers(self, item_id: int) -> list[int]:
        return g.active_blockers(self.graph, self.records_by_id, item_id)

    def transitive_active_blockers(self, item_id: int) -> list[int]:
        return g.transitive_active_blockers(self.graph, self.records_by_id, item_id)

    def active_blocker_count(self, item_id: int) -> int:
        return g.active_blocker_count(self.graph, self.records_by_id, item_id)

    def is_blocked(self, item_id: int) -> bool:
        return self.active_blocker_count(item_id) > 0

    def items_unblocked_by(self, item_id: int) -> list[int]:
        return g.items_unblocked_by(self.graph, self.records_by_id, item_id)

    def dependency_chain(self, item_id: int) -> g.DependencyChain:
        return g.longest_chain(self.graph, item_id)

    def blocked_items(self) -> list[BlockedItem]:
        """Incomplete items with at least one active blocker, by ascending id.

        ``can_unblock`` is true when none of the direct blockers is itself
        blocked, i.e. finishing the direct blockers is enough.
        """
        blocked: list[BlockedItem] = []

        for item_id in sorted(self.records_by_id):
            if self.records_by_id[item_id].is_complete:
                continue
            blockers = self.active_blockers(item_id)
            if not blockers:
                continue
            blocked.append(
                BlockedItem(
                    item_id=item_id,
                    blocked_by=blockers,
                    transitive_blockers=self.transitive_active_blockers(item_id),
                    can_unblock=not any(self.is_blocked(b) for b in blockers),
                )
            )

        return blocked

    def find_cycle(self) -> list[int] | None:
        return g.find_any_cycle(self.graph)

    def stats(self) -> g.GraphStats:
        return g.graph_stats(self.graph, self.records_by_id)


SnapshotLoader = Callable[[], tuple[list[Record], list[Relationship]]]


@dataclass
class GraphCache:
    """Reuse one DependencyEngine per snapshot version.

    The caller supplies the current version (the storage layer bumps it on
    every write). Any change replaces the cached engine; there is never more
    than one entry.

    The CLI runs one query per process and never uses it. Long-lived
    callers that embed deferit opt in by keeping one instance per database
    and passing it to ``services.load_engine``.
    """

    _version: int | None = field(default=None, init=False)
    _engine: DependencyEngine | None = field(default=None, init=False, repr=False)
    hits: int = 0
    misses: int = 0

    def get(self, version: int, load: SnapshotLoader) -> DependencyEngine:
        if self._engine is not None and self._version == version:
            self.hits += 1
            return self._engine

        self.misses += 1
        records, edges = load()
        self._engine = DependencyEngine(records, edges)
        self._version = version
        logger.debug("Rebuilt dependency graph for snapshot version %d", version)
        return self._engine

    def invalidate(self) -> None:
        self._engine = None
        self._version = None
