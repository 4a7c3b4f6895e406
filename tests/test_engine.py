"""Tests for deferit.engine module."""

from __future__ import annotations

import pytest

from deferit.engine import BlockedItem, CycleRejected, DependencyEngine, GraphCache, Ok
from deferit.models import Record, Relationship, RelationshipKind, Status


def blocks(source: int, target: int) -> Relationship:
    return Relationship(source, target, RelationshipKind.BLOCKS)


@pytest.fixture
def engine() -> DependencyEngine:
    """1 <- 2 <- 3, with 4 waiting on 1 and on the finished 5."""
    records = [
        Record(id=1, title="Choose database"),
        Record(id=2, title="Design schema"),
        Record(id=3, title="Write migrations"),
        Record(id=4, title="Benchmark"),
        Record(id=5, title="Buy hardware", status=Status.DONE),
    ]
    edges = [blocks(2, 1), blocks(3, 2), blocks(4, 1), blocks(4, 5)]
    return DependencyEngine(records, edges)


class TestValidateEdge:
    """Tests for DependencyEngine.validate_edge."""

    def test_accepts_safe_edge(self, engine: DependencyEngine) -> None:
        result = engine.validate_edge(3, 4)
        assert isinstance(result, Ok)
        assert result.accepted

    def test_rejects_cycle(self, engine: DependencyEngine) -> None:
        result = engine.validate_edge(1, 3)
        assert isinstance(result, CycleRejected)
        assert not result.accepted
        assert result.path == [1, 3, 2, 1]
        assert result.describe() == "Adding this dependency would create a cycle: 1 -> 3 -> 2 -> 1"

    def test_rejects_self_reference(self, engine: DependencyEngine) -> None:
        result = engine.validate_edge(2, 2)
        assert isinstance(result, CycleRejected)
        assert result.is_self_reference
        assert result.describe() == "Item 2 cannot depend on itself"

    def test_does_not_mutate_graph(self, engine: DependencyEngine) -> None:
        before = engine.graph.edge_count()
        engine.validate_edge(3, 4)
        engine.validate_edge(1, 3)
        assert engine.graph.edge_count() == before


class TestQueries:
    """Tests for DependencyEngine query methods."""

    def test_contains(self, engine: DependencyEngine) -> None:
        assert 3 in engine
        assert 9 not in engine

    def test_resolution_order(self, engine: DependencyEngine) -> None:
        assert engine.resolution_order() == [1, 2, 3, 5, 4]
        assert engine.unresolved == []

    def test_resolution_order_returns_copies(self, engine: DependencyEngine) -> None:
        engine.resolution_order().clear()
        assert len(engine.resolution_order()) == 5

    def test_dependencies(self, engine: DependencyEngine) -> None:
        assert engine.direct_dependencies(4) == [1, 5]
        assert engine.direct_dependents(1) == [2, 4]
        assert engine.transitive_dependencies(3) == {1, 2}
        assert engine.transitive_dependents(1) == {2, 3, 4}

    def test_blockers(self, engine: DependencyEngine) -> None:
        assert engine.active_blockers(4) == [1]
        assert engine.active_blocker_count(4) == 1
        assert engine.is_blocked(3)
        assert not engine.is_blocked(1)
        assert engine.transitive_active_blockers(3) == [1, 2]

    def test_items_unblocked_by(self, engine: DependencyEngine) -> None:
        assert engine.items_unblocked_by(1) == [2, 4]
        assert engine.items_unblocked_by(2) == [3]
        assert engine.items_unblocked_by(3) == []

    def test_dependency_chain(self, engine: DependencyEngine) -> None:
        chain = engine.dependency_chain(3)
        assert chain.depth == 2
        assert chain.chain == [3, 2, 1]

    def test_find_cycle(self, engine: DependencyEngine) -> None:
        assert engine.find_cycle() is None

    def test_stats(self, engine: DependencyEngine) -> None:
        stats = engine.stats()
        assert stats.total_items == 5
        assert stats.items_with_dependencies == 3
        assert stats.blocked_items == 3
        assert stats.max_depth == 2
        assert not stats.has_cycles


class TestBlockedItems:
    """Tests for DependencyEngine.blocked_items."""

    def test_blocked_items(self, engine: DependencyEngine) -> None:
        assert engine.blocked_items() == [
            BlockedItem(item_id=2, blocked_by=[1], transitive_blockers=[1], can_unblock=True),
            BlockedItem(item_id=3, blocked_by=[2], transitive_blockers=[1, 2], can_unblock=False),
            BlockedItem(item_id=4, blocked_by=[1], transitive_blockers=[1], can_unblock=True),
        ]

    def test_completed_items_are_not_blocked(self) -> None:
        engine = DependencyEngine(
            [Record(id=1), Record(id=2, status=Status.ARCHIVED)],
            [blocks(2, 1)],
        )
        assert engine.blocked_items() == []

    def test_stats_agree_with_blocked_view(self) -> None:
        engine = DependencyEngine(
            [Record(id=1), Record(id=2, status=Status.DONE)],
            [blocks(2, 1)],
        )
        assert engine.stats().blocked_items == len(engine.blocked_items()) == 0

    def test_informational_edges_do_not_block(self) -> None:
        engine = DependencyEngine(
            [Record(id=1), Record(id=2)],
            [Relationship(2, 1, RelationshipKind.RELATES_TO)],
        )
        assert engine.blocked_items() == []


class TestStoredCycle:
    """Engine behaviour when stored data already contains a cycle."""

    def test_order_degrades(self) -> None:
        engine = DependencyEngine(
            [Record(id=1), Record(id=2), Record(id=3)],
            [blocks(1, 2), blocks(2, 1)],
        )
        assert engine.resolution_order() == [3, 1, 2]
        assert engine.unresolved == [1, 2]
        assert engine.find_cycle() == [1, 2, 1]
        assert engine.stats().has_cycles


class TestGraphCache:
    """Tests for GraphCache."""

    def test_reuses_engine_for_same_version(self) -> None:
        calls = []

        def load() -> tuple[list[Record], list[Relationship]]:
            calls.append(1)
            return [Record(id=1)], []

        cache = GraphCache()
        first = cache.get(7, load)
        second = cache.get(7, load)

        assert first is second
        assert len(calls) == 1
        assert cache.hits == 1
        assert cache.misses == 1

    def test_rebuilds_on_new_version(self) -> None:
        snapshots = iter(
            [
                ([Record(id=1)], []),
                ([Record(id=1), Record(id=2)], [blocks(2, 1)]),
            ]
        )
        cache = GraphCache()

        first = cache.get(1, lambda: next(snapshots))
        second = cache.get(2, lambda: next(snapshots))

        assert first is not second
        assert second.is_blocked(2)
        assert cache.misses == 2

    def test_invalidate(self) -> None:
        cache = GraphCache()
        load = lambda: ([Record(id=1)], [])  # noqa: E731
        first = cache.get(1, load)
        cache.invalidate()
        assert cache.get(1, load) is not first
        assert cache.misses == 2
