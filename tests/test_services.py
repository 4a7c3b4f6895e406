"""Tests for deferit.services module."""

from __future__ import annotations

from collections.abc import Callable

import pytest

from deferit import crud, services
from deferit.database import DeferDB
from deferit.engine import DependencyEngine, GraphCache
from deferit.models import Record, Relationship, RelationshipKind, Status

MakeItems = Callable[..., list[int]]


def link(db: DeferDB, source: int, target: int, kind: str = "blocks") -> None:
    result = services.add_relationship(db, source, target, kind)
    assert result.success, result.error


def set_status(db: DeferDB, item_id: int, status: str) -> None:
    with db.transaction():
        crud.update_item_status(db, item_id, status)


class TestAddRelationship:
    """Tests for services.add_relationship."""

    def test_adds_relationship(self, initialized_db: DeferDB, make_items: MakeItems) -> None:
        a, b = make_items("A", "B")
        result = services.add_relationship(initialized_db, b, a)

        assert result.success
        assert result.relationship is not None
        assert result.relationship["kind"] == "blocks"
        assert result.error is None
        assert crud.get_relationship(initialized_db, b, a) is not None

    @pytest.mark.parametrize(
        ("source", "target", "message"),
        [
            (0, 1, "Valid item ID is required"),
            (-3, 1, "Valid item ID is required"),
            (1, 0, "Valid depends-on ID is required"),
        ],
    )
    def test_invalid_ids(
        self, initialized_db: DeferDB, source: int, target: int, message: str
    ) -> None:
        result = services.add_relationship(initialized_db, source, target)
        assert not result.success
        assert result.error == message

    def test_invalid_kind(self, initialized_db: DeferDB, make_items: MakeItems) -> None:
        a, b = make_items("A", "B")
        result = services.add_relationship(initialized_db, b, a, "depends")
        assert not result.success
        assert result.error is not None
        assert "Invalid relationship kind" in result.error

    def test_self_reference(self, initialized_db: DeferDB, make_items: MakeItems) -> None:
        (a,) = make_items("A")
        result = services.add_relationship(initialized_db, a, a)
        assert not result.success
        assert result.cycle_path == [a]
        assert result.error == f"Item {a} cannot depend on itself"

    def test_missing_item(self, initialized_db: DeferDB, make_items: MakeItems) -> None:
        (a,) = make_items("A")
        result = services.add_relationship(initialized_db, a, 99)
        assert not result.success
        assert result.error == "Item 99 not found"

    def test_duplicate(self, initialized_db: DeferDB, make_items: MakeItems) -> None:
        a, b = make_items("A", "B")
        link(initialized_db, b, a)
        result = services.add_relationship(initialized_db, b, a, "relates-to")
        assert not result.success
        assert result.error == f"Relationship already exists: {b} -> {a}"

    def test_rejects_cycle_and_leaves_data_unchanged(
        self, initialized_db: DeferDB, make_items: MakeItems
    ) -> None:
        a, b, c = make_items("A", "B", "C")
        link(initialized_db, b, a)
        link(initialized_db, c, b)
        version = crud.get_snapshot_version(initialized_db)

        result = services.add_relationship(initialized_db, a, c)

        assert not result.success
        assert result.cycle_path == [a, c, b, a]
        assert result.error == f"Adding this dependency would create a cycle: {a} -> {c} -> {b} -> {a}"
        assert crud.get_relationship(initialized_db, a, c) is None
        assert crud.get_snapshot_version(initialized_db) == version

    def test_parent_of_takes_part_in_cycle_check(
        self, initialized_db: DeferDB, make_items: MakeItems
    ) -> None:
        a, b = make_items("A", "B")
        link(initialized_db, b, a, "parent-of")
        result = services.add_relationship(initialized_db, a, b, "blocks")
        assert not result.success
        assert result.cycle_path == [a, b, a]

    def test_informational_loop_is_allowed(
        self, initialized_db: DeferDB, make_items: MakeItems
    ) -> None:
        a, b, c = make_items("A", "B", "C")
        link(initialized_db, b, a)
        link(initialized_db, c, b)
        result = services.add_relationship(initialized_db, a, c, "relates-to")
        assert result.success

    def test_to_dict(self, initialized_db: DeferDB, make_items: MakeItems) -> None:
        (a,) = make_items("A")
        data = services.add_relationship(initialized_db, a, a).to_dict()
        assert data["success"] is False
        assert data["cycle_path"] == [a]


class TestRemoveRelationship:
    """Tests for services.remove_relationship."""

    def test_reports_unblocked_items(self, initialized_db: DeferDB, make_items: MakeItems) -> None:
        a, b, c = make_items("A", "B", "C")
        link(initialized_db, c, a)
        link(initialized_db, c, b)
        link(initialized_db, b, a)

        first = services.remove_relationship(initialized_db, c, a)
        assert first.success
        assert first.removed
        assert first.unblocked_items == []

        second = services.remove_relationship(initialized_db, c, b)
        assert second.unblocked_items == [c]

    def test_not_found(self, initialized_db: DeferDB, make_items: MakeItems) -> None:
        a, b = make_items("A", "B")
        result = services.remove_relationship(initialized_db, b, a)
        assert not result.success
        assert result.not_found
        assert result.error == f"Relationship not found: {b} -> {a}"

    def test_kind_mismatch(self, initialized_db: DeferDB, make_items: MakeItems) -> None:
        a, b = make_items("A", "B")
        link(initialized_db, b, a, "relates-to")
        result = services.remove_relationship(initialized_db, b, a, "blocks")
        assert result.not_found
        assert result.error == f"Relationship not found: {b} -> {a} (blocks)"
        assert crud.get_relationship(initialized_db, b, a) is not None

    def test_informational_removal_unblocks_nothing(
        self, initialized_db: DeferDB, make_items: MakeItems
    ) -> None:
        a, b = make_items("A", "B")
        link(initialized_db, b, a, "duplicates")
        result = services.remove_relationship(initialized_db, b, a)
        assert result.success
        assert result.unblocked_items == []


class TestLoadEngine:
    """Tests for services.load_engine."""

    def test_without_cache_builds_fresh_engine(
        self, initialized_db: DeferDB, make_items: MakeItems
    ) -> None:
        make_items("A")
        first = services.load_engine(initialized_db)
        second = services.load_engine(initialized_db)
        assert first is not second

    def test_cache_reused_until_next_write(
        self, initialized_db: DeferDB, make_items: MakeItems
    ) -> None:
        a, b = make_items("A", "B")
        cache = GraphCache()

        first = services.load_engine(initialized_db, cache)
        assert services.load_engine(initialized_db, cache) is first
        assert not first.is_blocked(b)

        link(initialized_db, b, a)
        refreshed = services.load_engine(initialized_db, cache)

        assert refreshed is not first
        assert refreshed.is_blocked(b)
        assert cache.hits == 1


class TestResolutionOrder:
    """Tests for services.get_resolution_order and its ranking helpers."""

    def test_unblocked_items_come_first(
        self, initialized_db: DeferDB, make_items: MakeItems
    ) -> None:
        a, b = make_items("Foundation", "Walls")
        (c,) = make_items("Paint", priority="high")
        link(initialized_db, b, a)

        result = services.get_resolution_order(initialized_db)

        assert result.success
        assert [item.id for item in result.order] == [c, a, b]
        assert [item.order for item in result.order] == [1, 2, 3]
        assert result.order[2].is_blocked
        assert result.order[2].blocker_count == 1
        assert result.unresolved == []

    def test_completed_items_hidden_by_default(
        self, initialized_db: DeferDB, make_items: MakeItems
    ) -> None:
        a, b = make_items("A", "B")
        link(initialized_db, b, a)
        set_status(initialized_db, a, "done")

        hidden = services.get_resolution_order(initialized_db)
        assert [item.id for item in hidden.order] == [b]
        assert not hidden.order[0].is_blocked

        shown = services.get_resolution_order(initialized_db, include_completed=True)
        assert [item.id for item in shown.order] == [a, b]

    def test_filters_and_limit(self, initialized_db: DeferDB, make_items: MakeItems) -> None:
        (a,) = make_items("A", priority="low", tags=["infra"])
        (b,) = make_items("B", priority="high", tags=["ui"])
        (c,) = make_items("C", priority="high", tags=["infra"])

        by_priority = services.get_resolution_order(initialized_db, priorities=["high"])
        assert [item.id for item in by_priority.order] == [b, c]

        by_tag = services.get_resolution_order(initialized_db, tags=["INFRA"])
        assert [item.id for item in by_tag.order] == [c, a]

        limited = services.get_resolution_order(initialized_db, limit=1)
        assert [item.id for item in limited.order] == [b]

    def test_invalid_priority(self, initialized_db: DeferDB) -> None:
        result = services.get_resolution_order(initialized_db, priorities=["urgent"])
        assert not result.success
        assert result.error is not None

    def test_stats_and_next_actions(self, initialized_db: DeferDB, make_items: MakeItems) -> None:
        a, b, c = make_items("A", "B", "C")
        (d,) = make_items("D", priority="high")
        link(initialized_db, b, a)
        link(initialized_db, c, a)

        result = services.get_resolution_order(
            initialized_db, include_stats=True, include_next_actions=True
        )

        assert result.stats is not None
        assert result.stats.total_items == 4
        assert result.stats.blocked_items == 2
        assert result.next_actions is not None
        assert [(n.id, n.unblocks, n.reason) for n in result.next_actions] == [
            (d, 0, "High priority"),
            (a, 2, "Unblocks 2 items"),
        ]

    def test_next_actions_limit(self, initialized_db: DeferDB, make_items: MakeItems) -> None:
        make_items(*[f"Item {n}" for n in range(8)])
        result = services.get_resolution_order(initialized_db, include_next_actions=True)
        assert result.next_actions is not None
        assert len(result.next_actions) == services.NEXT_ACTION_LIMIT
        assert all(n.reason == "Ready to start" for n in result.next_actions)

    def test_stored_cycle_is_reported(self, initialized_db: DeferDB, make_items: MakeItems) -> None:
        a, b = make_items("A", "B")
        with initialized_db.transaction():
            crud.add_relationship(initialized_db, a, b)
            crud.add_relationship(initialized_db, b, a)

        result = services.get_resolution_order(initialized_db)
        assert result.success
        assert result.unresolved == [a, b]
        assert sorted(item.id for item in result.order) == [a, b]


class TestBlockedItems:
    """Tests for services.get_blocked_items."""

    def test_blocked_items(self, initialized_db: DeferDB, make_items: MakeItems) -> None:
        a, b, c = make_items("Choose DB", "Schema", "Migrations")
        link(initialized_db, b, a)
        link(initialized_db, c, b)

        result = services.get_blocked_items(initialized_db)

        assert result.success
        assert result.total == 2
        first, second = result.items
        assert first["id"] == b
        assert first["blocked_by"] == [{"id": a, "title": "Choose DB", "status": "pending"}]
        assert first["can_unblock"] is True
        assert second["id"] == c
        assert second["transitive_blockers"] == [a, b]
        assert second["can_unblock"] is False

    def test_without_blocker_details(self, initialized_db: DeferDB, make_items: MakeItems) -> None:
        a, b = make_items("A", "B")
        link(initialized_db, b, a)
        result = services.get_blocked_items(initialized_db, include_blockers=False)
        assert result.items[0]["blocked_by"] == []

    def test_priority_filter(self, initialized_db: DeferDB, make_items: MakeItems) -> None:
        (a,) = make_items("A")
        (b,) = make_items("B", priority="low")
        (c,) = make_items("C", priority="high")
        link(initialized_db, b, a)
        link(initialized_db, c, a)

        result = services.get_blocked_items(initialized_db, priorities=["high"])
        assert [item["id"] for item in result.items] == [c]

    def test_done_blockers_do_not_block(
        self, initialized_db: DeferDB, make_items: MakeItems
    ) -> None:
        a, b = make_items("A", "B")
        link(initialized_db, b, a)
        set_status(initialized_db, a, "archived")
        assert services.get_blocked_items(initialized_db).total == 0


class TestDependencyChain:
    """Tests for services.get_dependency_chain and render_chain."""

    def test_chain(self, initialized_db: DeferDB, make_items: MakeItems) -> None:
        a, b, c = make_items("A", "B", "C")
        link(initialized_db, b, a)
        link(initialized_db, c, b)

        result = services.get_dependency_chain(initialized_db, c)

        assert result.success
        assert result.depth == 2
        assert result.chain == [c, b, a]
        assert result.total_blockers == 2
        assert result.chain_details is None
        assert result.visualization is None

    def test_unknown_item(self, initialized_db: DeferDB) -> None:
        result = services.get_dependency_chain(initialized_db, 5)
        assert not result.success
        assert result.error == "Item 5 not found"

    def test_invalid_id(self, initialized_db: DeferDB) -> None:
        result = services.get_dependency_chain(initialized_db, 0)
        assert result.error == "Valid item ID is required"

    def test_optional_sections(self, initialized_db: DeferDB, make_items: MakeItems) -> None:
        a, b, c = make_items("A", "B", "C")
        link(initialized_db, b, a)
        link(initialized_db, c, a)
        (d,) = make_items("D")
        link(initialized_db, a, d, "relates-to")

        result = services.get_dependency_chain(
            initialized_db,
            a,
            include_details=True,
            include_dependents=True,
            include_all_kinds=True,
            include_visualization=True,
        )

        assert result.chain == [a]
        assert result.chain_details == [
            {"id": a, "title": "A", "status": "pending", "priority": "medium"}
        ]
        assert result.would_unblock == [b, c]
        assert result.relationships is not None
        assert [(r["target_id"], r["kind"], r["target_title"]) for r in result.relationships] == [
            (d, "relates-to", "D")
        ]
        assert result.visualization == "No dependencies"

    def test_render_chain(self) -> None:
        engine = DependencyEngine(
            [
                Record(id=1, title="Pick a cloud provider", status=Status.DONE),
                Record(id=2, title="x" * 50, status=Status.IN_PROGRESS),
                Record(id=3, title="Ship it"),
            ],
            [Relationship(3, 2, RelationshipKind.BLOCKS), Relationship(2, 1, RelationshipKind.BLOCKS)],
        )
        text = services.render_chain(engine, [3, 2, 1])
        assert text.splitlines() == [
            "[ ] #3: Ship it",
            "  -> [~] #2: " + "x" * 37 + "...",
            "    -> [x] #1: Pick a cloud provider",
        ]


class TestCheckGraph:
    """Tests for services.check_graph."""

    def test_clean_graph(self, initialized_db: DeferDB, make_items: MakeItems) -> None:
        a, b = make_items("A", "B")
        link(initialized_db, b, a)
        assert services.check_graph(initialized_db) is None

    def test_stored_cycle(self, initialized_db: DeferDB, make_items: MakeItems) -> None:
        a, b, c = make_items("A", "B", "C")
        with initialized_db.transaction():
            crud.add_relationship(initialized_db, a, b)
            crud.add_relationship(initialized_db, b, c)
            crud.add_relationship(initialized_db, c, a)
        assert services.check_graph(initialized_db) == [a, b, c, a]
