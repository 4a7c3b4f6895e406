"""Commands and queries that combine storage with the dependency graph.

Every function reads a fresh snapshot from the database, builds a
DependencyEngine for it, and returns a result object. Conditions a user
can trigger (unknown ids, duplicates, cycles) come back as unsuccessful
results with an error message instead of exceptions.

Write paths run inside ``db.transaction(immediate=True)`` so the cycle
check and the insert see the same snapshot and no other writer can slip
an edge in between.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable
from dataclasses import asdict, dataclass, field
from typing import Any

from deferit import crud
from deferit.database import DeferDB
from deferit.engine import BlockedItem, CycleRejected, DependencyEngine, GraphCache
from deferit.graph import GraphStats
from deferit.models import Priority, Record, RelationshipKind, is_blocking_semantics

logger = logging.getLogger(__name__)

NEXT_ACTION_LIMIT = 5
TITLE_DISPLAY_WIDTH = 40

STATUS_ICONS = {
    "done": "x",
    "in-progress": "~",
    "pending": " ",
    "archived": "-",
}


@dataclass
class _Result:
    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class AddRelationshipResult(_Result):
    """Outcome of adding a relationship.

    Attributes:
        success: Whether the relationship was stored.
        relationship: The stored row, when successful.
        cycle_path: Offending loop when rejected for a cycle (``[x]`` for a
            self-reference).
        error: Human-readable reason when unsuccessful.
    """

    success: bool
    relationship: dict[str, Any] | None = None
    cycle_path: list[int] | None = None
    error: str | None = None


@dataclass
class RemoveRelationshipResult(_Result):
    success: bool
    removed: bool = False
    not_found: bool = False
    unblocked_items: list[int] = field(default_factory=list)
    error: str | None = None


@dataclass
class OrderedItem(_Result):
    id: int
    title: str
    status: str
    priority: str
    tags: list[str]
    is_blocked: bool
    blocker_count: int
    order: int


@dataclass
class NextAction(_Result):
    id: int
    title: str
    priority: str
    unblocks: int
    reason: str


@dataclass
class ResolutionOrderResult(_Result):
    success: bool
    order: list[OrderedItem] = field(default_factory=list)
    stats: GraphStats | None = None
    next_actions: list[NextAction] | None = None
    unresolved: list[int] = field(default_factory=list)
    error: str | None = None


@dataclass
class BlockedItemsResult(_Result):
    success: bool
    items: list[dict[str, Any]] = field(default_factory=list)
    total: int = 0
    error: str | None = None


@dataclass
class DependencyChainResult(_Result):
    success: bool
    item_id: int | None = None
    depth: int = 0
    chain: list[int] = field(default_factory=list)
    chain_details: list[dict[str, Any]] | None = None
    total_blockers: int = 0
    would_unblock: list[int] | None = None
    relationships: list[dict[str, Any]] | None = None
    visualization: str | None = None
    error: str | None = None


def _invalid_id(item_id: Any) -> bool:
    return isinstance(item_id, bool) or not isinstance(item_id, int) or item_id <= 0


def load_engine(db: DeferDB, cache: GraphCache | None = None) -> DependencyEngine:
    """Build an engine from the database's current snapshot.

    With a cache, the engine is reused until the snapshot version changes.
    """
    if cache is None:
        records, edges = crud.load_snapshot(db)
        return DependencyEngine(records, edges)
    return cache.get(crud.get_snapshot_version(db), lambda: crud.load_snapshot(db))


# Commands


def add_relationship(
    db: DeferDB,
    source_id: int,
    target_id: int,
    kind: RelationshipKind | str = RelationshipKind.BLOCKS,
) -> AddRelationshipResult:
    """Add a relationship after checking it cannot create a cycle.

    Only blocking kinds (blocks, parent-of) are checked; informational ones
    may form loops freely.
    """
    if _invalid_id(source_id):
        return AddRelationshipResult(success=False, error="Valid item ID is required")
    if _invalid_id(target_id):
        return AddRelationshipResult(success=False, error="Valid depends-on ID is required")
    try:
        kind = RelationshipKind.parse(kind)
    except ValueError as e:
        return AddRelationshipResult(success=False, error=str(e))

    if source_id == target_id:
        rejection = CycleRejected(path=[source_id])
        return AddRelationshipResult(
            success=False, cycle_path=rejection.path, error=rejection.describe()
        )

    with db.transaction(immediate=True):
        for item_id in (source_id, target_id):
            if crud.get_item(db, item_id) is None:
                return AddRelationshipResult(success=False, error=f"Item {item_id} not found")

        if crud.get_relationship(db, source_id, target_id) is not None:
            return AddRelationshipResult(
                success=False,
                error=f"Relationship already exists: {source_id} -> {target_id}",
            )

        if is_blocking_semantics(kind):
            validation = load_engine(db).validate_edge(source_id, target_id)
            if isinstance(validation, CycleRejected):
                return AddRelationshipResult(
                    success=False, cycle_path=validation.path, error=validation.describe()
                )

        try:
            relationship = crud.add_relationship(db, source_id, target_id, kind)
        except sqlite3.IntegrityError as e:
            return AddRelationshipResult(success=False, error=f"Could not add relationship: {e}")

    logger.info("Added %s relationship %d -> %d", kind.value, source_id, target_id)
    return AddRelationshipResult(success=True, relationship=relationship)


def remove_relationship(
    db: DeferDB,
    source_id: int,
    target_id: int,
    kind: RelationshipKind | str | None = None,
    *,
    report_unblocked: bool = True,
) -> RemoveRelationshipResult:
    """Remove a relationship and report which items it was the last thing blocking."""
    if _invalid_id(source_id):
        return RemoveRelationshipResult(success=False, error="Valid item ID is required")
    if _invalid_id(target_id):
        return RemoveRelationshipResult(success=False, error="Valid depends-on ID is required")
    if kind is not None:
        try:
            kind = RelationshipKind.parse(kind)
        except ValueError as e:
            return RemoveRelationshipResult(success=False, error=str(e))

    with db.transaction(immediate=True):
        existing = crud.get_relationship(db, source_id, target_id)
        if existing is None or (kind is not None and existing["kind"] != kind.value):
            suffix = f" ({kind.value})" if kind is not None else ""
            return RemoveRelationshipResult(
                success=False,
                not_found=True,
                error=f"Relationship not found: {source_id} -> {target_id}{suffix}",
            )

        before: set[int] = set()
        if report_unblocked and is_blocking_semantics(existing["kind"]):
            before = {b.item_id for b in load_engine(db).blocked_items()}

        crud.remove_relationship(db, source_id, target_id, kind)

        unblocked: list[int] = []
        if before:
            after = {b.item_id for b in load_engine(db).blocked_items()}
            unblocked = sorted(before - after)

    logger.info("Removed relationship %d -> %d", source_id, target_id)
    return RemoveRelationshipResult(success=True, removed=True, unblocked_items=unblocked)


# Queries


def _passes_filters(
    record: Record,
    include_completed: bool,
    priorities: set[Priority] | None,
    tags: set[str] | None,
) -> bool:
    if not include_completed and record.is_complete:
        return False
    if priorities and record.priority not in priorities:
        return False
    return not tags or bool(tags.intersection(record.tags))


def _action_reason(priority: Priority, unblocks: int) -> str:
    reasons: list[str] = []
    if priority is Priority.HIGH:
        reasons.append("High priority")
    if unblocks > 0:
        reasons.append(f"Unblocks {unblocks} item{'s' if unblocks > 1 else ''}")
    return ", ".join(reasons) or "Ready to start"


def rank_items(engine: DependencyEngine, item_ids: Iterable[int]) -> list[OrderedItem]:
    """Rank items for display: unblocked first, then priority, then topological position.

    ``item_ids`` must already be in resolution order; its position is the
    final tie-break.
    """
    entries: list[tuple[tuple[bool, int, int], Record, int]] = []
    for position, item_id in enumerate(item_ids):
        record = engine.records_by_id[item_id]
        count = engine.active_blocker_count(item_id)
        entries.append(((count > 0, record.priority.rank, position), record, count))

    entries.sort(key=lambda entry: entry[0])
    return [
        OrderedItem(
            id=record.id,
            title=record.title,
            status=record.status.value,
            priority=record.priority.value,
            tags=list(record.tags),
            is_blocked=count > 0,
            blocker_count=count,
            order=rank,
        )
        for rank, (_, record, count) in enumerate(entries, start=1)
    ]


def next_actions(engine: DependencyEngine, ranked: Iterable[OrderedItem]) -> list[NextAction]:
    """Recommend unblocked items: high priority first, then most items unblocked."""
    candidates: list[NextAction] = []
    for item in ranked:
        if item.is_blocked:
            continue
        unblocks = len(engine.items_unblocked_by(item.id))
        priority = Priority.parse(item.priority)
        candidates.append(
            NextAction(
                id=item.id,
                title=item.title,
                priority=priority.value,
                unblocks=unblocks,
                reason=_action_reason(priority, unblocks),
            )
        )

    candidates.sort(key=lambda action: (Priority.parse(action.priority).rank, -action.unblocks))
    return candidates[:NEXT_ACTION_LIMIT]


def get_resolution_order(
    db: DeferDB,
    *,
    include_completed: bool = False,
    include_stats: bool = False,
    include_next_actions: bool = False,
    priorities: Iterable[Priority | str] | None = None,
    tags: Iterable[str] | None = None,
    limit: int | None = None,
) -> ResolutionOrderResult:
    """Items in the order they should be worked on.

    The dependency order comes from the engine; the unblocked-first /
    priority ranking is layered on top here.
    """
    try:
        priority_set = {Priority.parse(p) for p in priorities} if priorities else None
    except ValueError as e:
        return ResolutionOrderResult(success=False, error=str(e))
    tag_set = {t.strip().lower() for t in tags} if tags else None

    engine = load_engine(db)
    raw_order = engine.resolution_order()

    selected = [
        item_id
        for item_id in raw_order
        if _passes_filters(engine.records_by_id[item_id], include_completed, priority_set, tag_set)
    ]
    ranked = rank_items(engine, selected)

    result = ResolutionOrderResult(
        success=True,
        order=ranked[:limit] if limit and limit > 0 else ranked,
        unresolved=engine.unresolved,
    )
    if include_stats:
        result.stats = engine.stats()
    if include_next_actions:
        result.next_actions = next_actions(engine, ranked)
    return result


def get_blocked_items(
    db: DeferDB,
    *,
    priorities: Iterable[Priority | str] | None = None,
    include_blockers: bool = True,
) -> BlockedItemsResult:
    """Incomplete items waiting on at least one incomplete item."""
    try:
        priority_set = {Priority.parse(p) for p in priorities} if priorities else None
    except ValueError as e:
        return BlockedItemsResult(success=False, error=str(e))

    engine = load_engine(db)
    items: list[dict[str, Any]] = []

    for info in engine.blocked_items():
        record = engine.records_by_id[info.item_id]
        if priority_set and record.priority not in priority_set:
            continue
        items.append(_blocked_entry(engine, record, info, include_blockers))

    return BlockedItemsResult(success=True, items=items, total=len(items))


def _blocked_entry(
    engine: DependencyEngine, record: Record, info: BlockedItem, include_blockers: bool
) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "id": record.id,
        "title": record.title,
        "status": record.status.value,
        "priority": record.priority.value,
        "blocked_by": [],
        "transitive_blockers": info.transitive_blockers,
        "can_unblock": info.can_unblock,
    }
    if include_blockers:
        entry["blocked_by"] = [
            {
                "id": blocker_id,
                "title": engine.records_by_id[blocker_id].title,
                "status": engine.records_by_id[blocker_id].status.value,
            }
            for blocker_id in info.blocked_by
        ]
    return entry


def get_dependency_chain(
    db: DeferDB,
    item_id: int,
    *,
    include_details: bool = False,
    include_dependents: bool = False,
    include_all_kinds: bool = False,
    include_visualization: bool = False,
) -> DependencyChainResult:
    """Longest chain of things an item is waiting on, plus related views."""
    if _invalid_id(item_id):
        return DependencyChainResult(success=False, error="Valid item ID is required")

    engine = load_engine(db)
    if item_id not in engine:
        return DependencyChainResult(success=False, error=f"Item {item_id} not found")

    chain = engine.dependency_chain(item_id)
    result = DependencyChainResult(
        success=True,
        item_id=item_id,
        depth=chain.depth,
        chain=chain.chain,
        total_blockers=len(engine.transitive_active_blockers(item_id)),
    )

    if include_details:
        result.chain_details = [
            {
                "id": record.id,
                "title": record.title,
                "status": record.status.value,
                "priority": record.priority.value,
            }
            for record in (engine.records_by_id[i] for i in chain.chain)
        ]
    if include_dependents:
        result.would_unblock = engine.items_unblocked_by(item_id)
    if include_all_kinds:
        result.relationships = [
            {
                **rel,
                "target_title": engine.records_by_id[rel["target_id"]].title
                if rel["target_id"] in engine.records_by_id
                else None,
            }
            for rel in crud.get_dependencies(db, item_id)
        ]
    if include_visualization:
        result.visualization = render_chain(engine, chain.chain)

    return result


def render_chain(engine: DependencyEngine, chain: list[int]) -> str:
    """Indented text view of a chain, e.g. ``[ ] #3: ...`` then ``  -> [x] #2: ...``."""
    if len(chain) <= 1:
        return "No dependencies"

    lines: list[str] = []
    for depth, item_id in enumerate(chain):
        record = engine.records_by_id.get(item_id)
        title = record.title if record is not None and record.title else f"Item #{item_id}"
        if len(title) > TITLE_DISPLAY_WIDTH:
            title = title[: TITLE_DISPLAY_WIDTH - 3] + "..."
        icon = STATUS_ICONS.get(record.status.value, "?") if record is not None else "?"
        connector = "-> " if depth else ""
        lines.append(f"{'  ' * depth}{connector}[{icon}] #{item_id}: {title}")

    return "\n".join(lines)


def check_graph(db: DeferDB) -> list[int] | None:
    """Scan stored data for a cycle among blocking relationships."""
    cycle = load_engine(db).find_cycle()
    if cycle is not None:
        logger.warning("Stored relationships contain a cycle: %s", cycle)
    return cycle
