"""CRUD operations for deferred items and their relationships.

Provides basic create, read, update, and delete operations for:
- Items (the records the dependency graph is built from)
- Relationships between items, of every kind
- Snapshot loading for the graph engine
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

from deferit.database import DeferDB
from deferit.models import Priority, Record, Relationship, RelationshipKind, Status

MAX_TITLE_LENGTH = 512
MAX_TAG_LENGTH = 64


def _validate_id(item_id: int, field_name: str = "item_id") -> None:
    """Validate an item id.

    Raises:
        ValueError: If the id is not a positive integer.
    """
    if isinstance(item_id, bool) or not isinstance(item_id, int) or item_id <= 0:
        raise ValueError(f"{field_name} must be a positive integer")


def _validate_title(title: str) -> None:
    """Validate an item title.

    Raises:
        ValueError: If title is empty or exceeds max length.
    """
    if not title or not title.strip():
        raise ValueError("title cannot be empty")
    if len(title) > MAX_TITLE_LENGTH:
        raise ValueError(f"title exceeds maximum length ({MAX_TITLE_LENGTH})")


def _normalize_tags(tags: Iterable[str] | None) -> list[str]:
    """Strip, lowercase and de-duplicate tags, keeping first-seen order.

    Raises:
        ValueError: If a tag exceeds max length.
    """
    result: list[str] = []
    for tag in tags or ():
        cleaned = tag.strip().lower()
        if not cleaned:
            continue
        if len(cleaned) > MAX_TAG_LENGTH:
            raise ValueError(f"tag exceeds maximum length ({MAX_TAG_LENGTH}): {cleaned[:20]}...")
        if cleaned not in result:
            result.append(cleaned)
    return result


def _row_to_dict(row: Any) -> dict[str, Any]:
    """Convert an items/relationships row to a plain dict (tags decoded)."""
    if row is None:
        return {}
    data = dict(row)
    if isinstance(data.get("tags"), str):
        data["tags"] = json.loads(data["tags"] or "[]")
    return data


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# Items CRUD Operations


def create_item(
    db: DeferDB,
    title: str,
    *,
    context: str = "",
    priority: Priority | str = Priority.MEDIUM,
    status: Status | str = Status.PENDING,
    tags: Iterable[str] | None = None,
) -> dict[str, Any]:
    """Create a new item.

    Args:
        db: Database connection.
        title: Short description of the deferred decision or task.
        context: Optional longer notes.
        priority: low, medium or high.
        status: Initial status, pending unless given.
        tags: Optional tags.

    Returns:
        Dictionary with created item data.

    Raises:
        ValueError: If title, priority, status or tags are invalid.
    """
    _validate_title(title)
    priority = Priority.parse(priority)
    status = Status.parse(status)
    tag_list = _normalize_tags(tags)

    now = _now()
    cursor = db.execute(
        """
        INSERT INTO items (title, context, status, priority, tags, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (title.strip(), context, status.value, priority.value, json.dumps(tag_list), now, now),
    )

    result = db.fetchone("SELECT * FROM items WHERE id = ?", (cursor.lastrowid,))
    return _row_to_dict(result)


def get_item(db: DeferDB, item_id: int) -> dict[str, Any] | None:
    """Get an item by id, or None if not found."""
    result = db.fetchone("SELECT * FROM items WHERE id = ?", (item_id,))
    return _row_to_dict(result) if result is not None else None


def list_items(db: DeferDB, status: Status | str | None = None) -> list[dict[str, Any]]:
    """List items, optionally only those with the given status.

    Returns:
        List of item dictionaries, sorted by id.
    """
    if status is None:
        results = db.fetchall("SELECT * FROM items ORDER BY id")
    else:
        results = db.fetchall(
            "SELECT * FROM items WHERE status = ? ORDER BY id",
            (Status.parse(status).value,),
        )
    return [_row_to_dict(row) for row in results]


def update_item(
    db: DeferDB,
    item_id: int,
    *,
    title: str | None = None,
    context: str | None = None,
    priority: Priority | str | None = None,
    status: Status | str | None = None,
    tags: Iterable[str] | None = None,
) -> bool:
    """Update the given fields of an item.

    Returns:
        True if row was updated, False if item not found or nothing to change.

    Raises:
        ValueError: If any new value is invalid.
    """
    assignments: list[str] = []
    params: list[Any] = []

    if title is not None:
        _validate_title(title)
        assignments.append("title = ?")
        params.append(title.strip())
    if context is not None:
        assignments.append("context = ?")
        params.append(context)
    if priority is not None:
        assignments.append("priority = ?")
        params.append(Priority.parse(priority).value)
    if status is not None:
        assignments.append("status = ?")
        params.append(Status.parse(status).value)
    if tags is not None:
        assignments.append("tags = ?")
        params.append(json.dumps(_normalize_tags(tags)))

    if not assignments:
        return False

    assignments.append("updated_at = ?")
    params.extend([_now(), item_id])
    cursor = db.execute(
        f"UPDATE items SET {', '.join(assignments)} WHERE id = ?",  # noqa: S608
        tuple(params),
    )
    return cursor.rowcount > 0


def update_item_status(db: DeferDB, item_id: int, status: Status | str) -> bool:
    """Set an item's status. Returns False if the item does not exist."""
    return update_item(db, item_id, status=status)


def delete_item(db: DeferDB, item_id: int) -> bool:
    """Delete an item by id.

    Cascade deletes all relationships involving this item.

    Returns:
        True if row was deleted, False if item not found.
    """
    cursor = db.execute("DELETE FROM items WHERE id = ?", (item_id,))
    return cursor.rowcount > 0


# Relationships CRUD Operations


def add_relationship(
    db: DeferDB,
    source_id: int,
    target_id: int,
    kind: RelationshipKind | str = RelationshipKind.BLOCKS,
) -> dict[str, Any]:
    """Store a relationship: source_id depends on (or relates to) target_id.

    Performs no cycle check; use ``deferit.services.add_relationship`` for
    validated writes.

    Returns:
        Dictionary with the stored relationship.

    Raises:
        ValueError: If ids or kind are invalid, or source_id == target_id.
        sqlite3.IntegrityError: If items don't exist or the pair is already linked.
    """
    _validate_id(source_id, "source_id")
    _validate_id(target_id, "target_id")
    if source_id == target_id:
        raise ValueError("An item cannot be related to itself")
    kind = RelationshipKind.parse(kind)

    db.execute(
        """
        INSERT INTO relationships (source_id, target_id, kind, created_at)
        VALUES (?, ?, ?, ?)
        """,
        (source_id, target_id, kind.value, _now()),
    )
    result = db.fetchone(
        "SELECT * FROM relationships WHERE source_id = ? AND target_id = ?",
        (source_id, target_id),
    )
    return _row_to_dict(result)


def get_relationship(db: DeferDB, source_id: int, target_id: int) -> dict[str, Any] | None:
    result = db.fetchone(
        "SELECT * FROM relationships WHERE source_id = ? AND target_id = ?",
        (source_id, target_id),
    )
    return _row_to_dict(result) if result is not None else None


def remove_relationship(
    db: DeferDB,
    source_id: int,
    target_id: int,
    kind: RelationshipKind | str | None = None,
) -> bool:
    """Remove a relationship, optionally only if it is of the given kind.

    Returns:
        True if a relationship was removed, False if not found.
    """
    if kind is None:
        cursor = db.execute(
            "DELETE FROM relationships WHERE source_id = ? AND target_id = ?",
            (source_id, target_id),
        )
    else:
        cursor = db.execute(
            "DELETE FROM relationships WHERE source_id = ? AND target_id = ? AND kind = ?",
            (source_id, target_id, RelationshipKind.parse(kind).value),
        )
    return cursor.rowcount > 0


def list_relationships(db: DeferDB, item_id: int | None = None) -> list[dict[str, Any]]:
    """List relationships of every kind.

    Args:
        db: Database connection.
        item_id: If given, only relationships where the item is either end.

    Returns:
        List of relationship dictionaries, sorted by (source_id, target_id).
    """
    if item_id is None:
        results = db.fetchall("SELECT * FROM relationships ORDER BY source_id, target_id")
    else:
        results = db.fetchall(
            """
            SELECT * FROM relationships
            WHERE source_id = ? OR target_id = ?
            ORDER BY source_id, target_id
            """,
            (item_id, item_id),
        )
    return [_row_to_dict(row) for row in results]


def get_dependencies(db: DeferDB, item_id: int) -> list[dict[str, Any]]:
    """Relationships where item_id is the source (what it depends on or relates to)."""
    results = db.fetchall(
        "SELECT * FROM relationships WHERE source_id = ? ORDER BY target_id",
        (item_id,),
    )
    return [_row_to_dict(row) for row in results]


# Snapshot


def get_snapshot_version(db: DeferDB) -> int:
    """Counter bumped by triggers on every item or relationship write."""
    row = db.fetchone("SELECT value FROM metadata WHERE key = 'snapshot_version'")
    return int(row["value"]) if row is not None else 0


def load_snapshot(db: DeferDB) -> tuple[list[Record], list[Relationship]]:
    """Read every item and relationship as graph-engine inputs.

    Run inside a transaction when the snapshot must be consistent with a
    subsequent write.
    """
    records = [Record.from_row(row) for row in db.fetchall("SELECT * FROM items ORDER BY id")]
    edges = [
        Relationship.from_row(row)
        for row in db.fetchall("SELECT * FROM relationships ORDER BY source_id, target_id")
    ]
    return records, edges
