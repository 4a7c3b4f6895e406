"""Records, relationships and the value types they are built from.

The graph engine only ever sees these read-only views; the storage layer
(``deferit.crud``) owns the rows they are built from.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class _ParseableEnum(str, Enum):
    @classmethod
    def parse(cls, value: str | _ParseableEnum) -> Any:
        """Convert a raw string into the enum member.

        Raises:
            ValueError: If value is not one of the allowed values.
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            allowed = ", ".join(m.value for m in cls)
            message = f"Invalid {cls._label()}: {value}. Must be one of: {allowed}"
            raise ValueError(message) from None

    @classmethod
    def values(cls) -> list[str]:
        return [m.value for m in cls]

    @classmethod
    def _label(cls) -> str:
        return cls.__name__.lower()

    def __str__(self) -> str:
        return str(self.value)


class Status(_ParseableEnum):
    """Lifecycle state of a deferred item."""

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    DONE = "done"
    ARCHIVED = "archived"

    @property
    def is_complete(self) -> bool:
        """Done and archived items no longer block anything."""
        return self in (Status.DONE, Status.ARCHIVED)


class Priority(_ParseableEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        """Sort key: high sorts first."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {Priority.HIGH: 0, Priority.MEDIUM: 1, Priority.LOW: 2}


class RelationshipKind(_ParseableEnum):
    """How a source item relates to its target item."""

    BLOCKS = "blocks"
    PARENT_OF = "parent-of"
    RELATES_TO = "relates-to"
    DUPLICATES = "duplicates"

    @classmethod
    def _label(cls) -> str:
        return "relationship kind"


BLOCKING_KINDS = frozenset({RelationshipKind.BLOCKS, RelationshipKind.PARENT_OF})


def is_blocking_semantics(kind: RelationshipKind | str) -> bool:
    """Return True if edges of this kind take part in cycle checks and ordering.

    ``blocks`` and ``parent-of`` are blocking; ``relates-to`` and
    ``duplicates`` are informational. Unknown kinds are never blocking.
    """
    try:
        return RelationshipKind.parse(kind) in BLOCKING_KINDS
    except ValueError:
        return False


@dataclass(frozen=True)
class Record:
    """Read-only view of a stored item."""

    id: int
    status: Status = Status.PENDING
    priority: Priority = Priority.MEDIUM
    title: str = ""
    tags: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_complete(self) -> bool:
        return self.status.is_complete

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Record:
        """Build a Record from an ``items`` row (sqlite3.Row or dict)."""
        tags = row["tags"] if "tags" in row.keys() else "[]"
        if isinstance(tags, str):
            tags = json.loads(tags or "[]")
        return cls(
            id=int(row["id"]),
            status=Status.parse(row["status"]),
            priority=Priority.parse(row["priority"]),
            title=row["title"] if "title" in row.keys() else "",
            tags=tuple(tags),
        )


@dataclass(frozen=True)
class Relationship:
    """Directed edge: ``source_id`` depends on ``target_id``."""

    source_id: int
    target_id: int
    kind: RelationshipKind = RelationshipKind.BLOCKS

    @property
    def is_blocking(self) -> bool:
        return is_blocking_semantics(self.kind)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Relationship:
        """Build a Relationship from a ``relationships`` row."""
        return cls(
            source_id=int(row["source_id"]),
            target_id=int(row["target_id"]),
            kind=RelationshipKind.parse(row["kind"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "target_id": self.target_id,
            "kind": self.kind.value,
        }
