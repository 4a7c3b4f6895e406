"""SQLite access for the deferit item store.

DeferDB owns one connection to the items database and hands out
transactions. It is the only place that talks to ``sqlite3`` directly;
``deferit.crud`` builds on its execute/fetch helpers.

Notes:
- The connection opens on ``__enter__`` and closes on ``__exit__``
- ``PRAGMA foreign_keys = ON`` is set per connection so deleting an item
  cascades to its relationships
- One DeferDB per thread; the object keeps transaction state of its own
- ``transaction(immediate=True)`` takes SQLite's write lock at BEGIN. A
  writer that reads the graph, validates, then inserts must use it, or
  another writer could commit an edge between the check and the insert
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any

from deferit.schema import init_database

if TYPE_CHECKING:
    from types import TracebackType

logger = logging.getLogger(__name__)

DEFAULT_BUSY_TIMEOUT = 5.0

Params = tuple[Any, ...] | dict[str, Any]


class DatabaseError(Exception):
    """Base exception for storage failures."""


class ConnectionError(DatabaseError):
    """The database file could not be created or opened."""


class TransactionError(DatabaseError):
    """BEGIN, COMMIT or ROLLBACK failed (a busy lock included)."""


class DeferDB:
    """Connection manager for a deferit items database.

    Example usage:
        >>> with DeferDB(".deferit/items.db") as db:
        ...     with db.transaction(immediate=True):
        ...         db.execute("INSERT INTO relationships ...")

    Attributes:
        db_path: Location of the SQLite file.
        auto_init: Apply the schema when the file does not exist yet.
        timeout: Seconds to wait on another writer's lock.
    """

    def __init__(
        self,
        db_path: str | Path,
        *,
        auto_init: bool = True,
        timeout: float = DEFAULT_BUSY_TIMEOUT,
    ) -> None:
        self.db_path = Path(db_path)
        self.auto_init = auto_init
        self.timeout = timeout
        self._connection: sqlite3.Connection | None = None
        self._in_transaction: bool = False

    def __enter__(self) -> DeferDB:
        self._open()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        # Commit/rollback belongs to transaction(); leaving just closes.
        self._close()

    def _open(self) -> None:
        """Connect, creating the schema first when allowed.

        Raises:
            ConnectionError: If the file cannot be initialized or opened.
        """
        if self._connection is not None:
            return

        if self.auto_init and not self.db_path.exists():
            try:
                init_database(self.db_path)
            except (sqlite3.Error, OSError) as e:
                raise ConnectionError(f"Failed to initialize database: {e}") from e

        try:
            connection = sqlite3.connect(str(self.db_path), timeout=self.timeout)
            connection.execute("PRAGMA foreign_keys = ON")
            connection.row_factory = sqlite3.Row
        except sqlite3.Error as e:
            raise ConnectionError(f"Failed to connect to database: {e}") from e

        self._connection = connection
        logger.debug("Opened database %s", self.db_path)

    def _close(self) -> None:
        if self._connection is None:
            return
        self._connection.close()
        self._connection = None
        logger.debug("Closed database %s", self.db_path)

    @property
    def connection(self) -> sqlite3.Connection:
        """The open sqlite3 connection.

        Raises:
            ConnectionError: Outside a ``with DeferDB(...)`` block.
        """
        if self._connection is None:
            raise ConnectionError("Database not connected. Use 'with DeferDB(...)' context.")
        return self._connection

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    @property
    def in_transaction(self) -> bool:
        return self._in_transaction

    @contextmanager
    def transaction(self, *, immediate: bool = False) -> Iterator[None]:
        """Run the block as one transaction.

        Commits when the block finishes, rolls back when it raises. A
        transaction opened inside another one joins the outer transaction
        (no savepoints), so only the outermost block commits.

        Args:
            immediate: Use ``BEGIN IMMEDIATE`` so the write lock is held
                from the start instead of from the first write.

        Raises:
            ConnectionError: If not connected.
            TransactionError: If the transaction cannot begin or end.
        """
        # Fail before touching transaction state.
        _ = self.connection

        if self._in_transaction:
            yield
            return

        self._in_transaction = True
        try:
            self.begin_transaction(immediate=immediate)
            yield
            self.commit()
        except Exception:
            self.rollback()
            raise
        finally:
            self._in_transaction = False

    def _control(self, statement: str, action: str) -> None:
        try:
            if statement == "COMMIT":
                self.connection.commit()
            elif statement == "ROLLBACK":
                self.connection.rollback()
            else:
                self.connection.execute(statement)
        except sqlite3.Error as e:
            raise TransactionError(f"Failed to {action} transaction: {e}") from e

    def begin_transaction(self, *, immediate: bool = False) -> None:
        """Issue BEGIN (or BEGIN IMMEDIATE) by hand.

        Prefer transaction(); this exists for callers that manage commit
        and rollback themselves.

        Raises:
            TransactionError: If BEGIN fails, e.g. the lock wait timed out.
        """
        self._control("BEGIN IMMEDIATE" if immediate else "BEGIN", "begin")

    def commit(self) -> None:
        self._control("COMMIT", "commit")

    def rollback(self) -> None:
        self._control("ROLLBACK", "rollback")

    def execute(self, sql: str, parameters: Params = ()) -> sqlite3.Cursor:
        """Run one statement and return its cursor.

        Raises:
            ConnectionError: If not connected.
            sqlite3.Error: Driver errors (constraint violations included)
                are passed through unchanged.
        """
        return self.connection.execute(sql, parameters)

    def fetchone(self, sql: str, parameters: Params = ()) -> sqlite3.Row | None:
        row: sqlite3.Row | None = self.execute(sql, parameters).fetchone()
        return row

    def fetchall(self, sql: str, parameters: Params = ()) -> list[sqlite3.Row]:
        return self.execute(sql, parameters).fetchall()

    def table_exists(self, table_name: str) -> bool:
        row = self.fetchone(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
            (table_name,),
        )
        return row is not None
