"""Database schema management for deferit."""

from __future__ import annotations

import logging
import sqlite3
from importlib import resources
from pathlib import Path

logger = logging.getLogger(__name__)

SCHEMA_RESOURCE = "schema.sql"


def get_schema() -> str:
    """Load the database schema from package resources.

    Returns:
        The SQL schema as a string.

    Raises:
        FileNotFoundError: If schema.sql is not found in package resources.
    """
    return resources.files("deferit.data").joinpath(SCHEMA_RESOURCE).read_text(encoding="utf-8")


def init_database(db_path: str | Path) -> None:
    """Create (or upgrade in place) a deferit database.

    The schema only uses ``IF NOT EXISTS`` / ``OR IGNORE`` statements, so
    applying it to an existing database leaves stored items and
    relationships untouched.

    Args:
        db_path: Path to the SQLite database file.

    Raises:
        sqlite3.Error: If database initialization fails.
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    logger.debug("Applying schema to %s", db_path)
    connection = sqlite3.connect(str(db_path))
    try:
        connection.executescript(get_schema())
        connection.commit()
    finally:
        connection.close()
