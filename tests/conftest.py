"""Pytest configuration and shared fixtures for deferit tests."""

from __future__ import annotations

import os
import tempfile
from collections.abc import Callable, Generator
from pathlib import Path

import pytest

# Fixed terminal size so Rich output does not wrap differently in CI.
# This must be set before any Rich imports
os.environ.setdefault("COLUMNS", "200")
os.environ.setdefault("LINES", "50")
os.environ.setdefault("TERM", "dumb")

from deferit import crud  # noqa: E402
from deferit.database import DeferDB  # noqa: E402


@pytest.fixture(autouse=True)
def _clean_deferit_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep DEFERIT_* variables from the developer's shell out of tests."""
    for key in list(os.environ):
        if key.startswith("DEFERIT_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def temp_db_path() -> Generator[Path, None, None]:
    """Create a temporary database path."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "test.db"


@pytest.fixture
def initialized_db(temp_db_path: Path) -> Generator[DeferDB, None, None]:
    """Create a connected DeferDB instance."""
    with DeferDB(temp_db_path) as db:
        yield db


@pytest.fixture
def make_items(initialized_db: DeferDB) -> Callable[..., list[int]]:
    """Return a helper that creates items by title and returns their ids."""

    def _make(*titles: str, **fields: object) -> list[int]:
        ids = []
        with initialized_db.transaction():
            for title in titles:
                ids.append(crud.create_item(initialized_db, title, **fields)["id"])  # type: ignore[arg-type]
        return ids

    return _make
