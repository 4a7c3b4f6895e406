"""Settings for the deferit CLI.

Values are layered, highest priority first:

1. command-line options
2. ``DEFERIT_*`` environment variables
3. the nearest ``.deferitrc`` (TOML)
4. ``[tool.deferit]`` in the nearest ``pyproject.toml``
5. the defaults on ``DeferConfig``
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

# tomllib joined the standard library in 3.11
if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

logger = logging.getLogger(__name__)

CONFIG_FILENAME = ".deferitrc"
ENV_PREFIX = "DEFERIT_"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class DeferConfig:
    """Resolved settings.

    Attributes:
        data_dir: Directory (relative to the project root) that holds the
            database and marks a deferit project. Default ".deferit".
        db_name: Database file inside data_dir. Default "items.db".
        log_level: Level for the CLI's log handler. Default "WARNING".
        busy_timeout: Seconds a writer waits on another writer's lock.
    """

    data_dir: str = ".deferit"
    db_name: str = "items.db"
    log_level: str = "WARNING"
    busy_timeout: float = 5.0

    def __post_init__(self) -> None:
        self._validate()

    def _validate(self) -> None:
        """Check and normalize every field.

        Raises:
            ValueError: On the first invalid field.
        """
        for name in ("data_dir", "db_name"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value:
                raise ValueError(f"{name} must be a non-empty string")
        if not self.db_name.endswith(".db"):
            raise ValueError("db_name must end with .db")

        level = self.log_level.upper() if isinstance(self.log_level, str) else ""
        if level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of: {', '.join(LOG_LEVELS)}")
        self.log_level = level

        try:
            self.busy_timeout = float(self.busy_timeout)
        except (TypeError, ValueError):
            raise ValueError("busy_timeout must be a number") from None
        if self.busy_timeout < 0:
            raise ValueError("busy_timeout must not be negative")

    def get_data_path(self, base_path: Path | None = None) -> Path:
        """Data directory under ``base_path`` (the current directory if omitted)."""
        return (base_path or Path.cwd()) / self.data_dir

    def get_db_path(self, base_path: Path | None = None) -> Path:
        return self.get_data_path(base_path) / self.db_name


def _field_names() -> set[str]:
    return {f.name for f in fields(DeferConfig)}


def _known_fields(data: dict[str, Any]) -> dict[str, Any]:
    names = _field_names()
    return {k: v for k, v in data.items() if k in names}


def find_config_file(filename: str = CONFIG_FILENAME, start_dir: Path | None = None) -> Path | None:
    """Return the closest ``filename`` at or above ``start_dir``, or None.

    The search starts in ``start_dir`` (default: the current directory) and
    walks parent directories up to the filesystem root.
    """
    directory = (start_dir or Path.cwd()).resolve()
    for candidate_dir in (directory, *directory.parents):
        candidate = candidate_dir / filename
        if candidate.is_file():
            return candidate
    return None


def _read_toml(path: Path) -> dict[str, Any] | None:
    """Parse a TOML file; unreadable files are logged and skipped."""
    try:
        with open(path, "rb") as f:
            data: dict[str, Any] = tomllib.load(f)
    except (tomllib.TOMLDecodeError, OSError) as e:
        logger.warning("Ignoring unreadable config file %s: %s", path, e)
        return None
    return data


def _load_from_rcfile(start_dir: Path | None = None) -> dict[str, Any]:
    path = find_config_file(CONFIG_FILENAME, start_dir)
    data = _read_toml(path) if path is not None else None
    return _known_fields(data or {})


def _load_from_pyproject(start_dir: Path | None = None) -> dict[str, Any]:
    """Settings from the ``[tool.deferit]`` table of the nearest pyproject.toml."""
    path = find_config_file("pyproject.toml", start_dir)
    data = _read_toml(path) if path is not None else None
    section = (data or {}).get("tool", {}).get("deferit", {})
    return _known_fields(section)


def _load_from_env() -> dict[str, Any]:
    """Settings from DEFERIT_DATA_DIR, DEFERIT_DB_NAME, DEFERIT_LOG_LEVEL, DEFERIT_BUSY_TIMEOUT."""
    return {
        name: os.environ[f"{ENV_PREFIX}{name.upper()}"]
        for name in sorted(_field_names())
        if f"{ENV_PREFIX}{name.upper()}" in os.environ
    }


def _merge_configs(*layers: dict[str, Any]) -> dict[str, Any]:
    """Overlay layers left to right; None never overrides a value."""
    merged: dict[str, Any] = {}
    for layer in layers:
        merged.update({k: v for k, v in layer.items() if v is not None})
    return merged


def load_config(
    cli_overrides: dict[str, Any] | None = None,
    start_dir: Path | None = None,
) -> DeferConfig:
    """Build the effective configuration for a command.

    Args:
        cli_overrides: Option values from the command line; None entries and
            unknown keys are ignored.
        start_dir: Where to start looking for config files.

    Raises:
        ValueError: If the merged values do not validate.
    """
    merged = _merge_configs(
        _load_from_pyproject(start_dir),
        _load_from_rcfile(start_dir),
        _load_from_env(),
        _known_fields(cli_overrides or {}),
    )
    return DeferConfig(**merged)
