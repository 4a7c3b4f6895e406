"""Shared plumbing for deferit commands.

Covers locating the project (the directory that contains ``.deferit/``),
turning command-line options into a DeferConfig, printing fatal errors with
the right exit code, and routing ``deferit.*`` log records through Rich.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler

from deferit.config import DeferConfig, load_config

EXIT_SUCCESS = 0
EXIT_USER_ERROR = 1  # bad input, unknown item, rejected cycle, ...
EXIT_SYSTEM_ERROR = 2  # unreadable or locked database, I/O failure, ...

DEFAULT_MARKER = ".deferit"


class ProjectRootNotFoundError(Exception):
    """No ancestor of the start directory contains the data directory."""

    def __init__(self, start_dir: Path, marker: str = DEFAULT_MARKER) -> None:
        self.start_dir = start_dir
        self.marker = marker
        super().__init__(
            f"Could not find project root (no '{marker}/' directory in {start_dir} "
            "or its parents). Run 'deferit init' first."
        )


def error(msg: str, *, exit_code: int = EXIT_USER_ERROR) -> NoReturn:
    """Print ``Error: msg`` to stderr and leave with ``exit_code``."""
    prefix = typer.style("Error:", fg=typer.colors.RED, bold=True)
    typer.echo(f"{prefix} {msg}", err=True)
    raise typer.Exit(code=exit_code)


def find_project_root(start_dir: Path | None = None, marker: str = DEFAULT_MARKER) -> Path:
    """Closest directory at or above ``start_dir`` that has a ``marker`` subdirectory.

    Raises:
        ProjectRootNotFoundError: If the filesystem root is reached first.
        PermissionError: If a directory on the way cannot be inspected.
    """
    start = (start_dir or Path.cwd()).resolve()

    for directory in (start, *start.parents):
        try:
            found = (directory / marker).is_dir()
        except PermissionError as e:
            raise PermissionError(
                f"Permission denied while looking for {marker}/ in {directory}"
            ) from e
        if found:
            return directory

    raise ProjectRootNotFoundError(start, marker)


def wire_config(
    data_dir: str | None = None,
    db_name: str | None = None,
    log_level: str | None = None,
    start_dir: Path | None = None,
) -> DeferConfig:
    """Load the configuration with the given options as top-priority overrides.

    Raises:
        typer.Exit: With EXIT_USER_ERROR if the result does not validate.
    """
    overrides: dict[str, Any] = {"data_dir": data_dir, "db_name": db_name, "log_level": log_level}
    try:
        return load_config(cli_overrides=overrides, start_dir=start_dir)
    except ValueError as e:
        error(f"Invalid configuration: {e}")


def resolve_db_path(data_dir: str | None = None) -> tuple[DeferConfig, Path]:
    """Find the project from the current directory and return (config, database path).

    Raises:
        typer.Exit: If there is no project or its database file is missing.
    """
    try:
        root = find_project_root(marker=data_dir or DEFAULT_MARKER)
    except ProjectRootNotFoundError as e:
        error(str(e))

    config = wire_config(data_dir=data_dir, start_dir=root)
    db_path = config.get_db_path(root)
    if not db_path.exists():
        error(f"Database not found: {db_path}. Run 'deferit init' first.")
    return config, db_path


def configure_logging(level: str = "WARNING", console: Console | None = None) -> None:
    """Send ``deferit`` log records to stderr through Rich.

    Calling it again replaces the handler installed by the previous call.
    """
    package_logger = logging.getLogger("deferit")
    for handler in [h for h in package_logger.handlers if isinstance(h, RichHandler)]:
        package_logger.removeHandler(handler)

    rich_handler = RichHandler(
        console=console or Console(stderr=True),
        show_time=False,
        show_path=False,
    )
    rich_handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    package_logger.addHandler(rich_handler)
    package_logger.setLevel(level.upper())
    package_logger.propagate = False


# Typer binds an Option object to a single parameter, so every command
# asks these factories for a fresh one.


def data_dir_option() -> Any:
    return typer.Option(
        None,
        "--data-dir",
        help="Name of the data directory (default: .deferit).",
        envvar="DEFERIT_DATA_DIR",
    )


def json_option() -> Any:
    return typer.Option(False, "--json", help="Output as JSON.")


def quiet_option() -> Any:
    return typer.Option(False, "--quiet", "-q", help="Minimal output for scripts.")
