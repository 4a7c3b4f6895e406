"""deferit CLI - main entry point."""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from deferit import __version__, crud, services
from deferit.cli_utils import (
    EXIT_SYSTEM_ERROR,
    EXIT_USER_ERROR,
    configure_logging,
    data_dir_option,
    json_option,
    quiet_option,
    resolve_db_path,
    wire_config,
)
from deferit.database import DatabaseError, DeferDB
from deferit.graph import format_path
from deferit.models import Status
from deferit.schema import init_database

app = typer.Typer(
    name="deferit",
    help="deferit - defer decisions and tasks, and work them in dependency order.",
    add_completion=False,
)

# Rich consoles for output
console = Console()
err_console = Console(stderr=True)


# -----------------------------------------------------------------------------
# Output Helpers
# -----------------------------------------------------------------------------


def _output_success(message: str, quiet: bool = False) -> None:
    if not quiet:
        console.print(f"[green]Success:[/green] {message}")


def _output_error(message: str) -> None:
    err_console.print(f"[red]Error:[/red] {message}")


def _output_warning(message: str, quiet: bool = False) -> None:
    if not quiet:
        err_console.print(f"[yellow]Warning:[/yellow] {message}")


def _output_info(message: str, quiet: bool = False) -> None:
    if not quiet:
        console.print(message)


def _output_json(data: Any) -> None:
    console.print_json(json.dumps(data))


def _exit_error(message: str, exit_code: int = EXIT_USER_ERROR) -> NoReturn:
    """Print error and exit."""
    _output_error(message)
    raise typer.Exit(code=exit_code)


def _fail(
    message: str, json_output: bool, exit_code: int = EXIT_USER_ERROR, **extra: Any
) -> NoReturn:
    """Report a failure as JSON or text, then exit."""
    if json_output:
        _output_json({"success": False, "error": message, **extra})
        raise typer.Exit(code=exit_code)
    _exit_error(message, exit_code)


@contextmanager
def _open_db(data_dir: str | None) -> Iterator[DeferDB]:
    """Open the project database, turning storage failures into exit code 2."""
    config, db_path = resolve_db_path(data_dir)
    try:
        with DeferDB(db_path, auto_init=False, timeout=config.busy_timeout) as db:
            yield db
    except (DatabaseError, sqlite3.OperationalError) as e:
        _exit_error(f"Database error: {e}", EXIT_SYSTEM_ERROR)


def _parse_choice(parser: Any, value: str | None) -> Any:
    if value is None:
        return None
    try:
        return parser(value)
    except ValueError as e:
        _exit_error(str(e))


# -----------------------------------------------------------------------------
# Version and Main Callbacks
# -----------------------------------------------------------------------------


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"deferit version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        help="Log what the engine is doing to stderr.",
    ),
    log_level: str | None = typer.Option(
        None,
        "--log-level",
        help="Logging level (DEBUG, INFO, WARNING, ERROR).",
    ),
) -> None:
    """deferit - defer decisions and tasks, and work them in dependency order."""
    level = "DEBUG" if verbose else wire_config(log_level=log_level).log_level
    configure_logging(level, err_console)


# -----------------------------------------------------------------------------
# Init Command
# -----------------------------------------------------------------------------


@app.command()
def init(
    path: str | None = typer.Argument(
        None,
        help="Directory to initialize. Defaults to current directory.",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Recreate the database even if it already exists.",
    ),
    data_dir: str | None = data_dir_option(),
    quiet: bool = quiet_option(),
) -> None:
    """Create the .deferit/ data directory and an empty database."""
    target = Path(path).resolve() if path else Path.cwd()
    if not target.is_dir():
        _exit_error(f"Not a directory: {target}")

    config = wire_config(data_dir=data_dir, start_dir=target)
    db_path = config.get_db_path(target)

    if db_path.exists() and not force:
        _output_warning(f"deferit already initialized at {db_path.parent}", quiet)
        return

    if db_path.exists():
        db_path.unlink()

    try:
        init_database(db_path)
    except (sqlite3.Error, OSError) as e:
        _exit_error(f"Failed to initialize database: {e}", EXIT_SYSTEM_ERROR)

    _output_success(f"Initialized deferit at {db_path.parent}", quiet)


# -----------------------------------------------------------------------------
# Item Commands
# -----------------------------------------------------------------------------


@app.command()
def add(
    title: str = typer.Argument(..., help="What is being deferred."),
    priority: str = typer.Option("medium", "--priority", "-p", help="low, medium or high."),
    tag: list[str] | None = typer.Option(None, "--tag", "-t", help="Tag (repeatable)."),
    context: str = typer.Option("", "--context", "-c", help="Longer notes."),
    data_dir: str | None = data_dir_option(),
    json_output: bool = json_option(),
    quiet: bool = quiet_option(),
) -> None:
    """Capture a new deferred item."""
    with _open_db(data_dir) as db:
        try:
            with db.transaction():
                item = crud.create_item(db, title, context=context, priority=priority, tags=tag)
        except ValueError as e:
            _fail(str(e), json_output)

    if json_output:
        _output_json({"success": True, "item": item})
    elif quiet:
        console.print(str(item["id"]))
    else:
        _output_success(f"Captured item #{item['id']}: {escape(item['title'])}")


@app.command("list")
def list_items(
    status: str | None = typer.Option(None, "--status", "-s", help="Only items with this status."),
    data_dir: str | None = data_dir_option(),
    json_output: bool = json_option(),
    quiet: bool = quiet_option(),
) -> None:
    """List items."""
    status_filter = _parse_choice(Status.parse, status)

    with _open_db(data_dir) as db:
        items = crud.list_items(db, status_filter)

    if json_output:
        _output_json({"items": items, "total": len(items)})
        return

    if not items:
        _output_info("No items.", quiet)
        return

    if quiet:
        for item in items:
            console.print(str(item["id"]))
        return

    table = Table(title="Items")
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Title", style="green")
    table.add_column("Status")
    table.add_column("Priority")
    table.add_column("Tags")

    for item in items:
        table.add_row(
            str(item["id"]),
            escape(item["title"]),
            item["status"],
            item["priority"],
            ", ".join(item["tags"]) or "-",
        )

    console.print(table)


@app.command()
def update(
    item_id: int = typer.Argument(..., help="Item ID."),
    title: str | None = typer.Option(None, "--title", help="New title."),
    status: str | None = typer.Option(None, "--status", "-s", help="New status."),
    priority: str | None = typer.Option(None, "--priority", "-p", help="New priority."),
    tag: list[str] | None = typer.Option(None, "--tag", "-t", help="Replace tags (repeatable)."),
    context: str | None = typer.Option(None, "--context", "-c", help="New notes."),
    data_dir: str | None = data_dir_option(),
    json_output: bool = json_option(),
    quiet: bool = quiet_option(),
) -> None:
    """Update an item's fields."""
    with _open_db(data_dir) as db:
        try:
            with db.transaction():
                changed = crud.update_item(
                    db,
                    item_id,
                    title=title,
                    status=status,
                    priority=priority,
                    tags=tag or None,
                    context=context,
                )
        except ValueError as e:
            _fail(str(e), json_output)
        item = crud.get_item(db, item_id)

    if item is None:
        _fail(f"Item {item_id} not found", json_output)
    if json_output:
        _output_json({"success": True, "updated": changed, "item": item})
    elif changed:
        _output_success(f"Updated item #{item_id}", quiet)
    else:
        _output_info("Nothing to update.", quiet)


@app.command()
def done(
    item_id: int = typer.Argument(..., help="Item ID."),
    data_dir: str | None = data_dir_option(),
    json_output: bool = json_option(),
    quiet: bool = quiet_option(),
) -> None:
    """Mark an item done and show what it unblocks."""
    with _open_db(data_dir) as db, db.transaction(immediate=True):
        item = crud.get_item(db, item_id)
        if item is None:
            _fail(f"Item {item_id} not found", json_output)
        engine = services.load_engine(db)
        blockers = engine.active_blockers(item_id)
        # A finished item released its dependents when it was finished.
        already_complete = Status(item["status"]).is_complete
        unblocked = [] if already_complete else engine.items_unblocked_by(item_id)
        crud.update_item_status(db, item_id, Status.DONE)

    if json_output:
        _output_json(
            {"success": True, "id": item_id, "unblocked": unblocked, "open_blockers": blockers}
        )
        return

    _output_success(f"Completed item #{item_id}", quiet)
    if blockers:
        _output_warning(
            f"Completed while still blocked by: {', '.join(f'#{b}' for b in blockers)}", quiet
        )
    if unblocked:
        _output_info(f"  Now unblocked: {', '.join(f'#{u}' for u in unblocked)}", quiet)


@app.command()
def delete(
    item_id: int = typer.Argument(..., help="Item ID."),
    data_dir: str | None = data_dir_option(),
    json_output: bool = json_option(),
    quiet: bool = quiet_option(),
) -> None:
    """Delete an item and every relationship that mentions it."""
    with _open_db(data_dir) as db, db.transaction():
        removed = crud.delete_item(db, item_id)

    if not removed:
        _fail(f"Item {item_id} not found", json_output)
    if json_output:
        _output_json({"success": True, "id": item_id})
    else:
        _output_success(f"Deleted item #{item_id}", quiet)


# -----------------------------------------------------------------------------
# Relationship Commands
# -----------------------------------------------------------------------------


@app.command()
def link(
    source_id: int = typer.Argument(..., help="Item that depends on TARGET_ID."),
    target_id: int = typer.Argument(..., help="Item SOURCE_ID depends on."),
    kind: str = typer.Option(
        "blocks",
        "--kind",
        "-k",
        help="blocks, parent-of, relates-to or duplicates.",
    ),
    data_dir: str | None = data_dir_option(),
    json_output: bool = json_option(),
    quiet: bool = quiet_option(),
) -> None:
    """Add a relationship. Blocking kinds are rejected if they would create a cycle."""
    with _open_db(data_dir) as db:
        result = services.add_relationship(db, source_id, target_id, kind)

    if json_output:
        _output_json(result.to_dict())
        if not result.success:
            raise typer.Exit(code=EXIT_USER_ERROR)
        return

    if not result.success:
        _exit_error(result.error or "Could not add relationship")
    _output_success(f"#{source_id} {kind} #{target_id}", quiet)


@app.command()
def unlink(
    source_id: int = typer.Argument(..., help="Dependent item."),
    target_id: int = typer.Argument(..., help="Item it depended on."),
    kind: str | None = typer.Option(None, "--kind", "-k", help="Only remove this kind."),
    data_dir: str | None = data_dir_option(),
    json_output: bool = json_option(),
    quiet: bool = quiet_option(),
) -> None:
    """Remove a relationship."""
    with _open_db(data_dir) as db:
        result = services.remove_relationship(db, source_id, target_id, kind)

    if json_output:
        _output_json(result.to_dict())
        if not result.success:
            raise typer.Exit(code=EXIT_USER_ERROR)
        return

    if not result.success:
        _exit_error(result.error or "Could not remove relationship")
    _output_success(f"Removed #{source_id} -> #{target_id}", quiet)
    if result.unblocked_items:
        joined = ", ".join(f"#{i}" for i in result.unblocked_items)
        _output_info(f"  Now unblocked: {joined}", quiet)


@app.command()
def relations(
    item_id: int = typer.Argument(..., help="Item ID."),
    data_dir: str | None = data_dir_option(),
    json_output: bool = json_option(),
    quiet: bool = quiet_option(),
) -> None:
    """List every relationship an item takes part in, of any kind."""
    with _open_db(data_dir) as db:
        if crud.get_item(db, item_id) is None:
            _fail(f"Item {item_id} not found", json_output)
        rels = crud.list_relationships(db, item_id)

    if json_output:
        _output_json({"id": item_id, "relationships": rels})
        return

    if not rels:
        _output_info(f"Item #{item_id} has no relationships.", quiet)
        return

    table = Table(title=f"Relationships of #{item_id}")
    table.add_column("Source", style="cyan", justify="right")
    table.add_column("Kind", style="magenta")
    table.add_column("Target", style="cyan", justify="right")
    for rel in rels:
        table.add_row(f"#{rel['source_id']}", rel["kind"], f"#{rel['target_id']}")
    console.print(table)


# -----------------------------------------------------------------------------
# Graph Queries
# -----------------------------------------------------------------------------


@app.command()
def order(
    include_completed: bool = typer.Option(False, "--all", "-a", help="Include done/archived."),
    stats: bool = typer.Option(False, "--stats", help="Include graph statistics."),
    next_actions: bool = typer.Option(False, "--next", help="Include recommended next actions."),
    priority: list[str] | None = typer.Option(None, "--priority", "-p", help="Priority filter."),
    tag: list[str] | None = typer.Option(None, "--tag", "-t", help="Filter by tag (repeatable)."),
    limit: int | None = typer.Option(None, "--limit", "-n", min=1, help="Show at most N items."),
    data_dir: str | None = data_dir_option(),
    json_output: bool = json_option(),
    quiet: bool = quiet_option(),
) -> None:
    """Show items in the order they can be worked on."""
    with _open_db(data_dir) as db:
        result = services.get_resolution_order(
            db,
            include_completed=include_completed,
            include_stats=stats,
            include_next_actions=next_actions,
            priorities=priority,
            tags=tag,
            limit=limit,
        )

    if not result.success:
        _fail(result.error or "Could not compute order", json_output)
    if json_output:
        _output_json(result.to_dict())
        return

    if quiet:
        for item in result.order:
            console.print(str(item.id))
        return

    if not result.order:
        _output_info("Nothing to do.")
    else:
        table = Table(title="Resolution Order")
        table.add_column("#", justify="right")
        table.add_column("ID", style="cyan", justify="right")
        table.add_column("Title", style="green")
        table.add_column("Priority")
        table.add_column("Blocked by", justify="right")
        for item in result.order:
            blocked = f"[red]{item.blocker_count}[/red]" if item.is_blocked else "-"
            table.add_row(str(item.order), str(item.id), escape(item.title), item.priority, blocked)
        console.print(table)

    if result.unresolved:
        _output_warning(
            "These items sit on a dependency cycle and cannot really be ordered: "
            + ", ".join(f"#{i}" for i in result.unresolved)
        )
    if result.next_actions:
        _output_info("\n[bold]Next actions[/bold]")
        for action in result.next_actions:
            _output_info(f"  #{action.id} {escape(action.title)} ({action.reason})")
    if result.stats is not None:
        _print_stats(result.stats.to_dict())


@app.command()
def blocked(
    priority: list[str] | None = typer.Option(None, "--priority", "-p", help="Priority filter."),
    data_dir: str | None = data_dir_option(),
    json_output: bool = json_option(),
    quiet: bool = quiet_option(),
) -> None:
    """List items that are waiting on unfinished items."""
    with _open_db(data_dir) as db:
        result = services.get_blocked_items(db, priorities=priority)

    if not result.success:
        _fail(result.error or "Could not list blocked items", json_output)
    if json_output:
        _output_json(result.to_dict())
        return

    if not result.items:
        _output_info("No blocked items.", quiet)
        return

    if quiet:
        for entry in result.items:
            console.print(str(entry["id"]))
        return

    table = Table(title=f"Blocked Items ({result.total})")
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Title", style="green")
    table.add_column("Blocked by")
    table.add_column("All blockers", justify="right")
    for entry in result.items:
        table.add_row(
            str(entry["id"]),
            escape(entry["title"]),
            ", ".join(f"#{b['id']}" for b in entry["blocked_by"]),
            str(len(entry["transitive_blockers"])),
        )
    console.print(table)


@app.command()
def chain(
    item_id: int = typer.Argument(..., help="Item ID."),
    details: bool = typer.Option(False, "--details", help="Include item details."),
    dependents: bool = typer.Option(False, "--dependents", help="Show what it unblocks."),
    all_kinds: bool = typer.Option(False, "--all-kinds", help="List relationships of every kind."),
    data_dir: str | None = data_dir_option(),
    json_output: bool = json_option(),
    quiet: bool = quiet_option(),
) -> None:
    """Show the longest chain of items this one is waiting on."""
    with _open_db(data_dir) as db:
        result = services.get_dependency_chain(
            db,
            item_id,
            include_details=details,
            include_dependents=dependents,
            include_all_kinds=all_kinds,
            include_visualization=not json_output,
        )

    if not result.success:
        _fail(result.error or "Could not compute chain", json_output)
    if json_output:
        _output_json(result.to_dict())
        return

    if quiet:
        console.print(format_path(result.chain))
        return

    _output_info(f"[bold]Dependency chain for #{item_id}[/bold] (depth {result.depth})")
    _output_info(escape(result.visualization or ""), quiet)
    _output_info(f"  Open blockers (transitive): {result.total_blockers}")
    if result.would_unblock is not None:
        joined = ", ".join(f"#{i}" for i in result.would_unblock) or "nothing"
        _output_info(f"  Completing it unblocks: {joined}")
    if result.relationships:
        for rel in result.relationships:
            target_title = escape(rel.get("target_title") or "")
            _output_info(f"  {rel['kind']} #{rel['target_id']} {target_title}")


def _print_stats(data: dict[str, Any]) -> None:
    _output_info("\n[bold]Graph statistics[/bold]")
    _output_info(f"  Items: {data['total_items']}")
    _output_info(f"  With dependencies: {data['items_with_dependencies']}")
    _output_info(f"  Blocked: {data['blocked_items']}")
    _output_info(f"  Longest chain: {data['max_depth']}")
    if data["has_cycles"]:
        _output_warning("Stored relationships contain a cycle. Run 'deferit check'.")


@app.command("stats")
def stats_command(
    data_dir: str | None = data_dir_option(),
    json_output: bool = json_option(),
) -> None:
    """Show dependency graph statistics."""
    with _open_db(data_dir) as db:
        data = services.load_engine(db).stats().to_dict()

    if json_output:
        _output_json(data)
    else:
        _print_stats(data)


@app.command()
def check(
    data_dir: str | None = data_dir_option(),
    json_output: bool = json_option(),
    quiet: bool = quiet_option(),
) -> None:
    """Verify stored blocking relationships contain no cycle (exit 1 if they do)."""
    with _open_db(data_dir) as db:
        cycle = services.check_graph(db)

    if json_output:
        _output_json({"ok": cycle is None, "cycle": cycle})
    elif cycle is None:
        _output_success("No dependency cycles found.", quiet)
    else:
        _output_error(f"Dependency cycle found: {format_path(cycle)}")

    if cycle is not None:
        raise typer.Exit(code=EXIT_USER_ERROR)
