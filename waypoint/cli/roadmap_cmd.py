"""CLI commands for editing project roadmaps."""

import asyncio
from typing import Optional

import typer
from rich.console import Console

from waypoint.cli.common import parse_id, reported_errors

app = typer.Typer(no_args_is_help=True)
console = Console()


@app.command("insert")
def insert(
    project_id: str = typer.Argument(help="Project ID"),
    name: str = typer.Argument(help="Phase name"),
    description: Optional[str] = typer.Option(None, "--description", "-d"),
    after: Optional[str] = typer.Option(None, "--after", help="Insert after this phase ID"),
    before: Optional[str] = typer.Option(None, "--before", help="Insert before this phase ID"),
):
    """Insert a phase (appends when no anchor is given)."""
    if after and before:
        console.print("[red]Use either --after or --before, not both[/red]")
        raise typer.Exit(1)

    async def _insert(project, after_id, before_id):
        from waypoint.roadmap import insert_phase
        from waypoint.storage.db import get_session

        async with get_session() as session:
            phase = await insert_phase(
                session,
                project,
                name=name,
                description=description,
                after_phase_id=after_id,
                before_phase_id=before_id,
            )
        console.print(f"Phase inserted: [cyan]{phase.name}[/cyan] at position {phase.sort_order} (id: {phase.id})")

    with reported_errors(console):
        ids = parse_id(project_id, "project id"), parse_id(after, "phase id"), parse_id(before, "phase id")
        asyncio.run(_insert(*ids))


@app.command("reorder")
def reorder(
    phase_id: str = typer.Argument(help="Phase ID"),
    position: int = typer.Argument(help="New 1-based position"),
):
    """Move a phase to a new position in its project."""

    async def _reorder(phase):
        from waypoint.roadmap import reorder_phase
        from waypoint.storage.db import get_session

        async with get_session() as session:
            result = await reorder_phase(session, phase, position)
        console.print(f"Phase moved: {result['old_order']} -> {result['new_order']}")

    with reported_errors(console):
        asyncio.run(_reorder(parse_id(phase_id, "phase id")))


@app.command("set-status")
def set_status(
    phase_id: str = typer.Argument(help="Phase ID"),
    status: str = typer.Argument(help="pending, in_progress or complete"),
):
    """Change a phase's status."""

    async def _set_status(phase_uuid):
        from waypoint.roadmap import update_phase_status
        from waypoint.storage.db import get_session

        async with get_session() as session:
            phase = await update_phase_status(session, phase_uuid, status)
        console.print(f"[cyan]{phase.name}[/cyan] is now {phase.status}")

    with reported_errors(console):
        asyncio.run(_set_status(parse_id(phase_id, "phase id")))


@app.command("revisit")
def revisit(
    phase_id: str = typer.Argument(help="Phase ID"),
    reason: str = typer.Argument(help="Why the phase needs another look"),
):
    """Flag a phase for revisit, reopening it if complete."""

    async def _revisit(phase_uuid):
        from waypoint.roadmap import mark_for_revisit
        from waypoint.storage.db import get_session

        async with get_session() as session:
            phase = await mark_for_revisit(session, phase_uuid, reason)
        console.print(f"[yellow]{phase.name}[/yellow] marked for revisit ({phase.status})")

    with reported_errors(console):
        asyncio.run(_revisit(parse_id(phase_id, "phase id")))


@app.command("depend")
def depend(
    phase_id: str = typer.Argument(help="Phase that is blocked"),
    depends_on: str = typer.Argument(help="Phase that must complete first"),
    notes: str = typer.Option("", "--notes", "-n"),
):
    """Add a blocking dependency between two phases."""

    async def _depend(blocked, blocker):
        from waypoint.roadmap import add_dependency
        from waypoint.storage.db import get_session

        async with get_session() as session:
            await add_dependency(session, blocked, blocker, notes=notes)
        console.print("Dependency added.")

    with reported_errors(console):
        asyncio.run(_depend(parse_id(phase_id, "phase id"), parse_id(depends_on, "phase id")))


@app.command("undepend")
def undepend(
    phase_id: str = typer.Argument(help="Phase that is blocked"),
    depends_on: str = typer.Argument(help="Phase it depends on"),
):
    """Remove a blocking dependency."""

    async def _undepend(blocked, blocker):
        from waypoint.roadmap import remove_dependency
        from waypoint.storage.db import get_session

        async with get_session() as session:
            removed = await remove_dependency(session, blocked, blocker)
        console.print("Dependency removed." if removed else "[yellow]No such dependency.[/yellow]")

    with reported_errors(console):
        asyncio.run(_undepend(parse_id(phase_id, "phase id"), parse_id(depends_on, "phase id")))
