"""Waypoint CLI — main entry point using Typer."""

import asyncio
import logging
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from waypoint.cli.common import parse_id, reported_errors
from waypoint.cli.priority_cmd import app as priority_app
from waypoint.cli.priority_cmd import render_whats_next
from waypoint.cli.roadmap_cmd import app as roadmap_app

app = typer.Typer(
    name="waypoint",
    help="Dependency-aware roadmap tracker: what should be worked on next?",
    no_args_is_help=True,
)
console = Console()

# Register subcommands
app.add_typer(priority_app, name="next", help="Show what to work on next")
app.add_typer(roadmap_app, name="roadmap", help="Edit project roadmaps")


def _setup_logging(verbose: bool = False):
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_time=False)],
    )


DEFAULT_CONFIG = (
    "[general]\n"
    'db_url = "postgresql+asyncpg://localhost/waypoint"\n'
    'log_level = "INFO"\n\n'
    "[api]\n"
    'host = "127.0.0.1"\n'
    "port = 5402\n\n"
    "[priority]\n"
    'tooling_slug = "kodiack-dashboard-5500"\n\n'
    "[watcher]\n"
    "interval_seconds = 300\n"
    "cycle_timeout_seconds = 60\n"
    "auto_revisit = false\n\n"
    "[store]\n"
    "relative_updates = true\n"
)


@app.command()
def init(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Initialize Waypoint — write a default config and create tables."""
    _setup_logging(verbose)

    async def _init():
        from waypoint.config import DEFAULT_CONFIG_PATH
        from waypoint.storage.db import close_db, init_db

        config_path = DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)
        if not config_path.exists():
            config_path.write_text(DEFAULT_CONFIG)
            console.print(f"  Config written: {config_path}")
        else:
            console.print(f"  Config exists: {config_path}")

        console.print("  Initializing database...")
        await init_db()
        await close_db()
        console.print("  Database ready.")
        console.print("\n[bold green]Waypoint initialized![/bold green]")

    asyncio.run(_init())


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port", "-p"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Run the HTTP API (the TODO watcher runs inside it)."""
    _setup_logging(verbose)
    import uvicorn

    from waypoint.config import get_settings

    settings = get_settings().api
    uvicorn.run(
        "waypoint.api.routes:app",
        host=host or settings.host,
        port=port or settings.port,
        log_level="debug" if verbose else "info",
    )


@app.command()
def status(
    client: Optional[str] = typer.Option(None, "--client", "-c", help="Filter by client id"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Show projects, phase progress and bug counts."""
    _setup_logging(verbose)

    async def _status(client_id):
        from waypoint.status import get_portfolio_status
        from waypoint.storage.db import get_session

        async with get_session() as session:
            result = await get_portfolio_status(session, client_id=client_id)

        if not result["projects"]:
            console.print("[yellow]No active projects.[/yellow]")
            return

        table = Table(title="Portfolio")
        table.add_column("Project", style="cyan")
        table.add_column("Done", justify="right")
        table.add_column("Active", justify="right")
        table.add_column("Blocked", justify="right")
        table.add_column("Bugs", justify="right")
        table.add_column("Current phase")

        for proj in result["projects"]:
            stats = proj["stats"]
            current = next((p["name"] for p in proj["phases"] if p["status"] == "in_progress"), "")
            bugs = str(stats["open_bugs"])
            if stats["critical_bugs"]:
                bugs += f" [red]({stats['critical_bugs']} critical)[/red]"
            table.add_row(
                proj["name"],
                f"{stats['completed']}/{stats['total_phases']}",
                str(stats["in_progress"]),
                str(stats["blocked"]) if stats["blocked"] else "",
                bugs,
                current,
            )
        console.print(table)

        summary = result["summary"]
        console.print(
            f"\n{summary['completed_phases']}/{summary['total_phases']} phases complete, "
            f"{summary['blocked_phases']} blocked, {summary['live_tradelines']} live tradelines"
        )

    with reported_errors(console):
        asyncio.run(_status(parse_id(client, "client id")))


@app.command()
def complete(
    phase_id: str = typer.Argument(help="Phase ID"),
):
    """Mark a phase complete and show what's next."""

    async def _complete(phase_uuid):
        from waypoint.priority import complete_phase, get_whats_next
        from waypoint.storage.db import get_session

        async with get_session() as session:
            phase = await complete_phase(session, phase_uuid)
        console.print(f"[green]Completed:[/green] {phase.name}")

        async with get_session() as session:
            render_whats_next(await get_whats_next(session))

    with reported_errors(console):
        asyncio.run(_complete(parse_id(phase_id, "phase id")))


@app.command()
def focus(
    phase_id: str = typer.Argument(help="Phase ID"),
    rationale: Optional[str] = typer.Option(None, "--rationale", "-r"),
):
    """Set the current focus to a phase."""

    async def _focus(phase_uuid):
        from waypoint.priority import set_focus
        from waypoint.storage.db import get_session

        async with get_session() as session:
            _, phase = await set_focus(session, phase_uuid, rationale=rationale)
        console.print(f"Focus set: [cyan]{phase.name}[/cyan]")

    with reported_errors(console):
        asyncio.run(_focus(parse_id(phase_id, "phase id")))


@app.command()
def daemon(
    interval: Optional[float] = typer.Option(None, "--interval", "-i", help="Seconds between TODO checks"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Run the TODO watcher as a background daemon."""
    _setup_logging(verbose)

    from waypoint.daemon import run_daemon

    asyncio.run(run_daemon(interval_seconds=interval))


if __name__ == "__main__":
    app()
