"""CLI commands for viewing what to work on next."""

import asyncio
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from waypoint.cli.common import parse_id, reported_errors

app = typer.Typer(invoke_without_command=True)
console = Console()


def render_whats_next(result: dict) -> None:
    """Print a whats-next payload as a Rich table plus warnings."""
    rec = result["recommendation"]
    if not rec:
        console.print("[yellow]Nothing actionable: every open phase is blocked or done.[/yellow]")
    else:
        console.print(
            f"\n[bold green]Next:[/bold green] [cyan]{rec['phase']}[/cyan] "
            f"({rec['project']} / {rec['client']}), score {rec['score']}"
        )
        for reason in rec["reasons"]:
            console.print(f"  • {reason}")
        if result["action_message"]:
            console.print(f"  [bold]{result['action_message']}[/bold]")

    if result["alternatives"]:
        table = Table(title="Alternatives")
        table.add_column("#", style="dim", justify="right")
        table.add_column("Phase", style="cyan")
        table.add_column("Project")
        table.add_column("Client")
        table.add_column("Score", justify="right")
        for i, alt in enumerate(result["alternatives"], 2):
            table.add_row(str(i), alt["phase"], alt["project"] or "", alt["client"], str(alt["score"]))
        console.print(table)

    for warning in result["warnings"]:
        console.print(f"[red]{warning['message']}[/red]")
        for item in warning["items"]:
            if warning["type"] == "critical_bugs":
                console.print(f"  - {item['title']}")
            else:
                console.print(f"  - {item['blocked']} waiting on {item['waiting_on']}")


@app.callback(invoke_without_command=True)
def whats_next(
    client: Optional[str] = typer.Option(None, "--client", "-c", help="Restrict to one client id"),
):
    """Show the recommended next phase and alternatives."""

    async def _whats_next(client_id):
        from waypoint.priority import get_whats_next
        from waypoint.storage.db import get_session

        async with get_session() as session:
            result = await get_whats_next(session, client_id=client_id)
        render_whats_next(result)

    with reported_errors(console):
        asyncio.run(_whats_next(parse_id(client, "client id")))
