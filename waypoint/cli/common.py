"""Helpers shared by the CLI command modules."""

from contextlib import contextmanager
from typing import Optional
from uuid import UUID

import typer
from rich.console import Console

from waypoint.errors import ValidationError, WaypointError


def parse_id(value: Optional[str], label: str = "id") -> Optional[UUID]:
    """Parse a UUID argument, reporting bad input as a ValidationError."""
    if not value:
        return None
    try:
        return UUID(value)
    except ValueError:
        raise ValidationError(f"Invalid {label}: {value!r}") from None


@contextmanager
def reported_errors(console: Console):
    """Print Waypoint errors in red and exit with status 1."""
    try:
        yield
    except WaypointError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
