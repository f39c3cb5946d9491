"""Waypoint daemon — runs the TODO watcher in the background."""

import asyncio
import logging
import signal
import sys
from typing import Optional

from rich.console import Console

from waypoint.config import get_settings
from waypoint.storage.db import close_db
from waypoint.watcher import TodoWatcher

logger = logging.getLogger(__name__)
console = Console()


def _log_uncaught(exc_type, exc, tb):
    """Uncaught exceptions are fatal: log them and exit."""
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc, tb)
        return
    logger.critical("Uncaught exception: %s", exc, exc_info=(exc_type, exc, tb))
    sys.exit(1)


def _log_async_error(loop: asyncio.AbstractEventLoop, context: dict) -> None:
    """Errors from background tasks are logged without stopping the loop."""
    exc = context.get("exception")
    logger.error("Unhandled background error: %s", context.get("message"), exc_info=exc)


def install_fault_handlers(loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
    sys.excepthook = _log_uncaught
    (loop or asyncio.get_running_loop()).set_exception_handler(_log_async_error)


async def run_daemon(interval_seconds: Optional[float] = None) -> None:
    """Run the TODO watcher until SIGINT/SIGTERM.

    Args:
        interval_seconds: Seconds between TODO checks (defaults to config).
    """
    settings = get_settings().watcher
    if interval_seconds is not None:
        settings = settings.model_copy(update={"interval_seconds": interval_seconds})

    loop = asyncio.get_running_loop()
    install_fault_handlers(loop)

    shutdown = asyncio.Event()

    def _handle_shutdown() -> None:
        logger.info("Shutdown signal received, stopping watcher...")
        shutdown.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _handle_shutdown)

    watcher = TodoWatcher(settings=settings)
    await watcher.initialize()
    watcher.start()

    console.print(
        f"[bold]Waypoint daemon started[/bold] "
        f"(TODO check every {settings.interval_seconds:.0f}s, {len(watcher.known_todos)} known TODOs)"
    )
    console.print("Press Ctrl+C to stop.\n")

    try:
        await shutdown.wait()
    finally:
        watcher.stop()
        await close_db()
        console.print("\n[bold]Waypoint daemon stopped.[/bold]")
