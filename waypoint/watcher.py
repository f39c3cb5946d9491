"""TODO watcher — polls TODOs and flags revisits and off-track work.

The watcher keeps an in-memory id -> TODO snapshot and diffs it against the
TODO table on a fixed period. New TODOs are run through two keyword
heuristics:

- revisit: the TODO looks like new work on an already completed phase
- off-track: the TODO belongs to a project other than the current focus

Each watcher instance owns its own snapshot; nothing here is global.
"""

import asyncio
import enum
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from sqlalchemy import select
from sqlalchemy.orm import selectinload

from waypoint.config import WatcherSettings, get_settings
from waypoint.errors import WatcherStateError
from waypoint.storage.db import get_session
from waypoint.storage.models import CurrentFocus, Phase, Todo, TodoAnalysis

logger = logging.getLogger(__name__)

MIN_KEYWORD_LENGTH = 5
MIN_KEYWORD_MATCHES = 2


class WatcherState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    WATCHING = "watching"
    STOPPED = "stopped"


def todo_to_dict(todo: Todo) -> dict:
    return {
        "id": todo.id,
        "title": todo.title,
        "description": todo.description,
        "status": todo.status,
        "priority": todo.priority,
        "project_path": todo.project_path,
        "created_at": todo.created_at,
    }


def empty_analysis() -> dict:
    return {
        "new_todos": [],
        "completed_todos": [],
        "changed_todos": [],
        "off_track_warnings": [],
        "revisit_needed": [],
    }


def has_changes(analysis: dict) -> bool:
    return any(analysis[key] for key in analysis)


def diff_todos(previous: dict, current: list[dict]) -> tuple[dict, dict]:
    """Classify TODO changes between two polls.

    Returns (analysis, new_snapshot). Detector lists are left empty; only
    new/changed/completed are filled here.
    """
    analysis = empty_analysis()
    snapshot = dict(previous)
    current_ids = set()

    for todo in current:
        current_ids.add(todo["id"])
        known = snapshot.get(todo["id"])
        if known is None:
            analysis["new_todos"].append(todo)
            snapshot[todo["id"]] = todo
        elif known["status"] != todo["status"]:
            analysis["changed_todos"].append({"old": known, "new": todo})
            snapshot[todo["id"]] = todo

    for todo_id in list(snapshot):
        if todo_id not in current_ids:
            analysis["completed_todos"].append(snapshot.pop(todo_id))

    return analysis, snapshot


def extract_keywords(text: str) -> set[str]:
    return {w for w in text.lower().split() if len(w) >= MIN_KEYWORD_LENGTH}


def find_revisits(todo: dict, completed_phases: list) -> list[dict]:
    """Completed phases the TODO probably reopens.

    A phase matches when at least two of its keywords occur in the TODO text
    and its project's server path contains the TODO's project directory.
    """
    project_path = todo.get("project_path")
    if not project_path:
        return []
    path_fragment = project_path.rstrip("/").split("/")[-1]
    todo_text = f"{todo['title']} {todo.get('description') or ''}".lower()

    suggestions = []
    for phase in completed_phases:
        project = phase.project
        server_path = project.server_path if project is not None else None
        if not server_path or path_fragment not in server_path:
            continue
        keywords = extract_keywords(f"{phase.name} {phase.description or ''}")
        matches = [k for k in keywords if k in todo_text]
        if len(matches) >= MIN_KEYWORD_MATCHES:
            suggestions.append({
                "phase_id": phase.id,
                "phase": phase.name,
                "project": project.name,
                "todo": todo["title"],
                "reason": f'New TODO "{todo["title"]}" may require revisiting completed phase "{phase.name}"',
            })
    return suggestions


def find_off_track(todo: dict, focus: Optional[CurrentFocus]) -> Optional[dict]:
    """Warn when a TODO targets a project other than the current focus."""
    if focus is None or focus.project is None:
        return None
    todo_path = todo.get("project_path") or ""
    focus_path = focus.project.server_path or ""
    if todo_path and focus_path and focus.project.slug not in todo_path:
        return {
            "todo": todo["title"],
            "todo_project": todo_path,
            "current_focus": focus.project.name,
            "warning": f'Working on "{todo["title"]}" but current focus is {focus.project.name}',
        }
    return None


def format_summary(analysis: dict) -> str:
    parts = []
    if analysis["new_todos"]:
        parts.append(f"{len(analysis['new_todos'])} new TODOs")
    if analysis["completed_todos"]:
        parts.append(f"{len(analysis['completed_todos'])} completed")
    if analysis["changed_todos"]:
        parts.append(f"{len(analysis['changed_todos'])} status changes")
    if analysis["revisit_needed"]:
        parts.append(f"{len(analysis['revisit_needed'])} phases need revisit")
    if analysis["off_track_warnings"]:
        parts.append(f"{len(analysis['off_track_warnings'])} off-track warnings")
    return ", ".join(parts) or "No significant changes"


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    if isinstance(value, datetime):
        return value.isoformat()
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


class TodoWatcher:
    """Polls the TODO table and classifies changes between polls."""

    def __init__(
        self,
        session_factory: Callable = get_session,
        settings: Optional[WatcherSettings] = None,
    ):
        settings = settings or get_settings().watcher
        self.session_factory = session_factory
        self.check_interval = settings.interval_seconds
        self.cycle_timeout = settings.cycle_timeout_seconds
        self.auto_revisit = settings.auto_revisit
        self.analysis_source = settings.analysis_source

        self.state = WatcherState.UNINITIALIZED
        self.known_todos: dict = {}
        self.last_check: Optional[datetime] = None
        self.last_analysis: Optional[dict] = None

        self._lock = asyncio.Lock()
        self._timer: Optional[asyncio.Task] = None
        self._ticks: set[asyncio.Task] = set()

    async def _fetch_todos(self, session) -> list[dict]:
        result = await session.execute(select(Todo).order_by(Todo.created_at.desc()))
        return [todo_to_dict(t) for t in result.scalars().all()]

    async def initialize(self) -> None:
        """Load the current TODO set as the baseline snapshot."""
        logger.info("Initializing TODO watcher...")
        async with self.session_factory() as session:
            todos = await self._fetch_todos(session)
        self.known_todos = {t["id"]: t for t in todos}
        self.state = WatcherState.INITIALIZED
        logger.info("TODO watcher initialized: %d known TODOs", len(self.known_todos))

    def start(self) -> None:
        """Arm the timer. Ticks fire every ``check_interval`` seconds."""
        if self.state == WatcherState.UNINITIALIZED:
            raise WatcherStateError("TODO watcher must be initialized before it can start")
        if self.is_running:
            return
        self._timer = asyncio.create_task(self._timer_loop())
        self.state = WatcherState.WATCHING
        logger.info("TODO watch cycle started (%.0fs interval)", self.check_interval)

    def stop(self) -> None:
        """Cancel the timer. A cycle already running is left to finish."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
            self.state = WatcherState.STOPPED
            logger.info("TODO watcher stopped")

    @property
    def is_running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    async def _timer_loop(self) -> None:
        while True:
            await asyncio.sleep(self.check_interval)
            task = asyncio.create_task(self._tick())
            self._ticks.add(task)
            task.add_done_callback(self._ticks.discard)

    async def _tick(self) -> None:
        if self._lock.locked():
            logger.warning("Previous TODO check still running, skipping this tick")
            return
        async with self._lock:
            await self._run_cycle()

    async def _run_cycle(self) -> Optional[dict]:
        """One bounded, failure-tolerant check."""
        try:
            return await asyncio.wait_for(self.check_for_changes(), timeout=self.cycle_timeout)
        except asyncio.TimeoutError:
            logger.error("TODO check timed out after %.0fs", self.cycle_timeout)
        except Exception as e:
            logger.error("TODO check failed: %s", e, exc_info=True)
        return None

    async def check_for_changes(self) -> dict:
        """Diff the TODO table against the snapshot and record the analysis.

        The snapshot is only replaced once the whole cycle succeeds, so a
        failed cycle is retried in full on the next tick.
        """
        logger.info("Checking for TODO changes...")
        async with self.session_factory() as session:
            todos = await self._fetch_todos(session)
            analysis, snapshot = diff_todos(self.known_todos, todos)

            if analysis["new_todos"]:
                await self._run_detectors(session, analysis)
                logger.info(
                    "New TODOs detected: %s", ", ".join(t["title"] for t in analysis["new_todos"])
                )
            if analysis["revisit_needed"]:
                logger.warning(
                    "Phases need revisit - new TODOs on completed work: %s",
                    ", ".join(r["phase"] for r in analysis["revisit_needed"]),
                )
            if analysis["off_track_warnings"]:
                logger.warning(
                    "Off-track work detected: %s",
                    "; ".join(w["warning"] for w in analysis["off_track_warnings"]),
                )

            await self.record_analysis(session, analysis)

        self.known_todos = snapshot
        self.last_check = datetime.now(timezone.utc)
        self.last_analysis = analysis
        return analysis

    async def _run_detectors(self, session, analysis: dict) -> None:
        result = await session.execute(
            select(Phase).options(selectinload(Phase.project)).where(Phase.status == "complete")
        )
        completed_phases = list(result.scalars().all())

        result = await session.execute(
            select(CurrentFocus)
            .options(selectinload(CurrentFocus.project))
            .where(CurrentFocus.completed_at.is_(None))
            .order_by(CurrentFocus.priority, CurrentFocus.created_at)
            .limit(1)
        )
        focus = result.scalar_one_or_none()

        for todo in analysis["new_todos"]:
            analysis["revisit_needed"].extend(find_revisits(todo, completed_phases))
            warning = find_off_track(todo, focus)
            if warning:
                analysis["off_track_warnings"].append(warning)

        if self.auto_revisit and analysis["revisit_needed"]:
            from waypoint.roadmap import mark_for_revisit

            # One note per phase, however many TODOs point at it
            reasons_by_phase: dict = {}
            for suggestion in analysis["revisit_needed"]:
                reasons_by_phase.setdefault(suggestion["phase_id"], []).append(suggestion["reason"])
            for phase_id, reasons in reasons_by_phase.items():
                await mark_for_revisit(session, phase_id, "; ".join(reasons))

    async def record_analysis(self, session, analysis: dict) -> Optional[TodoAnalysis]:
        """Persist the analysis unless nothing changed."""
        if not has_changes(analysis):
            return None

        record = TodoAnalysis(
            title=f"TODO Analysis - {datetime.now(timezone.utc).date().isoformat()}",
            summary=format_summary(analysis),
            details=_jsonable(analysis),
            source=self.analysis_source,
        )
        session.add(record)
        await session.flush()
        logger.info("Analysis recorded: %s", record.summary)
        return record

    async def check_now(self) -> dict:
        """Run one cycle immediately, waiting for any cycle already running."""
        if self.state == WatcherState.UNINITIALIZED:
            raise WatcherStateError("TODO watcher has not been initialized")
        async with self._lock:
            await self._run_cycle()
        return self.get_status()

    def get_status(self) -> dict:
        return {
            "running": self.is_running,
            "state": self.state.value,
            "last_check": self.last_check,
            "known_todos": len(self.known_todos),
            "check_interval": self.check_interval,
        }
