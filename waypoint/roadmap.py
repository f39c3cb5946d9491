"""Roadmap management — insert, reorder and annotate phases, edit dependencies.

Every phase of a project carries a dense 1..N ``sort_order``. Operations that
move phases hold a per-project lock until their work is committed, so two
mutations on the same project never interleave within this process and the
second one always reads what the first one wrote.
"""

import asyncio
import logging
import weakref
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from waypoint.config import get_settings
from waypoint.errors import NotFoundError, StoreError, ValidationError
from waypoint.storage.models import PHASE_STATUSES, Phase, PhaseDependency, Project
from waypoint.storage.ordering import get_project_phases, shift_phases

logger = logging.getLogger(__name__)

REVISIT_MARKER = "REVISIT NEEDED"

# Entries disappear once no operation holds or waits on the lock
_project_locks: "weakref.WeakValueDictionary[UUID, asyncio.Lock]" = weakref.WeakValueDictionary()


def _lock_for(project_id: UUID) -> asyncio.Lock:
    lock = _project_locks.get(project_id)
    if lock is None:
        lock = asyncio.Lock()
        _project_locks[project_id] = lock
    return lock


@asynccontextmanager
async def _project_transaction(session: AsyncSession, project_id: UUID):
    """Serialise ordering changes on a project and commit before releasing."""
    lock = _lock_for(project_id)
    async with lock:
        yield
        await session.commit()


@contextmanager
def _store_errors(operation: str, **context):
    """Translate SQLAlchemy failures into StoreError with operation context."""
    try:
        yield
    except SQLAlchemyError as e:
        logger.error("%s failed (%s): %s", operation, context, e)
        raise StoreError(operation, str(e), context) from e


def _relative_updates(relative: Optional[bool]) -> bool:
    return get_settings().store.relative_updates if relative is None else relative


async def _get_phase(session: AsyncSession, phase_id: UUID) -> Phase:
    phase = await session.get(Phase, phase_id)
    if phase is None:
        raise NotFoundError(f"Phase {phase_id} not found")
    return phase


async def _place_phase(
    session: AsyncSession,
    project_id: UUID,
    name: str,
    description: Optional[str],
    status: str,
    after_phase_id: Optional[UUID],
    before_phase_id: Optional[UUID],
    relative: Optional[bool],
) -> Phase:
    # Caller holds the project transaction
    if await session.get(Project, project_id) is None:
        raise NotFoundError(f"Project {project_id} not found")

    phases = await get_project_phases(session, project_id)
    by_id = {p.id: p for p in phases}
    after = by_id.get(after_phase_id) if after_phase_id else None
    before = by_id.get(before_phase_id) if before_phase_id else None

    if after is not None:
        sort_order = after.sort_order + 1
        await shift_phases(session, project_id, 1, _relative_updates(relative), above=after.sort_order)
    elif before is not None:
        sort_order = before.sort_order
        await shift_phases(session, project_id, 1, _relative_updates(relative), at_least=before.sort_order)
    else:
        if after_phase_id or before_phase_id:
            logger.warning("Anchor phase not in project %s, appending", project_id)
        sort_order = max((p.sort_order for p in phases), default=0) + 1

    phase = Phase(
        project_id=project_id,
        name=name,
        description=description,
        status=status,
        sort_order=sort_order,
    )
    session.add(phase)
    await session.flush()
    logger.info("Phase inserted: %s (project %s, order %d)", name, project_id, sort_order)
    return phase


async def insert_phase(
    session: AsyncSession,
    project_id: UUID,
    name: str,
    description: Optional[str] = None,
    status: str = "pending",
    after_phase_id: Optional[UUID] = None,
    before_phase_id: Optional[UUID] = None,
    relative: Optional[bool] = None,
) -> Phase:
    """Insert a new phase into a project's roadmap and commit.

    Placement: directly after ``after_phase_id``, directly before
    ``before_phase_id``, or at the end when neither is given or the anchor is
    not a phase of this project. Later phases are shifted down by one first.
    """
    if not name:
        raise ValidationError("name required")
    if status not in PHASE_STATUSES:
        raise ValidationError(f"Invalid status '{status}'")

    with _store_errors("insert_phase", project_id=project_id):
        async with _project_transaction(session, project_id):
            return await _place_phase(
                session, project_id, name, description, status, after_phase_id, before_phase_id, relative
            )


async def reorder_phase(
    session: AsyncSession,
    phase_id: UUID,
    new_order: int,
    relative: Optional[bool] = None,
) -> dict:
    """Move a phase to ``new_order`` (clamped to 1..N), shifting the phases between."""
    with _store_errors("reorder_phase", phase_id=phase_id):
        phase = await _get_phase(session, phase_id)
        project_id = phase.project_id

        async with _project_transaction(session, project_id):
            await session.refresh(phase)
            count = len(await get_project_phases(session, project_id))
            old_order = phase.sort_order
            new_order = min(max(int(new_order), 1), count)
            rel = _relative_updates(relative)

            if new_order > old_order:
                await shift_phases(session, project_id, -1, rel, above=old_order, at_most=new_order)
            elif new_order < old_order:
                await shift_phases(session, project_id, 1, rel, at_least=new_order, below=old_order)

            phase.sort_order = new_order
            await session.flush()

    if new_order != old_order:
        logger.info("Phase reordered: %s %d -> %d", phase.name, old_order, new_order)
    return {"old_order": old_order, "new_order": new_order}


async def update_phase_status(session: AsyncSession, phase_id: UUID, status: str) -> Phase:
    """Set a phase's status, stamping started_at/completed_at."""
    if status not in PHASE_STATUSES:
        raise ValidationError(f"Invalid status '{status}', expected one of {', '.join(PHASE_STATUSES)}")

    with _store_errors("update_phase_status", phase_id=phase_id):
        phase = await _get_phase(session, phase_id)
        now = datetime.now(timezone.utc)
        phase.status = status
        if status == "complete":
            phase.completed_at = now
        elif status == "in_progress" and phase.started_at is None:
            phase.started_at = now
        await session.flush()

    logger.info("Phase status updated: %s -> %s", phase.name, status)
    return phase


async def add_dependency(
    session: AsyncSession,
    phase_id: UUID,
    depends_on_phase_id: UUID,
    notes: Optional[str] = None,
) -> PhaseDependency:
    """Record that ``phase_id`` is blocked until ``depends_on_phase_id`` completes."""
    if not phase_id or not depends_on_phase_id:
        raise ValidationError("phaseId and dependsOnPhaseId required")
    if phase_id == depends_on_phase_id:
        raise ValidationError("A phase cannot depend on itself")

    with _store_errors("add_dependency", phase_id=phase_id, depends_on_phase_id=depends_on_phase_id):
        await _get_phase(session, phase_id)
        await _get_phase(session, depends_on_phase_id)
        dependency = PhaseDependency(
            phase_id=phase_id,
            depends_on_phase_id=depends_on_phase_id,
            dependency_type="blocks",
            notes=notes or "",
        )
        session.add(dependency)
        await session.flush()

    logger.info("Dependency added: %s blocked by %s", phase_id, depends_on_phase_id)
    return dependency


async def remove_dependency(session: AsyncSession, phase_id: UUID, depends_on_phase_id: UUID) -> int:
    """Delete the exact (phase, depends-on) edge. Returns rows removed."""
    if not phase_id or not depends_on_phase_id:
        raise ValidationError("phaseId and dependsOnPhaseId required")

    with _store_errors("remove_dependency", phase_id=phase_id, depends_on_phase_id=depends_on_phase_id):
        result = await session.execute(
            delete(PhaseDependency).where(
                PhaseDependency.phase_id == phase_id,
                PhaseDependency.depends_on_phase_id == depends_on_phase_id,
            )
        )

    removed = result.rowcount or 0
    logger.info("Dependency removed: %s blocked by %s (%d row(s))", phase_id, depends_on_phase_id, removed)
    return removed


async def mark_for_revisit(session: AsyncSession, phase_id: UUID, reason: str) -> Phase:
    """Append a dated revisit note and reopen the phase if it was complete."""
    with _store_errors("mark_for_revisit", phase_id=phase_id):
        phase = await _get_phase(session, phase_id)
        note = f"\n\n{REVISIT_MARKER} ({datetime.now(timezone.utc).date().isoformat()}): {reason}"
        phase.description = (phase.description or "") + note
        if phase.status == "complete":
            phase.status = "in_progress"
        await session.flush()

    logger.warning("Phase marked for revisit: %s (%s)", phase.name, reason)
    return phase


async def create_phase_from_todo(
    session: AsyncSession,
    todo: dict,
    project_id: UUID,
    relative: Optional[bool] = None,
) -> Phase:
    """Turn a TODO into a pending phase ahead of the project's first pending phase."""
    title = (todo or {}).get("title")
    if not title:
        raise ValidationError("todo.title required")

    description = (
        f"Auto-created from TODO: {todo.get('description') or title}"
        f"\n\nPriority: {todo.get('priority') or 'normal'}"
    )
    with _store_errors("create_phase_from_todo", project_id=project_id):
        async with _project_transaction(session, project_id):
            result = await session.execute(
                select(Phase.id)
                .where(Phase.project_id == project_id, Phase.status == "pending")
                .order_by(Phase.sort_order)
                .limit(1)
            )
            first_pending = result.scalar_one_or_none()
            phase = await _place_phase(
                session, project_id, title, description, "pending",
                after_phase_id=None, before_phase_id=first_pending, relative=relative,
            )

    logger.info("Phase created from TODO: %s", title)
    return phase
