"""Shifting phase sort_order ranges within a project."""

import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from waypoint.storage.models import Phase

logger = logging.getLogger(__name__)


def _range_filters(
    project_id: UUID,
    above: Optional[int] = None,
    at_least: Optional[int] = None,
    below: Optional[int] = None,
    at_most: Optional[int] = None,
) -> list:
    filters = [Phase.project_id == project_id]
    if above is not None:
        filters.append(Phase.sort_order > above)
    if at_least is not None:
        filters.append(Phase.sort_order >= at_least)
    if below is not None:
        filters.append(Phase.sort_order < below)
    if at_most is not None:
        filters.append(Phase.sort_order <= at_most)
    return filters


async def relative_shift(session: AsyncSession, project_id: UUID, delta: int, **bounds) -> int:
    """Shift matching phases with a single ``sort_order = sort_order + delta`` update."""
    result = await session.execute(
        update(Phase)
        .where(*_range_filters(project_id, **bounds))
        .values(sort_order=Phase.sort_order + delta)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount or 0


async def per_row_shift(session: AsyncSession, project_id: UUID, delta: int, **bounds) -> int:
    """Shift matching phases one row at a time with absolute values."""
    result = await session.execute(select(Phase).where(*_range_filters(project_id, **bounds)))
    phases = result.scalars().all()
    for phase in phases:
        phase.sort_order = phase.sort_order + delta
    await session.flush()
    return len(phases)


async def shift_phases(
    session: AsyncSession,
    project_id: UUID,
    delta: int,
    relative: bool = True,
    **bounds,
) -> int:
    """Shift sort_order of a project's phases within the given bounds.

    Args:
        delta: Amount added to every matching sort_order (+1 or -1).
        relative: Whether the store can express a relative update. When
            False, rows are rewritten individually.
        **bounds: ``above``, ``at_least``, ``below`` and ``at_most`` limits
            on the current sort_order.

    Returns the number of phases shifted.
    """
    if relative:
        count = await relative_shift(session, project_id, delta, **bounds)
    else:
        count = await per_row_shift(session, project_id, delta, **bounds)
    logger.debug("Shifted %d phase(s) in project %s by %+d (%s)", count, project_id, delta, bounds)
    return count


async def get_project_phases(session: AsyncSession, project_id: UUID) -> list[Phase]:
    """All phases of a project in roadmap order, reloaded from the database."""
    result = await session.execute(
        select(Phase)
        .where(Phase.project_id == project_id)
        .order_by(Phase.sort_order)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())
