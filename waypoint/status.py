"""Portfolio status: projects, phases, stats, tradelines and focus."""

import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from waypoint.priority import focus_to_dict, get_open_focus, load_graph
from waypoint.storage.models import OPEN_BUG_STATUSES, Bug, Project, Tradeline

logger = logging.getLogger(__name__)


def phase_to_dict(phase, is_blocked: bool = False) -> dict:
    return {
        "id": phase.id,
        "project_id": phase.project_id,
        "name": phase.name,
        "description": phase.description,
        "status": phase.status,
        "sort_order": phase.sort_order,
        "started_at": phase.started_at,
        "completed_at": phase.completed_at,
        "is_blocked": is_blocked,
    }


def _project_stats(phases: list[dict], bugs: list[Bug]) -> dict:
    return {
        "total_phases": len(phases),
        "completed": sum(1 for p in phases if p["status"] == "complete"),
        "in_progress": sum(1 for p in phases if p["status"] == "in_progress"),
        "blocked": sum(1 for p in phases if p["is_blocked"]),
        "open_bugs": len(bugs),
        "critical_bugs": sum(1 for b in bugs if b.severity == "critical"),
    }


async def get_portfolio_status(session: AsyncSession, client_id: Optional[UUID] = None) -> dict:
    """Snapshot of active projects with their phases and per-project stats."""
    query = select(Project).where(Project.is_active.is_(True)).order_by(Project.sort_order)
    if client_id:
        query = query.where(Project.client_id == client_id)
    projects = (await session.execute(query)).scalars().all()
    project_ids = {p.id for p in projects}

    nodes = await load_graph(session)
    phases = [
        phase_to_dict(n.phase, n.is_blocked)
        for n in nodes.values()
        if n.phase.project_id in project_ids
    ]

    tradelines = (await session.execute(select(Tradeline).order_by(Tradeline.name))).scalars().all()
    focus = [f for f in await get_open_focus(session) if f.project_id in project_ids]
    bugs = (
        await session.execute(select(Bug).where(Bug.status.in_(OPEN_BUG_STATUSES)))
    ).scalars().all()

    projects_with_phases = []
    for proj in projects:
        project_phases = [p for p in phases if p["project_id"] == proj.id]
        project_bugs = [b for b in bugs if b.project_path and proj.slug in b.project_path]
        projects_with_phases.append({
            "id": proj.id,
            "client_id": proj.client_id,
            "slug": proj.slug,
            "name": proj.name,
            "description": proj.description,
            "server_path": proj.server_path,
            "sort_order": proj.sort_order,
            "is_active": proj.is_active,
            "phases": project_phases,
            "stats": _project_stats(project_phases, project_bugs),
        })

    return {
        "client_id": client_id,
        "projects": projects_with_phases,
        "tradelines": [{"id": t.id, "name": t.name, "status": t.status} for t in tradelines],
        "current_focus": [focus_to_dict(f) for f in focus],
        "summary": {
            "total_projects": len(projects),
            "active_projects": sum(
                1 for proj in projects_with_phases
                if any(p["status"] == "in_progress" for p in proj["phases"])
            ),
            "total_phases": len(phases),
            "completed_phases": sum(1 for p in phases if p["status"] == "complete"),
            "blocked_phases": sum(1 for p in phases if p["is_blocked"]),
            "live_tradelines": sum(1 for t in tradelines if t.status == "live"),
        },
    }
