"""Priority engine — ranks actionable phases and answers "what's next?"."""

import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from waypoint.config import get_settings
from waypoint.errors import NotFoundError
from waypoint.graph import PhaseNode, build_graph, same_client_unblock_count
from waypoint.storage.models import (
    ACTIONABLE_STATUSES,
    OPEN_BUG_STATUSES,
    Bug,
    Client,
    CurrentFocus,
    Phase,
    PhaseDependency,
    Project,
)

logger = logging.getLogger(__name__)

CROSS_CLIENT_WEIGHT = 200
IN_PROGRESS_WEIGHT = 100
SAME_CLIENT_UNBLOCK_WEIGHT = 20
TOOLING_WEIGHT = 50
ORDER_BONUS_CEILING = 10
MAX_ALTERNATIVES = 3
MAX_WARNING_ITEMS = 5


async def load_graph(session: AsyncSession) -> dict[UUID, PhaseNode]:
    """Read a fresh snapshot and build the blocking graph.

    Phases come back in portfolio order (project sort_order, then phase
    sort_order), which is also the tie-break order for equal scores.
    """
    phases = (
        await session.execute(
            select(Phase)
            .outerjoin(Project, Phase.project_id == Project.id)
            .order_by(Project.sort_order, Phase.sort_order)
        )
    ).scalars().all()
    projects = (await session.execute(select(Project))).scalars().all()
    clients = (await session.execute(select(Client))).scalars().all()
    dependencies = (await session.execute(select(PhaseDependency))).scalars().all()
    return build_graph(phases, projects, clients, dependencies)


def score_phase(
    node: PhaseNode,
    nodes: dict[UUID, PhaseNode],
    tooling_slug: Optional[str] = None,
) -> tuple[int, list[str]]:
    """Score a single actionable phase. Returns (score, reasons)."""
    score = 0
    reasons = []

    # 1. Cross-client unblock dominates everything else
    if node.unblocks_cross_client:
        score += CROSS_CLIENT_WEIGHT
        clients = list(dict.fromkeys(u.client for u in node.unblocks_cross_client))
        reasons.append(f"Unblocks {', '.join(clients)} work")

    # 2. Continuity
    if node.status == "in_progress":
        score += IN_PROGRESS_WEIGHT
        reasons.append("Already in progress")

    # 3. Same-client fan-out
    same_client = same_client_unblock_count(node, nodes)
    if same_client > 0:
        score += same_client * SAME_CLIENT_UNBLOCK_WEIGHT
        reasons.append(f"Unblocks {same_client} phase(s)")

    # 4. Tooling exception
    if tooling_slug and node.project_slug == tooling_slug:
        score += TOOLING_WEIGHT
        reasons.append("Studio tool needed")

    # 5. Roadmap order tie-break
    score += max(0, ORDER_BONUS_CEILING - node.sort_order)

    return score, reasons


def _in_scope(node: PhaseNode, client_id: Optional[UUID]) -> bool:
    return client_id is None or node.client_id == client_id


def rank_phases(
    nodes: dict[UUID, PhaseNode],
    client_id: Optional[UUID] = None,
    tooling_slug: Optional[str] = None,
) -> list[dict]:
    """Score every actionable phase and sort by descending score.

    The sort is stable, so equal scores keep snapshot order.
    """
    ranked = []
    for node in nodes.values():
        if not _in_scope(node, client_id):
            continue
        if node.status not in ACTIONABLE_STATUSES or node.is_blocked:
            continue
        score, reasons = score_phase(node, nodes, tooling_slug)
        ranked.append({"node": node, "score": score, "reasons": reasons})

    ranked.sort(key=lambda x: x["score"], reverse=True)
    return ranked


def build_warnings(nodes: list[PhaseNode], critical_bugs: list) -> list[dict]:
    """Warnings are independent of scoring: critical bugs and cross-client blocks."""
    warnings = []
    if critical_bugs:
        warnings.append({
            "type": "critical_bugs",
            "message": f"{len(critical_bugs)} critical bug(s) need attention",
            "items": [{"id": b.id, "title": b.title} for b in critical_bugs],
        })

    blocked = [n for n in nodes if n.cross_client_block is not None]
    if blocked:
        warnings.append({
            "type": "cross_client_blocked",
            "message": f"{len(blocked)} phase(s) waiting on another client's tools",
            "items": [
                {
                    "phase_id": n.id,
                    "blocked": f"{n.client_name}: {n.name}",
                    "waiting_on": f"{n.cross_client_block.blocker_client}: {n.cross_client_block.blocker_phase}",
                    "blocker_client": n.cross_client_block.blocker_client,
                    "reason": n.cross_client_block.notes,
                }
                for n in blocked[:MAX_WARNING_ITEMS]
            ],
        })
    return warnings


def focus_to_dict(focus: Optional[CurrentFocus]) -> Optional[dict]:
    if focus is None:
        return None
    return {
        "id": focus.id,
        "project_id": focus.project_id,
        "phase_id": focus.phase_id,
        "priority": focus.priority,
        "rationale": focus.rationale,
        "set_by": focus.set_by,
        "created_at": focus.created_at,
        "completed_at": focus.completed_at,
    }


async def get_open_focus(session: AsyncSession, limit: Optional[int] = None) -> list[CurrentFocus]:
    """Open focus records, highest priority (lowest number) first."""
    query = (
        select(CurrentFocus)
        .where(CurrentFocus.completed_at.is_(None))
        .order_by(CurrentFocus.priority, CurrentFocus.created_at)
    )
    if limit:
        query = query.limit(limit)
    result = await session.execute(query)
    return list(result.scalars().all())


async def get_critical_bugs(session: AsyncSession) -> list[Bug]:
    result = await session.execute(
        select(Bug).where(Bug.severity == "critical", Bug.status.in_(OPEN_BUG_STATUSES))
    )
    return list(result.scalars().all())


async def get_whats_next(
    session: AsyncSession,
    client_id: Optional[UUID] = None,
    tooling_slug: Optional[str] = None,
) -> dict:
    """Recommend the next phase to work on, with alternatives and warnings.

    Args:
        client_id: Restrict candidates (and summary counts) to one client's
            projects. Blocking is still evaluated across the whole portfolio.
        tooling_slug: Override the configured tooling project slug.
    """
    if tooling_slug is None:
        tooling_slug = get_settings().priority.tooling_slug

    nodes = await load_graph(session)
    critical_bugs = await get_critical_bugs(session)
    focus = await get_open_focus(session, limit=1)

    scoped = [n for n in nodes.values() if _in_scope(n, client_id)]
    ranked = rank_phases(nodes, client_id=client_id, tooling_slug=tooling_slug)
    top = ranked[0] if ranked else None
    cross_client_blocked = [n for n in scoped if n.cross_client_block is not None]

    recommendation = None
    action_message = None
    if top:
        node = top["node"]
        recommendation = {
            "project": node.project_name,
            "project_slug": node.project_slug,
            "client": node.client_name,
            "phase": node.name,
            "phase_id": node.id,
            "status": node.status,
            "score": top["score"],
            "reasons": top["reasons"],
            "description": node.phase.description,
            "unblocks_clients": [
                {"phase": u.phase, "project": u.project, "client": u.client}
                for u in node.unblocks_cross_client
            ],
        }
        if node.unblocks_cross_client:
            unblocked = node.unblocks_cross_client[0]
            action_message = (
                f'Complete "{node.name}" ({node.client_name}) -> '
                f'Then work on "{unblocked.phase}" ({unblocked.client})'
            )

    alternatives = [
        {
            "project": r["node"].project_name,
            "client": r["node"].client_name,
            "phase": r["node"].name,
            "phase_id": r["node"].id,
            "score": r["score"],
            "reasons": r["reasons"],
        }
        for r in ranked[1:1 + MAX_ALTERNATIVES]
    ]

    logger.debug(
        "whats-next: %d actionable of %d phases, top=%s",
        len(ranked), len(scoped), recommendation["phase"] if recommendation else None,
    )

    return {
        "recommendation": recommendation,
        "alternatives": alternatives,
        "action_message": action_message,
        "current_focus": focus_to_dict(focus[0]) if focus else None,
        "warnings": build_warnings(scoped, critical_bugs),
        "cross_client_dependencies": len(cross_client_blocked),
        "summary": {
            "total_phases": len(scoped),
            "actionable": len(ranked),
            "blocked": sum(1 for n in scoped if n.is_blocked),
            "cross_client_blocked": len(cross_client_blocked),
            "in_progress": sum(1 for n in scoped if n.status == "in_progress"),
            "complete": sum(1 for n in scoped if n.status == "complete"),
        },
    }


async def complete_phase(session: AsyncSession, phase_id: UUID) -> Phase:
    """Close open focus records on the phase and mark it complete."""
    phase = await session.get(Phase, phase_id)
    if phase is None:
        raise NotFoundError(f"Phase {phase_id} not found")

    now = datetime.now(timezone.utc)
    result = await session.execute(
        update(CurrentFocus)
        .where(CurrentFocus.phase_id == phase_id, CurrentFocus.completed_at.is_(None))
        .values(completed_at=now)
        .execution_options(synchronize_session="fetch")
    )
    phase.status = "complete"
    phase.completed_at = now
    await session.flush()

    logger.info("Phase completed: %s (%d focus record(s) closed)", phase.name, result.rowcount or 0)
    return phase


async def set_focus(
    session: AsyncSession,
    phase_id: UUID,
    rationale: Optional[str] = None,
    set_by: str = "user",
) -> tuple[CurrentFocus, Phase]:
    """Start a phase and open a focus record for it.

    Existing open focus records are left open.
    """
    phase = await session.get(Phase, phase_id)
    if phase is None:
        raise NotFoundError("Phase not found")

    phase.status = "in_progress"
    if phase.started_at is None:
        phase.started_at = datetime.now(timezone.utc)

    focus = CurrentFocus(
        project_id=phase.project_id,
        phase_id=phase.id,
        priority=1,
        rationale=rationale or f"Focus on {phase.name}",
        set_by=set_by,
    )
    session.add(focus)
    await session.flush()

    logger.info("Focus set: %s", phase.name)
    return focus, phase
