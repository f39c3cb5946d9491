"""Dependency graph — which phases block which, across client boundaries.

The graph is rebuilt from a fresh snapshot on every evaluation. Every lookup is
a single hop over the edge list (no transitive closure), so malformed data
such as dependency cycles can never cause unbounded traversal.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional
from uuid import UUID

logger = logging.getLogger(__name__)

UNKNOWN_CLIENT = "Unknown"


@dataclass
class Blocker:
    phase: "PhaseNode"
    notes: Optional[str] = None


@dataclass
class CrossClientBlock:
    blocker_phase: str
    blocker_project: Optional[str]
    blocker_client: str
    my_client: str
    notes: Optional[str] = None


@dataclass
class Unblock:
    phase: str
    project: Optional[str]
    client: str


@dataclass
class PhaseNode:
    """A phase enriched with its project, client and blocking relations."""

    phase: object
    project: Optional[object] = None
    client: Optional[object] = None
    blocked_by: list[Blocker] = field(default_factory=list)
    unblocks_cross_client: list[Unblock] = field(default_factory=list)
    cross_client_block: Optional[CrossClientBlock] = None

    @property
    def id(self) -> UUID:
        return self.phase.id

    @property
    def name(self) -> str:
        return self.phase.name

    @property
    def status(self) -> str:
        return self.phase.status

    @property
    def sort_order(self) -> int:
        return self.phase.sort_order

    @property
    def client_id(self) -> Optional[UUID]:
        return self.project.client_id if self.project is not None else None

    @property
    def client_name(self) -> str:
        return self.client.name if self.client is not None else UNKNOWN_CLIENT

    @property
    def project_name(self) -> Optional[str]:
        return self.project.name if self.project is not None else None

    @property
    def project_slug(self) -> Optional[str]:
        return self.project.slug if self.project is not None else None

    @property
    def is_blocked(self) -> bool:
        return len(self.blocked_by) > 0


def build_graph(
    phases: Iterable,
    projects: Iterable,
    clients: Iterable,
    dependencies: Iterable,
) -> dict[UUID, PhaseNode]:
    """Build the blocking graph for one evaluation pass.

    Returns phase id -> PhaseNode, preserving the order of ``phases``.
    Edges that reference an unknown phase are ignored.
    """
    project_map = {p.id: p for p in projects}
    client_map = {c.id: c for c in clients}
    dependencies = list(dependencies)

    nodes: dict[UUID, PhaseNode] = {}
    for phase in phases:
        project = project_map.get(phase.project_id)
        client = client_map.get(project.client_id) if project is not None else None
        nodes[phase.id] = PhaseNode(phase=phase, project=project, client=client)

    skipped = 0
    for dep in dependencies:
        node = nodes.get(dep.phase_id)
        blocker = nodes.get(dep.depends_on_phase_id)
        if node is None or blocker is None:
            skipped += 1
            continue

        cross_client = blocker.client_id != node.client_id

        # A completed blocker is satisfied regardless of the edge existing
        if blocker.status != "complete":
            node.blocked_by.append(Blocker(phase=blocker, notes=dep.notes))
            if cross_client and node.cross_client_block is None:
                node.cross_client_block = CrossClientBlock(
                    blocker_phase=blocker.name,
                    blocker_project=blocker.project_name,
                    blocker_client=blocker.client_name,
                    my_client=node.client_name,
                    notes=dep.notes,
                )

        if cross_client:
            blocker.unblocks_cross_client.append(
                Unblock(phase=node.name, project=node.project_name, client=node.client_name)
            )

    if skipped:
        logger.debug("Ignored %d dependency edge(s) referencing unknown phases", skipped)
    return nodes


def same_client_unblock_count(node: PhaseNode, nodes: dict[UUID, PhaseNode]) -> int:
    """Number of same-client phases currently blocked by ``node``."""
    return sum(
        1
        for other in nodes.values()
        if other.client_id == node.client_id
        and any(b.phase.id == node.id for b in other.blocked_by)
    )
