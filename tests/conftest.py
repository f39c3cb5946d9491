"""Shared test fixtures."""

import uuid
from unittest.mock import MagicMock

import pytest_asyncio


def _mock(defaults: dict, overrides: dict):
    defaults.update(overrides)
    mock = MagicMock()
    for k, v in defaults.items():
        setattr(mock, k, v)
    return mock


def make_client(**overrides):
    """Create a mock Client object for testing."""
    return _mock({"id": uuid.uuid4(), "name": "Test Client"}, overrides)


def make_project(**overrides):
    """Create a mock Project object for testing."""
    defaults = {
        "id": uuid.uuid4(),
        "client_id": None,
        "slug": "test-project",
        "name": "Test Project",
        "description": None,
        "server_path": None,
        "sort_order": 1,
        "is_active": True,
    }
    return _mock(defaults, overrides)


def make_phase(**overrides):
    """Create a mock Phase object for testing."""
    defaults = {
        "id": uuid.uuid4(),
        "project_id": uuid.uuid4(),
        "name": "Test Phase",
        "description": None,
        "status": "pending",
        "sort_order": 1,
        "started_at": None,
        "completed_at": None,
    }
    return _mock(defaults, overrides)


def make_dependency(phase, depends_on, notes=None):
    """Create a mock PhaseDependency: ``phase`` is blocked by ``depends_on``."""
    return _mock(
        {
            "id": uuid.uuid4(),
            "phase_id": phase.id,
            "depends_on_phase_id": depends_on.id,
            "dependency_type": "blocks",
            "notes": notes,
        },
        {},
    )


@pytest_asyncio.fixture
async def db_session(tmp_path):
    """A real async session on a throwaway SQLite database.

    The module-level session factory in ``waypoint.storage.db`` points at the
    same database, so code that opens its own sessions sees the same data.
    """
    from waypoint.storage import db

    db.configure(f"sqlite+aiosqlite:///{tmp_path / 'waypoint.db'}")
    await db.init_db()
    async with db.get_session() as session:
        yield session
    await db.close_db()


async def seed_project(session, client, slug, phases, server_path=None, sort_order=1):
    """Create a project with phases given as (name, status) pairs in order.

    Returns (project, [phase, ...]).
    """
    from waypoint.storage.models import Phase, Project

    project = Project(
        client_id=client.id if client is not None else None,
        slug=slug,
        name=slug.replace("-", " ").title(),
        server_path=server_path,
        sort_order=sort_order,
    )
    session.add(project)
    await session.flush()

    rows = []
    for i, (name, status) in enumerate(phases, 1):
        phase = Phase(project_id=project.id, name=name, status=status, sort_order=i)
        session.add(phase)
        rows.append(phase)
    await session.flush()
    return project, rows


async def seed_client(session, name):
    from waypoint.storage.models import Client

    client = Client(name=name)
    session.add(client)
    await session.flush()
    return client


async def sort_orders(session, project_id) -> dict:
    """name -> sort_order for a project, read fresh from the database."""
    from sqlalchemy import select

    from waypoint.storage.models import Phase

    result = await session.execute(
        select(Phase.name, Phase.sort_order).where(Phase.project_id == project_id)
    )
    return {name: order for name, order in result.all()}
