"""Tests for roadmap mutations on a real SQLite session."""

import asyncio
import gc
import uuid
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from tests.conftest import seed_client, seed_project, sort_orders
from waypoint import roadmap
from waypoint.errors import NotFoundError, StoreError, ValidationError
from waypoint.roadmap import (
    REVISIT_MARKER,
    add_dependency,
    create_phase_from_todo,
    insert_phase,
    mark_for_revisit,
    remove_dependency,
    reorder_phase,
    update_phase_status,
)
from waypoint.storage import db
from waypoint.storage.models import PhaseDependency
from waypoint.storage.ordering import get_project_phases


async def _project(session, phases):
    client = await seed_client(session, "Client")
    return await seed_project(session, client, "proj", phases)


def _is_dense(orders: dict) -> bool:
    return sorted(orders.values()) == list(range(1, len(orders) + 1))


class TestInsertPhase:
    @pytest.mark.asyncio
    async def test_insert_after_anchor(self, db_session):
        project, (p1, p2) = await _project(db_session, [("p1", "pending"), ("p2", "pending")])

        phase = await insert_phase(db_session, project.id, "p1.5", after_phase_id=p1.id)

        assert phase.sort_order == 2
        assert await sort_orders(db_session, project.id) == {"p1": 1, "p1.5": 2, "p2": 3}

    @pytest.mark.asyncio
    async def test_insert_before_anchor(self, db_session):
        project, (p1, p2) = await _project(db_session, [("p1", "pending"), ("p2", "pending")])

        await insert_phase(db_session, project.id, "p0", before_phase_id=p1.id)

        assert await sort_orders(db_session, project.id) == {"p0": 1, "p1": 2, "p2": 3}

    @pytest.mark.asyncio
    async def test_append_without_anchor(self, db_session):
        project, _ = await _project(db_session, [("p1", "pending"), ("p2", "pending")])

        phase = await insert_phase(db_session, project.id, "p3", description="last")

        assert phase.sort_order == 3
        assert phase.status == "pending"
        assert phase.description == "last"

    @pytest.mark.asyncio
    async def test_unknown_anchor_appends(self, db_session):
        project, _ = await _project(db_session, [("p1", "pending"), ("p2", "pending")])

        await insert_phase(db_session, project.id, "px", after_phase_id=uuid.uuid4())

        assert await sort_orders(db_session, project.id) == {"p1": 1, "p2": 2, "px": 3}

    @pytest.mark.asyncio
    async def test_anchor_from_other_project_appends(self, db_session):
        project, _ = await _project(db_session, [("p1", "pending")])
        _, (foreign,) = await seed_project(db_session, None, "other", [("f1", "pending")])

        await insert_phase(db_session, project.id, "new", before_phase_id=foreign.id)

        assert await sort_orders(db_session, project.id) == {"p1": 1, "new": 2}

    @pytest.mark.asyncio
    async def test_insert_into_empty_project(self, db_session):
        project, _ = await _project(db_session, [])

        phase = await insert_phase(db_session, project.id, "first")

        assert phase.sort_order == 1

    @pytest.mark.asyncio
    async def test_per_row_shift_gives_same_result(self, db_session):
        project, (p1, p2, p3) = await _project(
            db_session, [("p1", "pending"), ("p2", "pending"), ("p3", "pending")]
        )

        await insert_phase(db_session, project.id, "new", after_phase_id=p1.id, relative=False)

        assert await sort_orders(db_session, project.id) == {"p1": 1, "new": 2, "p2": 3, "p3": 4}

    @pytest.mark.asyncio
    async def test_missing_name(self, db_session):
        project, _ = await _project(db_session, [])
        with pytest.raises(ValidationError):
            await insert_phase(db_session, project.id, "")

    @pytest.mark.asyncio
    async def test_unknown_project(self, db_session):
        with pytest.raises(NotFoundError):
            await insert_phase(db_session, uuid.uuid4(), "orphan")

    @pytest.mark.asyncio
    async def test_store_failure_carries_context(self, db_session):
        project, (p1,) = await _project(db_session, [("p1", "pending")])

        with patch(
            "waypoint.roadmap.shift_phases",
            new_callable=AsyncMock,
            side_effect=OperationalError("UPDATE", {}, Exception("disk I/O error")),
        ):
            with pytest.raises(StoreError) as exc_info:
                await insert_phase(db_session, project.id, "new", after_phase_id=p1.id)

        assert exc_info.value.operation == "insert_phase"
        assert exc_info.value.context["project_id"] == project.id
        assert "disk I/O error" in str(exc_info.value)


class TestReorderPhase:
    @pytest.mark.asyncio
    async def test_move_up(self, db_session):
        project, (p1, p2, p3) = await _project(
            db_session, [("p1", "pending"), ("p2", "pending"), ("p3", "pending")]
        )

        result = await reorder_phase(db_session, p2.id, 1)

        assert result == {"old_order": 2, "new_order": 1}
        assert await sort_orders(db_session, project.id) == {"p1": 2, "p2": 1, "p3": 3}

    @pytest.mark.asyncio
    async def test_move_down(self, db_session):
        project, (p1, p2, p3, p4) = await _project(
            db_session, [("p1", "pending"), ("p2", "pending"), ("p3", "pending"), ("p4", "pending")]
        )

        await reorder_phase(db_session, p1.id, 3)

        assert await sort_orders(db_session, project.id) == {"p2": 1, "p3": 2, "p1": 3, "p4": 4}

    @pytest.mark.asyncio
    async def test_same_position_is_noop(self, db_session):
        project, (p1, p2) = await _project(db_session, [("p1", "pending"), ("p2", "pending")])

        result = await reorder_phase(db_session, p2.id, 2)

        assert result == {"old_order": 2, "new_order": 2}
        assert await sort_orders(db_session, project.id) == {"p1": 1, "p2": 2}

    @pytest.mark.asyncio
    async def test_out_of_range_is_clamped(self, db_session):
        project, (p1, p2, p3) = await _project(
            db_session, [("p1", "pending"), ("p2", "pending"), ("p3", "pending")]
        )

        result = await reorder_phase(db_session, p1.id, 99)
        assert result["new_order"] == 3
        await reorder_phase(db_session, p1.id, -4)

        assert await sort_orders(db_session, project.id) == {"p1": 1, "p2": 2, "p3": 3}

    @pytest.mark.asyncio
    async def test_per_row_reorder(self, db_session):
        project, (p1, p2, p3) = await _project(
            db_session, [("p1", "pending"), ("p2", "pending"), ("p3", "pending")]
        )

        await reorder_phase(db_session, p3.id, 1, relative=False)

        assert await sort_orders(db_session, project.id) == {"p3": 1, "p1": 2, "p2": 3}

    @pytest.mark.asyncio
    async def test_unknown_phase(self, db_session):
        with pytest.raises(NotFoundError):
            await reorder_phase(db_session, uuid.uuid4(), 1)

    @pytest.mark.asyncio
    async def test_dense_order_survives_mixed_sequence(self, db_session):
        project, phases = await _project(db_session, [(f"p{i}", "pending") for i in range(1, 6)])

        inserted = await insert_phase(db_session, project.id, "a", after_phase_id=phases[2].id)
        await reorder_phase(db_session, phases[0].id, 6)
        await insert_phase(db_session, project.id, "b", before_phase_id=phases[4].id, relative=False)
        await reorder_phase(db_session, inserted.id, 1)
        await insert_phase(db_session, project.id, "c")
        await reorder_phase(db_session, phases[3].id, 2, relative=False)

        orders = await sort_orders(db_session, project.id)
        assert len(orders) == 8
        assert _is_dense(orders)


class TestPhaseStatus:
    @pytest.mark.asyncio
    async def test_in_progress_sets_started_at_once(self, db_session):
        _, (phase,) = await _project(db_session, [("p1", "pending")])

        await update_phase_status(db_session, phase.id, "in_progress")
        started = phase.started_at
        await update_phase_status(db_session, phase.id, "in_progress")

        assert started is not None
        assert phase.started_at == started

    @pytest.mark.asyncio
    async def test_complete_sets_completed_at(self, db_session):
        _, (phase,) = await _project(db_session, [("p1", "pending")])

        updated = await update_phase_status(db_session, phase.id, "complete")

        assert updated.status == "complete"
        assert updated.completed_at is not None

    @pytest.mark.asyncio
    async def test_invalid_status(self, db_session):
        _, (phase,) = await _project(db_session, [("p1", "pending")])
        with pytest.raises(ValidationError):
            await update_phase_status(db_session, phase.id, "done")


class TestDependencies:
    @pytest.mark.asyncio
    async def test_add_and_remove(self, db_session):
        _, (p1, p2) = await _project(db_session, [("p1", "pending"), ("p2", "pending")])

        dep = await add_dependency(db_session, p2.id, p1.id, notes="p1 first")

        assert dep.dependency_type == "blocks"
        assert dep.notes == "p1 first"
        assert await remove_dependency(db_session, p2.id, p1.id) == 1
        result = await db_session.execute(select(PhaseDependency))
        assert result.scalars().all() == []

    @pytest.mark.asyncio
    async def test_duplicates_are_kept(self, db_session):
        _, (p1, p2) = await _project(db_session, [("p1", "pending"), ("p2", "pending")])

        await add_dependency(db_session, p2.id, p1.id)
        await add_dependency(db_session, p2.id, p1.id)

        result = await db_session.execute(select(PhaseDependency))
        assert len(result.scalars().all()) == 2

    @pytest.mark.asyncio
    async def test_remove_only_exact_pair(self, db_session):
        _, (p1, p2, p3) = await _project(db_session, [("p1", "pending"), ("p2", "pending"), ("p3", "pending")])
        await add_dependency(db_session, p2.id, p1.id)
        await add_dependency(db_session, p3.id, p1.id)

        await remove_dependency(db_session, p2.id, p1.id)

        result = await db_session.execute(select(PhaseDependency))
        remaining = result.scalars().all()
        assert [(d.phase_id, d.depends_on_phase_id) for d in remaining] == [(p3.id, p1.id)]

    @pytest.mark.asyncio
    async def test_remove_missing_is_noop(self, db_session):
        assert await remove_dependency(db_session, uuid.uuid4(), uuid.uuid4()) == 0

    @pytest.mark.asyncio
    async def test_self_dependency_rejected(self, db_session):
        _, (p1,) = await _project(db_session, [("p1", "pending")])
        with pytest.raises(ValidationError):
            await add_dependency(db_session, p1.id, p1.id)

    @pytest.mark.asyncio
    async def test_missing_ids_rejected(self, db_session):
        with pytest.raises(ValidationError):
            await add_dependency(db_session, None, uuid.uuid4())

    @pytest.mark.asyncio
    async def test_unknown_blocker_rejected(self, db_session):
        _, (p1,) = await _project(db_session, [("p1", "pending")])

        with pytest.raises(NotFoundError):
            await add_dependency(db_session, p1.id, uuid.uuid4())

        result = await db_session.execute(select(PhaseDependency))
        assert result.scalars().all() == []

    @pytest.mark.asyncio
    async def test_unknown_blocked_phase_rejected(self, db_session):
        _, (p1,) = await _project(db_session, [("p1", "pending")])
        with pytest.raises(NotFoundError):
            await add_dependency(db_session, uuid.uuid4(), p1.id)


class TestRevisit:
    @pytest.mark.asyncio
    async def test_complete_phase_is_reopened(self, db_session):
        _, (phase,) = await _project(db_session, [("Auth", "complete")])
        phase.description = "Login flow"

        updated = await mark_for_revisit(db_session, phase.id, "new SSO TODO")

        assert updated.status == "in_progress"
        assert updated.description.startswith("Login flow\n\n")
        assert REVISIT_MARKER in updated.description
        assert updated.description.endswith("): new SSO TODO")

    @pytest.mark.asyncio
    async def test_pending_phase_status_unchanged(self, db_session):
        _, (phase,) = await _project(db_session, [("Auth", "pending")])

        updated = await mark_for_revisit(db_session, phase.id, "check again")

        assert updated.status == "pending"
        assert updated.description.startswith(f"\n\n{REVISIT_MARKER} (")

    @pytest.mark.asyncio
    async def test_unknown_phase(self, db_session):
        with pytest.raises(NotFoundError):
            await mark_for_revisit(db_session, uuid.uuid4(), "why")


class TestPhaseFromTodo:
    @pytest.mark.asyncio
    async def test_inserted_before_first_pending(self, db_session):
        project, _ = await _project(
            db_session, [("done", "complete"), ("active", "in_progress"), ("next", "pending"), ("later", "pending")]
        )

        phase = await create_phase_from_todo(
            db_session, {"title": "Fix export", "description": "CSV export drops rows", "priority": "high"}, project.id
        )

        assert phase.sort_order == 3
        assert phase.status == "pending"
        assert phase.description == "Auto-created from TODO: CSV export drops rows\n\nPriority: high"
        orders = await sort_orders(db_session, project.id)
        assert orders == {"done": 1, "active": 2, "Fix export": 3, "next": 4, "later": 5}

    @pytest.mark.asyncio
    async def test_appended_when_nothing_pending(self, db_session):
        project, _ = await _project(db_session, [("done", "complete")])

        phase = await create_phase_from_todo(db_session, {"title": "Polish"}, project.id)

        assert phase.sort_order == 2
        assert phase.description == "Auto-created from TODO: Polish\n\nPriority: normal"

    @pytest.mark.asyncio
    async def test_title_required(self, db_session):
        project, _ = await _project(db_session, [])
        with pytest.raises(ValidationError):
            await create_phase_from_todo(db_session, {"description": "no title"}, project.id)


@pytest_asyncio.fixture
async def shared_store(tmp_path):
    """A SQLite store with no session held open, for tests that open their own."""
    db.configure(f"sqlite+aiosqlite:///{tmp_path / 'concurrent.db'}")
    await db.init_db()
    yield
    await db.close_db()


async def _seed_roadmap(phases):
    async with db.get_session() as session:
        project, _ = await _project(session, phases)
    return project.id


class TestConcurrentMutations:
    async def _append(self, project_id, name, linger):
        async with db.get_session() as session:
            await insert_phase(session, project_id, name)
            # Keep the session open after the call returns
            await asyncio.sleep(linger)

    @pytest.mark.asyncio
    async def test_concurrent_appends_stay_dense(self, shared_store):
        project_id = await _seed_roadmap([("p1", "pending"), ("p2", "pending")])

        await asyncio.gather(self._append(project_id, "a", 0.2), self._append(project_id, "b", 0))

        async with db.get_session() as session:
            orders = await sort_orders(session, project_id)
        assert sorted(orders.values()) == [1, 2, 3, 4]
        assert {orders["a"], orders["b"]} == {3, 4}

    @pytest.mark.asyncio
    async def test_concurrent_inserts_and_reorders_stay_dense(self, shared_store):
        project_id = await _seed_roadmap([(f"p{i}", "pending") for i in range(1, 5)])
        async with db.get_session() as session:
            phase_ids = [p.id for p in await get_project_phases(session, project_id)]

        async def reorder(phase_id, position):
            async with db.get_session() as session:
                await reorder_phase(session, phase_id, position)
                await asyncio.sleep(0.05)

        async def from_todo(title):
            async with db.get_session() as session:
                await create_phase_from_todo(session, {"title": title}, project_id)
                await asyncio.sleep(0.05)

        await asyncio.gather(
            self._append(project_id, "a", 0.1),
            reorder(phase_ids[3], 1),
            from_todo("t1"),
            from_todo("t2"),
            reorder(phase_ids[0], 4),
        )

        async with db.get_session() as session:
            orders = await sort_orders(session, project_id)
        assert len(orders) == 7
        assert _is_dense(orders)


class TestProjectLocks:
    @pytest.mark.asyncio
    async def test_idle_locks_are_released(self, db_session):
        project, _ = await _project(db_session, [("p1", "pending")])

        await insert_phase(db_session, project.id, "p2")
        gc.collect()

        assert project.id not in roadmap._project_locks
