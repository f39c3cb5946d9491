"""SQLAlchemy ORM models for Waypoint."""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

PHASE_STATUSES = ("pending", "in_progress", "complete")
ACTIONABLE_STATUSES = ("pending", "in_progress")
OPEN_BUG_STATUSES = ("open", "investigating")


class Base(DeclarativeBase):
    pass


class Client(Base):
    __tablename__ = "clients"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    projects: Mapped[list["Project"]] = relationship(back_populates="client")


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    client_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("clients.id", ondelete="SET NULL")
    )
    slug: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    server_path: Mapped[Optional[str]] = mapped_column(Text)
    sort_order: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    client: Mapped[Optional["Client"]] = relationship(back_populates="projects")
    phases: Mapped[list["Phase"]] = relationship(
        back_populates="project", cascade="all, delete-orphan", order_by="Phase.sort_order"
    )

    __table_args__ = (
        Index("idx_projects_client", "client_id"),
        Index("idx_projects_active", "is_active"),
    )


class Phase(Base):
    __tablename__ = "project_phases"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[str] = mapped_column(
        String,
        CheckConstraint("status IN ('pending','in_progress','complete')"),
        default="pending",
    )
    # Dense 1..N within a project; not a unique index because shifts pass
    # through transient duplicates inside a transaction.
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    project: Mapped["Project"] = relationship(back_populates="phases")

    __mapper_args__ = {"eager_defaults": True}

    __table_args__ = (
        Index("idx_phases_project_order", "project_id", "sort_order"),
        Index("idx_phases_status", "status"),
    )


class PhaseDependency(Base):
    __tablename__ = "phase_dependencies"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    phase_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("project_phases.id", ondelete="CASCADE"), nullable=False
    )
    depends_on_phase_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("project_phases.id", ondelete="CASCADE"), nullable=False
    )
    dependency_type: Mapped[str] = mapped_column(String, default="blocks")
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        CheckConstraint("phase_id <> depends_on_phase_id", name="ck_dependency_not_self"),
        Index("idx_dependencies_phase", "phase_id"),
        Index("idx_dependencies_depends_on", "depends_on_phase_id"),
    )


class CurrentFocus(Base):
    __tablename__ = "current_focus"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("projects.id", ondelete="CASCADE")
    )
    phase_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("project_phases.id", ondelete="SET NULL")
    )
    priority: Mapped[int] = mapped_column(Integer, default=1)
    rationale: Mapped[Optional[str]] = mapped_column(Text)
    set_by: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    project: Mapped[Optional["Project"]] = relationship()

    __mapper_args__ = {"eager_defaults": True}

    __table_args__ = (
        Index("idx_focus_open", "completed_at", "priority"),
    )


class Bug(Base):
    __tablename__ = "bugs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    severity: Mapped[str] = mapped_column(
        String,
        CheckConstraint("severity IN ('critical','high','medium','low')"),
        default="medium",
    )
    status: Mapped[str] = mapped_column(
        String,
        CheckConstraint("status IN ('open','investigating','resolved','closed')"),
        default="open",
    )
    project_path: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("idx_bugs_status", "status", "severity"),
    )


class Todo(Base):
    __tablename__ = "todos"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String, default="pending")
    priority: Mapped[Optional[str]] = mapped_column(String)
    project_path: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __mapper_args__ = {"eager_defaults": True}


class Tradeline(Base):
    __tablename__ = "tradelines"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String, default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class TodoAnalysis(Base):
    __tablename__ = "todo_analyses"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    summary: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[dict] = mapped_column(JSON, default=dict)
    source: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
