"""FastAPI REST API for Waypoint."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from waypoint.config import get_settings
from waypoint.errors import ValidationError, WaypointError
from waypoint.storage.db import get_session
from waypoint.watcher import TodoWatcher

logger = logging.getLogger(__name__)

AVAILABLE_ENDPOINTS = [
    "GET /health",
    "GET /status",
    "GET /whats-next",
    "POST /complete",
    "POST /focus",
    "POST /roadmap/phase",
    "PATCH /roadmap/phase/:id/reorder",
    "PATCH /roadmap/phase/:id/status",
    "POST /roadmap/phase/:id/revisit",
    "POST /roadmap/dependency",
    "DELETE /roadmap/dependency",
    "POST /roadmap/from-todo",
    "GET /todos/status",
    "POST /todos/check",
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    if settings.watcher.enabled:
        watcher = TodoWatcher(settings=settings.watcher)
        app.state.watcher = watcher
        try:
            await watcher.initialize()
            watcher.start()
        except Exception as e:
            logger.error("TODO watcher failed to start: %s", e, exc_info=True)
    yield
    watcher = getattr(app.state, "watcher", None)
    if watcher is not None:
        watcher.stop()


app = FastAPI(
    title="Waypoint API",
    description="Dependency-aware project roadmap and priority engine",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().api.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Error handling ---

@app.exception_handler(WaypointError)
async def waypoint_error_handler(request: Request, exc: WaypointError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": str(exc)})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = "; ".join(
        f"{'.'.join(str(p) for p in e['loc'][1:]) or 'body'}: {e['msg']}" for e in exc.errors()
    )
    return JSONResponse(status_code=400, content={"success": False, "error": errors})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404:
        return JSONResponse(
            status_code=404,
            content={"success": False, "error": "Not found", "available_endpoints": AVAILABLE_ENDPOINTS},
        )
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": str(exc.detail)})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("%s %s failed: %s", request.method, request.url.path, exc, exc_info=exc)
    return JSONResponse(status_code=500, content={"success": False, "error": str(exc)})


# --- Pydantic models ---

class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class PhaseResponse(BaseModel):
    id: UUID
    project_id: UUID
    name: str
    description: Optional[str] = None
    status: str
    sort_order: int
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class FocusResponse(BaseModel):
    id: UUID
    project_id: Optional[UUID] = None
    phase_id: Optional[UUID] = None
    priority: int
    rationale: Optional[str] = None
    set_by: Optional[str] = None
    completed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class DependencyResponse(BaseModel):
    id: UUID
    phase_id: UUID
    depends_on_phase_id: UUID
    dependency_type: str
    notes: Optional[str] = None

    model_config = {"from_attributes": True}


class PhaseIdRequest(BaseModel):
    phase_id: Optional[UUID] = None
    rationale: Optional[str] = None


class InsertPhaseRequest(CamelModel):
    project_id: Optional[UUID] = Field(None, alias="projectId")
    name: Optional[str] = None
    description: Optional[str] = None
    after_phase_id: Optional[UUID] = Field(None, alias="afterPhaseId")
    before_phase_id: Optional[UUID] = Field(None, alias="beforePhaseId")


class ReorderRequest(CamelModel):
    new_order: Optional[int] = Field(None, alias="newOrder")


class StatusRequest(BaseModel):
    status: Optional[str] = None


class RevisitRequest(BaseModel):
    reason: Optional[str] = None


class DependencyRequest(CamelModel):
    phase_id: Optional[UUID] = Field(None, alias="phaseId")
    depends_on_phase_id: Optional[UUID] = Field(None, alias="dependsOnPhaseId")
    notes: Optional[str] = None


class TodoPayload(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    priority: Optional[str] = None


class FromTodoRequest(CamelModel):
    todo: Optional[TodoPayload] = None
    project_id: Optional[UUID] = Field(None, alias="projectId")


# --- Endpoints ---

@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/status")
async def portfolio_status(client_id: Optional[UUID] = Query(None)):
    """All active projects with phases, stats, tradelines and focus."""
    from waypoint.status import get_portfolio_status

    async with get_session() as session:
        status = await get_portfolio_status(session, client_id=client_id)
    return {"success": True, **status}


@app.get("/whats-next")
async def whats_next(client_id: Optional[UUID] = Query(None)):
    """Recommend what to work on next."""
    from waypoint.priority import get_whats_next

    async with get_session() as session:
        result = await get_whats_next(session, client_id=client_id)
    return {"success": True, **result}


@app.post("/complete")
async def complete(request: PhaseIdRequest):
    """Mark a phase complete, then answer what's next."""
    from waypoint.priority import complete_phase

    if not request.phase_id:
        raise ValidationError("phase_id required")

    async with get_session() as session:
        await complete_phase(session, request.phase_id)
    return await whats_next(client_id=None)


@app.post("/focus")
async def focus(request: PhaseIdRequest):
    """Set the current focus to a phase."""
    from waypoint.priority import set_focus

    if not request.phase_id:
        raise ValidationError("phase_id required")

    async with get_session() as session:
        record, phase = await set_focus(session, request.phase_id, rationale=request.rationale)
        return {
            "success": True,
            "focus": FocusResponse.model_validate(record),
            "phase": PhaseResponse.model_validate(phase),
        }


@app.post("/roadmap/phase")
async def insert_phase(request: InsertPhaseRequest):
    """Insert a new phase into a project's roadmap."""
    from waypoint.roadmap import insert_phase as _insert_phase

    if not request.project_id:
        raise ValidationError("projectId required")

    async with get_session() as session:
        phase = await _insert_phase(
            session,
            request.project_id,
            name=request.name,
            description=request.description,
            after_phase_id=request.after_phase_id,
            before_phase_id=request.before_phase_id,
        )
        return {"success": True, "phase": PhaseResponse.model_validate(phase)}


@app.patch("/roadmap/phase/{phase_id}/reorder")
async def reorder_phase(phase_id: UUID, request: ReorderRequest):
    from waypoint.roadmap import reorder_phase as _reorder_phase

    if request.new_order is None:
        raise ValidationError("newOrder required")

    async with get_session() as session:
        result = await _reorder_phase(session, phase_id, request.new_order)
    return {"success": True, **result}


@app.patch("/roadmap/phase/{phase_id}/status")
async def update_phase_status(phase_id: UUID, request: StatusRequest):
    from waypoint.roadmap import update_phase_status as _update_phase_status

    if not request.status:
        raise ValidationError("status required")

    async with get_session() as session:
        phase = await _update_phase_status(session, phase_id, request.status)
        return {"success": True, "phase": PhaseResponse.model_validate(phase)}


@app.post("/roadmap/phase/{phase_id}/revisit")
async def revisit_phase(phase_id: UUID, request: RevisitRequest):
    from waypoint.roadmap import mark_for_revisit

    if not request.reason:
        raise ValidationError("reason required")

    async with get_session() as session:
        phase = await mark_for_revisit(session, phase_id, request.reason)
    return {"success": True, "phase": phase.name, "status": phase.status, "reason": request.reason}


@app.post("/roadmap/dependency")
async def add_dependency(request: DependencyRequest):
    from waypoint.roadmap import add_dependency as _add_dependency

    async with get_session() as session:
        dependency = await _add_dependency(
            session, request.phase_id, request.depends_on_phase_id, notes=request.notes
        )
        return {"success": True, "dependency": DependencyResponse.model_validate(dependency)}


@app.delete("/roadmap/dependency")
async def remove_dependency(request: DependencyRequest):
    from waypoint.roadmap import remove_dependency as _remove_dependency

    async with get_session() as session:
        removed = await _remove_dependency(session, request.phase_id, request.depends_on_phase_id)
    return {"success": True, "removed": removed}


@app.post("/roadmap/from-todo")
async def phase_from_todo(request: FromTodoRequest):
    from waypoint.roadmap import create_phase_from_todo

    if not request.project_id:
        raise ValidationError("projectId required")
    if request.todo is None:
        raise ValidationError("todo required")

    async with get_session() as session:
        phase = await create_phase_from_todo(session, request.todo.model_dump(), request.project_id)
        return {"success": True, "phase": PhaseResponse.model_validate(phase)}


def _get_watcher(http_request: Request) -> TodoWatcher:
    watcher = getattr(http_request.app.state, "watcher", None)
    if watcher is None:
        watcher = TodoWatcher(settings=get_settings().watcher)
        http_request.app.state.watcher = watcher
    return watcher


@app.get("/todos/status")
async def todos_status(http_request: Request):
    return {"success": True, **_get_watcher(http_request).get_status()}


@app.post("/todos/check")
async def todos_check(http_request: Request):
    """Run a TODO check immediately."""
    from waypoint.watcher import WatcherState

    watcher = _get_watcher(http_request)
    if watcher.state == WatcherState.UNINITIALIZED:
        await watcher.initialize()
    result = await watcher.check_now()
    return {"success": True, "message": "TODO check completed", **result}
