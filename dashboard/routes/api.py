from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException
from fastapi.responses import JSONResponse
from starlette.background import BackgroundTask

from dashboard.context import AppContext, ContextDep
from dashboard.schemas import Project, ProjectCreate, ProgressEvent, RunRequest, Scenario, ScenarioList, Viewport
from dashboard.services.errors import ConfigLoadError, ProjectNotFoundError
from dashboard.services.pipeline import RunOutcome

router = APIRouter(prefix="/api", tags=["api"])


def _ensure_project(ctx: AppContext, project_id: str) -> Dict[str, Any]:
    project = ctx.repository.get_project(project_id)
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    return project


def _load_config(ctx: AppContext, project_id: str) -> Dict[str, Any]:
    _ensure_project(ctx, project_id)
    try:
        return ctx.repository.load_engine_config(project_id)
    except ConfigLoadError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


def _respond(outcome: RunOutcome) -> JSONResponse:
    background = BackgroundTask(outcome.follow_up.run) if outcome.follow_up else None
    return JSONResponse(outcome.body, status_code=outcome.status_code, background=background)


# Projects ------------------------------------------------------------------------
@router.get("/projects", response_model=List[Project])
async def list_projects(ctx: AppContext = ContextDep) -> List[Project]:
    return ctx.repository.list_projects()


@router.post("/projects", response_model=Project, status_code=201)
async def create_project(payload: ProjectCreate, ctx: AppContext = ContextDep) -> Project:
    return ctx.repository.create_project(payload.model_dump())


@router.get("/projects/{project_id}", response_model=Project)
async def get_project(project_id: str, ctx: AppContext = ContextDep) -> Project:
    return _ensure_project(ctx, project_id)


@router.delete("/projects/{project_id}", status_code=204)
async def delete_project(project_id: str, ctx: AppContext = ContextDep) -> None:
    _ensure_project(ctx, project_id)
    ctx.repository.delete_project(project_id)


# Engine configuration -----------------------------------------------------------
@router.get("/projects/{project_id}/config")
async def get_config(project_id: str, ctx: AppContext = ContextDep) -> Dict[str, Any]:
    return _load_config(ctx, project_id)


@router.put("/projects/{project_id}/config")
async def replace_config(
    project_id: str, payload: Dict[str, Any], ctx: AppContext = ContextDep
) -> Dict[str, Any]:
    _ensure_project(ctx, project_id)
    try:
        scenarios = [Scenario.model_validate(item) for item in payload.get("scenarios") or []]
        viewports = [Viewport.model_validate(item) for item in payload.get("viewports") or []]
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    payload["scenarios"] = [scenario.model_dump(exclude_none=True) for scenario in scenarios]
    payload["viewports"] = [viewport.model_dump() for viewport in viewports]
    try:
        return ctx.repository.save_engine_config(project_id, payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.get("/projects/{project_id}/scenarios", response_model=ScenarioList)
async def list_scenarios(project_id: str, ctx: AppContext = ContextDep) -> Dict[str, Any]:
    config = _load_config(ctx, project_id)
    return {"scenarios": config.get("scenarios") or []}


@router.put("/projects/{project_id}/scenarios", response_model=ScenarioList)
async def replace_scenarios(
    project_id: str, payload: ScenarioList, ctx: AppContext = ContextDep
) -> Dict[str, Any]:
    _load_config(ctx, project_id)
    try:
        scenarios = ctx.repository.replace_scenarios(
            project_id, [scenario.model_dump(exclude_none=True) for scenario in payload.scenarios]
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"scenarios": scenarios}


# Runs ----------------------------------------------------------------------------
@router.post("/projects/{project_id}/test")
async def run_test(
    project_id: str, payload: Optional[RunRequest] = None, ctx: AppContext = ContextDep
) -> JSONResponse:
    label_filter = payload.filter if payload else None
    try:
        outcome = await ctx.orchestrator.run_test(project_id, label_filter)
    except ProjectNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Project not found") from exc
    except ConfigLoadError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return _respond(outcome)


async def _run_command(ctx: AppContext, project_id: str, command: str, payload: Optional[RunRequest]) -> JSONResponse:
    try:
        outcome = await ctx.orchestrator.run_command(project_id, command, payload.filter if payload else None)
    except ProjectNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Project not found") from exc
    except ConfigLoadError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return _respond(outcome)


@router.post("/projects/{project_id}/reference")
async def run_reference(
    project_id: str, payload: Optional[RunRequest] = None, ctx: AppContext = ContextDep
) -> JSONResponse:
    return await _run_command(ctx, project_id, "reference", payload)


@router.post("/projects/{project_id}/approve")
async def run_approve(
    project_id: str, payload: Optional[RunRequest] = None, ctx: AppContext = ContextDep
) -> JSONResponse:
    return await _run_command(ctx, project_id, "approve", payload)


@router.get("/projects/{project_id}/test-results")
async def test_results(project_id: str, ctx: AppContext = ContextDep) -> Dict[str, Any]:
    _ensure_project(ctx, project_id)
    try:
        return ctx.orchestrator.enhanced_results(project_id)
    except ConfigLoadError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


# Progress events -----------------------------------------------------------------
@router.get("/events", response_model=List[ProgressEvent])
async def read_events(since: int = 0, timeout: float = 25, ctx: AppContext = ContextDep) -> List[ProgressEvent]:
    """Long-poll for progress events newer than ``since``."""
    return await ctx.events.wait(since=since, timeout=max(0.0, min(timeout, 60.0)))
