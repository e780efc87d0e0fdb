from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException
from fastapi.responses import Response

from dashboard.context import AppContext, ContextDep
from dashboard.schemas import BackupCreate, BackupSnapshot, BackupStats
from dashboard.services.errors import BackupError, ConfigLoadError
from dashboard.services.workspace import report_path

router = APIRouter(prefix="/api/projects/{project_id}/backups", tags=["backups"])


def _ensure_project(ctx: AppContext, project_id: str) -> None:
    if not ctx.repository.get_project(project_id):
        raise HTTPException(status_code=404, detail="Project not found")


@router.get("")
async def list_backups(project_id: str, ctx: AppContext = ContextDep) -> List[Dict[str, Any]]:
    _ensure_project(ctx, project_id)
    return ctx.backups.list_backups(project_id)


@router.post("")
async def create_backup(
    project_id: str, payload: Optional[BackupCreate] = None, ctx: AppContext = ContextDep
) -> Dict[str, Any]:
    _ensure_project(ctx, project_id)
    payload = payload or BackupCreate()
    try:
        config = ctx.repository.load_engine_config(project_id)
    except ConfigLoadError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    if not report_path(config["paths"]).exists():
        raise HTTPException(
            status_code=404,
            detail="No test results found to backup. Please run a test first.",
        )
    outcome = ctx.backups.snapshot(
        project_id,
        ctx.repository.config_path(project_id),
        config,
        payload.description or "Automated test results backup",
        name=payload.backupName or "backup",
    )
    if outcome.metadata is None:
        raise HTTPException(status_code=500, detail="Failed to create backup: " + "; ".join(outcome.errors))
    return {
        "success": outcome.success,
        "backup": outcome.metadata.model_dump(),
        "errors": outcome.errors,
        "message": f"Backup created successfully: {payload.backupName or outcome.backup_id}",
    }


@router.get("/stats", response_model=BackupStats)
async def backup_stats(project_id: str, ctx: AppContext = ContextDep) -> BackupStats:
    _ensure_project(ctx, project_id)
    return ctx.backups.stats(project_id)


@router.get("/{backup_id}", response_model=BackupSnapshot)
async def get_backup(project_id: str, backup_id: str, ctx: AppContext = ContextDep) -> BackupSnapshot:
    _ensure_project(ctx, project_id)
    try:
        return ctx.backups.get_backup(project_id, backup_id)
    except BackupError as exc:
        raise HTTPException(status_code=404, detail="Backup not found") from exc


@router.get("/{backup_id}/csv")
async def export_backup_csv(project_id: str, backup_id: str, ctx: AppContext = ContextDep) -> Response:
    _ensure_project(ctx, project_id)
    try:
        content = ctx.backups.export_csv(project_id, backup_id)
    except BackupError as exc:
        raise HTTPException(status_code=404, detail="Backup not found") from exc
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="backstop-results-{backup_id}.csv"'},
    )


@router.delete("/{backup_id}")
async def delete_backup(project_id: str, backup_id: str, ctx: AppContext = ContextDep) -> Dict[str, Any]:
    _ensure_project(ctx, project_id)
    try:
        ctx.backups.delete_backup(project_id, backup_id)
    except BackupError as exc:
        raise HTTPException(status_code=404, detail="Backup not found") from exc
    return {"success": True, "message": "Backup deleted successfully"}
