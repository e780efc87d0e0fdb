from __future__ import annotations

from fastapi import APIRouter, HTTPException
from fastapi.responses import FileResponse

from dashboard.context import AppContext, ContextDep

router = APIRouter(tags=["reports"])


@router.get("/reports/{project_id}/{artifact_path:path}")
async def read_report_artifact(project_id: str, artifact_path: str, ctx: AppContext = ContextDep) -> FileResponse:
    """Serve report pages and bitmaps, for the current run and for backups."""
    if not ctx.repository.get_project(project_id):
        raise HTTPException(status_code=404, detail="Project not found")
    target = ctx.workspace.resolve_inside(ctx.workspace.project_dir(project_id), artifact_path)
    if target is None or not target.exists() or not target.is_file():
        raise HTTPException(status_code=404, detail="Artifact not found")
    return FileResponse(path=target)
