from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, HTTPException

from dashboard.context import AppContext, ContextDep
from dashboard.schemas import SettingsUpdate

router = APIRouter(prefix="/api", tags=["settings"])


@router.get("/settings")
async def read_settings(ctx: AppContext = ContextDep) -> Dict[str, Any]:
    return ctx.repository.get_config()


@router.patch("/settings")
async def update_settings(payload: SettingsUpdate, ctx: AppContext = ContextDep) -> Dict[str, Any]:
    try:
        return ctx.repository.update_config(payload.model_dump(exclude_unset=True))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
