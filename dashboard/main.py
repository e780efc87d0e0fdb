from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

from fastapi import FastAPI
from fastapi.responses import RedirectResponse

from dashboard.context import AppContext, build_context
from dashboard.routes import api, backups, reports, settings

LOGGER = logging.getLogger("dashboard")


def create_app(data_root: Optional[Path] = None, *, context: Optional[AppContext] = None) -> FastAPI:
    """Build the application with an explicitly constructed service context."""
    app_context = context or build_context(data_root)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        LOGGER.info("Dashboard data root: %s", app_context.workspace.root)
        try:
            yield
        finally:
            app_context.close()

    app = FastAPI(title="Backstop Visual Regression Dashboard", lifespan=lifespan)
    app.state.context = app_context
    app.include_router(api.router)
    app.include_router(backups.router)
    app.include_router(reports.router)
    app.include_router(settings.router)

    @app.get("/")
    async def root() -> RedirectResponse:
        """Send visitors to the project list."""
        return RedirectResponse(url="/api/projects", status_code=303)

    return app


app = create_app()
