from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional

import httpx
from fastapi import Depends, Request

from dashboard.services.backups import BackupService
from dashboard.services.engine import EngineBackend
from dashboard.services.events import EventBroker
from dashboard.services.pipeline import RunOrchestrator
from dashboard.services.storage import DashboardRepository, LocalJsonStorage
from dashboard.services.workspace import ProjectWorkspace

STATE_FILENAME = "dashboard.db.json"
DATA_ROOT_ENV = "DASHBOARD_DATA_ROOT"


@dataclass
class AppContext:
    """Every long-lived service the routes need, built once per application."""

    workspace: ProjectWorkspace
    repository: DashboardRepository
    events: EventBroker
    backups: BackupService
    orchestrator: RunOrchestrator

    def close(self) -> None:
        self.events.close()


def default_data_root() -> Path:
    return Path(os.environ.get(DATA_ROOT_ENV, "backstop_data"))


def build_context(
    data_root: Optional[Path] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    backend: Optional[EngineBackend] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> AppContext:
    root = data_root or default_data_root()
    workspace = ProjectWorkspace(root)
    repository = DashboardRepository(LocalJsonStorage(workspace.root / STATE_FILENAME), workspace)
    events = EventBroker()
    backups = BackupService(workspace, events)
    orchestrator = RunOrchestrator(
        repository,
        backups,
        events,
        transport=transport,
        backend=backend,
        sleep=sleep,
    )
    return AppContext(
        workspace=workspace,
        repository=repository,
        events=events,
        backups=backups,
        orchestrator=orchestrator,
    )


def get_context(request: Request) -> AppContext:
    """FastAPI dependency returning the context attached to the running app."""
    return request.app.state.context


ContextDep = Depends(get_context)
