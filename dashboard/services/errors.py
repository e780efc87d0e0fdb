from __future__ import annotations

from typing import Any, Dict, Optional


class DashboardError(Exception):
    """Base class for errors raised by dashboard services."""


class ProjectNotFoundError(DashboardError):
    def __init__(self, project_id: str) -> None:
        super().__init__(f"Project {project_id} not found")
        self.project_id = project_id


class ConfigLoadError(DashboardError):
    """The engine configuration of a project is missing or unreadable."""


class EngineError(DashboardError):
    """The diff engine failed for a reason other than visual differences."""

    def __init__(self, message: str, *, result: Optional[Dict[str, Any]] = None, output: str = "") -> None:
        super().__init__(message)
        self.result = result
        self.output = output


class VisualDifferencesError(EngineError):
    """The diff engine completed but reported mismatching screenshots."""


class ReportMergeError(DashboardError):
    """Network-error records could not be written into the report artifact."""


class BackupError(DashboardError):
    pass
