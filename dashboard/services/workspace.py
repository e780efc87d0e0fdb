from __future__ import annotations

import shutil
from pathlib import Path
from typing import Dict, Optional

from dashboard.constants import (
    CONFIG_FILENAME,
    PROJECT_DIRECTORIES,
    REPORT_FILENAME,
    REPORT_INDEX_FILENAME,
)


class ProjectWorkspace:
    """Manage on-disk locations for project configs, reports, bitmaps and backups."""

    def __init__(self, root: Optional[Path] = None, base_url: str = "/reports") -> None:
        resolved_root = root or Path.cwd() / "backstop_data"
        self._root = resolved_root.resolve()
        self._base_url = base_url.rstrip("/")
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def _ensure_dir(self, path: Path) -> Path:
        path.mkdir(parents=True, exist_ok=True)
        return path

    def project_dir(self, project_id: str) -> Path:
        return self._root / "projects" / project_id

    def config_path(self, project_id: str) -> Path:
        return self.project_dir(project_id) / CONFIG_FILENAME

    def engine_paths(self, project_id: str) -> Dict[str, str]:
        base = self.project_dir(project_id)
        return {key: str(base / name) for key, name in PROJECT_DIRECTORIES.items()}

    def initialize(self, project_id: str) -> Dict[str, str]:
        paths = self.engine_paths(project_id)
        for value in paths.values():
            self._ensure_dir(Path(value))
        self._ensure_dir(self.backups_dir(project_id))
        return paths

    def backups_dir(self, project_id: str) -> Path:
        return self.project_dir(project_id) / "backups"

    def backup_dir(self, project_id: str, backup_id: str) -> Path:
        return self.backups_dir(project_id) / backup_id

    def url(self, project_id: str, relative: str) -> str:
        return f"{self._base_url}/{project_id}/{relative.lstrip('/')}"

    def resolve_inside(self, base: Path, relative: str) -> Optional[Path]:
        """Resolve ``relative`` under ``base``, refusing paths that escape it."""
        root = base.resolve()
        target = (root / relative).resolve()
        if target != root and root not in target.parents:
            return None
        return target

    def purge_project(self, project_id: str) -> None:
        """Remove every artifact associated with a project."""
        target = self.project_dir(project_id)
        if target.exists():
            shutil.rmtree(target, ignore_errors=True)


def report_path(paths: Dict[str, str]) -> Path:
    return Path(paths["html_report"]) / REPORT_FILENAME


def report_index_path(paths: Dict[str, str]) -> Path:
    return Path(paths["html_report"]) / REPORT_INDEX_FILENAME
