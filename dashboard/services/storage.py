from __future__ import annotations

import json
import logging
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from dashboard.constants import DEFAULT_SETTINGS, ENGINE_RUNTIMES, default_engine_config
from dashboard.services.errors import ConfigLoadError, ProjectNotFoundError
from dashboard.services.workspace import ProjectWorkspace

LOGGER = logging.getLogger("dashboard.storage")

STATE_VERSION = 1


def _utcnow() -> str:
    """Return timezone-aware ISO timestamp."""
    return datetime.now(tz=timezone.utc).isoformat()


def _default_settings() -> Dict[str, Any]:
    settings = dict(DEFAULT_SETTINGS)
    settings["slow_host_patterns"] = list(DEFAULT_SETTINGS["slow_host_patterns"])
    return settings


def _check_unique_labels(scenarios: List[Dict[str, Any]]) -> None:
    labels = [scenario.get("label") for scenario in scenarios]
    duplicates = sorted({str(label) for label in labels if labels.count(label) > 1})
    if duplicates:
        raise ValueError("Scenario labels must be unique: " + ", ".join(duplicates))


def _default_state() -> Dict[str, Any]:
    return {
        "version": STATE_VERSION,
        "projects": {},
        "config": _default_settings(),
    }


class LocalJsonStorage:
    """Small collection store persisted as a single JSON document.

    Each top-level collection stores items keyed by their primary identifier.
    All writes are synchronised via an internal lock.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._state = self._load()

    def _load(self) -> Dict[str, Any]:
        if not self._path.exists():
            return _default_state()
        with self._path.open("r", encoding="utf-8") as handle:
            state = json.load(handle)
        state.setdefault("projects", {})
        state_config = state.setdefault("config", {})
        for key, value in _default_settings().items():
            state_config.setdefault(key, value)
        return state

    def _persist(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("w", encoding="utf-8") as handle:
            json.dump(self._state, handle, indent=2, sort_keys=True)

    def _collection(self, name: str) -> Dict[str, Any]:
        return self._state.setdefault(name, {})

    def get_config(self) -> Dict[str, Any]:
        return self._state.setdefault("config", _default_settings())

    def update_config(self, values: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            config = self.get_config()
            config.update(values)
            self._persist()
            return config

    def upsert(self, collection: str, item_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            self._collection(collection)[item_id] = payload
            self._persist()
            return payload

    def get(self, collection: str, item_id: str) -> Optional[Dict[str, Any]]:
        return self._collection(collection).get(item_id)

    def delete(self, collection: str, item_id: str) -> None:
        with self._lock:
            if item_id in self._collection(collection):
                del self._collection(collection)[item_id]
                self._persist()

    def list(self, collection: str) -> List[Dict[str, Any]]:
        return list(self._collection(collection).values())


class DashboardRepository:
    """Repository offering project and settings helpers on top of LocalJsonStorage."""

    def __init__(self, storage: LocalJsonStorage, workspace: ProjectWorkspace) -> None:
        self._storage = storage
        self._workspace = workspace

    @property
    def workspace(self) -> ProjectWorkspace:
        return self._workspace

    # -- Settings -----------------------------------------------------------------
    def get_config(self) -> Dict[str, Any]:
        config = self._storage.get_config()
        resolved = _default_settings()
        resolved.update({key: config[key] for key in resolved if key in config})
        resolved["slow_host_patterns"] = list(resolved.get("slow_host_patterns") or [])
        return resolved

    def update_config(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        updates = {key: value for key, value in payload.items() if value is not None}
        unknown = set(updates) - set(DEFAULT_SETTINGS)
        if unknown:
            raise ValueError("Unknown settings: " + ", ".join(sorted(unknown)))
        runtime = updates.get("engine_runtime")
        if runtime is not None and runtime not in ENGINE_RUNTIMES:
            raise ValueError("Engine runtime must be one of: " + ", ".join(ENGINE_RUNTIMES))
        if "slow_host_patterns" in updates:
            patterns = [str(item).strip() for item in updates["slow_host_patterns"]]
            updates["slow_host_patterns"] = [item for item in patterns if item]
        image = updates.get("engine_image")
        if image is not None and not str(image).strip():
            raise ValueError("Engine image cannot be blank.")
        self._storage.update_config(updates)
        return self.get_config()

    # -- Projects -----------------------------------------------------------------
    def list_projects(self) -> List[Dict[str, Any]]:
        return sorted(self._storage.list("projects"), key=lambda it: it["created_at"])

    def get_project(self, project_id: str) -> Optional[Dict[str, Any]]:
        return self._storage.get("projects", project_id)

    def require_project(self, project_id: str) -> Dict[str, Any]:
        project = self.get_project(project_id)
        if not project:
            raise ProjectNotFoundError(project_id)
        return project

    def create_project(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        now = _utcnow()
        project_id = str(uuid.uuid4())
        record = {
            "id": project_id,
            "name": payload["name"],
            "description": payload.get("description"),
            "created_at": now,
            "updated_at": now,
        }
        self._workspace.initialize(project_id)
        self.save_engine_config(project_id, default_engine_config(project_id))
        LOGGER.info("Created project %s (%s)", project_id, record["name"])
        return self._storage.upsert("projects", project_id, record)

    def delete_project(self, project_id: str) -> None:
        self._workspace.purge_project(project_id)
        self._storage.delete("projects", project_id)

    # -- Engine configuration -------------------------------------------------------
    def config_path(self, project_id: str) -> Path:
        return self._workspace.config_path(project_id)

    def load_engine_config(self, project_id: str) -> Dict[str, Any]:
        self.require_project(project_id)
        path = self.config_path(project_id)
        if not path.exists():
            raise ConfigLoadError(f"Config not found for project {project_id}")
        try:
            config = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigLoadError(f"Config for project {project_id} is unreadable: {exc}") from exc
        if not isinstance(config, dict):
            raise ConfigLoadError(f"Config for project {project_id} is not a JSON object")
        config["paths"] = self._workspace.engine_paths(project_id)
        return config

    def save_engine_config(self, project_id: str, config: Dict[str, Any]) -> Dict[str, Any]:
        _check_unique_labels(config.get("scenarios") or [])
        record = dict(config)
        record["id"] = f"backstop_{project_id}"
        record["projectId"] = project_id
        record["paths"] = self._workspace.engine_paths(project_id)
        path = self.config_path(project_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(record, indent=2), encoding="utf-8")
        return record

    def list_scenarios(self, project_id: str) -> List[Dict[str, Any]]:
        return list(self.load_engine_config(project_id).get("scenarios") or [])

    def replace_scenarios(self, project_id: str, scenarios: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        _check_unique_labels(scenarios)
        config = self.load_engine_config(project_id)
        config["scenarios"] = scenarios
        self.save_engine_config(project_id, config)
        return scenarios
