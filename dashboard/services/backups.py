from __future__ import annotations

import csv
import io
import json
import logging
import re
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from dashboard.constants import BACKUP_CONFIG_FILENAME, BACKUP_METADATA_FILENAME, REPORT_INDEX_FILENAME
from dashboard.schemas import BackupScenario, BackupSnapshot, BackupStats, BackupTestSummary
from dashboard.services.errors import BackupError
from dashboard.services.events import BACKUP_CREATED, EventBroker
from dashboard.services.report import read_report
from dashboard.services.workspace import ProjectWorkspace, report_index_path, report_path

LOGGER = logging.getLogger("dashboard.backups")

ARTIFACT_DIRECTORIES = ("html_report", "bitmaps_test", "bitmaps_reference")
CSV_HEADER = ["Scenario", "Viewport", "Status", "Mismatch%", "URL", "Timestamp"]


@dataclass
class BackupOutcome:
    success: bool
    backup_id: Optional[str] = None
    metadata: Optional[BackupSnapshot] = None
    errors: List[str] = field(default_factory=list)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _iso(moment: datetime) -> str:
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def backup_timestamp(moment: datetime) -> str:
    return re.sub(r"[:.]", "-", _iso(moment))


def sanitize_name(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9]", "_", name)


def _mismatch(test: Dict[str, Any]) -> float:
    diff = (test.get("pair") or {}).get("diff") or {}
    try:
        return float(diff.get("misMatchPercentage") or 0)
    except (TypeError, ValueError):
        return 0.0


def summarize_tests(report: Optional[Dict[str, Any]]) -> tuple[BackupTestSummary, List[BackupScenario]]:
    tests = [test for test in (report or {}).get("tests") or [] if isinstance(test, dict)]
    failed = [test for test in tests if test.get("status") == "fail"]
    summary = BackupTestSummary(
        totalTests=len(tests),
        passedTests=sum(1 for test in tests if test.get("status") == "pass"),
        failedTests=len(failed),
        avgMismatch=sum(_mismatch(test) for test in failed) / (len(failed) or 1),
    )
    scenarios = []
    for test in tests:
        pair = test.get("pair") or {}
        scenarios.append(
            BackupScenario(
                label=pair.get("label"),
                viewport=pair.get("viewportLabel"),
                status=test.get("status"),
                mismatchPercentage=_mismatch(test),
                url=pair.get("url"),
            )
        )
    return summary, scenarios


def folder_size(path: Path) -> int:
    return sum(item.stat().st_size for item in path.rglob("*") if item.is_file())


def _non_empty(directory: Path) -> bool:
    return directory.is_dir() and any(directory.iterdir())


def has_artifacts(paths: Dict[str, str]) -> bool:
    """True when a run left anything worth backing up."""
    return (
        report_index_path(paths).exists()
        or report_path(paths).exists()
        or _non_empty(Path(paths["bitmaps_test"]))
        or _non_empty(Path(paths["bitmaps_reference"]))
    )


class BackupService:
    """Timestamped copies of a project's report and bitmaps."""

    def __init__(self, workspace: ProjectWorkspace, events: Optional[EventBroker] = None) -> None:
        self._workspace = workspace
        self._events = events

    def snapshot(
        self,
        project_id: str,
        config_path: Path,
        config: Dict[str, Any],
        description: str = "Automated backup created after test execution",
        *,
        name: Optional[str] = None,
    ) -> BackupOutcome:
        """Copy the current artifacts into a new backup directory.

        Every copy step is attempted independently; failures are collected on
        the outcome instead of being raised.
        """
        paths = config.get("paths") or self._workspace.engine_paths(project_id)
        moment = _now()
        timestamp = backup_timestamp(moment)
        if name:
            backup_id = f"{timestamp}_{sanitize_name(name)}"
            display_name = name
        else:
            backup_id = f"{timestamp}_auto_backup_{timestamp}"
            display_name = f"Auto Backup - {moment.strftime('%Y-%m-%d')}"
        target = self._workspace.backup_dir(project_id, backup_id)
        suffix = 1
        while target.exists():
            suffix += 1
            target = self._workspace.backup_dir(project_id, f"{backup_id}_{suffix}")
        backup_id = target.name
        errors: List[str] = []

        try:
            target.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.error("Failed to create backup directory %s: %s", target, exc)
            return BackupOutcome(success=False, errors=[str(exc)])

        summary, scenarios = summarize_tests(read_report(report_path(paths)))
        metadata = BackupSnapshot(
            id=backup_id,
            name=display_name,
            description=description,
            projectId=project_id,
            timestamp=_iso(moment),
            testSummary=summary,
            scenarios=scenarios,
        )

        for key in ARTIFACT_DIRECTORIES:
            source = Path(paths.get(key, ""))
            if not source.is_dir():
                continue
            try:
                shutil.copytree(source, target / key, dirs_exist_ok=True)
            except (OSError, shutil.Error) as exc:
                LOGGER.warning("Backup %s: failed to copy %s: %s", backup_id, key, exc)
                errors.append(f"{key}: {exc}")
        try:
            (target / BACKUP_METADATA_FILENAME).write_text(
                json.dumps(metadata.model_dump(), indent=2), encoding="utf-8"
            )
        except OSError as exc:
            LOGGER.warning("Backup %s: failed to write metadata: %s", backup_id, exc)
            errors.append(f"metadata: {exc}")
        try:
            shutil.copyfile(config_path, target / BACKUP_CONFIG_FILENAME)
        except OSError as exc:
            LOGGER.warning("Backup %s: failed to copy config: %s", backup_id, exc)
            errors.append(f"config: {exc}")

        LOGGER.info(
            "Backup %s created with %s test result(s)%s",
            backup_id,
            summary.totalTests,
            f" and {len(errors)} error(s)" if errors else "",
        )
        if self._events is not None:
            self._events.publish(
                BACKUP_CREATED,
                {
                    "projectId": project_id,
                    "backupId": backup_id,
                    "name": metadata.name,
                    "timestamp": metadata.timestamp,
                },
            )
        return BackupOutcome(success=not errors, backup_id=backup_id, metadata=metadata, errors=errors)

    def _read_metadata(self, directory: Path) -> Optional[BackupSnapshot]:
        path = directory / BACKUP_METADATA_FILENAME
        if not path.exists():
            return None
        try:
            return BackupSnapshot.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as exc:
            LOGGER.warning("Failed to read metadata for backup %s: %s", directory.name, exc)
            return None

    def _backup_directory(self, project_id: str, backup_id: str) -> Path:
        directory = self._workspace.resolve_inside(self._workspace.backups_dir(project_id), backup_id)
        if directory is None or directory == self._workspace.backups_dir(project_id).resolve():
            raise BackupError(f"Backup {backup_id} not found")
        return directory

    def list_backups(self, project_id: str) -> List[Dict[str, Any]]:
        root = self._workspace.backups_dir(project_id)
        if not root.exists():
            return []
        items = []
        for directory in root.iterdir():
            if not directory.is_dir():
                continue
            metadata = self._read_metadata(directory)
            if metadata is None:
                continue
            record = metadata.model_dump(exclude={"scenarios"})
            record.update(
                {
                    "testCount": metadata.testSummary.totalTests,
                    "passedTests": metadata.testSummary.passedTests,
                    "failedTests": metadata.testSummary.failedTests,
                    "avgMismatch": metadata.testSummary.avgMismatch,
                    "size": folder_size(directory),
                    "hasReport": (directory / "html_report" / REPORT_INDEX_FILENAME).exists(),
                }
            )
            items.append(record)
        return sorted(items, key=lambda item: item["timestamp"], reverse=True)

    def get_backup(self, project_id: str, backup_id: str) -> BackupSnapshot:
        metadata = self._read_metadata(self._backup_directory(project_id, backup_id))
        if metadata is None:
            raise BackupError(f"Backup {backup_id} not found")
        return metadata

    def stats(self, project_id: str) -> BackupStats:
        root = self._workspace.backups_dir(project_id)
        if not root.exists():
            return BackupStats()
        stats = BackupStats()
        failures = 0
        for directory in root.iterdir():
            if not directory.is_dir():
                continue
            metadata = self._read_metadata(directory)
            if metadata is None:
                continue
            stats.totalBackups += 1
            stats.totalSize += folder_size(directory)
            stats.totalTests += metadata.testSummary.totalTests
            failures += metadata.testSummary.failedTests
        stats.averageFailureRate = failures / stats.totalTests if stats.totalTests else 0.0
        return stats

    def export_csv(self, project_id: str, backup_id: str) -> str:
        metadata = self.get_backup(project_id, backup_id)
        buffer = io.StringIO()
        writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
        buffer.write(",".join(CSV_HEADER) + "\n")
        for scenario in metadata.scenarios:
            writer.writerow(
                [
                    scenario.label,
                    scenario.viewport,
                    scenario.status,
                    scenario.mismatchPercentage,
                    scenario.url,
                    metadata.timestamp,
                ]
            )
        return buffer.getvalue()

    def delete_backup(self, project_id: str, backup_id: str) -> None:
        directory = self._backup_directory(project_id, backup_id)
        if not directory.exists():
            raise BackupError(f"Backup {backup_id} not found")
        shutil.rmtree(directory)
        LOGGER.info("Deleted backup %s of project %s", backup_id, project_id)
