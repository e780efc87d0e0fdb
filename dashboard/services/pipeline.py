from __future__ import annotations

import asyncio
import logging
import re
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import httpx
from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError

from dashboard.constants import (
    ENGINE_COMMANDS,
    ENGINE_PREPARE_PROGRESS,
    ENGINE_RUNNING_PROGRESS,
)
from dashboard.schemas import InvalidScenarioRecord, RunStage, Scenario
from dashboard.services.backups import BackupService, has_artifacts
from dashboard.services.engine import DiffEngineInvoker, EngineBackend, EngineOutcome, create_backend
from dashboard.services.errors import ConfigLoadError, ReportMergeError
from dashboard.services.events import (
    REPORT_ENHANCED,
    REPORT_ENHANCEMENT_FAILED,
    TEST_COMPLETE,
    TEST_PROGRESS,
    EventBroker,
    utcnow,
)
from dashboard.services.materializer import discard, materialize
from dashboard.services.partitioner import apply_filter, labels_of, partition
from dashboard.services.report import (
    MergeSettings,
    ReportMerger,
    await_stable,
    enhanced_results,
    parse_report,
    read_report,
)
from dashboard.services.storage import DashboardRepository
from dashboard.services.validator import UrlValidator, ValidatorSettings
from dashboard.services.workspace import report_index_path, report_path

LOGGER = logging.getLogger("dashboard.pipeline")

Sleeper = Callable[[float], Awaitable[None]]

EMPTY_ENGINE_RESULT: Dict[str, Any] = {"tests": [], "passed": 0, "failed": 0, "pending": 0}


@dataclass
class PipelineSettings:
    validator: ValidatorSettings = field(default_factory=ValidatorSettings)
    merge: MergeSettings = field(default_factory=MergeSettings)
    stability_attempts: int = 30
    stability_interval: float = 0.5
    stability_settle: float = 0.2
    engine_runtime: str = "local"
    engine_image: str = "backstopjs/backstopjs:6.3.25"
    engine_timeout: int = 900

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "PipelineSettings":
        return cls(
            validator=ValidatorSettings(
                timeout_seconds=int(config["validation_timeout_ms"]) / 1000,
                slow_timeout_seconds=int(config["slow_host_timeout_ms"]) / 1000,
                slow_host_patterns=list(config["slow_host_patterns"]),
                max_redirects=int(config["validation_max_redirects"]),
            ),
            merge=MergeSettings(
                attempts=int(config["report_merge_attempts"]),
                backoff=int(config["report_merge_backoff_ms"]) / 1000,
            ),
            stability_attempts=int(config["report_stability_attempts"]),
            stability_interval=int(config["report_stability_interval_ms"]) / 1000,
            stability_settle=int(config["report_stability_settle_ms"]) / 1000,
            engine_runtime=str(config["engine_runtime"]),
            engine_image=str(config["engine_image"]),
            engine_timeout=int(config["engine_timeout_seconds"]),
        )


def network_error_details(invalid: Sequence[InvalidScenarioRecord]) -> List[Dict[str, Any]]:
    return [
        {"scenario": item.scenario.label, "reason": item.reason, "message": item.message}
        for item in invalid
    ]


def _safe_label(label: str) -> str:
    return re.sub(r"[^A-Za-z0-9_-]", "_", label)


def missing_references(scenarios: Sequence[Scenario], reference_dir: Path) -> List[str]:
    """Labels of scenarios without any reference bitmap on disk."""
    names = [item.name for item in reference_dir.glob("*.png")] if reference_dir.is_dir() else []
    missing = []
    for scenario in scenarios:
        token = f"_{_safe_label(scenario.label)}_"
        if not any(token in name for name in names):
            missing.append(scenario.label)
    return missing


class RunFollowUp:
    """Work that must happen after the HTTP response has been sent.

    Waits for the report to settle, merges network-error records at most once
    and always snapshots the artifacts afterwards.
    """

    def __init__(
        self,
        *,
        project_id: str,
        config: Dict[str, Any],
        config_path: Path,
        invalid: Sequence[InvalidScenarioRecord],
        engine_result: Optional[Dict[str, Any]],
        merger: ReportMerger,
        backups: BackupService,
        events: EventBroker,
        settings: PipelineSettings,
        backup_description: str,
        merge_required: bool = True,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.project_id = project_id
        self.config = config
        self.config_path = config_path
        self.invalid = list(invalid)
        self.engine_result = engine_result
        self.merge_required = merge_required and bool(self.invalid)
        self.merge_done = False
        self.backup_description = backup_description
        self.backup_id: Optional[str] = None
        self._merger = merger
        self._backups = backups
        self._events = events
        self._settings = settings
        self._sleep = sleep

    @property
    def report_path(self) -> Path:
        return report_path(self.config["paths"])

    async def run(self) -> None:
        try:
            if self.merge_required and not self.merge_done:
                await self.stabilize_and_merge()
        finally:
            await self.backup()

    async def stabilize_and_merge(self) -> Optional[Dict[str, Any]]:
        if self.merge_done:
            LOGGER.warning("Merge already performed for project %s; skipping", self.project_id)
            return None
        self.merge_done = True
        try:
            content = await await_stable(
                self.report_path,
                max_attempts=self._settings.stability_attempts,
                interval=self._settings.stability_interval,
                settle=self._settings.stability_settle,
                sleep=self._sleep,
            )
            engine_result = self.engine_result or parse_report(content) or {"tests": []}
            enhanced = await self._merger.merge(
                self.report_path,
                self.invalid,
                engine_result,
                self.config.get("viewports") or [],
                project_id=self.project_id,
            )
        except Exception as exc:  # noqa: BLE001 - merge failures never reach the client
            if isinstance(exc, ReportMergeError):
                LOGGER.error("Report enhancement failed for project %s: %s", self.project_id, exc)
            else:
                LOGGER.exception("Report enhancement crashed for project %s", self.project_id)
            self._events.publish(
                REPORT_ENHANCEMENT_FAILED,
                {
                    "projectId": self.project_id,
                    "status": "error",
                    "error": str(exc),
                    "timestamp": utcnow(),
                },
            )
            return None

        self._events.publish(
            REPORT_ENHANCED,
            {
                "projectId": self.project_id,
                "status": "enhanced",
                "totalScenarios": len(enhanced.get("tests") or []),
                "networkErrorCount": len(self.invalid),
                "message": f"Report enhanced with {len(self.invalid)} invalid scenarios",
                "timestamp": utcnow(),
            },
        )
        return enhanced

    async def backup(self) -> None:
        paths = self.config["paths"]
        if not has_artifacts(paths):
            LOGGER.info("No artifacts to back up for project %s", self.project_id)
            return
        try:
            outcome = await run_in_threadpool(
                self._backups.snapshot,
                self.project_id,
                self.config_path,
                self.config,
                self.backup_description,
            )
        except Exception:  # noqa: BLE001 - a failed backup never fails the run
            LOGGER.exception("Auto-backup failed for project %s", self.project_id)
            return
        self.backup_id = outcome.backup_id
        if outcome.errors:
            LOGGER.warning("Auto-backup %s finished with errors: %s", outcome.backup_id, outcome.errors)


@dataclass
class RunOutcome:
    status_code: int
    body: Dict[str, Any]
    follow_up: Optional[RunFollowUp] = None
    stage: RunStage = RunStage.success


class RunOrchestrator:
    """Drive a test run from URL validation to the post-response merge."""

    def __init__(
        self,
        repository: DashboardRepository,
        backups: BackupService,
        events: EventBroker,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        backend: Optional[EngineBackend] = None,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self._repo = repository
        self._backups = backups
        self._events = events
        self._transport = transport
        self._backend = backend
        self._sleep = sleep
        self._stages: Dict[str, RunStage] = {}

    def stage(self, project_id: str) -> Optional[RunStage]:
        """Stage the latest test run of a project reached."""
        return self._stages.get(project_id)

    def _enter(self, project_id: str, stage: RunStage) -> None:
        LOGGER.debug("Project %s run stage: %s", project_id, stage.value)
        self._stages[project_id] = stage

    # -- Components built from current settings ---------------------------------
    def settings(self) -> PipelineSettings:
        return PipelineSettings.from_config(self._repo.get_config())

    def validator(self, settings: PipelineSettings) -> UrlValidator:
        return UrlValidator(settings.validator, transport=self._transport)

    def merger(self, settings: PipelineSettings) -> ReportMerger:
        return ReportMerger(settings.merge, sleep=self._sleep)

    def invoker(self, settings: PipelineSettings) -> DiffEngineInvoker:
        backend = self._backend or create_backend(settings.engine_runtime, image=settings.engine_image)
        return DiffEngineInvoker(backend, timeout=settings.engine_timeout)

    def _progress(self, project_id: str, status: str, percent: float, message: str, **extra: Any) -> None:
        payload = {"projectId": project_id, "status": status, "percent": percent, "message": message}
        stage = self._stages.get(project_id)
        if stage is not None:
            payload["stage"] = stage.value
        payload.update(extra)
        self._events.publish(TEST_PROGRESS, payload)

    def _complete(self, project_id: str, status: str, message: str, **extra: Any) -> None:
        payload = {"projectId": project_id, "status": status, "percent": 100, "message": message}
        payload.update(extra)
        self._events.publish(TEST_COMPLETE, payload)

    def _load(self, project_id: str) -> tuple[Dict[str, Any], Path, List[Scenario]]:
        config = self._repo.load_engine_config(project_id)
        try:
            scenarios = [Scenario.model_validate(item) for item in config.get("scenarios") or []]
        except ValidationError as exc:
            raise ConfigLoadError(f"Config for project {project_id} has invalid scenarios: {exc}") from exc
        return config, self._repo.config_path(project_id), scenarios

    def _follow_up(
        self,
        settings: PipelineSettings,
        *,
        project_id: str,
        config: Dict[str, Any],
        config_path: Path,
        invalid: Sequence[InvalidScenarioRecord] = (),
        engine_result: Optional[Dict[str, Any]] = None,
        description: str,
        merge_required: bool = True,
    ) -> RunFollowUp:
        return RunFollowUp(
            project_id=project_id,
            config=config,
            config_path=config_path,
            invalid=invalid,
            engine_result=engine_result,
            merger=self.merger(settings),
            backups=self._backups,
            events=self._events,
            settings=settings,
            backup_description=description,
            merge_required=merge_required,
            sleep=self._sleep,
        )

    # -- Test runs --------------------------------------------------------------
    async def run_test(self, project_id: str, label_filter: Optional[str] = None) -> RunOutcome:
        self._repo.require_project(project_id)
        self._enter(project_id, RunStage.validating)
        outcome = await self._execute_test(project_id, label_filter)
        self._enter(project_id, outcome.stage)
        return outcome

    async def _execute_test(self, project_id: str, label_filter: Optional[str]) -> RunOutcome:
        config, config_path, scenarios = self._load(project_id)
        settings = self.settings()
        paths = config["paths"]
        temp_config: Optional[Path] = None
        run_id = uuid.uuid4().hex
        LOGGER.info("Starting test run %s for project %s (filter=%s)", run_id, project_id, label_filter)

        try:
            split = await partition(scenarios, self.validator(settings), self._events, project_id=project_id)
            if not split.valid:
                self._complete(
                    project_id,
                    "failed",
                    "No valid URLs found - all scenarios have network connectivity issues",
                    invalidScenarios=len(split.invalid),
                )
                body = {
                    "success": False,
                    "error": "No valid URLs found",
                    "message": "All scenarios have network connectivity issues",
                    "invalidScenarios": len(split.invalid),
                    "details": network_error_details(split.invalid),
                }
                follow_up = self._follow_up(
                    settings,
                    project_id=project_id,
                    config=config,
                    config_path=config_path,
                    description="Automated backup created after an aborted test run",
                    merge_required=False,
                )
                return RunOutcome(400, body, follow_up, RunStage.aborted)

            view = apply_filter(split, label_filter)
            if view.labels and view.empty:
                body = {
                    "success": False,
                    "error": "No scenarios match the filter criteria",
                    "filter": label_filter,
                    "availableScenarios": labels_of(split.valid) + [item.scenario.label for item in split.invalid],
                }
                return RunOutcome(400, body, None, RunStage.aborted)

            if view.labels and not view.valid:
                return await self._merge_only(settings, project_id, config, config_path, view.invalid, view.reported)

            invalid = view.reported
            self._enter(project_id, RunStage.materializing)
            temp_config = materialize(config, config_path, view.valid, run_id=run_id)
            self._enter(project_id, RunStage.running_engine)
            self._progress(project_id, "started", ENGINE_PREPARE_PROGRESS, "Preparing visual regression run...")
            invoker = self.invoker(settings)
            target_report = report_path(paths)

            missing = missing_references(view.valid, Path(paths["bitmaps_reference"]))
            outcome: Optional[EngineOutcome] = None
            if missing:
                LOGGER.info("Missing reference bitmaps for %s; generating references first", missing)
                self._progress(project_id, "running", ENGINE_PREPARE_PROGRESS, "Generating reference images...")
                reference_outcome = await invoker.run("reference", temp_config, target_report)
                if reference_outcome.fatal:
                    outcome = reference_outcome

            if outcome is None:
                self._progress(project_id, "running", ENGINE_RUNNING_PROGRESS, "Running visual regression tests...")
                outcome = await invoker.run("test", temp_config, target_report)

            return self._finish(settings, project_id, config, config_path, split.valid, invalid, outcome)
        finally:
            discard(temp_config)

    async def _merge_only(
        self,
        settings: PipelineSettings,
        project_id: str,
        config: Dict[str, Any],
        config_path: Path,
        matched: Sequence[InvalidScenarioRecord],
        reported: Sequence[InvalidScenarioRecord],
    ) -> RunOutcome:
        LOGGER.info("All filtered scenarios are invalid; generating a network-error report only")
        follow_up = self._follow_up(
            settings,
            project_id=project_id,
            config=config,
            config_path=config_path,
            invalid=reported,
            engine_result=dict(EMPTY_ENGINE_RESULT),
            description="Automated backup created after a network-error only run",
        )
        follow_up.merge_done = True
        try:
            enhanced = await self.merger(settings).merge(
                report_path(config["paths"]),
                reported,
                dict(EMPTY_ENGINE_RESULT),
                config.get("viewports") or [],
                project_id=project_id,
                replace_existing=True,
            )
        except ReportMergeError as exc:
            LOGGER.error("Network-error report generation failed: %s", exc)
            self._complete(project_id, "failed", str(exc))
            return RunOutcome(500, {"success": False, "error": str(exc)}, follow_up, RunStage.hard_error)

        message = (
            "All filtered scenarios had network issues - report generated with network error results "
            f"({len(matched)} matching filter, {len(reported) - len(matched)} others shown for awareness)"
        )
        self._complete(project_id, "done", message, hasNetworkErrors=True)
        body = {
            "success": True,
            "result": enhanced,
            "reportPath": None,
            "message": message,
            "hasNetworkErrors": True,
            "networkErrorCount": len(reported),
            "filteredNetworkErrorCount": len(matched),
        }
        return RunOutcome(200, body, follow_up, RunStage.success)

    def _scenario_events(self, project_id: str, result: Optional[Dict[str, Any]]) -> None:
        for test in (result or {}).get("tests") or []:
            if not isinstance(test, dict):
                continue
            pair = test.get("pair") or {}
            status = "passed" if test.get("status") == "pass" else "failed"
            diff = pair.get("diff") or {}
            try:
                mismatch = float(diff.get("misMatchPercentage") or 0)
            except (TypeError, ValueError):
                mismatch = 0.0
            label = pair.get("label")
            viewport = pair.get("viewportLabel")
            verdict = "Passed" if status == "passed" else f"Failed ({mismatch}% mismatch)"
            self._progress(
                project_id,
                "scenario-complete",
                100,
                f"{label} ({viewport}) - {verdict}",
                scenario=label,
                scenarioStatus=status,
                mismatchPercentage=mismatch,
                viewport=viewport,
            )

    def _finish(
        self,
        settings: PipelineSettings,
        project_id: str,
        config: Dict[str, Any],
        config_path: Path,
        valid: Sequence[Scenario],
        invalid: Sequence[InvalidScenarioRecord],
        outcome: EngineOutcome,
    ) -> RunOutcome:
        paths = config["paths"]
        totals = {
            "enhancedReport": bool(invalid),
            "totalScenarios": len(valid) + len(invalid),
            "validScenarios": len(valid),
            "invalidScenarios": len(invalid),
            "networkErrorDetails": network_error_details(invalid),
        }
        report_url = self._repo.workspace.url(project_id, "html_report/index.html")

        if outcome.completed:
            self._scenario_events(project_id, outcome.result)
            if invalid:
                message = f"Test completed: {len(valid)} tested, {len(invalid)} network errors excluded"
            else:
                message = "Test completed successfully"
            self._complete(
                project_id,
                "done",
                message,
                totalScenarios=totals["totalScenarios"],
                validScenarios=len(valid),
                invalidScenarios=len(invalid),
                hasNetworkErrors=bool(invalid),
            )
            body = {"success": True, "result": outcome.result, "message": message, "reportPath": report_url}
            body.update(totals)
            follow_up = self._follow_up(
                settings,
                project_id=project_id,
                config=config,
                config_path=config_path,
                invalid=invalid,
                engine_result=outcome.result,
                description="Automated backup created after successful test execution",
            )
            return RunOutcome(200, body, follow_up, RunStage.success)

        if outcome.differences_found:
            self._scenario_events(project_id, outcome.result)
            message = "Test completed with visual differences detected"
            self._complete(project_id, "completed_with_differences", message)
            body = {
                "success": False,
                "error": outcome.error,
                "result": outcome.result,
                "message": message,
                "reportPath": report_url if report_index_path(paths).exists() else None,
            }
            body.update(totals)
            follow_up = self._follow_up(
                settings,
                project_id=project_id,
                config=config,
                config_path=config_path,
                invalid=invalid,
                engine_result=outcome.result,
                description="Automated backup created after test execution with visual differences",
            )
            return RunOutcome(200, body, follow_up, RunStage.diffs_found)

        LOGGER.error("Test run for project %s failed: %s", project_id, outcome.error)
        self._complete(project_id, "failed", f"Test run failed: {outcome.error}")
        engine_result = outcome.result or read_report(report_path(paths))
        body = {
            "success": False,
            "error": outcome.error,
            "message": "Test run failed",
            "reportPath": report_url if report_index_path(paths).exists() else None,
        }
        body.update(totals)
        follow_up = self._follow_up(
            settings,
            project_id=project_id,
            config=config,
            config_path=config_path,
            invalid=invalid,
            engine_result=engine_result,
            description="Automated backup created after a failed test execution",
        )
        return RunOutcome(500, body, follow_up, RunStage.hard_error)

    # -- Pass-through commands ----------------------------------------------------
    async def run_command(self, project_id: str, command: str, label_filter: Optional[str] = None) -> RunOutcome:
        """Run ``reference`` or ``approve`` directly on the project config."""
        if command not in ENGINE_COMMANDS or command == "test":
            raise ValueError(f"Unsupported command '{command}'")
        self._repo.require_project(project_id)
        config, config_path, _scenarios = self._load(project_id)
        settings = self.settings()
        LOGGER.info("Running '%s' for project %s (filter=%s)", command, project_id, label_filter)
        self._progress(project_id, "running", ENGINE_RUNNING_PROGRESS, f"Running {command}...", command=command)
        outcome = await self.invoker(settings).run(
            command,
            config_path,
            report_path(config["paths"]),
            label_filter=label_filter,
        )
        if outcome.fatal:
            self._complete(project_id, "failed", f"{command.capitalize()} failed: {outcome.error}", command=command)
            return RunOutcome(500, {"success": False, "error": outcome.error}, None, RunStage.hard_error)
        message = f"{command.capitalize()} completed successfully"
        self._complete(project_id, "done", message, command=command)
        return RunOutcome(200, {"success": True, "message": message}, None, RunStage.success)

    def enhanced_results(self, project_id: str) -> Dict[str, Any]:
        project = self._repo.require_project(project_id)
        config = self._repo.load_engine_config(project_id)
        document = read_report(report_path(config["paths"]))
        return enhanced_results(document, project_name=project["name"])
