from __future__ import annotations

import logging
import re
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import docker
from docker.errors import APIError, DockerException, NotFound
from fastapi.concurrency import run_in_threadpool

from dashboard.constants import ENGINE_COMMANDS
from dashboard.schemas import EngineOutcomeKind
from dashboard.services.errors import EngineError, VisualDifferencesError
from dashboard.services.partitioner import parse_filter
from dashboard.services.report import read_report

LOGGER = logging.getLogger("dashboard.engine")

MISMATCH_MARKER = "Mismatch errors found"
OUTPUT_TAIL = 4000
# File mtimes come from a coarse clock and may trail time.time() slightly.
MTIME_SLACK = 0.05


@dataclass
class EngineRun:
    exit_code: int
    output: str = ""


@dataclass
class EngineOutcome:
    kind: EngineOutcomeKind
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def completed(self) -> bool:
        return self.kind == EngineOutcomeKind.completed

    @property
    def differences_found(self) -> bool:
        return self.kind == EngineOutcomeKind.differences_found

    @property
    def fatal(self) -> bool:
        return self.kind == EngineOutcomeKind.fatal


def filter_pattern(label_filter: Optional[str]) -> Optional[str]:
    """Turn a ``|`` delimited label list into the anchored regex the engine expects."""
    labels = parse_filter(label_filter)
    if not labels:
        return None
    return "^(" + "|".join(re.escape(label) for label in labels) + ")$"


def engine_arguments(command: str, config_path: Path, label_filter: Optional[str]) -> List[str]:
    args = [command, f"--config={config_path}"]
    pattern = filter_pattern(label_filter)
    if pattern:
        args.append(f"--filter={pattern}")
    return args


def _has_failures(report: Optional[Dict[str, Any]]) -> bool:
    if not report:
        return False
    return any(isinstance(test, dict) and test.get("status") == "fail" for test in report.get("tests") or [])


def _report_written_since(report_path: Path, started: Optional[float]) -> bool:
    if started is None:
        return False
    try:
        return report_path.stat().st_mtime >= started - MTIME_SLACK
    except OSError:
        return False


def raise_for_run(command: str, run: EngineRun, report_path: Path, started: Optional[float] = None) -> None:
    """Translate a finished engine process into the matching exception.

    A report with failing tests only counts as visual differences when the
    engine wrote it after ``started``; older reports belong to a previous run.
    """
    if run.exit_code == 0:
        return
    tail = run.output[-OUTPUT_TAIL:]
    report = None
    if command == "test" and _report_written_since(report_path, started):
        report = read_report(report_path)
    if command == "test" and (MISMATCH_MARKER in run.output or _has_failures(report)):
        raise VisualDifferencesError(
            f"{MISMATCH_MARKER} (exit code {run.exit_code})",
            result=report,
            output=tail,
        )
    raise EngineError(f"Engine '{command}' failed with exit code {run.exit_code}", output=tail)


class EngineBackend:
    """Executes one engine command; raises ``EngineError`` subclasses on failure."""

    name = "abstract"

    def run(
        self,
        command: str,
        config_path: Path,
        *,
        report_path: Path,
        label_filter: Optional[str] = None,
        timeout: int = 900,
    ) -> EngineRun:  # pragma: no cover - interface stub
        raise NotImplementedError


class LocalBackstopBackend(EngineBackend):
    """Run the engine CLI through ``npx`` on the host."""

    name = "local"

    def __init__(self, executable: Optional[List[str]] = None) -> None:
        self._executable = list(executable or ["npx", "backstop"])

    def run(
        self,
        command: str,
        config_path: Path,
        *,
        report_path: Path,
        label_filter: Optional[str] = None,
        timeout: int = 900,
    ) -> EngineRun:
        args = self._executable + engine_arguments(command, config_path, label_filter)
        LOGGER.info("Running %s", " ".join(args))
        started = time.time()
        try:
            proc = subprocess.run(
                args,
                cwd=str(config_path.parent),
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            raise EngineError(f"Engine executable not found: {self._executable[0]}") from exc
        except subprocess.TimeoutExpired as exc:
            raise EngineError(f"Engine '{command}' timed out after {timeout} seconds") from exc
        run = EngineRun(exit_code=proc.returncode, output=(proc.stdout or "") + (proc.stderr or ""))
        raise_for_run(command, run, report_path, started)
        return run


class DockerBackstopBackend(EngineBackend):
    """Run the engine inside its published Docker image.

    The project directory is bind-mounted at the same path so the absolute
    paths inside the engine configuration stay valid in the container.
    """

    name = "docker"

    def __init__(
        self,
        image: str = "backstopjs/backstopjs:6.3.25",
        *,
        client_factory: Callable[[], Any] = docker.from_env,
        shm_size: str = "1g",
    ) -> None:
        self._image = image
        self._client_factory = client_factory
        self._shm_size = shm_size
        self._client: Any = None

    @property
    def image(self) -> str:
        return self._image

    def _docker(self) -> Any:
        if self._client is None:
            try:
                self._client = self._client_factory()
            except DockerException as exc:
                raise EngineError(f"Docker is not available: {exc}") from exc
        return self._client

    def run(
        self,
        command: str,
        config_path: Path,
        *,
        report_path: Path,
        label_filter: Optional[str] = None,
        timeout: int = 900,
    ) -> EngineRun:
        project_dir = str(config_path.parent)
        args = engine_arguments(command, config_path, label_filter)
        client = self._docker()
        LOGGER.info("Starting %s container: backstop %s", self._image, " ".join(args))
        started = time.time()
        try:
            container = client.containers.run(
                self._image,
                args,
                detach=True,
                volumes={project_dir: {"bind": project_dir, "mode": "rw"}},
                working_dir=project_dir,
                shm_size=self._shm_size,
            )
        except DockerException as exc:
            raise EngineError(f"Failed to start engine container: {exc}") from exc

        try:
            try:
                status = container.wait(timeout=timeout)
            except Exception as exc:  # noqa: BLE001 - the SDK surfaces transport timeouts from requests
                LOGGER.warning("Engine container %s did not finish: %s", container.id, exc)
                try:
                    container.kill()
                except APIError as kill_exc:
                    LOGGER.warning("Failed to kill container %s: %s", container.id, kill_exc)
                raise EngineError(f"Engine '{command}' timed out after {timeout} seconds") from exc
            output = container.logs(stdout=True, stderr=True).decode("utf-8", errors="replace")
        finally:
            try:
                container.remove(force=True)
            except NotFound:
                pass
            except APIError as exc:
                LOGGER.warning("Failed to remove container %s: %s", container.id, exc)

        run = EngineRun(exit_code=int(status.get("StatusCode", 1)), output=output)
        raise_for_run(command, run, report_path, started)
        return run


def create_backend(runtime: str, *, image: str) -> EngineBackend:
    if runtime == "docker":
        return DockerBackstopBackend(image)
    return LocalBackstopBackend()


class DiffEngineInvoker:
    """Run the engine and report a tagged outcome instead of raising."""

    def __init__(self, backend: EngineBackend, *, timeout: int = 900) -> None:
        self._backend = backend
        self._timeout = timeout

    @property
    def backend(self) -> EngineBackend:
        return self._backend

    async def run(
        self,
        command: str,
        config_path: Path,
        report_path: Path,
        label_filter: Optional[str] = None,
    ) -> EngineOutcome:
        if command not in ENGINE_COMMANDS:
            return EngineOutcome(EngineOutcomeKind.fatal, error=f"Unsupported engine command '{command}'")
        if not config_path.exists():
            return EngineOutcome(EngineOutcomeKind.fatal, error=f"Engine config not found: {config_path}")

        try:
            await run_in_threadpool(
                self._backend.run,
                command,
                config_path,
                report_path=report_path,
                label_filter=label_filter,
                timeout=self._timeout,
            )
        except VisualDifferencesError as exc:
            result = exc.result or read_report(report_path) or {"tests": []}
            LOGGER.info("Engine '%s' found visual differences", command)
            return EngineOutcome(EngineOutcomeKind.differences_found, result=result, error=str(exc))
        except EngineError as exc:
            LOGGER.error("Engine '%s' failed: %s", command, exc)
            if exc.output:
                LOGGER.debug("Engine output:\n%s", exc.output)
            return EngineOutcome(EngineOutcomeKind.fatal, result=exc.result, error=str(exc))
        except Exception as exc:  # noqa: BLE001 - unexpected backend failures are fatal outcomes
            LOGGER.exception("Engine '%s' crashed", command)
            return EngineOutcome(EngineOutcomeKind.fatal, error=str(exc) or exc.__class__.__name__)

        result = read_report(report_path) or {"tests": []}
        LOGGER.info("Engine '%s' completed with %s test(s)", command, len(result.get("tests") or []))
        return EngineOutcome(EngineOutcomeKind.completed, result=result)
