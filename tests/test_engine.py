from __future__ import annotations

import os
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from dashboard.schemas import EngineOutcomeKind
from dashboard.services.engine import (
    DiffEngineInvoker,
    DockerBackstopBackend,
    EngineBackend,
    EngineRun,
    LocalBackstopBackend,
    engine_arguments,
    filter_pattern,
    raise_for_run,
)
from dashboard.services.errors import EngineError, VisualDifferencesError
from dashboard.services.report import serialize_report

pytestmark = pytest.mark.unit


class ScriptedBackend(EngineBackend):
    def __init__(self, error: Optional[Exception] = None, report: Optional[Dict[str, Any]] = None) -> None:
        self.error = error
        self.report = report
        self.calls: List[Dict[str, Any]] = []

    def run(self, command, config_path, *, report_path, label_filter=None, timeout=900) -> EngineRun:
        self.calls.append({"command": command, "label_filter": label_filter, "timeout": timeout})
        if self.report is not None:
            report_path.parent.mkdir(parents=True, exist_ok=True)
            report_path.write_text(serialize_report(self.report), encoding="utf-8")
        if self.error is not None:
            raise self.error
        return EngineRun(exit_code=0, output="ok")


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    path = tmp_path / "backstop.json"
    path.write_text("{}", encoding="utf-8")
    return path


def _report(status: str = "pass") -> Dict[str, Any]:
    return {"tests": [{"pair": {"label": "home"}, "status": status}]}


@pytest.mark.asyncio
async def test_completed_run_reads_report(tmp_path: Path, config_path: Path) -> None:
    backend = ScriptedBackend(report=_report())
    invoker = DiffEngineInvoker(backend, timeout=42)

    outcome = await invoker.run("test", config_path, tmp_path / "html_report" / "config.js", "home")

    assert outcome.kind == EngineOutcomeKind.completed
    assert outcome.result == _report()
    assert backend.calls == [{"command": "test", "label_filter": "home", "timeout": 42}]


@pytest.mark.asyncio
async def test_completed_run_without_report_has_empty_tests(tmp_path: Path, config_path: Path) -> None:
    outcome = await DiffEngineInvoker(ScriptedBackend()).run("reference", config_path, tmp_path / "config.js")
    assert outcome.completed
    assert outcome.result == {"tests": []}


@pytest.mark.asyncio
async def test_differences_carry_embedded_result(tmp_path: Path, config_path: Path) -> None:
    embedded = _report("fail")
    backend = ScriptedBackend(error=VisualDifferencesError("Mismatch errors found", result=embedded))

    outcome = await DiffEngineInvoker(backend).run("test", config_path, tmp_path / "config.js")

    assert outcome.kind == EngineOutcomeKind.differences_found
    assert outcome.result == embedded


@pytest.mark.asyncio
async def test_differences_fall_back_to_disk_report(tmp_path: Path, config_path: Path) -> None:
    backend = ScriptedBackend(error=VisualDifferencesError("Mismatch errors found"), report=_report("fail"))

    outcome = await DiffEngineInvoker(backend).run("test", config_path, tmp_path / "config.js")

    assert outcome.differences_found
    assert outcome.result == _report("fail")


@pytest.mark.asyncio
async def test_engine_errors_are_fatal(tmp_path: Path, config_path: Path) -> None:
    backend = ScriptedBackend(error=EngineError("Engine 'test' failed with exit code 2"))
    outcome = await DiffEngineInvoker(backend).run("test", config_path, tmp_path / "config.js")
    assert outcome.kind == EngineOutcomeKind.fatal
    assert "exit code 2" in outcome.error


@pytest.mark.asyncio
async def test_unexpected_errors_are_fatal_not_differences(tmp_path: Path, config_path: Path) -> None:
    backend = ScriptedBackend(error=RuntimeError("browser crashed"), report=_report("fail"))
    outcome = await DiffEngineInvoker(backend).run("test", config_path, tmp_path / "config.js")
    assert outcome.fatal
    assert outcome.error == "browser crashed"


@pytest.mark.asyncio
async def test_missing_config_is_fatal_without_running(tmp_path: Path) -> None:
    backend = ScriptedBackend()
    outcome = await DiffEngineInvoker(backend).run("test", tmp_path / "absent.json", tmp_path / "config.js")
    assert outcome.fatal
    assert backend.calls == []


@pytest.mark.asyncio
async def test_unknown_command_is_fatal(tmp_path: Path, config_path: Path) -> None:
    outcome = await DiffEngineInvoker(ScriptedBackend()).run("openReport", config_path, tmp_path / "config.js")
    assert outcome.fatal


def test_filter_pattern_escapes_labels() -> None:
    assert filter_pattern(None) is None
    assert filter_pattern("home|about us") == "^(home|about\\ us)$"
    assert filter_pattern("a.b") == "^(a\\.b)$"


def test_engine_arguments(tmp_path: Path) -> None:
    path = tmp_path / "backstop.json"
    assert engine_arguments("test", path, None) == ["test", f"--config={path}"]
    assert engine_arguments("approve", path, "home") == ["approve", f"--config={path}", "--filter=^(home)$"]


def test_raise_for_run_classification(tmp_path: Path) -> None:
    report_path = tmp_path / "config.js"
    raise_for_run("test", EngineRun(exit_code=0), report_path)

    with pytest.raises(VisualDifferencesError):
        raise_for_run("test", EngineRun(exit_code=1, output="... Mismatch errors found ..."), report_path)

    report_path.write_text(serialize_report(_report("fail")), encoding="utf-8")
    with pytest.raises(VisualDifferencesError) as excinfo:
        raise_for_run("test", EngineRun(exit_code=1, output="exit"), report_path, started=0.0)
    assert excinfo.value.result == _report("fail")

    report_path.write_text(serialize_report(_report("pass")), encoding="utf-8")
    with pytest.raises(EngineError) as excinfo:
        raise_for_run("test", EngineRun(exit_code=1, output="Error: config not found"), report_path)
    assert not isinstance(excinfo.value, VisualDifferencesError)

    with pytest.raises(EngineError) as excinfo:
        raise_for_run("reference", EngineRun(exit_code=1, output="Mismatch errors found"), report_path)
    assert not isinstance(excinfo.value, VisualDifferencesError)


def test_stale_failing_report_does_not_mask_crashes(tmp_path: Path) -> None:
    report_path = tmp_path / "config.js"
    report_path.write_text(serialize_report(_report("fail")), encoding="utf-8")
    an_hour_ago = time.time() - 3600
    os.utime(report_path, (an_hour_ago, an_hour_ago))
    crash = EngineRun(exit_code=1, output="Error: Failed to launch the browser process!")

    with pytest.raises(EngineError) as excinfo:
        raise_for_run("test", crash, report_path, started=time.time())
    assert not isinstance(excinfo.value, VisualDifferencesError)

    with pytest.raises(EngineError) as excinfo:
        raise_for_run("test", crash, report_path)
    assert not isinstance(excinfo.value, VisualDifferencesError)


def test_local_backend_reports_missing_executable(tmp_path: Path, config_path: Path) -> None:
    backend = LocalBackstopBackend(["backstop-binary-that-does-not-exist"])
    with pytest.raises(EngineError, match="not found"):
        backend.run("test", config_path, report_path=tmp_path / "config.js")


class FakeContainer:
    def __init__(self, status_code: int, logs: bytes) -> None:
        self.id = "container-1"
        self._status_code = status_code
        self._logs = logs
        self.removed = False

    def wait(self, timeout=None):
        return {"StatusCode": self._status_code}

    def logs(self, stdout=True, stderr=True) -> bytes:
        return self._logs

    def kill(self) -> None:
        pass

    def remove(self, force: bool = False) -> None:
        self.removed = True


class FakeContainers:
    def __init__(self, container: FakeContainer) -> None:
        self.container = container
        self.calls: List[Dict[str, Any]] = []

    def run(self, image, command, **kwargs):
        self.calls.append({"image": image, "command": command, **kwargs})
        return self.container


class FakeDockerClient:
    def __init__(self, container: FakeContainer) -> None:
        self.containers = FakeContainers(container)


def test_docker_backend_mounts_project_directory(tmp_path: Path, config_path: Path) -> None:
    client = FakeDockerClient(FakeContainer(0, b"done"))
    backend = DockerBackstopBackend("backstopjs/backstopjs:test", client_factory=lambda: client)

    run = backend.run("reference", config_path, report_path=tmp_path / "config.js", label_filter="home")

    assert run.exit_code == 0 and run.output == "done"
    call = client.containers.calls[0]
    assert call["image"] == "backstopjs/backstopjs:test"
    assert call["command"] == ["reference", f"--config={config_path}", "--filter=^(home)$"]
    assert call["volumes"] == {str(tmp_path): {"bind": str(tmp_path), "mode": "rw"}}
    assert call["working_dir"] == str(tmp_path)
    assert client.containers.container.removed is True


def test_docker_backend_surfaces_differences(tmp_path: Path, config_path: Path) -> None:
    container = FakeContainer(1, b"COMMAND | Command \"test\" ended with an error\nMismatch errors found.")
    backend = DockerBackstopBackend(client_factory=lambda: FakeDockerClient(container))

    with pytest.raises(VisualDifferencesError):
        backend.run("test", config_path, report_path=tmp_path / "config.js")
    assert container.removed is True
