from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
import pytest

# dashboard.main builds a module-level app; keep its data out of the checkout.
os.environ.setdefault("DASHBOARD_DATA_ROOT", tempfile.mkdtemp(prefix="dashboard-tests-"))

from dashboard.services.engine import EngineBackend, EngineRun  # noqa: E402
from dashboard.services.errors import VisualDifferencesError  # noqa: E402
from dashboard.services.report import serialize_report  # noqa: E402


class RecordingSleep:
    """Async stand-in for asyncio.sleep that returns immediately."""

    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def _route(request: httpx.Request) -> httpx.Response:
    host = request.url.host
    if host.startswith("down."):
        return httpx.Response(503)
    if host.startswith("missing."):
        return httpx.Response(404)
    if host.startswith("refused."):
        raise httpx.ConnectError("connection failed") from ConnectionRefusedError(111, "Connection refused")
    if host.startswith("nxdomain."):
        raise httpx.ConnectError("[Errno -2] Name or service not known")
    return httpx.Response(200, text="<html></html>")


class StubBackend(EngineBackend):
    """Engine stand-in writing a report shaped like the real one."""

    name = "stub"

    def __init__(self, failure: Optional[Exception] = None) -> None:
        self.failure = failure
        self.calls: List[Dict[str, Any]] = []

    def run(
        self,
        command: str,
        config_path: Path,
        *,
        report_path: Path,
        label_filter: Optional[str] = None,
        timeout: int = 900,
    ) -> EngineRun:
        config = json.loads(config_path.read_text(encoding="utf-8"))
        labels = [scenario["label"] for scenario in config.get("scenarios") or []]
        viewports = config.get("viewports") or []
        paths = config["paths"]
        self.calls.append({"command": command, "labels": labels, "config_path": config_path})

        if command == "reference":
            reference_dir = Path(paths["bitmaps_reference"])
            reference_dir.mkdir(parents=True, exist_ok=True)
            for label in labels:
                for index, viewport in enumerate(viewports):
                    name = f"backstop_default_{label}_0_document_{index}_{viewport['label']}.png"
                    (reference_dir / name).write_bytes(b"png")
            return EngineRun(exit_code=0)

        status = "fail" if isinstance(self.failure, VisualDifferencesError) else "pass"
        tests = [
            {
                "pair": {
                    "label": label,
                    "viewportLabel": viewport["label"],
                    "url": scenario.get("url"),
                    "reference": f"../bitmaps_reference/{label}.png",
                    "test": f"../bitmaps_test/{label}.png",
                    "diff": {"misMatchPercentage": "2.50" if status == "fail" else "0.00"},
                },
                "status": status,
            }
            for scenario in config.get("scenarios") or []
            for label in [scenario["label"]]
            for viewport in viewports
        ]
        report_path.parent.mkdir(parents=True, exist_ok=True)
        report_path.write_text(serialize_report({"testSuite": "BackstopJS", "tests": tests}), encoding="utf-8")
        (report_path.parent / "index.html").write_text("<html>report</html>", encoding="utf-8")
        test_dir = Path(paths["bitmaps_test"])
        test_dir.mkdir(parents=True, exist_ok=True)
        (test_dir / "capture.png").write_bytes(b"png")
        if self.failure is not None:
            raise self.failure
        return EngineRun(exit_code=0)


@pytest.fixture
def fake_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def mock_transport() -> httpx.MockTransport:
    """Transport answering by host prefix: ok., down., missing., refused., nxdomain."""
    return httpx.MockTransport(_route)


@pytest.fixture
def stub_backend() -> StubBackend:
    return StubBackend()


@pytest.fixture
def stub_backend_factory():
    return StubBackend
