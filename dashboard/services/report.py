from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from pydantic import ValidationError

from dashboard.constants import REPORT_BACKUP_FILENAME
from dashboard.schemas import InvalidScenarioRecord, ReportDocument
from dashboard.services.errors import ReportMergeError
from dashboard.services.events import utcnow

LOGGER = logging.getLogger("dashboard.report")

REPORT_PREFIX = "report("
REPORT_SUFFIX = ");"
AUDIT_PREFIX = "config_enhanced_"
AUDIT_COPIES_KEPT = 5

Sleeper = Callable[[float], Awaitable[None]]


def parse_report(content: Optional[str]) -> Optional[Dict[str, Any]]:
    """Decode the ``report(<json>);`` wrapper written by the engine.

    Returns ``None`` when the content is missing, truncated or not JSON.
    """
    if not content:
        return None
    text = content.strip()
    start = text.find(REPORT_PREFIX)
    end = text.rfind(REPORT_SUFFIX)
    if start < 0 or end <= start:
        return None
    try:
        payload = json.loads(text[start + len(REPORT_PREFIX):end])
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, dict) else None


def serialize_report(document: Dict[str, Any]) -> str:
    return f"{REPORT_PREFIX}{json.dumps(document, indent=2)}{REPORT_SUFFIX}"


def read_report(path: Path) -> Optional[Dict[str, Any]]:
    try:
        return parse_report(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError):
        return None


def _looks_complete(content: str, min_length: int) -> bool:
    return len(content) > min_length and REPORT_PREFIX in content and REPORT_SUFFIX in content


async def await_stable(
    path: Path,
    *,
    max_attempts: int = 30,
    interval: float = 0.5,
    settle: float = 0.2,
    min_length: int = 100,
    sleep: Sleeper = asyncio.sleep,
) -> Optional[str]:
    """Wait until the engine has stopped writing the report file.

    This is a heuristic: the file counts as stable once two reads ``settle``
    seconds apart are identical and the content looks like a complete report.
    When that never happens within ``max_attempts`` the last successful read
    is returned anyway; ``None`` means the file was never readable.
    """
    last_read: Optional[str] = None
    for attempt in range(1, max_attempts + 1):
        try:
            if path.exists():
                first = path.read_text(encoding="utf-8")
                last_read = first
                await sleep(settle)
                second = path.read_text(encoding="utf-8")
                last_read = second
                if first == second and _looks_complete(second, min_length):
                    LOGGER.info("Report %s stable after %s attempt(s)", path, attempt)
                    return second
                LOGGER.debug("Waiting for report to settle (%s/%s)", attempt, max_attempts)
            else:
                LOGGER.debug("Waiting for report to exist (%s/%s)", attempt, max_attempts)
        except (OSError, UnicodeDecodeError) as exc:
            LOGGER.debug("Report read failed on attempt %s: %s", attempt, exc)
        await sleep(interval)

    if last_read is None:
        LOGGER.warning("Report %s never became readable after %s attempts", path, max_attempts)
    else:
        LOGGER.warning("Report %s did not stabilise; continuing with last read", path)
    return last_read


def _filter_note(matched: Optional[bool]) -> str:
    if matched is None:
        return ""
    return " (Matched Filter)" if matched else " (Outside Filter - Shown for Awareness)"


def synthesize_records(
    invalid: Sequence[InvalidScenarioRecord],
    viewports: Sequence[Dict[str, Any]],
    *,
    project_id: str,
) -> List[Dict[str, Any]]:
    """Build one failing test record per invalid scenario and viewport."""
    records: List[Dict[str, Any]] = []
    timestamp = utcnow()
    for item in invalid:
        scenario = item.scenario.model_dump()
        label = item.scenario.label
        for viewport in viewports:
            viewport_label = viewport.get("label")
            record: Dict[str, Any] = {
                "pair": {
                    "reference": None,
                    "test": None,
                    "selector": scenario.get("selector") or "document",
                    "fileName": f"{project_id}_{label}_{viewport_label}_network_error",
                    "label": label,
                    "viewportLabel": viewport_label,
                    "url": item.scenario.url,
                    "referenceUrl": item.scenario.referenceUrl or item.scenario.url,
                    "expect": 0,
                    "viewportSize": {"width": viewport.get("width"), "height": viewport.get("height")},
                    "diff": {
                        "isSameDimensions": False,
                        "dimensionDifference": {"width": 0, "height": 0},
                        "misMatchPercentage": 100,
                        "analysisTime": 0,
                    },
                },
                "status": "fail",
                "error": f"Network Error [{item.reason}]: {item.message}{_filter_note(item.matchedFilter)}",
                "networkError": True,
                "errorType": item.reason,
                "originalValidation": item.validation.model_dump() if item.validation else None,
                "timestamp": timestamp,
            }
            if item.matchedFilter is not None:
                record["matchedFilter"] = item.matchedFilter
            records.append(record)
    return records


@dataclass
class MergeSettings:
    attempts: int = 3
    backoff: float = 1.0


def prune_audit_copies(directory: Path, keep: int = AUDIT_COPIES_KEPT) -> List[Path]:
    """Delete all but the newest ``keep`` audit copies; returns the removed paths."""
    copies = sorted(directory.glob(f"{AUDIT_PREFIX}*.js"), key=lambda path: (path.stat().st_mtime_ns, path.name))
    stale = copies[: max(0, len(copies) - keep)]
    for path in stale:
        try:
            path.unlink()
        except OSError as exc:
            LOGGER.warning("Could not remove old audit copy %s: %s", path.name, exc)
    return stale


class ReportMerger:
    """Append network-error records to the engine's report file.

    The merger performs no deduplication: calling it twice appends twice.
    Callers are responsible for merging at most once per run.
    """

    def __init__(self, settings: Optional[MergeSettings] = None, *, sleep: Sleeper = asyncio.sleep) -> None:
        self._settings = settings or MergeSettings()
        self._sleep = sleep

    def _read_existing(self, report_path: Path) -> tuple[Optional[Dict[str, Any]], str]:
        if not report_path.exists():
            LOGGER.info("No existing report at %s, creating a new one", report_path)
            return None, ""
        try:
            content = report_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            LOGGER.warning("Could not read existing report %s: %s", report_path, exc)
            return None, ""
        document = parse_report(content)
        if document is not None:
            try:
                ReportDocument.model_validate(document)
            except ValidationError as exc:
                LOGGER.warning("Existing report failed schema validation: %s", exc.errors()[:3])
                document = None
        if document is None and content.strip():
            self._quarantine(report_path, content)
        return document, content

    def _quarantine(self, report_path: Path, content: str) -> None:
        target = report_path.with_name(f"config_quarantined_{int(time.time() * 1000)}.js")
        try:
            target.write_text(content, encoding="utf-8")
            LOGGER.warning("Unparsable report quarantined to %s", target.name)
        except OSError as exc:
            LOGGER.warning("Could not quarantine unparsable report: %s", exc)

    def _backup_original(self, report_path: Path) -> None:
        if not report_path.exists():
            return
        try:
            shutil.copyfile(report_path, report_path.with_name(REPORT_BACKUP_FILENAME))
        except OSError as exc:
            LOGGER.warning("Could not back up original report: %s", exc)

    @staticmethod
    def _write_atomic(report_path: Path, content: str) -> None:
        report_path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = report_path.with_name(f".{report_path.name}.{os.getpid()}.tmp")
        temp_path.write_text(content, encoding="utf-8")
        os.replace(temp_path, report_path)

    async def merge(
        self,
        report_path: Path,
        invalid: Sequence[InvalidScenarioRecord],
        engine_result: Optional[Dict[str, Any]],
        viewports: Sequence[Dict[str, Any]],
        *,
        project_id: str,
        replace_existing: bool = False,
    ) -> Dict[str, Any]:
        """Append network-error records to the report and return the merged document.

        With ``replace_existing`` the on-disk report is ignored (it belongs to an
        earlier run) and the merge starts from ``engine_result`` alone.
        """
        synthesized = synthesize_records(invalid, viewports, project_id=project_id)
        LOGGER.info("Merging %s network-error records into %s", len(synthesized), report_path)

        if replace_existing:
            LOGGER.info("Replacing previous report at %s", report_path)
            existing, original_content = None, ""
        else:
            existing, original_content = self._read_existing(report_path)
        if existing is not None:
            base = dict(existing)
        else:
            base = dict(engine_result or {})
        existing_tests = list(base.get("tests") or [])

        enhanced = dict(base)
        enhanced["tests"] = existing_tests + synthesized
        enhanced["hasNetworkErrors"] = bool(invalid)
        enhanced["networkErrorCount"] = len(invalid)
        enhanced["totalScenarios"] = len(enhanced["tests"])
        enhanced["validScenariosCount"] = len(existing_tests)
        enhanced["invalidScenariosCount"] = len(invalid)

        self._backup_original(report_path)
        content = serialize_report(enhanced)
        marker_label = invalid[0].scenario.label if invalid else None

        attempts = max(1, self._settings.attempts)
        for attempt in range(1, attempts + 1):
            try:
                self._write_atomic(report_path, content)
                written = report_path.read_text(encoding="utf-8")
            except OSError as exc:
                failure = f"write failed: {exc}"
            else:
                size_increased = len(written) > len(original_content)
                has_label = marker_label is None or marker_label in written
                has_marker = "networkError" in written or not invalid
                if size_increased and has_label and has_marker:
                    LOGGER.info(
                        "Enhanced report verified (%s -> %s bytes)",
                        len(original_content),
                        len(written),
                    )
                    break
                if size_increased:
                    LOGGER.warning("Enhanced report written but verification incomplete; continuing")
                    break
                failure = "verification failed: no size increase detected"
            LOGGER.error("Report write attempt %s/%s %s", attempt, attempts, failure)
            if attempt == attempts:
                raise ReportMergeError(f"Could not write enhanced report after {attempts} attempts ({failure})")
            await self._sleep(self._settings.backoff)

        audit_path = report_path.with_name(f"{AUDIT_PREFIX}{int(time.time() * 1000)}.js")
        try:
            audit_path.write_text(content, encoding="utf-8")
        except OSError as exc:
            LOGGER.warning("Could not write enhanced report audit copy: %s", exc)
        prune_audit_copies(report_path.parent)

        LOGGER.info(
            "Report now holds %s tests (%s tested + %s network errors)",
            enhanced["totalScenarios"],
            enhanced["validScenariosCount"],
            len(synthesized),
        )
        return enhanced


def enhanced_results(document: Optional[Dict[str, Any]], *, project_name: str) -> Dict[str, Any]:
    """Summarise a merged report for the results endpoint."""
    document = dict(document or {"tests": []})
    tests = list(document.get("tests") or [])
    invalid_tests = [test for test in tests if isinstance(test, dict) and test.get("networkError")]
    is_enhanced = bool(document.get("hasNetworkErrors")) or bool(invalid_tests)
    document.update(
        {
            "isEnhanced": is_enhanced,
            "totalTests": len(tests),
            "validTests": len(tests) - len(invalid_tests),
            "invalidTests": len(invalid_tests),
        }
    )
    suite = document.get("testSuite")
    suite = dict(suite) if isinstance(suite, dict) else {}
    suite.setdefault("name", project_name)
    suite.setdefault("date", utcnow())
    suite["enhanced"] = is_enhanced
    document["testSuite"] = suite
    return document
