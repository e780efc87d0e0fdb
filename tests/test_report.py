from __future__ import annotations

import os
from pathlib import Path
from typing import List

import pytest

from dashboard.constants import REPORT_BACKUP_FILENAME
from dashboard.schemas import InvalidScenarioRecord, Scenario, Severity, ValidationOutcome, ValidationType
from dashboard.services.errors import ReportMergeError
from dashboard.services.report import (
    AUDIT_PREFIX,
    MergeSettings,
    ReportMerger,
    await_stable,
    enhanced_results,
    parse_report,
    prune_audit_copies,
    read_report,
    serialize_report,
    synthesize_records,
)

pytestmark = pytest.mark.unit

VIEWPORTS = [
    {"label": "phone", "width": 320, "height": 480},
    {"label": "desktop", "width": 1920, "height": 1080},
]


def _engine_test(label: str, status: str = "pass") -> dict:
    return {
        "pair": {
            "label": label,
            "viewportLabel": "phone",
            "url": f"https://ok.test/{label}",
            "diff": {"misMatchPercentage": "0.00", "engineSpecific": True},
        },
        "status": status,
        "engineField": {"kept": label},
    }


def _invalid(label: str = "broken", matched=None) -> InvalidScenarioRecord:
    outcome = ValidationOutcome(
        valid=False,
        type=ValidationType.dns_error,
        message="DNS resolution failed - domain not found",
        severity=Severity.high,
    )
    return InvalidScenarioRecord(
        scenario=Scenario(label=label, url=f"https://{label}.invalid/"),
        reason=outcome.type,
        message=outcome.message,
        validation=outcome,
        matchedFilter=matched,
    )


def test_report_wrapper_codec() -> None:
    document = {"tests": [_engine_test("home")], "id": "suite"}
    text = serialize_report(document)
    assert text.startswith("report(") and text.endswith(");")
    assert parse_report(text) == document
    assert parse_report("  \n" + text + "\n") == document


@pytest.mark.parametrize("content", [None, "", "report(", "report({\"tests\": [});", "noise", "report([1, 2]);"])
def test_parse_report_rejects_broken_content(content) -> None:
    assert parse_report(content) is None


@pytest.mark.asyncio
async def test_await_stable_returns_settled_content(tmp_path: Path, fake_sleep) -> None:
    path = tmp_path / "config.js"
    content = serialize_report({"tests": [_engine_test("home")]})
    path.write_text(content, encoding="utf-8")

    assert await await_stable(path, sleep=fake_sleep) == content
    assert fake_sleep.calls == [0.2]


@pytest.mark.asyncio
async def test_await_stable_waits_for_writer_to_finish(tmp_path: Path) -> None:
    path = tmp_path / "config.js"
    final = serialize_report({"tests": [_engine_test("home"), _engine_test("about")]})
    path.write_text("report({\"tests\": [", encoding="utf-8")
    writes: List[str] = [serialize_report({"tests": [_engine_test("home")]}), final]

    async def writer_sleep(seconds: float) -> None:
        # The engine keeps writing between the two settle reads.
        if writes and seconds == 0.2:
            path.write_text(writes.pop(0), encoding="utf-8")

    assert await await_stable(path, sleep=writer_sleep) == final


@pytest.mark.asyncio
async def test_await_stable_converges_within_two_polls(tmp_path: Path) -> None:
    path = tmp_path / "config.js"
    final = serialize_report({"tests": [_engine_test("home"), _engine_test("about")]})
    path.write_text("report({\"tests\": [", encoding="utf-8")
    calls: List[float] = []

    async def writer_sleep(seconds: float) -> None:
        calls.append(seconds)
        if calls == [0.2]:
            path.write_text(final, encoding="utf-8")

    assert await await_stable(path, sleep=writer_sleep) == final
    assert calls == [0.2, 0.5, 0.2]


@pytest.mark.asyncio
async def test_await_stable_falls_back_to_last_read(tmp_path: Path, fake_sleep) -> None:
    path = tmp_path / "config.js"
    path.write_text("report({});", encoding="utf-8")

    assert await await_stable(path, max_attempts=3, sleep=fake_sleep) == "report({});"
    assert fake_sleep.calls.count(0.5) == 3


@pytest.mark.asyncio
async def test_await_stable_missing_file(tmp_path: Path, fake_sleep) -> None:
    assert await await_stable(tmp_path / "config.js", max_attempts=4, sleep=fake_sleep) is None
    assert fake_sleep.calls == [0.5] * 4


def test_synthesized_records_describe_network_failures() -> None:
    records = synthesize_records([_invalid(matched=False)], VIEWPORTS, project_id="p1")

    assert len(records) == 2
    first = records[0]
    assert first["status"] == "fail"
    assert first["networkError"] is True
    assert first["errorType"] == "DNS_ERROR"
    assert first["pair"]["reference"] is None and first["pair"]["test"] is None
    assert first["pair"]["diff"]["misMatchPercentage"] == 100
    assert first["pair"]["diff"]["isSameDimensions"] is False
    assert first["pair"]["selector"] == "document"
    assert first["pair"]["fileName"] == "p1_broken_phone_network_error"
    assert first["pair"]["referenceUrl"] == "https://broken.invalid/"
    assert first["pair"]["viewportSize"] == {"width": 320, "height": 480}
    assert first["error"] == (
        "Network Error [DNS_ERROR]: DNS resolution failed - domain not found (Outside Filter - Shown for Awareness)"
    )
    assert first["matchedFilter"] is False
    assert first["originalValidation"]["type"] == "DNS_ERROR"


def test_synthesized_error_suffixes() -> None:
    matched = synthesize_records([_invalid(matched=True)], VIEWPORTS[:1], project_id="p1")[0]
    unfiltered = synthesize_records([_invalid()], VIEWPORTS[:1], project_id="p1")[0]
    assert matched["error"].endswith("(Matched Filter)")
    assert unfiltered["error"].endswith("domain not found")
    assert "matchedFilter" not in unfiltered


@pytest.mark.asyncio
async def test_merge_appends_after_existing_records(tmp_path: Path, fake_sleep) -> None:
    path = tmp_path / "config.js"
    existing = [_engine_test("home"), _engine_test("about", "fail")]
    original = serialize_report({"testSuite": "BackstopJS", "tests": existing})
    path.write_text(original, encoding="utf-8")
    invalid = [_invalid("broken"), _invalid("gone")]

    merged = await ReportMerger(sleep=fake_sleep).merge(path, invalid, None, VIEWPORTS, project_id="p1")

    on_disk = read_report(path)
    assert on_disk == merged
    assert on_disk["tests"][:2] == existing
    appended = on_disk["tests"][2:]
    assert len(appended) == len(invalid) * len(VIEWPORTS)
    assert [item["pair"]["label"] for item in appended] == ["broken", "broken", "gone", "gone"]
    assert on_disk["testSuite"] == "BackstopJS"
    assert on_disk["hasNetworkErrors"] is True
    assert on_disk["networkErrorCount"] == 2
    assert on_disk["totalScenarios"] == 6
    assert on_disk["validScenariosCount"] == 2
    assert on_disk["invalidScenariosCount"] == 2
    assert (tmp_path / REPORT_BACKUP_FILENAME).read_text(encoding="utf-8") == original
    assert len(list(tmp_path.glob("config_enhanced_*.js"))) == 1
    assert fake_sleep.calls == []


@pytest.mark.asyncio
async def test_merge_without_report_uses_engine_result(tmp_path: Path, fake_sleep) -> None:
    path = tmp_path / "html_report" / "config.js"
    engine_result = {"tests": [_engine_test("home")], "passed": 1}

    merged = await ReportMerger(sleep=fake_sleep).merge(path, [_invalid()], engine_result, VIEWPORTS, project_id="p1")

    assert merged["passed"] == 1
    assert merged["tests"][0] == _engine_test("home")
    assert len(merged["tests"]) == 3
    assert read_report(path) == merged


@pytest.mark.asyncio
async def test_merge_twice_duplicates_records(tmp_path: Path, fake_sleep) -> None:
    path = tmp_path / "config.js"
    path.write_text(serialize_report({"tests": [_engine_test("home")]}), encoding="utf-8")
    merger = ReportMerger(sleep=fake_sleep)

    await merger.merge(path, [_invalid()], None, VIEWPORTS[:1], project_id="p1")
    second = await merger.merge(path, [_invalid()], None, VIEWPORTS[:1], project_id="p1")

    assert len(second["tests"]) == 3


@pytest.mark.asyncio
async def test_unparsable_report_is_quarantined(tmp_path: Path, fake_sleep) -> None:
    path = tmp_path / "config.js"
    path.write_text("report({\"tests\": [ truncated", encoding="utf-8")
    engine_result = {"tests": [_engine_test("home")]}

    merged = await ReportMerger(sleep=fake_sleep).merge(path, [_invalid()], engine_result, VIEWPORTS, project_id="p1")

    quarantined = list(tmp_path.glob("config_quarantined_*.js"))
    assert len(quarantined) == 1
    assert quarantined[0].read_text(encoding="utf-8") == "report({\"tests\": [ truncated"
    assert merged["tests"][0]["pair"]["label"] == "home"
    assert merged["validScenariosCount"] == 1


@pytest.mark.asyncio
async def test_report_failing_schema_is_quarantined(tmp_path: Path, fake_sleep) -> None:
    path = tmp_path / "config.js"
    path.write_text(serialize_report({"tests": [{"status": "unknown"}]}), encoding="utf-8")

    merged = await ReportMerger(sleep=fake_sleep).merge(path, [_invalid()], None, VIEWPORTS[:1], project_id="p1")

    assert len(list(tmp_path.glob("config_quarantined_*.js"))) == 1
    assert len(merged["tests"]) == 1
    assert merged["tests"][0]["networkError"] is True


@pytest.mark.asyncio
async def test_merge_retries_then_fails_when_report_does_not_grow(tmp_path: Path, fake_sleep) -> None:
    path = tmp_path / "config.js"
    # Garbage larger than anything the merger will write.
    path.write_text("x" * 200_000, encoding="utf-8")
    merger = ReportMerger(MergeSettings(attempts=3, backoff=1.0), sleep=fake_sleep)

    with pytest.raises(ReportMergeError):
        await merger.merge(path, [_invalid()], None, VIEWPORTS, project_id="p1")
    assert fake_sleep.calls == [1.0, 1.0]


def test_enhanced_results_counts_network_errors() -> None:
    document = {
        "tests": [_engine_test("home")] + synthesize_records([_invalid()], VIEWPORTS, project_id="p1"),
        "hasNetworkErrors": True,
    }
    summary = enhanced_results(document, project_name="Acme")

    assert summary["isEnhanced"] is True
    assert summary["totalTests"] == 3
    assert summary["validTests"] == 1
    assert summary["invalidTests"] == 2
    assert summary["testSuite"]["name"] == "Acme"
    assert summary["testSuite"]["enhanced"] is True


def test_enhanced_results_without_report() -> None:
    summary = enhanced_results(None, project_name="Acme")
    assert summary["tests"] == []
    assert summary["isEnhanced"] is False


@pytest.mark.asyncio
async def test_merge_can_replace_a_stale_report(tmp_path: Path, fake_sleep) -> None:
    path = tmp_path / "config.js"
    original = serialize_report({"testSuite": "BackstopJS", "tests": [_engine_test("home"), _engine_test("about")]})
    path.write_text(original, encoding="utf-8")

    merged = await ReportMerger(sleep=fake_sleep).merge(
        path, [_invalid()], {"tests": []}, VIEWPORTS, project_id="p1", replace_existing=True
    )

    on_disk = read_report(path)
    assert on_disk == merged
    assert len(on_disk["tests"]) == len(VIEWPORTS)
    assert all(test["networkError"] is True for test in on_disk["tests"])
    assert on_disk["validScenariosCount"] == 0
    assert "testSuite" not in on_disk
    assert (tmp_path / REPORT_BACKUP_FILENAME).read_text(encoding="utf-8") == original


def _audit_copies(directory: Path, count: int) -> List[Path]:
    copies = []
    for index in range(count):
        copy = directory / f"{AUDIT_PREFIX}{1000 + index}.js"
        copy.write_text("report({});", encoding="utf-8")
        os.utime(copy, (1_000_000 + index, 1_000_000 + index))
        copies.append(copy)
    return copies


def test_prune_audit_copies_keeps_newest(tmp_path: Path) -> None:
    copies = _audit_copies(tmp_path, 7)
    (tmp_path / "config.js").write_text("report({});", encoding="utf-8")

    removed = prune_audit_copies(tmp_path, keep=5)

    assert removed == copies[:2]
    assert sorted(tmp_path.glob(f"{AUDIT_PREFIX}*.js")) == sorted(copies[2:])
    assert (tmp_path / "config.js").exists()
    assert prune_audit_copies(tmp_path, keep=5) == []


@pytest.mark.asyncio
async def test_merge_bounds_audit_copies(tmp_path: Path, fake_sleep) -> None:
    path = tmp_path / "config.js"
    path.write_text(serialize_report({"tests": [_engine_test("home")]}), encoding="utf-8")
    old = _audit_copies(tmp_path, 6)

    await ReportMerger(sleep=fake_sleep).merge(path, [_invalid()], None, VIEWPORTS, project_id="p1")

    remaining = list(tmp_path.glob(f"{AUDIT_PREFIX}*.js"))
    assert len(remaining) == 5
    assert not old[0].exists() and not old[1].exists()
    assert all(copy.exists() for copy in old[2:])
