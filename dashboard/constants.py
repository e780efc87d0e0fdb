from __future__ import annotations

from typing import Any, Dict, List

DEFAULT_VIEWPORTS: List[Dict[str, Any]] = [
    {"label": "phone", "width": 320, "height": 480},
    {"label": "tablet", "width": 1024, "height": 768},
    {"label": "desktop", "width": 1920, "height": 1080},
]

ENGINE_COMMANDS = ("reference", "test", "approve")

CONFIG_FILENAME = "backstop.json"
REPORT_FILENAME = "config.js"
REPORT_INDEX_FILENAME = "index.html"
REPORT_BACKUP_FILENAME = "config_original_backup.js"
BACKUP_METADATA_FILENAME = "backup-metadata.json"
BACKUP_CONFIG_FILENAME = "backstop-config.json"

PROJECT_DIRECTORIES = {
    "bitmaps_reference": "bitmaps_reference",
    "bitmaps_test": "bitmaps_test",
    "engine_scripts": "engine_scripts",
    "html_report": "html_report",
    "ci_report": "ci_report",
}

DEFAULT_SETTINGS: Dict[str, Any] = {
    "validation_timeout_ms": 8000,
    "slow_host_timeout_ms": 15000,
    "slow_host_patterns": ["aem.enablementadobe.com"],
    "validation_max_redirects": 5,
    "report_stability_attempts": 30,
    "report_stability_interval_ms": 500,
    "report_stability_settle_ms": 200,
    "report_merge_attempts": 3,
    "report_merge_backoff_ms": 1000,
    "engine_runtime": "local",
    "engine_image": "backstopjs/backstopjs:6.3.25",
    "engine_timeout_seconds": 900,
}

ENGINE_RUNTIMES = ("local", "docker")

# Progress percentages shared by the run stages.
VALIDATION_PROGRESS_START = 5.0
VALIDATION_PROGRESS_SPAN = 15.0
ENGINE_PREPARE_PROGRESS = 25.0
ENGINE_RUNNING_PROGRESS = 30.0


def default_engine_config(project_id: str) -> Dict[str, Any]:
    """Engine configuration skeleton written for freshly created projects."""
    return {
        "id": f"backstop_{project_id}",
        "viewports": [dict(viewport) for viewport in DEFAULT_VIEWPORTS],
        "scenarios": [],
        "paths": {},
        "report": ["browser"],
        "engine": "puppeteer",
        "engineOptions": {
            "args": ["--no-sandbox", "--disable-setuid-sandbox"],
            "headless": "new",
        },
        "asyncCaptureLimit": 1,
        "asyncCompareLimit": 50,
        "debug": False,
        "debugWindow": False,
        "scenarioLogsInReports": True,
    }
